"""Per-agent message processing.

One agent, one message: intent analysis, tool / document dispatch, tiered
context, prompt composition, completion, and the optional image tool call.
"""

import asyncio
import json
from typing import Any

from teamchat.chains.tool_dispatcher import (
    derive_content_type,
    execute_tools,
    integration_failure,
    is_document_analysis,
    search_documents,
    should_search_documents,
    start_document_analysis,
)
from teamchat.context.dynamic_context import build_dynamic_context
from teamchat.context.intent_analyzer import analyze_intent
from teamchat.context.prompt_builder import build_assistant_prompt, render_chain_transcript
from teamchat.context.query_expansion import build_search_queries, expand_query, normalize_query
from teamchat.core.config import get_settings
from teamchat.core.llm import invoke_completion, message_content, message_tool_calls
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import (
    ActionType,
    AgentProfile,
    AgentResponse,
    Attachment,
    ContentType,
    MentionType,
    MessageRole,
    PriorResponse,
    ToolResult,
)
from teamchat.db import messages as messages_db
from teamchat.db.agents import get_agent
from teamchat.services.image_generation import (
    IMAGE_GENERATION_TOOL,
    IMAGE_TOOL_NAME,
    generate_image,
)

logger = get_logger(__name__)

CHANNEL_PROMPT_SUFFIX = "You are responding in a channel conversation. Be conversational and helpful."
IMAGE_FOLLOW_UP_PROMPT = (
    "You just generated an image in a channel. "
    "Provide a brief, conversational response about what you created."
)
EMPTY_RESPONSE = "I couldn't produce a response to that. Please try rephrasing your message."


def _load_history(
    channel_id: str | None,
    conversation_id: str | None,
    message: str,
) -> list[dict[str, str]]:
    settings = get_settings()
    if channel_id:
        history = messages_db.list_channel_history(channel_id, settings.CHANNEL_HISTORY_LIMIT)
    elif conversation_id:
        history = messages_db.list_conversation_history(conversation_id, settings.CHANNEL_HISTORY_LIMIT)
    else:
        history = []

    # The triggering message is stored before processing starts
    if history and history[-1]["role"] == MessageRole.USER.value and history[-1]["content"] == message:
        history = history[:-1]
    return history


async def _handle_image_call(
    call: dict[str, Any],
    agent: AgentProfile,
    message: str,
) -> tuple[str, ToolResult]:
    try:
        arguments = json.loads(call.get("function", {}).get("arguments") or "{}")
    except ValueError:
        arguments = {}
    prompt = arguments.get("prompt") or message

    result = await generate_image(prompt, arguments.get("size"))
    if not result.get("success"):
        error = result.get("error") or "Unknown error"
        return (
            f"I apologize, but I encountered an error while generating the image: {error}",
            ToolResult(tool_id=IMAGE_TOOL_NAME, success=False, error=error),
        )

    revised_prompt = result["images"][0].get("revised_prompt") or prompt
    text = f"I've generated an image of {prompt} for you!"
    try:
        follow_up = await invoke_completion(
            [
                {"role": "system", "content": IMAGE_FOLLOW_UP_PROMPT},
                {
                    "role": "user",
                    "content": f'The user asked: "{message}"\nThe generated image shows: {revised_prompt}',
                },
            ],
            provider=agent.ai_provider,
            model=agent.ai_model,
            max_tokens=150,
        )
        text = message_content(follow_up) or text
    except Exception as e:
        logger.warning(f"Image follow-up message failed: {e}", extra={"agent_id": agent.id})

    return text, ToolResult(
        tool_id=IMAGE_TOOL_NAME,
        success=True,
        results=result,
        summary=revised_prompt,
        metadata={"content_type": ContentType.IMAGE_GENERATION.value},
    )


async def process_agent_message(
    *,
    agent_id: str,
    message: str,
    channel_id: str | None = None,
    conversation_id: str | None = None,
    company_id: str | None = None,
    attachments: list[Attachment] | None = None,
    previous_responses: list[PriorResponse] | None = None,
    parent_message_id: str | None = None,
    mention_type: MentionType | None = None,
    chain_index: int | None = None,
    allow_image_tool: bool = True,
) -> AgentResponse:
    """
    Produce one agent's reply to one message.

    Args:
        agent_id: Responding agent
        message: Original user message text
        channel_id: Channel scope (exclusive with conversation_id)
        conversation_id: Direct conversation scope
        company_id: Company for context retrieval (defaults to the agent's company)
        attachments: Files sent with the message
        previous_responses: Earlier answers in the same mention chain
        parent_message_id: Originating user message (stored on analysis placeholders)
        mention_type: How this reply was triggered
        chain_index: Position in the mention chain
        allow_image_tool: Offer the image generation function to the model

    Returns:
        AgentResponse (not yet persisted unless ``persisted_message_id`` is set)

    Raises:
        LookupError: If the agent does not exist
        UpstreamServiceError: If the completion call fails
    """
    settings = get_settings()
    attachments = attachments or []

    agent = await asyncio.to_thread(get_agent, agent_id)
    if agent is None:
        raise LookupError(f"Agent {agent_id} not found")
    company_id = company_id or agent.company_id

    history = await asyncio.to_thread(_load_history, channel_id, conversation_id, message)
    input_text = render_chain_transcript(message, previous_responses or [])

    analysis = await analyze_intent(input_text, agent_id, history, attachments)

    if is_document_analysis(analysis, attachments):
        return await start_document_analysis(
            agent_id=agent_id,
            user_message=message,
            attachment=attachments[0],
            channel_id=channel_id,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
            mention_type=mention_type,
            chain_index=chain_index,
        )

    tool_results: list[ToolResult] = []
    tool_context = ""
    if analysis.action_type.runs_tools and analysis.tools_required:
        tool_results, tool_context = await execute_tools(agent_id, analysis.tools_required)

        blocked = integration_failure(tool_results)
        if blocked and analysis.action_type == ActionType.TOOL:
            return AgentResponse(
                response=blocked,
                tool_results_data=[r.model_dump() for r in tool_results],
                analysis=analysis.model_dump(mode="json"),
            )

    if should_search_documents(analysis, message):
        tool_context += await search_documents(company_id, agent_id, analysis, message)

    base_query = normalize_query(message)
    expanded = await expand_query(base_query)
    context = await build_dynamic_context(company_id, agent_id, build_search_queries(expanded), base_query)

    system_prompt = build_assistant_prompt(agent, context.tiered_context, message, tool_context)
    if channel_id:
        system_prompt += f"\n\n{CHANNEL_PROMPT_SUFFIX}"

    completion = await invoke_completion(
        [
            {"role": "system", "content": system_prompt},
            *history,
            {"role": "user", "content": input_text},
        ],
        provider=agent.ai_provider or settings.DEFAULT_AI_PROVIDER,
        model=agent.ai_model or settings.DEFAULT_AI_MODEL,
        max_tokens=agent.max_tokens or settings.DEFAULT_MAX_TOKENS,
        tools=[IMAGE_GENERATION_TOOL] if allow_image_tool else None,
    )

    response_text = message_content(completion)
    image_call = next(
        (c for c in message_tool_calls(completion) if c.get("function", {}).get("name") == IMAGE_TOOL_NAME),
        None,
    )
    if image_call is not None:
        response_text, image_result = await _handle_image_call(image_call, agent, message)
        tool_results.append(image_result)

    content_type, tool_results_data, override = derive_content_type(tool_results)
    if override:
        response_text = override

    logger.info(
        f"Agent {agent.name} replied ({content_type.value})",
        extra={"agent_id": agent_id, "channel_id": channel_id, "chain_index": chain_index},
    )

    return AgentResponse(
        response=response_text or EMPTY_RESPONSE,
        content_type=content_type,
        tool_results_data=tool_results_data,
        analysis=analysis.model_dump(mode="json"),
        context_used=context.context_used,
    )


def persist_agent_response(
    response: AgentResponse,
    *,
    agent_id: str,
    channel_id: str | None = None,
    conversation_id: str | None = None,
    parent_message_id: str | None = None,
    mention_type: MentionType | None = None,
    chain_index: int | None = None,
    agent_chain: list[str] | None = None,
) -> str:
    """
    Store an agent reply as an assistant message and return its id.

    Rows the pipeline already wrote (analysis placeholder, extraction error)
    only get their chain bookkeeping updated.
    """
    if response.persisted_message_id:
        updates: dict[str, Any] = {}
        if agent_chain is not None:
            updates["agent_chain"] = agent_chain
        if chain_index is not None:
            updates["chain_index"] = chain_index
        if updates:
            messages_db.update_message(response.persisted_message_id, updates)
        return response.persisted_message_id

    row: dict[str, Any] = {
        "role": MessageRole.ASSISTANT.value,
        "content": response.response,
        "agent_id": agent_id,
        "content_type": response.content_type.value,
        "tool_results": response.tool_results_data,
        "is_generating": False,
        "generation_progress": 100,
    }
    optional = {
        "channel_id": channel_id,
        "conversation_id": conversation_id,
        "parent_message_id": parent_message_id,
        "mention_type": mention_type.value if mention_type else None,
        "chain_index": chain_index,
        "agent_chain": agent_chain,
    }
    row.update({k: v for k, v in optional.items() if v is not None})
    return messages_db.insert_message(row)["id"]


def persist_error_response(
    content: str,
    *,
    agent_id: str,
    error_message: str,
    channel_id: str | None = None,
    conversation_id: str | None = None,
    parent_message_id: str | None = None,
    mention_type: MentionType | None = None,
    chain_index: int | None = None,
    agent_chain: list[str] | None = None,
) -> str:
    """Store a user-visible assistant error message and return its id."""
    row: dict[str, Any] = {
        "role": MessageRole.ASSISTANT.value,
        "content": content,
        "agent_id": agent_id,
        "content_type": ContentType.TEXT.value,
        "is_generating": False,
        "generation_progress": 0,
        "content_metadata": {"error": True, "can_retry": False, "error_message": error_message},
    }
    optional = {
        "channel_id": channel_id,
        "conversation_id": conversation_id,
        "parent_message_id": parent_message_id,
        "mention_type": mention_type.value if mention_type else None,
        "chain_index": chain_index,
        "agent_chain": agent_chain,
    }
    row.update({k: v for k, v in optional.items() if v is not None})
    return messages_db.insert_message(row)["id"]
