"""Tool and document dispatch for one agent reply.

Decides, from the intent analysis, which side work runs before the
completion call: agent tools, knowledge document search, or the detached
long-document analysis.
"""

import asyncio
import json
import re
from typing import Any

from teamchat.chains.document_analysis import (
    error_metadata,
    extract_attachment_text,
    placeholder_fields,
    submit_analysis_job,
)
from teamchat.context.dynamic_context import search_knowledge_documents
from teamchat.context.intent_analyzer import WEB_RESEARCH_TOOL
from teamchat.core.errors import DocumentExtractionError, IntegrationNotConnectedError
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import (
    ActionType,
    AgentResponse,
    Attachment,
    ContentType,
    IntentAnalysis,
    MentionType,
    MessageRole,
    ToolRequest,
    ToolResult,
)
from teamchat.db import messages as messages_db
from teamchat.services.edge_functions import INTEGRATION_NOT_CONNECTED, execute_tool
from teamchat.services.image_generation import IMAGE_TOOL_NAME

logger = get_logger(__name__)

KNOWLEDGE_KEYWORDS = re.compile(
    r"\b(sop|standard operating procedure|policy|procedure|handbook|guidelines|company doc|knowledge base)\b",
    re.IGNORECASE,
)

WEB_RESEARCH_INTRO = "I've completed comprehensive research on your query."


# =============================================================================
# Tools
# =============================================================================


def _render_web_research(result: ToolResult) -> str:
    data = result.results if isinstance(result.results, dict) else {}
    context = "\n\n[Web Research Results]\n"
    context += f"Query: {data.get('query', '')}\n\n"
    if data.get("summary") or result.summary:
        context += f"Summary:\n{data.get('summary') or result.summary}\n\n"
    if data.get("analysis"):
        context += f"Detailed Analysis:\n{data['analysis']}\n\n"
    insights = data.get("key_insights") or []
    if insights:
        context += "Key Insights:\n" + "".join(f"{i}. {insight}\n" for i, insight in enumerate(insights, start=1))
        context += "\n"
    sources = data.get("sources") or []
    if sources:
        context += "Sources:\n"
        for i, source in enumerate(sources, start=1):
            if isinstance(source, dict):
                context += f"{i}. {source.get('title', 'Source')} - {source.get('url', '')}\n"
            else:
                context += f"{i}. {source}\n"
    return context


def render_tool_context(results: list[ToolResult]) -> str:
    """Text block the completion service sees for successful tool results."""
    context = ""
    for result in results:
        if not result.success:
            continue
        if result.tool_id == WEB_RESEARCH_TOOL or result.reported_content_type == ContentType.WEB_RESEARCH:
            context += _render_web_research(result)
        else:
            payload = json.dumps(result.results, indent=2, default=str)
            context += f"\n\n[{result.tool_id} Results]: {result.summary or ''}\n{payload}"
    return context


async def execute_tools(agent_id: str, tool_requests: list[ToolRequest]) -> tuple[list[ToolResult], str]:
    """
    Run the requested tools one after another.

    A failing tool becomes a ``success=False`` entry; the batch always
    completes.

    Args:
        agent_id: Agent whose tool credentials are used
        tool_requests: Requests in priority order

    Returns:
        (results, tool context text for the prompt)
    """
    results: list[ToolResult] = []

    for request in sorted(tool_requests, key=lambda r: r.priority):
        try:
            data = await execute_tool(agent_id, request.tool_id, request.action, request.parameters)
        except IntegrationNotConnectedError as e:
            logger.warning(f"Tool {request.tool_id} needs an integration: {e}", extra={"agent_id": agent_id})
            results.append(
                ToolResult(
                    tool_id=request.tool_id,
                    success=False,
                    error=e.user_message,
                    error_code=INTEGRATION_NOT_CONNECTED,
                )
            )
            continue
        except Exception as e:
            logger.warning(f"Tool {request.tool_id} failed: {e}", extra={"agent_id": agent_id})
            results.append(ToolResult(tool_id=request.tool_id, success=False, error=str(e)))
            continue

        results.append(
            ToolResult(
                tool_id=data.get("tool_id") or request.tool_id,
                success=bool(data.get("success", True)),
                results=data.get("results", data.get("data")),
                summary=data.get("summary"),
                error=data.get("error"),
                metadata=data.get("metadata") or {},
            )
        )

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Executed {len(results)} tool(s), {succeeded} succeeded", extra={"agent_id": agent_id})
    return results, render_tool_context(results)


def integration_failure(results: list[ToolResult]) -> str | None:
    """User-facing message when every tool failed for a missing integration."""
    if not results or any(r.success for r in results):
        return None
    for result in results:
        if result.error_code == INTEGRATION_NOT_CONNECTED:
            return result.error
    return None


# =============================================================================
# Documents
# =============================================================================


def should_search_documents(analysis: IntentAnalysis, message: str) -> bool:
    """Classifier asked for it, or the message uses knowledge-seeking words."""
    return analysis.action_type.searches_documents or bool(KNOWLEDGE_KEYWORDS.search(message))


async def search_documents(
    company_id: str | None,
    agent_id: str,
    analysis: IntentAnalysis,
    message: str,
) -> str:
    """Run the knowledge document search; returns prompt text or ''."""
    if not company_id:
        return ""

    query = analysis.document_search_query or message
    documents = await search_knowledge_documents(company_id, agent_id, query)
    if not documents:
        return ""
    return f"\n\n[Document Search Results]:\n{documents}"


def is_document_analysis(analysis: IntentAnalysis, attachments: list[Attachment]) -> bool:
    return analysis.action_type == ActionType.LONG_RICH_TEXT and bool(attachments)


async def start_document_analysis(
    *,
    agent_id: str,
    user_message: str,
    attachment: Attachment,
    channel_id: str | None = None,
    conversation_id: str | None = None,
    parent_message_id: str | None = None,
    mention_type: MentionType | None = None,
    chain_index: int | None = None,
) -> AgentResponse:
    """
    Hand a long document off to the background analysis job.

    Extracts the attachment text first; on failure a terminal, retryable
    error message is persisted instead of a placeholder.

    Returns:
        AgentResponse whose ``persisted_message_id`` is the row already written
    """
    scope: dict[str, Any] = {
        "channel_id": channel_id,
        "conversation_id": conversation_id,
        "role": MessageRole.ASSISTANT.value,
        "agent_id": agent_id,
        "parent_message_id": parent_message_id,
        "mention_type": mention_type.value if mention_type else None,
        "chain_index": chain_index,
    }
    scope = {k: v for k, v in scope.items() if v is not None}

    try:
        document_content = await extract_attachment_text(attachment)
    except DocumentExtractionError as e:
        logger.warning(f"Document extraction failed: {e}", extra={"agent_id": agent_id, "channel_id": channel_id})
        if e.stage == "download":
            content = f'Unable to access the document "{attachment.name}". Please try again or re-upload the file.'
        else:
            content = f'Unable to parse the document "{attachment.name}": {e.detail}'
        row = await asyncio.to_thread(
            messages_db.insert_message,
            {
                **scope,
                "content": content,
                "content_type": ContentType.TEXT.value,
                "is_generating": False,
                "generation_progress": 0,
                "content_metadata": error_metadata(attachment, e.detail, user_message),
            },
        )
        return AgentResponse(
            response=content,
            analysis={"action_type": ActionType.LONG_RICH_TEXT.value, "error": e.detail},
            persisted_message_id=row["id"],
        )

    row = await asyncio.to_thread(
        messages_db.insert_message,
        {
            **scope,
            **placeholder_fields(attachment, user_message),
            "content_type": ContentType.DOCUMENT_ANALYSIS.value,
        },
    )

    job_id = submit_analysis_job(
        row["id"],
        user_message,
        agent_id,
        document_content,
        attachment,
        channel_id=channel_id,
    )
    logger.info(
        f"Document analysis job {job_id} started for message {row['id']}",
        extra={"agent_id": agent_id, "message_id": row["id"], "job_id": str(job_id)},
    )

    return AgentResponse(
        response=f'I\'m analyzing the document "{attachment.name}". This will take a moment...',
        content_type=ContentType.DOCUMENT_ANALYSIS,
        analysis={"action_type": ActionType.LONG_RICH_TEXT.value, "job_id": str(job_id)},
        document_processing=True,
        persisted_message_id=row["id"],
    )


# =============================================================================
# Content type
# =============================================================================


def _result_content_type(result: ToolResult) -> ContentType:
    if result.tool_id == IMAGE_TOOL_NAME:
        return ContentType.IMAGE_GENERATION
    if result.tool_id == WEB_RESEARCH_TOOL:
        return ContentType.WEB_RESEARCH
    return result.reported_content_type or ContentType.TEXT


def _web_research_text(result: ToolResult) -> str:
    data = result.results if isinstance(result.results, dict) else {}
    summary = data.get("summary") or result.summary
    if summary:
        return f"{WEB_RESEARCH_INTRO} Here's what I found:\n\n{summary}"
    return f"{WEB_RESEARCH_INTRO} Please see the detailed results below."


def derive_content_type(tool_results: list[ToolResult]) -> tuple[ContentType, Any, str | None]:
    """
    Rule-based content type from tool results.

    Returns:
        (content type, tool_results payload to persist, replacement response text or None)
    """
    successful = [r for r in tool_results if r.success]
    if not successful:
        return ContentType.TEXT, None, None

    if len(successful) == 1:
        result = successful[0]
        content_type = _result_content_type(result)
        override = _web_research_text(result) if content_type == ContentType.WEB_RESEARCH else None
        return content_type, result.results, override

    special = {_result_content_type(r) for r in successful} - {ContentType.TEXT}
    if len(special) != 1:
        return (
            ContentType.MIXED,
            {
                "results": [r.model_dump() for r in successful],
                "summary": f"Executed {len(successful)} tools",
            },
            None,
        )

    # One dominant non-text type among several results
    dominant = special.pop()
    result = next(r for r in successful if _result_content_type(r) == dominant)
    override = _web_research_text(result) if dominant == ContentType.WEB_RESEARCH else None
    return dominant, result.results, override
