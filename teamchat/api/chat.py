"""API endpoints for sending and reading chat messages."""

import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Path, Query
from pydantic import BaseModel, Field

from teamchat.chains.agent_chain import start_chain
from teamchat.chains.agent_pipeline import (
    persist_agent_response,
    persist_error_response,
    process_agent_message,
)
from teamchat.chains.document_analysis import retry_document_analysis
from teamchat.client.reconciler import MessageReconciler
from teamchat.context.mentions import detect_agent_mentions
from teamchat.core.errors import AccessDeniedError, TeamChatError
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import (
    AgentReference,
    AgentResponse,
    Attachment,
    ContentType,
    MentionType,
    MessageRole,
    PriorResponse,
)
from teamchat.db import messages as messages_db
from teamchat.db.agents import is_channel_member, list_channel_agents
from teamchat.db.companies import get_channel_company
from teamchat.db.conversations import get_conversation, get_or_create_conversation, touch_conversation

logger = get_logger(__name__)

router = APIRouter()

GENERIC_ERROR_REPLY = "I'm sorry, I ran into a problem answering that. Please try again."


# ============================================================================
# Request/Response Models
# ============================================================================


class SendChannelMessageRequest(BaseModel):
    """Request body for posting to a channel."""

    user_id: str = Field(..., description="Sender")
    text: str = Field(default="", description="Message text")
    attachments: list[Attachment] = Field(default_factory=list)
    client_message_id: str | None = Field(default=None, description="Client send attempt id")


class SendConversationMessageRequest(BaseModel):
    """Request body for a direct conversation with one agent."""

    user_id: str
    agent_id: str
    company_id: str
    text: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    client_message_id: str | None = None


class SendMessageResponse(BaseModel):
    """Result of a send: the stored user message and the synchronous reply."""

    message_id: str
    response_message_id: str | None = None
    response: str | None = None
    content_type: ContentType = ContentType.TEXT
    acknowledged: bool = False
    chain_job_id: str | None = None
    mentions: list[AgentReference] = Field(default_factory=list)
    conversation_id: str | None = None


# ============================================================================
# Helpers
# ============================================================================


def _user_row(body: SendChannelMessageRequest | SendConversationMessageRequest, **scope: str) -> dict[str, Any]:
    row: dict[str, Any] = {
        "role": MessageRole.USER.value,
        "content": body.text,
        "user_id": body.user_id,
        "attachments": [a.model_dump() for a in body.attachments],
        **scope,
    }
    if body.client_message_id:
        row["client_message_id"] = body.client_message_id
    return row


def _error_reply(error: Exception) -> str:
    if isinstance(error, TeamChatError):
        return error.user_message
    return GENERIC_ERROR_REPLY


def _ordered(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    reconciler = MessageReconciler()
    reconciler.apply_rows(rows)
    return [m.model_dump(mode="json") for m in reconciler.messages]


# ============================================================================
# Channels
# ============================================================================


@router.post("/channels/{channel_id}/messages", response_model=SendMessageResponse)
async def send_channel_message(
    body: SendChannelMessageRequest,
    channel_id: str = Path(..., description="Channel id"),
) -> SendMessageResponse:
    """
    Post a message to a channel and run the mentioned agents.

    The first mentioned agent answers within this request; later agents
    run as a background chain job.

    Raises:
        HTTPException 403: If the sender is not a channel member
        HTTPException 500: If the message could not be stored
    """
    try:
        if not is_channel_member(channel_id, body.user_id):
            raise AccessDeniedError(f"user {body.user_id} is not a member of channel {channel_id}")

        user_message = messages_db.insert_message(_user_row(body, channel_id=channel_id))
        mentions = detect_agent_mentions(body.text, list_channel_agents(channel_id))
    except AccessDeniedError as e:
        logger.warning(str(e), extra={"channel_id": channel_id})
        raise HTTPException(status_code=403, detail=e.user_message) from e
    except Exception as e:
        logger.exception(f"Failed to store channel message in {channel_id}")
        raise HTTPException(status_code=500, detail="Failed to send message") from e

    result = SendMessageResponse(message_id=user_message["id"], mentions=mentions)
    if not mentions:
        return result

    primary, chained = mentions[0], mentions[1:]
    remaining_ids = [r.agent_id for r in chained]

    try:
        company_id = await asyncio.to_thread(get_channel_company, channel_id)
        reply: AgentResponse = await process_agent_message(
            agent_id=primary.agent_id,
            message=body.text,
            channel_id=channel_id,
            company_id=company_id,
            attachments=body.attachments,
            parent_message_id=user_message["id"],
            mention_type=MentionType.DIRECT_MENTION,
            chain_index=0,
        )
        reply_id = persist_agent_response(
            reply,
            agent_id=primary.agent_id,
            channel_id=channel_id,
            parent_message_id=user_message["id"],
            mention_type=MentionType.DIRECT_MENTION,
            chain_index=0,
            agent_chain=remaining_ids,
        )
    except Exception as e:
        logger.exception(
            f"Primary agent {primary.agent_id} failed",
            extra={"channel_id": channel_id, "agent_id": primary.agent_id},
        )
        content = _error_reply(e)
        try:
            result.response_message_id = persist_error_response(
                content,
                agent_id=primary.agent_id,
                error_message=str(e),
                channel_id=channel_id,
                parent_message_id=user_message["id"],
                mention_type=MentionType.DIRECT_MENTION,
                chain_index=0,
                agent_chain=[],
            )
        except Exception:
            logger.exception("Failed to store error reply", extra={"channel_id": channel_id})
        result.response = content
        return result

    result.response_message_id = reply_id
    result.response = reply.response
    result.content_type = reply.content_type
    result.acknowledged = reply.document_processing

    try:
        job_id = start_chain(
            body.text,
            chained,
            channel_id,
            body.attachments,
            user_message["id"],
            [PriorResponse(agent_id=primary.agent_id, agent_name=primary.agent_name, content=reply.response)],
            chain_index=1,
        )
        result.chain_job_id = str(job_id) if job_id else None
    except Exception:
        logger.exception("Failed to queue agent chain", extra={"channel_id": channel_id})

    return result


@router.get("/channels/{channel_id}/messages")
async def list_channel_messages(
    channel_id: str = Path(..., description="Channel id"),
    user_id: str = Query(..., description="Caller"),
    limit: int = Query(200, ge=1, le=1000),
) -> dict:
    """
    Ordered, deduplicated messages of a channel.

    Raises:
        HTTPException 403: If the caller is not a channel member
    """
    try:
        if not is_channel_member(channel_id, user_id):
            raise HTTPException(status_code=403, detail=AccessDeniedError.user_message)

        messages = _ordered(messages_db.list_messages(channel_id=channel_id, limit=limit))
        return {"messages": messages, "count": len(messages)}

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to list messages for channel {channel_id}")
        raise HTTPException(status_code=500, detail="Failed to list messages") from e


# ============================================================================
# Direct conversations
# ============================================================================


@router.post("/conversations/messages", response_model=SendMessageResponse)
async def send_conversation_message(body: SendConversationMessageRequest) -> SendMessageResponse:
    """
    Send a message in the caller's conversation with one agent.

    The conversation for (user, agent, company) is created on first use.
    """
    try:
        conversation = get_or_create_conversation(body.user_id, body.agent_id, body.company_id)
        user_message = messages_db.insert_message(_user_row(body, conversation_id=conversation["id"]))
    except Exception as e:
        logger.exception(f"Failed to store conversation message for agent {body.agent_id}")
        raise HTTPException(status_code=500, detail="Failed to send message") from e

    result = SendMessageResponse(message_id=user_message["id"], conversation_id=conversation["id"])

    try:
        reply = await process_agent_message(
            agent_id=body.agent_id,
            message=body.text,
            conversation_id=conversation["id"],
            company_id=body.company_id,
            attachments=body.attachments,
            parent_message_id=user_message["id"],
            mention_type=MentionType.DIRECT_CONVERSATION,
        )
        result.response_message_id = persist_agent_response(
            reply,
            agent_id=body.agent_id,
            conversation_id=conversation["id"],
            mention_type=MentionType.DIRECT_CONVERSATION,
        )
        result.response = reply.response
        result.content_type = reply.content_type
        result.acknowledged = reply.document_processing
    except Exception as e:
        logger.exception(
            f"Agent {body.agent_id} failed in conversation {conversation['id']}",
            extra={"agent_id": body.agent_id},
        )
        result.response = _error_reply(e)
        try:
            result.response_message_id = persist_error_response(
                result.response,
                agent_id=body.agent_id,
                error_message=str(e),
                conversation_id=conversation["id"],
                mention_type=MentionType.DIRECT_CONVERSATION,
            )
        except Exception:
            logger.exception("Failed to store error reply")

    touch_conversation(conversation["id"])
    return result


@router.get("/conversations/{conversation_id}/messages")
async def list_conversation_messages(
    conversation_id: str = Path(..., description="Conversation id"),
    user_id: str = Query(..., description="Caller"),
    limit: int = Query(200, ge=1, le=1000),
) -> dict:
    """
    Ordered, deduplicated messages of a direct conversation.

    Raises:
        HTTPException 403: If the caller does not own the conversation
        HTTPException 404: If the conversation does not exist
    """
    try:
        conversation = get_conversation(conversation_id)
        if not conversation:
            raise HTTPException(status_code=404, detail="Conversation not found")
        if conversation.get("user_id") != user_id:
            raise HTTPException(status_code=403, detail="Access denied: this conversation belongs to another user.")

        messages = _ordered(messages_db.list_messages(conversation_id=conversation_id, limit=limit))
        return {"messages": messages, "count": len(messages)}

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to list messages for conversation {conversation_id}")
        raise HTTPException(status_code=500, detail="Failed to list messages") from e


# ============================================================================
# Document analysis retry
# ============================================================================


@router.post("/messages/{message_id}/retry-analysis")
async def retry_analysis(message_id: str = Path(..., description="Failed analysis message")) -> dict:
    """
    Retry a document analysis that ended in the retryable error state.

    Raises:
        HTTPException 404: If the message does not exist
        HTTPException 409: If the message is not retryable
    """
    try:
        return await retry_document_analysis(message_id)

    except LookupError as e:
        raise HTTPException(status_code=404, detail="Message not found") from e
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except Exception as e:
        logger.exception(f"Failed to retry analysis for message {message_id}")
        raise HTTPException(status_code=500, detail="Failed to retry analysis") from e
