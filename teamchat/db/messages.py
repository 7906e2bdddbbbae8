"""Chat message persistence (chat_messages table)."""

from typing import Any

from teamchat.core.logging import get_logger
from teamchat.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "chat_messages"


def insert_message(data: dict[str, Any]) -> dict[str, Any]:
    """
    Insert a message row.

    Args:
        data: Column values; exactly one of conversation_id / channel_id must be set

    Returns:
        The inserted row

    Raises:
        ValueError: If the row is not scoped to exactly one of conversation / channel
        Exception: If database operation fails
    """
    if bool(data.get("conversation_id")) == bool(data.get("channel_id")):
        raise ValueError("message must belong to exactly one of conversation_id / channel_id")

    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).insert(data).execute()
        if not response.data:
            raise ValueError("No data returned from insert_message")

        row = response.data[0]
        logger.debug(
            f"Inserted {row.get('role')} message {row.get('id')}",
            extra={"message_id": row.get("id"), "channel_id": data.get("channel_id")},
        )
        return row

    except Exception as e:
        logger.error(f"Failed to insert message: {e}")
        raise


def update_message(message_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
    """
    Update a message row in place.

    Args:
        message_id: Message id
        updates: Columns to change

    Returns:
        Updated row, or None when no row matched

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).update(updates).eq("id", message_id).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to update message {message_id}: {e}", extra={"message_id": message_id})
        raise


def get_message(message_id: str) -> dict[str, Any] | None:
    """Get a message by id, or None."""
    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).select("*").eq("id", message_id).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to get message {message_id}: {e}")
        raise


def list_channel_history(channel_id: str, limit: int = 25) -> list[dict[str, str]]:
    """
    Recent channel messages as completion history.

    Args:
        channel_id: Channel id
        limit: Maximum messages

    Returns:
        Oldest-first list of {"role", "content"} dicts
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table(TABLE)
            .select("role, content, created_at, agent_id")
            .eq("channel_id", channel_id)
            .is_("conversation_id", "null")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to load channel history for {channel_id}: {e}")
        raise

    rows = list(reversed(response.data or []))
    return [{"role": row["role"], "content": row.get("content") or ""} for row in rows]


def list_conversation_history(conversation_id: str, limit: int = 25) -> list[dict[str, str]]:
    """Recent direct conversation messages as completion history (oldest first)."""
    supabase = get_supabase()

    try:
        response = (
            supabase.table(TABLE)
            .select("role, content, created_at")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to load conversation history for {conversation_id}: {e}")
        raise

    rows = list(reversed(response.data or []))
    return [{"role": row["role"], "content": row.get("content") or ""} for row in rows]


def list_messages(
    *,
    channel_id: str | None = None,
    conversation_id: str | None = None,
    message_ids: list[str] | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """
    List the most recent rows of one channel or conversation.

    Args:
        channel_id: Channel scope
        conversation_id: Conversation scope
        message_ids: Restrict to these ids within the scope
        limit: Maximum rows, counted from the newest

    Returns:
        Message rows ordered by created_at ascending
    """
    if bool(channel_id) == bool(conversation_id):
        raise ValueError("pass exactly one of channel_id / conversation_id")

    supabase = get_supabase()
    query = supabase.table(TABLE).select("*")
    if channel_id:
        query = query.eq("channel_id", channel_id).is_("conversation_id", "null")
    else:
        query = query.eq("conversation_id", conversation_id)
    if message_ids is not None:
        query = query.in_("id", message_ids)

    try:
        response = query.order("created_at", desc=True).limit(limit).execute()
    except Exception as e:
        logger.error(f"Failed to list messages: {e}")
        raise

    return list(reversed(response.data or []))
