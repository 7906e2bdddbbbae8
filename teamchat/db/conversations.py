"""Direct (user <-> agent) conversation persistence."""

from datetime import datetime, timezone  # noqa: UP035
from typing import Any

from teamchat.core.logging import get_logger
from teamchat.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "chat_conversations"
CONVERSATION_KEY = "user_id,agent_id,company_id"


def get_or_create_conversation(user_id: str, agent_id: str, company_id: str) -> dict[str, Any]:
    """
    Get the conversation for (user, agent, company), creating it if missing.

    Creation is an upsert on the unique key with duplicates ignored, so
    concurrent callers never error; every caller then re-reads the single row.

    Args:
        user_id: User id
        agent_id: Agent id
        company_id: Company id

    Returns:
        The conversation row

    Raises:
        ValueError: If the row cannot be read back after the upsert
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        supabase.table(TABLE).upsert(
            {
                "user_id": user_id,
                "agent_id": agent_id,
                "company_id": company_id,
            },
            on_conflict=CONVERSATION_KEY,
            ignore_duplicates=True,
        ).execute()

        response = (
            supabase.table(TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("agent_id", agent_id)
            .eq("company_id", company_id)
            .limit(1)
            .execute()
        )

    except Exception as e:
        logger.error(
            f"Failed to get or create conversation: {e}",
            extra={"agent_id": agent_id, "company_id": company_id},
        )
        raise

    if not response.data:
        raise ValueError(f"Conversation for agent {agent_id} missing after upsert")

    return response.data[0]


def get_conversation(conversation_id: str) -> dict[str, Any] | None:
    """Get a conversation by id, or None."""
    supabase = get_supabase()

    try:
        response = supabase.table(TABLE).select("*").eq("id", conversation_id).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to get conversation {conversation_id}: {e}")
        raise


def touch_conversation(conversation_id: str) -> None:
    """Bump updated_at so the conversation sorts first in the sidebar."""
    supabase = get_supabase()

    try:
        supabase.table(TABLE).update(
            {"updated_at": datetime.now(timezone.utc).isoformat()}  # noqa: UP017
        ).eq("id", conversation_id).execute()

    except Exception as e:
        logger.warning(f"Failed to touch conversation {conversation_id}: {e}")
