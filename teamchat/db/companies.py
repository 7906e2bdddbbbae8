"""Company knowledge lookups: company profile, Drive folder, playbook, channels."""

from typing import Any

from teamchat.core.logging import get_logger
from teamchat.db.supabase_client import get_supabase

logger = get_logger(__name__)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def get_company_profile(company_id: str) -> dict[str, Any] | None:
    """Structured company profile (os_data) or None."""
    supabase = get_supabase()

    response = (
        supabase.table("company_os")
        .select("os_data, metadata")
        .eq("company_id", company_id)
        .limit(1)
        .execute()
    )
    if not response.data:
        return None
    return response.data[0].get("os_data") or None


def get_company_drive_folder(company_id: str) -> str | None:
    """Linked Google Drive folder id for the company, if any."""
    supabase = get_supabase()

    response = (
        supabase.table("companies")
        .select("google_drive_folder_id, google_drive_folder_name")
        .eq("id", company_id)
        .limit(1)
        .execute()
    )
    if not response.data:
        return None
    return response.data[0].get("google_drive_folder_id") or None


def search_playbook_entries(company_id: str, query: str | None, limit: int = 3) -> list[dict[str, Any]]:
    """
    Playbook entries matching the query, most recently updated first.

    Args:
        company_id: Company id
        query: Free text matched case-insensitively against title/description/markdown
        limit: Maximum entries

    Returns:
        Playbook entry rows
    """
    supabase = get_supabase()

    builder = (
        supabase.table("playbook_entries")
        .select("id, title, description, summary, status, tags, section_tag, content_markdown")
        .eq("company_id", company_id)
    )
    if query:
        escaped = escape_like(query)
        builder = builder.or_(
            f"title.ilike.%{escaped}%,description.ilike.%{escaped}%,content_markdown.ilike.%{escaped}%"
        )

    response = builder.order("updated_at", desc=True).limit(limit).execute()
    return response.data or []


def get_channel_company(channel_id: str) -> str | None:
    """Company that owns the channel."""
    supabase = get_supabase()

    try:
        response = supabase.table("channels").select("company_id").eq("id", channel_id).limit(1).execute()
    except Exception as e:
        logger.error(f"Failed to fetch channel {channel_id}: {e}")
        raise

    if not response.data:
        return None
    return response.data[0].get("company_id")
