"""Tiered company knowledge assembly for agent prompts.

Four independent tiers feed one bounded context block:

1. Company profile  - structured company record, rendered only when complete
2. Internal documents - vector search over the company/agent corpus
3. External files   - search of the company's linked Google Drive folder
4. Playbook         - keyword match over playbook entries

Tiers run concurrently but are emitted in the fixed order above. A tier that
raises contributes nothing; the others are unaffected.
"""

import asyncio
from typing import Any

from teamchat.core.config import get_settings
from teamchat.core.embeddings import embed_query_async
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import ContextResult
from teamchat.db import companies as companies_db
from teamchat.db.supabase_client import get_supabase
from teamchat.services import edge_functions

logger = get_logger(__name__)

TIER_COMPANY_PROFILE = "company_profile"
TIER_INTERNAL_DOCUMENTS = "internal_documents"
TIER_EXTERNAL_FILES = "external_files"
TIER_PLAYBOOK = "playbook"

TIER_ORDER = (TIER_COMPANY_PROFILE, TIER_INTERNAL_DOCUMENTS, TIER_EXTERNAL_FILES, TIER_PLAYBOOK)

TIER_HEADERS = {
    TIER_COMPANY_PROFILE: "## Company Profile",
    TIER_INTERNAL_DOCUMENTS: "## Internal Documents",
    TIER_EXTERNAL_FILES: "## Google Drive References",
    TIER_PLAYBOOK: "## Playbook Procedures",
}

ENTRY_SEPARATOR = "\n\n---\n\n"
ELLIPSIS = "…"


# =============================================================================
# Formatting helpers
# =============================================================================


def truncate(text: str, limit: int, marker: str = ELLIPSIS) -> str:
    """Cut text to ``limit`` characters, appending ``marker`` when cut."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}{marker}"


def _format_similarity(value: Any) -> str:
    if isinstance(value, (int, float)):
        return f"{value:.3f}"
    return str(value)


def format_document(doc: dict[str, Any], max_chars: int, marker: str = ELLIPSIS) -> str:
    """Render one matched document."""
    return "\n".join(
        [
            f"Document: {doc.get('file_name') or 'Unknown'}",
            f"Similarity: {_format_similarity(doc.get('similarity'))}",
            f"Content: {truncate(doc.get('content') or '', max_chars, marker)}",
        ]
    )


def format_company_profile(os_data: dict[str, Any] | None) -> str:
    """
    Render the company profile digest.

    Returns '' unless the identity, market and brand sub-sections are all
    present; a partial record renders nothing.
    """
    if not os_data:
        return ""

    core = os_data.get("coreIdentityAndStrategicFoundation")
    market = os_data.get("customerAndMarketContext")
    brand = os_data.get("brandVoiceAndExpression")
    if not core or not market or not brand:
        return ""

    mission_and_vision = core.get("missionAndVision") or {}
    mission = mission_and_vision.get("missionStatement")
    vision = mission_and_vision.get("visionStatement")
    values = core.get("coreValues")
    positioning = core.get("positioningStatement")
    pain_points = (market.get("customerJourney") or {}).get("topPainPoints")
    value_props = market.get("valuePropositions")

    lines = [f"{core.get('companyOverview') or ''}\n"]
    if mission:
        lines.append(f"Mission: {mission}")
    if vision:
        lines.append(f"Vision: {vision}")
    if isinstance(values, list) and values:
        lines.append(f"Values: {', '.join(str(v) for v in values)}")
    if positioning:
        lines.append(
            f"Positioning: {positioning.get('uniqueBenefit') or ''} for {positioning.get('targetSegment') or ''}"
        )
    if pain_points:
        lines.append(f"Pain Points: {'; '.join(str(p) for p in pain_points)}")
    if value_props:
        lines.append(
            "Value Props: "
            + " | ".join(f"{vp.get('clientType')}: {vp.get('value')}" for vp in value_props)
        )

    return "\n".join(lines).strip()


def format_playbook_entry(entry: dict[str, Any], max_snippet: int) -> str:
    """Render one playbook entry as a short structured snippet."""
    lines = [f"Title: {entry.get('title') or 'Untitled Entry'}"]
    if entry.get("section_tag"):
        lines.append(f"Section: {entry['section_tag']}")
    if entry.get("status"):
        lines.append(f"Status: {entry['status']}")
    if entry.get("tags"):
        lines.append(f"Tags: {', '.join(entry['tags'])}")

    source = (entry.get("summary") or entry.get("description") or entry.get("content_markdown") or "").strip()
    if source:
        lines.append(f"Content: {truncate(source, max_snippet)}")
    return "\n".join(lines)


# =============================================================================
# Tiers
# =============================================================================


async def fetch_company_profile_tier(company_id: str) -> list[str]:
    """Company profile tier: zero or one section."""
    os_data = await asyncio.to_thread(companies_db.get_company_profile, company_id)
    digest = format_company_profile(os_data)
    return [digest] if digest else []


async def _match_documents(
    query: str,
    company_id: str,
    agent_id: str,
    match_count: int,
) -> list[dict[str, Any]]:
    settings = get_settings()
    embedding = await embed_query_async(query)

    def _rpc() -> list[dict[str, Any]]:
        response = (
            get_supabase()
            .rpc(
                "match_documents",
                {
                    "query_embedding": embedding,
                    "match_threshold": settings.CONTEXT_MATCH_THRESHOLD,
                    "match_count": match_count,
                    "p_company_id": company_id,
                    "p_agent_id": agent_id,
                },
            )
            .execute()
        )
        return response.data or []

    return await asyncio.to_thread(_rpc)


async def fetch_document_tier(company_id: str, agent_id: str, queries: list[str]) -> list[str]:
    """
    Internal documents tier.

    Each query is searched separately; results are deduplicated by document
    id across queries and capped in total. A failing query is skipped.
    """
    settings = get_settings()
    seen: set[str] = set()
    sections: list[str] = []

    for query in queries:
        try:
            matches = await _match_documents(query, company_id, agent_id, settings.CONTEXT_MAX_DOCUMENTS)
        except Exception as e:
            logger.warning(f"Document search failed for query '{query[:60]}': {e}", extra={"agent_id": agent_id})
            continue

        for doc in matches:
            doc_key = str(doc.get("id"))
            if doc_key in seen:
                continue
            seen.add(doc_key)
            sections.append(format_document(doc, settings.CONTEXT_MAX_DOCUMENT_CHARS))
            if len(sections) >= settings.CONTEXT_MAX_DOCUMENTS:
                return sections

    return sections


async def fetch_drive_tier(company_id: str, query: str) -> list[str]:
    """External files tier: linked Drive folder search; unreadable files are skipped."""
    if not query:
        return []

    settings = get_settings()
    folder_id = await asyncio.to_thread(companies_db.get_company_drive_folder, company_id)
    if not folder_id:
        return []

    files = await edge_functions.search_drive_files(query, folder_id, settings.DRIVE_MAX_RESULTS)
    files = files[: settings.DRIVE_MAX_FILES]
    if not files:
        return []

    contents = await asyncio.gather(
        *(edge_functions.fetch_drive_file_content(f) for f in files),
        return_exceptions=True,
    )

    sections = []
    for file, content in zip(files, contents):
        if isinstance(content, BaseException):
            logger.warning(f"Skipping Drive file {file.get('name')}: {content}")
            continue
        if not content:
            continue
        sections.append(
            "\n".join(
                [
                    f"Document: {file.get('name')}",
                    f"Link: {file.get('webViewLink') or 'N/A'}",
                    f"Content: {content}",
                ]
            )
        )
    return sections


async def fetch_playbook_tier(company_id: str, query: str) -> list[str]:
    """Playbook tier: newest matching entries as snippets."""
    settings = get_settings()
    entries = await asyncio.to_thread(
        companies_db.search_playbook_entries,
        company_id,
        query,
        settings.CONTEXT_MAX_PLAYBOOK_ENTRIES,
    )
    return [format_playbook_entry(e, settings.CONTEXT_MAX_PLAYBOOK_SNIPPET) for e in entries]


# =============================================================================
# Assembly
# =============================================================================


def _dedupe_queries(queries: list[str], limit: int) -> list[str]:
    unique: list[str] = []
    for q in queries:
        if q and q not in unique:
            unique.append(q)
    return unique[:limit]


async def build_dynamic_context(
    company_id: str | None,
    agent_id: str,
    queries: list[str],
    base_query: str,
) -> ContextResult:
    """
    Assemble the tiered context block for one prompt.

    Args:
        company_id: Company scope; None short-circuits to an empty result
        agent_id: Agent scope for document search
        queries: Search queries (deduplicated and capped here)
        base_query: Query used for the Drive and playbook tiers

    Returns:
        ContextResult with the joined block, per-tier sections and context_used
    """
    if not company_id:
        return ContextResult()

    settings = get_settings()
    search_queries = _dedupe_queries(queries, settings.CONTEXT_MAX_QUERIES)

    tiers = {
        TIER_COMPANY_PROFILE: fetch_company_profile_tier(company_id),
        TIER_INTERNAL_DOCUMENTS: fetch_document_tier(company_id, agent_id, search_queries),
        TIER_EXTERNAL_FILES: fetch_drive_tier(company_id, base_query),
        TIER_PLAYBOOK: fetch_playbook_tier(company_id, base_query),
    }
    results = await asyncio.gather(*tiers.values(), return_exceptions=True)

    sections: dict[str, str] = {}
    for tier, result in zip(tiers.keys(), results):
        if isinstance(result, BaseException):
            logger.warning(
                f"Context tier {tier} failed: {result}",
                extra={"agent_id": agent_id, "company_id": company_id},
            )
            continue
        if not result:
            continue
        if tier == TIER_COMPANY_PROFILE:
            sections[tier] = f"{TIER_HEADERS[tier]}\n{result[0]}"
        else:
            sections[tier] = f"{TIER_HEADERS[tier]}\n{ENTRY_SEPARATOR.join(result)}"

    ordered = [sections[t] for t in TIER_ORDER if t in sections]
    logger.debug(
        f"Built context with tiers {[t for t in TIER_ORDER if t in sections]}",
        extra={"agent_id": agent_id},
    )
    return ContextResult(
        tiered_context="\n\n".join(ordered),
        context_used=bool(ordered),
        sections=sections,
    )


async def search_knowledge_documents(company_id: str, agent_id: str, query: str) -> str:
    """
    Single-query document search used by the knowledge-keyword fallback.

    Per-document length adapts to the hit count: few hits keep more text.
    Returns '' when nothing matched or the search failed.
    """
    settings = get_settings()

    try:
        matches = await _match_documents(query, company_id, agent_id, settings.KNOWLEDGE_SEARCH_MATCH_COUNT)
    except Exception as e:
        logger.warning(f"Knowledge document search failed: {e}", extra={"agent_id": agent_id})
        return ""

    if not matches:
        logger.info("No relevant documents found in vector search", extra={"agent_id": agent_id})
        return ""

    max_chars = 20000 if len(matches) <= 3 else 10000
    return ENTRY_SEPARATOR.join(format_document(doc, max_chars, "...") for doc in matches)
