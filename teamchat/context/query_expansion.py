"""Query normalization and completion-backed query expansion."""

import json
import re

from pydantic import BaseModel, Field

from teamchat.core.config import get_settings
from teamchat.core.llm import invoke_completion, message_content
from teamchat.core.logging import get_logger

logger = get_logger(__name__)

MAX_EXPANSIONS = 3

EXPANSION_SYSTEM_PROMPT = (
    "You expand user search queries into up to three concise variations. "
    "Return them as a JSON array of strings."
)

_WHITESPACE = re.compile(r"\s+")


class ExpandedQuery(BaseModel):
    """A canonical query and its paraphrases."""

    original: str
    expanded: list[str] = Field(default_factory=list)


def normalize_query(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return _WHITESPACE.sub(" ", text or "").strip()


def _parse_expansions(text: str) -> list[str]:
    try:
        parsed = json.loads(text)
    except ValueError:
        parts = [entry.strip() for entry in re.split(r"\n|,", text)]
        return [p for p in parts if p][:MAX_EXPANSIONS]

    if not isinstance(parsed, list):
        return []
    return [normalize_query(str(item)) for item in parsed if str(item).strip()][:MAX_EXPANSIONS]


async def expand_query(query: str) -> ExpandedQuery:
    """
    Ask the completion service for up to three paraphrases of the query.

    Never raises: on any failure the original query is returned alone.

    Args:
        query: Raw user query

    Returns:
        ExpandedQuery with the normalized original and its expansions
    """
    original = normalize_query(query)
    if not original:
        return ExpandedQuery(original="")

    settings = get_settings()

    try:
        response = await invoke_completion(
            [
                {"role": "system", "content": EXPANSION_SYSTEM_PROMPT},
                {"role": "user", "content": f"Expand this query for document search: {original}"},
            ],
            provider="openai",
            model=settings.QUERY_EXPANSION_MODEL,
            max_tokens=150,
            temperature=0.2,
        )
    except Exception as e:
        logger.warning(f"Query expansion failed, falling back to original: {e}")
        return ExpandedQuery(original=original)

    return ExpandedQuery(original=original, expanded=_parse_expansions(message_content(response)))


def build_search_queries(expanded: ExpandedQuery, limit: int = MAX_EXPANSIONS) -> list[str]:
    """Original first, then expansions; deduplicated and capped."""
    queries: list[str] = []
    for candidate in [expanded.original, *expanded.expanded]:
        candidate = normalize_query(candidate)
        if candidate and candidate not in queries:
            queries.append(candidate)
    return queries[:limit]
