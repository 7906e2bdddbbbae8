"""Context assembly for agent replies.

This module provides:
- Query normalization and expansion
- Tiered company knowledge retrieval (profile, documents, Drive, playbook)
- Prompt composition and chain transcripts
- @mention parsing
- Intent analysis
"""

from teamchat.context.query_expansion import (
    ExpandedQuery,
    build_search_queries,
    expand_query,
    normalize_query,
)

__all__ = [
    "ExpandedQuery",
    "build_search_queries",
    "expand_query",
    "normalize_query",
]
