"""Tests for query normalization and expansion."""

from unittest.mock import AsyncMock, patch

import pytest

from teamchat.context.query_expansion import (
    ExpandedQuery,
    build_search_queries,
    expand_query,
    normalize_query,
)
from teamchat.core.errors import UpstreamServiceError


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestNormalizeQuery:
    @pytest.mark.parametrize(
        "raw",
        [
            "  hello   world  ",
            "\tvacation\n\npolicy\r\n",
            "",
            "   ",
            "already normal",
            " a   b ",
        ],
    )
    def test_idempotent(self, raw):
        once = normalize_query(raw)
        assert normalize_query(once) == once

    def test_collapses_and_trims(self):
        assert normalize_query("  what   is\n\nour  PTO\tpolicy ") == "what is our PTO policy"

    def test_none_is_empty(self):
        assert normalize_query(None) == ""


class TestExpandQuery:
    @pytest.mark.asyncio
    async def test_json_array(self):
        mock = AsyncMock(return_value=_completion('["pto policy", "vacation rules", "time off", "extra"]'))
        with patch("teamchat.context.query_expansion.invoke_completion", mock):
            result = await expand_query("  PTO   policy ")

        assert result.original == "PTO policy"
        assert result.expanded == ["pto policy", "vacation rules", "time off"]

    @pytest.mark.asyncio
    async def test_non_json_splits_on_newlines_and_commas(self):
        mock = AsyncMock(return_value=_completion("vacation rules\n time off , , leave policy\nholidays"))
        with patch("teamchat.context.query_expansion.invoke_completion", mock):
            result = await expand_query("PTO policy")

        assert result.expanded == ["vacation rules", "time off", "leave policy"]

    @pytest.mark.asyncio
    async def test_request_failure_returns_original_only(self):
        mock = AsyncMock(side_effect=UpstreamServiceError("completion", "boom"))
        with patch("teamchat.context.query_expansion.invoke_completion", mock):
            result = await expand_query("PTO policy")

        assert result == ExpandedQuery(original="PTO policy", expanded=[])

    @pytest.mark.asyncio
    async def test_unexpected_error_never_raises(self):
        mock = AsyncMock(side_effect=RuntimeError("network down"))
        with patch("teamchat.context.query_expansion.invoke_completion", mock):
            result = await expand_query("PTO policy")

        assert result.expanded == []

    @pytest.mark.asyncio
    async def test_empty_query_skips_completion(self):
        mock = AsyncMock()
        with patch("teamchat.context.query_expansion.invoke_completion", mock):
            result = await expand_query("   ")

        mock.assert_not_called()
        assert result.original == ""


class TestBuildSearchQueries:
    def test_original_first_deduplicated_and_capped(self):
        expanded = ExpandedQuery(original="pto policy", expanded=["pto  policy", "time off", "leave", "holidays"])
        assert build_search_queries(expanded) == ["pto policy", "time off", "leave"]

    def test_empty_original(self):
        assert build_search_queries(ExpandedQuery(original="")) == []
