"""Tests for chat API endpoints.

Covers channel sends with mention chains, direct conversations, ordered
message listing and the analysis retry endpoint via FastAPI TestClient,
with the store replaced by the in-memory Supabase fake.
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from teamchat.api.chat import GENERIC_ERROR_REPLY
from teamchat.core.errors import AccessDeniedError, UpstreamServiceError
from teamchat.core.schemas_chat import AgentResponse, ContentType, MentionType
from teamchat.main import app

CHANNEL_ID = "channel-1"
USER_ID = "user-1"


# ──────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────


@pytest.fixture
def client():
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def channel(fake_supabase):
    fake_supabase.add("channels", {"id": CHANNEL_ID, "company_id": "company-1"})
    fake_supabase.add("channel_members", {"channel_id": CHANNEL_ID, "user_id": USER_ID})
    for agent_id, name in (("agent-a", "Finance"), ("agent-b", "Ops")):
        fake_supabase.add(
            "channel_agents",
            {"channel_id": CHANNEL_ID, "agent_id": agent_id, "agents": {"id": agent_id, "name": name}},
        )
    return fake_supabase


@pytest.fixture
def process_mock():
    mock = AsyncMock(return_value=AgentResponse(response="Budget is 10k."))
    with patch("teamchat.api.chat.process_agent_message", mock):
        yield mock


@pytest.fixture
def start_chain_mock():
    job_id = uuid4()
    with patch("teamchat.api.chat.start_chain", return_value=job_id) as mock:
        mock.job_id = job_id
        yield mock


def _messages(fake_supabase, role=None):
    rows = fake_supabase.rows("chat_messages")
    return [r for r in rows if role is None or r["role"] == role]


# ──────────────────────────────────────────────────────────────────────
# Channel sends
# ──────────────────────────────────────────────────────────────────────


class TestSendChannelMessage:
    def test_non_member_is_rejected(self, client, channel, process_mock):
        response = client.post(
            f"/v1/channels/{CHANNEL_ID}/messages",
            json={"user_id": "stranger", "text": "@Finance hi"},
        )

        assert response.status_code == 403
        assert response.json()["detail"] == AccessDeniedError.user_message
        assert _messages(channel) == []
        process_mock.assert_not_called()

    def test_primary_replies_and_chain_is_queued(self, client, channel, process_mock, start_chain_mock):
        response = client.post(
            f"/v1/channels/{CHANNEL_ID}/messages",
            json={"user_id": USER_ID, "text": "@Finance @Ops plan the offsite", "client_message_id": "client-1-abc"},
        )

        assert response.status_code == 200
        data = response.json()
        user_row = _messages(channel, "user")[0]
        reply_row = _messages(channel, "assistant")[0]

        assert data["message_id"] == user_row["id"]
        assert data["response_message_id"] == reply_row["id"]
        assert data["response"] == "Budget is 10k."
        assert data["chain_job_id"] == str(start_chain_mock.job_id)
        assert [m["agent_id"] for m in data["mentions"]] == ["agent-a", "agent-b"]

        assert user_row["client_message_id"] == "client-1-abc"
        assert reply_row["agent_id"] == "agent-a"
        assert reply_row["chain_index"] == 0
        assert reply_row["agent_chain"] == ["agent-b"]
        assert reply_row["mention_type"] == "direct_mention"
        assert reply_row["parent_message_id"] == user_row["id"]

        kwargs = process_mock.call_args.kwargs
        assert kwargs["agent_id"] == "agent-a"
        assert kwargs["company_id"] == "company-1"
        assert kwargs["mention_type"] == MentionType.DIRECT_MENTION
        assert kwargs["chain_index"] == 0

        args, chain_kwargs = start_chain_mock.call_args
        assert [r.agent_id for r in args[1]] == ["agent-b"]
        assert args[4] == user_row["id"]
        assert args[5][0].content == "Budget is 10k."
        assert chain_kwargs["chain_index"] == 1

    def test_message_without_mentions_is_only_stored(self, client, channel, process_mock, start_chain_mock):
        response = client.post(f"/v1/channels/{CHANNEL_ID}/messages", json={"user_id": USER_ID, "text": "lunch?"})

        assert response.status_code == 200
        assert response.json()["response_message_id"] is None
        assert len(_messages(channel)) == 1
        process_mock.assert_not_called()
        start_chain_mock.assert_not_called()

    def test_primary_failure_stores_error_and_drops_chain(self, client, channel, process_mock, start_chain_mock):
        process_mock.side_effect = RuntimeError("boom")

        response = client.post(
            f"/v1/channels/{CHANNEL_ID}/messages",
            json={"user_id": USER_ID, "text": "@Finance @Ops plan the offsite"},
        )

        assert response.status_code == 200
        assert response.json()["response"] == GENERIC_ERROR_REPLY
        error_row = _messages(channel, "assistant")[0]
        assert error_row["content"] == GENERIC_ERROR_REPLY
        assert error_row["agent_chain"] == []
        assert error_row["content_metadata"]["error"] is True
        start_chain_mock.assert_not_called()

    def test_pipeline_error_uses_its_user_message(self, client, channel, process_mock, start_chain_mock):
        process_mock.side_effect = UpstreamServiceError("completion", "timed out")

        response = client.post(f"/v1/channels/{CHANNEL_ID}/messages", json={"user_id": USER_ID, "text": "@Finance hi"})

        assert response.json()["response"] == UpstreamServiceError.user_message

    def test_document_acknowledgement_updates_existing_row(self, client, channel, process_mock, start_chain_mock):
        placeholder = channel.add(
            "chat_messages",
            {"channel_id": CHANNEL_ID, "role": "assistant", "agent_id": "agent-a", "is_generating": True},
        )
        process_mock.return_value = AgentResponse(
            response="I'm analyzing the document \"q3.pdf\". This will take a moment...",
            content_type=ContentType.DOCUMENT_ANALYSIS,
            document_processing=True,
            persisted_message_id=placeholder["id"],
        )

        response = client.post(
            f"/v1/channels/{CHANNEL_ID}/messages",
            json={
                "user_id": USER_ID,
                "text": "@Finance @Ops summarize this file",
                "attachments": [{"name": "q3.pdf", "path": "user-1/q3.pdf", "type": "application/pdf"}],
            },
        )

        data = response.json()
        assert data["acknowledged"] is True
        assert data["content_type"] == "document_analysis"
        assert data["response_message_id"] == placeholder["id"]
        assert len(_messages(channel, "assistant")) == 1
        assert _messages(channel, "assistant")[0]["agent_chain"] == ["agent-b"]
        assert process_mock.call_args.kwargs["attachments"][0].path == "user-1/q3.pdf"


# ──────────────────────────────────────────────────────────────────────
# Direct conversations
# ──────────────────────────────────────────────────────────────────────


class TestConversations:
    def _send(self, client, text="What's our runway?"):
        return client.post(
            "/v1/conversations/messages",
            json={"user_id": USER_ID, "agent_id": "agent-a", "company_id": "company-1", "text": text},
        )

    def test_first_message_creates_conversation(self, client, fake_supabase, process_mock):
        first = self._send(client).json()
        second = self._send(client, "And burn?").json()

        assert first["conversation_id"] == second["conversation_id"]
        assert len(fake_supabase.rows("chat_conversations")) == 1

        replies = _messages(fake_supabase, "assistant")
        assert len(replies) == 2
        assert all(r["conversation_id"] == first["conversation_id"] for r in replies)
        assert all("channel_id" not in r for r in replies)
        assert process_mock.call_args.kwargs["mention_type"] == MentionType.DIRECT_CONVERSATION

    def test_agent_failure_stores_error_reply(self, client, fake_supabase, process_mock):
        process_mock.side_effect = LookupError("Agent agent-a not found")

        data = self._send(client).json()

        assert data["response"] == GENERIC_ERROR_REPLY
        assert _messages(fake_supabase, "assistant")[0]["content_metadata"]["error"] is True

    def test_list_requires_owner(self, client, fake_supabase, process_mock):
        conversation_id = self._send(client).json()["conversation_id"]

        owned = client.get(f"/v1/conversations/{conversation_id}/messages", params={"user_id": USER_ID})
        other = client.get(f"/v1/conversations/{conversation_id}/messages", params={"user_id": "user-2"})
        missing = client.get("/v1/conversations/nope/messages", params={"user_id": USER_ID})

        assert owned.status_code == 200
        assert [m["role"] for m in owned.json()["messages"]] == ["user", "assistant"]
        assert other.status_code == 403
        assert missing.status_code == 404


# ──────────────────────────────────────────────────────────────────────
# Listing
# ──────────────────────────────────────────────────────────────────────


class TestListChannelMessages:
    def test_ordered_by_created_at_then_chain_index(self, client, channel):
        base = {"channel_id": CHANNEL_ID, "role": "assistant", "created_at": "2026-02-01T00:00:05+00:00"}
        channel.add("chat_messages", {**base, "id": "b", "chain_index": 1})
        channel.add("chat_messages", {**base, "id": "a", "chain_index": 0})
        channel.add(
            "chat_messages",
            {"id": "u", "channel_id": CHANNEL_ID, "role": "user", "created_at": "2026-02-01T00:00:01+00:00"},
        )

        response = client.get(f"/v1/channels/{CHANNEL_ID}/messages", params={"user_id": USER_ID})

        assert response.status_code == 200
        assert [m["id"] for m in response.json()["messages"]] == ["u", "a", "b"]
        assert response.json()["count"] == 3

    def test_non_member(self, client, channel):
        response = client.get(f"/v1/channels/{CHANNEL_ID}/messages", params={"user_id": "stranger"})
        assert response.status_code == 403


# ──────────────────────────────────────────────────────────────────────
# Retry
# ──────────────────────────────────────────────────────────────────────


class TestRetryAnalysis:
    def test_missing_message(self, client, fake_supabase):
        assert client.post("/v1/messages/missing/retry-analysis").status_code == 404

    def test_not_retryable(self, client, fake_supabase):
        row = fake_supabase.add(
            "chat_messages",
            {"channel_id": CHANNEL_ID, "role": "assistant", "agent_id": "agent-a", "content_metadata": {}},
        )
        assert client.post(f"/v1/messages/{row['id']}/retry-analysis").status_code == 409

    def test_retry_started(self, client):
        result = {"message_id": "m1", "job_id": str(uuid4()), "retried": True}
        with patch("teamchat.api.chat.retry_document_analysis", AsyncMock(return_value=result)):
            response = client.post("/v1/messages/m1/retry-analysis")

        assert response.status_code == 200
        assert response.json() == result
