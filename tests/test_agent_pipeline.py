"""Tests for per-agent message processing with mocked services."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from teamchat.chains import agent_pipeline
from teamchat.chains.agent_pipeline import (
    CHANNEL_PROMPT_SUFFIX,
    EMPTY_RESPONSE,
    persist_agent_response,
    persist_error_response,
    process_agent_message,
)
from teamchat.context.query_expansion import ExpandedQuery
from teamchat.core.schemas_chat import (
    ActionType,
    AgentProfile,
    AgentResponse,
    Attachment,
    ContentType,
    ContextResult,
    IntentAnalysis,
    MentionType,
    PriorResponse,
    ToolRequest,
    ToolResult,
)

CHANNEL_ID = "channel-1"
AGENT = AgentProfile(id="agent-1", name="Finance", company_id="company-1", ai_provider="anthropic", ai_model="claude-x")


def _completion(content: str = "", tool_calls=None) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content, "tool_calls": tool_calls}}]}


@pytest.fixture
def services(fake_supabase):
    """Patch every service the pipeline calls; tests adjust the mocks."""
    mocks = {
        "get_agent": patch.object(agent_pipeline, "get_agent", return_value=AGENT),
        "analyze_intent": patch.object(agent_pipeline, "analyze_intent", AsyncMock(return_value=IntentAnalysis())),
        "expand_query": patch.object(
            agent_pipeline, "expand_query", AsyncMock(side_effect=lambda q: ExpandedQuery(original=q))
        ),
        "build_dynamic_context": patch.object(
            agent_pipeline,
            "build_dynamic_context",
            AsyncMock(return_value=ContextResult(tiered_context="## Company Profile\nAcme", context_used=True)),
        ),
        "invoke_completion": patch.object(
            agent_pipeline, "invoke_completion", AsyncMock(return_value=_completion("Runway is 18 months."))
        ),
        "execute_tools": patch.object(agent_pipeline, "execute_tools", AsyncMock(return_value=([], ""))),
        "search_documents": patch.object(agent_pipeline, "search_documents", AsyncMock(return_value="")),
        "start_document_analysis": patch.object(agent_pipeline, "start_document_analysis", AsyncMock()),
        "generate_image": patch.object(agent_pipeline, "generate_image", AsyncMock()),
    }
    started = {name: p.start() for name, p in mocks.items()}
    started["db"] = fake_supabase
    yield started
    for p in mocks.values():
        p.stop()


class TestProcessAgentMessage:
    @pytest.mark.asyncio
    async def test_plain_reply(self, services):
        services["db"].add("chat_messages", {"channel_id": CHANNEL_ID, "role": "assistant", "content": "Earlier answer"})
        services["db"].add("chat_messages", {"channel_id": CHANNEL_ID, "role": "user", "content": "What's our runway?"})

        response = await process_agent_message(agent_id="agent-1", message="What's our runway?", channel_id=CHANNEL_ID)

        assert response.response == "Runway is 18 months."
        assert response.content_type == ContentType.TEXT
        assert response.context_used is True

        messages = services["invoke_completion"].call_args.args[0]
        assert messages[0]["role"] == "system"
        assert "# COMPANY KNOWLEDGE\n## Company Profile\nAcme" in messages[0]["content"]
        assert messages[0]["content"].endswith(CHANNEL_PROMPT_SUFFIX)
        # Triggering message is not duplicated from history
        assert messages[1:] == [
            {"role": "assistant", "content": "Earlier answer"},
            {"role": "user", "content": "What's our runway?"},
        ]

        kwargs = services["invoke_completion"].call_args.kwargs
        assert kwargs["provider"] == "anthropic"
        assert kwargs["model"] == "claude-x"
        assert kwargs["tools"][0]["function"]["name"] == "generate_image"
        assert services["build_dynamic_context"].call_args.args[:2] == ("company-1", "agent-1")

    @pytest.mark.asyncio
    async def test_missing_agent(self, services):
        services["get_agent"].return_value = None
        with pytest.raises(LookupError):
            await process_agent_message(agent_id="agent-9", message="hi", channel_id=CHANNEL_ID)

    @pytest.mark.asyncio
    async def test_chain_transcript_is_the_user_turn(self, services):
        prior = [PriorResponse(agent_id="agent-0", agent_name="Ops", content="Venue booked.")]

        await process_agent_message(
            agent_id="agent-1",
            message="Plan the offsite",
            channel_id=CHANNEL_ID,
            previous_responses=prior,
            allow_image_tool=False,
        )

        user_turn = services["invoke_completion"].call_args.args[0][-1]["content"]
        assert user_turn.startswith("Plan the offsite\n\n")
        assert "Ops: Venue booked." in user_turn
        assert services["invoke_completion"].call_args.kwargs["tools"] is None

    @pytest.mark.asyncio
    async def test_document_analysis_is_handed_off(self, services):
        attachment = Attachment(name="q3.pdf", path="u/q3.pdf")
        services["analyze_intent"].return_value = IntentAnalysis(action_type=ActionType.LONG_RICH_TEXT)
        ack = AgentResponse(response="analyzing", document_processing=True, persisted_message_id="m9")
        services["start_document_analysis"].return_value = ack

        response = await process_agent_message(
            agent_id="agent-1",
            message="Summarize this file",
            channel_id=CHANNEL_ID,
            attachments=[attachment],
            mention_type=MentionType.DIRECT_MENTION,
            chain_index=0,
        )

        assert response is ack
        assert services["start_document_analysis"].call_args.kwargs["attachment"] == attachment
        services["invoke_completion"].assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_integration_short_circuits(self, services):
        services["analyze_intent"].return_value = IntentAnalysis(
            action_type=ActionType.TOOL, tools_required=[ToolRequest(tool_id="tool-gmail")]
        )
        blocked = ToolResult(
            tool_id="tool-gmail", success=False, error="Connect Gmail first.", error_code="integration_not_connected"
        )
        services["execute_tools"].return_value = ([blocked], "")

        response = await process_agent_message(agent_id="agent-1", message="Check my inbox", channel_id=CHANNEL_ID)

        assert response.response == "Connect Gmail first."
        services["invoke_completion"].assert_not_called()

    @pytest.mark.asyncio
    async def test_web_research_overrides_text(self, services):
        services["analyze_intent"].return_value = IntentAnalysis(
            action_type=ActionType.TOOL, tools_required=[ToolRequest(tool_id="tool-research", action="research")]
        )
        research = ToolResult(tool_id="openai_web_research", success=True, results={"summary": "Prices fell."})
        services["execute_tools"].return_value = ([research], "\n\n[Web Research Results]\n")

        response = await process_agent_message(agent_id="agent-1", message="Research EV prices", channel_id=CHANNEL_ID)

        assert response.content_type == ContentType.WEB_RESEARCH
        assert response.response.endswith("Here's what I found:\n\nPrices fell.")
        assert "[Web Research Results]" in services["invoke_completion"].call_args.args[0][0]["content"]

    @pytest.mark.asyncio
    async def test_document_search_text_reaches_prompt(self, services):
        services["search_documents"].return_value = "\n\n[Document Search Results]:\nPTO is 25 days."

        await process_agent_message(agent_id="agent-1", message="What is our PTO policy?", channel_id=CHANNEL_ID)

        assert "PTO is 25 days." in services["invoke_completion"].call_args.args[0][0]["content"]

    @pytest.mark.asyncio
    async def test_image_tool_call(self, services):
        call = {"id": "call-1", "function": {"name": "generate_image", "arguments": json.dumps({"prompt": "a llama"})}}
        services["invoke_completion"].side_effect = [
            _completion("", tool_calls=[call]),
            _completion("Here is your llama!"),
        ]
        services["generate_image"].return_value = {
            "success": True,
            "images": [{"url": "https://img/llama.png", "revised_prompt": "a fluffy llama"}],
        }

        response = await process_agent_message(agent_id="agent-1", message="Draw an image of a llama", channel_id=CHANNEL_ID)

        assert response.response == "Here is your llama!"
        assert response.content_type == ContentType.IMAGE_GENERATION
        assert response.tool_results_data["images"][0]["url"] == "https://img/llama.png"
        assert services["invoke_completion"].call_args.kwargs["max_tokens"] == 150

    @pytest.mark.asyncio
    async def test_image_failure_is_explained(self, services):
        call = {"id": "call-1", "function": {"name": "generate_image", "arguments": "{}"}}
        services["invoke_completion"].return_value = _completion("", tool_calls=[call])
        services["generate_image"].return_value = {"success": False, "error": "content policy"}

        response = await process_agent_message(agent_id="agent-1", message="Draw me", channel_id=CHANNEL_ID)

        assert response.response == "I apologize, but I encountered an error while generating the image: content policy"
        assert response.content_type == ContentType.TEXT

    @pytest.mark.asyncio
    async def test_empty_completion(self, services):
        services["invoke_completion"].return_value = _completion("")
        response = await process_agent_message(agent_id="agent-1", message="hi", conversation_id="conv-1")
        assert response.response == EMPTY_RESPONSE


class TestPersistence:
    def test_reply_row(self, fake_supabase):
        reply = AgentResponse(response="Done.", content_type=ContentType.WEB_RESEARCH, tool_results_data={"summary": "s"})

        message_id = persist_agent_response(
            reply,
            agent_id="agent-1",
            channel_id=CHANNEL_ID,
            parent_message_id="msg-1",
            mention_type=MentionType.DIRECT_MENTION,
            chain_index=0,
            agent_chain=["agent-2"],
        )

        row = fake_supabase.rows("chat_messages")[0]
        assert row["id"] == message_id
        assert row["content_type"] == "web_research"
        assert row["generation_progress"] == 100
        assert row["is_generating"] is False
        assert row["agent_chain"] == ["agent-2"]
        assert "conversation_id" not in row

    def test_already_persisted_row_is_only_updated(self, fake_supabase):
        existing = fake_supabase.add("chat_messages", {"channel_id": CHANNEL_ID, "role": "assistant", "is_generating": True})
        reply = AgentResponse(response="analyzing", persisted_message_id=existing["id"])

        message_id = persist_agent_response(reply, agent_id="agent-1", channel_id=CHANNEL_ID, chain_index=2, agent_chain=[])

        assert message_id == existing["id"]
        rows = fake_supabase.rows("chat_messages")
        assert len(rows) == 1
        assert rows[0]["chain_index"] == 2
        assert rows[0]["agent_chain"] == []
        assert rows[0]["is_generating"] is True

    def test_error_row(self, fake_supabase):
        persist_error_response("Sorry.", agent_id="agent-1", error_message="boom", conversation_id="conv-1")

        row = fake_supabase.rows("chat_messages")[0]
        assert row["content_metadata"] == {"error": True, "can_retry": False, "error_message": "boom"}
        assert row["generation_progress"] == 0
