"""Tests for prompt composition."""

from teamchat.context.prompt_builder import (
    DEFAULT_DISPLAY_NAME,
    DEFAULT_PERSONA,
    DEFAULT_RESPONSE_STRUCTURE,
    TRANSCRIPT_HEADER,
    build_assistant_prompt,
    render_chain_transcript,
)
from teamchat.core.schemas_chat import AgentProfile, PriorResponse


def _agent(**overrides) -> AgentProfile:
    data = {"id": "agent-1", "name": "Finance"}
    data.update(overrides)
    return AgentProfile(**data)


def test_defaults_when_agent_is_bare():
    prompt = build_assistant_prompt(_agent(name=""), user_query="hi")

    assert prompt.startswith(f"You are {DEFAULT_DISPLAY_NAME}.")
    assert DEFAULT_PERSONA in prompt
    assert prompt.endswith(f'# TASK\nThe user asked: "hi"\n{DEFAULT_RESPONSE_STRUCTURE}')
    assert "# COMPANY KNOWLEDGE" not in prompt
    assert "# TOOL OUTPUT" not in prompt


def test_blocks_appear_in_order():
    agent = _agent(
        nickname="Fin",
        description="Handles budgets.",
        specialty_label="FP&A",
        instructions="Be precise.",
        response_structure="Answer in bullets.",
    )
    prompt = build_assistant_prompt(agent, context="## Company Profile\nAcme", user_query="Q3 spend?", tool_context="[tool]")

    positions = [
        prompt.index("You are Fin."),
        prompt.index("Handles budgets."),
        prompt.index("Focus Area: FP&A"),
        prompt.index("Be precise."),
        prompt.index("# COMPANY KNOWLEDGE\n## Company Profile\nAcme"),
        prompt.index("# TOOL OUTPUT\n[tool]"),
        prompt.index('The user asked: "Q3 spend?"'),
        prompt.index("Answer in bullets."),
    ]
    assert positions == sorted(positions)


def test_deterministic():
    agent = _agent(instructions="Be kind.")
    first = build_assistant_prompt(agent, "ctx", "q", "tools")
    second = build_assistant_prompt(agent, "ctx", "q", "tools")
    assert first == second


def test_chain_transcript_attributes_each_agent():
    transcript = render_chain_transcript(
        "Plan the offsite",
        [
            PriorResponse(agent_id="a", agent_name="Finance", content="Budget is 10k."),
            PriorResponse(agent_id="b", agent_name="Ops", content="Venue booked."),
        ],
    )

    assert transcript.startswith("Plan the offsite\n\n" + TRANSCRIPT_HEADER)
    assert transcript.index("Finance: Budget is 10k.") < transcript.index("Ops: Venue booked.")


def test_chain_transcript_without_prior_responses_is_the_message():
    assert render_chain_transcript("Plan the offsite", []) == "Plan the offsite"
