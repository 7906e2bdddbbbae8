"""Prompt composition for agent replies. Pure functions, no I/O."""

from teamchat.core.schemas_chat import AgentProfile, PriorResponse

DEFAULT_DISPLAY_NAME = "TeamChat Assistant"
DEFAULT_PERSONA = "You are a helpful, detail-oriented assistant."
DEFAULT_RESPONSE_STRUCTURE = "Respond with clear, structured reasoning followed by concise next steps."

TRANSCRIPT_HEADER = "--- Previous Agent Responses ---"


def build_assistant_prompt(
    agent: AgentProfile,
    context: str = "",
    user_query: str = "",
    tool_context: str = "",
) -> str:
    """
    Build the system instruction for one agent reply.

    Layout: identity preamble (name, description, focus area, persona), then
    ``# COMPANY KNOWLEDGE`` and ``# TOOL OUTPUT`` blocks when non-empty, then
    ``# TASK`` with the literal user query and the response-structure rule.

    Args:
        agent: Agent persona and configuration
        context: Tiered company knowledge block
        user_query: The user's message
        tool_context: Rendered tool and document-search output

    Returns:
        Prompt string (deterministic for identical inputs)
    """
    display_name = agent.nickname or agent.name or DEFAULT_DISPLAY_NAME
    persona = (agent.instructions or "").strip() or DEFAULT_PERSONA
    response_structure = (agent.response_structure or "").strip() or DEFAULT_RESPONSE_STRUCTURE

    preamble = [f"You are {display_name}."]
    if agent.description:
        preamble.append(agent.description)
    if agent.specialty_label:
        preamble.append(f"Focus Area: {agent.specialty_label}")
    preamble.append(persona)

    prompt = "\n".join(preamble) + "\n\n"

    if context:
        prompt += f"# COMPANY KNOWLEDGE\n{context}\n\n"

    if tool_context:
        prompt += f"# TOOL OUTPUT\n{tool_context}\n\n"

    prompt += f'# TASK\nThe user asked: "{user_query}"\n{response_structure}'
    return prompt


def render_chain_transcript(original_message: str, previous_responses: list[PriorResponse]) -> str:
    """Original message followed by each earlier agent's answer, attributed by name."""
    if not previous_responses:
        return original_message

    transcript = f"{original_message}\n\n{TRANSCRIPT_HEADER}\n"
    for prior in previous_responses:
        transcript += f"\n{prior.agent_name}: {prior.content}\n"
    return transcript
