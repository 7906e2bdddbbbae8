"""Intent analysis: decide whether a message needs tools, document search or
long-form document analysis before the agent replies.

The completion service classifies the message; deterministic rules then
correct the classification for attachments, research requests and
low-confidence research guesses.
"""

import asyncio
import re
from datetime import datetime, timedelta, timezone  # noqa: UP035
from typing import Any

from pydantic import ValidationError

from teamchat.core.config import get_settings
from teamchat.core.llm import invoke_completion, message_content, parse_llm_json_dict
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import ActionType, Attachment, IntentAnalysis, ToolRequest
from teamchat.db.agents import list_agent_tools

logger = get_logger(__name__)

WEB_RESEARCH_TOOL = "openai_web_research"
LOW_CONFIDENCE = 0.7

GENERAL_QUESTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"what's going on",
        r"what's happening",
        r"what's new",
        r"tell me about",
        r"explain",
        r"describe",
        r"how does",
        r"what is",
    )
]

CONTENT_GENERATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"write a post",
        r"create a post",
        r"write a linkedin post",
        r"create a linkedin post",
        r"generate content",
        r"write an article",
        r"create a blog post",
        r"draft a message",
        r"write a message",
        r"create content",
        r"generate a post",
        r"write content",
    )
]

DOCUMENT_ANALYSIS_PATTERNS = [
    re.compile(
        r"\b(analyze|review|summarize|read|examine|look at|tell me about|what do you think|"
        r"what's in this|what does this say|go through|break down)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(this\s+(document|file|paper|report|contract|letter|email|attachment|doc)|"
        r"the\s+(document|file|attachment|attached))\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(document|file|attachment|attached|uploaded)\b", re.IGNORECASE),
]

RESEARCH_PATTERNS = [
    re.compile(
        r"(\bnews\b|headlines|breaking|top stories|today'?s\s+news|latest\s+(news|headlines)|current\s+news)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(\bresearch\b|\banalyz(e|ing)\b|\bmarket\s+analysis\b|\btrends?\b|\bindustry\s+data\b|"
        r"\bcompetitor\b|\bcurrent\s+state\b|\blatest\s+developments?\b)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(\bmarket\s+(research|data|insights|intelligence)\b|\bindustry\s+(trends|analysis|insights|landscape)\b|"
        r"\bcompetitive\s+(analysis|landscape|intelligence)\b)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(\bfind\s+information\s+about\b|\blook\s+up\b|\bsearch\s+for\s+information\b|"
        r"\bwhat's\s+happening\s+in\b|\brecent\s+developments\s+in\b)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(\bcurrent\s+(information|data|state|situation)\b|\blatest\s+(information|data|updates)\b|"
        r"\bup-to-date\s+(information|data)\b)",
        re.IGNORECASE,
    ),
]

QUICK_DEPTH = re.compile(r"\b(quick|brief|summary|overview)\b", re.IGNORECASE)
COMPREHENSIVE_DEPTH = re.compile(r"\b(comprehensive|thorough|detailed|in-depth|extensive)\b", re.IGNORECASE)


def _matches_any(patterns: list[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def research_depth(message: str) -> str:
    """quick / comprehensive / detailed depending on the wording."""
    if QUICK_DEPTH.search(message):
        return "quick"
    if COMPREHENSIVE_DEPTH.search(message):
        return "comprehensive"
    return "detailed"


def _build_system_prompt(tools: list[dict[str, Any]], history: list[dict[str, str]]) -> str:
    today = datetime.now(timezone.utc).date()  # noqa: UP017
    yesterday = today - timedelta(days=1)
    week_out = today + timedelta(days=7)

    conversation_context = ""
    if history:
        recent = "\n".join(f"{m['role']}: {m['content']}" for m in history[-8:])
        conversation_context = f"\nRecent conversation context:\n{recent}\n"

    tool_lines = "\n".join(f"- {t['name']} (ID: {t['id']}): {t['description']}" for t in tools)
    mapping_lines = "\n".join(f"{t['name']} -> {t['id']}" for t in tools)

    return f"""You are an intent analyzer for an AI assistant in a team chat. Decide what actions a user message needs, considering the conversation context.

Current date: {today.isoformat()}
Yesterday's date: {yesterday.isoformat()}
{conversation_context}
Available tools for this agent:
{tool_lines or "- (none)"}

Tool ID mapping:
{mapping_lines or "(none)"}

Respond with a JSON object following this exact schema:
{{
  "action_type": "tool" | "document_search" | "both" | "assistant_only" | "long_rich_text",
  "tools_required": [
    {{"tool_id": "TOOL_UUID_HERE", "action": "search|read|create|research", "parameters": {{}}, "priority": 1}}
  ],
  "document_search_query": "extracted search terms if document search needed",
  "confidence": 0.0-1.0,
  "reasoning": "Brief explanation of your analysis"
}}

Rules:
- For tool_id use the UUID from the tool ID mapping, never the tool name. Only use listed tools.
- Dates: "yesterday" is {yesterday.isoformat()}T00:00:00Z to {yesterday.isoformat()}T23:59:59Z, "today" is {today.isoformat()}T00:00:00Z to {today.isoformat()}T23:59:59Z, "this week" is {today.isoformat()}T00:00:00Z to {week_out.isoformat()}T23:59:59Z. Always use RFC3339.
- "tool": the user needs external data (email, calendar, documents, spreadsheets, CRM) or explicit research.
- "document_search": questions about company knowledge or uploaded documents.
- "both": both of the above.
- "assistant_only": general questions, explanations and content generation.
- "long_rich_text": detailed analysis, reports or long-form content based on an attached document.
- If {WEB_RESEARCH_TOOL} is available, use it with action "research" for news, market analysis, industry trends or competitor analysis.
- Resolve references like "that meeting" or "it" from the conversation context."""


def _apply_low_confidence_rules(analysis: IntentAnalysis, message: str) -> IntentAnalysis:
    if analysis.confidence >= LOW_CONFIDENCE or analysis.action_type != ActionType.TOOL:
        return analysis
    if not any(t.action == "research" for t in analysis.tools_required):
        return analysis

    if _matches_any(GENERAL_QUESTION_PATTERNS, message):
        return IntentAnalysis(
            action_type=ActionType.NONE,
            confidence=0.8,
            reasoning="General question detected, using assistant knowledge instead of research",
        )
    if _matches_any(CONTENT_GENERATION_PATTERNS, message):
        return IntentAnalysis(
            action_type=ActionType.NONE,
            confidence=0.8,
            reasoning="Content generation request detected, using assistant knowledge instead of research",
        )
    return analysis


def apply_routing_rules(
    analysis: IntentAnalysis,
    message: str,
    attachments: list[Attachment],
    tools: list[dict[str, Any]],
) -> IntentAnalysis:
    """
    Deterministic corrections on top of the classifier output.

    Order: low-confidence research downgrade, then attachment + document
    keywords force long-form analysis, then research wording routes to the
    web research tool (or to a plain reply when the tool is not enabled).
    """
    analysis = _apply_low_confidence_rules(analysis, message)

    is_document_request = bool(attachments) and _matches_any(DOCUMENT_ANALYSIS_PATTERNS, message)
    if is_document_request:
        if analysis.action_type != ActionType.LONG_RICH_TEXT:
            analysis = IntentAnalysis(
                action_type=ActionType.LONG_RICH_TEXT,
                confidence=max(analysis.confidence, 0.9),
                reasoning="Document analysis request with attachments",
            )
        return analysis

    if not _matches_any(RESEARCH_PATTERNS, message):
        return analysis

    research_tool = next((t for t in tools if t["name"] == WEB_RESEARCH_TOOL), None)
    if research_tool is None:
        return IntentAnalysis(
            action_type=ActionType.NONE,
            confidence=0.8,
            reasoning=f"Web research tool disabled. Enable {WEB_RESEARCH_TOOL} to fetch current information.",
        )

    depth = research_depth(message)
    return IntentAnalysis(
        action_type=ActionType.TOOL,
        tools_required=[
            ToolRequest(
                tool_id=research_tool["id"],
                action="research",
                parameters={"query": message, "depth": depth, "include_sources": True},
                priority=1,
            )
        ],
        confidence=max(analysis.confidence, 0.85),
        reasoning=f"Research pattern detected; routing to web research (depth: {depth})",
    )


async def analyze_intent(
    message: str,
    agent_id: str,
    history: list[dict[str, str]] | None = None,
    attachments: list[Attachment] | None = None,
) -> IntentAnalysis:
    """
    Classify what a message needs. Never raises.

    Args:
        message: User message (or chain transcript)
        agent_id: Agent whose tools are available
        history: Recent {"role", "content"} messages
        attachments: Files sent with the message

    Returns:
        IntentAnalysis; classifier outages degrade to action_type none
    """
    settings = get_settings()
    history = history or []
    attachments = attachments or []

    tools = await asyncio.to_thread(list_agent_tools, agent_id)

    try:
        response = await invoke_completion(
            [
                {"role": "system", "content": _build_system_prompt(tools, history)},
                {"role": "user", "content": message},
            ],
            provider="openai",
            model=settings.INTENT_MODEL,
            max_tokens=1000,
            temperature=0.1,
        )
        analysis = IntentAnalysis.model_validate(parse_llm_json_dict(message_content(response)))
    except (ValueError, ValidationError, TypeError) as e:
        logger.warning(f"Could not parse intent analysis: {e}", extra={"agent_id": agent_id})
        analysis = IntentAnalysis(
            action_type=ActionType.NONE,
            confidence=0.5,
            reasoning="Failed to parse intent, defaulting to assistant-only response",
        )
    except Exception as e:
        logger.error(f"Intent analysis failed: {e}", extra={"agent_id": agent_id})
        analysis = IntentAnalysis(
            action_type=ActionType.NONE,
            confidence=0.5,
            reasoning="Intent analysis unavailable, defaulting to assistant-only response",
        )

    analysis = apply_routing_rules(analysis, message, attachments, tools)
    logger.info(
        f"Intent: {analysis.action_type.value} (confidence {analysis.confidence:.2f})",
        extra={"agent_id": agent_id},
    )
    return analysis
