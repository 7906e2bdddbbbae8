"""Long-document analysis.

LangGraph workflow that turns an extracted attachment into a structured
analysis stored on a placeholder message:
1. Load the agent's model configuration          (progress 10)
2. Ask the completion service for a JSON analysis (progress 25)
3. Render the analysis to markdown               (progress 50, 75)
4. Persist rich content on the message           (progress 100)

Any failure leaves the message in a terminal, retryable error state.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone  # noqa: UP035
from typing import Any
from uuid import UUID

from langgraph.graph import END, StateGraph

from teamchat.core.background import get_job_runner
from teamchat.core.config import get_settings
from teamchat.core.errors import DocumentExtractionError
from teamchat.core.llm import invoke_completion, message_content, parse_llm_json_dict
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import Attachment, ContentMetadata, ContentType
from teamchat.db import messages as messages_db
from teamchat.db.agents import get_agent
from teamchat.db.storage import CHAT_FILES_BUCKET, download_file
from teamchat.services.edge_functions import parse_document

logger = get_logger(__name__)

JOB_TYPE = "document_analysis"
DEFAULT_USER_MESSAGE = "Analyze this document."

ANALYSIS_SYSTEM_PROMPT = "You are an expert document analyst. Always respond with valid JSON matching the requested structure."

ANALYSIS_PROMPT = """Analyze the following document and provide a comprehensive, structured analysis.

Document Name: "{document_name}"
User Request: {user_message}

Document Content:
{document_content}

Provide your analysis in the following JSON format:
{{
  "executiveSummary": "A brief 2-3 sentence overview of the document",
  "keyFindings": ["Finding 1", "Finding 2", "Finding 3"],
  "mainThemes": ["Theme 1", "Theme 2", "Theme 3"],
  "importantDataPoints": ["Data point 1 with specific numbers/facts", "Data point 2"],
  "recommendations": ["Recommendation 1 based on the analysis", "Recommendation 2"],
  "detailedAnalysis": "A comprehensive analysis covering all important aspects of the document.",
  "documentType": "Type of document (e.g., Report, Contract, Policy, Manual)",
  "confidenceScore": 0.85
}}

Ensure all fields are populated with meaningful content."""

_HEADING = re.compile(r"^#+\s*(.+)", re.MULTILINE)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()  # noqa: UP017


# =============================================================================
# Metadata helpers
# =============================================================================


def attachment_metadata(attachment: Attachment) -> dict[str, Any]:
    """Attachment identifiers kept on the message so a failed run can be retried."""
    return {
        "attachment_path": attachment.path,
        "attachment_name": attachment.name,
        "attachment_type": attachment.type,
    }


def error_metadata(attachment: Attachment, error_message: str, user_message: str | None = None) -> dict[str, Any]:
    """Terminal, retryable error metadata for an analysis message."""
    return {
        "error": True,
        "can_retry": True,
        "status": "error",
        "error_message": error_message,
        "user_message": user_message,
        **attachment_metadata(attachment),
    }


def placeholder_fields(attachment: Attachment, user_message: str | None, status: str = "queued") -> dict[str, Any]:
    """Columns of a visible, still-generating analysis placeholder."""
    return {
        "content": f'📄 Analyzing document "{attachment.name}"...',
        "is_generating": True,
        "generation_progress": 5,
        "content_title": f"Analyzing {attachment.name}",
        "content_metadata": {"status": status, "user_message": user_message, **attachment_metadata(attachment)},
    }


async def extract_attachment_text(attachment: Attachment) -> str:
    """
    Confirm the attachment is readable and extract its text.

    Raises:
        DocumentExtractionError: If the download or parse step fails
    """
    try:
        await asyncio.to_thread(download_file, CHAT_FILES_BUCKET, attachment.path)
    except Exception as e:
        raise DocumentExtractionError(attachment.name, str(e), stage="download") from e

    try:
        result = await parse_document(attachment.path, attachment.name, attachment.type, CHAT_FILES_BUCKET)
    except Exception as e:
        raise DocumentExtractionError(attachment.name, str(e), stage="parse") from e

    if not result.get("success") or not result.get("extractedText"):
        raise DocumentExtractionError(attachment.name, result.get("error") or "Unknown parsing error")

    return result["extractedText"]


# =============================================================================
# Rendering
# =============================================================================


def render_analysis_markdown(document_name: str, analysis: dict[str, Any]) -> str:
    """Render the structured analysis as a markdown report."""
    content = f"# Analysis of {document_name}\n\n"
    content += f"## Executive Summary\n\n{analysis.get('executiveSummary') or ''}\n\n"

    if analysis.get("documentType"):
        content += f"**Document Type:** {analysis['documentType']}\n\n"

    for key, heading in (
        ("keyFindings", "Key Findings"),
        ("mainThemes", "Main Themes"),
        ("importantDataPoints", "Important Data Points"),
    ):
        items = analysis.get(key) or []
        if items:
            content += f"## {heading}\n\n" + "".join(f"- {item}\n" for item in items) + "\n"

    if analysis.get("detailedAnalysis"):
        content += f"## Detailed Analysis\n\n{analysis['detailedAnalysis']}\n\n"

    recommendations = analysis.get("recommendations") or []
    if recommendations:
        content += "## Recommendations\n\n"
        content += "".join(f"{i}. {rec}\n" for i, rec in enumerate(recommendations, start=1)) + "\n"

    return content


def extract_outline(markdown: str) -> list[str]:
    """Headings of a markdown document, in order."""
    return [h.strip() for h in _HEADING.findall(markdown)]


# =============================================================================
# Graph
# =============================================================================


@dataclass
class DocumentAnalysisState:
    """State for the document analysis graph."""

    # Input
    message_id: str
    agent_id: str
    user_message: str
    document_content: str
    document_name: str
    attachment: dict[str, Any] = field(default_factory=dict)

    # Model selection
    ai_provider: str = "openai"
    ai_model: str = ""

    # Intermediate results
    analysis: dict[str, Any] = field(default_factory=dict)
    markdown: str = ""
    title: str = ""
    outline: list[str] = field(default_factory=list)

    # Error tracking
    error: str | None = None


def _progress(state: DocumentAnalysisState, progress: int, status: str) -> None:
    messages_db.update_message(
        state.message_id,
        {
            "is_generating": True,
            "generation_progress": progress,
            "content_metadata": {
                "status": status,
                "progress": progress,
                "documentName": state.document_name,
                "user_message": state.user_message,
                **state.attachment,
            },
        },
    )


async def load_agent(state: DocumentAnalysisState) -> dict[str, Any]:
    """Resolve the provider/model the analysis runs on."""
    settings = get_settings()
    try:
        await asyncio.to_thread(_progress, state, 10, "Preparing document analysis...")
        agent = await asyncio.to_thread(get_agent, state.agent_id)
    except Exception as e:
        return {"error": f"Failed to load agent configuration: {e}"}

    if agent is None:
        return {"error": f"Agent {state.agent_id} not found"}

    return {
        "ai_provider": agent.ai_provider or settings.DEFAULT_AI_PROVIDER,
        "ai_model": agent.ai_model or settings.ANALYSIS_MODEL,
    }


async def analyze_document(state: DocumentAnalysisState) -> dict[str, Any]:
    """Ask the completion service for the structured analysis."""
    try:
        await asyncio.to_thread(_progress, state, 25, "Analyzing document content...")
        response = await invoke_completion(
            [
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": ANALYSIS_PROMPT.format(
                        document_name=state.document_name,
                        user_message=state.user_message,
                        document_content=state.document_content,
                    ),
                },
            ],
            provider=state.ai_provider,
            model=state.ai_model,
            max_tokens=4000,
            temperature=0.7,
        )
        analysis = parse_llm_json_dict(message_content(response))
    except Exception as e:
        logger.warning(f"Document analysis call failed: {e}", extra={"message_id": state.message_id})
        return {"error": f"Document analysis failed: {e}"}

    if not isinstance(analysis, dict):
        return {"error": "Document analysis returned an unexpected shape"}
    return {"analysis": analysis}


async def render_content(state: DocumentAnalysisState) -> dict[str, Any]:
    """Format the analysis and derive title and outline."""
    await asyncio.to_thread(_progress, state, 50, "Formatting analysis...")
    markdown = render_analysis_markdown(state.document_name, state.analysis)

    await asyncio.to_thread(_progress, state, 75, "Formatting and reviewing content...")
    outline = extract_outline(markdown)
    title = outline[0] if outline else f"Analysis of {state.document_name}"
    return {"markdown": markdown, "outline": outline, "title": title}


async def finalize(state: DocumentAnalysisState) -> dict[str, Any]:
    """Write the final rich content, or the terminal error state."""
    if state.error:
        attachment = Attachment(**_attachment_fields(state.attachment, state.document_name))
        messages_db.update_message(
            state.message_id,
            {
                "is_generating": False,
                "generation_progress": 0,
                "content_metadata": error_metadata(attachment, state.error, state.user_message),
            },
        )
        return {}

    await asyncio.to_thread(_progress, state, 100, "Finalizing response...")
    word_count = len(state.markdown.split(" "))
    generated_at = _utc_now_iso()
    rich_content = {
        "title": state.title,
        "content": state.markdown,
        "outline": state.outline,
        "documentSource": state.document_name,
        "generatedAt": generated_at,
        "wordCount": word_count,
        "structuredAnalysis": state.analysis,
        "aiProvider": state.ai_provider,
        "aiModel": state.ai_model,
    }
    messages_db.update_message(
        state.message_id,
        {
            "is_generating": False,
            "generation_progress": 100,
            "content": state.markdown,
            "content_title": state.title,
            "rich_content": rich_content,
            "content_outline": state.outline,
            "content_type": ContentType.DOCUMENT_ANALYSIS.value,
            "content_metadata": {
                "status": "completed",
                "documentName": state.document_name,
                "generatedAt": generated_at,
                "wordCount": word_count,
                "aiProvider": state.ai_provider,
                "aiModel": state.ai_model,
                "confidenceScore": state.analysis.get("confidenceScore"),
                **state.attachment,
            },
        },
    )
    return {}


def _attachment_fields(meta: dict[str, Any], document_name: str) -> dict[str, Any]:
    return {
        "name": meta.get("attachment_name") or document_name,
        "path": meta.get("attachment_path") or "",
        "type": meta.get("attachment_type") or "application/octet-stream",
    }


def should_continue(state: DocumentAnalysisState) -> str:
    """Determine if processing should continue."""
    if state.error:
        return "finalize"
    return "continue"


def build_document_analysis_graph():
    """Build the document analysis graph."""
    workflow = StateGraph(DocumentAnalysisState)

    workflow.add_node("load_agent", load_agent)
    workflow.add_node("analyze_document", analyze_document)
    workflow.add_node("render_content", render_content)
    workflow.add_node("finalize", finalize)

    workflow.set_entry_point("load_agent")
    workflow.add_conditional_edges(
        "load_agent",
        should_continue,
        {"continue": "analyze_document", "finalize": "finalize"},
    )
    workflow.add_conditional_edges(
        "analyze_document",
        should_continue,
        {"continue": "render_content", "finalize": "finalize"},
    )
    workflow.add_edge("render_content", "finalize")
    workflow.add_edge("finalize", END)

    return workflow.compile()


document_analysis_graph = build_document_analysis_graph()


# =============================================================================
# Entry points
# =============================================================================


async def run_document_analysis(
    message_id: str,
    user_message: str,
    agent_id: str,
    document_content: str,
    document_name: str,
    attachment: Attachment | None = None,
) -> dict[str, Any]:
    """
    Run the analysis graph against a placeholder message.

    Args:
        message_id: Placeholder message to fill in
        user_message: What the user asked for
        agent_id: Agent whose model configuration is used
        document_content: Extracted document text
        document_name: Display name of the document
        attachment: Source attachment (kept on the message for retries)

    Returns:
        Dict with success flag, message_id, title and error

    Raises:
        RuntimeError: If the analysis ended in the error state (lets the job runner retry)
    """
    settings = get_settings()
    attachment = attachment or Attachment(name=document_name, path="")
    initial_state = DocumentAnalysisState(
        message_id=message_id,
        agent_id=agent_id,
        user_message=user_message or DEFAULT_USER_MESSAGE,
        document_content=document_content,
        document_name=document_name,
        attachment=attachment_metadata(attachment),
    )

    try:
        result = await asyncio.wait_for(
            document_analysis_graph.ainvoke(initial_state),
            timeout=settings.ANALYSIS_TIMEOUT,
        )
    except Exception as e:
        reason = f"timed out after {settings.ANALYSIS_TIMEOUT}s" if isinstance(e, asyncio.TimeoutError) else str(e)
        logger.exception(f"Document analysis graph failed for message {message_id}: {reason}")
        messages_db.update_message(
            message_id,
            {
                "is_generating": False,
                "generation_progress": 0,
                "content_metadata": error_metadata(attachment, f"Document analysis {reason}", user_message),
            },
        )
        raise RuntimeError(f"Document analysis {reason}") from e

    # LangGraph returns a dict, not the typed state object
    error = result.get("error") if isinstance(result, dict) else result.error
    title = result.get("title") if isinstance(result, dict) else result.title
    if error:
        raise RuntimeError(error)

    logger.info(f"Document analysis completed for message {message_id}", extra={"message_id": message_id})
    return {"success": True, "message_id": message_id, "title": title, "error": None}


def submit_analysis_job(
    message_id: str,
    user_message: str,
    agent_id: str,
    document_content: str,
    attachment: Attachment,
    channel_id: str | None = None,
) -> UUID:
    """Queue run_document_analysis as a tracked background job."""
    settings = get_settings()

    async def handler() -> dict[str, Any]:
        return await run_document_analysis(
            message_id, user_message, agent_id, document_content, attachment.name, attachment
        )

    return get_job_runner().submit(
        JOB_TYPE,
        {
            "message_id": message_id,
            "agent_id": agent_id,
            "document_name": attachment.name,
            "attachment_path": attachment.path,
        },
        handler,
        max_attempts=settings.ANALYSIS_MAX_ATTEMPTS,
        channel_id=channel_id,
    )


async def retry_document_analysis(message_id: str) -> dict[str, Any]:
    """
    Start a new analysis attempt for a message left in the retryable error state.

    Only the attachment identifiers in the message's content_metadata and the
    message's own agent / scope columns are used.

    Args:
        message_id: The failed analysis message

    Returns:
        {"message_id", "job_id", "retried": True} or {"message_id", "retried": False, "error"}

    Raises:
        LookupError: If the message does not exist
        ValueError: If the message is not in a retryable state
    """
    row = await asyncio.to_thread(messages_db.get_message, message_id)
    if row is None:
        raise LookupError(f"Message {message_id} not found")

    metadata = ContentMetadata.model_validate(row.get("content_metadata") or {})
    attachment = metadata.retry_attachment()
    if attachment is None or not row.get("agent_id"):
        raise ValueError(f"Message {message_id} is not retryable")

    user_message = metadata.user_message or DEFAULT_USER_MESSAGE
    await asyncio.to_thread(
        messages_db.update_message, message_id, placeholder_fields(attachment, user_message, status="retrying")
    )

    try:
        document_content = await extract_attachment_text(attachment)
    except DocumentExtractionError as e:
        logger.warning(f"Retry extraction failed for message {message_id}: {e}", extra={"message_id": message_id})
        await asyncio.to_thread(
            messages_db.update_message,
            message_id,
            {
                "is_generating": False,
                "generation_progress": 0,
                "content_metadata": error_metadata(attachment, e.detail, user_message),
            },
        )
        return {"message_id": message_id, "retried": False, "error": e.detail}

    job_id = submit_analysis_job(
        message_id,
        user_message,
        row["agent_id"],
        document_content,
        attachment,
        channel_id=row.get("channel_id"),
    )
    logger.info(f"Retrying document analysis for message {message_id} as job {job_id}")
    return {"message_id": message_id, "job_id": str(job_id), "retried": True}
