"""Pydantic schemas for chat messages, agents and the agent pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

TEMP_ID_PREFIX = "temp-"


# ============================================================================
# Enums
# ============================================================================


class MessageRole(str, Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"


class ContentType(str, Enum):
    """How an assistant message body should be rendered."""
    TEXT = "text"
    IMAGE_GENERATION = "image_generation"
    WEB_RESEARCH = "web_research"
    DOCUMENT_ANALYSIS = "document_analysis"
    MIXED = "mixed"

    @classmethod
    def coerce(cls, value: "str | ContentType | None") -> "ContentType":
        """Map any stored or tool-reported value onto the closed set (unknown -> text)."""
        if isinstance(value, ContentType):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.TEXT


class ActionType(str, Enum):
    """What the intent analyzer decided the message needs."""
    TOOL = "tool"
    DOCUMENT_SEARCH = "document_search"
    LONG_RICH_TEXT = "long_rich_text"
    BOTH = "both"
    NONE = "none"

    @classmethod
    def coerce(cls, value: "str | ActionType | None") -> "ActionType":
        """Normalise classifier output; ``assistant_only`` and unknown values mean none."""
        if isinstance(value, ActionType):
            return value
        if value == "assistant_only":
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            return cls.NONE

    @property
    def runs_tools(self) -> bool:
        return self in (ActionType.TOOL, ActionType.BOTH)

    @property
    def searches_documents(self) -> bool:
        return self in (ActionType.DOCUMENT_SEARCH, ActionType.BOTH)


class MentionType(str, Enum):
    """How an assistant message was triggered."""
    DIRECT_MENTION = "direct_mention"
    CHAIN_MENTION = "chain_mention"
    DIRECT_CONVERSATION = "direct_conversation"


# ============================================================================
# Messages
# ============================================================================


class Attachment(BaseModel):
    """A file uploaded alongside a message."""

    name: str
    path: str
    type: str = "application/octet-stream"
    size: int | None = None


class ContentMetadata(BaseModel):
    """Status flags stored with a message (errors, retry hints, progress)."""

    model_config = ConfigDict(extra="allow")

    error: bool = False
    can_retry: bool = False
    error_message: str | None = None
    status: str | None = None
    attachment_path: str | None = None
    attachment_name: str | None = None
    attachment_type: str | None = None
    user_message: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _error_text_as_flag(cls, data: Any) -> Any:
        # Older rows store the error text itself under "error"
        if isinstance(data, dict) and isinstance(data.get("error"), str):
            data = dict(data)
            data.setdefault("error_message", data["error"])
            data["error"] = True
        return data

    def retry_attachment(self) -> Attachment | None:
        """Rebuild the attachment a failed analysis needs, if the metadata allows a retry."""
        if not (self.error and self.can_retry and self.attachment_path):
            return None
        return Attachment(
            name=self.attachment_name or self.attachment_path.rsplit("/", 1)[-1],
            path=self.attachment_path,
            type=self.attachment_type or "application/octet-stream",
        )


class Message(BaseModel):
    """A chat message row (persisted or optimistic)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    role: MessageRole
    content: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attachments: list[Attachment] = Field(default_factory=list)
    agent_id: str | None = None
    client_message_id: str | None = None
    conversation_id: str | None = None
    channel_id: str | None = None
    chain_index: int | None = None
    parent_message_id: str | None = None
    agent_chain: list[str] = Field(default_factory=list)
    mention_type: MentionType | None = None
    content_type: ContentType = ContentType.TEXT
    content_metadata: ContentMetadata = Field(default_factory=ContentMetadata)
    content_title: str | None = None
    rich_content: dict[str, Any] | None = None
    tool_results: Any = None
    is_generating: bool = False
    generation_progress: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalise_row(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            # Columns that are nullable in the store
            for key in ("attachments", "agent_chain"):
                if data.get(key) is None:
                    data.pop(key, None)
            if data.get("content_metadata") is None:
                data.pop("content_metadata", None)
            if data.get("is_generating") is None:
                data.pop("is_generating", None)
            if data.get("generation_progress") is None:
                data.pop("generation_progress", None)
            if "content_type" in data:
                data["content_type"] = ContentType.coerce(data["content_type"])
            if data.get("content") is None:
                data["content"] = ""
        return data

    @model_validator(mode="after")
    def _check_scope(self) -> "Message":
        if self.conversation_id and self.channel_id:
            raise ValueError("message cannot belong to both a conversation and a channel")
        if not self.is_temporary and not (self.conversation_id or self.channel_id):
            raise ValueError("persisted message must belong to a conversation or a channel")
        return self

    @property
    def is_temporary(self) -> bool:
        """True for optimistic, client-only messages."""
        return self.id.startswith(TEMP_ID_PREFIX)


class ChannelAgent(BaseModel):
    """An agent attached to a channel, as seen by the mention parser."""

    id: str
    name: str
    nickname: str | None = None


class AgentReference(BaseModel):
    """An agent resolved from an @mention."""

    agent_id: str
    agent_name: str
    position: int = 0


class AgentProfile(BaseModel):
    """Agent persona and model configuration."""

    id: str
    name: str = "Agent"
    nickname: str | None = None
    description: str | None = None
    role: str | None = None
    company_id: str | None = None
    instructions: str | None = None
    response_structure: str | None = None
    specialty_label: str | None = None
    ai_provider: str | None = None
    ai_model: str | None = None
    max_tokens: int | None = None
    web_access: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AgentProfile":
        """Build from an ``agents`` row with a JSON ``configuration`` column."""
        config = row.get("configuration") or {}
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "Agent",
            nickname=row.get("nickname"),
            description=row.get("description"),
            role=row.get("role"),
            company_id=row.get("company_id"),
            instructions=config.get("instructions"),
            response_structure=config.get("response_structure"),
            specialty_label=config.get("specialty_label"),
            ai_provider=config.get("ai_provider"),
            ai_model=config.get("ai_model"),
            max_tokens=config.get("max_tokens"),
            web_access=bool(config.get("web_access", False)),
        )


# ============================================================================
# Pipeline models
# ============================================================================


class ToolRequest(BaseModel):
    """A tool invocation requested by the intent analyzer."""

    tool_id: str
    action: str = "search"
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 1


class IntentAnalysis(BaseModel):
    """Intent analyzer output."""

    action_type: ActionType = ActionType.NONE
    tools_required: list[ToolRequest] = Field(default_factory=list)
    document_search_query: str | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce_action(cls, data: Any) -> Any:
        if isinstance(data, dict) and "action_type" in data:
            data = dict(data)
            data["action_type"] = ActionType.coerce(data["action_type"])
            if data.get("tools_required") is None:
                data.pop("tools_required", None)
        return data


class ToolResult(BaseModel):
    """Outcome of one tool execution; failures are represented, not raised."""

    model_config = ConfigDict(extra="allow")

    tool_id: str
    success: bool
    results: Any = None
    summary: str | None = None
    error: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def reported_content_type(self) -> ContentType | None:
        value = (self.metadata or {}).get("content_type")
        return ContentType.coerce(value) if value else None


class ContextResult(BaseModel):
    """Assembled company knowledge for one prompt."""

    tiered_context: str = ""
    context_used: bool = False
    sections: dict[str, str] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    """What one agent produced for one message."""

    response: str
    content_type: ContentType = ContentType.TEXT
    tool_results_data: Any = None
    analysis: dict[str, Any] = Field(default_factory=dict)
    context_used: bool = False
    document_processing: bool = False
    # Row already written by the pipeline (analysis placeholder or terminal error)
    persisted_message_id: str | None = None


class PriorResponse(BaseModel):
    """An earlier agent's answer within one mention chain."""

    agent_id: str
    agent_name: str = "Agent"
    content: str
