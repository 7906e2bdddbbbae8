"""Configuration management for the TeamChat agent engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


DEFAULT_EMAIL_SUFFIXES = (
    "com,org,net,edu,gov,io,co,uk,de,fr,es,it,ca,au,jp,cn,in,br,mx,ru,nl,se,no,dk,fi,"
    "pl,cz,at,ch,be,ie,pt,gr,hu,sk,si,ro,bg,hr,lv,lt,ee,lu,mt,cy"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Model providers
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key")

    # Environment
    TEAMCHAT_ENV: str = Field(default="dev", description="Environment: dev, staging, prod, test")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Model selection
    QUERY_EXPANSION_MODEL: str = Field(default="gpt-4o-mini", description="Model for query paraphrases")
    INTENT_MODEL: str = Field(default="gpt-4.1-2025-04-14", description="Model for intent analysis")
    DEFAULT_AI_PROVIDER: str = Field(default="openai", description="Provider when agent has none")
    DEFAULT_AI_MODEL: str = Field(default="gpt-4o", description="Model when agent has none")
    DEFAULT_MAX_TOKENS: int = Field(default=4000, description="Max completion tokens per agent reply")
    ANALYSIS_MODEL: str = Field(default="gpt-4o-mini", description="Model for long document analysis")
    IMAGE_MODEL: str = Field(default="gpt-image-1", description="Model for image generation")

    # Context assembly limits
    CONTEXT_MAX_QUERIES: int = Field(default=3, description="Max search queries per context build")
    CONTEXT_MAX_DOCUMENTS: int = Field(default=5, description="Max documents per vector search")
    CONTEXT_MAX_DOCUMENT_CHARS: int = Field(
        default=12000, description="Max characters kept per document"
    )
    CONTEXT_MATCH_THRESHOLD: float = Field(default=0.25, description="Similarity threshold")
    CONTEXT_MAX_PLAYBOOK_ENTRIES: int = Field(default=3, description="Max playbook entries")
    CONTEXT_MAX_PLAYBOOK_SNIPPET: int = Field(default=600, description="Max chars per playbook snippet")
    DRIVE_MAX_RESULTS: int = Field(default=5, description="Max Drive search hits requested")
    DRIVE_MAX_FILES: int = Field(default=3, description="Max Drive files whose content is fetched")
    KNOWLEDGE_SEARCH_MATCH_COUNT: int = Field(
        default=8, description="Documents fetched by the knowledge-keyword fallback"
    )
    CHANNEL_HISTORY_LIMIT: int = Field(default=25, description="Channel messages sent as history")

    # Timeouts (seconds) and retry budgets per external dependency
    COMPLETION_TIMEOUT: float = Field(default=60.0, description="Completion service timeout")
    COMPLETION_MAX_RETRIES: int = Field(default=2, description="Retries on transient completion errors")
    EMBEDDING_TIMEOUT: float = Field(default=20.0, description="Embedding request timeout")
    TOOL_TIMEOUT: float = Field(default=60.0, description="Tool executor timeout")
    PARSE_TIMEOUT: float = Field(default=120.0, description="Document parser timeout")
    DRIVE_SEARCH_TIMEOUT: float = Field(default=20.0, description="Drive search timeout")
    DRIVE_FETCH_TIMEOUT: float = Field(default=30.0, description="Drive file content timeout")
    ANALYSIS_TIMEOUT: float = Field(default=180.0, description="Long document analysis timeout")
    ANALYSIS_MAX_ATTEMPTS: int = Field(default=2, description="Attempts for a document analysis job")
    CHAIN_MAX_ATTEMPTS: int = Field(default=1, description="Attempts for an agent chain job")

    # Mention parsing
    MENTION_EMAIL_SUFFIXES: str = Field(
        default=DEFAULT_EMAIL_SUFFIXES,
        description="Comma-separated TLDs that mark an @token as an email fragment",
    )

    # Client reconciliation
    POLL_INTERVAL_SECONDS: float = Field(default=2.0, description="Poll interval while generating")
    GENERATION_STUCK_WARNING_SECONDS: float = Field(
        default=120.0, description="Warn when a message sits at 100% this long"
    )

    @property
    def email_suffixes(self) -> list[str]:
        """Parsed list of email TLD suffixes."""
        return [s.strip().lower() for s in self.MENTION_EMAIL_SUFFIXES.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
