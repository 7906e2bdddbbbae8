"""Error taxonomy for the agent message pipeline."""


class TeamChatError(Exception):
    """Base class for pipeline errors with a user-facing message."""

    user_message = "Something went wrong while processing your message. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        if user_message:
            self.user_message = user_message


class UpstreamServiceError(TeamChatError):
    """Embedding, completion, search or edge function call failed."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class DocumentExtractionError(TeamChatError):
    """An attachment could not be downloaded or its text extracted."""

    def __init__(self, attachment_name: str, message: str, *, stage: str = "parse"):
        super().__init__(f"{stage} failed for {attachment_name}: {message}")
        self.attachment_name = attachment_name
        self.stage = stage
        self.detail = message


class AccessDeniedError(TeamChatError):
    """Caller lacks access to the channel or conversation."""

    user_message = "Access denied: you are not a member of this channel."


class IntegrationNotConnectedError(TeamChatError):
    """A tool requires an external integration the company has not connected."""

    def __init__(self, integration: str, message: str | None = None):
        super().__init__(
            message or f"{integration} integration not connected",
            user_message=(
                f"The {integration} integration is not connected. "
                "Ask a workspace admin to connect it, then try again."
            ),
        )
        self.integration = integration


class ChainStepError(TeamChatError):
    """One agent in a mention chain failed; the rest of the chain is dropped."""

    def __init__(self, agent_id: str, chain_index: int, cause: Exception):
        detail = cause.user_message if isinstance(cause, TeamChatError) else self.user_message
        super().__init__(
            f"agent {agent_id} failed at chain index {chain_index}: {cause}",
            user_message=f"Error processing agent in chain: {detail}",
        )
        self.agent_id = agent_id
        self.chain_index = chain_index
        self.cause = cause
