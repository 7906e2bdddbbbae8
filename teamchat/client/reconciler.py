"""Client-side message reconciliation.

Merges three feeds into one ordered list keyed by message id:
optimistic ``temp-`` messages created at send time, pushed insert/update
events, and poll results. Applying the same row any number of times, from
any feed, in any order leaves exactly one entry per logical message.
"""

import secrets
import string
import time
from datetime import datetime, timezone  # noqa: UP035
from typing import Any, Callable

from teamchat.core.config import get_settings
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import TEMP_ID_PREFIX, Attachment, Message, MessageRole

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)  # noqa: UP017
_ID_ALPHABET = string.ascii_lowercase + string.digits


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_client_message_id() -> str:
    """Unique id for one client send attempt: ``client-<ms>-<rand>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"client-{_now_ms()}-{suffix}"


def make_optimistic_message(
    text: str,
    *,
    channel_id: str | None = None,
    conversation_id: str | None = None,
    attachments: list[Attachment] | None = None,
    client_message_id: str | None = None,
) -> Message:
    """Build the temporary user message shown while the send is in flight."""
    return Message(
        id=f"{TEMP_ID_PREFIX}{_now_ms()}-{secrets.token_hex(3)}",
        role=MessageRole.USER,
        content=text,
        attachments=attachments or [],
        client_message_id=client_message_id or new_client_message_id(),
        channel_id=channel_id,
        conversation_id=conversation_id,
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)  # noqa: UP017


class MessageReconciler:
    """
    Ordered, deduplicated view of one channel or conversation.

    Rules, in order, for every incoming persisted row:
    1. same ``id`` already present: replace in place
    2. ``client_message_id`` matches a temp entry: drop the temp, insert the row
    3. otherwise: append
    """

    def __init__(
        self,
        stuck_after_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if stuck_after_seconds is None:
            stuck_after_seconds = get_settings().GENERATION_STUCK_WARNING_SECONDS
        self.stuck_after_seconds = stuck_after_seconds
        self._clock = clock
        self._messages: dict[str, Message] = {}
        self._arrival: dict[str, int] = {}
        self._sequence = 0
        self._complete_since: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    def add_optimistic(self, message: Message) -> Message:
        """Show a temp message; ignored if the persisted copy already arrived."""
        if not message.is_temporary:
            raise ValueError(f"optimistic message id must start with {TEMP_ID_PREFIX!r}")

        persisted = self._find_persisted(message.client_message_id) if message.client_message_id else None
        if persisted is not None:
            return persisted

        self._store(message, self._next_sequence())
        return message

    def apply_row(self, row: dict[str, Any] | Message) -> Message:
        """Merge one persisted row (from push or poll)."""
        message = row if isinstance(row, Message) else Message.model_validate(row)

        if message.id in self._messages:
            self._store(message, self._arrival[message.id])
            self._drop_temp_for(message)
            return message

        temp = self._find_temp(message.client_message_id) if message.client_message_id else None
        if temp is not None:
            sequence = self._arrival[temp.id]
            self.remove(temp.id)
            self._store(message, sequence)
            return message

        self._store(message, self._next_sequence())
        return message

    def apply_event(self, event_type: str, row: dict[str, Any]) -> Message | None:
        """Apply a pushed ``INSERT`` / ``UPDATE`` / ``DELETE`` event."""
        kind = event_type.upper()
        if kind in ("INSERT", "UPDATE"):
            return self.apply_row(row)
        if kind == "DELETE":
            self.remove(str(row.get("id")))
            return None
        logger.debug(f"Ignoring {event_type} event")
        return None

    def apply_rows(self, rows: list[dict[str, Any]]) -> list[Message]:
        """Apply a poll result."""
        return [self.apply_row(row) for row in rows]

    def remove(self, message_id: str) -> None:
        self._messages.pop(message_id, None)
        self._arrival.pop(message_id, None)
        self._complete_since.pop(message_id, None)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        """Messages ordered by created_at, then chain_index, then arrival."""
        return sorted(
            self._messages.values(),
            key=lambda m: (
                _aware(m.created_at) if m.created_at else _EPOCH,
                m.chain_index if m.chain_index is not None else -1,
                self._arrival[m.id],
            ),
        )

    @property
    def has_generating(self) -> bool:
        return any(m.is_generating for m in self._messages.values())

    def stuck_messages(self, now: float | None = None) -> list[Message]:
        """Generating messages that have sat at 100% for too long."""
        now = self._clock() if now is None else now
        return [
            self._messages[message_id]
            for message_id, since in self._complete_since.items()
            if now - since >= self.stuck_after_seconds
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _store(self, message: Message, sequence: int) -> None:
        self._messages[message.id] = message
        self._arrival[message.id] = sequence

        if message.is_generating and message.generation_progress >= 100:
            self._complete_since.setdefault(message.id, self._clock())
        else:
            self._complete_since.pop(message.id, None)

    def _find_temp(self, client_message_id: str) -> Message | None:
        for message in self._messages.values():
            if message.is_temporary and message.client_message_id == client_message_id:
                return message
        return None

    def _find_persisted(self, client_message_id: str) -> Message | None:
        for message in self._messages.values():
            if not message.is_temporary and message.client_message_id == client_message_id:
                return message
        return None

    def _drop_temp_for(self, message: Message) -> None:
        if message.is_temporary or not message.client_message_id:
            return
        temp = self._find_temp(message.client_message_id)
        if temp is not None:
            self.remove(temp.id)
