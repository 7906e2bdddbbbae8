"""Live message feed: push events plus a polling fallback.

Polling only runs while some message is still generating and stops on its
own once none are. Each tick re-reads the generating rows by id, and once
they have all finished the whole scope is refreshed.
"""

import asyncio
from typing import Any, Awaitable, Callable

from teamchat.client.reconciler import MessageReconciler, make_optimistic_message
from teamchat.core.config import get_settings
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import Attachment, Message
from teamchat.db import messages as messages_db

logger = get_logger(__name__)

RowFetcher = Callable[[], Awaitable[list[dict[str, Any]]]]
PendingFetcher = Callable[[list[str]], Awaitable[list[dict[str, Any]]]]


class LiveMessageFeed:
    """A reconciler fed by push events, optimistic sends and a poll loop."""

    def __init__(
        self,
        fetch_rows: RowFetcher,
        reconciler: MessageReconciler | None = None,
        poll_interval: float | None = None,
        fetch_pending: PendingFetcher | None = None,
    ):
        self.fetch_rows = fetch_rows
        self.fetch_pending = fetch_pending
        self.reconciler = reconciler or MessageReconciler()
        self.poll_interval = poll_interval if poll_interval is not None else get_settings().POLL_INTERVAL_SECONDS
        self._poll_task: asyncio.Task | None = None
        self._warned: set[str] = set()

    @classmethod
    def for_channel(cls, channel_id: str, **kwargs: Any) -> "LiveMessageFeed":
        async def fetch() -> list[dict[str, Any]]:
            return await asyncio.to_thread(messages_db.list_messages, channel_id=channel_id)

        async def fetch_pending(ids: list[str]) -> list[dict[str, Any]]:
            return await asyncio.to_thread(messages_db.list_messages, channel_id=channel_id, message_ids=ids)

        return cls(fetch, fetch_pending=fetch_pending, **kwargs)

    @classmethod
    def for_conversation(cls, conversation_id: str, **kwargs: Any) -> "LiveMessageFeed":
        async def fetch() -> list[dict[str, Any]]:
            return await asyncio.to_thread(messages_db.list_messages, conversation_id=conversation_id)

        async def fetch_pending(ids: list[str]) -> list[dict[str, Any]]:
            return await asyncio.to_thread(
                messages_db.list_messages, conversation_id=conversation_id, message_ids=ids
            )

        return cls(fetch, fetch_pending=fetch_pending, **kwargs)

    @property
    def messages(self) -> list[Message]:
        return self.reconciler.messages

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def pending_ids(self) -> list[str]:
        """Ids of persisted messages still generating."""
        return [m.id for m in self.reconciler.messages if m.is_generating and not m.is_temporary]

    def send(self, text: str, *, attachments: list[Attachment] | None = None, **scope: Any) -> Message:
        """Show an optimistic copy of an outgoing message."""
        message = make_optimistic_message(text, attachments=attachments, **scope)
        return self.reconciler.add_optimistic(message)

    def on_event(self, event_type: str, row: dict[str, Any]) -> None:
        """Handle a pushed row change."""
        self.reconciler.apply_event(event_type, row)
        self.ensure_polling()

    async def refresh(self) -> list[Message]:
        """Fetch the scope once and merge the rows."""
        rows = await self.fetch_rows()
        merged = self.reconciler.apply_rows(rows)
        self._warn_stuck()
        return merged

    async def poll_once(self) -> None:
        """Re-read generating rows, then refresh the scope once none are left."""
        ids = self.pending_ids
        if self.fetch_pending is None or not ids:
            await self.refresh()
            return

        self.reconciler.apply_rows(await self.fetch_pending(ids))
        self._warn_stuck()
        if not self.reconciler.has_generating:
            await self.refresh()

    def ensure_polling(self) -> None:
        """Start the poll loop if something is generating and no loop runs."""
        if self.reconciler.has_generating and not self.polling:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None

    async def _poll_loop(self) -> None:
        while self.reconciler.has_generating:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning(f"Message poll failed: {e}")
        logger.debug("No generating messages left, polling stopped")

    def _warn_stuck(self) -> None:
        for message in self.reconciler.stuck_messages():
            if message.id in self._warned:
                continue
            self._warned.add(message.id)
            logger.warning(
                f"Message {message.id} has been at 100% for over "
                f"{self.reconciler.stuck_after_seconds:.0f}s without completing",
                extra={"message_id": message.id},
            )
