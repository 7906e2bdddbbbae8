"""Tracked background jobs for work that outlives the request.

Chain continuation and long-document analysis are submitted here instead of
being left as unawaited coroutines. Each submission gets a ``jobs`` row whose
status moves queued -> processing -> completed | failed, and an asyncio task
held in a tracked set until it finishes.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from teamchat.core.logging import get_logger
from teamchat.db import jobs as jobs_db

logger = get_logger(__name__)

JobHandler = Callable[[], Awaitable[dict[str, Any] | None]]

DEFAULT_RETRY_DELAY = 2.0  # seconds, doubled per attempt


class BackgroundJobRunner:
    """Runs job handlers as tracked asyncio tasks with retry and a persisted lifecycle."""

    def __init__(self, retry_delay: float = DEFAULT_RETRY_DELAY):
        self.retry_delay = retry_delay
        self._tasks: set[asyncio.Task] = set()
        self._completed_count = 0
        self._failed_count = 0
        self._start_time = time.time()

    @property
    def stats(self) -> dict[str, Any]:
        """Get runner statistics."""
        return {
            "in_flight": len(self._tasks),
            "completed_count": self._completed_count,
            "failed_count": self._failed_count,
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }

    def submit(
        self,
        job_type: str,
        payload: dict[str, Any],
        handler: JobHandler,
        max_attempts: int = 1,
        channel_id: str | None = None,
    ) -> UUID:
        """
        Record a job and schedule its handler.

        Args:
            job_type: "agent_chain" or "document_analysis"
            payload: JSON-serialisable job input (stored on the job row)
            handler: Zero-argument coroutine factory, called once per attempt
            max_attempts: Total attempts before the job is marked failed
            channel_id: Optional channel the job writes into

        Returns:
            Job UUID

        Raises:
            Exception: If the job row cannot be created
        """
        run_id = uuid4()
        job_id = jobs_db.create_job(job_type, payload, run_id, channel_id=channel_id)

        task = asyncio.create_task(self._run(job_id, job_type, handler, max(1, max_attempts)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def _run(self, job_id: UUID, job_type: str, handler: JobHandler, max_attempts: int) -> None:
        for attempt in range(1, max_attempts + 1):
            self._mark(jobs_db.start_job, job_id, attempt)
            try:
                output = await handler()
            except Exception as e:
                if attempt < max_attempts:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Job {job_id} ({job_type}) attempt {attempt}/{max_attempts} failed: {e}; "
                        f"retrying in {delay}s",
                        extra={"job_id": str(job_id)},
                    )
                    await asyncio.sleep(delay)
                    continue

                self._failed_count += 1
                logger.exception(
                    f"Job {job_id} ({job_type}) failed after {attempt} attempt(s)",
                    extra={"job_id": str(job_id)},
                )
                self._mark(jobs_db.fail_job, job_id, str(e))
                return

            self._completed_count += 1
            self._mark(jobs_db.complete_job, job_id, output or {})
            return

    @staticmethod
    def _mark(update: Callable[..., None], job_id: UUID, *args: Any) -> None:
        # Status bookkeeping must not kill the job itself
        try:
            update(job_id, *args)
        except Exception as e:
            logger.warning(f"Could not update status of job {job_id}: {e}", extra={"job_id": str(job_id)})

    async def drain(self) -> None:
        """Wait for every in-flight job to finish (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_runner: BackgroundJobRunner | None = None


def get_job_runner() -> BackgroundJobRunner:
    """Process-wide job runner."""
    global _runner
    if _runner is None:
        _runner = BackgroundJobRunner()
    return _runner
