"""Background job rows (jobs table).

A job moves queued -> processing -> completed | failed. The runner in
teamchat.core.background owns the transitions; the status route only reads.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from teamchat.core.logging import get_logger
from teamchat.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "jobs"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_status(job_id: UUID, fields: dict[str, Any]) -> None:
    try:
        get_supabase().table(TABLE).update(fields).eq("id", str(job_id)).execute()
    except Exception as e:
        logger.error(f"Could not mark job {job_id} {fields['status']}: {e}", extra={"job_id": str(job_id)})
        raise

    logger.info(f"Job {job_id} is {fields['status']}", extra={"job_id": str(job_id)})


def create_job(
    job_type: str,
    input_json: dict[str, Any],
    run_id: UUID,
    channel_id: str | None = None,
) -> UUID:
    """
    Insert a queued job row.

    Args:
        job_type: "agent_chain" or "document_analysis"
        input_json: Identifiers the job works on (no document bodies)
        run_id: Correlation id shared by the job's log lines
        channel_id: Channel the job writes into, if any

    Returns:
        Job UUID
    """
    row = {
        "channel_id": channel_id,
        "job_type": job_type,
        "status": "queued",
        "attempts": 0,
        "input": input_json,
        "output": {},
        "run_id": str(run_id),
    }

    try:
        response = get_supabase().table(TABLE).insert(row).execute()
    except Exception as e:
        logger.error(f"Could not queue {job_type} job: {e}", extra={"run_id": str(run_id)})
        raise

    if not response.data:
        raise ValueError(f"Insert of {job_type} job returned no row")

    job_id = UUID(response.data[0]["id"])
    logger.info(f"Queued {job_type} job {job_id}", extra={"run_id": str(run_id), "job_id": str(job_id)})
    return job_id


def start_job(job_id: UUID, attempt: int = 1) -> None:
    _set_status(job_id, {"status": "processing", "attempts": attempt, "started_at": _now()})


def complete_job(job_id: UUID, output_json: dict[str, Any]) -> None:
    _set_status(job_id, {"status": "completed", "output": output_json, "completed_at": _now()})


def fail_job(job_id: UUID, error_message: str) -> None:
    _set_status(job_id, {"status": "failed", "error": error_message, "completed_at": _now()})


def get_job(job_id: UUID) -> dict[str, Any] | None:
    """Job row by id, or None."""
    try:
        response = get_supabase().table(TABLE).select("*").eq("id", str(job_id)).execute()
    except Exception as e:
        logger.error(f"Could not read job {job_id}: {e}")
        raise

    return response.data[0] if response.data else None
