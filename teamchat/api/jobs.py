"""API endpoints for background job status."""

from uuid import UUID

from fastapi import APIRouter, HTTPException

from teamchat.core.logging import get_logger
from teamchat.db.jobs import get_job

logger = get_logger(__name__)

router = APIRouter()


@router.get("/{job_id}")
async def get_job_status(job_id: UUID) -> dict:
    """
    Get job status and details by job ID.

    Args:
        job_id: Job UUID

    Returns:
        Job details including status, input, output, error, timestamps

    Raises:
        HTTPException 404: If job not found
        HTTPException 500: If database error
    """
    try:
        job = get_job(job_id)

        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        return job

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to get job {job_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve job status") from e
