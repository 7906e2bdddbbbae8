"""API router for v1 endpoints."""

from fastapi import APIRouter

from teamchat.api import chat, jobs

router = APIRouter()

# Channel, conversation and retry routes
router.include_router(chat.router, tags=["chat"])

# Background job status routes
router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
