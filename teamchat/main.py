"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from teamchat.api import router as api_router
from teamchat.core.background import get_job_runner


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let chain and analysis jobs finish before the process exits
    await get_job_runner().drain()


app = FastAPI(
    title="TeamChat Agent Engine",
    description="Agent message pipeline for team chat: context assembly, mention chains and document analysis",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok", "jobs": get_job_runner().stats}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
