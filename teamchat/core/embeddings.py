"""Query embeddings for knowledge document search."""

import asyncio

from openai import OpenAI

from teamchat.core.config import get_settings
from teamchat.core.logging import get_logger

logger = get_logger(__name__)


def _get_client() -> OpenAI:
    settings = get_settings()
    return OpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.EMBEDDING_TIMEOUT)


def embed_query(query: str) -> list[float]:
    """
    Embed one search query.

    Raises:
        ValueError: If the vector does not have EMBEDDING_DIM dimensions
        Exception: If the OpenAI call fails
    """
    settings = get_settings()

    try:
        response = _get_client().embeddings.create(model=settings.EMBEDDING_MODEL, input=[query])
    except Exception as e:
        logger.error(f"Query embedding failed: {e}", extra={"model": settings.EMBEDDING_MODEL})
        raise

    vector = response.data[0].embedding
    if len(vector) != settings.EMBEDDING_DIM:
        raise ValueError(
            f"Query embedding has {len(vector)} dimensions, {settings.EMBEDDING_MODEL} "
            f"is configured for {settings.EMBEDDING_DIM}"
        )
    return vector


async def embed_query_async(query: str) -> list[float]:
    """Embed a search query off the event loop."""
    return await asyncio.to_thread(embed_query, query)
