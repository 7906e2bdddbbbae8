"""Image generation for the ``generate_image`` completion tool call."""

import asyncio
import base64
import re
import time
from datetime import datetime, timezone  # noqa: UP035
from typing import Any
from uuid import uuid4

from openai import AsyncOpenAI

from teamchat.core.config import get_settings
from teamchat.core.logging import get_logger
from teamchat.db.storage import CHAT_ATTACHMENTS_BUCKET, upload_file

logger = get_logger(__name__)

IMAGE_TOOL_NAME = "generate_image"
VALID_SIZES = ("1024x1024", "1536x1024", "1024x1536", "auto")

IMAGE_GENERATION_TOOL = {
    "type": "function",
    "function": {
        "name": IMAGE_TOOL_NAME,
        "description": "Generate an image from a text prompt",
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "A detailed description of the image to generate",
                },
                "size": {
                    "type": "string",
                    "enum": list(VALID_SIZES),
                    "default": "auto",
                    "description": "The size of the generated image",
                },
            },
            "required": ["prompt"],
        },
    },
}

_IMAGE_REQUEST_PATTERNS = [
    re.compile(
        r"\b(generate|create|make|draw|design|illustrate)\s+(an?\s+)?"
        r"(image|picture|photo|visual|illustration|graphic|artwork|diagram|chart|graph)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(show|display|visualize)\s+(me\s+)?(an?\s+)?(image|picture|visual|illustration|graphic)\b", re.IGNORECASE),
    re.compile(r"\bimage\s+(generation|creation|of|for)\b", re.IGNORECASE),
    re.compile(r"\bvisual\s+(representation|depiction|illustration)\b", re.IGNORECASE),
    re.compile(r"\b(create|generate)\s+(a\s+)?visual\b", re.IGNORECASE),
]


def is_image_request(message: str) -> bool:
    """True when the message explicitly asks for an image."""
    return any(pattern.search(message) for pattern in _IMAGE_REQUEST_PATTERNS)


async def generate_image(prompt: str, size: str | None = None) -> dict[str, Any]:
    """
    Generate an image and store it in the chat attachments bucket.

    Args:
        prompt: Image description
        size: Requested size (unknown sizes fall back to "auto")

    Returns:
        {"success": True, "images": [{url, revised_prompt, storage_path}], "metadata": {...}}
        or {"success": False, "error": "..."}
    """
    settings = get_settings()
    normalized_size = size if size in VALID_SIZES else "auto"
    start = time.monotonic()

    try:
        client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.COMPLETION_TIMEOUT)
        response = await client.images.generate(
            model=settings.IMAGE_MODEL,
            prompt=prompt,
            size=normalized_size,
            quality="auto",
            n=1,
        )

        image = response.data[0]
        if not image.b64_json:
            return {"success": False, "error": "No image data received from image service"}

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")  # noqa: UP017
        storage_path = f"generated-images/generated-image-{timestamp}-{uuid4().hex[:8]}.png"
        url = await asyncio.to_thread(
            upload_file,
            CHAT_ATTACHMENTS_BUCKET,
            storage_path,
            base64.b64decode(image.b64_json),
            "image/png",
        )

    except Exception as e:
        logger.error(f"Image generation failed: {e}")
        return {"success": False, "error": str(e)}

    execution_ms = int((time.monotonic() - start) * 1000)
    logger.info(f"Generated image in {execution_ms}ms at {storage_path}")

    return {
        "success": True,
        "images": [
            {
                "url": url,
                "revised_prompt": getattr(image, "revised_prompt", None) or prompt,
                "storage_path": storage_path,
            }
        ],
        "metadata": {
            "original_prompt": prompt,
            "size": normalized_size,
            "model": settings.IMAGE_MODEL,
            "generated_at": datetime.now(timezone.utc).isoformat(),  # noqa: UP017
            "execution_time": execution_ms,
        },
    }
