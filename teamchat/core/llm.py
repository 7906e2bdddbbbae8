"""Completion service: one call shape over the OpenAI and Anthropic SDKs.

Every caller receives an OpenAI-style payload::

    {"choices": [{"message": {"role": "assistant", "content": "...", "tool_calls": [...]}}],
     "usage": {"input_tokens": 0, "output_tokens": 0}}

so the pipeline never branches on provider.
"""

import asyncio
import json
import re
from typing import Any

from teamchat.core.config import get_settings
from teamchat.core.errors import UpstreamServiceError
from teamchat.core.logging import get_logger

logger = get_logger(__name__)

_INITIAL_DELAY = 1.0
SUPPORTED_PROVIDERS = ("openai", "anthropic")


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_llm_json_dict(raw_output: str) -> Any:
    """
    Parse LLM output as JSON.

    Args:
        raw_output: Raw string from LLM response

    Returns:
        Parsed JSON value (dict or list)

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
    """
    return json.loads(_strip_llm_fences(raw_output))


def message_content(response: dict[str, Any]) -> str:
    """Text content of the first choice ('' when absent)."""
    try:
        return response["choices"][0]["message"].get("content") or ""
    except (KeyError, IndexError, TypeError):
        return ""


def message_tool_calls(response: dict[str, Any]) -> list[dict[str, Any]]:
    """Tool calls of the first choice."""
    try:
        return response["choices"][0]["message"].get("tool_calls") or []
    except (KeyError, IndexError, TypeError):
        return []


# =============================================================================
# Provider adapters
# =============================================================================


async def _invoke_openai(
    model: str,
    messages: list[dict[str, Any]],
    max_tokens: int,
    temperature: float,
    tools: list[dict[str, Any]] | None,
    response_format: dict[str, Any] | None,
) -> dict[str, Any]:
    from openai import AsyncOpenAI

    settings = get_settings()
    client = AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.COMPLETION_TIMEOUT,
        max_retries=0,
    )

    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if tools:
        kwargs["tools"] = tools
    if response_format:
        kwargs["response_format"] = response_format

    response = await client.chat.completions.create(**kwargs)
    payload = response.model_dump()
    usage = payload.get("usage") or {}
    payload["usage"] = {
        "input_tokens": usage.get("prompt_tokens", 0),
        "output_tokens": usage.get("completion_tokens", 0),
    }
    return payload


def _to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted = []
    for tool in tools:
        fn = tool.get("function", tool)
        converted.append({
            "name": fn["name"],
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters", {"type": "object", "properties": {}}),
        })
    return converted


async def _invoke_anthropic(
    model: str,
    messages: list[dict[str, Any]],
    max_tokens: int,
    temperature: float,
    tools: list[dict[str, Any]] | None,
) -> dict[str, Any]:
    from anthropic import AsyncAnthropic

    settings = get_settings()
    if not settings.ANTHROPIC_API_KEY:
        raise UpstreamServiceError("completion", "ANTHROPIC_API_KEY is not configured")

    client = AsyncAnthropic(
        api_key=settings.ANTHROPIC_API_KEY,
        timeout=settings.COMPLETION_TIMEOUT,
        max_retries=0,
    )

    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    chat_messages = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m.get("role") in ("user", "assistant") and m.get("content")
    ]

    kwargs: dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": chat_messages,
    }
    if system_parts:
        kwargs["system"] = "\n\n".join(system_parts)
    if tools:
        kwargs["tools"] = _to_anthropic_tools(tools)

    response = await client.messages.create(**kwargs)

    text = ""
    tool_calls = []
    for block in response.content:
        if block.type == "text":
            text += block.text
        elif block.type == "tool_use":
            tool_calls.append({
                "id": block.id,
                "type": "function",
                "function": {"name": block.name, "arguments": json.dumps(block.input)},
            })

    return {
        "choices": [{"message": {"role": "assistant", "content": text, "tool_calls": tool_calls or None}}],
        "usage": {
            "input_tokens": getattr(response.usage, "input_tokens", 0),
            "output_tokens": getattr(response.usage, "output_tokens", 0),
        },
    }


def _transient_errors() -> tuple[type[Exception], ...]:
    import anthropic
    import openai

    return (
        openai.APIConnectionError,
        openai.APITimeoutError,
        openai.InternalServerError,
        openai.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
        anthropic.InternalServerError,
        anthropic.RateLimitError,
    )


# =============================================================================
# Main entry point
# =============================================================================


async def invoke_completion(
    messages: list[dict[str, Any]],
    *,
    provider: str | None = None,
    model: str | None = None,
    max_tokens: int = 1000,
    temperature: float = 0.7,
    tools: list[dict[str, Any]] | None = None,
    response_format: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Call the completion service with retry on transient errors.

    Args:
        messages: OpenAI-style chat messages (system/user/assistant)
        provider: "openai" or "anthropic" (unknown providers fall back to the default)
        model: Model name
        max_tokens: Completion budget
        temperature: Sampling temperature
        tools: OpenAI function-tool definitions
        response_format: OpenAI response_format (ignored by Anthropic)

    Returns:
        OpenAI-shaped response dict

    Raises:
        UpstreamServiceError: If the call fails after retries
    """
    settings = get_settings()
    provider = provider or settings.DEFAULT_AI_PROVIDER
    model = model or settings.DEFAULT_AI_MODEL

    if provider not in SUPPORTED_PROVIDERS:
        logger.warning(
            f"Provider {provider} not supported for completions, using {settings.DEFAULT_AI_PROVIDER}"
        )
        provider = settings.DEFAULT_AI_PROVIDER
        model = settings.DEFAULT_AI_MODEL

    transient = _transient_errors()
    max_retries = settings.COMPLETION_MAX_RETRIES

    for attempt in range(max_retries + 1):
        try:
            if provider == "anthropic":
                return await _invoke_anthropic(model, messages, max_tokens, temperature, tools)
            return await _invoke_openai(
                model, messages, max_tokens, temperature, tools, response_format
            )
        except transient as e:
            if attempt < max_retries:
                delay = _INITIAL_DELAY * (2 ** attempt)
                logger.warning(
                    f"Completion attempt {attempt + 1}/{max_retries + 1} failed "
                    f"({type(e).__name__}), retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                continue
            raise UpstreamServiceError("completion", str(e)) from e
        except UpstreamServiceError:
            raise
        except Exception as e:
            logger.error(f"Completion call failed ({provider}/{model}): {e}")
            raise UpstreamServiceError("completion", str(e)) from e

    raise UpstreamServiceError("completion", "retries exhausted")
