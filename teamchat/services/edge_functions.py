"""Client for the Supabase Edge Functions the pipeline consumes.

Tools executor, document parser and Google Drive search / content fetch
run as edge functions; they are called over HTTPS with the service key.
"""

from typing import Any

import httpx

from teamchat.core.config import get_settings
from teamchat.core.errors import IntegrationNotConnectedError, UpstreamServiceError
from teamchat.core.logging import get_logger

logger = get_logger(__name__)

TOOLS_EXECUTOR = "agent-tools-executor"
PARSE_DOCUMENT = "parse-document"
DRIVE_SEARCH = "search-google-drive-files"
DRIVE_FETCH_CONTENT = "fetch-google-drive-file-content"

INTEGRATION_NOT_CONNECTED = "integration_not_connected"


def _function_url(name: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/functions/v1/{name}"


async def invoke_edge_function(name: str, body: dict[str, Any], timeout: float) -> dict[str, Any]:
    """
    Invoke an edge function and return its JSON body.

    Args:
        name: Function name
        body: JSON payload
        timeout: Request timeout in seconds

    Returns:
        Parsed JSON response

    Raises:
        IntegrationNotConnectedError: If the function reports a missing integration
        UpstreamServiceError: On transport errors, timeouts or non-2xx responses
    """
    settings = get_settings()

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                _function_url(name),
                headers={"Authorization": f"Bearer {settings.SUPABASE_SERVICE_ROLE_KEY}"},
                json=body,
            )
    except httpx.TimeoutException as e:
        logger.warning(f"Edge function {name} timed out after {timeout}s")
        raise UpstreamServiceError(name, f"timed out after {timeout}s") from e
    except httpx.HTTPError as e:
        logger.warning(f"Edge function {name} request failed: {e}")
        raise UpstreamServiceError(name, str(e)) from e

    try:
        data = response.json()
    except ValueError:
        data = {}

    if isinstance(data, dict) and data.get("error_code") == INTEGRATION_NOT_CONNECTED:
        raise IntegrationNotConnectedError(data.get("integration") or name, data.get("error"))

    if response.status_code >= 400:
        detail = data.get("error") if isinstance(data, dict) else None
        logger.warning(f"Edge function {name} returned {response.status_code}: {detail}")
        raise UpstreamServiceError(name, f"HTTP {response.status_code}: {detail or response.text[:200]}")

    return data if isinstance(data, dict) else {"data": data}


async def execute_tool(agent_id: str, tool_id: str, action: str, parameters: dict[str, Any]) -> dict[str, Any]:
    """Run one agent tool through the tools executor."""
    settings = get_settings()
    return await invoke_edge_function(
        TOOLS_EXECUTOR,
        {"agentId": agent_id, "toolId": tool_id, "action": action, "parameters": parameters},
        timeout=settings.TOOL_TIMEOUT,
    )


async def parse_document(file_path: str, file_name: str, file_type: str, bucket: str) -> dict[str, Any]:
    """Extract text from a stored file: {success, extractedText | error}."""
    settings = get_settings()
    return await invoke_edge_function(
        PARSE_DOCUMENT,
        {"filePath": file_path, "fileName": file_name, "fileType": file_type, "bucket": bucket},
        timeout=settings.PARSE_TIMEOUT,
    )


async def search_drive_files(query: str, folder_id: str, max_results: int) -> list[dict[str, Any]]:
    """Search a linked Drive folder; returns the file list."""
    settings = get_settings()
    data = await invoke_edge_function(
        DRIVE_SEARCH,
        {"query": query, "folderId": folder_id, "maxResults": max_results},
        timeout=settings.DRIVE_SEARCH_TIMEOUT,
    )
    return data.get("files") or []


async def fetch_drive_file_content(file: dict[str, Any]) -> str | None:
    """Text content of one Drive file, or None when the fetch reports no content."""
    settings = get_settings()
    data = await invoke_edge_function(
        DRIVE_FETCH_CONTENT,
        {"fileId": file.get("id"), "mimeType": file.get("mimeType"), "fileName": file.get("name")},
        timeout=settings.DRIVE_FETCH_TIMEOUT,
    )
    if data.get("success") and data.get("content"):
        return data["content"]
    return None
