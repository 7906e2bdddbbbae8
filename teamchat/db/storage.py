"""Supabase Storage access for chat attachments."""

from teamchat.core.logging import get_logger
from teamchat.db.supabase_client import get_supabase

logger = get_logger(__name__)

CHAT_FILES_BUCKET = "chat-files"
CHAT_ATTACHMENTS_BUCKET = "chat-attachments"


def download_file(bucket: str, path: str) -> bytes:
    """
    Download an object from storage.

    Raises:
        Exception: If the object cannot be downloaded
    """
    supabase = get_supabase()
    return supabase.storage.from_(bucket).download(path)


def upload_file(bucket: str, path: str, content: bytes, content_type: str) -> str:
    """
    Upload bytes and return the public URL.

    Raises:
        Exception: If the upload fails
    """
    supabase = get_supabase()
    storage = supabase.storage.from_(bucket)
    storage.upload(path, content, {"content-type": content_type, "cache-control": "3600"})
    url = storage.get_public_url(path)
    logger.info(f"Uploaded {len(content)} bytes to {bucket}/{path}")
    return url
