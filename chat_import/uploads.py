"""
Media upload to object storage.

Media files extracted from an archive are pushed to a single bucket under
{sanitized_group}/{sanitized_filename}. Uploads run in fixed-size windows:
at most MEDIA_UPLOAD_CONCURRENCY transfers are in flight, each window is
awaited in full before the next starts, and one file's failure never
aborts the others.
"""

import asyncio
import logging
import re
from typing import Dict, NamedTuple, Optional, Protocol

from supabase import Client, create_client

from chat_import.archive import MediaEntries
from chat_import.config import settings
from chat_import.metrics import record_media_upload

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised by an object store when a put fails."""


class ObjectStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str: ...

    def get_public_url(self, path: str) -> str: ...


class SupabaseObjectStore:
    """Object store backed by a Supabase Storage bucket."""

    def __init__(self, url: str, key: str, bucket: str):
        self.bucket = bucket
        self.client: Client = create_client(url, key)

    def put(self, path: str, data: bytes, content_type: str) -> str:
        try:
            bucket = self.client.storage.from_(self.bucket)
            bucket.upload(path, data, {"content-type": content_type, "upsert": "true"})
            return bucket.get_public_url(path)
        except Exception as e:
            raise StorageError(str(e)) from e

    def get_public_url(self, path: str) -> str:
        return self.client.storage.from_(self.bucket).get_public_url(path)


def create_object_store() -> Optional[ObjectStore]:
    """Build the configured object store, or None when storage is not configured."""
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_KEY:
        logger.warning("Object storage not configured; media will not be uploaded")
        return None
    return SupabaseObjectStore(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY, settings.STORAGE_BUCKET)


# =============================================================================
# Path sanitizing
# =============================================================================

UNSAFE_FILENAME_CHARACTERS = re.compile(
    "[\u200e\u200f\u202a-\u202e\u2060-\u206f\u0000-\u001f\u007f-\u009f]"
)


def safe_folder(group_id: str) -> str:
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", group_id.replace(":", "-"))


def safe_filename(filename: str) -> str:
    return UNSAFE_FILENAME_CHARACTERS.sub("", filename)


def storage_path(group_id: str, filename: str) -> str:
    return f"{safe_folder(group_id)}/{safe_filename(filename)}"


# =============================================================================
# Uploader
# =============================================================================

class UploadResult(NamedTuple):
    urls: Dict[str, str]
    uploaded: int
    failed: int

    @property
    def storage_degraded(self) -> bool:
        return self.uploaded == 0 and self.failed > 0


async def upload_one(store: ObjectStore, group_id: str, filename: str, data: bytes, content_type: str) -> Optional[str]:
    path = storage_path(group_id, filename)
    try:
        url = await asyncio.to_thread(store.put, path, data, content_type)
    except Exception as e:  # noqa: BLE001
        logger.error(f"Storage upload error for {filename}: {e}")
        record_media_upload("failed")
        return None
    record_media_upload("uploaded")
    return url


async def upload_media(
    group_id: str,
    media: MediaEntries,
    store: Optional[ObjectStore],
    concurrency: Optional[int] = None,
) -> UploadResult:
    """
    Upload every media entry and map original filenames to durable URLs.

    Args:
        group_id: Group the archive belongs to (namespaces the paths)
        media: Extracted media entries keyed by filename
        store: Object store, or None when storage is disabled
        concurrency: Window size (default MEDIA_UPLOAD_CONCURRENCY)

    Returns:
        UploadResult with filename -> url, and success/failure counts
    """
    if not media:
        return UploadResult(urls={}, uploaded=0, failed=0)
    if store is None:
        return UploadResult(urls={}, uploaded=0, failed=len(media))

    window = max(1, concurrency or settings.MEDIA_UPLOAD_CONCURRENCY)
    entries = list(media.items())
    urls: Dict[str, str] = {}
    failed = 0

    for start in range(0, len(entries), window):
        batch = entries[start:start + window]
        results = await asyncio.gather(*(
            upload_one(store, group_id, filename, entry.data, entry.mime_type)
            for filename, entry in batch
        ))
        for (filename, _), url in zip(batch, results):
            if url:
                urls[filename] = url
            else:
                failed += 1

    logger.info(f"Media upload finished for {group_id}: {len(urls)} uploaded, {failed} failed")
    return UploadResult(urls=urls, uploaded=len(urls), failed=failed)
