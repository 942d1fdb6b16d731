"""
Chat export import pipeline.

extract -> parse -> deduplicate -> upload media -> (per outer batch)
embed -> write, returning one ImportStats record. Only the conditions in
chat_import.errors end a request; media, PDF, embedding and write failures
are absorbed into the statistics so a messy export still completes.
"""

import asyncio
import logging
from collections import Counter
from typing import Dict, List, NamedTuple, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_import.archive import MediaEntries, extract_upload
from chat_import.config import settings
from chat_import.embeddings import EmbeddingService, embed_messages
from chat_import.errors import EmptyTranscriptError, MissingInputError, NoMessagesParsedError
from chat_import.logging_utils import import_scope
from chat_import.metrics import record_import_outcome, record_message_outcome
from chat_import.parser import parse_chat_export
from chat_import.schemas import ImportStats, ParsedMessage
from chat_import.storage import select_existing_ids, upsert_ignore_conflicts
from chat_import.uploads import ObjectStore, upload_media

logger = logging.getLogger(__name__)


# =============================================================================
# Deduplicator
# =============================================================================

class DedupResult(NamedTuple):
    new_messages: List[ParsedMessage]
    parsed: int
    skipped: int


def deduplicate(messages: List[ParsedMessage], existing_ids: Set[str]) -> DedupResult:
    """Drop messages whose message_id is already stored."""
    new_messages = [m for m in messages if m.message_id not in existing_ids]
    return DedupResult(
        new_messages=new_messages,
        parsed=len(messages),
        skipped=len(messages) - len(new_messages),
    )


# =============================================================================
# Persistence Writer
# =============================================================================

class WriteResult(NamedTuple):
    inserted: int
    errors: int


def write_batch(db: Session, batch: List[ParsedMessage]) -> WriteResult:
    """Upsert one outer batch; a failure counts the whole batch as errors."""
    try:
        upsert_ignore_conflicts(db, [m.to_row() for m in batch], conflict_key="message_id")
    except SQLAlchemyError as e:
        logger.error(f"Insert error for batch of {len(batch)} messages: {e}")
        return WriteResult(inserted=0, errors=len(batch))
    return WriteResult(inserted=len(batch), errors=0)


# =============================================================================
# Pipeline
# =============================================================================

def detach_missing_media(messages: List[ParsedMessage], media: MediaEntries) -> None:
    """Clear media_filename on messages whose file is not in the archive."""
    for message in messages:
        if message.media_filename and message.media_filename not in media:
            message.media_filename = None


def attach_media_urls(messages: List[ParsedMessage], urls: Dict[str, str]) -> None:
    for message in messages:
        if message.media_filename:
            message.media_url = urls.get(message.media_filename)


def media_breakdown(messages: List[ParsedMessage]) -> Dict[str, int]:
    return dict(Counter(m.media_type for m in messages if m.has_media and m.media_type))


def chunked(items: List, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def import_chat_export(
    db: Session,
    data: Optional[bytes],
    filename: Optional[str],
    group_name: Optional[str],
    limit: Optional[int] = None,
    object_store: Optional[ObjectStore] = None,
    embedding_service: Optional[EmbeddingService] = None,
) -> ImportStats:
    """
    Import one exported chat archive.

    Args:
        db: Database session
        data: Uploaded file bytes
        filename: Uploaded filename (.zip selects archive handling)
        group_name: Group/chat name; the partition key derives from it
        limit: Import only the most recent `limit` messages
        object_store: Media storage, or None to skip uploads
        embedding_service: Embedding service, or None to store null vectors

    Returns:
        ImportStats for the caller

    Raises:
        ChatImportError subclasses for fatal-to-request conditions
    """
    group_name = (group_name or "").strip()
    if data is None:
        raise MissingInputError("No file uploaded")
    if not group_name:
        raise MissingInputError("group_name is required")

    chat_text, media = await asyncio.to_thread(extract_upload, data, filename)
    if not chat_text.strip():
        raise EmptyTranscriptError("Chat file is empty")

    parsed = parse_chat_export(chat_text, group_name, limit)
    if not parsed:
        raise NoMessagesParsedError(
            "No messages could be parsed. Make sure this is a WhatsApp exported chat file."
        )
    detach_missing_media(parsed, media)

    with import_scope(parsed[0].group_id):
        return await store_parsed(db, parsed, media, group_name, object_store, embedding_service)


async def store_parsed(
    db: Session,
    parsed: List[ParsedMessage],
    media: MediaEntries,
    group_name: str,
    object_store: Optional[ObjectStore],
    embedding_service: Optional[EmbeddingService],
) -> ImportStats:
    """Deduplicate, upload media, then embed and write new messages batch by batch."""
    group_id = parsed[0].group_id
    dedup = deduplicate(parsed, select_existing_ids(db, group_id))
    record_message_outcome("parsed", dedup.parsed)
    record_message_outcome("duplicate", dedup.skipped)

    stats = ImportStats(
        parsed=dedup.parsed,
        skipped_duplicates=dedup.skipped,
        has_media=sum(1 for m in parsed if m.has_media),
        media_in_zip=len(media),
        media_breakdown=media_breakdown(parsed),
    )

    if not dedup.new_messages:
        logger.info(f"All {dedup.parsed} messages for {group_id} already imported")
        record_import_outcome("all_duplicates")
        stats.message = "All messages already imported."
        return stats

    uploads = await upload_media(group_id, media, object_store)
    stats.media_uploaded_to_storage = uploads.uploaded
    stats.storage_enabled = bool(media) and object_store is not None and not uploads.storage_degraded
    if uploads.storage_degraded:
        logger.warning(f"Storage degraded for {group_id}: all {uploads.failed} media uploads failed")
    attach_media_urls(dedup.new_messages, uploads.urls)

    await process_batches(db, dedup.new_messages, media, embedding_service, stats)

    record_message_outcome("inserted", stats.inserted)
    record_message_outcome("error", stats.errors)
    record_import_outcome("imported")
    stats.message = f'Imported {stats.inserted} messages from "{group_name}".'
    logger.info(
        f"Import finished for {group_id}: parsed={stats.parsed} inserted={stats.inserted} "
        f"errors={stats.errors} embedded={stats.embedded}"
    )
    return stats


async def process_batches(
    db: Session,
    messages: List[ParsedMessage],
    media: MediaEntries,
    embedding_service: Optional[EmbeddingService],
    stats: ImportStats,
) -> None:
    """Embed and write outer batches in order, pausing between them."""
    batch_size = max(1, settings.IMPORT_BATCH_SIZE)
    batches = list(chunked(messages, batch_size))

    for index, batch in enumerate(batches):
        stats.embedded += await embed_messages(batch, media, embedding_service)

        result = write_batch(db, batch)
        stats.inserted += result.inserted
        stats.errors += result.errors
        logger.debug(f"Batch {index + 1}/{len(batches)}: inserted={result.inserted} errors={result.errors}")

        if index + 1 < len(batches) and settings.IMPORT_BATCH_DELAY_SECONDS > 0:
            await asyncio.sleep(settings.IMPORT_BATCH_DELAY_SECONDS)
