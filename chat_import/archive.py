"""
Archive extraction for uploaded chat exports.

An upload is either a bare transcript (.txt) or a zip bundle holding the
transcript plus media files. Zip members are validated against size and
path limits before anything is read, media are classified by extension,
and PDF attachments get best-effort text extraction so their content can
be embedded later.
"""

import io
import logging
import zipfile
import zlib
from pathlib import PurePosixPath
from typing import Dict, List, NamedTuple, Optional, Tuple

from pypdf import PdfReader

from chat_import.config import settings
from chat_import.errors import ArchiveReadError, TranscriptNotFoundError
from chat_import.media import classify_by_extension, is_pdf, mime_type_for

logger = logging.getLogger(__name__)

TRANSCRIPT_FILENAME = "_chat.txt"
ANDROID_TRANSCRIPT_PREFIX = "WhatsApp Chat with"


class MediaEntry(NamedTuple):
    data: bytes
    mime_type: str
    media_type: str
    extracted_text: Optional[str] = None


MediaEntries = Dict[str, MediaEntry]


def is_zip_upload(filename: Optional[str]) -> bool:
    return bool(filename) and filename.lower().endswith(".zip")


def decode_text(data: bytes) -> str:
    """Decode transcript bytes as UTF-8, replacing undecodable sequences."""
    return data.decode("utf-8", errors="replace")


def extract_upload(data: bytes, filename: Optional[str]) -> Tuple[str, MediaEntries]:
    """
    Split an upload into transcript text and media entries.

    Args:
        data: Raw uploaded bytes
        filename: Uploaded filename; a .zip extension selects zip handling

    Returns:
        Tuple of (chat_text, media_entries keyed by member basename)

    Raises:
        ArchiveReadError: zip is corrupt or violates the safety limits
        TranscriptNotFoundError: zip holds no recognizable transcript
    """
    if not is_zip_upload(filename):
        logger.info(f"Plain-text upload: {filename} ({len(data)} bytes)")
        return decode_text(data), {}
    return extract_zip(data)


def extract_zip(data: bytes) -> Tuple[str, MediaEntries]:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        logger.error(f"Failed to open zip archive: {e}")
        raise ArchiveReadError(f"Failed to read zip: {e}") from e

    with archive:
        validate_zip_contents(archive)

        members = archive.infolist()
        transcript = find_transcript(members)
        if transcript is None:
            raise TranscriptNotFoundError(
                "No _chat.txt found inside the zip. "
                "Make sure this is a WhatsApp exported chat zip file."
            )

        media: MediaEntries = {}
        try:
            chat_text = decode_text(archive.read(transcript))
            logger.debug(f"Transcript found: {transcript.filename}")

            for info in members:
                if info.is_dir() or info is transcript:
                    continue
                basename = PurePosixPath(info.filename).name
                if not basename.lower().endswith(".txt") and not basename.startswith("."):
                    media[basename] = _read_media_member(archive, info, basename)
        except (zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError, OSError, EOFError) as e:
            logger.error(f"Failed to read zip member: {e}")
            raise ArchiveReadError(f"Failed to read zip: {e}") from e

    logger.info(f"Zip extracted: {len(media)} media files, transcript {len(chat_text)} chars")
    return chat_text, media


def find_transcript(members: List[zipfile.ZipInfo]) -> Optional[zipfile.ZipInfo]:
    """
    Pick the transcript member: _chat.txt, else an Android
    "WhatsApp Chat with ...txt", else the only .txt file of an archive with
    at most two entries.
    """
    text_members = []
    for info in members:
        basename = PurePosixPath(info.filename).name
        if info.is_dir() or basename.startswith(".") or not basename.lower().endswith(".txt"):
            continue
        text_members.append((basename, info))

    for basename, info in text_members:
        if basename == TRANSCRIPT_FILENAME:
            return info
    for basename, info in text_members:
        if basename.startswith(ANDROID_TRANSCRIPT_PREFIX):
            return info
    if len(members) <= 2 and len(text_members) == 1:
        return text_members[0][1]
    return None


def _read_media_member(archive: zipfile.ZipFile, info: zipfile.ZipInfo, basename: str) -> MediaEntry:
    data = archive.read(info)
    media_type = classify_by_extension(basename)
    extracted_text = None
    if media_type == "document" and is_pdf(basename):
        extracted_text = extract_pdf_text(data, basename)
    return MediaEntry(
        data=data,
        mime_type=mime_type_for(basename),
        media_type=media_type,
        extracted_text=extracted_text,
    )


def validate_zip_contents(archive: zipfile.ZipFile) -> None:
    """
    Check member count, member sizes and member paths before extraction.

    Raises:
        ArchiveReadError: on any violated limit, absolute path or traversal
    """
    members = archive.infolist()
    if len(members) > settings.MAX_ARCHIVE_MEMBERS:
        raise ArchiveReadError(
            f"Zip archive contains too many files ({len(members)} > {settings.MAX_ARCHIVE_MEMBERS})"
        )

    total_size = 0
    for info in members:
        path = PurePosixPath(info.filename.replace("\\", "/"))
        if path.is_absolute() or ".." in path.parts:
            raise ArchiveReadError(f"Zip member has an unsafe path: {info.filename}")

        if info.file_size > settings.MAX_ARCHIVE_MEMBER_BYTES:
            raise ArchiveReadError(
                f"Zip member '{info.filename}' exceeds maximum size of "
                f"{settings.MAX_ARCHIVE_MEMBER_BYTES} bytes"
            )

        total_size += info.file_size
        if total_size > settings.MAX_ARCHIVE_TOTAL_BYTES:
            raise ArchiveReadError(
                f"Zip archive uncompressed size exceeds {settings.MAX_ARCHIVE_TOTAL_BYTES} bytes"
            )


def extract_pdf_text(data: bytes, filename: str = "") -> Optional[str]:
    """
    Best-effort PDF text extraction.

    Failures (unparsable or encrypted PDFs) are logged as warnings and
    return None. Text no longer than PDF_MIN_TEXT_CHARS is treated as
    noise and also returns None.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            logger.warning(f"PDF text extraction skipped, encrypted document: {filename}")
            return None
        pages = []
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(page_text)
    except Exception as e:  # noqa: BLE001
        logger.warning(f"PDF text extraction failed for {filename}: {e}")
        return None

    text = "\n\n".join(pages).strip()
    if len(text) <= settings.PDF_MIN_TEXT_CHARS:
        logger.debug(f"PDF text discarded as noise for {filename}: {len(text)} chars")
        return None
    return text
