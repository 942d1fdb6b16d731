"""
Media classification for chat exports.

Two pure entry points:
- classify_by_extension: filename -> media type ("image", "video", "audio",
  "document" or the generic "file")
- classify_by_placeholder: message body -> MediaDetection, recognising
  inline attachment tags, bare attachment filenames and the "omitted"
  phrases exporters write when media was left out of the archive.
"""

import re
from typing import NamedTuple, Optional


# =============================================================================
# Extension tables
# =============================================================================

MEDIA_TYPE_BY_EXTENSION = {
    **dict.fromkeys(["jpg", "jpeg", "png", "webp", "heic", "gif"], "image"),
    **dict.fromkeys(["mp4", "mov", "avi", "mkv"], "video"),
    **dict.fromkeys(["mp3", "ogg", "m4a", "opus", "aac"], "audio"),
    **dict.fromkeys(["pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx"], "document"),
}

MIME_TYPE_BY_EXTENSION = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "heic": "image/heic",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

GENERIC_MEDIA_TYPE = "file"
GENERIC_MIME_TYPE = "application/octet-stream"


def _extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].lower()


def classify_by_extension(filename: str) -> str:
    """Map a filename to its media type; unknown extensions are "file"."""
    return MEDIA_TYPE_BY_EXTENSION.get(_extension(filename), GENERIC_MEDIA_TYPE)


def mime_type_for(filename: str) -> str:
    """Map a filename to the content type used when storing it."""
    return MIME_TYPE_BY_EXTENSION.get(_extension(filename), GENERIC_MIME_TYPE)


def is_pdf(filename: Optional[str]) -> bool:
    return bool(filename) and _extension(filename) == "pdf"


# =============================================================================
# Placeholder detection
# =============================================================================

class MediaDetection(NamedTuple):
    has_media: bool
    media_type: Optional[str]
    media_filename: Optional[str]
    body: str


# iOS exports that include media: "<attached: 00000012-PHOTO-2024-01-05.jpg>"
ATTACHED_TAG_PATTERN = re.compile(r"<attached:\s*(.+?)>")

# Android exports that include media: "IMG-20240105-WA0001.jpg (file attached)"
ATTACHED_FILENAME_PATTERN = re.compile(
    r"^([\w\-. ]+\.(?:jpg|jpeg|png|webp|heic|gif|mp4|mov|avi|mp3|ogg|m4a|opus|aac|pdf|docx?|xlsx?|pptx?))"
    r"(?:\s+\(file attached\))?$",
    re.IGNORECASE,
)

# Exports made without media
OMITTED_PATTERNS = [
    (re.compile(r"^<Media omitted>$", re.IGNORECASE), "image"),
    (re.compile(r"^image omitted$", re.IGNORECASE), "image"),
    (re.compile(r"^photo omitted$", re.IGNORECASE), "image"),
    (re.compile(r"^video omitted$", re.IGNORECASE), "video"),
    (re.compile(r"^audio omitted$", re.IGNORECASE), "audio"),
    (re.compile(r"^voice message omitted$", re.IGNORECASE), "audio"),
    (re.compile(r"^document omitted$", re.IGNORECASE), "document"),
    (re.compile(r"^sticker omitted$", re.IGNORECASE), "sticker"),
    (re.compile(r"^GIF omitted$", re.IGNORECASE), "gif"),
    (re.compile(r"^Contact card omitted$", re.IGNORECASE), "contact"),
]

PLACEHOLDER_PATTERN = re.compile(r"\[.+?\]")


def media_marker(media_type: str, filename: str) -> str:
    return f"[{media_type}: {filename}]"


def classify_by_placeholder(body: str) -> MediaDetection:
    """
    Detect a media reference in a message body and rewrite the body.

    Tried in order against the trimmed body: an <attached: ...> tag (caption
    text is kept above the marker), a bare attachment filename, then the
    "omitted" phrases. Bodies with no media reference come back unchanged.
    """
    trimmed = body.strip()

    tag = ATTACHED_TAG_PATTERN.search(trimmed)
    if tag:
        filename = tag.group(1).strip()
        media_type = classify_by_extension(filename)
        caption = ATTACHED_TAG_PATTERN.sub("", trimmed, count=1).strip()
        marker = media_marker(media_type, filename)
        return MediaDetection(
            has_media=True,
            media_type=media_type,
            media_filename=filename,
            body=f"{caption}\n{marker}" if caption else marker,
        )

    bare = ATTACHED_FILENAME_PATTERN.match(trimmed)
    if bare:
        filename = bare.group(1)
        media_type = classify_by_extension(filename)
        return MediaDetection(
            has_media=True,
            media_type=media_type,
            media_filename=filename,
            body=media_marker(media_type, filename),
        )

    for pattern, media_type in OMITTED_PATTERNS:
        if pattern.match(trimmed):
            return MediaDetection(
                has_media=True,
                media_type=media_type,
                media_filename=None,
                body=f"[{media_type} omitted]",
            )

    return MediaDetection(has_media=False, media_type=None, media_filename=None, body=body)


def is_placeholder_only(body: str) -> bool:
    """True when the body is nothing but a single bracketed media marker."""
    return PLACEHOLDER_PATTERN.fullmatch(body.strip()) is not None
