"""
Tests for upload extraction.

Tests cover:
- Plain-text uploads
- Zip bundles with transcript and media
- Transcript selection rules
- Unsupported compression methods
- Corrupt archives and archives without a transcript
- Zip safety limits
- PDF text extraction
"""

import struct

import pytest

from chat_import.archive import extract_pdf_text, extract_upload
from chat_import.config import settings
from chat_import.errors import ArchiveReadError, TranscriptNotFoundError
from conftest import make_pdf, make_zip


TRANSCRIPT = "[5/1/24, 10:30:00] Alice: hello\n[5/1/24, 10:31:00] Bob: <attached: photo.jpg>\n"


def with_compression_method(data, method):
    """Rewrite the compression method of every member in zip bytes."""
    patched = bytearray(data)
    for signature, offset in ((b"PK\x03\x04", 8), (b"PK\x01\x02", 10)):
        start = patched.find(signature)
        while start != -1:
            patched[start + offset:start + offset + 2] = struct.pack("<H", method)
            start = patched.find(signature, start + 4)
    return bytes(patched)


class TestPlainText:
    """Test bare transcript uploads."""

    def test_plain_text_upload(self):
        chat_text, media = extract_upload(TRANSCRIPT.encode("utf-8"), "chat.txt")

        assert chat_text == TRANSCRIPT
        assert media == {}

    def test_invalid_utf8_replaced(self):
        chat_text, _ = extract_upload(b"[5/1/24, 10:30:00] Alice: caf\xe9", "chat.txt")

        assert chat_text.endswith("caf\ufffd")


class TestZipBundle:
    """Test zip bundle extraction."""

    def test_transcript_and_media(self):
        data = make_zip({
            "_chat.txt": TRANSCRIPT,
            "photo.jpg": b"\xff\xd8jpeg-bytes",
            "notes.txt": "not the transcript",
        })

        chat_text, media = extract_upload(data, "export.zip")

        assert chat_text == TRANSCRIPT
        assert list(media) == ["photo.jpg"]
        assert media["photo.jpg"].data == b"\xff\xd8jpeg-bytes"
        assert media["photo.jpg"].mime_type == "image/jpeg"
        assert media["photo.jpg"].media_type == "image"
        assert media["photo.jpg"].extracted_text is None

    def test_nested_members_keyed_by_basename(self):
        data = make_zip({
            "Chat/_chat.txt": TRANSCRIPT,
            "Chat/photo.jpg": b"jpeg",
        })

        chat_text, media = extract_upload(data, "EXPORT.ZIP")

        assert chat_text == TRANSCRIPT
        assert "photo.jpg" in media

    def test_sole_text_file_is_transcript(self):
        data = make_zip({"My Chat.txt": TRANSCRIPT, "photo.jpg": b"jpeg"})

        chat_text, media = extract_upload(data, "export.zip")

        assert chat_text == TRANSCRIPT
        assert "photo.jpg" in media

    def test_chat_txt_preferred_over_other_text_file(self):
        for files in (
            {"_chat.txt": TRANSCRIPT, "notes.txt": "not the transcript"},
            {"notes.txt": "not the transcript", "_chat.txt": TRANSCRIPT},
        ):
            chat_text, media = extract_upload(make_zip(files), "export.zip")

            assert chat_text == TRANSCRIPT
            assert media == {}

    def test_two_text_files_without_chat_txt_is_ambiguous(self):
        data = make_zip({"My Chat.txt": TRANSCRIPT, "notes.txt": "x"})

        with pytest.raises(TranscriptNotFoundError):
            extract_upload(data, "export.zip")

    def test_android_transcript_name(self):
        data = make_zip({
            "WhatsApp Chat with Suppliers.txt": TRANSCRIPT,
            "IMG-20240105-WA0001.jpg": b"jpeg",
            "VID-20240105-WA0002.mp4": b"mp4",
        })

        chat_text, media = extract_upload(data, "export.zip")

        assert chat_text == TRANSCRIPT
        assert media["VID-20240105-WA0002.mp4"].media_type == "video"

    def test_dotfiles_skipped(self):
        data = make_zip({"_chat.txt": TRANSCRIPT, ".DS_Store": b"junk", "photo.jpg": b"jpeg"})

        _, media = extract_upload(data, "export.zip")

        assert ".DS_Store" not in media

    def test_unknown_extension_is_generic_file(self):
        data = make_zip({"_chat.txt": TRANSCRIPT, "backup.rar": b"rar"})

        _, media = extract_upload(data, "export.zip")

        assert media["backup.rar"].media_type == "file"
        assert media["backup.rar"].mime_type == "application/octet-stream"


class TestZipErrors:
    """Test unreadable or unsafe archives."""

    def test_corrupt_zip(self):
        with pytest.raises(ArchiveReadError) as exc_info:
            extract_upload(b"PK\x03\x04 definitely not a zip", "export.zip")

        assert exc_info.value.status_code == 422
        assert exc_info.value.detail.startswith("Failed to read zip")

    def test_unsupported_compression_method(self):
        data = with_compression_method(make_zip({"_chat.txt": TRANSCRIPT}), 99)

        with pytest.raises(ArchiveReadError) as exc_info:
            extract_upload(data, "export.zip")

        assert exc_info.value.detail.startswith("Failed to read zip")

    def test_no_transcript(self):
        data = make_zip({"photo.jpg": b"jpeg", "clip.mp4": b"mp4", "notes.txt": "x"})

        with pytest.raises(TranscriptNotFoundError) as exc_info:
            extract_upload(data, "export.zip")

        assert exc_info.value.status_code == 422
        assert "_chat.txt" in exc_info.value.detail

    def test_path_traversal_rejected(self):
        data = make_zip({"_chat.txt": TRANSCRIPT, "../evil.jpg": b"jpeg"})

        with pytest.raises(ArchiveReadError) as exc_info:
            extract_upload(data, "export.zip")

        assert "unsafe path" in exc_info.value.detail

    def test_too_many_members(self, monkeypatch):
        monkeypatch.setattr(settings, "MAX_ARCHIVE_MEMBERS", 2)
        data = make_zip({"_chat.txt": TRANSCRIPT, "a.jpg": b"a", "b.jpg": b"b"})

        with pytest.raises(ArchiveReadError) as exc_info:
            extract_upload(data, "export.zip")

        assert "too many files" in exc_info.value.detail

    def test_member_too_large(self, monkeypatch):
        monkeypatch.setattr(settings, "MAX_ARCHIVE_MEMBER_BYTES", 10)
        data = make_zip({"_chat.txt": TRANSCRIPT})

        with pytest.raises(ArchiveReadError) as exc_info:
            extract_upload(data, "export.zip")

        assert "exceeds maximum size" in exc_info.value.detail


class TestPdfExtraction:
    """Test best-effort PDF text extraction."""

    def test_pdf_text_attached_to_media_entry(self):
        pdf = make_pdf("Quarterly price list for euro pallets")
        data = make_zip({"_chat.txt": TRANSCRIPT, "prices.pdf": pdf})

        _, media = extract_upload(data, "export.zip")

        assert media["prices.pdf"].media_type == "document"
        assert "Quarterly price list" in media["prices.pdf"].extracted_text

    def test_short_text_is_noise(self):
        assert extract_pdf_text(make_pdf("Hi"), "short.pdf") is None

    def test_corrupt_pdf_returns_none(self):
        assert extract_pdf_text(b"%PDF-1.4 this is not a pdf", "broken.pdf") is None

    def test_corrupt_pdf_does_not_fail_extraction(self):
        data = make_zip({"_chat.txt": TRANSCRIPT, "broken.pdf": b"not a pdf"})

        _, media = extract_upload(data, "export.zip")

        assert media["broken.pdf"].extracted_text is None
