"""
Tests for media classification.

Tests cover:
- Extension table lookups (media type and MIME type)
- <attached: ...> tags with and without captions
- Bare attachment filenames
- "omitted" placeholders
- Plain text passing through unchanged
"""

import pytest

from chat_import.media import (
    classify_by_extension,
    classify_by_placeholder,
    is_placeholder_only,
    mime_type_for,
)


class TestClassifyByExtension:
    """Test the extension table."""

    @pytest.mark.parametrize("filename,expected", [
        ("photo.jpg", "image"),
        ("PHOTO.JPEG", "image"),
        ("clip.mov", "video"),
        ("voice.opus", "audio"),
        ("invoice.pdf", "document"),
        ("prices.xlsx", "document"),
        ("archive.rar", "file"),
        ("no_extension", "file"),
    ])
    def test_media_type(self, filename, expected):
        assert classify_by_extension(filename) == expected

    def test_mime_type_known_and_unknown(self):
        assert mime_type_for("photo.jpg") == "image/jpeg"
        assert mime_type_for("invoice.pdf") == "application/pdf"
        assert mime_type_for("archive.rar") == "application/octet-stream"


class TestClassifyByPlaceholder:
    """Test inline media detection and body rewriting."""

    def test_attached_tag(self):
        result = classify_by_placeholder("<attached: 00000012-PHOTO-2024-01-05.jpg>")

        assert result.has_media is True
        assert result.media_type == "image"
        assert result.media_filename == "00000012-PHOTO-2024-01-05.jpg"
        assert result.body == "[image: 00000012-PHOTO-2024-01-05.jpg]"

    def test_attached_tag_keeps_caption(self):
        result = classify_by_placeholder("Pallets arrived\n<attached: photo.jpg>")

        assert result.media_filename == "photo.jpg"
        assert result.body == "Pallets arrived\n[image: photo.jpg]"

    def test_bare_filename_with_annotation(self):
        result = classify_by_placeholder("IMG-20240105-WA0001.jpg (file attached)")

        assert result.has_media is True
        assert result.media_type == "image"
        assert result.media_filename == "IMG-20240105-WA0001.jpg"
        assert result.body == "[image: IMG-20240105-WA0001.jpg]"

    def test_bare_document_filename(self):
        result = classify_by_placeholder("Price list.pdf")

        assert result.media_type == "document"
        assert result.media_filename == "Price list.pdf"

    @pytest.mark.parametrize("body,media_type", [
        ("<Media omitted>", "image"),
        ("image omitted", "image"),
        ("Video omitted", "video"),
        ("voice message omitted", "audio"),
        ("document omitted", "document"),
        ("sticker omitted", "sticker"),
        ("GIF omitted", "gif"),
        ("Contact card omitted", "contact"),
    ])
    def test_omitted_phrases(self, body, media_type):
        result = classify_by_placeholder(body)

        assert result.has_media is True
        assert result.media_type == media_type
        assert result.media_filename is None
        assert result.body == f"[{media_type} omitted]"

    def test_plain_text_unchanged(self):
        result = classify_by_placeholder("Truck leaves at 6, see photo later")

        assert result.has_media is False
        assert result.media_type is None
        assert result.body == "Truck leaves at 6, see photo later"

    def test_filename_inside_sentence_is_not_media(self):
        result = classify_by_placeholder("I sent report.pdf yesterday")

        assert result.has_media is False


class TestPlaceholderOnly:
    """Test the pure-placeholder check used for embedding eligibility."""

    def test_marker_alone(self):
        assert is_placeholder_only("[image omitted]")
        assert is_placeholder_only("[image: photo.jpg]")

    def test_marker_with_caption(self):
        assert not is_placeholder_only("Pallets arrived\n[image: photo.jpg]")
