"""
Tests for the GET /messages endpoint.

Tests cover:
- Basic retrieval with default pagination
- Pagination with limit and offset
- Filtering by group and sender
- Filtering by timestamp (since)
- Free-text search (q)
- Combined filters
"""

import pytest

from conftest import make_zip


TRANSCRIPT = "\n".join([
    "[15/1/25, 10:00:00] Alice: Hello world",
    "[15/1/25, 10:01:00] Alice: How are you?",
    "[15/1/25, 10:02:00] Bob: Goodbye",
    "[15/1/25, 10:03:00] Bob: See you later",
    "[15/1/25, 10:04:00] Carol: Hello there",
    "[15/1/25, 10:05:00] Alice: <attached: photo.jpg>",
])


@pytest.fixture
def seeded_client(client):
    """Client with one imported group of six messages."""
    response = client.post(
        "/imports",
        files={"file": ("export.zip", make_zip({"_chat.txt": TRANSCRIPT, "photo.jpg": b"jpeg"}), "application/zip")},
        data={"group_name": "Suppliers"},
    )
    assert response.status_code == 200
    assert response.json()["inserted"] == 6
    return client


class TestMessagesBasic:
    """Test basic messages retrieval."""

    def test_empty_database(self, client):
        """Test GET /messages with no messages returns empty list."""
        response = client.get("/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["data"] == []
        assert data["total"] == 0
        assert data["limit"] == 50
        assert data["offset"] == 0

    def test_get_all_messages(self, seeded_client):
        """Test GET /messages returns all messages with default pagination."""
        data = seeded_client.get("/messages").json()

        assert len(data["data"]) == 6
        assert data["total"] == 6

    def test_message_fields(self, seeded_client):
        """Test that message response carries the stored columns."""
        msg = seeded_client.get("/messages").json()["data"][0]

        assert msg["group_id"] == "export:suppliers"
        assert msg["group_name"] == "Suppliers"
        assert msg["sender_jid"] == "export:alice"
        assert msg["sender_name"] == "Alice"
        assert msg["body"] == "Hello world"
        assert msg["timestamp"] == "2025-01-15T10:00:00.000Z"
        assert msg["source"] == "export"
        assert msg["message_id"].startswith("export_export:suppliers_")

    def test_ordering_by_timestamp_asc(self, seeded_client):
        """Test messages are ordered by timestamp ASC, message_id ASC."""
        data = seeded_client.get("/messages").json()["data"]

        timestamps = [msg["timestamp"] for msg in data]
        assert timestamps == sorted(timestamps)
        assert data[0]["body"] == "Hello world"
        assert data[5]["has_media"] is True

    def test_response_includes_request_id_header(self, seeded_client):
        """Test that response includes X-Request-ID header."""
        response = seeded_client.get("/messages")

        assert "x-request-id" in response.headers


class TestMessagesPagination:
    """Test pagination parameters."""

    def test_limit_and_offset_together(self, seeded_client):
        """Test limit and offset work together for pagination."""
        data = seeded_client.get("/messages", params={"limit": 2, "offset": 2}).json()

        assert [m["body"] for m in data["data"]] == ["Goodbye", "See you later"]
        assert data["total"] == 6
        assert data["limit"] == 2
        assert data["offset"] == 2

    def test_offset_beyond_total(self, seeded_client):
        """Test offset larger than total returns empty list."""
        data = seeded_client.get("/messages", params={"offset": 100}).json()

        assert data["data"] == []
        assert data["total"] == 6

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    def test_out_of_range_rejected(self, seeded_client, params):
        """Test limit and offset bounds are enforced."""
        assert seeded_client.get("/messages", params=params).status_code == 422


class TestMessagesFilters:
    """Test group, sender, since and q filters."""

    def test_filter_by_group(self, seeded_client):
        """Test group_id filter is an exact match."""
        assert seeded_client.get("/messages", params={"group_id": "export:suppliers"}).json()["total"] == 6
        assert seeded_client.get("/messages", params={"group_id": "export:other"}).json()["total"] == 0

    def test_filter_by_sender(self, seeded_client):
        """Test filtering messages by sender display name."""
        data = seeded_client.get("/messages", params={"sender": "Alice"}).json()

        assert data["total"] == 3
        assert all(msg["sender_name"] == "Alice" for msg in data["data"])

    def test_filter_by_since(self, seeded_client):
        """Test filtering messages with timestamp >= since."""
        data = seeded_client.get("/messages", params={"since": "2025-01-15T10:03:00.000Z"}).json()

        assert data["total"] == 3
        assert [m["body"] for m in data["data"]][0] == "See you later"

    def test_search_text_case_insensitive(self, seeded_client):
        """Test text search is case-insensitive."""
        data = seeded_client.get("/messages", params={"q": "HELLO"}).json()

        assert data["total"] == 2

    def test_search_media_marker(self, seeded_client):
        """Test media markers are searchable."""
        data = seeded_client.get("/messages", params={"q": "photo.jpg"}).json()

        assert data["total"] == 1
        assert data["data"][0]["media_url"].endswith("/photo.jpg")

    def test_filter_sender_and_since(self, seeded_client):
        """Test combining sender and since filters."""
        data = seeded_client.get("/messages", params={
            "sender": "Alice",
            "since": "2025-01-15T10:01:00.000Z"
        }).json()

        assert data["total"] == 2
