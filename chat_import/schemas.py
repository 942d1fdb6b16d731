"""
Pydantic schemas for pipeline records and request/response validation.

This module contains:
- ParsedMessage, the transient record the import pipeline carries
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


EXPORT_SOURCE = "export"
LIVE_SOURCE = "live"


# =============================================================================
# Pipeline Records
# =============================================================================

class ParsedMessage(BaseModel):
    """
    One chat message reconstructed from an export transcript.

    Created once by the parser, enriched in place with media_url (uploader)
    and embedding (embedding batcher), then written once.
    """
    message_id: str
    group_id: str
    group_name: str
    sender_jid: str
    sender_name: str
    body: str
    timestamp: datetime
    has_media: bool = False
    media_type: Optional[str] = None
    media_filename: Optional[str] = None
    media_url: Optional[str] = None
    embedding: Optional[list[float]] = None
    source: str = EXPORT_SOURCE

    @property
    def timestamp_iso(self) -> str:
        """ISO-8601 UTC with millisecond precision and Z suffix."""
        return iso_utc(self.timestamp)

    def to_row(self) -> dict:
        """Column mapping for the chat_messages table."""
        return {
            "message_id": self.message_id,
            "group_id": self.group_id,
            "group_name": self.group_name,
            "sender_jid": self.sender_jid,
            "sender_name": self.sender_name,
            "body": self.body,
            "timestamp": self.timestamp_iso,
            "has_media": self.has_media,
            "media_type": self.media_type,
            "media_url": self.media_url,
            "source": self.source,
            "embedding": self.embedding,
        }


def iso_utc(value: datetime) -> str:
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


# =============================================================================
# Pydantic Request Models
# =============================================================================

class IngestRequest(BaseModel):
    """
    A single live message pushed by a chat scraper.

    Validates:
    - message_id, group_id, body: non-empty strings
    - timestamp: ISO-8601 with timezone
    """
    message_id: str = Field(..., min_length=1, description="Unique message identifier")
    group_id: str = Field(..., min_length=1, description="Group partition key")
    group_name: str = Field(default="", description="Human-readable group label")
    sender_jid: str = Field(default="", description="Sender identifier")
    sender_name: str = Field(default="", description="Sender display name")
    body: str = Field(..., min_length=1, description="Message text")
    timestamp: str = Field(..., description="Message time, ISO-8601 with timezone")

    @field_validator("timestamp")
    @classmethod
    def validate_iso8601(cls, v: str) -> str:
        """Validate ISO-8601 timestamp carrying a timezone (Z or offset)."""
        try:
            parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("timestamp must be a valid ISO-8601 timestamp (e.g., 2025-01-15T10:00:00Z)")
        if parsed.tzinfo is None:
            raise ValueError("timestamp must include a timezone (Z or +HH:MM)")
        return iso_utc(parsed)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "message_id": "3EB0C431C26A1916E4",
                    "group_id": "120363025246125486@g.us",
                    "group_name": "Suppliers",
                    "sender_jid": "31612345678@s.whatsapp.net",
                    "sender_name": "Alice",
                    "body": "Truck leaves at 6",
                    "timestamp": "2025-01-15T10:00:00Z",
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ImportStats(BaseModel):
    """
    Result of one archive import.

    Distinguishes "nothing new" (inserted=0, skipped_duplicates=parsed),
    partial success (errors > 0) and degraded media storage
    (storage_enabled=false while media_in_zip > 0).
    """
    parsed: int = Field(0, ge=0, description="Messages parsed (after limit)")
    skipped_duplicates: int = Field(0, ge=0, description="Messages already imported")
    has_media: int = Field(0, ge=0, description="Parsed messages referencing media")
    media_in_zip: int = Field(0, ge=0, description="Media files found in the archive")
    media_uploaded_to_storage: int = Field(0, ge=0, description="Media files uploaded")
    storage_enabled: bool = Field(False, description="Whether media storage worked for this import")
    media_breakdown: dict[str, int] = Field(default_factory=dict, description="Media messages per type")
    embedded: int = Field(0, ge=0, description="Messages that received an embedding")
    inserted: int = Field(0, ge=0, description="Messages written")
    errors: int = Field(0, ge=0, description="Messages lost to write failures")
    message: str = Field("", description="Human-readable summary")


class IngestResponse(BaseModel):
    """Response model for single-message ingest."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """
    Response model for a single stored message.
    Maps database fields to API response format.
    """
    message_id: str
    group_id: str
    group_name: Optional[str] = None
    sender_jid: Optional[str] = None
    sender_name: Optional[str] = None
    body: Optional[str] = None
    timestamp: str
    has_media: bool = False
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    source: Optional[str] = None
    has_embedding: bool = False

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.

    Contains:
    - data: list of messages matching filters
    - total: total count of messages matching filters (ignoring pagination)
    - limit: number of messages per page
    - offset: starting position
    """
    data: list[MessageResponse] = Field(default_factory=list, description="List of messages")
    total: int = Field(..., ge=0, description="Total messages matching filters (ignoring limit/offset)")
    limit: int = Field(..., ge=1, le=100, description="Maximum messages per page")
    offset: int = Field(..., ge=0, description="Number of messages skipped")


class SenderCount(BaseModel):
    """Model for sender message count in stats."""
    sender_name: str = Field(..., description="Sender display name")
    count: int = Field(..., ge=0, description="Number of messages from this sender")


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.

    Provides message-level analytics, optionally scoped to one group.
    """
    group_id: Optional[str] = Field(None, description="Group the stats are scoped to")
    total_messages: int = Field(..., ge=0)
    senders_count: int = Field(..., ge=0)
    messages_per_sender: list[SenderCount] = Field(
        default_factory=list,
        description="Top 10 senders sorted by message count (descending)"
    )
    media_messages: int = Field(..., ge=0)
    embedded_messages: int = Field(..., ge=0)
    first_message_ts: Optional[str] = Field(None, description="Earliest timestamp (null if no messages)")
    last_message_ts: Optional[str] = Field(None, description="Latest timestamp (null if no messages)")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
