"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Boolean, Column, String, Text

from chat_import.storage import Base


class ChatMessage(Base):
    """
    SQLAlchemy model for imported and live chat messages.

    Table: chat_messages
    Primary Key: message_id (conflicting inserts are ignored, which makes
    re-imports idempotent)
    """
    __tablename__ = "chat_messages"

    message_id = Column(String, primary_key=True, index=True)
    group_id = Column(String, nullable=False, index=True)
    group_name = Column(String, nullable=True)
    sender_jid = Column(String, nullable=True)
    sender_name = Column(String, nullable=True, index=True)
    body = Column(Text, nullable=True)
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    has_media = Column(Boolean, nullable=False, default=False)
    media_type = Column(String, nullable=True)
    media_url = Column(Text, nullable=True)
    source = Column(String, nullable=False, default="export")
    embedding = Column(JSON(none_as_null=True), nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
