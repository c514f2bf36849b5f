"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Group(Base):
    """
    A monitored multi-party conversation.

    Table: groups
    Primary Key: id (source-assigned)
    """
    __tablename__ = "groups"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    participants_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class Message(Base):
    """
    One harvested group message.

    Table: messages
    Primary Key: id (ensures idempotency across all groups)
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    group_id = Column(String, ForeignKey("groups.id"), nullable=False)
    message_body = Column(Text, nullable=True)
    message_type = Column(String, nullable=True)
    timestamp = Column(BigInteger, nullable=False)  # epoch seconds, source-assigned
    timestamp_formatted = Column(DateTime(timezone=True), nullable=True)
    from_number = Column(String, nullable=True)
    from_name = Column(String, nullable=True)
    author = Column(String, nullable=True)  # raw author identifier
    author_phone = Column(String, nullable=True)  # canonical sender, "+<digits>"
    is_from_me = Column(Boolean, nullable=False, default=False)
    has_media = Column(Boolean, nullable=False, default=False)
    media_path = Column(String, nullable=True)
    ack = Column(Integer, nullable=True)
    scraped_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_messages_group_id", "group_id"),
        Index("idx_messages_timestamp", "timestamp"),
    )


class ScrapeRun(Base):
    """
    Audit record of one scrape of one group.

    Table: scrape_history
    """
    __tablename__ = "scrape_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(String, ForeignKey("groups.id"), nullable=False)
    messages_scraped = Column(Integer, nullable=False, default=0)
    messages_inserted = Column(Integer, nullable=False, default=0)
    scrape_start = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    scrape_end = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default=RunStatus.IN_PROGRESS.value)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_scrape_history_group_id", "group_id"),
        Index("idx_scrape_history_date", "scrape_start"),
    )
