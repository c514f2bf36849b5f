"""
Pydantic schemas for API responses.

This module contains:
- Group, chat, message and scrape-history response models
- Statistics and scheduler status models
- Scrape trigger acknowledgements
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, computed_field


def format_epoch(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Generic
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    source_state: Optional[str] = Field(None, description="Source connection state")


# =============================================================================
# Groups
# =============================================================================

class GroupResponse(BaseModel):
    id: str
    name: str
    participants_count: int
    created_at: datetime
    updated_at: datetime
    is_monitored: bool = False

    model_config = {"from_attributes": True}


class GroupsListResponse(BaseModel):
    count: int = Field(..., ge=0)
    groups: list[GroupResponse] = Field(default_factory=list)


class ChatResponse(BaseModel):
    """A chat visible to the source client, flagged when it is monitored."""
    id: str
    name: Optional[str] = None
    is_group: bool
    unread_count: int = 0
    timestamp: Optional[int] = None
    is_monitored: bool = False

    model_config = {"from_attributes": True}


class ChatsListResponse(BaseModel):
    count: int = Field(..., ge=0)
    chats: list[ChatResponse] = Field(default_factory=list)


# =============================================================================
# Messages
# =============================================================================

class MessageResponse(BaseModel):
    """
    A stored message. Maps the messages table to the API format.
    """
    id: str
    group_id: str
    message_body: Optional[str] = None
    message_type: Optional[str] = None
    timestamp: int = Field(..., description="Epoch seconds")
    from_number: Optional[str] = None
    from_name: Optional[str] = None
    author: Optional[str] = None
    author_phone: Optional[str] = Field(None, description="Resolved sender, '+' followed by digits")
    is_from_me: bool = False
    has_media: bool = False
    media_path: Optional[str] = None
    ack: Optional[int] = None
    scraped_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def timestamp_readable(self) -> Optional[str]:
        return format_epoch(self.timestamp)


class GroupMessagesResponse(BaseModel):
    """
    Paged messages of one group, newest first.

    - total: all stored messages of the group (ignoring limit/offset)
    """
    group_id: str
    group_name: Optional[str] = None
    count: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)
    messages: list[MessageResponse] = Field(default_factory=list)


class DateRangeMessagesResponse(BaseModel):
    group_id: str
    start_date: datetime
    end_date: datetime
    count: int = Field(..., ge=0)
    messages: list[MessageResponse] = Field(default_factory=list)


class SearchResponse(BaseModel):
    group_id: str
    search_term: str
    count: int = Field(..., ge=0)
    messages: list[MessageResponse] = Field(default_factory=list)


# =============================================================================
# Statistics
# =============================================================================

class GroupStatistics(BaseModel):
    total_messages: int = Field(..., ge=0)
    media_messages: int = Field(..., ge=0)
    unique_senders: int = Field(..., ge=0)
    first_message_timestamp: Optional[int] = None
    last_message_timestamp: Optional[int] = None

    @computed_field
    @property
    def first_message_date(self) -> Optional[str]:
        return format_epoch(self.first_message_timestamp)

    @computed_field
    @property
    def last_message_date(self) -> Optional[str]:
        return format_epoch(self.last_message_timestamp)


class GroupStatsResponse(BaseModel):
    group_id: str
    group_name: Optional[str] = None
    statistics: GroupStatistics


# =============================================================================
# Scrape runs
# =============================================================================

class ScrapeRunResponse(BaseModel):
    id: int
    group_id: str
    messages_scraped: int
    messages_inserted: int
    scrape_start: datetime
    scrape_end: Optional[datetime] = None
    status: str
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


class ScrapeHistoryResponse(BaseModel):
    group_id: str
    count: int = Field(..., ge=0)
    history: list[ScrapeRunResponse] = Field(default_factory=list)


class ScrapeTriggerResponse(BaseModel):
    """Acknowledgement that a scrape was queued in the background."""
    success: bool = True
    message: str
    group_id: Optional[str] = None
    groups: Optional[list[str]] = None


# =============================================================================
# Scheduler
# =============================================================================

class TimerStatus(BaseModel):
    schedule: str
    armed: bool


class CleanupTimerStatus(TimerStatus):
    enabled: bool


class SchedulerStatusResponse(BaseModel):
    ingestion: TimerStatus
    cleanup: CleanupTimerStatus
    timezone: str
