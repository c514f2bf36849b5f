"""
Conversion of a RawMessage into the StoredMessage record that gets persisted.

Sender resolution walks a fixed fallback chain, first match wins:

1. raw author id found in the identity map
2. phone number on the sender's contact record
3. contact id in a phone-bearing format, else contact id found in the identity map
4. raw author id in a phone-bearing format
5. local part of the raw author id shaped like a phone number (10-15 digits)
6. unresolved (None)

Every resolved number is emitted as "+" followed by digits.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from harvester.errors import MessageProcessingError
from harvester.identity import (
    PHONE_SHAPE,
    IdentityMap,
    local_part,
    phone_from_identifier,
)
from harvester.media import MediaWriter
from harvester.source import ContactInfo, RawMessage, SourceClient

logger = logging.getLogger(__name__)


class StoredMessage(BaseModel):
    """Canonical message record, field names match the messages table."""
    id: str
    group_id: str
    message_body: Optional[str] = None
    message_type: Optional[str] = None
    timestamp: int
    timestamp_formatted: datetime
    from_number: Optional[str] = None
    from_name: Optional[str] = None
    author: Optional[str] = None
    author_phone: Optional[str] = None
    is_from_me: bool = False
    has_media: bool = False
    media_path: Optional[str] = None
    ack: Optional[int] = None


def format_phone(value: Optional[str]) -> Optional[str]:
    """'+' followed by the digits of value; None when value has no digits."""
    if not value:
        return None
    digits = "".join(ch for ch in value if ch.isdigit())
    return f"+{digits}" if digits else None


def resolve_author_phone(
    message: RawMessage,
    contact: Optional[ContactInfo],
    identity_map: IdentityMap,
) -> Optional[str]:
    author = message.author_id

    if author and author in identity_map:
        phone = format_phone(identity_map[author])
        if phone:
            return phone

    if contact is not None:
        phone = format_phone(contact.number)
        if phone:
            return phone
        if contact.id:
            phone = format_phone(phone_from_identifier(contact.id))
            if phone:
                return phone
            if contact.id in identity_map:
                phone = format_phone(identity_map[contact.id])
                if phone:
                    return phone

    if author:
        phone = format_phone(phone_from_identifier(author))
        if phone:
            return phone
        candidate = local_part(author)
        if PHONE_SHAPE.match(candidate):
            return f"+{candidate}"

    return None


def resolve_display_name(message: RawMessage, contact: Optional[ContactInfo]) -> str:
    if contact is not None:
        if contact.pushname:
            return contact.pushname
        if contact.name:
            return contact.name
    return message.from_id


class MessageNormalizer:
    """
    Builds StoredMessage records for one group scrape.

    Media is captured only when a MediaWriter is configured and the message
    reports attached media. A media failure leaves media_path empty.
    """

    def __init__(self, source: SourceClient, media_writer: Optional[MediaWriter] = None):
        self.source = source
        self.media_writer = media_writer

    async def normalize(self, message: RawMessage, group_id: str, identity_map: IdentityMap) -> StoredMessage:
        if not message.id:
            raise MessageProcessingError(None, "missing message id")
        try:
            timestamp_formatted = datetime.fromtimestamp(message.timestamp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise MessageProcessingError(message.id, f"invalid timestamp {message.timestamp!r}") from e

        contact = await self._lookup_contact(message)
        author_phone = resolve_author_phone(message, contact, identity_map)
        if author_phone is None and message.author_id:
            logger.warning(f"Sender of {message.id} unresolved (author {message.author_id})")

        media_path = None
        if message.has_media and self.media_writer is not None:
            media_path = await self._capture_media(message)

        return StoredMessage(
            id=message.id,
            group_id=group_id,
            message_body=message.body,
            message_type=message.type,
            timestamp=message.timestamp,
            timestamp_formatted=timestamp_formatted,
            from_number=message.from_id,
            from_name=resolve_display_name(message, contact),
            author=message.author_id,
            author_phone=author_phone,
            is_from_me=message.from_me,
            has_media=message.has_media,
            media_path=media_path,
            ack=message.ack_state,
        )

    async def _lookup_contact(self, message: RawMessage) -> Optional[ContactInfo]:
        sender_id = message.author_id or message.from_id
        try:
            return await self.source.resolve_contact(sender_id)
        except Exception as e:
            logger.warning(f"Contact lookup failed for {sender_id}, resolving sender without it: {e}")
            return None

    async def _capture_media(self, message: RawMessage) -> Optional[str]:
        try:
            payload = await self.source.download_media(message.id)
            if payload is None:
                return None
            return self.media_writer.save(message.id, payload)
        except Exception:
            logger.exception(f"Failed to download media for message {message.id}")
            return None
