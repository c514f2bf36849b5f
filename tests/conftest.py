"""
Pytest configuration and shared fixtures.

Settings are pinned to test values before any harvester import so that the
module-level app never touches a real database.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Optional

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["MONITORED_GROUPS"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from harvester.config import get_settings
get_settings.cache_clear()

from harvester.errors import SourceUnavailable
from harvester.normalizer import StoredMessage
from harvester.source import ChatSummary, ContactInfo, GroupSnapshot, MediaPayload, Participant, RawMessage
from harvester.storage import MessageStore


GROUP_ID = "120363000000000001@g.us"
OTHER_GROUP_ID = "120363000000000002@g.us"


class FakeSourceClient:
    """
    Scriptable SourceClient. Every call is appended to `calls` as
    (call name, argument) so tests can assert ordering.
    """

    def __init__(self):
        self.groups: dict[str, GroupSnapshot] = {}
        self.messages: dict[str, list[RawMessage]] = {}
        self.contacts: dict[str, ContactInfo] = {}
        self.media: dict[str, MediaPayload] = {}
        self.unavailable: set[str] = set()
        self.broken_media: set[str] = set()
        self.message_fetch_delay: float = 0.0
        self.chat_list_unavailable = False
        self.calls: list[tuple[str, str]] = []

    def add_group(self, group_id: str, name: str = "Test Group", participants=(), is_group: bool = True):
        self.groups[group_id] = GroupSnapshot(
            id=group_id,
            name=name,
            is_group=is_group,
            participants=[p if isinstance(p, Participant) else Participant(id=p) for p in participants],
        )

    def add_messages(self, group_id: str, *messages: RawMessage):
        self.messages.setdefault(group_id, []).extend(messages)

    def add_contact(self, contact_id: str, **fields):
        self.contacts[contact_id] = ContactInfo(id=fields.pop("id", contact_id), **fields)

    async def fetch_group_by_id(self, group_id: str) -> GroupSnapshot:
        self.calls.append(("fetch_group", group_id))
        if group_id in self.unavailable or group_id not in self.groups:
            raise SourceUnavailable(f"Could not fetch chat {group_id}")
        return self.groups[group_id]

    async def resolve_contact(self, contact_id: str) -> ContactInfo:
        self.calls.append(("resolve_contact", contact_id))
        if contact_id not in self.contacts:
            raise LookupError(f"Unknown contact {contact_id}")
        return self.contacts[contact_id]

    async def fetch_recent_messages(self, group_id: str, limit: int) -> list[RawMessage]:
        self.calls.append(("fetch_messages", group_id))
        if self.message_fetch_delay:
            await asyncio.sleep(self.message_fetch_delay)
        if group_id in self.unavailable:
            raise SourceUnavailable(f"Could not fetch messages of {group_id}")
        return list(self.messages.get(group_id, []))[:limit]

    async def download_media(self, message_id: str) -> Optional[MediaPayload]:
        self.calls.append(("download_media", message_id))
        if message_id in self.broken_media:
            raise ConnectionError("media server reset the connection")
        return self.media.get(message_id)

    async def list_chats(self) -> list[ChatSummary]:
        self.calls.append(("list_chats", ""))
        if self.chat_list_unavailable:
            raise SourceUnavailable("Could not list chats")
        return [
            ChatSummary(id=g.id, name=g.name, is_group=g.is_group, timestamp=1736935200)
            for g in self.groups.values()
        ]


def make_raw_message(
    message_id: str,
    author_id: Optional[str] = "94771234567@c.us",
    timestamp: Optional[int] = None,
    body: Optional[str] = "Hello",
    has_media: bool = False,
    from_id: str = GROUP_ID,
) -> RawMessage:
    """Build a RawMessage with sensible defaults."""
    return RawMessage(
        id=message_id,
        body=body,
        type="chat",
        timestamp=timestamp if timestamp is not None else 1736935200,
        from_id=from_id,
        author_id=author_id,
        from_me=False,
        has_media=has_media,
        ack_state=1,
    )


def make_stored_message(
    message_id: str,
    group_id: str = GROUP_ID,
    timestamp: int = 1736935200,
    body: Optional[str] = "Hello",
    from_number: str = "94771234567@c.us",
    has_media: bool = False,
) -> StoredMessage:
    """Build a StoredMessage ready for MessageStore.insert_message."""
    return StoredMessage(
        id=message_id,
        group_id=group_id,
        message_body=body,
        message_type="chat",
        timestamp=timestamp,
        timestamp_formatted=datetime.fromtimestamp(timestamp, tz=timezone.utc),
        from_number=from_number,
        from_name="Tester",
        author=from_number,
        author_phone="+" + from_number.split("@")[0],
        has_media=has_media,
    )


@pytest.fixture
def store(tmp_path):
    """File-backed MessageStore with the schema applied, closed after the test."""
    message_store = MessageStore(f"sqlite:///{tmp_path / 'harvester.db'}")
    message_store.init_db()
    yield message_store
    message_store.close()


@pytest.fixture
def fake_source():
    return FakeSourceClient()


@pytest.fixture
def make_message():
    return make_raw_message


@pytest.fixture
def make_stored():
    return make_stored_message
