"""
Interface of the chat source client.

The harvester never manages the connection, authentication or session of the
underlying chat client. It only consumes the calls declared by SourceClient
and observes the connection through ConnectionMonitor.
"""

import asyncio
import enum
import logging
from typing import Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# =============================================================================
# Source DTOs
# =============================================================================

class Participant(BaseModel):
    """A group participant as reported by the source."""
    id: str = Field(..., description="Participant identifier, e.g. 94772147755@c.us or 16247445@lid")
    phone_identifier: Optional[str] = Field(
        None, description="Linked phone-bearing identifier, when the source exposes one"
    )


class GroupSnapshot(BaseModel):
    id: str
    name: str
    is_group: bool
    participants: list[Participant] = Field(default_factory=list)


class ContactInfo(BaseModel):
    id: str
    number: Optional[str] = None
    pushname: Optional[str] = None
    name: Optional[str] = None


class RawMessage(BaseModel):
    """A message exactly as fetched from the source."""
    id: str
    body: Optional[str] = None
    type: str = "chat"
    timestamp: int = Field(..., description="Epoch seconds, source-assigned")
    from_id: str
    author_id: Optional[str] = None
    from_me: bool = False
    has_media: bool = False
    ack_state: Optional[int] = None


class MediaPayload(BaseModel):
    mime_type: str
    data: bytes


class ChatSummary(BaseModel):
    """One entry of the source's chat list, used to discover group ids."""
    id: str
    name: Optional[str] = None
    is_group: bool = False
    unread_count: int = 0
    timestamp: Optional[int] = Field(None, description="Epoch seconds of the last activity")


@runtime_checkable
class SourceClient(Protocol):
    """
    Calls consumed from the chat client. Every call is a suspension point and
    carries its own timeout.

    Failures:
    - fetch_group_by_id / fetch_recent_messages / list_chats raise SourceUnavailable
    - resolve_contact raises LookupError when the contact is unknown
    """

    async def fetch_group_by_id(self, group_id: str) -> GroupSnapshot: ...

    async def resolve_contact(self, contact_id: str) -> ContactInfo: ...

    async def fetch_recent_messages(self, group_id: str, limit: int) -> list[RawMessage]: ...

    async def download_media(self, message_id: str) -> Optional[MediaPayload]: ...

    async def list_chats(self) -> list[ChatSummary]: ...


# =============================================================================
# Connection state
# =============================================================================

class ConnectionState(str, enum.Enum):
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    READY = "ready"
    DISCONNECTED = "disconnected"


Listener = Callable[[ConnectionState, ConnectionState], None]


class ConnectionMonitor:
    """
    Holds the source connection state.

    The client integration calls set_state from its own event handlers; the
    pipeline and the API query `state`, `is_ready`, subscribe to transitions,
    or await wait_until_ready.
    """

    def __init__(self, state: ConnectionState = ConnectionState.INITIALIZING):
        self._state = state
        self._listeners: list[Listener] = []
        self._waiters: list[asyncio.Future] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener(old, new); returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if new_state is old_state:
            return
        self._state = new_state
        log = logger.warning if new_state is ConnectionState.DISCONNECTED else logger.info
        log(f"Source connection state: {old_state.value} -> {new_state.value}")

        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception("Connection state listener failed")

        if new_state is ConnectionState.READY:
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.get_loop().call_soon_threadsafe(_resolve, waiter)

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for READY; returns False if the timeout expires first."""
        if self.is_ready:
            return True
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)


def _resolve(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(True)
