"""Transport contract consumed by the session engine.

The Transport implements the actual wire protocol (connect, authenticate,
frame). The engine only sees this narrow interface:

- lifecycle: connect / close
- outbound: send_message
- queries: fetch_conversation_metadata / fetch_all_memberships / is_group
- inbound: four event kinds delivered through TransportHandlers

A Transport instance serves one connection. The supervisor builds a fresh
one through a TransportFactory on every (re)start.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..models import (
    ConnectionState,
    ConnectionUpdate,
    ConversationMetadata,
    InboundMessage,
    MembershipChange,
    MessageUpdate,
    SentMessage,
)

if TYPE_CHECKING:
    from ..config import SessionConfig

Handler = Callable[[Any], Awaitable[None] | None]


@dataclass
class TransportHandlers:
    """Callbacks a Transport invokes for its four event kinds.

    Handlers may be sync or async. Transports must await the result when it
    is awaitable (see ``dispatch``).
    """

    on_connection: Callable[[ConnectionUpdate], Awaitable[None] | None]
    on_message: Callable[[InboundMessage], Awaitable[None] | None]
    on_message_update: Callable[[MessageUpdate], Awaitable[None] | None]
    on_membership: Callable[[MembershipChange], Awaitable[None] | None]


async def dispatch(handler: Handler | None, payload: Any) -> None:
    """Call a handler and await its result when it returns an awaitable."""
    if handler is None:
        return
    result = handler(payload)
    if inspect.isawaitable(result):
        await result


@runtime_checkable
class Transport(Protocol):
    """Protocol for messaging-platform transports."""

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        ...

    def bind(self, handlers: TransportHandlers) -> None:
        """Register the engine's event handlers. Called before connect()."""
        ...

    async def connect(self) -> None:
        """Bring the connection up.

        Completion means the connection attempt started; the ``open`` event
        is reported through ``on_connection``.

        Raises:
            ConnectionError: If the connection cannot be initiated
        """
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...

    async def send_message(
        self,
        conversation_id: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> SentMessage | None:
        """Send one message. Raises on delivery failure."""
        ...

    async def fetch_conversation_metadata(self, conversation_id: str) -> ConversationMetadata:
        """Fetch metadata for a group conversation."""
        ...

    async def fetch_all_memberships(self) -> list[ConversationMetadata]:
        """Fetch metadata for every group the account belongs to."""
        ...

    def is_group(self, conversation_id: str) -> bool:
        """Whether ``conversation_id`` addresses a group conversation."""
        ...


TransportFactory = Callable[["SessionConfig"], Transport]
