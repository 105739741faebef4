"""In-memory Transport for tests and local development.

Records every send, lets callers script failures, and exposes emit_*
helpers that push events into the bound handlers the same way a real
transport would.

Usage:
    transport = MockTransport()
    session = SessionSupervisor(lambda config: transport)
    await session.start()
    await transport.emit_open()
    await transport.emit_message(transport.message("hi", conversation_id="123@s.whatsapp.net"))

    assert transport.sent[0].payload == {"text": "..."}
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..models import (
    ConnectionState,
    ConnectionUpdate,
    ConversationMetadata,
    DisconnectReason,
    InboundMessage,
    MembershipChange,
    MembershipChangeKind,
    MessageType,
    MessageUpdate,
    SenderType,
    SentMessage,
)
from .base import TransportHandlers, dispatch

logger = logging.getLogger(__name__)

GROUP_SUFFIX = "@g.us"


@dataclass
class SentRecord:
    """One call to send_message, as observed by the mock."""

    conversation_id: str
    payload: dict[str, Any]
    options: dict[str, Any] | None
    sent_at: float = field(default_factory=time.monotonic)


class MockTransport:
    """Scriptable Transport implementation."""

    _ids = itertools.count(1)

    def __init__(
        self,
        memberships: list[ConversationMetadata] | None = None,
        group_suffix: str = GROUP_SUFFIX,
        send_latency: float = 0.0,
        emit_close_on_close: bool = True,
    ) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._handlers: TransportHandlers | None = None
        self._group_suffix = group_suffix
        self._send_latency = send_latency
        self._emit_close_on_close = emit_close_on_close
        self._memberships: dict[str, ConversationMetadata] = {
            meta.id: meta for meta in (memberships or [])
        }

        self.sent: list[SentRecord] = []
        self.metadata_requests: list[str] = []
        self.connect_count = 0
        self.close_count = 0
        self.membership_fetch_count = 0

        # Failure scripting
        self.connect_error: Exception | None = None
        self.memberships_error: Exception | None = None
        self._send_failures: list[Exception] = []

    # -------------------------------------------------------------------------
    # Transport protocol
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_bound(self) -> bool:
        return self._handlers is not None

    def bind(self, handlers: TransportHandlers) -> None:
        self._handlers = handlers

    async def connect(self) -> None:
        self.connect_count += 1
        if self.connect_error is not None:
            self._state = ConnectionState.DISCONNECTED
            raise self.connect_error
        self._state = ConnectionState.CONNECTING

    async def close(self) -> None:
        self.close_count += 1
        if self._state == ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.DISCONNECTED
        if self._emit_close_on_close:
            await self._emit_connection(
                ConnectionUpdate(
                    state=ConnectionState.DISCONNECTED,
                    reason=DisconnectReason.CONNECTION_LOST,
                    detail="closed by client",
                )
            )

    async def send_message(
        self,
        conversation_id: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> SentMessage | None:
        self.sent.append(SentRecord(conversation_id, payload, options))
        if self._send_latency:
            await asyncio.sleep(self._send_latency)
        if self._send_failures:
            raise self._send_failures.pop(0)
        return SentMessage(id=f"sent_{next(self._ids)}", conversation_id=conversation_id)

    async def fetch_conversation_metadata(self, conversation_id: str) -> ConversationMetadata:
        self.metadata_requests.append(conversation_id)
        return self._memberships.get(conversation_id) or ConversationMetadata(id=conversation_id)

    async def fetch_all_memberships(self) -> list[ConversationMetadata]:
        self.membership_fetch_count += 1
        if self.memberships_error is not None:
            raise self.memberships_error
        return list(self._memberships.values())

    def is_group(self, conversation_id: str) -> bool:
        return conversation_id.endswith(self._group_suffix)

    # -------------------------------------------------------------------------
    # Scripting helpers
    # -------------------------------------------------------------------------

    def fail_next_sends(self, count: int = 1, error: Exception | None = None) -> None:
        """Make the next ``count`` send_message calls raise ``error``."""
        for _ in range(count):
            self._send_failures.append(error or ConnectionError("mock send failure"))

    def add_membership(self, metadata: ConversationMetadata) -> None:
        self._memberships[metadata.id] = metadata

    def clear(self) -> None:
        """Clear recorded calls and scripted failures."""
        self.sent.clear()
        self.metadata_requests.clear()
        self._send_failures.clear()
        self.connect_error = None
        self.memberships_error = None

    @classmethod
    def message(
        cls,
        text: str | None = None,
        conversation_id: str = "10000@s.whatsapp.net",
        participant_id: str | None = None,
        type: MessageType | None = None,
        from_self: bool = False,
    ) -> InboundMessage:
        """Build an InboundMessage with sensible defaults."""
        if type is None:
            type = MessageType.TEXT if text is not None else MessageType.UNKNOWN
        sender_type = (
            SenderType.GROUP if conversation_id.endswith(GROUP_SUFFIX) else SenderType.INDIVIDUAL
        )
        return InboundMessage(
            id=f"msg_{next(cls._ids)}",
            conversation_id=conversation_id,
            participant_id=participant_id,
            from_self=from_self,
            type=type,
            sender_type=sender_type,
            text=text,
        )

    # -------------------------------------------------------------------------
    # Event emitters
    # -------------------------------------------------------------------------

    async def emit_open(self) -> None:
        self._state = ConnectionState.OPEN
        await self._emit_connection(ConnectionUpdate(state=ConnectionState.OPEN))

    async def emit_closed(
        self,
        reason: DisconnectReason = DisconnectReason.CONNECTION_LOST,
        detail: str | None = None,
    ) -> None:
        self._state = ConnectionState.DISCONNECTED
        await self._emit_connection(
            ConnectionUpdate(state=ConnectionState.DISCONNECTED, reason=reason, detail=detail)
        )

    async def emit_message(self, message: InboundMessage) -> None:
        await dispatch(self._handlers.on_message if self._handlers else None, message)

    async def emit_update(self, update: MessageUpdate) -> None:
        await dispatch(self._handlers.on_message_update if self._handlers else None, update)

    async def emit_membership(
        self,
        metadata: ConversationMetadata,
        kind: MembershipChangeKind = MembershipChangeKind.JOINED,
    ) -> None:
        if kind == MembershipChangeKind.JOINED:
            self.add_membership(metadata)
        change = MembershipChange(kind=kind, metadata=metadata)
        await dispatch(self._handlers.on_membership if self._handlers else None, change)

    async def _emit_connection(self, update: ConnectionUpdate) -> None:
        if self._handlers is None:
            logger.debug(f"Dropping connection update with no handlers bound: {update.state}")
            return
        await dispatch(self._handlers.on_connection, update)
