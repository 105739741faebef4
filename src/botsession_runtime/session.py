"""Session Supervisor - owns the Transport lifecycle.

Brings the Transport up, adapts its four event kinds into broadcasters,
builds the OutboundQueue and InboundCorrelator on top of it, and keeps the
session connected across transient failures:

    STOPPED -> STARTING -> OPEN <-> RECONNECTING -> STOPPED

The broadcasters are created once and survive restarts by identity, so
subscribers never need to re-subscribe after a reconnect.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from .broadcaster import EventBroadcaster
from .config import SessionConfig
from .correlator import InboundCorrelator, WaitOptions
from .errors import SessionNotStartedError
from .models import (
    ConnectionUpdate,
    ConversationMetadata,
    DisconnectReason,
    InboundMessage,
    MembershipChange,
    MessageType,
    MessageUpdate,
    SentMessage,
)
from .outbound import OutboundQueue
from .transport.base import Transport, TransportFactory, TransportHandlers

if TYPE_CHECKING:
    import asyncio

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = __name__.partition(".")[0]

# Upper bound on waiting for an in-flight send while tearing a transport down
DRAIN_TIMEOUT = 10.0


class SessionState(str, Enum):
    """Supervisor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    OPEN = "open"
    RECONNECTING = "reconnecting"


class SessionSupervisor:
    """A live session over one Transport connection at a time.

    Usage:
        session = SessionSupervisor(make_transport, SessionConfig(queue_capacity=50))
        session.on_message_arrived.subscribe(router.handle)
        async with session:
            ...

    ``transport_factory`` is called on every (re)start and must return a
    fresh, unbound Transport.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        config: SessionConfig | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        self._transport_factory = transport_factory

        self._transport: Transport | None = None
        self._queue: OutboundQueue | None = None
        self._correlator: InboundCorrelator | None = None

        self._state = SessionState.STOPPED
        self._live = False
        self._reconnect_attempts = 0
        self._restarting = False
        self._closing = False

        # Exposed broadcasters, never replaced
        self.on_reconnected: EventBroadcaster[[]] = EventBroadcaster("reconnected")
        self.on_message_sent: EventBroadcaster[[str, dict[str, Any], dict[str, Any] | None]] = (
            EventBroadcaster("message_sent")
        )
        self.on_message_arrived: EventBroadcaster[[InboundMessage]] = EventBroadcaster(
            "message_arrived"
        )
        self.on_message_updated: EventBroadcaster[[MessageUpdate]] = EventBroadcaster(
            "message_updated"
        )
        self.on_membership_changed: EventBroadcaster[[MembershipChange]] = EventBroadcaster(
            "membership_changed"
        )
        self.on_memberships_loaded: EventBroadcaster[[list[ConversationMetadata]]] = (
            EventBroadcaster("memberships_loaded")
        )
        self.on_state_changed: EventBroadcaster[[SessionState, SessionState]] = (
            EventBroadcaster("state_changed")
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_restarting(self) -> bool:
        return self._restarting

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise SessionNotStartedError("Session has no transport; call start() first")
        return self._transport

    @property
    def queue(self) -> OutboundQueue:
        if self._queue is None:
            raise SessionNotStartedError("Session has no outbound queue; call start() first")
        return self._queue

    @property
    def correlator(self) -> InboundCorrelator:
        if self._correlator is None:
            raise SessionNotStartedError("Session has no correlator; call start() first")
        return self._correlator

    def _require_running(self) -> None:
        # Restarts keep accepting sends; the next queue adopts them
        if self._state == SessionState.STOPPED:
            raise SessionNotStartedError("Session is stopped; call start() first")

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.debug(f"Session state {old_state.value} -> {new_state.value}")
        self._broadcast(self.on_state_changed, old_state, new_state)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Bring the session up.

        Raises:
            Exception: Whatever the Transport raised while connecting
        """
        if self._live:
            logger.warning("Session already started")
            return

        logging.getLogger(PACKAGE_LOGGER).setLevel(self.config.log_level_number)
        self._reconnect_attempts = 0
        try:
            await self._bring_up()
        except Exception:
            self._set_state(SessionState.STOPPED)
            raise

    async def restart(self) -> None:
        """Tear the Transport down and bring a fresh one up in place.

        Close events raised while restarting are ignored, so a restart never
        triggers another reconnect.
        """
        self._restarting = True
        try:
            if self._live:
                await self._tear_down()
            await self._bring_up()
        finally:
            self._restarting = False

    async def shutdown(self) -> None:
        """Close the Transport and stop. Safe to call more than once.

        Sends still queued are dropped: their futures resolve to None.
        """
        if self._live:
            await self._tear_down()
        if self._queue is not None:
            dropped = self._queue.discard_pending()
            if dropped:
                logger.info(f"Dropped {dropped} unsent messages on shutdown")
        self._set_state(SessionState.STOPPED)

    async def __aenter__(self) -> SessionSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    async def _bring_up(self) -> None:
        self._set_state(SessionState.STARTING)

        transport = self._transport_factory(self.config)
        transport.bind(self._handlers_for(transport))
        self._transport = transport
        await transport.connect()

        queue = OutboundQueue(
            transport,
            capacity=self.config.queue_capacity,
            min_delay=self.config.send_delay_seconds,
            on_sent=self.on_message_sent,
        )
        correlator = InboundCorrelator(
            self.on_message_arrived,
            queue,
            transport,
            default_options=self.config.wait_defaults,
        )
        if self._queue is not None:
            queue.adopt(self._queue.detach_pending(), last_sent_at=self._queue.last_sent_at)
        if self._correlator is not None:
            correlator.adopt(self._correlator.pending)

        self._queue = queue
        self._correlator = correlator
        self._live = True
        logger.info(f"Session started ({type(transport).__name__})")

    async def _tear_down(self) -> None:
        self._closing = True
        try:
            if self._queue is not None:
                self._queue.stop_gracefully()
                if not await self._queue.join(timeout=DRAIN_TIMEOUT):
                    logger.warning("In-flight send still running while closing the transport")
            if self._transport is not None:
                await self._transport.close()
        finally:
            self._live = False
            self._closing = False

    # =========================================================================
    # Transport event handlers
    # =========================================================================

    def _handlers_for(self, transport: Transport) -> TransportHandlers:
        """Handlers that drop events once ``transport`` has been replaced."""

        def is_current() -> bool:
            if transport is self._transport:
                return True
            logger.debug(f"Ignoring event from replaced transport {type(transport).__name__}")
            return False

        async def on_connection(update: ConnectionUpdate) -> None:
            if is_current():
                await self._handle_connection(update)

        def on_message(message: InboundMessage) -> None:
            if is_current():
                self._handle_message(message)

        def on_message_update(update: MessageUpdate) -> None:
            if is_current():
                self._handle_message_update(update)

        def on_membership(change: MembershipChange) -> None:
            if is_current():
                self._handle_membership(change)

        return TransportHandlers(
            on_connection=on_connection,
            on_message=on_message,
            on_message_update=on_message_update,
            on_membership=on_membership,
        )

    async def _handle_connection(self, update: ConnectionUpdate) -> None:
        if update.is_open:
            self._reconnect_attempts = 0
            self._set_state(SessionState.OPEN)
            logger.info("Connection open")
            await self._load_memberships()
            return

        if not update.is_closed:
            return

        if self._closing or self._restarting or self._state == SessionState.STOPPED:
            logger.debug("Ignoring close event during shutdown or restart")
            return

        reason = update.reason or DisconnectReason.UNKNOWN
        logger.warning(
            f"Connection closed ({reason.value})" + (f": {update.detail}" if update.detail else "")
        )

        if reason.is_terminal:
            logger.error("Session logged out. Not reconnecting.")
            await self.shutdown()
            return

        await self._reconnect()

    async def _reconnect(self) -> None:
        max_attempts = self.config.max_reconnect_attempts
        while self._reconnect_attempts < max_attempts:
            self._reconnect_attempts += 1
            self._set_state(SessionState.RECONNECTING)
            logger.info(
                f"Restarting session (attempt {self._reconnect_attempts}/{max_attempts})..."
            )
            try:
                await self.restart()
            except Exception as e:
                logger.error(f"Session restart failed: {e}")
                continue

            logger.info("Session restarted")
            self._broadcast(self.on_reconnected)
            return

        logger.error(f"Max reconnection attempts reached ({max_attempts}). Giving up.")
        await self.shutdown()

    async def _load_memberships(self) -> None:
        try:
            memberships = await self.transport.fetch_all_memberships()
        except Exception:
            logger.exception("Couldn't fetch group memberships")
            return
        logger.info(f"Fetched {len(memberships)} group memberships")
        self._broadcast(self.on_memberships_loaded, memberships)

    def _handle_message(self, message: InboundMessage) -> None:
        if self.config.ignore_self_messages and message.from_self:
            return
        self._broadcast(self.on_message_arrived, message)

    def _handle_message_update(self, update: MessageUpdate) -> None:
        if self.config.ignore_self_messages and update.from_self:
            return
        self._broadcast(self.on_message_updated, update)

    def _handle_membership(self, change: MembershipChange) -> None:
        logger.info(f"Membership {change.kind.value}: {change.metadata.id}")
        self._broadcast(self.on_membership_changed, change)

    def _broadcast(self, broadcaster: EventBroadcaster[Any], *args: Any) -> None:
        # Listener failures stay with the listener; the transport keeps running
        try:
            broadcaster.call_all(*args)
        except Exception:
            logger.exception(f"Error in '{broadcaster.name}' listener")

    # =========================================================================
    # Operations exposed to the command layer
    # =========================================================================

    async def send_safe(
        self,
        conversation_id: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> SentMessage | None:
        """Send through the paced OutboundQueue.

        Returns None without raising when the queue is full.

        Raises:
            SessionNotStartedError: If the session is stopped
        """
        self._require_running()
        return await self.queue.send(conversation_id, payload, options)

    async def send_raw(
        self,
        conversation_id: str,
        payload: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> SentMessage | None:
        """Send straight through the Transport.

        Bypasses the queue and its pacing and backpressure. Only for
        low-volume sends where the caller controls the rate.
        """
        self._require_running()
        return await self.transport.send_message(conversation_id, payload, options)

    def wait_in_group(
        self,
        participant_id: str,
        conversation_id: str,
        expected_type: MessageType,
        options: WaitOptions | None = None,
    ) -> asyncio.Future[InboundMessage]:
        """See InboundCorrelator.wait_in_group."""
        return self.correlator.wait_in_group(
            participant_id, conversation_id, expected_type, options
        )

    def wait_in_private(
        self,
        conversation_id: str,
        expected_type: MessageType,
        options: WaitOptions | None = None,
    ) -> asyncio.Future[InboundMessage]:
        """See InboundCorrelator.wait_in_private."""
        return self.correlator.wait_in_private(conversation_id, expected_type, options)

    async def fetch_conversation_metadata(
        self, conversation_id: str
    ) -> ConversationMetadata | None:
        """Group metadata, or None when ``conversation_id`` is not a group."""
        return await self.correlator.fetch_metadata(conversation_id)
