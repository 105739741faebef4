"""Tests for SessionSupervisor - lifecycle, reconnect and event forwarding."""

from __future__ import annotations

import asyncio
import logging

import pytest

from botsession_runtime.config import SessionConfig
from botsession_runtime.correlator import WaitOptions
from botsession_runtime.errors import SessionNotStartedError, WaitTimeoutError
from botsession_runtime.models import (
    ConversationMetadata,
    DisconnectReason,
    InboundMessage,
    MembershipChange,
    MembershipChangeKind,
    MessageType,
    MessageUpdate,
)
from botsession_runtime.session import SessionState, SessionSupervisor
from botsession_runtime.transport.mock import MockTransport

GROUP = "23423423234@g.us"
ALICE = "111@s.whatsapp.net"


def make_config(**overrides) -> SessionConfig:
    values = {"send_delay_seconds": 0, "log_level": "DEBUG"}
    values.update(overrides)
    return SessionConfig(**values)


async def open_session(transports, **overrides) -> SessionSupervisor:
    session = SessionSupervisor(transports, make_config(**overrides))
    await session.start()
    await transports.current.emit_open()
    return session


# =============================================================================
# Startup Tests
# =============================================================================


class TestStartup:
    """Tests for start() and the first open."""

    def test_initial_state(self, transports) -> None:
        """A new supervisor is stopped and has nothing built yet."""
        session = SessionSupervisor(transports)
        assert session.state == SessionState.STOPPED
        assert session.reconnect_attempts == 0
        assert transports.created == []

    def test_components_require_start(self, transports) -> None:
        """Accessing transport, queue or correlator before start raises."""
        session = SessionSupervisor(transports)
        with pytest.raises(SessionNotStartedError):
            session.transport
        with pytest.raises(SessionNotStartedError):
            session.queue
        with pytest.raises(SessionNotStartedError):
            session.correlator

    @pytest.mark.asyncio
    async def test_start_connects_transport(self, transports) -> None:
        """start builds a transport, connects it and wires the engine."""
        session = SessionSupervisor(transports, make_config())
        await session.start()

        assert len(transports.created) == 1
        assert transports.current.connect_count == 1
        assert transports.current.is_bound
        assert session.transport is transports.current
        assert session.queue.capacity == 20
        assert session.state == SessionState.STARTING

    @pytest.mark.asyncio
    async def test_config_reaches_queue(self, transports) -> None:
        """Queue capacity and delay come from the config."""
        session = SessionSupervisor(
            transports, make_config(queue_capacity=3, send_delay_seconds=0.25)
        )
        await session.start()

        assert session.queue.capacity == 3
        assert session.queue.min_delay == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_open_loads_memberships(self, transports) -> None:
        """On open, memberships are fetched and broadcast."""
        session = SessionSupervisor(transports, make_config())
        loaded: list[list[ConversationMetadata]] = []
        session.on_memberships_loaded.subscribe(loaded.append)

        await session.start()
        transports.current.add_membership(ConversationMetadata(id=GROUP, subject="Team"))
        await transports.current.emit_open()

        assert session.state == SessionState.OPEN
        assert [[m.id for m in batch] for batch in loaded] == [[GROUP]]

    @pytest.mark.asyncio
    async def test_membership_fetch_failure_is_logged(
        self, transports, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failed membership fetch does not break the open session."""
        session = SessionSupervisor(transports, make_config())
        loaded: list[list[ConversationMetadata]] = []
        session.on_memberships_loaded.subscribe(loaded.append)

        await session.start()
        transports.current.memberships_error = RuntimeError("no groups today")
        await transports.current.emit_open()

        assert session.state == SessionState.OPEN
        assert loaded == []
        assert "Couldn't fetch group memberships" in caplog.text

    @pytest.mark.asyncio
    async def test_start_failure_stops(self, transports) -> None:
        """A failing connect leaves the session stopped and raises."""
        transports.failing_connects = 1
        session = SessionSupervisor(transports, make_config())

        with pytest.raises(ConnectionError):
            await session.start()

        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_second_start_is_noop(self, transports) -> None:
        """start on a live session does not build another transport."""
        session = await open_session(transports)
        await session.start()

        assert len(transports.created) == 1

    @pytest.mark.asyncio
    async def test_state_changes_broadcast(self, transports) -> None:
        """Lifecycle transitions are broadcast as (old, new) pairs."""
        session = SessionSupervisor(transports, make_config())
        changes: list[tuple[SessionState, SessionState]] = []
        session.on_state_changed.subscribe(lambda old, new: changes.append((old, new)))

        await session.start()
        await transports.current.emit_open()
        await session.shutdown()

        assert changes == [
            (SessionState.STOPPED, SessionState.STARTING),
            (SessionState.STARTING, SessionState.OPEN),
            (SessionState.OPEN, SessionState.STOPPED),
        ]

    @pytest.mark.asyncio
    async def test_applies_log_level(self, transports) -> None:
        """start sets the package logger level from the config."""
        session = SessionSupervisor(transports, make_config(log_level="warning"))
        await session.start()

        assert logging.getLogger("botsession_runtime").level == logging.WARNING

        logging.getLogger("botsession_runtime").setLevel(logging.NOTSET)


# =============================================================================
# Reconnect Tests
# =============================================================================


class TestReconnect:
    """Tests for bounded auto-reconnect."""

    @pytest.mark.asyncio
    async def test_transient_close_restarts(self, transports) -> None:
        """A transient close builds a new transport and broadcasts reconnected."""
        session = await open_session(transports)
        reconnected: list[bool] = []
        session.on_reconnected.subscribe(lambda: reconnected.append(True))

        await transports.current.emit_closed(DisconnectReason.CONNECTION_LOST)

        assert transports.restarts == 1
        assert reconnected == [True]
        assert session.reconnect_attempts == 1
        assert session.transport is transports.current

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, transports) -> None:
        """With max 2, the third consecutive close stops the session."""
        session = await open_session(transports, max_reconnect_attempts=2)

        await transports.current.emit_closed()
        await transports.current.emit_closed()
        assert session.state != SessionState.STOPPED

        await transports.current.emit_closed()

        assert transports.restarts == 2
        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_zero_attempts_never_restarts(self, transports) -> None:
        """max_reconnect_attempts=0 disables reconnecting."""
        session = await open_session(transports, max_reconnect_attempts=0)

        await transports.current.emit_closed()

        assert transports.restarts == 0
        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_open_resets_attempts(self, transports) -> None:
        """A successful open resets the attempt counter."""
        session = await open_session(transports, max_reconnect_attempts=2)

        await transports.current.emit_closed()
        await transports.current.emit_closed()
        assert session.reconnect_attempts == 2

        await transports.current.emit_open()
        assert session.reconnect_attempts == 0

        await transports.current.emit_closed()
        assert transports.restarts == 3
        assert session.state != SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_logout_is_terminal(self, transports) -> None:
        """A logged-out close stops without reconnecting."""
        session = await open_session(transports)

        await transports.current.emit_closed(DisconnectReason.LOGGED_OUT)

        assert transports.restarts == 0
        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_failed_restart_counts_as_attempt(self, transports) -> None:
        """A restart whose connect fails is retried and counted."""
        session = await open_session(transports, max_reconnect_attempts=3)
        transports.failing_connects = 1

        await transports.current.emit_closed()

        assert session.reconnect_attempts == 2
        assert len(transports.created) == 3
        assert transports.current.connect_error is None
        assert session.transport is transports.current

    @pytest.mark.asyncio
    async def test_all_restarts_fail(self, transports) -> None:
        """When every restart fails, the session ends stopped."""
        session = await open_session(transports, max_reconnect_attempts=2)
        transports.failing_connects = 5

        await transports.current.emit_closed()

        assert len(transports.created) == 3
        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_broadcasters_survive_restart(self, transports) -> None:
        """Subscribers keep receiving events after a reconnect."""
        session = await open_session(transports)
        broadcaster = session.on_message_arrived
        arrived: list[InboundMessage] = []
        broadcaster.subscribe(arrived.append)

        await transports.current.emit_closed()
        await transports.current.emit_message(MockTransport.message("after", ALICE))

        assert session.on_message_arrived is broadcaster
        assert [m.text for m in arrived] == ["after"]

    @pytest.mark.asyncio
    async def test_manual_restart_does_not_reconnect_loop(self, transports) -> None:
        """The close emitted while restarting is ignored."""
        session = await open_session(transports)
        old = transports.current

        await session.restart()

        assert old.close_count == 1
        assert transports.restarts == 1
        assert session.reconnect_attempts == 0
        assert session.is_restarting is False

    @pytest.mark.asyncio
    async def test_replaced_transport_events_ignored(self, transports) -> None:
        """Late events from a transport already replaced are dropped."""
        session = await open_session(transports)
        arrived: list[InboundMessage] = []
        session.on_message_arrived.subscribe(arrived.append)
        old = transports.current
        await session.restart()

        await old.emit_closed()
        await old.emit_message(MockTransport.message("stale", ALICE))
        await transports.current.emit_message(MockTransport.message("fresh", ALICE))

        assert transports.restarts == 1
        assert session.reconnect_attempts == 0
        assert session.transport is transports.current
        assert [m.text for m in arrived] == ["fresh"]


# =============================================================================
# Shutdown Tests
# =============================================================================


class TestShutdown:
    """Tests for shutdown()."""

    @pytest.mark.asyncio
    async def test_shutdown_closes_transport(self, transports) -> None:
        """shutdown closes the transport once and stops."""
        session = await open_session(transports)

        await session.shutdown()
        await session.shutdown()

        assert transports.current.close_count == 1
        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_close_after_shutdown_ignored(self, transports) -> None:
        """Late close events do not restart a stopped session."""
        session = await open_session(transports)
        await session.shutdown()

        await transports.current.emit_closed()

        assert transports.restarts == 0
        assert session.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_async_context_manager(self, transports) -> None:
        """async with starts and shuts the session down."""
        async with SessionSupervisor(transports, make_config()) as session:
            await transports.current.emit_open()
            assert session.state == SessionState.OPEN

        assert session.state == SessionState.STOPPED
        assert transports.current.close_count == 1

    @pytest.mark.asyncio
    async def test_send_after_shutdown_raises(self, transports) -> None:
        """Both send paths reject once the session is stopped."""
        session = await open_session(transports)
        await session.shutdown()

        with pytest.raises(SessionNotStartedError):
            await asyncio.wait_for(session.send_safe(ALICE, {"text": "late"}), timeout=1)
        with pytest.raises(SessionNotStartedError):
            await session.send_raw(ALICE, {"text": "late"})
        assert transports.current.sent == []

    @pytest.mark.asyncio
    async def test_send_after_logout_raises(self, transports) -> None:
        """A logged-out session rejects sends instead of hanging."""
        session = await open_session(transports)

        await transports.current.emit_closed(DisconnectReason.LOGGED_OUT)

        with pytest.raises(SessionNotStartedError):
            await asyncio.wait_for(session.send_safe(ALICE, {"text": "late"}), timeout=1)

    @pytest.mark.asyncio
    async def test_shutdown_settles_queued_sends(self, transports) -> None:
        """Sends still queued at shutdown resolve None."""
        session = await open_session(transports)
        session.queue.stop_gracefully()
        future = session.queue.enqueue(ALICE, {"text": "never sent"})

        await session.shutdown()

        assert await asyncio.wait_for(future, timeout=1) is None
        assert len(session.queue) == 0
        assert transports.current.sent == []

    @pytest.mark.asyncio
    async def test_logout_settles_queued_sends(self, transports) -> None:
        """Sends still queued at logout resolve None."""
        session = await open_session(transports)
        session.queue.stop_gracefully()
        future = session.queue.enqueue(ALICE, {"text": "never sent"})

        await transports.current.emit_closed(DisconnectReason.LOGGED_OUT)

        assert await asyncio.wait_for(future, timeout=1) is None

    @pytest.mark.asyncio
    async def test_start_after_shutdown_accepts_sends(self, transports) -> None:
        """A stopped session can be started again and send."""
        session = await open_session(transports)
        await session.shutdown()

        await session.start()

        assert await session.send_safe(ALICE, {"text": "back"}) is not None
        assert [r.payload["text"] for r in transports.current.sent] == ["back"]


# =============================================================================
# Event Forwarding Tests
# =============================================================================


class TestEventForwarding:
    """Tests for adapting transport events into broadcasts."""

    @pytest.mark.asyncio
    async def test_messages_forwarded(self, transports) -> None:
        """Inbound messages reach on_message_arrived."""
        session = await open_session(transports)
        arrived: list[InboundMessage] = []
        session.on_message_arrived.subscribe(arrived.append)

        await transports.current.emit_message(MockTransport.message("hi", ALICE))

        assert [m.text for m in arrived] == ["hi"]

    @pytest.mark.asyncio
    async def test_self_messages_filtered(self, transports) -> None:
        """The bot's own messages are dropped by default."""
        session = await open_session(transports)
        arrived: list[InboundMessage] = []
        session.on_message_arrived.subscribe(arrived.append)

        await transports.current.emit_message(MockTransport.message("me", ALICE, from_self=True))

        assert arrived == []

    @pytest.mark.asyncio
    async def test_self_messages_kept_when_configured(self, transports) -> None:
        """ignore_self_messages=False forwards own messages."""
        session = await open_session(transports, ignore_self_messages=False)
        arrived: list[InboundMessage] = []
        session.on_message_arrived.subscribe(arrived.append)

        await transports.current.emit_message(MockTransport.message("me", ALICE, from_self=True))

        assert len(arrived) == 1

    @pytest.mark.asyncio
    async def test_updates_forwarded(self, transports) -> None:
        """Message updates reach on_message_updated."""
        session = await open_session(transports)
        updates: list[MessageUpdate] = []
        session.on_message_updated.subscribe(updates.append)

        update = MessageUpdate(id="msg_1", conversation_id=ALICE, update={"status": 3})
        await transports.current.emit_update(update)

        assert updates == [update]

    @pytest.mark.asyncio
    async def test_membership_forwarded(self, transports) -> None:
        """Membership changes reach on_membership_changed."""
        session = await open_session(transports)
        changes: list[MembershipChange] = []
        session.on_membership_changed.subscribe(changes.append)

        await transports.current.emit_membership(
            ConversationMetadata(id=GROUP, subject="New group")
        )
        await transports.current.emit_membership(
            ConversationMetadata(id=GROUP, subject="Renamed"), MembershipChangeKind.UPDATED
        )

        assert [(c.kind, c.metadata.subject) for c in changes] == [
            (MembershipChangeKind.JOINED, "New group"),
            (MembershipChangeKind.UPDATED, "Renamed"),
        ]

    @pytest.mark.asyncio
    async def test_listener_error_contained(
        self, transports, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A raising listener is logged and the session keeps running."""
        session = await open_session(transports)

        def boom(message: InboundMessage) -> None:
            raise RuntimeError("handler bug")

        session.on_message_arrived.subscribe(boom)
        await transports.current.emit_message(MockTransport.message("hi", ALICE))

        assert session.state == SessionState.OPEN
        assert "Error in 'message_arrived' listener" in caplog.text


# =============================================================================
# Sending Tests
# =============================================================================


class TestSending:
    """Tests for send_safe and send_raw."""

    @pytest.mark.asyncio
    async def test_send_safe_goes_through_queue(self, transports) -> None:
        """send_safe delivers and broadcasts message_sent."""
        session = await open_session(transports)
        sent: list[str] = []
        session.on_message_sent.subscribe(lambda chat, payload, options: sent.append(chat))

        result = await session.send_safe(ALICE, {"text": "hello"})

        assert result is not None
        assert transports.current.sent[0].payload == {"text": "hello"}
        assert sent == [ALICE]

    @pytest.mark.asyncio
    async def test_send_raw_bypasses_queue(self, transports) -> None:
        """send_raw hits the transport directly without a sent broadcast."""
        session = await open_session(transports)
        sent: list[str] = []
        session.on_message_sent.subscribe(lambda chat, payload, options: sent.append(chat))

        result = await session.send_raw(ALICE, {"text": "direct"})

        assert result is not None
        assert len(transports.current.sent) == 1
        assert sent == []

    @pytest.mark.asyncio
    async def test_send_safe_full_queue_returns_none(self, transports) -> None:
        """send_safe resolves None when the queue is full."""
        session = await open_session(transports, queue_capacity=1)
        session.queue.stop_gracefully()

        session.queue.enqueue(ALICE, {"text": "occupying"})
        result = await session.send_safe(ALICE, {"text": "shed"})

        assert result is None

    @pytest.mark.asyncio
    async def test_queued_items_survive_restart(self, transports) -> None:
        """Unsent items are delivered by the next transport after a restart."""
        session = await open_session(transports)
        old = transports.current
        session.queue.stop_gracefully()
        future = session.queue.enqueue(ALICE, {"text": "queued"})

        await session.restart()
        await future

        assert old.sent == []
        assert [r.payload["text"] for r in transports.current.sent] == ["queued"]

    @pytest.mark.asyncio
    async def test_delay_holds_across_restart(self, transports) -> None:
        """The first send on a new transport waits out the previous send's delay."""
        delay = 0.2
        session = await open_session(transports, send_delay_seconds=delay)
        old = transports.current

        await session.send_safe(ALICE, {"text": "first"})
        await session.restart()
        await session.send_safe(ALICE, {"text": "second"})

        gap = transports.current.sent[0].sent_at - old.sent[0].sent_at
        assert gap >= delay - 0.01

    @pytest.mark.asyncio
    async def test_restart_waits_for_in_flight_send(self, transports) -> None:
        """A send in flight finishes before the next transport sends anything."""
        latency = 0.1
        transports.send_latency = latency
        session = await open_session(transports)
        old = transports.current

        first = session.queue.enqueue(ALICE, {"text": "A"})
        second = session.queue.enqueue(ALICE, {"text": "B"})
        await asyncio.sleep(0.01)

        await session.restart()
        assert await first is not None
        assert old.close_count == 1
        await second

        assert [r.payload["text"] for r in old.sent] == ["A"]
        assert [r.payload["text"] for r in transports.current.sent] == ["B"]
        gap = transports.current.sent[0].sent_at - old.sent[0].sent_at
        assert gap >= latency - 0.01


# =============================================================================
# Wait Tests
# =============================================================================


class TestWaits:
    """Tests for waits exposed through the supervisor."""

    @pytest.mark.asyncio
    async def test_wait_in_group(self, transports) -> None:
        """wait_in_group resolves on the participant's next group message."""
        session = await open_session(transports)
        future = session.wait_in_group(ALICE, GROUP, MessageType.TEXT)

        await transports.current.emit_message(
            MockTransport.message("answer", GROUP, participant_id=ALICE)
        )

        assert (await future).text == "answer"

    @pytest.mark.asyncio
    async def test_wait_uses_config_defaults(self, transports) -> None:
        """Waits without options use config.wait_defaults."""
        session = await open_session(
            transports, wait_defaults=WaitOptions(timeout_seconds=7, cancel_keywords=["stop"])
        )

        request = session.correlator.wait_for(lambda m: False, ALICE, MessageType.TEXT)

        assert request.options.timeout_seconds == 7
        request.future.cancel()

    @pytest.mark.asyncio
    async def test_wait_sees_self_messages_when_configured(self, transports) -> None:
        """ignore_self_messages=False also lets waits match own messages."""
        session = await open_session(transports, ignore_self_messages=False)
        future = session.wait_in_private(ALICE, MessageType.TEXT)

        await transports.current.emit_message(
            MockTransport.message("from me", ALICE, from_self=True)
        )

        assert (await asyncio.wait_for(future, timeout=1)).text == "from me"

    @pytest.mark.asyncio
    async def test_wait_survives_restart(self, transports) -> None:
        """An armed wait resolves after a reconnect; feedback uses the new queue."""
        session = await open_session(transports)
        options = WaitOptions(wrong_type_feedback="image please")
        future = session.wait_in_private(ALICE, MessageType.IMAGE, options)
        old = transports.current

        await old.emit_closed()
        await transports.current.emit_message(MockTransport.message("text", ALICE))
        await session.queue.join()

        assert old.sent == []
        assert [r.payload["text"] for r in transports.current.sent] == ["image please"]

        await transports.current.emit_message(
            MockTransport.message(None, ALICE, type=MessageType.IMAGE)
        )
        assert (await future).type == MessageType.IMAGE

    @pytest.mark.asyncio
    async def test_fetch_conversation_metadata(self, transports) -> None:
        """Metadata lookups go through the current transport."""
        session = await open_session(transports)
        transports.current.add_membership(ConversationMetadata(id=GROUP, subject="Team"))

        group = await session.fetch_conversation_metadata(GROUP)
        private = await session.fetch_conversation_metadata(ALICE)

        assert group is not None and group.subject == "Team"
        assert private is None

    @pytest.mark.asyncio
    async def test_wait_times_out(self, transports) -> None:
        """A session wait with a short timeout rejects."""
        session = await open_session(transports)

        future = session.wait_in_private(
            ALICE, MessageType.TEXT, WaitOptions(timeout_seconds=0.01)
        )

        with pytest.raises(WaitTimeoutError) as exc_info:
            await asyncio.wait_for(future, timeout=1)
        assert exc_info.value.conversation_id == ALICE
