"""Inbound correlation - "wait for the next message matching X".

Each wait call creates an independent WaitRequest: an explicit state machine
subscribed to the message-arrived broadcaster with one timer of its own.

    ARMED -> RESOLVED    matching message of the expected type
    ARMED -> CANCELLED   matching text message containing a cancel keyword
    ARMED -> TIMED_OUT   no inbound traffic for timeout_seconds

Exactly one terminal transition happens per request. Concurrent requests on
the same conversation see every message independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .errors import WaitCancelledError, WaitTimeoutError
from .models import ConversationMetadata, InboundMessage, MessageType

if TYPE_CHECKING:
    from .broadcaster import EventBroadcaster
    from .outbound import OutboundQueue
    from .transport.base import Transport

logger = logging.getLogger(__name__)

MessagePredicate = Callable[[InboundMessage], bool]


class WaitState(str, Enum):
    """WaitRequest lifecycle states."""

    ARMED = "armed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class WaitOptions(BaseModel):
    """Options for a single wait call."""

    timeout_seconds: float = Field(default=30.0, gt=0)
    cancel_keywords: list[str] = Field(default_factory=list)
    wrong_type_feedback: str | None = None
    cancel_feedback: str | None = None
    ignore_self_messages: bool = True
    case_sensitive_keywords: bool = True


class WaitRequest:
    """One pending correlation.

    Created armed: the listener is subscribed and the timer running as soon
    as the constructor returns. ``future`` settles exactly once.
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster[[InboundMessage]],
        predicate: MessagePredicate,
        conversation_id: str,
        expected_type: MessageType,
        options: WaitOptions,
        participant_id: str | None = None,
        feedback: Callable[[str, str], Any] | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.participant_id = participant_id
        self.expected_type = expected_type
        self.options = options
        self.state = WaitState.ARMED

        self._broadcaster = broadcaster
        self._predicate = predicate
        self._feedback = feedback
        self._loop = asyncio.get_running_loop()
        self._timer: asyncio.TimerHandle | None = None
        self._keywords = [
            kw if options.case_sensitive_keywords else kw.lower()
            for kw in options.cancel_keywords
            if kw
        ]

        self.future: asyncio.Future[InboundMessage] = self._loop.create_future()
        self.future.add_done_callback(self._on_future_done)

        self._reset_timer()
        self._broadcaster.subscribe(self._on_message)

    def __repr__(self) -> str:
        return (
            f"WaitRequest(conversation_id={self.conversation_id!r}, "
            f"participant_id={self.participant_id!r}, "
            f"expected_type={self.expected_type.value}, state={self.state.value})"
        )

    @property
    def is_armed(self) -> bool:
        return self.state == WaitState.ARMED

    def rebind_feedback(self, feedback: Callable[[str, str], Any]) -> None:
        """Route future feedback messages through another sender."""
        self._feedback = feedback

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    def _on_message(self, message: InboundMessage) -> None:
        if not self.is_armed:
            return
        if self.future.done():
            self._finish(WaitState.CANCELLED)
            return

        if self.options.ignore_self_messages and message.from_self:
            return

        # Any inbound traffic keeps the wait alive, matching or not
        self._reset_timer()

        if not self._predicate(message):
            return

        if message.text and self._has_cancel_keyword(message.text):
            self._finish(WaitState.CANCELLED)
            if self.options.cancel_feedback:
                self._send_feedback(message.conversation_id, self.options.cancel_feedback)
            logger.debug(f"Wait cancelled by user in {self.conversation_id}")
            self.future.set_exception(
                WaitCancelledError(self.conversation_id, self.participant_id)
            )
            return

        if message.type != self.expected_type:
            if self.options.wrong_type_feedback:
                self._send_feedback(message.conversation_id, self.options.wrong_type_feedback)
            return

        self._finish(WaitState.RESOLVED)
        self.future.set_result(message)

    def _on_timeout(self) -> None:
        self._timer = None
        if not self.is_armed:
            return
        if self.future.done():
            self._finish(WaitState.CANCELLED)
            return
        self._finish(WaitState.TIMED_OUT)
        logger.debug(
            f"Wait timed out after {self.options.timeout_seconds}s in {self.conversation_id}"
        )
        self.future.set_exception(WaitTimeoutError(self.conversation_id, self.participant_id))

    def _on_future_done(self, future: asyncio.Future[InboundMessage]) -> None:
        # Caller dropped the wait (e.g. asyncio.wait_for); detach quietly
        if future.cancelled() and self.is_armed:
            self._finish(WaitState.CANCELLED)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _has_cancel_keyword(self, text: str) -> bool:
        if not self._keywords:
            return False
        haystack = text if self.options.case_sensitive_keywords else text.lower()
        return any(kw in haystack for kw in self._keywords)

    def _reset_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.options.timeout_seconds, self._on_timeout)

    def _finish(self, state: WaitState) -> None:
        self.state = state
        self._broadcaster.unsubscribe(self._on_message)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _send_feedback(self, conversation_id: str, text: str) -> None:
        if self._feedback is not None:
            self._feedback(conversation_id, text)


class InboundCorrelator:
    """Builds WaitRequests over the message-arrived broadcaster.

    Feedback texts (wrong type, cancelled) go out through the OutboundQueue
    so they respect pacing like any other send.
    """

    def __init__(
        self,
        on_message: EventBroadcaster[[InboundMessage]],
        queue: OutboundQueue,
        transport: Transport,
        default_options: WaitOptions | None = None,
    ) -> None:
        self._on_message = on_message
        self._queue = queue
        self._transport = transport
        self.default_options = default_options or WaitOptions()
        self._requests: list[WaitRequest] = []

    def __len__(self) -> int:
        return len(self.pending)

    @property
    def pending(self) -> tuple[WaitRequest, ...]:
        """Requests still armed."""
        self._requests = [r for r in self._requests if r.is_armed]
        return tuple(self._requests)

    def adopt(self, requests: Iterable[WaitRequest]) -> None:
        """Take over armed requests from a previous correlator.

        Their listeners stay where they are (on the shared broadcaster);
        only feedback is rerouted through this correlator's queue.
        """
        for request in requests:
            if not request.is_armed:
                continue
            request.rebind_feedback(self._send_feedback)
            self._requests.append(request)

    def wait_for(
        self,
        predicate: MessagePredicate,
        conversation_id: str,
        expected_type: MessageType,
        options: WaitOptions | None = None,
        participant_id: str | None = None,
    ) -> WaitRequest:
        """Arm a request with an arbitrary predicate.

        The predicate only decides whether a message is addressed to this
        request; cancel keywords and the type check are applied after it.
        """
        request = WaitRequest(
            broadcaster=self._on_message,
            predicate=predicate,
            conversation_id=conversation_id,
            expected_type=expected_type,
            options=options or self.default_options,
            participant_id=participant_id,
            feedback=self._send_feedback,
        )
        self._requests.append(request)
        return request

    def wait_in_group(
        self,
        participant_id: str,
        conversation_id: str,
        expected_type: MessageType,
        options: WaitOptions | None = None,
    ) -> asyncio.Future[InboundMessage]:
        """Wait for the next message from ``participant_id`` inside a group."""

        def predicate(message: InboundMessage) -> bool:
            return (
                message.conversation_id == conversation_id
                and message.sender_id == participant_id
            )

        return self.wait_for(
            predicate, conversation_id, expected_type, options, participant_id=participant_id
        ).future

    def wait_in_private(
        self,
        conversation_id: str,
        expected_type: MessageType,
        options: WaitOptions | None = None,
    ) -> asyncio.Future[InboundMessage]:
        """Wait for the next message in a one-to-one conversation.

        In private chats the counterpart id and the conversation id are the
        same, so the conversation alone scopes the wait.
        """

        def predicate(message: InboundMessage) -> bool:
            return message.conversation_id == conversation_id

        return self.wait_for(predicate, conversation_id, expected_type, options).future

    async def fetch_metadata(self, conversation_id: str) -> ConversationMetadata | None:
        """Fetch group metadata; None when ``conversation_id`` is not a group."""
        if not self._transport.is_group(conversation_id):
            return None
        return await self._transport.fetch_conversation_metadata(conversation_id)

    def _send_feedback(self, conversation_id: str, text: str) -> None:
        future = self._queue.enqueue(conversation_id, {"text": text})
        future.add_done_callback(_log_feedback_failure)


def _log_feedback_failure(future: asyncio.Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning(f"Failed to send wait feedback: {exc}")
