"""botsession-runtime - session engine for chat bots.

Turns a swappable messaging Transport into:
- a paced, bounded outbound queue (OutboundQueue)
- "wait for the next message matching X" requests (InboundCorrelator)
- a supervised connection with bounded auto-reconnect (SessionSupervisor)
- typed multicast of every event (EventBroadcaster)
"""

from importlib.metadata import PackageNotFoundError, version

from .broadcaster import EventBroadcaster
from .config import SessionConfig
from .correlator import InboundCorrelator, WaitOptions, WaitRequest, WaitState
from .errors import (
    BotSessionError,
    SessionNotStartedError,
    WaitCancelledError,
    WaitError,
    WaitTimeoutError,
)
from .models import (
    ConnectionState,
    ConnectionUpdate,
    ConversationMetadata,
    DisconnectReason,
    InboundMessage,
    MembershipChange,
    MembershipChangeKind,
    MessageType,
    MessageUpdate,
    Participant,
    SenderType,
    SentMessage,
)
from .outbound import OutboundItem, OutboundQueue
from .session import SessionState, SessionSupervisor
from .transport import MockTransport, Transport, TransportFactory, TransportHandlers

try:
    __version__ = version("botsession-runtime")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = [
    # Engine
    "EventBroadcaster",
    "InboundCorrelator",
    "OutboundItem",
    "OutboundQueue",
    "SessionConfig",
    "SessionState",
    "SessionSupervisor",
    "WaitOptions",
    "WaitRequest",
    "WaitState",
    # Transport
    "MockTransport",
    "Transport",
    "TransportFactory",
    "TransportHandlers",
    # Models
    "ConnectionState",
    "ConnectionUpdate",
    "ConversationMetadata",
    "DisconnectReason",
    "InboundMessage",
    "MembershipChange",
    "MembershipChangeKind",
    "MessageType",
    "MessageUpdate",
    "Participant",
    "SenderType",
    "SentMessage",
    # Errors
    "BotSessionError",
    "SessionNotStartedError",
    "WaitCancelledError",
    "WaitError",
    "WaitTimeoutError",
]
