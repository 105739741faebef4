"""Transport abstraction layer.

The engine talks to the messaging platform only through the Transport
protocol defined in base.py. Concrete transports live outside this
package; MockTransport is provided for tests and local development.
"""

from .base import Transport, TransportFactory, TransportHandlers, dispatch
from .mock import MockTransport, SentRecord

__all__ = [
    # Base abstractions
    "Transport",
    "TransportFactory",
    "TransportHandlers",
    "dispatch",
    # In-memory implementation
    "MockTransport",
    "SentRecord",
]
