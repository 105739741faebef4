"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from botsession_runtime.config import SessionConfig
from botsession_runtime.transport.mock import MockTransport


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


class TransportPool:
    """Transport factory that hands out a fresh MockTransport per (re)start."""

    def __init__(self) -> None:
        self.created: list[MockTransport] = []
        self.failing_connects = 0
        self.send_latency = 0.0

    def __call__(self, config: SessionConfig) -> MockTransport:
        transport = MockTransport(send_latency=self.send_latency)
        if self.failing_connects:
            self.failing_connects -= 1
            transport.connect_error = ConnectionError("mock connect failure")
        self.created.append(transport)
        return transport

    @property
    def current(self) -> MockTransport:
        return self.created[-1]

    @property
    def restarts(self) -> int:
        return max(len(self.created) - 1, 0)


@pytest.fixture
def transport() -> MockTransport:
    return MockTransport()


@pytest.fixture
def transports() -> TransportPool:
    return TransportPool()
