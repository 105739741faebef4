"""Error types raised by the session engine.

Per-wait failures carry the conversation and participant they belong to so
callers can branch between "nobody answered" and "the user opted out".
"""

from __future__ import annotations


class BotSessionError(Exception):
    """Base class for all session engine errors."""

    pass


class SessionNotStartedError(BotSessionError):
    """Raised when an operation needs a live session that was never started."""

    pass


class WaitError(BotSessionError):
    """A wait request ended without a matching message."""

    cancelled_by_user: bool = False

    def __init__(
        self,
        message: str,
        conversation_id: str,
        participant_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id
        self.participant_id = participant_id

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self.message!r}, "
            f"conversation_id={self.conversation_id!r}, "
            f"participant_id={self.participant_id!r})"
        )


class WaitTimeoutError(WaitError):
    """Nobody answered within the wait timeout."""

    cancelled_by_user = False

    def __init__(
        self,
        conversation_id: str,
        participant_id: str | None = None,
        message: str = "User didn't respond in time",
    ) -> None:
        super().__init__(message, conversation_id, participant_id)


class WaitCancelledError(WaitError):
    """The user sent a cancel keyword."""

    cancelled_by_user = True

    def __init__(
        self,
        conversation_id: str,
        participant_id: str | None = None,
        message: str = "User has cancelled the dialog",
    ) -> None:
        super().__init__(message, conversation_id, participant_id)
