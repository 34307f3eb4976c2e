"""Domain error codes for the session engine.

Every error carries a stable code (mapped to HTTP statuses by the API layer) and a
one-line message that is safe to show to a participant as-is.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    LOCKED = "LOCKED"
    FULL = "FULL"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CONFLICT = "CONFLICT"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class SessionNotFoundError(DomainError):
    """Raised when a session code does not resolve to a live session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"Session {session_id} was not found. Check the code and try again.",
        )
        self.session_id = session_id


class ParticipantNotFoundError(DomainError):
    """Raised when a participant id is not part of the session."""

    def __init__(self, participant_id: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message="You are no longer part of this session. Rejoin with the session code.",
        )
        self.participant_id = participant_id


class VenueNotFoundError(DomainError):
    """Raised when a vote references a venue outside the current candidate list."""

    def __init__(self, venue_id: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message="That venue is no longer in the list. Refresh and vote again.",
        )
        self.venue_id = venue_id


class ForbiddenError(DomainError):
    """Raised when a non-host attempts a host-only action."""

    def __init__(self, message: str = "Only the host can do that.") -> None:
        super().__init__(code=ErrorCode.FORBIDDEN, message=message)


class SessionLockedError(DomainError):
    """Join rejected: the host locked the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            code=ErrorCode.LOCKED,
            message="This session is locked. Ask the host to unlock it.",
        )
        self.session_id = session_id


class SessionFullError(DomainError):
    """Join rejected: the session reached its participant cap."""

    def __init__(self, session_id: str, max_participants: int) -> None:
        super().__init__(
            code=ErrorCode.FULL,
            message=f"This session is full ({max_participants} people). Ask the host to start a new one.",
        )
        self.session_id = session_id
        self.max_participants = max_participants


class InvalidArgumentError(DomainError):
    """Raised when input fails a precondition (empty name, empty location set, ...)."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_ARGUMENT, message=message)


class UpstreamUnavailableError(DomainError):
    """Raised when the venue-search or geocoding provider fails or times out."""

    def __init__(self, message: str = "The maps service is unavailable right now. Try again shortly.") -> None:
        super().__init__(code=ErrorCode.UPSTREAM_UNAVAILABLE, message=message)


class LocationPermissionDeniedError(DomainError):
    """Raised by a device location sensor when the user refused access."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.PERMISSION_DENIED,
            message="Location access was denied. Enter your address manually instead.",
        )


class ConcurrentModificationError(DomainError):
    """Raised by a store when the session version moved underneath a commit."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            code=ErrorCode.CONFLICT,
            message="The session changed while saving. Please retry.",
        )
        self.session_id = session_id
