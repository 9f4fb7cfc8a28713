"""
Exceptions raised by the tracking services.

Routes translate these into HTTP responses; geo and user-agent lookup
failures never reach this layer (they degrade to "Unknown").
"""


class TrackingError(Exception):
    """Base class for tracking errors."""
    pass


class SessionNotFoundError(TrackingError):
    """Raised when an event, pulse or identify call references an unknown session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class TrackingValidationError(TrackingError):
    """Raised when a required identifying field is missing."""
    pass


class DatabaseError(TrackingError):
    """Raised when a D1 statement fails (transport, HTTP status or D1 error payload)."""
    pass
