"""
Relay-side error taxonomy.

Every error carries a stable machine-readable ``code`` and the message that
is shown to the calling party. Admission failures share one generic message
so a caller cannot tell an expired session from a full one.
"""

SESSION_UNAVAILABLE = "Session not available or expired"


class RelayError(Exception):
    """Base exception for admission and relay failures"""
    code = "relay_error"
    message = "Relay error"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self) -> dict:
        return {"type": "error", "code": self.code, "message": self.message}


class InvalidSessionId(RelayError):
    code = "invalid_session_id"
    message = "Invalid session ID"


class SessionNotFound(RelayError):
    code = "session_unavailable"
    message = SESSION_UNAVAILABLE


class SessionExpired(RelayError):
    code = "session_unavailable"
    message = SESSION_UNAVAILABLE


class SessionFull(RelayError):
    code = "session_unavailable"
    message = SESSION_UNAVAILABLE


class NoSession(RelayError):
    code = "no_session"
    message = "Session expired or invalid"


class SessionInvalid(RelayError):
    code = "session_invalid"
    message = "Session expired or invalid"


class NotAMember(RelayError):
    code = "not_a_member"
    message = "Not a member of this session"


class InvalidEvent(RelayError):
    code = "invalid_event"
    message = "Invalid message format"
