"""Exception hierarchy for the session client.

Specific exceptions for each failure mode. Nothing raised here is
fatal to the client as a whole; callers catch per operation.
"""
from __future__ import annotations

from typing import Any

# Error names the remote service uses for credential failures.
AUTH_ERROR_NAMES = frozenset({"ProviderAuthError", "AuthError"})


def is_auth_error(error: dict[str, Any] | None) -> bool:
    """Classify a remote error payload as an authentication failure.

    Matches HTTP 401 either at the top level or nested under ``data``,
    or one of the recognized auth error names.
    """
    if not error:
        return False
    if error.get("statusCode") == 401:
        return True
    data = error.get("data")
    if isinstance(data, dict) and data.get("statusCode") == 401:
        return True
    return error.get("name") in AUTH_ERROR_NAMES


class OctoolsError(Exception):
    """Base exception for all client errors."""


class ConfigError(OctoolsError):
    """Invalid or unreadable client configuration."""


class RequestError(OctoolsError):
    """A REST call or the event stream handshake failed."""
    def __init__(
        self,
        operation: str,
        status: int | None,
        status_text: str,
        body: str = "",
    ):
        self.operation = operation
        self.status = status
        self.status_text = status_text
        self.body = body
        message = f"Failed to {operation}: {status_text}"
        if body:
            message = f"{message} - {body}"
        super().__init__(message)


class AuthError(RequestError):
    """The remote service rejected our credentials."""
    def __init__(
        self,
        message: str = "Authentication failed: Unauthorized",
        details: Any = None,
        operation: str = "authenticate",
    ):
        super().__init__(operation, 401, "Unauthorized")
        self.details = details
        # Replace the generic RequestError text with the auth message
        self.args = (message,)

    def __str__(self) -> str:
        return str(self.args[0])

    def to_dict(self) -> dict[str, Any]:
        return {"name": "AuthError", "message": str(self), "details": self.details}


class SessionFailedError(OctoolsError):
    """A session entered the error state while a caller waited on it."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} entered error state")


class NoAssistantMessageError(OctoolsError):
    """No assistant reply could be found after the session went idle."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"No assistant message found after wait for session {session_id}"
        )
