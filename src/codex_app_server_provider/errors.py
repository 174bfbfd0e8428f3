from __future__ import annotations

from typing import Any


class CodexError(Exception):
    """Base exception for the codex-app-server-provider package."""


class CodexTransportError(CodexError):
    """Raised when the app-server process or its pipes fail or disconnect."""


class CodexDecodeError(CodexTransportError):
    """Raised by a transport for one frame that is not a JSON object.

    The receive loop logs and skips such frames; the connection stays usable.
    """

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class CodexTimeoutError(CodexError):
    """Raised when a request exceeds its timeout."""

    def __init__(self, message: str, *, method: str | None = None, timeout: float | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.timeout = timeout


class CodexProtocolError(CodexError):
    """Raised when JSON-RPC or app-server protocol reports an error."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class CodexSettingsError(CodexError, ValueError):
    """Raised when provider settings fail validation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid provider settings: {', '.join(errors)}")
        self.errors = errors


class NoSuchModelError(CodexError):
    """Raised when a model kind other than language models is requested."""

    def __init__(self, model_id: str, model_type: str) -> None:
        super().__init__(f"No such {model_type}: {model_id}")
        self.model_id = model_id
        self.model_type = model_type


_AUTH_MARKERS = ("unauthorized", "authentication", "api key", "not logged in")


def is_authentication_error(error: BaseException) -> bool:
    """Return True when an error message looks like an auth failure."""
    message = str(error).lower()
    return any(marker in message for marker in _AUTH_MARKERS)


def is_timeout_error(error: BaseException) -> bool:
    """Return True for request timeouts, typed or inferred from the message."""
    if isinstance(error, CodexTimeoutError):
        return True
    return "timeout" in str(error).lower() or "timed out" in str(error).lower()
