from __future__ import annotations

from codex_app_server_provider.errors import (
    CodexError,
    CodexProtocolError,
    CodexSettingsError,
    CodexTimeoutError,
    CodexTransportError,
    is_authentication_error,
    is_timeout_error,
)


def test_is_authentication_error_matches_auth_messages() -> None:
    assert is_authentication_error(CodexProtocolError("401 Unauthorized"))
    assert is_authentication_error(RuntimeError("Not logged in; run codex login"))
    assert is_authentication_error(CodexError("invalid API key"))
    assert not is_authentication_error(CodexTransportError("app server connection closed"))


def test_is_timeout_error_accepts_typed_and_message_timeouts() -> None:
    assert is_timeout_error(CodexTimeoutError("late", method="turn/start", timeout=5.0))
    assert is_timeout_error(RuntimeError("request timed out"))
    assert is_timeout_error(OSError("connect timeout"))
    assert not is_timeout_error(CodexProtocolError("bad params", code=-32602))


def test_settings_error_is_a_value_error_listing_every_problem() -> None:
    error = CodexSettingsError(["sandbox_mode: bad", "request_timeout: must be positive"])

    assert isinstance(error, ValueError)
    assert isinstance(error, CodexError)
    assert error.errors == ["sandbox_mode: bad", "request_timeout: must be positive"]
    assert "sandbox_mode: bad, request_timeout" in str(error)
