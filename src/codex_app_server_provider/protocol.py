from __future__ import annotations

from enum import Enum
from typing import Any

# Request methods sent to the app-server.
INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "initialized"
THREAD_START_METHOD = "thread/start"
THREAD_RESUME_METHOD = "thread/resume"
TURN_START_METHOD = "turn/start"
TURN_INTERRUPT_METHOD = "turn/interrupt"
MODEL_LIST_METHOD = "model/list"

# Server notifications consumed while a turn streams.
TURN_COMPLETED_METHOD = "turn/completed"
ITEM_STARTED_METHOD = "item/started"
ITEM_COMPLETED_METHOD = "item/completed"
ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD = "item/commandExecution/requestApproval"
ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD = "item/fileChange/requestApproval"

# Namespaced and legacy spellings of the same delta notifications.
AGENT_MESSAGE_DELTA_METHODS = ("item/agentMessage/delta", "agentMessageDelta")
REASONING_TEXT_DELTA_METHODS = ("item/reasoning/textDelta", "reasoningTextDelta")
REASONING_SUMMARY_DELTA_METHODS = (
    "item/reasoning/summaryTextDelta",
    "reasoningSummaryTextDelta",
)

APPROVAL_REQUEST_METHODS = (
    ITEM_COMMAND_EXECUTION_REQUEST_APPROVAL_METHOD,
    ITEM_FILE_CHANGE_REQUEST_APPROVAL_METHOD,
)

# JSON-RPC error code for server-initiated requests nobody handles.
METHOD_NOT_FOUND_CODE = -32601


class ItemKind(str, Enum):
    """Turn item variants, keyed by their lowercased protocol tag."""

    USER_MESSAGE = "usermessage"
    AGENT_MESSAGE = "agentmessage"
    REASONING = "reasoning"
    COMMAND_EXECUTION = "commandexecution"
    FILE_CHANGE = "filechange"
    MCP_TOOL_CALL = "mcptoolcall"
    WEB_SEARCH = "websearch"
    IMAGE_VIEW = "imageview"

    @classmethod
    def parse(cls, tag: Any) -> ItemKind | None:
        """Match a protocol type tag regardless of casing.

        The app-server has sent both ``CommandExecution`` and ``commandExecution``
        across versions; underscores and dashes are ignored as well.
        """
        if not isinstance(tag, str):
            return None
        normalized = tag.replace("_", "").replace("-", "").lower()
        try:
            return cls(normalized)
        except ValueError:
            return None

    @property
    def is_tool(self) -> bool:
        return self in TOOL_ITEM_KINDS


TOOL_ITEM_KINDS = frozenset(
    {
        ItemKind.COMMAND_EXECUTION,
        ItemKind.FILE_CHANGE,
        ItemKind.MCP_TOOL_CALL,
        ItemKind.WEB_SEARCH,
    }
)


def item_kind(item: Any) -> ItemKind | None:
    """Return the normalized kind of a turn item payload."""
    if not isinstance(item, dict):
        return None
    return ItemKind.parse(item.get("type"))


def normalize_id(value: Any) -> str | None:
    """Return the string form used to compare thread, turn, item and request ids."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def same_id(left: Any, right: Any) -> bool:
    """Compare two ids that may arrive as strings or numbers."""
    normalized = normalize_id(left)
    return normalized is not None and normalized == normalize_id(right)


def make_request(
    request_id: int | str,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a request envelope (the app-server dialect omits ``jsonrpc``)."""
    payload: dict[str, Any] = {"id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a notification envelope."""
    payload: dict[str, Any] = {"method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_error_response(
    request_id: int | str,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build an error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"id": request_id, "error": error}


def is_response_message(payload: dict[str, Any]) -> bool:
    """Return True when payload is a response (has id, no method)."""
    return payload.get("id") is not None and "method" not in payload


def is_server_request(payload: dict[str, Any]) -> bool:
    """Return True when the server expects an answer to this message."""
    return payload.get("id") is not None and isinstance(payload.get("method"), str)


def extract_error(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return the error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None
