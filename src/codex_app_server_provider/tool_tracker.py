"""Pairs `item/started` and `item/completed` notifications for tool-shaped items."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .converters import safe_json_dumps
from .protocol import ItemKind, item_kind, normalize_id

EXEC_TOOL_NAME = "exec"
PATCH_TOOL_NAME = "patch"
WEB_SEARCH_TOOL_NAME = "web_search"
FALLBACK_TOOL_NAME = "tool"


@dataclass(slots=True)
class ToolInfo:
    """Resolved identity of one in-flight remote tool invocation.

    Attributes:
        tool_name: Display name, e.g. ``exec`` or ``mcp__server__tool``.
        input: JSON snapshot of the invocation input; empty when unavailable.
        dynamic: True for MCP tools whose names are only known at runtime.
    """

    tool_name: str
    input: str = ""
    dynamic: bool = False


def is_tool_item(item: Any) -> bool:
    kind = item_kind(item)
    return kind is not None and kind.is_tool


def resolve_tool_name(item: Mapping[str, Any]) -> ToolInfo:
    """Resolve the display name of a tool item without an input snapshot."""
    kind = item_kind(item)
    if kind is ItemKind.COMMAND_EXECUTION:
        return ToolInfo(EXEC_TOOL_NAME)
    if kind is ItemKind.FILE_CHANGE:
        return ToolInfo(PATCH_TOOL_NAME)
    if kind is ItemKind.WEB_SEARCH:
        return ToolInfo(WEB_SEARCH_TOOL_NAME)
    if kind is ItemKind.MCP_TOOL_CALL:
        return ToolInfo(f"mcp__{item.get('server')}__{item.get('tool')}", dynamic=True)
    return ToolInfo(FALLBACK_TOOL_NAME)


def build_tool_input_payload(item: Mapping[str, Any]) -> dict[str, Any] | None:
    kind = item_kind(item)
    if kind is ItemKind.COMMAND_EXECUTION:
        return {"command": item.get("command"), "cwd": item.get("cwd"), "status": item.get("status")}
    if kind is ItemKind.FILE_CHANGE:
        return {"changes": item.get("changes"), "status": item.get("status")}
    if kind is ItemKind.MCP_TOOL_CALL:
        return {
            "server": item.get("server"),
            "tool": item.get("tool"),
            "arguments": item.get("arguments"),
            "status": item.get("status"),
        }
    if kind is ItemKind.WEB_SEARCH:
        return {"query": item.get("query")}
    return None


def _copy_present(source: Mapping[str, Any], target: dict[str, Any], keys: tuple[str, ...]) -> None:
    for key in keys:
        if key in source and source[key] is not None:
            target[key] = source[key]


def build_tool_result_payload(item: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
    """Build the `tool-result` payload for a completed tool item.

    Returns:
        The result mapping and whether it represents a failed invocation.
    """
    kind = item_kind(item)
    if kind is ItemKind.COMMAND_EXECUTION:
        result = {"command": item.get("command"), "cwd": item.get("cwd"), "status": item.get("status")}
        _copy_present(item, result, ("aggregatedOutput", "exitCode", "durationMs", "processId"))
        exit_code = result.get("exitCode")
        return result, exit_code is not None and exit_code != 0

    if kind is ItemKind.FILE_CHANGE:
        return {"changes": item.get("changes"), "status": item.get("status")}, False

    if kind is ItemKind.MCP_TOOL_CALL:
        result = {"server": item.get("server"), "tool": item.get("tool"), "status": item.get("status")}
        _copy_present(item, result, ("result", "error", "durationMs"))
        return result, bool(item.get("error"))

    if kind is ItemKind.WEB_SEARCH:
        return {"query": item.get("query")}, False

    return {}, False


class ToolTracker:
    """Keyed table of tool invocations that started but have not completed."""

    def __init__(self) -> None:
        self._active: dict[str, ToolInfo] = {}

    def __len__(self) -> int:
        return len(self._active)

    def start(self, item: Mapping[str, Any]) -> ToolInfo:
        resolved = resolve_tool_name(item)
        info = ToolInfo(
            tool_name=resolved.tool_name,
            input=safe_json_dumps(build_tool_input_payload(item)),
            dynamic=resolved.dynamic,
        )
        item_id = normalize_id(item.get("id"))
        if item_id is not None:
            self._active[item_id] = info
        return info

    def complete(self, item_id: Any) -> ToolInfo | None:
        key = normalize_id(item_id)
        if key is None:
            return None
        return self._active.pop(key, None)

    def get(self, item_id: Any) -> ToolInfo | None:
        key = normalize_id(item_id)
        return self._active.get(key) if key is not None else None

    def clear(self) -> None:
        self._active.clear()
