from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .client import AppServerClient
from .emitter import StreamEmitter, coerce_turn_error
from .models import TurnError
from .protocol import (
    AGENT_MESSAGE_DELTA_METHODS,
    APPROVAL_REQUEST_METHODS,
    ITEM_COMPLETED_METHOD,
    ITEM_STARTED_METHOD,
    REASONING_SUMMARY_DELTA_METHODS,
    REASONING_TEXT_DELTA_METHODS,
    TURN_COMPLETED_METHOD,
    ItemKind,
    item_kind,
    normalize_id,
    same_id,
)
from .tool_tracker import ToolTracker, build_tool_result_payload, resolve_tool_name

logger = logging.getLogger(__name__)

TurnCompletedCallback = Callable[[str, "TurnError | None"], None]


def _join_lines(value: Any) -> str:
    if isinstance(value, list):
        return "\n".join(str(part) for part in value if part is not None)
    return value if isinstance(value, str) else ""


class NotificationRouter:
    """Routes one turn's notifications from a client into a `StreamEmitter`.

    Only notifications whose thread and turn ids match the router's own pair
    are translated; everything else is ignored. Handlers are synchronous and
    run inside the client's receive loop, so parts keep arrival order. A
    router created without a turn id buffers until `bind_turn()`.
    """

    def __init__(
        self,
        client: AppServerClient,
        emitter: StreamEmitter,
        *,
        thread_id: str,
        turn_id: str | None = None,
        on_turn_completed: TurnCompletedCallback,
    ) -> None:
        self._client = client
        self._emitter = emitter
        self._thread_id = thread_id
        self._turn_id = normalize_id(turn_id)
        self._on_turn_completed = on_turn_completed
        self._backlog: list[tuple[str, Any, Callable[[dict[str, Any]], None]]] = []

        self._unsubscribers: list[Callable[[], None]] = []
        self._tools = ToolTracker()
        self._text_items_with_delta: set[str] = set()
        self._reasoning_items_with_delta: set[str] = set()

    @property
    def tools(self) -> ToolTracker:
        return self._tools

    @property
    def subscribed(self) -> bool:
        return bool(self._unsubscribers)

    def subscribe(self) -> None:
        if self._unsubscribers:
            return
        for method in AGENT_MESSAGE_DELTA_METHODS:
            self._on(method, self._handle_text_delta)
        for method in REASONING_TEXT_DELTA_METHODS:
            self._on(method, self._handle_reasoning_delta)
        for method in REASONING_SUMMARY_DELTA_METHODS:
            self._on(method, self._handle_reasoning_summary_delta)
        self._on(ITEM_STARTED_METHOD, self._handle_item_started)
        self._on(ITEM_COMPLETED_METHOD, self._handle_item_completed)
        for method in APPROVAL_REQUEST_METHODS:
            self._on(method, self._handle_approval_request)
        self._on(TURN_COMPLETED_METHOD, self._handle_turn_completed)

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    def bind_turn(self, turn_id: str) -> None:
        """Set the owned turn and replay notifications held back until now.

        Subscribing before `turn/start` returns means notifications for the new
        turn that race ahead of its response are buffered instead of lost.
        """
        self._turn_id = normalize_id(turn_id)
        backlog, self._backlog = self._backlog, []
        for method, params, handler in backlog:
            if not self._unsubscribers:
                return
            try:
                self._deliver(method, params, handler)
            except Exception:
                logger.exception("Notification handler error for %s", method)

    def unsubscribe(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        self._backlog.clear()
        for unsubscribe in unsubscribers:
            unsubscribe()

    def _on(self, method: str, handler: Callable[[dict[str, Any]], None]) -> None:
        def dispatch(params: Any) -> None:
            if self._turn_id is None:
                self._backlog.append((method, params, handler))
                return
            self._deliver(method, params, handler)

        self._unsubscribers.append(self._client.on_notification(method, dispatch))

    def _deliver(self, method: str, params: Any, handler: Callable[[dict[str, Any]], None]) -> None:
        self._emitter.emit_raw(method, params)
        if not isinstance(params, dict):
            logger.debug("Ignoring %s without params object", method)
            return
        handler(params)

    def _owns(self, thread_id: Any, turn_id: Any) -> bool:
        return same_id(thread_id, self._thread_id) and same_id(turn_id, self._turn_id)

    def _handle_text_delta(self, params: dict[str, Any]) -> None:
        if not self._owns(params.get("threadId"), params.get("turnId")):
            return
        item_id = normalize_id(params.get("itemId"))
        if item_id is not None:
            self._text_items_with_delta.add(item_id)
        self._emitter.emit_text_delta(str(params.get("delta") or ""))

    def _handle_reasoning(self, params: dict[str, Any], is_summary: bool) -> None:
        if not self._owns(params.get("threadId"), params.get("turnId")):
            return
        item_id = normalize_id(params.get("itemId"))
        if item_id is not None:
            self._reasoning_items_with_delta.add(item_id)
        self._emitter.emit_reasoning_delta(str(params.get("delta") or ""), is_summary)

    def _handle_reasoning_delta(self, params: dict[str, Any]) -> None:
        self._handle_reasoning(params, False)

    def _handle_reasoning_summary_delta(self, params: dict[str, Any]) -> None:
        self._handle_reasoning(params, True)

    def _handle_item_started(self, params: dict[str, Any]) -> None:
        if not self._owns(params.get("threadId"), params.get("turnId")):
            return
        item = params.get("item")
        kind = item_kind(item)
        if kind is None or not kind.is_tool:
            return
        item_id = normalize_id(item.get("id")) or ""
        info = self._tools.start(item)
        self._emitter.emit_tool_input(item_id, info.tool_name, info.input, info.dynamic)
        self._emitter.emit_tool_call(item_id, info.tool_name, info.input, info.dynamic)

    def _handle_item_completed(self, params: dict[str, Any]) -> None:
        if not self._owns(params.get("threadId"), params.get("turnId")):
            return
        item = params.get("item")
        kind = item_kind(item)
        if kind is None:
            return
        item_id = normalize_id(item.get("id")) or ""

        if kind.is_tool:
            info = self._tools.complete(item_id) or resolve_tool_name(item)
            result, is_error = build_tool_result_payload(item)
            self._emitter.emit_tool_result(item_id, info.tool_name, result, is_error, info.dynamic)
            return

        if kind is ItemKind.AGENT_MESSAGE:
            text = item.get("text")
            if item_id not in self._text_items_with_delta and text:
                self._emitter.emit_text_delta(str(text))
            return

        if kind is ItemKind.REASONING and item_id not in self._reasoning_items_with_delta:
            summary = _join_lines(item.get("summary"))
            content = _join_lines(item.get("content"))
            if summary:
                self._emitter.emit_reasoning_delta(summary, True)
            if content:
                self._emitter.emit_reasoning_delta(content, False)

    def _handle_approval_request(self, params: dict[str, Any]) -> None:
        if not self._owns(params.get("threadId"), params.get("turnId")):
            return
        item_id = normalize_id(params.get("itemId"))
        if item_id is None:
            logger.warning("Approval request without item id: %s", params)
            return
        self._emitter.emit_approval_request(item_id)

    def _handle_turn_completed(self, params: dict[str, Any]) -> None:
        turn = params.get("turn")
        if not isinstance(turn, dict):
            return
        if not self._owns(params.get("threadId"), turn.get("id")):
            logger.debug("Ignoring turn/completed for turn %s", turn.get("id"))
            return
        self._text_items_with_delta.clear()
        self._reasoning_items_with_delta.clear()
        error = turn.get("error")
        self._on_turn_completed(
            str(turn.get("status") or ""),
            coerce_turn_error(error) if isinstance(error, dict) else None,
        )
