from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import pytest

from codex_app_server_provider.emitter import PartStream, StreamEmitter
from codex_app_server_provider.models import TurnError
from codex_app_server_provider.router import NotificationRouter

THREAD = "thread-1"
TURN = "turn-1"


class FakeClient:
    """Minimal notification registry standing in for `AppServerClient`."""

    def __init__(self) -> None:
        self.handlers: dict[str, list[Callable[[Any], None]]] = {}

    def on_notification(self, method: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        self.handlers.setdefault(method, []).append(handler)

        def unsubscribe() -> None:
            if handler in self.handlers.get(method, []):
                self.handlers[method].remove(handler)

        return unsubscribe

    def fire(self, method: str, params: Any) -> None:
        for handler in list(self.handlers.get(method, [])):
            handler(params)

    def handler_count(self) -> int:
        return sum(len(handlers) for handlers in self.handlers.values())


class Harness:
    def __init__(self, *, turn_id: str | None = TURN, include_raw_chunks: bool = False) -> None:
        self.client = FakeClient()
        self.completions: list[tuple[str, TurnError | None]] = []
        self.emitter = StreamEmitter(
            PartStream(),
            thread_id=THREAD,
            turn_id=TURN,
            model_id="gpt-5.1-codex",
            include_raw_chunks=include_raw_chunks,
        )
        self.router = NotificationRouter(
            self.client,  # type: ignore[arg-type]
            self.emitter,
            thread_id=THREAD,
            turn_id=turn_id,
            on_turn_completed=self._completed,
        )
        self.router.subscribe()

    def _completed(self, status: str, error: TurnError | None) -> None:
        self.completions.append((status, error))
        self.emitter.emit_finish(status, error)
        self.emitter.close()
        self.router.unsubscribe()

    def fire(self, method: str, **params: Any) -> None:
        params.setdefault("threadId", THREAD)
        params.setdefault("turnId", TURN)
        self.client.fire(method, params)

    def complete_turn(self, status: str = "completed", error: dict[str, Any] | None = None) -> None:
        turn: dict[str, Any] = {"id": TURN, "status": status}
        if error is not None:
            turn["error"] = error
        self.client.fire("turn/completed", {"threadId": THREAD, "turn": turn})

    async def parts(self) -> list[Any]:
        return await self.emitter.stream.collect()


def _command(status: str, **extra: Any) -> dict[str, Any]:
    item = {"type": "commandExecution", "id": "c1", "command": "false", "cwd": "/w", "status": status}
    item.update(extra)
    return item


def test_command_execution_lifecycle_with_failing_exit_code() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire("item/started", item=_command("inProgress"))
        harness.fire("item/completed", item=_command("completed", exitCode=1, aggregatedOutput="err"))
        harness.complete_turn()
        parts = await harness.parts()

        assert [part.type for part in parts] == [
            "tool-input-start",
            "tool-input-delta",
            "tool-input-end",
            "tool-call",
            "tool-result",
            "finish",
        ]
        assert parts[0].tool_name == "exec"
        assert parts[3].tool_call_id == "c1"
        result = parts[4]
        assert result.tool_name == "exec"
        assert result.is_error is True
        assert result.result["exitCode"] == 1
        assert result.result["aggregatedOutput"] == "err"

    asyncio.run(_run())


def test_completed_tool_without_start_resolves_name() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire(
            "item/completed",
            item={"type": "McpToolCall", "id": "m1", "server": "docs", "tool": "search", "status": "completed"},
        )
        harness.complete_turn()
        parts = await harness.parts()

        assert [part.type for part in parts] == ["tool-result", "finish"]
        assert parts[0].tool_name == "mcp__docs__search"
        assert parts[0].dynamic is True
        assert parts[0].is_error is None

    asyncio.run(_run())


def test_agent_message_deltas_are_not_duplicated_by_completed_item() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire("item/agentMessage/delta", itemId="a1", delta="Hel")
        harness.fire("agentMessageDelta", itemId="a1", delta="lo")
        harness.fire("item/completed", item={"type": "agentMessage", "id": "a1", "text": "Hello"})
        harness.complete_turn()
        parts = await harness.parts()

        deltas = [part.delta for part in parts if part.type == "text-delta"]
        assert deltas == ["Hel", "lo"]

    asyncio.run(_run())


def test_agent_message_without_deltas_emits_final_text() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire("item/completed", item={"type": "AgentMessage", "id": 5, "text": "Full answer"})
        harness.complete_turn()
        parts = await harness.parts()

        assert [part.type for part in parts] == ["text-start", "text-delta", "text-end", "finish"]
        assert parts[1].delta == "Full answer"

    asyncio.run(_run())


def test_reasoning_item_without_deltas_emits_summary_then_content() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire(
            "item/completed",
            item={"type": "reasoning", "id": "r1", "summary": ["step one", "step two"], "content": "raw"},
        )
        harness.complete_turn()
        parts = await harness.parts()

        reasoning = [part for part in parts if part.type == "reasoning-delta"]
        assert [part.delta for part in reasoning] == ["step one\nstep two", "raw"]
        assert reasoning[0].provider_metadata == {"codex": {"isSummary": True}}
        assert reasoning[1].provider_metadata is None

    asyncio.run(_run())


def test_reasoning_deltas_suppress_completed_reasoning_item() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire("item/reasoning/summaryTextDelta", itemId="r1", delta="sum")
        harness.fire("reasoningTextDelta", itemId="r1", delta="body")
        harness.fire("item/completed", item={"type": "reasoning", "id": "r1", "summary": ["sum"], "content": ["body"]})
        harness.complete_turn()
        parts = await harness.parts()

        reasoning = [part.delta for part in parts if part.type == "reasoning-delta"]
        assert reasoning == ["sum", "body"]

    asyncio.run(_run())


def test_notifications_for_other_threads_or_turns_are_ignored() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire("item/agentMessage/delta", threadId="other", itemId="a", delta="nope")
        harness.fire("item/agentMessage/delta", turnId="turn-0", itemId="a", delta="nope")
        harness.fire("item/agentMessage/delta", itemId="a", delta="yes")
        harness.client.fire("turn/completed", {"threadId": THREAD, "turn": {"id": "turn-0", "status": "completed"}})
        assert harness.completions == []
        harness.complete_turn()
        parts = await harness.parts()

        assert [part.delta for part in parts if part.type == "text-delta"] == ["yes"]

    asyncio.run(_run())


def test_numeric_ids_match_after_normalization() -> None:
    async def _run() -> None:
        client = FakeClient()
        emitter = StreamEmitter(PartStream(), thread_id="7", turn_id="8", model_id="m")
        completions: list[str] = []
        router = NotificationRouter(
            client,  # type: ignore[arg-type]
            emitter,
            thread_id="7",
            turn_id="8",
            on_turn_completed=lambda status, error: completions.append(status),
        )
        router.subscribe()
        client.fire("item/agentMessage/delta", {"threadId": 7, "turnId": 8, "itemId": 1, "delta": "x"})
        client.fire("turn/completed", {"threadId": 7, "turn": {"id": 8, "status": "completed"}})
        emitter.close()
        parts = await emitter.stream.collect()

        assert [part.type for part in parts] == ["text-start", "text-delta"]
        assert completions == ["completed"]

    asyncio.run(_run())


def test_approval_requests_emit_one_part_each() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.fire("item/commandExecution/requestApproval", itemId="c1")
        harness.fire("item/fileChange/requestApproval", itemId="f1")
        harness.complete_turn()
        parts = await harness.parts()

        approvals = [part for part in parts if part.type == "tool-approval-request"]
        assert [(part.approval_id, part.tool_call_id) for part in approvals] == [("c1", "c1"), ("f1", "f1")]

    asyncio.run(_run())


def test_failed_turn_reports_error_to_callback() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.complete_turn("failed", {"message": "boom", "codexErrorInfo": "info"})
        parts = await harness.parts()

        status, error = harness.completions[0]
        assert status == "failed"
        assert error is not None
        assert error.codex_error_info == "info"
        assert parts[1].delta == "Error: boom\n\ninfo"
        assert parts[-1].finish_reason.unified == "error"

    asyncio.run(_run())


def test_raw_parts_precede_filtering() -> None:
    async def _run() -> None:
        harness = Harness(include_raw_chunks=True)
        harness.fire("item/agentMessage/delta", threadId="other", itemId="a", delta="x")
        harness.complete_turn()
        parts = await harness.parts()

        assert [part.type for part in parts] == ["raw", "raw", "finish"]
        assert parts[0].raw_value["method"] == "item/agentMessage/delta"
        assert parts[1].raw_value["method"] == "turn/completed"

    asyncio.run(_run())


def test_unsubscribe_removes_every_handler() -> None:
    harness = Harness()
    assert harness.client.handler_count() == 11
    harness.router.unsubscribe()
    harness.router.unsubscribe()
    assert harness.client.handler_count() == 0


def test_notifications_before_turn_binding_are_replayed() -> None:
    async def _run() -> None:
        harness = Harness(turn_id=None)
        harness.fire("item/agentMessage/delta", itemId="a", delta="early")
        harness.fire("item/agentMessage/delta", turnId="turn-0", itemId="a", delta="stale")
        assert harness.router.turn_id is None

        harness.router.bind_turn(TURN)
        harness.fire("item/agentMessage/delta", itemId="a", delta=" late")
        harness.complete_turn()
        parts = await harness.parts()

        assert [part.delta for part in parts if part.type == "text-delta"] == ["early", " late"]

    asyncio.run(_run())


def test_numeric_error_code_and_structured_info_still_finish_the_turn() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.complete_turn(
            "failed",
            {
                "code": 500,
                "message": "boom",
                "codexErrorInfo": {"httpConnectionFailed": {"httpStatusCode": 502}},
            },
        )
        parts = await harness.parts()

        status, error = harness.completions[0]
        assert status == "failed"
        assert error is not None and error.code == 500
        assert parts[1].delta == 'Error: boom\n\n{"httpConnectionFailed":{"httpStatusCode":502}}'
        assert parts[-1].finish_reason.unified == "error"

    asyncio.run(_run())


def test_malformed_turn_error_keeps_its_message() -> None:
    async def _run() -> None:
        harness = Harness()
        harness.complete_turn("failed", {"code": ["not", "a", "code"], "message": "boom"})
        parts = await harness.parts()

        _, error = harness.completions[0]
        assert error is not None and error.message == "boom"
        assert parts[-1].type == "finish"

    asyncio.run(_run())


def test_raising_handler_during_replay_does_not_stop_the_backlog(
    caplog: pytest.LogCaptureFixture,
) -> None:
    client = FakeClient()
    emitter = StreamEmitter(PartStream(), thread_id=THREAD, turn_id=TURN, model_id="gpt-5.1-codex")

    def explode(status: str, error: TurnError | None) -> None:
        raise RuntimeError("callback failed")

    router = NotificationRouter(
        client,  # type: ignore[arg-type]
        emitter,
        thread_id=THREAD,
        on_turn_completed=explode,
    )
    router.subscribe()
    client.fire("turn/completed", {"threadId": THREAD, "turn": {"id": TURN, "status": "completed"}})
    client.fire(
        "item/agentMessage/delta",
        {"threadId": THREAD, "turnId": TURN, "itemId": "a", "delta": "after"},
    )

    with caplog.at_level(logging.ERROR):
        router.bind_turn(TURN)

    assert "Notification handler error for turn/completed" in caplog.text
    assert emitter.text_started
