from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from codex_app_server_provider.errors import CodexProtocolError, CodexTransportError
from codex_app_server_provider.models import ImageInput, TextInput
from codex_app_server_provider.session import Session


class RecordingClient:
    def __init__(self, turn_ids: list[Any] | None = None) -> None:
        self.turn_requests: list[dict[str, Any]] = []
        self.interrupts: list[dict[str, Any]] = []
        self.interrupt_error: Exception | None = None
        self._turn_ids = list(turn_ids or ["turn-2"])

    async def start_turn(self, params: Mapping[str, Any]) -> dict[str, Any]:
        self.turn_requests.append(dict(params))
        return {"turn": {"id": self._turn_ids.pop(0), "status": "inProgress"}}

    async def interrupt_turn(self, params: Mapping[str, Any]) -> None:
        self.interrupts.append(dict(params))
        if self.interrupt_error is not None:
            raise self.interrupt_error


def test_new_session_is_idle() -> None:
    session = Session(RecordingClient(), "thread-1")  # type: ignore[arg-type]
    assert session.thread_id == "thread-1"
    assert session.turn_id is None
    assert not session.is_active()


def test_inject_message_always_starts_turn_and_adopts_new_turn_id() -> None:
    async def _run() -> None:
        client = RecordingClient(turn_ids=["turn-1", 7])
        session = Session(client, "thread-1")  # type: ignore[arg-type]
        session._set_turn_id("turn-1")

        await session.inject_message("keep going")
        assert client.turn_requests[0] == {
            "threadId": "thread-1",
            "input": [{"type": "text", "text": "keep going"}],
        }
        assert session.turn_id == "turn-1"

        session._set_inactive()
        await session.inject_message(
            [TextInput(text="look"), {"type": "image", "imageUrl": "https://example.com/a.png"}]
        )
        assert client.turn_requests[1]["input"] == [
            {"type": "text", "text": "look"},
            {"type": "image", "imageUrl": "https://example.com/a.png"},
        ]
        assert session.turn_id == "7"
        assert session.is_active()

    asyncio.run(_run())


def test_inject_message_accepts_models_with_snake_case_fields() -> None:
    async def _run() -> None:
        client = RecordingClient()
        session = Session(client, "thread-1")  # type: ignore[arg-type]
        await session.inject_message([ImageInput(image_url="https://example.com/b.png")])
        assert client.turn_requests[0]["input"] == [
            {"type": "image", "imageUrl": "https://example.com/b.png"}
        ]

    asyncio.run(_run())


def test_inject_message_propagates_request_errors() -> None:
    class FailingClient(RecordingClient):
        async def start_turn(self, params: Mapping[str, Any]) -> dict[str, Any]:
            raise CodexProtocolError("thread not found", code=-32600)

    async def _run() -> None:
        session = Session(FailingClient(), "thread-1")  # type: ignore[arg-type]
        with pytest.raises(CodexProtocolError):
            await session.inject_message("hello")

    asyncio.run(_run())


def test_interrupt_is_noop_when_idle() -> None:
    async def _run() -> None:
        client = RecordingClient()
        session = Session(client, "thread-1")  # type: ignore[arg-type]
        await session.interrupt()
        assert client.interrupts == []

    asyncio.run(_run())


def test_interrupt_sends_request_and_goes_idle() -> None:
    async def _run() -> None:
        client = RecordingClient()
        session = Session(client, "thread-1")  # type: ignore[arg-type]
        session._set_turn_id("turn-1")

        await session.interrupt()
        assert client.interrupts == [{"threadId": "thread-1", "turnId": "turn-1"}]
        assert not session.is_active()

        await session.interrupt()
        assert len(client.interrupts) == 1

    asyncio.run(_run())


def test_interrupt_failure_is_swallowed_and_session_goes_idle() -> None:
    async def _run() -> None:
        client = RecordingClient()
        client.interrupt_error = CodexTransportError("app server connection closed")
        session = Session(client, "thread-1")  # type: ignore[arg-type]
        session._set_turn_id("turn-1")

        await session.interrupt()
        assert not session.is_active()

    asyncio.run(_run())
