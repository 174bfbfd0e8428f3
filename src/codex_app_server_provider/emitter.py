"""Ordered stream-part emission for one turn."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from .converters import safe_json_dumps
from .models import (
    CallWarning,
    FinishPart,
    FinishReason,
    RawPart,
    ReasoningDeltaPart,
    ReasoningEndPart,
    ReasoningStartPart,
    ResponseMetadataPart,
    StreamPart,
    StreamStartPart,
    TextDeltaPart,
    TextEndPart,
    TextStartPart,
    ToolApprovalRequestPart,
    ToolCallPart,
    ToolInputDeltaPart,
    ToolInputEndPart,
    ToolInputStartPart,
    ToolResultPart,
    TurnError,
    Usage,
)

logger = logging.getLogger(__name__)

PROVIDER_METADATA_KEY = "codex"

_CLOSED = object()


def create_empty_usage() -> Usage:
    return Usage()


def coerce_turn_error(error: TurnError | Mapping[str, Any] | None) -> TurnError | None:
    """Parse a turn error payload, keeping at least its message when fields are malformed."""
    if error is None or isinstance(error, TurnError):
        return error
    try:
        return TurnError.model_validate(dict(error))
    except ValidationError:
        logger.debug("Malformed turn error payload: %s", error)
        message = error.get("message")
        return TurnError(message=None if message is None else str(message))


def map_finish_reason(status: str | None, error: TurnError | Mapping[str, Any] | None = None) -> FinishReason:
    """Map a terminal turn status onto a unified finish reason.

    Statuses arrive as ``completed`` or ``Completed`` depending on the server
    version; both spellings map the same way.
    """
    normalized = status.lower() if isinstance(status, str) else None
    if normalized in ("completed", "interrupted"):
        return FinishReason(unified="stop", raw=status)
    if normalized == "failed":
        turn_error = coerce_turn_error(error)
        raw = turn_error.model_dump(by_alias=True, exclude_none=True) if turn_error else status
        return FinishReason(unified="error", raw=raw)
    return FinishReason(unified="other", raw=status)


class PartStream:
    """Async iterator over the stream parts of one call.

    Parts written before the consumer starts reading are buffered. Iteration
    ends once the producer calls `close()`.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, part: StreamPart) -> bool:
        """Enqueue a part; returns False when the stream is already closed."""
        if self._closed:
            return False
        self._queue.put_nowait(part)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> PartStream:
        return self

    async def __anext__(self) -> StreamPart:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel so later reads also terminate.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    async def collect(self) -> list[StreamPart]:
        return [part async for part in self]


class StreamEmitter:
    """Writes well-formed part sequences for one turn onto a `PartStream`.

    Text and reasoning segments are opened lazily and closed once at finish.
    Tool activity is counted for the finish metadata.
    """

    def __init__(
        self,
        stream: PartStream,
        *,
        thread_id: str,
        turn_id: str | None = None,
        model_id: str,
        include_raw_chunks: bool = False,
    ) -> None:
        self._stream = stream
        self._thread_id = thread_id
        self._turn_id = turn_id
        self._model_id = model_id
        self._include_raw_chunks = include_raw_chunks

        self._text_id = str(uuid.uuid4())
        self._reasoning_id = str(uuid.uuid4())
        self._text_started = False
        self._reasoning_started = False

        self._tools_started = 0
        self._tools_completed = 0
        self._tools_failed = 0

    @property
    def stream(self) -> PartStream:
        return self._stream

    @property
    def closed(self) -> bool:
        return self._stream.closed

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    @turn_id.setter
    def turn_id(self, value: str) -> None:
        self._turn_id = value

    @property
    def text_started(self) -> bool:
        return self._text_started

    @property
    def reasoning_started(self) -> bool:
        return self._reasoning_started

    def _write(self, part: StreamPart) -> None:
        if not self._stream.put(part):
            logger.debug("Dropping %s part written after close", part.type)

    def emit_stream_start(self, warnings: list[CallWarning] | None = None) -> None:
        self._write(StreamStartPart(warnings=list(warnings or [])))
        self._write(
            ResponseMetadataPart(
                id=self._turn_id or "",
                timestamp=datetime.now(timezone.utc),
                model_id=self._model_id,
            )
        )

    def emit_raw(self, method: str, params: Any) -> None:
        if self._include_raw_chunks:
            self._write(RawPart(raw_value={"method": method, "params": params}))

    def emit_text_delta(self, delta: str) -> None:
        if not self._text_started:
            self._text_started = True
            self._write(TextStartPart(id=self._text_id))
        self._write(TextDeltaPart(id=self._text_id, delta=delta))

    def emit_reasoning_delta(self, delta: str, is_summary: bool = False) -> None:
        """Write a reasoning delta; summaries are flagged in provider metadata."""
        if not self._reasoning_started:
            self._reasoning_started = True
            self._write(ReasoningStartPart(id=self._reasoning_id))
        metadata = {PROVIDER_METADATA_KEY: {"isSummary": True}} if is_summary else None
        self._write(ReasoningDeltaPart(id=self._reasoning_id, delta=delta, provider_metadata=metadata))

    def emit_tool_input(self, tool_call_id: str, tool_name: str, input: str, dynamic: bool = False) -> None:
        self._tools_started += 1
        self._write(
            ToolInputStartPart(id=tool_call_id, tool_name=tool_name, dynamic=True if dynamic else None)
        )
        if input:
            self._write(ToolInputDeltaPart(id=tool_call_id, delta=input))
        self._write(ToolInputEndPart(id=tool_call_id))

    def emit_tool_call(self, tool_call_id: str, tool_name: str, input: str, dynamic: bool = False) -> None:
        self._write(
            ToolCallPart(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                input=input,
                dynamic=True if dynamic else None,
            )
        )

    def emit_tool_result(
        self,
        tool_call_id: str,
        tool_name: str,
        result: dict[str, Any] | None,
        is_error: bool = False,
        dynamic: bool = False,
    ) -> None:
        if is_error:
            self._tools_failed += 1
        else:
            self._tools_completed += 1
        self._write(
            ToolResultPart(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                result=result or {},
                is_error=True if is_error else None,
                dynamic=True if dynamic else None,
            )
        )

    def emit_approval_request(self, item_id: str) -> None:
        self._write(ToolApprovalRequestPart(approval_id=item_id, tool_call_id=item_id))

    def emit_finish(self, status: str | None, error: TurnError | Mapping[str, Any] | None = None) -> None:
        """Close open segments and write the terminal `finish` part.

        A failed turn that produced no text gets its error message emitted as
        text first, so callers reading only text still see why it stopped.
        """
        turn_error = coerce_turn_error(error)
        if turn_error is not None and turn_error.message and not self._text_started:
            text = f"Error: {turn_error.message}"
            if turn_error.codex_error_info:
                text += f"\n\n{safe_json_dumps(turn_error.codex_error_info)}"
            self.emit_text_delta(text)

        if self._text_started:
            self._write(TextEndPart(id=self._text_id))
        if self._reasoning_started:
            self._write(ReasoningEndPart(id=self._reasoning_id))

        self._write(
            FinishPart(
                finish_reason=map_finish_reason(status, turn_error),
                usage=create_empty_usage(),
                provider_metadata=self._finish_metadata(status),
            )
        )

    def _finish_metadata(self, status: str | None) -> dict[str, Any]:
        return {
            PROVIDER_METADATA_KEY: {
                "sessionId": self._thread_id,
                "threadId": self._thread_id,
                "turnId": self._turn_id,
                "status": status,
                "toolExecutions": {
                    "started": self._tools_started,
                    "completed": self._tools_completed,
                    "failed": self._tools_failed,
                },
                "hadReasoning": self._reasoning_started,
                "completedAt": datetime.now(timezone.utc).isoformat(),
            }
        }

    def close(self) -> None:
        self._stream.close()
