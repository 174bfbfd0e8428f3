from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from .client import AppServerClient
from .converters import to_protocol_input
from .errors import CodexError
from .protocol import normalize_id

logger = logging.getLogger(__name__)


class Session:
    """Mid-execution control over the turns of one thread.

    A session is handed to ``on_session_created`` for every streamed call. It
    can inject further user input into the thread or interrupt the active turn
    while the caller is still consuming the stream.

    Attributes:
        thread_id: Remote thread this session controls; never changes.
    """

    def __init__(self, client: AppServerClient, thread_id: str) -> None:
        self._client = client
        self._thread_id = thread_id
        self._turn_id: str | None = None
        self._active = False

    @property
    def thread_id(self) -> str:
        return self._thread_id

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    def is_active(self) -> bool:
        return self._active

    def _set_turn_id(self, turn_id: str) -> None:
        self._turn_id = turn_id
        self._active = True

    def _set_inactive(self) -> None:
        self._active = False

    async def inject_message(self, content: str | Sequence[Any]) -> None:
        """Send more user input to the thread.

        The app-server queues input for an active turn or starts a new one, so
        this always issues `turn/start`. A differing turn id in the response
        becomes the session's current turn.

        Args:
            content: Plain text, or a sequence of text/image inputs.
        """
        if isinstance(content, str):
            inputs = [{"type": "text", "text": content}]
        else:
            inputs = [to_protocol_input(item) for item in content]

        result = await self._client.start_turn({"threadId": self._thread_id, "input": inputs})
        turn = result.get("turn") if isinstance(result, dict) else None
        turn_id = normalize_id(turn.get("id")) if isinstance(turn, dict) else None
        if turn_id is not None and turn_id != self._turn_id:
            self._turn_id = turn_id
            self._active = True

    async def interrupt(self) -> None:
        """Interrupt the active turn; a no-op when idle.

        The session becomes idle whether or not the request succeeds.
        """
        if not self._active or self._turn_id is None:
            return
        try:
            await self._client.interrupt_turn({"threadId": self._thread_id, "turnId": self._turn_id})
        except CodexError as exc:
            logger.warning("Failed to interrupt turn %s: %s", self._turn_id, exc)
        finally:
            self._active = False
