from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

import websockets

from .errors import CodexDecodeError, CodexTransportError

logger = logging.getLogger(__name__)

# Largest single frame accepted; aggregated command output easily exceeds
# asyncio's 64 KiB readline default.
MAX_FRAME_BYTES = 16 * 1024 * 1024

# Grace period between SIGTERM and SIGKILL when stopping the app-server.
TERMINATE_GRACE_SECONDS = 2.0


class Transport(ABC):
    """One bidirectional channel carrying app-server frames.

    A frame is one JSON object. Implementations own framing and process or
    socket lifetime; `AppServerClient` owns correlation and dispatch.
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel; calling it while connected does nothing."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, payload: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> dict[str, Any]:
        """Return the next inbound frame.

        Raises:
            CodexDecodeError: The frame was not a JSON object; later frames are fine.
            CodexTransportError: The connection is gone.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release the channel; safe to call more than once."""
        raise NotImplementedError


def decode_frame(text: str) -> dict[str, Any]:
    """Parse one frame, raising CodexDecodeError for anything but a JSON object."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CodexDecodeError("received invalid JSON frame", raw=text) from exc
    if not isinstance(payload, dict):
        raise CodexDecodeError("received non-object JSON frame", raw=text)
    return payload


def encode_frame(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=False)


class StdioTransport(Transport):
    """Runs `codex app-server` as a child process, one frame per stdout line.

    Stderr is drained in the background and logged at DEBUG; it never reaches
    the frame decoder.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        log: logging.Logger | None = None,
    ) -> None:
        """Describe the process to spawn; nothing starts until `connect()`.

        Args:
            command: Argv of the app-server, e.g. ``["codex", "app-server"]``.
            cwd: Working directory of the child.
            env: Complete child environment; inherits ours when omitted.
            connect_timeout: Seconds allowed for the spawn itself.
            log: Logger for lifecycle and stderr lines.
        """
        if not command:
            raise ValueError("app-server command is empty")
        self._argv = list(command)
        self._cwd = cwd
        self._env = None if env is None else dict(env)
        self._spawn_timeout = connect_timeout
        self._log = log or logger
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_reader: asyncio.Task[None] | None = None

    @property
    def command(self) -> list[str]:
        return list(self._argv)

    @property
    def is_connected(self) -> bool:
        proc = self._proc
        return proc is not None and proc.returncode is None

    @property
    def returncode(self) -> int | None:
        return None if self._proc is None else self._proc.returncode

    async def connect(self) -> None:
        if self._proc is not None:
            return
        self._log.info("Starting codex app-server: %s", " ".join(self._argv))
        spawn = asyncio.create_subprocess_exec(
            *self._argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=self._env,
            limit=MAX_FRAME_BYTES,
        )
        try:
            proc = await asyncio.wait_for(spawn, timeout=self._spawn_timeout)
        except Exception as exc:
            raise CodexTransportError(
                f"could not spawn app-server {self._argv!r} ({type(exc).__name__}: {exc})"
            ) from exc
        self._proc = proc
        if proc.stderr is not None:
            self._stderr_reader = asyncio.create_task(self._log_stderr(proc.stderr))

    async def _log_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except (ValueError, OSError):
                return
            if not raw:
                return
            self._log.debug("[stderr] %s", raw.decode("utf-8", errors="replace").rstrip())

    def _running(self) -> asyncio.subprocess.Process:
        if self._proc is None:
            raise CodexTransportError("app-server process is not running")
        return self._proc

    async def send(self, payload: Mapping[str, Any]) -> None:
        stdin = self._running().stdin
        if stdin is None:
            raise CodexTransportError("app-server stdin is unavailable")
        data = (encode_frame(payload) + "\n").encode("utf-8")
        try:
            stdin.write(data)
            await stdin.drain()
        except (ConnectionError, OSError, RuntimeError) as exc:
            raise CodexTransportError("could not write to app-server stdin") from exc

    async def recv(self) -> dict[str, Any]:
        proc = self._running()
        if proc.stdout is None:
            raise CodexTransportError("app-server stdout is unavailable")
        try:
            raw = await proc.stdout.readline()
        except ValueError as exc:
            raise CodexDecodeError(f"frame exceeded {MAX_FRAME_BYTES} bytes") from exc
        except (ConnectionError, OSError) as exc:
            raise CodexTransportError("could not read from app-server stdout") from exc
        if not raw:
            code = await self._exit_code(proc)
            raise CodexTransportError(f"app-server stdout closed (exit code {code})")
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            raise CodexDecodeError("received empty stdio frame", raw=text)
        return decode_frame(text)

    @staticmethod
    async def _exit_code(proc: asyncio.subprocess.Process) -> int | None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        return proc.returncode

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return

        if proc.stdin is not None:
            proc.stdin.close()
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                self._log.warning("codex app-server ignored SIGTERM; killing it")
                proc.kill()
                await proc.wait()

        reader, self._stderr_reader = self._stderr_reader, None
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self._log.info("codex app-server exited with code %s", proc.returncode)


class WebSocketTransport(Transport):
    """Talks to an app-server that is already listening on a websocket.

    Every text message is one frame. The process is owned by whoever started
    it, so `close()` only drops the socket.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        log: logging.Logger | None = None,
    ) -> None:
        """Describe the endpoint; nothing connects until `connect()`.

        Args:
            url: ``ws://`` or ``wss://`` endpoint of the app-server.
            token: Sent as ``Authorization: Bearer <token>`` when given.
            headers: Extra handshake headers; an explicit Authorization wins.
            connect_timeout: Seconds allowed for the handshake.
            log: Logger for lifecycle messages.
        """
        self._url = url
        handshake: dict[str, str] = {}
        if token:
            handshake["Authorization"] = f"Bearer {token}"
        handshake.update(headers or {})
        self._headers = handshake or None
        self._handshake_timeout = connect_timeout
        self._log = log or logger
        self._ws: Any = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._log.info("Connecting to codex app-server at %s", self._url)
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                    max_size=MAX_FRAME_BYTES,
                ),
                timeout=self._handshake_timeout,
            )
        except Exception as exc:
            raise CodexTransportError(
                f"could not reach app-server at {self._url} ({type(exc).__name__}: {exc})"
            ) from exc

    def _socket(self) -> Any:
        if self._ws is None:
            raise CodexTransportError("app-server websocket is not open")
        return self._ws

    async def send(self, payload: Mapping[str, Any]) -> None:
        ws = self._socket()
        try:
            await ws.send(encode_frame(payload))
        except Exception as exc:
            raise CodexTransportError(f"could not send to app-server websocket: {exc}") from exc

    async def recv(self) -> dict[str, Any]:
        ws = self._socket()
        try:
            message = await ws.recv()
        except Exception as exc:
            raise CodexTransportError(f"app-server websocket closed: {exc}") from exc
        if isinstance(message, (bytes, bytearray)):
            message = bytes(message).decode("utf-8", errors="replace")
        return decode_frame(message)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            self._log.debug("websocket close failed: %s", exc)
