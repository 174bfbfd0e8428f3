from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
import os
from collections.abc import Callable, Coroutine, Mapping, Sequence
from typing import Any

from .errors import (
    CodexDecodeError,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
)
from .models import ProviderSettings
from .protocol import (
    INITIALIZE_METHOD,
    INITIALIZED_NOTIFICATION,
    METHOD_NOT_FOUND_CODE,
    MODEL_LIST_METHOD,
    THREAD_RESUME_METHOD,
    THREAD_START_METHOD,
    TURN_INTERRUPT_METHOD,
    TURN_START_METHOD,
    extract_error,
    is_response_message,
    is_server_request,
    make_error_response,
    make_notification,
    make_request,
    normalize_id,
)
from .transport import StdioTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 60.0
CONNECTION_CLOSED_MESSAGE = "app server connection closed"

CLIENT_INFO = {
    "name": "codex-app-server-provider",
    "title": "Codex App Server Provider for Python",
    "version": "0.1.0",
}

NotificationHandler = Callable[[Any], Any]


class AppServerClient:
    """Owns one app-server connection and multiplexes requests and notifications.

    Requests are correlated to responses by id; every other inbound message is
    fanned out to the handlers registered with `on_notification()`, in
    registration order, from a single background receive loop.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        log: logging.Logger | None = None,
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Connectable transport; it is (re)connected on demand.
            request_timeout: Default timeout for request/response calls.
            log: Logger used for traffic and lifecycle messages.
        """
        self._transport = transport
        self._request_timeout = request_timeout
        self._log = log or logger

        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._handlers: dict[str, list[NotificationHandler]] = {}
        self._disconnect_handlers: list[Callable[[Exception], None]] = []
        self._background: set[asyncio.Task[Any]] = set()

        self._send_lock = asyncio.Lock()
        self._receiver_task: asyncio.Task[None] | None = None
        self._starting: asyncio.Task[None] | None = None
        self._initialized = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> AppServerClient:
        """Create an unstarted client that spawns `codex app-server` over stdio."""
        env = dict(os.environ)
        if settings.env:
            env.update(settings.env)
        log = resolve_logger(settings)
        transport = StdioTransport(
            spawn_command(settings),
            cwd=settings.cwd,
            env=env,
            log=log,
        )
        return cls(transport, request_timeout=settings.request_timeout, log=log)

    @property
    def initialized(self) -> bool:
        """True once the initialize handshake has completed on the live connection."""
        return self._initialized

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> AppServerClient:
        await self.ensure_started()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def ensure_started(self) -> None:
        """Spawn and initialize the app-server once; concurrent callers share the start."""
        if self._closed:
            raise CodexTransportError("client is closed")
        if self._initialized:
            return
        if self._starting is None:
            self._starting = asyncio.create_task(self._start())
        starting = self._starting
        try:
            await asyncio.shield(starting)
        except BaseException:
            if self._starting is starting and starting.done():
                self._starting = None
            raise

    async def _start(self) -> None:
        await self._transport.connect()
        self._start_receiver()
        try:
            await self._send_request(
                INITIALIZE_METHOD,
                {"clientInfo": dict(CLIENT_INFO)},
                timeout=self._request_timeout,
            )
            await self._send(make_notification(INITIALIZED_NOTIFICATION, {}))
        except BaseException:
            await self._stop_receiver()
            await self._transport.close()
            raise
        self._initialized = True
        self._log.info("codex app-server initialized")

    async def close(self) -> None:
        """Stop the receive loop, fail pending requests, and terminate the process."""
        if self._closed:
            return
        self._closed = True
        self._log.info("Disposing codex app-server client")

        if self._starting is not None and not self._starting.done():
            self._starting.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._starting
        self._starting = None

        await self._stop_receiver()
        self._fail_pending(CodexTransportError(CONNECTION_CLOSED_MESSAGE))
        self._initialized = False

        for task in list(self._background):
            task.cancel()
        self._background.clear()

        await self._transport.close()

    dispose = close

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and await its result.

        Raises:
            CodexProtocolError: The server answered with an error frame.
            CodexTimeoutError: No response arrived within ``timeout`` seconds.
            CodexTransportError: The connection closed before a response arrived.
        """
        await self.ensure_started()
        return await self._send_request(
            method,
            dict(params) if params is not None else None,
            timeout=timeout if timeout is not None else self._request_timeout,
        )

    async def notify(self, method: str, params: Mapping[str, Any] | None = None) -> None:
        """Send a fire-and-forget notification."""
        if self._closed or not self._transport.is_connected:
            self._log.warning("Cannot send notification %s: process not started", method)
            return
        self._log.debug("Notification: %s", method)
        await self._send(make_notification(method, dict(params) if params is not None else None))

    def on_notification(self, method: str, handler: NotificationHandler) -> Callable[[], None]:
        """Register a handler for a server notification method.

        Returns:
            A callable removing this registration; calling it twice is harmless.
        """
        self._handlers.setdefault(method, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(method)
            if handlers is None:
                return
            with contextlib.suppress(ValueError):
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(method, None)

        return unsubscribe

    def has_handlers(self, method: str) -> bool:
        return bool(self._handlers.get(method))

    def on_disconnect(self, handler: Callable[[Exception], None]) -> Callable[[], None]:
        """Register a callback run when the connection drops unexpectedly.

        Returns:
            A callable removing this registration.
        """
        self._disconnect_handlers.append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._disconnect_handlers.remove(handler)

        return unsubscribe

    async def start_thread(self, params: Mapping[str, Any]) -> Any:
        return await self.request(THREAD_START_METHOD, params)

    async def resume_thread(self, params: Mapping[str, Any]) -> Any:
        return await self.request(THREAD_RESUME_METHOD, params)

    async def start_turn(self, params: Mapping[str, Any]) -> Any:
        return await self.request(TURN_START_METHOD, params)

    async def interrupt_turn(self, params: Mapping[str, Any], *, timeout: float | None = None) -> None:
        await self.request(TURN_INTERRUPT_METHOD, params, timeout=timeout)

    async def list_models(self, params: Mapping[str, Any] | None = None) -> Any:
        return await self.request(MODEL_LIST_METHOD, params or {})

    async def _send_request(
        self,
        method: str,
        params: dict[str, Any] | None,
        *,
        timeout: float,
    ) -> Any:
        request_id = next(self._ids)
        key = str(request_id)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[key] = future
        self._log.debug("Request %s: %s", request_id, method)

        try:
            await self._send(make_request(request_id, method, params))
            response = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CodexTimeoutError(
                f"request timed out for method={method!r} after {timeout:.1f}s",
                method=method,
                timeout=timeout,
            ) from exc
        finally:
            if self._pending.get(key) is future:
                del self._pending[key]

        error = extract_error(response)
        if error is not None:
            code = error.get("code")
            message_text = str(error.get("message", "JSON-RPC error"))
            self._log.debug("Response %s: error - %s", request_id, message_text)
            raise CodexProtocolError(
                message_text,
                code=code if isinstance(code, int) else None,
                data=error.get("data"),
            )
        self._log.debug("Response %s: success", request_id)
        return response.get("result")

    async def _send(self, payload: dict[str, Any]) -> None:
        async with self._send_lock:
            await self._transport.send(payload)

    def _start_receiver(self) -> None:
        """Start background receive loop exactly once per connection."""
        if self._receiver_task is not None and not self._receiver_task.done():
            return
        self._receiver_task = asyncio.create_task(self._receiver_loop())

    async def _stop_receiver(self) -> None:
        task = self._receiver_task
        self._receiver_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _receiver_loop(self) -> None:
        """Route incoming messages to request futures or notification handlers."""
        try:
            while not self._closed:
                try:
                    payload = await self._transport.recv()
                except CodexDecodeError as exc:
                    self._log.error("Failed to parse JSON line: %s (%s)", exc.raw[:200], exc)
                    continue
                self._route(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._closed:
                return
            self._log.info("codex app-server connection lost: %s", exc)
            await self._handle_disconnect(exc)

    def _route(self, payload: dict[str, Any]) -> None:
        if is_response_message(payload):
            key = normalize_id(payload.get("id"))
            future = self._pending.pop(key, None) if key is not None else None
            if future is None:
                self._log.warning("Dropping response for unknown or expired request id %s", key)
            elif not future.done():
                future.set_result(payload)
            return

        method = payload.get("method")
        if not isinstance(method, str):
            self._log.warning("Dropping message without method or id")
            return

        self._log.debug("Notification received: %s", method)
        handled = self._dispatch(method, payload.get("params"))

        if is_server_request(payload) and not handled:
            self._spawn_background_task(
                self._send(
                    make_error_response(
                        payload["id"],
                        METHOD_NOT_FOUND_CODE,
                        f"Client does not handle server request {method!r}.",
                    )
                )
            )

    def _dispatch(self, method: str, params: Any) -> bool:
        handlers = list(self._handlers.get(method, ()))
        for handler in handlers:
            try:
                result = handler(params)
            except Exception:
                self._log.exception("Notification handler error for %s", method)
                continue
            if inspect.isawaitable(result):
                self._spawn_background_task(result)
        return bool(handlers)

    async def _handle_disconnect(self, cause: Exception) -> None:
        self._initialized = False
        self._starting = None
        self._receiver_task = None
        error = CodexTransportError(CONNECTION_CLOSED_MESSAGE)
        error.__cause__ = cause
        self._fail_pending(error)
        try:
            await self._transport.close()
        except Exception as exc:
            self._log.debug("Transport close after disconnect failed: %s", exc)
        for handler in list(self._disconnect_handlers):
            try:
                handler(error)
            except Exception:
                self._log.exception("Disconnect handler error")

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _spawn_background_task(self, awaitable: Any) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("Background task failed")

        task = asyncio.create_task(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def resolve_codex_path(codex_path: str | None) -> str:
    """Return the codex executable: explicit path, ``$CODEX_PATH``, then ``codex``."""
    return codex_path or os.getenv("CODEX_PATH") or "codex"


def resolve_logger(settings: ProviderSettings) -> logging.Logger:
    """Pick the logger a client should use for the given settings."""
    if settings.logger is False:
        silent = logging.getLogger(f"{__name__}.silent")
        silent.disabled = True
        return silent
    if isinstance(settings.logger, logging.Logger):
        return settings.logger
    if settings.verbose:
        # Only the dedicated child is raised; the module logger keeps its level.
        verbose = logger.getChild("verbose")
        verbose.setLevel(logging.DEBUG)
        return verbose
    return logger


def spawn_command(settings: ProviderSettings) -> Sequence[str]:
    """Return the argv that starts the app-server for these settings."""
    return [resolve_codex_path(settings.codex_path), "app-server"]
