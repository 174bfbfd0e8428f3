from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .client import AppServerClient
from .converters import (
    DEFAULT_THREAD_MODE,
    build_base_instructions,
    build_config_overrides,
    build_unsupported_warnings,
    convert_prompt,
    map_approval_mode,
    map_reasoning_effort,
    map_sandbox_mode,
    merge_settings,
    parse_provider_options,
)
from .emitter import PartStream, StreamEmitter, create_empty_usage
from .errors import CodexProtocolError
from .models import (
    CallWarning,
    FinishReason,
    GenerateResult,
    ProviderOptions,
    ProviderSettings,
    ResponseInfo,
    TurnError,
)
from .protocol import normalize_id
from .router import NotificationRouter
from .session import Session

logger = logging.getLogger(__name__)

PROVIDER_NAME = "codex-app-server"


@dataclass(slots=True)
class StreamResult:
    """Handle returned by `CodexLanguageModel.do_stream()`.

    Attributes:
        stream: Async iterator of stream parts for the turn.
        session: Session controlling the turn's thread.
        warnings: Warnings also carried by the `stream-start` part.
    """

    stream: PartStream
    session: Session
    warnings: list[CallWarning] = field(default_factory=list)


def _result_id(result: Any, key: str) -> str:
    container = result.get(key) if isinstance(result, dict) else None
    value = normalize_id(container.get("id")) if isinstance(container, dict) else None
    if value is None:
        raise CodexProtocolError(f"response is missing {key}.id", data=result)
    return value


class CodexLanguageModel:
    """Text generation backed by a `codex app-server` subprocess.

    One model instance owns one app-server client, spawned lazily on the first
    call. In persistent thread mode consecutive calls continue the same
    thread; in stateless mode each call starts a fresh thread with a rendered
    transcript of the prompt.
    """

    provider = PROVIDER_NAME
    supports_structured_outputs = True
    supports_image_urls = True

    def __init__(
        self,
        model_id: str,
        settings: ProviderSettings | None = None,
        *,
        client: AppServerClient | None = None,
    ) -> None:
        """Create a model.

        Args:
            model_id: Codex model id, e.g. ``gpt-5.1-codex``.
            settings: Model settings; defaults apply when omitted.
            client: Pre-built client, mostly for tests; spawned from settings otherwise.
        """
        self.model_id = model_id
        self._settings = settings or ProviderSettings()
        self._client = client
        self._session: Session | None = None

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    @property
    def session(self) -> Session | None:
        """Session of the most recent call; cleared after stateless calls finish."""
        return self._session

    def _get_client(self) -> AppServerClient:
        if self._client is None:
            self._client = AppServerClient.from_settings(self._settings)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def do_stream(
        self,
        prompt: Sequence[Mapping[str, Any]],
        *,
        provider_options: ProviderOptions | Mapping[str, Any] | None = None,
        response_format: Mapping[str, Any] | None = None,
        abort_signal: asyncio.Event | None = None,
        include_raw_chunks: bool = False,
        **call_options: Any,
    ) -> StreamResult:
        """Start a turn and return its part stream.

        Thread and turn setup failures raise here; once the stream is returned
        every later failure arrives as parts, ending with `finish`.

        Args:
            prompt: Chat messages ``{"role": ..., "content": ...}``.
            provider_options: Per-call overrides, either a `ProviderOptions`
                or a mapping keyed by provider name.
            response_format: ``{"type": "json", "schema": {...}}`` requests
                structured output.
            abort_signal: Setting this event interrupts the turn and closes
                the stream without a `finish` part.
            include_raw_chunks: Also emit every notification as a `raw` part.
            **call_options: Generation options (temperature, tools, ...) the
                app-server ignores; each non-empty one produces a warning.
        """
        client = self._get_client()
        options = parse_provider_options(provider_options, provider=self.provider)
        settings = merge_settings(self._settings, options)
        thread_mode = settings.thread_mode or DEFAULT_THREAD_MODE

        converted = convert_prompt(prompt, thread_mode)
        warnings = [*build_unsupported_warnings(**call_options), *converted.warnings]

        reuse_thread = thread_mode != "stateless" and bool(
            settings.resume or (self._session is not None and self._session.thread_id)
        )
        if reuse_thread and converted.system_prompt:
            warnings.append(CallWarning(message="System prompt is ignored when reusing an existing thread."))

        output_schema = None
        if response_format is not None and response_format.get("type") == "json":
            output_schema = response_format.get("schema")

        thread_id = await self._select_thread(client, settings, thread_mode, converted.system_prompt)

        session = Session(client, thread_id)
        self._session = session
        if self._settings.on_session_created is not None:
            self._settings.on_session_created(session)

        stream = PartStream()
        emitter = StreamEmitter(
            stream,
            thread_id=thread_id,
            model_id=self.model_id,
            include_raw_chunks=include_raw_chunks,
        )
        unsubscribers: list[Any] = []
        abort_task: asyncio.Task[None] | None = None

        def cleanup() -> None:
            router.unsubscribe()
            for unsubscribe in unsubscribers:
                unsubscribe()
            unsubscribers.clear()
            if abort_task is not None and abort_task is not asyncio.current_task():
                abort_task.cancel()
            if thread_mode == "stateless" and self._session is session:
                self._session = None

        def on_turn_completed(status: str, error: TurnError | None) -> None:
            session._set_inactive()
            emitter.emit_finish(status, error)
            emitter.close()
            cleanup()

        def on_disconnect(error: Exception) -> None:
            session._set_inactive()
            emitter.emit_finish("failed", TurnError(message=str(error)))
            emitter.close()
            cleanup()

        router = NotificationRouter(
            client,
            emitter,
            thread_id=thread_id,
            on_turn_completed=on_turn_completed,
        )
        router.subscribe()

        turn_params: dict[str, Any] = {
            "threadId": thread_id,
            "input": converted.inputs,
            "approvalPolicy": map_approval_mode(settings.approval_mode),
            "sandboxPolicy": map_sandbox_mode(settings.sandbox_mode),
            "model": self.model_id,
        }
        if settings.cwd:
            turn_params["cwd"] = settings.cwd
        effort = map_reasoning_effort(settings.reasoning_effort)
        if effort:
            turn_params["effort"] = effort
        if output_schema:
            turn_params["outputSchema"] = output_schema

        try:
            turn_id = _result_id(await client.start_turn(turn_params), "turn")
        except BaseException:
            cleanup()
            raise

        session._set_turn_id(turn_id)
        emitter.turn_id = turn_id
        try:
            emitter.emit_stream_start(warnings)
            unsubscribers.append(client.on_disconnect(on_disconnect))
            router.bind_turn(turn_id)
        except Exception as exc:
            logger.exception("Failed to attach to turn %s", turn_id)
            session._set_inactive()
            cleanup()
            emitter.emit_finish("failed", TurnError(message=str(exc)))
            emitter.close()

        if abort_signal is not None and not emitter.closed:

            async def watch_abort() -> None:
                await abort_signal.wait()
                logger.debug("Abort requested for turn %s", turn_id)
                # Detach first so the interrupted turn cannot emit a finish part.
                cleanup()
                emitter.close()
                await session.interrupt()

            abort_task = asyncio.create_task(watch_abort())

        return StreamResult(stream=stream, session=session, warnings=warnings)

    async def _select_thread(
        self,
        client: AppServerClient,
        settings: ProviderSettings,
        thread_mode: str,
        system_prompt: str | None,
    ) -> str:
        if thread_mode != "stateless":
            if settings.resume:
                result = await client.resume_thread({"threadId": settings.resume})
                return _result_id(result, "thread")
            if self._session is not None and self._session.thread_id:
                return self._session.thread_id

        params: dict[str, Any] = {
            "model": self.model_id,
            "approvalPolicy": map_approval_mode(settings.approval_mode),
            "sandbox": map_sandbox_mode(settings.sandbox_mode),
        }
        if settings.cwd:
            params["cwd"] = settings.cwd
        base_instructions = build_base_instructions(settings, system_prompt)
        if base_instructions:
            params["baseInstructions"] = base_instructions
        config_overrides = build_config_overrides(settings)
        if config_overrides:
            params["configOverrides"] = config_overrides

        result = await client.start_thread(params)
        return _result_id(result, "thread")

    async def do_generate(
        self,
        prompt: Sequence[Mapping[str, Any]],
        **kwargs: Any,
    ) -> GenerateResult:
        """Run one turn to completion and return its text and finish data."""
        streamed = await self.do_stream(prompt, **kwargs)
        text: list[str] = []
        finish_reason = FinishReason(unified="other", raw=None)
        usage = create_empty_usage()
        provider_metadata = None

        async for part in streamed.stream:
            if part.type == "text-delta":
                text.append(part.delta)
            elif part.type == "finish":
                finish_reason = part.finish_reason
                usage = part.usage
                provider_metadata = part.provider_metadata

        return GenerateResult(
            text="".join(text),
            finish_reason=finish_reason,
            usage=usage,
            warnings=streamed.warnings,
            provider_metadata=provider_metadata,
            response=ResponseInfo(
                id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc),
                model_id=self.model_id,
            ),
        )

