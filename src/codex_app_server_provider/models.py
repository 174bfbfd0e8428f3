from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Annotated, Any, Literal, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from .session import Session


class _CamelModel(BaseModel):
    """Model accepting both snake_case and the protocol's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Protocol payloads
# ---------------------------------------------------------------------------


class TurnError(_CamelModel):
    """Structured error attached to a failed turn.

    Attributes:
        code: Server error code, if any.
        message: Human-readable error message.
        codex_error_info: Extra diagnostic text from the agent.
        additional_details: Free-form details object.
    """

    code: str | int | None = None
    message: str | None = None
    codex_error_info: Any = None
    additional_details: Any = None


class TextInput(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageInput(_CamelModel):
    type: Literal["image"] = "image"
    image_url: str


class LocalImageInput(BaseModel):
    type: Literal["localImage"] = "localImage"
    path: str


UserInput: TypeAlias = Annotated[
    Union[TextInput, ImageInput, LocalImageInput],
    Field(discriminator="type"),
]


class ReasoningEffortOption(_CamelModel):
    reasoning_effort: str
    description: str = ""


class ModelInfo(_CamelModel):
    """One entry of the `model/list` response."""

    id: str
    model: str = ""
    display_name: str = ""
    description: str = ""
    supported_reasoning_efforts: list[ReasoningEffortOption] = Field(default_factory=list)
    default_reasoning_effort: str | None = None
    is_default: bool = False


class ListModelsResult(BaseModel):
    models: list[ModelInfo] = Field(default_factory=list)
    default_model: ModelInfo | None = None


# ---------------------------------------------------------------------------
# Outward stream parts
# ---------------------------------------------------------------------------


class CallWarning(BaseModel):
    """Non-fatal issue reported to the caller in the `stream-start` part."""

    type: Literal["unsupported", "other"] = "other"
    feature: str | None = None
    message: str | None = None
    details: str | None = None


class InputTokens(BaseModel):
    total: int = 0
    no_cache: int = 0
    cache_read: int = 0
    cache_write: int = 0


class OutputTokens(BaseModel):
    total: int = 0
    text: int | None = None
    reasoning: int | None = None


class Usage(BaseModel):
    """Token usage; the app-server does not report it per turn, so counts stay zero."""

    input_tokens: InputTokens = Field(default_factory=InputTokens)
    output_tokens: OutputTokens = Field(default_factory=OutputTokens)
    raw: Any = None


class FinishReason(BaseModel):
    unified: Literal["stop", "length", "content-filter", "tool-calls", "error", "other"]
    raw: Any = None


class StreamStartPart(BaseModel):
    type: Literal["stream-start"] = "stream-start"
    warnings: list[CallWarning] = Field(default_factory=list)


class ResponseMetadataPart(BaseModel):
    type: Literal["response-metadata"] = "response-metadata"
    id: str
    timestamp: datetime
    model_id: str


class TextStartPart(BaseModel):
    type: Literal["text-start"] = "text-start"
    id: str


class TextDeltaPart(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    id: str
    delta: str


class TextEndPart(BaseModel):
    type: Literal["text-end"] = "text-end"
    id: str


class ReasoningStartPart(BaseModel):
    type: Literal["reasoning-start"] = "reasoning-start"
    id: str


class ReasoningDeltaPart(BaseModel):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    id: str
    delta: str
    provider_metadata: dict[str, Any] | None = None


class ReasoningEndPart(BaseModel):
    type: Literal["reasoning-end"] = "reasoning-end"
    id: str


class ToolInputStartPart(BaseModel):
    type: Literal["tool-input-start"] = "tool-input-start"
    id: str
    tool_name: str
    provider_executed: bool = True
    dynamic: bool | None = None


class ToolInputDeltaPart(BaseModel):
    type: Literal["tool-input-delta"] = "tool-input-delta"
    id: str
    delta: str


class ToolInputEndPart(BaseModel):
    type: Literal["tool-input-end"] = "tool-input-end"
    id: str


class ToolCallPart(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: str
    provider_executed: bool = True
    dynamic: bool | None = None


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: dict[str, Any] = Field(default_factory=dict)
    is_error: bool | None = None
    dynamic: bool | None = None


class ToolApprovalRequestPart(BaseModel):
    type: Literal["tool-approval-request"] = "tool-approval-request"
    approval_id: str
    tool_call_id: str


class FinishPart(BaseModel):
    type: Literal["finish"] = "finish"
    finish_reason: FinishReason
    usage: Usage = Field(default_factory=Usage)
    provider_metadata: dict[str, Any] | None = None


class RawPart(BaseModel):
    type: Literal["raw"] = "raw"
    raw_value: Any = None


StreamPart: TypeAlias = Annotated[
    Union[
        StreamStartPart,
        ResponseMetadataPart,
        TextStartPart,
        TextDeltaPart,
        TextEndPart,
        ReasoningStartPart,
        ReasoningDeltaPart,
        ReasoningEndPart,
        ToolInputStartPart,
        ToolInputDeltaPart,
        ToolInputEndPart,
        ToolCallPart,
        ToolResultPart,
        ToolApprovalRequestPart,
        FinishPart,
        RawPart,
    ],
    Field(discriminator="type"),
]


class ResponseInfo(BaseModel):
    id: str
    timestamp: datetime
    model_id: str


class GenerateResult(BaseModel):
    """Buffered result of `CodexLanguageModel.do_generate()`.

    Attributes:
        text: Concatenated text deltas of the turn.
        finish_reason: Mapped reason from the terminal `finish` part.
        usage: Usage record from the `finish` part.
        warnings: Warnings reported at stream start.
        provider_metadata: Turn metadata from the `finish` part.
        response: Response identity for this call.
    """

    text: str = ""
    finish_reason: FinishReason = Field(
        default_factory=lambda: FinishReason(unified="other", raw=None)
    )
    usage: Usage = Field(default_factory=Usage)
    warnings: list[CallWarning] = Field(default_factory=list)
    provider_metadata: dict[str, Any] | None = None
    response: ResponseInfo


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

#: Approval policy forwarded to thread/turn start.
ApprovalMode: TypeAlias = Literal["never", "on-request", "on-failure", "untrusted"]

#: Filesystem sandbox mode. ``full-access`` is accepted as an alias of
#: ``danger-full-access``.
SandboxMode: TypeAlias = Literal["read-only", "workspace-write", "danger-full-access", "full-access"]

#: Reasoning effort level; ``none`` omits the field from `turn/start`.
ReasoningEffort: TypeAlias = Literal["none", "low", "medium", "high", "xhigh"]

#: Thread handling mode.
#:
#: Values:
#: - ``"persistent"``: reuse one thread across calls on the same model instance.
#: - ``"stateless"``: start a fresh thread for every call with a full transcript.
ThreadMode: TypeAlias = Literal["persistent", "stateless"]


class McpServerBase(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    enabled: bool | None = None
    startup_timeout_sec: float | None = None
    tool_timeout_sec: float | None = None
    enabled_tools: list[str] | None = None
    disabled_tools: list[str] | None = None


class McpServerStdio(McpServerBase):
    transport: Literal["stdio"] = "stdio"
    command: str
    args: list[str] | None = None
    env: dict[str, str] | None = None
    cwd: str | None = None


class McpServerHttp(McpServerBase):
    transport: Literal["http"] = "http"
    url: str
    bearer_token: str | None = None
    bearer_token_env_var: str | None = None
    http_headers: dict[str, str] | None = None
    env_http_headers: dict[str, str] | None = None


McpServerConfig: TypeAlias = Annotated[
    Union[McpServerStdio, McpServerHttp],
    Field(discriminator="transport"),
]

ConfigOverrideValue: TypeAlias = Union[str, int, float, bool, dict[str, Any], list[Any]]


class ProviderOptions(_CamelModel):
    """Per-call overrides; values take precedence over model settings."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    reasoning_effort: ReasoningEffort | None = None
    thread_mode: ThreadMode | None = None
    mcp_servers: dict[str, McpServerConfig] | None = None
    rmcp_client: bool | None = None
    config_overrides: dict[str, ConfigOverrideValue] | None = None


@dataclass(slots=True)
class ProviderSettings:
    """Settings for one `CodexLanguageModel` and the app-server it spawns.

    Attributes:
        codex_path: Codex executable; falls back to ``$CODEX_PATH`` then ``codex``.
        cwd: Working directory for the agent and the subprocess.
        approval_mode: Approval policy (default ``on-request``).
        sandbox_mode: Sandbox mode (default ``workspace-write``).
        reasoning_effort: Reasoning effort for reasoning-capable models.
        thread_mode: ``persistent`` (default) or ``stateless``.
        mcp_servers: MCP server definitions flattened into config overrides.
        rmcp_client: Enables the RMCP client feature for HTTP MCP servers.
        verbose: Log protocol traffic at DEBUG/INFO instead of only warnings.
        logger: Logger to use, or ``False`` to silence the client.
        on_session_created: Called with the `Session` of every streamed call.
        env: Extra environment variables for the subprocess.
        base_instructions: Instructions prepended to the system prompt.
        config_overrides: Nested codex config values, sent as dotted keys.
        resume: Thread id to resume instead of starting a new thread.
        request_timeout: Default per-request timeout in seconds.
    """

    codex_path: str | None = None
    cwd: str | None = None
    approval_mode: ApprovalMode | None = None
    sandbox_mode: SandboxMode | None = None
    reasoning_effort: ReasoningEffort | None = None
    thread_mode: ThreadMode | None = None
    mcp_servers: dict[str, McpServerStdio | McpServerHttp] | None = None
    rmcp_client: bool | None = None
    verbose: bool = False
    logger: logging.Logger | Literal[False] | None = None
    on_session_created: Callable[[Session], None] | None = None
    env: dict[str, str] | None = None
    base_instructions: str | None = None
    config_overrides: dict[str, Any] | None = None
    resume: str | None = None
    request_timeout: float = 60.0
