from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from .models import (
    ApprovalMode,
    CallWarning,
    McpServerConfig,
    McpServerHttp,
    McpServerStdio,
    ProviderOptions,
    ProviderSettings,
    ReasoningEffort,
    SandboxMode,
    ThreadMode,
    UserInput,
)

DEFAULT_APPROVAL_MODE = "on-request"
DEFAULT_SANDBOX_MODE = "workspace-write"
DEFAULT_THREAD_MODE: ThreadMode = "persistent"

_APPROVAL_MODES = ("never", "on-request", "on-failure", "untrusted")
_SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")
_USER_INPUT_ADAPTER: TypeAdapter[Any] = TypeAdapter(UserInput)


def safe_json_dumps(value: Any) -> str:
    """Serialize for display; strings pass through and failures yield ``""``."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


# ---------------------------------------------------------------------------
# Prompt conversion
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ConvertedPrompt:
    inputs: list[dict[str, Any]] = field(default_factory=list)
    system_prompt: str | None = None
    warnings: list[CallWarning] = field(default_factory=list)


def to_protocol_input(value: Any) -> dict[str, Any]:
    """Validate one user input (model or mapping) into its wire shape."""
    model = value if isinstance(value, BaseModel) else _USER_INPUT_ADAPTER.validate_python(value)
    return model.model_dump(by_alias=True)


def _parts(message: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, Sequence):
        return [part for part in content if isinstance(part, Mapping)]
    return []


def _is_image(part: Mapping[str, Any]) -> bool:
    if part.get("type") == "image":
        return True
    media_type = part.get("mediaType") or part.get("media_type") or ""
    return isinstance(media_type, str) and media_type.lower().startswith("image/")


def _image_input(part: Mapping[str, Any], warnings: list[CallWarning]) -> dict[str, Any] | None:
    media_type = part.get("mediaType") or part.get("media_type")
    if not _is_image(part):
        warnings.append(
            CallWarning(
                message=f'Unsupported file mediaType "{media_type}"; only image/* is supported.'
            )
        )
        return None
    if isinstance(part.get("path"), str):
        return {"type": "localImage", "path": part["path"]}
    data = part.get("data") or part.get("url")
    if isinstance(data, str):
        if data.startswith("file://"):
            return {"type": "localImage", "path": data[len("file://"):]}
        if data.startswith(("http://", "https://", "data:")):
            return {"type": "image", "imageUrl": data}
    warnings.append(
        CallWarning(message="Inline image bytes are not supported; pass a URL or a local path.")
    )
    return None


def _extract_system_prompt(prompt: Sequence[Mapping[str, Any]]) -> str | None:
    parts = [
        message["content"]
        for message in prompt
        if message.get("role") == "system" and isinstance(message.get("content"), str)
    ]
    return "\n\n".join(parts) if parts else None


def _trailing_user_messages(prompt: Sequence[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    collected: list[Mapping[str, Any]] = []
    for message in reversed(prompt):
        if message.get("role") == "user":
            collected.append(message)
        elif collected:
            break
    if not collected:
        for message in reversed(prompt):
            if message.get("role") == "user":
                collected.append(message)
                break
    collected.reverse()
    return collected


def format_tool_output(output: Any) -> str:
    if not isinstance(output, Mapping):
        return safe_json_dumps(output)
    kind = output.get("type")
    value = output.get("value")
    if kind in ("text", "error-text"):
        return str(value or "")
    if kind in ("json", "error-json"):
        return safe_json_dumps(value)
    if kind == "execution-denied":
        reason = output.get("reason")
        return f"Execution denied: {reason}" if reason else "Execution denied"
    if kind == "content" and isinstance(value, Sequence):
        lines = []
        for part in value:
            if not isinstance(part, Mapping):
                continue
            if part.get("type") == "text":
                lines.append(str(part.get("text", "")))
            elif part.get("type") == "file-data":
                lines.append(f"[file: {part.get('mediaType')}]")
        return "\n".join(line for line in lines if line)
    return ""


def _build_transcript(
    prompt: Sequence[Mapping[str, Any]],
    warnings: list[CallWarning],
) -> tuple[str, list[Mapping[str, Any]]]:
    lines: list[str] = []
    last_images: list[Mapping[str, Any]] = []

    for message in prompt:
        role = message.get("role")
        if role == "user":
            texts = []
            images = []
            for part in _parts(message):
                if part.get("type") == "text":
                    texts.append(str(part.get("text", "")))
                elif part.get("type") in ("file", "image"):
                    if _is_image(part):
                        images.append(part)
                    else:
                        warnings.append(
                            CallWarning(
                                message=f'Unsupported file mediaType "{part.get("mediaType")}"; '
                                "only image/* is supported."
                            )
                        )
            note = ""
            if images:
                note = f"[{len(images)} image{'' if len(images) == 1 else 's'} attached]"
            combined = "\n".join(chunk for chunk in ("\n".join(texts), note) if chunk)
            if combined:
                lines.append(f"User: {combined}")
            if images:
                last_images = images
        elif role == "assistant":
            texts = []
            tool_lines = []
            for part in _parts(message):
                kind = part.get("type")
                if kind == "text":
                    texts.append(str(part.get("text", "")))
                elif kind == "tool-call":
                    tool_lines.append(
                        f"Tool Call ({part.get('toolName')}): {safe_json_dumps(part.get('input'))}"
                    )
                elif kind == "tool-result":
                    tool_lines.append(
                        f"Tool Result ({part.get('toolName')}): {format_tool_output(part.get('output'))}"
                    )
            text = "\n".join(texts)
            if text:
                lines.append(f"Assistant: {text}")
            lines.extend(tool_lines)
        elif role == "tool":
            for part in _parts(message):
                kind = part.get("type")
                if kind == "tool-result":
                    lines.append(
                        f"Tool Result ({part.get('toolName')}): {format_tool_output(part.get('output'))}"
                    )
                elif kind == "tool-approval-response":
                    decision = "approved" if part.get("approved") else "denied"
                    reason = f" ({part['reason']})" if part.get("reason") else ""
                    lines.append(f"Tool Approval ({part.get('approvalId')}): {decision}{reason}")

    return "\n\n".join(lines), last_images


def convert_prompt(
    prompt: Sequence[Mapping[str, Any]],
    thread_mode: ThreadMode = DEFAULT_THREAD_MODE,
) -> ConvertedPrompt:
    """Turn a chat-style prompt into `turn/start` input items.

    Persistent threads already hold the history, so only the trailing run of
    user messages is sent. Stateless threads get a rendered transcript of the
    whole conversation plus the images of the last user message.
    """
    converted = ConvertedPrompt(system_prompt=_extract_system_prompt(prompt))

    if thread_mode == "stateless":
        transcript, images = _build_transcript(prompt, converted.warnings)
        if transcript.strip():
            converted.inputs.append({"type": "text", "text": transcript})
        for part in images:
            image = _image_input(part, converted.warnings)
            if image is not None:
                converted.inputs.append(image)
        if not converted.inputs:
            converted.warnings.append(
                CallWarning(message="No user input found; starting a stateless turn with empty input.")
            )
        return converted

    for message in _trailing_user_messages(prompt):
        for part in _parts(message):
            kind = part.get("type")
            if kind == "text":
                converted.inputs.append({"type": "text", "text": str(part.get("text", ""))})
            elif kind in ("file", "image"):
                image = _image_input(part, converted.warnings)
                if image is not None:
                    converted.inputs.append(image)

    if not converted.inputs:
        converted.warnings.append(
            CallWarning(message="No user input found; starting a turn with empty input.")
        )
    return converted


def build_unsupported_warnings(**call_options: Any) -> list[CallWarning]:
    """Warn about generation options the app-server cannot honor."""
    warnings = []
    for feature, value in call_options.items():
        if value is None or (isinstance(value, (list, tuple, dict)) and not value):
            continue
        warnings.append(
            CallWarning(
                type="unsupported",
                feature=feature,
                details=f"Codex app-server does not support {feature}; it will be ignored.",
            )
        )
    return warnings


# ---------------------------------------------------------------------------
# Settings mapping
# ---------------------------------------------------------------------------


def map_approval_mode(mode: ApprovalMode | str | None) -> str:
    normalized = (mode or DEFAULT_APPROVAL_MODE).lower()
    return normalized if normalized in _APPROVAL_MODES else DEFAULT_APPROVAL_MODE


def map_sandbox_mode(mode: SandboxMode | str | None) -> str:
    normalized = (mode or DEFAULT_SANDBOX_MODE).lower()
    if normalized == "full-access":
        return "danger-full-access"
    return normalized if normalized in _SANDBOX_MODES else DEFAULT_SANDBOX_MODE


def map_reasoning_effort(effort: ReasoningEffort | None) -> str | None:
    if not effort or effort == "none":
        return None
    return effort


def build_base_instructions(settings: ProviderSettings, system_prompt: str | None) -> str | None:
    parts = [part for part in (settings.base_instructions, system_prompt) if part]
    return "\n\n".join(parts) if parts else None


def flatten_config_overrides(
    values: Mapping[str, Any],
    prefix: str = "",
    out: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Flatten nested mappings into dotted keys (``{"a": {"b": 1}}`` -> ``{"a.b": 1}``)."""
    out = {} if out is None else out
    for key, value in values.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            if not value:
                out[full_key] = {}
                continue
            flatten_config_overrides(value, full_key, out)
            continue
        out[full_key] = value
    return out


def _mcp_config_overrides(servers: Mapping[str, McpServerStdio | McpServerHttp] | None) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for raw_name, server in (servers or {}).items():
        name = raw_name.strip()
        if not name:
            continue
        # Field names already match codex's snake_case config keys.
        values = server.model_dump(exclude_none=True, exclude={"transport"})
        for key, value in values.items():
            overrides[f"mcp_servers.{name}.{key}"] = value
    return overrides


def build_config_overrides(settings: ProviderSettings) -> dict[str, Any] | None:
    """Collect rmcp, MCP server and free-form overrides as dotted config keys."""
    overrides: dict[str, Any] = {}
    if settings.rmcp_client is not None:
        overrides["features.rmcp_client"] = settings.rmcp_client
    overrides.update(_mcp_config_overrides(settings.mcp_servers))
    if settings.config_overrides:
        overrides.update(flatten_config_overrides(settings.config_overrides))
    return overrides or None


def _merge_str_dict(
    base: dict[str, str] | None,
    override: dict[str, str] | None,
) -> dict[str, str] | None:
    if override is not None:
        return {**(base or {}), **override} if override else {}
    return dict(base) if base is not None else None


def _merge_mcp_server(
    existing: McpServerStdio | McpServerHttp | None,
    incoming: McpServerStdio | McpServerHttp,
) -> McpServerStdio | McpServerHttp:
    if existing is None or existing.transport != incoming.transport:
        return incoming.model_copy()

    update = incoming.model_dump(exclude_none=True)
    if isinstance(incoming, McpServerStdio) and isinstance(existing, McpServerStdio):
        update["env"] = _merge_str_dict(existing.env, incoming.env)
    elif isinstance(incoming, McpServerHttp) and isinstance(existing, McpServerHttp):
        if incoming.bearer_token is not None or incoming.bearer_token_env_var is not None:
            update["bearer_token"] = incoming.bearer_token
            update["bearer_token_env_var"] = incoming.bearer_token_env_var
        update["http_headers"] = _merge_str_dict(existing.http_headers, incoming.http_headers)
        update["env_http_headers"] = _merge_str_dict(
            existing.env_http_headers, incoming.env_http_headers
        )
    return existing.model_copy(update=update)


def merge_mcp_servers(
    base: Mapping[str, McpServerStdio | McpServerHttp] | None,
    override: Mapping[str, McpServerStdio | McpServerHttp] | None,
) -> dict[str, McpServerStdio | McpServerHttp] | None:
    if base is None:
        return dict(override) if override is not None else None
    if override is None:
        return dict(base)
    merged = dict(base)
    for name, incoming in override.items():
        merged[name] = _merge_mcp_server(base.get(name), incoming)
    return merged


def merge_settings(
    settings: ProviderSettings,
    options: ProviderOptions | None,
) -> ProviderSettings:
    """Apply per-call provider options on top of model settings."""
    if options is None:
        return settings

    config_overrides = settings.config_overrides
    if options.config_overrides is not None or settings.config_overrides is not None:
        config_overrides = {**(settings.config_overrides or {}), **(options.config_overrides or {})}

    return dataclasses.replace(
        settings,
        reasoning_effort=options.reasoning_effort or settings.reasoning_effort,
        thread_mode=options.thread_mode or settings.thread_mode,
        config_overrides=config_overrides,
        mcp_servers=merge_mcp_servers(settings.mcp_servers, options.mcp_servers),
        rmcp_client=options.rmcp_client if options.rmcp_client is not None else settings.rmcp_client,
    )


def parse_provider_options(
    provider_options: ProviderOptions | Mapping[str, Any] | None,
    *,
    provider: str = "codex-app-server",
) -> ProviderOptions | None:
    """Validate the ``provider_options[provider]`` section of a call.

    Raises:
        pydantic.ValidationError: The section contains unknown or invalid keys.
    """
    if provider_options is None or isinstance(provider_options, ProviderOptions):
        return provider_options
    section = provider_options.get(provider)
    if section is None:
        return None
    return ProviderOptions.model_validate(section)


# ---------------------------------------------------------------------------
# Settings validation
# ---------------------------------------------------------------------------


class _SettingsSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    codex_path: str | None = None
    cwd: str | None = None
    approval_mode: Literal["never", "on-request", "on-failure", "untrusted"] | None = None
    sandbox_mode: Literal["read-only", "workspace-write", "danger-full-access", "full-access"] | None = None
    reasoning_effort: Literal["none", "low", "medium", "high", "xhigh"] | None = None
    thread_mode: Literal["persistent", "stateless"] | None = None
    mcp_servers: dict[str, McpServerConfig] | None = None
    rmcp_client: bool | None = None
    verbose: bool = False
    logger: Any = None
    on_session_created: Any = None
    env: dict[str, str] | None = None
    base_instructions: str | None = None
    config_overrides: dict[str, Any] | None = None
    resume: str | None = None
    request_timeout: float = 60.0


@dataclass(slots=True)
class ValidationResult:
    valid: bool = True
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _settings_as_dict(settings: ProviderSettings | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(settings, ProviderSettings):
        values = {f.name: getattr(settings, f.name) for f in dataclasses.fields(settings)}
        if values.get("mcp_servers"):
            values["mcp_servers"] = {
                name: server.model_dump() if isinstance(server, BaseModel) else server
                for name, server in values["mcp_servers"].items()
            }
        return values
    return dict(settings)


def validate_settings(settings: ProviderSettings | Mapping[str, Any]) -> ValidationResult:
    """Validate settings, returning errors and cautionary warnings."""
    result = ValidationResult()
    try:
        parsed = _SettingsSchema.model_validate(_settings_as_dict(settings))
    except ValidationError as exc:
        result.valid = False
        for issue in exc.errors():
            location = ".".join(str(part) for part in issue["loc"])
            result.errors.append(f"{location}: {issue['msg']}")
        return result

    if parsed.on_session_created is not None and not callable(parsed.on_session_created):
        result.valid = False
        result.errors.append("on_session_created: must be callable")
    if parsed.logger is not None and parsed.logger is not False and not hasattr(parsed.logger, "debug"):
        result.valid = False
        result.errors.append("logger: must be a logging.Logger or False")
    if parsed.request_timeout <= 0:
        result.valid = False
        result.errors.append("request_timeout: must be positive")

    if parsed.sandbox_mode in ("danger-full-access", "full-access"):
        result.warnings.append(
            'sandbox_mode "danger-full-access" gives the agent full filesystem access. '
            "Use with caution."
        )
    if parsed.approval_mode == "never":
        result.warnings.append(
            'approval_mode "never" allows the agent to execute commands without approval.'
        )
    return result


def settings_from_mapping(values: Mapping[str, Any]) -> ProviderSettings:
    """Build `ProviderSettings` from a plain mapping, parsing MCP server entries."""
    data = dict(values)
    servers = data.get("mcp_servers")
    if servers:
        adapter: TypeAdapter[Any] = TypeAdapter(McpServerConfig)
        data["mcp_servers"] = {name: adapter.validate_python(server) for name, server in servers.items()}
    return ProviderSettings(**data)
