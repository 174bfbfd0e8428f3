from __future__ import annotations

import pytest
from pydantic import ValidationError

from codex_app_server_provider.converters import (
    build_base_instructions,
    build_config_overrides,
    build_unsupported_warnings,
    convert_prompt,
    flatten_config_overrides,
    map_approval_mode,
    map_reasoning_effort,
    map_sandbox_mode,
    merge_settings,
    parse_provider_options,
    safe_json_dumps,
    settings_from_mapping,
    validate_settings,
)
from codex_app_server_provider.models import (
    McpServerHttp,
    McpServerStdio,
    ProviderOptions,
    ProviderSettings,
)


def test_safe_json_dumps() -> None:
    assert safe_json_dumps(None) == ""
    assert safe_json_dumps("already text") == "already text"
    assert safe_json_dumps({"a": [1, 2]}) == '{"a":[1,2]}'
    assert safe_json_dumps({"bad": object()}) == ""


def test_persistent_prompt_sends_trailing_user_messages() -> None:
    prompt = [
        {"role": "system", "content": "Be helpful."},
        {"role": "user", "content": "old question"},
        {"role": "assistant", "content": [{"type": "text", "text": "old answer"}]},
        {"role": "user", "content": [{"type": "text", "text": "first"}]},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "second"},
                {"type": "file", "mediaType": "image/png", "data": "https://example.com/cat.png"},
                {"type": "file", "mediaType": "image/jpeg", "data": "file:///tmp/dog.jpg"},
            ],
        },
    ]
    converted = convert_prompt(prompt, "persistent")

    assert converted.system_prompt == "Be helpful."
    assert converted.inputs == [
        {"type": "text", "text": "first"},
        {"type": "text", "text": "second"},
        {"type": "image", "imageUrl": "https://example.com/cat.png"},
        {"type": "localImage", "path": "/tmp/dog.jpg"},
    ]
    assert converted.warnings == []


def test_non_image_files_and_inline_bytes_warn() -> None:
    prompt = [
        {
            "role": "user",
            "content": [
                {"type": "file", "mediaType": "application/pdf", "data": "https://example.com/a.pdf"},
                {"type": "file", "mediaType": "image/png", "data": b"\x89PNG"},
            ],
        }
    ]
    converted = convert_prompt(prompt, "persistent")

    assert len(converted.warnings) == 3
    assert "application/pdf" in (converted.warnings[0].message or "")
    assert "empty input" in (converted.warnings[-1].message or "")


def test_stateless_prompt_renders_transcript_with_tools() -> None:
    prompt = [
        {"role": "user", "content": "List files"},
        {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Running ls"},
                {"type": "tool-call", "toolName": "exec", "input": {"command": "ls"}},
            ],
        },
        {
            "role": "tool",
            "content": [
                {"type": "tool-result", "toolName": "exec", "output": {"type": "text", "value": "a.txt"}},
                {"type": "tool-approval-response", "approvalId": "c1", "approved": False, "reason": "unsafe"},
            ],
        },
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "Describe this"},
                {"type": "file", "mediaType": "image/png", "data": "https://example.com/x.png"},
            ],
        },
    ]
    converted = convert_prompt(prompt, "stateless")

    assert converted.inputs[0]["text"] == (
        "User: List files\n\n"
        "Assistant: Running ls\n\n"
        'Tool Call (exec): {"command":"ls"}\n\n'
        "Tool Result (exec): a.txt\n\n"
        "Tool Approval (c1): denied (unsafe)\n\n"
        "User: Describe this\n[1 image attached]"
    )
    assert converted.inputs[1] == {"type": "image", "imageUrl": "https://example.com/x.png"}


def test_empty_stateless_prompt_warns() -> None:
    converted = convert_prompt([], "stateless")
    assert converted.inputs == []
    assert "stateless turn" in (converted.warnings[0].message or "")


def test_unsupported_warnings_skip_unset_and_empty_options() -> None:
    warnings = build_unsupported_warnings(temperature=0.3, top_p=None, tools=[], stop_sequences=["END"])
    assert [warning.feature for warning in warnings] == ["temperature", "stop_sequences"]
    assert all(warning.type == "unsupported" for warning in warnings)


def test_mode_mapping() -> None:
    assert map_approval_mode(None) == "on-request"
    assert map_approval_mode("NEVER") == "never"  # type: ignore[arg-type]
    assert map_approval_mode("bogus") == "on-request"  # type: ignore[arg-type]
    assert map_sandbox_mode(None) == "workspace-write"
    assert map_sandbox_mode("full-access") == "danger-full-access"
    assert map_sandbox_mode("read-only") == "read-only"
    assert map_reasoning_effort("none") is None
    assert map_reasoning_effort("high") == "high"


def test_base_instructions_join_settings_and_system_prompt() -> None:
    settings = ProviderSettings(base_instructions="Base.")
    assert build_base_instructions(settings, "System.") == "Base.\n\nSystem."
    assert build_base_instructions(ProviderSettings(), None) is None


def test_flatten_config_overrides() -> None:
    assert flatten_config_overrides({"a": {"b": 1, "c": {"d": True}}, "e": [1], "f": {}}) == {
        "a.b": 1,
        "a.c.d": True,
        "e": [1],
        "f": {},
    }


def test_config_overrides_include_mcp_servers_and_rmcp() -> None:
    settings = ProviderSettings(
        rmcp_client=True,
        mcp_servers={
            "local": McpServerStdio(command="node", args=["server.js"], env={"K": "V"}),
            " remote ": McpServerHttp(url="https://mcp.example.com", bearer_token_env_var="TOKEN"),
            " ": McpServerStdio(command="ignored"),
        },
        config_overrides={"model_reasoning_summary": "auto", "tools": {"web_search": True}},
    )
    assert build_config_overrides(settings) == {
        "features.rmcp_client": True,
        "mcp_servers.local.command": "node",
        "mcp_servers.local.args": ["server.js"],
        "mcp_servers.local.env": {"K": "V"},
        "mcp_servers.remote.url": "https://mcp.example.com",
        "mcp_servers.remote.bearer_token_env_var": "TOKEN",
        "model_reasoning_summary": "auto",
        "tools.web_search": True,
    }
    assert build_config_overrides(ProviderSettings()) is None


def test_merge_settings_overlays_provider_options() -> None:
    base = ProviderSettings(
        reasoning_effort="low",
        config_overrides={"a": 1},
        mcp_servers={
            "docs": McpServerHttp(
                url="https://old.example.com",
                bearer_token="old",
                http_headers={"X-A": "1"},
            ),
            "fs": McpServerStdio(command="fs-server", env={"A": "1"}),
        },
    )
    options = ProviderOptions(
        thread_mode="stateless",
        config_overrides={"b": 2},
        mcp_servers={
            "docs": McpServerHttp(url="https://new.example.com", http_headers={"X-B": "2"}),
            "fs": McpServerStdio(command="fs-server", env={"B": "2"}),
        },
    )
    merged = merge_settings(base, options)

    assert merged.reasoning_effort == "low"
    assert merged.thread_mode == "stateless"
    assert merged.config_overrides == {"a": 1, "b": 2}
    docs = merged.mcp_servers["docs"]
    assert isinstance(docs, McpServerHttp)
    assert docs.url == "https://new.example.com"
    assert docs.bearer_token == "old"
    assert docs.http_headers == {"X-A": "1", "X-B": "2"}
    fs = merged.mcp_servers["fs"]
    assert isinstance(fs, McpServerStdio)
    assert fs.env == {"A": "1", "B": "2"}
    assert base.thread_mode is None
    assert merge_settings(base, None) is base


def test_merge_replaces_server_when_transport_changes() -> None:
    base = ProviderSettings(mcp_servers={"x": McpServerStdio(command="x", args=["--a"])})
    options = ProviderOptions(mcp_servers={"x": McpServerHttp(url="https://x.example.com")})
    merged = merge_settings(base, options)
    assert isinstance(merged.mcp_servers["x"], McpServerHttp)


def test_parse_provider_options() -> None:
    assert parse_provider_options(None) is None
    assert parse_provider_options({"other-provider": {"x": 1}}) is None
    parsed = parse_provider_options({"codex-app-server": {"threadMode": "stateless"}})
    assert parsed is not None and parsed.thread_mode == "stateless"
    with pytest.raises(ValidationError):
        parse_provider_options({"codex-app-server": {"unknownKey": True}})


def test_validate_settings_reports_errors_and_warnings() -> None:
    ok = validate_settings(ProviderSettings(sandbox_mode="danger-full-access", approval_mode="never"))
    assert ok.valid
    assert len(ok.warnings) == 2

    bad = validate_settings({"approval_mode": "sometimes", "unknown": 1})
    assert not bad.valid
    assert any(error.startswith("approval_mode") for error in bad.errors)
    assert any(error.startswith("unknown") for error in bad.errors)

    bad_timeout = validate_settings(ProviderSettings(request_timeout=0))
    assert not bad_timeout.valid


def test_settings_from_mapping_parses_mcp_servers() -> None:
    settings = settings_from_mapping(
        {"cwd": "/work", "mcp_servers": {"docs": {"transport": "http", "url": "https://d.example.com"}}}
    )
    assert settings.cwd == "/work"
    assert isinstance(settings.mcp_servers["docs"], McpServerHttp)
