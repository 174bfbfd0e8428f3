from codex_app_server_provider.protocol import (
    ItemKind,
    extract_error,
    is_response_message,
    is_server_request,
    item_kind,
    make_error_response,
    make_notification,
    make_request,
    normalize_id,
    same_id,
)


def test_make_request_omits_jsonrpc_field() -> None:
    payload = make_request(7, "initialize", {"foo": "bar"})
    assert payload == {"id": 7, "method": "initialize", "params": {"foo": "bar"}}
    assert make_request(8, "model/list") == {"id": 8, "method": "model/list"}


def test_make_notification_has_no_id() -> None:
    assert make_notification("initialized", {}) == {"method": "initialized", "params": {}}


def test_extract_error_reads_error_payload() -> None:
    response = make_error_response(9, -32000, "boom", {"x": 1})
    error = extract_error(response)
    assert error is not None
    assert error["code"] == -32000
    assert error["message"] == "boom"
    assert error["data"] == {"x": 1}
    assert extract_error({"id": 1, "result": {}}) is None


def test_message_classification() -> None:
    assert is_response_message({"id": 1, "result": {}})
    assert is_response_message({"jsonrpc": "2.0", "id": "1", "error": {}})
    assert not is_response_message({"method": "turn/started"})
    assert not is_response_message({"id": 3, "method": "item/fileChange/requestApproval"})
    assert is_server_request({"id": 3, "method": "item/fileChange/requestApproval"})
    assert not is_server_request({"method": "turn/started"})


def test_ids_compare_after_string_normalization() -> None:
    assert normalize_id(5) == "5"
    assert normalize_id(5.0) == "5"
    assert normalize_id(None) is None
    assert same_id(5, "5")
    assert not same_id(None, None)
    assert not same_id("5", "6")


def test_item_kind_parse_ignores_case() -> None:
    assert ItemKind.parse("CommandExecution") is ItemKind.COMMAND_EXECUTION
    assert ItemKind.parse("commandExecution") is ItemKind.COMMAND_EXECUTION
    assert ItemKind.parse("agentMessage") is ItemKind.AGENT_MESSAGE
    assert ItemKind.parse("mcp_tool_call") is ItemKind.MCP_TOOL_CALL
    assert ItemKind.parse("somethingNew") is None
    assert ItemKind.parse(None) is None
    assert item_kind({"type": "WebSearch"}) is ItemKind.WEB_SEARCH
    assert ItemKind.FILE_CHANGE.is_tool
    assert not ItemKind.REASONING.is_tool
