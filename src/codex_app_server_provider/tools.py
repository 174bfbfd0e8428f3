"""In-process tools exposed to the agent through a local MCP HTTP server.

Tools are plain Python callables whose arguments are described by a pydantic
model. `LocalMcpServer` serves them over MCP's JSON-RPC-over-HTTP transport on
the loopback interface; its `config` goes straight into
``ProviderSettings.mcp_servers``.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from aiohttp import web
from pydantic import BaseModel, ValidationError

from .converters import safe_json_dumps
from .errors import CodexError
from .models import McpServerHttp

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR_CODE = -32700
METHOD_NOT_FOUND_CODE = -32601
INVALID_PARAMS_CODE = -32602
INTERNAL_ERROR_CODE = -32603

ParamsT = TypeVar("ParamsT", bound=BaseModel)


@dataclass
class Tool(Generic[ParamsT]):
    """One callable tool.

    Attributes:
        name: Tool name the agent calls.
        description: Text shown to the model when it picks tools.
        parameters: Pydantic model validating the call arguments.
        execute: Sync or async callable receiving the validated model.
    """

    name: str
    description: str
    parameters: type[ParamsT]
    execute: Callable[[ParamsT], Any | Awaitable[Any]]

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.parameters.model_json_schema()

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}

    async def call(self, arguments: Mapping[str, Any] | None) -> Any:
        """Validate ``arguments`` and run the tool.

        Raises:
            pydantic.ValidationError: The arguments do not match `parameters`.
        """
        params = self.parameters.model_validate(dict(arguments or {}))
        result = self.execute(params)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(
    name: str,
    description: str,
    parameters: type[ParamsT],
    execute: Callable[[ParamsT], Any | Awaitable[Any]],
) -> Tool[ParamsT]:
    """Define a tool whose arguments are validated by ``parameters``.

    Example:
        >>> class AddArgs(BaseModel):
        ...     a: float
        ...     b: float
        >>> add = tool("add", "Add two numbers", AddArgs, lambda args: {"sum": args.a + args.b})
    """
    if not name:
        raise ValueError("tool name must not be empty")
    return Tool(name=name, description=description, parameters=parameters, execute=execute)


def _result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _tool_content(result: Any) -> dict[str, Any]:
    text = result if isinstance(result, str) else safe_json_dumps(result)
    return {"content": [{"type": "text", "text": text}]}


@dataclass(slots=True)
class _ServerState:
    name: str
    version: str
    tools: dict[str, Tool[Any]]


_STATE_KEY: web.AppKey[_ServerState] = web.AppKey("mcp_state", t=_ServerState)


async def handle_mcp_message(state: _ServerState, message: Mapping[str, Any]) -> dict[str, Any]:
    """Answer one MCP JSON-RPC request."""
    request_id = message.get("id")
    method = message.get("method")
    params = message.get("params")
    params = params if isinstance(params, Mapping) else {}

    if method == "initialize":
        return _result(
            request_id,
            {
                "protocolVersion": params.get("protocolVersion") or MCP_PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": state.name, "version": state.version},
            },
        )
    if method == "ping":
        return _result(request_id, {})
    if method == "tools/list":
        return _result(request_id, {"tools": [item.describe() for item in state.tools.values()]})
    if method == "tools/call":
        tool_name = params.get("name")
        selected = state.tools.get(tool_name) if isinstance(tool_name, str) else None
        if selected is None:
            return _error(request_id, INVALID_PARAMS_CODE, f"Unknown tool: {tool_name}")
        arguments = params.get("arguments")
        try:
            value = await selected.call(arguments if isinstance(arguments, Mapping) else None)
        except ValidationError as exc:
            return _error(request_id, INVALID_PARAMS_CODE, f"Invalid arguments for {tool_name}: {exc}")
        except Exception as exc:
            logger.exception("Tool %s failed", tool_name)
            return _error(request_id, INTERNAL_ERROR_CODE, str(exc))
        return _result(request_id, _tool_content(value))
    return _error(request_id, METHOD_NOT_FOUND_CODE, f"Method not found: {method}")


async def _mcp_handler(request: web.Request) -> web.StreamResponse:
    if request.method != "POST":
        return web.json_response({"error": "Method not allowed"}, status=405)
    try:
        message = await request.json()
    except ValueError:
        return web.json_response(_error(None, PARSE_ERROR_CODE, "Parse error"), status=400)
    if not isinstance(message, dict) or not isinstance(message.get("method"), str):
        return web.json_response(_error(None, PARSE_ERROR_CODE, "Parse error"), status=400)

    # Notifications carry no id and get no body.
    if message.get("id") is None:
        logger.debug("MCP notification: %s", message["method"])
        return web.Response(status=202)

    logger.debug("MCP request %s: %s", message["id"], message["method"])
    return web.json_response(await handle_mcp_message(request.app[_STATE_KEY], message))


def create_mcp_app(name: str, tools: Sequence[Tool[Any]], *, version: str = "1.0.0") -> web.Application:
    """Build the aiohttp application answering MCP requests on any path.

    Raises:
        ValueError: Two tools share a name.
    """
    by_name: dict[str, Tool[Any]] = {}
    for item in tools:
        if item.name in by_name:
            raise ValueError(f"duplicate tool name: {item.name}")
        by_name[item.name] = item
    app = web.Application()
    app[_STATE_KEY] = _ServerState(name=name, version=version, tools=by_name)
    app.router.add_route("*", "/{tail:.*}", _mcp_handler)
    return app


class LocalMcpServer:
    """Serves tools over MCP HTTP on a local port for the app-server to call.

    Usable as an async context manager; `start()` and `stop()` are idempotent.
    """

    def __init__(
        self,
        name: str,
        tools: Sequence[Tool[Any]],
        *,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        """Describe the server; nothing listens until `start()`.

        Args:
            name: Server name, also the natural ``mcp_servers`` key.
            tools: Tools to expose.
            host: Interface to bind.
            port: Port to bind; 0 picks a free one.
        """
        self.name = name
        self._app = create_mcp_app(name, tools)
        self._host = host
        self._requested_port = port
        self._runner: web.AppRunner | None = None
        self._port: int | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    @property
    def port(self) -> int:
        if self._port is None:
            raise CodexError(f"MCP server {self.name!r} is not running")
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self.port}"

    @property
    def config(self) -> McpServerHttp:
        """HTTP server entry for ``ProviderSettings.mcp_servers``."""
        return McpServerHttp(url=self.url)

    async def start(self) -> LocalMcpServer:
        if self._runner is not None:
            return self
        runner = web.AppRunner(self._app)
        await runner.setup()
        try:
            site = web.TCPSite(runner, self._host, self._requested_port)
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        self._runner = runner
        self._port = int(runner.addresses[0][1])
        logger.info("Local MCP server %s listening on %s", self.name, self.url)
        return self

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        self._port = None
        await runner.cleanup()
        logger.info("Local MCP server %s stopped", self.name)

    async def __aenter__(self) -> LocalMcpServer:
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.stop()


async def create_local_mcp_server(
    name: str,
    tools: Sequence[Tool[Any]],
    *,
    host: str = "127.0.0.1",
    port: int = 0,
) -> LocalMcpServer:
    """Start a `LocalMcpServer` and return it; call `stop()` when done."""
    return await LocalMcpServer(name, tools, host=host, port=port).start()
