from .client import AppServerClient
from .emitter import PartStream, StreamEmitter, map_finish_reason
from .errors import (
    CodexDecodeError,
    CodexError,
    CodexProtocolError,
    CodexSettingsError,
    CodexTimeoutError,
    CodexTransportError,
    NoSuchModelError,
    is_authentication_error,
    is_timeout_error,
)
from .language_model import CodexLanguageModel, StreamResult
from .models import (
    CallWarning,
    FinishReason,
    GenerateResult,
    ListModelsResult,
    McpServerHttp,
    McpServerStdio,
    ModelInfo,
    ProviderOptions,
    ProviderSettings,
    StreamPart,
    TurnError,
    Usage,
)
from .provider import CodexAppServerProvider, create_codex_app_server, list_models
from .router import NotificationRouter
from .session import Session
from .tool_tracker import ToolInfo, ToolTracker
from .tools import LocalMcpServer, Tool, create_local_mcp_server, create_mcp_app, tool
from .transport import StdioTransport, Transport, WebSocketTransport

__all__ = [
    "AppServerClient",
    "CallWarning",
    "CodexAppServerProvider",
    "CodexDecodeError",
    "CodexError",
    "CodexLanguageModel",
    "CodexProtocolError",
    "CodexSettingsError",
    "CodexTimeoutError",
    "CodexTransportError",
    "FinishReason",
    "GenerateResult",
    "ListModelsResult",
    "LocalMcpServer",
    "McpServerHttp",
    "McpServerStdio",
    "ModelInfo",
    "NoSuchModelError",
    "NotificationRouter",
    "PartStream",
    "ProviderOptions",
    "ProviderSettings",
    "Session",
    "StdioTransport",
    "StreamEmitter",
    "StreamPart",
    "StreamResult",
    "Tool",
    "ToolInfo",
    "ToolTracker",
    "Transport",
    "TurnError",
    "Usage",
    "WebSocketTransport",
    "create_codex_app_server",
    "is_authentication_error",
    "is_timeout_error",
    "create_local_mcp_server",
    "create_mcp_app",
    "list_models",
    "tool",
    "map_finish_reason",
]
