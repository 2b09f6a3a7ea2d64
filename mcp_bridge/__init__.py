"""
GitLab MCP bridge — serves a stdio MCP tool server over HTTP/SSE.

Architecture:
    ┌──────────────┐   HTTP/SSE    ┌──────────────┐    stdio     ┌──────────────┐
    │ Remote client │ ──────────── │    Bridge     │ ──────────── │  Tool Server  │
    │ (web app)    │  JSON-RPC    │  (Starlette)  │  JSON-RPC   │  (subprocess) │
    └──────────────┘              └──────────────┘    pipes     └──────────────┘

The tool server (by default @modelcontextprotocol/server-gitlab) speaks
JSON-RPC 2.0 over stdin/stdout, one message per line.

StdioTransport supervises that process, CorrelationBridge matches its
replies to requests by id, ToolServerManager keeps exactly one instance
alive for all clients, and create_app() exposes it all over HTTP/SSE.
"""

__version__ = "1.0.0"

from mcp_bridge.bridge import CorrelationBridge
from mcp_bridge.manager import ToolServerManager
from mcp_bridge.transport import JsonRpcMessage, LineCodec, StdioTransport, Transport


# App requires starlette, tool wrappers require langchain: lazy imports
# keep the reference tool server standalone
def create_app(*args, **kwargs):
    from mcp_bridge.app import create_app as _impl
    return _impl(*args, **kwargs)


def load_langchain_tools(*args, **kwargs):
    from mcp_bridge.langchain_tools import load_langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "CorrelationBridge",
    "JsonRpcMessage",
    "LineCodec",
    "StdioTransport",
    "ToolServerManager",
    "Transport",
    "create_app",
    "load_langchain_tools",
]
