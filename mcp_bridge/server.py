"""
Minimal stdio MCP tool server.

Stands in for the GitLab tool server during local development and in the
integration tests. It speaks the same framing the bridge expects:

1. Announces readiness on stderr
2. Reads JSON-RPC messages from stdin, one per line
3. Writes replies (and its own notifications) to stdout

Example (a fake GitLab tool for local runs):

    from mcp_bridge.server import StdioToolServer, ToolHandler

    class ListIssues(ToolHandler):
        name = "list_issues"
        description = "List open issues of a project"
        parameters = {"project_id": {"type": "string"}}
        required = ("project_id",)

        def handle(self, params):
            return [{"iid": 1, "title": f"Demo issue in {params['project_id']}"}]

    server = StdioToolServer("fake-gitlab")
    server.register(ListIssues())
    server.run()
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code


class ToolHandler(ABC):
    """One tool: its MCP schema fields plus handle()."""

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: tuple[str, ...] = ()

    # Set by StdioToolServer.register()
    server: "StdioToolServer | None" = None

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """Run the tool. Return text or anything JSON-serializable; raising marks the result isError."""
        ...

    def get_schema(self) -> dict:
        """Entry for the tools/list result."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": self.parameters,
                "required": list(self.required),
            },
        }


class StdioToolServer:
    """
    MCP server loop over stdin/stdout, one JSON-RPC message per line.

    Methods:
        initialize  protocol version, capabilities, server info
        ping        empty result
        tools/list  registered tool schemas
        tools/call  run a registered tool

    Notifications and client replies are read and ignored.
    """

    def __init__(self, name: str = "stdio-tools", version: str = "1.0.0", announce_ready: bool = True):
        self.name = name
        self.version = version
        self.announce_ready = announce_ready
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        handler.server = self
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self) -> None:
        """
        Main loop: read messages from stdin, dispatch, write replies to stdout.

        Returns when stdin reaches EOF (the bridge closed the pipe).
        """
        if self.announce_ready:
            self.log(f"{self.name} MCP Server running on stdio")

        for raw in sys.stdin.buffer:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue

            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                self._write_error(None, PARSE_ERROR, f"Parse error: {e}")
                continue
            if not isinstance(message, dict):
                self._write_error(None, INVALID_REQUEST, "Invalid Request")
                continue

            request_id = message.get("id")
            method = message.get("method")
            if method is None or request_id is None:
                # Notification, or a reply to something we never send
                continue

            try:
                result = self._dispatch(method, message.get("params") or {})
                self._write_result(request_id, result)
            except RpcError as e:
                self._write_error(request_id, e.code, str(e))
            except Exception as e:
                self._write_error(request_id, INTERNAL_ERROR, str(e))

    def notify(self, method: str, params: dict | None = None) -> None:
        """Send a server-initiated notification."""
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._write(message)

    def log(self, text: str) -> None:
        """Diagnostic output goes to stderr, never stdout."""
        sys.stderr.write(text + "\n")
        sys.stderr.flush()

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion", PROTOCOL_VERSION),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if not handler:
                raise RpcError(
                    INVALID_PARAMS,
                    f"Unknown tool: '{tool_name}'. Available: {list(self._handlers.keys())}",
                )
            return self._call_tool(handler, params.get("arguments") or {})

        raise RpcError(METHOD_NOT_FOUND, f"Method not found: '{method}'")

    def _call_tool(self, handler: ToolHandler, arguments: dict) -> dict:
        # Tool failures are results with isError, not protocol errors
        try:
            output = handler.handle(arguments)
        except Exception as e:
            return {"content": [{"type": "text", "text": str(e)}], "isError": True}

        text = output if isinstance(output, str) else json.dumps(output)
        return {"content": [{"type": "text", "text": text}], "isError": False}

    def _write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        self._write({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })

    def _write(self, message: dict) -> None:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()
