"""
Tool Server Manager — owns the single tool server process behind the bridge.

All HTTP clients share one process. The manager creates it lazily and makes
sure concurrent first callers end up with the same instance: the first call
starts the creation, later calls await that same in-flight creation.

Usage:
    manager = ToolServerManager(["npx", "--yes", "@modelcontextprotocol/server-gitlab"], env)

    # Forward a client request and get the matched reply
    reply = await manager.call(JsonRpcMessage(id=1, method="tools/list"))

    # Call a tool and get its result
    result = await manager.call_tool("get_file_contents", {"project": "group/app", "file_path": "README.md"})

    # Stop the process
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from mcp_bridge.bridge import DEFAULT_REQUEST_TIMEOUT, CorrelationBridge
from mcp_bridge.compat import reconcile_arguments
from mcp_bridge.config import BridgeConfig
from mcp_bridge.transport import (
    JsonRpcMessage,
    ProcessState,
    StdioTransport,
    Transport,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "gitlab-mcp-bridge", "version": "1.0.0"}

TransportFactory = Callable[[], Transport]


class ToolServerManager:
    """
    Manages the lifecycle of the wrapped MCP tool server.

    Responsibilities:
    - Create the process on first use (at most one at a time)
    - Recreate it on the next call after it exits or fails to start
    - Route requests and notifications through a CorrelationBridge
    - Graceful shutdown

    A fatal diagnostic from the process is logged but does not trigger a
    restart; the process is replaced only once it has actually exited.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        startup_timeout: float = 10.0,
        strict_readiness: bool = False,
        stop_grace: float = 5.0,
    ):
        """
        Args:
            command: Command to launch the tool server process
            env: Environment for the process
            transport_factory: Builds a fresh Transport; overrides command/env
            request_timeout: Default seconds to wait for a reply
        """
        if transport_factory is None:
            if not command:
                raise ValueError("Either command or transport_factory is required")
            transport_factory = lambda: StdioTransport(  # noqa: E731
                command,
                env,
                startup_timeout=startup_timeout,
                strict_readiness=strict_readiness,
                stop_grace=stop_grace,
            )

        self._factory = transport_factory
        self.request_timeout = request_timeout
        self.spawn_count = 0

        self._transport: Transport | None = None
        self._bridge: CorrelationBridge | None = None
        self._starting: asyncio.Future | None = None
        self._initialized_for: Transport | None = None

    @classmethod
    def from_config(cls, config: BridgeConfig) -> "ToolServerManager":
        return cls(
            config.server_command,
            config.child_env(),
            request_timeout=config.request_timeout,
            startup_timeout=config.startup_timeout,
            strict_readiness=config.strict_readiness,
            stop_grace=config.stop_grace,
        )

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def bridge(self) -> CorrelationBridge | None:
        return self._bridge

    @property
    def state(self) -> ProcessState:
        if self._starting is not None:
            return ProcessState.STARTING
        if self._transport is None:
            return ProcessState.ABSENT
        return self._transport.state

    def is_running(self) -> bool:
        return self._transport is not None and self._transport.is_running()

    async def get_or_create(self) -> Transport:
        """
        Return the running transport, starting one if needed.

        Concurrent callers share one creation. The in-flight marker is
        cleared when it settles either way, so a failed start can be
        retried by the next call.
        """
        transport, _ = await self._acquire()
        return transport

    async def _acquire(self) -> tuple[Transport, CorrelationBridge]:
        # The pair is returned together: another caller may retire the
        # instance before this one resumes
        transport, bridge = self._transport, self._bridge
        if transport is not None and bridge is not None and transport.is_running():
            return transport, bridge

        if self._starting is None:
            self._starting = asyncio.ensure_future(self._create())
            self._starting.add_done_callback(self._creation_settled)

        # shield: a caller giving up must not cancel the shared creation
        return await asyncio.shield(self._starting)

    async def call(self, message: JsonRpcMessage, timeout: float | None = None) -> JsonRpcMessage:
        """Forward a request and return the matched reply."""
        _, bridge = await self._acquire()
        return await bridge.call(message, timeout)

    async def notify(self, message: JsonRpcMessage) -> None:
        """Forward a message that expects no reply."""
        _, bridge = await self._acquire()
        await bridge.notify(message)

    async def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Call a method with a generated id and return its result."""
        _, bridge = await self._acquire()
        return await bridge.request(method, params, timeout)

    async def ensure_initialized(self) -> None:
        """
        Run the MCP initialize handshake once per process.

        Only needed when the manager itself acts as the client (tool
        discovery); HTTP clients perform their own handshake.
        """
        transport, bridge = await self._acquire()
        if self._initialized_for is transport:
            return
        await bridge.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        await bridge.notify(JsonRpcMessage(method="notifications/initialized"))
        self._initialized_for = transport

    async def list_tools(self) -> list[dict]:
        """Tool schemas advertised by the tool server."""
        result = await self.request("tools/list", {})
        return (result or {}).get("tools", [])

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """
        Call a tool on the tool server.

        Args:
            tool_name: Which tool to call
            arguments: Tool parameters (alternate names are reconciled)

        Returns:
            The tool result.
        """
        return await self.request(
            "tools/call",
            {"name": tool_name, "arguments": reconcile_arguments(arguments)},
        )

    async def stop(self) -> None:
        """Stop the tool server (waits for an in-flight start first)."""
        starting = self._starting
        if starting is not None:
            await asyncio.wait({starting})
        if self._transport is not None:
            await self._retire()
            logger.info("Tool server manager stopped")

    async def _create(self) -> tuple[Transport, CorrelationBridge]:
        if self._transport is not None:
            await self._retire()

        transport = self._factory()
        bridge = CorrelationBridge(transport, self.request_timeout)
        transport.subscribe("error", self._on_error)
        transport.subscribe("exit", self._on_exit)
        self.spawn_count += 1

        try:
            await transport.start()
        except BaseException:
            bridge.close()
            raise

        self._transport, self._bridge = transport, bridge
        logger.info(f"Tool server instance #{self.spawn_count} ready")
        return transport, bridge

    def _creation_settled(self, future: asyncio.Future) -> None:
        self._starting = None
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Tool server failed to start: {error}")

    async def _retire(self) -> None:
        transport, bridge = self._transport, self._bridge
        self._transport = self._bridge = None
        self._initialized_for = None
        if bridge is not None:
            bridge.close()
        await transport.stop()

    def _on_error(self, error: Exception) -> None:
        logger.error(f"Tool server error (not restarting): {error}")

    def _on_exit(self, exit_info: Any) -> None:
        logger.info(f"Tool server exited ({exit_info})")
