"""
Correlation bridge: matches tool server replies to the requests that caused them.

    caller ──call(request)──▶ pending[id] = future ──send──▶ transport
    caller ◀──── reply ────── pending.pop(id)     ◀─message── transport

Replies may come back in any order, so matching is by id only. An entry
is removed exactly once: by its reply, by its timeout, or when the process
exits. A reply whose entry is already gone (late, or a duplicate) is dropped.

Notifications take the fire-and-forget path (notify) and never touch the
pending table.

Usage:
    bridge = CorrelationBridge(transport, request_timeout=30.0)

    reply = await bridge.call(JsonRpcMessage(id=1, method="tools/list"))
    result = await bridge.request("tools/call", {"name": "echo", "arguments": {}})
    await bridge.notify(JsonRpcMessage(method="notifications/initialized"))
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any

from mcp_bridge.errors import (
    DuplicateRequestError,
    InvalidMessageError,
    JsonRpcError,
    ProcessExitedError,
    RequestTimeoutError,
)
from mcp_bridge.transport import JsonRpcMessage, ProcessExit, Transport

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0


def generate_request_id() -> str:
    """Timestamp plus random suffix, e.g. "req_1718000000000_9f2c4e1a07b3"."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class CorrelationBridge:
    """
    Request/reply correlation over one transport.

    One "message" listener and one "exit" listener are registered on the
    transport for the bridge's lifetime; per-request state lives in the
    pending table, so concurrent calls never add transport listeners.
    """

    def __init__(self, transport: Transport, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.transport = transport
        self.request_timeout = request_timeout
        self._pending: dict[Any, asyncio.Future] = {}
        self._unsubscribe = [
            transport.subscribe("message", self._on_message),
            transport.subscribe("exit", self._on_exit),
        ]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: Any) -> bool:
        return request_id in self._pending

    async def call(self, message: JsonRpcMessage, timeout: float | None = None) -> JsonRpcMessage:
        """
        Send a request and wait for the reply with the same id.

        Returns the reply message as-is (result or error payload).

        Raises:
            InvalidMessageError: the message is not a request
            DuplicateRequestError: the id is already outstanding
            RequestTimeoutError: no reply within the timeout
            ProcessExitedError: the process exited first
            NotRunningError: the transport is not accepting input
        """
        if not message.is_request:
            raise InvalidMessageError("call() needs a request with both an id and a method")

        request_id = message.id
        if request_id in self._pending:
            raise DuplicateRequestError(request_id)

        timeout = self.request_timeout if timeout is None else timeout
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.transport.send(message)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Request {request_id!r} ({message.method}) timed out after {timeout:g}s"
            )
            raise RequestTimeoutError(request_id, timeout) from None
        finally:
            if self._pending.get(request_id) is future:
                del self._pending[request_id]

    async def notify(self, message: JsonRpcMessage) -> None:
        """Send without waiting for anything (notifications, client replies)."""
        await self.transport.send(message)

    async def request(
        self,
        method: str,
        params: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Call a method with a generated id and return its result.

        Raises:
            JsonRpcError: the tool server answered with an error
        """
        reply = await self.call(
            JsonRpcMessage(id=generate_request_id(), method=method, params=params),
            timeout=timeout,
        )
        if reply.error is not None:
            raise JsonRpcError.from_payload(reply.error)
        return reply.result

    def close(self) -> None:
        """Detach from the transport and fail whatever is still pending."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._fail_pending("Correlation bridge closed")

    def _on_message(self, message: JsonRpcMessage) -> None:
        if not message.is_response:
            return
        future = self._pending.pop(message.id, None)
        if future is None:
            logger.debug(f"Dropping unmatched response id={message.id!r}")
            return
        if not future.done():
            future.set_result(message)

    def _on_exit(self, exit_info: ProcessExit) -> None:
        if self._pending:
            logger.warning(
                f"Tool server exited ({exit_info}) with {len(self._pending)} request(s) outstanding"
            )
        self._fail_pending(f"Tool server exited ({exit_info})")

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ProcessExitedError(reason))
