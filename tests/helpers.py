"""Shared test doubles."""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Callable

from mcp_bridge.errors import NotRunningError
from mcp_bridge.transport import JsonRpcMessage, ProcessExit, ProcessState, Transport

ECHO_SERVER = [sys.executable, "-m", "mcp_bridge.servers.echo"]

Responder = Callable[[JsonRpcMessage], list]


def echo_responder(message: JsonRpcMessage) -> list:
    """Reply to every request with its method and params."""
    if not message.is_request:
        return []
    return [JsonRpcMessage(id=message.id, result={"method": message.method, "params": message.params})]


class FakeTransport(Transport):
    """
    In-memory transport.

    Sent messages are recorded in `sent`. Replies come from `responder`
    (delivered on the next loop iteration) or are injected with emit().
    """

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        start_delay: float = 0.0,
        start_error: Exception | None = None,
        reply_delay: float = 0.0,
    ):
        super().__init__()
        self.responder = responder
        self.reply_delay = reply_delay
        self.start_delay = start_delay
        self.start_error = start_error
        self.sent: list[JsonRpcMessage] = []
        self.start_calls = 0
        self._state = ProcessState.ABSENT

    @property
    def state(self) -> ProcessState:
        return self._state

    def is_running(self) -> bool:
        return self._state is ProcessState.READY

    async def start(self) -> None:
        self.start_calls += 1
        self._state = ProcessState.STARTING
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            self._state = ProcessState.EXITED
            raise self.start_error
        self._state = ProcessState.READY

    async def send(self, message: Any) -> None:
        if not self.is_running():
            raise NotRunningError("fake transport is not running")
        if not isinstance(message, JsonRpcMessage):
            message = JsonRpcMessage.from_dict(dict(message))
        self.sent.append(message)
        if self.responder is not None:
            loop = asyncio.get_running_loop()
            for reply in self.responder(message):
                loop.call_later(self.reply_delay, self.emit, reply)

    async def stop(self) -> None:
        if self._state is not ProcessState.EXITED:
            self.exit(code=0)

    def emit(self, message: JsonRpcMessage | dict) -> None:
        if isinstance(message, dict):
            message = JsonRpcMessage.from_dict(message)
        self.events.emit("message", message)

    def fail(self, error: Exception) -> None:
        self.events.emit("error", error)

    def exit(self, code: int | None = 1) -> None:
        self._state = ProcessState.EXITED
        self.events.emit("exit", ProcessExit(code=code))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Spin the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)
