"""Error types raised by the bridge."""

from __future__ import annotations

from typing import Any


class BridgeError(RuntimeError):
    """Base class for bridge failures."""


class SpawnError(BridgeError):
    """The tool server process could not be launched."""


class StartupError(BridgeError):
    """The tool server process did not become ready."""


class NotRunningError(BridgeError):
    """A message was sent while the process was not accepting input."""


class ProcessExitedError(BridgeError):
    """The process exited while a request was outstanding."""


class RequestTimeoutError(BridgeError):
    """No reply arrived for a request within its timeout."""

    def __init__(self, request_id: Any, timeout: float):
        super().__init__(f"Request {request_id!r} timed out after {timeout:g}s")
        self.request_id = request_id
        self.timeout = timeout


class DuplicateRequestError(BridgeError):
    """A request id is already awaiting a reply."""

    def __init__(self, request_id: Any):
        super().__init__(f"Request id {request_id!r} is already outstanding")
        self.request_id = request_id


class JsonRpcError(BridgeError):
    """An error reply returned by the tool server."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"MCP error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_payload(cls, error: dict) -> "JsonRpcError":
        return cls(
            code=error.get("code", -32603),
            message=error.get("message", "Unknown error"),
            data=error.get("data"),
        )


class InvalidMessageError(ValueError):
    """A value is not a valid JSON-RPC message."""


class ConfigError(ValueError):
    """Required configuration is missing or malformed."""
