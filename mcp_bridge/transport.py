"""
Transport layer for talking to a stdio MCP tool server.

Contents:
  - JsonRpcMessage: one request, response or notification
  - LineCodec: newline-delimited JSON framing with carry-over buffering
  - classify_diagnostic: the stderr allow-list (ready / info / warning / fatal)
  - Transport: abstract process transport
  - StdioTransport: asyncio subprocess implementation (the process supervisor)

Only the transport reads the child's stdout/stderr or writes its stdin.
Everything else goes through send() and the event fan-out.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from signal import Signals
from typing import Any, Callable, Mapping

from mcp_bridge.errors import (
    BridgeError,
    InvalidMessageError,
    NotRunningError,
    SpawnError,
    StartupError,
)
from mcp_bridge.events import EventFanout

logger = logging.getLogger(__name__)

# stderr is read line by line; allow long stack traces
_STREAM_LIMIT = 1024 * 1024
_READ_CHUNK = 64 * 1024


@dataclass
class JsonRpcMessage:
    """
    JSON-RPC 2.0 message.

    - request:      id and method, expects exactly one reply
    - notification: method, no id, no reply
    - response:     id (possibly null) and result or error, no method
    """
    id: int | str | None = None
    method: str | None = None
    params: Any = None
    result: Any = None
    error: dict | None = None
    jsonrpc: str = "2.0"

    @property
    def is_request(self) -> bool:
        return self.method is not None and self.id is not None

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None

    @property
    def is_response(self) -> bool:
        return self.method is None and (self.id is not None or self.error is not None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.id is not None or self.method is None:
            data["id"] = self.id
        if self.method is not None:
            data["method"] = self.method
        if self.params is not None:
            data["params"] = self.params
        if self.error is not None:
            data["error"] = self.error
        elif self.method is None:
            data["result"] = self.result
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> "JsonRpcMessage":
        if not isinstance(data, dict):
            raise InvalidMessageError("JSON-RPC message must be an object")

        method = data.get("method")
        if method is not None and not isinstance(method, str):
            raise InvalidMessageError("'method' must be a string")

        msg_id = data.get("id")
        if isinstance(msg_id, bool) or not isinstance(msg_id, (int, float, str, type(None))):
            raise InvalidMessageError("'id' must be a string or a number")

        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            raise InvalidMessageError("'error' must be an object")

        return cls(
            id=msg_id,
            method=method,
            params=data.get("params"),
            result=data.get("result"),
            error=error,
            jsonrpc=data.get("jsonrpc", "2.0"),
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcMessage":
        return cls.from_dict(json.loads(data))


class LineCodec:
    """
    Newline-delimited JSON framing.

    feed() accepts arbitrary chunks: complete lines are parsed, the trailing
    partial line is carried over to the next call. Lines that are not JSON
    objects are dropped, since some tool servers print log text on stdout.
    """

    def __init__(self):
        self._buffer = b""

    @staticmethod
    def encode(message: JsonRpcMessage | Mapping[str, Any]) -> bytes:
        if isinstance(message, JsonRpcMessage):
            line = message.to_json()
        else:
            line = json.dumps(dict(message), separators=(",", ":"), ensure_ascii=False)
        return (line + "\n").encode("utf-8")

    def feed(self, chunk: bytes | str) -> list[JsonRpcMessage]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return [m for m in map(self._parse, lines) if m is not None]

    def flush(self) -> list[JsonRpcMessage]:
        """Parse whatever is left in the buffer (call at end of stream)."""
        line, self._buffer = self._buffer, b""
        message = self._parse(line)
        return [message] if message is not None else []

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    @staticmethod
    def _parse(raw: bytes) -> JsonRpcMessage | None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None
        try:
            return JsonRpcMessage.from_dict(json.loads(line))
        except (json.JSONDecodeError, InvalidMessageError):
            logger.debug(f"Dropping non-protocol line: {line[:200]}")
            return None


class Diagnostic(str, Enum):
    READY = "ready"
    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


# Keep the fatal list short: a false positive fails every in-flight caller.
FATAL_PHRASES = (
    "cannot find module",
    "uncaught exception",
    "unhandled promise rejection",
    "unhandledpromiserejection",
    "fatal error",
    "traceback (most recent call last)",
    "segmentation fault",
)
READY_PHRASES = ("running on stdio", "server started", "ready to accept")
WARNING_PHRASES = ("warn", "deprecat")


def classify_diagnostic(line: str) -> Diagnostic:
    """Classify one line of tool server stderr output."""
    text = line.lower()
    if any(phrase in text for phrase in FATAL_PHRASES):
        return Diagnostic.FATAL
    if any(phrase in text for phrase in READY_PHRASES):
        return Diagnostic.READY
    if any(phrase in text for phrase in WARNING_PHRASES):
        return Diagnostic.WARNING
    return Diagnostic.INFO


class ProcessState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    READY = "ready"
    EXITED = "exited"


@dataclass(frozen=True)
class ProcessExit:
    """Payload of the "exit" event."""
    code: int | None
    signal: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> "ProcessExit":
        if returncode is not None and returncode < 0:
            try:
                name = Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            return cls(code=None, signal=name)
        return cls(code=returncode)

    def __str__(self) -> str:
        return f"code={self.code}, signal={self.signal}"


class Transport(ABC):
    """Abstract transport to a tool server process."""

    def __init__(self):
        self.events = EventFanout()

    def subscribe(self, event: str, listener: Callable[[Any], None]) -> Callable[[], None]:
        """Subscribe to "message", "error" or "exit". Returns the unsubscribe callable."""
        return self.events.subscribe(event, listener)

    @property
    @abstractmethod
    def state(self) -> ProcessState:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Launch the process and wait until it accepts input."""
        ...

    @abstractmethod
    async def send(self, message: JsonRpcMessage | Mapping[str, Any]) -> None:
        """Write one message to the process."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the process and wait for it to exit."""
        ...

    @abstractmethod
    def is_running(self) -> bool:
        """True while the process is ready and has not exited."""
        ...


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    This is MCP's native local transport. The tool server runs as a child
    process; we write requests to its stdin, decode its stdout with a
    LineCodec and classify its stderr. One line = one message.

    Readiness is the first READY line on stderr. If none arrives within
    startup_timeout the process is assumed ready (some servers never print
    one) unless strict_readiness is set.
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        *,
        startup_timeout: float = 10.0,
        strict_readiness: bool = False,
        stop_grace: float = 5.0,
        cwd: str | None = None,
    ):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["npx", "--yes", "@modelcontextprotocol/server-gitlab"]
            env: Environment for the subprocess (None inherits ours).
            startup_timeout: Seconds to wait for a readiness line.
            strict_readiness: Fail start() instead of assuming readiness.
            stop_grace: Seconds between SIGTERM and SIGKILL in stop().
        """
        super().__init__()
        self.command = command
        self.env = env
        self.cwd = cwd
        self.startup_timeout = startup_timeout
        self.strict_readiness = strict_readiness
        self.stop_grace = stop_grace
        self.exit_info: ProcessExit | None = None

        self._process: asyncio.subprocess.Process | None = None
        self._state = ProcessState.ABSENT
        self._codec = LineCodec()
        self._ready: asyncio.Event | None = None
        self._exited: asyncio.Event | None = None
        self._readers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._write_lock: asyncio.Lock | None = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def is_running(self) -> bool:
        return (
            self._state is ProcessState.READY
            and self._process is not None
            and self._process.returncode is None
        )

    async def start(self) -> None:
        """Launch the tool server subprocess and wait for readiness."""
        if self._state is not ProcessState.ABSENT:
            raise BridgeError(f"Transport already used (state: {self._state.value})")

        logger.info(f"Starting stdio transport: {' '.join(self.command)}")
        self._state = ProcessState.STARTING
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()
        self._write_lock = asyncio.Lock()

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            self._state = ProcessState.EXITED
            self._exited.set()
            error = SpawnError(f"Failed to launch {self.command[0]!r}: {e}")
            logger.error(str(error))
            self.events.emit("error", error)
            raise error from e

        self._readers = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        self._watcher = asyncio.create_task(self._watch_exit())

        ready = asyncio.create_task(self._ready.wait())
        exited = asyncio.create_task(self._exited.wait())
        _, pending = await asyncio.wait(
            {ready, exited},
            timeout=self.startup_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()

        if self._state is ProcessState.EXITED:
            raise StartupError(f"Tool server exited during startup ({self.exit_info})")

        if not self._ready.is_set():
            if self.strict_readiness:
                await self.stop()
                raise StartupError(
                    f"No readiness signal from tool server within {self.startup_timeout:g}s"
                )
            logger.warning(
                f"No readiness signal within {self.startup_timeout:g}s, assuming ready"
            )

        self._state = ProcessState.READY
        logger.info(f"Tool server ready (pid {self._process.pid})")

    async def send(self, message: JsonRpcMessage | Mapping[str, Any]) -> None:
        """Write one encoded message to the process's stdin."""
        if not self.is_running():
            raise NotRunningError("Tool server is not running. Call start() first.")

        stdin = self._process.stdin
        try:
            # drain() must not have concurrent waiters
            async with self._write_lock:
                stdin.write(self._codec.encode(message))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NotRunningError(f"Tool server stdin closed: {e}") from e

    async def stop(self) -> None:
        """Terminate the tool server, escalating to SIGKILL after stop_grace."""
        process = self._process
        if process is None or self._state is ProcessState.EXITED:
            return

        logger.info(f"Stopping tool server (pid {process.pid})")
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        try:
            process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Tool server did not exit within {self.stop_grace:g}s, killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._exited.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                # Pipes held open by a grandchild; the child itself is gone
                self._finalize(process.returncode)

        for task in [*self._readers, self._watcher]:
            if task is not None and not task.done():
                task.cancel()
        logger.info("Stdio transport stopped")

    async def _read_stdout(self) -> None:
        stream = self._process.stdout
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            for message in self._codec.feed(chunk):
                self.events.emit("message", message)
        for message in self._codec.flush():
            self.events.emit("message", message)

    async def _read_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit
                logger.warning("Discarding oversized stderr line from tool server")
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._handle_diagnostic(line)

    def _handle_diagnostic(self, line: str) -> None:
        kind = classify_diagnostic(line)
        if kind is Diagnostic.READY:
            logger.info(f"[tool server] {line}")
            self._ready.set()
        elif kind is Diagnostic.WARNING:
            logger.warning(f"[tool server] {line}")
        elif kind is Diagnostic.FATAL:
            logger.error(f"[tool server] {line}")
            self.events.emit("error", BridgeError(f"Tool server reported a fatal error: {line}"))
        else:
            logger.info(f"[tool server] {line}")

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        # Let the readers deliver trailing output before announcing the exit
        await asyncio.wait(self._readers, timeout=1.0)
        self._finalize(returncode)

    def _finalize(self, returncode: int | None) -> None:
        if self._state is ProcessState.EXITED:
            return
        self._state = ProcessState.EXITED
        self.exit_info = ProcessExit.from_returncode(returncode)
        logger.info(f"Tool server exited ({self.exit_info})")
        self._exited.set()
        self.events.emit("exit", self.exit_info)
