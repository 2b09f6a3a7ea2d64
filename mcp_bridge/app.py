"""
HTTP/SSE front for the tool server.

Routes:
    GET  /health        liveness and process state (no auth)
    GET  /sse           event stream: "endpoint", then server-initiated messages
    POST /sse/messages  one JSON-RPC message per call (alias: POST /messages)

Replies to client requests are returned in the POST response body and never
on the stream (REPLY_DELIVERY). The stream carries only what the process
sends on its own (notifications and server-initiated requests), one
session-info message after "endpoint", and "error"/"disconnected" events
about the process itself.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from mcp_bridge import __version__
from mcp_bridge.bridge import generate_request_id
from mcp_bridge.compat import reconcile_tool_call
from mcp_bridge.config import BridgeConfig
from mcp_bridge.errors import (
    BridgeError,
    DuplicateRequestError,
    InvalidMessageError,
    RequestTimeoutError,
)
from mcp_bridge.manager import ToolServerManager
from mcp_bridge.sessions import CLOSE, SessionRegistry
from mcp_bridge.transport import JsonRpcMessage

logger = logging.getLogger(__name__)

SERVICE_NAME = "gitlab-mcp-bridge"

# Which convention the remote client expects for replies. Fixed per
# deployment: "response-body" (POST returns the reply) is the only one
# this service speaks; mixing it with stream delivery duplicates replies.
REPLY_DELIVERY = "response-body"

# JSON-RPC error codes used by the front
INVALID_REQUEST = -32600
SERVER_UNAVAILABLE = -32000
REQUEST_TIMED_OUT = -32001


def format_sse(event: str, data: Any) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n"


async def stream_events(
    manager: ToolServerManager,
    sessions: SessionRegistry,
    endpoint: str,
    keepalive: float = 15.0,
) -> AsyncIterator[str]:
    """
    Body of one SSE connection.

    Ends when the process exits, the session is reaped, or the client goes
    away (Starlette cancels the generator; the finally block cleans up).
    """
    try:
        transport = await manager.get_or_create()
    except BridgeError as e:
        logger.error(f"[SSE] Failed to start tool server: {e}")
        yield format_sse("error", {"error": "Failed to start MCP server", "details": str(e)})
        return

    session = sessions.create()

    def relay(message: JsonRpcMessage) -> None:
        # Responses go back through the POST that asked for them
        if not message.is_response:
            session.push("message", message.to_dict())

    unsubscribes = [
        transport.subscribe("message", relay),
        transport.subscribe("error", lambda error: session.push("error", {"error": str(error)})),
        transport.subscribe("exit", lambda _exit: session.close("Server process exited")),
    ]
    if not transport.is_running():
        session.close("Server process exited")

    try:
        yield format_sse("endpoint", f"{endpoint}?session_id={session.id}")
        # Session info for envelope-style clients; sent by the bridge, not a reply
        yield format_sse("message", {
            "jsonrpc": "2.0",
            "id": None,
            "result": {"sessionId": session.id, "capabilities": {}},
        })
        while True:
            try:
                event, data = await asyncio.wait_for(session.queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event == CLOSE:
                yield format_sse("disconnected", {"reason": data})
                break
            yield format_sse(event, data)
    finally:
        for unsubscribe in unsubscribes:
            unsubscribe()
        sessions.destroy(session.id, reason="Stream closed")


def scoped_request_id(session_id: str | None, request_id: Any) -> str:
    """
    Id the tool server sees for a client request.

    All clients share one process, and each numbers its own requests, so
    ids are namespaced by session. Requests without a session get a fresh
    id. The client's own id is restored on the reply.
    """
    if session_id is None:
        return generate_request_id()
    return f"{session_id}:{request_id!r}"


def _authorize(request: Request, secret: str) -> JSONResponse | None:
    """Bearer token check; returns the 401 response, or None when allowed."""
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Unauthorized", "message": "Missing or invalid Authorization header"},
            status_code=401,
        )
    if not hmac.compare_digest(header[7:].encode("utf-8"), secret.encode("utf-8")):
        return JSONResponse(
            {"error": "Unauthorized", "message": "Invalid authentication token"},
            status_code=401,
        )
    return None


def _bad_request(message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": "Bad Request", "message": message, **extra}, status_code=400)


def _rpc_error(request_id: Any, code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


class RequestLogMiddleware:
    """
    Logs method, path, status and duration of each HTTP request.

    Pure ASGI so the long-lived /sse responses stream untouched.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status = 500

        async def send_wrapper(message):
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed = (time.perf_counter() - started) * 1000
            logger.info(f"{scope['method']} {scope['path']} -> {status} ({elapsed:.1f} ms)")


def create_app(
    config: BridgeConfig,
    manager: ToolServerManager | None = None,
    sessions: SessionRegistry | None = None,
) -> Starlette:
    """Build the ASGI app. manager/sessions can be injected (tests)."""
    manager = manager or ToolServerManager.from_config(config)
    sessions = sessions or SessionRegistry(ttl=config.session_ttl)

    async def health(request: Request) -> Response:
        return JSONResponse({
            "status": "ok",
            "service": SERVICE_NAME,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "activeSessions": sessions.count(),
            "process": manager.state.value,
            "ready": manager.is_running(),
            "replyDelivery": REPLY_DELIVERY,
        })

    async def sse(request: Request) -> Response:
        denied = _authorize(request, config.auth_secret)
        if denied is not None:
            return denied

        logger.info("[SSE] New connection")
        return StreamingResponse(
            stream_events(manager, sessions, str(request.url_for("messages")), config.sse_keepalive),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def messages(request: Request) -> Response:
        denied = _authorize(request, config.auth_secret)
        if denied is not None:
            return denied

        try:
            body = await request.json()
        except ValueError:
            return _bad_request("Request body must be valid JSON")

        session_id = request.query_params.get("session_id") or request.query_params.get("sessionId")
        payload = body
        # Envelope form: {"sessionId": ..., "message": {...}}
        if isinstance(body, dict) and "message" in body and "jsonrpc" not in body:
            session_id = body.get("sessionId") or session_id
            payload = body["message"]

        if session_id is not None and not sessions.touch(session_id):
            return JSONResponse(
                {"error": "Not Found", "message": f"Session {session_id} not found or expired"},
                status_code=404,
            )

        if not isinstance(payload, dict) or payload.get("jsonrpc") != "2.0":
            return _bad_request("Invalid MCP message format (missing or invalid jsonrpc field)")
        try:
            message = JsonRpcMessage.from_dict(payload)
        except InvalidMessageError as e:
            return _bad_request(str(e))
        if message.method is None and not message.is_response:
            return _bad_request("Message has neither a method nor an id")

        message = reconcile_tool_call(message)
        logger.info(f"[POST] Forwarding {message.method or 'response'} (id={message.id!r})")

        try:
            if not message.is_request:
                await manager.notify(message)
                return JSONResponse({"status": "accepted"}, status_code=202)
            outbound = dataclasses.replace(message, id=scoped_request_id(session_id, message.id))
            reply = await manager.call(outbound)
        except DuplicateRequestError:
            return _rpc_error(
                message.id, INVALID_REQUEST, f"Request id {message.id!r} is already outstanding", 409
            )
        except RequestTimeoutError as e:
            return _rpc_error(message.id, REQUEST_TIMED_OUT, str(e), 504)
        except BridgeError as e:
            logger.error(f"[POST] Tool server unavailable: {e}")
            return _rpc_error(message.id, SERVER_UNAVAILABLE, f"MCP server unavailable: {e}", 503)

        return JSONResponse({**reply.to_dict(), "id": message.id})

    async def server_error(request: Request, exc: Exception) -> Response:
        logger.exception(f"[Server Error] {request.method} {request.url.path}")
        return JSONResponse(
            {"error": "Internal Server Error", "message": str(exc)},
            status_code=500,
        )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        sweeper = asyncio.create_task(sessions.sweep_forever(config.session_sweep_interval))
        logger.info(f"{SERVICE_NAME} {__version__} started (reply delivery: {REPLY_DELIVERY})")
        try:
            yield
        finally:
            sweeper.cancel()
            sessions.close_all()
            await manager.stop()

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/sse", sse, methods=["GET"]),
            Route("/sse/messages", messages, methods=["POST"], name="messages"),
            Route("/messages", messages, methods=["POST"], name="messages_alias"),
        ],
        middleware=[
            Middleware(RequestLogMiddleware),
            Middleware(
                CORSMiddleware,
                allow_origins=config.cors_allow_origins,
                allow_methods=["GET", "POST", "OPTIONS"],
                allow_headers=["Authorization", "Content-Type"],
            ),
        ],
        exception_handlers={Exception: server_error},
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.manager = manager
    app.state.sessions = sessions
    return app
