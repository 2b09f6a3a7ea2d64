"""
Client sessions: one per open SSE stream.

Each session owns the queue its stream drains, so the registry can end a
stream (staleness reaping, shutdown) by closing the session.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 60 * 60.0
# Events buffered for a stream that is not being read
SESSION_QUEUE_LIMIT = 1000
CLOSE = "close"


@dataclass
class ClientSession:
    id: str
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    queue: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=SESSION_QUEUE_LIMIT), repr=False
    )
    closed: bool = False

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def push(self, event: str, data: Any) -> None:
        """Queue an SSE event for this session's stream."""
        if self.closed:
            return
        self.touch()
        try:
            self.queue.put_nowait((event, data))
        except asyncio.QueueFull:
            logger.warning(f"[Session {self.id}] Stream not draining, closing")
            self.close("Stream backlog limit reached")

    def close(self, reason: str) -> None:
        """Ask the stream to send a final "disconnected" event and end."""
        if self.closed:
            return
        self.closed = True
        if self.queue.full():
            # The reader is stalled; its backlog is dropped so the close marker fits
            while not self.queue.empty():
                self.queue.get_nowait()
        self.queue.put_nowait((CLOSE, reason))


class SessionRegistry:
    """Active client sessions, with an inactivity sweep."""

    def __init__(self, ttl: float = DEFAULT_SESSION_TTL):
        self.ttl = ttl
        self._sessions: dict[str, ClientSession] = {}

    def create(self) -> ClientSession:
        session = ClientSession(id=secrets.token_hex(16))
        self._sessions[session.id] = session
        logger.info(f"[Session {session.id}] Created")
        return session

    def get(self, session_id: str) -> ClientSession | None:
        return self._sessions.get(session_id)

    def touch(self, session_id: str) -> bool:
        """Record activity. Returns False for unknown sessions."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.touch()
        return True

    def destroy(self, session_id: str, reason: str = "Session closed") -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close(reason)
        logger.info(f"[Session {session_id}] Destroyed ({reason})")
        return True

    def reap_stale(self, now: float | None = None) -> list[str]:
        """Destroy sessions idle for longer than ttl. Returns their ids."""
        now = time.monotonic() if now is None else now
        stale = [
            sid for sid, session in self._sessions.items()
            if now - session.last_activity > self.ttl
        ]
        for sid in stale:
            self.destroy(sid, reason="Session expired")
        return stale

    def close_all(self, reason: str = "Server shutting down") -> None:
        for sid in list(self._sessions):
            self.destroy(sid, reason=reason)

    def count(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def sweep_forever(self, interval: float) -> None:
        """Reap stale sessions every `interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            reaped = self.reap_stale()
            if reaped:
                logger.info(f"Reaped {len(reaped)} stale session(s)")
