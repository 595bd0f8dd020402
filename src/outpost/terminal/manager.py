"""Terminal Session Manager: process-wide registry of live terminal sessions.

Sessions live in memory only and do not survive a restart. Each entry has
its own lock guarding the session's state; get/read/resize/close and idle
eviction all take it, so eviction can never race a concurrent operation on
the same session while different sessions proceed in parallel. Remote
command execution runs outside the entry lock, so output polling and
disconnects never queue behind a slow command.

The manager performs no authorization. Callers compare :meth:`owner`
against the authenticated user before touching a session id they were
handed.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from outpost.errors import ControlPlaneError
from outpost.terminal.transport import TerminalTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, str], Awaitable[TerminalTransport]]


@dataclass
class TerminalSession:
    session_id: str
    user_id: str
    sandbox_id: str
    transport: TerminalTransport
    created_at: float
    last_activity: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    @property
    def state(self) -> str:
        return "open" if not self.closed and self.transport.is_open else "closed"


class TerminalSessionManager:
    """Registry of open terminal sessions with idle eviction."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        idle_timeout: float = 1800.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport_factory = transport_factory
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: dict[str, TerminalSession] = {}
        self._running = False
        self._task: asyncio.Task | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="terminal-sweeper")
        logger.info(
            "Terminal sweeper started (idle_timeout=%ds, interval=%ds)",
            self.idle_timeout,
            self.sweep_interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        closed = await self.close_all()
        logger.info("Terminal sweeper stopped (%d session(s) closed)", closed)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.evict_idle()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Terminal sweep error")

    # ── Sessions ─────────────────────────────────────────────────────────

    async def open(self, user_id: str, sandbox_id: str, cols: int = 80, rows: int = 24) -> str:
        """Connect a new session to ``sandbox_id``. Transport errors propagate."""
        session_id = f"{user_id}-{secrets.token_urlsafe(12)}"
        transport = await self._transport_factory(user_id, sandbox_id)
        await transport.open(cols, rows)

        now = self._clock()
        self._sessions[session_id] = TerminalSession(
            session_id=session_id,
            user_id=user_id,
            sandbox_id=sandbox_id,
            transport=transport,
            created_at=now,
            last_activity=now,
        )
        logger.info("Opened terminal session %s on sandbox %s", session_id, sandbox_id)
        return session_id

    async def get(self, session_id: str) -> TerminalSession | None:
        """Look up a session and mark it active. None when absent or closed."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        async with session.lock:
            if session.closed:
                return None
            session.last_activity = self._clock()
            return session

    async def write(self, session_id: str, data: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        async with session.lock:
            if session.closed:
                return False
            session.last_activity = self._clock()

        try:
            await session.transport.write(data)
        except ControlPlaneError:
            # Closed underneath us.
            if session.closed:
                return False
            raise
        return True

    async def read_output(self, session_id: str, since: int = 0) -> tuple[str, int] | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        async with session.lock:
            if session.closed:
                return None
            session.last_activity = self._clock()
            return session.transport.output.read(since)

    async def resize(self, session_id: str, cols: int, rows: int) -> bool:
        """Forward a resize when the transport supports it. False if no such session."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        async with session.lock:
            if session.closed:
                return False
            session.last_activity = self._clock()
            if session.transport.supports_resize:
                await session.transport.resize(cols, rows)
            return True

    async def close(self, session_id: str) -> bool:
        """Close and forget a session. Closing twice is a no-op returning False."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        async with session.lock:
            if session.closed:
                return False
            session.closed = True
            await self._close_transport(session)
        logger.info("Closed terminal session %s", session_id)
        return True

    async def _close_transport(self, session: TerminalSession) -> None:
        try:
            await session.transport.close()
        except Exception as exc:
            logger.warning("Error closing transport for %s: %s", session.session_id, exc)

    async def close_all(self) -> int:
        results = await asyncio.gather(*(self.close(sid) for sid in list(self._sessions)))
        return sum(results)

    async def cleanup_user_sessions(self, user_id: str) -> int:
        """Close every session belonging to ``user_id``."""
        results = await asyncio.gather(*(self.close(sid) for sid in self.list_sessions(user_id)))
        return sum(results)

    def list_sessions(self, user_id: str | None = None) -> list[str]:
        if user_id is None:
            return list(self._sessions)
        return [sid for sid, s in self._sessions.items() if s.user_id == user_id]

    def owner(self, session_id: str) -> str | None:
        """The user a live session was opened for. No locking, no activity refresh."""
        session = self._sessions.get(session_id)
        return session.user_id if session is not None else None

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Eviction ─────────────────────────────────────────────────────────

    def _evictable(self, session: TerminalSession, now: float) -> bool:
        return not session.transport.is_open or now - session.last_activity >= self.idle_timeout

    async def evict_idle(self) -> list[str]:
        """Close sessions idle past the timeout or whose transport has died."""
        evicted: list[str] = []
        for session_id, session in list(self._sessions.items()):
            if not self._evictable(session, self._clock()):
                continue
            async with session.lock:
                # Re-check under the lock: a get() may have just touched it.
                if session.closed or not self._evictable(session, self._clock()):
                    continue
                session.closed = True
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]
                await self._close_transport(session)
            evicted.append(session_id)

        if evicted:
            logger.info("Evicted %d idle terminal session(s)", len(evicted))
        return evicted
