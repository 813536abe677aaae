"""Session Store — per-call state shared by every webhook for that call.

Each call id gets one ``CallSession`` plus one ``asyncio.Lock``.  Handlers
read, decide and write the next state inside ``transaction()``, so racing
webhook deliveries for the same call apply their transitions one at a time
while different calls never wait on each other::

    async with store.transaction(call_sid, create=True, caller=from_) as session:
        session.advance(CallState.LISTENING)

Lifecycle: created by the call-answer webhook, removed when a transaction
leaves the session in END, when the status callback reports the call over,
or by the idle sweeper.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from receptionist.models.call import CallSession

log = logging.getLogger("receptionist.session")


def redact_pii(value: str) -> str:
    """Mask PII for logging — show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionStore:
    """Concurrency-safe map of call id → CallSession with per-key locking."""

    def __init__(self, ttl_seconds: float = 3600) -> None:
        self._ttl = ttl_seconds
        self._sessions: dict[str, CallSession] = {}
        self._locks: dict[str, _KeyLock] = {}

    # ── Locking ────────────────────────────────────────────────

    def _acquire_entry(self, call_sid: str) -> _KeyLock:
        entry = self._locks.get(call_sid)
        if entry is None:
            entry = self._locks[call_sid] = _KeyLock()
        entry.users += 1
        return entry

    def _release_entry(self, call_sid: str, entry: _KeyLock) -> None:
        entry.users -= 1
        if entry.users == 0 and self._locks.get(call_sid) is entry:
            del self._locks[call_sid]

    @asynccontextmanager
    async def transaction(
        self,
        call_sid: str,
        create: bool = False,
        caller: str = "",
        business: str = "",
    ) -> AsyncIterator[Optional[CallSession]]:
        """Hold the call's lock and yield its session.

        Yields None when no session exists and ``create`` is false.
        A session left in END when the block exits is removed.
        """
        entry = self._acquire_entry(call_sid)
        try:
            async with entry.lock:
                session = self._sessions.get(call_sid)
                if session is None and create:
                    session = CallSession(call_sid=call_sid, caller=caller, business=business)
                    self._sessions[call_sid] = session
                    log.info(
                        "Session created: %s caller=%s",
                        call_sid, redact_pii(caller),
                    )
                try:
                    yield session
                finally:
                    if session is not None:
                        session.updated_at = time.time()
                        if session.is_ended and self._sessions.get(call_sid) is session:
                            del self._sessions[call_sid]
                            log.info("Session ended: %s", call_sid)
        finally:
            self._release_entry(call_sid, entry)

    # ── Lookup ─────────────────────────────────────────────────

    def get(self, call_sid: str) -> Optional[CallSession]:
        """Unlocked read, for logging and debug views only."""
        return self._sessions.get(call_sid)

    def active(self) -> list[CallSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._sessions

    async def remove(self, call_sid: str) -> Optional[CallSession]:
        """Discard a session, waiting for any in-flight transaction on it."""
        entry = self._acquire_entry(call_sid)
        try:
            async with entry.lock:
                session = self._sessions.pop(call_sid, None)
        finally:
            self._release_entry(call_sid, entry)
        if session is not None:
            log.info("Session removed: %s (state=%s)", call_sid, session.state.value)
        return session

    # ── Expiry ─────────────────────────────────────────────────

    async def expire_stale(self, now: Optional[float] = None) -> list[str]:
        """Remove sessions idle for longer than the TTL; returns their ids."""
        now = time.time() if now is None else now
        stale = [
            sid for sid, s in self._sessions.items()
            if now - s.updated_at > self._ttl
        ]
        for sid in stale:
            await self.remove(sid)
        if stale:
            log.info("Expired %d idle session(s)", len(stale))
        return stale

    async def run_sweeper(self, interval: float = 60.0) -> None:
        """Background loop calling ``expire_stale`` until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_stale()
            except Exception:
                log.exception("Session sweep failed")
