from __future__ import annotations

import asyncio
import contextlib
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from gatekeeper.logging import get_logger
from gatekeeper.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)

SESSION_ID_PREFIX = "session_"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def login_millis(login_time: datetime) -> int:
    """Milliseconds since the epoch for a login instant (naive values are UTC)."""

    if login_time.tzinfo is None:
        login_time = login_time.replace(tzinfo=timezone.utc)
    return (login_time - _EPOCH) // timedelta(milliseconds=1)


def derive_session_id(user_id: str, login_time: datetime) -> str:
    """Build the session identifier shared by login-time registration and log replay.

    The format is ``session_<userId>_<loginTimestampMillis>``.
    """

    return f"{SESSION_ID_PREFIX}{user_id}_{login_millis(login_time)}"


def parse_session_id(session_id: str) -> Optional[Tuple[str, int]]:
    """Split a derived session id into ``(user_id, login_millis)``.

    User ids may contain underscores, so the timestamp is taken from the last
    separator. Returns None for anything that is not a derived id.
    """

    if not session_id or not session_id.startswith(SESSION_ID_PREFIX):
        return None
    user_id, sep, millis = session_id[len(SESSION_ID_PREFIX):].rpartition("_")
    if not sep or not user_id or not millis.isdigit():
        return None
    return user_id, int(millis)


class SessionTracker:
    """Process-local registry of active sessions.

    Every structural change happens under one lock; the durable activity log
    remains the source of truth and is replayed into this tracker by
    reconciliation.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def add(self, session_id: str, record: SessionRecord) -> SessionRecord:
        stored = replace(record, session_id=session_id)
        with self._lock:
            self._sessions[session_id] = stored
        logger.info("session_added", session_id=session_id, user_id=stored.user_id)
        return stored

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    def touch(self, session_id: str, when: Optional[datetime] = None) -> bool:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return False
            self._sessions[session_id] = replace(record, last_activity=when or utcnow(), status="active")
            return True

    def remove(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed:
            logger.info("session_removed", session_id=session_id, user_id=removed.user_id)
        return removed is not None

    def remove_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [sid for sid, rec in self._sessions.items() if rec.user_id == user_id]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.info("user_sessions_removed", user_id=user_id, count=len(doomed))
        return len(doomed)

    def find_by_user(self, user_id: str) -> List[SessionRecord]:
        with self._lock:
            return [rec for rec in self._sessions.values() if rec.user_id == user_id]

    def all(self) -> List[SessionRecord]:
        with self._lock:
            return list(self._sessions.values())

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def replace_all(self, records: Iterable[SessionRecord]) -> None:
        """Swap the whole registry for ``records`` in one step."""

        fresh = {rec.session_id: rec for rec in records}
        with self._lock:
            self._sessions = fresh

    def sweep_expired(self, max_age_hours: float, *, now: Optional[datetime] = None) -> List[str]:
        """Evict sessions idle for longer than ``max_age_hours``; return their ids."""

        cutoff = (now or utcnow()) - timedelta(hours=max_age_hours)
        with self._lock:
            expired = [sid for sid, rec in self._sessions.items() if rec.last_activity < cutoff]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info("sessions_swept", count=len(expired))
        return expired


class SessionSweeper:
    """Periodic idle-session eviction, started and cancelled by the app lifespan."""

    def __init__(self, tracker: SessionTracker, *, interval_seconds: float, max_age_hours: float) -> None:
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self.max_age_hours = max_age_hours
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.tracker.sweep_expired(self.max_age_hours)
            except Exception as exc:
                # Keep the loop alive; a failed sweep is retried next tick
                logger.error("session_sweep_failed", error=str(exc))

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
