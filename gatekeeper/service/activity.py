from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.storage.models import (
    SUSPICIOUS_ACTIONS,
    SYSTEM_ADMIN_ID,
    ActivityAction,
    ActivityEntry,
    utcnow,
)

logger = get_logger(__name__)


class ActivityStore(Protocol):
    def append_activity(self, entry: ActivityEntry) -> ActivityEntry: ...

    def list_activity(
        self,
        *,
        actions: Optional[Iterable[ActivityAction]] = None,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ActivityEntry]: ...

    def purge_expired_activity(self, before: datetime) -> int: ...


class ActivityLog:
    """Append-only audit trail that also feeds session reconciliation."""

    def __init__(self, store: ActivityStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._purge_lock = threading.Lock()
        self._last_purge: Optional[datetime] = None
        self._purge_interval = timedelta(hours=1)

    def record(
        self,
        action: ActivityAction,
        *,
        user_id: Optional[str] = None,
        success: bool = True,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[ActivityEntry]:
        """Append one entry; the system administrator is never logged.

        Audit writes never fail the calling operation.
        """

        if user_id == SYSTEM_ADMIN_ID:
            return None
        entry = ActivityEntry.new(
            action,
            user_id=user_id,
            success=success,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=timestamp,
        )
        try:
            self.store.append_activity(entry)
        except Exception as exc:
            logger.error(
                "activity_log_write_failed",
                action=entry.action.value,
                user_id=user_id,
                error=str(exc),
            )
            return None
        self.maybe_purge(entry.timestamp)
        return entry

    def query(
        self,
        *,
        actions: Optional[Iterable[ActivityAction]] = None,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ActivityEntry]:
        retention_floor = utcnow() - timedelta(days=self.settings.activity_retention_days)
        if since is None or since < retention_floor:
            since = retention_floor
        return self.store.list_activity(
            actions=actions, since=since, user_id=user_id, success=success, limit=limit
        )

    def recent(self, user_id: Optional[str] = None, limit: int = 10) -> List[ActivityEntry]:
        return self.query(user_id=user_id, limit=limit)

    def suspicious(self, hours: int = 24) -> List[ActivityEntry]:
        return self.query(actions=SUSPICIOUS_ACTIONS, since=utcnow() - timedelta(hours=hours))

    def maybe_purge(self, now: Optional[datetime] = None) -> int:
        """Drop entries past the retention window, at most once per interval."""

        now = now or utcnow()
        with self._purge_lock:
            if self._last_purge and now - self._last_purge < self._purge_interval:
                return 0
            self._last_purge = now
        cutoff = now - timedelta(days=self.settings.activity_retention_days)
        try:
            return self.store.purge_expired_activity(cutoff)
        except Exception as exc:
            logger.warning("activity_purge_failed", error=str(exc))
            return 0
