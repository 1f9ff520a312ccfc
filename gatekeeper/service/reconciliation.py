from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.activity import ActivityLog
from gatekeeper.service.sessions import SessionTracker, derive_session_id
from gatekeeper.storage.models import (
    LOGIN_ACTIONS,
    LOGOUT_ACTIONS,
    ActivityAction,
    ActivityEntry,
    SessionRecord,
    User,
    utcnow,
)

logger = get_logger(__name__)


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class SessionReconciler:
    """Rebuilds the session tracker from the activity log.

    The log is authoritative: every call recomputes the active set from
    login, logout and termination events and replaces the tracker contents
    wholesale. One session per user survives, the most recent.
    """

    def __init__(
        self,
        activity: ActivityLog,
        store: UserLookup,
        tracker: SessionTracker,
        settings: Settings,
    ) -> None:
        self.activity = activity
        self.store = store
        self.tracker = tracker
        self.settings = settings

    def _now(self) -> datetime:
        return utcnow()

    def reconcile(self, now: Optional[datetime] = None) -> List[SessionRecord]:
        now = now or self._now()
        window_start = now - timedelta(hours=self.settings.reconciliation_lookback_hours)
        timeout_cutoff = now - timedelta(hours=self.settings.session_timeout_hours)

        logins = self.activity.query(actions=LOGIN_ACTIONS, since=window_start, success=True)
        endings = self.activity.query(
            actions=LOGOUT_ACTIONS | {ActivityAction.ADMIN_SESSION_TERMINATE},
            since=window_start,
        )

        terminated: set[str] = set()
        last_logout: Dict[str, datetime] = {}
        for entry in endings:
            if entry.action == ActivityAction.ADMIN_SESSION_TERMINATE:
                session_id = entry.details.get("session_id")
                if session_id:
                    terminated.add(session_id)
                continue
            if entry.user_id is None:
                continue
            previous = last_logout.get(entry.user_id)
            if previous is None or entry.timestamp > previous:
                last_logout[entry.user_id] = entry.timestamp

        latest: Dict[str, ActivityEntry] = {}
        for entry in sorted(logins, key=lambda e: e.timestamp, reverse=True):
            user_id = entry.user_id
            if not user_id or user_id in latest:
                continue
            if derive_session_id(user_id, entry.timestamp) in terminated:
                continue
            logged_out = last_logout.get(user_id)
            if logged_out is not None and logged_out > entry.timestamp:
                continue
            if entry.timestamp < timeout_cutoff:
                continue
            latest[user_id] = entry

        records: List[SessionRecord] = []
        for user_id, entry in latest.items():
            user = self.store.get_user(user_id)
            if user is None or user.is_deregistered:
                continue
            records.append(
                SessionRecord(
                    session_id=derive_session_id(user_id, entry.timestamp),
                    user_id=user_id,
                    user=user.summary(),
                    login_time=entry.timestamp,
                    last_activity=entry.timestamp,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    status="active",
                    created_at=entry.timestamp,
                )
            )
        records.sort(key=lambda rec: rec.last_activity, reverse=True)
        self.tracker.replace_all(records)
        logger.info(
            "sessions_reconciled",
            active=len(records),
            login_events=len(logins),
            terminated=len(terminated),
        )
        return records
