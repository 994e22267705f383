"""
Daily usage quota for remote inpainting calls.

The count is persisted through an injected storage and resets when the
calendar day changes. A rate-limited response from the server is cached in
memory so no further remote attempts are made until the date rolls over.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from retouch.config import get_settings
from retouch.database import get_session
from retouch.models.quota import QuotaRecord

logger = logging.getLogger(__name__)


@dataclass
class QuotaState:
    """Usage count for one calendar day (YYYY-MM-DD)."""
    count: int
    date: str


class QuotaStorage(Protocol):
    def load(self) -> Optional[QuotaState]:
        ...

    def save(self, state: QuotaState) -> None:
        ...


class InMemoryQuotaStorage:
    """Process-local storage, used by tests and non-persistent sessions."""

    def __init__(self, state: Optional[QuotaState] = None):
        self._state = state
        self.writes = 0

    def load(self) -> Optional[QuotaState]:
        if self._state is None:
            return None
        return QuotaState(self._state.count, self._state.date)

    def save(self, state: QuotaState) -> None:
        self._state = QuotaState(state.count, state.date)
        self.writes += 1


class SqlQuotaStorage:
    """Quota persisted as a QuotaRecord row keyed by ``key``."""

    def __init__(self, key: Optional[str] = None, session_factory: Optional[sessionmaker] = None):
        self.key = key or get_settings().QUOTA_KEY
        self.session_factory = session_factory

    def load(self) -> Optional[QuotaState]:
        with get_session(self.session_factory) as session:
            record = session.execute(
                select(QuotaRecord).where(QuotaRecord.key == self.key)
            ).scalar_one_or_none()
            if record is None:
                return None
            return QuotaState(count=record.count, date=record.date)

    def save(self, state: QuotaState) -> None:
        with get_session(self.session_factory) as session:
            record = session.execute(
                select(QuotaRecord).where(QuotaRecord.key == self.key)
            ).scalar_one_or_none()
            if record is None:
                session.add(QuotaRecord(key=self.key, count=state.count, date=state.date))
            else:
                record.count = state.count
                record.date = state.date
        logger.debug(f"Quota saved: key={self.key}, count={state.count}, date={state.date}")


def today_string() -> str:
    """Today's date in YYYY-MM-DD format."""
    return date.today().isoformat()


class UsageQuotaTracker:
    """
    Gates remote calls by a persisted daily counter.

    Usage:
        tracker = UsageQuotaTracker(SqlQuotaStorage())
        if tracker.can_call():
            ...
            tracker.record_success(server_remaining)
    """

    def __init__(
        self,
        storage: QuotaStorage,
        daily_limit: Optional[int] = None,
        today: Callable[[], str] = today_string,
    ):
        self.storage = storage
        self.daily_limit = daily_limit if daily_limit is not None else get_settings().DAILY_REMOTE_LIMIT
        self.today = today
        self._exhausted_on: Optional[str] = None
        self._lock = threading.Lock()

    def _current(self) -> QuotaState:
        today = self.today()
        stored = self.storage.load()
        if stored is not None and stored.date == today:
            return stored
        state = QuotaState(count=0, date=today)
        self.storage.save(state)
        if stored is not None:
            logger.info(f"Quota rolled over: {stored.date} -> {today}")
        return state

    def state(self) -> QuotaState:
        with self._lock:
            return self._current()

    def remaining(self) -> int:
        return max(0, self.daily_limit - self.state().count)

    @property
    def exhausted(self) -> bool:
        """True while a server rate-limit response is cached for today."""
        return self._exhausted_on == self.today()

    def can_call(self) -> bool:
        if self.exhausted:
            return False
        return self.remaining() > 0

    def record_success(self, server_remaining: Optional[int] = None) -> int:
        """
        Count one successful remote call.

        A lower ``remaining`` reported by the server wins over the local count.

        Returns:
            Remaining calls for today
        """
        with self._lock:
            state = self._current()
            state.count += 1
            if isinstance(server_remaining, int):
                state.count = max(state.count, self.daily_limit - server_remaining)
            self.storage.save(state)
            remaining = max(0, self.daily_limit - state.count)
        logger.info(f"Remote call recorded: used={state.count}, remaining={remaining}")
        return remaining

    def mark_exhausted(self) -> None:
        """Cache a rate-limit response until the date changes."""
        self._exhausted_on = self.today()
        logger.info("Remote quota exhausted, using local processing until tomorrow")

    def usage_stats(self) -> Dict[str, int]:
        state = self.state()
        remaining = 0 if self.exhausted else max(0, self.daily_limit - state.count)
        return {"used": state.count, "remaining": remaining, "limit": self.daily_limit}
