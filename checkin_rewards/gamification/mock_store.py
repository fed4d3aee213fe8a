"""
In-memory activity log and balance store

Used by tests and local development when no PostgreSQL instance is around.
Nothing here is persisted; each instance owns its own state.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from checkin_rewards.exceptions import DuplicateCheckinError
from checkin_rewards.models.checkin import ActivityRecord
from checkin_rewards.utils.datetime_helpers import now_utc, to_utc

logger = logging.getLogger(__name__)


def consecutive_run(timestamps: list[datetime]) -> list[datetime]:
    """
    Trim timestamps to the consecutive-calendar-day run ending at the newest one

    Same-day entries belong to the run; a missing calendar day ends it.

    Returns:
        Timestamps of the run, newest first
    """
    ordered = sorted((to_utc(ts) for ts in timestamps), reverse=True)
    if not ordered:
        return []

    run = [ordered[0]]
    run_day = ordered[0].date()
    for ts in ordered[1:]:
        day = ts.date()
        if day == run_day or day == run_day - timedelta(days=1):
            run.append(ts)
            run_day = day
        else:
            break
    return run


class InMemoryActivityLog:
    """Activity log keeping records in a list, unique per (user, UTC day)"""

    def __init__(self, clock: Callable[[], datetime] = now_utc):
        self._clock = clock
        self._records: list[ActivityRecord] = []

    @property
    def records(self) -> list[ActivityRecord]:
        return list(self._records)

    def seed(self, user_id: str, timestamps: list[datetime], points: int = 10) -> None:
        """Preload check-in history without uniqueness checks"""
        for ts in timestamps:
            self._records.append(ActivityRecord(
                user_id=user_id,
                activity_data={"seeded": True},
                points_earned=points,
                created_at=to_utc(ts),
            ))

    def _checkins(self, user_id: Optional[str] = None) -> list[ActivityRecord]:
        return [
            r for r in self._records
            if r.activity_type == "daily_checkin" and (user_id is None or r.user_id == user_id)
        ]

    async def query_consecutive_checkins(self, user_id: str) -> list[datetime]:
        return consecutive_run([r.created_at for r in self._checkins(user_id)])

    async def query_checkin_history(self, user_id: str) -> list[datetime]:
        return sorted(to_utc(r.created_at) for r in self._checkins(user_id))

    async def get_latest_checkin(self, user_id: str) -> Optional[datetime]:
        history = await self.query_checkin_history(user_id)
        return history[-1] if history else None

    async def has_checked_in_today(self, user_id: str) -> bool:
        today = self._clock().date()
        return any(to_utc(r.created_at).date() == today for r in self._checkins(user_id))

    async def insert_activity(self, record: ActivityRecord) -> None:
        if record.activity_type == "daily_checkin":
            day = to_utc(record.created_at).date()
            if any(to_utc(r.created_at).date() == day for r in self._checkins(record.user_id)):
                raise DuplicateCheckinError(user_id=record.user_id, details={"day": day.isoformat()})
        self._records.append(record)
        logger.debug(f"Stored {record.activity_type} for user {record.user_id} (NOT PERSISTED)")

    async def count_checkins_in_window(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        start, end = to_utc(start), to_utc(end)
        return [
            {"user_id": r.user_id, "points_earned": r.points_earned, "created_at": r.created_at}
            for r in self._checkins()
            if start <= to_utc(r.created_at) <= end
        ]


class InMemoryBalanceStore:
    """Cumulative XP per user in a dict"""

    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._balances: dict[str, int] = dict(balances or {})

    async def read_balance(self, user_id: str) -> int:
        return self._balances.get(user_id, 0)

    async def write_balance(self, user_id: str, new_value: int) -> None:
        self._balances[user_id] = new_value

    def snapshot(self) -> dict[str, int]:
        return dict(self._balances)
