"""
Persistence interfaces consumed by the check-in engine

The engine only depends on these structural contracts; the PostgreSQL
implementation lives in checkin_rewards.db.queries.checkin and an
in-memory one in checkin_rewards.gamification.mock_store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from checkin_rewards.models.checkin import ActivityRecord


@runtime_checkable
class ActivityLog(Protocol):
    """Append-only log of check-in activity records (system of record for streaks)"""

    async def query_consecutive_checkins(self, user_id: str) -> list[datetime]:
        """
        Check-in timestamps of the consecutive-day run ending at the most recent entry.

        Returns:
            Timestamps newest first; empty when the user has no history
        """
        ...

    async def query_checkin_history(self, user_id: str) -> list[datetime]:
        """All check-in timestamps for the user, oldest first"""
        ...

    async def get_latest_checkin(self, user_id: str) -> datetime | None:
        ...

    async def has_checked_in_today(self, user_id: str) -> bool:
        """Store-defined "today" check used for eligibility"""
        ...

    async def insert_activity(self, record: ActivityRecord) -> None:
        """
        Append a record.

        Raises:
            DuplicateCheckinError: store rejected a second check-in for the same day
            XPUpdateError: any other write failure
        """
        ...

    async def count_checkins_in_window(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """
        Check-in rows created in [start, end].

        Returns:
            Rows with 'user_id', 'points_earned' and 'created_at'
        """
        ...


@runtime_checkable
class BalanceStore(Protocol):
    """Cumulative XP per user"""

    async def read_balance(self, user_id: str) -> int:
        ...

    async def write_balance(self, user_id: str, new_value: int) -> None:
        ...
