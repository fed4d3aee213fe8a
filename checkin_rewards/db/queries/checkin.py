"""Check-in database queries (PostgreSQL)"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from checkin_rewards.db.connection import Database
from checkin_rewards.exceptions import (
    DuplicateCheckinError,
    StreakCalculationError,
    XPUpdateError,
    wrap_persistence_error,
)
from checkin_rewards.models.checkin import ActivityRecord
from checkin_rewards.utils.datetime_helpers import now_utc, to_utc

logger = logging.getLogger(__name__)

# checkin_day is the UTC calendar day of created_at; the partial unique index
# is what actually rejects a second same-day check-in.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_reward_accounts (
    user_id TEXT PRIMARY KEY,
    experience_points INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_activities (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    activity_type TEXT NOT NULL,
    activity_data JSONB NOT NULL DEFAULT '{}'::jsonb,
    points_earned INTEGER NOT NULL DEFAULT 0,
    checkin_day DATE NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_user_activities_daily_checkin
    ON user_activities (user_id, checkin_day)
    WHERE activity_type = 'daily_checkin';

CREATE INDEX IF NOT EXISTS idx_user_activities_user_created
    ON user_activities (user_id, created_at DESC);
"""


async def init_schema(db: Database) -> None:
    """Create check-in tables and indexes if they don't exist"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(SCHEMA_SQL)
            await conn.commit()
    logger.info("Check-in schema initialized")


# ==========================================
# Activity log
# ==========================================

class PostgresActivityLog:
    """Activity log backed by the user_activities table"""

    def __init__(self, db: Database, clock: Callable[[], datetime] = now_utc):
        self.db = db
        self._clock = clock

    async def query_consecutive_checkins(self, user_id: str) -> list[datetime]:
        """
        Check-ins of the consecutive-day run ending at the latest one (gaps and islands)

        Days in one run share checkin_day - dense_rank(checkin_day).
        """
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        WITH days AS (
                            SELECT created_at,
                                   checkin_day,
                                   checkin_day - (DENSE_RANK() OVER (ORDER BY checkin_day))::int AS run_id
                            FROM user_activities
                            WHERE user_id = %s AND activity_type = 'daily_checkin'
                        )
                        SELECT created_at
                        FROM days
                        WHERE run_id = (SELECT run_id FROM days ORDER BY checkin_day DESC LIMIT 1)
                        ORDER BY created_at DESC
                        """,
                        (user_id,)
                    )
                    rows = await cur.fetchall()
        except Exception as e:
            raise wrap_persistence_error(e, "query_consecutive_checkins", StreakCalculationError, user_id)

        return [row["created_at"] for row in rows]

    async def query_checkin_history(self, user_id: str) -> list[datetime]:
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT created_at
                        FROM user_activities
                        WHERE user_id = %s AND activity_type = 'daily_checkin'
                        ORDER BY created_at ASC
                        """,
                        (user_id,)
                    )
                    rows = await cur.fetchall()
        except Exception as e:
            raise wrap_persistence_error(e, "query_checkin_history", StreakCalculationError, user_id)

        return [row["created_at"] for row in rows]

    async def get_latest_checkin(self, user_id: str) -> Optional[datetime]:
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT MAX(created_at) AS last_checkin
                        FROM user_activities
                        WHERE user_id = %s AND activity_type = 'daily_checkin'
                        """,
                        (user_id,)
                    )
                    row = await cur.fetchone()
        except Exception as e:
            raise wrap_persistence_error(e, "get_latest_checkin", StreakCalculationError, user_id)

        return row["last_checkin"] if row else None

    async def has_checked_in_today(self, user_id: str) -> bool:
        """True if a check-in exists for the current UTC day"""
        today = self._clock().date()
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT EXISTS (
                            SELECT 1 FROM user_activities
                            WHERE user_id = %s
                              AND activity_type = 'daily_checkin'
                              AND checkin_day = %s
                        ) AS checked_in
                        """,
                        (user_id, today)
                    )
                    row = await cur.fetchone()
        except Exception as e:
            raise wrap_persistence_error(e, "has_checked_in_today", StreakCalculationError, user_id)

        return bool(row and row["checked_in"])

    async def insert_activity(self, record: ActivityRecord) -> None:
        """
        Insert an activity row

        Raises:
            DuplicateCheckinError: unique (user_id, checkin_day) conflict for a daily check-in
            XPUpdateError: any other failure
        """
        created_at = to_utc(record.created_at)
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        INSERT INTO user_activities
                            (user_id, activity_type, activity_data, points_earned, checkin_day, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (user_id, checkin_day) WHERE activity_type = 'daily_checkin'
                        DO NOTHING
                        RETURNING id
                        """,
                        (
                            record.user_id,
                            record.activity_type,
                            json.dumps(record.activity_data, default=str),
                            record.points_earned,
                            created_at.date(),
                            created_at,
                        )
                    )
                    row = await cur.fetchone()
                    await conn.commit()
        except Exception as e:
            raise wrap_persistence_error(e, "insert_activity", XPUpdateError, record.user_id)

        if row is None:
            raise DuplicateCheckinError(
                user_id=record.user_id,
                details={"checkin_day": created_at.date().isoformat()}
            )

        logger.debug(f"Inserted {record.activity_type} activity {row['id']} for user {record.user_id}")

    async def count_checkins_in_window(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT user_id, points_earned, created_at
                        FROM user_activities
                        WHERE activity_type = 'daily_checkin'
                          AND created_at BETWEEN %s AND %s
                        ORDER BY created_at ASC
                        """,
                        (start, end)
                    )
                    rows = await cur.fetchall()
        except Exception as e:
            raise wrap_persistence_error(e, "count_checkins_in_window")

        return [dict(row) for row in rows]


# ==========================================
# Balance store
# ==========================================

class PostgresBalanceStore:
    """Cumulative XP in user_reward_accounts.experience_points"""

    def __init__(self, db: Database):
        self.db = db

    async def read_balance(self, user_id: str) -> int:
        """Current balance; 0 for users without an account row"""
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        "SELECT experience_points FROM user_reward_accounts WHERE user_id = %s",
                        (user_id,)
                    )
                    row = await cur.fetchone()
        except Exception as e:
            raise wrap_persistence_error(e, "read_balance", XPUpdateError, user_id)

        return row["experience_points"] if row else 0

    async def write_balance(self, user_id: str, new_value: int) -> None:
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        INSERT INTO user_reward_accounts (user_id, experience_points)
                        VALUES (%s, %s)
                        ON CONFLICT (user_id) DO UPDATE
                        SET experience_points = EXCLUDED.experience_points,
                            updated_at = CURRENT_TIMESTAMP
                        """,
                        (user_id, new_value)
                    )
                    await conn.commit()
        except Exception as e:
            raise wrap_persistence_error(e, "write_balance", XPUpdateError, user_id)
