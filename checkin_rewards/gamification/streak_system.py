"""
Daily Check-in Streak Tracking

Derives streak state from the append-only activity log. No streak counter
is stored anywhere; every read replays the log.

Two continuity rules coexist:
- Streak recency (is_streak_broken, calculate_streak, is_active) uses
  elapsed hours since the last check-in against max_streak_gap_hours.
  23:00 -> 01:00 next day keeps the streak (2h), 00:01 -> 23:30 two days
  later breaks it (47h). While recent, calculate_streak counts the days of
  the consecutive-calendar-day run the activity log returns.
- The longest-streak replay uses calendar days: successive entries exactly
  one calendar day apart extend the run, same-day entries are ignored.
"""

from typing import Callable, Optional
from datetime import datetime, timedelta
import logging

from checkin_rewards.db.interfaces import ActivityLog
from checkin_rewards.exceptions import CheckinError, StreakCalculationError
from checkin_rewards.models.checkin import StreakState, StreakStatus
from checkin_rewards.utils.datetime_helpers import hours_between, next_day_start, now_utc, to_utc

logger = logging.getLogger(__name__)

DEFAULT_MAX_STREAK_GAP_HOURS = 24.0
DEFAULT_AT_RISK_HOURS = 3.0


class StreakTracker:
    """
    Computes consecutive-day streaks from check-in history.

    Args:
        activity_log: Activity log to read check-ins from
        max_streak_gap_hours: Hours after the last check-in before the streak breaks
        timezone: IANA timezone used for "next check-in" day boundaries
        at_risk_hours: Remaining hours under which an active streak is "at risk"
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        activity_log: ActivityLog,
        max_streak_gap_hours: float = DEFAULT_MAX_STREAK_GAP_HOURS,
        timezone: str = "UTC",
        at_risk_hours: float = DEFAULT_AT_RISK_HOURS,
        clock: Callable[[], datetime] = now_utc
    ):
        self.activity_log = activity_log
        self.max_streak_gap_hours = max_streak_gap_hours
        self.timezone = timezone
        self.at_risk_hours = at_risk_hours
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def calculate_streak(self, user_id: str) -> int:
        """
        Current streak: calendar days in the consecutive run ending at the
        latest check-in, or 0 once that check-in is older than the max gap.

        Raises:
            StreakCalculationError: activity log could not be read
        """
        try:
            checkins = await self.activity_log.query_consecutive_checkins(user_id)
        except Exception as e:
            raise StreakCalculationError(
                f"Failed to calculate streak: {e}",
                user_id=user_id,
                details={"operation": "query_consecutive_checkins"},
                cause=e
            )

        if not checkins:
            return 0

        latest = max(to_utc(ts) for ts in checkins)
        if self.is_streak_broken(latest, self._clock()):
            logger.debug(f"Streak for user {user_id} broken; last check-in {latest.isoformat()}")
            return 0

        return len({to_utc(ts).date() for ts in checkins})

    def is_streak_broken(self, last_checkin: datetime, now: datetime) -> bool:
        """True iff more than max_streak_gap_hours elapsed between the two instants"""
        return hours_between(last_checkin, now) > self.max_streak_gap_hours

    async def get_streak_info(self, user_id: str) -> StreakState:
        """
        Get comprehensive streak information

        Returns:
            StreakState with current/longest streak, last check-in and activity flag
        """
        current_streak = await self.calculate_streak(user_id)

        try:
            last_checkin = await self.activity_log.get_latest_checkin(user_id)
            history = await self.activity_log.query_checkin_history(user_id)
        except Exception as e:
            raise StreakCalculationError(
                f"Failed to get last check-in: {e}",
                user_id=user_id,
                details={"operation": "get_streak_info"},
                cause=e
            )

        last_checkin = to_utc(last_checkin) if last_checkin else None
        is_active = bool(last_checkin) and not self.is_streak_broken(last_checkin, self._clock())
        longest_streak = max(calculate_longest_streak(history), current_streak)

        return StreakState(
            current_streak=current_streak,
            last_checkin_timestamp=last_checkin,
            longest_streak=longest_streak,
            is_active=is_active,
        )

    async def validate_streak_continuity(self, user_id: str, proposed_checkin: datetime) -> bool:
        """True if there is no prior check-in or the gap to it is within the max gap"""
        try:
            last_checkin = await self.activity_log.get_latest_checkin(user_id)
        except Exception as e:
            raise StreakCalculationError(
                f"Failed to validate streak continuity: {e}",
                user_id=user_id,
                details={"proposed_checkin": proposed_checkin.isoformat()},
                cause=e
            )

        if last_checkin is None:
            return True
        return not self.is_streak_broken(last_checkin, proposed_checkin)

    async def get_streak_status(self, user_id: str) -> StreakStatus:
        """Classify the streak for display: new, active, at_risk or broken"""
        info = await self.get_streak_info(user_id)

        if info.current_streak == 0 and info.last_checkin_timestamp is None:
            return StreakStatus.NEW
        if not info.is_active:
            return StreakStatus.BROKEN

        hours_left = self.max_streak_gap_hours - hours_between(info.last_checkin_timestamp, self._clock())
        if hours_left <= self.at_risk_hours:
            return StreakStatus.AT_RISK
        return StreakStatus.ACTIVE

    async def get_time_until_streak_expires(self, user_id: str) -> Optional[timedelta]:
        info = await self.get_streak_info(user_id)
        if not info.last_checkin_timestamp or not info.is_active:
            return None

        expires_at = info.last_checkin_timestamp + timedelta(hours=self.max_streak_gap_hours)
        return max(expires_at - self._clock(), timedelta(0))

    async def has_checked_in_today(self, user_id: str) -> bool:
        try:
            return await self.activity_log.has_checked_in_today(user_id)
        except CheckinError:
            raise
        except Exception as e:
            raise StreakCalculationError(
                f"Failed to check today's check-in status: {e}",
                user_id=user_id,
                cause=e
            )

    async def get_next_checkin_time(self, user_id: str, timezone: Optional[str] = None) -> datetime:
        """Now if the user can check in, else the start of the next day in their timezone"""
        now = self._clock()
        if not await self.has_checked_in_today(user_id):
            return now
        return next_day_start(now, timezone or self.timezone)


def calculate_longest_streak(history: list[datetime]) -> int:
    """
    Longest run of consecutive calendar days in a check-in history

    Args:
        history: Check-in timestamps in any order

    Returns:
        Length of the longest run, 0 for an empty history
    """
    days = sorted({to_utc(ts).date() for ts in history})
    if not days:
        return 0

    longest = current = 1
    for previous, day in zip(days, days[1:]):
        if (day - previous).days == 1:
            current += 1
        else:
            longest = max(longest, current)
            current = 1

    return max(longest, current)


def get_streak_emoji(streak: int) -> str:
    if streak == 0:
        return "🌱"
    if streak < 7:
        return "🔥"
    if streak < 30:
        return "⚡"
    if streak < 100:
        return "💎"
    return "👑"


def get_streak_message(streak: int) -> str:
    """Encouragement line shown next to the streak counter"""
    if streak == 0:
        return "Start your journey!"
    if streak == 1:
        return "Great start!"
    if streak < 7:
        return "Building momentum!"
    if streak == 7:
        return "One week strong!"
    if streak < 30:
        return "Consistency is key!"
    if streak == 30:
        return "One month achieved!"
    if streak < 100:
        return "Dedication paying off!"
    if streak == 100:
        return "Century milestone!"
    return "Legendary dedication!"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count != 1 else ''}"


def format_streak_duration(streak: int) -> str:
    """
    Human-readable streak length

    Example:
        5 -> "5 days", 9 -> "1 week 2 days", 45 -> "1 month 15 days"
    """
    if streak < 7:
        return _plural(streak, "day")

    if streak < 30:
        weeks, days = divmod(streak, 7)
        text = _plural(weeks, "week")
    else:
        months, days = divmod(streak, 30)
        text = _plural(months, "month")

    if days > 0:
        text += f" {_plural(days, 'day')}"
    return text
