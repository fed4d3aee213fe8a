"""Check-in reward models"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class StreakStatus(str, Enum):
    """Display status of a user's streak"""
    NEW = "new"
    ACTIVE = "active"
    AT_RISK = "at_risk"
    BROKEN = "broken"


class TierMetadata(BaseModel):
    """Display hints for a tier"""
    model_config = ConfigDict(frozen=True)

    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None


class MultiplierTier(BaseModel):
    """A named streak range mapped to one reward multiplier"""
    model_config = ConfigDict(frozen=True)

    min_streak: int = Field(ge=0)
    max_streak: Optional[int] = None  # None = unbounded
    multiplier: float = Field(gt=0)
    name: str
    metadata: TierMetadata = Field(default_factory=TierMetadata)

    def contains(self, streak: int) -> bool:
        return streak >= self.min_streak and (self.max_streak is None or streak <= self.max_streak)


class XPTier(BaseModel):
    """Tier used by the tiered reward calculator to scale base XP and bonus"""
    model_config = ConfigDict(frozen=True)

    min_streak: int = Field(ge=0)
    max_streak: Optional[int] = None
    base_xp_multiplier: float = Field(gt=0)
    bonus_xp_multiplier: float = Field(gt=0)
    name: str

    def contains(self, streak: int) -> bool:
        return streak >= self.min_streak and (self.max_streak is None or streak <= self.max_streak)


class SubBreakdown(BaseModel):
    """Itemized bonus components; unset items don't apply to the calculator"""
    weekly_bonus: Optional[float] = None
    daily_bonus: Optional[float] = None
    tier_bonus: Optional[float] = None
    event_bonus: Optional[float] = None
    context_bonus: Optional[float] = None


class RewardBreakdown(BaseModel):
    """
    Transparent XP award.

    total_xp = clamp(pre_clamp_xp, minimum_xp, maximum_xp)
    pre_clamp_xp = floor((base_xp + streak_bonus) * multiplier)
    """
    base_xp: float
    streak_bonus: float
    multiplier: float
    total_xp: int
    pre_clamp_xp: int
    clamped: bool = False
    sub_breakdown: SubBreakdown = Field(default_factory=SubBreakdown)


class StreakState(BaseModel):
    """Derived streak facts; recomputed from the activity log on every read"""
    current_streak: int = Field(ge=0)
    last_checkin_timestamp: Optional[datetime] = None
    longest_streak: int = Field(ge=0)
    is_active: bool


class ActivityRecord(BaseModel):
    """Append-only audit row written for each successful check-in"""
    user_id: str
    activity_type: str = "daily_checkin"
    activity_data: dict[str, Any]
    points_earned: int
    created_at: datetime


class AttestationResult(BaseModel):
    success: bool
    reference_id: Optional[str] = None
    error: Optional[str] = None


class CheckinResult(BaseModel):
    """Outcome of one check-in attempt; failures use the same shape"""
    success: bool
    xp_earned: int = 0
    new_streak: int = 0
    attestation_ref: Optional[str] = None
    breakdown: Optional[RewardBreakdown] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class CheckinStatus(BaseModel):
    can_checkin: bool
    has_checked_in_today: bool
    next_checkin_available: Optional[datetime] = None
    time_until_next_checkin: Optional[timedelta] = None


class CheckinPreview(BaseModel):
    current_streak: int
    next_streak: int
    current_multiplier: float
    next_multiplier: float
    preview_xp: int
    breakdown: RewardBreakdown


class CheckinStatistics(BaseModel):
    timeframe: str
    total_checkins: int
    unique_users: int
    average_streak: float
    total_xp_awarded: int
