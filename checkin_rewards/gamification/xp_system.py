"""
Check-in XP Calculation

Turns a streak length and a multiplier into an XP award with a transparent
breakdown.

Award rule (all calculators):
- bonus math is additive: base_xp + streak_bonus
- the multiplier applies once, to (base_xp + streak_bonus)
- the product is floored to an integer, then clamped to [minimum_xp, maximum_xp]

Calculators:
- Standard: weekly bonus per full week + daily bonus per day after the first
- Progressive: standard bonus + fixed bonuses at milestones 7/14/30/60/100/200/365
- Tiered: base and bonus scaled by an XP tier (separate from the reward multiplier)
- Event: wraps a calculator, boosting the effective multiplier during an event window
- Contextual: wraps a calculator, applying caller-supplied context multipliers
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import math

from checkin_rewards.config import EventWindow, RewardCalculatorConfig, XPConfig
from checkin_rewards.exceptions import ConfigurationError, XPCalculationError
from checkin_rewards.gamification.multipliers import find_tier, validate_tier_ranges
from checkin_rewards.models.checkin import RewardBreakdown, SubBreakdown, XPTier
from checkin_rewards.utils.datetime_helpers import now_utc, to_utc

logger = logging.getLogger(__name__)

MILESTONES = [7, 14, 30, 60, 100, 200, 365]

STANDARD_DEFAULTS = XPConfig(base_xp=10, weekly_bonus=5, daily_bonus=1, minimum_xp=5, maximum_xp=1000)
PROGRESSIVE_DEFAULTS = XPConfig(base_xp=10, weekly_bonus=5, daily_bonus=2, minimum_xp=5, maximum_xp=2000)
TIERED_DEFAULTS = XPConfig(base_xp=10, weekly_bonus=5, daily_bonus=1, minimum_xp=5, maximum_xp=1500)

DEFAULT_XP_TIERS = [
    XPTier(min_streak=0, max_streak=6, base_xp_multiplier=1.0, bonus_xp_multiplier=1.0, name="Newcomer"),
    XPTier(min_streak=7, max_streak=29, base_xp_multiplier=1.2, bonus_xp_multiplier=1.3, name="Regular"),
    XPTier(min_streak=30, max_streak=99, base_xp_multiplier=1.5, bonus_xp_multiplier=1.6, name="Dedicated"),
    XPTier(min_streak=100, max_streak=None, base_xp_multiplier=2.0, bonus_xp_multiplier=2.0, name="Master"),
]


def floor_xp(value: float) -> int:
    """Floor to whole XP, ignoring binary float noise (22 * 1.5 -> 33, not 32)"""
    return math.floor(round(value, 9))


def weekly_bonus_for(streak: int, weekly_bonus: float) -> float:
    return (max(streak, 0) // 7) * weekly_bonus


def daily_bonus_for(streak: int, daily_bonus: float) -> float:
    # No daily bonus for the first day
    return max(0, streak - 1) * daily_bonus


class RewardCalculator(ABC):
    """Base class for XP calculators"""

    @abstractmethod
    def calculate_base_xp(self) -> float:
        ...

    @abstractmethod
    def calculate_streak_bonus(self, streak: int) -> float:
        ...

    @abstractmethod
    def calculate_total_xp(self, base_xp: float, bonus: float, multiplier: float) -> int:
        ...

    @abstractmethod
    def calculate_xp_breakdown(
        self,
        streak: int,
        multiplier: float,
        contexts: Optional[Sequence[str]] = None
    ) -> RewardBreakdown:
        """
        Full award for a streak and multiplier

        Args:
            streak: Streak length the award is for
            multiplier: Reward multiplier from the multiplier policy
            contexts: Named contexts (e.g. "weekend"); only context-aware calculators use them
        """
        ...


class ConfiguredXPCalculator(RewardCalculator):
    """Shared clamping and breakdown assembly for calculators driven by an XPConfig"""

    defaults = STANDARD_DEFAULTS

    def __init__(self, config: Optional[XPConfig] = None):
        self.config = config or self.defaults

    def get_config(self) -> XPConfig:
        return self.config.model_copy()

    def calculate_base_xp(self) -> float:
        return self.config.base_xp

    def calculate_streak_bonus(self, streak: int) -> float:
        return (
            weekly_bonus_for(streak, self.config.weekly_bonus)
            + daily_bonus_for(streak, self.config.daily_bonus)
        )

    def clamp_xp(self, xp: int) -> int:
        if self.config.maximum_xp is not None:
            xp = min(xp, self.config.maximum_xp)
        return max(self.config.minimum_xp, xp)

    def calculate_total_xp(self, base_xp: float, bonus: float, multiplier: float) -> int:
        return self.clamp_xp(floor_xp((base_xp + bonus) * multiplier))

    def _breakdown(
        self,
        base_xp: float,
        streak_bonus: float,
        multiplier: float,
        sub_breakdown: SubBreakdown
    ) -> RewardBreakdown:
        if multiplier <= 0:
            raise XPCalculationError(
                f"Multiplier must be positive, got {multiplier}",
                details={"multiplier": multiplier}
            )

        pre_clamp_xp = floor_xp((base_xp + streak_bonus) * multiplier)
        total_xp = self.clamp_xp(pre_clamp_xp)

        if total_xp != pre_clamp_xp:
            logger.debug(f"Clamped XP {pre_clamp_xp} -> {total_xp}")

        return RewardBreakdown(
            base_xp=base_xp,
            streak_bonus=streak_bonus,
            multiplier=multiplier,
            total_xp=total_xp,
            pre_clamp_xp=pre_clamp_xp,
            clamped=total_xp != pre_clamp_xp,
            sub_breakdown=sub_breakdown,
        )


class StandardXPCalculator(ConfiguredXPCalculator):
    """streak_bonus = floor(streak / 7) * weekly_bonus + max(0, streak - 1) * daily_bonus"""

    defaults = STANDARD_DEFAULTS

    def calculate_xp_breakdown(self, streak, multiplier, contexts=None) -> RewardBreakdown:
        return self._breakdown(
            self.calculate_base_xp(),
            self.calculate_streak_bonus(streak),
            multiplier,
            SubBreakdown(
                weekly_bonus=weekly_bonus_for(streak, self.config.weekly_bonus),
                daily_bonus=daily_bonus_for(streak, self.config.daily_bonus),
                tier_bonus=0,
            ),
        )


class ProgressiveXPCalculator(ConfiguredXPCalculator):
    """
    Standard bonus plus milestone bonuses

    Each milestone reached adds milestone * progression_rate
    (e.g. 7 days at 0.05 -> 0.35 XP, 30 days -> 0.35 + 0.7 + 1.5).
    """

    defaults = PROGRESSIVE_DEFAULTS

    def __init__(self, config: Optional[XPConfig] = None, progression_rate: float = 0.05):
        super().__init__(config)
        self.progression_rate = progression_rate

    def milestone_bonus(self, streak: int) -> float:
        return sum(m * self.progression_rate for m in MILESTONES if streak >= m)

    def calculate_streak_bonus(self, streak: int) -> float:
        return super().calculate_streak_bonus(streak) + self.milestone_bonus(streak)

    def calculate_xp_breakdown(self, streak, multiplier, contexts=None) -> RewardBreakdown:
        return self._breakdown(
            self.calculate_base_xp(),
            self.calculate_streak_bonus(streak),
            multiplier,
            SubBreakdown(
                weekly_bonus=weekly_bonus_for(streak, self.config.weekly_bonus),
                daily_bonus=daily_bonus_for(streak, self.config.daily_bonus),
                tier_bonus=self.milestone_bonus(streak),
            ),
        )

    def get_next_milestone(self, streak: int) -> Optional[Dict[str, float]]:
        """Next milestone above the streak and its bonus, or None past the last one"""
        for milestone in MILESTONES:
            if milestone > streak:
                return {"milestone": milestone, "bonus": milestone * self.progression_rate}
        return None


class TieredXPCalculator(ConfiguredXPCalculator):
    """
    Scales base XP and streak bonus by the XP tier the streak falls in

    tier_bonus = (scaled base - configured base) + (scaled bonus - raw bonus)
    """

    defaults = TIERED_DEFAULTS

    def __init__(self, config: Optional[XPConfig] = None, tiers: Optional[Sequence[XPTier]] = None):
        super().__init__(config)
        tiers = list(tiers) if tiers is not None else list(DEFAULT_XP_TIERS)
        validate_tier_ranges(tiers, config_key="rewards.custom_tiers")
        self._tiers = tiers

    def get_tier_info(self, streak: int) -> XPTier:
        return find_tier(self._tiers, max(streak, 0)) or self._tiers[0]

    def get_tiers(self) -> List[XPTier]:
        return list(self._tiers)

    def calculate_xp_breakdown(self, streak, multiplier, contexts=None) -> RewardBreakdown:
        tier = self.get_tier_info(streak)

        base_xp = self.calculate_base_xp() * tier.base_xp_multiplier
        raw_bonus = self.calculate_streak_bonus(streak)
        streak_bonus = raw_bonus * tier.bonus_xp_multiplier

        return self._breakdown(
            base_xp,
            streak_bonus,
            multiplier,
            SubBreakdown(
                weekly_bonus=weekly_bonus_for(streak, self.config.weekly_bonus) * tier.bonus_xp_multiplier,
                daily_bonus=daily_bonus_for(streak, self.config.daily_bonus) * tier.bonus_xp_multiplier,
                tier_bonus=base_xp - self.config.base_xp + (streak_bonus - raw_bonus),
            ),
        )


class EventXPCalculator(RewardCalculator):
    """
    Wraps a calculator and multiplies the effective multiplier by
    event_multiplier while the event window is open (inclusive bounds).
    """

    def __init__(
        self,
        base_calculator: RewardCalculator,
        event_multiplier: float = 2.0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_name: str = "Special Event",
        clock: Callable[[], datetime] = now_utc
    ):
        if event_multiplier <= 0:
            raise ConfigurationError(
                f"Event multiplier must be positive, got {event_multiplier}",
                config_key="rewards.event.multiplier"
            )
        self.base_calculator = base_calculator
        self.event_multiplier = event_multiplier
        self.start = to_utc(start) if start else None
        self.end = to_utc(end) if end else None
        self.event_name = event_name
        self._clock = clock

    def is_event_active(self) -> bool:
        now = self._clock()
        if self.start and now < self.start:
            return False
        if self.end and now > self.end:
            return False
        return True

    def _effective_multiplier(self, multiplier: float) -> float:
        return multiplier * self.event_multiplier if self.is_event_active() else multiplier

    def calculate_base_xp(self) -> float:
        return self.base_calculator.calculate_base_xp()

    def calculate_streak_bonus(self, streak: int) -> float:
        return self.base_calculator.calculate_streak_bonus(streak)

    def calculate_total_xp(self, base_xp: float, bonus: float, multiplier: float) -> int:
        return self.base_calculator.calculate_total_xp(base_xp, bonus, self._effective_multiplier(multiplier))

    def calculate_xp_breakdown(self, streak, multiplier, contexts=None) -> RewardBreakdown:
        active = self.is_event_active()
        breakdown = self.base_calculator.calculate_xp_breakdown(
            streak, self._effective_multiplier(multiplier), contexts
        )
        if not active:
            return breakdown

        event_bonus = breakdown.total_xp - breakdown.total_xp / self.event_multiplier
        return breakdown.model_copy(update={
            "sub_breakdown": breakdown.sub_breakdown.model_copy(update={"event_bonus": event_bonus})
        })

    def get_event_info(self) -> Dict[str, Any]:
        return {
            "name": self.event_name,
            "is_active": self.is_event_active(),
            "multiplier": self.event_multiplier,
            "start": self.start,
            "end": self.end,
        }


class ContextualXPCalculator(RewardCalculator):
    """
    Wraps a calculator and applies the product of named context multipliers
    supplied per call. Unknown contexts count as 1.0.
    """

    def __init__(self, base_calculator: RewardCalculator, context_multipliers: Optional[Dict[str, float]] = None):
        self.base_calculator = base_calculator
        self._context_multipliers: Dict[str, float] = dict(context_multipliers or {})

    def add_context(self, context: str, multiplier: float) -> None:
        if multiplier <= 0:
            raise ConfigurationError(
                f"Context multiplier for '{context}' must be positive, got {multiplier}",
                config_key="rewards.context_multipliers"
            )
        self._context_multipliers[context] = multiplier

    def remove_context(self, context: str) -> None:
        self._context_multipliers.pop(context, None)

    def get_active_contexts(self) -> List[str]:
        return list(self._context_multipliers)

    def context_multiplier(self, contexts: Optional[Sequence[str]]) -> float:
        product = 1.0
        for context in contexts or []:
            product *= self._context_multipliers.get(context, 1.0)
        return product

    def calculate_base_xp(self) -> float:
        return self.base_calculator.calculate_base_xp()

    def calculate_streak_bonus(self, streak: int) -> float:
        return self.base_calculator.calculate_streak_bonus(streak)

    def calculate_total_xp(self, base_xp: float, bonus: float, multiplier: float) -> int:
        return self.base_calculator.calculate_total_xp(base_xp, bonus, multiplier)

    def calculate_xp_breakdown(self, streak, multiplier, contexts=None) -> RewardBreakdown:
        return self.calculate_xp_with_context(streak, multiplier, contexts)

    def calculate_xp_with_context(
        self,
        streak: int,
        multiplier: float,
        contexts: Optional[Sequence[str]] = None
    ) -> RewardBreakdown:
        """
        Award with context multipliers applied

        Example:
            contexts=["weekend"] with {"weekend": 1.2} -> multiplier * 1.2
        """
        context_multiplier = self.context_multiplier(contexts)
        breakdown = self.base_calculator.calculate_xp_breakdown(
            streak, multiplier * context_multiplier, contexts
        )
        if context_multiplier <= 1.0:
            return breakdown

        context_bonus = breakdown.total_xp - breakdown.total_xp / context_multiplier
        return breakdown.model_copy(update={
            "sub_breakdown": breakdown.sub_breakdown.model_copy(update={"context_bonus": context_bonus})
        })


# ==========================================
# Presets and factory
# ==========================================

XP_PRESETS: Dict[str, Callable[[], RewardCalculator]] = {
    "conservative": lambda: StandardXPCalculator(
        XPConfig(base_xp=5, weekly_bonus=2, daily_bonus=0.5, minimum_xp=3, maximum_xp=100)
    ),
    "standard": lambda: StandardXPCalculator(),
    "generous": lambda: ProgressiveXPCalculator(
        XPConfig(base_xp=15, weekly_bonus=10, daily_bonus=2, minimum_xp=10, maximum_xp=500)
    ),
    "tiered": lambda: TieredXPCalculator(),
    "premium": lambda: TieredXPCalculator(
        XPConfig(base_xp=20, weekly_bonus=15, daily_bonus=3, minimum_xp=15, maximum_xp=1000)
    ),
}


def create_reward_calculator(
    config: Optional[RewardCalculatorConfig] = None,
    clock: Callable[[], datetime] = now_utc
) -> RewardCalculator:
    """
    Build a reward calculator from config

    Event and context wrappers are layered on top of the selected calculator
    in that order.

    Raises:
        ConfigurationError: unknown preset or invalid tier table
    """
    config = config or RewardCalculatorConfig()

    if config.strategy == "standard":
        calculator = StandardXPCalculator(config.xp)
    elif config.strategy == "progressive":
        calculator = ProgressiveXPCalculator(config.xp, config.progression_rate)
    elif config.strategy == "tiered":
        calculator = TieredXPCalculator(config.xp, config.custom_tiers)
    else:
        factory = XP_PRESETS.get(config.preset)
        if factory is None:
            raise ConfigurationError(
                f"Unknown XP preset '{config.preset}'",
                config_key="rewards.preset"
            )
        calculator = factory()

    if config.event:
        calculator = with_event_boost(calculator, config.event, clock)

    if config.context_multipliers:
        calculator = ContextualXPCalculator(calculator, config.context_multipliers)

    logger.debug(f"Created reward calculator {type(calculator).__name__} (strategy={config.strategy})")
    return calculator


def with_event_boost(
    calculator: RewardCalculator,
    event: EventWindow,
    clock: Callable[[], datetime] = now_utc
) -> EventXPCalculator:
    return EventXPCalculator(
        calculator,
        event_multiplier=event.multiplier,
        start=event.start,
        end=event.end,
        event_name=event.name,
        clock=clock,
    )


# ==========================================
# Display helpers
# ==========================================

def project_xp_growth(
    calculator: RewardCalculator,
    current_streak: int,
    multiplier: float,
    days: int = 7
) -> List[RewardBreakdown]:
    """Breakdowns for current_streak .. current_streak + days at a fixed multiplier"""
    return [
        calculator.calculate_xp_breakdown(current_streak + offset, multiplier)
        for offset in range(days + 1)
    ]


def format_xp(xp: float) -> str:
    """
    Compact XP label

    Example:
        950 -> "950 XP", 1500 -> "1.5K XP", 2_000_000 -> "2.0M XP"
    """
    if xp >= 1_000_000:
        return f"{xp / 1_000_000:.1f}M XP"
    if xp >= 1000:
        return f"{xp / 1000:.1f}K XP"
    return f"{xp} XP"
