"""
Streak Multiplier Policies

Maps a streak length to a reward multiplier and a display tier.

Policies:
- Tiered: step function over a fixed tier table (default below)
- Linear: base + floor(streak / interval) * increment, capped
- Exponential: base * rate ^ floor(streak / interval), capped
- Seasonal: wraps another policy and scales it while an event window is open

Default tiers:
- Beginner (0-6 days): 1.0x
- Consistent (7-29 days): 1.5x
- Dedicated (30-99 days): 2.0x
- Master (100-364 days): 2.5x
- Legend (365+ days): 3.0x

Every policy is non-decreasing in streak for a fixed point in time.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

from checkin_rewards.config import EventWindow, MultiplierConfig
from checkin_rewards.exceptions import ConfigurationError
from checkin_rewards.models.checkin import MultiplierTier, TierMetadata
from checkin_rewards.utils.datetime_helpers import now_utc, to_utc

logger = logging.getLogger(__name__)

# Generated tier lists stop here and end with one unbounded tier
TIER_GENERATION_LIMIT_DAYS = 365


def _tier(min_streak, max_streak, multiplier, name, icon, color, description=None) -> MultiplierTier:
    return MultiplierTier(
        min_streak=min_streak,
        max_streak=max_streak,
        multiplier=multiplier,
        name=name,
        metadata=TierMetadata(icon=icon, color=color, description=description),
    )


DEFAULT_MULTIPLIER_TIERS = [
    _tier(0, 6, 1.0, "Beginner", "🌱", "#22c55e", "Just getting started"),
    _tier(7, 29, 1.5, "Consistent", "🔥", "#f97316", "Building a habit"),
    _tier(30, 99, 2.0, "Dedicated", "⚡", "#3b82f6", "Serious commitment"),
    _tier(100, 364, 2.5, "Master", "💎", "#8b5cf6", "Exceptional dedication"),
    _tier(365, None, 3.0, "Legend", "👑", "#eab308", "Ultimate achievement"),
]

CONSERVATIVE_MULTIPLIER_TIERS = [
    _tier(0, 13, 1.0, "Starter", "🌱", "#22c55e"),
    _tier(14, 49, 1.3, "Regular", "🔥", "#f97316"),
    _tier(50, 149, 1.6, "Committed", "⚡", "#3b82f6"),
    _tier(150, None, 2.0, "Master", "💎", "#8b5cf6"),
]

LINEAR_TIER_ICONS = ["🌱", "🌿", "🔥", "⚡", "💎", "⭐", "🌟"]
LINEAR_TIER_COLORS = ["#22c55e", "#16a34a", "#f97316", "#ea580c", "#3b82f6", "#2563eb", "#8b5cf6", "#7c3aed"]


def validate_tier_ranges(tiers: Sequence[Any], config_key: str = "tiers") -> None:
    """
    Check that tiers partition [0, inf): ascending, contiguous, starting at 0,
    with exactly one unbounded tier at the end.

    Works for any object with min_streak/max_streak/name.

    Raises:
        ConfigurationError: describing the first violation found
    """
    if not tiers:
        raise ConfigurationError("Tier list must not be empty", config_key=config_key)

    if tiers[0].min_streak != 0:
        raise ConfigurationError(
            f"First tier '{tiers[0].name}' must start at streak 0, not {tiers[0].min_streak}",
            config_key=config_key
        )

    for previous, tier in zip(tiers, tiers[1:]):
        if previous.max_streak is None:
            raise ConfigurationError(
                f"Only the last tier may be unbounded, but '{previous.name}' is",
                config_key=config_key
            )
        if previous.max_streak < previous.min_streak:
            raise ConfigurationError(
                f"Tier '{previous.name}' ends before it starts",
                config_key=config_key
            )
        if tier.min_streak != previous.max_streak + 1:
            raise ConfigurationError(
                f"Tiers '{previous.name}' and '{tier.name}' leave a gap or overlap "
                f"({previous.max_streak} -> {tier.min_streak})",
                config_key=config_key
            )

    if tiers[-1].max_streak is not None:
        raise ConfigurationError(
            f"Last tier '{tiers[-1].name}' must be unbounded",
            config_key=config_key
        )


def validate_tiers(tiers: Sequence[MultiplierTier]) -> None:
    """
    Validate a multiplier tier table

    Adds a non-decreasing multiplier check on top of validate_tier_ranges.

    Raises:
        ConfigurationError: if the table is not a valid partition
    """
    validate_tier_ranges(tiers, config_key="multiplier.custom_tiers")

    for previous, tier in zip(tiers, tiers[1:]):
        if tier.multiplier < previous.multiplier:
            raise ConfigurationError(
                f"Tier '{tier.name}' multiplier {tier.multiplier} is lower than "
                f"'{previous.name}' multiplier {previous.multiplier}",
                config_key="multiplier.custom_tiers"
            )


def find_tier(tiers: Sequence[Any], streak: int) -> Optional[Any]:
    """Tier containing the streak, or None"""
    for tier in tiers:
        if tier.contains(streak):
            return tier
    return None


class MultiplierPolicy(ABC):
    """
    Base class for streak multiplier policies

    Subclasses supply calculate_multiplier and get_tiers; the tier lookups
    are shared.
    """

    @abstractmethod
    def calculate_multiplier(self, streak: int) -> float:
        ...

    @abstractmethod
    def get_tiers(self) -> List[MultiplierTier]:
        """Ordered tier list partitioning [0, inf)"""
        ...

    def get_current_tier(self, streak: int) -> Optional[MultiplierTier]:
        return find_tier(self.get_tiers(), max(streak, 0))

    def get_next_tier(self, streak: int) -> Optional[MultiplierTier]:
        tiers = self.get_tiers()
        current = find_tier(tiers, max(streak, 0))
        if current is None:
            return None

        index = tiers.index(current)
        return tiers[index + 1] if index < len(tiers) - 1 else None

    def get_progress_to_next_tier(self, streak: int) -> float:
        """
        Fraction of the way from the current tier's start to the next tier's start

        Returns:
            Value in [0, 1]; 1.0 at the terminal tier
        """
        current = self.get_current_tier(streak)
        next_tier = self.get_next_tier(streak)
        if current is None or next_tier is None:
            return 1.0

        tier_range = next_tier.min_streak - current.min_streak
        progress = (streak - current.min_streak) / tier_range
        return min(max(progress, 0.0), 1.0)


class TieredMultiplierPolicy(MultiplierPolicy):
    """Step function over a validated tier table"""

    def __init__(self, tiers: Optional[Sequence[MultiplierTier]] = None):
        tiers = list(tiers) if tiers is not None else list(DEFAULT_MULTIPLIER_TIERS)
        validate_tiers(tiers)
        self._tiers = tiers

    def calculate_multiplier(self, streak: int) -> float:
        tier = self.get_current_tier(streak)
        return tier.multiplier if tier else 1.0

    def get_tiers(self) -> List[MultiplierTier]:
        return list(self._tiers)


class LinearMultiplierPolicy(MultiplierPolicy):
    """multiplier = min(max(base + floor(streak / interval) * increment, base), cap)"""

    def __init__(
        self,
        base_multiplier: float = 1.0,
        increment: float = 0.1,
        max_multiplier: float = 3.0,
        interval_days: int = 7
    ):
        if increment < 0:
            raise ConfigurationError(
                f"Linear increment must be non-negative, got {increment}",
                config_key="multiplier.linear.increment"
            )
        if interval_days <= 0:
            raise ConfigurationError(
                f"Linear interval must be positive, got {interval_days}",
                config_key="multiplier.linear.interval_days"
            )

        self.base_multiplier = base_multiplier
        self.increment = increment
        self.max_multiplier = max_multiplier
        self.interval_days = interval_days
        self._tiers = self._build_tiers()

    def calculate_multiplier(self, streak: int) -> float:
        intervals = max(streak, 0) // self.interval_days
        multiplier = max(self.base_multiplier + intervals * self.increment, self.base_multiplier)
        return min(multiplier, self.max_multiplier)

    def get_tiers(self) -> List[MultiplierTier]:
        return list(self._tiers)

    def _build_tiers(self) -> List[MultiplierTier]:
        tiers = []
        streak = 0
        index = 0

        while streak < TIER_GENERATION_LIMIT_DAYS and self.calculate_multiplier(streak) < self.max_multiplier:
            end = streak + self.interval_days - 1
            tiers.append(_tier(
                streak, end, self.calculate_multiplier(streak),
                f"Level {index + 1}",
                LINEAR_TIER_ICONS[min(index, len(LINEAR_TIER_ICONS) - 1)],
                LINEAR_TIER_COLORS[min(index, len(LINEAR_TIER_COLORS) - 1)],
                f"{streak}-{end} days",
            ))
            streak = end + 1
            index += 1

        tiers.append(_tier(
            streak, None, self.calculate_multiplier(streak),
            "Max Level", "🌟", "#ffd700", f"{streak}+ days",
        ))
        return tiers


class ExponentialMultiplierPolicy(MultiplierPolicy):
    """multiplier = min(base * rate ^ floor(streak / interval), cap)"""

    def __init__(
        self,
        base_multiplier: float = 1.0,
        rate: float = 1.05,
        max_multiplier: float = 5.0,
        interval_days: int = 7
    ):
        if rate < 1:
            raise ConfigurationError(
                f"Exponential rate must be at least 1, got {rate}",
                config_key="multiplier.exponential.rate"
            )
        if interval_days <= 0:
            raise ConfigurationError(
                f"Exponential interval must be positive, got {interval_days}",
                config_key="multiplier.exponential.interval_days"
            )

        self.base_multiplier = base_multiplier
        self.rate = rate
        self.max_multiplier = max_multiplier
        self.interval_days = interval_days
        self._tiers = self._build_tiers()

    def calculate_multiplier(self, streak: int) -> float:
        intervals = max(streak, 0) // self.interval_days
        return min(self.base_multiplier * self.rate ** intervals, self.max_multiplier)

    def get_tiers(self) -> List[MultiplierTier]:
        return list(self._tiers)

    def _tier_color(self, multiplier: float) -> str:
        intensity = min(multiplier / self.max_multiplier, 1.0)
        red = int(255 * intensity)
        green = int(255 * (1 - intensity * 0.7))
        blue = int(100 + 155 * (1 - intensity))
        return f"rgb({red}, {green}, {blue})"

    @staticmethod
    def _tier_icon(multiplier: float) -> str:
        if multiplier < 1.5:
            return "🌱"
        if multiplier < 2.0:
            return "🔥"
        if multiplier < 3.0:
            return "⚡"
        if multiplier < 4.0:
            return "💎"
        return "🚀"

    def _build_tiers(self) -> List[MultiplierTier]:
        tiers = []
        streak = 0
        index = 0

        while streak < TIER_GENERATION_LIMIT_DAYS and self.calculate_multiplier(streak) < self.max_multiplier:
            end = streak + self.interval_days - 1
            multiplier = self.calculate_multiplier(streak)
            tiers.append(_tier(
                streak, end, multiplier,
                f"Exponential {index + 1}",
                self._tier_icon(multiplier),
                self._tier_color(multiplier),
                f"{streak}-{end} days",
            ))
            streak = end + 1
            index += 1

        tiers.append(_tier(
            streak, None, self.calculate_multiplier(streak),
            "Ultimate", "🚀", "#ff6b6b", f"{streak}+ days",
        ))
        return tiers


class SeasonalMultiplierPolicy(MultiplierPolicy):
    """
    Scales a wrapped policy by a seasonal factor while the event window is open

    The window is inclusive on both ends; a missing bound is open-ended.
    Tiers are relabeled "<event> <tier>" only while the event is active.
    """

    def __init__(
        self,
        base_policy: MultiplierPolicy,
        seasonal_multiplier: float = 1.5,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_name: str = "Special Event",
        clock: Callable[[], datetime] = now_utc
    ):
        if seasonal_multiplier <= 0:
            raise ConfigurationError(
                f"Seasonal multiplier must be positive, got {seasonal_multiplier}",
                config_key="multiplier.seasonal.multiplier"
            )

        self.base_policy = base_policy
        self.seasonal_multiplier = seasonal_multiplier
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

    def calculate_multiplier(self, streak: int) -> float:
        multiplier = self.base_policy.calculate_multiplier(streak)
        if self.is_event_active():
            return multiplier * self.seasonal_multiplier
        return multiplier

    def get_tiers(self) -> List[MultiplierTier]:
        tiers = self.base_policy.get_tiers()
        if not self.is_event_active():
            return tiers

        return [
            tier.model_copy(update={
                "multiplier": tier.multiplier * self.seasonal_multiplier,
                "name": f"{self.event_name} {tier.name}",
                "metadata": tier.metadata.model_copy(update={
                    "description": f"{tier.metadata.description or tier.name} ({self.event_name} Bonus!)"
                }),
            })
            for tier in tiers
        ]

    def get_progress_to_next_tier(self, streak: int) -> float:
        return self.base_policy.get_progress_to_next_tier(streak)

    def get_event_info(self) -> Dict[str, Any]:
        return {
            "name": self.event_name,
            "is_active": self.is_event_active(),
            "multiplier": self.seasonal_multiplier,
            "start": self.start,
            "end": self.end,
        }


# ==========================================
# Presets and factory
# ==========================================

MULTIPLIER_PRESETS: Dict[str, Callable[[], MultiplierPolicy]] = {
    "conservative": lambda: TieredMultiplierPolicy(CONSERVATIVE_MULTIPLIER_TIERS),
    "aggressive": lambda: LinearMultiplierPolicy(1.0, 0.15, 4.0, 5),
    "exponential": lambda: ExponentialMultiplierPolicy(1.0, 1.07, 6.0, 10),
    "balanced": lambda: TieredMultiplierPolicy(),
}


def create_multiplier_policy(
    config: Optional[MultiplierConfig] = None,
    clock: Callable[[], datetime] = now_utc
) -> MultiplierPolicy:
    """
    Build a multiplier policy from config

    Raises:
        ConfigurationError: unknown preset or invalid tier table
    """
    config = config or MultiplierConfig()

    if config.strategy == "tiered":
        policy = TieredMultiplierPolicy(config.custom_tiers)
    elif config.strategy == "linear":
        policy = LinearMultiplierPolicy(**config.linear.model_dump())
    elif config.strategy == "exponential":
        policy = ExponentialMultiplierPolicy(**config.exponential.model_dump())
    else:
        factory = MULTIPLIER_PRESETS.get(config.preset)
        if factory is None:
            raise ConfigurationError(
                f"Unknown multiplier preset '{config.preset}'",
                config_key="multiplier.preset"
            )
        policy = factory()

    if config.seasonal:
        policy = with_event_window(policy, config.seasonal, clock)

    logger.debug(f"Created multiplier policy {type(policy).__name__} (strategy={config.strategy})")
    return policy


def with_event_window(
    policy: MultiplierPolicy,
    event: EventWindow,
    clock: Callable[[], datetime] = now_utc
) -> SeasonalMultiplierPolicy:
    return SeasonalMultiplierPolicy(
        policy,
        seasonal_multiplier=event.multiplier,
        start=event.start,
        end=event.end,
        event_name=event.name,
        clock=clock,
    )


# ==========================================
# Display helpers
# ==========================================

def format_multiplier(multiplier: float) -> str:
    return f"{multiplier:.1f}x"


def get_multiplier_color(multiplier: float) -> str:
    if multiplier < 1.5:
        return "#22c55e"
    if multiplier < 2.0:
        return "#f97316"
    if multiplier < 2.5:
        return "#3b82f6"
    if multiplier < 3.0:
        return "#8b5cf6"
    return "#eab308"


def get_multiplier_description(multiplier: float) -> str:
    if multiplier == 1.0:
        return "Standard rewards"
    if multiplier < 1.5:
        return "Small bonus"
    if multiplier < 2.0:
        return "Good bonus"
    if multiplier < 2.5:
        return "Great bonus"
    if multiplier < 3.0:
        return "Excellent bonus"
    return "Maximum bonus"
