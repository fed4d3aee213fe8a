"""Unit tests for multiplier policies (checkin_rewards/gamification/multipliers.py)"""
import pytest
from datetime import datetime, timedelta, timezone

from checkin_rewards.config import EventWindow, MultiplierConfig
from checkin_rewards.exceptions import ConfigurationError
from checkin_rewards.gamification.multipliers import (
    DEFAULT_MULTIPLIER_TIERS,
    MULTIPLIER_PRESETS,
    ExponentialMultiplierPolicy,
    LinearMultiplierPolicy,
    SeasonalMultiplierPolicy,
    TieredMultiplierPolicy,
    create_multiplier_policy,
    format_multiplier,
    get_multiplier_color,
    get_multiplier_description,
    validate_tiers,
)
from checkin_rewards.models.checkin import MultiplierTier


def all_policies():
    return [
        TieredMultiplierPolicy(),
        LinearMultiplierPolicy(),
        ExponentialMultiplierPolicy(),
    ] + [factory() for factory in MULTIPLIER_PRESETS.values()]


# ============================================================================
# Tiered Policy Tests
# ============================================================================

def test_default_tier_boundaries():
    """Test the default table at each boundary"""
    policy = TieredMultiplierPolicy()

    expected = {
        0: (1.0, "Beginner"),
        6: (1.0, "Beginner"),
        7: (1.5, "Consistent"),
        29: (1.5, "Consistent"),
        30: (2.0, "Dedicated"),
        99: (2.0, "Dedicated"),
        100: (2.5, "Master"),
        364: (2.5, "Master"),
        365: (3.0, "Legend"),
        5000: (3.0, "Legend"),
    }
    for streak, (multiplier, name) in expected.items():
        assert policy.calculate_multiplier(streak) == multiplier, f"streak {streak}"
        assert policy.get_current_tier(streak).name == name, f"streak {streak}"


def test_next_tier_and_progress():
    policy = TieredMultiplierPolicy()

    assert policy.get_next_tier(0).name == "Consistent"
    assert policy.get_next_tier(365) is None

    assert policy.get_progress_to_next_tier(0) == 0.0
    assert policy.get_progress_to_next_tier(7) == 0.0
    assert policy.get_progress_to_next_tier(18) == pytest.approx(11 / 23)
    assert policy.get_progress_to_next_tier(400) == 1.0


def test_tier_metadata_present():
    for tier in DEFAULT_MULTIPLIER_TIERS:
        assert tier.metadata.icon
        assert tier.metadata.color.startswith("#")


def test_custom_tiers_used():
    tiers = [
        MultiplierTier(min_streak=0, max_streak=2, multiplier=1.0, name="A"),
        MultiplierTier(min_streak=3, max_streak=None, multiplier=4.0, name="B"),
    ]
    policy = TieredMultiplierPolicy(tiers)

    assert policy.calculate_multiplier(2) == 1.0
    assert policy.calculate_multiplier(3) == 4.0
    assert [t.name for t in policy.get_tiers()] == ["A", "B"]


# ============================================================================
# Tier Validation Tests
# ============================================================================

def _tier(min_streak, max_streak, multiplier, name="T"):
    return MultiplierTier(min_streak=min_streak, max_streak=max_streak, multiplier=multiplier, name=name)


@pytest.mark.parametrize("tiers,fragment", [
    ([], "must not be empty"),
    ([_tier(1, None, 1.0)], "must start at streak 0"),
    ([_tier(0, 5, 1.0, "A"), _tier(7, None, 1.5, "B")], "gap or overlap"),
    ([_tier(0, 5, 1.0, "A"), _tier(5, None, 1.5, "B")], "gap or overlap"),
    ([_tier(0, 5, 1.0, "A"), _tier(6, 9, 1.5, "B")], "must be unbounded"),
    ([_tier(0, None, 1.0, "A"), _tier(6, None, 1.5, "B")], "Only the last tier"),
    ([_tier(0, 5, 2.0, "A"), _tier(6, None, 1.5, "B")], "is lower than"),
])
def test_validate_tiers_rejects(tiers, fragment):
    with pytest.raises(ConfigurationError) as exc_info:
        validate_tiers(tiers)

    assert fragment in exc_info.value.message
    assert exc_info.value.config_key == "multiplier.custom_tiers"


def test_validate_tiers_accepts_defaults():
    validate_tiers(DEFAULT_MULTIPLIER_TIERS)


# ============================================================================
# Linear / Exponential Tests
# ============================================================================

def test_linear_multiplier():
    policy = LinearMultiplierPolicy(base_multiplier=1.0, increment=0.1, max_multiplier=3.0, interval_days=7)

    assert policy.calculate_multiplier(0) == 1.0
    assert policy.calculate_multiplier(6) == 1.0
    assert policy.calculate_multiplier(7) == pytest.approx(1.1)
    assert policy.calculate_multiplier(70) == pytest.approx(2.0)
    assert policy.calculate_multiplier(1000) == 3.0


def test_linear_rejects_negative_increment():
    with pytest.raises(ConfigurationError):
        LinearMultiplierPolicy(increment=-0.1)


def test_linear_tiers_end_unbounded():
    policy = LinearMultiplierPolicy(1.0, 0.5, 2.0, 7)
    tiers = policy.get_tiers()

    assert [t.name for t in tiers] == ["Level 1", "Level 2", "Max Level"]
    assert tiers[-1].min_streak == 14
    assert tiers[-1].max_streak is None
    assert tiers[-1].multiplier == 2.0


def test_exponential_multiplier():
    policy = ExponentialMultiplierPolicy(base_multiplier=1.0, rate=2.0, max_multiplier=5.0, interval_days=7)

    assert policy.calculate_multiplier(0) == 1.0
    assert policy.calculate_multiplier(7) == 2.0
    assert policy.calculate_multiplier(14) == 4.0
    assert policy.calculate_multiplier(21) == 5.0
    assert policy.get_tiers()[-1].name == "Ultimate"


def test_exponential_rejects_rate_below_one():
    with pytest.raises(ConfigurationError):
        ExponentialMultiplierPolicy(rate=0.9)


def test_generated_tiers_stop_at_a_year():
    """Test a policy that never reaches its cap still ends with one unbounded tier"""
    policy = LinearMultiplierPolicy(1.0, 0.0, 3.0, 7)
    tiers = policy.get_tiers()

    assert tiers[-1].max_streak is None
    assert tiers[-1].min_streak >= 365
    assert all(t.max_streak is not None for t in tiers[:-1])


# ============================================================================
# Policy Invariants
# ============================================================================

def test_policies_are_non_decreasing():
    """Test multiplier(s) <= multiplier(s + 1) for every policy"""
    for policy in all_policies():
        previous = policy.calculate_multiplier(0)
        for streak in range(1, 401):
            current = policy.calculate_multiplier(streak)
            assert current >= previous, f"{type(policy).__name__} decreases at {streak}"
            previous = current


def test_policy_tiers_partition_streaks():
    """Test every streak falls in exactly one tier"""
    for policy in all_policies():
        tiers = policy.get_tiers()
        for streak in range(0, 401):
            matches = [t for t in tiers if t.contains(streak)]
            assert len(matches) == 1, f"{type(policy).__name__} streak {streak}: {len(matches)} tiers"


def test_progress_is_clamped():
    for policy in all_policies():
        for streak in range(0, 401, 13):
            progress = policy.get_progress_to_next_tier(streak)
            assert 0.0 <= progress <= 1.0


# ============================================================================
# Seasonal Policy Tests
# ============================================================================

def test_seasonal_active_scales_and_relabels(now):
    policy = SeasonalMultiplierPolicy(
        TieredMultiplierPolicy(),
        seasonal_multiplier=2.0,
        start=now - timedelta(days=1),
        end=now + timedelta(days=1),
        event_name="Spring",
        clock=lambda: now,
    )

    assert policy.is_event_active() is True
    assert policy.calculate_multiplier(7) == 3.0
    assert policy.get_tiers()[0].name == "Spring Beginner"
    assert policy.get_tiers()[1].multiplier == 3.0
    assert "Spring Bonus!" in policy.get_tiers()[0].metadata.description


def test_seasonal_inactive_passes_through(now):
    policy = SeasonalMultiplierPolicy(
        TieredMultiplierPolicy(),
        seasonal_multiplier=2.0,
        start=now + timedelta(hours=1),
        clock=lambda: now,
    )

    assert policy.is_event_active() is False
    assert policy.calculate_multiplier(7) == 1.5
    assert policy.get_tiers()[0].name == "Beginner"
    assert policy.get_event_info()["is_active"] is False


def test_seasonal_window_is_inclusive(now):
    policy = SeasonalMultiplierPolicy(TieredMultiplierPolicy(), 2.0, start=now, end=now, clock=lambda: now)
    assert policy.is_event_active() is True


# ============================================================================
# Factory Tests
# ============================================================================

def test_create_policy_default_is_balanced():
    policy = create_multiplier_policy()

    assert isinstance(policy, TieredMultiplierPolicy)
    assert policy.calculate_multiplier(7) == 1.5


def test_create_policy_strategies():
    assert isinstance(create_multiplier_policy(MultiplierConfig(strategy="linear")), LinearMultiplierPolicy)
    assert isinstance(create_multiplier_policy(MultiplierConfig(strategy="exponential")), ExponentialMultiplierPolicy)
    assert isinstance(
        create_multiplier_policy(MultiplierConfig(strategy="preset", preset="aggressive")),
        LinearMultiplierPolicy
    )


def test_create_policy_unknown_preset():
    with pytest.raises(ConfigurationError) as exc_info:
        create_multiplier_policy(MultiplierConfig(strategy="preset", preset="nope"))

    assert exc_info.value.config_key == "multiplier.preset"


def test_create_policy_wraps_seasonal(now):
    config = MultiplierConfig(
        strategy="tiered",
        seasonal=EventWindow(name="Launch", multiplier=1.5, start=now - timedelta(days=1)),
    )
    policy = create_multiplier_policy(config, clock=lambda: now)

    assert isinstance(policy, SeasonalMultiplierPolicy)
    assert policy.calculate_multiplier(0) == 1.5


# ============================================================================
# Display Helper Tests
# ============================================================================

def test_display_helpers():
    assert format_multiplier(1.5) == "1.5x"
    assert format_multiplier(2) == "2.0x"
    assert get_multiplier_color(1.0) == "#22c55e"
    assert get_multiplier_color(3.0) == "#eab308"
    assert get_multiplier_description(1.0) == "Standard rewards"
    assert get_multiplier_description(3.5) == "Maximum bonus"
