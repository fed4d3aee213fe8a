"""Integration tests for the daily check-in flow over in-memory stores"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

from prometheus_client import REGISTRY

from checkin_rewards.config import CheckinEngineConfig, RewardCalculatorConfig
from checkin_rewards.exceptions import CheckinError
from checkin_rewards.gamification.mock_store import InMemoryActivityLog, InMemoryBalanceStore
from checkin_rewards.gamification.xp_system import ContextualXPCalculator, StandardXPCalculator
from checkin_rewards.models.checkin import AttestationResult
from checkin_rewards.services.container import create_checkin_service


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def attempts(outcome: str) -> float:
    return REGISTRY.get_sample_value("checkin_attempts_total", {"outcome": outcome}) or 0.0


# ============================================================================
# Happy Path
# ============================================================================

@pytest.mark.asyncio
async def test_first_checkin(checkin_service, ledger, activity_log, test_user_id, test_wallet_address, now):
    """Test a new user starts a streak of 1 and earns base XP"""
    before = attempts("success")

    result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is True
    assert result.new_streak == 1
    assert result.xp_earned == 10
    assert result.attestation_ref is None
    assert result.breakdown.total_xp == 10
    assert ledger.balances()[test_user_id] == 10

    records = activity_log.records
    assert len(records) == 1
    assert records[0].created_at == now
    assert records[0].points_earned == 10
    assert records[0].activity_data["streak"] == 1
    assert records[0].activity_data["greeting"] == "GM"
    assert records[0].activity_data["tier_info"]["name"] == "Beginner"
    assert attempts("success") == before + 1


@pytest.mark.asyncio
async def test_continuing_streak_reaches_consistent_tier(
    checkin_service, activity_log, test_user_id, test_wallet_address
):
    """Test seven prior days make today streak 8: (10 + 5 + 7) * 1.5 = 33"""
    activity_log.seed(test_user_id, [utc(2024, 3, day, 19) for day in range(3, 10)])

    result = await checkin_service.perform_checkin(test_user_id, test_wallet_address, greeting="gm frens")

    assert result.success is True
    assert result.new_streak == 8
    assert result.xp_earned == 33
    assert result.breakdown.multiplier == 1.5
    assert activity_log.records[-1].activity_data["greeting"] == "gm frens"


@pytest.mark.asyncio
async def test_gap_resets_streak(checkin_service, activity_log, test_user_id, test_wallet_address):
    """Test a last check-in 30h ago restarts the streak at 1"""
    activity_log.seed(test_user_id, [utc(2024, 3, 8, 9), utc(2024, 3, 9, 9)])

    result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is True
    assert result.new_streak == 1
    assert result.xp_earned == 10


@pytest.mark.asyncio
async def test_daily_checkins_over_a_week(checkin_service, ledger, clock, test_user_id, test_wallet_address):
    """Test eight daily check-ins accumulate streak and XP"""
    earned = []
    for _ in range(8):
        result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)
        assert result.success is True
        earned.append(result.xp_earned)
        clock.advance(days=1)

    assert earned == [10, 11, 12, 13, 14, 15, 31, 33]
    assert ledger.balances()[test_user_id] == sum(earned)


@pytest.mark.asyncio
async def test_service_from_default_config(clock, test_user_id, test_wallet_address):
    """Test the wired default engine end to end"""
    activity_log = InMemoryActivityLog(clock=clock)
    balances = InMemoryBalanceStore()
    service = create_checkin_service(CheckinEngineConfig(), activity_log, balances, clock=clock)

    result = await service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is True
    assert await balances.read_balance(test_user_id) == 10


@pytest.mark.asyncio
async def test_contexts_boost_reward(make_service, test_user_id, test_wallet_address):
    calculator = ContextualXPCalculator(StandardXPCalculator(), {"weekend": 1.5})
    service = make_service(reward_calculator=calculator)

    result = await service.perform_checkin(test_user_id, test_wallet_address, contexts=["weekend"])

    assert result.xp_earned == 15
    assert result.breakdown.sub_breakdown.context_bonus == 5


@pytest.mark.asyncio
async def test_contexts_from_config(clock, test_user_id, test_wallet_address):
    config = CheckinEngineConfig(rewards=RewardCalculatorConfig(context_multipliers={"weekend": 2.0}))
    service = create_checkin_service(config, InMemoryActivityLog(clock=clock), InMemoryBalanceStore(), clock=clock)

    result = await service.perform_checkin(test_user_id, test_wallet_address, contexts=["weekend"])

    assert result.xp_earned == 20


# ============================================================================
# Already Checked In
# ============================================================================

@pytest.mark.asyncio
async def test_second_checkin_same_day(checkin_service, ledger, test_user_id, test_wallet_address, clock):
    """Test a second attempt the same UTC day awards nothing"""
    await checkin_service.perform_checkin(test_user_id, test_wallet_address)
    clock.advance(hours=3)

    result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is False
    assert result.error == "Already checked in today"
    assert result.error_code == "ALREADY_CHECKED_IN"
    assert result.new_streak == 1
    assert result.xp_earned == 0
    assert ledger.balances()[test_user_id] == 10


@pytest.mark.asyncio
async def test_duplicate_rejected_by_store(
    checkin_service, streak_tracker, activity_log, ledger, test_user_id, test_wallet_address, now
):
    """Test a concurrent same-day check-in caught by the store is reported as already checked in"""
    activity_log.seed(test_user_id, [now - timedelta(hours=1)])

    with patch.object(streak_tracker, "has_checked_in_today", AsyncMock(return_value=False)):
        result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is False
    assert result.error == "Already checked in today"
    assert result.error_code == "ALREADY_CHECKED_IN"
    assert result.new_streak == 1
    assert ledger.balances()[test_user_id] == 0
    assert len(activity_log.records) == 1


# ============================================================================
# Preconditions
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("user_id,address,code", [
    ("", "0x" + "a1" * 20, "MISSING_PROFILE_ID"),
    (None, "0x" + "a1" * 20, "MISSING_PROFILE_ID"),
    ("profile-1", "0x1234", "INVALID_WALLET_ADDRESS"),
    ("profile-1", "a1" * 21, "INVALID_WALLET_ADDRESS"),
    ("profile-1", "0x" + "zz" * 20, "INVALID_WALLET_ADDRESS"),
    ("profile-1", None, "INVALID_WALLET_ADDRESS"),
])
async def test_preconditions(checkin_service, ledger, user_id, address, code):
    result = await checkin_service.perform_checkin(user_id, address)

    assert result.success is False
    assert result.error_code == code
    assert ledger.updates == []


@pytest.mark.asyncio
async def test_wallet_required_only_when_attesting(make_service, mock_attestation, test_user_id, test_wallet_address):
    service = make_service(attestation=mock_attestation, attestation_enabled=True)

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet=None)

    assert result.success is False
    assert result.error == "Wallet not connected"
    assert result.error_code == "WALLET_NOT_CONNECTED"
    mock_attestation.create_attestation.assert_not_awaited()


@pytest.mark.asyncio
async def test_validate_checkin(checkin_service, test_user_id, test_wallet_address):
    assert await checkin_service.validate_checkin(test_wallet_address, test_user_id) == (True, None)
    assert await checkin_service.validate_checkin("0x12", test_user_id) == (False, "Invalid wallet address")

    await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert await checkin_service.validate_checkin(test_wallet_address, test_user_id) == (
        False, "Already checked in today"
    )


# ============================================================================
# Attestation
# ============================================================================

@pytest.mark.asyncio
async def test_attestation_disabled_makes_no_call(make_service, mock_attestation, test_user_id, test_wallet_address):
    service = make_service(attestation=mock_attestation, attestation_enabled=False)

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet={"address": test_wallet_address})

    assert result.success is True
    assert result.attestation_ref is None
    mock_attestation.create_attestation.assert_not_awaited()


@pytest.mark.asyncio
async def test_attestation_success(make_service, mock_attestation, activity_log, test_user_id, test_wallet_address, now):
    service = make_service(attestation=mock_attestation, attestation_enabled=True)
    wallet = {"address": test_wallet_address}

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet=wallet)

    assert result.success is True
    assert result.attestation_ref == "0xattest"
    assert activity_log.records[0].activity_data["attestation_ref"] == "0xattest"

    schema_id, recipient, payload, signer = mock_attestation.create_attestation.call_args[0]
    assert schema_id == "0xschema"
    assert recipient == test_wallet_address
    assert signer is wallet
    assert payload == {
        "wallet_address": test_wallet_address,
        "greeting": "GM",
        "timestamp": int(now.timestamp()),
        "user_id": test_user_id,
        "xp_gained": 10,
    }


@pytest.mark.asyncio
async def test_attestation_failure_awards_nothing(make_service, ledger, activity_log, test_user_id, test_wallet_address):
    """Test a failed attestation aborts before any XP is committed"""
    creator = Mock()
    creator.create_attestation = AsyncMock(return_value=AttestationResult(success=False, error="schema revoked"))
    service = make_service(attestation=creator, attestation_enabled=True)

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet="signer")

    assert result.success is False
    assert result.error_code == "ATTESTATION_ERROR"
    assert "schema revoked" in result.error
    assert ledger.updates == []
    assert activity_log.records == []


@pytest.mark.asyncio
async def test_attestation_exception_awards_nothing(make_service, ledger, test_user_id, test_wallet_address):
    creator = Mock()
    creator.create_attestation = AsyncMock(side_effect=RuntimeError("rpc unreachable"))
    service = make_service(attestation=creator, attestation_enabled=True)

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet="signer")

    assert result.success is False
    assert result.error_code == "ATTESTATION_ERROR"
    assert ledger.updates == []


@pytest.mark.asyncio
async def test_attestation_without_reference_id(make_service, ledger, test_user_id, test_wallet_address):
    creator = Mock()
    creator.create_attestation = AsyncMock(return_value=AttestationResult(success=True))
    service = make_service(attestation=creator, attestation_enabled=True)

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet="signer")

    assert result.success is False
    assert result.error_code == "ATTESTATION_ERROR"
    assert ledger.updates == []


@pytest.mark.asyncio
async def test_attestation_enabled_without_client(make_service, test_user_id, test_wallet_address):
    service = make_service(attestation=None, attestation_enabled=True)

    result = await service.perform_checkin(test_user_id, test_wallet_address, wallet="signer")

    assert result.success is False
    assert result.error_code == "ATTESTATION_ERROR"


# ============================================================================
# Ledger Failures
# ============================================================================

@pytest.mark.asyncio
async def test_activity_append_failure_still_succeeds(checkin_service, ledger, test_user_id, test_wallet_address):
    """Test XP is kept and an audit gap recorded when only the activity append fails"""
    ledger.fail_activity_append = True

    result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is True
    assert result.xp_earned == 10
    assert ledger.balances()[test_user_id] == 10
    assert len(ledger.audit_gaps) == 1


@pytest.mark.asyncio
async def test_balance_failure_fails_checkin(checkin_service, ledger, activity_log, test_user_id, test_wallet_address):
    ledger.fail_balance_write = True

    result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is False
    assert result.error_code == "XP_UPDATE_ERROR"
    assert activity_log.records == []


@pytest.mark.asyncio
async def test_store_failure_reported(checkin_service, activity_log, test_user_id, test_wallet_address):
    with patch.object(activity_log, "has_checked_in_today", AsyncMock(side_effect=RuntimeError("db down"))):
        result = await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is False
    assert result.error_code == "STREAK_CALCULATION_ERROR"


@pytest.mark.asyncio
async def test_unexpected_error_never_raises(make_service, test_user_id, test_wallet_address):
    policy = Mock()
    policy.calculate_multiplier = Mock(side_effect=ZeroDivisionError("bad math"))
    service = make_service(multiplier_policy=policy)

    result = await service.perform_checkin(test_user_id, test_wallet_address)

    assert result.success is False
    assert result.error == "Check-in failed"
    assert result.error_code == "UNEXPECTED_ERROR"


# ============================================================================
# Read Paths
# ============================================================================

@pytest.mark.asyncio
async def test_get_status(checkin_service, test_user_id, test_wallet_address):
    status = await checkin_service.get_status(test_user_id)
    assert status.can_checkin is True
    assert status.has_checked_in_today is False
    assert status.next_checkin_available is None

    await checkin_service.perform_checkin(test_user_id, test_wallet_address)

    status = await checkin_service.get_status(test_user_id)
    assert status.can_checkin is False
    assert status.has_checked_in_today is True
    assert status.next_checkin_available == utc(2024, 3, 11)
    assert status.time_until_next_checkin == timedelta(hours=9)


@pytest.mark.asyncio
async def test_get_preview(checkin_service, ledger, activity_log, test_user_id):
    preview = await checkin_service.get_preview(test_user_id)
    assert (preview.current_streak, preview.next_streak, preview.preview_xp) == (0, 1, 10)

    activity_log.seed(test_user_id, [utc(2024, 3, day, 19) for day in range(3, 10)])
    preview = await checkin_service.get_preview(test_user_id)

    assert preview.current_streak == 7
    assert preview.next_streak == 8
    assert preview.current_multiplier == 1.5
    assert preview.next_multiplier == 1.5
    assert preview.preview_xp == 33
    assert ledger.updates == []


@pytest.mark.asyncio
async def test_get_preview_wraps_calculation_errors(make_service, test_user_id):
    calculator = Mock()
    calculator.calculate_xp_breakdown = Mock(side_effect=ValueError("broken"))
    service = make_service(reward_calculator=calculator)

    with pytest.raises(CheckinError) as exc_info:
        await service.get_preview(test_user_id)

    assert exc_info.value.code == "PREVIEW_ERROR"


@pytest.mark.asyncio
async def test_streak_info_and_tiers(checkin_service, activity_log, test_user_id):
    activity_log.seed(test_user_id, [utc(2024, 3, day, 19) for day in range(3, 10)])

    info = await checkin_service.get_streak_info(test_user_id)
    breakdown = await checkin_service.get_current_breakdown(test_user_id)

    assert info.current_streak == 7
    assert info.is_active is True
    assert breakdown.total_xp == 31
    assert len(checkin_service.get_tiers()) == 5
    assert checkin_service.get_current_multiplier(30) == 2.0
    assert checkin_service.get_current_tier(30).name == "Dedicated"
    assert checkin_service.get_next_tier(30).name == "Master"
    assert checkin_service.get_progress_to_next_tier(65) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_get_statistics(checkin_service, activity_log, test_wallet_address):
    activity_log.seed("user-c", [utc(2024, 3, 9, 10)])
    await checkin_service.perform_checkin("user-a", test_wallet_address)
    await checkin_service.perform_checkin("user-b", test_wallet_address)

    today = await checkin_service.get_statistics("today")
    assert today.total_checkins == 2
    assert today.unique_users == 2
    assert today.average_streak == 1.0
    assert today.total_xp_awarded == 20

    week = await checkin_service.get_statistics("week")
    assert week.total_checkins == 3
    assert week.unique_users == 3
    assert week.average_streak == 0.67
    assert week.total_xp_awarded == 30


@pytest.mark.asyncio
async def test_get_statistics_unknown_timeframe(checkin_service):
    with pytest.raises(CheckinError) as exc_info:
        await checkin_service.get_statistics("decade")

    assert exc_info.value.code == "STATISTICS_ERROR"


@pytest.mark.asyncio
async def test_health_status(make_service, checkin_service, activity_log, now):
    health = await checkin_service.get_health_status()
    assert health["status"] == "healthy"
    assert health["services"]["database"] is True
    assert health["timestamp"] == now

    with patch.object(activity_log, "count_checkins_in_window", AsyncMock(side_effect=RuntimeError("down"))):
        health = await checkin_service.get_health_status()
    assert health["status"] == "degraded"
    assert health["services"]["database"] is False

    unwired = make_service(attestation=None, attestation_enabled=True)
    health = await unwired.get_health_status()
    assert health["status"] == "degraded"
    assert health["services"]["attestation_service"] is False
