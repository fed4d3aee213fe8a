"""Global test fixtures and utilities for checkin-rewards tests"""
import pytest
from unittest.mock import AsyncMock, MagicMock, Mock
from datetime import datetime, timedelta, timezone

from checkin_rewards.gamification.ledger import InMemoryRewardLedger
from checkin_rewards.gamification.mock_store import InMemoryActivityLog
from checkin_rewards.gamification.multipliers import TieredMultiplierPolicy
from checkin_rewards.gamification.streak_system import StreakTracker
from checkin_rewards.gamification.xp_system import StandardXPCalculator
from checkin_rewards.models.checkin import AttestationResult
from checkin_rewards.services.checkin_service import CheckinService


# ============================================================================
# Clock Fixtures
# ============================================================================

class FakeClock:
    """Settable clock returning aware UTC datetimes"""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def now():
    """Fixed 'now' used across tests: 2024-03-10 15:00 UTC"""
    return datetime(2024, 3, 10, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FakeClock(now)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def mock_db_cursor():
    """Mock database cursor with standard query results"""
    cursor = AsyncMock()
    cursor.fetchone = AsyncMock(return_value=None)
    cursor.fetchall = AsyncMock(return_value=[])
    cursor.execute = AsyncMock()
    return cursor


@pytest.fixture
def mock_db(mock_db_cursor):
    """Mock Database whose connection() yields a connection with mock_db_cursor"""
    conn = MagicMock()
    conn.cursor.return_value.__aenter__.return_value = mock_db_cursor
    conn.commit = AsyncMock()

    db = MagicMock()
    db.connection.return_value.__aenter__.return_value = conn
    db.conn = conn
    return db


# ============================================================================
# User Fixtures
# ============================================================================

@pytest.fixture
def test_user_id():
    """Standard test profile ID"""
    return "profile-123"


@pytest.fixture
def test_wallet_address():
    """Standard well-formed wallet address"""
    return "0x" + "a1" * 20


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def activity_log(clock):
    return InMemoryActivityLog(clock=clock)


@pytest.fixture
def ledger(activity_log, clock):
    return InMemoryRewardLedger(activity_log=activity_log, clock=clock)


@pytest.fixture
def streak_tracker(activity_log, clock):
    return StreakTracker(activity_log, clock=clock)


@pytest.fixture
def mock_attestation():
    """Attestation creator that always succeeds"""
    creator = Mock()
    creator.create_attestation = AsyncMock(
        return_value=AttestationResult(success=True, reference_id="0xattest")
    )
    return creator


@pytest.fixture
def make_service(streak_tracker, ledger):
    """Factory for a CheckinService over the in-memory stores"""
    def _make(attestation=None, attestation_enabled=False, schema_id="0xschema", **overrides):
        return CheckinService(
            streak_tracker=overrides.get("streak_tracker", streak_tracker),
            multiplier_policy=overrides.get("multiplier_policy", TieredMultiplierPolicy()),
            reward_calculator=overrides.get("reward_calculator", StandardXPCalculator()),
            ledger=overrides.get("ledger", ledger),
            attestation=attestation,
            attestation_enabled=attestation_enabled,
            schema_id=schema_id,
        )
    return _make


@pytest.fixture
def checkin_service(make_service):
    return make_service()
