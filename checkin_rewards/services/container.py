"""
Check-in Container - explicit wiring of the check-in engine

Builds an owned CheckinService from a CheckinEngineConfig and injected
persistence. Collaborators are lazy-loaded on first access. There is no
global instance: the host creates one container at startup, tests create
their own with in-memory stores.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
import logging

from checkin_rewards.attestation.client import AttestationCreator, HttpAttestationClient
from checkin_rewards.config import (
    CheckinEngineConfig,
    EventWindow,
    LedgerConfig,
    MultiplierConfig,
    RewardCalculatorConfig,
)
from checkin_rewards.db.connection import Database
from checkin_rewards.db.interfaces import ActivityLog, BalanceStore
from checkin_rewards.db.queries.checkin import PostgresActivityLog, PostgresBalanceStore
from checkin_rewards.exceptions import ConfigurationError
from checkin_rewards.gamification.ledger import (
    BatchedRewardLedger,
    CachedRewardLedger,
    DirectRewardLedger,
    InMemoryRewardLedger,
    RewardLedger,
)
from checkin_rewards.gamification.multipliers import MULTIPLIER_PRESETS, create_multiplier_policy
from checkin_rewards.gamification.streak_system import StreakTracker
from checkin_rewards.gamification.xp_system import XP_PRESETS, create_reward_calculator
from checkin_rewards.services.checkin_service import CheckinService
from checkin_rewards.utils.datetime_helpers import now_utc

logger = logging.getLogger(__name__)

# Batched ledgers defer the activity append past the eligibility check
BATCHED_CHECKIN_LEDGER_ERROR = "Batched ledger cannot back check-ins; use the direct or cached ledger"


def create_ledger(
    config: LedgerConfig,
    balance_store: BalanceStore,
    activity_log: ActivityLog,
    clock: Callable[[], datetime] = now_utc
) -> RewardLedger:
    """Build the ledger selected by config.strategy"""
    if config.strategy == "memory":
        return InMemoryRewardLedger(activity_log=activity_log, clock=clock)

    direct = DirectRewardLedger(balance_store, activity_log, clock=clock)
    if config.strategy == "batched":
        return BatchedRewardLedger(direct, config.batch_size, config.flush_interval_seconds)
    if config.strategy == "cached":
        return CachedRewardLedger(direct, config.cache_ttl_seconds)
    return direct


@dataclass
class CheckinContainer:
    """
    Owns one check-in engine.

    Persistence (activity_log, balance_store) and the optional attestation
    client are injected; everything else is built from config on demand.
    A batched ledger can be built for bulk grants but cannot back the
    check-in service.
    """

    config: CheckinEngineConfig
    activity_log: ActivityLog
    balance_store: BalanceStore
    attestation: Optional[AttestationCreator] = None
    clock: Callable[[], datetime] = now_utc

    _streak_tracker: Optional[StreakTracker] = field(default=None, init=False, repr=False)
    _multiplier_policy: Optional[object] = field(default=None, init=False, repr=False)
    _reward_calculator: Optional[object] = field(default=None, init=False, repr=False)
    _ledger: Optional[RewardLedger] = field(default=None, init=False, repr=False)
    _checkin_service: Optional[CheckinService] = field(default=None, init=False, repr=False)

    @property
    def streak_tracker(self) -> StreakTracker:
        if self._streak_tracker is None:
            streak = self.config.streak
            self._streak_tracker = StreakTracker(
                self.activity_log,
                max_streak_gap_hours=streak.max_streak_gap_hours,
                timezone=streak.timezone,
                at_risk_hours=streak.at_risk_hours,
                clock=self.clock,
            )
            logger.debug("StreakTracker instantiated")
        return self._streak_tracker

    @property
    def multiplier_policy(self):
        if self._multiplier_policy is None:
            self._multiplier_policy = create_multiplier_policy(self.config.multiplier, clock=self.clock)
        return self._multiplier_policy

    @property
    def reward_calculator(self):
        if self._reward_calculator is None:
            self._reward_calculator = create_reward_calculator(self.config.rewards, clock=self.clock)
        return self._reward_calculator

    @property
    def ledger(self) -> RewardLedger:
        if self._ledger is None:
            self._ledger = create_ledger(self.config.ledger, self.balance_store, self.activity_log, self.clock)
            logger.debug(f"{type(self._ledger).__name__} instantiated")
        return self._ledger

    @property
    def checkin_service(self) -> CheckinService:
        if self._checkin_service is None:
            if self.config.ledger.strategy == "batched":
                raise ConfigurationError(BATCHED_CHECKIN_LEDGER_ERROR, config_key="ledger.strategy")
            self._checkin_service = CheckinService(
                streak_tracker=self.streak_tracker,
                multiplier_policy=self.multiplier_policy,
                reward_calculator=self.reward_calculator,
                ledger=self.ledger,
                attestation=self.attestation,
                attestation_enabled=self.config.attestation_enabled,
                schema_id=self.config.checkin_schema_id,
            )
            logger.debug("CheckinService instantiated")
        return self._checkin_service

    async def close(self) -> None:
        """Flush a batched ledger, if one was built"""
        if isinstance(self._ledger, BatchedRewardLedger):
            await self._ledger.close()


def create_checkin_service(
    config: CheckinEngineConfig,
    activity_log: ActivityLog,
    balance_store: BalanceStore,
    attestation: Optional[AttestationCreator] = None,
    clock: Callable[[], datetime] = now_utc
) -> CheckinService:
    """
    Build a ready CheckinService

    Raises:
        ConfigurationError: config is inconsistent (see validate_checkin_config)
    """
    problems = validate_checkin_config(config)
    if config.attestation_enabled and attestation is None:
        problems.append("attestation is enabled but no attestation client was provided")
    if problems:
        raise ConfigurationError(f"Invalid check-in configuration: {'; '.join(problems)}")

    container = CheckinContainer(config, activity_log, balance_store, attestation, clock)
    service = container.checkin_service
    logger.info(
        f"Check-in service created (multiplier={config.multiplier.strategy}, "
        f"rewards={config.rewards.strategy}, ledger={config.ledger.strategy})"
    )
    return service


def create_postgres_container(db: Database, config: CheckinEngineConfig) -> CheckinContainer:
    """
    Container over PostgreSQL stores; the HTTP attestation client is attached
    when attestation is enabled. The pool must be opened by the caller.
    """
    clock = now_utc
    return CheckinContainer(
        config=config,
        activity_log=PostgresActivityLog(db, clock=clock),
        balance_store=PostgresBalanceStore(db),
        attestation=HttpAttestationClient() if config.attestation_enabled else None,
        clock=clock,
    )


# ==========================================
# Engine presets
# ==========================================

def default_config() -> CheckinEngineConfig:
    return CheckinEngineConfig()


def gaming_config() -> CheckinEngineConfig:
    """Aggressive multiplier, generous XP, 30s balance cache"""
    return CheckinEngineConfig(
        multiplier=MultiplierConfig(strategy="preset", preset="aggressive"),
        rewards=RewardCalculatorConfig(strategy="preset", preset="generous"),
        ledger=LedgerConfig(strategy="cached", cache_ttl_seconds=30.0),
    )


def conservative_config() -> CheckinEngineConfig:
    return CheckinEngineConfig(
        multiplier=MultiplierConfig(strategy="preset", preset="conservative"),
        rewards=RewardCalculatorConfig(strategy="preset", preset="conservative"),
    )


def event_config(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    name: str = "Special Event"
) -> CheckinEngineConfig:
    """Seasonal 2.0x multiplier and 1.5x XP boost over the window, 30s balance cache"""
    return CheckinEngineConfig(
        multiplier=MultiplierConfig(
            strategy="tiered",
            seasonal=EventWindow(name=name, multiplier=2.0, start=start, end=end),
        ),
        rewards=RewardCalculatorConfig(
            strategy="standard",
            event=EventWindow(name=name, multiplier=1.5, start=start, end=end),
        ),
        ledger=LedgerConfig(strategy="cached", cache_ttl_seconds=30.0),
    )


ENGINE_PRESETS = {
    "default": default_config,
    "gaming": gaming_config,
    "conservative": conservative_config,
}


def validate_checkin_config(config: CheckinEngineConfig) -> List[str]:
    """
    Human-readable problems with a config; empty when it is usable

    Field-level limits are enforced by the pydantic models; this covers
    cross-field rules and preset names.
    """
    errors: List[str] = []

    if config.multiplier.strategy == "preset" and config.multiplier.preset not in MULTIPLIER_PRESETS:
        errors.append(f"Invalid multiplier preset: {config.multiplier.preset}")

    if config.rewards.strategy == "preset" and config.rewards.preset not in XP_PRESETS:
        errors.append(f"Invalid XP preset: {config.rewards.preset}")

    if config.multiplier.strategy == "tiered" and config.multiplier.custom_tiers is not None:
        try:
            create_multiplier_policy(config.multiplier)
        except ConfigurationError as e:
            errors.append(e.message)

    if config.rewards.strategy == "tiered" and config.rewards.custom_tiers is not None:
        try:
            create_reward_calculator(config.rewards)
        except ConfigurationError as e:
            errors.append(e.message)

    for context, multiplier in (config.rewards.context_multipliers or {}).items():
        if multiplier <= 0:
            errors.append(f"Context multiplier for '{context}' must be positive")

    for label, window in (("Seasonal multiplier", config.multiplier.seasonal), ("XP event", config.rewards.event)):
        if window and window.start and window.end and window.end < window.start:
            errors.append(f"{label} window ends before it starts")

    if config.attestation_enabled and not config.checkin_schema_id:
        errors.append("checkin_schema_id is required when attestation is enabled")

    if config.ledger.strategy == "batched":
        errors.append(BATCHED_CHECKIN_LEDGER_ERROR)

    return errors
