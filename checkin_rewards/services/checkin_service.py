"""
CheckinService - Daily Check-in Orchestration

Runs one check-in attempt end to end:
1. Preconditions (profile id, wallet address, wallet when attesting)
2. Eligibility: has the activity log seen a check-in today?
3. Streak projection: new_streak = current_streak + 1
4. Reward: multiplier for new_streak, then the XP breakdown
5. Attestation (skipped entirely when disabled; failure aborts with no XP)
6. Commit through the ledger (balance, then activity record)

perform_checkin never raises; every failure becomes a CheckinResult with
success=False, a message and a machine-readable error_code.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from checkin_rewards.attestation.client import AttestationCreator
from checkin_rewards.exceptions import (
    AttestationError,
    CheckinError,
    DuplicateCheckinError,
    StreakCalculationError,
)
from checkin_rewards.gamification.ledger import RewardLedger, build_activity_payload
from checkin_rewards.gamification.multipliers import MultiplierPolicy
from checkin_rewards.gamification.streak_system import StreakTracker
from checkin_rewards.gamification.xp_system import RewardCalculator
from checkin_rewards.models.checkin import (
    CheckinPreview,
    CheckinResult,
    CheckinStatistics,
    CheckinStatus,
    MultiplierTier,
    RewardBreakdown,
    StreakState,
)
from checkin_rewards.observability.metrics import record_checkin_attempt
from checkin_rewards.utils.datetime_helpers import next_day_start

logger = logging.getLogger(__name__)

WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

ALREADY_CHECKED_IN_MESSAGE = "Already checked in today"

STATISTICS_WINDOWS = ("today", "week", "month")


class CheckinService:
    """
    Service for daily check-ins.

    Responsibilities:
    - Eligibility and precondition checks
    - Streak projection and reward computation
    - Optional attestation of the check-in
    - Committing the reward through the ledger
    - Read-only status, preview and statistics
    """

    def __init__(
        self,
        streak_tracker: StreakTracker,
        multiplier_policy: MultiplierPolicy,
        reward_calculator: RewardCalculator,
        ledger: RewardLedger,
        attestation: Optional[AttestationCreator] = None,
        attestation_enabled: bool = False,
        schema_id: Optional[str] = None
    ):
        """
        Initialize CheckinService.

        Args:
            streak_tracker: Derives streaks from the activity log
            multiplier_policy: Streak -> multiplier and tier
            reward_calculator: Streak and multiplier -> XP breakdown
            ledger: Commits XP and the activity record
            attestation: Attestation creator, required when attestation_enabled
            attestation_enabled: Administrative switch for the attestation step
            schema_id: Attestation schema for check-ins
        """
        self.streak_tracker = streak_tracker
        self.multiplier_policy = multiplier_policy
        self.reward_calculator = reward_calculator
        self.ledger = ledger
        self.attestation = attestation
        self.attestation_enabled = attestation_enabled
        self.schema_id = schema_id
        logger.debug(f"CheckinService initialized (attestation_enabled={attestation_enabled})")

    @property
    def activity_log(self):
        return self.streak_tracker.activity_log

    def _now(self) -> datetime:
        return self.streak_tracker.now()

    # ==========================================
    # Check-in
    # ==========================================

    def _check_preconditions(
        self,
        user_id: Optional[str],
        user_address: Optional[str],
        wallet: Any
    ) -> Optional[Tuple[str, str]]:
        """(message, code) for the first unmet precondition, or None"""
        if not user_id:
            return "User profile ID required", "MISSING_PROFILE_ID"
        if not user_address or not WALLET_ADDRESS_PATTERN.match(user_address):
            return "Invalid wallet address", "INVALID_WALLET_ADDRESS"
        if self.attestation_enabled and not wallet:
            return "Wallet not connected", "WALLET_NOT_CONNECTED"
        return None

    async def perform_checkin(
        self,
        user_id: str,
        user_address: str,
        greeting: str = "GM",
        wallet: Any = None,
        contexts: Optional[Sequence[str]] = None
    ) -> CheckinResult:
        """
        Perform the daily check-in.

        Args:
            user_id: Profile id; streaks and XP are keyed by it
            user_address: Wallet address, recipient of the attestation
            greeting: Free text stored with the check-in
            wallet: Signer for the attestation
            contexts: Named reward contexts (e.g. "weekend")

        Returns:
            CheckinResult; never raises
        """
        failed = self._check_preconditions(user_id, user_address, wallet)
        if failed:
            message, code = failed
            logger.info(f"Check-in precondition failed for user {user_id}: {message}")
            record_checkin_attempt("precondition_failed")
            return CheckinResult(success=False, error=message, error_code=code)

        current_streak = 0
        try:
            if await self.streak_tracker.has_checked_in_today(user_id):
                current_streak = await self.streak_tracker.calculate_streak(user_id)
                logger.warning(f"User {user_id} already checked in today (streak {current_streak})")
                record_checkin_attempt("already_checked_in")
                return self._already_checked_in(current_streak)

            current_streak = await self.streak_tracker.calculate_streak(user_id)
            new_streak = current_streak + 1
            multiplier = self.multiplier_policy.calculate_multiplier(new_streak)
            breakdown = self.reward_calculator.calculate_xp_breakdown(new_streak, multiplier, contexts)
            xp_earned = breakdown.total_xp
            now = self._now()

            logger.debug(
                f"Check-in for user {user_id}: streak {current_streak} -> {new_streak}, "
                f"multiplier {multiplier}, xp {xp_earned}"
            )

            attestation_ref = None
            if self.attestation_enabled:
                attestation_ref = await self._attest(user_id, user_address, greeting, wallet, xp_earned, now)

            payload = build_activity_payload(
                greeting=greeting,
                streak=new_streak,
                breakdown=breakdown,
                multiplier=multiplier,
                tier=self.multiplier_policy.get_current_tier(new_streak),
                attestation_ref=attestation_ref,
                timestamp=now,
            )
            await self.ledger.update_balance_with_activity(user_id, xp_earned, payload, created_at=now)

        except DuplicateCheckinError:
            logger.warning(f"Duplicate check-in rejected by store for user {user_id}")
            record_checkin_attempt("already_checked_in")
            return self._already_checked_in(current_streak)

        except AttestationError as e:
            record_checkin_attempt("attestation_failed")
            return CheckinResult(success=False, error=e.message, error_code=e.code, new_streak=current_streak)

        except CheckinError as e:
            record_checkin_attempt("error")
            return CheckinResult(success=False, error=e.message, error_code=e.code, new_streak=current_streak)

        except Exception as e:
            logger.error(f"Unexpected error during check-in for user {user_id}: {e}", exc_info=True)
            record_checkin_attempt("error")
            return CheckinResult(
                success=False,
                error="Check-in failed",
                error_code="UNEXPECTED_ERROR",
                new_streak=current_streak
            )

        logger.info(f"User {user_id} checked in: streak {new_streak}, +{xp_earned} XP")
        record_checkin_attempt("success", xp_earned)
        return CheckinResult(
            success=True,
            xp_earned=xp_earned,
            new_streak=new_streak,
            attestation_ref=attestation_ref,
            breakdown=breakdown,
        )

    @staticmethod
    def _already_checked_in(current_streak: int) -> CheckinResult:
        return CheckinResult(
            success=False,
            error=ALREADY_CHECKED_IN_MESSAGE,
            error_code=DuplicateCheckinError.default_code,
            new_streak=current_streak,
        )

    async def _attest(
        self,
        user_id: str,
        user_address: str,
        greeting: str,
        wallet: Any,
        xp_earned: int,
        now: datetime
    ) -> str:
        """
        Create the check-in attestation

        Returns:
            Attestation reference id

        Raises:
            AttestationError: creator missing, call raised, or call reported failure
        """
        if self.attestation is None or not self.schema_id:
            raise AttestationError(
                "Attestation is enabled but no attestation client or schema is configured",
                user_id=user_id
            )

        payload = {
            "wallet_address": user_address,
            "greeting": greeting,
            "timestamp": int(now.timestamp()),
            "user_id": user_id,
            "xp_gained": xp_earned,
        }

        try:
            result = await self.attestation.create_attestation(self.schema_id, user_address, payload, wallet)
        except Exception as e:
            raise AttestationError(f"Attestation failed: {e}", user_id=user_id, cause=e)

        if not result.success or not result.reference_id:
            raise AttestationError(
                f"Attestation failed: {result.error or 'no reference id returned'}",
                user_id=user_id
            )

        return result.reference_id

    async def validate_checkin(
        self,
        user_address: str,
        user_id: str,
        wallet: Any = None
    ) -> Tuple[bool, Optional[str]]:
        """
        Dry-run the check-in gates without computing or committing anything

        Returns:
            (is_valid, reason)
        """
        try:
            failed = self._check_preconditions(user_id, user_address, wallet)
            if failed:
                return False, failed[0]

            if await self.streak_tracker.has_checked_in_today(user_id):
                return False, ALREADY_CHECKED_IN_MESSAGE

            return True, None
        except CheckinError as e:
            logger.error(f"Error validating check-in for user {user_id}: {e.message}")
            return False, "Validation error occurred"

    # ==========================================
    # Read paths
    # ==========================================

    async def get_status(self, user_id: str, timezone: Optional[str] = None) -> CheckinStatus:
        """
        Whether the user can check in now, and when the next check-in opens

        Raises:
            StreakCalculationError: activity log unavailable
            CheckinError: CHECKIN_STATUS_ERROR for anything else
        """
        try:
            has_checked_in = await self.streak_tracker.has_checked_in_today(user_id)
        except StreakCalculationError:
            raise
        except Exception as e:
            raise CheckinError(
                f"Failed to get check-in status: {e}",
                code="CHECKIN_STATUS_ERROR",
                user_id=user_id,
                cause=e
            )

        if not has_checked_in:
            return CheckinStatus(can_checkin=True, has_checked_in_today=False)

        now = self._now()
        next_available = next_day_start(now, timezone or self.streak_tracker.timezone)
        return CheckinStatus(
            can_checkin=False,
            has_checked_in_today=True,
            next_checkin_available=next_available,
            time_until_next_checkin=next_available - now,
        )

    async def get_preview(self, user_id: str, contexts: Optional[Sequence[str]] = None) -> CheckinPreview:
        """
        What the next check-in would award, without performing it

        Raises:
            StreakCalculationError: activity log unavailable
            CheckinError: PREVIEW_ERROR for anything else
        """
        try:
            current_streak = await self.streak_tracker.calculate_streak(user_id)
            next_streak = current_streak + 1

            current_multiplier = self.multiplier_policy.calculate_multiplier(current_streak)
            next_multiplier = self.multiplier_policy.calculate_multiplier(next_streak)
            breakdown = self.reward_calculator.calculate_xp_breakdown(next_streak, next_multiplier, contexts)
        except StreakCalculationError:
            raise
        except Exception as e:
            raise CheckinError(
                f"Failed to generate check-in preview: {e}",
                code="PREVIEW_ERROR",
                user_id=user_id,
                cause=e
            )

        return CheckinPreview(
            current_streak=current_streak,
            next_streak=next_streak,
            current_multiplier=current_multiplier,
            next_multiplier=next_multiplier,
            preview_xp=breakdown.total_xp,
            breakdown=breakdown,
        )

    async def get_streak_info(self, user_id: str) -> StreakState:
        return await self.streak_tracker.get_streak_info(user_id)

    async def get_current_breakdown(self, user_id: str) -> RewardBreakdown:
        """Breakdown for the user's current streak (what the last check-in was worth)"""
        streak = await self.streak_tracker.calculate_streak(user_id)
        multiplier = self.multiplier_policy.calculate_multiplier(streak)
        return self.reward_calculator.calculate_xp_breakdown(streak, multiplier)

    def get_tiers(self) -> List[MultiplierTier]:
        return self.multiplier_policy.get_tiers()

    def get_current_multiplier(self, streak: int) -> float:
        return self.multiplier_policy.calculate_multiplier(streak)

    def get_current_tier(self, streak: int) -> Optional[MultiplierTier]:
        return self.multiplier_policy.get_current_tier(streak)

    def get_next_tier(self, streak: int) -> Optional[MultiplierTier]:
        return self.multiplier_policy.get_next_tier(streak)

    def get_progress_to_next_tier(self, streak: int) -> float:
        return self.multiplier_policy.get_progress_to_next_tier(streak)

    def _window_start(self, timeframe: str, now: datetime) -> datetime:
        if timeframe == "week":
            return now - timedelta(days=7)
        if timeframe == "month":
            return now - timedelta(days=30)
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    async def get_statistics(self, timeframe: str = "today") -> CheckinStatistics:
        """
        Aggregate check-ins over today / the last 7 days / the last 30 days

        Users whose streak can't be computed are left out of the average.

        Raises:
            CheckinError: STATISTICS_ERROR on unknown timeframe or activity log failure
        """
        if timeframe not in STATISTICS_WINDOWS:
            raise CheckinError(
                f"Unknown statistics timeframe '{timeframe}'",
                code="STATISTICS_ERROR",
                details={"timeframe": timeframe}
            )

        now = self._now()
        try:
            rows = await self.activity_log.count_checkins_in_window(self._window_start(timeframe, now), now)
        except Exception as e:
            raise CheckinError(
                f"Failed to get check-in statistics: {e}",
                code="STATISTICS_ERROR",
                details={"timeframe": timeframe},
                cause=e
            )

        user_ids = list(dict.fromkeys(row["user_id"] for row in rows))
        streaks = await asyncio.gather(
            *(self.streak_tracker.calculate_streak(uid) for uid in user_ids),
            return_exceptions=True
        )

        known = []
        for uid, streak in zip(user_ids, streaks):
            if isinstance(streak, Exception):
                logger.warning(f"Skipping user {uid} in statistics: {streak}")
            else:
                known.append(streak)

        average_streak = sum(known) / len(known) if known else 0.0

        return CheckinStatistics(
            timeframe=timeframe,
            total_checkins=len(rows),
            unique_users=len(user_ids),
            average_streak=round(average_streak, 2),
            total_xp_awarded=sum(row.get("points_earned") or 0 for row in rows),
        )

    async def get_health_status(self) -> Dict[str, Any]:
        """
        Probe the activity log and report which collaborators are wired

        Returns:
            {'status': healthy|degraded, 'services': {...}, 'timestamp': datetime}
        """
        now = self._now()
        services: Dict[str, bool] = {}

        try:
            await self.activity_log.count_checkins_in_window(now, now)
            services["database"] = True
        except Exception as e:
            logger.error(f"Check-in health probe failed: {e}")
            services["database"] = False

        services["attestation_service"] = not self.attestation_enabled or self.attestation is not None
        services["streak_tracker"] = self.streak_tracker is not None
        services["multiplier_policy"] = self.multiplier_policy is not None
        services["reward_calculator"] = self.reward_calculator is not None
        services["ledger"] = self.ledger is not None

        return {
            "status": "healthy" if all(services.values()) else "degraded",
            "services": services,
            "timestamp": now,
        }
