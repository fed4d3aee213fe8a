"""
XP Ledger

Commits check-in rewards: adds the XP delta to the user's cumulative balance
and appends the activity record that serves as audit trail and streak source.

Commit order for update_balance_with_activity:
1. Balance update (read-modify-write). Failure is fatal and raises XPUpdateError.
2. Activity append. Runs only after the balance write succeeded.
   - DuplicateCheckinError: the store already holds today's check-in. The
     balance update is compensated with -delta and the error re-raised.
   - Any other failure: logged as a warning, counted as an audit gap and
     swallowed. The balance is then ahead of the audit trail; this is an
     accepted inconsistency, XP is the user-facing guarantee.

Ledgers:
- DirectRewardLedger: one store round-trip per call
- BatchedRewardLedger: queues combined updates, flushes on size or timer
- CachedRewardLedger: short-TTL balance read cache, invalidated on write
- InMemoryRewardLedger: test double recording every call
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import time

from checkin_rewards.db.interfaces import ActivityLog, BalanceStore
from checkin_rewards.exceptions import (
    CheckinError,
    DuplicateCheckinError,
    XPUpdateError,
    wrap_persistence_error,
)
from checkin_rewards.gamification.mock_store import InMemoryActivityLog, InMemoryBalanceStore
from checkin_rewards.models.checkin import ActivityRecord, MultiplierTier, RewardBreakdown
from checkin_rewards.observability.metrics import record_audit_gap, record_flush
from checkin_rewards.utils.datetime_helpers import now_utc

logger = logging.getLogger(__name__)

MAX_XP_PER_UPDATE = 10000


def validate_xp_amount(amount: Any) -> Tuple[bool, Optional[str]]:
    """
    Sanity check an XP award before committing it

    Returns:
        (is_valid, reason) - reason is None when valid
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount != amount:
        return False, "XP amount must be a valid number"
    if amount < 0:
        return False, "XP amount cannot be negative"
    if amount > MAX_XP_PER_UPDATE:
        return False, f"XP amount exceeds maximum allowed ({MAX_XP_PER_UPDATE:,})"
    return True, None


def build_activity_payload(
    greeting: str,
    streak: int,
    breakdown: RewardBreakdown,
    multiplier: float,
    tier: Optional[MultiplierTier] = None,
    attestation_ref: Optional[str] = None,
    timestamp: Optional[datetime] = None
) -> Dict[str, Any]:
    """Activity data stored with each check-in record"""
    return {
        "greeting": greeting,
        "streak": streak,
        "attestation_ref": attestation_ref,
        "breakdown": breakdown.model_dump(mode="json"),
        "multiplier": multiplier,
        "tier_info": tier.model_dump(mode="json") if tier else None,
        "timestamp": (timestamp or now_utc()).isoformat(),
        "activity_type": "daily_checkin",
    }


def summarize_updates(updates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Aggregate a list of {'user_id', 'delta'} updates

    Returns:
        total_xp, average_xp, update_count, unique_users
    """
    if not updates:
        return {"total_xp": 0, "average_xp": 0.0, "update_count": 0, "unique_users": 0}

    total = sum(u["delta"] for u in updates)
    return {
        "total_xp": total,
        "average_xp": total / len(updates),
        "update_count": len(updates),
        "unique_users": len({u["user_id"] for u in updates}),
    }


class RewardLedger(ABC):
    """Base class for XP ledgers"""

    @abstractmethod
    async def get_balance(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def update_balance(self, user_id: str, delta: int) -> int:
        """
        Add delta to the user's balance

        Returns:
            New balance

        Raises:
            XPUpdateError: balance read or write failed
        """
        ...

    @abstractmethod
    async def record_activity(
        self,
        user_id: str,
        activity_payload: Dict[str, Any],
        points_earned: int = 0,
        created_at: Optional[datetime] = None
    ) -> None:
        """
        Append an activity record

        Raises:
            DuplicateCheckinError: a check-in already exists for that day
            XPUpdateError: any other append failure
        """
        ...

    async def on_audit_gap(self, user_id: str, delta: int, activity_payload: Dict[str, Any], error: Exception) -> None:
        """Called after a balance write whose activity append failed"""

    async def update_balance_with_activity(
        self,
        user_id: str,
        delta: int,
        activity_payload: Dict[str, Any],
        created_at: Optional[datetime] = None
    ) -> None:
        """
        Commit a check-in reward: balance first, then the audit record

        Raises:
            XPUpdateError: invalid amount or balance update failed
            DuplicateCheckinError: store rejected the activity as a same-day duplicate
        """
        is_valid, reason = validate_xp_amount(delta)
        if not is_valid:
            raise XPUpdateError(reason, user_id=user_id, details={"delta": delta})

        new_balance = await self.update_balance(user_id, delta)

        try:
            await self.record_activity(user_id, activity_payload, points_earned=delta, created_at=created_at)
        except DuplicateCheckinError:
            logger.warning(f"Duplicate check-in for user {user_id}; reverting {delta} XP")
            try:
                await self.update_balance(user_id, -delta)
            except CheckinError as e:
                logger.error(f"Failed to revert {delta} XP for user {user_id} after duplicate check-in: {e}")
                record_audit_gap()
            raise
        except Exception as e:
            logger.warning(
                f"Activity append failed for user {user_id} after balance update "
                f"(+{delta} XP, balance {new_balance}): {e}"
            )
            record_audit_gap()
            await self.on_audit_gap(user_id, delta, activity_payload, e)
            return

        logger.info(f"Committed {delta} XP for user {user_id} (balance {new_balance})")


class DirectRewardLedger(RewardLedger):
    """Ledger writing straight through to a balance store and activity log"""

    def __init__(
        self,
        balance_store: BalanceStore,
        activity_log: ActivityLog,
        clock: Callable[[], datetime] = now_utc
    ):
        self.balance_store = balance_store
        self.activity_log = activity_log
        self._clock = clock

    async def get_balance(self, user_id: str) -> int:
        try:
            return await self.balance_store.read_balance(user_id)
        except Exception as e:
            raise wrap_persistence_error(e, "read_balance", XPUpdateError, user_id)

    async def update_balance(self, user_id: str, delta: int) -> int:
        current = await self.get_balance(user_id)
        new_balance = current + delta

        try:
            await self.balance_store.write_balance(user_id, new_balance)
        except Exception as e:
            raise wrap_persistence_error(
                e, "write_balance", XPUpdateError, user_id,
                details={"current": current, "delta": delta}
            )

        logger.debug(f"Balance for user {user_id}: {current} -> {new_balance}")
        return new_balance

    async def record_activity(self, user_id, activity_payload, points_earned=0, created_at=None) -> None:
        record = ActivityRecord(
            user_id=user_id,
            activity_type=activity_payload.get("activity_type", "daily_checkin"),
            activity_data=activity_payload,
            points_earned=points_earned,
            created_at=created_at or self._clock(),
        )
        try:
            await self.activity_log.insert_activity(record)
        except Exception as e:
            raise wrap_persistence_error(e, "insert_activity", XPUpdateError, user_id)


class BatchedRewardLedger(RewardLedger):
    """
    Queues combined updates and commits them in batches through an inner ledger

    A batch is flushed when it reaches batch_size, every flush_interval_seconds
    (0 disables the timer), or on flush()/close(). Until then queued XP is
    not visible to get_balance; that staleness window is accepted for bulk
    and administrative grants. Queued items never raise to the caller; flush
    failures are logged per item.

    Updates for the same user are applied in queue order; different users
    are committed concurrently. Flushes never overlap: a flush triggered
    while another is running waits for it, then takes the queue as it
    stands. The timer stops once the queue drains and is re-armed by the
    next enqueue.
    """

    def __init__(
        self,
        inner: RewardLedger,
        batch_size: int = 10,
        flush_interval_seconds: float = 5.0
    ):
        self.inner = inner
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self._queue: List[Dict[str, Any]] = []
        self._timer: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    async def get_balance(self, user_id: str) -> int:
        return await self.inner.get_balance(user_id)

    async def update_balance(self, user_id: str, delta: int) -> int:
        return await self.inner.update_balance(user_id, delta)

    async def record_activity(self, user_id, activity_payload, points_earned=0, created_at=None) -> None:
        await self.inner.record_activity(user_id, activity_payload, points_earned, created_at)

    async def update_balance_with_activity(self, user_id, delta, activity_payload, created_at=None) -> None:
        self._queue.append({
            "user_id": user_id,
            "delta": delta,
            "activity_payload": activity_payload,
            "created_at": created_at,
        })
        self._ensure_timer()

        if len(self._queue) >= self.batch_size:
            await self.flush()

    async def flush(self) -> Dict[str, int]:
        """
        Commit everything queued so far

        Returns:
            {'total', 'successful', 'failed'}
        """
        async with self._flush_lock:
            return await self._flush_queued()

    async def _flush_queued(self) -> Dict[str, int]:
        if not self._queue:
            return {"total": 0, "successful": 0, "failed": 0}

        batch, self._queue = self._queue, []
        logger.debug(f"Flushing XP batch of {len(batch)}")

        by_user: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for item in batch:
            by_user.setdefault(item["user_id"], []).append(item)

        results = await asyncio.gather(
            *(self._commit_user(items) for items in by_user.values()),
            return_exceptions=True
        )

        failed = 0
        for result in results:
            if isinstance(result, BaseException):
                # _commit_user collects per-item errors; anything here escaped it
                logger.error(f"Batch XP commit crashed: {result}")
                failed += 1
            else:
                failed += result

        summary = {"total": len(batch), "successful": len(batch) - failed, "failed": failed}
        record_flush(failed)
        logger.info(f"XP batch flush completed: {summary}")
        return summary

    async def _commit_user(self, items: List[Dict[str, Any]]) -> int:
        failed = 0
        for item in items:
            try:
                await self.inner.update_balance_with_activity(
                    item["user_id"], item["delta"], item["activity_payload"], item["created_at"]
                )
            except CheckinError as e:
                failed += 1
                logger.error(f"Batch XP update failed for user {item['user_id']} ({item['delta']} XP): {e}")
        return failed

    def _ensure_timer(self) -> None:
        if self.flush_interval_seconds <= 0:
            return
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._auto_flush())

    async def _auto_flush(self) -> None:
        while self._queue:
            await asyncio.sleep(self.flush_interval_seconds)
            try:
                # a cancelled timer must not drop a batch already taken off the queue
                await asyncio.shield(self.flush())
            except Exception as e:
                logger.error(f"Scheduled XP batch flush failed: {e}", exc_info=True)

    async def close(self) -> None:
        """Stop the flush timer and commit whatever is still queued"""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        await self.flush()


class CachedRewardLedger(RewardLedger):
    """
    Keeps balances read through an inner ledger for ttl_seconds

    The cache belongs to this instance and is invalidated synchronously
    before and after every write through it. Writes made by other processes
    stay invisible until the entry expires.
    """

    def __init__(
        self,
        inner: RewardLedger,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[int, float]] = {}
        self._stats = {"hits": 0, "misses": 0, "invalidations": 0}

    async def get_balance(self, user_id: str) -> int:
        now = self._clock()
        cached = self._cache.get(user_id)
        if cached and now < cached[1]:
            self._stats["hits"] += 1
            logger.debug(f"Balance cache HIT for user {user_id}")
            return cached[0]

        self._stats["misses"] += 1
        balance = await self.inner.get_balance(user_id)
        self._cache[user_id] = (balance, now + self.ttl_seconds)
        return balance

    def invalidate(self, user_id: str) -> None:
        if self._cache.pop(user_id, None) is not None:
            self._stats["invalidations"] += 1

    async def update_balance(self, user_id: str, delta: int) -> int:
        self.invalidate(user_id)
        try:
            return await self.inner.update_balance(user_id, delta)
        finally:
            self.invalidate(user_id)

    async def record_activity(self, user_id, activity_payload, points_earned=0, created_at=None) -> None:
        await self.inner.record_activity(user_id, activity_payload, points_earned, created_at)

    async def update_balance_with_activity(self, user_id, delta, activity_payload, created_at=None) -> None:
        self.invalidate(user_id)
        try:
            await self.inner.update_balance_with_activity(user_id, delta, activity_payload, created_at)
        finally:
            self.invalidate(user_id)

    def clear_cache(self) -> None:
        self._stats["invalidations"] += len(self._cache)
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return {**self._stats, "size": len(self._cache), "ttl_seconds": self.ttl_seconds}


class InMemoryRewardLedger(DirectRewardLedger):
    """
    Ledger over in-memory stores that records every call

    Flip fail_balance_write / fail_activity_append to simulate store
    failures. Activity records go to the given activity log so streaks
    derived from it advance.
    """

    def __init__(
        self,
        activity_log: Optional[InMemoryActivityLog] = None,
        balances: Optional[Dict[str, int]] = None,
        clock: Callable[[], datetime] = now_utc
    ):
        super().__init__(
            InMemoryBalanceStore(balances),
            activity_log if activity_log is not None else InMemoryActivityLog(clock=clock),
            clock=clock,
        )
        self.updates: List[Dict[str, Any]] = []
        self.activities: List[Dict[str, Any]] = []
        self.audit_gaps: List[Dict[str, Any]] = []
        self.fail_balance_write = False
        self.fail_activity_append = False

    async def update_balance(self, user_id: str, delta: int) -> int:
        if self.fail_balance_write:
            raise XPUpdateError("Simulated balance write failure", user_id=user_id, details={"delta": delta})

        new_balance = await super().update_balance(user_id, delta)
        self.updates.append({
            "user_id": user_id,
            "delta": delta,
            "new_balance": new_balance,
            "timestamp": self._clock(),
        })
        return new_balance

    async def record_activity(self, user_id, activity_payload, points_earned=0, created_at=None) -> None:
        if self.fail_activity_append:
            raise XPUpdateError("Simulated activity append failure", user_id=user_id)

        await super().record_activity(user_id, activity_payload, points_earned, created_at)
        self.activities.append({
            "user_id": user_id,
            "activity_payload": activity_payload,
            "points_earned": points_earned,
        })

    async def on_audit_gap(self, user_id, delta, activity_payload, error) -> None:
        self.audit_gaps.append({
            "user_id": user_id,
            "delta": delta,
            "activity_payload": activity_payload,
            "error": str(error),
        })

    def balances(self) -> Dict[str, int]:
        return self.balance_store.snapshot()

    def clear(self) -> None:
        self.updates.clear()
        self.activities.clear()
        self.audit_gaps.clear()
