"""Prometheus metrics for the check-in engine

Counters and histograms for check-in outcomes, awarded XP, attestation calls
and ledger consistency. Exposing them over HTTP is left to the host process.
"""

import logging
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# Check-in attempts
# Labels: outcome (success/already_checked_in/precondition_failed/attestation_failed/error)
checkin_attempts_total = Counter(
    'checkin_attempts_total',
    'Total number of daily check-in attempts',
    ['outcome']
)

# XP per successful check-in
checkin_xp_awarded = Histogram(
    'checkin_xp_awarded',
    'XP awarded per successful check-in',
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2000, float('inf'))
)

# Attestation calls
# Labels: status (success/failure/retry)
attestation_requests_total = Counter(
    'checkin_attestation_requests_total',
    'Total number of attestation requests',
    ['status']
)

attestation_duration = Histogram(
    'checkin_attestation_duration_seconds',
    'Duration of attestation requests in seconds',
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, float('inf'))
)

# Balance written but audit record missing
ledger_audit_gaps_total = Counter(
    'checkin_ledger_audit_gaps_total',
    'Check-ins whose balance update succeeded but activity append failed'
)

# Batched ledger flushes
# Labels: status (success/partial_failure)
ledger_flushes_total = Counter(
    'checkin_ledger_flushes_total',
    'Total number of batched ledger flushes',
    ['status']
)


def record_checkin_attempt(outcome: str, xp_earned: int = 0) -> None:
    """
    Record the outcome of one check-in attempt.

    Args:
        outcome: success, already_checked_in, precondition_failed, attestation_failed or error
        xp_earned: XP awarded (only observed on success)
    """
    try:
        checkin_attempts_total.labels(outcome=outcome).inc()
        if outcome == "success":
            checkin_xp_awarded.observe(xp_earned)
        logger.debug(f"[METRICS] Check-in outcome: {outcome} (xp={xp_earned})")
    except Exception as e:
        logger.error(f"Failed to record check-in attempt: {e}")


def record_attestation(status: str, duration: float = None) -> None:
    try:
        attestation_requests_total.labels(status=status).inc()
        if duration is not None:
            attestation_duration.observe(duration)
    except Exception as e:
        logger.error(f"Failed to record attestation metric: {e}")


def record_audit_gap() -> None:
    try:
        ledger_audit_gaps_total.inc()
    except Exception as e:
        logger.error(f"Failed to record audit gap: {e}")


def record_flush(failed: int) -> None:
    try:
        ledger_flushes_total.labels(status="partial_failure" if failed else "success").inc()
    except Exception as e:
        logger.error(f"Failed to record ledger flush: {e}")


# Retries of transient external failures
# Labels: operation (e.g. create_attestation)
retries_total = Counter(
    'checkin_retries_total',
    'Total number of retry attempts for transient failures',
    ['operation']
)


def record_retry(operation: str) -> None:
    try:
        retries_total.labels(operation=operation).inc()
    except Exception as e:
        logger.error(f"Failed to record retry: {e}")
