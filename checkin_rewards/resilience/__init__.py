"""Resilience patterns for the attestation call"""

from checkin_rewards.resilience.retry import retry_with_backoff, with_retry, is_retryable_error

__all__ = [
    "retry_with_backoff",
    "with_retry",
    "is_retryable_error",
]
