"""
Standardized exception hierarchy for the check-in reward engine
Provides machine-readable codes, rich context, consistent logging and user-friendly messages
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4
import logging

import psycopg
from psycopg import errors as pg_errors

logger = logging.getLogger(__name__)


class CheckinError(Exception):
    """
    Base exception for all check-in engine errors

    Provides:
    - Machine-readable error code
    - Automatic timestamping
    - Request ID for tracing
    - User-friendly messages
    - Automatic logging

    Example:
        raise CheckinError(
            message="Invalid wallet address",
            code="INVALID_WALLET_ADDRESS",
            user_id="profile-123",
            details={"address": "0x12"}
        )
    """

    default_code = "CHECKIN_ERROR"
    default_user_message = "Check-in failed. Please try again."
    log_level = logging.ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.cause = cause
        self.user_message = user_message or self.default_user_message
        self.timestamp = datetime.now(timezone.utc)

        # Auto-log on creation
        self._log_error()

    def _log_error(self) -> None:
        """Log error with full context"""
        log_data = {
            "error_type": self.__class__.__name__,
            "error_code": self.code,
            "error_message": self.message,  # Avoid conflict with logging's 'message' field
            "request_id": self.request_id,
            "user_id": self.user_id,
            "error_details": self.details,
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)
            logger.log(self.log_level, f"{self.__class__.__name__}: {self.message}", extra=log_data, exc_info=self.cause)
        else:
            logger.log(self.log_level, f"{self.__class__.__name__}: {self.message}", extra=log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for API responses"""
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat()
        }


# ==========================================
# Engine Errors
# ==========================================

class StreakCalculationError(CheckinError):
    """Streak could not be derived from the activity log"""

    default_code = "STREAK_CALCULATION_ERROR"
    default_user_message = "We couldn't load your streak right now. Please try again."


class XPCalculationError(CheckinError):
    """A reward calculator broke one of its own invariants"""

    default_code = "XP_CALCULATION_ERROR"


class XPUpdateError(CheckinError):
    """Balance write or activity append failed"""

    default_code = "XP_UPDATE_ERROR"
    default_user_message = "We couldn't save your reward. Please try again."


class AttestationError(CheckinError):
    """External attestation call failed"""

    default_code = "ATTESTATION_ERROR"
    default_user_message = "We couldn't record your check-in on chain. No XP was awarded, please try again."


class DuplicateCheckinError(CheckinError):
    """
    The activity store rejected a second check-in for the same user and day.

    Not an infrastructure failure: the orchestrator reports it as the
    ordinary "already checked in" outcome.
    """

    default_code = "ALREADY_CHECKED_IN"
    default_user_message = "Already checked in today"
    log_level = logging.WARNING

    def __init__(self, message: str = "Already checked in today", **kwargs):
        super().__init__(message=message, **kwargs)


class ConfigurationError(CheckinError):
    """Engine configuration is invalid"""

    default_code = "CONFIGURATION_ERROR"
    default_user_message = "The system is not properly configured. Please contact support."

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            details={"config_key": config_key},
            **kwargs
        )


# ==========================================
# Helper Functions
# ==========================================

def wrap_persistence_error(
    error: Exception,
    operation: str,
    error_cls: type = CheckinError,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> CheckinError:
    """
    Wrap persistence exceptions (psycopg) into our exception hierarchy

    Args:
        error: Original exception
        operation: What operation was being performed
        error_cls: Taxonomy class to use for generic failures
        user_id: User ID if applicable
        details: Additional context

    Returns:
        Appropriate CheckinError subclass

    Example:
        try:
            await cur.execute(query, params)
        except psycopg.Error as e:
            raise wrap_persistence_error(e, "write_balance", XPUpdateError, user_id)
    """
    details = {**(details or {}), "operation": operation}

    if isinstance(error, CheckinError):
        return error

    if isinstance(error, pg_errors.UniqueViolation):
        return DuplicateCheckinError(user_id=user_id, details=details, cause=error)

    if isinstance(error, psycopg.OperationalError):
        return error_cls(
            message=f"{operation} failed: database unavailable ({error})",
            user_id=user_id,
            details=details,
            cause=error
        )

    return error_cls(
        message=f"{operation} failed: {error}",
        user_id=user_id,
        details=details,
        cause=error
    )
