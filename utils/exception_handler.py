"""
Exception Handler Module
Provides the bounty engine's exception hierarchy and the API error mapping

Three families, handled differently by callers:
- BountyValidationError: rejected synchronously, nothing was mutated
- PaymentError: an external payment call failed, operation is safe to retry
- InvariantViolation: internal consistency bug, escalate and never auto-correct
"""

import functools
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

GENERIC_RETRY_MESSAGE = "Payment service unavailable, please try again"


class BountyError(Exception):
    """Base class for every error raised by the bounty engine"""

    code = "bounty_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)


# ============================================================================
# VALIDATION ERRORS
# ============================================================================

class BountyValidationError(BountyError):
    code = "validation_error"


class InvalidBountyParams(BountyValidationError):
    code = "invalid_params"


class BountyNotFound(BountyValidationError):
    code = "bounty_not_found"


class InsufficientFunds(BountyValidationError):
    code = "insufficient_funds"


class BountyFull(BountyValidationError):
    code = "bounty_full"


class AlreadyJoined(BountyValidationError):
    code = "already_joined"


class SelfJoinNotAllowed(BountyValidationError):
    code = "self_join"


class NotBountyCreator(BountyValidationError):
    code = "not_creator"


class InvalidBountyState(BountyValidationError):
    code = "invalid_state"


class IncompleteResults(BountyValidationError):
    code = "incomplete_results"


class InvalidScore(BountyValidationError):
    code = "invalid_score"


class SettlementInProgress(BountyValidationError):
    code = "settlement_in_progress"
    retryable = True


# ============================================================================
# EXTERNAL DEPENDENCY ERRORS
# ============================================================================

class PaymentError(BountyError):
    code = "payment_error"
    retryable = True


class PaymentHoldFailed(PaymentError):
    code = "payment_hold_failed"


class PaymentReleaseFailed(PaymentError):
    code = "payment_release_failed"


class PaymentRefundFailed(PaymentError):
    code = "payment_refund_failed"


class SettlementFailed(PaymentError):
    """Settlement or refund could not complete; bounty stays ACTIVE and flagged"""
    code = "settlement_failed"


# ============================================================================
# FATAL
# ============================================================================

class InvariantViolation(BountyError):
    code = "invariant_violation"


def error_response(error: BountyError) -> Dict[str, Any]:
    """Map an engine error to the response dict handed to the front end"""
    if isinstance(error, PaymentError):
        message = GENERIC_RETRY_MESSAGE
    elif isinstance(error, InvariantViolation):
        message = "Internal error, the operation has been flagged for review"
    else:
        message = error.message

    return {
        "success": False,
        "error": error.code,
        "message": message,
        "retryable": error.retryable,
    }


def api_result(func: Callable) -> Callable:
    """
    Decorator for front-end facing coroutines.
    Wraps the return value as {'success': True, 'data': ...} and maps
    BountyError into error_response; any other exception propagates.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            data = await func(*args, **kwargs)
        except InvariantViolation as e:
            logger.critical(f"🚨 INVARIANT_VIOLATION in {func.__name__}: {e.message} {e.details}")
            return error_response(e)
        except BountyError as e:
            logger.warning(f"⚠️ {func.__name__} rejected: {e.code} - {e.message}")
            return error_response(e)
        return {"success": True, "data": data}

    return wrapper


def describe(error: Optional[BaseException]) -> Optional[str]:
    """Short error description for audit payloads"""
    if error is None:
        return None
    return f"{type(error).__name__}: {error}"
