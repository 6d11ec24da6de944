"""
Payment Capability - boundary to the external payment processor

The engine never talks to a processor SDK directly. A concrete processor adapter
implements PaymentCapability (create hold, release, refund); PaymentGateway wraps
it with the bounded retry policy and maps processor failures onto the engine's
PaymentError family.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from services.retry_service import RetryService, retry_service
from utils.centralized_logger import centralized_logger
from utils.exception_handler import PaymentHoldFailed, PaymentRefundFailed, PaymentReleaseFailed

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    """Raised by PaymentCapability implementations"""


class TransientPaymentError(PaymentProcessorError):
    """Timeouts, rate limits, 5xx - worth retrying"""


class PaymentDeclined(PaymentProcessorError):
    """Permanent rejection (card declined, hold expired) - never retried"""


# Failures that the retry policy re-attempts
TRANSIENT_ERRORS = (TransientPaymentError, asyncio.TimeoutError, ConnectionError)
# Failures mapped onto the engine's PaymentError family
PROCESSOR_ERRORS = (PaymentProcessorError, asyncio.TimeoutError, ConnectionError)


@dataclass(frozen=True)
class HoldMetadata:
    """What a hold is for; idempotency_key lets the processor dedupe a retried create"""
    purpose: str  # "bounty_creation" | "bounty_join"
    bounty_id: str
    escrow_id: str
    idempotency_key: str


@dataclass(frozen=True)
class PaymentConfirmation:
    reference: str
    amount: Optional[Decimal] = None


class PaymentCapability(ABC):
    """Interface implemented by processor adapters and test doubles"""

    @abstractmethod
    async def create_hold(self, payer_id: str, amount: Decimal, metadata: HoldMetadata) -> str:
        """Capture ``amount`` from ``payer_id``; returns the processor hold reference"""

    @abstractmethod
    async def release(self, hold_ref: str, recipient_id: str, amount: Decimal,
                      idempotency_key: str) -> PaymentConfirmation:
        """Pay ``amount`` out of a hold; idempotent per (hold_ref, recipient_id)"""

    @abstractmethod
    async def refund(self, hold_ref: str, reason: str) -> PaymentConfirmation:
        """Return a hold to its payer; refunding an already refunded hold is a no-op"""


class PaymentGateway:
    """Retrying wrapper around a PaymentCapability"""

    def __init__(self, capability: PaymentCapability, retry: Optional[RetryService] = None):
        self.capability = capability
        self.retry = retry or retry_service

    async def place_hold(self, payer_id: str, amount: Decimal, metadata: HoldMetadata) -> str:
        """Create a hold or raise PaymentHoldFailed"""
        try:
            hold_ref = await self.retry.run_with_strategy(
                lambda: self.capability.create_hold(payer_id, amount, metadata),
                'payment',
                exceptions=TRANSIENT_ERRORS,
                operation_name=f"create_hold[{metadata.idempotency_key}]",
            )
        except PROCESSOR_ERRORS as e:
            logger.error(f"❌ PAYMENT_HOLD_FAILED: {payer_id} {amount} for {metadata.bounty_id}: {e}")
            raise PaymentHoldFailed(
                f"Payment hold failed: {e}",
                payer_id=payer_id, amount=str(amount), bounty_id=metadata.bounty_id
            ) from e

        logger.info(f"🔒 PAYMENT_HOLD_PLACED: {hold_ref} - {payer_id} {amount} ({metadata.purpose} {metadata.bounty_id})")
        return hold_ref

    async def release(self, hold_ref: str, recipient_id: str, amount: Decimal,
                      idempotency_key: str) -> PaymentConfirmation:
        """Pay a winner or raise PaymentReleaseFailed"""
        try:
            confirmation = await self.retry.run_with_strategy(
                lambda: self.capability.release(hold_ref, recipient_id, amount, idempotency_key),
                'payment',
                exceptions=TRANSIENT_ERRORS,
                operation_name=f"release[{idempotency_key}]",
            )
        except PROCESSOR_ERRORS as e:
            logger.error(f"❌ PAYMENT_RELEASE_FAILED: {recipient_id} {amount} from {hold_ref}: {e}")
            raise PaymentReleaseFailed(
                f"Payment release failed: {e}",
                hold_ref=hold_ref, recipient_id=recipient_id, amount=str(amount)
            ) from e

        logger.info(f"✅ PAYMENT_RELEASED: {recipient_id} {amount} from {hold_ref} ({confirmation.reference})")
        return confirmation

    async def refund(self, hold_ref: str, reason: str) -> PaymentConfirmation:
        """Refund a hold or raise PaymentRefundFailed"""
        try:
            confirmation = await self.retry.run_with_strategy(
                lambda: self.capability.refund(hold_ref, reason),
                'payment',
                exceptions=TRANSIENT_ERRORS,
                operation_name=f"refund[{hold_ref}]",
            )
        except PROCESSOR_ERRORS as e:
            logger.error(f"❌ PAYMENT_REFUND_FAILED: {hold_ref} ({reason}): {e}")
            raise PaymentRefundFailed(f"Payment refund failed: {e}", hold_ref=hold_ref, reason=reason) from e

        logger.info(f"✅ PAYMENT_REFUNDED: {hold_ref} ({reason}) - {confirmation.reference}")
        return confirmation

    async def void_hold(self, hold_ref: str, reason: str) -> bool:
        """
        Compensating refund for a hold whose store transaction aborted.

        Never raises: the caller is already propagating the original error. A
        hold that cannot be voided is escalated for manual reconciliation.
        """
        try:
            await self.retry.run_with_strategy(
                lambda: self.capability.refund(hold_ref, reason),
                'compensation',
                exceptions=TRANSIENT_ERRORS,
                operation_name=f"void_hold[{hold_ref}]",
            )
        except PROCESSOR_ERRORS as e:
            logger.critical(f"🚨 ORPHANED_HOLD: could not void {hold_ref} ({reason}): {e}")
            centralized_logger.log_critical_error(
                "Orphaned payment hold requires manual refund",
                {"hold_ref": hold_ref, "reason": reason, "error": str(e)},
            )
            return False

        logger.info(f"🔄 HOLD_VOIDED: {hold_ref} ({reason})")
        return True
