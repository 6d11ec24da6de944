"""
Escrow Account Service
Pools the stakes committed to one bounty and drives processor payouts/refunds

Two layers:
- EscrowStore: store-side operations that run inside the caller's transaction
- EscrowAccountService: processor-side operations (holds, releases, refunds),
  each confirmed processor action persisted in its own short transaction

Release and refund are terminal and single-use. Whether an escrow has already
been resolved is decided from the owning bounty's status; per-recipient release
receipts and per-hold refund stamps make each individual processor call
skippable when a failed settlement is retried.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    MONEY, Bounty, BountyStatus, EscrowAccount, EscrowAccountStatus, EscrowContribution,
    EscrowRelease, TERMINAL_BOUNTY_STATUSES
)
from services.payment_capability import HoldMetadata, PaymentGateway
from utils.atomic_transactions import rowcount, run_atomic
from utils.centralized_logger import centralized_logger
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import sum_amounts
from utils.exception_handler import BountyNotFound, InvalidBountyState, InvariantViolation
from utils.helpers import generate_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseReceipt:
    recipient_id: str
    amount: Decimal
    confirmation_ref: str


class EscrowStore:
    """Escrow rows inside an open store transaction"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def open(self, escrow_id: str, creator_id: str, amount: Decimal, hold_ref: str) -> EscrowAccount:
        """Persist a new escrow funded by the creator's confirmed hold"""
        escrow = EscrowAccount(
            id=escrow_id,
            total_amount=amount,
            creator_amount=amount,
            opponent_amount=Decimal("0"),
            status=EscrowAccountStatus.ACTIVE.value,
            payment_intent_id=hold_ref,
        )
        self.session.add(escrow)
        self.session.add(EscrowContribution(
            contribution_id=generate_id("contribution"),
            escrow_id=escrow_id,
            user_id=creator_id,
            amount=amount,
            is_creator=True,
            hold_ref=hold_ref,
        ))
        await self.session.flush()
        logger.info(f"✅ ESCROW_OPENED: {escrow_id} creator {creator_id} {amount} (hold {hold_ref})")
        return escrow

    async def contribute(self, escrow_id: str, participant_id: str, amount: Decimal, hold_ref: str) -> None:
        """Grow opponent/total amounts by one participant's confirmed hold"""
        result = await self.session.execute(
            update(EscrowAccount)
            .where(
                EscrowAccount.id == escrow_id,
                EscrowAccount.status == EscrowAccountStatus.ACTIVE.value,
            )
            .values(
                opponent_amount=EscrowAccount.opponent_amount + literal(amount, MONEY),
                total_amount=EscrowAccount.total_amount + literal(amount, MONEY),
            )
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            raise InvalidBountyState(f"Escrow {escrow_id} is not accepting contributions", escrow_id=escrow_id)

        self.session.add(EscrowContribution(
            contribution_id=generate_id("contribution"),
            escrow_id=escrow_id,
            user_id=participant_id,
            amount=amount,
            is_creator=False,
            hold_ref=hold_ref,
        ))
        await self.session.flush()
        logger.info(f"✅ ESCROW_CONTRIBUTION: {escrow_id} +{amount} from {participant_id}")

    async def get(self, escrow_id: str) -> EscrowAccount:
        result = await self.session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.id == escrow_id)
            .execution_options(populate_existing=True)
        )
        escrow = result.scalar_one_or_none()
        if escrow is None:
            raise BountyNotFound(f"Escrow {escrow_id} not found", escrow_id=escrow_id)
        return escrow

    async def contributions(self, escrow_id: str) -> List[EscrowContribution]:
        result = await self.session.execute(
            select(EscrowContribution)
            .where(EscrowContribution.escrow_id == escrow_id)
            .order_by(EscrowContribution.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def releases(self, escrow_id: str) -> Dict[str, ReleaseReceipt]:
        result = await self.session.execute(
            select(EscrowRelease).where(EscrowRelease.escrow_id == escrow_id).order_by(EscrowRelease.id)
        )
        return {
            row.recipient_id: ReleaseReceipt(row.recipient_id, row.amount, row.confirmation_ref)
            for row in result.scalars().all()
        }

    async def record_release(self, escrow_id: str, recipient_id: str, amount: Decimal,
                             confirmation_ref: str) -> None:
        """Persist a processor-confirmed payout; a duplicate receipt is ignored"""
        try:
            async with self.session.begin_nested():
                self.session.add(EscrowRelease(
                    release_id=generate_id("release"),
                    escrow_id=escrow_id,
                    recipient_id=recipient_id,
                    amount=amount,
                    confirmation_ref=confirmation_ref,
                ))
        except IntegrityError:
            logger.info(f"♻️ RELEASE_RECEIPT_EXISTS: {escrow_id} -> {recipient_id}")

    async def record_refund(self, contribution_id: str, confirmation_ref: str) -> None:
        await self.session.execute(
            update(EscrowContribution)
            .where(
                EscrowContribution.contribution_id == contribution_id,
                EscrowContribution.refunded_at.is_(None),
            )
            .values(refunded_at=get_naive_utc_now(), refund_confirmation=confirmation_ref)
            .execution_options(synchronize_session=False)
        )

    async def mark_released(self, escrow_id: str, released_to_id: Optional[str]) -> None:
        await self._close(escrow_id, EscrowAccountStatus.RELEASED,
                          released_at=get_naive_utc_now(), released_to_id=released_to_id)

    async def mark_refunded(self, escrow_id: str) -> None:
        await self._close(escrow_id, EscrowAccountStatus.REFUNDED, refunded_at=get_naive_utc_now())

    async def _close(self, escrow_id: str, status: EscrowAccountStatus, **fields) -> None:
        result = await self.session.execute(
            update(EscrowAccount)
            .where(
                EscrowAccount.id == escrow_id,
                EscrowAccount.status == EscrowAccountStatus.ACTIVE.value,
            )
            .values(status=status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            details = {"escrow_id": escrow_id, "target_status": status.value}
            logger.critical(f"🚨 ESCROW_ALREADY_CLOSED: {escrow_id} cannot move to {status.value}")
            centralized_logger.log_critical_error("Escrow consumed twice", details)
            raise InvariantViolation(f"Escrow {escrow_id} is not active", **details)
        logger.info(f"🔄 ESCROW_STATUS_UPDATED: {escrow_id} active -> {status.value}")

    async def check_invariants(self, escrow_id: str) -> None:
        """creator + opponent == total, and total == sum of contributions"""
        escrow = await self.get(escrow_id)
        contributions = await self.contributions(escrow_id)
        problems = escrow_problems(escrow, contributions)
        if problems:
            details = {"escrow_id": escrow_id, "problems": problems}
            logger.critical(f"🚨 ESCROW_INVARIANT_VIOLATION: {escrow_id}: {problems}")
            centralized_logger.log_critical_error("Escrow totals mismatched", details)
            raise InvariantViolation(f"Escrow {escrow_id} totals mismatched", **details)


def escrow_problems(escrow: EscrowAccount, contributions: Sequence[EscrowContribution]) -> List[str]:
    """Human-readable list of broken escrow invariants (empty when consistent)"""
    problems = []
    if escrow.creator_amount + escrow.opponent_amount != escrow.total_amount:
        problems.append(
            f"creator {escrow.creator_amount} + opponent {escrow.opponent_amount} != total {escrow.total_amount}"
        )
    contributed = sum_amounts([c.amount for c in contributions])
    if contributed != escrow.total_amount:
        problems.append(f"contributions {contributed} != total {escrow.total_amount}")
    creator_contributed = sum_amounts([c.amount for c in contributions if c.is_creator])
    if creator_contributed != escrow.creator_amount:
        problems.append(f"creator contribution {creator_contributed} != creator amount {escrow.creator_amount}")
    return problems


class EscrowAccountService:
    """Processor-facing escrow operations"""

    def __init__(self, session_factory: async_sessionmaker, gateway: PaymentGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    async def hold_creator_stake(self, creator_id: str, amount: Decimal, bounty_id: str, escrow_id: str) -> str:
        """Processor hold for a new escrow; PaymentHoldFailed propagates and nothing is persisted"""
        return await self.gateway.place_hold(
            creator_id, amount,
            HoldMetadata(purpose="bounty_creation", bounty_id=bounty_id, escrow_id=escrow_id,
                         idempotency_key=f"{escrow_id}:creator:{creator_id}"),
        )

    async def hold_contribution(self, participant_id: str, amount: Decimal, bounty_id: str,
                                escrow_id: str, join_key: str) -> str:
        return await self.gateway.place_hold(
            participant_id, amount,
            HoldMetadata(purpose="bounty_join", bounty_id=bounty_id, escrow_id=escrow_id,
                         idempotency_key=f"{escrow_id}:join:{participant_id}:{join_key}"),
        )

    async def void_hold(self, hold_ref: str, reason: str) -> bool:
        return await self.gateway.void_hold(hold_ref, reason)

    async def _bounty_resolved(self, bounty_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(Bounty.status).where(Bounty.id == bounty_id))
            status = result.scalar_one_or_none()
        if status is None:
            raise BountyNotFound(f"Bounty {bounty_id} not found", bounty_id=bounty_id)
        return BountyStatus(status) in TERMINAL_BOUNTY_STATUSES

    async def release(self, bounty_id: str, escrow_id: str,
                      recipients: Sequence[Tuple[str, Decimal]]) -> Dict[str, ReleaseReceipt]:
        """
        Pay each recipient out of the escrow.

        No-op once the bounty is terminal. Recipients with an existing receipt
        are skipped; every new confirmation is persisted before the next call.
        Raises PaymentReleaseFailed on the first recipient the processor
        refuses; receipts already persisted stay valid for the retry.
        """
        if await self._bounty_resolved(bounty_id):
            logger.info(f"♻️ RELEASE_SKIPPED: bounty {bounty_id} already resolved")
            return {}

        async with self.session_factory() as session:
            store = EscrowStore(session)
            escrow = await store.get(escrow_id)
            receipts = await store.releases(escrow_id)

        for recipient_id, amount in recipients:
            if recipient_id in receipts:
                logger.info(f"♻️ RELEASE_ALREADY_CONFIRMED: {escrow_id} -> {recipient_id}")
                continue

            confirmation = await self.gateway.release(
                escrow.payment_intent_id, recipient_id, amount,
                idempotency_key=f"{escrow_id}:{recipient_id}",
            )

            async def persist(session: AsyncSession, recipient_id=recipient_id, amount=amount):
                await EscrowStore(session).record_release(escrow_id, recipient_id, amount, confirmation.reference)

            await self._persist_confirmed(persist, f"record_release[{escrow_id}:{recipient_id}]",
                                          {"escrow_id": escrow_id, "recipient_id": recipient_id,
                                           "amount": str(amount), "confirmation": confirmation.reference})
            receipts[recipient_id] = ReleaseReceipt(recipient_id, amount, confirmation.reference)

        logger.info(f"✅ ESCROW_RELEASE_CONFIRMED: {escrow_id} paid {len(receipts)} recipient(s)")
        return receipts

    async def refund_all(self, bounty_id: str, escrow_id: str, reason: str) -> Dict[str, Decimal]:
        """
        Refund every contribution hold that has not been refunded yet.

        No-op once the bounty is terminal. Returns amount refunded per user.
        Raises PaymentRefundFailed on the first hold the processor refuses.
        """
        if await self._bounty_resolved(bounty_id):
            logger.info(f"♻️ REFUND_SKIPPED: bounty {bounty_id} already resolved")
            return {}

        async with self.session_factory() as session:
            contributions = await EscrowStore(session).contributions(escrow_id)

        refunded: Dict[str, Decimal] = {}
        for contribution in contributions:
            refunded[contribution.user_id] = contribution.amount
            if contribution.refunded_at is not None:
                logger.info(f"♻️ REFUND_ALREADY_CONFIRMED: {contribution.hold_ref}")
                continue

            confirmation = await self.gateway.refund(contribution.hold_ref, reason)

            async def persist(session: AsyncSession, contribution_id=contribution.contribution_id):
                await EscrowStore(session).record_refund(contribution_id, confirmation.reference)

            await self._persist_confirmed(persist, f"record_refund[{contribution.hold_ref}]",
                                          {"escrow_id": escrow_id, "hold_ref": contribution.hold_ref,
                                           "confirmation": confirmation.reference})

        logger.info(f"✅ ESCROW_REFUND_CONFIRMED: {escrow_id} refunded {len(refunded)} hold(s) ({reason})")
        return refunded

    async def _persist_confirmed(self, operation, description: str, details: dict) -> None:
        """Store a confirmed processor action; retried against the store, escalated if it still fails"""
        try:
            await run_atomic(self.session_factory, operation, description=description)
        except Exception:
            logger.critical(f"🚨 CONFIRMED_ACTION_NOT_PERSISTED: {description} {details}")
            centralized_logger.log_critical_error("Processor action confirmed but not persisted", details)
            raise
