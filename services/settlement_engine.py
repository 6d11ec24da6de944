"""
Settlement Engine
Turns escrowed stakes into final balances once a bounty ends

Every resolution (settle, cancel, expire) runs in three phases:

A. claim   - one store transaction validates the request and moves
             settlement_state from NULL/FAILED to IN_PROGRESS. A second caller
             sees IN_PROGRESS and gets SettlementInProgress.
B. pay     - processor releases (winners) or refunds (every hold), outside any
             store transaction. Each confirmation is persisted as a receipt
             before the next call, so a retry never pays anyone twice.
C. commit  - one store transaction applies every wallet, escrow and bounty
             mutation and moves settlement_state to DONE.

A failure in B or C leaves the bounty in its pre-settlement status with
settlement_state FAILED and the attempted results in the update feed; calling
the same operation again resumes from the persisted receipts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    Bounty, BountyParticipant, BountyStatus, EscrowAccountStatus, SettlementState, WalletTransactionType
)
from services.bounty_service import load_bounty, load_participants
from services.bounty_update_log import (
    BountyUpdateLog, PaymentUpdatePayload, StatusChangePayload, SystemMessagePayload
)
from services.escrow_account_service import EscrowAccountService, EscrowStore
from services.target_metric import TargetMetric, parse_score
from services.wallet_ledger import SettlementOutcome, WalletLedger
from utils.atomic_transactions import rowcount, run_atomic
from utils.bounty_state_validator import BountyStateValidator
from utils.centralized_logger import centralized_logger
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import split_pot
from utils.exception_handler import (
    IncompleteResults, InvalidBountyState, InvalidScore, InvariantViolation, NotBountyCreator, PaymentError,
    SettlementFailed, SettlementInProgress, describe
)

logger = logging.getLogger(__name__)

NO_WINNER_REASON = "no winner"
CREATOR_CANCEL_REASON = "cancelled by creator"
EXPIRED_REASON = "expired before the roster filled"


@dataclass(frozen=True)
class SettlementResult:
    participant_id: str
    final_score: Decimal
    achieved: Optional[bool] = None


ResultInput = Union[SettlementResult, Tuple[Any, ...], Mapping[str, Any]]


@dataclass
class SettlementReport:
    """Outcome of settle/cancel/expire; already_settled marks an idempotent repeat"""
    bounty_id: str
    status: str
    winners: List[str] = field(default_factory=list)
    payout_per_winner: Optional[Decimal] = None
    payouts: Dict[str, Decimal] = field(default_factory=dict)
    refunded: Dict[str, Decimal] = field(default_factory=dict)
    already_settled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bounty_id": self.bounty_id,
            "status": self.status,
            "winners": list(self.winners),
            "payout_per_winner": str(self.payout_per_winner) if self.payout_per_winner is not None else None,
            "payouts": {k: str(v) for k, v in self.payouts.items()},
            "refunded": {k: str(v) for k, v in self.refunded.items()},
            "already_settled": self.already_settled,
        }


@dataclass(frozen=True)
class _Plan:
    """What phase A decided; carried through B and C"""
    bounty_id: str
    escrow_id: str
    creator_id: str
    creator_stake: Decimal
    target_status: BountyStatus
    reason: str
    attempt: int
    stakes: Dict[str, Decimal]          # participant -> stake, join order
    winners: Tuple[str, ...] = ()
    payout_per_winner: Optional[Decimal] = None
    payouts: Dict[str, Decimal] = field(default_factory=dict)
    results: Tuple[Dict[str, Any], ...] = ()

    @property
    def is_payout(self) -> bool:
        return bool(self.winners)


def coerce_result(raw: ResultInput) -> SettlementResult:
    """Accept SettlementResult, (id, score[, achieved]) tuples or dicts"""
    if isinstance(raw, SettlementResult):
        participant_id, score, achieved = raw.participant_id, raw.final_score, raw.achieved
    elif isinstance(raw, Mapping):
        participant_id = raw.get("participant_id")
        score = raw.get("final_score", raw.get("score"))
        achieved = raw.get("achieved")
    elif isinstance(raw, (tuple, list)) and len(raw) in (2, 3):
        participant_id, score = raw[0], raw[1]
        achieved = raw[2] if len(raw) == 3 else None
    else:
        raise InvalidScore(f"Unrecognised settlement result: {raw!r}")

    if achieved is not None and not isinstance(achieved, bool):
        raise InvalidScore(f"achieved must be a boolean for {participant_id}", participant_id=participant_id)
    return SettlementResult(participant_id, parse_score(score, participant_id), achieved)


def evaluate_results(metric: TargetMetric, participants: Sequence[BountyParticipant],
                     results: Sequence[SettlementResult]) -> List[str]:
    """Winners in join order; results must cover the roster exactly once"""
    by_participant: Dict[str, SettlementResult] = {}
    for result in results:
        if result.participant_id in by_participant:
            raise IncompleteResults(f"Duplicate result for {result.participant_id}",
                                    participant_id=result.participant_id)
        by_participant[result.participant_id] = result

    roster = [p.participant_id for p in participants]
    missing = [pid for pid in roster if pid not in by_participant]
    unknown = [pid for pid in by_participant if pid not in set(roster)]
    if missing or unknown:
        raise IncompleteResults(
            "Results must cover every participant exactly once",
            missing=missing, unknown=unknown
        )

    winners = []
    for participant_id in roster:
        result = by_participant[participant_id]
        achieved = metric.evaluate(result.final_score)
        if result.achieved is not None and result.achieved != achieved:
            raise InvalidScore(
                f"achieved={result.achieved} contradicts {metric.describe()} for score {result.final_score}",
                participant_id=participant_id
            )
        if achieved:
            winners.append(participant_id)
    return winners


class SettlementEngine:
    """settle / cancel / expire"""

    def __init__(self, session_factory: async_sessionmaker, escrow_service: EscrowAccountService):
        self.session_factory = session_factory
        self.escrow_service = escrow_service

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def settle(self, bounty_id: str, results: Sequence[ResultInput]) -> SettlementReport:
        """Evaluate final scores and pay winners, or refund everyone if nobody achieved the target"""
        coerced = [coerce_result(r) for r in results]

        async def claim(session: AsyncSession):
            bounty = await load_bounty(session, bounty_id)
            if bounty.is_terminal:
                return await self._recorded_report(session, bounty)
            if bounty.status_enum is not BountyStatus.ACTIVE:
                raise InvalidBountyState(f"Bounty {bounty_id} is {bounty.status}; only active bounties settle",
                                         bounty_id=bounty_id, status=bounty.status)

            participants = await load_participants(session, bounty_id)
            metric = TargetMetric.from_json(bounty.target_metric)
            winners = evaluate_results(metric, participants, coerced)

            escrow = await EscrowStore(session).get(bounty.escrow_id)
            if winners:
                target_status, reason = BountyStatus.COMPLETED, "settled"
                per_winner, payouts = split_pot(escrow.total_amount, winners)
            else:
                target_status, reason = BountyStatus.CANCELLED, NO_WINNER_REASON
                per_winner, payouts = None, {}
            await self._check_resumable(session, bounty, payouts, refund=not winners)

            attempt = await self._claim(session, bounty, {BountyStatus.ACTIVE})

            scores = {r.participant_id: r.final_score for r in coerced}
            for participant in participants:
                participant.current_score = scores[participant.participant_id]

            result_rows = tuple(
                {"participant_id": p.participant_id, "final_score": str(scores[p.participant_id]),
                 "achieved": p.participant_id in winners}
                for p in participants
            )
            await BountyUpdateLog(session).append(
                bounty_id, f"Settlement attempt {attempt}: {len(winners)} winner(s)",
                PaymentUpdatePayload(event="settlement_attempt", attempt=attempt, results=list(result_rows)),
            )
            return _Plan(
                bounty_id=bounty_id,
                escrow_id=bounty.escrow_id,
                creator_id=bounty.creator_id,
                creator_stake=bounty.bounty_amount,
                target_status=target_status,
                reason=reason,
                attempt=attempt,
                stakes={p.participant_id: p.stake_amount for p in participants},
                winners=tuple(winners),
                payout_per_winner=per_winner,
                payouts=payouts,
                results=result_rows,
            )

        plan = await run_atomic(self.session_factory, claim, description=f"settle_claim[{bounty_id}]")
        if isinstance(plan, SettlementReport):
            logger.info(f"♻️ SETTLEMENT_NOOP: {bounty_id} already {plan.status}")
            return plan
        return await self._execute(plan)

    async def cancel(self, bounty_id: str, requester_id: str,
                     reason: str = CREATOR_CANCEL_REASON) -> SettlementReport:
        """Creator cancellation from OPEN or ACTIVE; refunds every stake"""

        async def claim(session: AsyncSession):
            bounty = await load_bounty(session, bounty_id)
            if requester_id != bounty.creator_id:
                raise NotBountyCreator("Only the creator can cancel this bounty",
                                       bounty_id=bounty_id, requester_id=requester_id)
            if bounty.status_enum is BountyStatus.CANCELLED:
                return await self._recorded_report(session, bounty)
            BountyStateValidator.require_transition(bounty.status_enum, BountyStatus.CANCELLED, bounty_id)
            return await self._claim_refund(session, bounty, BountyStatus.CANCELLED, reason)

        plan = await run_atomic(self.session_factory, claim, description=f"cancel_claim[{bounty_id}]")
        if isinstance(plan, SettlementReport):
            logger.info(f"♻️ CANCEL_NOOP: {bounty_id} already cancelled")
            return plan
        return await self._execute(plan)

    async def expire(self, bounty_id: str, now: Optional[datetime] = None) -> SettlementReport:
        """OPEN bounty past its end date without a full roster: refund and mark EXPIRED"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        async def claim(session: AsyncSession):
            bounty = await load_bounty(session, bounty_id)
            if bounty.is_terminal:
                return await self._recorded_report(session, bounty)
            BountyStateValidator.require_transition(bounty.status_enum, BountyStatus.EXPIRED, bounty_id)
            if bounty.end_date > now:
                raise InvalidBountyState(f"Bounty {bounty_id} does not end until {bounty.end_date}",
                                         bounty_id=bounty_id)
            return await self._claim_refund(session, bounty, BountyStatus.EXPIRED, EXPIRED_REASON)

        plan = await run_atomic(self.session_factory, claim, description=f"expire_claim[{bounty_id}]")
        if isinstance(plan, SettlementReport):
            return plan
        return await self._execute(plan)

    # ------------------------------------------------------------------
    # Phase A helpers
    # ------------------------------------------------------------------

    async def _claim_refund(self, session: AsyncSession, bounty: Bounty,
                            target_status: BountyStatus, reason: str) -> _Plan:
        await self._check_resumable(session, bounty, {}, refund=True)
        participants = await load_participants(session, bounty.id)
        attempt = await self._claim(session, bounty, BountyStateValidator.sources_for(target_status))
        await BountyUpdateLog(session).append(
            bounty.id, f"Refund attempt {attempt}: {reason}",
            PaymentUpdatePayload(event="refund_attempt", attempt=attempt),
        )
        return _Plan(
            bounty_id=bounty.id,
            escrow_id=bounty.escrow_id,
            creator_id=bounty.creator_id,
            creator_stake=bounty.bounty_amount,
            target_status=target_status,
            reason=reason,
            attempt=attempt,
            stakes={p.participant_id: p.stake_amount for p in participants},
        )

    async def _claim(self, session: AsyncSession, bounty: Bounty, from_statuses: Set[BountyStatus]) -> int:
        """NULL/FAILED -> IN_PROGRESS; returns the attempt number"""
        result = await session.execute(
            update(Bounty)
            .where(
                Bounty.id == bounty.id,
                Bounty.status.in_([s.value for s in from_statuses]),
                or_(Bounty.settlement_state.is_(None),
                    Bounty.settlement_state == SettlementState.FAILED.value),
            )
            .values(settlement_state=SettlementState.IN_PROGRESS.value,
                    settlement_attempts=Bounty.settlement_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            logger.warning(f"⚠️ SETTLEMENT_BUSY: {bounty.id} is already being resolved")
            raise SettlementInProgress(f"Bounty {bounty.id} is already being settled", bounty_id=bounty.id)

        attempt = bounty.settlement_attempts + 1
        logger.info(f"🔒 SETTLEMENT_CLAIMED: {bounty.id} attempt {attempt}")
        return attempt

    async def _check_resumable(self, session: AsyncSession, bounty: Bounty,
                               payouts: Dict[str, Decimal], refund: bool) -> None:
        """A retry must not contradict processor actions an earlier attempt already confirmed"""
        store = EscrowStore(session)
        receipts = await store.releases(bounty.escrow_id)
        refunded_any = any(c.refunded_at is not None for c in await store.contributions(bounty.escrow_id))

        if refund and receipts:
            raise InvalidBountyState(
                f"Bounty {bounty.id} already has confirmed payouts; retry the settlement instead",
                bounty_id=bounty.id, paid=sorted(receipts)
            )
        if not refund and refunded_any:
            raise InvalidBountyState(
                f"Bounty {bounty.id} already has refunded stakes; retry the refund instead",
                bounty_id=bounty.id
            )
        for recipient_id, receipt in receipts.items():
            if payouts.get(recipient_id) != receipt.amount:
                raise InvalidBountyState(
                    f"Results conflict with the confirmed payout of {receipt.amount} to {recipient_id}",
                    bounty_id=bounty.id, recipient_id=recipient_id
                )

    # ------------------------------------------------------------------
    # Phases B and C
    # ------------------------------------------------------------------

    async def _execute(self, plan: _Plan) -> SettlementReport:
        try:
            refunded: Dict[str, Decimal] = {}
            if plan.is_payout:
                await self.escrow_service.release(
                    plan.bounty_id, plan.escrow_id,
                    [(winner, plan.payouts[winner]) for winner in plan.winners],
                )
            else:
                refunded = await self.escrow_service.refund_all(plan.bounty_id, plan.escrow_id, plan.reason)

            report = await run_atomic(
                self.session_factory,
                lambda session: self._commit(session, plan, refunded),
                description=f"settle_commit[{plan.bounty_id}]",
            )
        except Exception as e:
            await self._mark_failed(plan, e)
            if isinstance(e, PaymentError):
                raise SettlementFailed(
                    f"Settlement of bounty {plan.bounty_id} failed: {e}",
                    bounty_id=plan.bounty_id, attempt=plan.attempt
                ) from e
            raise

        logger.info(
            f"✅ BOUNTY_RESOLVED: {plan.bounty_id} -> {report.status} "
            f"winners={report.winners} payouts={ {k: str(v) for k, v in report.payouts.items()} }"
        )
        return report

    async def _commit(self, session: AsyncSession, plan: _Plan, refunded: Dict[str, Decimal]) -> SettlementReport:
        bounty = await load_bounty(session, plan.bounty_id)
        if bounty.settlement_state != SettlementState.IN_PROGRESS.value:
            raise InvariantViolation(f"Bounty {plan.bounty_id} lost its settlement claim",
                                     bounty_id=plan.bounty_id, settlement_state=bounty.settlement_state)
        from_status = bounty.status_enum
        BountyStateValidator.require_transition(from_status, plan.target_status, plan.bounty_id)

        ledger = WalletLedger(session)
        store = EscrowStore(session)
        log = BountyUpdateLog(session)

        if plan.is_payout:
            for participant_id, stake in plan.stakes.items():
                if participant_id in plan.payouts:
                    await ledger.settle(participant_id, stake, SettlementOutcome.WIN,
                                        plan.payouts[participant_id], plan.bounty_id)
                else:
                    await ledger.settle(participant_id, stake, SettlementOutcome.LOSE, bounty_id=plan.bounty_id)
            await ledger.unlock(plan.creator_id, plan.creator_stake, plan.bounty_id,
                                transaction_type=WalletTransactionType.ESCROW_RELEASE,
                                description=f"Creator stake released, bounty {plan.bounty_id} settled")
            winner_id = plan.winners[0] if len(plan.winners) == 1 else None
            await store.mark_released(plan.escrow_id, winner_id)
        else:
            await ledger.unlock(plan.creator_id, plan.creator_stake, plan.bounty_id,
                                description=f"Refund: {plan.reason}")
            for participant_id, stake in plan.stakes.items():
                await ledger.unlock(participant_id, stake, plan.bounty_id, description=f"Refund: {plan.reason}")
            await store.mark_refunded(plan.escrow_id)
            winner_id = None

        now = get_naive_utc_now()
        result = await session.execute(
            update(Bounty)
            .where(
                Bounty.id == plan.bounty_id,
                Bounty.status == from_status.value,
                Bounty.settlement_state == SettlementState.IN_PROGRESS.value,
            )
            .values(status=plan.target_status.value, winner_id=winner_id, settled_at=now,
                    settlement_state=SettlementState.DONE.value)
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            raise InvariantViolation(f"Bounty {plan.bounty_id} changed during settlement", bounty_id=plan.bounty_id)

        refund_map = refunded or self._refund_map(plan)
        if plan.is_payout:
            await log.append(
                plan.bounty_id,
                f"Bounty completed: {len(plan.winners)} winner(s), {plan.payout_per_winner} each",
                StatusChangePayload(
                    from_status=from_status.value, to_status=plan.target_status.value, reason=plan.reason,
                    winner_ids=list(plan.winners), payout_per_winner=str(plan.payout_per_winner),
                    payouts={k: str(v) for k, v in plan.payouts.items()},
                ),
            )
        else:
            await log.append(
                plan.bounty_id, f"Bounty {plan.target_status.value}: {plan.reason}",
                StatusChangePayload(from_status=from_status.value, to_status=plan.target_status.value,
                                    reason=plan.reason),
            )
            await log.append(
                plan.bounty_id, f"All stakes refunded ({plan.reason})",
                SystemMessagePayload(reason=plan.reason, refunded={k: str(v) for k, v in refund_map.items()}),
            )

        for user_id in [plan.creator_id, *plan.stakes]:
            await ledger.check_invariants(user_id)
        await store.check_invariants(plan.escrow_id)
        escrow = await store.get(plan.escrow_id)
        expected = EscrowAccountStatus.RELEASED if plan.is_payout else EscrowAccountStatus.REFUNDED
        if escrow.status != expected.value:
            raise InvariantViolation(f"Escrow {plan.escrow_id} is {escrow.status}, expected {expected.value}")
        if plan.is_payout and sum(plan.payouts.values(), Decimal("0")) != escrow.total_amount:
            raise InvariantViolation(f"Payouts for {plan.bounty_id} do not sum to the escrow total",
                                     bounty_id=plan.bounty_id)

        return SettlementReport(
            bounty_id=plan.bounty_id,
            status=plan.target_status.value,
            winners=list(plan.winners),
            payout_per_winner=plan.payout_per_winner,
            payouts=dict(plan.payouts),
            refunded={} if plan.is_payout else refund_map,
        )

    @staticmethod
    def _refund_map(plan: _Plan) -> Dict[str, Decimal]:
        refunded = {plan.creator_id: plan.creator_stake}
        refunded.update(plan.stakes)
        return refunded

    async def _mark_failed(self, plan: _Plan, error: BaseException) -> None:
        """Release the claim as FAILED and record the attempt for retry or manual reconciliation"""

        async def persist(session: AsyncSession) -> None:
            await session.execute(
                update(Bounty)
                .where(Bounty.id == plan.bounty_id,
                       Bounty.settlement_state == SettlementState.IN_PROGRESS.value)
                .values(settlement_state=SettlementState.FAILED.value)
                .execution_options(synchronize_session=False)
            )
            await BountyUpdateLog(session).append(
                plan.bounty_id, f"Settlement attempt {plan.attempt} failed",
                PaymentUpdatePayload(event="settlement_failed", attempt=plan.attempt,
                                     results=list(plan.results), error=describe(error)),
            )

        logger.error(f"❌ SETTLEMENT_FAILED: {plan.bounty_id} attempt {plan.attempt}: {describe(error)}")
        try:
            await run_atomic(self.session_factory, persist, description=f"settle_mark_failed[{plan.bounty_id}]")
        except Exception as store_error:
            logger.critical(f"🚨 SETTLEMENT_STATE_STUCK: {plan.bounty_id} left in_progress: {store_error}")
            centralized_logger.log_critical_error(
                "Settlement failure could not be recorded",
                {"bounty_id": plan.bounty_id, "attempt": plan.attempt,
                 "error": describe(error), "store_error": describe(store_error)},
            )

    # ------------------------------------------------------------------
    # Idempotent repeats
    # ------------------------------------------------------------------

    async def _recorded_report(self, session: AsyncSession, bounty: Bounty) -> SettlementReport:
        """Reconstruct the outcome of an already resolved bounty"""
        store = EscrowStore(session)
        participants = await load_participants(session, bounty.id)
        if bounty.status_enum is BountyStatus.COMPLETED:
            receipts = await store.releases(bounty.escrow_id)
            winners = [p.participant_id for p in participants if p.participant_id in receipts]
            escrow = await store.get(bounty.escrow_id)
            per_winner = split_pot(escrow.total_amount, winners)[0] if winners else None
            return SettlementReport(
                bounty_id=bounty.id, status=bounty.status, winners=winners, payout_per_winner=per_winner,
                payouts={w: receipts[w].amount for w in winners}, already_settled=True,
            )

        contributions = await store.contributions(bounty.escrow_id)
        return SettlementReport(
            bounty_id=bounty.id, status=bounty.status,
            refunded={c.user_id: c.amount for c in contributions},
            already_settled=True,
        )
