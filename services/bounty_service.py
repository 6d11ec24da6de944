"""
Bounty Service - the wagering contract

Creation and joining follow hold-then-persist:
1. read-only precheck (cheap rejection before touching the processor)
2. processor hold, outside any store transaction
3. one atomic store transaction: wallet lock, escrow row, bounty/roster row, feed
If step 3 aborts, the hold from step 2 is voided so no money stays captured for
a commitment that does not exist.

Slot allocation is a conditional UPDATE on participant_count, so concurrent
joins can never over-fill a bounty; the unique (bounty, participant) constraint
closes the duplicate-join race.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import (
    Bounty, BountyParticipant, BountyStatus, EscrowAccount, SettlementState, UserWallet, WagerTimeframe
)
from services.bounty_update_log import (
    BountyUpdateLog, PaymentUpdatePayload, PlayerUpdatePayload, ScoreUpdatePayload, StatusChangePayload,
    UpdateEntry
)
from services.escrow_account_service import EscrowAccountService, EscrowStore
from services.target_metric import TargetMetric, parse_score
from services.wallet_ledger import WalletLedger, require_positive_amount
from utils.atomic_transactions import run_atomic
from utils.bounty_state_validator import BountyStateValidator
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exception_handler import (
    AlreadyJoined, BountyFull, BountyNotFound, InsufficientFunds, InvalidBountyParams, InvalidBountyState,
    InvalidScore, SelfJoinNotAllowed, SettlementInProgress
)
from utils.helpers import generate_id

logger = logging.getLogger(__name__)

ScoreInput = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]


@dataclass
class CreateBountyParams:
    creator_id: str
    title: str
    bounty_amount: Decimal
    target: Any
    comparison: str
    timeframe: str
    start_date: datetime
    end_date: datetime
    max_participants: int = 1
    description: str = ""
    is_public: bool = True
    league_id: Optional[str] = None


@dataclass(frozen=True)
class ValidatedBounty:
    creator_id: str
    title: str
    description: str
    bounty_amount: Decimal
    metric: TargetMetric
    timeframe: WagerTimeframe
    start_date: datetime
    end_date: datetime
    max_participants: int
    is_public: bool
    league_id: Optional[str]


@dataclass(frozen=True)
class LeaderboardEntry:
    participant_id: str
    score: Decimal
    progress: Decimal
    rank: int
    is_winning: bool
    join_order: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "score": str(self.score),
            "progress": str(self.progress),
            "rank": self.rank,
            "is_winning": self.is_winning,
        }


@dataclass
class BountySnapshot:
    """Bounty, escrow totals, roster by score and the latest feed entries"""
    bounty: Dict[str, Any]
    escrow: Dict[str, Any]
    participants: List[Dict[str, Any]] = field(default_factory=list)
    recent_updates: List[UpdateEntry] = field(default_factory=list)


def validate_create_params(params: CreateBountyParams) -> ValidatedBounty:
    """Boundary validation; raises InvalidBountyParams"""
    if not params.creator_id:
        raise InvalidBountyParams("creator_id is required")

    title = (params.title or "").strip()
    if not title:
        raise InvalidBountyParams("title is required")
    if len(title) > 200:
        raise InvalidBountyParams("title must be at most 200 characters")

    amount = require_positive_amount(params.bounty_amount, "bounty_amount")
    if amount < Config.BOUNTY_MIN_STAKE:
        raise InvalidBountyParams(f"bounty_amount must be at least {Config.BOUNTY_MIN_STAKE}")

    if isinstance(params.max_participants, bool) or not isinstance(params.max_participants, int):
        raise InvalidBountyParams("max_participants must be an integer")
    if not 1 <= params.max_participants <= Config.BOUNTY_MAX_PARTICIPANTS_LIMIT:
        raise InvalidBountyParams(
            f"max_participants must be between 1 and {Config.BOUNTY_MAX_PARTICIPANTS_LIMIT}"
        )

    try:
        timeframe = params.timeframe if isinstance(params.timeframe, WagerTimeframe) else WagerTimeframe(params.timeframe)
    except ValueError as e:
        raise InvalidBountyParams(f"Unknown timeframe: {params.timeframe!r}") from e

    if not isinstance(params.start_date, datetime) or not isinstance(params.end_date, datetime):
        raise InvalidBountyParams("start_date and end_date must be datetimes")
    start_date = ensure_naive_datetime(params.start_date)
    end_date = ensure_naive_datetime(params.end_date)
    if end_date <= start_date:
        raise InvalidBountyParams("end_date must be after start_date")

    metric = TargetMetric.from_params(params.target, params.comparison)

    return ValidatedBounty(
        creator_id=params.creator_id,
        title=title,
        description=params.description or "",
        bounty_amount=amount,
        metric=metric,
        timeframe=timeframe,
        start_date=start_date,
        end_date=end_date,
        max_participants=params.max_participants,
        is_public=bool(params.is_public),
        league_id=params.league_id,
    )


def normalize_scores(scores: ScoreInput) -> List[Tuple[str, Decimal]]:
    """(participant_id, score) pairs; duplicates and non-finite scores raise InvalidScore"""
    pairs = scores.items() if isinstance(scores, Mapping) else scores
    normalized: List[Tuple[str, Decimal]] = []
    seen = set()
    for participant_id, score in pairs:
        if participant_id in seen:
            raise InvalidScore(f"Duplicate score for participant {participant_id}", participant_id=participant_id)
        seen.add(participant_id)
        normalized.append((participant_id, parse_score(score, participant_id)))
    return normalized


async def load_bounty(session: AsyncSession, bounty_id: str) -> Bounty:
    result = await session.execute(
        select(Bounty).where(Bounty.id == bounty_id).execution_options(populate_existing=True)
    )
    bounty = result.scalar_one_or_none()
    if bounty is None:
        raise BountyNotFound(f"Bounty {bounty_id} not found", bounty_id=bounty_id)
    return bounty


async def load_participants(session: AsyncSession, bounty_id: str) -> List[BountyParticipant]:
    """Roster in join order"""
    result = await session.execute(
        select(BountyParticipant)
        .where(BountyParticipant.bounty_id == bounty_id)
        .order_by(BountyParticipant.join_order)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def available_balance(session: AsyncSession, user_id: str) -> Decimal:
    wallet = await WalletLedger(session).get_wallet(user_id)
    return wallet.available_balance if wallet else Decimal("0")


def bounty_to_dict(bounty: Bounty) -> Dict[str, Any]:
    metric = TargetMetric.from_json(bounty.target_metric)
    return {
        "bounty_id": bounty.id,
        "creator_id": bounty.creator_id,
        "title": bounty.title,
        "description": bounty.description,
        "bounty_amount": str(bounty.bounty_amount),
        "currency": Config.BOUNTY_CURRENCY,
        "target_metric": metric.to_json(),
        "timeframe": bounty.timeframe,
        "start_date": bounty.start_date.isoformat(),
        "end_date": bounty.end_date.isoformat(),
        "status": bounty.status,
        "max_participants": bounty.max_participants,
        "participant_count": bounty.participant_count,
        "is_public": bounty.is_public,
        "league_id": bounty.league_id,
        "escrow_id": bounty.escrow_id,
        "winner_id": bounty.winner_id,
        "settlement_state": bounty.settlement_state,
        "settled_at": bounty.settled_at.isoformat() if bounty.settled_at else None,
    }


class BountyService:
    """Creation, roster, scoring and read models"""

    def __init__(self, session_factory: async_sessionmaker, escrow_service: EscrowAccountService):
        self.session_factory = session_factory
        self.escrow_service = escrow_service

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_bounty(self, params: CreateBountyParams) -> Dict[str, str]:
        """Validate, hold the creator's stake, then persist bounty + escrow atomically"""
        spec = validate_create_params(params)

        async with self.session_factory() as session:
            available = await available_balance(session, spec.creator_id)
        if available < spec.bounty_amount:
            logger.warning(f"⚠️ CREATE_REJECTED: {spec.creator_id} available {available} < stake {spec.bounty_amount}")
            raise InsufficientFunds(
                f"Insufficient available balance to stake {spec.bounty_amount}",
                user_id=spec.creator_id, amount=str(spec.bounty_amount)
            )

        bounty_id = generate_id("bounty")
        escrow_id = generate_id("escrow")
        hold_ref = await self.escrow_service.hold_creator_stake(spec.creator_id, spec.bounty_amount, bounty_id, escrow_id)

        async def persist(session: AsyncSession) -> None:
            ledger = WalletLedger(session)
            await ledger.lock(spec.creator_id, spec.bounty_amount, bounty_id)

            store = EscrowStore(session)
            await store.open(escrow_id, spec.creator_id, spec.bounty_amount, hold_ref)

            session.add(Bounty(
                id=bounty_id,
                creator_id=spec.creator_id,
                title=spec.title,
                description=spec.description,
                bounty_amount=spec.bounty_amount,
                target_metric=spec.metric.to_json(),
                timeframe=spec.timeframe.value,
                start_date=spec.start_date,
                end_date=spec.end_date,
                status=BountyStatus.OPEN.value,
                max_participants=spec.max_participants,
                participant_count=0,
                is_public=spec.is_public,
                league_id=spec.league_id,
                escrow_id=escrow_id,
                settlement_attempts=0,
            ))
            await session.flush()

            log = BountyUpdateLog(session)
            await log.append(bounty_id, f"Bounty created: {spec.title} ({spec.metric.describe()})",
                             StatusChangePayload(from_status=None, to_status=BountyStatus.OPEN.value,
                                                 reason="created"))
            await log.append(bounty_id, f"Creator stake of {spec.bounty_amount} held in escrow",
                             PaymentUpdatePayload(event="hold_placed", user_id=spec.creator_id,
                                                  amount=str(spec.bounty_amount)))

            await ledger.check_invariants(spec.creator_id)
            await store.check_invariants(escrow_id)

        try:
            await run_atomic(self.session_factory, persist, description=f"create_bounty[{bounty_id}]")
        except Exception:
            await self.escrow_service.void_hold(hold_ref, f"bounty {bounty_id} creation aborted")
            raise

        logger.info(
            f"✅ BOUNTY_CREATED: {bounty_id} by {spec.creator_id} stake {spec.bounty_amount} "
            f"{spec.metric.describe()} max {spec.max_participants}"
        )
        return {"bounty_id": bounty_id, "escrow_id": escrow_id}

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def join_bounty(self, bounty_id: str, participant_id: str, stake: Decimal,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
        """Join an OPEN bounty before its end date; the join that fills the roster activates it"""
        stake = require_positive_amount(stake, "stake")
        if stake < Config.BOUNTY_MIN_STAKE:
            raise InvalidBountyParams(f"stake must be at least {Config.BOUNTY_MIN_STAKE}")
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        async with self.session_factory() as session:
            bounty = await load_bounty(session, bounty_id)
            await self._check_not_joined(session, bounty_id, participant_id)
            self._check_joinable(bounty, participant_id, now)
            available = await available_balance(session, participant_id)
            escrow_id = bounty.escrow_id

        if available < stake:
            logger.warning(f"⚠️ JOIN_REJECTED: {participant_id} available {available} < stake {stake}")
            raise InsufficientFunds(f"Insufficient available balance to stake {stake}",
                                    user_id=participant_id, amount=str(stake), bounty_id=bounty_id)

        join_key = generate_id("participant")
        hold_ref = await self.escrow_service.hold_contribution(participant_id, stake, bounty_id, escrow_id, join_key)

        async def persist(session: AsyncSession) -> Dict[str, Any]:
            bounty = await load_bounty(session, bounty_id)
            await self._check_not_joined(session, bounty_id, participant_id)
            self._check_joinable(bounty, participant_id, now)

            # Atomic slot claim; the returned count is this participant's join order
            claimed = await session.execute(
                update(Bounty)
                .where(
                    Bounty.id == bounty_id,
                    Bounty.status == BountyStatus.OPEN.value,
                    Bounty.settlement_state.is_(None),
                    Bounty.participant_count < Bounty.max_participants,
                    Bounty.end_date > now,
                )
                .values(participant_count=Bounty.participant_count + 1)
                .returning(Bounty.participant_count)
                .execution_options(synchronize_session=False)
            )
            join_order = claimed.scalar_one_or_none()
            if join_order is None:
                bounty = await load_bounty(session, bounty_id)
                self._check_joinable(bounty, participant_id, now)
                logger.warning(f"⚠️ BOUNTY_FULL: {participant_id} lost the race for {bounty_id}")
                raise BountyFull(f"Bounty {bounty_id} is full", bounty_id=bounty_id)

            ledger = WalletLedger(session)
            await ledger.lock(participant_id, stake, bounty_id)
            await EscrowStore(session).contribute(escrow_id, participant_id, stake, hold_ref)

            try:
                async with session.begin_nested():
                    session.add(BountyParticipant(
                        bounty_id=bounty_id,
                        participant_id=participant_id,
                        stake_amount=stake,
                        current_score=Decimal("0"),
                        join_order=join_order,
                        joined_at=get_naive_utc_now(),
                    ))
            except IntegrityError as e:
                raise AlreadyJoined(f"{participant_id} already joined bounty {bounty_id}",
                                    bounty_id=bounty_id, participant_id=participant_id) from e

            log = BountyUpdateLog(session)
            await log.append(
                bounty_id, f"{participant_id} joined with a stake of {stake}",
                PlayerUpdatePayload(participant_id=participant_id, stake=str(stake), join_order=join_order,
                                    participant_count=join_order, max_participants=bounty.max_participants),
            )

            status = BountyStatus.OPEN
            if join_order == bounty.max_participants:
                BountyStateValidator.require_transition(BountyStatus.OPEN, BountyStatus.ACTIVE, bounty_id)
                await session.execute(
                    update(Bounty)
                    .where(Bounty.id == bounty_id, Bounty.status == BountyStatus.OPEN.value)
                    .values(status=BountyStatus.ACTIVE.value)
                    .execution_options(synchronize_session=False)
                )
                status = BountyStatus.ACTIVE
                await log.append(bounty_id, "Roster full, bounty is now active",
                                 StatusChangePayload(from_status=BountyStatus.OPEN.value,
                                                     to_status=BountyStatus.ACTIVE.value,
                                                     reason="roster_full"))

            await ledger.check_invariants(participant_id)
            await EscrowStore(session).check_invariants(escrow_id)
            return {"bounty_id": bounty_id, "participant_id": participant_id,
                    "join_order": join_order, "status": status.value}

        try:
            result = await run_atomic(self.session_factory, persist,
                                      description=f"join_bounty[{bounty_id}:{participant_id}]")
        except Exception:
            await self.escrow_service.void_hold(hold_ref, f"join of {participant_id} to {bounty_id} aborted")
            raise

        logger.info(f"✅ BOUNTY_JOINED: {participant_id} -> {bounty_id} stake {stake} (slot {result['join_order']})")
        if result["status"] == BountyStatus.ACTIVE.value:
            logger.info(f"🔄 BOUNTY_ACTIVATED: {bounty_id} roster full")
        return result

    @staticmethod
    async def _check_not_joined(session: AsyncSession, bounty_id: str, participant_id: str) -> None:
        existing = await session.execute(
            select(BountyParticipant.id).where(
                BountyParticipant.bounty_id == bounty_id,
                BountyParticipant.participant_id == participant_id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise AlreadyJoined(f"{participant_id} already joined bounty {bounty_id}",
                                bounty_id=bounty_id, participant_id=participant_id)

    @staticmethod
    def _check_joinable(bounty: Bounty, participant_id: str, now: datetime) -> None:
        if participant_id == bounty.creator_id:
            raise SelfJoinNotAllowed("Creators cannot join their own bounty",
                                     bounty_id=bounty.id, participant_id=participant_id)
        if bounty.participant_count >= bounty.max_participants:
            raise BountyFull(f"Bounty {bounty.id} is full", bounty_id=bounty.id)
        if bounty.status_enum is not BountyStatus.OPEN:
            raise InvalidBountyState(f"Bounty {bounty.id} is {bounty.status}, not open for joining",
                                     bounty_id=bounty.id, status=bounty.status)
        if bounty.settlement_state is not None:
            raise InvalidBountyState(f"Bounty {bounty.id} is being refunded",
                                     bounty_id=bounty.id, settlement_state=bounty.settlement_state)
        if now >= bounty.end_date:
            raise InvalidBountyState(f"Bounty {bounty.id} closed for joining at {bounty.end_date}",
                                     bounty_id=bounty.id, end_date=bounty.end_date.isoformat())

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def update_scores(self, bounty_id: str, scores: ScoreInput,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
        """Push current scores for an ACTIVE bounty before its end date"""
        normalized = normalize_scores(scores)
        if not normalized:
            raise InvalidScore("No scores supplied", bounty_id=bounty_id)
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        async def persist(session: AsyncSession) -> int:
            bounty = await load_bounty(session, bounty_id)
            if bounty.status_enum is not BountyStatus.ACTIVE:
                raise InvalidBountyState(f"Bounty {bounty_id} is {bounty.status}; scores are accepted while active",
                                         bounty_id=bounty_id, status=bounty.status)
            if now >= bounty.end_date:
                raise InvalidBountyState(f"Scoring window for bounty {bounty_id} closed at {bounty.end_date}",
                                         bounty_id=bounty_id)
            if bounty.settlement_state == SettlementState.IN_PROGRESS.value:
                raise SettlementInProgress(f"Bounty {bounty_id} is being settled", bounty_id=bounty_id)

            roster = {p.participant_id: p for p in await load_participants(session, bounty_id)}
            unknown = [pid for pid, _ in normalized if pid not in roster]
            if unknown:
                raise InvalidScore(f"Not participants of bounty {bounty_id}: {', '.join(unknown)}",
                                   bounty_id=bounty_id, participants=unknown)

            for participant_id, score in normalized:
                roster[participant_id].current_score = score

            await BountyUpdateLog(session).append(
                bounty_id, f"Scores updated for {len(normalized)} participant(s)",
                ScoreUpdatePayload(scores={pid: str(score) for pid, score in normalized}),
            )
            return len(normalized)

        updated = await run_atomic(self.session_factory, persist, description=f"update_scores[{bounty_id}]")
        logger.info(f"📊 SCORES_UPDATED: {bounty_id} ({updated} participant(s))")
        return {"bounty_id": bounty_id, "updated": updated}

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_leaderboard(self, bounty_id: str) -> List[LeaderboardEntry]:
        """Participants best-first; ties broken by join order"""
        async with self.session_factory() as session:
            bounty = await load_bounty(session, bounty_id)
            participants = await load_participants(session, bounty_id)
        return build_leaderboard(TargetMetric.from_json(bounty.target_metric), participants)

    async def get_bounty(self, bounty_id: str, recent: int = 10) -> BountySnapshot:
        async with self.session_factory() as session:
            bounty = await load_bounty(session, bounty_id)
            participants = await load_participants(session, bounty_id)
            escrow = (await session.execute(
                select(EscrowAccount).where(EscrowAccount.id == bounty.escrow_id)
            )).scalar_one()
            updates = await BountyUpdateLog(session).latest(bounty_id, recent)

        roster = sorted(participants, key=lambda p: (-p.current_score, p.join_order))
        return BountySnapshot(
            bounty=bounty_to_dict(bounty),
            escrow={
                "escrow_id": escrow.id,
                "status": escrow.status,
                "total_amount": str(escrow.total_amount),
                "creator_amount": str(escrow.creator_amount),
                "opponent_amount": str(escrow.opponent_amount),
            },
            participants=[
                {
                    "participant_id": p.participant_id,
                    "stake_amount": str(p.stake_amount),
                    "current_score": str(p.current_score),
                    "join_order": p.join_order,
                    "joined_at": p.joined_at.isoformat(),
                }
                for p in roster
            ],
            recent_updates=updates,
        )

    async def list_open_bounties(self, league_id: Optional[str] = None,
                                 include_private: bool = False) -> List[Dict[str, Any]]:
        """OPEN bounties that can still be joined, oldest first"""
        stmt = select(Bounty).where(
            Bounty.status == BountyStatus.OPEN.value,
            Bounty.settlement_state.is_(None),
            Bounty.participant_count < Bounty.max_participants,
        )
        if not include_private:
            stmt = stmt.where(Bounty.is_public.is_(True))
        if league_id is not None:
            stmt = stmt.where(Bounty.league_id == league_id)
        stmt = stmt.order_by(Bounty.created_at, Bounty.id)

        async with self.session_factory() as session:
            bounties = (await session.execute(stmt)).scalars().all()
        return [bounty_to_dict(b) for b in bounties]

    async def get_updates(self, bounty_id: str, after_id: Optional[int] = None,
                          limit: Optional[int] = None) -> List[UpdateEntry]:
        async with self.session_factory() as session:
            await load_bounty(session, bounty_id)
            return await BountyUpdateLog(session).feed(bounty_id, after_id=after_id, limit=limit)

    async def get_wallet(self, user_id: str) -> Optional[Dict[str, str]]:
        async with self.session_factory() as session:
            wallet: Optional[UserWallet] = await WalletLedger(session).get_wallet(user_id)
        if wallet is None:
            return None
        return {
            "user_id": wallet.user_id,
            "balance": str(wallet.balance),
            "locked_amount": str(wallet.locked_amount),
            "available_balance": str(wallet.available_balance),
            "total_deposited": str(wallet.total_deposited),
            "total_withdrawn": str(wallet.total_withdrawn),
            "total_won": str(wallet.total_won),
            "total_lost": str(wallet.total_lost),
        }


def build_leaderboard(metric: TargetMetric, participants: List[BountyParticipant]) -> List[LeaderboardEntry]:
    ordered = sorted(participants, key=lambda p: (metric.ranking_key(p.current_score), p.join_order))
    return [
        LeaderboardEntry(
            participant_id=p.participant_id,
            score=p.current_score,
            progress=metric.progress(p.current_score),
            rank=rank,
            is_winning=metric.evaluate(p.current_score),
            join_order=p.join_order,
        )
        for rank, p in enumerate(ordered, start=1)
    ]
