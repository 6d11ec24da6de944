"""
Bounty Update Log
Append-only audit feed of everything that happened to a bounty

Each UpdateType has exactly one payload dataclass; the update type of a row is
derived from the payload class, so a payload can never be logged under the
wrong type and consumers can match on the payload class exhaustively.
Amounts and scores are carried as strings so JSON never turns them into floats.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Type, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from models import BountyUpdate, UpdateType
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreUpdatePayload:
    scores: Dict[str, str]  # participant_id -> score


@dataclass(frozen=True)
class StatusChangePayload:
    from_status: Optional[str]
    to_status: str
    reason: str
    winner_ids: List[str] = field(default_factory=list)
    payout_per_winner: Optional[str] = None
    payouts: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentUpdatePayload:
    # "settlement_attempt" | "settlement_failed" | "hold_placed" | "hold_voided"
    event: str
    attempt: Optional[int] = None
    results: List[Dict[str, Union[str, bool]]] = field(default_factory=list)
    error: Optional[str] = None
    user_id: Optional[str] = None
    amount: Optional[str] = None


@dataclass(frozen=True)
class PlayerUpdatePayload:
    participant_id: str
    stake: str
    join_order: int
    participant_count: int
    max_participants: int


@dataclass(frozen=True)
class SystemMessagePayload:
    reason: str
    detail: Optional[str] = None
    refunded: Dict[str, str] = field(default_factory=dict)


UpdatePayload = Union[
    ScoreUpdatePayload,
    StatusChangePayload,
    PaymentUpdatePayload,
    PlayerUpdatePayload,
    SystemMessagePayload,
]

PAYLOAD_TYPES: Dict[UpdateType, Type] = {
    UpdateType.SCORE_UPDATE: ScoreUpdatePayload,
    UpdateType.STATUS_CHANGE: StatusChangePayload,
    UpdateType.PAYMENT_UPDATE: PaymentUpdatePayload,
    UpdateType.PLAYER_UPDATE: PlayerUpdatePayload,
    UpdateType.SYSTEM_MESSAGE: SystemMessagePayload,
}

_TYPE_BY_PAYLOAD: Dict[Type, UpdateType] = {cls: update_type for update_type, cls in PAYLOAD_TYPES.items()}


def update_type_for(payload: UpdatePayload) -> UpdateType:
    try:
        return _TYPE_BY_PAYLOAD[type(payload)]
    except KeyError:
        raise TypeError(f"Not a bounty update payload: {type(payload).__name__}") from None


def encode_payload(payload: UpdatePayload) -> Tuple[UpdateType, dict]:
    return update_type_for(payload), asdict(payload)


def decode_payload(update_type: Union[UpdateType, str], data: dict) -> UpdatePayload:
    update_type = UpdateType(update_type) if isinstance(update_type, str) else update_type
    return PAYLOAD_TYPES[update_type](**data)


@dataclass(frozen=True)
class UpdateEntry:
    """One feed entry as handed to consumers"""
    id: int
    bounty_id: str
    update_type: UpdateType
    message: str
    payload: UpdatePayload
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bounty_id": self.bounty_id,
            "type": self.update_type.value,
            "message": self.message,
            "data": asdict(self.payload),
            "created_at": self.created_at.isoformat(),
        }


def _entry(row: BountyUpdate) -> UpdateEntry:
    return UpdateEntry(
        id=row.id,
        bounty_id=row.bounty_id,
        update_type=UpdateType(row.update_type),
        message=row.message,
        payload=decode_payload(row.update_type, row.data),
        created_at=row.created_at,
    )


class BountyUpdateLog:
    """Append/read access to the feed inside the caller's session"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, bounty_id: str, message: str, payload: UpdatePayload) -> BountyUpdate:
        update_type, data = encode_payload(payload)
        row = BountyUpdate(
            bounty_id=bounty_id,
            update_type=update_type.value,
            message=message,
            data=data,
            created_at=get_naive_utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        logger.debug(f"📝 BOUNTY_UPDATE: {bounty_id} [{update_type.value}] {message}")
        return row

    async def feed(self, bounty_id: str, after_id: Optional[int] = None,
                   limit: Optional[int] = None) -> List[UpdateEntry]:
        """Entries in append order, optionally only those after ``after_id``"""
        stmt = select(BountyUpdate).where(BountyUpdate.bounty_id == bounty_id)
        if after_id is not None:
            stmt = stmt.where(BountyUpdate.id > after_id)
        stmt = stmt.order_by(BountyUpdate.id).limit(limit or Config.BOUNTY_FEED_PAGE_SIZE)
        result = await self.session.execute(stmt)
        return [_entry(row) for row in result.scalars().all()]

    async def latest(self, bounty_id: str, count: int = 10) -> List[UpdateEntry]:
        """Most recent ``count`` entries, oldest first"""
        result = await self.session.execute(
            select(BountyUpdate)
            .where(BountyUpdate.bounty_id == bounty_id)
            .order_by(BountyUpdate.id.desc())
            .limit(count)
        )
        return [_entry(row) for row in reversed(result.scalars().all())]
