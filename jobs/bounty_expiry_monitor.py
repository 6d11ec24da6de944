"""
Bounty Expiry Monitor
Refunds OPEN bounties whose end date passed before the roster filled and moves
them to EXPIRED. Bounties whose earlier expiry attempt failed are picked up again.
"""

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import or_, select

from models import Bounty, BountyStatus, SettlementState
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exception_handler import BountyError

if TYPE_CHECKING:
    from services.bounty_engine import BountyEngine

logger = logging.getLogger(__name__)


class BountyExpiryResult:
    """Result object for one expiry sweep"""

    def __init__(self):
        self.total_bounties_checked = 0
        self.expired: List[str] = []
        self.refunded: Dict[str, Dict[str, str]] = {}
        self.failures: List[Dict[str, Any]] = []
        self.execution_time_ms = 0

    def add_expired(self, bounty_id: str, refunded: Dict[str, Any]):
        self.expired.append(bounty_id)
        self.refunded[bounty_id] = {user_id: str(amount) for user_id, amount in refunded.items()}

    def add_failure(self, bounty_id: str, error: BountyError):
        """Record a bounty that could not be expired this run"""
        self.failures.append({"bounty_id": bounty_id, "error": error.code, "message": error.message})
        logger.error(f"EXPIRY_MONITOR_ERROR: {bounty_id}: {error.code} - {error.message}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_bounties_checked": self.total_bounties_checked,
            "expired_count": len(self.expired),
            "failure_count": len(self.failures),
            "execution_time_ms": self.execution_time_ms,
        }


async def find_stale_bounty_ids(session_factory, now: datetime) -> List[str]:
    async with session_factory() as session:
        result = await session.execute(
            select(Bounty.id)
            .where(
                Bounty.status == BountyStatus.OPEN.value,
                Bounty.end_date <= now,
                or_(Bounty.settlement_state.is_(None),
                    Bounty.settlement_state == SettlementState.FAILED.value),
            )
            .order_by(Bounty.end_date, Bounty.id)
        )
        return list(result.scalars().all())


async def expire_stale_bounties(engine: "BountyEngine", now: Optional[datetime] = None) -> BountyExpiryResult:
    """Expire every stale OPEN bounty; one failing bounty does not stop the sweep"""
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    start = time.time()
    result = BountyExpiryResult()

    stale = await find_stale_bounty_ids(engine.session_factory, now)
    result.total_bounties_checked = len(stale)
    if not stale:
        logger.debug("EXPIRY_CHECK: no stale bounties")
        return result

    logger.info(f"⏰ EXPIRY_CHECK_START: {len(stale)} stale open bounty(ies)")
    for bounty_id in stale:
        try:
            report = await engine.expire_bounty(bounty_id, now)
        except BountyError as e:
            result.add_failure(bounty_id, e)
            continue
        if not report.already_settled:
            result.add_expired(bounty_id, report.refunded)

    result.execution_time_ms = int((time.time() - start) * 1000)
    logger.info(f"✅ EXPIRY_CHECK_COMPLETE: {result.get_summary()}")
    return result
