"""
Ledger Consistency Monitor
Read-only reconciliation of wallets, escrows and bounties

Detects and reports; never repairs. Every inconsistency goes to the centralized
error log so it can be reconciled by hand.
"""

import logging
import time
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import (
    Bounty, BountyParticipant, BountyStatus, EscrowAccount, EscrowAccountStatus, EscrowContribution,
    EscrowRelease, SettlementState, TERMINAL_BOUNTY_STATUSES, UserWallet
)
from services.escrow_account_service import escrow_problems
from utils.centralized_logger import centralized_logger
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import sum_amounts

logger = logging.getLogger(__name__)

EXPECTED_ESCROW_STATUS = {
    BountyStatus.OPEN: EscrowAccountStatus.ACTIVE,
    BountyStatus.ACTIVE: EscrowAccountStatus.ACTIVE,
    BountyStatus.COMPLETED: EscrowAccountStatus.RELEASED,
    BountyStatus.CANCELLED: EscrowAccountStatus.REFUNDED,
    BountyStatus.EXPIRED: EscrowAccountStatus.REFUNDED,
}

CRITICAL_ISSUES = {
    "wallet_locked_out_of_range",
    "escrow_totals_mismatch",
    "locked_amount_mismatch",
    "payout_total_mismatch",
}


class LedgerAuditResult:
    """Result object for one audit run"""

    def __init__(self):
        self.wallets_checked = 0
        self.escrows_checked = 0
        self.bounties_checked = 0
        self.critical_issues = 0
        self.inconsistencies: List[Dict[str, Any]] = []
        self.flagged_settlements: List[Dict[str, Any]] = []
        self.execution_time_ms = 0

    @property
    def is_consistent(self) -> bool:
        return not self.inconsistencies

    def add_inconsistency(self, entity_id: str, issue_type: str, details: Dict[str, Any]):
        """Record an inconsistency found"""
        record = {
            "entity_id": entity_id,
            "issue_type": issue_type,
            "details": details,
            "detected_at": get_naive_utc_now().isoformat(),
        }
        self.inconsistencies.append(record)
        if issue_type in CRITICAL_ISSUES:
            self.critical_issues += 1
        logger.error(f"🚨 LEDGER_INCONSISTENCY: {issue_type} on {entity_id}: {details}")
        centralized_logger.log_error("LEDGER_INCONSISTENCY", f"{issue_type} on {entity_id}", context=details)

    def add_flagged_settlement(self, bounty: Bounty):
        self.flagged_settlements.append({
            "bounty_id": bounty.id,
            "status": bounty.status,
            "settlement_state": bounty.settlement_state,
            "settlement_attempts": bounty.settlement_attempts,
        })
        logger.warning(
            f"⚠️ SETTLEMENT_FLAGGED: {bounty.id} {bounty.status} settlement {bounty.settlement_state} "
            f"after {bounty.settlement_attempts} attempt(s)"
        )

    def get_summary(self) -> Dict[str, Any]:
        return {
            "wallets_checked": self.wallets_checked,
            "escrows_checked": self.escrows_checked,
            "bounties_checked": self.bounties_checked,
            "inconsistencies_found": len(self.inconsistencies),
            "critical_issues": self.critical_issues,
            "flagged_settlements": len(self.flagged_settlements),
            "execution_time_ms": self.execution_time_ms,
        }


async def audit_ledger(session_factory: async_sessionmaker) -> LedgerAuditResult:
    """Scan the whole store inside one read transaction"""
    start = time.time()
    result = LedgerAuditResult()
    logger.info("🔍 LEDGER_AUDIT_START")

    async with session_factory() as session:
        wallets = (await session.execute(select(UserWallet))).scalars().all()
        escrows = {e.id: e for e in (await session.execute(select(EscrowAccount))).scalars().all()}
        bounties = (await session.execute(select(Bounty).order_by(Bounty.id))).scalars().all()
        participants = (await session.execute(select(BountyParticipant))).scalars().all()
        contributions = (await session.execute(select(EscrowContribution))).scalars().all()
        releases = (await session.execute(select(EscrowRelease))).scalars().all()

    contributions_by_escrow: Dict[str, List[EscrowContribution]] = defaultdict(list)
    for contribution in contributions:
        contributions_by_escrow[contribution.escrow_id].append(contribution)
    roster_by_bounty: Dict[str, List[BountyParticipant]] = defaultdict(list)
    for participant in participants:
        roster_by_bounty[participant.bounty_id].append(participant)
    released_by_escrow: Dict[str, List[Decimal]] = defaultdict(list)
    for release in releases:
        released_by_escrow[release.escrow_id].append(release.amount)

    # 1. Wallet bounds
    for wallet in wallets:
        result.wallets_checked += 1
        if wallet.locked_amount < 0 or wallet.locked_amount > wallet.balance:
            result.add_inconsistency(wallet.user_id, "wallet_locked_out_of_range", {
                "balance": str(wallet.balance), "locked_amount": str(wallet.locked_amount),
            })

    # 2. Escrow totals
    for escrow in escrows.values():
        result.escrows_checked += 1
        problems = escrow_problems(escrow, contributions_by_escrow[escrow.id])
        if problems:
            result.add_inconsistency(escrow.id, "escrow_totals_mismatch", {"problems": problems})

    # 3. Bounty level checks; open stakes accumulated for step 4
    expected_locks: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    for bounty in bounties:
        result.bounties_checked += 1
        status = bounty.status_enum
        roster = roster_by_bounty[bounty.id]
        escrow = escrows.get(bounty.escrow_id)

        if escrow is None:
            result.add_inconsistency(bounty.id, "escrow_missing", {"escrow_id": bounty.escrow_id})
        elif escrow.status != EXPECTED_ESCROW_STATUS[status].value:
            result.add_inconsistency(bounty.id, "escrow_status_mismatch", {
                "bounty_status": bounty.status, "escrow_status": escrow.status,
            })

        if bounty.participant_count != len(roster):
            result.add_inconsistency(bounty.id, "participant_count_mismatch", {
                "participant_count": bounty.participant_count, "roster_rows": len(roster),
            })

        if status is BountyStatus.COMPLETED and escrow is not None:
            paid = sum_amounts(released_by_escrow[escrow.id])
            if paid != escrow.total_amount:
                result.add_inconsistency(bounty.id, "payout_total_mismatch", {
                    "paid": str(paid), "escrow_total": str(escrow.total_amount),
                })

        if status not in TERMINAL_BOUNTY_STATUSES:
            expected_locks[bounty.creator_id] += bounty.bounty_amount
            for participant in roster:
                expected_locks[participant.participant_id] += participant.stake_amount
            if bounty.settlement_state in (SettlementState.FAILED.value, SettlementState.IN_PROGRESS.value):
                result.add_flagged_settlement(bounty)

    # 4. Locked amount == open stakes
    for wallet in wallets:
        expected = expected_locks.get(wallet.user_id, Decimal("0"))
        if wallet.locked_amount != expected:
            result.add_inconsistency(wallet.user_id, "locked_amount_mismatch", {
                "locked_amount": str(wallet.locked_amount), "open_stakes": str(expected),
            })
    known_wallets = {w.user_id for w in wallets}
    for user_id, expected in expected_locks.items():
        if user_id not in known_wallets:
            result.add_inconsistency(user_id, "wallet_missing", {"open_stakes": str(expected)})

    result.execution_time_ms = int((time.time() - start) * 1000)
    if result.is_consistent:
        logger.info(f"✅ LEDGER_AUDIT_CLEAN: {result.get_summary()}")
    else:
        logger.warning(f"⚠️ LEDGER_AUDIT_ISSUES: {result.get_summary()}")
    return result
