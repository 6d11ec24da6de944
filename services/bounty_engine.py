"""
Bounty Engine
Composition root for the bounty subsystem

BountyEngine wires the services together around an injected session factory and
payment capability; there is no module-level instance. BountyApi wraps the
engine for the front end: every call returns {'success': True, 'data': ...} or
the error mapping from utils.exception_handler.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.bounty_expiry_monitor import BountyExpiryResult, expire_stale_bounties
from jobs.ledger_consistency_monitor import LedgerAuditResult, audit_ledger
from services.bounty_service import (
    BountyService, BountySnapshot, CreateBountyParams, LeaderboardEntry, ScoreInput
)
from services.bounty_update_log import UpdateEntry
from services.escrow_account_service import EscrowAccountService
from services.payment_capability import PaymentCapability, PaymentGateway
from services.retry_service import RetryService
from services.settlement_engine import ResultInput, SettlementEngine, SettlementReport
from services.wallet_ledger import WalletLedger
from utils.atomic_transactions import run_atomic
from utils.exception_handler import api_result

logger = logging.getLogger(__name__)


class BountyEngine:
    """Escrow-backed bounty operations over one store and one payment processor"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        payment_capability: PaymentCapability,
        retry: Optional[RetryService] = None,
    ):
        self.session_factory = session_factory
        self.gateway = PaymentGateway(payment_capability, retry)
        self.escrow = EscrowAccountService(session_factory, self.gateway)
        self.bounties = BountyService(session_factory, self.escrow)
        self.settlement = SettlementEngine(session_factory, self.escrow)

    # Contract
    async def create_bounty(self, params: CreateBountyParams) -> Dict[str, str]:
        return await self.bounties.create_bounty(params)

    async def join_bounty(self, bounty_id: str, participant_id: str, stake: Decimal,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.bounties.join_bounty(bounty_id, participant_id, stake, now=now)

    async def update_scores(self, bounty_id: str, scores: ScoreInput,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.bounties.update_scores(bounty_id, scores, now=now)

    # Resolution
    async def settle_bounty(self, bounty_id: str, results: Sequence[ResultInput]) -> SettlementReport:
        return await self.settlement.settle(bounty_id, results)

    async def cancel_bounty(self, bounty_id: str, requester_id: str,
                            reason: Optional[str] = None) -> SettlementReport:
        if reason:
            return await self.settlement.cancel(bounty_id, requester_id, reason)
        return await self.settlement.cancel(bounty_id, requester_id)

    async def expire_bounty(self, bounty_id: str, now: Optional[datetime] = None) -> SettlementReport:
        return await self.settlement.expire(bounty_id, now)

    async def expire_stale_bounties(self, now: Optional[datetime] = None) -> BountyExpiryResult:
        return await expire_stale_bounties(self, now)

    async def audit_ledger(self) -> LedgerAuditResult:
        return await audit_ledger(self.session_factory)

    # Read models
    async def get_leaderboard(self, bounty_id: str) -> List[LeaderboardEntry]:
        return await self.bounties.get_leaderboard(bounty_id)

    async def get_bounty(self, bounty_id: str, recent: int = 10) -> BountySnapshot:
        return await self.bounties.get_bounty(bounty_id, recent)

    async def list_open_bounties(self, league_id: Optional[str] = None,
                                 include_private: bool = False) -> List[Dict[str, Any]]:
        return await self.bounties.list_open_bounties(league_id, include_private)

    async def get_updates(self, bounty_id: str, after_id: Optional[int] = None,
                          limit: Optional[int] = None) -> List[UpdateEntry]:
        return await self.bounties.get_updates(bounty_id, after_id, limit)

    # Wallet funding
    async def deposit(self, user_id: str, amount: Decimal, description: Optional[str] = None) -> Dict[str, str]:
        async def operation(session: AsyncSession) -> None:
            await WalletLedger(session).deposit(user_id, amount, description)

        await run_atomic(self.session_factory, operation, description=f"deposit[{user_id}]")
        return await self.get_wallet(user_id)

    async def withdraw(self, user_id: str, amount: Decimal, description: Optional[str] = None) -> Dict[str, str]:
        async def operation(session: AsyncSession) -> None:
            ledger = WalletLedger(session)
            await ledger.withdraw(user_id, amount, description)
            await ledger.check_invariants(user_id)

        await run_atomic(self.session_factory, operation, description=f"withdraw[{user_id}]")
        return await self.get_wallet(user_id)

    async def get_wallet(self, user_id: str) -> Optional[Dict[str, str]]:
        return await self.bounties.get_wallet(user_id)


class BountyApi:
    """Front-end surface; JSON-ready dicts, errors mapped instead of raised"""

    def __init__(self, engine: BountyEngine):
        self.engine = engine

    @api_result
    async def create_bounty(self, **params) -> Dict[str, str]:
        return await self.engine.create_bounty(CreateBountyParams(**params))

    @api_result
    async def join_bounty(self, bounty_id: str, participant_id: str, stake) -> Dict[str, Any]:
        return await self.engine.join_bounty(bounty_id, participant_id, stake)

    @api_result
    async def update_scores(self, bounty_id: str, scores: ScoreInput) -> Dict[str, Any]:
        return await self.engine.update_scores(bounty_id, scores)

    @api_result
    async def get_leaderboard(self, bounty_id: str) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in await self.engine.get_leaderboard(bounty_id)]

    @api_result
    async def settle_bounty(self, bounty_id: str, results: Sequence[ResultInput]) -> Dict[str, Any]:
        return (await self.engine.settle_bounty(bounty_id, results)).to_dict()

    @api_result
    async def cancel_bounty(self, bounty_id: str, requester_id: str) -> Dict[str, Any]:
        return (await self.engine.cancel_bounty(bounty_id, requester_id)).to_dict()

    @api_result
    async def get_updates(self, bounty_id: str, after_id: Optional[int] = None,
                          limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in await self.engine.get_updates(bounty_id, after_id, limit)]

    @api_result
    async def get_bounty(self, bounty_id: str) -> Dict[str, Any]:
        snapshot = await self.engine.get_bounty(bounty_id)
        data = asdict(snapshot)
        data["recent_updates"] = [entry.to_dict() for entry in snapshot.recent_updates]
        return data

    @api_result
    async def list_open_bounties(self, league_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.engine.list_open_bounties(league_id)

    @api_result
    async def get_wallet(self, user_id: str) -> Optional[Dict[str, str]]:
        return await self.engine.get_wallet(user_id)
