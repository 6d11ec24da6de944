"""
Shared fixtures for the bounty engine test-suite

Key components:
1. A fresh SQLite store per test (aiosqlite, BEGIN IMMEDIATE locking)
2. FakePaymentCapability: in-memory processor that records every call and can
   be told to fail transiently or permanently
3. Zero-delay retry configuration so failure paths run instantly
4. Helpers to fund wallets and build bounty parameters
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from config import Config
from database import build_async_engine, build_session_factory, create_tables
from services.bounty_engine import BountyEngine
from services.bounty_service import CreateBountyParams
from services.payment_capability import (
    HoldMetadata, PaymentCapability, PaymentConfirmation, PaymentDeclined, TransientPaymentError
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

START = datetime(2030, 1, 1, 12, 0, 0)
END = START + timedelta(days=7)


@dataclass
class ProcessorCall:
    operation: str
    args: tuple


@dataclass
class FakePaymentCapability(PaymentCapability):
    """
    In-memory processor double.

    Failure injection: ``fail_next(operation, error, times)`` makes the next
    ``times`` calls of ``operation`` ("create_hold" | "release" | "refund")
    raise ``error``; ``fail_for(operation, key, error)`` fails every call whose
    payer/recipient/hold matches ``key`` until cleared.
    """
    calls: List[ProcessorCall] = field(default_factory=list)
    holds: Dict[str, dict] = field(default_factory=dict)
    releases: Dict[tuple, PaymentConfirmation] = field(default_factory=dict)
    refunds: Dict[str, PaymentConfirmation] = field(default_factory=dict)
    _pending_failures: Dict[str, list] = field(default_factory=dict)
    _sticky_failures: Dict[tuple, Exception] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def fail_next(self, operation: str, error: Optional[Exception] = None, times: int = 1):
        error = error or TransientPaymentError(f"{operation} unavailable")
        self._pending_failures.setdefault(operation, []).extend([error] * times)

    def fail_for(self, operation: str, key: str, error: Optional[Exception] = None):
        self._sticky_failures[(operation, key)] = error or PaymentDeclined(f"{operation} declined for {key}")

    def clear_failures(self):
        self._pending_failures.clear()
        self._sticky_failures.clear()

    def _maybe_fail(self, operation: str, key: str):
        sticky = self._sticky_failures.get((operation, key))
        if sticky is not None:
            raise sticky
        pending = self._pending_failures.get(operation)
        if pending:
            raise pending.pop(0)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call.operation == operation)

    async def create_hold(self, payer_id: str, amount: Decimal, metadata: HoldMetadata) -> str:
        self.calls.append(ProcessorCall("create_hold", (payer_id, amount, metadata)))
        self._maybe_fail("create_hold", payer_id)
        hold_ref = f"hold_{next(self._ids)}"
        self.holds[hold_ref] = {"payer_id": payer_id, "amount": amount, "metadata": metadata}
        return hold_ref

    async def release(self, hold_ref: str, recipient_id: str, amount: Decimal,
                      idempotency_key: str) -> PaymentConfirmation:
        self.calls.append(ProcessorCall("release", (hold_ref, recipient_id, amount, idempotency_key)))
        self._maybe_fail("release", recipient_id)
        key = (hold_ref, recipient_id)
        if key not in self.releases:
            self.releases[key] = PaymentConfirmation(f"rel_{next(self._ids)}", amount)
        return self.releases[key]

    async def refund(self, hold_ref: str, reason: str) -> PaymentConfirmation:
        self.calls.append(ProcessorCall("refund", (hold_ref, reason)))
        self._maybe_fail("refund", hold_ref)
        if hold_ref not in self.refunds:
            self.refunds[hold_ref] = PaymentConfirmation(f"ref_{next(self._ids)}", self.holds.get(hold_ref, {}).get("amount"))
        return self.refunds[hold_ref]

    def paid_to(self, recipient_id: str) -> Decimal:
        return sum((c.amount for (_, r), c in self.releases.items() if r == recipient_id), Decimal("0"))


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No sleeping between processor or store retries"""
    monkeypatch.setattr(Config, "PAYMENT_RETRY_INITIAL_DELAY", 0.0)
    monkeypatch.setattr(Config, "PAYMENT_RETRY_MAX_DELAY", 0.0)
    monkeypatch.setattr(Config, "STORE_TRANSACTION_RETRY_DELAY", 0.0)
    monkeypatch.setattr(Config, "PAYMENT_RETRY_MAX_ATTEMPTS", 3)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bounty_test.db'}", echo=False)
    await create_tables(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def processor() -> FakePaymentCapability:
    return FakePaymentCapability()


@pytest.fixture
def engine(session_factory, processor) -> BountyEngine:
    return BountyEngine(session_factory, processor)


@pytest.fixture
def fund(engine):
    """await fund(user_id, amount) -> wallet dict"""

    async def _fund(user_id: str, amount) -> dict:
        return await engine.deposit(user_id, Decimal(str(amount)))

    return _fund


def make_params(creator_id: str = "creator", amount="100.00", target="20", comparison="greater_than",
                max_participants: int = 1, **overrides) -> CreateBountyParams:
    values = dict(
        creator_id=creator_id,
        title="Over 20 points",
        bounty_amount=Decimal(str(amount)),
        target=target,
        comparison=comparison,
        timeframe="single_game",
        start_date=START,
        end_date=END,
        max_participants=max_participants,
    )
    values.update(overrides)
    return CreateBountyParams(**values)


@pytest.fixture
def bounty_params():
    return make_params


@pytest_asyncio.fixture
async def active_bounty(engine, fund):
    """Creator $100 on '> 20' with one participant staking $50, roster full"""
    await fund("creator", "500")
    await fund("alice", "200")
    created = await engine.create_bounty(make_params())
    await engine.join_bounty(created["bounty_id"], "alice", Decimal("50.00"))
    return created["bounty_id"]


async def wallet(engine: BountyEngine, user_id: str) -> Dict[str, Decimal]:
    data = await engine.get_wallet(user_id)
    return {key: Decimal(value) for key, value in data.items() if key != "user_id"}
