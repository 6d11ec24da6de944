"""
Background Job Tests
Expiry sweep, ledger consistency audit and scheduler wiring
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from conftest import END, make_params, wallet
from jobs.bounty_expiry_monitor import find_stale_bounty_ids
from jobs.scheduler import BountyScheduler
from models import BountyStatus, EscrowAccount, SettlementState, UserWallet
from utils.atomic_transactions import run_atomic
from utils.exception_handler import InvalidBountyState, SettlementFailed


async def _open_bounty_with_one_joiner(engine, fund, **overrides) -> str:
    await fund("creator", "500")
    await fund("alice", "200")
    created = await engine.create_bounty(make_params(max_participants=2, **overrides))
    await engine.join_bounty(created["bounty_id"], "alice", Decimal("50.00"))
    return created["bounty_id"]


async def _creator_hold(session_factory, bounty_id: str, engine) -> str:
    snapshot = await engine.get_bounty(bounty_id)
    async with session_factory() as session:
        escrow = (await session.execute(
            select(EscrowAccount).where(EscrowAccount.id == snapshot.bounty["escrow_id"])
        )).scalar_one()
    return escrow.payment_intent_id


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_expires_open_bounty_past_end_date(self, engine, fund, processor):
        bounty_id = await _open_bounty_with_one_joiner(engine, fund)

        result = await engine.expire_stale_bounties(now=END)

        assert result.expired == [bounty_id]
        assert result.refunded[bounty_id] == {"creator": "100.00", "alice": "50.00"}
        assert result.failures == []
        assert result.get_summary()["expired_count"] == 1
        assert processor.count("refund") == 2

        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["status"] == BountyStatus.EXPIRED.value
        assert (await wallet(engine, "creator"))["locked_amount"] == Decimal("0")
        assert (await wallet(engine, "alice"))["locked_amount"] == Decimal("0")

    @pytest.mark.asyncio
    async def test_leaves_running_and_active_bounties_alone(self, engine, fund, session_factory, active_bounty):
        await fund("creator", "500")
        later = await engine.create_bounty(make_params(end_date=END + timedelta(days=1)))

        result = await engine.expire_stale_bounties(now=END)

        assert result.total_bounties_checked == 0
        assert await find_stale_bounty_ids(session_factory, END + timedelta(days=1)) == [later["bounty_id"]]
        snapshot = await engine.get_bounty(active_bounty)
        assert snapshot.bounty["status"] == BountyStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_expire_before_end_date_rejected(self, engine, fund):
        bounty_id = await _open_bounty_with_one_joiner(engine, fund)

        with pytest.raises(InvalidBountyState):
            await engine.expire_bounty(bounty_id, now=END - timedelta(seconds=1))

    @pytest.mark.asyncio
    async def test_failed_expiry_is_retried_on_next_sweep(self, engine, fund, processor, session_factory):
        bounty_id = await _open_bounty_with_one_joiner(engine, fund)
        processor.fail_for("refund", await _creator_hold(session_factory, bounty_id, engine))

        first = await engine.expire_stale_bounties(now=END)

        assert first.expired == []
        assert [f["bounty_id"] for f in first.failures] == [bounty_id]
        assert first.failures[0]["error"] == "settlement_failed"
        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["status"] == BountyStatus.OPEN.value
        assert snapshot.bounty["settlement_state"] == SettlementState.FAILED.value

        processor.clear_failures()
        second = await engine.expire_stale_bounties(now=END)

        assert second.expired == [bounty_id]
        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["status"] == BountyStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_failed_expiry_blocks_new_joins(self, engine, fund, processor, session_factory):
        bounty_id = await _open_bounty_with_one_joiner(engine, fund)
        await fund("bob", "100")
        processor.fail_for("refund", await _creator_hold(session_factory, bounty_id, engine))
        await engine.expire_stale_bounties(now=END)

        with pytest.raises(InvalidBountyState):
            await engine.join_bounty(bounty_id, "bob", Decimal("10"))


class TestLedgerAudit:

    @pytest.mark.asyncio
    async def test_clean_ledger(self, engine, fund, active_bounty):
        await engine.settle_bounty(active_bounty, [("alice", 25)])
        await _open_bounty_with_one_joiner(engine, fund)

        result = await engine.audit_ledger()

        assert result.is_consistent
        assert result.flagged_settlements == []
        summary = result.get_summary()
        assert summary["bounties_checked"] == 2
        assert summary["wallets_checked"] == 2
        assert summary["critical_issues"] == 0

    @pytest.mark.asyncio
    async def test_failed_settlement_is_flagged_not_inconsistent(self, engine, processor, active_bounty):
        processor.fail_for("release", "alice")
        with pytest.raises(SettlementFailed):
            await engine.settle_bounty(active_bounty, [("alice", 25)])

        result = await engine.audit_ledger()

        assert result.is_consistent
        assert [f["bounty_id"] for f in result.flagged_settlements] == [active_bounty]
        assert result.flagged_settlements[0]["settlement_state"] == SettlementState.FAILED.value
        assert result.flagged_settlements[0]["settlement_attempts"] == 1

    @pytest.mark.asyncio
    async def test_detects_locked_amount_drift(self, engine, session_factory, active_bounty):
        async def corrupt(session):
            await session.execute(
                update(UserWallet).where(UserWallet.user_id == "alice").values(locked_amount=Decimal("10.00"))
            )

        await run_atomic(session_factory, corrupt)

        result = await engine.audit_ledger()

        assert not result.is_consistent
        assert [(i["entity_id"], i["issue_type"]) for i in result.inconsistencies] == [
            ("alice", "locked_amount_mismatch")
        ]
        assert result.inconsistencies[0]["details"] == {"locked_amount": "10.00", "open_stakes": "50.00"}
        assert result.critical_issues == 1

    @pytest.mark.asyncio
    async def test_detects_escrow_total_drift(self, engine, session_factory, active_bounty):
        snapshot = await engine.get_bounty(active_bounty)

        async def corrupt(session):
            await session.execute(
                update(EscrowAccount).where(EscrowAccount.id == snapshot.bounty["escrow_id"])
                .values(opponent_amount=Decimal("40.00"), total_amount=Decimal("140.00"))
            )

        await run_atomic(session_factory, corrupt)

        result = await engine.audit_ledger()

        issues = {i["issue_type"] for i in result.inconsistencies}
        assert issues == {"escrow_totals_mismatch"}
        assert result.inconsistencies[0]["details"]["problems"] == ["contributions 150.00 != total 140.00"]


class _BrokenEngine:

    async def expire_stale_bounties(self):
        raise RuntimeError("store offline")

    async def audit_ledger(self):
        raise RuntimeError("store offline")


class TestBountyScheduler:

    def test_setup_registers_both_jobs(self, engine):
        scheduler = BountyScheduler(engine)

        scheduler.setup_jobs()

        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert set(jobs) == {"bounty_expiry_check", "ledger_audit"}
        assert jobs["bounty_expiry_check"].trigger.interval == timedelta(minutes=5)
        assert jobs["ledger_audit"].trigger.interval == timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        scheduler = BountyScheduler(engine)

        scheduler.start()
        try:
            assert scheduler.scheduler.running
        finally:
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_job_wrappers_return_results(self, engine, active_bounty):
        scheduler = BountyScheduler(engine)

        expiry = await scheduler.expire_stale_bounties()
        audit = await scheduler.audit_ledger()

        assert expiry.total_bounties_checked == 0
        assert audit.is_consistent

    @pytest.mark.asyncio
    async def test_job_failures_are_logged_not_raised(self):
        scheduler = BountyScheduler(_BrokenEngine())

        assert await scheduler.expire_stale_bounties() is None
        assert await scheduler.audit_ledger() is None
