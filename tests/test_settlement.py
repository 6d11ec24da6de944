"""
Settlement Engine Tests
Payout and refund paths, idempotency and recovery from processor failures
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_params, wallet
from models import BountyStatus, EscrowAccount, EscrowAccountStatus, SettlementState, UpdateType
from services.bounty_update_log import PaymentUpdatePayload, StatusChangePayload, SystemMessagePayload
from services.payment_capability import PaymentDeclined
from services.settlement_engine import SettlementResult
from utils.exception_handler import (
    IncompleteResults, InvalidBountyState, InvalidScore, NotBountyCreator, SettlementFailed
)


async def _escrow_for(engine, bounty_id) -> EscrowAccount:
    snapshot = await engine.get_bounty(bounty_id)
    async with engine.session_factory() as session:
        return (await session.execute(
            select(EscrowAccount).where(EscrowAccount.id == snapshot.bounty["escrow_id"])
        )).scalar_one()


async def _two_player_bounty(engine, fund, creator_amount="100.00", stakes=("50", "50")):
    await fund("creator", "500")
    await fund("alice", "200")
    await fund("bob", "200")
    created = await engine.create_bounty(make_params(amount=creator_amount, max_participants=2))
    await engine.join_bounty(created["bounty_id"], "alice", Decimal(stakes[0]))
    await engine.join_bounty(created["bounty_id"], "bob", Decimal(stakes[1]))
    return created["bounty_id"]


class TestScenarios:

    @pytest.mark.asyncio
    async def test_single_winner_takes_the_pot(self, engine, processor, active_bounty):
        """Creator $100 on '> 20', alice stakes $50 and scores 25: alice receives $150"""
        report = await engine.settle_bounty(active_bounty, [("alice", 25)])

        assert report.status == BountyStatus.COMPLETED.value
        assert report.winners == ["alice"]
        assert report.payout_per_winner == Decimal("150.00")
        assert report.payouts == {"alice": Decimal("150.00")}
        assert processor.paid_to("alice") == Decimal("150.00")

        alice = await wallet(engine, "alice")
        assert alice["locked_amount"] == Decimal("0")
        assert alice["balance"] == Decimal("350.00")
        assert alice["total_won"] == Decimal("150.00")
        creator = await wallet(engine, "creator")
        assert creator["locked_amount"] == Decimal("0")

        snapshot = await engine.get_bounty(active_bounty)
        assert snapshot.bounty["winner_id"] == "alice"
        assert snapshot.bounty["settlement_state"] == SettlementState.DONE.value
        assert snapshot.bounty["settled_at"] is not None
        escrow = await _escrow_for(engine, active_bounty)
        assert escrow.status == EscrowAccountStatus.RELEASED.value
        assert escrow.released_to_id == "alice"

    @pytest.mark.asyncio
    async def test_no_winner_refunds_everyone(self, engine, processor, active_bounty):
        """Same bounty, score 15: both stakes unlocked, bounty CANCELLED"""
        report = await engine.settle_bounty(active_bounty, [("alice", 15)])

        assert report.status == BountyStatus.CANCELLED.value
        assert report.winners == []
        assert report.refunded == {"creator": Decimal("100.00"), "alice": Decimal("50.00")}
        assert processor.count("refund") == 2
        assert processor.count("release") == 0

        for user, balance in (("creator", "500"), ("alice", "200")):
            data = await wallet(engine, user)
            assert data["locked_amount"] == Decimal("0")
            assert data["balance"] == Decimal(balance)
            assert data["total_won"] == Decimal("0")
            assert data["total_lost"] == Decimal("0")

        escrow = await _escrow_for(engine, active_bounty)
        assert escrow.status == EscrowAccountStatus.REFUNDED.value

        updates = await engine.get_updates(active_bounty)
        messages = [u.payload for u in updates if isinstance(u.payload, SystemMessagePayload)]
        assert messages[-1].reason == "no winner"
        assert messages[-1].refunded == {"creator": "100.00", "alice": "50.00"}

    @pytest.mark.asyncio
    async def test_two_winners_split_evenly(self, engine, fund, processor):
        """Two $50 stakes against $100, both achieve: $100 each"""
        bounty_id = await _two_player_bounty(engine, fund)

        report = await engine.settle_bounty(bounty_id, [("alice", 21), ("bob", 30)])

        assert report.winners == ["alice", "bob"]
        assert report.payout_per_winner == Decimal("100.00")
        assert report.payouts == {"alice": Decimal("100.00"), "bob": Decimal("100.00")}
        assert sum(report.payouts.values()) == Decimal("200.00")
        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["winner_id"] is None, "winner_id is only set for a single winner"
        escrow = await _escrow_for(engine, bounty_id)
        assert escrow.released_to_id is None

    @pytest.mark.asyncio
    async def test_loser_records_total_lost(self, engine, fund):
        bounty_id = await _two_player_bounty(engine, fund)

        await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 3)])

        bob = await wallet(engine, "bob")
        assert bob["locked_amount"] == Decimal("0")
        assert bob["total_lost"] == Decimal("50.00")
        alice = await wallet(engine, "alice")
        assert alice["total_won"] == Decimal("200.00")

    @pytest.mark.asyncio
    async def test_remainder_goes_to_first_winner_by_join_order(self, engine, fund, processor):
        """Pot 100.01 over two winners: alice (joined first) gets the extra cent"""
        bounty_id = await _two_player_bounty(engine, fund, creator_amount="50.01", stakes=("25.00", "25.00"))

        report = await engine.settle_bounty(bounty_id, [("bob", 40), ("alice", 21)])

        assert report.payout_per_winner == Decimal("50.00")
        assert report.payouts == {"alice": Decimal("50.01"), "bob": Decimal("50.00")}
        assert processor.paid_to("alice") + processor.paid_to("bob") == Decimal("100.01")


class TestValidation:

    @pytest.mark.asyncio
    async def test_results_must_cover_every_participant(self, engine, fund):
        bounty_id = await _two_player_bounty(engine, fund)

        with pytest.raises(IncompleteResults):
            await engine.settle_bounty(bounty_id, [("alice", 25)])
        with pytest.raises(IncompleteResults):
            await engine.settle_bounty(bounty_id, [("alice", 25), ("alice", 26)])
        with pytest.raises(IncompleteResults):
            await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 1), ("mallory", 1)])

        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["status"] == BountyStatus.ACTIVE.value
        assert snapshot.bounty["settlement_state"] is None

    @pytest.mark.asyncio
    async def test_contradicting_achieved_flag_rejected(self, engine, active_bounty):
        with pytest.raises(InvalidScore):
            await engine.settle_bounty(active_bounty, [SettlementResult("alice", Decimal("15"), achieved=True)])

    @pytest.mark.asyncio
    async def test_result_shapes_accepted(self, engine, active_bounty):
        report = await engine.settle_bounty(
            active_bounty, [{"participant_id": "alice", "final_score": "25", "achieved": True}]
        )
        assert report.winners == ["alice"]

    @pytest.mark.asyncio
    async def test_settle_open_bounty_rejected(self, engine, fund):
        await fund("creator", "500")
        created = await engine.create_bounty(make_params())

        with pytest.raises(InvalidBountyState):
            await engine.settle_bounty(created["bounty_id"], [])


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_settling_twice_is_a_noop(self, engine, processor, active_bounty):
        first = await engine.settle_bounty(active_bounty, [("alice", 25)])
        calls_after_first = len(processor.calls)
        alice_after_first = await wallet(engine, "alice")

        second = await engine.settle_bounty(active_bounty, [("alice", 25)])

        assert second.already_settled is True
        assert second.winners == first.winners
        assert second.payouts == first.payouts
        assert len(processor.calls) == calls_after_first
        assert await wallet(engine, "alice") == alice_after_first

    @pytest.mark.asyncio
    async def test_settle_after_refund_returns_recorded_outcome(self, engine, processor, active_bounty):
        await engine.settle_bounty(active_bounty, [("alice", 1)])

        again = await engine.settle_bounty(active_bounty, [("alice", 99)])

        assert again.already_settled is True
        assert again.status == BountyStatus.CANCELLED.value
        assert again.refunded == {"creator": Decimal("100.00"), "alice": Decimal("50.00")}
        assert processor.count("release") == 0


class TestFailureRecovery:

    @pytest.mark.asyncio
    async def test_release_failure_flags_bounty_and_keeps_funds_locked(self, engine, fund, processor):
        bounty_id = await _two_player_bounty(engine, fund)
        processor.fail_for("release", "bob", PaymentDeclined("account frozen"))

        with pytest.raises(SettlementFailed):
            await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 25)])

        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["status"] == BountyStatus.ACTIVE.value
        assert snapshot.bounty["settlement_state"] == SettlementState.FAILED.value
        for user, locked in (("creator", "100"), ("alice", "50"), ("bob", "50")):
            assert (await wallet(engine, user))["locked_amount"] == Decimal(locked)

        updates = await engine.get_updates(bounty_id)
        failed = [u.payload for u in updates
                  if isinstance(u.payload, PaymentUpdatePayload) and u.payload.event == "settlement_failed"]
        assert len(failed) == 1
        assert {r["participant_id"] for r in failed[0].results} == {"alice", "bob"}
        assert "account frozen" in failed[0].error

    @pytest.mark.asyncio
    async def test_retry_after_failure_never_pays_twice(self, engine, fund, processor):
        bounty_id = await _two_player_bounty(engine, fund)
        processor.fail_for("release", "bob", PaymentDeclined("account frozen"))
        with pytest.raises(SettlementFailed):
            await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 25)])
        alice_releases = [c for c in processor.calls if c.operation == "release" and c.args[1] == "alice"]
        assert len(alice_releases) == 1

        processor.clear_failures()
        report = await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 25)])

        assert report.status == BountyStatus.COMPLETED.value
        alice_releases = [c for c in processor.calls if c.operation == "release" and c.args[1] == "alice"]
        assert len(alice_releases) == 1, "Confirmed payout must not be re-sent"
        assert processor.paid_to("alice") == Decimal("100.00")
        assert processor.paid_to("bob") == Decimal("100.00")
        assert (await wallet(engine, "alice"))["total_won"] == Decimal("100.00")
        snapshot = await engine.get_bounty(bounty_id)
        assert snapshot.bounty["settlement_state"] == SettlementState.DONE.value

    @pytest.mark.asyncio
    async def test_retry_cannot_change_a_confirmed_payout(self, engine, fund, processor):
        bounty_id = await _two_player_bounty(engine, fund)
        processor.fail_for("release", "bob", PaymentDeclined("account frozen"))
        with pytest.raises(SettlementFailed):
            await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 25)])
        processor.clear_failures()

        # alice was already paid half the pot; a result set making her sole winner conflicts
        with pytest.raises(InvalidBountyState):
            await engine.settle_bounty(bounty_id, [("alice", 25), ("bob", 1)])

    @pytest.mark.asyncio
    async def test_transient_release_failure_is_retried_transparently(self, engine, processor, active_bounty):
        processor.fail_next("release", times=2)

        report = await engine.settle_bounty(active_bounty, [("alice", 25)])

        assert report.status == BountyStatus.COMPLETED.value
        assert processor.count("release") == 3

    @pytest.mark.asyncio
    async def test_refund_failure_then_retry(self, engine, processor, active_bounty):
        creator_hold = (await _escrow_for(engine, active_bounty)).payment_intent_id
        processor.fail_for("refund", creator_hold, PaymentDeclined("hold expired"))

        with pytest.raises(SettlementFailed):
            await engine.settle_bounty(active_bounty, [("alice", 3)])
        snapshot = await engine.get_bounty(active_bounty)
        assert snapshot.bounty["status"] == BountyStatus.ACTIVE.value
        assert snapshot.bounty["settlement_state"] == SettlementState.FAILED.value

        processor.clear_failures()
        report = await engine.settle_bounty(active_bounty, [("alice", 3)])

        assert report.status == BountyStatus.CANCELLED.value
        refunded_holds = [c.args[0] for c in processor.calls if c.operation == "refund"]
        assert len(refunded_holds) == len(set(refunded_holds)) + 1, "Only the failed hold is retried"


class TestCancel:

    @pytest.mark.asyncio
    async def test_only_creator_can_cancel(self, engine, active_bounty):
        with pytest.raises(NotBountyCreator):
            await engine.cancel_bounty(active_bounty, "alice")

    @pytest.mark.asyncio
    async def test_cancel_active_bounty_refunds_all(self, engine, processor, active_bounty):
        report = await engine.cancel_bounty(active_bounty, "creator", reason="match postponed")

        assert report.status == BountyStatus.CANCELLED.value
        assert report.refunded == {"creator": Decimal("100.00"), "alice": Decimal("50.00")}
        assert (await wallet(engine, "alice"))["locked_amount"] == Decimal("0")
        assert (await wallet(engine, "creator"))["locked_amount"] == Decimal("0")

        updates = await engine.get_updates(active_bounty)
        status = [u.payload for u in updates if isinstance(u.payload, StatusChangePayload)][-1]
        assert status.to_status == BountyStatus.CANCELLED.value
        assert status.reason == "match postponed"

    @pytest.mark.asyncio
    async def test_cancel_twice_is_a_noop(self, engine, processor, active_bounty):
        await engine.cancel_bounty(active_bounty, "creator")
        refunds = processor.count("refund")

        again = await engine.cancel_bounty(active_bounty, "creator")

        assert again.already_settled is True
        assert processor.count("refund") == refunds

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed_bounty(self, engine, active_bounty):
        await engine.settle_bounty(active_bounty, [("alice", 25)])

        with pytest.raises(InvalidBountyState):
            await engine.cancel_bounty(active_bounty, "creator")

    @pytest.mark.asyncio
    async def test_every_transition_is_logged(self, engine, active_bounty):
        await engine.settle_bounty(active_bounty, [("alice", 25)])

        updates = await engine.get_updates(active_bounty)
        transitions = [(u.payload.from_status, u.payload.to_status) for u in updates
                       if u.update_type is UpdateType.STATUS_CHANGE]
        assert transitions == [(None, "open"), ("open", "active"), ("active", "completed")]
