"""
Infrastructure Tests
Retry policy, error mapping, update log codec, state machine, store URLs and startup
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import START, END, make_params
from database import normalize_async_url
from main_clean_startup import CleanStartupManager, StartupError, start_bounty_engine
from models import BountyStatus, UpdateType
from services.bounty_engine import BountyApi
from services.bounty_update_log import (
    PaymentUpdatePayload, PlayerUpdatePayload, ScoreUpdatePayload, StatusChangePayload, decode_payload,
    encode_payload, update_type_for
)
from services.payment_capability import PaymentGateway, PaymentDeclined, TransientPaymentError
from services.retry_service import RetryService, get_retry_strategy
from utils.bounty_state_validator import BountyStateValidator
from utils.centralized_logger import centralized_logger
from utils.datetime_helpers import ensure_naive_datetime
from utils.exception_handler import (
    GENERIC_RETRY_MESSAGE, InvalidBountyState, InvariantViolation, SelfJoinNotAllowed, api_result, error_response
)
from utils.helpers import generate_id


class TestRetryService:

    @pytest.mark.asyncio
    async def test_retries_listed_exceptions_until_success(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientPaymentError("timeout")
            return "ok"

        result = await RetryService.retry_async(flaky, max_attempts=3, initial_delay=0, jitter=False,
                                                exceptions=(TransientPaymentError,))
        assert result == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        attempts = []

        async def always_down():
            attempts.append(1)
            raise TransientPaymentError("down")

        with pytest.raises(TransientPaymentError):
            await RetryService.retry_async(always_down, max_attempts=2, initial_delay=0,
                                           exceptions=(TransientPaymentError,))
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_unlisted_exception_is_not_retried(self):
        attempts = []

        async def declined():
            attempts.append(1)
            raise PaymentDeclined("card declined")

        with pytest.raises(PaymentDeclined):
            await RetryService.retry_async(declined, max_attempts=5, initial_delay=0,
                                           exceptions=(TransientPaymentError,))
        assert len(attempts) == 1

    def test_strategies_follow_configuration(self):
        assert get_retry_strategy('payment')['max_attempts'] == 3
        assert get_retry_strategy('compensation')['max_attempts'] == 5
        with pytest.raises(KeyError):
            get_retry_strategy('unknown')


class TestPaymentGateway:

    @pytest.mark.asyncio
    async def test_void_hold_never_raises(self, processor, caplog):
        processor.fail_for("refund", "hold_x")
        gateway = PaymentGateway(processor)

        with caplog.at_level(logging.CRITICAL):
            assert await gateway.void_hold("hold_x", "creation aborted") is False

        assert "ORPHANED_HOLD" in caplog.text
        assert processor.count("refund") == 1, "Declines are not retried"

    @pytest.mark.asyncio
    async def test_void_hold_retries_transient_errors_harder(self, processor):
        processor.fail_next("refund", times=4)
        gateway = PaymentGateway(processor)

        assert await gateway.void_hold("hold_y", "join aborted") is True
        assert processor.count("refund") == 5


class TestErrorMapping:

    def test_validation_error_keeps_its_message(self):
        response = error_response(SelfJoinNotAllowed("Creators cannot join their own bounty"))
        assert response == {
            "success": False,
            "error": "self_join",
            "message": "Creators cannot join their own bounty",
            "retryable": False,
        }

    def test_invariant_violation_message_is_generic(self):
        response = error_response(InvariantViolation("locked 10 > balance 5"))
        assert response["error"] == "invariant_violation"
        assert "locked" not in response["message"]

    @pytest.mark.asyncio
    async def test_api_result_wraps_success_and_maps_errors(self):
        @api_result
        async def ok():
            return {"value": 1}

        @api_result
        async def rejected():
            raise InvalidBountyState("Bounty is completed")

        @api_result
        async def broken():
            raise RuntimeError("bug")

        assert await ok() == {"success": True, "data": {"value": 1}}
        assert (await rejected())["error"] == "invalid_state"
        with pytest.raises(RuntimeError):
            await broken()

    @pytest.mark.asyncio
    async def test_bounty_api_surface(self, engine, fund, processor):
        api = BountyApi(engine)
        await fund("creator", "500")
        await fund("alice", "100")

        created = await api.create_bounty(
            creator_id="creator", title="Over 20 points", bounty_amount=Decimal("100.00"), target="20",
            comparison="greater_than", timeframe="single_game", start_date=START, end_date=END,
        )
        assert created["success"] is True
        bounty_id = created["data"]["bounty_id"]

        self_join = await api.join_bounty(bounty_id, "creator", Decimal("10"))
        assert self_join["success"] is False
        assert self_join["error"] == "self_join"

        processor.fail_for("create_hold", "alice")
        declined = await api.join_bounty(bounty_id, "alice", Decimal("10"))
        assert declined == {
            "success": False,
            "error": "payment_hold_failed",
            "message": GENERIC_RETRY_MESSAGE,
            "retryable": True,
        }

        processor.clear_failures()
        joined = await api.join_bounty(bounty_id, "alice", Decimal("10"))
        assert joined["data"]["status"] == BountyStatus.ACTIVE.value

        settled = await api.settle_bounty(bounty_id, [("alice", 21)])
        assert settled["data"]["payouts"] == {"alice": "110.00"}

        snapshot = await api.get_bounty(bounty_id)
        assert snapshot["data"]["bounty"]["status"] == BountyStatus.COMPLETED.value
        assert snapshot["data"]["recent_updates"][-1]["type"] == UpdateType.STATUS_CHANGE.value

        wallet = await api.get_wallet("alice")
        assert wallet["data"]["balance"] == "210.00"

        missing = await api.get_leaderboard("BT000000000000")
        assert missing["error"] == "bounty_not_found"


class TestUpdateLogCodec:

    def test_payload_class_determines_type(self):
        assert update_type_for(ScoreUpdatePayload(scores={"a": "1"})) is UpdateType.SCORE_UPDATE
        assert update_type_for(PlayerUpdatePayload("a", "5.00", 1, 1, 2)) is UpdateType.PLAYER_UPDATE
        with pytest.raises(TypeError):
            update_type_for({"scores": {}})

    def test_encode_then_decode(self):
        payload = StatusChangePayload(from_status="active", to_status="completed", reason="settled",
                                      winner_ids=["a"], payout_per_winner="150.00", payouts={"a": "150.00"})
        update_type, data = encode_payload(payload)
        assert update_type is UpdateType.STATUS_CHANGE
        assert decode_payload(update_type.value, data) == payload

    def test_decode_rejects_payload_of_another_type(self):
        _, data = encode_payload(PaymentUpdatePayload(event="hold_placed", user_id="a", amount="5.00"))
        with pytest.raises(TypeError):
            decode_payload(UpdateType.SCORE_UPDATE, data)


class TestStateMachine:

    @pytest.mark.parametrize("from_status,to_status", [
        (BountyStatus.OPEN, BountyStatus.ACTIVE),
        (BountyStatus.OPEN, BountyStatus.CANCELLED),
        (BountyStatus.OPEN, BountyStatus.EXPIRED),
        (BountyStatus.ACTIVE, BountyStatus.COMPLETED),
        (BountyStatus.ACTIVE, BountyStatus.CANCELLED),
    ])
    def test_allowed_transitions(self, from_status, to_status):
        BountyStateValidator.require_transition(from_status, to_status, "BT1")

    @pytest.mark.parametrize("from_status,to_status", [
        (BountyStatus.OPEN, BountyStatus.COMPLETED),
        (BountyStatus.ACTIVE, BountyStatus.OPEN),
        (BountyStatus.ACTIVE, BountyStatus.EXPIRED),
        (BountyStatus.COMPLETED, BountyStatus.CANCELLED),
        (BountyStatus.EXPIRED, BountyStatus.OPEN),
    ])
    def test_rejected_transitions(self, from_status, to_status):
        with pytest.raises(InvalidBountyState):
            BountyStateValidator.require_transition(from_status, to_status, "BT1")

    def test_sources_for(self):
        assert BountyStateValidator.sources_for(BountyStatus.CANCELLED) == {BountyStatus.OPEN, BountyStatus.ACTIVE}
        assert BountyStateValidator.sources_for(BountyStatus.EXPIRED) == {BountyStatus.OPEN}
        assert BountyStateValidator.is_terminal_state(BountyStatus.EXPIRED)
        assert not BountyStateValidator.is_terminal_state(BountyStatus.ACTIVE)


class TestHelpers:

    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@db/bounties", "postgresql+asyncpg://u:p@db/bounties"),
        ("postgresql://u:p@db/bounties?sslmode=require", "postgresql+asyncpg://u:p@db/bounties?ssl=require"),
        ("sqlite:///bounties.db", "sqlite+aiosqlite:///bounties.db"),
        ("sqlite+aiosqlite:///bounties.db", "sqlite+aiosqlite:///bounties.db"),
    ])
    def test_normalize_async_url(self, url, expected):
        assert normalize_async_url(url) == expected

    def test_generate_id_prefixes(self):
        assert generate_id("bounty").startswith("BT")
        assert generate_id("escrow").startswith("EA")
        assert len(generate_id("transaction")) == 14
        with pytest.raises(ValueError):
            generate_id("invoice")

    def test_aware_datetimes_become_naive_utc(self):
        aware = datetime(2030, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_naive_datetime(aware) == datetime(2030, 1, 1, 12, 0)
        assert ensure_naive_datetime(None) is None

    def test_critical_errors_reach_the_ledger_error_channel(self, caplog):
        with caplog.at_level(logging.CRITICAL, logger="bounty_ledger_errors"):
            centralized_logger.log_critical_error("Escrow consumed twice", {"escrow_id": "EA1"})

        assert "Escrow consumed twice" in caplog.text
        assert '"escrow_id": "EA1"' in caplog.text


class TestStartup:

    @pytest.mark.asyncio
    async def test_startup_builds_engine_and_jobs(self, tmp_path, processor):
        manager = await start_bounty_engine(processor, f"sqlite:///{tmp_path / 'startup.db'}")
        try:
            assert manager.startup_complete
            assert manager.scheduler.scheduler.running

            await manager.engine.deposit("creator", Decimal("150"))
            created = await manager.engine.create_bounty(make_params())
            assert created["bounty_id"].startswith("BT")
        finally:
            await manager.shutdown()

        assert manager.scheduler is None
        assert not manager.startup_complete

    @pytest.mark.asyncio
    async def test_unreachable_store_fails_startup(self, tmp_path, processor):
        manager = CleanStartupManager(processor, f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}",
                                      run_jobs=False)

        with pytest.raises(StartupError):
            await manager.startup()
        assert manager.engine is None
