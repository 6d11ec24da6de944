"""
Wallet Ledger - per-user available/locked balances

Every mutation is a single conditional UPDATE against the wallet row, so two
concurrent requests can never both pass a balance check that only one of them
should pass. Each mutation also appends a WalletTransaction row.

All methods run inside the caller's session; the caller owns the transaction.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import insert, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import MONEY, UserWallet, WalletTransaction, WalletTransactionType
from utils.atomic_transactions import rowcount
from utils.centralized_logger import centralized_logger
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InsufficientFunds, InvalidBountyParams, InvariantViolation
from utils.helpers import generate_id

logger = logging.getLogger(__name__)


class SettlementOutcome(Enum):
    WIN = "win"
    LOSE = "lose"


def _money(amount: Decimal):
    """Bind an amount with the Money type so it is compared in minor units"""
    return literal(amount, MONEY)


def require_positive_amount(amount, context: str = "amount") -> Decimal:
    try:
        value = MonetaryDecimal.to_money(amount, context)
    except ValueError as e:
        raise InvalidBountyParams(str(e)) from e
    if value <= 0:
        raise InvalidBountyParams(f"{context} must be positive, got {value}")
    return value


class WalletLedger:
    """Fund reservation primitive used by escrow and settlement"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_wallet(self, user_id: str) -> None:
        """Create the wallet row on first use"""
        existing = await self.session.execute(
            select(UserWallet.id).where(UserWallet.user_id == user_id)
        )
        if existing.scalar_one_or_none() is not None:
            return

        try:
            # Savepoint: a concurrent first-use insert of the same wallet is not an error
            async with self.session.begin_nested():
                await self.session.execute(
                    insert(UserWallet).values(
                        user_id=user_id,
                        balance=Decimal("0"),
                        locked_amount=Decimal("0"),
                        total_deposited=Decimal("0"),
                        total_withdrawn=Decimal("0"),
                        total_won=Decimal("0"),
                        total_lost=Decimal("0"),
                    )
                )
        except IntegrityError:
            logger.debug(f"Wallet for {user_id} created concurrently")
            return
        logger.info(f"👛 WALLET_CREATED: {user_id}")

    async def get_wallet(self, user_id: str) -> Optional[UserWallet]:
        result = await self.session.execute(
            select(UserWallet)
            .where(UserWallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def deposit(self, user_id: str, amount: Decimal, description: Optional[str] = None) -> None:
        amount = require_positive_amount(amount, "deposit amount")
        await self.ensure_wallet(user_id)

        await self.session.execute(
            update(UserWallet)
            .where(UserWallet.user_id == user_id)
            .values(
                balance=UserWallet.balance + _money(amount),
                total_deposited=UserWallet.total_deposited + _money(amount),
            )
            .execution_options(synchronize_session=False)
        )
        await self._record(user_id, WalletTransactionType.DEPOSIT, amount, None, description or "Deposit")
        logger.info(f"✅ WALLET_DEPOSIT: {user_id} +{amount}")

    async def withdraw(self, user_id: str, amount: Decimal, description: Optional[str] = None) -> None:
        """Withdraw from the available (unlocked) balance only"""
        amount = require_positive_amount(amount, "withdrawal amount")

        result = await self.session.execute(
            update(UserWallet)
            .where(
                UserWallet.user_id == user_id,
                UserWallet.balance - UserWallet.locked_amount >= _money(amount),
            )
            .values(
                balance=UserWallet.balance - _money(amount),
                total_withdrawn=UserWallet.total_withdrawn + _money(amount),
            )
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            logger.warning(f"⚠️ WITHDRAW_REJECTED: {user_id} requested {amount}, insufficient available balance")
            raise InsufficientFunds(
                f"Insufficient available balance to withdraw {amount}",
                user_id=user_id, amount=str(amount)
            )

        await self._record(user_id, WalletTransactionType.WITHDRAWAL, amount, None, description or "Withdrawal")
        logger.info(f"✅ WALLET_WITHDRAWAL: {user_id} -{amount}")

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def lock(self, user_id: str, amount: Decimal, bounty_id: Optional[str] = None) -> None:
        """Reserve ``amount``; InsufficientFunds if the available balance is short"""
        amount = require_positive_amount(amount, "stake")
        await self.ensure_wallet(user_id)

        result = await self.session.execute(
            update(UserWallet)
            .where(
                UserWallet.user_id == user_id,
                UserWallet.balance - UserWallet.locked_amount >= _money(amount),
            )
            .values(locked_amount=UserWallet.locked_amount + _money(amount))
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            logger.warning(f"⚠️ LOCK_REJECTED: {user_id} cannot lock {amount} for {bounty_id}")
            raise InsufficientFunds(
                f"Insufficient available balance to stake {amount}",
                user_id=user_id, amount=str(amount), bounty_id=bounty_id
            )

        await self._record(user_id, WalletTransactionType.ESCROW_LOCK, amount, bounty_id,
                           f"Stake locked for bounty {bounty_id}")
        logger.info(f"🔒 FUNDS_LOCKED: {user_id} {amount} for bounty {bounty_id}")

    async def unlock(
        self,
        user_id: str,
        amount: Decimal,
        bounty_id: Optional[str] = None,
        transaction_type: WalletTransactionType = WalletTransactionType.REFUND,
        description: Optional[str] = None,
    ) -> None:
        """Release a reservation; balance unchanged"""
        amount = require_positive_amount(amount, "unlock amount")

        result = await self.session.execute(
            update(UserWallet)
            .where(UserWallet.user_id == user_id, UserWallet.locked_amount >= _money(amount))
            .values(locked_amount=UserWallet.locked_amount - _money(amount))
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            self._escalate("unlock", user_id, amount, bounty_id)

        await self._record(user_id, transaction_type, amount, bounty_id,
                           description or f"Stake unlocked for bounty {bounty_id}")
        logger.info(f"🔓 FUNDS_UNLOCKED: {user_id} {amount} for bounty {bounty_id}")

    async def settle(
        self,
        user_id: str,
        stake: Decimal,
        outcome: SettlementOutcome,
        payout: Decimal = Decimal("0"),
        bounty_id: Optional[str] = None,
    ) -> None:
        """
        Consume a participant's lock at settlement.

        WIN:  locked -= stake, balance += payout, totalWon += payout
        LOSE: locked -= stake, totalLost += stake (balance unchanged)
        """
        stake = require_positive_amount(stake, "stake")

        values = {"locked_amount": UserWallet.locked_amount - _money(stake)}
        if outcome is SettlementOutcome.WIN:
            payout = require_positive_amount(payout, "payout")
            values["balance"] = UserWallet.balance + _money(payout)
            values["total_won"] = UserWallet.total_won + _money(payout)
        else:
            values["total_lost"] = UserWallet.total_lost + _money(stake)

        result = await self.session.execute(
            update(UserWallet)
            .where(UserWallet.user_id == user_id, UserWallet.locked_amount >= _money(stake))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if rowcount(result) == 0:
            self._escalate(f"settle_{outcome.value}", user_id, stake, bounty_id)

        if outcome is SettlementOutcome.WIN:
            await self._record(user_id, WalletTransactionType.BOUNTY_WIN, payout, bounty_id,
                               f"Won bounty {bounty_id}")
            logger.info(f"✅ BOUNTY_WIN_SETTLED: {user_id} +{payout} (stake {stake}) for bounty {bounty_id}")
        else:
            await self._record(user_id, WalletTransactionType.BOUNTY_LOSS, stake, bounty_id,
                               f"Lost bounty {bounty_id}")
            logger.info(f"📉 BOUNTY_LOSS_SETTLED: {user_id} forfeits {stake} for bounty {bounty_id}")

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    async def check_invariants(self, user_id: str) -> None:
        """0 <= locked_amount <= balance; raises InvariantViolation otherwise"""
        wallet = await self.get_wallet(user_id)
        if wallet is None:
            return
        if wallet.locked_amount < 0 or wallet.locked_amount > wallet.balance:
            details = {
                "user_id": user_id,
                "balance": str(wallet.balance),
                "locked_amount": str(wallet.locked_amount),
            }
            logger.critical(f"🚨 WALLET_INVARIANT_VIOLATION: {details}")
            centralized_logger.log_critical_error("Wallet locked amount outside [0, balance]", details)
            raise InvariantViolation("Wallet locked amount outside [0, balance]", **details)

    def _escalate(self, operation: str, user_id: str, amount: Decimal, bounty_id: Optional[str]) -> None:
        details = {"operation": operation, "user_id": user_id, "amount": str(amount), "bounty_id": bounty_id}
        logger.critical(f"🚨 LOCK_ACCOUNTING_MISMATCH: {operation} of {amount} for {user_id} exceeds locked amount")
        centralized_logger.log_critical_error("Locked amount smaller than the stake being released", details)
        raise InvariantViolation(f"Cannot {operation} {amount} for {user_id}: locked amount too small", **details)

    async def _record(
        self,
        user_id: str,
        transaction_type: WalletTransactionType,
        amount: Decimal,
        bounty_id: Optional[str],
        description: str,
    ) -> None:
        self.session.add(WalletTransaction(
            transaction_id=generate_id("transaction"),
            user_id=user_id,
            bounty_id=bounty_id,
            transaction_type=transaction_type.value,
            amount=amount,
            description=description,
        ))
