"""
Bounty Escrow Engine - Database Schema
======================================

Schema for escrow-backed performance bounties:
- Per-user wallets with available/locked balances
- One escrow account per bounty, one contribution row per staking party
- Bounty contract, participant roster and an append-only update feed
- Append-only wallet transaction ledger and processor release receipts

Monetary columns use the Money type: integer minor units in the database
(exact arithmetic in conditional UPDATEs on every backend), Decimal in Python.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    JSON, Numeric, String, Text, UniqueConstraint, func
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from utils.decimal_precision import MonetaryDecimal


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class Money(TypeDecorator):
    """Decimal amount stored as integer minor units (cents)"""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return MonetaryDecimal.to_minor_units(MonetaryDecimal.to_money(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return MonetaryDecimal.from_minor_units(int(value))


MONEY = Money()


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class BountyStatus(Enum):
    """Bounty lifecycle states"""
    OPEN = "open"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_BOUNTY_STATUSES = frozenset({
    BountyStatus.COMPLETED,
    BountyStatus.CANCELLED,
    BountyStatus.EXPIRED,
})


class EscrowAccountStatus(Enum):
    ACTIVE = "active"
    RELEASED = "released"
    REFUNDED = "refunded"


class SettlementState(Enum):
    """Progress of settlement/refund; NULL until the first attempt"""
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    DONE = "done"


class UpdateType(Enum):
    SCORE_UPDATE = "score_update"
    STATUS_CHANGE = "status_change"
    PAYMENT_UPDATE = "payment_update"
    PLAYER_UPDATE = "player_update"
    SYSTEM_MESSAGE = "system_message"


class WagerTimeframe(Enum):
    SINGLE_GAME = "single_game"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    SEASON = "season"
    CUSTOM = "custom"


class WalletTransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ESCROW_LOCK = "escrow_lock"
    ESCROW_RELEASE = "escrow_release"
    BOUNTY_WIN = "bounty_win"
    BOUNTY_LOSS = "bounty_loss"
    REFUND = "refund"


# ============================================================================
# WALLET LEDGER
# ============================================================================

class UserWallet(Base):
    """Per-user balance; locked_amount is the part reserved by open bounties"""
    __tablename__ = 'user_wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    locked_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    # Lifetime counters
    total_deposited: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_withdrawn: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_won: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_lost: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('locked_amount >= 0', name='ck_wallet_locked_non_negative'),
        CheckConstraint('locked_amount <= balance', name='ck_wallet_locked_within_balance'),
        CheckConstraint('total_won >= 0 AND total_lost >= 0', name='ck_wallet_counters_non_negative'),
    )

    @property
    def available_balance(self) -> Decimal:
        return self.balance - self.locked_amount

    def __repr__(self):
        return f"<UserWallet(user_id={self.user_id}, balance={self.balance}, locked={self.locked_amount})>"


class WalletTransaction(Base):
    """Append-only money movement ledger, one row per wallet mutation"""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bounty_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_wallet_tx_amount_non_negative'),
        Index('ix_wallet_transactions_user', 'user_id', 'id'),
        Index('ix_wallet_transactions_bounty', 'bounty_id'),
    )


# ============================================================================
# ESCROW
# ============================================================================

class EscrowAccount(Base):
    """Pool of money committed to a single bounty"""
    __tablename__ = 'escrow_accounts'

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    creator_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    opponent_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=EscrowAccountStatus.ACTIVE.value, nullable=False)

    # Processor reference of the creator's hold; winners are released against it
    payment_intent_id: Mapped[str] = mapped_column(String(128), nullable=False)

    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    released_to_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    contributions: Mapped[list["EscrowContribution"]] = relationship(
        "EscrowContribution", back_populates="escrow", order_by="EscrowContribution.id"
    )

    __table_args__ = (
        CheckConstraint('creator_amount > 0', name='ck_escrow_creator_positive'),
        CheckConstraint('opponent_amount >= 0', name='ck_escrow_opponent_non_negative'),
        CheckConstraint('total_amount = creator_amount + opponent_amount', name='ck_escrow_total_equals_sum'),
        CheckConstraint(
            f"status IN ('{EscrowAccountStatus.ACTIVE.value}', '{EscrowAccountStatus.RELEASED.value}', "
            f"'{EscrowAccountStatus.REFUNDED.value}')",
            name='ck_escrow_status_valid'
        ),
    )


class EscrowContribution(Base):
    """One staking party's money in an escrow, with its processor hold"""
    __tablename__ = 'escrow_contributions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contribution_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    escrow_id: Mapped[str] = mapped_column(String(32), ForeignKey('escrow_accounts.id'), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_creator: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hold_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    refund_confirmation: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    escrow: Mapped["EscrowAccount"] = relationship("EscrowAccount", back_populates="contributions")

    __table_args__ = (
        UniqueConstraint('escrow_id', 'user_id', name='uq_escrow_contribution_user'),
        CheckConstraint('amount > 0', name='ck_contribution_positive'),
    )


class EscrowRelease(Base):
    """Receipt of a processor-confirmed payout; at most one per escrow and recipient"""
    __tablename__ = 'escrow_releases'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    release_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    escrow_id: Mapped[str] = mapped_column(String(32), ForeignKey('escrow_accounts.id'), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    confirmation_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('escrow_id', 'recipient_id', name='uq_escrow_release_recipient'),
        CheckConstraint('amount > 0', name='ck_release_positive'),
    )


# ============================================================================
# BOUNTY
# ============================================================================

class Bounty(Base):
    """Escrow-backed wager on a performance target"""
    __tablename__ = 'bounties'

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    bounty_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    # {"target": "<decimal string>", "comparison": "greater_than|less_than|equal_to"}
    target_metric: Mapped[dict] = mapped_column(JSON, nullable=False)
    timeframe: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=BountyStatus.OPEN.value, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    participant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    league_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    escrow_id: Mapped[str] = mapped_column(String(32), ForeignKey('escrow_accounts.id'), nullable=False, unique=True)
    winner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    settlement_state: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    settlement_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    escrow: Mapped["EscrowAccount"] = relationship("EscrowAccount")
    participants: Mapped[list["BountyParticipant"]] = relationship(
        "BountyParticipant", back_populates="bounty", order_by="BountyParticipant.join_order"
    )

    __table_args__ = (
        CheckConstraint('bounty_amount > 0', name='ck_bounty_amount_positive'),
        CheckConstraint('max_participants >= 1', name='ck_bounty_max_participants_positive'),
        CheckConstraint('participant_count >= 0 AND participant_count <= max_participants', name='ck_bounty_roster_within_max'),
        CheckConstraint('end_date > start_date', name='ck_bounty_dates_ordered'),
        CheckConstraint(
            "status IN ('open', 'active', 'completed', 'cancelled', 'expired')",
            name='ck_bounty_status_valid'
        ),
        Index('ix_bounties_status_end_date', 'status', 'end_date'),
    )

    @property
    def status_enum(self) -> BountyStatus:
        return BountyStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_BOUNTY_STATUSES


class BountyParticipant(Base):
    """Roster row; one per (bounty, participant)"""
    __tablename__ = 'bounty_participants'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bounty_id: Mapped[str] = mapped_column(String(32), ForeignKey('bounties.id'), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stake_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    current_score: Mapped[Decimal] = mapped_column(Numeric(24, 6), default=Decimal("0"), nullable=False)
    # 1-based position in the roster, assigned from the atomic slot claim
    join_order: Mapped[int] = mapped_column(Integer, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    bounty: Mapped["Bounty"] = relationship("Bounty", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('bounty_id', 'participant_id', name='uq_bounty_participant'),
        UniqueConstraint('bounty_id', 'join_order', name='uq_bounty_join_order'),
        CheckConstraint('stake_amount > 0', name='ck_participant_stake_positive'),
    )


class BountyUpdate(Base):
    """Append-only audit feed entry; never updated or deleted"""
    __tablename__ = 'bounty_updates'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bounty_id: Mapped[str] = mapped_column(String(32), ForeignKey('bounties.id'), nullable=False)
    update_type: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index('ix_bounty_updates_feed', 'bounty_id', 'id'),
    )

    def __repr__(self):
        return f"<BountyUpdate(bounty_id={self.bounty_id}, type={self.update_type}, message={self.message!r})>"
