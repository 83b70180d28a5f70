"""
SkillSwap Marketplace - Database Schema
=======================================

Schema for the booking and escrow core of the skill-exchange marketplace:
- Identity and skill catalog mirrors (owned by external services)
- Skill requests gating booking creation
- Booking lifecycle records
- Append-only transaction ledger backing wallet balances and escrow
- Per-user wallet accounts used as the optimistic concurrency token
"""

from utils.datetime_helpers import get_naive_utc_now
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, text
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class SkillRequestStatus(Enum):
    """Pre-booking negotiation states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    BOOKED = "booked"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"


class BookingStatus(Enum):
    """Booking lifecycle states"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class CancelledBy(Enum):
    """Which party cancelled a booking"""
    USER = "user"
    PROVIDER = "provider"
    ADMIN = "admin"


class TransactionType(Enum):
    """Ledger row kinds"""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    ESCROW = "escrow"
    RELEASE = "release"
    REFUND = "refund"


class TransactionStatus(Enum):
    """Ledger row states"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentGateway(Enum):
    INTERNAL = "internal"


class PaymentMethod(Enum):
    WALLET = "wallet"


def _enum_values(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# IDENTITY & CATALOG MIRRORS
# ============================================================================

class User(Base):
    """Marketplace user mirrored from the identity provider"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(120), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    skills = relationship("Skill", back_populates="owner")
    wallet = relationship("WalletAccount", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"


class Skill(Base):
    """Skill offered by a user, mirrored from the skill catalog"""
    __tablename__ = 'skills'

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(80), nullable=True)
    level = Column(String(30), nullable=True)
    experience_years = Column(Integer, nullable=True)
    hourly_rate = Column(Numeric(12, 2), nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    owner = relationship("User", back_populates="skills")

    __table_args__ = (
        CheckConstraint('hourly_rate > 0', name='ck_skill_hourly_rate_positive'),
    )


# ============================================================================
# NEGOTIATION & BOOKING
# ============================================================================

class SkillRequest(Base):
    """Learner's request to book a skill owner's time"""
    __tablename__ = 'skill_requests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    skill_id = Column(Integer, ForeignKey('skills.id'), nullable=False, index=True)
    message = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default=SkillRequestStatus.PENDING.value)
    expires_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])
    skill = relationship("Skill")

    __table_args__ = (
        CheckConstraint('sender_id <> receiver_id', name='ck_skill_request_not_self'),
        CheckConstraint(f"status IN ({_enum_values(SkillRequestStatus)})", name='ck_skill_request_status_valid'),
        Index('ix_skill_requests_triple_status', 'sender_id', 'receiver_id', 'skill_id', 'status'),
        Index('ix_skill_requests_status_expires', 'status', 'expires_at'),
        # At most one open request per (sender, receiver, skill)
        Index(
            'ix_unique_active_skill_request',
            'sender_id', 'receiver_id', 'skill_id',
            unique=True,
            sqlite_where=text("status IN ('pending', 'accepted')"),
            postgresql_where=text("status IN ('pending', 'accepted')"),
        ),
    )


class Booking(Base):
    """Time-boxed session booked against an accepted skill request"""
    __tablename__ = 'bookings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    skill_request_id = Column(Integer, ForeignKey('skill_requests.id'), nullable=False, index=True)
    skill_id = Column(Integer, ForeignKey('skills.id'), nullable=False, index=True)
    requester_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    # Snapshot of the skill's rate at creation
    price_per_hour = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    message = Column(Text, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    dispute_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)
    confirmed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    skill_request = relationship("SkillRequest")
    skill = relationship("Skill")
    requester = relationship("User", foreign_keys=[requester_id])
    provider = relationship("User", foreign_keys=[provider_id])

    __table_args__ = (
        CheckConstraint('end_time > start_time', name='ck_booking_time_order'),
        CheckConstraint('duration_minutes > 0', name='ck_booking_duration_positive'),
        CheckConstraint(f"status IN ({_enum_values(BookingStatus)})", name='ck_booking_status_valid'),
        Index('ix_bookings_provider_window', 'provider_id', 'start_time', 'end_time'),
        Index('ix_bookings_requester_window', 'requester_id', 'start_time', 'end_time'),
        Index('ix_bookings_pair_created', 'requester_id', 'provider_id', 'created_at'),
    )


# ============================================================================
# LEDGER
# ============================================================================

class Transaction(Base):
    """Append-only money movement ledger"""
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_reference = Column(String(36), unique=True, nullable=False, index=True)

    booking_id = Column(Integer, ForeignKey('bookings.id'), nullable=True, index=True)
    payer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    payee_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False, default=0)
    net_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="INR")

    transaction_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    is_escrow = Column(Boolean, nullable=False, default=False)
    escrow_release_at = Column(DateTime, nullable=True)

    payment_gateway = Column(String(20), nullable=False, default=PaymentGateway.INTERNAL.value)
    payment_method = Column(String(20), nullable=False, default=PaymentMethod.WALLET.value)
    failure_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=1, server_default="1")

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    booking = relationship("Booking")
    payer = relationship("User", foreign_keys=[payer_id])
    payee = relationship("User", foreign_keys=[payee_id])

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        CheckConstraint(f"transaction_type IN ({_enum_values(TransactionType)})", name='ck_transaction_type_valid'),
        CheckConstraint(f"status IN ({_enum_values(TransactionStatus)})", name='ck_transaction_status_valid'),
        Index('ix_transactions_booking_type_status', 'booking_id', 'transaction_type', 'status'),
        Index('ix_transactions_type_status', 'transaction_type', 'status'),
        # At most one held escrow per booking
        Index(
            'ix_unique_pending_escrow_per_booking',
            'booking_id',
            unique=True,
            sqlite_where=text("transaction_type = 'escrow' AND status = 'pending'"),
            postgresql_where=text("transaction_type = 'escrow' AND status = 'pending'"),
        ),
    )

    def __repr__(self):
        return (
            f"<Transaction(id={self.id}, type={self.transaction_type}, status={self.status}, "
            f"amount={self.amount})>"
        )


class WalletAccount(Base):
    """
    Per-user wallet row.

    balance_snapshot is a display mirror only; solvency is always derived from
    the ledger. version is the compare-and-swap token every wallet-affecting
    operation must advance.
    """
    __tablename__ = 'wallet_accounts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), unique=True, nullable=False, index=True)
    currency = Column(String(10), nullable=False, default="INR")
    balance_snapshot = Column(Numeric(12, 2), nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1, server_default="1")

    created_at = Column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now)

    user = relationship("User", back_populates="wallet")
