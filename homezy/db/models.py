"""Database models for the Homezy lead engine"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from homezy.db.database import Base
from homezy.utils.time import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class TimestampMixin:
    """Mixin for adding timestamp columns to models"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class LeadType(enum.Enum):
    """Routing of a lead"""
    DIRECT = "direct"
    INDIRECT = "indirect"


class DirectLeadStatus(enum.Enum):
    """Direct-lead exclusivity status"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CONVERTED = "converted"


class LeadStatus(enum.Enum):
    """Lead lifecycle status"""
    OPEN = "open"
    FULL = "full"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# No claim may be placed on a lead in one of these states
TERMINAL_LEAD_STATUSES = {LeadStatus.ACCEPTED, LeadStatus.EXPIRED, LeadStatus.CANCELLED}

# Allowed (from, to) status transitions
LEAD_TRANSITIONS = {
    (LeadStatus.OPEN, LeadStatus.FULL),
    (LeadStatus.FULL, LeadStatus.OPEN),  # claim slot released by a failed claim
    (LeadStatus.OPEN, LeadStatus.ACCEPTED),
    (LeadStatus.FULL, LeadStatus.ACCEPTED),
    (LeadStatus.OPEN, LeadStatus.EXPIRED),
    (LeadStatus.FULL, LeadStatus.EXPIRED),
    (LeadStatus.OPEN, LeadStatus.CANCELLED),
    (LeadStatus.FULL, LeadStatus.CANCELLED),
    (LeadStatus.ACCEPTED, LeadStatus.CANCELLED),
}


class CreditType(enum.Enum):
    """Credit bucket"""
    FREE = "free"
    PAID = "paid"


class CreditTransactionType(enum.Enum):
    """Ledger transaction types"""
    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"
    BONUS = "bonus"
    EXPIRY = "expiry"  # system adjustment when free credits lapse


class ReservationStatus(enum.Enum):
    """Credit reservation lifecycle"""
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    EXPIRED = "expired"
    REFUNDED = "refunded"  # committed debit given back, e.g. the lead was cancelled


class Lead(Base, TimestampMixin):
    """A homeowner's service request that professionals compete to claim"""
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    homeowner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Descriptive
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    location: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    budget_bracket: Mapped[str] = mapped_column(String(20), nullable=False)
    urgency: Mapped[str] = mapped_column(String(20), default="flexible", nullable=False)
    timeline: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Matching payload: {"service_id": ..., "answers": {...}}
    service_answers: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Routing
    lead_type: Mapped[LeadType] = mapped_column(
        SQLEnum(LeadType),
        default=LeadType.INDIRECT,
        nullable=False
    )
    target_professional_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    direct_lead_status: Mapped[DirectLeadStatus | None] = mapped_column(
        SQLEnum(DirectLeadStatus),
        nullable=True
    )
    direct_lead_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    converted_to_public_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder1_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder2_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Claim accounting
    claim_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_claims: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    # Lifecycle
    status: Mapped[LeadStatus] = mapped_column(
        SQLEnum(LeadStatus),
        default=LeadStatus.OPEN,
        nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accepted_professional_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Bumped on every mutation; compare-and-swap token and cache key
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    claims = relationship("LeadClaim", back_populates="lead")

    __table_args__ = (
        CheckConstraint("claim_count >= 0", name="ck_lead_claim_count_non_negative"),
        CheckConstraint("claim_count <= max_claims", name="ck_lead_claim_count_within_quota"),
        Index("idx_lead_status_category", "status", "category"),
        Index("idx_lead_homeowner", "homeowner_id"),
        Index("idx_lead_expires", "expires_at"),
        Index("idx_lead_direct_sweep", "lead_type", "direct_lead_status", "direct_lead_expires_at"),
        Index("idx_lead_target_professional", "target_professional_id"),
    )

    @property
    def service_id(self) -> str:
        if self.service_answers and self.service_answers.get("service_id"):
            return self.service_answers["service_id"]
        return self.category

    @property
    def is_converted(self) -> bool:
        return self.converted_to_public_at is not None


class LeadClaim(Base, TimestampMixin):
    """A professional's paid right to quote on a lead"""
    __tablename__ = "lead_claims"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False
    )
    professional_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credits_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    quote_submitted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quote_submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    lead = relationship("Lead", back_populates="claims")

    __table_args__ = (
        UniqueConstraint("lead_id", "professional_id", name="uq_lead_professional"),
        Index("idx_claim_professional", "professional_id"),
    )


class CreditAccount(Base, TimestampMixin):
    """Cached balance projection of a professional's credit ledger"""
    __tablename__ = "credit_accounts"

    professional_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    free_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_spent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_purchase_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_spend_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        CheckConstraint("free_credits >= 0", name="ck_account_free_non_negative"),
        CheckConstraint("paid_credits >= 0", name="ck_account_paid_non_negative"),
        CheckConstraint("reserved_credits >= 0", name="ck_account_reserved_non_negative"),
    )

    @property
    def total_credits(self) -> int:
        return self.free_credits + self.paid_credits

    @property
    def available_credits(self) -> int:
        return self.total_credits - self.reserved_credits


class CreditGrant(Base, TimestampMixin):
    """A single free-credit grant with its own expiry, spent oldest first"""
    __tablename__ = "credit_grants"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    professional_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("credit_accounts.professional_id", ondelete="CASCADE"),
        nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        CheckConstraint("remaining >= 0", name="ck_grant_remaining_non_negative"),
        Index("idx_grant_professional_remaining", "professional_id", "remaining"),
        Index("idx_grant_expires", "expires_at"),
    )


class CreditTransaction(Base):
    """Append-only ledger entry; the source of truth for balances"""
    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    professional_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[CreditTransactionType] = mapped_column(
        SQLEnum(CreditTransactionType),
        nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # signed
    credit_type: Mapped[CreditType] = mapped_column(
        SQLEnum(CreditType),
        nullable=False
    )
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance_after = balance_before + amount", name="ck_transaction_balance_delta"),
        Index("idx_transaction_professional_created", "professional_id", "created_at"),
        Index("idx_transaction_type", "type"),
    )


class CreditReservation(Base, TimestampMixin):
    """Staged debit awaiting commit or rollback"""
    __tablename__ = "credit_reservations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    professional_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("credit_accounts.professional_id", ondelete="CASCADE"),
        nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        SQLEnum(ReservationStatus),
        default=ReservationStatus.PENDING,
        nullable=False
    )
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_reservation_amount_positive"),
        Index("idx_reservation_status_expires", "status", "expires_at"),
        Index("idx_reservation_reference", "professional_id", "reference_id"),
        # One live (pending or committed) reservation per idempotency reference
        Index(
            "uq_reservation_live_reference",
            "professional_id",
            "reference_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'COMMITTED') AND reference_id IS NOT NULL"),
            postgresql_where=text("status IN ('PENDING', 'COMMITTED') AND reference_id IS NOT NULL"),
        ),
    )


class ProServiceProfile(Base, TimestampMixin):
    """A professional's declared answers for one service questionnaire"""
    __tablename__ = "pro_service_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    professional_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(100), nullable=False)
    answers: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint("professional_id", "service_id", name="uq_profile_professional_service"),
    )
