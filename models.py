import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import local_now
from database import Base


class EnvelopeType(str, Enum):
    normal = "normal"
    recurring = "recurring"
    persistent = "persistent"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class SubscriptionTier(str, Enum):
    free = "free"
    monthly = "monthly"
    yearly = "yearly"
    lifetime = "lifetime"


@dataclass(frozen=True)
class Origin:
    """The row anchors its own recurrence chain."""


@dataclass(frozen=True)
class CycleInstance:
    """The row is a later-cycle copy of the chain anchored at ``origin_id``."""

    origin_id: int


Lineage = Union[Origin, CycleInstance]


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=local_now, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=local_now, onupdate=local_now, nullable=False
    )


class LineageMixin:
    """Derives the recurrence lineage from ``parent_id``, which is set only on copies."""

    @property
    def lineage(self) -> Lineage:
        if self.parent_id is None:
            return Origin()
        return CycleInstance(origin_id=self.parent_id)

    @property
    def origin_id(self) -> int:
        lineage = self.lineage
        if isinstance(lineage, CycleInstance):
            return lineage.origin_id
        return self.id


class Envelope(Base, TimestampMixin, LineageMixin):
    __tablename__ = "envelopes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    budget: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    income: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    spent: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    goal: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    type: Mapped[EnvelopeType] = mapped_column(
        SAEnum(EnvelopeType), nullable=False, default=EnvelopeType.normal
    )
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("envelopes.id", ondelete="SET NULL")
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expiration_date: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["TransactionRecord"]] = relationship(
        "TransactionRecord",
        back_populates="envelope",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("budget >= 0", name="ck_envelopes_budget_non_negative"),
        Index("ix_envelopes_type_created", "type", "created_at"),
        Index("ix_envelopes_parent", "parent_id"),
    )

    @property
    def is_recurring(self) -> bool:
        return self.type == EnvelopeType.recurring

    @property
    def is_persistent(self) -> bool:
        return self.type == EnvelopeType.persistent

    @property
    def remaining(self) -> Decimal:
        return (
            Decimal(self.budget or 0)
            + Decimal(self.income or 0)
            - Decimal(self.spent or 0)
        )

    @property
    def progress(self) -> float:
        budget = Decimal(self.budget or 0)
        if budget <= 0:
            return 0.0
        ratio = float(self.remaining / budget)
        return min(max(ratio, 0.0), 1.0)

    def is_expired(self, now: Optional[dt.datetime] = None) -> bool:
        if self.type != EnvelopeType.persistent or self.expiration_date is None:
            return False
        return (now or local_now()) > self.expiration_date


class TransactionRecord(Base, TimestampMixin, LineageMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    envelope_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("envelopes.id", ondelete="CASCADE")
    )
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    envelope: Mapped[Optional["Envelope"]] = relationship(
        "Envelope", back_populates="transactions"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_envelope_date", "envelope_id", "date"),
        Index("ix_transactions_parent", "parent_id"),
    )


class Preference(Base):
    __tablename__ = "preferences"

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[str] = mapped_column(String(200), nullable=False)
