from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from config import local_now
from currency import (
    SUPPORTED_CURRENCIES,
    Currency,
    currency_for_language,
    find_currency,
)
from database import commit_or_rollback
from errors import (
    BudgetValidationError,
    FeatureLimitError,
    NotFoundError,
)
from models import (
    Envelope,
    EnvelopeType,
    Preference,
    TransactionRecord,
    TransactionType,
)
from periods import (
    CycleKey,
    RenewalCycleCalculator,
    clamp_renewal_day,
    days_in_month,
    is_valid_renewal_day,
    months_between,
    shift_month,
)
from premium import (
    can_add_more_transactions,
    can_create_more_envelopes,
    can_store_more_months,
    can_use_cloud_sync,
    count_current_cycle_envelopes,
    limit_message,
)
from schemas import EnvelopeIn, EnvelopeUpdate, TransactionIn

logger = logging.getLogger(__name__)


def _month_bounds(key: CycleKey) -> tuple[datetime, datetime]:
    start = datetime(key[0], key[1], 1)
    next_year, next_month = shift_month(key[0], key[1], 1)
    return start, datetime(next_year, next_month, 1)


def envelopes_created_in_month(
    session: Session,
    key: CycleKey,
    *,
    envelope_type: Optional[EnvelopeType] = None,
) -> list[Envelope]:
    start, end = _month_bounds(key)
    stmt = select(Envelope).where(
        Envelope.created_at >= start, Envelope.created_at < end
    )
    if envelope_type is not None:
        stmt = stmt.where(Envelope.type == envelope_type)
    stmt = stmt.order_by(Envelope.created_at, Envelope.id)
    return list(session.scalars(stmt).all())


def transactions_dated_in_month(
    session: Session, key: CycleKey, *, options: Sequence = ()
) -> list[TransactionRecord]:
    start = date(key[0], key[1], 1)
    end = date(key[0], key[1], days_in_month(key[0], key[1]))
    stmt = (
        select(TransactionRecord)
        .where(TransactionRecord.date.between(start, end))
        .order_by(TransactionRecord.date, TransactionRecord.id)
    )
    if options:
        stmt = stmt.options(*options)
    return list(session.scalars(stmt).all())


def post_to_envelope(envelope: Envelope, txn_type: TransactionType, amount: int) -> None:
    if txn_type == TransactionType.expense:
        envelope.spent = Decimal(envelope.spent or 0) + amount
    else:
        envelope.income = Decimal(envelope.income or 0) + amount


def reverse_posting(envelope: Envelope, txn_type: TransactionType, amount: int) -> None:
    post_to_envelope(envelope, txn_type, -amount)


def visible_in_month(envelope: Envelope, key: CycleKey) -> bool:
    if envelope.type == EnvelopeType.persistent:
        return True
    return (envelope.created_at.year, envelope.created_at.month) == key


def order_envelopes(
    envelopes: Sequence[Envelope], all_envelopes: Sequence[Envelope]
) -> list[Envelope]:
    """Explicit sort order first (0 sorts last), then the chain's creation time."""
    by_id = {envelope.id: envelope for envelope in all_envelopes}

    def sort_date(envelope: Envelope) -> datetime:
        if envelope.type == EnvelopeType.recurring and envelope.parent_id is not None:
            origin = by_id.get(envelope.parent_id)
            if origin is not None:
                return origin.created_at
        return envelope.created_at

    def key(envelope: Envelope) -> tuple[float, datetime, int]:
        order = envelope.sort_order or float("inf")
        return order, sort_date(envelope), envelope.id

    return sorted(envelopes, key=key)


def reset_all_data(session: Session) -> None:
    session.execute(delete(TransactionRecord))
    session.execute(update(Envelope).values(parent_id=None))
    session.execute(delete(Envelope))
    commit_or_rollback(session, "reset_all_data")
    logger.info("data_reset: envelopes and transactions deleted")


class PreferencesService:
    RENEWAL_DAY = "renewal_day"
    CURRENCY_CODE = "currency_code"
    CLOUD_SYNC_ENABLED = "cloud_sync_enabled"
    LANGUAGE = "language"

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> Optional[str]:
        pref = self.session.get(Preference, key)
        return pref.value if pref else None

    def set(self, key: str, value: str) -> None:
        pref = self.session.get(Preference, key)
        if pref is None:
            self.session.add(Preference(key=key, value=value))
        else:
            pref.value = value
        commit_or_rollback(self.session, f"set_preference:{key}")

    def renewal_day(self) -> int:
        return clamp_renewal_day(self.get(self.RENEWAL_DAY))

    def set_renewal_day(self, day: int) -> int:
        if not is_valid_renewal_day(day):
            raise BudgetValidationError("Renewal day must be 0 (last day) or 1-28")
        self.set(self.RENEWAL_DAY, str(day))
        logger.info(f"renewal_day_changed: renewal_day={day}")
        return day

    def calculator(self) -> RenewalCycleCalculator:
        return RenewalCycleCalculator(self.renewal_day())

    def language(self) -> Optional[str]:
        return self.get(self.LANGUAGE)

    def set_language(self, language: str) -> str:
        clean = language.strip()
        if not clean:
            raise BudgetValidationError("Language cannot be empty")
        self.set(self.LANGUAGE, clean)
        return clean

    def currency(self) -> Currency:
        stored = find_currency(self.get(self.CURRENCY_CODE))
        if stored is not None:
            return stored
        return currency_for_language(self.language())

    def set_currency(self, code: str) -> Currency:
        currency = find_currency(code)
        if currency is None:
            raise BudgetValidationError(f"Unsupported currency: {code}")
        self.set(self.CURRENCY_CODE, currency.code)
        return currency

    def currencies(self) -> list[Currency]:
        """Supported currencies with the active one listed first."""
        active = self.currency()
        return [active] + [c for c in SUPPORTED_CURRENCIES if c.code != active.code]

    def cloud_sync_enabled(self) -> bool:
        return self.get(self.CLOUD_SYNC_ENABLED) == "1"

    def set_cloud_sync_enabled(self, enabled: bool) -> None:
        self.set(self.CLOUD_SYNC_ENABLED, "1" if enabled else "0")


class EnvelopeService:
    def __init__(self, session: Session, *, is_subscribed: bool = False) -> None:
        self.session = session
        self.is_subscribed = is_subscribed

    def list_all(self) -> list[Envelope]:
        stmt = select(Envelope).order_by(Envelope.created_at, Envelope.id)
        return list(self.session.scalars(stmt).all())

    def get(self, envelope_id: int) -> Envelope:
        envelope = self.session.get(Envelope, envelope_id)
        if not envelope:
            raise NotFoundError("Envelope not found")
        return envelope

    def is_month_visible(self, year: int, month: int, now: Optional[datetime] = None) -> bool:
        now = now or local_now()
        months_back = max(months_between((year, month), (now.year, now.month)), 0)
        return can_store_more_months(months_back, self.is_subscribed)

    def list_for_month(
        self, year: int, month: int, now: Optional[datetime] = None
    ) -> list[Envelope]:
        if not self.is_month_visible(year, month, now):
            return []
        all_envelopes = self.list_all()
        visible = [e for e in all_envelopes if visible_in_month(e, (year, month))]
        return order_envelopes(visible, all_envelopes)

    def total_remaining(
        self, year: int, month: int, now: Optional[datetime] = None
    ) -> Decimal:
        return sum(
            (e.remaining for e in self.list_for_month(year, month, now)), Decimal("0")
        )

    def _check_duplicate_name(
        self,
        name: str,
        envelope_type: EnvelopeType,
        now: datetime,
        exclude_id: Optional[int] = None,
    ) -> None:
        if envelope_type == EnvelopeType.persistent:
            stmt = select(Envelope).where(
                Envelope.name == name, Envelope.type == EnvelopeType.persistent
            )
            message = "A persistent envelope with this name already exists"
        else:
            start, end = _month_bounds((now.year, now.month))
            stmt = select(Envelope).where(
                Envelope.name == name,
                Envelope.type != EnvelopeType.persistent,
                Envelope.created_at >= start,
                Envelope.created_at < end,
            )
            message = "An envelope with this name already exists this month"
        if exclude_id is not None:
            stmt = stmt.where(Envelope.id != exclude_id)
        if self.session.scalars(stmt.limit(1)).first() is not None:
            raise BudgetValidationError(message)

    def create(self, data: EnvelopeIn, now: Optional[datetime] = None) -> Envelope:
        now = now or local_now()
        name = data.name.strip()
        if not name:
            raise BudgetValidationError("Envelope name is required")
        if data.budget <= 0:
            raise BudgetValidationError("Budget must be greater than zero")

        calculator = PreferencesService(self.session).calculator()
        all_envelopes = self.list_all()
        cycle_count = count_current_cycle_envelopes(all_envelopes, calculator, now)
        if not can_create_more_envelopes(cycle_count, self.is_subscribed):
            raise FeatureLimitError(limit_message("envelopes"))
        if data.type == EnvelopeType.persistent and not self.is_subscribed:
            raise FeatureLimitError(limit_message("Persistent envelopes"))
        self._check_duplicate_name(name, data.type, now)

        max_sort = max((e.sort_order for e in all_envelopes), default=0)
        envelope = Envelope(
            name=name,
            budget=data.budget,
            income=Decimal("0"),
            spent=Decimal("0"),
            goal=data.goal,
            type=data.type,
            sort_order=max_sort + 1,
            created_at=now,
        )
        self.session.add(envelope)
        commit_or_rollback(self.session, "create_envelope")
        logger.info(
            f"envelope_created: id={envelope.id} type={envelope.type.value}"
        )
        return envelope

    def update(self, envelope_id: int, data: EnvelopeUpdate) -> Envelope:
        envelope = self.get(envelope_id)
        name = data.name.strip()
        if not name:
            raise BudgetValidationError("Envelope name is required")
        if data.budget <= 0:
            raise BudgetValidationError("Budget must be greater than zero")
        if envelope.type == EnvelopeType.persistent and data.is_recurring:
            raise BudgetValidationError("Persistent envelopes cannot become recurring")
        self._check_duplicate_name(
            name, envelope.type, envelope.created_at, exclude_id=envelope.id
        )

        envelope.name = name
        envelope.budget = data.budget
        envelope.goal = data.goal
        if envelope.type != EnvelopeType.persistent:
            if data.is_recurring and envelope.type != EnvelopeType.recurring:
                envelope.type = EnvelopeType.recurring
                envelope.parent_id = None
            elif not data.is_recurring and envelope.type == EnvelopeType.recurring:
                envelope.type = EnvelopeType.normal
                envelope.parent_id = None
        commit_or_rollback(self.session, "update_envelope")
        return envelope

    def delete(self, envelope_id: int) -> None:
        envelope = self.get(envelope_id)
        self.session.execute(
            update(Envelope)
            .where(Envelope.parent_id == envelope.id)
            .values(parent_id=None)
        )
        self.session.delete(envelope)
        commit_or_rollback(self.session, "delete_envelope")
        logger.info(f"envelope_deleted: id={envelope_id}")

    def reorder(self, envelope_ids: Sequence[int]) -> list[Envelope]:
        envelopes = [self.get(envelope_id) for envelope_id in envelope_ids]
        for position, envelope in enumerate(envelopes, start=1):
            envelope.sort_order = position
        commit_or_rollback(self.session, "reorder_envelopes")
        return envelopes


class TransactionService:
    def __init__(self, session: Session, *, is_subscribed: bool = False) -> None:
        self.session = session
        self.is_subscribed = is_subscribed

    def get(self, transaction_id: int) -> TransactionRecord:
        txn = self.session.get(TransactionRecord, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _envelope(self, envelope_id: int) -> Envelope:
        envelope = self.session.get(Envelope, envelope_id)
        if not envelope:
            raise NotFoundError("Envelope not found")
        return envelope

    def list_for_envelope(self, envelope_id: int) -> list[TransactionRecord]:
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.envelope_id == envelope_id)
            .order_by(TransactionRecord.date.desc(), TransactionRecord.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def list_for_day(self, day: date) -> list[TransactionRecord]:
        stmt = (
            select(TransactionRecord)
            .where(TransactionRecord.date == day)
            .order_by(TransactionRecord.id)
        )
        return list(self.session.scalars(stmt).all())

    def count_for_envelope(self, envelope_id: int) -> int:
        stmt = select(func.count(TransactionRecord.id)).where(
            TransactionRecord.envelope_id == envelope_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _validate(self, data: TransactionIn, envelope: Envelope, now: datetime) -> None:
        if data.amount <= 0:
            raise BudgetValidationError("Amount must be greater than zero")
        if envelope.is_expired(now):
            raise FeatureLimitError(
                "This persistent envelope expired with your subscription"
            )
        if data.is_recurring and envelope.type != EnvelopeType.recurring:
            raise BudgetValidationError(
                "Only transactions in recurring envelopes can repeat"
            )

    def create(
        self, data: TransactionIn, now: Optional[datetime] = None
    ) -> TransactionRecord:
        now = now or local_now()
        envelope = self._envelope(data.envelope_id)
        self._validate(data, envelope, now)
        if not can_add_more_transactions(
            self.count_for_envelope(envelope.id), self.is_subscribed
        ):
            raise FeatureLimitError(limit_message("transactions"))

        txn = TransactionRecord(
            amount=data.amount,
            date=data.date,
            type=data.type,
            envelope=envelope,
            note=data.note.strip(),
            is_recurring=data.is_recurring,
        )
        self.session.add(txn)
        post_to_envelope(envelope, data.type, data.amount)
        commit_or_rollback(self.session, "create_transaction")
        logger.info(
            f"transaction_created: id={txn.id} envelope_id={envelope.id} "
            f"type={txn.type.value}"
        )
        return txn

    def update(
        self,
        transaction_id: int,
        data: TransactionIn,
        now: Optional[datetime] = None,
    ) -> TransactionRecord:
        now = now or local_now()
        txn = self.get(transaction_id)
        new_envelope = self._envelope(data.envelope_id)
        self._validate(data, new_envelope, now)
        if new_envelope.id != txn.envelope_id and not can_add_more_transactions(
            self.count_for_envelope(new_envelope.id), self.is_subscribed
        ):
            raise FeatureLimitError(limit_message("transactions"))

        if txn.envelope is not None:
            reverse_posting(txn.envelope, txn.type, txn.amount)
        post_to_envelope(new_envelope, data.type, data.amount)

        was_recurring = txn.is_recurring
        txn.envelope = new_envelope
        txn.amount = data.amount
        txn.type = data.type
        txn.date = data.date
        txn.note = data.note.strip()
        txn.is_recurring = data.is_recurring
        if not data.is_recurring or not was_recurring:
            txn.parent_id = None
        commit_or_rollback(self.session, "update_transaction")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        if txn.envelope is not None:
            reverse_posting(txn.envelope, txn.type, txn.amount)
        self.session.execute(
            update(TransactionRecord)
            .where(TransactionRecord.parent_id == txn.id)
            .values(parent_id=None)
        )
        self.session.delete(txn)
        commit_or_rollback(self.session, "delete_transaction")
        logger.info(f"transaction_deleted: id={transaction_id}")


@dataclass
class DayTotals:
    day: int
    income: int = 0
    expense: int = 0


@dataclass
class CalendarMonth:
    year: int
    month: int
    days: list[DayTotals] = field(default_factory=list)

    @property
    def income(self) -> int:
        return sum(d.income for d in self.days)

    @property
    def expense(self) -> int:
        return sum(d.expense for d in self.days)

    @property
    def balance(self) -> int:
        return self.income - self.expense


class CalendarService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def month_summary(self, year: int, month: int) -> CalendarMonth:
        if not 1 <= month <= 12:
            raise BudgetValidationError("Month must be between 1 and 12")
        summary = CalendarMonth(
            year=year,
            month=month,
            days=[DayTotals(day=d) for d in range(1, days_in_month(year, month) + 1)],
        )
        for txn in transactions_dated_in_month(self.session, (year, month)):
            totals = summary.days[txn.date.day - 1]
            if txn.type == TransactionType.income:
                totals.income += txn.amount
            else:
                totals.expense += txn.amount
        return summary


@dataclass(frozen=True)
class CloudAccountStatus:
    available: bool
    message: Optional[str] = None


class CloudAccountProbe:
    """Reports whether a cloud account is usable on this installation."""

    def status(self) -> CloudAccountStatus:
        return CloudAccountStatus(
            available=False,
            message="Cloud storage is not configured; data stays on this device.",
        )


class CloudSyncService:
    def __init__(
        self,
        preferences: PreferencesService,
        probe: Optional[CloudAccountProbe] = None,
    ) -> None:
        self.preferences = preferences
        self.probe = probe or CloudAccountProbe()

    def is_enabled(self) -> bool:
        return self.preferences.cloud_sync_enabled()

    def set_enabled(self, enabled: bool, *, is_subscribed: bool) -> bool:
        if enabled and not can_use_cloud_sync(is_subscribed):
            raise FeatureLimitError(limit_message("Cloud sync"))
        self.preferences.set_cloud_sync_enabled(enabled)
        logger.info(f"cloud_sync_changed: enabled={enabled}")
        return enabled

    def disable_if_unsubscribed(self, is_subscribed: bool) -> bool:
        """Turn sync off when the subscription lapsed. Returns True if it changed."""
        if self.is_enabled() and not is_subscribed:
            self.preferences.set_cloud_sync_enabled(False)
            logger.info("cloud_sync_disabled: reason=no_subscription")
            return True
        return False

    def is_sync_active(self, is_subscribed: bool) -> bool:
        return self.is_enabled() and is_subscribed and self.probe.status().available
