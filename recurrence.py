import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import local_now
from database import commit_or_rollback
from errors import PersistenceError
from models import Envelope, EnvelopeType, TransactionRecord
from periods import CycleKey, clamp_day, shift_month
from services import (
    envelopes_created_in_month,
    post_to_envelope,
    transactions_dated_in_month,
)

logger = logging.getLogger(__name__)

# Serializes runs from the scheduler thread and API request threads.
RUN_LOCK = threading.Lock()


@dataclass
class MaterializationResult:
    envelopes_created: int = 0
    transactions_created: int = 0


def resolve_target_envelope(
    old_envelope: Optional[Envelope], current_envelopes: Sequence[Envelope]
) -> Optional[Envelope]:
    """Find where this month's copy of a recurring transaction belongs.

    Same recurrence chain first, then same name. Persistent envelopes are
    never targets.
    """
    if old_envelope is None:
        return None
    candidates = [e for e in current_envelopes if e.type != EnvelopeType.persistent]
    origin_id = old_envelope.origin_id
    for envelope in candidates:
        if envelope.origin_id == origin_id:
            return envelope
    for envelope in candidates:
        if envelope.name == old_envelope.name:
            return envelope
    return None


class RecurringMaterializer:
    """Creates this month's copies of last month's recurring envelopes and transactions.

    Lookback is by calendar month of ``created_at`` / ``date``, independent of
    the configured renewal day. Every copy records its chain origin, and a
    chain that already has a copy this month is skipped, so repeated runs
    within one month create nothing new.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def run(self, now: Optional[datetime] = None) -> MaterializationResult:
        now = now or local_now()
        current: CycleKey = (now.year, now.month)
        previous = shift_month(now.year, now.month, -1)
        result = MaterializationResult()

        with RUN_LOCK:
            result.envelopes_created = self.materialize_envelopes(
                now, previous, current
            )
            commit_or_rollback(self.session, "materialize_envelopes")

            result.transactions_created = self.materialize_transactions(
                previous, current
            )
            commit_or_rollback(self.session, "materialize_transactions")

        logger.info(
            "materializer_run: "
            f"month={current[0]}-{current[1]:02d} "
            f"envelopes_created={result.envelopes_created} "
            f"transactions_created={result.transactions_created}"
        )
        return result

    def materialize_envelopes(
        self, now: datetime, previous: CycleKey, current: CycleKey
    ) -> int:
        try:
            candidates = envelopes_created_in_month(
                self.session, previous, envelope_type=EnvelopeType.recurring
            )
            existing = envelopes_created_in_month(self.session, current)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"materializer_fetch_failed: pass=envelopes error={exc}")
            raise PersistenceError("Could not load recurring envelopes") from exc

        materialized = {envelope.origin_id for envelope in existing}
        created = 0
        for envelope in candidates:
            origin_id = envelope.origin_id
            if origin_id in materialized:
                continue
            self.session.add(
                Envelope(
                    name=envelope.name,
                    budget=envelope.budget,
                    income=Decimal("0"),
                    spent=Decimal("0"),
                    goal=envelope.goal,
                    type=EnvelopeType.recurring,
                    parent_id=origin_id,
                    sort_order=envelope.sort_order,
                    created_at=now,
                )
            )
            materialized.add(origin_id)
            created += 1
        return created

    def _origin_day(self, txn: TransactionRecord) -> int:
        """Day of month of the chain origin, so a clamped copy does not drift."""
        if txn.parent_id is None:
            return txn.date.day
        try:
            origin = self.session.get(TransactionRecord, txn.parent_id)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"materializer_fetch_failed: pass=origin error={exc}")
            raise PersistenceError("Could not load recurring transaction origin") from exc
        return (origin or txn).date.day

    def materialize_transactions(self, previous: CycleKey, current: CycleKey) -> int:
        try:
            candidates = [
                txn
                for txn in transactions_dated_in_month(
                    self.session,
                    previous,
                    options=(joinedload(TransactionRecord.envelope),),
                )
                if txn.is_recurring
            ]
            existing = transactions_dated_in_month(self.session, current)
            current_envelopes = envelopes_created_in_month(self.session, current)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"materializer_fetch_failed: pass=transactions error={exc}")
            raise PersistenceError("Could not load recurring transactions") from exc

        materialized = {txn.origin_id for txn in existing}
        created = 0
        for txn in candidates:
            origin_id = txn.origin_id
            if origin_id in materialized:
                continue
            target = resolve_target_envelope(txn.envelope, current_envelopes)
            if target is None:
                logger.info(
                    f"materializer_skip: transaction_id={txn.id} reason=no_target_envelope"
                )
                continue
            copy = TransactionRecord(
                amount=txn.amount,
                date=clamp_day(current[0], current[1], self._origin_day(txn)),
                type=txn.type,
                envelope=target,
                note=txn.note,
                is_recurring=True,
                parent_id=origin_id,
            )
            self.session.add(copy)
            post_to_envelope(target, txn.type, txn.amount)
            materialized.add(origin_id)
            created += 1
        return created
