import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import local_now
from database import commit_or_rollback
from errors import PersistenceError
from models import Envelope, EnvelopeType
from periods import RenewalCycleCalculator

logger = logging.getLogger(__name__)

MAX_ENVELOPES_FOR_FREE = 2
MAX_MONTHS_FOR_FREE = 3
MAX_TRANSACTIONS_PER_ENVELOPE_FOR_FREE = 30


def can_create_more_envelopes(current_cycle_count: int, is_subscribed: bool) -> bool:
    if is_subscribed:
        return True
    return current_cycle_count < MAX_ENVELOPES_FOR_FREE


def can_store_more_months(current_month_count: int, is_subscribed: bool) -> bool:
    if is_subscribed:
        return True
    return current_month_count < MAX_MONTHS_FOR_FREE


def can_add_more_transactions(current_count: int, is_subscribed: bool) -> bool:
    if is_subscribed:
        return True
    return current_count < MAX_TRANSACTIONS_PER_ENVELOPE_FOR_FREE


def can_use_cloud_sync(is_subscribed: bool) -> bool:
    return is_subscribed


def limit_message(kind: str) -> str:
    if kind == "envelopes":
        return (
            f"The free plan allows up to {MAX_ENVELOPES_FOR_FREE} envelopes per cycle. "
            "Upgrade to premium for unlimited envelopes."
        )
    if kind == "months":
        return (
            f"The free plan keeps the last {MAX_MONTHS_FOR_FREE} months of data. "
            "Upgrade to premium to keep your full history."
        )
    if kind == "transactions":
        return (
            f"The free plan allows up to {MAX_TRANSACTIONS_PER_ENVELOPE_FOR_FREE} "
            "transactions per envelope. Upgrade to premium for unlimited records."
        )
    return f"{kind} requires a premium subscription."


def count_current_cycle_envelopes(
    envelopes: Iterable[Envelope],
    calculator: RenewalCycleCalculator,
    now: datetime,
) -> int:
    """Count envelopes created in the renewal cycle containing ``now``.

    Persistent envelopes live across cycles but only count against the
    cycle they were created in.
    """
    current = calculator.renewal_cycle(now)
    return sum(
        1 for envelope in envelopes if calculator.in_cycle(envelope.created_at, current)
    )


class SubscriptionTransitions:
    """Expire or reactivate persistent envelopes when the subscription changes."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _persistent(self) -> list[Envelope]:
        stmt = (
            select(Envelope)
            .where(Envelope.type == EnvelopeType.persistent)
            .order_by(Envelope.id)
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            logger.error(f"persistent_fetch_failed: error={exc}")
            raise PersistenceError("Could not load persistent envelopes") from exc

    def expire_persistent(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        expired = 0
        for envelope in self._persistent():
            if envelope.expiration_date is not None:
                continue
            envelope.expiration_date = now
            expired += 1
        commit_or_rollback(self.session, "expire_persistent")
        logger.info(f"persistent_expired: count={expired}")
        return expired

    def reactivate_persistent(self) -> int:
        reactivated = 0
        for envelope in self._persistent():
            if envelope.expiration_date is None:
                continue
            envelope.expiration_date = None
            reactivated += 1
        commit_or_rollback(self.session, "reactivate_persistent")
        logger.info(f"persistent_reactivated: count={reactivated}")
        return reactivated

    def apply(
        self,
        was_subscribed: Optional[bool],
        is_subscribed: bool,
        now: Optional[datetime] = None,
    ) -> int:
        # None: first status check since startup, so converge on the current state.
        if is_subscribed:
            if was_subscribed is True:
                return 0
            return self.reactivate_persistent()
        if was_subscribed is False:
            return 0
        return self.expire_persistent(now)
