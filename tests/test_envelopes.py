from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import BudgetValidationError, FeatureLimitError, NotFoundError
from models import Envelope, EnvelopeType, Origin
from recurrence import RecurringMaterializer
from schemas import EnvelopeIn, EnvelopeUpdate
from services import EnvelopeService, PreferencesService, order_envelopes, reset_all_data


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _payload(name: str, budget: str = "100", **kwargs) -> EnvelopeIn:
    return EnvelopeIn(name=name, budget=Decimal(budget), **kwargs)


def test_create_assigns_next_sort_order_and_zero_totals():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        now = datetime(2024, 2, 10)
        first = service.create(_payload("Food"), now=now)
        second = service.create(_payload("  Fun  ", "50", goal=Decimal("20")), now=now)

        assert (first.sort_order, second.sort_order) == (1, 2)
        assert second.name == "Fun"
        assert second.income == 0 and second.spent == 0
        assert second.remaining == Decimal("50")
        assert second.created_at == now
        assert isinstance(second.lineage, Origin)


def test_free_user_hits_cap_within_renewal_cycle():
    with _session() as session:
        PreferencesService(session).set_renewal_day(25)
        service = EnvelopeService(session)
        service.create(_payload("A"), now=datetime(2024, 1, 26))
        service.create(_payload("B"), now=datetime(2024, 2, 3))

        with pytest.raises(FeatureLimitError):
            service.create(_payload("C"), now=datetime(2024, 2, 10))

        created = service.create(_payload("C"), now=datetime(2024, 2, 25))
        assert created.name == "C"


def test_subscriber_has_no_cap():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        now = datetime(2024, 2, 10)
        for name in ["A", "B", "C", "D"]:
            service.create(_payload(name), now=now)
        assert len(service.list_all()) == 4


def test_persistent_envelope_requires_subscription():
    with _session() as session:
        with pytest.raises(FeatureLimitError):
            EnvelopeService(session).create(
                _payload("Savings", type=EnvelopeType.persistent),
                now=datetime(2024, 2, 10),
            )
        envelope = EnvelopeService(session, is_subscribed=True).create(
            _payload("Savings", type=EnvelopeType.persistent),
            now=datetime(2024, 2, 10),
        )
        assert envelope.is_persistent


def test_duplicate_names_are_scoped():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        service.create(_payload("Food"), now=datetime(2024, 1, 10))
        with pytest.raises(BudgetValidationError):
            service.create(_payload("Food"), now=datetime(2024, 1, 20))
        # A new calendar month frees the name.
        service.create(_payload("Food"), now=datetime(2024, 2, 1))

        service.create(_payload("Savings", type=EnvelopeType.persistent), now=datetime(2024, 1, 10))
        with pytest.raises(BudgetValidationError):
            service.create(_payload("Savings", type=EnvelopeType.persistent), now=datetime(2024, 6, 1))


def test_blank_name_is_rejected():
    with _session() as session:
        with pytest.raises(BudgetValidationError):
            EnvelopeService(session).create(_payload("   "), now=datetime(2024, 1, 1))
        assert session.query(Envelope).count() == 0


def test_list_for_month_shows_persistent_everywhere_and_orders():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        service.create(_payload("Savings", type=EnvelopeType.persistent), now=datetime(2023, 11, 3))
        service.create(_payload("Food"), now=datetime(2024, 2, 2))
        service.create(_payload("Fun"), now=datetime(2024, 2, 3))
        service.create(_payload("Old"), now=datetime(2024, 1, 3))

        names = [e.name for e in service.list_for_month(2024, 2, now=datetime(2024, 2, 10))]
        assert names == ["Savings", "Food", "Fun"]

        service.reorder([e.id for e in service.list_for_month(2024, 2, now=datetime(2024, 2, 10))][::-1])
        names = [e.name for e in service.list_for_month(2024, 2, now=datetime(2024, 2, 10))]
        assert names == ["Fun", "Food", "Savings"]


def test_free_history_window_is_three_months():
    with _session() as session:
        EnvelopeService(session, is_subscribed=True).create(
            _payload("Food"), now=datetime(2023, 11, 5)
        )
        now = datetime(2024, 2, 10)
        free = EnvelopeService(session)
        assert free.is_month_visible(2023, 12, now)
        assert not free.is_month_visible(2023, 11, now)
        assert free.list_for_month(2023, 11, now) == []
        assert len(EnvelopeService(session, is_subscribed=True).list_for_month(2023, 11, now)) == 1


def test_zero_sort_order_sorts_last_and_copies_follow_their_origin():
    older = Envelope(id=1, name="Rent", sort_order=0, type=EnvelopeType.recurring, created_at=datetime(2024, 1, 1))
    copy = Envelope(id=5, name="Rent", sort_order=0, type=EnvelopeType.recurring, parent_id=1, created_at=datetime(2024, 2, 1, 12))
    fresh = Envelope(id=6, name="Fun", sort_order=0, type=EnvelopeType.normal, created_at=datetime(2024, 2, 1, 8))
    pinned = Envelope(id=7, name="Food", sort_order=2, type=EnvelopeType.normal, created_at=datetime(2024, 2, 9))

    ordered = order_envelopes([fresh, copy, pinned], [older, copy, fresh, pinned])
    assert [e.id for e in ordered] == [7, 5, 6]


def test_total_remaining_sums_visible_envelopes():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        service.create(_payload("Food", "100"), now=datetime(2024, 2, 2))
        service.create(_payload("Fun", "50.50"), now=datetime(2024, 2, 3))
        service.create(_payload("Old", "70"), now=datetime(2024, 1, 3))
        assert service.total_remaining(2024, 2, now=datetime(2024, 2, 10)) == Decimal("150.50")


def test_update_toggles_recurring_and_clears_lineage():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        rent = service.create(
            _payload("Rent", type=EnvelopeType.recurring), now=datetime(2024, 1, 3)
        )
        RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        copy = session.query(Envelope).filter(Envelope.parent_id == rent.id).one()

        updated = service.update(
            copy.id, EnvelopeUpdate(name="Rent", budget=Decimal("120"), is_recurring=False)
        )
        assert updated.type == EnvelopeType.normal
        assert updated.parent_id is None
        assert updated.budget == Decimal("120")

        again = service.update(
            copy.id, EnvelopeUpdate(name="Rent", budget=Decimal("120"), is_recurring=True)
        )
        assert again.type == EnvelopeType.recurring
        assert again.parent_id is None


def test_persistent_cannot_become_recurring():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        savings = service.create(
            _payload("Savings", type=EnvelopeType.persistent), now=datetime(2024, 1, 3)
        )
        with pytest.raises(BudgetValidationError):
            service.update(
                savings.id,
                EnvelopeUpdate(name="Savings", budget=Decimal("100"), is_recurring=True),
            )
        assert session.get(Envelope, savings.id).type == EnvelopeType.persistent


def test_delete_detaches_copies():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        rent = service.create(
            _payload("Rent", type=EnvelopeType.recurring), now=datetime(2024, 1, 3)
        )
        RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        service.delete(rent.id)

        remaining = session.query(Envelope).one()
        assert remaining.parent_id is None
        with pytest.raises(NotFoundError):
            service.get(rent.id)


def test_reset_all_data_clears_envelopes():
    with _session() as session:
        service = EnvelopeService(session, is_subscribed=True)
        service.create(_payload("Food"), now=datetime(2024, 2, 2))
        reset_all_data(session)
        assert session.query(Envelope).count() == 0
