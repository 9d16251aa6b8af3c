import threading
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import Base
from models import CycleInstance, Envelope, EnvelopeType, Origin, TransactionRecord, TransactionType
import recurrence
from errors import PersistenceError
from recurrence import RUN_LOCK, RecurringMaterializer, resolve_target_envelope


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _envelope(name: str, created_at: datetime, **kwargs) -> Envelope:
    kwargs.setdefault("type", EnvelopeType.recurring)
    kwargs.setdefault("budget", Decimal("300"))
    return Envelope(
        name=name,
        income=kwargs.pop("income", Decimal("0")),
        spent=kwargs.pop("spent", Decimal("0")),
        goal=kwargs.pop("goal", Decimal("0")),
        created_at=created_at,
        **kwargs,
    )


def _txn(envelope: Envelope, day: date, amount: int = 40, **kwargs) -> TransactionRecord:
    kwargs.setdefault("type", TransactionType.expense)
    kwargs.setdefault("is_recurring", True)
    return TransactionRecord(envelope=envelope, date=day, amount=amount, note="", **kwargs)


def test_recurring_envelope_is_copied_into_next_month():
    with _session() as session:
        groceries = _envelope(
            "Groceries",
            datetime(2024, 1, 5),
            income=Decimal("20"),
            spent=Decimal("150"),
            goal=Decimal("50"),
            sort_order=3,
        )
        session.add(groceries)
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2024, 2, 1, 8, 0))
        assert result.envelopes_created == 1

        copy = (
            session.query(Envelope)
            .filter(Envelope.id != groceries.id)
            .one()
        )
        assert copy.name == "Groceries"
        assert copy.parent_id == groceries.id
        assert copy.lineage == CycleInstance(origin_id=groceries.id)
        assert groceries.lineage == Origin()
        assert copy.budget == Decimal("300")
        assert copy.goal == Decimal("50")
        assert copy.income == 0
        assert copy.spent == 0
        assert copy.type == EnvelopeType.recurring
        assert copy.sort_order == 3
        assert (copy.created_at.year, copy.created_at.month) == (2024, 2)


def test_second_run_in_same_month_is_a_no_op():
    with _session() as session:
        groceries = _envelope("Groceries", datetime(2024, 1, 5))
        session.add(groceries)
        session.add(_txn(groceries, date(2024, 1, 10)))
        session.commit()

        first = RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        second = RecurringMaterializer(session).run(now=datetime(2024, 2, 20))

        assert (first.envelopes_created, first.transactions_created) == (1, 1)
        assert (second.envelopes_created, second.transactions_created) == (0, 0)
        assert session.query(Envelope).count() == 2
        assert session.query(TransactionRecord).count() == 2


def test_non_recurring_and_older_envelopes_are_ignored():
    with _session() as session:
        session.add_all(
            [
                _envelope("Fun", datetime(2024, 1, 5), type=EnvelopeType.normal),
                _envelope("Savings", datetime(2024, 1, 6), type=EnvelopeType.persistent),
                _envelope("Old", datetime(2023, 12, 5)),
            ]
        )
        session.commit()
        result = RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        assert result.envelopes_created == 0
        assert session.query(Envelope).count() == 3


def test_recurring_transaction_moves_to_new_copy_with_clamped_day():
    with _session() as session:
        rent = _envelope("Rent", datetime(2024, 1, 2), spent=Decimal("900"))
        session.add(rent)
        session.add(_txn(rent, date(2024, 1, 31), amount=900))
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        assert result.transactions_created == 1

        new_rent = session.query(Envelope).filter(Envelope.parent_id == rent.id).one()
        copy = (
            session.query(TransactionRecord)
            .filter(TransactionRecord.parent_id.isnot(None))
            .one()
        )
        assert copy.envelope_id == new_rent.id
        assert copy.date == date(2024, 2, 29)
        assert copy.amount == 900
        assert copy.is_recurring
        assert new_rent.spent == Decimal("900")
        assert new_rent.income == 0


def test_income_copy_posts_to_income():
    with _session() as session:
        salary = _envelope("Salary", datetime(2024, 3, 1))
        session.add(salary)
        session.add(_txn(salary, date(2024, 3, 25), amount=3000, type=TransactionType.income))
        session.commit()

        RecurringMaterializer(session).run(now=datetime(2024, 4, 2))
        new_salary = session.query(Envelope).filter(Envelope.parent_id == salary.id).one()
        assert new_salary.income == Decimal("3000")
        assert new_salary.spent == 0


def test_transaction_falls_back_to_envelope_with_same_name():
    with _session() as session:
        january_bills = _envelope("Bills", datetime(2024, 1, 3), type=EnvelopeType.normal)
        february_bills = _envelope("Bills", datetime(2024, 2, 1, 7), type=EnvelopeType.normal)
        session.add_all([january_bills, february_bills])
        session.add(_txn(january_bills, date(2024, 1, 15), amount=55))
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2024, 2, 1, 9))
        assert result.transactions_created == 1
        copy = session.query(TransactionRecord).filter(TransactionRecord.parent_id.isnot(None)).one()
        assert copy.envelope_id == february_bills.id
        assert copy.date == date(2024, 2, 15)


def test_transaction_without_target_envelope_is_skipped():
    with _session() as session:
        gym = _envelope("Gym", datetime(2024, 1, 3), type=EnvelopeType.normal)
        session.add(gym)
        session.add(_txn(gym, date(2024, 1, 15)))
        session.commit()

        result = RecurringMaterializer(session).run(now=datetime(2024, 2, 2))
        assert result.transactions_created == 0
        assert session.query(TransactionRecord).count() == 1


def test_copies_of_copies_keep_the_original_as_parent():
    with _session() as session:
        phone = _envelope("Phone", datetime(2024, 1, 5))
        session.add(phone)
        session.add(_txn(phone, date(2024, 1, 20), amount=30))
        session.commit()

        RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        RecurringMaterializer(session).run(now=datetime(2024, 3, 1))
        RecurringMaterializer(session).run(now=datetime(2024, 3, 15))

        envelopes = session.query(Envelope).order_by(Envelope.created_at).all()
        assert [e.origin_id for e in envelopes] == [phone.id] * 3
        assert [e.parent_id for e in envelopes] == [None, phone.id, phone.id]

        transactions = session.query(TransactionRecord).order_by(TransactionRecord.date).all()
        assert [t.date for t in transactions] == [
            date(2024, 1, 20),
            date(2024, 2, 20),
            date(2024, 3, 20),
        ]
        assert transactions[2].envelope_id == envelopes[2].id
        assert len({t.origin_id for t in transactions}) == 1


def test_year_rollover_uses_december_as_previous_month():
    with _session() as session:
        session.add(_envelope("Gifts", datetime(2023, 12, 24)))
        session.commit()
        result = RecurringMaterializer(session).run(now=datetime(2024, 1, 1))
        assert result.envelopes_created == 1


def test_resolve_target_prefers_chain_then_name_and_never_persistent():
    origin = _envelope("Food", datetime(2024, 1, 1), id=1)
    renamed_copy = _envelope("Groceries", datetime(2024, 2, 1), id=2, parent_id=1)
    same_name = _envelope("Food", datetime(2024, 2, 1), id=3, type=EnvelopeType.normal)
    persistent = _envelope("Food", datetime(2024, 2, 1), id=4, type=EnvelopeType.persistent)

    assert resolve_target_envelope(origin, [same_name, renamed_copy]) is renamed_copy
    assert resolve_target_envelope(origin, [persistent, same_name]) is same_name
    assert resolve_target_envelope(origin, [persistent]) is None
    assert resolve_target_envelope(None, [same_name]) is None


def test_clamped_copy_returns_to_origin_day_next_month():
    with _session() as session:
        rent = _envelope("Rent", datetime(2024, 1, 2))
        session.add(rent)
        session.add(_txn(rent, date(2024, 1, 31), amount=900))
        session.commit()

        for month in (2, 3, 4, 5):
            RecurringMaterializer(session).run(now=datetime(2024, month, 1))

        dates = [
            t.date
            for t in session.query(TransactionRecord).order_by(TransactionRecord.date)
        ]
        assert dates == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
            date(2024, 5, 31),
        ]


def test_failed_transaction_pass_keeps_committed_envelopes(monkeypatch):
    with _session() as session:
        rent = _envelope("Rent", datetime(2024, 1, 2))
        session.add(rent)
        session.add(_txn(rent, date(2024, 1, 15), amount=900))
        session.commit()

        real_commit = session.commit
        calls = []

        def flaky_commit():
            calls.append(1)
            if len(calls) == 2:
                raise SQLAlchemyError("disk I/O error")
            real_commit()

        monkeypatch.setattr(session, "commit", flaky_commit)
        with pytest.raises(PersistenceError):
            RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        monkeypatch.undo()

        new_rent = session.query(Envelope).filter(Envelope.parent_id == rent.id).one()
        assert new_rent.spent == 0
        assert session.query(TransactionRecord).count() == 1

        result = RecurringMaterializer(session).run(now=datetime(2024, 2, 1))
        assert (result.envelopes_created, result.transactions_created) == (0, 1)
        session.refresh(new_rent)
        assert new_rent.spent == Decimal("900")


def test_fetch_failure_aborts_transaction_pass(monkeypatch):
    with _session() as session:
        rent = _envelope("Rent", datetime(2024, 1, 2))
        session.add(rent)
        session.add(_txn(rent, date(2024, 1, 15)))
        session.commit()

        def broken_fetch(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(recurrence, "transactions_dated_in_month", broken_fetch)
        with pytest.raises(PersistenceError):
            RecurringMaterializer(session).run(now=datetime(2024, 2, 1))

        assert session.query(Envelope).count() == 2
        assert session.query(TransactionRecord).count() == 1


def test_runs_from_different_threads_do_not_overlap(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'envelopes.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        session.add(_envelope("Groceries", datetime(2024, 1, 5)))
        session.commit()

    def run():
        with Session(engine) as session:
            RecurringMaterializer(session).run(now=datetime(2024, 2, 1))

    with RUN_LOCK:
        workers = [threading.Thread(target=run) for _ in range(2)]
        for worker in workers:
            worker.start()
        workers[0].join(timeout=0.2)
        assert workers[0].is_alive()
    for worker in workers:
        worker.join(timeout=10)

    with Session(engine) as session:
        assert session.query(Envelope).count() == 2
