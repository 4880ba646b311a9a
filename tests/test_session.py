import logging
from datetime import date

import pytest

from apartment_ledger.exceptions import InvalidStateError
from apartment_ledger.models import ApartmentExpense, Expense, LedgerEntry
from apartment_ledger.session import SessionManager, after_commit
from apartment_ledger.splitting import ExpenseSplitter

from conftest import make_apartment, make_building


@pytest.fixture
def building_id(session_manager):
    with session_manager.session_scope() as session:
        building = make_building(session)
        make_apartment(session, building, 1)
        make_apartment(session, building, 2)
        return building.id


def test_error_mid_transaction_leaves_no_partial_split(session_manager, building_id):
    with pytest.raises(RuntimeError):
        with session_manager.session_scope() as session:
            ExpenseSplitter(session).create_expense(building_id, '100.00', date(2026, 4, 1))
            raise RuntimeError('connection dropped')

    with session_manager.session_scope() as session:
        assert session.query(Expense).count() == 0
        assert session.query(ApartmentExpense).count() == 0
        assert session.query(LedgerEntry).count() == 0


def test_no_eligible_apartments_rolls_back_the_expense(session_manager):
    with session_manager.session_scope() as session:
        empty_building_id = make_building(session, 'Empty').id

    with pytest.raises(InvalidStateError):
        with session_manager.session_scope() as session:
            ExpenseSplitter(session).create_expense(empty_building_id, '100.00', date(2026, 4, 1))

    with session_manager.session_scope() as session:
        assert session.query(Expense).count() == 0


def test_side_effects_run_only_after_commit(session_manager, building_id):
    calls = []

    with session_manager.session_scope() as session:
        after_commit(session, calls.append, 'committed')
        ExpenseSplitter(session).create_expense(building_id, '10.00', date(2026, 4, 1))
        assert calls == []

    assert calls == ['committed']


def test_side_effects_are_dropped_on_rollback(session_manager, building_id):
    calls = []

    with pytest.raises(RuntimeError):
        with session_manager.session_scope() as session:
            SessionManager.after_commit(session, calls.append, 'never')
            raise RuntimeError('boom')

    with session_manager.session_scope():
        pass
    assert calls == []


def test_failing_side_effect_does_not_undo_the_write(session_manager, building_id, caplog):
    def broken_notifier():
        raise ConnectionError('mail server down')

    with caplog.at_level(logging.ERROR, logger='apartment_ledger.session'):
        with session_manager.session_scope() as session:
            after_commit(session, broken_notifier)
            ExpenseSplitter(session).create_expense(building_id, '10.00', date(2026, 4, 1))

    assert 'broken_notifier' in caplog.text
    with session_manager.session_scope() as session:
        assert session.query(LedgerEntry).count() == 2
