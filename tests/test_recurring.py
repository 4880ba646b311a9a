from datetime import date
from decimal import Decimal

import pytest

from apartment_ledger.ledger_store import LedgerStore
from apartment_ledger.models import (
    Apartment, ApartmentType, Expense, LedgerEntry, ReferenceType, SubscriptionStatus,
)
from apartment_ledger.occupancy import OccupancyService
from apartment_ledger.periods import PeriodRepository
from apartment_ledger.recurring import (
    RecurringCharges, generate_monthly_subscriptions, process_recurring_expenses,
)
from apartment_ledger.splitting import ExpenseSplitter

from conftest import make_apartment, make_building


def subscription_entries(session, apartment_id):
    return (
        session.query(LedgerEntry)
        .filter_by(apartment_id=apartment_id, reference_type=ReferenceType.SUBSCRIPTION.value)
        .order_by(LedgerEntry.charge_month)
        .all()
    )


class TestRecurringExpenses:

    def test_one_child_per_elapsed_month(self, session, building):
        tenants = [make_apartment(session, building, n) for n in (1, 2)]
        splitter = ExpenseSplitter(session)

        parent = splitter.create_expense(
            building.id, '30.00', date(2026, 1, 15), 'admin', description='Cleaning',
            is_recurring=True, recurring_type='monthly', recurring_start_date=date(2026, 1, 15),
            as_of=date(2026, 3, 10),
        )

        children = session.query(Expense).filter_by(parent_expense_id=parent.id).order_by(Expense.expense_date).all()
        assert [c.expense_date for c in children] == [date(2026, 1, 1), date(2026, 2, 1), date(2026, 3, 1)]
        assert all(c.description == 'Cleaning' for c in children)
        assert [t.cached_balance for t in tenants] == [Decimal('-45.00'), Decimal('-45.00')]
        # the template itself is never split
        assert parent.splits == []

    def test_generation_is_idempotent(self, session, building):
        make_apartment(session, building, 1)
        splitter = ExpenseSplitter(session)
        parent = splitter.create_expense(
            building.id, '30.00', date(2026, 1, 1), is_recurring=True,
            recurring_start_date=date(2026, 1, 1), as_of=date(2026, 2, 1),
        )
        recurring = RecurringCharges(session)

        assert recurring.generate_child_expenses(parent, as_of=date(2026, 2, 20)) == 0
        assert recurring.generate_child_expenses(parent, as_of=date(2026, 3, 1)) == 1

    def test_end_date_caps_generation(self, session, building):
        make_apartment(session, building, 1)
        parent = ExpenseSplitter(session).create_expense(
            building.id, '30.00', date(2026, 1, 1), is_recurring=True,
            recurring_start_date=date(2026, 1, 1), recurring_end_date=date(2026, 2, 28),
            as_of=date(2026, 6, 1),
        )

        assert session.query(Expense).filter_by(parent_expense_id=parent.id).count() == 2

    def test_months_without_tenants_are_retried_later(self, session, building):
        vacant = make_apartment(session, building, 1, occupied=False)
        parent = ExpenseSplitter(session).create_expense(
            building.id, '30.00', date(2026, 1, 1), is_recurring=True,
            recurring_start_date=date(2026, 1, 1), as_of=date(2026, 1, 20),
        )
        assert session.query(Expense).filter_by(parent_expense_id=parent.id).count() == 0

        OccupancyService(session).start_occupancy(vacant.id, date(2026, 1, 25), as_of=date(2026, 1, 25))

        assert RecurringCharges(session).generate_child_expenses(parent, as_of=date(2026, 1, 31)) == 1
        assert LedgerStore(session).get_balance(vacant.id) == Decimal('-30.00')


class TestSubscriptions:

    def test_first_month_is_prorated(self, session, building):
        apartment = make_apartment(session, building, 1, occupied=False, subscription_amount='300.00')

        OccupancyService(session).start_occupancy(apartment.id, date(2026, 4, 16), as_of=date(2026, 6, 5))

        entries = subscription_entries(session, apartment.id)
        assert [(e.charge_month, e.amount) for e in entries] == [
            ('2026-04', Decimal('150.00')), ('2026-05', Decimal('300.00')), ('2026-06', Decimal('300.00')),
        ]
        assert apartment.cached_balance == Decimal('-750.00')
        assert apartment.subscription_status == SubscriptionStatus.DUE.value

    def test_subscriptions_are_idempotent_per_month(self, session, building):
        apartment = make_apartment(session, building, 1, occupancy_start=date(2026, 4, 1), subscription_amount='300.00')
        recurring = RecurringCharges(session)

        assert recurring.backfill_subscriptions(apartment.id, as_of=date(2026, 5, 1)) == 2
        assert recurring.backfill_subscriptions(apartment.id, as_of=date(2026, 5, 31)) == 0
        assert recurring.backfill_subscriptions(apartment.id, as_of=date(2026, 6, 1)) == 1
        assert LedgerStore(session).get_balance(apartment.id) == Decimal('-900.00')

    def test_storage_unit_bills_into_parent_ledger(self, session, building):
        parent = make_apartment(session, building, 1)
        storage = make_apartment(
            session, building, 'S1', occupied=False, subscription_amount='50.00',
            apartment_type=ApartmentType.STORAGE, parent=parent,
        )

        OccupancyService(session).start_occupancy(storage.id, date(2026, 4, 1), as_of=date(2026, 4, 30))

        entries = subscription_entries(session, parent.id)
        assert len(entries) == 1
        assert entries[0].amount == Decimal('50.00')
        assert entries[0].reference_id == storage.id
        assert entries[0].description == 'Storage S1 subscription 2026-04'
        assert entries[0].occupancy_period_id == PeriodRepository(session).get_active_period_id(parent.id)
        assert LedgerStore(session).get_balance(parent.id) == Decimal('-50.00')
        assert LedgerStore(session).get_balance(storage.id) == Decimal('0.00')

    def test_vacant_or_free_units_are_not_charged(self, session, building):
        vacant = make_apartment(session, building, 1, occupied=False, subscription_amount='300.00')
        free = make_apartment(session, building, 2)
        recurring = RecurringCharges(session)

        assert recurring.backfill_subscriptions(vacant.id, as_of=date(2026, 5, 1)) == 0
        assert recurring.backfill_subscriptions(free.id, as_of=date(2026, 5, 1)) == 0


class TestBatchJobs:

    @pytest.fixture
    def seeded(self, session_manager):
        with session_manager.session_scope() as session:
            building = make_building(session)
            billed = make_apartment(session, building, 1, occupancy_start=date(2026, 4, 1), subscription_amount='100.00')
            make_apartment(session, building, 2, occupancy_start=date(2026, 4, 1))
            ExpenseSplitter(session).create_expense(
                building.id, '20.00', date(2026, 4, 1), is_recurring=True,
                recurring_start_date=date(2026, 4, 1), as_of=date(2026, 4, 1),
            )
            return billed.id

    def test_generate_monthly_subscriptions(self, session_manager, seeded):
        assert generate_monthly_subscriptions(session_manager, as_of=date(2026, 5, 3)) == 1
        assert generate_monthly_subscriptions(session_manager, as_of=date(2026, 5, 3)) == 1

        with session_manager.session_scope() as session:
            apartment = session.get(Apartment, seeded)
            assert len(subscription_entries(session, seeded)) == 2
            assert apartment.cached_balance == Decimal('-210.00')

    def test_process_recurring_expenses(self, session_manager, seeded):
        assert process_recurring_expenses(session_manager, as_of=date(2026, 6, 1)) == 2
        assert process_recurring_expenses(session_manager, as_of=date(2026, 6, 1)) == 0

        with session_manager.session_scope() as session:
            assert session.query(Expense).filter(Expense.parent_expense_id.isnot(None)).count() == 3
