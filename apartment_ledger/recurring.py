"""
Recurring charges: monthly children of recurring expenses, and monthly
subscription debits.

Both generators are idempotent per month, so they can be re-run safely
after a missed month or inside an occupancy start. The batch entry points
run each apartment/expense in its own transaction so one bad record does
not block the rest.
"""

import logging
from datetime import date
from typing import Optional
from sqlalchemy.orm import Session

from .audit import AuditEvent, audit_log
from .balance import BalanceAccumulator
from .config import BackfillPolicy
from .dates import days_in_month, get_first_day_of_month, month_range, parse_month
from .ledger_store import LedgerStore
from .models import Apartment, ApartmentStatus, ApartmentType, EntryType, Expense, ReferenceType
from .money import from_cents, prorate_cents, to_cents
from .operations import BaseRepository, lock_apartment
from .periods import PeriodRepository
from .session import SessionManager, after_commit
from .splitting import ExpenseSplitter


logger = logging.getLogger(__name__)


def _subscription_description(apartment: Apartment, month: str) -> str:
    if apartment.is_child:
        label = 'Storage' if apartment.apartment_type == ApartmentType.STORAGE.value else 'Parking'
        return f"{label} {apartment.apartment_number} subscription {month}"
    return f"Monthly subscription {month}"


class RecurringCharges:
    """Generate recurring expense children and subscription debits."""

    def __init__(self, session: Session, backfill_policy: BackfillPolicy = BackfillPolicy.PRORATED):
        self.session = session
        self.store = LedgerStore(session)
        self.periods = PeriodRepository(session)
        self.balances = BalanceAccumulator(session)
        self.splitter = ExpenseSplitter(session, backfill_policy)

    def generate_child_expenses(
        self,
        parent: Expense,
        user_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> int:
        """
        Create one child expense per elapsed month of a recurring parent and
        split each among the apartments occupied at generation time.

        Children are dated the 1st of their month. Months that already have
        a child are skipped; months with no eligible apartments are left for
        a later run.

        Returns:
            int: Number of children created
        """
        if not parent.is_recurring or parent.recurring_start_date is None:
            return 0

        as_of = as_of or date.today()
        end = min(parent.recurring_end_date, as_of) if parent.recurring_end_date else as_of

        created = 0
        for month in month_range(parent.recurring_start_date, end):
            child_date = get_first_day_of_month(*parse_month(month))

            existing = (
                self.session.query(Expense.id)
                .filter(Expense.parent_expense_id == parent.id, Expense.expense_date == child_date)
                .first()
            )
            if existing:
                continue

            apartments = self.splitter.eligible_apartments(parent.building_id)
            if not apartments:
                logger.warning(
                    f"Recurring expense {parent.id}: no occupied apartments for {month}, skipped"
                )
                continue

            child = Expense(
                building_id=parent.building_id,
                description=parent.description,
                amount=parent.amount,
                expense_date=child_date,
                category=parent.category,
                parent_expense_id=parent.id,
            )
            self.session.add(child)
            self.session.flush()

            self.splitter.split_expense(child, apartments, user_id)
            created += 1

        if created:
            logger.info(f"Generated {created} child expense(s) for recurring expense {parent.id}")
            after_commit(
                self.session, audit_log, AuditEvent.RECURRING_GENERATED,
                f"expense={parent.id} children={created}", user_id,
            )
        return created

    def backfill_subscriptions(
        self,
        apartment_id: int,
        user_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> int:
        """
        Post monthly subscription debits from occupancy start to `as_of`.

        The first month is prorated by the days left from the occupancy start
        day. Storage/parking children bill into their parent's ledger, tagged
        with the parent's active period. Months already charged are skipped.

        Returns:
            int: Number of subscription debits posted
        """
        apartment = BaseRepository(self.session, Apartment, 'Apartment').get_or_raise(apartment_id)

        amount_cents = to_cents(apartment.subscription_amount)
        if (apartment.status != ApartmentStatus.OCCUPIED.value or amount_cents <= 0
                or apartment.occupancy_start is None):
            return 0

        target_id = apartment.billing_apartment_id
        lock_apartment(self.session, target_id)
        period_id = self.periods.get_active_period_id(target_id)

        as_of = as_of or date.today()
        start = apartment.occupancy_start
        posted = 0

        for i, month in enumerate(month_range(start, as_of)):
            if self.store.has_subscription_for_month(apartment.id, month):
                continue

            cents = amount_cents
            if i == 0:
                month_days = days_in_month(start.year, start.month)
                remaining = month_days - start.day + 1
                if remaining < month_days:
                    cents = prorate_cents(amount_cents, remaining, month_days)

            if cents <= 0:
                continue

            self.store.append(
                apartment_id=target_id,
                entry_type=EntryType.DEBIT,
                amount=from_cents(cents),
                description=_subscription_description(apartment, month),
                reference_type=ReferenceType.SUBSCRIPTION,
                reference_id=apartment.id,
                period_id=period_id,
                user_id=user_id,
                charge_month=month,
            )
            posted += 1

        self.balances.refresh_cached_balance(target_id)

        if posted:
            logger.info(f"Posted {posted} subscription charge(s) for apartment {apartment_id}")
            after_commit(
                self.session, audit_log, AuditEvent.SUBSCRIPTION_CHARGED,
                f"apartment={apartment_id} ledger={target_id} months={posted}", user_id,
            )
        return posted


def generate_monthly_subscriptions(session_manager: SessionManager, as_of: Optional[date] = None) -> int:
    """
    Post missing subscription charges for every occupied apartment with a
    subscription amount, one transaction per apartment.

    Returns:
        int: Number of apartments processed successfully
    """
    with session_manager.session_scope() as session:
        apartment_ids = [
            row.id for row in session.query(Apartment.id)
            .filter(
                Apartment.status == ApartmentStatus.OCCUPIED.value,
                Apartment.subscription_amount > 0,
            )
            .order_by(Apartment.id)
        ]

    logger.info(f"Generating subscription charges for {len(apartment_ids)} apartments")
    processed = 0
    for apartment_id in apartment_ids:
        try:
            with session_manager.session_scope() as session:
                RecurringCharges(session).backfill_subscriptions(apartment_id, None, as_of)
            processed += 1
        except Exception as e:
            logger.error(f"Failed to charge subscription for apartment {apartment_id}: {e}")

    logger.info(f"Generated subscription charges for {processed}/{len(apartment_ids)} apartments")
    return processed


def process_recurring_expenses(
    session_manager: SessionManager,
    as_of: Optional[date] = None,
    backfill_policy: BackfillPolicy = BackfillPolicy.PRORATED,
) -> int:
    """
    Generate missing child expenses for every recurring parent, one
    transaction per parent.

    Returns:
        int: Total number of child expenses created
    """
    with session_manager.session_scope() as session:
        parent_ids = [
            row.id for row in session.query(Expense.id)
            .filter(Expense.is_recurring.is_(True), Expense.parent_expense_id.is_(None))
            .order_by(Expense.id)
        ]

    logger.info(f"Processing {len(parent_ids)} recurring expenses")
    total_created = 0
    for expense_id in parent_ids:
        try:
            with session_manager.session_scope() as session:
                parent = BaseRepository(session, Expense, 'Expense').get_or_raise(expense_id)
                created = RecurringCharges(session, backfill_policy).generate_child_expenses(
                    parent, None, as_of
                )
            total_created += created
        except Exception as e:
            logger.error(f"Failed to process recurring expense {expense_id}: {e}")

    logger.info(f"Processed recurring expenses: {total_created} created")
    return total_created
