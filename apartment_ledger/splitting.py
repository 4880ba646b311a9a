"""
Expense splitting engine.

Allocates a building expense across occupied regular apartments so the
shares sum to the expense amount exactly, and retroactively charges
apartments whose occupancy starts after an expense was already split.
"""

import logging
from datetime import date
from typing import List, Optional, Sequence
from sqlalchemy import func
from sqlalchemy.orm import Session

from .audit import AuditEvent, audit_log
from .balance import BalanceAccumulator
from .config import BackfillPolicy
from .dates import days_in_month, get_first_day_of_month, same_month
from .exceptions import InvalidStateError, ValidationError
from .ledger_store import LedgerStore
from .models import (
    Apartment, ApartmentExpense, ApartmentStatus, ApartmentType, Building,
    EntryType, Expense, ReferenceType,
)
from .money import AmountLike, from_cents, parse_amount, prorate_cents, split_cents, to_cents
from .operations import BaseRepository, lock_apartment, lock_apartments
from .periods import PeriodRepository
from .session import after_commit


logger = logging.getLogger(__name__)


class ExpenseSplitter:
    """
    Create expenses and charge apartments their shares.

    Every method runs inside the caller's transaction; an error anywhere
    leaves no partial split once the caller rolls back.
    """

    def __init__(self, session: Session, backfill_policy: BackfillPolicy = BackfillPolicy.PRORATED):
        self.session = session
        self.backfill_policy = backfill_policy
        self.store = LedgerStore(session)
        self.periods = PeriodRepository(session)
        self.balances = BalanceAccumulator(session)
        self.expenses = BaseRepository(session, Expense, 'Expense')

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def eligible_apartments(self, building_id: int) -> List[Apartment]:
        """Occupied regular apartments of a building, in stable id order."""
        return (
            self.session.query(Apartment)
            .filter(
                Apartment.building_id == building_id,
                Apartment.status == ApartmentStatus.OCCUPIED.value,
                Apartment.apartment_type == ApartmentType.REGULAR.value,
            )
            .order_by(Apartment.id)
            .all()
        )

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    def _charge(
        self,
        apartment_id: int,
        expense: Expense,
        cents: int,
        description: str,
        user_id: Optional[str],
    ) -> ApartmentExpense:
        """Insert one split line and its debit, tagged with the apartment's active period."""
        split = ApartmentExpense(
            apartment_id=apartment_id,
            expense_id=expense.id,
            amount=from_cents(cents),
            amount_paid=from_cents(0),
        )
        self.session.add(split)
        self.session.flush()

        # Zero-cent shares keep their split line but have nothing to post
        if cents > 0:
            self.store.append(
                apartment_id=apartment_id,
                entry_type=EntryType.DEBIT,
                amount=from_cents(cents),
                description=description,
                reference_type=ReferenceType.EXPENSE,
                reference_id=split.id,
                period_id=self.periods.get_active_period_id(apartment_id),
                user_id=user_id,
            )
        return split

    def split_expense(
        self,
        expense: Expense,
        apartments: Sequence[Apartment],
        user_id: Optional[str] = None,
    ) -> List[ApartmentExpense]:
        """
        Split an expense among the given apartments.

        Shares are floor(total / N) cents, with the first `remainder`
        apartments (in the given order) absorbing one extra cent each, so the
        split lines always sum to the expense amount.

        Args:
            expense: Expense to split (flushed, not yet split)
            apartments: Participating apartments, in charging order
            user_id: Who triggered the charge

        Returns:
            List[ApartmentExpense]: One split line per apartment

        Raises:
            InvalidStateError: No apartments, recurring parent, or already split
        """
        if not apartments:
            raise InvalidStateError("No occupied apartments to split expense among")
        if expense.is_recurring:
            raise InvalidStateError(f"Recurring expense {expense.id} is a template and cannot be split")
        if self._split_count(expense.id, include_canceled=True):
            raise InvalidStateError(f"Expense {expense.id} has already been split")

        lock_apartments(self.session, [apartment.id for apartment in apartments])

        shares = split_cents(to_cents(expense.amount), len(apartments))
        description = expense.description or 'Expense charge (split)'

        splits = []
        for apartment, cents in zip(apartments, shares):
            splits.append(self._charge(apartment.id, expense, cents, description, user_id))
            self.balances.refresh_cached_balance(apartment.id)

        logger.info(
            f"Split expense {expense.id} ({expense.amount}) among {len(apartments)} apartments"
        )
        after_commit(
            self.session, audit_log, AuditEvent.EXPENSE_SPLIT,
            f"expense={expense.id} amount={expense.amount} apartments={len(apartments)}", user_id,
        )
        return splits

    def create_expense(
        self,
        building_id: int,
        amount: AmountLike,
        expense_date: date,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        apartment_id: Optional[int] = None,
        is_recurring: bool = False,
        recurring_type: Optional[str] = None,
        recurring_start_date: Optional[date] = None,
        recurring_end_date: Optional[date] = None,
        as_of: Optional[date] = None,
    ) -> Expense:
        """
        Record an expense and charge it.

        - Single-apartment expense (apartment_id given): charged in full to
          that apartment, no splitting.
        - Building-wide expense: split among occupied regular apartments.
        - Recurring parent: never split; its monthly children are generated
          up to `as_of` and each child is split.

        Raises:
            NotFoundError: Building or apartment does not exist
            ValidationError: Bad amount, apartment outside the building,
                             recurring expense without a start date
            InvalidStateError: Building-wide expense with no eligible apartments
        """
        amount = parse_amount(amount)
        BaseRepository(self.session, Building, 'Building').get_or_raise(building_id)

        if apartment_id is not None:
            apartment = lock_apartment(self.session, apartment_id)
            if apartment.building_id != building_id:
                raise ValidationError(
                    f"Apartment {apartment_id} does not belong to building {building_id}"
                )
            if is_recurring:
                raise ValidationError("Recurring expenses are building-wide")

        if is_recurring and recurring_start_date is None:
            raise ValidationError("Recurring expenses need a recurring start date")
        if recurring_start_date and recurring_end_date and recurring_end_date < recurring_start_date:
            raise ValidationError("Recurring end date is before its start date")

        expense = self.expenses.create(Expense(
            building_id=building_id,
            apartment_id=apartment_id,
            description=description,
            amount=amount,
            expense_date=expense_date,
            category=category,
            is_recurring=is_recurring,
            recurring_type=recurring_type,
            recurring_start_date=recurring_start_date,
            recurring_end_date=recurring_end_date,
        ))
        after_commit(
            self.session, audit_log, AuditEvent.EXPENSE_CREATED,
            f"expense={expense.id} building={building_id} amount={amount}", user_id,
        )

        if is_recurring:
            from .recurring import RecurringCharges
            RecurringCharges(self.session, self.backfill_policy).generate_child_expenses(expense, user_id, as_of)
        elif apartment_id is not None:
            self._charge(apartment_id, expense, to_cents(amount), description or 'Expense charge', user_id)
            self.balances.refresh_cached_balance(apartment_id)
        else:
            self.split_expense(expense, self.eligible_apartments(building_id), user_id)

        return expense

    def update_expense(
        self,
        expense_id: int,
        description: Optional[str] = None,
        amount: Optional[AmountLike] = None,
        expense_date: Optional[date] = None,
        category: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Expense:
        """
        Amend expense metadata.

        Raises:
            InvalidStateError: If the amount changes after the expense was
                               split (cancel and recreate instead)
        """
        expense = self.expenses.get_or_raise(expense_id)

        if amount is not None:
            new_amount = parse_amount(amount)
            if new_amount != expense.amount and self._split_count(expense.id, include_canceled=True):
                raise InvalidStateError(
                    "Cannot change amount on an expense that has already been split among "
                    "apartments. Cancel and recreate instead."
                )
            expense.amount = new_amount

        if description is not None:
            expense.description = description
        if expense_date is not None:
            expense.expense_date = expense_date
        if category is not None:
            expense.category = category

        self.session.flush()
        after_commit(self.session, audit_log, AuditEvent.EXPENSE_UPDATED, f"expense={expense.id}", user_id)
        return expense

    # ------------------------------------------------------------------
    # Retroactive backfill
    # ------------------------------------------------------------------

    def _split_count(self, expense_id: int, include_canceled: bool = False) -> int:
        query = self.session.query(func.count(ApartmentExpense.id)).filter(
            ApartmentExpense.expense_id == expense_id
        )
        if not include_canceled:
            query = query.filter(ApartmentExpense.is_canceled.is_(False))
        return query.scalar() or 0

    def _has_split(self, apartment_id: int, expense_id: int) -> bool:
        return (
            self.session.query(ApartmentExpense.id)
            .filter(
                ApartmentExpense.apartment_id == apartment_id,
                ApartmentExpense.expense_id == expense_id,
            )
            .first()
            is not None
        )

    def backfill_share_cents(self, expense: Expense, existing_splits: int, occupancy_start: date) -> int:
        """
        Share owed by a late joiner for an expense already split `existing_splits` ways.

        PRORATED: (total / (splits + 1)) x occupied days / days in month, for
                  an expense in the occupancy month; a full share for later months.
        FLAT:     total / (splits + 1).
        """
        total_cents = to_cents(expense.amount)
        tenants = existing_splits + 1

        if self.backfill_policy == BackfillPolicy.FLAT:
            return prorate_cents(total_cents, 1, tenants)

        month_days = days_in_month(expense.expense_date.year, expense.expense_date.month)
        if same_month(expense.expense_date, occupancy_start):
            occupied_days = month_days - occupancy_start.day + 1
        else:
            occupied_days = month_days
        return prorate_cents(total_cents, occupied_days, tenants * month_days)

    def backfill_expenses_for_apartment(
        self,
        apartment_id: int,
        occupancy_start: date,
        user_id: Optional[str] = None,
    ) -> List[ApartmentExpense]:
        """
        Charge a newly occupied apartment its share of building expenses
        dated in or after its occupancy month.

        Already-split apartments keep their shares untouched. Idempotent:
        expenses the apartment already has a split line for are skipped, as
        are recurring templates, single-apartment expenses and expenses
        nobody was charged for.

        Returns:
            List[ApartmentExpense]: Split lines created by this call
        """
        apartment = lock_apartment(self.session, apartment_id)
        window_start = get_first_day_of_month(occupancy_start.year, occupancy_start.month)

        candidates = (
            self.session.query(Expense)
            .filter(
                Expense.building_id == apartment.building_id,
                Expense.expense_date >= window_start,
                Expense.is_recurring.is_(False),
                Expense.apartment_id.is_(None),
            )
            .order_by(Expense.expense_date, Expense.id)
            .all()
        )

        created = []
        for expense in candidates:
            if self._has_split(apartment_id, expense.id):
                continue

            existing = self._split_count(expense.id)
            if existing == 0:
                continue

            cents = self.backfill_share_cents(expense, existing, occupancy_start)
            if cents <= 0:
                continue

            description = expense.description or 'Retroactive expense charge'
            created.append(self._charge(apartment_id, expense, cents, description, user_id))
            logger.info(
                f"Backfilled expense {expense.id} for apartment {apartment_id}: "
                f"{from_cents(cents)} ({self.backfill_policy.value})"
            )

        self.balances.refresh_cached_balance(apartment_id)

        if created:
            after_commit(
                self.session, audit_log, AuditEvent.EXPENSE_BACKFILLED,
                f"apartment={apartment_id} expenses={[s.expense_id for s in created]}", user_id,
            )
        return created
