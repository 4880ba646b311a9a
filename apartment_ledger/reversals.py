"""
Reversal / cancellation engine.

Nothing is deleted. Canceling or waiving flips a flag on the charge or
payment and appends an offsetting ledger entry in the period of the entry
being offset, so closed tenancies keep their historical balances.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.orm import Session

from .audit import AuditEvent, audit_log
from .balance import BalanceAccumulator
from .exceptions import InvalidStateError, NotFoundError
from .ledger_store import LedgerStore
from .models import ApartmentExpense, EntryType, Expense, LedgerEntry, Payment, PaymentAllocation, ReferenceType
from .money import from_cents, to_cents, to_decimal
from .operations import BaseRepository, lock_apartment, lock_apartments
from .periods import PeriodRepository
from .session import after_commit


logger = logging.getLogger(__name__)


class ReversalEngine:
    """Cancel, waive and write off, always through offsetting entries."""

    def __init__(self, session: Session):
        self.session = session
        self.store = LedgerStore(session)
        self.periods = PeriodRepository(session)
        self.balances = BalanceAccumulator(session)
        self.splits = BaseRepository(session, ApartmentExpense, 'Apartment expense')
        self.payments = BaseRepository(session, Payment, 'Payment')
        self.allocations = BaseRepository(session, PaymentAllocation, 'Payment allocation')

    def _lock_split(self, apartment_expense_id: int) -> ApartmentExpense:
        split = self.splits.get_or_raise(apartment_expense_id)
        lock_apartment(self.session, split.apartment_id)
        return self.splits.lock(apartment_expense_id)

    def cancel_expense_charge(self, apartment_expense_id: int, user_id: Optional[str]) -> Optional[LedgerEntry]:
        """
        Cancel one apartment's share of an expense (active -> canceled).

        Payment allocations against the share are reversed, so the money
        they held is free to be allocated to other charges.

        Returns:
            The credit reversal entry, or None if the share never reached the
            ledger (zero-cent share)

        Raises:
            NotFoundError: No such split line
            InvalidStateError: Already canceled, or waived
        """
        split = self._lock_split(apartment_expense_id)
        if split.is_canceled:
            raise InvalidStateError(f"Apartment expense {split.id} is already canceled")
        if split.is_waived:
            raise InvalidStateError(f"Apartment expense {split.id} is waived and cannot be canceled")

        # Money allocated here becomes unallocated credit on its payment again
        released = self.allocations.filter_by(apartment_expense_id=split.id, is_reversed=False)
        for allocation in released:
            allocation.is_reversed = True
        if released:
            logger.info(f"Released {len(released)} allocation(s) from apartment expense {split.id}")
        split.amount_paid = from_cents(0)

        split.is_canceled = True
        split.canceled_by = str(user_id) if user_id is not None else None
        split.canceled_at = datetime.now(timezone.utc)

        try:
            original = self.store.find_entry(split.apartment_id, ReferenceType.EXPENSE, split.id)
        except NotFoundError:
            original = None

        reversal = None
        if original is not None:
            reversal = self.store.record_reversal(
                original, f"Reversal of expense charge {split.id}", user_id
            )
        else:
            logger.debug(f"Apartment expense {split.id} had no ledger entry, nothing to reverse")

        self.balances.refresh_cached_balance(split.apartment_id)

        logger.info(f"Canceled apartment expense {split.id} ({split.amount}) on apartment {split.apartment_id}")
        after_commit(
            self.session, audit_log, AuditEvent.CHARGE_CANCELED,
            f"apartment_expense={split.id} apartment={split.apartment_id} amount={split.amount}", user_id,
        )
        return reversal

    def cancel_expense(self, expense_id: int, user_id: Optional[str]) -> int:
        """
        Cancel every active share of an expense.

        Returns:
            int: Number of shares canceled

        Raises:
            InvalidStateError: The expense has no active shares
        """
        BaseRepository(self.session, Expense, 'Expense').get_or_raise(expense_id)
        active = [split for split in self.splits.filter_by(expense_id=expense_id) if split.is_active]
        if not active:
            raise InvalidStateError(f"Expense {expense_id} has no active charges to cancel")

        lock_apartments(self.session, [split.apartment_id for split in active])
        for split in active:
            self.cancel_expense_charge(split.id, user_id)

        after_commit(
            self.session, audit_log, AuditEvent.EXPENSE_CANCELED,
            f"expense={expense_id} shares={len(active)}", user_id,
        )
        return len(active)

    def waive_expense_charge(self, apartment_expense_id: int, user_id: Optional[str]) -> LedgerEntry:
        """
        Forgive the outstanding part of a share (active -> waived).

        Marks the share fully paid and credits the forgiven amount.

        Raises:
            InvalidStateError: Canceled, already waived, or nothing outstanding
        """
        split = self._lock_split(apartment_expense_id)
        if split.is_canceled:
            raise InvalidStateError(f"Cannot waive canceled apartment expense {split.id}")
        if split.is_waived:
            raise InvalidStateError(f"Apartment expense {split.id} is already waived")

        outstanding = to_cents(split.amount) - to_cents(split.amount_paid)
        if outstanding <= 0:
            raise InvalidStateError(f"Nothing to waive on apartment expense {split.id}")

        try:
            period_id = self.store.find_entry_period_id(split.apartment_id, ReferenceType.EXPENSE, split.id)
        except NotFoundError:
            period_id = self.periods.get_active_period_id(split.apartment_id)

        split.amount_paid = to_decimal(split.amount)
        split.is_waived = True

        entry = self.store.append(
            apartment_id=split.apartment_id,
            entry_type=EntryType.CREDIT,
            amount=from_cents(outstanding),
            description=f"Waiver for expense charge {split.id}",
            reference_type=ReferenceType.WAIVER,
            reference_id=split.id,
            period_id=period_id,
            user_id=user_id,
        )
        self.balances.refresh_cached_balance(split.apartment_id)

        logger.info(f"Waived {from_cents(outstanding)} on apartment expense {split.id}")
        after_commit(
            self.session, audit_log, AuditEvent.CHARGE_WAIVED,
            f"apartment_expense={split.id} waived={from_cents(outstanding)}", user_id,
        )
        return entry

    def cancel_payment(self, payment_id: int, user_id: Optional[str]) -> LedgerEntry:
        """
        Cancel a payment.

        Allocations are reversed first (targets' amount_paid decremented,
        floored at zero), then the payment is flagged and its credit offset
        by a debit in the original payment entry's period.

        Raises:
            NotFoundError: No such payment
            InvalidStateError: Already canceled
        """
        payment = self.payments.get_or_raise(payment_id)
        lock_apartment(self.session, payment.apartment_id)
        payment = self.payments.lock(payment_id)
        if payment.is_canceled:
            raise InvalidStateError(f"Payment {payment_id} is already canceled")

        reversed_count = 0
        for allocation in payment.allocations:
            if allocation.is_reversed:
                continue
            if allocation.apartment_expense_id is not None:
                split = self.splits.lock(allocation.apartment_expense_id)
                remaining_paid = max(to_cents(split.amount_paid) - to_cents(allocation.amount), 0)
                split.amount_paid = from_cents(remaining_paid)
            allocation.is_reversed = True
            reversed_count += 1
        self.session.flush()

        payment.is_canceled = True
        payment.canceled_by = str(user_id) if user_id is not None else None
        payment.canceled_at = datetime.now(timezone.utc)

        original = self.store.find_entry(payment.apartment_id, ReferenceType.PAYMENT, payment.id)
        reversal = self.store.record_reversal(
            original, f"Reversal of payment {payment.id}", user_id, amount=payment.amount
        )
        self.balances.refresh_cached_balance(payment.apartment_id)

        logger.info(
            f"Canceled payment {payment.id} ({payment.amount}), reversed {reversed_count} allocation(s)"
        )
        after_commit(
            self.session, audit_log, AuditEvent.PAYMENT_CANCELED,
            f"payment={payment.id} apartment={payment.apartment_id} amount={payment.amount}", user_id,
        )
        return reversal

    def write_off_balance(self, apartment_id: int, user_id: Optional[str]) -> LedgerEntry:
        """
        Zero a lingering balance with a single adjusting entry.

        Debt is cleared with a credit, overpayment with a debit. This is an
        administrative escape hatch, not traced to individual charges.

        Raises:
            NotFoundError: No such apartment
            InvalidStateError: Balance is already zero
        """
        lock_apartment(self.session, apartment_id)
        balance = self.store.get_balance(apartment_id)
        if balance == 0:
            raise InvalidStateError(f"Balance of apartment {apartment_id} is already zero")

        if balance < 0:
            entry_type, description = EntryType.CREDIT, 'Balance write-off (debt cleared)'
        else:
            entry_type, description = EntryType.DEBIT, 'Balance write-off (overpayment cleared)'

        entry = self.store.append(
            apartment_id=apartment_id,
            entry_type=entry_type,
            amount=abs(balance),
            description=description,
            reference_type=ReferenceType.WRITE_OFF,
            reference_id=apartment_id,
            period_id=self.periods.get_active_period_id(apartment_id),
            user_id=user_id,
        )
        self.balances.refresh_cached_balance(apartment_id)

        logger.warning(f"Wrote off balance {balance} on apartment {apartment_id}")
        after_commit(
            self.session, audit_log, AuditEvent.BALANCE_WRITTEN_OFF,
            f"apartment={apartment_id} previous_balance={balance}", user_id, 'WARNING',
        )
        return entry
