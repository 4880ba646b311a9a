"""
Payment allocation engine.

A payment always counts in full toward the apartment's balance through its
ledger credit. Allocations only record which charges the payment settles
(for display and per-charge tracking); an unallocated remainder is simply
general credit.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence
from sqlalchemy import func
from sqlalchemy.orm import Session

from .audit import AuditEvent, audit_log
from .balance import BalanceAccumulator
from .charges import Allocation, ExpenseCharge, OutstandingCharge, SubscriptionCharge
from .dates import parse_month
from .exceptions import InvalidStateError, NotFoundError, ValidationError
from .ledger_store import LedgerStore
from .models import (
    ApartmentExpense, EntryType, Expense, Payment, PaymentAllocation, ReferenceType,
)
from .money import AmountLike, from_cents, parse_amount, to_cents, to_decimal
from .operations import BaseRepository, lock_apartment
from .periods import PeriodRepository
from .session import after_commit


logger = logging.getLogger(__name__)


class PaymentAllocator:
    """Record payments and apply them to outstanding charges."""

    def __init__(self, session: Session):
        self.session = session
        self.store = LedgerStore(session)
        self.periods = PeriodRepository(session)
        self.balances = BalanceAccumulator(session)
        self.payments = BaseRepository(session, Payment, 'Payment')
        self.splits = BaseRepository(session, ApartmentExpense, 'Apartment expense')

    # ------------------------------------------------------------------
    # Allocation bookkeeping
    # ------------------------------------------------------------------

    def allocated_cents(self, payment_id: int) -> int:
        """Cents of a payment already allocated (reversed allocations excluded)."""
        total = (
            self.session.query(func.coalesce(func.sum(PaymentAllocation.amount), 0))
            .filter(PaymentAllocation.payment_id == payment_id, PaymentAllocation.is_reversed.is_(False))
            .scalar()
        )
        return to_cents(total)

    def _entry_allocated_cents(self, ledger_entry_id: int) -> int:
        total = (
            self.session.query(func.coalesce(func.sum(PaymentAllocation.amount), 0))
            .filter(
                PaymentAllocation.ledger_entry_id == ledger_entry_id,
                PaymentAllocation.is_reversed.is_(False),
            )
            .scalar()
        )
        return to_cents(total)

    def _allocate_expense(self, payment: Payment, charge: ExpenseCharge, cents: int) -> PaymentAllocation:
        split = self.splits.lock(charge.apartment_expense_id)
        if split.apartment_id != payment.apartment_id:
            raise ValidationError(
                f"Apartment expense {split.id} does not belong to apartment {payment.apartment_id}"
            )
        if split.is_canceled:
            raise InvalidStateError(f"Apartment expense {split.id} is canceled")
        if split.is_waived:
            raise InvalidStateError(f"Apartment expense {split.id} is waived")

        remaining = to_cents(split.amount) - to_cents(split.amount_paid)
        if cents > remaining:
            raise ValidationError(
                f"Allocation of {from_cents(cents)} exceeds remaining {from_cents(remaining)} "
                f"for apartment expense {split.id}"
            )

        split.amount_paid = from_cents(to_cents(split.amount_paid) + cents)
        return PaymentAllocation(payment_id=payment.id, apartment_expense_id=split.id, amount=from_cents(cents))

    def _allocate_subscription(
        self, payment: Payment, charge: SubscriptionCharge, cents: int
    ) -> PaymentAllocation:
        parse_month(charge.month)
        entry = self.store.find_subscription_entry(charge.apartment_id, charge.month)
        if entry is None:
            raise NotFoundError(
                f"No subscription charge for apartment {charge.apartment_id} in {charge.month}"
            )
        if entry.apartment_id != payment.apartment_id:
            raise ValidationError(
                f"Subscription charge {entry.id} does not belong to apartment {payment.apartment_id}"
            )

        remaining = to_cents(entry.amount) - self._entry_allocated_cents(entry.id)
        if cents > remaining:
            raise ValidationError(
                f"Allocation of {from_cents(cents)} exceeds remaining {from_cents(remaining)} "
                f"for subscription {charge.month}"
            )
        return PaymentAllocation(payment_id=payment.id, ledger_entry_id=entry.id, amount=from_cents(cents))

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def apply_payment(
        self,
        payment_id: int,
        apartment_id: int,
        allocations: Sequence[Allocation],
        user_id: Optional[str] = None,
    ) -> List[PaymentAllocation]:
        """
        Apply a payment to one or more charges, then refresh the balance.

        Args:
            payment_id: Payment being allocated
            apartment_id: Apartment the payment and every charge belong to
            allocations: Charges and amounts to settle
            user_id: Who triggered the allocation

        Returns:
            List[PaymentAllocation]: Created allocation rows

        Raises:
            NotFoundError: Payment or a target charge does not exist
            ValidationError: Over-allocation, foreign charge, bad amount
            InvalidStateError: Canceled payment, canceled/waived charge
        """
        payment = self.payments.get_or_raise(payment_id)
        if payment.apartment_id != apartment_id:
            raise ValidationError(f"Payment {payment_id} does not belong to apartment {apartment_id}")

        lock_apartment(self.session, apartment_id)
        payment = self.payments.lock(payment_id)
        if payment.is_canceled:
            raise InvalidStateError(f"Payment {payment_id} is canceled")

        requested = [(allocation.charge, to_cents(parse_amount(allocation.amount, 'allocation amount')))
                     for allocation in allocations]
        total_cents = self.allocated_cents(payment_id) + sum(cents for _, cents in requested)
        if total_cents > to_cents(payment.amount):
            raise ValidationError(
                f"Total allocations ({from_cents(total_cents)}) exceed payment amount ({payment.amount})"
            )

        rows = []
        for charge, cents in requested:
            if isinstance(charge, ExpenseCharge):
                row = self._allocate_expense(payment, charge, cents)
            elif isinstance(charge, SubscriptionCharge):
                row = self._allocate_subscription(payment, charge, cents)
            else:
                raise ValidationError(f"Unsupported charge type: {type(charge).__name__}")
            self.session.add(row)
            self.session.flush()
            rows.append(row)

        self.balances.refresh_cached_balance(apartment_id)

        if rows:
            after_commit(
                self.session, audit_log, AuditEvent.PAYMENT_ALLOCATED,
                f"payment={payment_id} allocations={len(rows)} total={from_cents(sum(c for _, c in requested))}",
                user_id,
            )
        return rows

    def record_payment(
        self,
        apartment_id: int,
        amount: AmountLike,
        month: str,
        user_id: Optional[str] = None,
        allocations: Sequence[Allocation] = (),
    ) -> Payment:
        """
        Record a payment: payment row, credit entry in the active period,
        optional allocations, balance refresh.

        Raises:
            NotFoundError: Apartment does not exist
            ValidationError: Bad amount or month, or invalid allocations
        """
        amount = parse_amount(amount)
        parse_month(month)
        lock_apartment(self.session, apartment_id)

        payment = self.payments.create(Payment(
            apartment_id=apartment_id,
            amount=amount,
            month=month,
            created_by=str(user_id) if user_id is not None else None,
        ))

        self.store.append(
            apartment_id=apartment_id,
            entry_type=EntryType.CREDIT,
            amount=amount,
            description=f"Payment of {amount}",
            reference_type=ReferenceType.PAYMENT,
            reference_id=payment.id,
            period_id=self.periods.get_active_period_id(apartment_id),
            user_id=user_id,
        )

        self.apply_payment(payment.id, apartment_id, allocations, user_id)

        logger.info(f"Recorded payment {payment.id} of {amount} for apartment {apartment_id} ({month})")
        after_commit(
            self.session, audit_log, AuditEvent.PAYMENT_RECORDED,
            f"payment={payment.id} apartment={apartment_id} amount={amount} month={month}", user_id,
        )
        return payment

    def amend_payment(
        self,
        payment_id: int,
        user_id: Optional[str] = None,
        amount: Optional[AmountLike] = None,
        month: Optional[str] = None,
    ) -> Payment:
        """
        Change a payment's amount and/or month label.

        An amount change reverses the old credit and records the new one,
        both in the period of the original payment entry.

        Raises:
            InvalidStateError: Canceled payment, or new amount below what is
                               already allocated
        """
        payment = self.payments.get_or_raise(payment_id)
        lock_apartment(self.session, payment.apartment_id)
        payment = self.payments.lock(payment_id)
        if payment.is_canceled:
            raise InvalidStateError(f"Cannot update canceled payment {payment_id}")

        if month is not None:
            parse_month(month)
            payment.month = month

        if amount is not None:
            new_amount = parse_amount(amount)
            old_amount = to_decimal(payment.amount)
            if new_amount != old_amount:
                allocated = self.allocated_cents(payment_id)
                if to_cents(new_amount) < allocated:
                    raise InvalidStateError(
                        f"Cannot reduce payment below total allocated amount ({from_cents(allocated)}). "
                        f"Cancel allocations first."
                    )

                original = self.store.find_entry(payment.apartment_id, ReferenceType.PAYMENT, payment.id)
                self.store.record_reversal(
                    original, f"Reversal of payment {payment.id} (amount update)", user_id, amount=old_amount
                )
                self.store.append(
                    apartment_id=payment.apartment_id,
                    entry_type=EntryType.CREDIT,
                    amount=new_amount,
                    description=f"Payment of {new_amount}",
                    reference_type=ReferenceType.PAYMENT,
                    reference_id=payment.id,
                    period_id=original.occupancy_period_id,
                    user_id=user_id,
                )
                payment.amount = new_amount
                after_commit(
                    self.session, audit_log, AuditEvent.PAYMENT_AMENDED,
                    f"payment={payment.id} amount {old_amount} -> {new_amount}", user_id,
                )

        self.session.flush()
        self.balances.refresh_cached_balance(payment.apartment_id)
        return payment

    def outstanding_charges(self, apartment_id: int) -> List[OutstandingCharge]:
        """Unsettled expense shares and subscription debits on an apartment's ledger."""
        outstanding = []

        rows = (
            self.session.query(ApartmentExpense, Expense.description)
            .join(Expense, ApartmentExpense.expense_id == Expense.id)
            .filter(
                ApartmentExpense.apartment_id == apartment_id,
                ApartmentExpense.is_canceled.is_(False),
                ApartmentExpense.is_waived.is_(False),
            )
            .order_by(Expense.expense_date, ApartmentExpense.id)
            .all()
        )
        for split, description in rows:
            if to_cents(split.amount) > to_cents(split.amount_paid):
                outstanding.append(OutstandingCharge(
                    charge=ExpenseCharge(split.id),
                    description=description or 'Building expense',
                    amount=to_decimal(split.amount),
                    paid=to_decimal(split.amount_paid),
                ))

        for entry in self.store.subscription_debits(apartment_id):
            paid = self._entry_allocated_cents(entry.id)
            if to_cents(entry.amount) > paid:
                outstanding.append(OutstandingCharge(
                    charge=SubscriptionCharge(entry.reference_id, entry.charge_month),
                    description=entry.description or f"Subscription {entry.charge_month}",
                    amount=to_decimal(entry.amount),
                    paid=from_cents(paid),
                ))

        return outstanding

    def total_outstanding(self, apartment_id: int) -> Decimal:
        return sum((charge.remaining for charge in self.outstanding_charges(apartment_id)), Decimal('0.00'))
