"""
SQLAlchemy ORM models for the apartment ledger.

The ledger (LedgerEntry) is append-only; every other component writes its
own rows (splits, payments, allocations) and then asks the balance
accumulator to recompute Apartment.cached_balance from the ledger.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any
from sqlalchemy import (
    Column, String, Integer, DateTime, Date, Boolean, Numeric, Text,
    ForeignKey, Index, CheckConstraint, event
)
from sqlalchemy.orm import declarative_base, relationship, object_session

from .exceptions import InvalidStateError


# Declarative base for all models
Base = declarative_base()

# Money columns: 12 digits, 2 decimal places
Money = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApartmentStatus(str, Enum):
    VACANT = 'vacant'
    OCCUPIED = 'occupied'


class SubscriptionStatus(str, Enum):
    INACTIVE = 'inactive'
    DUE = 'due'
    PARTIAL = 'partial'
    PAID = 'paid'


class ApartmentType(str, Enum):
    REGULAR = 'regular'
    STORAGE = 'storage'
    PARKING = 'parking'


class EntryType(str, Enum):
    DEBIT = 'debit'
    CREDIT = 'credit'

    @property
    def opposite(self) -> 'EntryType':
        return EntryType.CREDIT if self is EntryType.DEBIT else EntryType.DEBIT


class ReferenceType(str, Enum):
    EXPENSE = 'expense'
    SUBSCRIPTION = 'subscription'
    PAYMENT = 'payment'
    REVERSAL = 'reversal'
    WAIVER = 'waiver'
    WRITE_OFF = 'write_off'
    OCCUPANCY_CREDIT = 'occupancy_credit'


class PeriodStatus(str, Enum):
    OPEN = 'open'
    CLOSED = 'closed'


class TimestampMixin:
    """Mixin for automatic timestamp tracking"""
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class BaseModel:
    """Base model with common functionality"""

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model instance to dictionary.

        Dates become ISO strings and Decimal amounts become two-digit
        decimal strings, the form amounts take outside the engine.

        Returns:
            dict: Dictionary representation of the model
        """
        from .money import format_amount

        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(column.type, Numeric) and value is not None:
                value = format_amount(value)
            elif hasattr(value, 'isoformat'):
                value = value.isoformat()
            result[column.name] = value
        return result

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={getattr(self, 'id', None)}>"


# ============================================================================
# Domain Models
# ============================================================================


class Building(Base, BaseModel, TimestampMixin):
    """Building metadata; owned by the CRUD layer, read by the engine."""
    __tablename__ = 'buildings'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500))

    apartments = relationship('Apartment', back_populates='building', order_by='Apartment.id')


class Apartment(Base, BaseModel, TimestampMixin):
    """
    A billable unit in a building.

    cached_balance is signed: negative = debt, positive = credit. It is
    written only by the balance accumulator. Storage and parking units may
    link to a regular parent apartment whose ledger they bill into.
    """
    __tablename__ = 'apartments'

    id = Column(Integer, primary_key=True)
    building_id = Column(Integer, ForeignKey('buildings.id', ondelete='CASCADE'), nullable=False, index=True)
    apartment_number = Column(String(50), nullable=False)
    apartment_type = Column(String(20), nullable=False, default=ApartmentType.REGULAR.value)
    parent_apartment_id = Column(Integer, ForeignKey('apartments.id', ondelete='SET NULL'), nullable=True)

    status = Column(String(20), nullable=False, default=ApartmentStatus.VACANT.value)
    occupancy_start = Column(Date, nullable=True)
    tenant_id = Column(String(64), nullable=True)
    tenant_name = Column(String(255), nullable=True)

    subscription_amount = Column(Money, nullable=False, default=0)
    subscription_status = Column(String(20), nullable=False, default=SubscriptionStatus.INACTIVE.value)
    cached_balance = Column(Money, nullable=False, default=0)

    building = relationship('Building', back_populates='apartments')
    parent = relationship('Apartment', remote_side=[id], back_populates='children')
    children = relationship('Apartment', back_populates='parent', order_by='Apartment.id')

    __table_args__ = (
        Index('idx_apartments_building_status', 'building_id', 'status'),
    )

    @property
    def is_occupied(self) -> bool:
        return self.status == ApartmentStatus.OCCUPIED.value

    @property
    def is_child(self) -> bool:
        """Storage/parking unit billed through a parent apartment."""
        return self.apartment_type != ApartmentType.REGULAR.value and self.parent_apartment_id is not None

    @property
    def billing_apartment_id(self) -> int:
        return self.parent_apartment_id if self.is_child else self.id

    def __repr__(self) -> str:
        return f"<Apartment {self.apartment_number} (id={self.id}, {self.status})>"


class Expense(Base, BaseModel, TimestampMixin):
    """
    A building expense.

    Building-wide expenses are split among occupied regular apartments;
    apartment_id is set only for single-apartment expenses. Recurring
    parents are never split themselves; their monthly children are.
    """
    __tablename__ = 'expenses'

    id = Column(Integer, primary_key=True)
    building_id = Column(Integer, ForeignKey('buildings.id', ondelete='CASCADE'), nullable=False, index=True)
    apartment_id = Column(Integer, ForeignKey('apartments.id', ondelete='SET NULL'), nullable=True)
    description = Column(Text)
    amount = Column(Money, nullable=False)
    expense_date = Column(Date, nullable=False)
    category = Column(String(100))

    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_type = Column(String(20))
    recurring_start_date = Column(Date)
    recurring_end_date = Column(Date)
    parent_expense_id = Column(Integer, ForeignKey('expenses.id', ondelete='CASCADE'), nullable=True, index=True)

    splits = relationship('ApartmentExpense', back_populates='expense', order_by='ApartmentExpense.id')

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_expenses_amount_positive'),
        Index('idx_expenses_building_date', 'building_id', 'expense_date'),
    )


class ApartmentExpense(Base, BaseModel, TimestampMixin):
    """
    One apartment's share of an expense (a split line).

    amount_paid is display/tracking only; the balance comes from the ledger.
    State: active -> canceled, or active -> [partially paid] -> waived.
    """
    __tablename__ = 'apartment_expenses'

    id = Column(Integer, primary_key=True)
    apartment_id = Column(Integer, ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False, index=True)
    expense_id = Column(Integer, ForeignKey('expenses.id', ondelete='CASCADE'), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    amount_paid = Column(Money, nullable=False, default=0)
    is_canceled = Column(Boolean, nullable=False, default=False)
    is_waived = Column(Boolean, nullable=False, default=False)
    canceled_by = Column(String(64))
    canceled_at = Column(DateTime(timezone=True))

    expense = relationship('Expense', back_populates='splits')
    apartment = relationship('Apartment')

    __table_args__ = (
        Index('idx_apartment_expenses_apartment_expense', 'apartment_id', 'expense_id'),
    )

    @property
    def is_active(self) -> bool:
        return not self.is_canceled and not self.is_waived


class Payment(Base, BaseModel, TimestampMixin):
    """A payment received from an apartment. Counts in full toward its balance."""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True)
    apartment_id = Column(Integer, ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    month = Column(String(7), nullable=False)
    is_canceled = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(64))
    canceled_by = Column(String(64))
    canceled_at = Column(DateTime(timezone=True))

    allocations = relationship('PaymentAllocation', back_populates='payment', order_by='PaymentAllocation.id')

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
    )


class PaymentAllocation(Base, BaseModel, TimestampMixin):
    """
    Bookkeeping link between a payment and a charge it settles.

    Exactly one of apartment_expense_id / ledger_entry_id (a subscription
    debit) is set. Reversed allocations stay in place with is_reversed set.
    """
    __tablename__ = 'payment_allocations'

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey('payments.id', ondelete='CASCADE'), nullable=False, index=True)
    apartment_expense_id = Column(Integer, ForeignKey('apartment_expenses.id', ondelete='CASCADE'), nullable=True, index=True)
    ledger_entry_id = Column(Integer, ForeignKey('ledger_entries.id', ondelete='CASCADE'), nullable=True, index=True)
    amount = Column(Money, nullable=False)
    is_reversed = Column(Boolean, nullable=False, default=False)

    payment = relationship('Payment', back_populates='allocations')

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_allocations_amount_positive'),
        CheckConstraint(
            '(apartment_expense_id IS NULL) <> (ledger_entry_id IS NULL)',
            name='ck_payment_allocations_single_target',
        ),
    )


class OccupancyPeriod(Base, BaseModel, TimestampMixin):
    """
    A contiguous tenancy of one apartment.

    Every ledger entry written while the period is open carries its id, so
    a tenant's history stays readable after the next tenant moves in.
    """
    __tablename__ = 'occupancy_periods'

    id = Column(Integer, primary_key=True)
    apartment_id = Column(Integer, ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False, index=True)
    tenant_id = Column(String(64))
    tenant_name = Column(String(255))
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    status = Column(String(20), nullable=False, default=PeriodStatus.OPEN.value)
    closing_balance = Column(Money)

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN.value


class LedgerEntry(Base, BaseModel):
    """
    One immutable signed monetary movement for an apartment.

    amount is unsigned; entry_type carries the sign. reference_id points at
    the originating row for reference_type (apartment expense, payment,
    billed unit for subscriptions) and, for reversals, at the ledger entry
    being offset.
    """
    __tablename__ = 'ledger_entries'

    id = Column(Integer, primary_key=True)
    apartment_id = Column(Integer, ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False)
    entry_type = Column(String(10), nullable=False)
    amount = Column(Money, nullable=False)
    description = Column(Text)
    reference_type = Column(String(30), nullable=False)
    reference_id = Column(Integer, nullable=True)
    charge_month = Column(String(7), nullable=True)
    occupancy_period_id = Column(Integer, ForeignKey('occupancy_periods.id', ondelete='SET NULL'), nullable=True)
    created_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_ledger_entries_amount_positive'),
        CheckConstraint("entry_type IN ('debit', 'credit')", name='ck_ledger_entries_entry_type'),
        Index('idx_ledger_apartment_created', 'apartment_id', 'created_at'),
        Index('idx_ledger_reference', 'reference_type', 'reference_id'),
        Index('idx_ledger_period', 'occupancy_period_id'),
    )

    @property
    def is_credit(self) -> bool:
        return self.entry_type == EntryType.CREDIT.value

    def __repr__(self) -> str:
        return (f"<LedgerEntry id={self.id} apt={self.apartment_id} {self.entry_type} "
                f"{self.amount} {self.reference_type}:{self.reference_id}>")


@event.listens_for(LedgerEntry, 'before_update')
def _reject_ledger_update(mapper, connection, target):
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise InvalidStateError(f"Ledger entry {target.id} is append-only and cannot be modified")


@event.listens_for(LedgerEntry, 'before_delete')
def _reject_ledger_delete(mapper, connection, target):
    raise InvalidStateError(f"Ledger entry {target.id} is append-only and cannot be deleted")
