"""
Ledger entry store: the append-only log of signed movements per apartment.

Nothing here updates or deletes a ledger row. Corrections are new
offsetting entries, attributed to the occupancy period of the entry they
correct.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Union
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from .exceptions import NotFoundError, ValidationError
from .models import EntryType, LedgerEntry, ReferenceType
from .money import AmountLike, parse_amount, to_decimal


logger = logging.getLogger(__name__)


def _value(enum_or_str: Union[EntryType, ReferenceType, str]) -> str:
    return enum_or_str.value if hasattr(enum_or_str, 'value') else str(enum_or_str)


class LedgerStore:
    """Append and query ledger entries within one transaction."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        apartment_id: int,
        entry_type: Union[EntryType, str],
        amount: AmountLike,
        description: Optional[str],
        reference_type: Union[ReferenceType, str],
        reference_id: Optional[int],
        period_id: Optional[int],
        user_id: Optional[str] = None,
        charge_month: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Insert one immutable ledger row.

        Args:
            apartment_id: Apartment whose ledger receives the entry
            entry_type: debit or credit
            amount: Unsigned amount, must be > 0
            description: Human-readable description
            reference_type: Kind of originating record
            reference_id: Id of the originating record
            period_id: Occupancy period the entry belongs to (None if vacant)
            user_id: Who triggered the movement (metadata only)
            charge_month: `YYYY-MM` for subscription charges

        Returns:
            LedgerEntry: The flushed entry

        Raises:
            ValidationError: If amount is not positive or the type is unknown
        """
        entry_type = _value(entry_type)
        if entry_type not in (EntryType.DEBIT.value, EntryType.CREDIT.value):
            raise ValidationError(f"Unknown ledger entry type: {entry_type!r}")

        entry = LedgerEntry(
            apartment_id=apartment_id,
            entry_type=entry_type,
            amount=parse_amount(amount),
            description=description,
            reference_type=_value(reference_type),
            reference_id=reference_id,
            charge_month=charge_month,
            occupancy_period_id=period_id,
            created_by=str(user_id) if user_id is not None else None,
        )
        self.session.add(entry)
        self.session.flush()

        logger.debug(
            f"Ledger {entry.entry_type} {entry.amount} on apartment {apartment_id} "
            f"({entry.reference_type}:{reference_id}, period={period_id})"
        )
        return entry

    def find_entry(
        self,
        apartment_id: int,
        reference_type: Union[ReferenceType, str],
        reference_id: int,
    ) -> LedgerEntry:
        """
        Find the original entry written for a reference.

        Raises:
            NotFoundError: If no matching entry exists (nothing to reverse)
        """
        entry = (
            self.session.query(LedgerEntry)
            .filter(
                LedgerEntry.apartment_id == apartment_id,
                LedgerEntry.reference_type == _value(reference_type),
                LedgerEntry.reference_id == reference_id,
            )
            .order_by(LedgerEntry.id)
            .first()
        )
        if entry is None:
            raise NotFoundError(
                f"No {_value(reference_type)} ledger entry for reference {reference_id} "
                f"on apartment {apartment_id}"
            )
        return entry

    def find_entry_period_id(
        self,
        apartment_id: int,
        reference_type: Union[ReferenceType, str],
        reference_id: int,
    ) -> Optional[int]:
        """
        Period tagged on the original entry for a reference.

        Reversals must land in this period rather than the apartment's
        current one, or a closed tenancy's history changes after move-out.

        Raises:
            NotFoundError: If no matching entry exists
        """
        return self.find_entry(apartment_id, reference_type, reference_id).occupancy_period_id

    def record_reversal(
        self,
        original: LedgerEntry,
        description: str,
        user_id: Optional[str],
        amount: Optional[AmountLike] = None,
    ) -> LedgerEntry:
        """
        Append the opposite of `original` in the original's period.

        Args:
            original: Entry being offset
            description: Reversal description
            user_id: Who triggered the reversal
            amount: Amount to reverse (defaults to the original amount)
        """
        return self.append(
            apartment_id=original.apartment_id,
            entry_type=EntryType(original.entry_type).opposite,
            amount=amount if amount is not None else original.amount,
            description=description,
            reference_type=ReferenceType.REVERSAL,
            reference_id=original.id,
            period_id=original.occupancy_period_id,
            user_id=user_id,
        )

    def get_balance(self, apartment_id: int, period_id: Optional[int] = None) -> Decimal:
        """
        Sum(credits) - Sum(debits) for an apartment, optionally for one period.
        Positive = credit, negative = debt.
        """
        signed = case(
            (LedgerEntry.entry_type == EntryType.CREDIT.value, LedgerEntry.amount),
            else_=-LedgerEntry.amount,
        )
        query = self.session.query(func.coalesce(func.sum(signed), 0)).filter(
            LedgerEntry.apartment_id == apartment_id
        )
        if period_id is not None:
            query = query.filter(LedgerEntry.occupancy_period_id == period_id)
        return to_decimal(query.scalar())

    def totals(self, apartment_id: int) -> dict:
        """Credit and debit totals for reconciliation reports."""
        rows = (
            self.session.query(LedgerEntry.entry_type, func.sum(LedgerEntry.amount))
            .filter(LedgerEntry.apartment_id == apartment_id)
            .group_by(LedgerEntry.entry_type)
            .all()
        )
        totals = {EntryType.CREDIT.value: to_decimal(0), EntryType.DEBIT.value: to_decimal(0)}
        for entry_type, total in rows:
            totals[entry_type] = to_decimal(total)
        return totals

    def entries(
        self,
        apartment_id: int,
        period_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[LedgerEntry]:
        """Ledger entries for an apartment, newest first."""
        query = self.session.query(LedgerEntry).filter(LedgerEntry.apartment_id == apartment_id)
        if period_id is not None:
            query = query.filter(LedgerEntry.occupancy_period_id == period_id)
        return (
            query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def find_subscription_entry(self, billed_apartment_id: int, month: str) -> Optional[LedgerEntry]:
        """
        Subscription debit for a billed unit and month.

        Storage/parking units bill into the parent's ledger, so the lookup is
        keyed on the billed unit (reference_id), not the ledger owner.
        """
        return (
            self.session.query(LedgerEntry)
            .filter(
                LedgerEntry.reference_type == ReferenceType.SUBSCRIPTION.value,
                LedgerEntry.entry_type == EntryType.DEBIT.value,
                LedgerEntry.reference_id == billed_apartment_id,
                LedgerEntry.charge_month == month,
            )
            .order_by(LedgerEntry.id)
            .first()
        )

    def has_subscription_for_month(self, billed_apartment_id: int, month: str) -> bool:
        return self.find_subscription_entry(billed_apartment_id, month) is not None

    def subscription_debits(self, apartment_id: int) -> List[LedgerEntry]:
        return (
            self.session.query(LedgerEntry)
            .filter(
                LedgerEntry.apartment_id == apartment_id,
                LedgerEntry.reference_type == ReferenceType.SUBSCRIPTION.value,
                LedgerEntry.entry_type == EntryType.DEBIT.value,
            )
            .order_by(LedgerEntry.charge_month, LedgerEntry.id)
            .all()
        )
