"""
Charge references used by payment allocation.

A charge is either an apartment's share of an expense or one month's
subscription debit of a billed unit. Callers pick the variant explicitly
instead of encoding the kind into an id string.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from .money import AmountLike


@dataclass(frozen=True)
class ExpenseCharge:
    """An ApartmentExpense split line."""
    apartment_expense_id: int


@dataclass(frozen=True)
class SubscriptionCharge:
    """The subscription debit of `apartment_id` for `month` (YYYY-MM)."""
    apartment_id: int
    month: str


Charge = Union[ExpenseCharge, SubscriptionCharge]


@dataclass(frozen=True)
class Allocation:
    """Part of a payment applied to one charge."""
    charge: Charge
    amount: AmountLike


@dataclass(frozen=True)
class OutstandingCharge:
    """An unpaid (or partly paid) charge, for allocation screens."""
    charge: Charge
    description: str
    amount: Decimal
    paid: Decimal

    @property
    def remaining(self) -> Decimal:
        return self.amount - self.paid
