"""
Balance accumulator.

The only writer of Apartment.cached_balance. The cached value is always a
full recomputation from the ledger, never an incremental adjustment, so a
missed update path cannot leave it drifting. Safe to call redundantly.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List
from sqlalchemy import func
from sqlalchemy.orm import Session

from .ledger_store import LedgerStore
from .models import Apartment, Payment, SubscriptionStatus
from .money import to_decimal
from .operations import BaseRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceCheck:
    """Cached vs. recomputed balance of one apartment."""
    apartment_id: int
    cached: Decimal
    computed: Decimal

    @property
    def drift(self) -> Decimal:
        return self.computed - self.cached

    @property
    def is_consistent(self) -> bool:
        return self.drift == 0


def derive_subscription_status(balance: Decimal, has_payments: bool) -> SubscriptionStatus:
    """
    paid    - balance >= 0
    partial - in debt, but something was paid
    due     - in debt, nothing paid
    """
    if balance >= 0:
        return SubscriptionStatus.PAID
    if has_payments:
        return SubscriptionStatus.PARTIAL
    return SubscriptionStatus.DUE


class BalanceAccumulator:
    """Recompute and store cached balances from the ledger."""

    def __init__(self, session: Session):
        self.session = session
        self.store = LedgerStore(session)
        self.apartments = BaseRepository(session, Apartment, 'Apartment')

    def _has_payments(self, apartment_id: int) -> bool:
        count = (
            self.session.query(func.count(Payment.id))
            .filter(Payment.apartment_id == apartment_id, Payment.is_canceled.is_(False))
            .scalar()
        )
        return bool(count)

    def refresh_cached_balance(self, apartment_id: int) -> Decimal:
        """
        Recompute the balance from every ledger entry of the apartment and
        write it back together with the derived subscription status.

        An apartment that is `inactive` with no subscription amount keeps the
        `inactive` status whatever its balance, including expense debt. The
        status tracks subscription billing; the debt itself is visible in
        cached_balance. Every other apartment gets paid/partial/due from the
        balance.

        Must run last in any transaction that appended ledger rows for the
        apartment.

        Returns:
            Decimal: The recomputed balance

        Raises:
            NotFoundError: If the apartment does not exist
        """
        apartment = self.apartments.get_or_raise(apartment_id)
        balance = self.store.get_balance(apartment_id)

        apartment.cached_balance = balance
        # Units that were never billed a subscription stay inactive
        billed = (apartment.subscription_status != SubscriptionStatus.INACTIVE.value
                  or to_decimal(apartment.subscription_amount) > 0)
        if billed:
            apartment.subscription_status = derive_subscription_status(
                balance, self._has_payments(apartment_id)
            ).value

        self.session.flush()
        logger.debug(
            f"Apartment {apartment_id} balance refreshed: {balance} ({apartment.subscription_status})"
        )
        return balance

    def refresh_many(self, apartment_ids: Iterable[int]) -> List[Decimal]:
        return [self.refresh_cached_balance(apartment_id) for apartment_id in sorted(set(apartment_ids))]

    def verify(self, apartment_id: int) -> BalanceCheck:
        """Compare the cached balance with a fresh recomputation, without writing."""
        apartment = self.apartments.get_or_raise(apartment_id)
        return BalanceCheck(
            apartment_id=apartment_id,
            cached=to_decimal(apartment.cached_balance),
            computed=self.store.get_balance(apartment_id),
        )
