"""
Occupancy lifecycle: move-in and move-out of an apartment.

Move-in opens an occupancy period and catches the new tenant up on
subscriptions and building expenses. Move-out credits the unused part of
the month, vacates linked storage/parking units, and closes the periods.
"""

import logging
from datetime import date
from typing import Optional
from sqlalchemy.orm import Session

from .audit import AuditEvent, audit_log
from .balance import BalanceAccumulator
from .config import BackfillPolicy
from .dates import days_in_month, remaining_days_in_month
from .exceptions import InvalidStateError
from .ledger_store import LedgerStore
from .models import Apartment, ApartmentStatus, ApartmentType, EntryType, ReferenceType
from .money import from_cents, prorate_cents, to_cents
from .operations import BaseRepository, lock_apartment, lock_apartments
from .periods import PeriodRepository
from .recurring import RecurringCharges
from .session import after_commit
from .splitting import ExpenseSplitter


logger = logging.getLogger(__name__)


def termination_credit_cents(subscription_amount, on_date: date) -> int:
    """Subscription share for the days left in the month, `on_date` included."""
    amount_cents = to_cents(subscription_amount or 0)
    if amount_cents <= 0:
        return 0
    return prorate_cents(
        amount_cents,
        remaining_days_in_month(on_date),
        days_in_month(on_date.year, on_date.month),
    )


class OccupancyService:

    def __init__(self, session: Session, backfill_policy: BackfillPolicy = BackfillPolicy.PRORATED):
        self.session = session
        self.store = LedgerStore(session)
        self.periods = PeriodRepository(session)
        self.balances = BalanceAccumulator(session)
        self.splitter = ExpenseSplitter(session, backfill_policy)
        self.recurring = RecurringCharges(session, backfill_policy)

    def start_occupancy(
        self,
        apartment_id: int,
        start_date: date,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        tenant_name: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> Apartment:
        """
        Move a tenant in (vacant -> occupied).

        Opens a period, posts subscription charges from `start_date` up to
        `as_of` and, for regular apartments, backfills shares of building
        expenses already split in or after the occupancy month.

        Raises:
            NotFoundError: No such apartment
            InvalidStateError: Apartment is already occupied
        """
        apartment = lock_apartment(self.session, apartment_id)
        if apartment.is_occupied:
            raise InvalidStateError(f"Apartment {apartment.apartment_number} is already occupied")

        apartment.status = ApartmentStatus.OCCUPIED.value
        apartment.occupancy_start = start_date
        apartment.tenant_id = tenant_id
        apartment.tenant_name = tenant_name
        self.session.flush()

        self.periods.create_period(apartment_id, start_date, tenant_id, tenant_name)
        self.recurring.backfill_subscriptions(apartment_id, user_id, as_of)
        if apartment.apartment_type == ApartmentType.REGULAR.value:
            self.splitter.backfill_expenses_for_apartment(apartment_id, start_date, user_id)

        self.balances.refresh_cached_balance(apartment_id)

        logger.info(f"Apartment {apartment_id} occupied from {start_date}")
        after_commit(
            self.session, audit_log, AuditEvent.OCCUPANCY_STARTED,
            f"apartment={apartment_id} start={start_date.isoformat()}", user_id,
        )
        return apartment

    def _credit_unused_days(
        self,
        unit: Apartment,
        target_id: int,
        period_id: Optional[int],
        on_date: date,
        user_id: Optional[str],
    ) -> None:
        cents = termination_credit_cents(unit.subscription_amount, on_date)
        if cents <= 0:
            return
        self.store.append(
            apartment_id=target_id,
            entry_type=EntryType.CREDIT,
            amount=from_cents(cents),
            description=f"Occupancy termination credit ({unit.apartment_number})",
            reference_type=ReferenceType.OCCUPANCY_CREDIT,
            reference_id=unit.id,
            period_id=period_id,
            user_id=user_id,
        )
        logger.info(f"Credited {from_cents(cents)} to apartment {target_id} for unused days of {unit.id}")

    @staticmethod
    def _vacate(apartment: Apartment) -> None:
        apartment.status = ApartmentStatus.VACANT.value
        apartment.occupancy_start = None
        apartment.tenant_id = None
        apartment.tenant_name = None

    def terminate_occupancy(
        self,
        apartment_id: int,
        user_id: Optional[str] = None,
        on_date: Optional[date] = None,
    ) -> Apartment:
        """
        Move a tenant out (occupied -> vacant).

        The unused days of the current month are credited back, pro rata on
        the subscription amount. A storage/parking child credits its parent's
        ledger. For a regular apartment, occupied children are terminated
        first, crediting the parent, so their credits are part of the
        parent's closing balance snapshot.

        Raises:
            NotFoundError: No such apartment
            InvalidStateError: Apartment is not occupied
        """
        on_date = on_date or date.today()

        apartment = BaseRepository(self.session, Apartment, 'Apartment').get_or_raise(apartment_id)
        target_id = apartment.billing_apartment_id
        lock_apartments(self.session, [apartment_id, target_id])
        if not apartment.is_occupied:
            raise InvalidStateError(f"Apartment {apartment.apartment_number} is not occupied")

        target_period_id = self.periods.get_active_period_id(target_id)

        self._credit_unused_days(apartment, target_id, target_period_id, on_date, user_id)

        touched = {apartment_id, target_id}
        if apartment.apartment_type == ApartmentType.REGULAR.value:
            children = BaseRepository(self.session, Apartment, 'Apartment').filter_by(
                parent_apartment_id=apartment_id, status=ApartmentStatus.OCCUPIED.value,
            )
            lock_apartments(self.session, [child.id for child in children])
            for child in children:
                self._credit_unused_days(child, apartment_id, target_period_id, on_date, user_id)
                self.periods.close_period(child.id, on_date)
                self._vacate(child)
                touched.add(child.id)
                logger.info(f"Linked unit {child.id} vacated with parent {apartment_id}")

        self.periods.close_period(apartment_id, on_date)
        self._vacate(apartment)
        self.session.flush()

        self.balances.refresh_many(touched)

        logger.info(f"Apartment {apartment_id} vacated on {on_date}")
        after_commit(
            self.session, audit_log, AuditEvent.OCCUPANCY_TERMINATED,
            f"apartment={apartment_id} end={on_date.isoformat()} units={len(touched)}", user_id,
        )
        return apartment
