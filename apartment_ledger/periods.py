"""Occupancy period lookups and lifecycle (open on move-in, close on move-out)."""

import logging
from datetime import date
from typing import List, Optional
from sqlalchemy.orm import Session

from .exceptions import InvalidStateError
from .ledger_store import LedgerStore
from .models import OccupancyPeriod, PeriodStatus


logger = logging.getLogger(__name__)


class PeriodRepository:

    def __init__(self, session: Session):
        self.session = session

    def get_active_period(self, apartment_id: int) -> Optional[OccupancyPeriod]:
        return (
            self.session.query(OccupancyPeriod)
            .filter(
                OccupancyPeriod.apartment_id == apartment_id,
                OccupancyPeriod.status == PeriodStatus.OPEN.value,
            )
            .order_by(OccupancyPeriod.id.desc())
            .first()
        )

    def get_active_period_id(self, apartment_id: int) -> Optional[int]:
        """Id of the open period used to tag new ledger entries, or None when vacant."""
        period = self.get_active_period(apartment_id)
        return period.id if period else None

    def create_period(
        self,
        apartment_id: int,
        start_date: date,
        tenant_id: Optional[str] = None,
        tenant_name: Optional[str] = None,
    ) -> OccupancyPeriod:
        """
        Open a new occupancy period.

        Raises:
            InvalidStateError: If the apartment already has an open period
        """
        if self.get_active_period(apartment_id) is not None:
            raise InvalidStateError(f"Apartment {apartment_id} already has an open occupancy period")

        period = OccupancyPeriod(
            apartment_id=apartment_id,
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            start_date=start_date,
            status=PeriodStatus.OPEN.value,
        )
        self.session.add(period)
        self.session.flush()
        logger.info(f"Opened occupancy period {period.id} for apartment {apartment_id} from {start_date}")
        return period

    def close_period(self, apartment_id: int, end_date: date) -> Optional[OccupancyPeriod]:
        """
        Close the open period, snapshotting its period-scoped balance.

        Returns:
            The closed period, or None if the apartment had no open period
        """
        period = self.get_active_period(apartment_id)
        if period is None:
            return None

        period.closing_balance = LedgerStore(self.session).get_balance(apartment_id, period.id)
        period.end_date = end_date
        period.status = PeriodStatus.CLOSED.value
        self.session.flush()

        logger.info(
            f"Closed occupancy period {period.id} for apartment {apartment_id} "
            f"(closing balance {period.closing_balance})"
        )
        return period

    def periods_for(self, apartment_id: int) -> List[OccupancyPeriod]:
        """All periods of an apartment, newest start first."""
        return (
            self.session.query(OccupancyPeriod)
            .filter(OccupancyPeriod.apartment_id == apartment_id)
            .order_by(OccupancyPeriod.start_date.desc(), OccupancyPeriod.id.desc())
            .all()
        )
