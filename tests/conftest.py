"""Shared fixtures: a fresh in-memory SQLite ledger per test, plus small factories."""

from datetime import date
from decimal import Decimal

import pytest

from apartment_ledger.config import DatabaseConfig, DatabaseType
from apartment_ledger.engine import create_engine_from_config, init_schema
from apartment_ledger.models import (
    Apartment, ApartmentStatus, ApartmentType, Building, SubscriptionStatus,
)
from apartment_ledger.periods import PeriodRepository
from apartment_ledger.session import SessionManager


@pytest.fixture
def engine():
    engine = create_engine_from_config(DatabaseConfig(db_type=DatabaseType.SQLITE, database=':memory:'))
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_manager(engine):
    return SessionManager(engine)


@pytest.fixture
def session(session_manager):
    session = session_manager.get_session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def building(session):
    return make_building(session)


def make_building(session, name='Rothschild 12'):
    building = Building(name=name, address=f"{name}, Tel Aviv")
    session.add(building)
    session.flush()
    return building


def make_apartment(
    session,
    building,
    number,
    occupied=True,
    occupancy_start=date(2026, 1, 1),
    subscription_amount='0.00',
    apartment_type=ApartmentType.REGULAR,
    parent=None,
):
    """Insert an apartment; occupied ones get an open occupancy period."""
    apartment = Apartment(
        building_id=building.id,
        apartment_number=str(number),
        apartment_type=apartment_type.value,
        parent_apartment_id=parent.id if parent is not None else None,
        status=ApartmentStatus.OCCUPIED.value if occupied else ApartmentStatus.VACANT.value,
        occupancy_start=occupancy_start if occupied else None,
        subscription_amount=Decimal(subscription_amount),
        subscription_status=SubscriptionStatus.INACTIVE.value,
        cached_balance=Decimal("0.00"),
    )
    session.add(apartment)
    session.flush()
    if occupied:
        PeriodRepository(session).create_period(apartment.id, occupancy_start, tenant_name=f"Tenant {number}")
    return apartment
