from decimal import Decimal

import pytest

from apartment_ledger.balance import BalanceAccumulator, derive_subscription_status
from apartment_ledger.exceptions import NotFoundError
from apartment_ledger.ledger_store import LedgerStore
from apartment_ledger.models import EntryType, Payment, ReferenceType, SubscriptionStatus

from conftest import make_apartment


@pytest.mark.parametrize('balance,has_payments,expected', [
    (Decimal('0.00'), False, SubscriptionStatus.PAID),
    (Decimal('10.00'), False, SubscriptionStatus.PAID),
    (Decimal('-0.01'), True, SubscriptionStatus.PARTIAL),
    (Decimal('-50.00'), False, SubscriptionStatus.DUE),
])
def test_derive_subscription_status(balance, has_payments, expected):
    assert derive_subscription_status(balance, has_payments) == expected


def test_refresh_writes_ledger_balance_and_is_idempotent(session, building):
    apartment = make_apartment(session, building, 1, subscription_amount='300.00')
    LedgerStore(session).append(apartment.id, EntryType.DEBIT, '300.00', 'Sub', ReferenceType.SUBSCRIPTION, apartment.id, None)
    accumulator = BalanceAccumulator(session)

    assert accumulator.refresh_cached_balance(apartment.id) == Decimal('-300.00')
    assert accumulator.refresh_cached_balance(apartment.id) == Decimal('-300.00')
    assert apartment.cached_balance == Decimal('-300.00')
    assert apartment.subscription_status == SubscriptionStatus.DUE.value


def test_status_is_partial_once_something_was_paid(session, building):
    apartment = make_apartment(session, building, 1, subscription_amount='300.00')
    store = LedgerStore(session)
    store.append(apartment.id, EntryType.DEBIT, '300.00', 'Sub', ReferenceType.SUBSCRIPTION, apartment.id, None)
    payment = Payment(apartment_id=apartment.id, amount=Decimal('100.00'), month='2026-01')
    session.add(payment)
    session.flush()
    store.append(apartment.id, EntryType.CREDIT, '100.00', 'Payment', ReferenceType.PAYMENT, payment.id, None)

    BalanceAccumulator(session).refresh_cached_balance(apartment.id)

    assert apartment.cached_balance == Decimal('-200.00')
    assert apartment.subscription_status == SubscriptionStatus.PARTIAL.value


def test_unbilled_apartment_stays_inactive(session, building):
    apartment = make_apartment(session, building, 1)
    LedgerStore(session).append(apartment.id, EntryType.DEBIT, '40.00', 'Charge', ReferenceType.EXPENSE, 1, None)

    BalanceAccumulator(session).refresh_cached_balance(apartment.id)

    assert apartment.cached_balance == Decimal('-40.00')
    assert apartment.subscription_status == SubscriptionStatus.INACTIVE.value


def test_verify_reports_and_refresh_repairs_drift(session, building):
    apartment = make_apartment(session, building, 1)
    LedgerStore(session).append(apartment.id, EntryType.CREDIT, '25.00', 'Payment', ReferenceType.PAYMENT, 1, None)
    apartment.cached_balance = Decimal('999.00')
    session.flush()
    accumulator = BalanceAccumulator(session)

    check = accumulator.verify(apartment.id)
    assert not check.is_consistent
    assert check.drift == Decimal('-974.00')

    accumulator.refresh_cached_balance(apartment.id)
    assert accumulator.verify(apartment.id).is_consistent


def test_refresh_many_returns_balances_in_id_order(session, building):
    first = make_apartment(session, building, 1)
    second = make_apartment(session, building, 2)
    LedgerStore(session).append(second.id, EntryType.DEBIT, '5.00', 'Charge', ReferenceType.EXPENSE, 1, None)

    assert BalanceAccumulator(session).refresh_many([second.id, first.id, second.id]) == [
        Decimal('0.00'), Decimal('-5.00'),
    ]


def test_refresh_unknown_apartment(session):
    with pytest.raises(NotFoundError):
        BalanceAccumulator(session).refresh_cached_balance(12345)
