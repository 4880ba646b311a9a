"""
Apartment ledger engine.

Per-apartment append-only ledger with exact expense splitting, payment
allocation, reversals and occupancy periods, on SQLAlchemy.
"""

__version__ = '1.0.0'

from .exceptions import LedgerError, NotFoundError, InvalidStateError, ValidationError
from .config import DatabaseType, DatabaseConfig, LedgerConfig, BackfillPolicy
from .engine import create_engine_from_config, init_schema
from .session import SessionManager, after_commit
from .models import (
    Base, Building, Apartment, Expense, ApartmentExpense, Payment, PaymentAllocation,
    OccupancyPeriod, LedgerEntry, ApartmentStatus, ApartmentType, SubscriptionStatus,
    EntryType, ReferenceType, PeriodStatus,
)
from .charges import Allocation, ExpenseCharge, SubscriptionCharge, OutstandingCharge
from .ledger_store import LedgerStore
from .balance import BalanceAccumulator, BalanceCheck
from .periods import PeriodRepository
from .splitting import ExpenseSplitter
from .recurring import RecurringCharges, generate_monthly_subscriptions, process_recurring_expenses
from .payments import PaymentAllocator
from .reversals import ReversalEngine
from .occupancy import OccupancyService

__all__ = [
    'LedgerError', 'NotFoundError', 'InvalidStateError', 'ValidationError',
    'DatabaseType', 'DatabaseConfig', 'LedgerConfig', 'BackfillPolicy',
    'create_engine_from_config', 'init_schema', 'SessionManager', 'after_commit',
    'Base', 'Building', 'Apartment', 'Expense', 'ApartmentExpense', 'Payment', 'PaymentAllocation',
    'OccupancyPeriod', 'LedgerEntry', 'ApartmentStatus', 'ApartmentType', 'SubscriptionStatus',
    'EntryType', 'ReferenceType', 'PeriodStatus',
    'Allocation', 'ExpenseCharge', 'SubscriptionCharge', 'OutstandingCharge',
    'LedgerStore', 'BalanceAccumulator', 'BalanceCheck', 'PeriodRepository',
    'ExpenseSplitter', 'RecurringCharges', 'generate_monthly_subscriptions', 'process_recurring_expenses',
    'PaymentAllocator', 'ReversalEngine', 'OccupancyService',
]
