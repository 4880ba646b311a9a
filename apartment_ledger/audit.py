"""
Audit logging for ledger-mutating events.

Records who charged, paid, canceled, waived or wrote off what, on a
dedicated audit logger. Audit lines are queued with `after_commit` so they
describe only writes that actually committed, and a logging failure can
never roll back a ledger transaction.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional


# Configure audit logger
audit_logger = logging.getLogger('ledger.audit')


def setup_audit_logging(log_dir: Optional[str] = None, debug: bool = False) -> None:
    """
    Set up audit logging for the ledger engine.

    Creates a dedicated rotating log file for audit events when log_dir is
    given; otherwise audit lines go wherever the root logger sends them.

    Args:
        log_dir: Directory for audit.log (created if missing)
        debug: Also echo audit lines to stderr
    """
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        # Set up rotating file handler (10MB max, keep 5 backups)
        log_file = os.path.join(log_dir, 'audit.log')
        handler = RotatingFileHandler(log_file, maxBytes=10*1024*1024, backupCount=5)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        audit_logger.addHandler(handler)

    audit_logger.setLevel(logging.INFO)

    if debug:
        audit_logger.addHandler(logging.StreamHandler())


def audit_log(event_type, details, user=None, level='INFO'):
    """
    Log a ledger audit event.

    Args:
        event_type: Type of event (e.g., 'EXPENSE_SPLIT', 'PAYMENT_CANCELED')
        details: Description of what happened
        user: Id of the user who triggered the action
        level: Log level ('INFO', 'WARNING', 'ERROR')
    """
    message = f"{event_type} | User: {user or 'system'} | {details}"

    if level == 'WARNING':
        audit_logger.warning(message)
    elif level == 'ERROR':
        audit_logger.error(message)
    else:
        audit_logger.info(message)


# Common event types
class AuditEvent:
    """Audit event type constants."""
    # Charges
    EXPENSE_CREATED = 'EXPENSE_CREATED'
    EXPENSE_SPLIT = 'EXPENSE_SPLIT'
    EXPENSE_UPDATED = 'EXPENSE_UPDATED'
    EXPENSE_BACKFILLED = 'EXPENSE_BACKFILLED'
    RECURRING_GENERATED = 'RECURRING_GENERATED'
    SUBSCRIPTION_CHARGED = 'SUBSCRIPTION_CHARGED'

    # Payments
    PAYMENT_RECORDED = 'PAYMENT_RECORDED'
    PAYMENT_ALLOCATED = 'PAYMENT_ALLOCATED'
    PAYMENT_AMENDED = 'PAYMENT_AMENDED'

    # Reversals
    CHARGE_CANCELED = 'CHARGE_CANCELED'
    EXPENSE_CANCELED = 'EXPENSE_CANCELED'
    CHARGE_WAIVED = 'CHARGE_WAIVED'
    PAYMENT_CANCELED = 'PAYMENT_CANCELED'
    BALANCE_WRITTEN_OFF = 'BALANCE_WRITTEN_OFF'

    # Occupancy
    OCCUPANCY_STARTED = 'OCCUPANCY_STARTED'
    OCCUPANCY_TERMINATED = 'OCCUPANCY_TERMINATED'

    # Maintenance
    BALANCE_DRIFT = 'BALANCE_DRIFT'
