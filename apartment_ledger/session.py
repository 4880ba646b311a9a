"""
Session management for ledger transactions with context managers.
Provides transaction safety with automatic commit/rollback, plus
post-commit side effects that can never undo a committed ledger write.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Generator
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.engine import Engine


logger = logging.getLogger(__name__)

AFTER_COMMIT_KEY = 'ledger_after_commit'


def after_commit(session: Session, callback: Callable[..., Any], *args, **kwargs) -> None:
    """
    Queue a side effect (audit line, notification, ...) to run once the
    session's transaction has committed.

    Callbacks are dropped if the transaction rolls back. A failing callback
    is logged and never propagates.
    """
    session.info.setdefault(AFTER_COMMIT_KEY, []).append((callback, args, kwargs))


@event.listens_for(Session, 'after_commit')
def _run_after_commit(session: Session) -> None:
    callbacks = session.info.pop(AFTER_COMMIT_KEY, [])
    for callback, args, kwargs in callbacks:
        try:
            callback(*args, **kwargs)
        except Exception as e:
            logger.error(
                f"Post-commit side effect {getattr(callback, '__name__', callback)!r} failed: {e}",
                exc_info=True,
            )


@event.listens_for(Session, 'after_rollback')
def _discard_after_commit(session: Session) -> None:
    dropped = session.info.pop(AFTER_COMMIT_KEY, [])
    if dropped:
        logger.debug(f"Discarded {len(dropped)} post-commit side effect(s) after rollback")


class SessionManager:
    """
    Manages database sessions with automatic transaction handling.

    Features:
    - Context manager for session lifecycle (one logical ledger action)
    - Automatic commit on success
    - Automatic rollback on error, so no partial split is ever persisted
    - Proper resource cleanup
    """

    after_commit = staticmethod(after_commit)

    def __init__(self, engine: Engine):
        """
        Initialize session manager.

        Args:
            engine: SQLAlchemy engine
        """
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        logger.debug("Session manager initialized")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for ledger operations.

        Yields:
            Session: SQLAlchemy session

        Example:
            with session_manager.session_scope() as session:
                ExpenseSplitter(session).create_expense(
                    building_id=1, amount='100.00', expense_date=date(2026, 3, 1), user_id='u-1'
                )
                # Auto-commit on success, auto-rollback on exception

        Note:
            - Commits automatically on successful completion
            - Rolls back automatically on exception and re-raises it
            - Never retries: retrying a financial mutation risks duplicate charges
            - Closes session in all cases
        """
        session = self.Session()
        try:
            yield session
            session.commit()
            logger.debug("Session committed successfully")

        except Exception as e:
            session.rollback()
            session.info.pop(AFTER_COMMIT_KEY, None)
            logger.error(f"Session rolled back due to error: {e}")
            raise

        finally:
            session.close()
            logger.debug("Session closed")

    def get_session(self) -> Session:
        """
        Get a new session (manual transaction management required).

        Returns:
            Session: SQLAlchemy session

        Warning:
            Caller is responsible for commit/rollback/close.
            Prefer using session_scope() context manager instead.
        """
        return self.Session()
