"""
Repository helpers shared by the ledger components.
Lookups that raise typed errors, and row locks that serialize concurrent
transactions touching the same apartment.
"""

import logging
from typing import Generic, Iterable, List, Optional, Type, TypeVar, Any
from sqlalchemy.orm import Session

from .exceptions import NotFoundError
from .models import Apartment


logger = logging.getLogger(__name__)

# Generic type for models
T = TypeVar('T')


class BaseRepository(Generic[T]):
    """
    Generic repository for lookups and inserts.

    Features:
    - Type-safe operations
    - NotFoundError instead of None for required rows
    - SELECT ... FOR UPDATE row locks
    """

    def __init__(self, session: Session, model_class: Type[T], label: Optional[str] = None):
        """
        Initialize repository.

        Args:
            session: SQLAlchemy session
            model_class: SQLAlchemy model class
            label: Human-readable name used in error messages
        """
        self.session = session
        self.model_class = model_class
        self.label = label or model_class.__name__

    def get_by_id(self, id_value: Any) -> Optional[T]:
        """
        Get record by ID.

        Returns:
            Optional[T]: Model instance or None if not found
        """
        return self.session.get(self.model_class, id_value)

    def get_or_raise(self, id_value: Any) -> T:
        """
        Get record by ID.

        Raises:
            NotFoundError: If no such record exists
        """
        obj = self.get_by_id(id_value)
        if obj is None:
            raise NotFoundError(f"{self.label} {id_value} not found")
        return obj

    def lock(self, id_value: Any) -> T:
        """
        Load a record with a row lock held until the transaction ends.

        The freshly locked row overwrites any stale state in the identity map.

        Raises:
            NotFoundError: If no such record exists
        """
        obj = (
            self.session.query(self.model_class)
            .filter(self.model_class.id == id_value)
            .populate_existing()
            .with_for_update()
            .one_or_none()
        )
        if obj is None:
            raise NotFoundError(f"{self.label} {id_value} not found")
        return obj

    def filter_by(self, **kwargs) -> List[T]:
        """
        Filter records by column values, ordered by id.

        Args:
            **kwargs: Column name -> value pairs
        """
        return (
            self.session.query(self.model_class)
            .filter_by(**kwargs)
            .order_by(self.model_class.id)
            .all()
        )

    def create(self, obj: T) -> T:
        """
        Insert a new record and flush so it gets its id.

        Returns:
            T: Created model instance
        """
        self.session.add(obj)
        self.session.flush()
        logger.debug(f"Created {self.model_class.__name__} id={getattr(obj, 'id', None)}")
        return obj


def lock_apartment(session: Session, apartment_id: int) -> Apartment:
    """
    Take the row lock on an apartment before mutating anything that feeds
    its balance. Two transactions recomputing the same balance serialize here.
    """
    return BaseRepository(session, Apartment, 'Apartment').lock(apartment_id)


def lock_apartments(session: Session, apartment_ids: Iterable[int]) -> List[Apartment]:
    """Lock several apartments in ascending id order (consistent order avoids deadlocks)."""
    return [lock_apartment(session, apartment_id) for apartment_id in sorted(set(apartment_ids))]
