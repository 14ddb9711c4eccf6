"""
Ledger Store - transactional record operations keyed by processor identifiers

Every reconciler goes through this class so that each entity write is a
single read-modify-write on a locked row.
"""
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")
Patch = Union[Dict[str, Any], Callable[[Any], None]]


class LedgerStore:
    """
    Thin record store over a SQLAlchemy session

    Does not commit: the caller owns the transaction so that ledger writes
    and the idempotency record land together.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_unique(self, model: Type[ModelT], for_update: bool = False, **key) -> Optional[ModelT]:
        """Find one row by its unique key, optionally locking it"""
        query = self.db.query(model).filter_by(**key)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def upsert(
        self,
        model: Type[ModelT],
        key: Dict[str, Any],
        create: Dict[str, Any],
        update: Optional[Patch] = None,
    ) -> Tuple[ModelT, bool]:
        """
        Insert or update one row by unique key

        Args:
            model: Mapped class
            key: Unique key columns
            create: Column values for a new row
            update: Patch dict, or callable mutating the locked existing row

        Returns:
            (row, created)
        """
        row = self.find_unique(model, for_update=True, **key)

        if row is None:
            row = model(**key, **create)
            try:
                with self.db.begin_nested():
                    self.db.add(row)
                    self.db.flush()
                return row, True
            except IntegrityError:
                # A concurrent writer inserted the same key first
                logger.info(f"Concurrent insert detected for {model.__name__} {key}, retrying as update")
                row = self.find_unique(model, for_update=True, **key)
                if row is None:
                    raise

        if update is not None:
            self._apply(row, update)
            self.db.flush()
        return row, False

    def update(self, model: Type[ModelT], key: Dict[str, Any], patch: Patch) -> Optional[ModelT]:
        """Patch an existing row; returns None when the key is unknown"""
        row = self.find_unique(model, for_update=True, **key)
        if row is None:
            return None

        self._apply(row, patch)
        self.db.flush()
        return row

    def count(self, model: Type[ModelT], **filters) -> int:
        """Count rows matching equality filters"""
        return self.db.query(model).filter_by(**filters).count()

    @staticmethod
    def _apply(row: Any, patch: Patch) -> None:
        if callable(patch):
            patch(row)
            return
        for column, value in patch.items():
            setattr(row, column, value)
