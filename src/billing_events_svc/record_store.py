import logging
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing_events_svc.errors import PersistenceError


class UpsertResult(NamedTuple):
    record: Any
    created: bool
    applied: bool


class RecordStore:
    """
    Durable storage for the billing tables, addressed by each model's natural key.

    Every mutation is a single committed insert-or-update; nothing spans tables. Any
    SQLAlchemy failure is rolled back and surfaced as a retryable PersistenceError.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @staticmethod
    def _key_column(model):
        return getattr(model, model.__natural_key__)

    def _fail(self, model, action: str, error: Exception) -> PersistenceError:
        self.db.rollback()
        logging.error(f"Record store {action} on {model.__tablename__} failed: {error}", exc_info=True)
        return PersistenceError("Record store unavailable", {"table": model.__tablename__, "action": action})

    def find_by_key(self, model, key: str):
        try:
            return self.db.query(model).filter(self._key_column(model) == key).first()
        except SQLAlchemyError as e:
            raise self._fail(model, "find_by_key", e) from e

    def find_latest_by(self, model, **criteria):
        try:
            return (
                self.db.query(model)
                .filter_by(**criteria)
                .order_by(model.created_at.desc(), model.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail(model, "find_latest_by", e) from e

    def find_latest_by_owner(self, model, owner_id: str):
        return self.find_latest_by(model, owner_id=owner_id)

    def find_all(self, model, *criteria) -> list:
        try:
            return self.db.query(model).filter(*criteria).order_by(model.id).all()
        except SQLAlchemyError as e:
            raise self._fail(model, "find_all", e) from e

    def exists(self, model, *criteria) -> bool:
        try:
            return self.db.query(model.id).filter(*criteria).first() is not None
        except SQLAlchemyError as e:
            raise self._fail(model, "exists", e) from e

    def upsert_by_key(self, model, key: str, values: Dict[str, Any], only_if: Optional[Any] = None) -> UpsertResult:
        """
        Insert a record under ``key`` or update the existing one.

        :param model: ORM class declaring ``__natural_key__``.
        :param key: Natural key value.
        :param values: Column values to write (the key itself is implied).
        :param only_if: Optional SQL criterion; the update only happens when the stored row matches it.
        :return: UpsertResult with the stored record and whether this call inserted or changed it.
        :raises PersistenceError: if the store cannot be reached or the write fails.
        """
        key_column = self._key_column(model)
        try:
            existing = self.db.query(model).filter(key_column == key).first()
            if existing is None:
                record = model(**{model.__natural_key__: key}, **values)
                self.db.add(record)
                try:
                    self.db.commit()
                except IntegrityError:
                    # A concurrent writer inserted the same key first; update it instead.
                    self.db.rollback()
                else:
                    self.db.refresh(record)
                    return UpsertResult(record, created=True, applied=True)

            query = self.db.query(model).filter(key_column == key)
            if only_if is not None:
                query = query.filter(only_if)
            if values:
                rowcount = query.update(values, synchronize_session=False)
            else:
                rowcount = query.count()
            self.db.commit()
            self.db.expire_all()
            record = self.db.query(model).filter(key_column == key).first()
        except SQLAlchemyError as e:
            raise self._fail(model, "upsert_by_key", e) from e
        if record is None:
            raise PersistenceError("Record vanished during upsert", {"table": model.__tablename__, "key": key})
        return UpsertResult(record, created=False, applied=rowcount > 0)
