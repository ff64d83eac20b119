"""
Bulk operations on the two stored entity collections.

ChannelStore covers provider channels of one playlist, LineupStore the EPG
lineup of one EPG file. Every write method commits on its own, so a batch is
atomic and nothing spans batches.
"""
import logging
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import PersistenceError
from models import Channel, ChannelLineup
from reconciliation import CHANNEL_SPEC, LINEUP_SPEC, EntitySpec

logger = logging.getLogger(__name__)

# Keep IN (...) lists below SQLite's bound-parameter limit
MAX_KEYS_PER_QUERY = 500


def _chunks(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EntityStore:
    """Scoped bulk store for one entity model."""

    model = None
    spec: EntitySpec = None
    conflict_columns: tuple = ()

    def __init__(self, db: Session, **scope):
        self.db = db
        self.scope = scope

    @property
    def key_column(self):
        return getattr(self.model, self.spec.key_field)

    def _where_scope(self, stmt):
        for name, value in self.scope.items():
            stmt = stmt.where(getattr(self.model, name) == value)
        return stmt

    def _commit(self, action: str, count: int) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to {action} {count} {self.model.__tablename__} rows: {e}") from e

    def _execute(self, action: str, count: int, stmt, params=None):
        try:
            if params is None:
                result = self.db.execute(stmt)
            else:
                result = self.db.execute(stmt, params)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to {action} {count} {self.model.__tablename__} rows: {e}") from e
        self._commit(action, count)
        return result

    def count(self) -> int:
        stmt = self._where_scope(select(func.count()).select_from(self.model))
        return self.db.execute(stmt).scalar_one()

    def list_keys_with_state(self) -> dict[str, dict]:
        """Map every stored key to its user-owned fields."""
        columns = [getattr(self.model, name) for name in self.spec.user_fields]
        stmt = self._where_scope(select(self.key_column, *columns))
        state = {}
        for row in self.db.execute(stmt):
            state[row[0]] = dict(zip(self.spec.user_fields, row[1:]))
        return state

    def find_many(self, keys: Iterable[str]) -> list:
        keys = list(keys)
        found = []
        for chunk in _chunks(keys, MAX_KEYS_PER_QUERY):
            stmt = self._where_scope(select(self.model)).where(self.key_column.in_(chunk))
            found.extend(self.db.execute(stmt).scalars().all())
        return found

    def create_many(self, records: Sequence[dict]) -> int:
        if not records:
            return 0
        rows = [{**self.scope, **record} for record in records]
        self._execute("insert", len(rows), sqlite_insert(self.model.__table__), rows)
        return len(rows)

    def update_many(self, keys: Iterable[str], fields: dict) -> int:
        """Set ``fields`` on every row whose key is in ``keys``."""
        keys = list(keys)
        updated = 0
        for chunk in _chunks(keys, MAX_KEYS_PER_QUERY):
            stmt = self._where_scope(update(self.model)).where(self.key_column.in_(chunk)).values(**fields)
            updated += self._execute("update", len(chunk), stmt).rowcount
        return updated

    def update_each(self, values_by_key: dict[str, dict]) -> int:
        """Apply per-key field values in one transaction."""
        if not values_by_key:
            return 0
        updated = 0
        try:
            for key, fields in values_by_key.items():
                stmt = self._where_scope(update(self.model)).where(self.key_column == key).values(**fields)
                updated += self.db.execute(stmt).rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to update {len(values_by_key)} {self.model.__tablename__} rows: {e}") from e
        self._commit("update", len(values_by_key))
        return updated

    def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        deleted = 0
        for chunk in _chunks(keys, MAX_KEYS_PER_QUERY):
            stmt = self._where_scope(delete(self.model)).where(self.key_column.in_(chunk))
            deleted += self._execute("delete", len(chunk), stmt).rowcount
        return deleted

    def delete_all(self) -> int:
        return self._execute("delete", 0, self._where_scope(delete(self.model))).rowcount

    def upsert_many(self, rows: Sequence[dict]) -> int:
        """Insert or update rows by key.

        Source-owned columns take the new value. User-owned columns take the
        new value only when it is not None, otherwise the stored one is kept.
        """
        if not rows:
            return 0
        table = self.model.__table__
        stmt = sqlite_insert(table)
        set_ = {name: getattr(stmt.excluded, name) for name in self.spec.source_fields}
        for name in self.spec.user_fields:
            set_[name] = func.coalesce(getattr(stmt.excluded, name), table.c[name])
        stmt = stmt.on_conflict_do_update(index_elements=list(self.conflict_columns), set_=set_)

        params = [{**self.scope, **row} for row in rows]
        self._execute("upsert", len(params), stmt, params)
        return len(params)


class ChannelStore(EntityStore):
    """Provider channels of one playlist."""

    model = Channel
    spec = CHANNEL_SPEC
    conflict_columns = ("playlist_id", "stream_id")

    def __init__(self, db: Session, playlist_id: int):
        super().__init__(db, playlist_id=playlist_id)


class LineupStore(EntityStore):
    """EPG lineup of one EPG file."""

    model = ChannelLineup
    spec = LINEUP_SPEC
    conflict_columns = ("epg_file_id", "lineup_key")

    def __init__(self, db: Session, owner_id: int, epg_file_id: int):
        super().__init__(db, owner_id=owner_id, epg_file_id=epg_file_id)
