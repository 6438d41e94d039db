"""
Thin access layer over a target relational database.

Only what the ingestion pipeline needs lives here: column descriptions, a
generic query helper, the disjunctive identity lookup, and the two
conflict-aware bulk insert flavours (ignore / upsert) per dialect.

Statements are built against untyped ``table()``/``column()`` clauses so the
DBAPI receives the normalizer's canonical strings verbatim and the database
performs its own coercion.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import column, func, inspect, literal_column, or_, select, table, text, tuple_
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.expression import TableClause

from bulkload.db.session import get_engine

logger = logging.getLogger(__name__)

CONFLICT_IGNORE = "ignore"
CONFLICT_UPSERT = "upsert"

KEY_PRIMARY = "primary"
KEY_NONE = "none"


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: str
    nullable: bool = True
    key: str = KEY_NONE

    @property
    def is_primary(self) -> bool:
        return self.key == KEY_PRIMARY


class RelationalStore:
    """Wraps one SQLAlchemy engine (one server + database)."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def _clause(self, table_name: str, columns: Iterable[str]) -> TableClause:
        return table(table_name, *[column(name) for name in columns])

    def describe_columns(self, table_name: str) -> List[ColumnDescriptor]:
        """
        Read the live structure of ``table_name``.

        Raises:
            sqlalchemy.exc.NoSuchTableError: If the table does not exist
        """
        inspector = inspect(self.engine)
        raw_columns = inspector.get_columns(table_name)
        primary = set(inspector.get_pk_constraint(table_name).get("constrained_columns") or [])

        descriptors = []
        for raw in raw_columns:
            try:
                type_name = raw["type"].compile(dialect=self.engine.dialect)
            except Exception:
                type_name = type(raw["type"]).__name__
            descriptors.append(
                ColumnDescriptor(
                    name=raw["name"],
                    type=str(type_name),
                    nullable=bool(raw.get("nullable", True)),
                    key=KEY_PRIMARY if raw["name"] in primary else KEY_NONE,
                )
            )
        return descriptors

    def query(self, statement: Any, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a read query (SQL text or a Core selectable) and return rows as dicts."""
        if isinstance(statement, str):
            statement = text(statement)
        with self.engine.connect() as conn:
            result = conn.execute(statement, dict(params or {}))
            return [dict(row) for row in result.mappings()]

    def fetch_existing(
        self,
        table_name: str,
        identity_fields: Sequence[str],
        values_by_field: Mapping[str, Sequence[Any]],
    ) -> List[Dict[str, Any]]:
        """
        Return identity-field values of stored rows whose values intersect the batch.

        Builds ``SELECT f1, f2 FROM t WHERE f1 IN (...) OR f2 IN (...)``.
        """
        source = self._clause(table_name, identity_fields)
        conditions = [
            source.c[field].in_(list(values))
            for field, values in values_by_field.items()
            if values
        ]
        if not conditions:
            return []
        statement = select(*[source.c[field] for field in identity_fields]).where(or_(*conditions))
        return self.query(statement)

    def execute_batch_insert(
        self,
        table_name: str,
        columns: Sequence[str],
        rows: Sequence[Mapping[str, Any]],
        conflict_policy: str,
        conflict_fields: Sequence[str] = (),
    ) -> int:
        """
        Write ``rows`` in one transaction and return the affected-row count.

        ``CONFLICT_IGNORE`` returns the number of rows actually inserted.
        ``CONFLICT_UPSERT`` returns the MySQL-convention count where an
        inserted row contributes 1 and an updated row contributes 2; other
        dialects are translated into that convention.
        """
        if not rows:
            return 0
        target = self._clause(table_name, columns)
        payload = [{name: row.get(name) for name in columns} for row in rows]

        with self.engine.begin() as conn:
            if conflict_policy == CONFLICT_UPSERT:
                update_columns = [name for name in columns if name not in set(conflict_fields)]
                return self._upsert(conn, target, payload, list(conflict_fields), update_columns)
            if conflict_policy == CONFLICT_IGNORE:
                return self._insert_ignore(conn, target, payload)
        raise ValueError(f"Unknown conflict policy '{conflict_policy}'")

    def _insert_ignore(self, conn: Connection, target: TableClause, payload: List[Dict[str, Any]]) -> int:
        dialect = self.dialect_name
        if dialect in ("mysql", "mariadb"):
            statement = mysql.insert(target).prefix_with("IGNORE")
            return conn.execute(statement, payload).rowcount
        if dialect == "postgresql":
            statement = (
                postgresql.insert(target)
                .on_conflict_do_nothing()
                .returning(literal_column("1").label("inserted"))
            )
            return len(conn.execute(statement, payload).all())
        if dialect == "sqlite":
            statement = sqlite.insert(target).on_conflict_do_nothing()
            return conn.execute(statement, payload).rowcount
        raise NotImplementedError(f"Bulk insert is not supported for dialect '{dialect}'")

    def _upsert(
        self,
        conn: Connection,
        target: TableClause,
        payload: List[Dict[str, Any]],
        conflict_fields: List[str],
        update_columns: List[str],
    ) -> int:
        dialect = self.dialect_name
        if dialect in ("mysql", "mariadb"):
            # rowcount follows CLIENT_FOUND_ROWS (unchanged matches report 1), so count new keys up front
            inserted = self._count_new_rows(conn, target.name, payload, conflict_fields)
            statement = mysql.insert(target)
            statement = statement.on_duplicate_key_update(
                {name: statement.inserted[name] for name in update_columns}
            )
            conn.execute(statement, payload)
            return inserted + 2 * (len(payload) - inserted)

        if dialect == "postgresql":
            statement = postgresql.insert(target)
            statement = statement.on_conflict_do_update(
                index_elements=conflict_fields,
                set_={name: statement.excluded[name] for name in update_columns},
            ).returning(literal_column("(xmax = 0)").label("inserted"))
            returned = conn.execute(statement, payload).all()
            inserted = sum(1 for row in returned if row.inserted)
            updated = len(returned) - inserted
            return inserted + 2 * updated

        if dialect == "sqlite":
            counter = select(func.count()).select_from(table(target.name))
            before = conn.execute(counter).scalar_one()
            statement = sqlite.insert(target)
            statement = statement.on_conflict_do_update(
                index_elements=conflict_fields,
                set_={name: statement.excluded[name] for name in update_columns},
            )
            touched = conn.execute(statement, payload).rowcount
            inserted = conn.execute(counter).scalar_one() - before
            return inserted + 2 * (touched - inserted)

        raise NotImplementedError(f"Upsert is not supported for dialect '{dialect}'")

    def _count_new_rows(
        self,
        conn: Connection,
        table_name: str,
        payload: List[Dict[str, Any]],
        conflict_fields: List[str],
    ) -> int:
        """
        Number of rows in ``payload`` an upsert will insert rather than update.

        Rows with a null key part never conflict. Repeats of a key inside the
        payload count once; the later occurrences update the first.
        """
        distinct_keys: Dict[tuple, None] = {}
        null_keyed = 0
        for row in payload:
            key = tuple(row.get(name) for name in conflict_fields)
            if any(part is None for part in key):
                null_keyed += 1
            else:
                distinct_keys.setdefault(key, None)
        if not distinct_keys:
            return null_keyed

        source = self._clause(table_name, conflict_fields)
        keys = list(distinct_keys)
        if len(conflict_fields) == 1:
            condition = source.c[conflict_fields[0]].in_([key[0] for key in keys])
        else:
            condition = tuple_(*[source.c[name] for name in conflict_fields]).in_(keys)
        existing = conn.execute(select(func.count()).select_from(source).where(condition)).scalar_one()
        return null_keyed + max(len(keys) - existing, 0)


_stores: Dict[tuple, RelationalStore] = {}


def get_store(connection_id: Optional[str] = None, database: Optional[str] = None) -> RelationalStore:
    """Resolve credentials for the connection and return a cached store."""
    key = (connection_id, database)
    store = _stores.get(key)
    if store is None:
        store = RelationalStore(get_engine(connection_id, database))
        _stores[key] = store
    return store
