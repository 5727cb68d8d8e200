"""
Relational Store Source and Sink

Reads and writes entity records in PostgreSQL through a borrowed psycopg2
connection. Every apply runs in its own transaction so that the report never
claims a change that was rolled back.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2.extensions import TransactionRollbackError
from psycopg2.extras import Json, RealDictCursor

from statesync.reconciliation.errors import FetchFailure, PermanentApplyFailure, TransientApplyFailure
from statesync.reconciliation.models import Filter, Origin, Snapshot, filter_value
from statesync.sources.base import StateSink, StateSource

logger = logging.getLogger(__name__)

# Errors worth retrying: timeouts, dropped connections, serialization conflicts
TRANSIENT_ERRORS = (
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
    TransactionRollbackError,
)


@dataclass(frozen=True)
class StoreTable:
    """
    Mapping of an entity kind onto a table or view.

    Attributes:
        table: Table reference, optionally schema-qualified ("public.SessionType")
        identity_column: Column holding the identity value
        columns: Columns to select (all columns when empty)
        read_only: Reject applies against this kind (views, information_schema)
    """

    table: str
    identity_column: str
    columns: Tuple[str, ...] = ()
    read_only: bool = False


def quote_identifier(name: str) -> str:
    """Quote a SQL identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def format_table_name(table: str) -> str:
    """Quote every part of a possibly schema-qualified table name."""
    return ".".join(quote_identifier(part) for part in table.split("."))


class StoreSource(StateSource):
    """Snapshot reader over a borrowed PostgreSQL connection."""

    def __init__(
        self,
        name: str,
        connection,
        tables: Dict[str, StoreTable],
        timeout_seconds: Optional[float] = None
    ):
        """
        Initialize the store source.

        Args:
            name: Origin name (e.g. "prod-db")
            connection: psycopg2 connection owned by the caller
            tables: Entity kind -> table mapping
            timeout_seconds: Per-statement timeout
        """
        super().__init__(name, timeout_seconds)
        self.connection = connection
        self.tables = dict(tables)
        logger.debug(f"Initialized StoreSource {name} for kinds {sorted(self.tables)}")

    def fetch(self, kind: str, filter: Optional[Filter] = None, origin: Origin = Origin.ACTUAL) -> Snapshot:
        table = self._table_for(kind)
        query, params = self.build_select(table, filter)

        if query is None:
            return Snapshot.capture(kind, origin, self.name, [])

        logger.debug(f"Executing store query for {kind}: {query}")

        try:
            with self.connection:
                with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
                    self._set_timeout(cursor)
                    cursor.execute(query, params)
                    rows = [dict(row) for row in cursor.fetchall()]
        except psycopg2.Error as e:
            logger.error(f"Failed to fetch {kind} from {self.name}: {e}")
            raise FetchFailure(f"Failed to fetch {kind} from {self.name}: {e}", origin=self.name, kind=kind) from e

        logger.info(f"Fetched {len(rows)} {kind} rows from {self.name}")
        return Snapshot.capture(kind, origin, self.name, rows)

    def build_select(self, table: StoreTable, filter: Optional[Filter]) -> Tuple[Optional[str], List[Any]]:
        """
        Build the SELECT statement for a kind.

        Args:
            table: Table mapping
            filter: Optional filter

        Returns:
            (query, params); query is None when the filter can match nothing
        """
        columns = ", ".join(quote_identifier(c) for c in table.columns) if table.columns else "*"
        query = f"SELECT {columns} FROM {format_table_name(table.table)}"

        conditions = []
        params: List[Any] = []

        if filter is not None:
            # Columns are compared as text, like Filter.matches
            for name, value in filter.equals.items():
                if value is None:
                    conditions.append(f"{quote_identifier(name)} IS NULL")
                else:
                    conditions.append(f"{quote_identifier(name)}::text = %s")
                    params.append(filter_value(value))

            for name, values in filter.contains.items():
                wanted = tuple(filter_value(v) for v in values if v is not None)
                if not wanted:
                    return None, []
                conditions.append(f"{quote_identifier(name)}::text IN %s")
                params.append(wanted)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += f" ORDER BY {quote_identifier(table.identity_column)}"
        return query, params

    def _table_for(self, kind: str) -> StoreTable:
        if kind not in self.tables:
            raise FetchFailure(f"Source {self.name} has no table for kind '{kind}'", origin=self.name, kind=kind)
        return self.tables[kind]

    def _set_timeout(self, cursor) -> None:
        if self.timeout_seconds:
            cursor.execute("SET LOCAL statement_timeout = %s", (int(self.timeout_seconds * 1000),))


class StoreSink(StoreSource, StateSink):
    """
    Snapshot reader and writer over a borrowed PostgreSQL connection.

    Parallel creates are not supported: a psycopg2 connection must not be
    used by several threads at once.
    """

    supports_parallel_creates = False

    def apply_create(self, kind: str, record: Dict[str, Any]) -> None:
        table = self._writable_table(kind)
        query, params = self.build_insert(table, record)
        self._execute(kind, query, params)

    def apply_update(self, kind: str, identity: Any, changed_fields: Dict[str, Any]) -> None:
        table = self._writable_table(kind)

        if table.identity_column in changed_fields:
            raise PermanentApplyFailure(f"Refusing to update identity column {table.identity_column}")

        query, params = self.build_update(table, identity, changed_fields)
        affected = self._execute(kind, query, params)

        if affected == 0:
            raise PermanentApplyFailure(f"No {kind} row with {table.identity_column}={identity!r}")

    def apply_delete(self, kind: str, identity: Any, record: Optional[Dict[str, Any]] = None) -> None:
        table = self._writable_table(kind)
        query, params = self.build_delete(table, identity)
        affected = self._execute(kind, query, params)

        if affected == 0:
            logger.warning(f"Delete of {kind}[{identity}] matched no rows; already absent")

    def build_insert(self, table: StoreTable, record: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """
        Build a parameterized INSERT for one record.

        Args:
            table: Table mapping
            record: Record to insert

        Returns:
            (query, params)
        """
        fields = list(record.keys())
        columns = ", ".join(quote_identifier(f) for f in fields)
        placeholders = ", ".join(["%s"] * len(fields))
        query = f"INSERT INTO {format_table_name(table.table)} ({columns}) VALUES ({placeholders})"
        return query, [self._adapt(record[f]) for f in fields]

    def build_update(
        self,
        table: StoreTable,
        identity: Any,
        changed_fields: Dict[str, Any]
    ) -> Tuple[str, List[Any]]:
        """
        Build a parameterized UPDATE touching only the changed fields.

        Args:
            table: Table mapping
            identity: Identity value of the row
            changed_fields: Field -> new value

        Returns:
            (query, params)
        """
        if not changed_fields:
            raise PermanentApplyFailure("UPDATE without changed fields")

        set_clause = ", ".join(f"{quote_identifier(f)} = %s" for f in changed_fields)
        query = (
            f"UPDATE {format_table_name(table.table)} SET {set_clause} "
            f"WHERE {quote_identifier(table.identity_column)} = %s"
        )
        params = [self._adapt(value) for value in changed_fields.values()]
        params.append(identity)
        return query, params

    def build_delete(self, table: StoreTable, identity: Any) -> Tuple[str, List[Any]]:
        """Build a parameterized DELETE by identity."""
        query = (
            f"DELETE FROM {format_table_name(table.table)} "
            f"WHERE {quote_identifier(table.identity_column)} = %s"
        )
        return query, [identity]

    def _writable_table(self, kind: str) -> StoreTable:
        table = self.tables.get(kind)
        if table is None:
            raise PermanentApplyFailure(f"Sink {self.name} has no table for kind '{kind}'")
        if table.read_only:
            raise PermanentApplyFailure(f"Kind '{kind}' is read-only on {self.name}")
        return table

    def _execute(self, kind: str, query: str, params: List[Any]) -> int:
        """
        Execute one statement in its own transaction.

        Returns:
            Number of affected rows

        Raises:
            TransientApplyFailure: On timeouts and connection problems
            PermanentApplyFailure: On constraint, data and programming errors
        """
        logger.debug(f"Executing on {self.name}: {query}")

        try:
            with self.connection:
                with self.connection.cursor() as cursor:
                    self._set_timeout(cursor)
                    cursor.execute(query, params)
                    return cursor.rowcount
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient store error on {kind}: {e}")
            raise TransientApplyFailure(f"{type(e).__name__}: {e}") from e
        except psycopg2.Error as e:
            logger.error(f"Store rejected {kind} statement: {e}")
            raise PermanentApplyFailure(f"{type(e).__name__}: {e}") from e

    @staticmethod
    def _adapt(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return Json(value)
        return value
