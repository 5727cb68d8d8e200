"""
Unit tests for the PostgreSQL store source and sink.

The psycopg2 connection is mocked; SQL is checked as text.
"""

from unittest.mock import MagicMock

import psycopg2
from psycopg2.extras import Json
import pytest

from statesync.reconciliation.errors import FetchFailure, PermanentApplyFailure, TransientApplyFailure
from statesync.reconciliation.models import Filter, Origin
from statesync.sources.store import StoreSink, StoreSource, StoreTable, format_table_name, quote_identifier


@pytest.fixture
def connection():
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchall.return_value = []
    cursor.rowcount = 1
    return conn


@pytest.fixture
def cursor(connection):
    return connection.cursor.return_value.__enter__.return_value


@pytest.fixture
def tables():
    return {
        "session_type": StoreTable(table="public.SessionType", identity_column="slug"),
        "schema_column": StoreTable(
            table="information_schema.columns",
            identity_column="column_name",
            columns=("column_name", "data_type"),
            read_only=True,
        ),
    }


@pytest.fixture
def sink(connection, tables):
    return StoreSink("prod-db", connection, tables, timeout_seconds=5)


class TestQuoting:

    def test_quote_identifier(self):
        assert quote_identifier('createdAt') == '"createdAt"'
        assert quote_identifier('we"ird') == '"we""ird"'

    def test_format_table_name(self):
        assert format_table_name("public.SessionType") == '"public"."SessionType"'


class TestStoreSource:
    """Test snapshot reads."""

    def test_fetch_returns_snapshot(self, connection, cursor, tables):
        cursor.fetchall.return_value = [{"slug": "intro", "title": "Intro"}]
        source = StoreSource("prod-db", connection, tables)

        snapshot = source.fetch("session_type", origin=Origin.ACTUAL)

        assert snapshot.kind == "session_type"
        assert snapshot.origin_name == "prod-db"
        assert snapshot.records == ({"slug": "intro", "title": "Intro"},)
        cursor.execute.assert_called_once_with('SELECT * FROM "public"."SessionType" ORDER BY "slug"', [])

    def test_build_select_with_filter(self, sink, tables):
        query, params = sink.build_select(
            tables["session_type"],
            Filter(equals={"active": True, "deletedAt": None}, contains={"slug": ["a", "b"]}),
        )

        assert query == (
            'SELECT * FROM "public"."SessionType" WHERE "active"::text = %s AND "deletedAt" IS NULL '
            'AND "slug"::text IN %s ORDER BY "slug"'
        )
        assert params == ["true", ("a", "b")]

    def test_filter_values_are_sent_as_text(self, sink, tables):
        _, params = sink.build_select(
            tables["session_type"],
            Filter(equals={"durationMinutes": 60}, contains={"id": [1, "2", None]}),
        )

        assert params == ["60", ("1", "2")]

    def test_containment_of_only_null_matches_nothing(self, sink, tables):
        query, params = sink.build_select(tables["session_type"], Filter(contains={"slug": [None]}))

        assert query is None
        assert params == []

    def test_empty_containment_matches_nothing(self, sink, connection, tables):
        snapshot = sink.fetch("session_type", Filter(contains={"slug": []}))

        assert len(snapshot) == 0
        connection.cursor.assert_not_called()

    def test_selected_columns(self, sink, tables):
        query, _ = sink.build_select(tables["schema_column"], None)

        assert query.startswith('SELECT "column_name", "data_type" FROM "information_schema"."columns"')

    def test_statement_timeout_set(self, sink, cursor):
        sink.fetch("session_type")

        cursor.execute.assert_any_call("SET LOCAL statement_timeout = %s", (5000,))

    def test_driver_error_becomes_fetch_failure(self, sink, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

        with pytest.raises(FetchFailure, match="server closed"):
            sink.fetch("session_type")

    def test_unknown_kind(self, sink):
        with pytest.raises(FetchFailure, match="no table for kind"):
            sink.fetch("ghost")


class TestStoreSink:
    """Test applies."""

    def test_apply_create(self, sink, cursor):
        sink.apply_create("session_type", {"slug": "intro", "price": 0, "meta": {"a": 1}})

        query, params = cursor.execute.call_args[0]
        assert query == 'INSERT INTO "public"."SessionType" ("slug", "price", "meta") VALUES (%s, %s, %s)'
        assert params[:2] == ["intro", 0]
        assert isinstance(params[2], Json)

    def test_apply_update_touches_only_changed_fields(self, sink, cursor):
        sink.apply_update("session_type", "intro", {"title": "Intro call"})

        cursor.execute.assert_called_with(
            'UPDATE "public"."SessionType" SET "title" = %s WHERE "slug" = %s',
            ["Intro call", "intro"],
        )

    def test_update_of_missing_row_is_permanent(self, sink, cursor):
        cursor.rowcount = 0

        with pytest.raises(PermanentApplyFailure, match="No session_type row"):
            sink.apply_update("session_type", "ghost", {"title": "x"})

    def test_update_refuses_identity_change(self, sink):
        with pytest.raises(PermanentApplyFailure, match="identity column"):
            sink.apply_update("session_type", "intro", {"slug": "other"})

    def test_delete_of_absent_row_succeeds(self, sink, cursor):
        cursor.rowcount = 0

        sink.apply_delete("session_type", "ghost")

        cursor.execute.assert_called_with('DELETE FROM "public"."SessionType" WHERE "slug" = %s', ["ghost"])

    def test_read_only_kind_rejected(self, sink):
        with pytest.raises(PermanentApplyFailure, match="read-only"):
            sink.apply_create("schema_column", {"column_name": "x"})

    def test_transient_error_mapping(self, sink, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("canceling statement due to statement timeout")

        with pytest.raises(TransientApplyFailure):
            sink.apply_create("session_type", {"slug": "intro"})

    def test_permanent_error_mapping(self, sink, cursor):
        cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key value")

        with pytest.raises(PermanentApplyFailure, match="IntegrityError"):
            sink.apply_create("session_type", {"slug": "intro"})

    def test_each_apply_uses_own_transaction(self, sink, connection):
        sink.apply_create("session_type", {"slug": "a"})
        sink.apply_create("session_type", {"slug": "b"})

        assert connection.__enter__.call_count == 2
        assert connection.__exit__.call_count == 2

    def test_does_not_support_parallel_creates(self, sink):
        assert sink.supports_parallel_creates is False
