"""Unit tests — QueryService on a throwaway SQLite database."""

from __future__ import annotations

from pathlib import Path

import pytest
import sqlalchemy as sa

from taphost.bridge.abi import HostCallRejected, HostError
from taphost.bridge.db import QueryService
from taphost.config import BridgeConfig


@pytest.fixture()
def db_engine(tmp_path: Path) -> sa.Engine:
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'bridge.db'}")
    with engine.begin() as conn:
        conn.exec_driver_sql("CREATE TABLE item (id INTEGER PRIMARY KEY, title TEXT, status INTEGER)")
        conn.exec_driver_sql("CREATE TABLE plugin_status (name TEXT PRIMARY KEY)")
        conn.exec_driver_sql("CREATE TABLE secret (id INTEGER PRIMARY KEY)")
        conn.exec_driver_sql(
            "INSERT INTO item (id, title, status) VALUES (1, 'alpha', 1), (2, 'beta', 0), (3, 'gamma', 1)"
        )
    yield engine
    engine.dispose()


@pytest.fixture()
def service(db_engine: sa.Engine) -> QueryService:
    return QueryService(db_engine, BridgeConfig())


def _code(exc_info: pytest.ExceptionInfo[HostCallRejected]) -> HostError:
    return exc_info.value.code


@pytest.mark.unit
class TestStructuredQueries:
    def test_select_with_where_and_order(self, service: QueryService) -> None:
        rows = service.select(
            {"table": "item", "columns": ["id", "title"], "where": {"status": 1}, "order": [{"column": "id", "direction": "DESC"}]}
        )
        assert rows == [{"id": 3, "title": "gamma"}, {"id": 1, "title": "alpha"}]

    def test_select_operators(self, service: QueryService) -> None:
        rows = service.select({"table": "item", "where": {"$or": [{"id": {"$lt": 2}}, {"title": {"$like": "g%"}}]}})
        assert sorted(r["id"] for r in rows) == [1, 3]
        rows = service.select({"table": "item", "where": {"id": [2, 3], "$not": {"status": 0}}})
        assert [r["id"] for r in rows] == [3]

    def test_select_caps_rows(self, db_engine: sa.Engine) -> None:
        service = QueryService(db_engine, BridgeConfig(max_query_rows=2))
        assert len(service.select({"table": "item"})) == 2
        assert len(service.select({"table": "item", "limit": 50})) == 2

    def test_insert_update_delete(self, service: QueryService) -> None:
        inserted = service.insert({"table": "item", "values": {"title": "delta", "status": 0}})
        assert inserted["id"] == 4
        assert service.update({"table": "item", "values": {"status": 1}, "where": {"status": 0}}) == 2
        assert service.delete({"table": "item", "where": {"id": {"$gte": 3}}}) == 2
        assert [r["id"] for r in service.select({"table": "item"})] == [1, 2]

    def test_update_and_delete_require_where(self, service: QueryService) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.update({"table": "item", "values": {"status": 1}, "where": {}})
        assert _code(exc_info) == HostError.PARAM_DESERIALIZE
        with pytest.raises(HostCallRejected) as exc_info:
            service.delete({"table": "item", "where": {}})
        assert _code(exc_info) == HostError.PARAM_DESERIALIZE


@pytest.mark.unit
class TestValidation:
    def test_protected_table(self, service: QueryService) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.select({"table": "plugin_status"})
        assert _code(exc_info) == HostError.CAPABILITY_DENIED

    def test_allowlist(self, db_engine: sa.Engine) -> None:
        service = QueryService(db_engine, BridgeConfig(table_allowlist=["item"]))
        assert service.select({"table": "item", "limit": 1})
        with pytest.raises(HostCallRejected) as exc_info:
            service.select({"table": "secret"})
        assert _code(exc_info) == HostError.CAPABILITY_DENIED

    @pytest.mark.parametrize(
        "document",
        [
            {"table": "item; DROP TABLE item"},
            {"table": "nosuch"},
            {"table": "item", "columns": ["nope"]},
            {"table": "item", "where": {"nope": 1}},
            {"table": "item", "order": [{"column": "bad name"}]},
        ],
    )
    def test_invalid_identifiers(self, service: QueryService, document: dict) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.select(document)
        assert _code(exc_info) == HostError.INVALID_IDENTIFIER

    @pytest.mark.parametrize(
        "document",
        [
            {"table": "item", "unexpected": True},
            {"table": "item", "where": {"id": {"$regex": "x"}}},
            {"table": "item", "where": {"id": {"$in": 3}}},
            {"table": "item", "where": {"id": {"$eq": {"nested": 1}}}},
            {"table": "item", "limit": -1},
        ],
    )
    def test_malformed_documents(self, service: QueryService, document: dict) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.select(document)
        assert _code(exc_info) == HostError.PARAM_DESERIALIZE


@pytest.mark.unit
class TestQueryRaw:
    def test_positional_parameters(self, service: QueryService) -> None:
        rows = service.query_raw("SELECT id, title FROM item WHERE status = $1 ORDER BY id", [1])
        assert rows == [{"id": 1, "title": "alpha"}, {"id": 3, "title": "gamma"}]

    def test_named_parameters(self, service: QueryService) -> None:
        rows = service.query_raw("SELECT title FROM item WHERE id = :id", {"id": 2})
        assert rows == [{"title": "beta"}]

    def test_missing_positional_parameter(self, service: QueryService) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.query_raw("SELECT * FROM item WHERE id = $2", [1])
        assert _code(exc_info) == HostError.PARAM_DESERIALIZE

    @pytest.mark.parametrize("sql", ["DROP TABLE item", "create table x (id int)", "ALTER TABLE item ADD c int"])
    def test_ddl_rejected(self, service: QueryService, sql: str) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.query_raw(sql, None)
        assert _code(exc_info) == HostError.DDL_REJECTED

    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM item",
            "UPDATE item SET status = 0",
            "SELECT 1; SELECT 2",
            "SELECT * FROM plugin_status",
        ],
    )
    def test_writes_and_reserved_tables_denied(self, service: QueryService, sql: str) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.query_raw(sql, None)
        assert _code(exc_info) == HostError.CAPABILITY_DENIED

    def test_keyword_in_literal_is_data(self, service: QueryService) -> None:
        assert service.query_raw("SELECT 'DROP TABLE item' AS t", None) == [{"t": "DROP TABLE item"}]

    def test_row_cap(self, db_engine: sa.Engine) -> None:
        service = QueryService(db_engine, BridgeConfig(max_query_rows=1))
        assert len(service.query_raw("SELECT * FROM item", None)) == 1

    def test_sql_error_is_generic(self, service: QueryService) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.query_raw("SELECT missing_column FROM item", None)
        assert _code(exc_info) == HostError.SQL_FAILED

    @pytest.mark.parametrize(
        "sql",
        [
            'SELECT * FROM "plugin_status"',
            "SELECT * FROM `plugin_status`",
            'SELECT * FROM "PLUGIN_STATUS"',
            'SELECT name FROM item, "plugin_status"',
        ],
    )
    def test_quoted_reserved_table_denied(self, service: QueryService, sql: str) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            service.query_raw(sql, None)
        assert _code(exc_info) == HostError.CAPABILITY_DENIED

    def test_quoted_identifiers_still_work(self, service: QueryService) -> None:
        assert service.query_raw('SELECT "title" FROM "item" WHERE id = 1', None) == [{"title": "alpha"}]

    def test_colon_inside_literal_is_data(self, service: QueryService) -> None:
        assert service.query_raw("SELECT 'see :note' AS t", None) == [{"t": "see :note"}]

    def test_replace_function_is_a_read(self, service: QueryService) -> None:
        rows = service.query_raw("SELECT replace(title, 'a', 'o') AS t FROM item WHERE id = 1", None)
        assert rows == [{"t": "olpho"}]


@pytest.mark.unit
class TestQueryRawAllowlist:
    @pytest.fixture()
    def restricted(self, db_engine: sa.Engine) -> QueryService:
        return QueryService(db_engine, BridgeConfig(table_allowlist=["item"]))

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM secret",
            "SELECT secret.id FROM item, secret",
            "SELECT s.id FROM item AS i, secret s",
            'SELECT * FROM "secret"',
            "SELECT * FROM `secret`",
            "SELECT * FROM main.secret",
            "SELECT * FROM item JOIN secret ON secret.id = item.id",
            "SELECT * FROM item i JOIN item j ON i.id = j.id, secret",
            "SELECT * FROM item WHERE id IN (SELECT id FROM secret)",
            "SELECT * FROM (SELECT id FROM secret) AS s",
        ],
    )
    def test_every_table_reference_is_checked(self, restricted: QueryService, sql: str) -> None:
        with pytest.raises(HostCallRejected) as exc_info:
            restricted.query_raw(sql, None)
        assert _code(exc_info) == HostError.CAPABILITY_DENIED

    @pytest.mark.parametrize(
        "sql, expected",
        [
            ("SELECT i.id FROM item AS i WHERE i.status = 0", [{"id": 2}]),
            ("SELECT id FROM item, (SELECT 2 AS two) t WHERE id = t.two", [{"id": 2}]),
            ("WITH picked AS (SELECT id FROM item WHERE id = 2) SELECT id FROM picked", [{"id": 2}]),
            ('SELECT id FROM "item" WHERE id = 2', [{"id": 2}]),
        ],
    )
    def test_allowlisted_reads_pass(self, restricted: QueryService, sql: str, expected: list) -> None:
        assert restricted.query_raw(sql, None) == expected
