"""Capability bridge — Structured query service.

Builds every statement from validated identifiers and bound parameters via
SQLAlchemy Core.  The only path for query text is :meth:`QueryService.query_raw`,
which re-validates the text as a single read-only statement.  DDL is refused
on every path.

Validation order for each call:
    1. JSON shape (pydantic models, ``extra="forbid"``)
    2. identifier grammar, protected tables, optional table allowlist
    3. column names against the reflected table
Only then is a statement executed, on a connection carrying a server-side
statement timeout.

``where`` documents use a small MongoDB-like operator language::

    {"status": 1, "created": {"$gte": 1700000000}, "$or": [{"uid": 1}, {"uid": 2}]}
"""

from __future__ import annotations

import re
import time
from contextlib import contextmanager
from typing import Any, Iterator, Literal

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from taphost import sqltext
from taphost.bridge.abi import HostError, reject
from taphost.config import BridgeConfig
from taphost.logging import get_logger

log = get_logger(__name__)

VALID_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_Scalar = str | int | float | bool | None


# ---------------------------------------------------------------------------
# Query documents
# ---------------------------------------------------------------------------


class OrderSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    column: str
    direction: Literal["asc", "desc"] = "asc"

    @field_validator("direction", mode="before")
    @classmethod
    def lower(cls, v: object) -> object:
        return v.lower() if isinstance(v, str) else v


class SelectQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: str
    columns: list[str] = Field(default_factory=lambda: ["*"])
    where: dict[str, Any] = Field(default_factory=dict)
    order: list[OrderSpec] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)


class InsertQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: str
    values: dict[str, _Scalar]


class UpdateQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: str
    values: dict[str, _Scalar]
    where: dict[str, Any]


class DeleteQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: str
    where: dict[str, Any]


def parse_query(model: type[BaseModel], document: Any) -> Any:
    try:
        return model.model_validate(document)
    except ValidationError:
        raise reject(HostError.PARAM_DESERIALIZE, f"malformed {model.__name__}") from None


# ---------------------------------------------------------------------------
# Where compilation
# ---------------------------------------------------------------------------

_COMPARISON_OPS: dict[str, str] = {
    "$eq": "__eq__",
    "$ne": "__ne__",
    "$gt": "__gt__",
    "$gte": "__ge__",
    "$lt": "__lt__",
    "$lte": "__le__",
}


def _apply_operator(column: sa.ColumnElement, operator: str, operand: Any) -> sa.ColumnElement:  # type: ignore[type-arg]
    if operator in _COMPARISON_OPS:
        _require_scalar(operand)
        return getattr(column, _COMPARISON_OPS[operator])(operand)  # type: ignore[no-any-return]
    if operator in ("$in", "$nin"):
        if not isinstance(operand, list):
            raise reject(HostError.PARAM_DESERIALIZE, f"{operator} expects a list")
        for item in operand:
            _require_scalar(item)
        return column.in_(operand) if operator == "$in" else ~column.in_(operand)
    if operator == "$like":
        if not isinstance(operand, str):
            raise reject(HostError.PARAM_DESERIALIZE, "$like expects a string")
        return column.like(operand)
    if operator == "$is_null":
        return column.is_(None) if operand else column.isnot(None)
    if operator == "$between":
        if not isinstance(operand, list) or len(operand) != 2:
            raise reject(HostError.PARAM_DESERIALIZE, "$between expects [low, high]")
        _require_scalar(operand[0])
        _require_scalar(operand[1])
        return column.between(operand[0], operand[1])
    raise reject(HostError.PARAM_DESERIALIZE, f"unknown operator {operator}")


def _require_scalar(value: Any) -> None:
    if not isinstance(value, (str, int, float, bool)) and value is not None:
        raise reject(HostError.PARAM_DESERIALIZE, "values must be scalars")


def _compile_field(column: sa.ColumnElement, value: Any) -> sa.ColumnElement:  # type: ignore[type-arg]
    if isinstance(value, dict):
        if not value:
            raise reject(HostError.PARAM_DESERIALIZE, "empty operator document")
        clauses = [_apply_operator(column, op, operand) for op, operand in value.items()]
        return sa.and_(*clauses) if len(clauses) > 1 else clauses[0]
    if isinstance(value, list):
        return _apply_operator(column, "$in", value)
    if value is None:
        return column.is_(None)
    _require_scalar(value)
    return column == value  # type: ignore[return-value]


def _resolve_column(table: sa.Table, name: str) -> sa.Column:  # type: ignore[type-arg]
    if not VALID_IDENTIFIER.match(name) or name not in table.c:
        raise reject(HostError.INVALID_IDENTIFIER, "unknown column")
    return table.c[name]


def compile_where(table: sa.Table, where: dict[str, Any]) -> sa.ColumnElement:  # type: ignore[type-arg]
    """Compile a where document into a SQLAlchemy expression.

    Returns ``sa.true()`` if *where* is empty.
    """
    if not where:
        return sa.true()

    clauses: list[sa.ColumnElement] = []  # type: ignore[type-arg]
    for key, value in where.items():
        if key in ("$and", "$or"):
            if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
                raise reject(HostError.PARAM_DESERIALIZE, f"{key} expects a list of documents")
            subs = [compile_where(table, sub) for sub in value]
            clauses.append(sa.and_(*subs) if key == "$and" else sa.or_(*subs))
        elif key == "$not":
            if not isinstance(value, dict):
                raise reject(HostError.PARAM_DESERIALIZE, "$not expects a document")
            clauses.append(~compile_where(table, value))
        elif key.startswith("$"):
            raise reject(HostError.PARAM_DESERIALIZE, f"unknown logical operator {key}")
        else:
            clauses.append(_compile_field(_resolve_column(table, key), value))

    return clauses[0] if len(clauses) == 1 else sa.and_(*clauses)


def _where_columns(where: dict[str, Any]) -> Iterator[str]:
    for key, value in where.items():
        if key in ("$and", "$or") and isinstance(value, list):
            for sub in value:
                if isinstance(sub, dict):
                    yield from _where_columns(sub)
        elif key == "$not" and isinstance(value, dict):
            yield from _where_columns(value)
        elif not key.startswith("$"):
            yield key


# ---------------------------------------------------------------------------
# Table reflection cache
# ---------------------------------------------------------------------------


class TableCache:
    """TTL-cached reflected tables."""

    def __init__(self, ttl_seconds: int = 300) -> None:
        self._cache: dict[str, tuple[float, sa.Table]] = {}
        self._ttl = ttl_seconds

    def get(self, name: str) -> sa.Table | None:
        entry = self._cache.get(name)
        if entry is None:
            return None
        ts, table = entry
        if self._ttl > 0 and (time.time() - ts) > self._ttl:
            self._cache.pop(name, None)
            return None
        return table

    def set(self, name: str, table: sa.Table) -> None:
        self._cache[name] = (time.time(), table)

    def invalidate_all(self) -> None:
        self._cache.clear()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class QueryService:
    """Executes validated query documents on behalf of plugins.

    Usage::

        service = QueryService(sa.create_engine(url), BridgeConfig())
        rows = service.select({"table": "item", "where": {"status": 1}, "limit": 10})
    """

    def __init__(self, engine: sa.Engine, config: BridgeConfig) -> None:
        self._engine = engine
        self._config = config
        self._protected = {t.lower() for t in config.protected_tables}
        self._allowlist = {t.lower() for t in config.table_allowlist}
        self._tables = TableCache(ttl_seconds=config.schema_cache_ttl)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check_table_name(self, name: str) -> None:
        if not VALID_IDENTIFIER.match(name):
            raise reject(HostError.INVALID_IDENTIFIER, "invalid table identifier")
        lowered = name.lower()
        if lowered in self._protected:
            raise reject(HostError.CAPABILITY_DENIED, "table is reserved for the host")
        if self._allowlist and lowered not in self._allowlist:
            raise reject(HostError.CAPABILITY_DENIED, "table is not in the allowlist")

    @staticmethod
    def check_column_names(names: Iterator[str] | list[str]) -> None:
        for name in names:
            if not VALID_IDENTIFIER.match(name):
                raise reject(HostError.INVALID_IDENTIFIER, "invalid column identifier")

    def _reflect(self, conn: sa.Connection, name: str) -> sa.Table:
        table = self._tables.get(name)
        if table is not None:
            return table
        try:
            table = sa.Table(name, sa.MetaData(), autoload_with=conn)
        except sa.exc.NoSuchTableError:
            raise reject(HostError.INVALID_IDENTIFIER, "unknown table") from None
        self._tables.set(name, table)
        return table

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @contextmanager
    def _connection(self) -> Iterator[sa.Connection]:
        """Transaction-scoped connection with a server-side statement timeout."""
        try:
            with self._engine.begin() as conn:
                restore = self._apply_timeout(conn)
                try:
                    yield conn
                finally:
                    if restore is not None:
                        restore()
        except sa.exc.DBAPIError as exc:
            if _is_timeout(exc):
                log.warning("bridge_query_timeout", timeout_ms=self._config.statement_timeout_ms)
                raise reject(HostError.TIMEOUT, "statement timeout") from None
            log.warning("bridge_query_failed", error=str(exc.orig))
            raise reject(HostError.SQL_FAILED, "query failed") from None
        except sa.exc.SQLAlchemyError as exc:
            log.warning("bridge_query_failed", error=str(exc))
            raise reject(HostError.SQL_FAILED, "query failed") from None

    def _apply_timeout(self, conn: sa.Connection):  # type: ignore[no-untyped-def]
        ms = int(self._config.statement_timeout_ms)
        dialect = conn.dialect.name
        if dialect == "postgresql":
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = {ms}")
        elif dialect == "mysql":
            conn.exec_driver_sql(f"SET SESSION MAX_EXECUTION_TIME = {ms}")
        elif dialect == "sqlite":
            raw = conn.connection.dbapi_connection
            deadline = time.monotonic() + ms / 1000.0

            def _progress() -> int:
                return 1 if time.monotonic() > deadline else 0

            raw.set_progress_handler(_progress, 1000)
            return lambda: raw.set_progress_handler(None, 1000)
        return None

    # ------------------------------------------------------------------
    # Structured operations
    # ------------------------------------------------------------------

    def select(self, document: Any) -> list[dict[str, Any]]:
        query: SelectQuery = parse_query(SelectQuery, document)
        self.check_table_name(query.table)
        columns = [c for c in query.columns if c != "*"]
        self.check_column_names(columns)
        self.check_column_names(_where_columns(query.where))
        self.check_column_names([o.column for o in query.order])
        limit = min(query.limit, self._config.max_query_rows) if query.limit is not None else self._config.max_query_rows

        with self._connection() as conn:
            table = self._reflect(conn, query.table)
            if columns and len(columns) == len(query.columns):
                stmt = sa.select(*[_resolve_column(table, c) for c in columns])
            else:
                stmt = sa.select(table)
            stmt = stmt.where(compile_where(table, query.where))
            for spec in query.order:
                col = _resolve_column(table, spec.column)
                stmt = stmt.order_by(col.desc() if spec.direction == "desc" else col.asc())
            stmt = stmt.limit(limit).offset(query.offset)
            return [dict(row._mapping) for row in conn.execute(stmt)]

    def insert(self, document: Any) -> dict[str, Any]:
        query: InsertQuery = parse_query(InsertQuery, document)
        self.check_table_name(query.table)
        if not query.values:
            raise reject(HostError.PARAM_DESERIALIZE, "insert needs at least one value")
        self.check_column_names(list(query.values))

        with self._connection() as conn:
            table = self._reflect(conn, query.table)
            values = {_resolve_column(table, k).name: v for k, v in query.values.items()}
            stmt = table.insert().values(**values)
            if conn.dialect.insert_returning:
                row = conn.execute(stmt.returning(*table.c)).fetchone()
                return dict(row._mapping) if row is not None else {}
            result = conn.execute(stmt)
            pk = result.inserted_primary_key or ()
            return {col.name: val for col, val in zip(table.primary_key.columns, pk)}

    def update(self, document: Any) -> int:
        query: UpdateQuery = parse_query(UpdateQuery, document)
        self.check_table_name(query.table)
        if not query.values:
            raise reject(HostError.PARAM_DESERIALIZE, "update needs at least one value")
        if not query.where:
            raise reject(HostError.PARAM_DESERIALIZE, "update requires a where clause")
        self.check_column_names(list(query.values))
        self.check_column_names(_where_columns(query.where))

        with self._connection() as conn:
            table = self._reflect(conn, query.table)
            values = {_resolve_column(table, k).name: v for k, v in query.values.items()}
            stmt = table.update().where(compile_where(table, query.where)).values(**values)
            return conn.execute(stmt).rowcount

    def delete(self, document: Any) -> int:
        query: DeleteQuery = parse_query(DeleteQuery, document)
        self.check_table_name(query.table)
        if not query.where:
            raise reject(HostError.PARAM_DESERIALIZE, "delete requires a where clause")
        self.check_column_names(_where_columns(query.where))

        with self._connection() as conn:
            table = self._reflect(conn, query.table)
            stmt = table.delete().where(compile_where(table, query.where))
            return conn.execute(stmt).rowcount

    # ------------------------------------------------------------------
    # Read-only escape hatch
    # ------------------------------------------------------------------

    def query_raw(self, sql: str, params: Any) -> list[dict[str, Any]]:
        """Run a single read-only statement with bound parameters.

        *params* is either a JSON array bound to ``$1..$N`` placeholders or a
        JSON object bound to ``:name`` placeholders.
        """
        if len(sql.encode("utf-8")) > self._config.max_query_bytes:
            raise reject(HostError.LIMIT_EXCEEDED, "query text too long")
        if sqltext.is_ddl(sql):
            raise reject(HostError.DDL_REJECTED, "DDL statements are never allowed")
        ok, reason = sqltext.check_read_only(sql)
        if not ok:
            raise reject(HostError.CAPABILITY_DENIED, f"not a read-only statement: {reason}")
        self._check_raw_tables(sql)

        text, highest = sqltext.rewrite_positional(sql)
        bind: dict[str, Any]
        if params is None:
            bind = {}
        elif isinstance(params, list):
            if len(params) < highest:
                raise reject(HostError.PARAM_DESERIALIZE, "missing positional parameters")
            bind = {f"p{i + 1}": value for i, value in enumerate(params)}
        elif isinstance(params, dict):
            self.check_column_names(list(params))
            bind = dict(params)
        else:
            raise reject(HostError.PARAM_DESERIALIZE, "params must be an array or object")
        for value in bind.values():
            _require_scalar(value)

        with self._connection() as conn:
            result = conn.execute(sa.text(text), bind)
            return [dict(row._mapping) for row in result.fetchmany(self._config.max_query_rows)]

    def _check_raw_tables(self, sql: str) -> None:
        if sqltext.identifiers(sql) & self._protected:
            raise reject(HostError.CAPABILITY_DENIED, "query references a reserved table")
        if self._allowlist:
            local = sqltext.cte_names(sql)
            for table in sqltext.table_references(sql):
                if table not in self._allowlist and table not in local:
                    raise reject(HostError.CAPABILITY_DENIED, "table is not in the allowlist")

    def invalidate_schema(self) -> None:
        self._tables.invalidate_all()


def _is_timeout(exc: sa.exc.DBAPIError) -> bool:
    text = str(exc.orig).lower()
    return (
        "interrupted" in text
        or "statement timeout" in text
        or "maximum statement execution time" in text
    )
