"""Plugin layer — Persisted plugin status and applied migrations.

Two host tables, both protected from plugins by the capability bridge::

    plugin_status(name PK, status, version, installed_at, updated_at)
    plugin_migration(plugin, migration, applied_at)  PK(plugin, migration)

``installed_at`` is set on the first successful enable and never cleared,
which is how the admin layer knows whether ``tap_install`` already ran.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

import sqlalchemy as sa

STATUS_DISABLED = 0
STATUS_ENABLED = 1

metadata = sa.MetaData()

plugin_status = sa.Table(
    "plugin_status",
    metadata,
    sa.Column("name", sa.String(64), primary_key=True),
    sa.Column("status", sa.Integer, nullable=False, default=STATUS_DISABLED),
    sa.Column("version", sa.String(64), nullable=False, default=""),
    sa.Column("installed_at", sa.Float, nullable=True),
    sa.Column("updated_at", sa.Float, nullable=False),
)

plugin_migration = sa.Table(
    "plugin_migration",
    metadata,
    sa.Column("plugin", sa.String(64), primary_key=True),
    sa.Column("migration", sa.String(255), primary_key=True),
    sa.Column("applied_at", sa.Float, nullable=False),
)


@dataclass(frozen=True)
class StatusRecord:
    name: str
    status: int
    version: str
    installed_at: float | None
    updated_at: float

    @property
    def enabled(self) -> bool:
        return self.status == STATUS_ENABLED

    @property
    def installed(self) -> bool:
        return self.installed_at is not None


class StatusStore:
    """SQLAlchemy Core access to the status tables."""

    def __init__(self, engine: sa.Engine) -> None:
        self._engine = engine

    @property
    def engine(self) -> sa.Engine:
        return self._engine

    def ensure_schema(self) -> None:
        metadata.create_all(self._engine)

    def get(self, name: str) -> StatusRecord | None:
        with self._engine.connect() as conn:
            row = conn.execute(sa.select(plugin_status).where(plugin_status.c.name == name)).fetchone()
        return StatusRecord(**row._mapping) if row is not None else None

    def all(self) -> dict[str, StatusRecord]:
        with self._engine.connect() as conn:
            rows = conn.execute(sa.select(plugin_status)).fetchall()
        return {row.name: StatusRecord(**row._mapping) for row in rows}

    def set_status(
        self,
        conn: sa.Connection,
        name: str,
        enabled: bool,
        version: str,
        mark_installed: bool = False,
    ) -> None:
        """Upsert the status row inside the caller's transaction."""
        now = time.time()
        status = STATUS_ENABLED if enabled else STATUS_DISABLED
        existing = conn.execute(
            sa.select(plugin_status.c.installed_at).where(plugin_status.c.name == name)
        ).fetchone()
        if existing is None:
            conn.execute(
                plugin_status.insert().values(
                    name=name,
                    status=status,
                    version=version,
                    installed_at=now if mark_installed else None,
                    updated_at=now,
                )
            )
            return
        values: dict[str, object] = {"status": status, "version": version, "updated_at": now}
        if mark_installed and existing.installed_at is None:
            values["installed_at"] = now
        conn.execute(plugin_status.update().where(plugin_status.c.name == name).values(**values))

    def applied_migrations(self, plugin: str, conn: sa.Connection | None = None) -> set[str]:
        stmt = sa.select(plugin_migration.c.migration).where(plugin_migration.c.plugin == plugin)
        if conn is not None:
            return {row.migration for row in conn.execute(stmt)}
        with self._engine.connect() as own:
            return {row.migration for row in own.execute(stmt)}

    def record_migration(self, conn: sa.Connection, plugin: str, migration: str) -> None:
        conn.execute(plugin_migration.insert().values(plugin=plugin, migration=migration, applied_at=time.time()))
