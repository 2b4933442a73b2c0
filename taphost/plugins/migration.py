"""Plugin layer — Migration runner.

Applies a plugin's declared SQL migration files, in manifest order, each at
most once.  All pending migrations of one plugin run in the caller's
transaction together with their bookkeeping rows, so a failure leaves no
migration recorded as applied.
"""

from __future__ import annotations

import sqlalchemy as sa

from taphost import sqltext
from taphost.exceptions import MigrationError
from taphost.logging import get_logger
from taphost.plugins.registry import Plugin, RegistrySnapshot
from taphost.plugins.status import StatusStore

log = get_logger(__name__)


class MigrationRunner:
    def __init__(self, store: StatusStore) -> None:
        self._store = store

    def pending(self, plugin: Plugin, conn: sa.Connection | None = None) -> list[str]:
        """Declared migrations not yet applied, in declared order."""
        applied = self._store.applied_migrations(plugin.name, conn)
        return [m for m in plugin.manifest.migrations.files if m not in applied]

    def apply(self, conn: sa.Connection, plugin: Plugin, snapshot: RegistrySnapshot) -> list[str]:
        """Run every pending migration of *plugin* on *conn*; return their names."""
        for dep in plugin.manifest.migrations.depends_on:
            if self.pending(snapshot.get(dep), conn):
                raise MigrationError(plugin.name, "*", f"migrations of '{dep}' have not been applied")

        ran: list[str] = []
        for migration in self.pending(plugin, conn):
            path = plugin.directory / migration
            try:
                script = path.read_text(encoding="utf-8")
            except OSError:
                raise MigrationError(plugin.name, migration, "migration file not found") from None

            for number, statement in enumerate(sqltext.split_statements(script), start=1):
                try:
                    conn.exec_driver_sql(statement)
                except sa.exc.SQLAlchemyError as exc:
                    raise MigrationError(plugin.name, migration, f"statement {number} failed") from exc

            self._store.record_migration(conn, plugin.name, migration)
            ran.append(migration)
            log.info("migration_applied", plugin=plugin.name, migration=migration)
        return ran
