"""Integration tests — Enable / disable, migrations and persisted status."""

from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa

from taphost.config import Settings
from taphost.exceptions import (
    HardFailureError,
    MigrationError,
    MissingDependencyError,
    PluginError,
    PluginInUseError,
    PluginNotFoundError,
)
from taphost.host import PluginHost
from taphost.plugins.registry import Plugin

LIFECYCLE = ["tap_install", "tap_enable", "tap_disable"]

CREATE_NOTE = "CREATE TABLE note (id INTEGER PRIMARY KEY, body TEXT);"
INDEX_NOTE = "CREATE INDEX note_body ON note (body);"


class Recorder:
    """Lifecycle invoker that records calls instead of running guests."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, plugin: Plugin, tap: str, args: Any) -> object:
        assert args == {"plugin": plugin.name, "version": plugin.manifest.version}
        self.calls.append((plugin.name, tap))
        return None


def _lifecycle_guest(guest: Any) -> Any:
    g = guest()
    for tap in LIFECYCLE:
        g.returns(tap, [])
    return g


def _tables(host: PluginHost) -> set[str]:
    return set(sa.inspect(host.db).get_table_names())


@pytest.mark.integration
class TestEnableDisable:
    @pytest.mark.asyncio
    async def test_install_runs_once_and_migrations_once(self, start_host: Any, guest: Any, plugins: Any) -> None:
        plugins.add(
            "notes",
            _lifecycle_guest(guest),
            implements=LIFECYCLE,
            default_enabled=False,
            migrations={"migrations/001_note.sql": CREATE_NOTE, "migrations/002_index.sql": INDEX_NOTE},
        )
        host = await start_host()
        recorder = Recorder()
        host.admin.set_invoker(recorder)
        assert not host.snapshot.is_enabled("notes")

        assert await host.enable("notes") == ["notes"]
        assert recorder.calls == [("notes", "tap_install"), ("notes", "tap_enable")]
        assert "note" in _tables(host)
        assert host.status.applied_migrations("notes") == {"migrations/001_note.sql", "migrations/002_index.sql"}

        assert await host.disable("notes") is True
        assert recorder.calls[-1] == ("notes", "tap_disable")

        recorder.calls.clear()
        assert await host.enable("notes") == ["notes"]
        assert recorder.calls == [("notes", "tap_enable")]
        assert host.snapshot.is_enabled("notes")

    @pytest.mark.asyncio
    async def test_enable_is_idempotent(self, start_host: Any, guest: Any, plugins: Any) -> None:
        plugins.add("notes", _lifecycle_guest(guest), implements=LIFECYCLE)
        host = await start_host()
        assert host.snapshot.is_enabled("notes")
        assert await host.enable("notes") == []

    @pytest.mark.asyncio
    async def test_disable_never_enabled(self, start_host: Any, guest: Any, plugins: Any) -> None:
        plugins.add("quiet", _lifecycle_guest(guest), implements=LIFECYCLE, default_enabled=False)
        host = await start_host()
        recorder = Recorder()
        host.admin.set_invoker(recorder)
        version = host.snapshot.version

        assert await host.disable("quiet") is False
        assert recorder.calls == []
        assert host.snapshot.version == version
        record = host.status.get("quiet")
        assert record is not None and not record.enabled and not record.installed

    @pytest.mark.asyncio
    async def test_unknown_plugin(self, start_host: Any) -> None:
        host = await start_host()
        with pytest.raises(PluginNotFoundError):
            await host.enable("ghost")

    @pytest.mark.asyncio
    async def test_lifecycle_taps_run_in_the_guest(self, start_host: Any, guest: Any, plugins: Any) -> None:
        g = guest().imports("taphost:kernel/db", "insert", "insert", 4)
        insert = g.text('{"table": "note", "values": {"body": "installed"}}')
        g.host_call("tap_install", f"(call $insert (i32.const {insert[0]}) (i32.const {insert[1]}) (i32.const {g.OUT}) (i32.const {g.OUT_CAP}))")
        plugins.add(
            "notes",
            g,
            implements=["tap_install"],
            capabilities=["db_write"],
            migrations={"migrations/001_note.sql": CREATE_NOTE},
        )
        host = await start_host()
        with host.db.connect() as conn:
            assert conn.exec_driver_sql("SELECT body FROM note").scalars().all() == ["installed"]


@pytest.mark.integration
class TestDependencies:
    def _add(self, guest: Any, plugins: Any) -> None:
        plugins.add("user", _lifecycle_guest(guest), implements=LIFECYCLE, default_enabled=False)
        plugins.add("forum", _lifecycle_guest(guest), implements=LIFECYCLE, dependencies=["user"], default_enabled=False)

    @pytest.mark.asyncio
    async def test_missing_dependency_without_cascade(self, start_host: Any, guest: Any, plugins: Any) -> None:
        self._add(guest, plugins)
        host = await start_host()
        with pytest.raises(MissingDependencyError) as exc_info:
            await host.enable("forum")
        assert exc_info.value.dependency == "user"
        assert not host.snapshot.is_enabled("forum")

    @pytest.mark.asyncio
    async def test_cascade_enables_dependencies_first(self, start_host: Any, guest: Any, plugins: Any) -> None:
        self._add(guest, plugins)
        host = await start_host()
        recorder = Recorder()
        host.admin.set_invoker(recorder)

        assert await host.enable("forum", cascade=True) == ["user", "forum"]
        assert [c for c in recorder.calls if c[1] == "tap_install"] == [("user", "tap_install"), ("forum", "tap_install")]

    @pytest.mark.asyncio
    async def test_disable_refused_while_in_use(self, start_host: Any, guest: Any, plugins: Any) -> None:
        self._add(guest, plugins)
        host = await start_host()
        await host.enable("forum", cascade=True)

        with pytest.raises(PluginInUseError) as exc_info:
            await host.disable("user")
        assert exc_info.value.public_dict()["dependents"] == ["forum"]
        assert host.snapshot.is_enabled("user")

        assert await host.disable("forum") is True
        assert await host.disable("user") is True

    @pytest.mark.asyncio
    async def test_migration_dependency(self, start_host: Any, guest: Any, plugins: Any) -> None:
        plugins.add(
            "base",
            guest().returns("tap_menu", []),
            implements=["tap_menu"],
            default_enabled=False,
            migrations={"migrations/001_note.sql": CREATE_NOTE},
        )
        plugins.add(
            "extra",
            guest().returns("tap_menu", []),
            implements=["tap_menu"],
            default_enabled=False,
            migrations={"migrations/001_index.sql": INDEX_NOTE},
            migration_depends_on=["base"],
        )
        host = await start_host()
        with pytest.raises(MissingDependencyError):
            await host.enable("extra")
        assert await host.enable("base") == ["base"]
        assert await host.enable("extra") == ["extra"]
        assert host.install_order().index("base") < host.install_order().index("extra")


@pytest.mark.integration
class TestPersistence:
    @pytest.mark.asyncio
    async def test_status_survives_restart(self, test_settings: Settings, guest: Any, plugins: Any) -> None:
        plugins.add(
            "notes",
            _lifecycle_guest(guest),
            implements=LIFECYCLE,
            default_enabled=False,
            migrations={"migrations/001_note.sql": CREATE_NOTE},
        )
        plugins.add("later", _lifecycle_guest(guest), implements=LIFECYCLE, default_enabled=False)

        first = PluginHost(test_settings)
        try:
            await first.start()
            await first.enable("notes")
            await first.enable("later")
            await first.disable("later")
        finally:
            first.close()

        recorder = Recorder()
        second = PluginHost(test_settings)
        second.admin.set_invoker(recorder)
        try:
            await second.start()
            assert second.snapshot.is_enabled("notes")
            assert not second.snapshot.is_enabled("later")
            assert recorder.calls == []
            assert second.status_report()["enabled"] == ["notes"]
        finally:
            second.close()

    @pytest.mark.asyncio
    async def test_forced_disabled(self, start_host: Any, test_settings: Settings, guest: Any, plugins: Any) -> None:
        plugins.add("notes", _lifecycle_guest(guest), implements=LIFECYCLE)
        settings = test_settings.model_copy(
            update={"plugins": test_settings.plugins.model_copy(update={"disabled": ["notes"]})}
        )
        host = await start_host(settings)
        assert not host.snapshot.is_enabled("notes")
        with pytest.raises(PluginError, match="disabled by configuration"):
            await host.enable("notes")

    @pytest.mark.asyncio
    async def test_failing_install_keeps_plugin_disabled(self, start_host: Any, guest: Any, plugins: Any) -> None:
        g = guest().unreachable("tap_install").returns("tap_enable", [])
        plugins.add("fragile", g, implements=["tap_install", "tap_enable"], default_enabled=False)
        host = await start_host()

        with pytest.raises(HardFailureError) as exc_info:
            await host.enable("fragile")
        assert exc_info.value.public_dict() == {
            "kind": "hard_failure",
            "tap": "tap_install",
            "plugin": "fragile",
            "failure": "fault",
        }
        assert not host.snapshot.is_enabled("fragile")
        assert host.status.get("fragile") is None

    @pytest.mark.asyncio
    async def test_failing_migration_rolls_back(self, start_host: Any, guest: Any, plugins: Any) -> None:
        plugins.add(
            "broken",
            guest().returns("tap_menu", []),
            implements=["tap_menu"],
            default_enabled=False,
            migrations={"migrations/001_ok.sql": "CREATE TABLE first_table (id INTEGER);", "migrations/002_bad.sql": "CREAT TABLE nope;"},
        )
        host = await start_host()
        with pytest.raises(MigrationError) as exc_info:
            await host.enable("broken")
        assert exc_info.value.public_dict()["migration"] == "migrations/002_bad.sql"
        assert host.status.applied_migrations("broken") == set()
        assert not host.snapshot.is_enabled("broken")
