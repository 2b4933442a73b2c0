"""Shared pytest fixtures for the taphost test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
import wasmtime

from taphost.config import Settings, override_settings
from taphost.host import PluginHost

# Guest memory layout used by every test module: payloads land at offset 0,
# constants from DATA_BASE upwards, host call results in the OUT buffer.
DATA_BASE = 4096
OUT = 32768
OUT_CAP = 16384

_NO_FALLBACK = object()


def _escape(data: bytes) -> str:
    return "".join(f"\\{b:02x}" for b in data)


def _packed(ptr: int, length: int) -> int:
    return (ptr << 32) | length


class Guest:
    """Builds small WebAssembly guests from WAT fragments.

    Usage::

        wasm = Guest().returns("tap_item_info", [{"type": "page"}]).wasm()
    """

    OUT = OUT
    OUT_CAP = OUT_CAP

    def __init__(self, pages: int = 1, alloc_at: int | None = None) -> None:
        self.pages = pages
        self._imports: list[str] = []
        self._funcs: list[str] = []
        self._data: list[str] = []
        self._next = DATA_BASE
        if alloc_at is not None:
            self._funcs.append(f'(func (export "alloc") (param i32) (result i32) (i32.const {alloc_at}))')

    # -- building blocks -------------------------------------------------

    def text(self, data: bytes | str) -> tuple[int, int]:
        """Place constant *data* in memory; returns ``(offset, length)``."""
        raw = data.encode("utf-8") if isinstance(data, str) else data
        offset = self._next
        self._data.append(f'(data (i32.const {offset}) "{_escape(raw)}")')
        self._next += len(raw) + 8 - (len(raw) % 8)
        return offset, len(raw)

    def imports(self, module: str, name: str, alias: str, params: int, result: bool = True) -> "Guest":
        param_text = f"(param {' '.join(['i32'] * params)})" if params else ""
        result_text = "(result i32)" if result else ""
        self._imports.append(f'(import "{module}" "{name}" (func ${alias} {param_text} {result_text}))')
        return self

    def raw(self, fragment: str) -> "Guest":
        self._funcs.append(fragment)
        return self

    # -- tap behaviours --------------------------------------------------

    def returns(self, tap: str, value: Any) -> "Guest":
        """Export *tap* returning *value* (JSON-encoded unless bytes)."""
        data = value if isinstance(value, bytes) else json.dumps(value).encode("utf-8")
        ptr, length = self.text(data)
        return self.raw(f'(func (export "{tap}") (param i32 i32) (result i64) (i64.const {_packed(ptr, length)}))')

    def echo(self, tap: str) -> "Guest":
        return self.raw(
            f'(func (export "{tap}") (param $ptr i32) (param $len i32) (result i64)\n'
            "  (i64.or (i64.shl (i64.extend_i32_u (local.get $ptr)) (i64.const 32))\n"
            "          (i64.extend_i32_u (local.get $len))))"
        )

    def spins(self, tap: str) -> "Guest":
        return self.raw(f'(func (export "{tap}") (param i32 i32) (result i64) (loop $spin (br $spin)) (i64.const 0))')

    def unreachable(self, tap: str) -> "Guest":
        return self.raw(f'(func (export "{tap}") (param i32 i32) (result i64) unreachable)')

    def error(self, tap: str, code: int) -> "Guest":
        return self.raw(f'(func (export "{tap}") (param i32 i32) (result i64) (i64.const {code & 0xFFFFFFFF}))')

    def host_call(self, tap: str, call: str, prelude: str = "", fallback: Any = _NO_FALLBACK) -> "Guest":
        """Export *tap* returning the bytes a host call wrote into OUT.

        A negative host result becomes the guest error code, or the constant
        *fallback* when one is given.
        """
        if fallback is _NO_FALLBACK:
            negative = "(i64.extend_i32_u (local.get $n))"
        else:
            ptr, length = self.text(json.dumps(fallback))
            negative = f"(i64.const {_packed(ptr, length)})"
        return self.raw(
            f'(func (export "{tap}") (param $ptr i32) (param $len i32) (result i64)\n'
            "  (local $n i32)\n"
            f"  {prelude}\n"
            f"  (local.set $n {call})\n"
            "  (if (result i64) (i32.lt_s (local.get $n) (i32.const 0))\n"
            f"    (then {negative})\n"
            f"    (else (i64.or (i64.const {OUT << 32}) (i64.extend_i32_u (local.get $n))))))"
        )

    def checks(self, tap: str, call: str, expected: int, prelude: str = "") -> "Guest":
        """Export *tap* returning ``"yes"`` when *call* yields *expected*, else ``"no"``."""
        yes = _packed(*self.text('"yes"'))
        no = _packed(*self.text('"no"'))
        return self.raw(
            f'(func (export "{tap}") (param $ptr i32) (param $len i32) (result i64)\n'
            f"  {prelude}\n"
            f"  (if (result i64) (i32.eq {call} (i32.const {expected}))\n"
            f"    (then (i64.const {yes}))\n"
            f"    (else (i64.const {no}))))"
        )

    # -- output ----------------------------------------------------------

    def wat(self) -> str:
        return "\n".join(
            [
                "(module",
                *self._imports,
                f'(memory (export "memory") {self.pages})',
                *self._funcs,
                *self._data,
                ")",
            ]
        )

    def wasm(self) -> bytes:
        return bytes(wasmtime.wat2wasm(self.wat()))


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    if isinstance(value, dict):
        return "{ " + ", ".join(f"{k} = {_toml_value(v)}" for k, v in value.items()) + " }"
    raise TypeError(f"cannot render {value!r} as TOML")


class PluginDir:
    """Writes ``<root>/<name>/{name}.info.toml`` + ``{name}.wasm`` plugins."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def add(
        self,
        name: str,
        guest: Guest | bytes,
        implements: list[str] | None = None,
        weight: int = 0,
        weights: dict[str, int] | None = None,
        dependencies: list[str] | None = None,
        capabilities: list[str] | None = None,
        default_enabled: bool = True,
        migrations: dict[str, str] | None = None,
        migration_depends_on: list[str] | None = None,
        version: str = "1.0.0",
    ) -> Path:
        directory = self.root / name
        directory.mkdir(parents=True, exist_ok=True)
        lines = [
            f"name = {_toml_value(name)}",
            f"description = {_toml_value(name + ' test plugin')}",
            f"version = {_toml_value(version)}",
            f"default_enabled = {_toml_value(default_enabled)}",
            f"dependencies = {_toml_value(dependencies or [])}",
            f"capabilities = {_toml_value(capabilities or [])}",
            "",
            "[taps]",
            f"implements = {_toml_value(implements or [])}",
            f"weight = {weight}",
        ]
        if weights:
            lines.append(f"weights = {_toml_value(weights)}")
        if migrations or migration_depends_on:
            lines += [
                "",
                "[migrations]",
                f"files = {_toml_value(list(migrations or {}))}",
                f"depends_on = {_toml_value(migration_depends_on or [])}",
            ]
        for rel, sql in (migrations or {}).items():
            path = directory / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(sql, encoding="utf-8")
        (directory / f"{name}.info.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")
        wasm = guest.wasm() if isinstance(guest, Guest) else guest
        (directory / f"{name}.wasm").write_bytes(wasm)
        return directory


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    settings = Settings(
        engine={
            "epoch_budget": 20,
            "epoch_tick_seconds": 0.05,
            "instantiate_timeout": 2.0,
            "max_instances": 32,
        },
        database={"url": f"sqlite:///{tmp_path / 'taphost.db'}"},
        plugins={"directory": str(tmp_path / "plugins")},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    return settings


# ---------------------------------------------------------------------------
# Guests and plugin directories
# ---------------------------------------------------------------------------


@pytest.fixture
def guest() -> type[Guest]:
    return Guest


@pytest.fixture
def plugins(tmp_path: Path) -> PluginDir:
    return PluginDir(tmp_path / "plugins")


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def start_host(test_settings: Settings) -> AsyncGenerator[Callable[..., Awaitable[PluginHost]], None]:
    """Factory starting a :class:`PluginHost` on the test settings."""
    hosts: list[PluginHost] = []

    async def _start(settings: Settings | None = None) -> PluginHost:
        host = PluginHost(settings or test_settings)
        hosts.append(host)
        await host.start()
        return host

    yield _start

    for host in hosts:
        host.close()
