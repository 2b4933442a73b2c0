"""Execution engine — wasmtime sandbox.

Compiles plugin bytecode once, then runs every call in a fresh, single-use
execution context:

- a new ``wasmtime.Store`` capped by ``max_memory_mb`` and a table limit;
- an epoch deadline of ``epoch_budget`` ticks, advanced by :class:`EpochClock`;
- an instance created through one shared ``Linker`` holding the capability
  bridge;
- a call state bound to the running thread so host functions know who is
  calling.

Guest ABI of a tap entry point::

    (func (export "tap_x") (param $ptr i32) (param $len i32) (result i64))

The payload is written at ``alloc(len)`` when the guest exports
``alloc(i32) -> i32``, otherwise at offset 0.  The result packs
``(out_ptr << 32) | out_len``; a negative low half is a guest error code.

Usage::

    engine = SandboxEngine(EngineConfig(), bridge)
    compiled = engine.load("blog", wasm_bytes)
    with engine.session(compiled, call_state) as ctx:
        result = engine.call(ctx, "tap_item_info", b"{}")
"""

from __future__ import annotations

import hashlib
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterator, Mapping

import wasmtime

from taphost.bridge.bridge import CapabilityBridge, Signature
from taphost.bridge.state import CallState, bind_call_state, unbind_call_state
from taphost.config import EngineConfig
from taphost.engine.clock import EpochClock
from taphost.engine.pool import InstancePool, Slot
from taphost.engine.traps import TrapKind, classify
from taphost.exceptions import (
    InvalidModuleError,
    MissingExportError,
    MissingImportError,
    PoolExhaustedError,
    TrapError,
)
from taphost.logging import get_logger

log = get_logger(__name__)

WASM_MAGIC = b"\x00asm"
TAP_SIGNATURE: Signature = (("i32", "i32"), ("i64",))
ALLOC_SIGNATURE: Signature = (("i32",), ("i32",))

_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF


def _signature(ty: wasmtime.FuncType) -> Signature:
    return tuple(str(p) for p in ty.params), tuple(str(r) for r in ty.results)


@dataclass(frozen=True)
class CompiledModule:
    """Validated, compiled bytecode shared read-only by every call."""

    name: str
    module: wasmtime.Module
    digest: str
    size: int
    entry_points: Mapping[str, Signature]
    imports: frozenset[tuple[str, str]]
    has_alloc: bool

    def implements(self, entry_point: str) -> bool:
        return self.entry_points.get(entry_point) == TAP_SIGNATURE


@dataclass
class ExecutionContext:
    """One isolated, single-use instance of a compiled module."""

    compiled: CompiledModule
    call_state: CallState
    slot: Slot
    generation: int
    used: bool = False
    released: bool = False

    @property
    def invocation_id(self) -> str:
        return self.call_state.invocation_id


@dataclass(frozen=True)
class CallResult:
    output: bytes
    elapsed_ms: float = 0.0


class SandboxEngine:
    """Compiles, instantiates and invokes plugins under CPU and memory limits."""

    def __init__(self, config: EngineConfig, bridge: CapabilityBridge) -> None:
        self._config = config
        wasm_config = wasmtime.Config()
        wasm_config.epoch_interruption = True
        wasm_config.cranelift_opt_level = config.optimize
        self._engine = wasmtime.Engine(wasm_config)
        self._linker = wasmtime.Linker(self._engine)
        bridge.define(self._linker)
        self._provided = bridge.signatures()
        self._pool = InstancePool(config.max_instances)
        self._clock = EpochClock(self._engine, config.epoch_tick_seconds)
        self._clock_lock = threading.Lock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def pool(self) -> InstancePool:
        return self._pool

    @property
    def clock(self) -> EpochClock:
        return self._clock

    def start(self) -> None:
        with self._clock_lock:
            self._clock.start()

    def close(self) -> None:
        with self._clock_lock:
            self._clock.stop()

    def __enter__(self) -> "SandboxEngine":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self, name: str, wasm: bytes) -> CompiledModule:
        """Validate and compile *wasm*.  Raises before anything is registered."""
        wasm = bytes(wasm)
        if wasm[:4] != WASM_MAGIC:
            raise InvalidModuleError(name, "missing wasm magic header")
        try:
            module = wasmtime.Module(self._engine, wasm)
        except wasmtime.WasmtimeError as exc:
            reason = str(exc).splitlines()[0] if str(exc) else "compilation failed"
            raise InvalidModuleError(name, reason) from exc

        imports: set[tuple[str, str]] = set()
        for imp in module.imports:
            import_name = imp.name or ""
            if not isinstance(imp.type, wasmtime.FuncType):
                raise MissingImportError(name, imp.module, import_name, "only function imports are provided")
            expected = self._provided.get((imp.module, import_name))
            if expected is None:
                raise MissingImportError(name, imp.module, import_name)
            if _signature(imp.type) != expected:
                raise MissingImportError(name, imp.module, import_name, "signature mismatch")
            imports.add((imp.module, import_name))

        entry_points: dict[str, Signature] = {}
        has_memory = False
        for exp in module.exports:
            if isinstance(exp.type, wasmtime.FuncType):
                entry_points[exp.name] = _signature(exp.type)
            elif isinstance(exp.type, wasmtime.MemoryType) and exp.name == "memory":
                has_memory = True
        if not has_memory:
            raise InvalidModuleError(name, "module does not export 'memory'")

        compiled = CompiledModule(
            name=name,
            module=module,
            digest=hashlib.sha256(wasm).hexdigest(),
            size=len(wasm),
            entry_points=MappingProxyType(entry_points),
            imports=frozenset(imports),
            has_alloc=entry_points.get("alloc") == ALLOC_SIGNATURE,
        )
        log.debug(
            "module_compiled",
            plugin=name,
            size=compiled.size,
            exports=len(entry_points),
            imports=len(imports),
        )
        return compiled

    # ------------------------------------------------------------------
    # Instantiate / release
    # ------------------------------------------------------------------

    def instantiate(self, compiled: CompiledModule, call_state: CallState) -> ExecutionContext:
        if not self._clock.running:
            self.start()
        slot = self._pool.acquire(timeout=self._config.instantiate_timeout)
        if slot is None:
            raise PoolExhaustedError(compiled.name, self._pool.max_instances, self._config.instantiate_timeout)
        try:
            store = wasmtime.Store(self._engine)
            store.set_limits(
                memory_size=self._config.max_memory_bytes,
                table_elements=self._config.max_table_elements,
                tables=self._config.max_tables,
                memories=1,
            )
            store.set_epoch_deadline(self._config.epoch_budget)
            slot.store = store
            slot.token = bind_call_state(call_state)
            instance = self._linker.instantiate(store, compiled.module)
            slot.instance = instance
            slot.memory = instance.exports(store).get("memory")
        except (wasmtime.Trap, wasmtime.WasmtimeError) as exc:
            self._teardown(slot)
            kind, detail = classify(exc)
            if kind == TrapKind.FAULT:
                kind = TrapKind.MEMORY if "memory" in str(exc).lower() else TrapKind.INSTANTIATION
            log.debug("instantiate_failed", plugin=compiled.name, trap=kind.value, detail=detail)
            raise TrapError(compiled.name, kind.value, detail) from exc
        except BaseException:
            self._teardown(slot)
            raise
        return ExecutionContext(
            compiled=compiled,
            call_state=call_state,
            slot=slot,
            generation=slot.generation,
        )

    def release(self, ctx: ExecutionContext) -> None:
        if ctx.released:
            return
        ctx.released = True
        self._teardown(ctx.slot)

    def _teardown(self, slot: Slot) -> None:
        if slot.token is not None:
            unbind_call_state(slot.token)
        self._pool.release(slot)

    @contextmanager
    def session(self, compiled: CompiledModule, call_state: CallState) -> Iterator[ExecutionContext]:
        ctx = self.instantiate(compiled, call_state)
        try:
            yield ctx
        finally:
            self.release(ctx)

    # ------------------------------------------------------------------
    # Call
    # ------------------------------------------------------------------

    def call(self, ctx: ExecutionContext, entry_point: str, payload: bytes) -> CallResult:
        """Invoke *entry_point* once with *payload* under a fresh CPU deadline."""
        if ctx.released:
            raise RuntimeError("execution context already released")
        if ctx.used:
            raise RuntimeError("execution context is single-use")
        ctx.used = True

        compiled = ctx.compiled
        signature = compiled.entry_points.get(entry_point)
        if signature is None:
            raise MissingExportError(compiled.name, entry_point)
        if signature != TAP_SIGNATURE:
            raise MissingExportError(compiled.name, entry_point, "wrong signature, expected (i32, i32) -> i64")
        if len(payload) > self._config.max_payload_bytes:
            raise TrapError(compiled.name, TrapKind.LIMIT.value, "payload too large", entry_point)

        store = ctx.slot.store
        exports = ctx.slot.instance.exports(store)
        store.set_epoch_deadline(self._config.epoch_budget)
        start = time.perf_counter()
        try:
            ptr = self._place_input(ctx, exports, payload)
            packed = exports[entry_point](store, ptr, len(payload))
        except (wasmtime.Trap, wasmtime.WasmtimeError) as exc:
            kind, detail = classify(exc)
            log.debug("guest_trapped", plugin=compiled.name, entry_point=entry_point, trap=kind.value)
            raise TrapError(compiled.name, kind.value, detail, entry_point) from exc
        output = self._read_output(ctx, entry_point, packed)
        elapsed = time.perf_counter() - start
        return CallResult(output=output, elapsed_ms=round(elapsed * 1000, 3))

    def _place_input(self, ctx: ExecutionContext, exports: wasmtime.InstanceExports, payload: bytes) -> int:
        if not payload:
            return 0
        store = ctx.slot.store
        memory: wasmtime.Memory = ctx.slot.memory
        ptr = 0
        if ctx.compiled.has_alloc:
            ptr = exports["alloc"](store, len(payload)) & _U32
        if ptr + len(payload) > memory.data_len(store):
            raise TrapError(ctx.compiled.name, TrapKind.LIMIT.value, "payload does not fit in guest memory")
        memory.write(store, payload, ptr)
        return ptr

    def _read_output(self, ctx: ExecutionContext, entry_point: str, packed: int) -> bytes:
        name = ctx.compiled.name
        raw = packed & _U64
        ptr = raw >> 32
        length = raw & _U32
        if length & 0x80000000:
            code = length - (1 << 32)
            raise TrapError(name, TrapKind.GUEST_ERROR.value, f"guest returned error code {code}", entry_point, code=code)
        if length > self._config.max_output_bytes:
            raise TrapError(name, TrapKind.LIMIT.value, "output too large", entry_point)
        if length == 0:
            return b""
        store = ctx.slot.store
        memory: wasmtime.Memory = ctx.slot.memory
        if ptr + length > memory.data_len(store):
            raise TrapError(name, TrapKind.FAULT.value, "output out of bounds", entry_point)
        return bytes(memory.read(store, ptr, ptr + length))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, object]:
        return {
            "pool": self._pool.status(),
            "epoch_ticks": self._clock.ticks,
            "epoch_budget": self._config.epoch_budget,
            "max_memory_mb": self._config.max_memory_mb,
        }
