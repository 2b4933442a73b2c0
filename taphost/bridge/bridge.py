"""Capability bridge — Host function table.

The bridge is the complete, fixed surface a plugin can import.  Every host
function:

1. resolves the calling plugin from the bound :class:`CallState`
   (identity is never taken from the guest);
2. checks the capability the function requires;
3. reads and validates every parameter;
4. only then touches a shared resource (database, cache, request state).

Failures at any step are returned to the guest as a negative
:class:`HostError` code.  A rejected call never aborts the execution context.

Import modules::

    taphost:kernel/db               select insert update delete query-raw
    taphost:kernel/cache-api        get set invalidate-tag
    taphost:kernel/request-context  get set
    taphost:kernel/logging          log
    taphost:kernel/user-api         current-user-id current-user-has-permission
    taphost:kernel/random           fill
    taphost:kernel/payload          keys get-field
    wasi_snapshot_preview1          shims (see :mod:`taphost.bridge.wasi`)
"""

from __future__ import annotations

import functools
import secrets
from dataclasses import dataclass
from typing import Any, Callable

import wasmtime

from taphost.bridge.abi import GuestMemory, HostCallRejected, HostError, encode_json, reject, u32
from taphost.bridge.cache import NamespacedCache
from taphost.bridge.capabilities import Capability, require
from taphost.bridge.db import QueryService
from taphost.bridge.state import CallState, current_call_state
from taphost.bridge.wasi import WasiShims
from taphost.config import BridgeConfig
from taphost.exceptions import CapabilityDeniedError
from taphost.logging import get_logger

log = get_logger(__name__)
plugin_log = get_logger("taphost.plugin")

DB = "taphost:kernel/db"
CACHE = "taphost:kernel/cache-api"
REQUEST_CONTEXT = "taphost:kernel/request-context"
LOGGING = "taphost:kernel/logging"
USER = "taphost:kernel/user-api"
RANDOM = "taphost:kernel/random"
PAYLOAD = "taphost:kernel/payload"

_LOG_LEVELS = {
    "trace": "debug",
    "debug": "debug",
    "info": "info",
    "notice": "info",
    "warn": "warning",
    "warning": "warning",
    "error": "error",
}

Signature = tuple[tuple[str, ...], tuple[str, ...]]


@dataclass(frozen=True)
class HostFunction:
    module: str
    name: str
    params: tuple[str, ...]
    results: tuple[str, ...]
    capability: Capability | None
    impl: Callable[..., int]

    @property
    def qualified(self) -> str:
        return f"{self.module}#{self.name}"


def host_function(
    module: str,
    name: str,
    params: int,
    capability: Capability | None = None,
) -> Callable[[Callable[..., int]], Callable[..., int]]:
    """Mark a bridge method as host function ``module#name``.

    *params* is the number of i32 parameters; every bridge function returns
    one i32.
    """

    def decorator(fn: Callable[..., int]) -> Callable[..., int]:
        fn._host_function = (module, name, ("i32",) * params, capability)  # type: ignore[attr-defined]
        return fn

    return decorator


class CapabilityBridge:
    """The fixed set of host functions plugins may import.

    Usage::

        bridge = CapabilityBridge(BridgeConfig(), queries=QueryService(engine, cfg))
        bridge.define(linker)
        provided = bridge.signatures()   # checked against module imports at load
    """

    def __init__(
        self,
        config: BridgeConfig,
        queries: QueryService | None = None,
        cache: NamespacedCache | None = None,
    ) -> None:
        self._config = config
        self._queries = queries
        self._cache = cache or NamespacedCache(
            max_entries=config.cache_max_entries,
            default_ttl=config.cache_default_ttl,
        )
        self._wasi = WasiShims()
        self._functions: list[HostFunction] = []
        for attr in dir(type(self)):
            meta = getattr(getattr(type(self), attr), "_host_function", None)
            if meta is None:
                continue
            module, name, params, capability = meta
            self._functions.append(
                HostFunction(
                    module=module,
                    name=name,
                    params=params,
                    results=("i32",),
                    capability=capability,
                    impl=getattr(self, attr),
                )
            )
        self._functions.sort(key=lambda f: (f.module, f.name))

    @property
    def cache(self) -> NamespacedCache:
        return self._cache

    @property
    def functions(self) -> list[HostFunction]:
        return list(self._functions)

    def signatures(self) -> dict[tuple[str, str], Signature]:
        """Every import this host provides, with its exact signature."""
        provided = {(f.module, f.name): (f.params, f.results) for f in self._functions}
        provided.update(self._wasi.signatures())
        return provided

    def define(self, linker: wasmtime.Linker) -> None:
        for fn in self._functions:
            linker.define_func(
                fn.module,
                fn.name,
                wasmtime.FuncType(
                    [wasmtime.ValType.i32() for _ in fn.params],
                    [wasmtime.ValType.i32() for _ in fn.results],
                ),
                self._wrap(fn),
                access_caller=True,
            )
        self._wasi.define(linker)

    def _wrap(self, fn: HostFunction) -> Callable[..., int]:
        @functools.wraps(fn.impl)
        def _call(caller: wasmtime.Caller, *args: int) -> int:
            state = current_call_state()
            if state is None:
                log.error("host_call_without_state", function=fn.qualified)
                return int(HostError.NO_SERVICES)
            try:
                if fn.capability is not None:
                    require(state, fn.capability, fn.qualified)
                return int(fn.impl(caller, state, *args))
            except CapabilityDeniedError as exc:
                log.warning(
                    "capability_denied",
                    plugin=state.plugin,
                    function=fn.qualified,
                    reason=exc.reason,
                )
                return exc.code
            except HostCallRejected as exc:
                log.info(
                    "host_call_rejected",
                    plugin=state.plugin,
                    function=fn.qualified,
                    code=exc.code.name,
                    reason=exc.reason,
                )
                return int(exc.code)
            except wasmtime.Trap:
                raise
            except Exception:
                log.exception("host_call_failed", plugin=state.plugin, function=fn.qualified)
                return int(HostError.INTERNAL)

        return _call

    def _require_queries(self) -> QueryService:
        if self._queries is None:
            raise reject(HostError.NO_SERVICES, "no database configured")
        return self._queries

    # ------------------------------------------------------------------
    # taphost:kernel/db
    # ------------------------------------------------------------------

    @host_function(DB, "select", 4, Capability.DB_READ)
    def db_select(self, caller: wasmtime.Caller, state: CallState, q_ptr: int, q_len: int, out_ptr: int, out_cap: int) -> int:
        mem = GuestMemory(caller)
        document = mem.read_json(q_ptr, q_len, HostError.PARAM1_READ, self._config.max_query_bytes)
        rows = self._require_queries().select(document)
        return mem.write_output(encode_json(rows), out_ptr, out_cap)

    @host_function(DB, "insert", 4, Capability.DB_WRITE)
    def db_insert(self, caller: wasmtime.Caller, state: CallState, q_ptr: int, q_len: int, out_ptr: int, out_cap: int) -> int:
        mem = GuestMemory(caller)
        document = mem.read_json(q_ptr, q_len, HostError.PARAM1_READ, self._config.max_query_bytes)
        row = self._require_queries().insert(document)
        return mem.write_output(encode_json(row), out_ptr, out_cap)

    @host_function(DB, "update", 2, Capability.DB_WRITE)
    def db_update(self, caller: wasmtime.Caller, state: CallState, q_ptr: int, q_len: int) -> int:
        mem = GuestMemory(caller)
        document = mem.read_json(q_ptr, q_len, HostError.PARAM1_READ, self._config.max_query_bytes)
        return self._require_queries().update(document)

    @host_function(DB, "delete", 2, Capability.DB_WRITE)
    def db_delete(self, caller: wasmtime.Caller, state: CallState, q_ptr: int, q_len: int) -> int:
        mem = GuestMemory(caller)
        document = mem.read_json(q_ptr, q_len, HostError.PARAM1_READ, self._config.max_query_bytes)
        return self._require_queries().delete(document)

    @host_function(DB, "query-raw", 6, Capability.DB_RAW_READ)
    def db_query_raw(
        self,
        caller: wasmtime.Caller,
        state: CallState,
        sql_ptr: int,
        sql_len: int,
        params_ptr: int,
        params_len: int,
        out_ptr: int,
        out_cap: int,
    ) -> int:
        mem = GuestMemory(caller)
        sql = mem.read_str(sql_ptr, sql_len, HostError.PARAM1_READ, self._config.max_query_bytes)
        params: Any = None
        if u32(params_len):
            params = mem.read_json(params_ptr, params_len, HostError.PARAM2_OR_OUTPUT, self._config.max_query_bytes)
        rows = self._require_queries().query_raw(sql, params)
        return mem.write_output(encode_json(rows), out_ptr, out_cap)

    # ------------------------------------------------------------------
    # taphost:kernel/cache-api
    # ------------------------------------------------------------------

    @host_function(CACHE, "get", 6, Capability.CACHE)
    def cache_get(
        self,
        caller: wasmtime.Caller,
        state: CallState,
        bin_ptr: int,
        bin_len: int,
        key_ptr: int,
        key_len: int,
        out_ptr: int,
        out_cap: int,
    ) -> int:
        mem = GuestMemory(caller)
        bin = self._read_key(mem, bin_ptr, bin_len, HostError.PARAM1_READ)
        key = self._read_key(mem, key_ptr, key_len, HostError.PARAM2_OR_OUTPUT)
        value = self._cache.get(state.plugin, bin, key)
        if value is None:
            return int(HostError.NOT_FOUND)
        return mem.write_output(value, out_ptr, out_cap)

    @host_function(CACHE, "set", 9, Capability.CACHE)
    def cache_set(
        self,
        caller: wasmtime.Caller,
        state: CallState,
        bin_ptr: int,
        bin_len: int,
        key_ptr: int,
        key_len: int,
        val_ptr: int,
        val_len: int,
        tags_ptr: int,
        tags_len: int,
        ttl: int,
    ) -> int:
        mem = GuestMemory(caller)
        bin = self._read_key(mem, bin_ptr, bin_len, HostError.PARAM1_READ)
        key = self._read_key(mem, key_ptr, key_len, HostError.PARAM2_OR_OUTPUT)
        value = mem.read(val_ptr, val_len, HostError.PARAM3_READ, self._config.max_value_bytes)
        tags: list[str] = []
        if u32(tags_len):
            tags = mem.read_json(tags_ptr, tags_len, HostError.PARAM3_READ, self._config.max_value_bytes)
            if not isinstance(tags, list) or not all(isinstance(t, str) and t for t in tags):
                raise reject(HostError.PARAM_DESERIALIZE, "tags must be a list of strings")
            if any(len(t.encode("utf-8")) > self._config.max_key_bytes for t in tags):
                raise reject(HostError.LIMIT_EXCEEDED, "tag too long")
        # Negative ttl selects the configured default.
        self._cache.set(state.plugin, bin, key, value, ttl=None if ttl < 0 else ttl, tags=tags)
        return int(HostError.OK)

    @host_function(CACHE, "invalidate-tag", 2, Capability.CACHE)
    def cache_invalidate_tag(self, caller: wasmtime.Caller, state: CallState, tag_ptr: int, tag_len: int) -> int:
        mem = GuestMemory(caller)
        tag = self._read_key(mem, tag_ptr, tag_len, HostError.PARAM1_READ)
        return self._cache.invalidate_tag(state.plugin, tag)

    def _read_key(self, mem: GuestMemory, ptr: int, length: int, code: HostError) -> str:
        key = mem.read_str(ptr, length, code, self._config.max_key_bytes)
        if not key:
            raise reject(code, "empty key")
        return key

    # ------------------------------------------------------------------
    # taphost:kernel/request-context
    # ------------------------------------------------------------------

    @host_function(REQUEST_CONTEXT, "get", 4)
    def context_get(self, caller: wasmtime.Caller, state: CallState, key_ptr: int, key_len: int, out_ptr: int, out_cap: int) -> int:
        mem = GuestMemory(caller)
        key = self._read_key(mem, key_ptr, key_len, HostError.PARAM1_READ)
        value = state.request.get(state.plugin, key)
        if value is None:
            return int(HostError.NOT_FOUND)
        return mem.write_output(value.encode("utf-8"), out_ptr, out_cap)

    @host_function(REQUEST_CONTEXT, "set", 4)
    def context_set(self, caller: wasmtime.Caller, state: CallState, key_ptr: int, key_len: int, val_ptr: int, val_len: int) -> int:
        mem = GuestMemory(caller)
        key = self._read_key(mem, key_ptr, key_len, HostError.PARAM1_READ)
        value = mem.read_str(val_ptr, val_len, HostError.PARAM2_OR_OUTPUT, self._config.max_value_bytes)
        state.request.set(state.plugin, key, value)
        return int(HostError.OK)

    # ------------------------------------------------------------------
    # taphost:kernel/logging
    # ------------------------------------------------------------------

    @host_function(LOGGING, "log", 4)
    def log_message(self, caller: wasmtime.Caller, state: CallState, lvl_ptr: int, lvl_len: int, msg_ptr: int, msg_len: int) -> int:
        mem = GuestMemory(caller)
        level = mem.read_str(lvl_ptr, lvl_len, HostError.PARAM1_READ, 16).lower()
        method = _LOG_LEVELS.get(level)
        if method is None:
            raise reject(HostError.PARAM_DESERIALIZE, "unknown log level")
        # Over-long messages are truncated rather than rejected.
        length = min(u32(msg_len), self._config.max_log_bytes)
        raw = mem.read(msg_ptr, length, HostError.PARAM2_OR_OUTPUT)
        message = raw.decode("utf-8", errors="replace")
        getattr(plugin_log, method)(
            "plugin_log",
            plugin=state.plugin,
            tap=state.tap,
            invocation_id=state.invocation_id,
            message=message,
        )
        return int(HostError.OK)

    # ------------------------------------------------------------------
    # taphost:kernel/user-api
    # ------------------------------------------------------------------

    @host_function(USER, "current-user-id", 2)
    def user_current_id(self, caller: wasmtime.Caller, state: CallState, out_ptr: int, out_cap: int) -> int:
        mem = GuestMemory(caller)
        user = state.request.user
        if user.user_id is None:
            return int(HostError.NOT_FOUND)
        return mem.write_output(user.user_id.encode("utf-8"), out_ptr, out_cap)

    @host_function(USER, "current-user-has-permission", 2)
    def user_has_permission(self, caller: wasmtime.Caller, state: CallState, perm_ptr: int, perm_len: int) -> int:
        mem = GuestMemory(caller)
        permission = mem.read_str(perm_ptr, perm_len, HostError.PARAM1_READ, self._config.max_key_bytes)
        return 1 if state.request.user.has_permission(permission) else 0

    # ------------------------------------------------------------------
    # taphost:kernel/random
    # ------------------------------------------------------------------

    @host_function(RANDOM, "fill", 2)
    def random_fill(self, caller: wasmtime.Caller, state: CallState, out_ptr: int, length: int) -> int:
        mem = GuestMemory(caller)
        length = u32(length)
        if length > self._config.max_value_bytes:
            raise reject(HostError.LIMIT_EXCEEDED, "too many random bytes requested")
        mem.write_raw(secrets.token_bytes(length), out_ptr)
        return length

    # ------------------------------------------------------------------
    # taphost:kernel/payload (opt-in handle mode)
    # ------------------------------------------------------------------

    @host_function(PAYLOAD, "keys", 2)
    def payload_keys(self, caller: wasmtime.Caller, state: CallState, out_ptr: int, out_cap: int) -> int:
        mem = GuestMemory(caller)
        payload = self._handle(state)
        return mem.write_output(encode_json(sorted(payload)), out_ptr, out_cap)

    @host_function(PAYLOAD, "get-field", 4)
    def payload_get_field(self, caller: wasmtime.Caller, state: CallState, name_ptr: int, name_len: int, out_ptr: int, out_cap: int) -> int:
        mem = GuestMemory(caller)
        name = self._read_key(mem, name_ptr, name_len, HostError.PARAM1_READ)
        payload = self._handle(state)
        if name not in payload:
            return int(HostError.NOT_FOUND)
        return mem.write_output(encode_json(payload[name]), out_ptr, out_cap)

    @staticmethod
    def _handle(state: CallState) -> dict[str, Any]:
        if not isinstance(state.payload_handle, dict):
            raise reject(HostError.NOT_FOUND, "no payload handle for this call")
        return state.payload_handle
