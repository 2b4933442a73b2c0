"""Capability bridge — WASI preview1 shims.

Toolchains targeting ``wasm32-wasi`` import a handful of
``wasi_snapshot_preview1`` functions even when the plugin never touches a
file.  The host provides a fixed set of shims so such modules link, but no
filesystem, network or process primitive ever functions:

- file, path, socket and poll calls return ``ENOTSUP``;
- ``fd_prestat_get`` returns ``EBADF`` (no preopened directories);
- environment and argument vectors are empty;
- ``random_get`` is filled from the OS CSPRNG;
- ``proc_exit`` aborts the call with an ``exit`` trap.
"""

from __future__ import annotations

import secrets
import struct
import time
from typing import Any, Callable

import wasmtime

from taphost.bridge.abi import GuestMemory, HostCallRejected, u32

WASI_MODULE = "wasi_snapshot_preview1"

ERRNO_SUCCESS = 0
ERRNO_BADF = 8
ERRNO_FAULT = 21
ERRNO_INVAL = 28
ERRNO_NOTSUP = 58

PROC_EXIT_PREFIX = "proc_exit"

_UNSUPPORTED: dict[str, tuple[str, ...]] = {
    "fd_write": ("i32", "i32", "i32", "i32"),
    "fd_read": ("i32", "i32", "i32", "i32"),
    "fd_pread": ("i32", "i32", "i32", "i64", "i32"),
    "fd_pwrite": ("i32", "i32", "i32", "i64", "i32"),
    "fd_close": ("i32",),
    "fd_seek": ("i32", "i64", "i32", "i32"),
    "fd_tell": ("i32", "i32"),
    "fd_sync": ("i32",),
    "fd_datasync": ("i32",),
    "fd_fdstat_get": ("i32", "i32"),
    "fd_fdstat_set_flags": ("i32", "i32"),
    "fd_filestat_get": ("i32", "i32"),
    "fd_prestat_dir_name": ("i32", "i32", "i32"),
    "fd_readdir": ("i32", "i32", "i32", "i64", "i32"),
    "fd_renumber": ("i32", "i32"),
    "path_open": ("i32", "i32", "i32", "i32", "i32", "i64", "i64", "i32", "i32"),
    "path_create_directory": ("i32", "i32", "i32"),
    "path_filestat_get": ("i32", "i32", "i32", "i32", "i32"),
    "path_readlink": ("i32", "i32", "i32", "i32", "i32", "i32"),
    "path_remove_directory": ("i32", "i32", "i32"),
    "path_rename": ("i32", "i32", "i32", "i32", "i32", "i32"),
    "path_unlink_file": ("i32", "i32", "i32"),
    "poll_oneoff": ("i32", "i32", "i32", "i32"),
    "sock_accept": ("i32", "i32", "i32"),
    "sock_recv": ("i32", "i32", "i32", "i32", "i32", "i32"),
    "sock_send": ("i32", "i32", "i32", "i32", "i32"),
    "sock_shutdown": ("i32", "i32"),
}


class WasiShims:
    """Definitions of the ``wasi_snapshot_preview1`` imports."""

    def signatures(self) -> dict[tuple[str, str], tuple[tuple[str, ...], tuple[str, ...]]]:
        return {(WASI_MODULE, name): (params, results) for name, params, results, _ in self._table()}

    def define(self, linker: wasmtime.Linker) -> None:
        for name, params, results, fn in self._table():
            linker.define_func(
                WASI_MODULE,
                name,
                wasmtime.FuncType([_valtype(p) for p in params], [_valtype(r) for r in results]),
                fn,
                access_caller=True,
            )

    def _table(self) -> list[tuple[str, tuple[str, ...], tuple[str, ...], Callable[..., Any]]]:
        table: list[tuple[str, tuple[str, ...], tuple[str, ...], Callable[..., Any]]] = [
            (name, params, ("i32",), _unsupported) for name, params in _UNSUPPORTED.items()
        ]
        table += [
            ("fd_prestat_get", ("i32", "i32"), ("i32",), _no_preopens),
            ("environ_sizes_get", ("i32", "i32"), ("i32",), _empty_sizes),
            ("args_sizes_get", ("i32", "i32"), ("i32",), _empty_sizes),
            ("environ_get", ("i32", "i32"), ("i32",), _empty_vector),
            ("args_get", ("i32", "i32"), ("i32",), _empty_vector),
            ("clock_time_get", ("i32", "i64", "i32"), ("i32",), _clock_time_get),
            ("clock_res_get", ("i32", "i32"), ("i32",), _clock_res_get),
            ("random_get", ("i32", "i32"), ("i32",), _random_get),
            ("sched_yield", (), ("i32",), _sched_yield),
            ("proc_exit", ("i32",), (), _proc_exit),
        ]
        return table


def _valtype(name: str) -> wasmtime.ValType:
    return wasmtime.ValType.i64() if name == "i64" else wasmtime.ValType.i32()


def _unsupported(_caller: wasmtime.Caller, *_args: int) -> int:
    return ERRNO_NOTSUP


def _no_preopens(_caller: wasmtime.Caller, _fd: int, _buf: int) -> int:
    return ERRNO_BADF


def _write(caller: wasmtime.Caller, ptr: int, data: bytes) -> int:
    try:
        GuestMemory(caller).write_raw(data, ptr)
    except HostCallRejected:
        return ERRNO_FAULT
    return ERRNO_SUCCESS


def _empty_sizes(caller: wasmtime.Caller, count_ptr: int, size_ptr: int) -> int:
    if _write(caller, count_ptr, struct.pack("<I", 0)) != ERRNO_SUCCESS:
        return ERRNO_FAULT
    return _write(caller, size_ptr, struct.pack("<I", 0))


def _empty_vector(_caller: wasmtime.Caller, _ptrs: int, _buf: int) -> int:
    return ERRNO_SUCCESS


def _clock_time_get(caller: wasmtime.Caller, clock_id: int, _precision: int, out_ptr: int) -> int:
    if clock_id == 0:
        now = time.time_ns()
    elif clock_id == 1:
        now = time.monotonic_ns()
    else:
        return ERRNO_INVAL
    return _write(caller, out_ptr, struct.pack("<Q", now))


def _clock_res_get(caller: wasmtime.Caller, clock_id: int, out_ptr: int) -> int:
    if clock_id not in (0, 1):
        return ERRNO_INVAL
    return _write(caller, out_ptr, struct.pack("<Q", 1000))


def _random_get(caller: wasmtime.Caller, buf: int, length: int) -> int:
    length = u32(length)
    if length > 1024 * 1024:
        return ERRNO_INVAL
    return _write(caller, buf, secrets.token_bytes(length))


def _sched_yield(_caller: wasmtime.Caller) -> int:
    return ERRNO_SUCCESS


def _proc_exit(_caller: wasmtime.Caller, code: int) -> None:
    raise wasmtime.Trap(f"{PROC_EXIT_PREFIX}({code})")
