"""Capability bridge — Guest ABI helpers.

Host functions exchange data with the guest through its exported linear
memory.  Strings and JSON documents cross the boundary as ``(ptr, len)``
pairs; results are written into a guest-provided buffer ``(out_ptr,
out_cap)`` and the host function returns the number of bytes written, or a
negative :class:`HostError` code.
"""

from __future__ import annotations

import json
from enum import IntEnum
from typing import Any

import wasmtime

_U32 = 0xFFFFFFFF


class HostError(IntEnum):
    """Negative return codes of host functions.  Stable guest-facing ABI."""

    OK = 0
    MEMORY_MISSING = -1
    PARAM1_READ = -2
    PARAM2_OR_OUTPUT = -3
    PARAM3_READ = -4
    NOT_FOUND = -5
    NO_SERVICES = -10
    PARAM_DESERIALIZE = -11
    INVALID_IDENTIFIER = -12
    DDL_REJECTED = -13
    SQL_FAILED = -14
    SERIALIZE_FAILED = -15
    CAPABILITY_DENIED = -16
    TIMEOUT = -17
    LIMIT_EXCEEDED = -18
    OUTPUT_TOO_SMALL = -19
    INTERNAL = -99


class HostCallRejected(Exception):
    """Raised inside a host function to return *code* to the guest."""

    def __init__(self, code: HostError, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


def reject(code: HostError, reason: str) -> HostCallRejected:
    return HostCallRejected(code, reason)


def u32(value: int) -> int:
    """Reinterpret a wasm i32 (delivered signed) as unsigned."""
    return value & _U32


class GuestMemory:
    """Bounds-checked view over the calling instance's ``memory`` export."""

    def __init__(self, caller: wasmtime.Caller) -> None:
        memory = caller.get("memory")
        if not isinstance(memory, wasmtime.Memory):
            raise reject(HostError.MEMORY_MISSING, "guest does not export memory")
        self._caller = caller
        self._memory = memory

    @property
    def size(self) -> int:
        return self._memory.data_len(self._caller)

    def read(self, ptr: int, length: int, code: HostError, limit: int | None = None) -> bytes:
        ptr, length = u32(ptr), u32(length)
        if limit is not None and length > limit:
            raise reject(HostError.LIMIT_EXCEEDED, f"parameter of {length} bytes exceeds {limit}")
        if ptr + length > self.size:
            raise reject(code, "parameter out of bounds")
        if length == 0:
            return b""
        return bytes(self._memory.read(self._caller, ptr, ptr + length))

    def read_str(self, ptr: int, length: int, code: HostError, limit: int | None = None) -> str:
        raw = self.read(ptr, length, code, limit)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise reject(code, "parameter is not valid UTF-8") from None

    def read_json(self, ptr: int, length: int, code: HostError, limit: int | None = None) -> Any:
        text = self.read_str(ptr, length, code, limit)
        try:
            return json.loads(text)
        except ValueError:
            raise reject(HostError.PARAM_DESERIALIZE, "parameter is not valid JSON") from None

    def write_output(self, data: bytes, out_ptr: int, out_cap: int) -> int:
        """Copy *data* into the guest buffer and return its length."""
        out_ptr, out_cap = u32(out_ptr), u32(out_cap)
        if len(data) > out_cap:
            raise reject(HostError.OUTPUT_TOO_SMALL, f"output needs {len(data)} bytes")
        if out_ptr + len(data) > self.size:
            raise reject(HostError.PARAM2_OR_OUTPUT, "output buffer out of bounds")
        if data:
            self._memory.write(self._caller, data, out_ptr)
        return len(data)

    def write_raw(self, data: bytes, ptr: int) -> None:
        ptr = u32(ptr)
        if ptr + len(data) > self.size:
            raise reject(HostError.PARAM2_OR_OUTPUT, "buffer out of bounds")
        if data:
            self._memory.write(self._caller, data, ptr)


def encode_json(value: Any) -> bytes:
    try:
        return json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError):
        raise reject(HostError.SERIALIZE_FAILED, "result is not serialisable") from None
