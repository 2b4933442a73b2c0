"""Execution engine — Trap classification."""

from __future__ import annotations

from enum import Enum

import wasmtime

from taphost.bridge.wasi import PROC_EXIT_PREFIX


class TrapKind(str, Enum):
    EPOCH = "epoch"
    MEMORY = "memory"
    FAULT = "fault"
    GUEST_ERROR = "guest_error"
    LIMIT = "limit"
    INSTANTIATION = "instantiation"
    EXIT = "exit"


_MEMORY_CODES = {"MEMORY_OUT_OF_BOUNDS", "HEAP_MISALIGNED"}


def classify(exc: Exception) -> tuple[TrapKind, str]:
    """Map a wasmtime failure onto a :class:`TrapKind` and a short detail."""
    message = str(getattr(exc, "message", None) or exc)
    first_line = message.splitlines()[0] if message else ""
    code = getattr(exc, "trap_code", None) if isinstance(exc, wasmtime.Trap) else None
    code_name = getattr(code, "name", "") or ""

    if code_name == "INTERRUPT" or "epoch" in message.lower() or "interrupt" in message.lower():
        return TrapKind.EPOCH, "cpu deadline exceeded"
    if PROC_EXIT_PREFIX in message:
        return TrapKind.EXIT, first_line
    if code_name in _MEMORY_CODES or "out of bounds memory" in message.lower():
        return TrapKind.MEMORY, first_line
    if code_name:
        return TrapKind.FAULT, code_name.lower()
    return TrapKind.FAULT, first_line
