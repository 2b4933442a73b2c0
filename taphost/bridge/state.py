"""Capability bridge — Call-scoped state.

A :class:`CallState` is bound to the running thread for the lifetime of one
execution context.  Host functions read the calling plugin's identity and
capabilities from it; plugins never report their own identity.

:class:`RequestState` is shared by every step of one dispatch (or, when the
caller passes it explicitly, by every dispatch of one request) and holds the
per-request context values, namespaced by plugin.
"""

from __future__ import annotations

import threading
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class UserContext:
    """Read-only projection of the authenticated caller."""

    user_id: str | None = None
    permissions: frozenset[str] = frozenset()

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    @classmethod
    def anonymous(cls) -> "UserContext":
        return cls()


class RequestState:
    """Per-request context values keyed ``"{plugin}:{key}"``."""

    def __init__(self, user: UserContext | None = None) -> None:
        self.user = user or UserContext.anonymous()
        self.request_id = uuid.uuid4().hex
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def namespaced(plugin: str, key: str) -> str:
        return f"{plugin}:{key}"

    def get(self, plugin: str, key: str) -> str | None:
        with self._lock:
            return self._values.get(self.namespaced(plugin, key))

    def set(self, plugin: str, key: str, value: str) -> None:
        with self._lock:
            self._values[self.namespaced(plugin, key)] = value

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._values)


@dataclass
class CallState:
    """Identity and resources of the plugin running in one execution context."""

    plugin: str
    capabilities: frozenset[str]
    request: RequestState
    tap: str | None = None
    payload_handle: Any = None
    invocation_id: str = field(default_factory=lambda: uuid.uuid4().hex)


_active_call: ContextVar[CallState | None] = ContextVar("taphost_active_call", default=None)


def current_call_state() -> CallState | None:
    return _active_call.get()


def bind_call_state(state: CallState):  # type: ignore[no-untyped-def]
    """Bind *state* to the current thread/task; returns the reset token."""
    return _active_call.set(state)


def unbind_call_state(token) -> None:  # type: ignore[no-untyped-def]
    try:
        _active_call.reset(token)
    except ValueError:
        # Token created in another context (released from a different task).
        _active_call.set(None)
