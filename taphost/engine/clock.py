"""Execution engine — Epoch clock.

A daemon thread advancing the wasmtime engine epoch at a fixed interval.
Guest code checks the epoch cooperatively at function entries and loop
back-edges, so a call whose deadline is ``budget`` ticks away traps at most
one tick after its budget is spent.
"""

from __future__ import annotations

import threading

import wasmtime

from taphost.logging import get_logger

log = get_logger(__name__)


class EpochClock:
    def __init__(self, engine: wasmtime.Engine, tick_seconds: float = 1.0) -> None:
        self._engine = engine
        self._tick = tick_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="taphost-epoch", daemon=True)
        self._thread.start()
        log.debug("epoch_clock_started", tick_seconds=self._tick)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self._tick * 2, 1.0))
            self._thread = None
        log.debug("epoch_clock_stopped", ticks=self.ticks)

    def _run(self) -> None:
        while not self._stop.wait(self._tick):
            self._engine.increment_epoch()
            self.ticks += 1

    def __enter__(self) -> "EpochClock":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
