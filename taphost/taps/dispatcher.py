"""Tap layer — Dispatcher.

For one tap and its arguments, invokes every enabled implementer in weight
order and aggregates the results per the tap's contract.

Each step:
  1. builds a fresh :class:`CallState` (plugin identity, capabilities,
     shared request state);
  2. runs instantiate / call / release in one worker thread, so blocking
     capability calls never stall the event loop and the call state stays
     bound to the thread executing the guest;
  3. decodes the JSON output and hands it to the aggregator.

A failing step of a non-mandatory tap is recorded as a failure and logged;
the dispatch continues.  A failing step of a mandatory tap aborts the
dispatch with :class:`HardFailureError`.

The tap registry is read once per dispatch, so administrative changes made
while a dispatch is in flight never affect it.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Callable

from taphost.bridge.state import CallState, RequestState
from taphost.engine.runtime import SandboxEngine
from taphost.exceptions import (
    EngineError,
    HardFailureError,
    MissingExportError,
    PoolExhaustedError,
    TrapError,
)
from taphost.logging import bind_dispatch_context, clear_dispatch_context, get_logger
from taphost.plugins.registry import Plugin
from taphost.taps.aggregation import AccessResult, AggregatedResult, Aggregator
from taphost.taps.contracts import Aggregation, ContractBook, PayloadMode, TapContract
from taphost.taps.registry import TapRegistry

log = get_logger(__name__)


class InvalidOutputError(EngineError):
    """A step returned bytes that are not a JSON document."""

    kind = "invalid_output"
    public_keys = ("plugin", "entry_point")

    def __init__(self, plugin: str, entry_point: str, output: bytes) -> None:
        super().__init__(
            f"Plugin '{plugin}' entry point '{entry_point}' returned invalid JSON",
            context={"plugin": plugin, "entry_point": entry_point, "size": len(output)},
        )
        self.plugin = plugin
        self.entry_point = entry_point
        self.output = output


_STEP_ERRORS = (TrapError, MissingExportError, PoolExhaustedError, InvalidOutputError)


def failure_kind(exc: Exception) -> str:
    if isinstance(exc, TrapError):
        return exc.trap
    if isinstance(exc, EngineError):
        return exc.kind
    return "internal"


def encode_payload(args: Any) -> bytes:
    if args is None:
        return b""
    return json.dumps(args, separators=(",", ":"), default=str).encode("utf-8")


def decode_output(plugin: str, tap: str, output: bytes) -> Any:
    if not output:
        return None
    try:
        return json.loads(output)
    except (UnicodeDecodeError, ValueError):
        raise InvalidOutputError(plugin, tap, output) from None


class TapDispatcher:
    """Invoke tap implementers and aggregate their contributions.

    Usage::

        dispatcher = TapDispatcher(engine, ContractBook.from_config(), lambda: taps)
        result = await dispatcher.dispatch("tap_item_info", {"type": "article"})
        for info in result.flattened():
            ...
    """

    def __init__(
        self,
        engine: SandboxEngine,
        contracts: ContractBook,
        registry: Callable[[], TapRegistry],
    ) -> None:
        self._engine = engine
        self._contracts = contracts
        self._registry = registry
        self._missing_reported: set[tuple[str, str]] = set()

    @property
    def contracts(self) -> ContractBook:
        return self._contracts

    async def dispatch(
        self,
        tap: str,
        args: Any = None,
        state: RequestState | None = None,
    ) -> AggregatedResult:
        """Run every implementer of *tap*; raises :class:`HardFailureError`
        only for mandatory taps."""
        registry = self._registry()
        contract = self._contracts.get(tap)
        state = state or RequestState()
        dispatch_id = uuid.uuid4().hex[:16]
        registrations = registry.registrations(tap)

        transform = contract.aggregation is Aggregation.TRANSFORM
        aggregator = Aggregator(tap, contract.aggregation, initial=args if transform else None)
        payload = None if transform else encode_payload(args)

        bind_dispatch_context(dispatch_id=dispatch_id, tap=tap)
        try:
            log.debug(
                "tap_dispatch_started",
                implementers=len(registrations),
                aggregation=contract.aggregation.value,
                registry_version=registry.version,
            )
            for reg in registrations:
                plugin = reg.plugin
                bind_dispatch_context(plugin=plugin.name)
                step_args = aggregator.current if transform else args
                step_payload = encode_payload(step_args) if payload is None else payload
                try:
                    value = await self._step(plugin, contract, step_args, step_payload, state)
                except _STEP_ERRORS as exc:
                    kind = failure_kind(exc)
                    if contract.mandatory:
                        log.error("tap_step_failed_mandatory", failure=kind, error=exc.message)
                        raise HardFailureError(tap, plugin.name, kind, exc) from exc
                    self._report_failure(plugin.name, tap, exc, kind)
                    aggregator.fail(plugin.name, reg.weight, kind, exc.message)
                    continue

                conflicts = aggregator.add(plugin.name, reg.weight, value)
                if conflicts:
                    log.warning("tap_transform_conflict", paths=conflicts)
            result = aggregator.finish(dispatch_id)
        finally:
            clear_dispatch_context()

        log.debug(
            "tap_dispatched",
            dispatch_id=dispatch_id,
            tap=tap,
            contributions=len(result.contributions),
            failures=len(result.failures),
        )
        return result

    async def invoke_single(
        self,
        plugin: Plugin,
        tap: str,
        args: Any = None,
        state: RequestState | None = None,
    ) -> Any:
        """Invoke *tap* on one plugin only (lifecycle taps).

        Failures of a mandatory tap raise :class:`HardFailureError`; other
        failures are logged and ``None`` is returned.
        """
        contract = self._contracts.get(tap)
        state = state or RequestState()
        bind_dispatch_context(dispatch_id=uuid.uuid4().hex[:16], tap=tap, plugin=plugin.name)
        try:
            return await self._step(plugin, contract, args, encode_payload(args), state)
        except _STEP_ERRORS as exc:
            kind = failure_kind(exc)
            if contract.mandatory:
                log.error("tap_step_failed_mandatory", failure=kind, error=exc.message)
                raise HardFailureError(tap, plugin.name, kind, exc) from exc
            self._report_failure(plugin.name, tap, exc, kind)
            return None
        finally:
            clear_dispatch_context()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _step(
        self,
        plugin: Plugin,
        contract: TapContract,
        args: Any,
        payload: bytes,
        state: RequestState,
    ) -> Any:
        tap = contract.name
        if tap not in plugin.compiled.entry_points:
            raise MissingExportError(plugin.name, tap)

        call_state = CallState(
            plugin=plugin.name,
            capabilities=plugin.capabilities,
            request=state,
            tap=tap,
        )
        if contract.payload_mode is PayloadMode.HANDLE:
            call_state.payload_handle = args
            payload = b""

        output, elapsed_ms = await asyncio.to_thread(self._execute, plugin, tap, payload, call_state)
        log.debug("tap_step_completed", elapsed_ms=elapsed_ms, output_bytes=len(output))

        if contract.aggregation is Aggregation.DOMINANCE:
            return self._decode_access(plugin.name, tap, output)
        return decode_output(plugin.name, tap, output)

    def _execute(self, plugin: Plugin, tap: str, payload: bytes, call_state: CallState) -> tuple[bytes, float]:
        with self._engine.session(plugin.compiled, call_state) as ctx:
            result = self._engine.call(ctx, tap, payload)
        return result.output, result.elapsed_ms

    @staticmethod
    def _decode_access(plugin: str, tap: str, output: bytes) -> Any:
        try:
            value = decode_output(plugin, tap, output)
        except InvalidOutputError:
            value = output.decode("utf-8", errors="replace").strip()
        access = AccessResult.parse(value)
        if access is None:
            log.warning("tap_access_unparseable", output_bytes=len(output))
            access = AccessResult.NEUTRAL
        return access.value

    def _report_failure(self, plugin: str, tap: str, exc: Exception, kind: str) -> None:
        if isinstance(exc, MissingExportError):
            key = (plugin, tap)
            if key in self._missing_reported:
                log.debug("tap_step_missing_export", reason=exc.reason)
                return
            self._missing_reported.add(key)
            log.warning("tap_step_missing_export", reason=exc.reason)
            return
        log.warning("tap_step_trapped", failure=kind, error=str(exc))
