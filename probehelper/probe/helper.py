"""
The probe helper: probe listener, receiver listener and liveness.

``probe`` admits a probe request, triggers the delivery path it names and
blocks until the platform delivers the resulting event back to ``receive``
or the deadline passes. The outcome is reported once; nothing is retried.
"""
import asyncio
from enum import Enum
from typing import Any, Coroutine, Iterable, List, Mapping, Set
import structlog
from pydantic import BaseModel
from ..adapters.base import Adapter
from ..durations import format_duration
from ..event_models import EventEnvelope
from ..metrics import Metrics
from .errors import CorrelationKeyCollision, ProbeValidationError, TriggerError, UnknownProbeKind
from .handlers import ProbeHandler
from .kinds import ProbeKind
from .liveness import LivenessMonitor, LivenessState
from .pending import PendingTable

log = structlog.get_logger()


class ProbeOutcome(str, Enum):
    ACK = "ack"
    INVALID = "invalid"
    UNRECOGNIZED = "unrecognized"
    COLLISION = "collision"
    TRIGGER_FAILED = "trigger_failed"
    TIMED_OUT = "timed_out"
    SHUTDOWN = "shutdown"


class ProbeResult(BaseModel):
    id: str
    kind: str
    outcome: ProbeOutcome
    reason: str | None = None

    @property
    def ack(self) -> bool:
        return self.outcome is ProbeOutcome.ACK


class ProbeHelper:
    """
    Correlates probe requests with the events the platform delivers.

    Args:
        handlers: Dispatch registry, one handler per probe kind
        liveness_stale_duration: Seconds without a successful round trip
            after which the helper reports itself unhealthy
        default_timeout: Wait bound for probes without a ``timeout``
        max_timeout: Upper bound for any ``timeout`` override
        adapters: Backends closed on shutdown
    """

    def __init__(
        self,
        handlers: Mapping[ProbeKind, ProbeHandler],
        *,
        liveness_stale_duration: float,
        default_timeout: float,
        max_timeout: float,
        metrics: Metrics | None = None,
        liveness: LivenessState | None = None,
        adapters: Iterable[Adapter] = (),
    ):
        missing = set(ProbeKind) - set(handlers)
        if missing:
            raise ValueError(f"no handler for probe kinds: {sorted(k.value for k in missing)}")
        self.handlers = dict(handlers)
        self.default_timeout = default_timeout
        self.max_timeout = max_timeout
        self.metrics = metrics or Metrics()
        self.pending = PendingTable()
        self.liveness = LivenessMonitor(liveness or LivenessState(), liveness_stale_duration)
        self.adapters: List[Adapter] = list(adapters)
        self._tasks: Set[asyncio.Task] = set()
        self._adapters_closed = False
        # Distinct handlers, in registry order, for matching delivered events
        self._receivers: List[ProbeHandler] = []
        for handler in self.handlers.values():
            if handler not in self._receivers:
                self._receivers.append(handler)

    async def probe(self, event: EventEnvelope) -> ProbeResult:
        """
        Run one round trip for a probe request.

        Returns:
            The result; ``result.ack`` is the binary outcome
        """
        try:
            handler = self.handler_for(event.type)
        except UnknownProbeKind as e:
            return self._finish(event, ProbeOutcome.UNRECOGNIZED, str(e))

        try:
            handler.validate(event)
            key = handler.correlation_key(event)
            timeout = handler.timeout(event, self.default_timeout, self.max_timeout)
        except ProbeValidationError as e:
            return self._finish(event, ProbeOutcome.INVALID, str(e))

        if self.pending.closed:
            return self._finish(event, ProbeOutcome.SHUTDOWN, "probe helper is shutting down")
        try:
            waiter = self.pending.register(key, timeout)
        except CorrelationKeyCollision as e:
            return self._finish(event, ProbeOutcome.COLLISION, str(e))

        loop = asyncio.get_running_loop()
        started = loop.time()
        self.metrics.probe_pending.set(len(self.pending))
        log.info("probe.admitted", id=event.id, kind=event.type, key=key, timeout=format_duration(timeout))
        triggered = False
        try:
            if waiter.done:
                # Zero deadline: nothing to wait for, so nothing is triggered
                return self._finish(event, ProbeOutcome.TIMED_OUT, "deadline already elapsed")
            try:
                await handler.trigger(event)
            except TriggerError as e:
                return self._finish(event, ProbeOutcome.TRIGGER_FAILED, str(e))
            except Exception as e:
                log.error("probe.trigger_error", id=event.id, kind=event.type, error=str(e), exc_info=True)
                return self._finish(event, ProbeOutcome.TRIGGER_FAILED, f"{event.type} trigger failed: {e}")
            triggered = True
            resolved = await waiter.wait()
        finally:
            # Also runs when the caller goes away mid-wait
            self.pending.discard(waiter)
            self.metrics.probe_pending.set(len(self.pending))
            if triggered:
                self._spawn(handler.finalize(event))

        if resolved:
            return self._finish(event, ProbeOutcome.ACK, duration=loop.time() - started)
        if self.pending.closed:
            return self._finish(event, ProbeOutcome.SHUTDOWN, "probe helper shut down while waiting")
        return self._finish(event, ProbeOutcome.TIMED_OUT, f"no delivery within {format_duration(timeout)}")

    async def receive(self, event: EventEnvelope) -> bool:
        """
        Handle an event delivered by the platform.

        Unmatched events (unknown, already resolved or expired) are ignored.

        Returns:
            True if the event resolved a pending probe
        """
        key = None
        for handler in self._receivers:
            key = handler.delivered_key(event)
            if key is not None:
                break

        resolved = key is not None and self.pending.resolve(key)
        self.metrics.record_delivery(resolved)
        if resolved:
            self.liveness.state.mark_success()
            self.metrics.last_success_timestamp.set_to_current_time()
            log.info("receiver.resolved", id=event.id, type=event.type, key=key)
        else:
            log.debug("receiver.unmatched", id=event.id, type=event.type, key=key)
        return resolved

    def handler_for(self, kind: str) -> ProbeHandler:
        """
        Look up the handler of a probe kind.

        Raises:
            UnknownProbeKind: If the kind is not a recognized probe kind
        """
        parsed = ProbeKind.parse(kind)
        if parsed is None:
            raise UnknownProbeKind(kind)
        return self.handlers[parsed]

    def healthy(self) -> bool:
        return self.liveness.healthy()

    async def shutdown(self):
        """Release every waiting probe as NACK and close the adapters."""
        released = self.pending.close()
        log.info("probe_helper.stopping", released=released)
        # Let released probes resume and spawn their cleanup before it is awaited
        await asyncio.sleep(0)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._adapters_closed = True
        for adapter in self.adapters:
            await adapter.close()

    def _spawn(self, coro: Coroutine[Any, Any, Any]):
        if self._adapters_closed:
            log.warning("probe.cleanup_skipped", reason="adapters closed")
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _finish(
        self,
        event: EventEnvelope,
        outcome: ProbeOutcome,
        reason: str | None = None,
        duration: float | None = None,
    ) -> ProbeResult:
        self.metrics.record_probe(event.type if ProbeKind.parse(event.type) else "unrecognized", outcome.value, duration)
        if outcome is ProbeOutcome.ACK:
            log.info("probe.ack", id=event.id, kind=event.type, duration_ms=round((duration or 0) * 1000, 2))
        else:
            log.warning("probe.nack", id=event.id, kind=event.type, outcome=outcome.value, reason=reason)
        return ProbeResult(id=event.id, kind=event.type, outcome=outcome, reason=reason)
