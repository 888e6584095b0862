"""
Per-kind probe handlers.

A handler knows, for one delivery path:

- which extensions a probe request must carry (``validate``)
- the correlation key of a request (``correlation_key``) and of the event
  the platform delivers back for it (``delivered_key``); both must agree
- the single external action that starts the round trip (``trigger``)
- how long to wait for the round trip (``timeout``)
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable
import httpx
import structlog
from redis.exceptions import RedisError
from ..adapters.base import AdapterError, BrokerClient, MessageBus, ObjectStore, OrchestrationClient
from ..durations import DurationError, parse_duration
from ..event_models import EventEnvelope
from .errors import ProbeValidationError, TriggerError
from .kinds import (
    APISERVER_EVENT_TYPES,
    AUDIT_LOG_WRITTEN_TYPE,
    CREATE_TOPIC_METHOD,
    PING_TYPE,
    PUBSUB_PUBLISHED_TYPE,
    SCHEDULER_EXECUTED_TYPE,
    STORAGE_EVENT_TYPES,
    ApiServerPhase,
    ProbeKind,
    StoragePhase,
)

log = structlog.get_logger()

DEFAULT_BROKER = "default"
TIMEOUT_EXTENSION = "timeout"
PERIOD_EXTENSION = "period"

# Errors an adapter may raise while performing a trigger
_TRIGGER_FAILURES = (AdapterError, httpx.HTTPError, RedisError, OSError)


def required_extension(event: EventEnvelope, name: str) -> str:
    value = event.extension(name)
    if value is None:
        raise ProbeValidationError(f"{event.type} probe is missing the {name!r} extension")
    return value


def timeout_override(event: EventEnvelope) -> float | None:
    """Parsed ``timeout`` extension, or None if absent, unparsable or negative."""
    raw = event.extension(TIMEOUT_EXTENSION)
    if raw is None:
        return None
    try:
        override = parse_duration(raw)
    except DurationError:
        log.warning("probe.invalid_timeout", id=event.id, timeout=raw)
        return None
    return override if override >= 0 else None


def _last_segment(path: str, marker: str) -> str | None:
    """Return what follows ``marker`` in a resource path, e.g. ".../topics/<x>"."""
    head, sep, tail = path.rpartition(marker)
    if not sep or not tail or "/" in tail:
        return None
    return tail


class ProbeHandler(ABC):
    """Validation, correlation and trigger logic for one probe kind."""

    kinds: tuple = ()

    def validate(self, event: EventEnvelope):
        """Raise ProbeValidationError if the request cannot be dispatched."""
        pass

    @abstractmethod
    def correlation_key(self, event: EventEnvelope) -> str:
        """Key under which a validated probe request waits."""
        pass

    @abstractmethod
    def delivered_key(self, event: EventEnvelope) -> str | None:
        """Key carried by a delivered event, or None if it is not for this handler."""
        pass

    async def trigger(self, event: EventEnvelope):
        """Perform the external action. Passive handlers do nothing."""
        pass

    async def finalize(self, event: EventEnvelope):
        """Clean up after the round trip finished, whatever its outcome."""
        pass

    def timeout(self, event: EventEnvelope, default: float, maximum: float) -> float:
        """
        Compute the wait bound of a probe request.

        A non-negative ``timeout`` extension overrides ``default``; anything
        unparsable or negative falls back to it. The result is clamped to
        ``[0, maximum]``.
        """
        override = timeout_override(event)
        bound = default if override is None else override
        return min(max(bound, 0.0), maximum)

    async def _run(self, event: EventEnvelope, action, *args):
        try:
            return await action(*args)
        except _TRIGGER_FAILURES as e:
            raise TriggerError(f"{event.type} trigger failed: {e}") from e


class BrokerE2EDeliveryHandler(ProbeHandler):
    """Forwards the probe itself through a broker and waits for it to come back."""

    kinds = (ProbeKind.BROKER_E2E_DELIVERY,)

    def __init__(self, broker: BrokerClient):
        self.broker = broker

    @staticmethod
    def _target(event: EventEnvelope) -> tuple[str, str]:
        return required_extension(event, "namespace"), event.extension("broker", DEFAULT_BROKER)

    def validate(self, event: EventEnvelope):
        self._target(event)

    def correlation_key(self, event: EventEnvelope) -> str:
        namespace, broker = self._target(event)
        return f"broker/{namespace}/{broker}"

    def delivered_key(self, event: EventEnvelope) -> str | None:
        if event.type != ProbeKind.BROKER_E2E_DELIVERY.value:
            return None
        namespace = event.extension("namespace")
        if namespace is None:
            return None
        return f"broker/{namespace}/{event.extension('broker', DEFAULT_BROKER)}"

    async def trigger(self, event: EventEnvelope):
        namespace, broker = self._target(event)
        # Stamp the broker so the delivered copy carries the full key
        forwarded = event.with_extension("broker", broker)
        await self._run(event, self.broker.send, namespace, broker, forwarded)


class CloudPubSubSourceHandler(ProbeHandler):
    """Publishes a message to the topic a message-bus source subscribes to."""

    kinds = (ProbeKind.CLOUD_PUBSUB_SOURCE,)

    def __init__(self, bus: MessageBus):
        self.bus = bus

    def validate(self, event: EventEnvelope):
        required_extension(event, "topic")

    def correlation_key(self, event: EventEnvelope) -> str:
        return f"pubsub/{required_extension(event, 'topic')}"

    def delivered_key(self, event: EventEnvelope) -> str | None:
        if event.type != PUBSUB_PUBLISHED_TYPE:
            return None
        topic = _last_segment(event.source, "/topics/")
        return f"pubsub/{topic}" if topic else None

    async def trigger(self, event: EventEnvelope):
        topic = required_extension(event, "topic")
        await self._run(event, self.bus.publish, topic, event.id.encode(), {"probeid": event.id})


class CloudStorageSourceHandler(ProbeHandler):
    """One phase of the object lifecycle: create, update metadata, archive, delete."""

    def __init__(self, store: ObjectStore, phase: StoragePhase, object_name: str):
        self.store = store
        self.phase = phase
        self.object_name = object_name
        self.kinds = (ProbeKind(f"cloudstoragesource-probe-{phase.value}"),)

    def validate(self, event: EventEnvelope):
        required_extension(event, "bucket")

    def correlation_key(self, event: EventEnvelope) -> str:
        return f"storage/{required_extension(event, 'bucket')}/{self.phase.value}"

    def delivered_key(self, event: EventEnvelope) -> str | None:
        if STORAGE_EVENT_TYPES.get(event.type) is not self.phase:
            return None
        bucket = _last_segment(event.source, "/buckets/")
        return f"storage/{bucket}/{self.phase.value}" if bucket else None

    async def trigger(self, event: EventEnvelope):
        bucket = required_extension(event, "bucket")
        name = self.object_name
        if self.phase is StoragePhase.CREATE:
            await self._run(event, self.store.create_object, bucket, name, event.id.encode())
        elif self.phase is StoragePhase.UPDATE_METADATA:
            await self._run(event, self.store.update_metadata, bucket, name, {"some-key": "Metadata updated!"})
        elif self.phase is StoragePhase.ARCHIVE:
            await self._run(event, self.store.archive_object, bucket, name)
        else:
            await self._run(event, self.store.delete_object, bucket, name)


class PeriodicSourceHandler(ProbeHandler):
    """
    Waits for the next autonomous tick of a periodic source.

    Nothing is triggered: the source ticks on its own and the probe only
    bounds how long it is willing to wait, by the ``period`` extension.
    """

    def __init__(self, kind: ProbeKind, delivered_type: str, period_required: bool):
        self.kinds = (kind,)
        self.delivered_type = delivered_type
        self.period_required = period_required

    def _period(self, event: EventEnvelope) -> float | None:
        raw = event.extension(PERIOD_EXTENSION)
        if raw is None:
            if self.period_required:
                raise ProbeValidationError(f"{event.type} probe is missing the 'period' extension")
            return None
        try:
            period = parse_duration(raw)
        except DurationError as e:
            raise ProbeValidationError(f"{event.type} probe has an invalid period: {e}") from e
        if period < 0:
            raise ProbeValidationError(f"{event.type} probe has a negative period {raw!r}")
        return period

    def validate(self, event: EventEnvelope):
        self._period(event)

    def correlation_key(self, event: EventEnvelope) -> str:
        return self.kinds[0].value.removesuffix("-probe")

    def delivered_key(self, event: EventEnvelope) -> str | None:
        if event.type != self.delivered_type:
            return None
        return self.kinds[0].value.removesuffix("-probe")

    def timeout(self, event: EventEnvelope, default: float, maximum: float) -> float:
        """The period bounds the wait; a ``timeout`` may only shorten it."""
        period = self._period(event)
        override = timeout_override(event)
        if period is None:
            bound = default if override is None else override
        else:
            bound = period if override is None else min(period, override)
        return min(max(bound, 0.0), maximum)


class ApiServerSourceHandler(ProbeHandler):
    """One phase of the probe pod lifecycle: create, update, delete."""

    def __init__(self, client: OrchestrationClient, phase: ApiServerPhase, namespace: str, pod_name: str):
        self.client = client
        self.phase = phase
        self.namespace = namespace
        self.pod_name = pod_name
        self.kinds = (ProbeKind(f"apiserversource-probe-{phase.value}"),)

    def _pod(self, event: EventEnvelope) -> tuple[str, str]:
        return event.extension("namespace", self.namespace), self.pod_name

    def correlation_key(self, event: EventEnvelope) -> str:
        _, name = self._pod(event)
        return f"apiserver/{name}/{self.phase.value}"

    def delivered_key(self, event: EventEnvelope) -> str | None:
        if APISERVER_EVENT_TYPES.get(event.type) is not self.phase:
            return None
        name = event.extension("name")
        return f"apiserver/{name}/{self.phase.value}" if name else None

    async def trigger(self, event: EventEnvelope):
        namespace, name = self._pod(event)
        if self.phase is ApiServerPhase.CREATE:
            await self._run(event, self.client.create_pod, namespace, name)
        elif self.phase is ApiServerPhase.UPDATE:
            await self._run(event, self.client.update_pod, namespace, name)
        else:
            await self._run(event, self.client.delete_pod, namespace, name)


class CloudAuditLogsSourceHandler(ProbeHandler):
    """Creates a bus topic; the audit-log source reports the CreateTopic call."""

    kinds = (ProbeKind.CLOUD_AUDIT_LOGS_SOURCE,)

    def __init__(self, bus: MessageBus):
        self.bus = bus

    @staticmethod
    def topic_for(event: EventEnvelope) -> str:
        # The probe ID doubles as the topic name
        return event.id

    def correlation_key(self, event: EventEnvelope) -> str:
        return f"auditlogs/{self.topic_for(event)}"

    def delivered_key(self, event: EventEnvelope) -> str | None:
        if event.type != AUDIT_LOG_WRITTEN_TYPE:
            return None
        if event.extension("methodname") != CREATE_TOPIC_METHOD:
            return None
        topic = _last_segment(event.subject or "", "/topics/")
        return f"auditlogs/{topic}" if topic else None

    async def trigger(self, event: EventEnvelope):
        await self._run(event, self.bus.create_topic, self.topic_for(event))

    async def finalize(self, event: EventEnvelope):
        topic = self.topic_for(event)
        try:
            await self.bus.delete_topic(topic)
        except _TRIGGER_FAILURES as e:
            log.warning("probe.cleanup_failed", id=event.id, topic=topic, error=str(e))


def build_registry(
    broker: BrokerClient,
    bus: MessageBus,
    store: ObjectStore,
    orchestration: OrchestrationClient,
    *,
    storage_object_name: str = "cloudstoragesource-probe",
    pod_namespace: str = "default",
    pod_name: str = "apiserversource-probe",
) -> Dict[ProbeKind, ProbeHandler]:
    """
    Build the dispatch registry.

    Raises:
        RuntimeError: If a probe kind has no handler
    """
    handlers: Iterable[ProbeHandler] = [
        BrokerE2EDeliveryHandler(broker),
        CloudPubSubSourceHandler(bus),
        *(CloudStorageSourceHandler(store, phase, storage_object_name) for phase in StoragePhase),
        PeriodicSourceHandler(ProbeKind.CLOUD_SCHEDULER_SOURCE, SCHEDULER_EXECUTED_TYPE, period_required=False),
        PeriodicSourceHandler(ProbeKind.PING_SOURCE, PING_TYPE, period_required=True),
        *(ApiServerSourceHandler(orchestration, phase, pod_namespace, pod_name) for phase in ApiServerPhase),
        CloudAuditLogsSourceHandler(bus),
    ]
    registry: Dict[ProbeKind, ProbeHandler] = {}
    for handler in handlers:
        for kind in handler.kinds:
            registry[kind] = handler

    missing = set(ProbeKind) - set(registry)
    if missing:
        raise RuntimeError(f"no handler for probe kinds: {sorted(k.value for k in missing)}")
    return registry
