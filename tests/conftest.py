"""Shared fixtures: a fake delivery platform wired to a probe helper."""
import asyncio
from typing import Awaitable, Callable, List
import pytest_asyncio
from probehelper.adapters.memory import (
    InMemoryBroker,
    InMemoryMessageBus,
    InMemoryObjectStore,
    InMemoryOrchestrationClient,
    Operation,
)
from probehelper.event_models import EventEnvelope
from probehelper.metrics import Metrics
from probehelper.probe.handlers import build_registry
from probehelper.probe.helper import ProbeHelper
from probehelper.probe.kinds import (
    AUDIT_LOG_WRITTEN_TYPE,
    CREATE_TOPIC_METHOD,
    PING_TYPE,
    PUBSUB_PUBLISHED_TYPE,
    SCHEDULER_EXECUTED_TYPE,
)

TEST_NAMESPACE = "test-namespace"
TEST_PROJECT_ID = "test-project-id"
TEST_TOPIC_ID = "cloudpubsubsource-topic"
TEST_STORAGE_BUCKET = "cloudstoragesource-bucket"
TEST_POD_NAME = "apiserversource-test-pod"
TICK_INTERVAL = 0.05

STORAGE_TYPES = {
    "create": "google.cloud.storage.object.v1.finalized",
    "update_metadata": "google.cloud.storage.object.v1.metadataUpdated",
    "archive": "google.cloud.storage.object.v1.archived",
    "delete": "google.cloud.storage.object.v1.deleted",
}
APISERVER_TYPES = {
    "create": "dev.knative.apiserver.resource.add",
    "update": "dev.knative.apiserver.resource.update",
    "delete": "dev.knative.apiserver.resource.delete",
}

Deliver = Callable[[EventEnvelope], Awaitable[object]]


def probe_event(kind: str, **extensions: str) -> EventEnvelope:
    """A probe request in the shape external schedulers send."""
    return EventEnvelope(
        id=f"{kind}-1234567890",
        type=kind,
        source="probe",
        extensions={"targetpath": f"/{TEST_NAMESPACE}", **extensions},
    )


class FakePlatform:
    """
    Stands in for the delivery platform.

    Every successful action against the in-memory backends is turned into the
    event the corresponding source would deliver; the periodic sources tick
    on their own until stopped.
    """

    def __init__(self):
        self.broker = InMemoryBroker({(TEST_NAMESPACE, "default")})
        self.bus = InMemoryMessageBus({TEST_TOPIC_ID})
        self.store = InMemoryObjectStore({TEST_STORAGE_BUCKET})
        self.orchestration = InMemoryOrchestrationClient()
        self.delivered: List[EventEnvelope] = []
        self._deliver: Deliver | None = None
        self._tickers: List[asyncio.Task] = []

    @property
    def adapters(self):
        return [self.broker, self.bus, self.store, self.orchestration]

    def connect(self, deliver: Deliver):
        self._deliver = deliver
        self.broker.subscribe(self._on_broker)
        self.bus.subscribe(self._on_bus)
        self.store.subscribe(self._on_storage)
        self.orchestration.subscribe(self._on_orchestration)

    def start_tickers(self, interval: float = TICK_INTERVAL):
        self._tickers.append(asyncio.create_task(self._tick(interval, lambda: EventEnvelope(
            id="1234567890",
            type=SCHEDULER_EXECUTED_TYPE,
            source=f"//cloudscheduler.googleapis.com/projects/{TEST_PROJECT_ID}/locations/us-central1/jobs/test-job",
        ))))
        self._tickers.append(asyncio.create_task(self._tick(interval, lambda: EventEnvelope(
            id="1234567890",
            type=PING_TYPE,
            source=f"/apis/v1/namespaces/{TEST_NAMESPACE}/pingsources/test-ping-source",
        ))))

    async def stop(self):
        for task in self._tickers:
            task.cancel()
        await asyncio.gather(*self._tickers, return_exceptions=True)
        self._tickers.clear()

    async def deliver(self, event: EventEnvelope):
        self.delivered.append(event)
        if self._deliver is not None:
            await self._deliver(event)

    async def _tick(self, interval: float, make_event):
        while True:
            await asyncio.sleep(interval)
            await self.deliver(make_event())

    async def _on_broker(self, op: Operation):
        await self.deliver(op.attributes["event"])

    async def _on_bus(self, op: Operation):
        if op.action == "publish":
            await self.deliver(EventEnvelope(
                id=op.attributes["message_id"],
                type=PUBSUB_PUBLISHED_TYPE,
                source=f"//pubsub.googleapis.com/projects/{TEST_PROJECT_ID}/topics/{op.resource}",
                data={"message": {"data": op.attributes["data"].decode()}},
            ))
        elif op.action == "create_topic":
            await self.deliver(EventEnvelope(
                id="1234567890",
                type=AUDIT_LOG_WRITTEN_TYPE,
                source=f"//cloudaudit.googleapis.com/projects/{TEST_PROJECT_ID}/logs/activity",
                subject=f"pubsub.googleapis.com/projects/{TEST_PROJECT_ID}/topics/{op.resource}",
                extensions={"methodname": CREATE_TOPIC_METHOD},
            ))

    async def _on_storage(self, op: Operation):
        await self.deliver(EventEnvelope(
            id="1234567890",
            type=STORAGE_TYPES[op.action],
            source=f"//storage.googleapis.com/projects/_/buckets/{op.attributes['bucket']}",
            subject=f"objects/{op.attributes['name']}",
        ))

    async def _on_orchestration(self, op: Operation):
        await self.deliver(EventEnvelope(
            id="1234567890",
            type=APISERVER_TYPES[op.action],
            source="https://0.0.0.0:443",
            subject=f"/apis/v1/namespaces/{TEST_NAMESPACE}/events/apiserversource.1234567890",
            extensions={"name": op.attributes["name"]},
        ))


def make_helper(adapters, **overrides) -> ProbeHelper:
    broker, bus, store, orchestration = adapters
    handlers = build_registry(
        broker,
        bus,
        store,
        orchestration,
        pod_namespace=TEST_NAMESPACE,
        pod_name=TEST_POD_NAME,
    )
    options = dict(
        liveness_stale_duration=1.0,
        default_timeout=2.0,
        max_timeout=30 * 60.0,
        metrics=Metrics(),
        adapters=adapters,
    )
    options.update(overrides)
    return ProbeHelper(handlers, **options)


@pytest_asyncio.fixture
async def platform():
    p = FakePlatform()
    yield p
    await p.stop()


@pytest_asyncio.fixture
async def helper(platform):
    """A probe helper whose actions are delivered back by the fake platform."""
    h = make_helper(platform.adapters)
    platform.connect(h.receive)
    platform.start_tickers()
    yield h
    await h.shutdown()


@pytest_asyncio.fixture
async def silent_helper():
    """A probe helper whose actions are never delivered back."""
    adapters = [
        InMemoryBroker({(TEST_NAMESPACE, "default")}),
        InMemoryMessageBus({TEST_TOPIC_ID}),
        InMemoryObjectStore({TEST_STORAGE_BUCKET}),
        InMemoryOrchestrationClient(),
    ]
    h = make_helper(adapters)
    yield h
    await h.shutdown()


