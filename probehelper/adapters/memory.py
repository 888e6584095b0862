"""In-memory adapters.

They keep the state a real backend would keep and record every operation.
Listeners registered with ``subscribe`` are notified asynchronously after
each successful operation, which is how a test platform turns actions into
delivered events.
"""
import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Set, Tuple
import structlog
from pydantic import BaseModel, Field
from .base import (
    BrokerClient,
    MessageBus,
    ObjectStore,
    OrchestrationClient,
    ResourceConflict,
    ResourceNotFound,
)
from ..event_models import EventEnvelope

log = structlog.get_logger()


class Operation(BaseModel):
    """An action performed against an in-memory backend."""
    action: str
    resource: str
    attributes: Dict[str, Any] = Field(default_factory=dict)


Listener = Callable[[Operation], Awaitable[None]]


class _Observable:
    def __init__(self):
        self.operations: List[Operation] = []
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def _record(self, op: Operation):
        self.operations.append(op)
        for listener in self._listeners:
            task = asyncio.get_running_loop().create_task(listener(op))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def health_check(self) -> bool:
        """In-memory adapters are always healthy."""
        return True

    async def close(self):
        for task in list(self._tasks):
            task.cancel()


class InMemoryBroker(_Observable, BrokerClient):
    """Broker ingress that only knows the brokers it was told about."""

    def __init__(self, brokers: Set[Tuple[str, str]] | None = None):
        super().__init__()
        self.brokers = set(brokers or ())

    async def send(self, namespace: str, broker: str, event: EventEnvelope):
        if (namespace, broker) not in self.brokers:
            raise ResourceNotFound(f"broker {namespace}/{broker} not found")
        log.info("broker.event_sent", id=event.id, namespace=namespace, broker=broker, adapter="memory")
        self._record(Operation(
            action="send",
            resource=f"{namespace}/{broker}",
            attributes={"event": event},
        ))


class InMemoryMessageBus(_Observable, MessageBus):
    """Message bus keeping published messages per topic."""

    def __init__(self, topics: Set[str] | None = None):
        super().__init__()
        self.topics: Dict[str, List[Dict[str, Any]]] = {t: [] for t in topics or ()}
        self._ids = itertools.count(1)

    async def publish(self, topic: str, data: bytes, attributes: Dict[str, str] | None = None) -> str:
        if topic not in self.topics:
            raise ResourceNotFound(f"topic {topic} not found")
        message_id = str(next(self._ids))
        self.topics[topic].append({"id": message_id, "data": data, "attributes": dict(attributes or {})})
        log.info("bus.message_published", topic=topic, message_id=message_id, adapter="memory")
        self._record(Operation(
            action="publish",
            resource=topic,
            attributes={"message_id": message_id, "data": data, "attributes": dict(attributes or {})},
        ))
        return message_id

    async def create_topic(self, topic: str):
        if topic in self.topics:
            raise ResourceConflict(f"topic {topic} already exists")
        self.topics[topic] = []
        self._record(Operation(action="create_topic", resource=topic))

    async def delete_topic(self, topic: str):
        if self.topics.pop(topic, None) is None:
            raise ResourceNotFound(f"topic {topic} not found")
        self._record(Operation(action="delete_topic", resource=topic))


class InMemoryObjectStore(_Observable, ObjectStore):
    """Object store with a fixed set of buckets."""

    def __init__(self, buckets: Set[str] | None = None):
        super().__init__()
        self.buckets: Dict[str, Dict[str, Dict[str, Any]]] = {b: {} for b in buckets or ()}

    def _bucket(self, bucket: str) -> Dict[str, Dict[str, Any]]:
        try:
            return self.buckets[bucket]
        except KeyError:
            raise ResourceNotFound(f"bucket {bucket} not found") from None

    def _object(self, bucket: str, name: str) -> Dict[str, Any]:
        try:
            return self._bucket(bucket)[name]
        except KeyError:
            raise ResourceNotFound(f"object {bucket}/{name} not found") from None

    async def create_object(self, bucket: str, name: str, data: bytes):
        self._bucket(bucket)[name] = {"data": data, "metadata": {}, "storage_class": "STANDARD"}
        self._record(Operation(action="create", resource=f"{bucket}/{name}", attributes={"bucket": bucket, "name": name}))

    async def update_metadata(self, bucket: str, name: str, metadata: Dict[str, str]):
        self._object(bucket, name)["metadata"].update(metadata)
        self._record(Operation(
            action="update_metadata",
            resource=f"{bucket}/{name}",
            attributes={"bucket": bucket, "name": name, "metadata": dict(metadata)},
        ))

    async def archive_object(self, bucket: str, name: str):
        self._object(bucket, name)["storage_class"] = "ARCHIVE"
        self._record(Operation(action="archive", resource=f"{bucket}/{name}", attributes={"bucket": bucket, "name": name}))

    async def delete_object(self, bucket: str, name: str):
        self._object(bucket, name)
        del self.buckets[bucket][name]
        self._record(Operation(action="delete", resource=f"{bucket}/{name}", attributes={"bucket": bucket, "name": name}))


class InMemoryOrchestrationClient(_Observable, OrchestrationClient):
    """Pod store standing in for the orchestration API."""

    def __init__(self):
        super().__init__()
        self.pods: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def create_pod(self, namespace: str, name: str):
        if (namespace, name) in self.pods:
            raise ResourceConflict(f"pod {namespace}/{name} already exists")
        self.pods[(namespace, name)] = {"image": "busybox"}
        self._record(Operation(action="create", resource=f"{namespace}/{name}", attributes={"namespace": namespace, "name": name}))

    async def update_pod(self, namespace: str, name: str):
        if (namespace, name) not in self.pods:
            raise ResourceNotFound(f"pod {namespace}/{name} not found")
        self.pods[(namespace, name)]["image"] = "alpine"
        self._record(Operation(action="update", resource=f"{namespace}/{name}", attributes={"namespace": namespace, "name": name}))

    async def delete_pod(self, namespace: str, name: str):
        if self.pods.pop((namespace, name), None) is None:
            raise ResourceNotFound(f"pod {namespace}/{name} not found")
        self._record(Operation(action="delete", resource=f"{namespace}/{name}", attributes={"namespace": namespace, "name": name}))
