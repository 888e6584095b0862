"""Construction of the probe helper and its adapters from settings."""
import structlog
from ..adapters.base import BrokerClient, MessageBus, ObjectStore, OrchestrationClient
from ..adapters.http_clients import HttpBrokerClient, HttpObjectStore, HttpOrchestrationClient
from ..adapters.memory import (
    InMemoryBroker,
    InMemoryMessageBus,
    InMemoryObjectStore,
    InMemoryOrchestrationClient,
)
from ..adapters.redis_stream import RedisStreamBus
from ..config import Settings, get_settings
from ..metrics import Metrics
from ..probe.handlers import build_registry
from ..probe.helper import ProbeHelper

log = structlog.get_logger()


def create_broker_client(settings: Settings) -> BrokerClient:
    if settings.BROKER_ADAPTER == "http":
        if not settings.BROKER_CELL_INGRESS_BASE_URL:
            log.warning(
                "adapter.fallback",
                component="broker",
                requested="http",
                actual="memory",
                reason="BROKER_CELL_INGRESS_BASE_URL not configured"
            )
            return InMemoryBroker()
        log.info("adapter.selected", component="broker", type="http", url=str(settings.BROKER_CELL_INGRESS_BASE_URL))
        return HttpBrokerClient(str(settings.BROKER_CELL_INGRESS_BASE_URL))
    log.info("adapter.selected", component="broker", type="memory")
    return InMemoryBroker()


def create_message_bus(settings: Settings) -> MessageBus:
    """
    Create the message bus based on configuration.

    Returns:
        MessageBus instance based on BUS_ADAPTER setting
    """
    if settings.BUS_ADAPTER == "redis":
        if not settings.REDIS_URL:
            log.warning(
                "adapter.fallback",
                component="bus",
                requested="redis",
                actual="memory",
                reason="REDIS_URL not configured"
            )
            return InMemoryMessageBus()
        log.info("adapter.selected", component="bus", type="redis", url=str(settings.REDIS_URL))
        return RedisStreamBus(str(settings.REDIS_URL), settings.TOPIC_STREAM_PREFIX)
    log.info("adapter.selected", component="bus", type="memory")
    return InMemoryMessageBus()


def create_object_store(settings: Settings) -> ObjectStore:
    if settings.STORAGE_ADAPTER == "http":
        log.info("adapter.selected", component="storage", type="http", url=settings.STORAGE_BASE_URL)
        return HttpObjectStore(settings.STORAGE_BASE_URL, access_token=settings.ACCESS_TOKEN)
    log.info("adapter.selected", component="storage", type="memory")
    return InMemoryObjectStore()


def create_orchestration_client(settings: Settings) -> OrchestrationClient:
    if settings.ORCHESTRATION_ADAPTER == "http":
        log.info("adapter.selected", component="orchestration", type="http", url=settings.K8S_API_URL)
        return HttpOrchestrationClient(settings.K8S_API_URL, token_path=settings.K8S_TOKEN_PATH)
    log.info("adapter.selected", component="orchestration", type="memory")
    return InMemoryOrchestrationClient()


def build_helper(settings: Settings | None = None, metrics: Metrics | None = None) -> ProbeHelper:
    """Wire adapters, dispatch registry and helper together."""
    settings = settings or get_settings()
    broker = create_broker_client(settings)
    bus = create_message_bus(settings)
    store = create_object_store(settings)
    orchestration = create_orchestration_client(settings)
    handlers = build_registry(
        broker,
        bus,
        store,
        orchestration,
        storage_object_name=settings.STORAGE_OBJECT_NAME,
        pod_namespace=settings.K8S_NAMESPACE,
        pod_name=settings.APISERVER_POD_NAME,
    )
    return ProbeHelper(
        handlers,
        liveness_stale_duration=settings.LIVENESS_STALE_DURATION,
        default_timeout=settings.DEFAULT_TIMEOUT_DURATION,
        max_timeout=settings.MAX_TIMEOUT_DURATION,
        metrics=metrics,
        adapters=[broker, bus, store, orchestration],
    )
