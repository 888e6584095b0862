"""Tests for trigger adapters."""
import httpx
import orjson
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError
from probehelper.adapters.base import ResourceConflict, ResourceNotFound
from probehelper.adapters.http_clients import HttpBrokerClient, HttpObjectStore, HttpOrchestrationClient
from probehelper.adapters.memory import (
    InMemoryBroker,
    InMemoryMessageBus,
    InMemoryObjectStore,
    InMemoryOrchestrationClient,
)
from probehelper.adapters.redis_stream import RedisStreamBus
from probehelper.event_models import EventEnvelope


@pytest.mark.asyncio
async def test_memory_broker_rejects_unknown_broker():
    broker = InMemoryBroker({("ns", "default")})
    event = EventEnvelope(type="broker-e2e-delivery-probe", source="probe")

    await broker.send("ns", "default", event)
    with pytest.raises(ResourceNotFound):
        await broker.send("ns", "wrongbroker", event)

    assert [op.resource for op in broker.operations] == ["ns/default"]


@pytest.mark.asyncio
async def test_memory_bus_topic_lifecycle():
    bus = InMemoryMessageBus()

    await bus.create_topic("t")
    with pytest.raises(ResourceConflict):
        await bus.create_topic("t")

    message_id = await bus.publish("t", b"hello", {"probeid": "1"})
    assert bus.topics["t"][0]["id"] == message_id

    await bus.delete_topic("t")
    with pytest.raises(ResourceNotFound):
        await bus.publish("t", b"hello")


@pytest.mark.asyncio
async def test_memory_object_store_lifecycle():
    store = InMemoryObjectStore({"bucket"})

    with pytest.raises(ResourceNotFound):
        await store.update_metadata("bucket", "obj", {"k": "v"})

    await store.create_object("bucket", "obj", b"data")
    await store.update_metadata("bucket", "obj", {"k": "v"})
    await store.archive_object("bucket", "obj")
    assert store.buckets["bucket"]["obj"]["storage_class"] == "ARCHIVE"
    await store.delete_object("bucket", "obj")

    assert [op.action for op in store.operations] == ["create", "update_metadata", "archive", "delete"]
    with pytest.raises(ResourceNotFound):
        await store.create_object("missing-bucket", "obj", b"")


@pytest.mark.asyncio
async def test_memory_orchestration_lifecycle():
    client = InMemoryOrchestrationClient()

    await client.create_pod("ns", "pod")
    with pytest.raises(ResourceConflict):
        await client.create_pod("ns", "pod")
    await client.update_pod("ns", "pod")
    assert client.pods[("ns", "pod")]["image"] == "alpine"
    await client.delete_pod("ns", "pod")
    with pytest.raises(ResourceNotFound):
        await client.delete_pod("ns", "pod")


@pytest.mark.asyncio
async def test_memory_adapter_health_check():
    assert await InMemoryMessageBus().health_check() is True


@pytest.mark.asyncio
async def test_redis_bus_publish_with_mock():
    with patch("probehelper.adapters.redis_stream.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.xadd = AsyncMock(return_value=b"1234567890-0")

        bus = RedisStreamBus(redis_url="redis://localhost:6379", prefix="probes")
        message_id = await bus.publish("topic", b"payload", {"probeid": "1"})

        assert message_id == "1234567890-0"
        args, kwargs = mock_redis.xadd.call_args
        assert args[0] == "probes:topic"
        assert args[1]["data"] == b"payload"
        assert orjson.loads(args[1]["attributes"]) == {"probeid": "1"}


@pytest.mark.asyncio
async def test_redis_bus_create_existing_topic_conflicts():
    with patch("probehelper.adapters.redis_stream.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.xgroup_create = AsyncMock(
            side_effect=ResponseError("BUSYGROUP Consumer Group name already exists")
        )

        bus = RedisStreamBus(redis_url="redis://localhost:6379", prefix="probes")
        with pytest.raises(ResourceConflict):
            await bus.create_topic("topic")


@pytest.mark.asyncio
async def test_redis_bus_delete_missing_topic():
    with patch("probehelper.adapters.redis_stream.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.delete = AsyncMock(return_value=0)

        bus = RedisStreamBus(redis_url="redis://localhost:6379", prefix="probes")
        with pytest.raises(ResourceNotFound):
            await bus.delete_topic("topic")
        mock_redis.delete.assert_awaited_once_with("probes:topic")


@pytest.mark.asyncio
async def test_redis_bus_health_check_failure():
    with patch("probehelper.adapters.redis_stream.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.from_url.return_value = mock_redis
        mock_redis.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))

        bus = RedisStreamBus(redis_url="redis://localhost:6379", prefix="probes")
        assert await bus.health_check() is False


@pytest.mark.asyncio
async def test_http_broker_sends_binary_event():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    client = HttpBrokerClient("http://ingress.test", transport=httpx.MockTransport(handler))
    event = EventEnvelope(id="abc", type="broker-e2e-delivery-probe", source="probe", extensions={"namespace": "ns"})
    await client.send("ns", "default", event)
    await client.close()

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/ns/default"
    assert seen[0].headers["ce-id"] == "abc"
    assert seen[0].headers["ce-namespace"] == "ns"


@pytest.mark.asyncio
async def test_http_broker_unknown_broker_is_not_found():
    client = HttpBrokerClient("http://ingress.test", transport=httpx.MockTransport(lambda r: httpx.Response(404)))
    with pytest.raises(ResourceNotFound):
        await client.send("ns", "wrongbroker", EventEnvelope(type="t", source="s"))
    await client.close()


@pytest.mark.asyncio
async def test_http_object_store_requests():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    store = HttpObjectStore("http://storage.test", access_token="token", transport=httpx.MockTransport(handler))
    await store.create_object("bucket", "obj", b"data")
    await store.update_metadata("bucket", "obj", {"some-key": "Metadata updated!"})
    await store.archive_object("bucket", "obj")
    await store.delete_object("bucket", "obj")
    await store.close()

    assert [r.method for r in seen] == ["POST", "PATCH", "POST", "DELETE"]
    assert seen[0].url.path == "/upload/storage/v1/b/bucket/o"
    assert seen[0].url.params["name"] == "obj"
    assert orjson.loads(seen[1].content) == {"metadata": {"some-key": "Metadata updated!"}}
    assert orjson.loads(seen[2].content) == {"storageClass": "ARCHIVE"}
    assert seen[3].url.path == "/storage/v1/b/bucket/o/obj"
    assert all(r.headers["authorization"] == "Bearer token" for r in seen)


@pytest.mark.asyncio
async def test_http_orchestration_requests(tmp_path):
    token = tmp_path / "token"
    token.write_text("sa-token\n")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    client = HttpOrchestrationClient(
        "http://k8s.test",
        token_path=str(token),
        transport=httpx.MockTransport(handler),
    )
    await client.create_pod("ns", "pod")
    await client.update_pod("ns", "pod")
    await client.delete_pod("ns", "pod")
    await client.close()

    assert [(r.method, r.url.path) for r in seen] == [
        ("POST", "/api/v1/namespaces/ns/pods"),
        ("PATCH", "/api/v1/namespaces/ns/pods/pod"),
        ("DELETE", "/api/v1/namespaces/ns/pods/pod"),
    ]
    assert orjson.loads(seen[0].content)["metadata"] == {"name": "pod", "namespace": "ns"}
    assert seen[1].headers["content-type"] == "application/strategic-merge-patch+json"
    assert seen[0].headers["authorization"] == "Bearer sa-token"


@pytest.mark.asyncio
async def test_http_orchestration_conflict():
    client = HttpOrchestrationClient(
        "http://k8s.test",
        token_path=None,
        transport=httpx.MockTransport(lambda r: httpx.Response(409)),
    )
    with pytest.raises(ResourceConflict):
        await client.create_pod("ns", "pod")
    await client.close()
