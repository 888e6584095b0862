"""Tests for the probe and receiver HTTP listeners."""
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
import asyncio
from httpx import AsyncClient, ASGITransport
from probehelper.config import get_settings
from probehelper.main import create_probe_app, create_receiver_app
from probehelper.probe.helper import ProbeOutcome
from probehelper.probe.kinds import PUBSUB_PUBLISHED_TYPE
from probehelper.probe.liveness import LivenessState
from conftest import TEST_NAMESPACE, TEST_TOPIC_ID, FakePlatform, make_helper, probe_event

settings = get_settings()


@pytest_asyncio.fixture
async def listeners(platform):
    """Probe and receiver clients; the platform delivers back over HTTP."""
    helper = make_helper(platform.adapters)
    probe = AsyncClient(transport=ASGITransport(app=create_probe_app(helper)), base_url="http://probe")
    receiver = AsyncClient(transport=ASGITransport(app=create_receiver_app(helper)), base_url="http://receiver")

    async def deliver(event):
        headers, body = event.to_binary()
        response = await receiver.post(f"/{TEST_NAMESPACE}", headers=headers, content=body)
        assert response.status_code == 202

    platform.connect(deliver)
    platform.start_tickers()
    yield probe, receiver, helper
    await platform.stop()
    await probe.aclose()
    await receiver.aclose()
    await helper.shutdown()


@pytest.mark.asyncio
async def test_binary_probe_request_acks(listeners, platform):
    probe, _, _ = listeners
    headers, body = probe_event("broker-e2e-delivery-probe", namespace=TEST_NAMESPACE).to_binary()

    response = await probe.post("/", headers=headers, content=body)

    assert response.status_code == 200
    data = response.json()
    assert data["result"] == "ACK"
    assert data["outcome"] == "ack"
    assert data["id"] == "broker-e2e-delivery-probe-1234567890"
    # The platform saw the probe come back through the receiver
    forwarded = [e for e in platform.delivered if e.type == "broker-e2e-delivery-probe"]
    assert forwarded[0].extension("broker") == "default"


@pytest.mark.asyncio
async def test_structured_probe_request_acks(listeners):
    probe, _, _ = listeners
    body = probe_event("cloudpubsubsource-probe", topic=TEST_TOPIC_ID).to_structured()

    response = await probe.post("/", headers={"content-type": "application/cloudevents+json"}, content=body)

    assert response.status_code == 200
    assert response.json()["result"] == "ACK"


@pytest.mark.asyncio
async def test_periodic_probe_over_http(listeners):
    probe, _, _ = listeners
    headers, body = probe_event("pingsource-probe", period="500ms").to_binary()

    response = await probe.post("/", headers=headers, content=body)

    assert response.status_code == 200


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event, status, outcome",
    [
        (probe_event("broker-e2e-delivery-probe"), 400, "invalid"),
        (probe_event("unrecognized-probe-type"), 400, "unrecognized"),
        (probe_event("broker-e2e-delivery-probe", namespace=TEST_NAMESPACE, broker="wrongbroker"), 502, "trigger_failed"),
        (probe_event("pingsource-probe", period="0s"), 504, "timed_out"),
    ],
)
async def test_failed_probes_nack(listeners, event, status, outcome):
    probe, _, _ = listeners
    headers, body = event.to_binary()

    response = await probe.post("/", headers=headers, content=body)

    assert response.status_code == status
    data = response.json()
    assert data["result"] == "NACK"
    assert data["outcome"] == outcome
    assert data["reason"]


@pytest.mark.asyncio
async def test_malformed_probe_request_is_rejected(listeners):
    probe, _, _ = listeners

    response = await probe.post("/", headers={"ce-type": "pingsource-probe"}, content=b"")

    assert response.status_code == 400
    assert response.json()["result"] == "NACK"


@pytest.mark.asyncio
async def test_oversized_probe_request_is_rejected(listeners):
    probe, _, _ = listeners
    headers, _ = probe_event("pingsource-probe", period="1s").to_binary()

    response = await probe.post("/", headers=headers, content=b"x" * (settings.MAX_EVENT_SIZE + 1))

    assert response.status_code == 413
    assert response.json()["error"] == "PayloadTooLarge"


@pytest.mark.asyncio
async def test_receiver_accepts_unmatched_events(listeners):
    _, receiver, _ = listeners
    headers = {"ce-id": "1", "ce-type": "com.example.unrelated", "ce-source": "somewhere", "ce-specversion": "1.0"}

    response = await receiver.post("/some/target", headers=headers, content=b"")

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "matched": False}


@pytest.mark.asyncio
async def test_receiver_accepts_malformed_events(listeners):
    _, receiver, _ = listeners

    response = await receiver.post(
        "/",
        headers={"content-type": "application/cloudevents+json"},
        content=b"not an event",
    )

    assert response.status_code == 202


@pytest.mark.asyncio
async def test_correlation_id_follows_event_id(listeners):
    probe, _, _ = listeners
    headers, body = probe_event("unrecognized-probe-type").to_binary()

    response = await probe.post("/", headers=headers, content=body)
    assert response.headers["x-correlation-id"] == "unrecognized-probe-type-1234567890"

    response = await probe.post("/", headers={**headers, "x-correlation-id": "corr-123"}, content=body)
    assert response.headers["x-correlation-id"] == "corr-123"


@pytest.mark.asyncio
async def test_metrics_endpoint(listeners):
    probe, _, _ = listeners
    headers, body = probe_event("cloudpubsubsource-probe", topic=TEST_TOPIC_ID).to_binary()
    await probe.post("/", headers=headers, content=body)

    response = await probe.get("/metrics/")

    assert response.status_code == 200
    content = response.text
    assert "probe_requests_total" in content
    assert "probe_round_trip_seconds" in content
    assert "http_requests_total" in content
    assert "app_up" in content


@pytest.mark.asyncio
async def test_readiness_reports_adapters(listeners):
    probe, _, helper = listeners

    response = await probe.get("/health/ready")
    # Disk or memory pressure on the host may legitimately report not ready
    assert response.status_code in [200, 503]
    checks = response.json()["checks"]
    assert checks["InMemoryBroker"]["status"] == "ok"
    assert checks["InMemoryMessageBus"]["status"] == "ok"

    await helper.shutdown()
    response = await probe.get("/health/ready")
    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


@pytest.mark.asyncio
async def test_healthz_follows_liveness(platform):
    now = [0.0]
    helper = make_helper(
        platform.adapters,
        liveness=LivenessState(clock=lambda: now[0]),
        liveness_stale_duration=60.0,
    )
    app = create_probe_app(helper)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://probe") as client:
            response = await client.get("/healthz")
            assert response.status_code == 200
            assert response.json()["status"] == "ok"

            now[0] = 61.0
            response = await client.get("/healthz")
            assert response.status_code == 503
            data = response.json()
            assert data["status"] == "stale"
            assert data["service"] == "probe-helper"
    finally:
        await helper.shutdown()


@pytest.mark.asyncio
async def test_healthz_recovers_after_round_trip(platform):
    now = [0.0]
    helper = make_helper(
        platform.adapters,
        liveness=LivenessState(clock=lambda: now[0]),
        liveness_stale_duration=60.0,
    )
    platform.connect(helper.receive)
    app = create_probe_app(helper)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://probe") as client:
            now[0] = 120.0
            assert (await client.get("/healthz")).status_code == 503

            headers, body = probe_event("cloudpubsubsource-probe", topic=TEST_TOPIC_ID).to_binary()
            assert (await client.post("/", headers=headers, content=body)).status_code == 200

            assert (await client.get("/healthz")).status_code == 200
    finally:
        await helper.shutdown()



def test_receiver_liveness_and_correlation_id():
    client = TestClient(create_receiver_app(make_helper(FakePlatform().adapters)))

    r = client.get("/healthz", headers={"x-correlation-id": "test-correlation-id-123"})

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["service"] == "probe-helper"
    assert data["version"] == "0.1.0"
    assert data["pending"] == 0
    assert "timestamp" in data
    assert r.headers["x-correlation-id"] == "test-correlation-id-123"


@pytest.mark.asyncio
async def test_receiver_resolves_delivery_with_long_extension_name(silent_helper):
    request = asyncio.create_task(
        silent_helper.probe(probe_event("cloudpubsubsource-probe", topic=TEST_TOPIC_ID, timeout="2s"))
    )
    for _ in range(100):
        if f"pubsub/{TEST_TOPIC_ID}" in silent_helper.pending:
            break
        await asyncio.sleep(0.01)

    headers = {
        "ce-id": "1234567890",
        "ce-type": PUBSUB_PUBLISHED_TYPE,
        "ce-source": f"//pubsub.googleapis.com/projects/p/topics/{TEST_TOPIC_ID}",
        "ce-specversion": "1.0",
        "ce-knativearrivaltimestamp": "2024-01-01T00:00:00Z",
    }
    transport = ASGITransport(app=create_receiver_app(silent_helper))
    async with AsyncClient(transport=transport, base_url="http://receiver") as receiver:
        response = await receiver.post(f"/{TEST_NAMESPACE}", headers=headers, content=b"")

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "matched": True}
    assert (await request).outcome is ProbeOutcome.ACK
