"""HTTP adapters for the broker ingress, object storage and orchestration API."""
from typing import Any, Dict
from urllib.parse import quote
import httpx
import orjson
import structlog
from .base import BrokerClient, ObjectStore, OrchestrationClient, ResourceConflict, ResourceNotFound
from ..event_models import EventEnvelope

log = structlog.get_logger()


class _HttpAdapter:
    """Holds a lazily created, reusable httpx.AsyncClient."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> Dict[str, str]:
        return {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._get_client().request(method, path, **kwargs)
        if response.status_code == 404:
            raise ResourceNotFound(f"{method} {path}: not found")
        if response.status_code == 409:
            raise ResourceConflict(f"{method} {path}: already exists")
        response.raise_for_status()
        return response

    async def health_check(self) -> bool:
        try:
            await self._get_client().get("/")
            return True
        except httpx.HTTPError as e:
            log.warning("http.health_check_failed", base_url=self.base_url, error=str(e))
            return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class HttpBrokerClient(_HttpAdapter, BrokerClient):
    """
    Sends binary-mode CloudEvents to the broker cell ingress.

    The ingress routes on the path: ``<base>/<namespace>/<broker>``.
    """

    async def send(self, namespace: str, broker: str, event: EventEnvelope):
        headers, body = event.to_binary()
        await self._request("POST", f"/{quote(namespace)}/{quote(broker)}", headers=headers, content=body)
        log.info("broker.event_sent", id=event.id, namespace=namespace, broker=broker, adapter="http")


class HttpObjectStore(_HttpAdapter, ObjectStore):
    """Cloud Storage JSON API client."""

    def __init__(self, base_url: str, access_token: str | None = None, **kwargs: Any):
        self._access_token = access_token
        super().__init__(base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}
        return {}

    @staticmethod
    def _object_path(bucket: str, name: str) -> str:
        return f"/storage/v1/b/{quote(bucket, safe='')}/o/{quote(name, safe='')}"

    async def create_object(self, bucket: str, name: str, data: bytes):
        await self._request(
            "POST",
            f"/upload/storage/v1/b/{quote(bucket, safe='')}/o",
            params={"uploadType": "media", "name": name},
            headers={"Content-Type": "application/octet-stream"},
            content=data,
        )

    async def update_metadata(self, bucket: str, name: str, metadata: Dict[str, str]):
        await self._request("PATCH", self._object_path(bucket, name), json={"metadata": metadata})

    async def archive_object(self, bucket: str, name: str):
        # Rewriting an object onto itself with a new storage class archives it
        path = self._object_path(bucket, name)
        await self._request(
            "POST",
            f"{path}/rewriteTo/b/{quote(bucket, safe='')}/o/{quote(name, safe='')}",
            json={"storageClass": "ARCHIVE"},
        )

    async def delete_object(self, bucket: str, name: str):
        await self._request("DELETE", self._object_path(bucket, name))


class HttpOrchestrationClient(_HttpAdapter, OrchestrationClient):
    """Minimal Kubernetes REST client for the probe pod."""

    def __init__(self, base_url: str, token_path: str | None = None, verify: bool | str = True, **kwargs: Any):
        self._token_path = token_path
        self._verify = verify
        super().__init__(base_url, **kwargs)

    def _headers(self) -> Dict[str, str]:
        if not self._token_path:
            return {}
        try:
            with open(self._token_path) as f:
                return {"Authorization": f"Bearer {f.read().strip()}"}
        except OSError as e:
            log.warning("orchestration.token_unavailable", path=self._token_path, error=str(e))
            return {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                verify=self._verify,
            )
        return self._client

    @staticmethod
    def pod_manifest(namespace: str, name: str, image: str = "busybox") -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "containers": [{"name": "busybox", "image": image, "imagePullPolicy": "IfNotPresent"}],
                "restartPolicy": "Never",
            },
        }

    async def create_pod(self, namespace: str, name: str):
        await self._request("POST", f"/api/v1/namespaces/{namespace}/pods", json=self.pod_manifest(namespace, name))

    async def update_pod(self, namespace: str, name: str):
        await self._request(
            "PATCH",
            f"/api/v1/namespaces/{namespace}/pods/{name}",
            headers={"Content-Type": "application/strategic-merge-patch+json"},
            content=orjson.dumps({"spec": {"containers": [{"name": "busybox", "image": "alpine"}]}}),
        )

    async def delete_pod(self, namespace: str, name: str):
        await self._request("DELETE", f"/api/v1/namespaces/{namespace}/pods/{name}")
