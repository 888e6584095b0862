"""Base adapter interfaces for the subsystems probes act upon."""
from abc import ABC, abstractmethod
from typing import Dict
from ..event_models import EventEnvelope


class AdapterError(Exception):
    """Base exception raised by adapters."""
    pass


class ResourceNotFound(AdapterError):
    """Raised when the addressed broker, topic, bucket, object or pod does not exist."""
    pass


class ResourceConflict(AdapterError):
    """Raised when creating a resource that already exists."""
    pass


class Adapter(ABC):
    """Lifecycle shared by every adapter."""

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is healthy and accessible.

        Returns:
            True if backend is healthy, False otherwise
        """
        pass

    async def close(self):
        """Release connections held by the adapter."""
        pass


class BrokerClient(Adapter):
    """Forwards events into a broker's ingress."""

    @abstractmethod
    async def send(self, namespace: str, broker: str, event: EventEnvelope):
        """
        Send an event to the ingress of ``namespace/broker``.

        Raises:
            ResourceNotFound: If the broker does not exist
        """
        pass


class MessageBus(Adapter):
    """Topic-based message bus (the backend of the message-bus source)."""

    @abstractmethod
    async def publish(self, topic: str, data: bytes, attributes: Dict[str, str] | None = None) -> str:
        """
        Publish one message to ``topic``.

        Returns:
            The message ID assigned by the backend
        """
        pass

    @abstractmethod
    async def create_topic(self, topic: str):
        """Create ``topic``; creating a topic is what the audit-log source observes."""
        pass

    @abstractmethod
    async def delete_topic(self, topic: str):
        pass


class ObjectStore(Adapter):
    """Object storage (the backend of the object-storage source)."""

    @abstractmethod
    async def create_object(self, bucket: str, name: str, data: bytes):
        pass

    @abstractmethod
    async def update_metadata(self, bucket: str, name: str, metadata: Dict[str, str]):
        pass

    @abstractmethod
    async def archive_object(self, bucket: str, name: str):
        """Move the object to the archive storage class."""
        pass

    @abstractmethod
    async def delete_object(self, bucket: str, name: str):
        pass


class OrchestrationClient(Adapter):
    """Orchestration API (the backend of the API-server source)."""

    @abstractmethod
    async def create_pod(self, namespace: str, name: str):
        pass

    @abstractmethod
    async def update_pod(self, namespace: str, name: str):
        pass

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str):
        pass
