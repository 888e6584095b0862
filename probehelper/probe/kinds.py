"""Probe kinds and the event types the platform delivers for them."""
from enum import Enum


class ProbeKind(str, Enum):
    """Every probe request type the helper understands."""
    BROKER_E2E_DELIVERY = "broker-e2e-delivery-probe"
    CLOUD_PUBSUB_SOURCE = "cloudpubsubsource-probe"
    CLOUD_STORAGE_SOURCE_CREATE = "cloudstoragesource-probe-create"
    CLOUD_STORAGE_SOURCE_UPDATE_METADATA = "cloudstoragesource-probe-update-metadata"
    CLOUD_STORAGE_SOURCE_ARCHIVE = "cloudstoragesource-probe-archive"
    CLOUD_STORAGE_SOURCE_DELETE = "cloudstoragesource-probe-delete"
    CLOUD_SCHEDULER_SOURCE = "cloudschedulersource-probe"
    PING_SOURCE = "pingsource-probe"
    API_SERVER_SOURCE_CREATE = "apiserversource-probe-create"
    API_SERVER_SOURCE_UPDATE = "apiserversource-probe-update"
    API_SERVER_SOURCE_DELETE = "apiserversource-probe-delete"
    CLOUD_AUDIT_LOGS_SOURCE = "cloudauditlogssource-probe"

    @classmethod
    def parse(cls, value: str) -> "ProbeKind | None":
        try:
            return cls(value)
        except ValueError:
            return None


class StoragePhase(str, Enum):
    CREATE = "create"
    UPDATE_METADATA = "update-metadata"
    ARCHIVE = "archive"
    DELETE = "delete"


class ApiServerPhase(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Delivered event types
PUBSUB_PUBLISHED_TYPE = "google.cloud.pubsub.topic.v1.messagePublished"
STORAGE_EVENT_TYPES = {
    "google.cloud.storage.object.v1.finalized": StoragePhase.CREATE,
    "google.cloud.storage.object.v1.metadataUpdated": StoragePhase.UPDATE_METADATA,
    "google.cloud.storage.object.v1.archived": StoragePhase.ARCHIVE,
    "google.cloud.storage.object.v1.deleted": StoragePhase.DELETE,
}
SCHEDULER_EXECUTED_TYPE = "google.cloud.scheduler.job.v1.executed"
PING_TYPE = "dev.knative.sources.ping"
APISERVER_EVENT_TYPES = {
    "dev.knative.apiserver.resource.add": ApiServerPhase.CREATE,
    "dev.knative.apiserver.resource.update": ApiServerPhase.UPDATE,
    "dev.knative.apiserver.resource.delete": ApiServerPhase.DELETE,
}
AUDIT_LOG_WRITTEN_TYPE = "google.cloud.audit.log.v1.written"
CREATE_TOPIC_METHOD = "google.pubsub.v1.Publisher.CreateTopic"
