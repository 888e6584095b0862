"""Redis Streams message bus adapter."""
from typing import Dict
import structlog
import orjson
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError
from .base import MessageBus, ResourceConflict, ResourceNotFound
from ..config import get_settings

log = structlog.get_logger()
settings = get_settings()

# Consumer group created with every topic; its existence marks the topic as created
_TOPIC_GROUP = "subscribers"


class RedisStreamBus(MessageBus):
    """Redis Streams implementation of the message bus.

    Each topic is one stream. Messages are appended with XADD; the
    subscription side of the platform reads them through the consumer group
    created alongside the topic.
    """

    def __init__(self, redis_url: str | None = None, prefix: str | None = None):
        """
        Initialize Redis stream bus.

        Args:
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
            prefix: Stream key prefix (defaults to settings.TOPIC_STREAM_PREFIX)
        """
        self.redis_url = redis_url or str(settings.REDIS_URL)
        self.prefix = prefix or settings.TOPIC_STREAM_PREFIX
        self._client: Redis | None = None

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,  # We'll handle encoding ourselves
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    def _stream_key(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def publish(self, topic: str, data: bytes, attributes: Dict[str, str] | None = None) -> str:
        """
        Publish a message to the topic's stream.

        Returns:
            The stream entry ID

        Raises:
            RedisError: If unable to publish to Redis
        """
        try:
            client = self._get_client()
            entry_id = await client.xadd(
                self._stream_key(topic),
                {"data": data, "attributes": orjson.dumps(attributes or {})},
                id="*",  # Let Redis auto-generate ID
                maxlen=10000,  # Keep max 10k messages
            )
        except RedisError as e:
            log.error("redis.publish_failed", error=str(e), topic=topic)
            raise

        message_id = entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id)
        log.info("bus.message_published", topic=topic, message_id=message_id, adapter="redis_stream")
        return message_id

    async def create_topic(self, topic: str):
        """Create the topic's stream together with its consumer group."""
        client = self._get_client()
        try:
            await client.xgroup_create(self._stream_key(topic), _TOPIC_GROUP, id="$", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                raise ResourceConflict(f"topic {topic} already exists") from e
            raise
        log.info("bus.topic_created", topic=topic, adapter="redis_stream")

    async def delete_topic(self, topic: str):
        client = self._get_client()
        deleted = await client.delete(self._stream_key(topic))
        if not deleted:
            raise ResourceNotFound(f"topic {topic} not found")
        log.info("bus.topic_deleted", topic=topic, adapter="redis_stream")

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            client = self._get_client()
            return bool(await client.ping())
        except (RedisError, OSError) as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
