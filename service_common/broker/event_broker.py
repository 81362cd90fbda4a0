"""
Redis pub/sub client for fire-and-forget events.
"""

import json
from typing import Any, AsyncIterator, Callable, Dict, Optional

import redis.asyncio as redis

from ..errors import BrokerUnavailableError
from ..logging import get_logger
from ..metrics import ResilienceMetrics

ClientFactory = Callable[[], redis.Redis]


class EventBroker:
    """Publishes JSON messages on one shared connection, subscribes on dedicated ones.

    There is no outbound queue: when the shared connection is unusable,
    messages are logged and dropped.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        required: bool = True,
        metrics: Optional[ResilienceMetrics] = None,
    ):
        if redis_url is None and client_factory is None:
            raise ValueError("EventBroker needs a redis_url or a client_factory")

        self.redis_url = redis_url
        self.required = required
        self.metrics = metrics
        self.logger = get_logger("service_common.broker")
        self._client_factory = client_factory or self._default_client

        self._publisher: Optional[redis.Redis] = None
        self._publisher_usable = False

    def _default_client(self) -> redis.Redis:
        return redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)

    @property
    def is_initialized(self) -> bool:
        return self._publisher is not None and self._publisher_usable

    async def initialize(self) -> None:
        """Open the shared publish connection.

        Subscriptions open their own connections on demand.
        """
        if self.is_initialized:
            return

        try:
            if self._publisher is None:
                self._publisher = self._client_factory()
            await self._publisher.ping()
        except Exception as e:
            self._publisher_usable = False
            self.logger.error("Failed to connect to Redis for EventBroker", redis_url=self.redis_url, error=str(e))
            if self.required:
                raise BrokerUnavailableError(
                    "Event broker unavailable at startup",
                    details={"redis_url": self.redis_url, "error": str(e)},
                ) from e
            return

        self._publisher_usable = True
        self.logger.info("EventBroker initialized", redis_url=self.redis_url)

    async def close(self) -> None:
        if self._publisher is not None:
            await self._publisher.aclose()
            self._publisher = None
            self.logger.info("EventBroker stopped")
        self._publisher_usable = False

    async def publish(self, channel: str, message: Any) -> None:
        """JSON-encode ``message`` and publish it to ``channel``. Never raises."""
        if not self.is_initialized:
            self.logger.warning("EventBroker not initialized, dropping message", channel=channel)
            self._count("publish", "dropped")
            return

        try:
            payload = json.dumps(message)
        except (TypeError, ValueError) as e:
            self.logger.error("Message is not JSON serializable, dropping", channel=channel, error=str(e))
            self._count("publish", "dropped")
            return

        try:
            await self._publisher.publish(channel, payload)
        except Exception as e:
            # The shared handle stays retired until the next initialize().
            self._publisher_usable = False
            self.logger.error("Failed to publish", channel=channel, error=str(e))
            self._count("publish", "failed")
            return

        self.logger.debug("Published message", channel=channel)
        self._count("publish", "sent")

    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """Yield decoded messages from ``channel`` on a dedicated connection.

        The sequence does not restart: once it ends or is closed, subscribe
        again. Malformed events are skipped.
        """
        client = self._client_factory()
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except Exception as e:
            self.logger.error("Failed to subscribe", channel=channel, error=str(e))
            await self._close_subscription(channel, client, pubsub)
            return

        self.logger.info("Subscribed to channel", channel=channel)
        try:
            async for event in pubsub.listen():
                message = self.parse_event(event)
                if message is None:
                    self.logger.debug("Ignoring pub/sub event", channel=channel)
                    continue
                self._count("subscribe", "received")
                yield message
        except Exception as e:
            self.logger.error("Subscription stream failed", channel=channel, error=str(e))
        finally:
            await self._close_subscription(channel, client, pubsub)

    @staticmethod
    def parse_event(event: Any) -> Optional[Any]:
        """Decode a pub/sub push event, or return None for anything else.

        Accepts the raw ``["message", channel, payload]`` form as well as
        redis-py's ``{"type": "message", "channel", "data"}`` dicts.
        """
        if isinstance(event, dict):
            if event.get("type") != "message":
                return None
            payload = event.get("data")
        elif isinstance(event, (list, tuple)):
            if len(event) < 3 or event[0] not in ("message", b"message"):
                return None
            payload = event[2]
        else:
            return None

        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return None
        if not isinstance(payload, str):
            return None

        try:
            return json.loads(payload)
        except ValueError:
            return None

    async def health_check(self) -> Dict[str, Any]:
        reachable = False
        if self._publisher is not None:
            try:
                reachable = bool(await self._publisher.ping())
            except Exception:
                reachable = False
        return {"initialized": self.is_initialized, "redis_reachable": reachable}

    async def _close_subscription(self, channel: str, client: redis.Redis, pubsub: Any) -> None:
        try:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            await client.aclose()
        except Exception as e:
            self.logger.warning("Error closing subscription", channel=channel, error=str(e))
        else:
            self.logger.info("Unsubscribed from channel", channel=channel)

    def _count(self, direction: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("broker_messages_total", direction=direction, outcome=outcome)
