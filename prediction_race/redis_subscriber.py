import asyncio
import logging
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from prediction_race.converter import DataConverter
from prediction_race.models.event_models import ResyncRequestedEvent

RECONNECT_DELAY = 3.0

data_converter = DataConverter()


class RedisSubscriber:
    """Redis subscriber that feeds game channel messages to the controller."""

    def __init__(
        self,
        redis: Redis,
        channel: str,
        post: Callable[[object], None],
        retry_s: float = RECONNECT_DELAY,
    ):
        self.redis: Redis = redis
        self.channel: str = channel
        self.post = post
        self.retry_s = retry_s
        self.connected = False

    async def run(self) -> None:
        """Subscribe and forward messages, reconnecting after channel loss.

        Events published while the subscription was down are lost, so every
        reconnect asks the controller for a full round fetch.
        """
        reconnecting = False
        while True:
            try:
                await self.listen(on_subscribed=self._resync if reconnecting else None)
                return
            except RedisError as e:
                self.connected = False
                reconnecting = True
                logging.warning(f"Channel {self.channel} lost, reconnecting in {self.retry_s}s: {e!r}")
                await asyncio.sleep(self.retry_s)

    async def listen(self, on_subscribed: Callable[[], None] = None) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        self.connected = True
        logging.info(f"Subscribed to {self.channel}")
        if on_subscribed is not None:
            on_subscribed()
        try:
            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
                if msg and msg["type"] == "message":
                    self.dispatch(msg["data"])
        finally:
            logging.info(f"Unsubscribing from {self.channel}")
            self.connected = False
            try:
                await pubsub.unsubscribe(self.channel)
            except RedisError as e:
                logging.debug(f"Unsubscribe failed: {e!r}")
            await pubsub.aclose()

    def dispatch(self, raw) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        event = data_converter.convert_channel_message(raw)
        if event is None:
            return
        logging.debug(f"Push event {type(event).__name__}")
        self.post(event)

    def _resync(self) -> None:
        self.post(ResyncRequestedEvent(reason="push channel reconnected"))
