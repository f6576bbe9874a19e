import asyncio
import logging
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from redis.asyncio import Redis

from prediction_race import load_settings
from prediction_race.controller import PhaseController
from prediction_race.load_settings import EngineSettings, load_engine_settings
from prediction_race.manager import FrameBroadcaster
from prediction_race.protocol import PredictionProtocol
from prediction_race.redis_subscriber import RedisSubscriber
from prediction_race.render_loop import RenderLoop
from prediction_race.services.round_api import RoundApi


class RaceEngine:
    """Owns the live round client: controller, push subscriber and render loop."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        api: Optional[RoundApi] = None,
        redis: Optional[Redis] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.settings = settings or load_engine_settings()
        self.api = api or RoundApi(
            load_settings.api_base_url, load_settings.api_token, self.settings.request_timeout_s
        )
        self.redis = redis or Redis(
            host=load_settings.redis_host,
            port=load_settings.redis_port,
            decode_responses=True,
            health_check_interval=30,
        )
        self.scheduler = scheduler or AsyncIOScheduler()
        self.controller = PhaseController(self.api, self.scheduler, self.settings)
        self.protocol = PredictionProtocol(self.controller, self.api)
        self.subscriber = RedisSubscriber(self.redis, load_settings.event_channel, self.controller.post)
        self.broadcaster = FrameBroadcaster()
        self.render_loop = RenderLoop(self.controller, self.broadcaster)
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        await self.api.start()
        self.scheduler.start()
        await self.controller.start()
        self._tasks = [
            asyncio.create_task(self.subscriber.run()),
            asyncio.create_task(self.render_loop.run()),
        ]
        logging.info("Race engine started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.controller.stop()
        self.scheduler.shutdown(wait=False)
        await self.api.close()
        await self.redis.aclose()
        logging.info("Race engine stopped")

    def frame(self):
        """Latest frame, built on demand before the first render tick."""
        return self.render_loop.latest or self.render_loop.tick()
