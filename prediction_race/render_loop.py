import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel

from prediction_race.controller import PhaseController, utc_now
from prediction_race.domain.phase import REVEAL_PHASES, Phase, RoundState
from prediction_race.domain.pool import PayoutEstimate, PoolCalculator, PoolSummary, RevealSummary
from prediction_race.domain.progress import (
    PARTICLES_PER_EMIT,
    CarView,
    LaneView,
    ParticleField,
    ParticleView,
    ProgressMapper,
)
from prediction_race.load_settings import EngineSettings
from prediction_race.manager import FrameBroadcaster


class RaceFrame(BaseModel):
    """Everything a renderer needs for one frame."""

    version: int
    generated_at: datetime
    phase: Phase
    round_id: Optional[str] = None
    round_number: Optional[int] = None
    seconds_remaining: int = 0
    lock_countdown: int = 0
    reveal_countdown: int = 0
    wagers_open: bool = False
    lanes: List[LaneView] = []
    cars: List[CarView] = []
    particles: List[ParticleView] = []
    wager_counts: Dict[str, int] = {}
    pool: PoolSummary
    payout_estimate: Optional[PayoutEstimate] = None
    selected_entity_id: Optional[str] = None
    my_wager_count: int = 0
    reveal: Optional[RevealSummary] = None
    balance: Optional[float] = None
    last_error: Optional[str] = None


class FrameBuilder:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        settings = settings or EngineSettings()
        self.mapper = ProgressMapper(settings.track_length, settings.segments_per_lane)
        self.pool = PoolCalculator(settings.stake_unit, settings.fee_rate)
        self.particles = ParticleField(rng)

    def build(self, state: RoundState, now: datetime, version: int = 0) -> RaceFrame:
        """Derive a frame from one state snapshot

        Args:
            state (RoundState): State read once for this frame
            now (datetime): Frame time, drives the projected race progress
            version (int): Controller state version the frame was built from

        Returns:
            RaceFrame: Frame ready to be serialized
        """
        cars = self.mapper.car_views(state, now)
        if state.phase is Phase.racing:
            self._animate(cars)
        else:
            self.particles.clear()

        pool = self.pool.summarize(state.wager_counts)
        estimate = None
        if state.phase in (Phase.predictions, Phase.locked):
            estimate = self.pool.estimate_payout(state.wager_counts, len(state.my_wagers))
        reveal = None
        if state.phase in REVEAL_PHASES:
            reveal = self.pool.reveal_summary(state.my_wagers, state.winner_entity_id)

        return RaceFrame(
            version=version,
            generated_at=now,
            phase=state.phase,
            round_id=state.round_id,
            round_number=state.round.number if state.round is not None else None,
            seconds_remaining=state.seconds_remaining,
            lock_countdown=state.lock_countdown,
            reveal_countdown=state.reveal_countdown,
            wagers_open=state.wagers_open(),
            lanes=self.mapper.lane_views(state),
            cars=cars,
            particles=self.particles.views(),
            wager_counts=state.wager_counts,
            pool=pool,
            payout_estimate=estimate,
            selected_entity_id=state.selected_entity_id(),
            my_wager_count=len(state.my_wagers),
            reveal=reveal,
            balance=state.balance,
            last_error=state.last_error,
        )

    def _animate(self, cars: List[CarView]) -> None:
        for car in cars:
            car.emitting = car.terrain in PARTICLES_PER_EMIT and 0 < car.progress < 100
            if car.emitting:
                self.particles.emit(car.entity_id, car.terrain, car.progress, car.lane_index + 0.5, car.distance)
        self.particles.step()


class RenderLoop:
    """Builds a frame on every tick and hands it to the broadcaster.

    The controller state is read exactly once per frame; the loop never waits
    on network calls.
    """

    def __init__(
        self,
        controller: PhaseController,
        broadcaster: FrameBroadcaster,
        builder: Optional[FrameBuilder] = None,
        interval_s: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.controller = controller
        self.broadcaster = broadcaster
        self.builder = builder or FrameBuilder(controller.settings)
        self.interval_s = interval_s or controller.settings.frame_interval_s
        self.clock = clock
        self.latest: Optional[RaceFrame] = None

    def tick(self) -> RaceFrame:
        state = self.controller.state
        version = self.controller.version
        self.latest = self.builder.build(state, self.clock(), version)
        return self.latest

    async def run(self) -> None:
        logging.info(f"Render loop started ({1 / self.interval_s:.0f} fps)")
        while True:
            try:
                frame = self.tick()
                await self.broadcaster.broadcast(frame)
            except asyncio.CancelledError:
                raise
            except Exception:
                logging.exception("Frame build failed")
            await asyncio.sleep(self.interval_s)
