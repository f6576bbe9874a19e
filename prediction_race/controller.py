import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Set

from apscheduler.schedulers.base import BaseScheduler

from prediction_race.domain.phase import (
    FetchMyWagers,
    FetchRound,
    PhaseReducer,
    PollCounts,
    RoundState,
    ScheduleRevealAdvance,
    StartTicker,
)
from prediction_race.errors import StaleSnapshot
from prediction_race.load_settings import EngineSettings
from prediction_race.models.event_models import ResyncRequestedEvent, RevealElapsedEvent, TickEvent
from prediction_race.resync import RoundLoader
from prediction_race.scoped_timers import TimerScope
from prediction_race.services.round_api import RoundApi


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PhaseController:
    """Single writer of the round state.

    Inbound events are queued and reduced one at a time. Effects returned by
    the reducer are run here: timers go into the scope of the current phase,
    fetches run as tasks that post their outcome back into the inbox.
    """

    def __init__(
        self,
        api: RoundApi,
        scheduler: BaseScheduler,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or EngineSettings()
        self.scheduler = scheduler
        self.reducer = PhaseReducer(self.settings)
        self.clock = clock
        self.state = RoundState(reveal_timing=self.reducer.default_timing())
        self.version = 0
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.loader = RoundLoader(api, self.post, lambda: self.state.round_id, self.settings)
        self._phase_scope = TimerScope(scheduler, "waiting:none")
        self._controller_scope: Optional[TimerScope] = None
        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None

    def post(self, event) -> None:
        self.inbox.put_nowait(event)

    async def post_async(self, event) -> None:
        self.post(event)

    async def start(self) -> None:
        self._controller_scope = TimerScope(self.scheduler, "controller")
        self._controller_scope.every("balance", self.settings.balance_poll_s, self.loader.refresh_balance)
        self.post(ResyncRequestedEvent(reason="startup"))
        self._spawn(self.loader.refresh_balance())
        self._runner = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._phase_scope.cancel_all()
        if self._controller_scope is not None:
            self._controller_scope.cancel_all()
        tasks = list(self._tasks)
        if self._runner is not None:
            tasks.append(self._runner)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logging.info("Phase controller stopped")

    async def run(self) -> None:
        while True:
            event = await self.inbox.get()
            try:
                self.handle(event)
            except Exception:
                logging.exception(f"Failed to handle {type(event).__name__}")

    def handle(self, event) -> RoundState:
        """Reduce one event and run its effects

        Args:
            event: Push or internal event

        Returns:
            RoundState: The state after the event
        """
        try:
            new_state, effects = self.reducer.reduce(self.state, event, self.clock())
        except StaleSnapshot as e:
            logging.debug(f"Dropped {type(event).__name__}: {e}")
            return self.state

        previous = self.state
        self.state = new_state
        if new_state is not previous:
            self.version += 1
        if (previous.phase, previous.round_id) != (new_state.phase, new_state.round_id):
            logging.info(
                f"Phase {previous.phase.value} -> {new_state.phase.value} "
                f"(round {new_state.round_id}, number {new_state.round.number if new_state.round else '-'})"
            )
            self._phase_scope.cancel_all()
            self._phase_scope = TimerScope(self.scheduler, f"{new_state.phase.value}:{new_state.round_id}")

        for effect in effects:
            self._run_effect(effect)
        return new_state

    def request_wagers(self, round_id: str) -> None:
        self._spawn(self.loader.load_my_wagers(round_id))

    def _run_effect(self, effect) -> None:
        scope = self._phase_scope
        if isinstance(effect, StartTicker):
            scope.every(f"tick-{effect.kind.value}", effect.interval_s, self.post_async, TickEvent(kind=effect.kind))
        elif isinstance(effect, FetchRound):
            if effect.delay_s <= 0:
                scope.cancel("fetch-round")
                self._spawn(self.loader.load_active_round(effect.reason))
            else:
                scope.after("fetch-round", effect.delay_s, self.loader.load_active_round, effect.reason)
        elif isinstance(effect, FetchMyWagers):
            self.request_wagers(effect.round_id)
        elif isinstance(effect, PollCounts):
            scope.every("poll-counts", effect.interval_s, self.loader.refresh_counts)
        elif isinstance(effect, ScheduleRevealAdvance):
            scope.after(f"reveal-{effect.stage}", effect.delay_s, self.post_async, RevealElapsedEvent(stage=effect.stage))
        else:
            raise TypeError(f"unsupported effect: {effect!r}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"Background task failed: {task.exception()!r}")
