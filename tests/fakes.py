"""Deterministic stand-ins for the clock, the scheduler and the game server."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import numpy as np
from apscheduler.jobstores.base import JobLookupError

from prediction_race.models.round_models import (
    ActiveRoundModel,
    EntityAssignmentModel,
    EntityModel,
    LaneModel,
    RoundModel,
    Terrain,
    WagerAction,
    WagerModel,
)

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@dataclass
class FakeClock:
    t: datetime = T0

    def __call__(self) -> datetime:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += timedelta(seconds=seconds)


@dataclass
class FakeJob:
    func: object
    trigger: str
    args: list
    kwargs: dict


class FakeScheduler:
    """Records jobs instead of running them; tests fire them by id."""

    def __init__(self) -> None:
        self.jobs: Dict[str, FakeJob] = {}
        self.running = False

    def add_job(self, func, trigger, args=None, id=None, **kwargs):
        self.jobs[id] = FakeJob(func, trigger, list(args or []), kwargs)

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    async def fire(self, job_id: str) -> None:
        job = self.jobs[job_id]
        if job.trigger == "date":
            del self.jobs[job_id]
        await job.func(*job.args)


class FakeRng:
    """Always draws ``value``, which forces particle emission for value 0."""

    def __init__(self, value: float = 0.0) -> None:
        self.value = value

    def random(self, size=None):
        if size is None:
            return self.value
        return np.full(size, self.value)


class FakeApi:
    def __init__(
        self,
        active: Optional[List[ActiveRoundModel]] = None,
        wagers: Optional[Dict[str, List[WagerModel]]] = None,
        balance: float = 1000.0,
    ) -> None:
        self.active = list(active or [])
        self.wagers = wagers or {}
        self.balance_value = balance
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def active_round(self) -> ActiveRoundModel:
        self.calls.append(("active_round",))
        if isinstance(self.active[0], Exception):
            raise self.active.pop(0)
        if len(self.active) > 1:
            return self.active.pop(0)
        return self.active[0]

    async def my_wagers(self, round_id: str) -> List[WagerModel]:
        self.calls.append(("my_wagers", round_id))
        return list(self.wagers.get(round_id, []))

    async def place_or_remove_wager(self, round_id: str, entity_id: str, action: WagerAction) -> dict:
        self.calls.append(("wager", round_id, entity_id, action))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        held = self.wagers.setdefault(round_id, [])
        if action is WagerAction.add:
            held.append(WagerModel(id=f"w{len(held) + 1}", round_id=round_id, entity_id=entity_id))
        else:
            for wager in reversed(held):
                if wager.entity_id == entity_id:
                    held.remove(wager)
                    break
        return {"success": True}

    async def balance(self) -> float:
        self.calls.append(("balance",))
        return self.balance_value


def make_entity(entity_id: str, regular: float = 100, desert: float = 60, muddy: float = 40) -> EntityModel:
    return EntityModel(
        id=entity_id,
        name=f"Car {entity_id}",
        speed_regular=regular,
        speed_desert=desert,
        speed_muddy=muddy,
    )


def make_round(
    round_id: str = "r1",
    number: int = 1,
    phase: str = "predictions",
    deadline: Optional[datetime] = T0 + timedelta(seconds=30),
    lanes: Optional[List[List[Terrain]]] = None,
    winner: Optional[str] = None,
) -> RoundModel:
    lanes = lanes or [
        [Terrain.regular, Terrain.desert, Terrain.muddy],
        [Terrain.desert, Terrain.regular, Terrain.regular],
        [Terrain.muddy, Terrain.muddy, Terrain.desert],
    ]
    return RoundModel(
        id=round_id,
        number=number,
        phase=phase,
        prediction_deadline=deadline,
        cars=[
            EntityAssignmentModel(entity=make_entity(entity_id), lane_number=lane)
            for lane, entity_id in enumerate(["A", "B", "C"], start=1)
        ],
        lanes=[LaneModel(segments=segments) for segments in lanes],
        winner_entity_id=winner,
    )


def make_wagers(round_id: str, entity_id: str, count: int, payout: float = 0) -> List[WagerModel]:
    return [
        WagerModel(id=f"w{i}", round_id=round_id, entity_id=entity_id, payout=payout)
        for i in range(1, count + 1)
    ]


async def settle(controller) -> None:
    """Process queued events and wait for running fetches until both are exhausted."""
    while controller._tasks or not controller.inbox.empty():
        while not controller.inbox.empty():
            controller.handle(controller.inbox.get_nowait())
        if controller._tasks:
            await asyncio.gather(*list(controller._tasks))
