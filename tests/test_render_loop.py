"""Frames derived from the round state, and their fan-out to stream clients."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

from prediction_race.domain.phase import Phase, RoundState
from prediction_race.load_settings import EngineSettings
from prediction_race.manager import FrameBroadcaster
from prediction_race.models.round_models import CarPositionModel
from prediction_race.render_loop import FrameBuilder, RenderLoop
from tests.fakes import T0, FakeClock, FakeRng, make_round, make_wagers


def test_predictions_frame_shows_estimate_and_fog() -> None:
    state = RoundState(
        phase=Phase.predictions,
        round=make_round(),
        seconds_remaining=12,
        wager_counts={"A": 3, "B": 1, "C": 0},
        my_wagers=make_wagers("r1", "A", 2),
    )
    frame = FrameBuilder(rng=FakeRng()).build(state, T0, version=7)
    assert frame.version == 7
    assert frame.wagers_open is True
    assert frame.pool.total_pot == 400
    assert frame.payout_estimate.amount == 190
    assert frame.payout_estimate.is_estimate is True
    assert frame.selected_entity_id == "A"
    assert frame.lanes[0].segments == ["regular", "unknown", "unknown"]
    assert frame.reveal is None
    assert frame.particles == []


def test_racing_frame_emits_particles_on_soft_terrain() -> None:
    state = RoundState(
        phase=Phase.racing,
        round=make_round(),
        race_confirmed=True,
        progress={
            "A": CarPositionModel(progress=50, distance=150, segment=1),
            "B": CarPositionModel(progress=50, distance=150, segment=1),
        },
    )
    builder = FrameBuilder(rng=FakeRng())
    frame = builder.build(state, T0)
    cars = {car.entity_id: car for car in frame.cars}
    # A sits on desert, B on regular terrain
    assert cars["A"].emitting is True
    assert cars["B"].emitting is False
    assert {particle.entity_id for particle in frame.particles} == {"A"}
    assert frame.payout_estimate is None

    revealed = state.model_copy(update={"phase": Phase.reveal0, "progress": {}})
    frame = builder.build(revealed, T0)
    assert frame.particles == []
    assert builder.particles.count() == 0


def test_reveal_frame_uses_settled_payouts() -> None:
    state = RoundState(
        phase=Phase.reveal1,
        round=make_round(phase="finished", winner="A"),
        my_wagers=make_wagers("r1", "A", 1, payout=361),
    )
    frame = FrameBuilder(EngineSettings()).build(state, T0)
    assert frame.reveal.is_winner is True
    assert frame.reveal.net == 261


def test_render_loop_reads_controller_state() -> None:
    controller = SimpleNamespace(state=RoundState(), version=3, settings=EngineSettings())
    loop = RenderLoop(controller, FrameBroadcaster(), clock=FakeClock())
    frame = loop.tick()
    assert frame.phase is Phase.waiting
    assert frame.version == 3
    assert loop.latest is frame


def test_broadcaster_keeps_latest_frames_for_slow_clients() -> None:
    async def scenario():
        broadcaster = FrameBroadcaster(max_pending=2)
        queue = broadcaster.connect()
        builder = FrameBuilder()
        for version in range(5):
            await broadcaster.broadcast(builder.build(RoundState(), T0, version))
        stream = broadcaster.event_generator(queue)
        first = await stream.__anext__()
        await stream.aclose()
        return broadcaster, first

    broadcaster, first = asyncio.run(scenario())
    event, data = first.strip().split("\n")
    assert event == "event: frame"
    assert json.loads(data[len("data: "):])["version"] == 3
    assert broadcaster.active_connections == set()
