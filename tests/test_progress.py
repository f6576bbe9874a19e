"""Progress mapping, fog of war and particle behaviour."""

from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

from prediction_race.domain.phase import Phase, RoundState
from prediction_race.domain.progress import (
    MAX_PARTICLES_PER_CAR,
    UNKNOWN_TERRAIN,
    ParticleField,
    ProgressMapper,
)
from prediction_race.models.round_models import CarPositionModel, RaceResultModel, Terrain
from tests.fakes import T0, FakeRng, make_round


@pytest.mark.parametrize(
    "progress, expected",
    [(0, 0), (33.3, 0), (34, 1), (66.7, 2), (100, 2), (150, 2), (-5, 0)],
)
def test_segment_index_is_clamped(progress: float, expected: int) -> None:
    assert ProgressMapper().segment_index(progress) == expected


def test_only_the_first_segment_is_shown_before_the_race() -> None:
    state = RoundState(phase=Phase.predictions, round=make_round())
    lanes = ProgressMapper().lane_views(state)
    assert [lane.segments for lane in lanes] == [
        ["regular", UNKNOWN_TERRAIN, UNKNOWN_TERRAIN],
        ["desert", UNKNOWN_TERRAIN, UNKNOWN_TERRAIN],
        ["muddy", UNKNOWN_TERRAIN, UNKNOWN_TERRAIN],
    ]


def test_position_in_hidden_area_is_not_visible() -> None:
    """Progress 65 lies 195 units in, beyond the visible 90 units."""
    mapper = ProgressMapper()
    lane = make_round().lanes[0]
    assert mapper.terrain_at_progress(lane, 65, Phase.predictions) == UNKNOWN_TERRAIN
    assert mapper.is_position_fogged(65, Phase.predictions) is True
    assert mapper.is_position_fogged(25, Phase.predictions) is False
    assert mapper.terrain_at_progress(lane, 25, Phase.predictions) == "regular"


def test_fog_lifts_once_racing() -> None:
    mapper = ProgressMapper()
    lane = make_round().lanes[0]
    assert mapper.terrain_at_progress(lane, 65, Phase.racing) == "desert"
    assert mapper.is_position_fogged(95, Phase.racing) is False


def test_server_hidden_segments_stay_unknown() -> None:
    state = RoundState(
        phase=Phase.racing,
        round=make_round(lanes=[[Terrain.regular, Terrain.hidden, Terrain.hidden]]),
    )
    assert ProgressMapper().lane_views(state)[0].segments == ["regular", UNKNOWN_TERRAIN, UNKNOWN_TERRAIN]


def test_car_views_follow_latest_snapshot() -> None:
    state = RoundState(
        phase=Phase.racing,
        round=make_round(),
        progress={"A": CarPositionModel(progress=50, distance=150, segment=1)},
    )
    cars = {car.entity_id: car for car in ProgressMapper().car_views(state, T0)}
    assert cars["A"].lane_index == 0
    assert cars["A"].distance == pytest.approx(150)
    assert cars["A"].segment_index == 1
    assert cars["A"].terrain == "desert"
    assert cars["B"].progress == 0


def test_progress_is_projected_until_first_snapshot() -> None:
    state = RoundState(
        phase=Phase.racing,
        round=make_round(),
        race_started_at=T0,
        results=[
            RaceResultModel(entity_id="A", total_time=30.0, segment_times=[10.0, 10.0, 10.0], position=1),
            RaceResultModel(entity_id="B", total_time=30.0, segment_times=[10.0, 10.0, 10.0], position=2),
        ],
    )
    progress = ProgressMapper().progress_by_entity(state, T0 + timedelta(seconds=1))
    assert progress["A"] == pytest.approx(30.0)


def test_progress_without_results_is_derived_from_lane_speeds() -> None:
    """At 100 km/h a segment takes 3.6 s; the 10.8 s race is played back in 3.6 s."""
    regular = [Terrain.regular] * 3
    state = RoundState(
        phase=Phase.racing,
        round=make_round(lanes=[regular, [Terrain.regular, Terrain.hidden, Terrain.hidden], regular]),
        race_started_at=T0.replace(tzinfo=None),
    )
    mapper = ProgressMapper()
    progress = mapper.progress_by_entity(state, T0 + timedelta(seconds=1))
    # One second of playback is 9 s of race time: two segments and half of the third
    assert progress["A"] == pytest.approx(250 / 3)
    assert progress["C"] == pytest.approx(250 / 3)
    assert "B" not in progress
    cars = {car.entity_id: car for car in mapper.car_views(state, T0 + timedelta(seconds=1))}
    assert cars["B"].progress == 0


def test_no_particles_on_regular_terrain_or_at_the_ends() -> None:
    field = ParticleField(rng=FakeRng(0.0))
    assert field.emit("A", "regular", 50, 0.5, 150) == 0
    assert field.emit("A", "desert", 0, 0.5, 0) == 0
    assert field.emit("A", "muddy", 100, 0.5, 300) == 0
    assert field.emit("A", UNKNOWN_TERRAIN, 50, 0.5, 150) == 0
    assert field.count() == 0


def test_emission_size_depends_on_terrain() -> None:
    field = ParticleField(rng=FakeRng(0.0))
    assert field.emit("A", "desert", 50, 0.5, 150) == 2
    assert field.emit("B", "muddy", 50, 1.5, 150) == 3


def test_particles_per_car_are_capped() -> None:
    field = ParticleField(rng=FakeRng(0.0))
    for _ in range(10):
        field.emit("A", "desert", 50, 0.5, 150)
    assert field.count("A") == MAX_PARTICLES_PER_CAR


def test_emission_chance_scales_with_progress() -> None:
    # A draw of 0.2 only passes once progress/100 * 0.25 exceeds it
    field = ParticleField(rng=FakeRng(0.2))
    assert field.emit("A", "desert", 50, 0.5, 150) == 0
    assert field.emit("A", "desert", 90, 0.5, 270) == 2


def test_step_moves_damps_and_decays() -> None:
    field = ParticleField(rng=FakeRng(0.0))
    field.emit("A", "desert", 50, 0.5, 150)
    field.step()
    particles = field.particles["A"]
    # vy starts at 0.5, y moves by it before damping
    assert particles["y"] == pytest.approx([150.5, 150.5])
    assert particles["vy"] == pytest.approx([0.49, 0.49])
    assert particles["life"] == pytest.approx([0.99, 0.99])


def test_dead_particles_are_dropped() -> None:
    field = ParticleField(rng=FakeRng(0.0))
    field.emit("A", "muddy", 50, 0.5, 150)
    field.particles["A"]["life"] = 0.005
    field.step()
    assert field.count() == 0
    assert "A" not in field.particles


def test_random_particles_stay_within_limits() -> None:
    field = ParticleField(rng=np.random.default_rng(7))
    for frame in range(300):
        field.emit("A", "muddy", 80, 0.5, 240)
        field.emit("B", "desert", 80, 1.5, 240)
        assert field.count("A") <= MAX_PARTICLES_PER_CAR
        assert field.count("B") <= MAX_PARTICLES_PER_CAR
        for particles in field.particles.values():
            assert np.all(particles["decay"] >= 0.01)
            assert np.all(particles["decay"] <= 0.03)
        field.step()
    assert field.count() > 0
    field.clear()
    assert field.count() == 0
