"""Maps race progress onto the track.

Positions are expressed in track space: ``x`` is the lane centre
(lane index + 0.5) and ``y`` the distance from the start line.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel

from prediction_race.domain.phase import Phase, RoundState, as_utc
from prediction_race.domain.terrain import SEGMENTS_PER_LANE, TRACK_LENGTH, lane_segment_times, projected_progress
from prediction_race.models.round_models import LaneModel, Terrain

UNKNOWN_TERRAIN = "unknown"

# Only this share of the track, measured from the start line, is shown before the race.
VISIBLE_FRACTION = 0.3
FOGGED_PHASES = (Phase.waiting, Phase.predictions, Phase.locked)

PARTICLE_CHANCE = 0.25
MAX_PARTICLES_PER_CAR = 15
PARTICLES_PER_EMIT = {Terrain.desert: 2, Terrain.muddy: 3}
PARTICLE_KIND = {Terrain.desert: 1, Terrain.muddy: 2}
PARTICLE_KIND_NAMES = {1: "dust", 2: "mud"}
VERTICAL_DAMPING = 0.98

PARTICLE_DTYPE = np.dtype(
    [
        ("x", np.float64),
        ("y", np.float64),
        ("vx", np.float64),
        ("vy", np.float64),
        ("life", np.float64),
        ("decay", np.float64),
        ("kind", np.int8),
    ]
)


class LaneView(BaseModel):
    lane_index: int
    segments: List[str]


class CarView(BaseModel):
    entity_id: str
    name: str
    lane_index: int
    progress: float
    distance: float
    segment_index: int
    terrain: str
    visible: bool
    emitting: bool = False


class ParticleView(BaseModel):
    entity_id: str
    kind: str
    x: float
    y: float
    life: float


class ProgressMapper:
    def __init__(
        self,
        track_length: float = TRACK_LENGTH,
        segments_per_lane: int = SEGMENTS_PER_LANE,
        visible_fraction: float = VISIBLE_FRACTION,
    ):
        self.track_length = track_length
        self.segments_per_lane = segments_per_lane
        self.segment_length = track_length / segments_per_lane
        self.visible_fraction = visible_fraction

    def distance(self, progress: float) -> float:
        return max(0.0, min(100.0, progress)) / 100 * self.track_length

    def segment_index(self, progress: float) -> int:
        """Segment holding the given progress, clamped to the last segment."""
        index = math.floor(self.distance(progress) / self.segment_length)
        return max(0, min(self.segments_per_lane - 1, index))

    def is_segment_fogged(self, index: int, phase: Phase) -> bool:
        """True when a segment lies entirely in the hidden part of the track."""
        if phase not in FOGGED_PHASES:
            return False
        segment_start = index * self.segment_length
        return segment_start >= self.visible_fraction * self.track_length - 1e-9

    def is_position_fogged(self, progress: float, phase: Phase) -> bool:
        return phase in FOGGED_PHASES and self.distance(progress) > self.visible_fraction * self.track_length

    def visible_terrain(self, lane: Optional[LaneModel], index: int, phase: Phase) -> str:
        if lane is None or index >= len(lane.segments) or self.is_segment_fogged(index, phase):
            return UNKNOWN_TERRAIN
        terrain = lane.segments[index]
        if terrain is Terrain.hidden:
            return UNKNOWN_TERRAIN
        return terrain.value

    def terrain_at_progress(self, lane: Optional[LaneModel], progress: float, phase: Phase) -> str:
        return self.visible_terrain(lane, self.segment_index(progress), phase)

    def lane_views(self, state: RoundState) -> List[LaneView]:
        if state.round is None:
            return []
        return [
            LaneView(
                lane_index=lane_index,
                segments=[self.visible_terrain(lane, index, state.phase) for index in range(self.segments_per_lane)],
            )
            for lane_index, lane in enumerate(state.round.lanes)
        ]

    def progress_by_entity(self, state: RoundState, now: datetime) -> Dict[str, float]:
        """Latest progress per car.

        While racing without any snapshot yet, progress is replayed from the
        race results so cars keep moving until the first snapshot arrives.
        Without results the segment times are derived from the car speeds on
        the revealed lanes; cars on a lane that is still hidden stay put.
        """
        if state.round is None:
            return {}
        if state.progress:
            return {entity_id: position.progress for entity_id, position in state.progress.items()}
        if state.phase is Phase.racing and state.race_started_at is not None:
            segment_times = self.segment_times_by_entity(state)
            if not segment_times:
                return {}
            if state.results:
                slowest = max(result.total_time for result in state.results)
            else:
                slowest = max(sum(times) for times in segment_times.values())
            elapsed = (now - as_utc(state.race_started_at)).total_seconds()
            return {
                entity_id: projected_progress(times, slowest, elapsed)
                for entity_id, times in segment_times.items()
            }
        if state.phase in (Phase.reveal0, Phase.reveal1) and state.winner_entity_id is not None:
            return {state.winner_entity_id: 100.0}
        return {}

    def segment_times_by_entity(self, state: RoundState) -> Dict[str, List[float]]:
        if state.results:
            return {result.entity_id: result.segment_times for result in state.results}
        times = {}
        for assignment in state.round.cars:
            lane_index = assignment.lane_number - 1
            if lane_index >= len(state.round.lanes):
                continue
            try:
                times[assignment.entity.id] = lane_segment_times(assignment.entity, state.round.lanes[lane_index])
            except ValueError:
                continue
        return times

    def car_views(self, state: RoundState, now: datetime) -> List[CarView]:
        if state.round is None:
            return []
        progress = self.progress_by_entity(state, now)
        views = []
        for assignment in state.round.cars:
            entity_id = assignment.entity.id
            lane_index = assignment.lane_number - 1
            lane = state.round.lanes[lane_index] if lane_index < len(state.round.lanes) else None
            car_progress = progress.get(entity_id, 0.0)
            views.append(
                CarView(
                    entity_id=entity_id,
                    name=assignment.entity.name,
                    lane_index=lane_index,
                    progress=car_progress,
                    distance=self.distance(car_progress),
                    segment_index=self.segment_index(car_progress),
                    terrain=self.terrain_at_progress(lane, car_progress, state.phase),
                    visible=not self.is_position_fogged(car_progress, state.phase),
                )
            )
        return views


class ParticleField:
    """Cosmetic dust and mud emitted behind cars on soft terrain."""

    def __init__(self, rng: Optional[np.random.Generator] = None, max_per_car: int = MAX_PARTICLES_PER_CAR):
        self.rng = rng or np.random.default_rng()
        self.max_per_car = max_per_car
        self.particles: Dict[str, np.ndarray] = {}

    def count(self, entity_id: Optional[str] = None) -> int:
        if entity_id is not None:
            return len(self.particles.get(entity_id, ()))
        return sum(len(particles) for particles in self.particles.values())

    def clear(self) -> None:
        self.particles = {}

    def emit(self, entity_id: str, terrain: str, progress: float, x: float, y: float, scale: float = 1.0) -> int:
        """Maybe spawn particles behind a car

        Args:
            entity_id (str): Car emitting the particles
            terrain (str): Terrain under the car; only desert and muddy emit
            progress (float): Car progress (0-100); the chance grows with it
            x (float): Car position across the track
            y (float): Car position along the track
            scale (float): Size of the car, scales spread and speed

        Returns:
            int: Number of particles spawned
        """
        if progress <= 0 or progress >= 100:
            return 0
        try:
            kind_terrain = Terrain(terrain)
        except ValueError:
            return 0
        if kind_terrain not in PARTICLES_PER_EMIT:
            return 0
        current = self.particles.get(entity_id)
        room = self.max_per_car - (0 if current is None else len(current))
        if room <= 0:
            return 0
        if self.rng.random() >= progress / 100 * PARTICLE_CHANCE:
            return 0

        n = min(PARTICLES_PER_EMIT[kind_terrain], room)
        spawned = np.zeros(n, dtype=PARTICLE_DTYPE)
        spawned["x"] = x + (self.rng.random(n) - 0.5) * scale
        spawned["y"] = y
        spawned["vx"] = (self.rng.random(n) - 0.5) * 2 * scale
        spawned["vy"] = (self.rng.random(n) * 1.5 + 0.5) * scale
        spawned["life"] = 1.0
        spawned["decay"] = self.rng.random(n) * 0.02 + 0.01
        spawned["kind"] = PARTICLE_KIND[kind_terrain]
        self.particles[entity_id] = spawned if current is None else np.concatenate([current, spawned])
        return n

    def step(self) -> None:
        """Advance every particle by one tick and drop the dead ones."""
        for entity_id, particles in list(self.particles.items()):
            particles["x"] += particles["vx"]
            particles["y"] += particles["vy"]
            particles["life"] -= particles["decay"]
            particles["vy"] *= VERTICAL_DAMPING
            alive = particles[particles["life"] > 0]
            if len(alive):
                self.particles[entity_id] = alive
            else:
                del self.particles[entity_id]

    def views(self) -> List[ParticleView]:
        return [
            ParticleView(
                entity_id=entity_id,
                kind=PARTICLE_KIND_NAMES[int(particle["kind"])],
                x=float(particle["x"]),
                y=float(particle["y"]),
                life=float(particle["life"]),
            )
            for entity_id, particles in self.particles.items()
            for particle in particles
        ]
