"""Track and terrain rules shared by the progress mapper and the render loop.

Rule of thumb:
- OK: track geometry, speed conversions, replaying the race timeline.
- Not OK: reading the clock, talking to the server.
"""

from typing import List

from prediction_race.models.round_models import EntityModel, LaneModel, Terrain

TRACK_LENGTH = 300.0
SEGMENTS_PER_LANE = 3
SEGMENT_LENGTH = TRACK_LENGTH / SEGMENTS_PER_LANE

# The server plays the race back three times faster than the computed times.
RACE_TIME_SCALE = 3.0


def speed_for(entity: EntityModel, terrain: Terrain) -> float:
    """Return the car's rated speed (km/h) on the given terrain."""
    if terrain is Terrain.desert:
        return entity.speed_desert
    if terrain is Terrain.muddy:
        return entity.speed_muddy
    return entity.speed_regular


def segment_time(entity: EntityModel, terrain: Terrain, segment_length: float = SEGMENT_LENGTH) -> float:
    """Seconds needed to cover one segment, speeds being rated in km/h."""
    speed_mps = speed_for(entity, terrain) / 3.6
    return segment_length / speed_mps


def lane_segment_times(entity: EntityModel, lane: LaneModel) -> List[float]:
    """Seconds per segment for a car on a fully revealed lane."""
    if any(terrain is Terrain.hidden for terrain in lane.segments):
        raise ValueError("lane terrain is not revealed yet")
    return [segment_time(entity, terrain) for terrain in lane.segments]


def distance_at(segment_times: List[float], elapsed_s: float, segment_length: float = SEGMENT_LENGTH) -> float:
    """Distance covered after ``elapsed_s`` seconds of race time.

    Args:
        segment_times (List[float]): Seconds per segment, start line first
        elapsed_s (float): Unscaled race time
        segment_length (float): Length of one segment

    Returns:
        float: Distance in track units, capped at the finish line
    """
    distance = 0.0
    spent = 0.0
    for time_in_segment in segment_times:
        if elapsed_s >= spent + time_in_segment:
            distance += segment_length
            spent += time_in_segment
        else:
            distance += segment_length / time_in_segment * (elapsed_s - spent)
            break
    return min(distance, segment_length * len(segment_times))


def playback_duration(slowest_total_s: float) -> float:
    """Wall-clock seconds the server spends animating a race (3 to 10 s)."""
    return max(3.0, min(10.0, slowest_total_s / RACE_TIME_SCALE))


def projected_progress(
    segment_times: List[float], slowest_total_s: float, playback_elapsed_s: float
) -> float:
    """Progress (0-100) a car should show ``playback_elapsed_s`` seconds after the race started.

    Replays the server timeline: the playback fraction is scaled by
    ``RACE_TIME_SCALE`` and race time stops at the slowest car's total time.
    """
    if not segment_times or slowest_total_s <= 0:
        return 0.0
    fraction = min(max(0.0, playback_elapsed_s) / playback_duration(slowest_total_s), 1.0)
    race_time = min(fraction * slowest_total_s * RACE_TIME_SCALE, slowest_total_s)
    track_length = SEGMENT_LENGTH * len(segment_times)
    return min(distance_at(segment_times, race_time) / track_length * 100, 100.0)
