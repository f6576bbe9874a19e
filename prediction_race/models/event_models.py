"""Inbound events of the phase controller.

Push events mirror the payloads published on the game channel. Internal events
are produced by poll results, RPC completions and local timers. All of them go
through the same reducer.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from prediction_race.models.round_models import (
    ActiveRoundModel,
    CarPositionModel,
    LaneModel,
    RaceResultModel,
    RevealTimingModel,
    RoundModel,
    WagerModel,
    WireModel,
)


# ==============================================================================
# ==== Push events (server -> client) ==========================================
# ==============================================================================


class RoundStartedEvent(WireModel):
    round: RoundModel


class PredictionsLockedEvent(WireModel):
    round_id: str
    final_counts: Dict[str, int] = {}
    total_pot: Optional[float] = None


class RaceStartedEvent(WireModel):
    round_id: str
    lanes: List[LaneModel] = []
    results: List[RaceResultModel] = []


class RaceProgressEvent(WireModel):
    round_id: str
    positions: Dict[str, CarPositionModel] = {}


class RoundFinishedEvent(WireModel):
    round: RoundModel
    results: List[RaceResultModel] = []
    reveal_timing: Optional[RevealTimingModel] = None
    total_pot: Optional[float] = None


class WagerCountsUpdatedEvent(WireModel):
    round_id: str
    counts: Dict[str, int] = {}


PUSH_EVENT_TYPES = {
    "round.started": RoundStartedEvent,
    "predictions.locked": PredictionsLockedEvent,
    "race.started": RaceStartedEvent,
    "race.progress": RaceProgressEvent,
    "round.finished": RoundFinishedEvent,
    "wagerCounts.updated": WagerCountsUpdatedEvent,
}


def parse_push_event(name: str, data: dict) -> Optional[WireModel]:
    """Build the typed event for a channel message, None if the name is unknown."""
    event_type = PUSH_EVENT_TYPES.get(name)
    if event_type is None:
        return None
    return event_type.model_validate(data)


# ==============================================================================
# ==== Internal events =========================================================
# ==============================================================================


class TickKind(str, Enum):
    predictions = "predictions"
    lock = "lock"
    reveal = "reveal"


class ActiveRoundLoadedEvent(BaseModel):
    snapshot: ActiveRoundModel


class RoundMissingEvent(BaseModel):
    pass


class LoadFailedEvent(BaseModel):
    reason: str


class MyWagersLoadedEvent(BaseModel):
    round_id: str
    wagers: List[WagerModel]


class BalanceLoadedEvent(BaseModel):
    balance: float


class TickEvent(BaseModel):
    kind: TickKind


class RevealElapsedEvent(BaseModel):
    stage: int


class ResyncRequestedEvent(BaseModel):
    reason: str
