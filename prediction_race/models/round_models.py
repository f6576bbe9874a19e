from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class Terrain(str, Enum):
    regular = "regular"
    desert = "desert"  # soft terrain A, light dust
    muddy = "muddy"  # soft terrain B, heavy mud
    hidden = "hidden"  # sent by the server for segments not yet revealed


class ServerRoundStatus(str, Enum):
    waiting = "waiting"
    predictions = "predictions"
    racing = "racing"
    finished = "finished"


class WagerAction(str, Enum):
    add = "add"
    remove = "remove"


class WireModel(BaseModel):
    """Base for payloads exchanged with the game server (camelCase on the wire)."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class EntityModel(WireModel):
    id: str
    name: str
    top_view_image: Optional[str] = None
    side_view_image: Optional[str] = None
    speed_regular: float
    speed_desert: float
    speed_muddy: float


class EntityAssignmentModel(WireModel):
    entity: EntityModel
    lane_number: int = Field(ge=1)


class LaneModel(WireModel):
    segments: List[Terrain]


class CarPositionModel(WireModel):
    progress: float = 0.0
    distance: float = 0.0
    segment: int = 0


class RaceResultModel(WireModel):
    entity_id: str
    total_time: float
    segment_times: List[float] = []
    position: Optional[int] = None


class RevealTimingModel(WireModel):
    reveal0_duration_ms: int = 3000
    reveal1_duration_ms: int = 5000


class RoundModel(WireModel):
    id: str
    number: int
    phase: ServerRoundStatus = ServerRoundStatus.predictions
    prediction_deadline: Optional[datetime] = None
    race_started_at: Optional[datetime] = None
    cars: List[EntityAssignmentModel] = []
    lanes: List[LaneModel] = []
    total_pot: float = 0
    winner_entity_id: Optional[str] = None

    def entity(self, entity_id: str) -> Optional[EntityModel]:
        for assignment in self.cars:
            if assignment.entity.id == entity_id:
                return assignment.entity
        return None


class WagerModel(WireModel):
    id: str
    round_id: str
    entity_id: str
    amount: float = 100
    is_correct: Optional[bool] = None
    payout: float = 0


class ActiveRoundModel(WireModel):
    """Response of the active round call. ``round`` is None when no round is live."""

    round: Optional[RoundModel] = None
    wager_counts: Dict[str, int] = {}
