"""Round lifecycle state machine.

Every inbound event (push event, poll result, timer tick) goes through
``PhaseReducer.reduce`` which returns the next ``RoundState`` and the effects
the controller has to run. The reducer never performs I/O and never reads the
clock: ``now`` is passed in.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from prediction_race.domain.terrain import playback_duration
from prediction_race.errors import StaleSnapshot
from prediction_race.load_settings import EngineSettings
from prediction_race.models.event_models import (
    ActiveRoundLoadedEvent,
    BalanceLoadedEvent,
    LoadFailedEvent,
    MyWagersLoadedEvent,
    PredictionsLockedEvent,
    RaceProgressEvent,
    RaceStartedEvent,
    ResyncRequestedEvent,
    RevealElapsedEvent,
    RoundFinishedEvent,
    RoundMissingEvent,
    RoundStartedEvent,
    TickEvent,
    TickKind,
    WagerCountsUpdatedEvent,
)
from prediction_race.models.round_models import (
    CarPositionModel,
    RaceResultModel,
    RevealTimingModel,
    RoundModel,
    ServerRoundStatus,
    WagerModel,
)


class Phase(str, Enum):
    waiting = "waiting"
    predictions = "predictions"
    locked = "locked"
    racing = "racing"
    reveal0 = "reveal0"  # the user's own selections
    reveal1 = "reveal1"  # winner and net result


PHASE_ORDER = {
    Phase.waiting: 0,
    Phase.predictions: 1,
    Phase.locked: 2,
    Phase.racing: 3,
    Phase.reveal0: 4,
    Phase.reveal1: 5,
}

REVEAL_PHASES = (Phase.reveal0, Phase.reveal1)


class RoundState(BaseModel):
    """Everything the client knows about the live round. Owned by the controller."""

    phase: Phase = Phase.waiting
    round: Optional[RoundModel] = None
    pending_round: Optional[RoundModel] = None
    finished_round_id: Optional[str] = None
    seconds_remaining: int = 0
    lock_countdown: int = 0
    reveal_countdown: int = 0
    wager_counts: Dict[str, int] = {}
    my_wagers: List[WagerModel] = []
    progress: Dict[str, CarPositionModel] = {}
    results: List[RaceResultModel] = []
    race_confirmed: bool = False
    race_started_at: Optional[datetime] = None
    reveal_timing: RevealTimingModel = RevealTimingModel()
    balance: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def round_id(self) -> Optional[str]:
        return self.round.id if self.round is not None else None

    @property
    def winner_entity_id(self) -> Optional[str]:
        return self.round.winner_entity_id if self.round is not None else None

    def selected_entity_id(self) -> Optional[str]:
        return self.my_wagers[0].entity_id if self.my_wagers else None

    def wagers_open(self) -> bool:
        return self.phase is Phase.predictions and self.seconds_remaining > 0


# ==============================================================================
# ==== Effects =================================================================
# ==============================================================================


@dataclass(frozen=True)
class StartTicker:
    kind: TickKind
    interval_s: float = 1.0


@dataclass(frozen=True)
class FetchRound:
    delay_s: float
    reason: str


@dataclass(frozen=True)
class FetchMyWagers:
    round_id: str


@dataclass(frozen=True)
class PollCounts:
    interval_s: float


@dataclass(frozen=True)
class ScheduleRevealAdvance:
    stage: int
    delay_s: float


Effect = StartTicker | FetchRound | FetchMyWagers | PollCounts | ScheduleRevealAdvance
Transition = Tuple[RoundState, List[Effect]]


def as_utc(moment: datetime) -> datetime:
    """Server timestamps without an offset are UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def seconds_until(deadline: Optional[datetime], now: datetime) -> int:
    """Whole seconds left before ``deadline``, never negative."""
    if deadline is None:
        return 0
    return max(0, math.floor((as_utc(deadline) - now).total_seconds()))


def local_phase_for(status: ServerRoundStatus) -> Phase:
    if status is ServerRoundStatus.waiting:
        return Phase.waiting
    if status is ServerRoundStatus.racing:
        return Phase.racing
    if status is ServerRoundStatus.finished:
        return Phase.reveal0
    return Phase.predictions


def require_live(state: RoundState, round_id: str) -> None:
    """Raise StaleSnapshot unless ``round_id`` is the tracked round."""
    if state.round_id is None or state.round_id != round_id:
        raise StaleSnapshot(round_id, state.round_id)


class PhaseReducer:
    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self._handlers = {
            RoundStartedEvent: self._round_started,
            PredictionsLockedEvent: self._predictions_locked,
            RaceStartedEvent: self._race_started,
            RaceProgressEvent: self._race_progress,
            RoundFinishedEvent: self._round_finished,
            WagerCountsUpdatedEvent: self._wager_counts_updated,
            ActiveRoundLoadedEvent: self._active_round_loaded,
            RoundMissingEvent: self._round_missing,
            LoadFailedEvent: self._load_failed,
            MyWagersLoadedEvent: self._my_wagers_loaded,
            BalanceLoadedEvent: self._balance_loaded,
            TickEvent: self._tick,
            RevealElapsedEvent: self._reveal_elapsed,
            ResyncRequestedEvent: self._resync_requested,
        }

    def reduce(self, state: RoundState, event, now: datetime) -> Transition:
        """Compute the next state for one inbound event

        Args:
            state (RoundState): Current state, left untouched
            event: Any push or internal event
            now (datetime): Current UTC time

        Raises:
            StaleSnapshot: The event is tagged with a round that is not the live one
            TypeError: Unknown event type

        Returns:
            Transition: Next state and the effects to run
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"unsupported event: {type(event).__name__}")
        return handler(state, event, now)

    # ==== Entering rounds and phases ==========================================

    def _enter_round(self, state: RoundState, round: RoundModel, counts: Dict[str, int], now: datetime) -> Transition:
        phase = local_phase_for(round.phase)
        if phase in REVEAL_PHASES:
            # Finished rounds are never adopted, keep looking for the next one.
            return self._to_waiting(state, round.id, self.settings.missing_round_poll_s, "round already finished")

        new_state = RoundState(
            phase=phase,
            round=round,
            finished_round_id=state.finished_round_id,
            seconds_remaining=seconds_until(round.prediction_deadline, now) if phase is Phase.predictions else 0,
            wager_counts=dict(counts),
            race_confirmed=phase is Phase.racing,
            race_started_at=(round.race_started_at or now) if phase is Phase.racing else None,
            reveal_timing=state.reveal_timing,
            balance=state.balance,
        )
        effects: List[Effect] = [FetchMyWagers(round.id)]
        effects += self._entry_effects(new_state)
        if phase is Phase.racing:
            effects.append(self._race_watchdog(new_state, now))
        return new_state, effects

    def default_timing(self) -> RevealTimingModel:
        return RevealTimingModel(
            reveal0_duration_ms=self.settings.reveal0_duration_ms,
            reveal1_duration_ms=self.settings.reveal1_duration_ms,
        )

    def _race_watchdog(self, state: RoundState, now: datetime) -> FetchRound:
        """Fetch the round once the race should be over, in case the finish event is lost."""
        delay_s = self.settings.race_recheck_s
        if state.results and state.race_started_at is not None:
            slowest = max(result.total_time for result in state.results)
            elapsed = (now - as_utc(state.race_started_at)).total_seconds()
            delay_s = max(delay_s, playback_duration(slowest) + self.settings.race_finish_margin_s - elapsed)
        return FetchRound(delay_s, "race finish not received")

    def _start_reveal(
        self,
        state: RoundState,
        winner_entity_id: Optional[str],
        results: List[RaceResultModel],
        total_pot: float,
        timing: RevealTimingModel,
    ) -> Transition:
        if winner_entity_id is None and results:
            winner_entity_id = min(results, key=lambda result: result.position or math.inf).entity_id
        round = state.round.model_copy(
            update={
                "phase": ServerRoundStatus.finished,
                "winner_entity_id": winner_entity_id,
                "total_pot": total_pot,
            }
        )
        new_state = state.model_copy(
            update={
                "phase": Phase.reveal0,
                "round": round,
                "finished_round_id": round.id,
                "results": results,
                "progress": {},
                "seconds_remaining": 0,
                "lock_countdown": 0,
                "reveal_timing": timing,
                "reveal_countdown": math.ceil(timing.reveal0_duration_ms / 1000),
            }
        )
        # Settled payouts only exist on the server.
        return new_state, [FetchMyWagers(round.id)] + self._entry_effects(new_state)

    def _missed_finish(
        self, state: RoundState, next_round: Optional[RoundModel], winner_entity_id: Optional[str] = None
    ) -> Transition:
        """The live race ended without a finish event; reveal it from what is known."""
        new_state, effects = self._start_reveal(
            state, winner_entity_id, state.results, state.round.total_pot, self.default_timing()
        )
        if next_round is not None:
            new_state = new_state.model_copy(update={"pending_round": next_round})
        return new_state, effects

    def _entry_effects(self, state: RoundState) -> List[Effect]:
        settings = self.settings
        if state.phase is Phase.waiting:
            return [FetchRound(settings.missing_round_poll_s, "round not open yet")]
        if state.phase is Phase.predictions:
            effects: List[Effect] = [PollCounts(settings.counts_poll_s)]
            if state.seconds_remaining > 0:
                effects.append(StartTicker(TickKind.predictions))
            else:
                effects.append(FetchRound(settings.deadline_recheck_s, "prediction deadline passed"))
            return effects
        if state.phase is Phase.locked:
            return [StartTicker(TickKind.lock)]
        if state.phase is Phase.reveal0:
            return [
                StartTicker(TickKind.reveal),
                ScheduleRevealAdvance(0, state.reveal_timing.reveal0_duration_ms / 1000),
            ]
        if state.phase is Phase.reveal1:
            return [
                StartTicker(TickKind.reveal),
                ScheduleRevealAdvance(1, state.reveal_timing.reveal1_duration_ms / 1000),
            ]
        return []

    def _to_waiting(self, state: RoundState, finished_round_id: Optional[str], delay_s: float, reason: str) -> Transition:
        new_state = RoundState(
            phase=Phase.waiting,
            finished_round_id=finished_round_id,
            reveal_timing=state.reveal_timing,
            balance=state.balance,
            last_error=state.last_error,
        )
        return new_state, [FetchRound(delay_s, reason)]

    # ==== Push events =========================================================

    def _round_started(self, state: RoundState, event: RoundStartedEvent, now: datetime) -> Transition:
        round = event.round
        if round.id == state.round_id or round.id == state.finished_round_id:
            return state, []
        if state.phase is Phase.racing:
            return self._missed_finish(state, round)
        if state.phase in REVEAL_PHASES:
            # The next round is adopted once the reveal has been shown.
            return state.model_copy(update={"pending_round": round}), []
        return self._enter_round(state, round, {}, now)

    def _predictions_locked(self, state: RoundState, event: PredictionsLockedEvent, now: datetime) -> Transition:
        require_live(state, event.round_id)
        if PHASE_ORDER[state.phase] >= PHASE_ORDER[Phase.locked]:
            return state, []
        round = state.round
        if event.total_pot is not None:
            round = round.model_copy(update={"total_pot": event.total_pot})
        new_state = state.model_copy(
            update={
                "phase": Phase.locked,
                "round": round,
                "wager_counts": dict(event.final_counts),
                "seconds_remaining": 0,
                "lock_countdown": self.settings.lock_countdown_s,
            }
        )
        return new_state, self._entry_effects(new_state)

    def _race_started(self, state: RoundState, event: RaceStartedEvent, now: datetime) -> Transition:
        require_live(state, event.round_id)
        if PHASE_ORDER[state.phase] > PHASE_ORDER[Phase.racing]:
            return state, []
        if state.phase is Phase.racing and state.race_confirmed:
            return state, []
        round = state.round
        if event.lanes:
            round = round.model_copy(update={"lanes": event.lanes})
        already_racing = state.phase is Phase.racing
        new_state = state.model_copy(
            update={
                "phase": Phase.racing,
                "round": round,
                "results": list(event.results),
                "race_confirmed": True,
                "race_started_at": state.race_started_at if already_racing else now,
                "progress": state.progress if already_racing else {},
                "seconds_remaining": 0,
                "lock_countdown": 0,
            }
        )
        return new_state, [self._race_watchdog(new_state, now)]

    def _race_progress(self, state: RoundState, event: RaceProgressEvent, now: datetime) -> Transition:
        require_live(state, event.round_id)
        if state.phase is Phase.racing:
            return state.model_copy(update={"progress": dict(event.positions)}), []
        if PHASE_ORDER[state.phase] < PHASE_ORDER[Phase.racing]:
            # Lock or race start was missed: follow the race and fetch the full round.
            new_state = state.model_copy(
                update={
                    "phase": Phase.racing,
                    "progress": dict(event.positions),
                    "race_confirmed": False,
                    "race_started_at": now,
                    "seconds_remaining": 0,
                    "lock_countdown": 0,
                }
            )
            return new_state, [FetchRound(0, "progress received before race start")]
        return state, []

    def _round_finished(self, state: RoundState, event: RoundFinishedEvent, now: datetime) -> Transition:
        require_live(state, event.round.id)
        if PHASE_ORDER[state.phase] >= PHASE_ORDER[Phase.reveal0]:
            return state, []
        total_pot = event.total_pot if event.total_pot is not None else event.round.total_pot
        return self._start_reveal(
            state,
            event.round.winner_entity_id,
            list(event.results) or state.results,
            total_pot,
            event.reveal_timing or self.default_timing(),
        )

    def _wager_counts_updated(self, state: RoundState, event: WagerCountsUpdatedEvent, now: datetime) -> Transition:
        require_live(state, event.round_id)
        if PHASE_ORDER[state.phase] > PHASE_ORDER[Phase.predictions]:
            # Counts are final once predictions are locked.
            return state, []
        return state.model_copy(update={"wager_counts": dict(event.counts)}), []

    # ==== Poll and RPC results ================================================

    def _active_round_loaded(self, state: RoundState, event: ActiveRoundLoadedEvent, now: datetime) -> Transition:
        snapshot = event.snapshot
        round = snapshot.round
        if round is None:
            return self._round_missing(state, RoundMissingEvent(), now)
        if state.phase in REVEAL_PHASES:
            if round.id != state.round_id and round.id != state.finished_round_id:
                return state.model_copy(update={"pending_round": round}), []
            return state, []
        if round.id == state.finished_round_id:
            return self._round_missing(state, RoundMissingEvent(), now)
        if round.id != state.round_id:
            if state.phase is Phase.racing:
                return self._missed_finish(state, round)
            return self._enter_round(state, round, snapshot.wager_counts, now)

        state = state.model_copy(update={"last_error": None})
        target = local_phase_for(round.phase)
        if PHASE_ORDER[target] > PHASE_ORDER[state.phase]:
            return self._advance_to_server_phase(state, round, snapshot.wager_counts, target, now)
        if target is state.phase:
            return self._refresh_same_phase(state, round, snapshot.wager_counts, now)
        if state.phase is Phase.racing and not state.race_confirmed:
            # Local lock countdown ran out before the server started the race.
            return state, [FetchRound(self.settings.deadline_recheck_s, "race start not confirmed")]
        if state.phase is Phase.racing:
            return state, [self._race_watchdog(state, now)]
        return state, []

    def _advance_to_server_phase(
        self, state: RoundState, round: RoundModel, counts: Dict[str, int], target: Phase, now: datetime
    ) -> Transition:
        if target is Phase.predictions:
            new_state = state.model_copy(
                update={
                    "phase": Phase.predictions,
                    "round": round,
                    "wager_counts": dict(counts),
                    "seconds_remaining": seconds_until(round.prediction_deadline, now),
                }
            )
            return new_state, self._entry_effects(new_state)
        if target is Phase.racing:
            lanes = round.lanes or state.round.lanes
            new_state = state.model_copy(
                update={
                    "phase": Phase.racing,
                    "round": state.round.model_copy(update={"phase": round.phase, "lanes": lanes}),
                    "race_confirmed": True,
                    "race_started_at": round.race_started_at or state.race_started_at or now,
                    "seconds_remaining": 0,
                    "lock_countdown": 0,
                }
            )
            return new_state, [self._race_watchdog(new_state, now)]
        if state.phase is Phase.waiting:
            return self._to_waiting(state, round.id, self.settings.missing_round_poll_s, "round already finished")
        # The live round finished while its finish event was lost.
        return self._missed_finish(state, None, round.winner_entity_id)

    def _refresh_same_phase(self, state: RoundState, round: RoundModel, counts: Dict[str, int], now: datetime) -> Transition:
        if state.phase is Phase.predictions:
            remaining = seconds_until(round.prediction_deadline, now)
            new_state = state.model_copy(
                update={"round": round, "wager_counts": dict(counts), "seconds_remaining": remaining}
            )
            if remaining == 0:
                return new_state, [FetchRound(self.settings.deadline_recheck_s, "prediction deadline passed")]
            if state.seconds_remaining == 0:
                return new_state, [StartTicker(TickKind.predictions)]
            return new_state, []
        if state.phase is Phase.racing and not state.race_confirmed:
            new_state = state.model_copy(
                update={
                    "round": state.round.model_copy(update={"lanes": round.lanes or state.round.lanes}),
                    "race_confirmed": True,
                    "race_started_at": round.race_started_at or state.race_started_at,
                }
            )
            return new_state, [self._race_watchdog(new_state, now)]
        if state.phase is Phase.racing:
            return state, [self._race_watchdog(state, now)]
        if state.phase is Phase.waiting:
            return state.model_copy(update={"round": round}), [
                FetchRound(self.settings.missing_round_poll_s, "round not open yet")
            ]
        return state, []

    def _round_missing(self, state: RoundState, event: RoundMissingEvent, now: datetime) -> Transition:
        if state.phase in REVEAL_PHASES:
            return state, []
        if state.phase is Phase.racing:
            return self._missed_finish(state, None)
        return self._to_waiting(state, state.finished_round_id, self.settings.missing_round_poll_s, "no active round")

    def _load_failed(self, state: RoundState, event: LoadFailedEvent, now: datetime) -> Transition:
        new_state = state.model_copy(update={"last_error": event.reason})
        return new_state, [FetchRound(self.settings.load_retry_s, "retry after load failure")]

    def _my_wagers_loaded(self, state: RoundState, event: MyWagersLoadedEvent, now: datetime) -> Transition:
        require_live(state, event.round_id)
        return state.model_copy(update={"my_wagers": list(event.wagers)}), []

    def _balance_loaded(self, state: RoundState, event: BalanceLoadedEvent, now: datetime) -> Transition:
        return state.model_copy(update={"balance": event.balance}), []

    def _resync_requested(self, state: RoundState, event: ResyncRequestedEvent, now: datetime) -> Transition:
        return state, [FetchRound(0, event.reason)]

    # ==== Local timers ========================================================

    def _tick(self, state: RoundState, event: TickEvent, now: datetime) -> Transition:
        if event.kind is TickKind.predictions:
            if state.phase is not Phase.predictions or state.seconds_remaining <= 0:
                return state, []
            remaining = state.seconds_remaining - 1
            new_state = state.model_copy(update={"seconds_remaining": remaining})
            if remaining == 0:
                # The server closes predictions; ask it instead of assuming the lock.
                return new_state, [FetchRound(self.settings.deadline_recheck_s, "local countdown expired")]
            return new_state, []

        if event.kind is TickKind.lock:
            if state.phase is not Phase.locked or state.lock_countdown <= 0:
                return state, []
            remaining = state.lock_countdown - 1
            if remaining > 0:
                return state.model_copy(update={"lock_countdown": remaining}), []
            new_state = state.model_copy(
                update={
                    "phase": Phase.racing,
                    "lock_countdown": 0,
                    "race_confirmed": False,
                    "race_started_at": now,
                    "progress": {},
                }
            )
            return new_state, [FetchRound(0, "race start not received")]

        if state.phase not in REVEAL_PHASES or state.reveal_countdown <= 0:
            return state, []
        return state.model_copy(update={"reveal_countdown": state.reveal_countdown - 1}), []

    def _reveal_elapsed(self, state: RoundState, event: RevealElapsedEvent, now: datetime) -> Transition:
        if event.stage == 0 and state.phase is Phase.reveal0:
            new_state = state.model_copy(
                update={
                    "phase": Phase.reveal1,
                    "reveal_countdown": math.ceil(state.reveal_timing.reveal1_duration_ms / 1000),
                }
            )
            return new_state, self._entry_effects(new_state)
        if event.stage == 1 and state.phase is Phase.reveal1:
            pending = state.pending_round
            if pending is not None and pending.id != state.finished_round_id:
                new_state, effects = self._enter_round(state, pending, {}, now)
                return new_state, effects + [FetchRound(0, "refresh adopted round")]
            return self._to_waiting(state, state.finished_round_id, 0, "reveal finished")
        return state, []
