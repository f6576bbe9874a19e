import asyncio
import logging
from typing import List

from prediction_race.controller import PhaseController
from prediction_race.domain.phase import RoundState
from prediction_race.errors import (
    InsufficientBalance,
    MultiEntityConflict,
    NetworkFailure,
    NoWagerToRemove,
    PhaseClosed,
    RaceClientError,
    WagerInFlight,
)
from prediction_race.models.event_models import (
    LoadFailedEvent,
    MyWagersLoadedEvent,
    ResyncRequestedEvent,
    WagerCountsUpdatedEvent,
)
from prediction_race.models.round_models import WagerAction, WagerModel
from prediction_race.services.round_api import RoundApi


class PredictionProtocol:
    """Places and removes wagers for the current user.

    Local checks mirror the server rules so the user gets the same error
    without a round trip. After every accepted request the user's wagers and
    the aggregate counts are re-fetched instead of being patched locally.
    """

    def __init__(self, controller: PhaseController, api: RoundApi):
        self.controller = controller
        self.api = api
        self.stake_unit = controller.settings.stake_unit
        self._in_flight = False

    async def place_wager(self, entity_id: str) -> List[WagerModel]:
        """Add one stake unit on ``entity_id``

        Raises:
            PhaseClosed: Predictions are not open or the countdown reached 0
            MultiEntityConflict: The user already backs another car this round
            InsufficientBalance: The last known balance is below one stake unit
            WagerInFlight: Another wager request is still running
            NetworkFailure: The request could not be delivered

        Returns:
            List[WagerModel]: The user's wagers after the request
        """
        state = self.controller.state
        self.check_can_place(state, entity_id)
        return await self._submit(state, entity_id, WagerAction.add)

    async def remove_wager(self, entity_id: str) -> List[WagerModel]:
        """Remove the most recent stake unit on ``entity_id``"""
        state = self.controller.state
        self.check_can_remove(state, entity_id)
        return await self._submit(state, entity_id, WagerAction.remove)

    def check_open(self, state: RoundState) -> None:
        if not state.wagers_open():
            raise PhaseClosed(f"predictions are closed (phase {state.phase.value}, {state.seconds_remaining}s left)")

    def check_can_place(self, state: RoundState, entity_id: str) -> None:
        self.check_open(state)
        if state.round.entity(entity_id) is None:
            raise RaceClientError(f"car {entity_id} is not racing in round {state.round_id}")
        selected = {wager.entity_id for wager in state.my_wagers}
        if selected and selected != {entity_id}:
            raise MultiEntityConflict(
                f"you already selected {', '.join(sorted(selected))}; remove those wagers to choose another car"
            )
        if state.balance is not None and state.balance < self.stake_unit:
            raise InsufficientBalance(f"need {self.stake_unit} per wager, balance is {state.balance}")

    def check_can_remove(self, state: RoundState, entity_id: str) -> None:
        self.check_open(state)
        if not any(wager.entity_id == entity_id for wager in state.my_wagers):
            raise NoWagerToRemove(f"no wager on {entity_id} to remove")

    async def _submit(self, state: RoundState, entity_id: str, action: WagerAction) -> List[WagerModel]:
        if self._in_flight:
            raise WagerInFlight("a wager request is already running")
        round_id = state.round_id
        self._in_flight = True
        try:
            try:
                await self.api.place_or_remove_wager(round_id, entity_id, action)
            except (PhaseClosed, MultiEntityConflict, NoWagerToRemove) as e:
                # Local view disagreed with the server, reconcile before the user retries.
                logging.info(f"Wager {action.value} on {entity_id} rejected: {e}")
                self.controller.post(ResyncRequestedEvent(reason=f"wager rejected: {type(e).__name__}"))
                self.controller.request_wagers(round_id)
                raise
            except NetworkFailure as e:
                # The outcome is unknown, surface it and reload the round.
                logging.warning(f"Wager {action.value} on {entity_id} not delivered: {e}")
                self.controller.post(LoadFailedEvent(reason=str(e)))
                raise
            return await self._refresh(round_id, state.my_wagers)
        finally:
            self._in_flight = False

    async def _refresh(self, round_id: str, fallback: List[WagerModel]) -> List[WagerModel]:
        try:
            wagers, snapshot = await asyncio.gather(self.api.my_wagers(round_id), self.api.active_round())
        except NetworkFailure as e:
            logging.warning(f"Refresh after wager failed, retrying in background: {e}")
            self.controller.request_wagers(round_id)
            self.controller.post(ResyncRequestedEvent(reason="refresh after wager failed"))
            return fallback
        self.controller.post(MyWagersLoadedEvent(round_id=round_id, wagers=wagers))
        if snapshot.round is not None and snapshot.round.id == round_id:
            self.controller.post(WagerCountsUpdatedEvent(round_id=round_id, counts=snapshot.wager_counts))
        return wagers
