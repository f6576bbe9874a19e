"""Loads authoritative snapshots and turns their outcome into controller events.

The loader never changes state itself: a load that finds no round posts
RoundMissingEvent (the reducer repolls after 500 ms), a failed load posts
LoadFailedEvent (the reducer retries after 3000 ms).
"""

import asyncio
import logging
from typing import Callable

from prediction_race.errors import NetworkFailure, RaceClientError
from prediction_race.load_settings import EngineSettings
from prediction_race.models.event_models import (
    ActiveRoundLoadedEvent,
    BalanceLoadedEvent,
    LoadFailedEvent,
    MyWagersLoadedEvent,
    RoundMissingEvent,
    WagerCountsUpdatedEvent,
)
from prediction_race.services.round_api import RoundApi


class RoundLoader:
    def __init__(
        self,
        api: RoundApi,
        post: Callable[[object], None],
        current_round_id: Callable[[], str | None],
        settings: EngineSettings,
    ):
        self.api = api
        self.post = post
        self.current_round_id = current_round_id
        self.settings = settings

    async def load_active_round(self, reason: str = "") -> None:
        """Fetch the active round and post the outcome

        Args:
            reason (str): Why the fetch was scheduled, only used for logging
        """
        logging.info(f"Fetching active round ({reason})")
        try:
            snapshot = await self.api.active_round()
        except RaceClientError as e:
            logging.error(f"Active round load failed: {e}")
            self.post(LoadFailedEvent(reason=str(e) or type(e).__name__))
            return
        if snapshot.round is None:
            logging.debug("No active round")
            self.post(RoundMissingEvent())
        else:
            self.post(ActiveRoundLoadedEvent(snapshot=snapshot))

    async def load_my_wagers(self, round_id: str) -> None:
        """Fetch the user's wagers, retrying while ``round_id`` is still tracked"""
        while True:
            try:
                wagers = await self.api.my_wagers(round_id)
            except NetworkFailure as e:
                if self.current_round_id() != round_id:
                    return
                logging.warning(f"Wager list load failed, retrying in {self.settings.load_retry_s}s: {e}")
                await asyncio.sleep(self.settings.load_retry_s)
                continue
            except RaceClientError as e:
                logging.error(f"Wager list rejected for round {round_id}: {e}")
                return
            self.post(MyWagersLoadedEvent(round_id=round_id, wagers=wagers))
            return

    async def refresh_counts(self) -> None:
        """Poll the aggregate wager counts of the live round"""
        try:
            snapshot = await self.api.active_round()
        except RaceClientError as e:
            logging.debug(f"Count poll failed, next poll retries: {e}")
            return
        if snapshot.round is not None and snapshot.round.id == self.current_round_id():
            self.post(WagerCountsUpdatedEvent(round_id=snapshot.round.id, counts=snapshot.wager_counts))

    async def refresh_balance(self) -> None:
        try:
            balance = await self.api.balance()
        except RaceClientError as e:
            logging.debug(f"Balance poll failed: {e}")
            return
        self.post(BalanceLoadedEvent(balance=balance))
