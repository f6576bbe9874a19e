import json
import logging
from typing import List, Optional

from pydantic import ValidationError

from prediction_race.models.event_models import parse_push_event
from prediction_race.models.round_models import ActiveRoundModel, WagerModel, WireModel


class DataConverter:
    """This class is used to convert server payloads into client models."""

    def convert_active_round(self, payload: dict) -> ActiveRoundModel:
        """Convert the active round response

        Args:
            payload (dict): Body of the active round call. Counts may be sent as
                            ``wagerCounts`` or, by older servers, ``predictionCounts``.

        Returns:
            ActiveRoundModel: Round (None when no round is live) and wager counts
        """
        counts = payload.get("wagerCounts")
        if counts is None:
            counts = payload.get("predictionCounts") or {}
        return ActiveRoundModel.model_validate({"round": payload.get("round"), "wagerCounts": counts})

    def convert_wagers(self, payload: dict) -> List[WagerModel]:
        """Convert the user's wager list, oldest first"""
        wagers = payload.get("wagers")
        if wagers is None:
            wagers = payload.get("predictions") or []
        return [WagerModel.model_validate(wager) for wager in wagers]

    def convert_channel_message(self, raw: str) -> Optional[WireModel]:
        """Convert one pub/sub message into a push event

        Args:
            raw (str): JSON text ``{"event": <name>, "data": {...}}``

        Returns:
            Optional[WireModel]: The typed event, None for unknown or malformed messages
        """
        try:
            message = json.loads(raw)
            return parse_push_event(message["event"], message.get("data") or {})
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as e:
            logging.warning(f"Dropping malformed channel message: {e}")
            return None
