"""Request/response calls against the game server.

- Every call returns client models or raises a RaceClientError.
- Transport problems and 5xx answers become NetworkFailure; the caller decides
  when to retry.
"""

import asyncio
import logging
from typing import List, Optional

import aiohttp
from uuid6 import uuid7

from prediction_race.converter import DataConverter
from prediction_race.errors import (
    InsufficientBalance,
    MultiEntityConflict,
    NetworkFailure,
    NoWagerToRemove,
    PhaseClosed,
    RaceClientError,
)
from prediction_race.models.round_models import ActiveRoundModel, WagerAction, WagerModel

data_converter = DataConverter()

ERROR_CODES = {
    "PHASE_CLOSED": PhaseClosed,
    "MULTI_ENTITY_CONFLICT": MultiEntityConflict,
    "INSUFFICIENT_BALANCE": InsufficientBalance,
    "NO_WAGER_TO_REMOVE": NoWagerToRemove,
}

# Servers that only send a message are matched on these fragments.
ERROR_MESSAGES = [
    ("phase has ended", PhaseClosed),
    ("no active game", PhaseClosed),
    ("no active round", PhaseClosed),
    ("only select one car", MultiEntityConflict),
    ("one car per game", MultiEntityConflict),
    ("insufficient", InsufficientBalance),
    ("no selection found", NoWagerToRemove),
]


def error_for_response(status_code: int, payload: Optional[dict]) -> RaceClientError:
    """Map a failed HTTP answer to the client error taxonomy

    Args:
        status_code (int): HTTP status
        payload (Optional[dict]): Decoded JSON body, None when the body was not JSON

    Returns:
        RaceClientError: The matching error, NetworkFailure for 5xx and unknown transport errors
    """
    message = ""
    if isinstance(payload, dict):
        code = payload.get("code")
        message = str(payload.get("error") or payload.get("detail") or "")
        if code in ERROR_CODES:
            return ERROR_CODES[code](message or code)
    if status_code >= 500 or status_code in (408, 429):
        return NetworkFailure(f"server answered {status_code}: {message}".strip())
    lowered = message.lower()
    for fragment, error_type in ERROR_MESSAGES:
        if fragment in lowered:
            return error_type(message)
    return RaceClientError(message or f"request rejected with status {status_code}")


class RoundApi:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_s: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def active_round(self) -> ActiveRoundModel:
        payload = await self._request("GET", "/games/active")
        return data_converter.convert_active_round(payload)

    async def my_wagers(self, round_id: str) -> List[WagerModel]:
        payload = await self._request("GET", "/games/my-predictions", params={"roundId": round_id})
        return data_converter.convert_wagers(payload)

    async def place_or_remove_wager(self, round_id: str, entity_id: str, action: WagerAction) -> dict:
        """Add or remove one stake unit on a car

        Args:
            round_id (str): Live round
            entity_id (str): Car the wager is placed on
            action (WagerAction): add or remove

        Returns:
            dict: Server acknowledgement
        """
        request_id = str(uuid7())
        body = {"roundId": round_id, "entityId": entity_id, "action": action.value}
        logging.info(f"Wager request {request_id}: {action.value} {entity_id} in round {round_id}")
        return await self._request("POST", "/games/predict", json=body, headers={"X-Request-Id": request_id})

    async def balance(self) -> float:
        payload = await self._request("GET", "/wallet/balance")
        return float(payload.get("balance", payload.get("partyCoins", 0)))

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        await self.start()
        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, **kwargs) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
                if response.status >= 400:
                    raise error_for_response(response.status, payload)
                return payload if isinstance(payload, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logging.warning(f"{method} {path} failed: {e!r}")
            raise NetworkFailure(f"{method} {path} failed") from e
