import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from prediction_race.errors import (
    InsufficientBalance,
    MultiEntityConflict,
    NetworkFailure,
    NoWagerToRemove,
    PhaseClosed,
    RaceClientError,
    WagerInFlight,
)
from prediction_race.models.round_models import WagerModel
from prediction_race.render_loop import RaceFrame

view_router = APIRouter()

CONFLICT_ERRORS = (PhaseClosed, MultiEntityConflict, NoWagerToRemove, WagerInFlight)


def get_engine(request: Request):
    return request.app.state.engine


def http_error_for(e: RaceClientError) -> HTTPException:
    """Map a client error to the HTTP answer shown to the renderer

    Args:
        e (RaceClientError): Error raised by the prediction protocol

    Returns:
        HTTPException: 409 for rule and state conflicts, 402 for balance,
                       503 when the game server is unreachable, 400 otherwise
    """
    if isinstance(e, CONFLICT_ERRORS):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(e, InsufficientBalance):
        status_code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(e, NetworkFailure):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=status_code, detail={"code": type(e).__name__, "message": str(e)})


class ViewAPI:
    @staticmethod
    @view_router.get("/view", response_model=RaceFrame)
    async def read_view(engine=Depends(get_engine)):
        return engine.frame()

    @staticmethod
    @view_router.get("/stream")
    async def stream_frames(engine=Depends(get_engine)):
        queue = engine.broadcaster.connect()
        return StreamingResponse(
            engine.broadcaster.event_generator(queue),
            media_type="text/event-stream",
        )


class WagerAPI:
    @staticmethod
    @view_router.post("/wagers/{entity_id}", response_model=List[WagerModel])
    async def place_wager(entity_id: str, engine=Depends(get_engine)):
        try:
            return await engine.protocol.place_wager(entity_id)
        except RaceClientError as e:
            logging.info(f"Wager on {entity_id} refused: {e}")
            raise http_error_for(e)

    @staticmethod
    @view_router.delete("/wagers/{entity_id}", response_model=List[WagerModel])
    async def remove_wager(entity_id: str, engine=Depends(get_engine)):
        try:
            return await engine.protocol.remove_wager(entity_id)
        except RaceClientError as e:
            logging.info(f"Wager removal on {entity_id} refused: {e}")
            raise http_error_for(e)
