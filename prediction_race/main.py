import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from prediction_race.engine import RaceEngine
from prediction_race.load_settings import log_level
from prediction_race.routers import view

logging.basicConfig(level=log_level)


@asynccontextmanager
async def lifespan(app):
    """Start the race engine with the server.
    The engine runs the scheduler, the push subscriber and the render loop.
    """
    engine = RaceEngine()
    await engine.start()
    app.state.engine = engine
    try:
        yield
    finally:
        await engine.stop()
        logging.info("Stop Server")


app = FastAPI(lifespan=lifespan)
app.include_router(view.view_router)
