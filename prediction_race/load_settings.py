import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

api_base_url = os.getenv("RACE_API_BASE_URL", "http://localhost:5000/api")
api_token = os.getenv("RACE_API_TOKEN")
redis_host = os.getenv("RACE_REDIS_HOST", "redis")
redis_port = int(os.getenv("RACE_REDIS_PORT", "6379"))
event_channel = os.getenv("RACE_EVENT_CHANNEL", "race:events")
log_level = os.getenv("RACE_LOG_LEVEL", "INFO")


class EngineSettings(BaseModel):
    """Tunables consumed by the engine. Reveal durations apply until a finish
    event carries the server timing."""

    stake_unit: int = 100
    fee_rate: float = 0.05
    track_length: float = 300.0
    segments_per_lane: int = 3
    reveal0_duration_ms: int = 3000
    reveal1_duration_ms: int = 5000
    lock_countdown_s: int = 5
    missing_round_poll_s: float = 0.5
    load_retry_s: float = 3.0
    deadline_recheck_s: float = 1.0
    race_recheck_s: float = 3.0
    race_finish_margin_s: float = 2.0
    counts_poll_s: float = 2.0
    balance_poll_s: float = 5.0
    request_timeout_s: float = 10.0
    frame_interval_s: float = 1 / 30


def load_engine_settings() -> EngineSettings:
    return EngineSettings(
        stake_unit=int(os.getenv("RACE_STAKE_UNIT", "100")),
        fee_rate=float(os.getenv("RACE_FEE_RATE", "0.05")),
        request_timeout_s=float(os.getenv("RACE_REQUEST_TIMEOUT_S", "10")),
    )


if __name__ == "__main__":
    print(api_base_url, redis_host, redis_port, event_channel, load_engine_settings())
