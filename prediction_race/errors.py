class RaceClientError(Exception):
    """Base class of every error raised by the client engine."""


class PhaseClosed(RaceClientError):
    """A wager was attempted outside the predictions phase or after the countdown expired."""


class MultiEntityConflict(RaceClientError):
    """The user already holds wagers on a different car in this round."""


class InsufficientBalance(RaceClientError):
    """The wallet balance does not cover one stake unit."""


class NoWagerToRemove(RaceClientError):
    """The user holds no wager on the car they tried to remove."""


class WagerInFlight(RaceClientError):
    """Another wager request has not completed yet."""


class NetworkFailure(RaceClientError):
    """Any failed remote call. Retried with a fixed backoff, never fatal."""


class StaleSnapshot(RaceClientError):
    """A progress snapshot tagged with a round that is not the live one."""

    def __init__(self, round_id: str, live_round_id: str | None):
        super().__init__(f"snapshot for round {round_id} while tracking {live_round_id}")
        self.round_id = round_id
        self.live_round_id = live_round_id
