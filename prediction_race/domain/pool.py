import math
from typing import Dict, List, Optional

from pydantic import BaseModel

from prediction_race.models.round_models import WagerModel

STAKE_UNIT = 100
FEE_RATE = 0.05


class PoolSummary(BaseModel):
    total_wagers: int
    total_pot: float
    platform_fee: float
    distributable_pool: float


class PayoutEstimate(BaseModel):
    """Illustrative preview shown while predictions are open.

    Divides the pool by the wagers on every car, not by the wagers on the
    selected car, so it is not what settlement pays. The per-wager ``payout``
    delivered after the round finishes is the only authoritative figure.
    """

    amount: float
    user_wager_count: int
    is_estimate: bool = True


class RevealSummary(BaseModel):
    selected_entity_id: Optional[str]
    wager_count: int
    invested: float
    winner_entity_id: Optional[str]
    is_winner: bool
    total_payout: float
    net: float


class PoolCalculator:
    def __init__(self, stake_unit: int = STAKE_UNIT, fee_rate: float = FEE_RATE):
        if stake_unit <= 0:
            raise ValueError("stake_unit must be > 0")
        if not (0.0 <= fee_rate < 1.0):
            raise ValueError("fee_rate must be in [0.0, 1.0)")
        self.stake_unit = stake_unit
        self.fee_rate = fee_rate

    def summarize(self, wager_counts: Dict[str, int]) -> PoolSummary:
        """Aggregate the pool from the per-car wager counts

        Args:
            wager_counts (Dict[str, int]): Number of wagers per car id

        Returns:
            PoolSummary: Total pot, platform fee and the pool left for winners
        """
        total_wagers = sum(max(0, count) for count in wager_counts.values())
        total_pot = total_wagers * self.stake_unit
        platform_fee = total_pot * self.fee_rate
        return PoolSummary(
            total_wagers=total_wagers,
            total_pot=total_pot,
            platform_fee=platform_fee,
            distributable_pool=total_pot - platform_fee,
        )

    def estimate_payout(self, wager_counts: Dict[str, int], user_wager_count: int) -> PayoutEstimate:
        """Preview of what the user's wagers could return. Not a settlement figure."""
        summary = self.summarize(wager_counts)
        if user_wager_count <= 0 or summary.total_wagers <= 0:
            return PayoutEstimate(amount=0, user_wager_count=max(0, user_wager_count))
        per_wager = math.floor(summary.distributable_pool / summary.total_wagers)
        return PayoutEstimate(amount=per_wager * user_wager_count, user_wager_count=user_wager_count)

    def reveal_summary(self, my_wagers: List[WagerModel], winner_entity_id: Optional[str]) -> RevealSummary:
        """Summarize the user's round from the server-settled wagers

        Args:
            my_wagers (List[WagerModel]): The user's wagers, payouts filled in by the server
            winner_entity_id (Optional[str]): Winning car, None when it is not known locally;
                the settled ``is_correct`` flag of each wager decides then

        Returns:
            RevealSummary: Selection, amount invested and net result
        """
        selected = my_wagers[0].entity_id if my_wagers else None
        invested = len(my_wagers) * self.stake_unit
        if winner_entity_id is None:
            winning = [wager for wager in my_wagers if wager.is_correct]
        else:
            winning = [wager for wager in my_wagers if wager.entity_id == winner_entity_id]
        total_payout = sum(wager.payout for wager in winning)
        return RevealSummary(
            selected_entity_id=selected,
            wager_count=len(my_wagers),
            invested=invested,
            winner_entity_id=winner_entity_id,
            is_winner=len(winning) > 0,
            total_payout=total_payout,
            net=total_payout - invested,
        )
