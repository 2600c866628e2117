"""
team turnover bonus tiers.

a tier is achieved once the user's team turnover reaches its threshold, and
each achieved tier can be claimed exactly once. tiers are independent: a
user whose turnover jumps past several thresholds can claim all of them, in
any order.
"""

from decimal import Decimal, ROUND_DOWN
from typing import List, NamedTuple, Optional, Sequence

from loguru import logger

from config import Settings, get_settings
from errors import AlreadyClaimed, NotAchieved, UnknownLevel
from models import BonusClaim, LevelStatus, utcnow
from store import ReferralStore


class TurnoverLevel(NamedTuple):
    level_id: int
    name: str
    threshold: Decimal
    bonus_rate: Optional[Decimal] = None  # share of the threshold
    bonus_amount: Optional[Decimal] = None  # flat payout, wins over bonus_rate

    @property
    def bonus(self) -> Decimal:
        if self.bonus_amount is not None:
            return self.bonus_amount
        return (self.threshold * (self.bonus_rate or Decimal("0"))).quantize(
            Decimal("0.000001"), rounding=ROUND_DOWN
        )


# ordered ascending by threshold
TURNOVER_LEVELS: List[TurnoverLevel] = [
    TurnoverLevel(1, "Bronze", Decimal("10000"), bonus_rate=Decimal("0.005")),
    TurnoverLevel(2, "Silver", Decimal("50000"), bonus_rate=Decimal("0.010")),
    TurnoverLevel(3, "Gold", Decimal("100000"), bonus_rate=Decimal("0.015")),
    TurnoverLevel(4, "Platinum", Decimal("500000"), bonus_rate=Decimal("0.020")),
    TurnoverLevel(5, "Diamond", Decimal("1000000"), bonus_rate=Decimal("0.025")),
]

PERCENT_QUANTUM = Decimal("0.01")


def get_level(level_id: int, levels: Sequence[TurnoverLevel] = TURNOVER_LEVELS) -> TurnoverLevel:
    for level in levels:
        if level.level_id == level_id:
            return level
    raise UnknownLevel(level_id)


def progress_percent(team_turnover: Decimal, threshold: Decimal) -> Decimal:
    """min(100, turnover / threshold * 100), rounded down to 2 dp."""
    if threshold <= 0:
        return Decimal("100.00")
    pct = min(Decimal("100"), team_turnover / threshold * Decimal("100"))
    return pct.quantize(PERCENT_QUANTUM, rounding=ROUND_DOWN)


def evaluate(
    user_id: str,
    store: ReferralStore,
    levels: Sequence[TurnoverLevel] = TURNOVER_LEVELS,
) -> List[LevelStatus]:
    state = store.get_turnover(user_id)
    return [
        LevelStatus(
            level_id=level.level_id,
            name=level.name,
            threshold=level.threshold,
            bonus=level.bonus,
            achieved=state.team_turnover >= level.threshold,
            claimed=level.level_id in state.claimed_levels,
            progress_percent=progress_percent(state.team_turnover, level.threshold),
        )
        for level in levels
    ]


def claim(
    user_id: str,
    level_id: int,
    store: ReferralStore,
    levels: Sequence[TurnoverLevel] = TURNOVER_LEVELS,
    settings: Optional[Settings] = None,
) -> BonusClaim:
    """
    claim the bonus of an achieved tier.

    raises NotAchieved below the threshold and AlreadyClaimed when the tier
    was claimed before. the final check is the store's unique insert on
    (user_id, level_id), so concurrent callers get exactly one success.
    """
    settings = settings or get_settings()
    level = get_level(level_id, levels)
    state = store.get_turnover(user_id)

    if state.team_turnover < level.threshold:
        raise NotAchieved(user_id, level_id, state.team_turnover, level.threshold)
    if level_id in state.claimed_levels:
        raise AlreadyClaimed(user_id, level_id)

    bonus_claim = BonusClaim(
        user_id=user_id,
        level_id=level_id,
        bonus_amount=level.bonus,
        currency=settings.base_currency,
    )
    if not store.insert_bonus_claim(bonus_claim):
        raise AlreadyClaimed(user_id, level_id)

    logger.info(
        f"User {user_id} claimed {level.name} (level {level_id}): "
        f"{bonus_claim.bonus_amount} {bonus_claim.currency}"
    )
    return bonus_claim


def mark_bonus_claimed(claim_id: str, store: ReferralStore) -> BonusClaim:
    """AVAILABLE -> CLAIMED, exactly once. called by the payout worker."""
    settled = store.mark_bonus_claimed(claim_id, utcnow())
    logger.info(f"Bonus claim {claim_id} settled for user {settled.user_id}")
    return settled
