import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from bonus_levels import (
    TURNOVER_LEVELS,
    TurnoverLevel,
    claim,
    evaluate,
    get_level,
    mark_bonus_claimed,
    progress_percent,
)
from errors import AlreadyClaimed, BonusAlreadySettled, NotAchieved, RecordNotFound, UnknownLevel
from models import BonusClaimStatus, InvestmentEvent
from turnover_engine import handle_investment_event

from conftest import build_chain


def _seed_turnover(store, user_id, amount):
    store.credit_turnover(f"seed-{user_id}-{amount}", user_id, Decimal(amount))


def test_default_tiers():
    assert [(lvl.name, lvl.threshold, lvl.bonus) for lvl in TURNOVER_LEVELS] == [
        ("Bronze", Decimal("10000"), Decimal("50")),
        ("Silver", Decimal("50000"), Decimal("500")),
        ("Gold", Decimal("100000"), Decimal("1500")),
        ("Platinum", Decimal("500000"), Decimal("10000")),
        ("Diamond", Decimal("1000000"), Decimal("25000")),
    ]
    thresholds = [lvl.threshold for lvl in TURNOVER_LEVELS]
    assert thresholds == sorted(thresholds)


def test_flat_bonus_wins_over_rate():
    level = TurnoverLevel(1, "Flat", Decimal("1000"), bonus_rate=Decimal("0.5"), bonus_amount=Decimal("10"))
    assert level.bonus == Decimal("10")


def test_progress_percent():
    assert progress_percent(Decimal("8000"), Decimal("10000")) == Decimal("80.00")
    assert progress_percent(Decimal("1"), Decimal("3")) == Decimal("33.33")
    assert progress_percent(Decimal("25000"), Decimal("10000")) == Decimal("100.00")
    assert progress_percent(Decimal("0"), Decimal("10000")) == Decimal("0.00")


def test_achieved_but_not_claimed_until_claim(store, settings):
    """
    downline invests 4000, 4000, 3000 -> 11000 team turnover.
    Bronze is achieved and stays unclaimed until claimed.
    """
    build_chain(store, ["R", "A", "B"], settings)
    for event_id, user_id, amount in [("I1", "A", "4000"), ("I2", "B", "4000"), ("I3", "B", "3000")]:
        handle_investment_event(
            InvestmentEvent(id=event_id, user_id=user_id, amount=Decimal(amount)), store, settings
        )

    statuses = evaluate("R", store)
    bronze = statuses[0]
    assert bronze.name == "Bronze"
    assert bronze.achieved is True
    assert bronze.claimed is False
    assert bronze.progress_percent == Decimal("100.00")
    assert [s.achieved for s in statuses[1:]] == [False] * 4

    bonus_claim = claim("R", 1, store, settings=settings)

    assert bonus_claim.bonus_amount == Decimal("50")
    assert bonus_claim.status == BonusClaimStatus.AVAILABLE
    assert evaluate("R", store)[0].claimed is True


def test_claim_below_threshold(store, settings):
    _seed_turnover(store, "U", "8000")

    with pytest.raises(NotAchieved):
        claim("U", 1, store, settings=settings)

    assert store.get_turnover("U").claimed_levels == frozenset()
    assert store.list_bonus_claims("U") == []


def test_claim_twice(store, settings):
    _seed_turnover(store, "U", "10000")
    claim("U", 1, store, settings=settings)

    with pytest.raises(AlreadyClaimed):
        claim("U", 1, store, settings=settings)

    assert len(store.list_bonus_claims("U")) == 1


def test_skipped_tiers_stay_claimable(store, settings):
    _seed_turnover(store, "U", "120000")

    # any order
    gold = claim("U", 3, store, settings=settings)
    bronze = claim("U", 1, store, settings=settings)
    silver = claim("U", 2, store, settings=settings)

    assert (bronze.bonus_amount, silver.bonus_amount, gold.bonus_amount) == (
        Decimal("50"),
        Decimal("500"),
        Decimal("1500"),
    )
    with pytest.raises(NotAchieved):
        claim("U", 4, store, settings=settings)

    assert store.get_turnover("U").claimed_levels == frozenset({1, 2, 3})


def test_unknown_level(store, settings):
    _seed_turnover(store, "U", "10000000")
    with pytest.raises(UnknownLevel):
        claim("U", 42, store, settings=settings)
    with pytest.raises(UnknownLevel):
        get_level(0)


def test_concurrent_claims_exactly_one_wins(store, settings):
    _seed_turnover(store, "U", "50000")
    callers = 20
    barrier = threading.Barrier(callers)

    def attempt(_):
        barrier.wait()
        try:
            return claim("U", 2, store, settings=settings)
        except AlreadyClaimed as e:
            return e

    with ThreadPoolExecutor(max_workers=callers) as pool:
        outcomes = list(pool.map(attempt, range(callers)))

    wins = [o for o in outcomes if not isinstance(o, AlreadyClaimed)]
    losses = [o for o in outcomes if isinstance(o, AlreadyClaimed)]
    assert len(wins) == 1
    assert len(losses) == callers - 1
    assert wins[0].status == BonusClaimStatus.AVAILABLE
    assert len(store.list_bonus_claims("U")) == 1


def test_custom_level_table(store, settings):
    levels = [
        TurnoverLevel(1, "Starter", Decimal("1000"), bonus_amount=Decimal("10")),
        TurnoverLevel(2, "Builder", Decimal("5000"), bonus_amount=Decimal("50")),
    ]
    _seed_turnover(store, "U", "2500")

    statuses = evaluate("U", store, levels)

    assert [(s.achieved, s.progress_percent) for s in statuses] == [
        (True, Decimal("100.00")),
        (False, Decimal("50.00")),
    ]
    assert claim("U", 1, store, levels, settings).bonus_amount == Decimal("10")


def test_settle_claim_exactly_once(store, settings):
    _seed_turnover(store, "U", "10000")
    bonus_claim = claim("U", 1, store, settings=settings)

    settled = mark_bonus_claimed(bonus_claim.id, store)
    assert settled.status == BonusClaimStatus.CLAIMED
    assert settled.claimed_at is not None

    with pytest.raises(BonusAlreadySettled):
        mark_bonus_claimed(bonus_claim.id, store)

    # level stays claimed after settlement
    assert evaluate("U", store)[0].claimed is True


def test_settle_unknown_claim(store):
    with pytest.raises(RecordNotFound):
        mark_bonus_claimed("bonus_missing", store)
