"""
read-only aggregations over the commission ledger and turnover state.
nothing here writes.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from bonus_levels import TURNOVER_LEVELS, TurnoverLevel, evaluate
from commission_engine import COMMISSION_RATES
from models import BonusClaim, BonusClaimStatus, CommissionRecord, LevelStatus
from store import ReferralStore


def get_user_commissions(
    user_id: str,
    store: ReferralStore,
    limit: Optional[int] = None,
) -> List[CommissionRecord]:
    """commissions earned by `user_id`, newest first."""
    records = store.list_commissions(user_id)
    return records if limit is None else records[:limit]


def commissions_by_level(user_id: str, level: int, store: ReferralStore) -> List[CommissionRecord]:
    return [r for r in store.list_commissions(user_id) if r.level == level]


def commissions_for_event(event_id: str, store: ReferralStore) -> List[CommissionRecord]:
    return store.list_commissions_for_event(event_id)


def total_earned(user_id: str, store: ReferralStore) -> Decimal:
    # PENDING + PAID: every record counts once created
    return sum(
        (r.commission_amount for r in store.list_commissions(user_id)),
        Decimal("0"),
    )


def get_commission_stats(user_id: str, store: ReferralStore) -> Dict[str, Any]:
    records = store.list_commissions(user_id)

    by_level: Dict[int, Dict[str, Any]] = {
        level: {"count": 0, "total": Decimal("0")} for level in COMMISSION_RATES
    }
    for r in records:
        bucket = by_level.setdefault(r.level, {"count": 0, "total": Decimal("0")})
        bucket["count"] += 1
        bucket["total"] += r.commission_amount

    return {
        "total_earned": sum((r.commission_amount for r in records), Decimal("0")),
        "total_commissions": len(records),
        "by_level": by_level,
    }


def next_level(
    user_id: str,
    store: ReferralStore,
    levels: Sequence[TurnoverLevel] = TURNOVER_LEVELS,
) -> Optional[Dict[str, Any]]:
    """lowest-threshold tier not yet achieved, or None when all are."""
    statuses = evaluate(user_id, store, levels)
    pending = [s for s in statuses if not s.achieved]
    if not pending:
        return None

    target = min(pending, key=lambda s: s.threshold)
    return {
        "level_id": target.level_id,
        "name": target.name,
        "threshold": target.threshold,
        "bonus": target.bonus,
        "current_turnover": store.get_turnover(user_id).team_turnover,
        "progress": target.progress_percent,
    }


def get_user_bonus_claims(
    user_id: str,
    store: ReferralStore,
    status: Optional[BonusClaimStatus] = None,
) -> List[BonusClaim]:
    """bonus claims of `user_id` by level, optionally only one status."""
    claims = store.list_bonus_claims(user_id)
    if status is None:
        return claims
    return [c for c in claims if c.status == status]


def get_level_statuses(
    user_id: str,
    store: ReferralStore,
    levels: Sequence[TurnoverLevel] = TURNOVER_LEVELS,
) -> List[LevelStatus]:
    return evaluate(user_id, store, levels)


def get_turnover_stats(
    user_id: str,
    store: ReferralStore,
    levels: Sequence[TurnoverLevel] = TURNOVER_LEVELS,
) -> Dict[str, Any]:
    state = store.get_turnover(user_id)
    achieved = [lvl for lvl in levels if state.team_turnover >= lvl.threshold]
    current = max(achieved, key=lambda lvl: lvl.threshold) if achieved else None

    claims = store.list_bonus_claims(user_id)

    return {
        "team_turnover": state.team_turnover,
        "total_bonuses_earned": sum((c.bonus_amount for c in claims), Decimal("0")),
        "current_level": current.level_id if current else None,
        "next_level": next_level(user_id, store, levels),
    }
