from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from config import Settings, get_settings
from currency import to_base_currency
from errors import SourceUserNotFound, UserNotFound
from models import CommissionRecord, PnLEvent, utcnow
from referral_engine import get_ancestors
from store import ReferralStore


# level -> share of the investor's profit
COMMISSION_RATES: Dict[int, Decimal] = {
    1: Decimal("0.05"),
    2: Decimal("0.03"),
    3: Decimal("0.02"),
    **{level: Decimal("0.01") for level in range(4, 11)},
}

MAX_COMMISSION_LEVEL = max(COMMISSION_RATES)


def commission_rate(level: int) -> Decimal:
    try:
        return COMMISSION_RATES[level]
    except KeyError:
        raise ValueError(f"No commission rate for level {level}") from None


def commission_splits(
    pnl_amount: Decimal,
    lineage: Sequence[Tuple[str, int]],
    quantum: Decimal = Decimal("0.000001"),
) -> List[Dict[str, Any]]:
    """
    pnl_amount: Decimal profit in base currency
    lineage: [(ancestor_id, level), ...] nearest first, as from get_ancestors

    returns one split per ancestor whose share is non-zero after rounding
    down to `quantum`. nothing is paid on a loss or break-even.
    """
    pnl = Decimal(pnl_amount)
    if pnl <= 0:
        return []

    splits = []
    for beneficiary, level in lineage:
        if level > MAX_COMMISSION_LEVEL:
            break
        rate = commission_rate(level)
        amount = (pnl * rate).quantize(quantum, rounding=ROUND_DOWN)
        if amount <= 0:
            continue
        splits.append(
            {
                "beneficiary": beneficiary,
                "level": level,
                "rate": rate,
                "amount": amount,
            }
        )
    return splits


def handle_pnl_event(
    event: PnLEvent,
    store: ReferralStore,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    process a single profit/loss event:
      - reject events for unknown users
      - resolve the upline (max 10 levels)
      - compute per-level commissions
      - insert one PENDING record per (event, beneficiary), skipping
        any that already exist so replays are harmless

    returns
    -------
    dict
        {
            "status": "applied" | "duplicate" | "no_profit",
            "event_id": str,
            "records": [CommissionRecord, ...]  # created by THIS call
        }
    """
    settings = settings or get_settings()

    if not store.user_exists(event.user_id):
        logger.error(f"PnL event {event.id} dropped: unknown user {event.user_id}")
        raise SourceUserNotFound(event.user_id, event.id)

    if event.pnl_amount <= 0:
        logger.debug(
            f"PnL event {event.id}: non-positive pnl {event.pnl_amount}, no commissions"
        )
        return {"status": "no_profit", "event_id": event.id, "records": []}

    pnl = to_base_currency(event.pnl_amount, event.currency, settings)
    lineage = get_ancestors(
        event.user_id, store, max_depth=settings.commission_max_depth, settings=settings
    )
    splits = commission_splits(pnl, lineage, settings.amount_quantum)

    records = [
        CommissionRecord(
            beneficiary_user_id=split["beneficiary"],
            source_user_id=event.user_id,
            source_event_id=event.id,
            level=split["level"],
            commission_rate=split["rate"],
            investor_pnl=pnl,
            commission_amount=split["amount"],
            currency=settings.base_currency,
        )
        for split in splits
    ]
    created = store.insert_commissions(records)
    if len(created) < len(records):
        logger.debug(
            f"PnL event {event.id}: {len(records) - len(created)} commissions already recorded"
        )

    if splits and not created:
        logger.info(f"PnL event {event.id} already processed")
        return {"status": "duplicate", "event_id": event.id, "records": []}

    total = sum((r.commission_amount for r in created), Decimal("0"))
    logger.info(
        f"PnL event {event.id}: {len(created)} commissions, total {total} "
        f"{settings.base_currency}"
    )
    return {"status": "applied", "event_id": event.id, "records": created}


def preview_commissions(
    user_id: str,
    pnl_amount: Decimal,
    store: ReferralStore,
    settings: Optional[Settings] = None,
) -> List[Dict[str, Any]]:
    """expected split of a profit before it is realized. writes nothing."""
    settings = settings or get_settings()
    if not store.user_exists(user_id):
        raise UserNotFound(user_id)

    lineage = get_ancestors(
        user_id, store, max_depth=settings.commission_max_depth, settings=settings
    )
    return commission_splits(pnl_amount, lineage, settings.amount_quantum)


def mark_commission_paid(record_id: str, store: ReferralStore) -> CommissionRecord:
    """PENDING -> PAID, exactly once. called by the payout worker."""
    record = store.mark_commission_paid(record_id, utcnow())
    logger.info(
        f"Commission {record_id} paid: {record.commission_amount} {record.currency} "
        f"to {record.beneficiary_user_id}"
    )
    return record
