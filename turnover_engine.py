from typing import Any, Dict, Optional

from loguru import logger

from config import Settings, get_settings
from currency import to_base_currency
from errors import SourceUserNotFound
from models import InvestmentEvent
from referral_engine import get_ancestors
from store import ReferralStore


def handle_investment_event(
    event: InvestmentEvent,
    store: ReferralStore,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    credit a confirmed deposit / plan purchase to the team turnover of every
    ancestor of the investor (whole tree, no level limit).

    each (event, ancestor) credit is applied at most once by the store, so
    replays and concurrent deliveries never double count. turnover is gross
    volume: non-positive amounts are ignored rather than subtracted.

    returns
    -------
    dict
        {
            "status": "applied" | "duplicate" | "ignored",
            "event_id": str,
            "amount": Decimal,             # in base currency
            "credited": [user_id, ...],    # credited by THIS call
        }
    """
    settings = settings or get_settings()

    if not store.user_exists(event.user_id):
        logger.error(f"Investment event {event.id} dropped: unknown user {event.user_id}")
        raise SourceUserNotFound(event.user_id, event.id)

    amount = to_base_currency(event.amount, event.currency, settings)
    if amount <= 0:
        logger.debug(f"Investment event {event.id}: non-positive amount, ignored")
        return {"status": "ignored", "event_id": event.id, "amount": amount, "credited": []}

    ancestors = get_ancestors(event.user_id, store, max_depth=None, settings=settings)
    credited = store.credit_turnover_many(event.id, [a for a, _level in ancestors], amount)

    if ancestors and not credited:
        logger.info(f"Investment event {event.id} already processed")
        return {"status": "duplicate", "event_id": event.id, "amount": amount, "credited": []}

    logger.info(
        f"Investment event {event.id}: {amount} {settings.base_currency} "
        f"credited to {len(credited)} upline members"
    )
    return {"status": "applied", "event_id": event.id, "amount": amount, "credited": credited}
