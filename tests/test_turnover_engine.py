from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from itertools import permutations

import pytest

from config import Settings
from errors import GraphIntegrityWarning, SourceUserNotFound
from models import InvestmentEvent
from store import InMemoryStore
from turnover_engine import handle_investment_event

from conftest import build_chain


def _invest(event_id, user_id, amount, currency="USDT"):
    return InvestmentEvent(id=event_id, user_id=user_id, amount=Decimal(amount), currency=currency)


def _turnover(store, user_id):
    return store.get_turnover(user_id).team_turnover


def test_downline_investments_accumulate(store, settings):
    """
    R <- A <- B
    downline invests 4000, 4000, 3000 -> R sees 11000.
    """
    build_chain(store, ["R", "A", "B"], settings)

    handle_investment_event(_invest("I1", "A", "4000"), store, settings)
    handle_investment_event(_invest("I2", "B", "4000"), store, settings)
    handle_investment_event(_invest("I3", "B", "3000"), store, settings)

    assert _turnover(store, "R") == Decimal("11000")
    assert _turnover(store, "A") == Decimal("7000")
    # own investments are not team turnover
    assert _turnover(store, "B") == Decimal("0")


def test_whole_tree_no_depth_limit(store, settings):
    users = [f"U{i}" for i in range(15)]
    build_chain(store, users, settings)

    result = handle_investment_event(_invest("I-deep", "U14", "100"), store, settings)

    assert result["status"] == "applied"
    assert len(result["credited"]) == 14
    for user_id in users[:-1]:
        assert _turnover(store, user_id) == Decimal("100")


def test_replay_is_idempotent(store, settings):
    build_chain(store, ["R", "A"], settings)
    event = _invest("I1", "A", "2500")

    first = handle_investment_event(event, store, settings)
    second = handle_investment_event(event, store, settings)

    assert first["status"] == "applied"
    assert second["status"] == "duplicate"
    assert second["credited"] == []
    assert _turnover(store, "R") == Decimal("2500")


@pytest.mark.parametrize("amount", ["0", "-1000"])
def test_non_positive_amount_never_decrements(store, settings, amount):
    build_chain(store, ["R", "A"], settings)
    handle_investment_event(_invest("I1", "A", "5000"), store, settings)

    result = handle_investment_event(_invest("I2", "A", amount), store, settings)

    assert result["status"] == "ignored"
    assert _turnover(store, "R") == Decimal("5000")


def test_order_of_events_does_not_matter(settings):
    events = [
        _invest("I1", "B", "1000"),
        _invest("I2", "C", "250.5"),
        _invest("I3", "B", "4000"),
        _invest("I4", "C", "-300"),
    ]
    finals = set()

    for ordering in permutations(events):
        store = InMemoryStore()
        build_chain(store, ["R", "A", "B"], settings)
        store.create_user("C")
        store.add_edge("C", "A", max_steps=settings.traversal_depth_cap)

        history = []
        for event in ordering:
            handle_investment_event(event, store, settings)
            history.append(_turnover(store, "R"))

        # non-decreasing along the way
        assert history == sorted(history)
        finals.add((_turnover(store, "R"), _turnover(store, "A")))

    assert finals == {(Decimal("5250.5"), Decimal("5250.5"))}


def test_concurrent_events_lose_no_updates(store, settings):
    build_chain(store, ["R", "A", "B"], settings)
    events = [_invest(f"I{i}", "B", "10") for i in range(200)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(lambda e: handle_investment_event(e, store, settings), events))
        # and every one of them delivered twice
        list(pool.map(lambda e: handle_investment_event(e, store, settings), events))

    assert _turnover(store, "R") == Decimal("2000")
    assert _turnover(store, "A") == Decimal("2000")


def test_unknown_source_user(store, settings):
    with pytest.raises(SourceUserNotFound):
        handle_investment_event(_invest("I1", "ghost", "100"), store, settings)


def test_converted_to_base_currency(store):
    settings = Settings(_env_file=None, currency_rates={"BTC": Decimal("60000")})
    build_chain(store, ["R", "A"], settings)

    result = handle_investment_event(_invest("I-btc", "A", "0.5", currency="btc"), store, settings)

    assert result["amount"] == Decimal("30000")
    assert _turnover(store, "R") == Decimal("30000")


def test_corrupted_chain_credits_partial_upline(store, settings):
    build_chain(store, ["R", "A", "B"], settings)
    # A <-> R loop written behind the store's back
    store.ref["R"] = "A"

    with pytest.warns(GraphIntegrityWarning):
        result = handle_investment_event(_invest("I1", "B", "100"), store, settings)

    assert sorted(result["credited"]) == ["A", "R"]
    assert _turnover(store, "R") == Decimal("100")


def test_ignored_amount_reported_in_base_currency(store):
    settings = Settings(_env_file=None, currency_rates={"EUR": Decimal("1.10")})
    build_chain(store, ["R", "A"], settings)

    result = handle_investment_event(_invest("I-refund", "A", "-100", currency="EUR"), store, settings)

    assert result["status"] == "ignored"
    assert result["amount"] == Decimal("-110")
    assert _turnover(store, "R") == Decimal("0")


class _RoundTripCountingStore(InMemoryStore):
    """records the graph and turnover calls the engine makes."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def get_parent(self, user_id):
        self.calls.append("get_parent")
        return super().get_parent(user_id)

    def get_upline(self, user_id, limit):
        self.calls.append("get_upline")
        return super().get_upline(user_id, limit)

    def credit_turnover_many(self, event_id, user_ids, amount):
        self.calls.append("credit_turnover_many")
        return super().credit_turnover_many(event_id, user_ids, amount)


def test_deep_upline_read_and_credited_in_one_call_each(settings):
    store = _RoundTripCountingStore()
    build_chain(store, [f"U{i}" for i in range(30)], settings)
    store.calls.clear()

    result = handle_investment_event(_invest("I-deep", "U29", "10"), store, settings)

    assert len(result["credited"]) == 29
    assert store.calls == ["get_upline", "credit_turnover_many"]
