"""
same engine flows against PostgreSQL.
needs REFERRAL_TEST_DATABASE_URL pointing at a throwaway database.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from bonus_levels import claim
from commission_engine import handle_pnl_event, mark_commission_paid
from config import Settings
from errors import AlreadyClaimed, CommissionAlreadyPaid, CycleDetected, DuplicateParent
from models import InvestmentEvent, PnLEvent
from referral_engine import get_ancestors, register_referral
from turnover_engine import handle_investment_event

from conftest import build_chain

TEST_DSN = os.environ.get("REFERRAL_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not TEST_DSN, reason="REFERRAL_TEST_DATABASE_URL not set")


@pytest.fixture
def store():
    from db.db import get_conn
    from db.pg_store import PostgresStore

    pg = PostgresStore(TEST_DSN)
    pg.init_schema()
    with get_conn(TEST_DSN) as conn:
        with conn.cursor() as cur:
            cur.execute(
                "TRUNCATE bonus_claims, turnover_state, turnover_credits, "
                "commission_records, users CASCADE;"
            )
        conn.commit()
    return pg


def test_chain_and_duplicate_parent(store, settings):
    build_chain(store, ["A", "B", "C", "D"], settings)

    assert get_ancestors("D", store, settings=settings) == [("C", 1), ("B", 2), ("A", 3)]
    with pytest.raises(DuplicateParent):
        register_referral("D", "A", store, settings)
    with pytest.raises(CycleDetected):
        register_referral("A", "D", store, settings)
    assert store.get_parent("A") is None


def test_two_level_commissions_and_replay(store, settings):
    build_chain(store, ["U0", "U1", "U2"], settings)
    event = PnLEvent(id="PG_E1", user_id="U2", pnl_amount=Decimal("1000"))

    first = handle_pnl_event(event, store, settings)
    second = handle_pnl_event(event, store, settings)

    amounts = {r.beneficiary_user_id: r.commission_amount for r in first["records"]}
    assert amounts == {"U1": Decimal("50"), "U0": Decimal("30")}
    assert second["status"] == "duplicate"

    stored = store.list_commissions_for_event("PG_E1")
    assert [r.level for r in stored] == [1, 2]

    mark_commission_paid(stored[0].id, store)
    with pytest.raises(CommissionAlreadyPaid):
        mark_commission_paid(stored[0].id, store)


def test_concurrent_turnover_credits(store, settings):
    build_chain(store, ["R", "A", "B"], settings)
    events = [
        InvestmentEvent(id=f"PG_I{i}", user_id="B", amount=Decimal("10")) for i in range(50)
    ]

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda e: handle_investment_event(e, store, settings), events + events))

    assert store.get_turnover("R").team_turnover == Decimal("500")
    assert store.get_turnover("A").team_turnover == Decimal("500")


def test_concurrent_claims_exactly_one_wins(store, settings):
    build_chain(store, ["R", "A"], settings)
    handle_investment_event(
        InvestmentEvent(id="PG_BIG", user_id="A", amount=Decimal("10000")), store, settings
    )
    callers = 10
    barrier = threading.Barrier(callers)

    def attempt(_):
        barrier.wait()
        try:
            return claim("R", 1, store, settings=settings)
        except AlreadyClaimed as e:
            return e

    with ThreadPoolExecutor(max_workers=callers) as pool:
        outcomes = list(pool.map(attempt, range(callers)))

    assert sum(not isinstance(o, AlreadyClaimed) for o in outcomes) == 1
    assert store.get_turnover("R").claimed_levels == frozenset({1})


def test_upline_in_one_query(store, settings):
    build_chain(store, ["A", "B", "C", "D"], settings)

    assert store.get_upline("D", 10) == ["C", "B", "A"]
    assert store.get_upline("D", 2) == ["C", "B"]
    assert store.get_upline("A", 10) == []


def test_link_refused_when_chain_deeper_than_cap(store, settings):
    build_chain(store, ["A", "B", "C", "D", "E"], settings)
    capped = Settings(_env_file=None, traversal_depth_cap=2)

    with pytest.raises(CycleDetected):
        register_referral("A", "E", store, capped)

    assert store.get_parent("A") is None
