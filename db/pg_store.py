"""
PostgreSQL-backed store.

each public method is one transaction: commit on success, rollback and
re-raise on any error. idempotence comes from unique constraints
(ON CONFLICT DO NOTHING), turnover from an upsert increment, and the
referral graph check from a transaction-level advisory lock.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from errors import (
    BonusAlreadySettled,
    CommissionAlreadyPaid,
    CycleDetected,
    DuplicateParent,
    RecordNotFound,
    SelfReferral,
    UserNotFound,
)
from models import BonusClaim, CommissionRecord, ReferralEdge, TurnoverState, User
from store import generate_referral_code, would_create_cycle

from db import repositories as repo
from db.db import get_conn

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class PostgresStore:
    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    @contextmanager
    def _tx(self):
        with get_conn(self.dsn) as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def init_schema(self) -> None:
        with self._tx() as conn:
            repo.apply_schema(conn, SCHEMA_PATH.read_text())

    # ---------
    # users + graph
    # ---------

    def create_user(self, user_id: str, referral_code: Optional[str] = None) -> User:
        user_id = str(user_id).strip()
        if not user_id:
            raise ValueError("user_id cannot be empty")

        with self._tx() as conn:
            if referral_code:
                referral_code = referral_code.strip().upper()
            else:
                referral_code = generate_referral_code()
                while repo.referral_code_taken(conn, referral_code):
                    referral_code = generate_referral_code()
            return repo.insert_user(conn, user_id, referral_code)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._tx() as conn:
            return repo.fetch_user(conn, user_id)

    def user_exists(self, user_id: str) -> bool:
        return self.get_user(user_id) is not None

    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        with self._tx() as conn:
            return repo.fetch_user_by_referral_code(conn, referral_code)

    def set_referral_code(self, user_id: str, referral_code: str) -> User:
        with self._tx() as conn:
            if repo.fetch_user(conn, user_id) is None:
                raise UserNotFound(user_id)
            if repo.referral_code_taken(conn, referral_code):
                raise ValueError(f"referral_code '{referral_code}' already in use")
            return repo.update_referral_code(conn, user_id, referral_code)

    def get_parent(self, user_id: str) -> Optional[str]:
        with self._tx() as conn:
            return repo.get_user_referrer_id(conn, user_id)

    def get_upline(self, user_id: str, limit: int) -> List[str]:
        if limit <= 0:
            return []
        with self._tx() as conn:
            return repo.fetch_upline(conn, user_id, limit)

    def get_children(self, user_ids: List[str], limit: int) -> List[ReferralEdge]:
        with self._tx() as conn:
            return repo.get_direct_referrals(conn, user_ids, limit)

    def add_edge(self, child_id: str, parent_id: str, max_steps: int) -> ReferralEdge:
        with self._tx() as conn:
            repo.lock_referral_graph(conn)

            if child_id == parent_id:
                raise SelfReferral(child_id)
            for user_id in (child_id, parent_id):
                if repo.fetch_user(conn, user_id) is None:
                    raise UserNotFound(user_id)

            existing = repo.get_user_referrer_id(conn, child_id)
            if existing is not None:
                raise DuplicateParent(child_id, existing)

            def get_parent(uid):
                return repo.get_user_referrer_id(conn, uid)

            if would_create_cycle(child_id, parent_id, get_parent, max_steps):
                raise CycleDetected(child_id, parent_id)

            return repo.set_user_referrer_id(conn, child_id, parent_id)

    # ---------
    # commission ledger
    # ---------

    def insert_commission(self, record: CommissionRecord) -> bool:
        with self._tx() as conn:
            return repo.insert_commission(conn, record)

    def insert_commissions(self, records: List[CommissionRecord]) -> List[CommissionRecord]:
        with self._tx() as conn:
            return [r for r in records if repo.insert_commission(conn, r)]

    def list_commissions(self, beneficiary_user_id: str) -> List[CommissionRecord]:
        with self._tx() as conn:
            return repo.fetch_commissions(conn, beneficiary_user_id)

    def list_commissions_for_event(self, source_event_id: str) -> List[CommissionRecord]:
        with self._tx() as conn:
            return repo.fetch_commissions_for_event(conn, source_event_id)

    def mark_commission_paid(self, record_id: str, paid_at: datetime) -> CommissionRecord:
        with self._tx() as conn:
            record = repo.set_commission_paid(conn, record_id, paid_at)
            if record is not None:
                return record
            if repo.commission_exists(conn, record_id):
                raise CommissionAlreadyPaid(record_id)
            raise RecordNotFound("Commission", record_id)

    # ---------
    # turnover
    # ---------

    def credit_turnover(self, event_id: str, user_id: str, amount: Decimal) -> bool:
        # dedup row and increment commit together or not at all
        with self._tx() as conn:
            if not repo.insert_turnover_credit(conn, event_id, user_id, amount):
                return False
            repo.upsert_turnover_delta(conn, user_id, amount)
            return True

    def credit_turnover_many(self, event_id: str, user_ids: List[str], amount: Decimal) -> List[str]:
        # one transaction for the whole upline
        credited = []
        with self._tx() as conn:
            for user_id in user_ids:
                if repo.insert_turnover_credit(conn, event_id, user_id, amount):
                    repo.upsert_turnover_delta(conn, user_id, amount)
                    credited.append(user_id)
        return credited

    def get_turnover(self, user_id: str) -> TurnoverState:
        with self._tx() as conn:
            return TurnoverState(
                user_id=user_id,
                team_turnover=repo.fetch_team_turnover(conn, user_id),
                claimed_levels=frozenset(repo.fetch_claimed_levels(conn, user_id)),
            )

    # ---------
    # bonus claims
    # ---------

    def insert_bonus_claim(self, claim: BonusClaim) -> bool:
        with self._tx() as conn:
            return repo.insert_bonus_claim(conn, claim)

    def list_bonus_claims(self, user_id: str) -> List[BonusClaim]:
        with self._tx() as conn:
            return repo.fetch_bonus_claims(conn, user_id)

    def mark_bonus_claimed(self, claim_id: str, claimed_at: datetime) -> BonusClaim:
        with self._tx() as conn:
            claim = repo.set_bonus_claimed(conn, claim_id, claimed_at)
            if claim is not None:
                return claim
            if repo.bonus_claim_exists(conn, claim_id):
                raise BonusAlreadySettled(claim_id)
            raise RecordNotFound("Bonus claim", claim_id)
