"""
store contract + the in-memory backend.

every write that the engines rely on for idempotence is a single atomic
check-and-insert on the store, never a read in the engine followed by a
write. InMemoryStore does that under one lock; db.pg_store.PostgresStore
does it with unique constraints and row/advisory locks.
"""

import secrets
import string
import threading
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

from errors import (
    BonusAlreadySettled,
    CommissionAlreadyPaid,
    CycleDetected,
    DuplicateParent,
    RecordNotFound,
    SelfReferral,
    UserNotFound,
)
from models import (
    BonusClaim,
    BonusClaimStatus,
    CommissionRecord,
    CommissionStatus,
    ReferralEdge,
    TurnoverState,
    User,
)


REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code() -> str:
    return "REF_" + "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(8))


def would_create_cycle(
    child_id: str,
    parent_id: str,
    get_parent: Callable[[str], Optional[str]],
    max_steps: int,
) -> bool:
    """
    walk UP from parent; if we ever reach child, linking child -> parent
    would close a loop. max_steps bounds the walk on already corrupted data.

    a walk that has not reached a root after max_steps cannot prove the
    link is safe, so it counts as a cycle too.
    """
    current: Optional[str] = parent_id
    for _ in range(max_steps + 1):
        if current is None:
            return False
        if current == child_id:
            return True
        current = get_parent(current)
    return current is not None


class ReferralStore(Protocol):
    # users + graph
    def create_user(self, user_id: str, referral_code: Optional[str] = None) -> User: ...
    def get_user(self, user_id: str) -> Optional[User]: ...
    def user_exists(self, user_id: str) -> bool: ...
    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]: ...
    def set_referral_code(self, user_id: str, referral_code: str) -> User: ...
    def get_parent(self, user_id: str) -> Optional[str]: ...
    def get_upline(self, user_id: str, limit: int) -> List[str]: ...
    def get_children(self, user_ids: List[str], limit: int) -> List[ReferralEdge]: ...
    def add_edge(self, child_id: str, parent_id: str, max_steps: int) -> ReferralEdge: ...

    # commission ledger
    def insert_commission(self, record: CommissionRecord) -> bool: ...
    def insert_commissions(self, records: List[CommissionRecord]) -> List[CommissionRecord]: ...
    def list_commissions(self, beneficiary_user_id: str) -> List[CommissionRecord]: ...
    def list_commissions_for_event(self, source_event_id: str) -> List[CommissionRecord]: ...
    def mark_commission_paid(self, record_id: str, paid_at: datetime) -> CommissionRecord: ...

    # turnover
    def credit_turnover(self, event_id: str, user_id: str, amount: Decimal) -> bool: ...
    def credit_turnover_many(self, event_id: str, user_ids: List[str], amount: Decimal) -> List[str]: ...
    def get_turnover(self, user_id: str) -> TurnoverState: ...

    # bonus claims
    def insert_bonus_claim(self, claim: BonusClaim) -> bool: ...
    def list_bonus_claims(self, user_id: str) -> List[BonusClaim]: ...
    def mark_bonus_claimed(self, claim_id: str, claimed_at: datetime) -> BonusClaim: ...


class InMemoryStore:
    """
    in-memory 'tables' guarded by one re-entrant lock.

    users:        user_id -> User
    ref:          child_id -> parent_id (the referral forest)
    commissions:  (source_event_id, beneficiary_user_id) -> CommissionRecord
    turnover:     user_id -> Decimal
    credits:      set of (event_id, user_id) already applied to turnover
    claims:       (user_id, level_id) -> BonusClaim
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.ref: Dict[str, str] = {}
        self.edges: Dict[str, ReferralEdge] = {}
        self.commissions: Dict[Tuple[str, str], CommissionRecord] = {}
        self.turnover: Dict[str, Decimal] = {}
        self.credits: Set[Tuple[str, str]] = set()
        self.claims: Dict[Tuple[str, int], BonusClaim] = {}

    # ---------
    # users + graph
    # ---------

    def create_user(self, user_id: str, referral_code: Optional[str] = None) -> User:
        user_id = str(user_id).strip()
        if not user_id:
            raise ValueError("user_id cannot be empty")

        with self._lock:
            if user_id in self.users:
                raise ValueError(f"user '{user_id}' already exists")

            codes = {u.referral_code for u in self.users.values()}
            if referral_code is not None:
                referral_code = referral_code.strip().upper()
            if not referral_code:
                referral_code = generate_referral_code()
                while referral_code in codes:
                    referral_code = generate_referral_code()
            elif referral_code in codes:
                raise ValueError(f"referral_code '{referral_code}' already in use")

            user = User(user_id=user_id, referral_code=referral_code)
            self.users[user_id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def user_exists(self, user_id: str) -> bool:
        return user_id in self.users

    def get_user_by_referral_code(self, referral_code: str) -> Optional[User]:
        for user in list(self.users.values()):
            if user.referral_code == referral_code:
                return user
        return None

    def set_referral_code(self, user_id: str, referral_code: str) -> User:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise UserNotFound(user_id)
            if self.get_user_by_referral_code(referral_code) is not None:
                raise ValueError(f"referral_code '{referral_code}' already in use")
            user = user.model_copy(update={"referral_code": referral_code})
            self.users[user_id] = user
            return user

    def get_parent(self, user_id: str) -> Optional[str]:
        return self.ref.get(user_id)

    def get_upline(self, user_id: str, limit: int) -> List[str]:
        """
        up to `limit` parents, nearest first. raw: on corrupted data the
        walk keeps going round a loop, get_ancestors sorts that out.
        """
        upline: List[str] = []
        current = self.ref.get(user_id)
        while current is not None and len(upline) < limit:
            upline.append(current)
            current = self.ref.get(current)
        return upline

    def get_children(self, user_ids: List[str], limit: int) -> List[ReferralEdge]:
        wanted = set(user_ids)
        # reversed insertion order keeps newest first when timestamps tie
        children = [e for e in reversed(list(self.edges.values())) if e.parent_user_id in wanted]
        children.sort(key=lambda e: e.created_at, reverse=True)
        return children[:limit]

    def add_edge(self, child_id: str, parent_id: str, max_steps: int) -> ReferralEdge:
        with self._lock:
            if child_id == parent_id:
                raise SelfReferral(child_id)
            for user_id in (child_id, parent_id):
                if user_id not in self.users:
                    raise UserNotFound(user_id)

            existing = self.ref.get(child_id)
            if existing is not None:
                raise DuplicateParent(child_id, existing)

            if would_create_cycle(child_id, parent_id, self.ref.get, max_steps):
                raise CycleDetected(child_id, parent_id)

            edge = ReferralEdge(child_user_id=child_id, parent_user_id=parent_id)
            self.ref[child_id] = parent_id
            self.edges[child_id] = edge
            return edge

    # ---------
    # commission ledger
    # ---------

    def insert_commission(self, record: CommissionRecord) -> bool:
        key = (record.source_event_id, record.beneficiary_user_id)
        with self._lock:
            if key in self.commissions:
                return False
            self.commissions[key] = record
            return True

    def insert_commissions(self, records: List[CommissionRecord]) -> List[CommissionRecord]:
        with self._lock:
            return [r for r in records if self.insert_commission(r)]

    def list_commissions(self, beneficiary_user_id: str) -> List[CommissionRecord]:
        records = [
            r for r in reversed(list(self.commissions.values()))
            if r.beneficiary_user_id == beneficiary_user_id
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def list_commissions_for_event(self, source_event_id: str) -> List[CommissionRecord]:
        records = [
            r for r in list(self.commissions.values())
            if r.source_event_id == source_event_id
        ]
        return sorted(records, key=lambda r: r.level)

    def mark_commission_paid(self, record_id: str, paid_at: datetime) -> CommissionRecord:
        with self._lock:
            for key, record in self.commissions.items():
                if record.id != record_id:
                    continue
                if record.status == CommissionStatus.PAID:
                    raise CommissionAlreadyPaid(record_id)
                paid = record.model_copy(
                    update={"status": CommissionStatus.PAID, "paid_at": paid_at}
                )
                self.commissions[key] = paid
                return paid
        raise RecordNotFound("Commission", record_id)

    # ---------
    # turnover
    # ---------

    def credit_turnover(self, event_id: str, user_id: str, amount: Decimal) -> bool:
        key = (event_id, user_id)
        with self._lock:
            if key in self.credits:
                return False
            self.credits.add(key)
            self.turnover[user_id] = self.turnover.get(user_id, Decimal("0")) + amount
            return True

    def credit_turnover_many(self, event_id: str, user_ids: List[str], amount: Decimal) -> List[str]:
        with self._lock:
            return [u for u in user_ids if self.credit_turnover(event_id, u, amount)]

    def get_turnover(self, user_id: str) -> TurnoverState:
        with self._lock:
            claimed = frozenset(
                level_id for (uid, level_id) in self.claims if uid == user_id
            )
            return TurnoverState(
                user_id=user_id,
                team_turnover=self.turnover.get(user_id, Decimal("0")),
                claimed_levels=claimed,
            )

    # ---------
    # bonus claims
    # ---------

    def insert_bonus_claim(self, claim: BonusClaim) -> bool:
        key = (claim.user_id, claim.level_id)
        with self._lock:
            if key in self.claims:
                return False
            self.claims[key] = claim
            return True

    def list_bonus_claims(self, user_id: str) -> List[BonusClaim]:
        claims = [c for c in list(self.claims.values()) if c.user_id == user_id]
        return sorted(claims, key=lambda c: c.level_id)

    def mark_bonus_claimed(self, claim_id: str, claimed_at: datetime) -> BonusClaim:
        with self._lock:
            for key, claim in self.claims.items():
                if claim.id != claim_id:
                    continue
                if claim.status == BonusClaimStatus.CLAIMED:
                    raise BonusAlreadySettled(claim_id)
                settled = claim.model_copy(
                    update={"status": BonusClaimStatus.CLAIMED, "claimed_at": claimed_at}
                )
                self.claims[key] = settled
                return settled
        raise RecordNotFound("Bonus claim", claim_id)
