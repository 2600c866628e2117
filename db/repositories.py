from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Set

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row

from models import BonusClaim, CommissionRecord, ReferralEdge, User

# any constant works; every edge insert takes the same transaction-level lock
REFERRAL_GRAPH_LOCK_KEY = 7_340_021


# ---------
# users + referral graph
# ---------

def insert_user(conn: Connection, user_id: str, referral_code: str) -> User:
    """
    create a new user row.
    enforces:
      - user_id unique
      - referral_code unique + NOT NULL
    """
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                INSERT INTO users (user_id, referral_code)
                VALUES (%s, %s)
                RETURNING user_id, referral_code, created_at
                """,
                (user_id, referral_code),
            )
            row = cur.fetchone()
            if row is None:
                raise ValueError("failed to create user")
        return User(**row)
    except UniqueViolation:
        raise ValueError(f"user '{user_id}' or referral_code '{referral_code}' already exists")


def fetch_user(conn: Connection, user_id: str) -> Optional[User]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT user_id, referral_code, created_at FROM users WHERE user_id = %s",
            (user_id,),
        )
        row = cur.fetchone()
    return User(**row) if row else None


def fetch_user_by_referral_code(conn: Connection, referral_code: str) -> Optional[User]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            "SELECT user_id, referral_code, created_at FROM users WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
    return User(**row) if row else None


def referral_code_taken(conn: Connection, referral_code: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM users WHERE referral_code = %s", (referral_code,))
        return cur.fetchone() is not None


def update_referral_code(conn: Connection, user_id: str, referral_code: str) -> User:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            UPDATE users SET referral_code = %s, updated_at = NOW()
            WHERE user_id = %s
            RETURNING user_id, referral_code, created_at
            """,
            (referral_code, user_id),
        )
        row = cur.fetchone()
    if row is None:
        raise ValueError(f"User {user_id} not found")
    return User(**row)


def get_user_referrer_id(conn: Connection, user_id: str) -> Optional[str]:
    """
    fetch referrer_id for a user, or None if they have no referrer
    (or do not exist).
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referrer_id FROM users WHERE user_id = %s",
            (user_id,),
        )
        row = cur.fetchone()
    return row[0] if row else None


def fetch_upline(conn: Connection, user_id: str, limit: int) -> List[str]:
    """
    up to `limit` referrers of user_id, nearest first, in one query.
    the depth bound also stops the recursion on looping rows.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE upline AS (
                -- direct referrer
                SELECT u.referrer_id AS user_id, 1 AS depth
                FROM users u
                WHERE u.user_id = %s AND u.referrer_id IS NOT NULL

                UNION ALL

                -- referrer of the previous level
                SELECT u.referrer_id, up.depth + 1
                FROM users u
                INNER JOIN upline up ON u.user_id = up.user_id
                WHERE u.referrer_id IS NOT NULL AND up.depth < %s
            )
            SELECT user_id
            FROM upline
            ORDER BY depth ASC
            """,
            (user_id, limit),
        )
        return [r[0] for r in cur.fetchall()]


def lock_referral_graph(conn: Connection) -> None:
    """serialize edge inserts until the surrounding transaction ends."""
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_xact_lock(%s)", (REFERRAL_GRAPH_LOCK_KEY,))


def set_user_referrer_id(conn: Connection, child_id: str, parent_id: str) -> ReferralEdge:
    """
    set referrer_id for child to parent. assumes all checks already done;
    the WHERE clause still refuses to overwrite an existing referrer.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET referrer_id = %s, referred_at = NOW(), updated_at = NOW()
            WHERE user_id = %s AND referrer_id IS NULL
            RETURNING referred_at
            """,
            (parent_id, child_id),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"Failed to update referrer for child {child_id}")
    return ReferralEdge(child_user_id=child_id, parent_user_id=parent_id, created_at=row[0])


def get_direct_referrals(
    conn: Connection,
    parent_user_ids: List[str],
    limit: int = 50,
) -> List[ReferralEdge]:
    """return direct referrals (children) of any of the given users."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT user_id, referrer_id, referred_at
            FROM users
            WHERE referrer_id = ANY(%s)
            ORDER BY referred_at DESC
            LIMIT %s
            """,
            (parent_user_ids, limit),
        )
        rows = cur.fetchall()

    return [
        ReferralEdge(child_user_id=r[0], parent_user_id=r[1], created_at=r[2])
        for r in rows
    ]


# ---------
# commission ledger
# ---------

COMMISSION_COLUMNS = """
    id, beneficiary_user_id, source_user_id, source_event_id, level,
    commission_rate, investor_pnl, commission_amount, currency, status,
    created_at, paid_at
"""


def insert_commission(conn: Connection, record: CommissionRecord) -> bool:
    """
    insert a commission record unless one already exists for
    (source_event_id, beneficiary_user_id). returns True when inserted.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO commission_records
                (id, beneficiary_user_id, source_user_id, source_event_id, level,
                 commission_rate, investor_pnl, commission_amount, currency,
                 status, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (source_event_id, beneficiary_user_id) DO NOTHING
            RETURNING id
            """,
            (
                record.id,
                record.beneficiary_user_id,
                record.source_user_id,
                record.source_event_id,
                record.level,
                record.commission_rate,
                record.investor_pnl,
                record.commission_amount,
                record.currency,
                record.status.value,
                record.created_at,
            ),
        )
        return cur.fetchone() is not None


def fetch_commissions(conn: Connection, beneficiary_user_id: str) -> List[CommissionRecord]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {COMMISSION_COLUMNS}
            FROM commission_records
            WHERE beneficiary_user_id = %s
            ORDER BY created_at DESC
            """,
            (beneficiary_user_id,),
        )
        rows = cur.fetchall()
    return [CommissionRecord(**r) for r in rows]


def fetch_commissions_for_event(conn: Connection, source_event_id: str) -> List[CommissionRecord]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {COMMISSION_COLUMNS}
            FROM commission_records
            WHERE source_event_id = %s
            ORDER BY level ASC
            """,
            (source_event_id,),
        )
        rows = cur.fetchall()
    return [CommissionRecord(**r) for r in rows]


def set_commission_paid(
    conn: Connection, record_id: str, paid_at: datetime
) -> Optional[CommissionRecord]:
    """PENDING -> PAID. returns None when the row is missing or not PENDING."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE commission_records
            SET status = 'PAID', paid_at = %s
            WHERE id = %s AND status = 'PENDING'
            RETURNING {COMMISSION_COLUMNS}
            """,
            (paid_at, record_id),
        )
        row = cur.fetchone()
    return CommissionRecord(**row) if row else None


def commission_exists(conn: Connection, record_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM commission_records WHERE id = %s", (record_id,))
        return cur.fetchone() is not None


# ---------
# turnover
# ---------

def insert_turnover_credit(conn: Connection, event_id: str, user_id: str, amount: Decimal) -> bool:
    """dedup row for (event_id, user_id). returns True when newly inserted."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO turnover_credits (event_id, user_id, amount)
            VALUES (%s, %s, %s)
            ON CONFLICT (event_id, user_id) DO NOTHING
            RETURNING event_id
            """,
            (event_id, user_id, amount),
        )
        return cur.fetchone() is not None


def upsert_turnover_delta(conn: Connection, user_id: str, amount_delta: Decimal) -> None:
    """
    increment team_turnover by amount_delta for user_id.
    creates the row if it doesn't exist.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO turnover_state (user_id, team_turnover)
            VALUES (%s, %s)
            ON CONFLICT (user_id)
            DO UPDATE SET
                team_turnover = turnover_state.team_turnover + EXCLUDED.team_turnover,
                updated_at = NOW()
            """,
            (user_id, amount_delta),
        )


def fetch_team_turnover(conn: Connection, user_id: str) -> Decimal:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT team_turnover FROM turnover_state WHERE user_id = %s",
            (user_id,),
        )
        row = cur.fetchone()
    return row[0] if row else Decimal("0")


# ---------
# bonus claims
# ---------

BONUS_COLUMNS = "id, user_id, level_id, bonus_amount, currency, status, created_at, claimed_at"


def insert_bonus_claim(conn: Connection, claim: BonusClaim) -> bool:
    """unique insert on (user_id, level_id). returns True for the one winner."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO bonus_claims
                (id, user_id, level_id, bonus_amount, currency, status, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, level_id) DO NOTHING
            RETURNING id
            """,
            (
                claim.id,
                claim.user_id,
                claim.level_id,
                claim.bonus_amount,
                claim.currency,
                claim.status.value,
                claim.created_at,
            ),
        )
        return cur.fetchone() is not None


def fetch_bonus_claims(conn: Connection, user_id: str) -> List[BonusClaim]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {BONUS_COLUMNS}
            FROM bonus_claims
            WHERE user_id = %s
            ORDER BY level_id ASC
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    return [BonusClaim(**r) for r in rows]


def fetch_claimed_levels(conn: Connection, user_id: str) -> Set[int]:
    with conn.cursor() as cur:
        cur.execute("SELECT level_id FROM bonus_claims WHERE user_id = %s", (user_id,))
        return {r[0] for r in cur.fetchall()}


def set_bonus_claimed(conn: Connection, claim_id: str, claimed_at: datetime) -> Optional[BonusClaim]:
    """AVAILABLE -> CLAIMED. returns None when missing or already settled."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE bonus_claims
            SET status = 'CLAIMED', claimed_at = %s
            WHERE id = %s AND status = 'AVAILABLE'
            RETURNING {BONUS_COLUMNS}
            """,
            (claimed_at, claim_id),
        )
        row = cur.fetchone()
    return BonusClaim(**row) if row else None


def bonus_claim_exists(conn: Connection, claim_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM bonus_claims WHERE id = %s", (claim_id,))
        return cur.fetchone() is not None


def apply_schema(conn: Connection, sql: str) -> None:
    with conn.cursor() as cur:
        cur.execute(sql)
