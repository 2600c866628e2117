"""
data model shared by the engines, the stores and the HTTP layer.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class CommissionStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class BonusClaimStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    CLAIMED = "CLAIMED"


# ---------
# inbound events
# ---------

class PnLEvent(BaseModel):
    id: str
    user_id: str
    pnl_amount: Decimal
    currency: str = "USDT"
    occurred_at: datetime = Field(default_factory=utcnow)


class InvestmentEvent(BaseModel):
    id: str
    user_id: str
    amount: Decimal
    currency: str = "USDT"
    occurred_at: datetime = Field(default_factory=utcnow)


class ReferralSignupEvent(BaseModel):
    child_user_id: str
    parent_user_id: str


# ---------
# stored records
# ---------

class User(BaseModel):
    user_id: str
    referral_code: str
    created_at: datetime = Field(default_factory=utcnow)


class ReferralEdge(BaseModel):
    child_user_id: str
    parent_user_id: str
    created_at: datetime = Field(default_factory=utcnow)


class CommissionRecord(BaseModel):
    id: str = Field(default_factory=lambda: new_id("comm"))
    beneficiary_user_id: str
    source_user_id: str
    source_event_id: str
    level: int = Field(..., ge=1, le=10)
    commission_rate: Decimal
    investor_pnl: Decimal
    commission_amount: Decimal
    currency: str
    status: CommissionStatus = CommissionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None


class TurnoverState(BaseModel):
    user_id: str
    team_turnover: Decimal = Decimal("0")
    claimed_levels: FrozenSet[int] = frozenset()


class BonusClaim(BaseModel):
    id: str = Field(default_factory=lambda: new_id("bonus"))
    user_id: str
    level_id: int
    bonus_amount: Decimal
    currency: str
    status: BonusClaimStatus = BonusClaimStatus.AVAILABLE
    created_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None


class LevelStatus(BaseModel):
    level_id: int
    name: str
    threshold: Decimal
    bonus: Decimal
    achieved: bool
    claimed: bool
    progress_percent: Decimal
