from contextlib import asynccontextmanager
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field, model_validator

import bonus_levels
import commission_engine
import referral_engine
import stats_service
import turnover_engine
from config import configure_logging, get_settings
from db.pg_store import PostgresStore
from errors import (
    AlreadyClaimed,
    BonusAlreadySettled,
    CommissionAlreadyPaid,
    RecordNotFound,
    ReferralCodeNotFound,
    ReferralEngineError,
    SourceUserNotFound,
    UnknownLevel,
    UserNotFound,
)
from models import (
    BonusClaim,
    BonusClaimStatus,
    CommissionRecord,
    InvestmentEvent,
    LevelStatus,
    PnLEvent,
    ReferralSignupEvent,
)
from store import InMemoryStore, ReferralStore


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    logger.info(f"Referral engine starting with {settings.store_backend} store")
    yield


app = FastAPI(title="Referral Commission & Turnover Engine", version="0.1.0", lifespan=lifespan)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_store() -> ReferralStore:
    settings = get_settings()
    if settings.store_backend == "postgres":
        return PostgresStore(settings.database_url)
    return InMemoryStore()


# ---------
# pydantic models (requests)
# ---------

class UserCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="ID of the new user")
    referral_code: Optional[str] = Field(None, description="Own referral code (generated if omitted)")
    referrer_code: Optional[str] = Field(None, description="Referral code used on signup")


class ReferralRegisterRequest(BaseModel):
    child_user_id: str = Field(..., description="ID of the user being referred")
    parent_user_id: Optional[str] = Field(None, description="ID of the referrer")
    referral_code: Optional[str] = Field(None, description="Referral code used on signup")

    @model_validator(mode="after")
    def _one_referrer(self):
        if (self.parent_user_id is None) == (self.referral_code is None):
            raise ValueError("provide exactly one of parent_user_id or referral_code")
        return self


class ReferralGenerateRequest(BaseModel):
    user_id: str = Field(..., description="User ID to generate or fetch referral code for")


class LevelClaimRequest(BaseModel):
    user_id: str = Field(..., description="User ID attempting to claim")
    level_id: int = Field(..., description="Turnover level to claim")


# ---------
# helpers
# ---------

NOT_FOUND = (UserNotFound, SourceUserNotFound, ReferralCodeNotFound, RecordNotFound, UnknownLevel)
CONFLICT = (AlreadyClaimed, CommissionAlreadyPaid, BonusAlreadySettled)


def _http_error(e: ReferralEngineError) -> HTTPException:
    if isinstance(e, NOT_FOUND):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CONFLICT):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _internal_error(where: str) -> HTTPException:
    logger.exception(f"Unexpected error in {where}")
    return HTTPException(status_code=500, detail="Internal server error")


def _fmt(v: Decimal) -> str:
    return f"{v:.6f}"


def _commission_json(r: CommissionRecord) -> Dict[str, Any]:
    return {
        "id": r.id,
        "beneficiary_user_id": r.beneficiary_user_id,
        "source_user_id": r.source_user_id,
        "source_event_id": r.source_event_id,
        "level": r.level,
        "commission_rate": f"{r.commission_rate:.4f}",
        "investor_pnl": _fmt(r.investor_pnl),
        "commission_amount": _fmt(r.commission_amount),
        "currency": r.currency,
        "status": r.status.value,
        "created_at": r.created_at.isoformat(),
        "paid_at": r.paid_at.isoformat() if r.paid_at else None,
    }


def _claim_json(c: BonusClaim) -> Dict[str, Any]:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "level_id": c.level_id,
        "bonus_amount": _fmt(c.bonus_amount),
        "currency": c.currency,
        "status": c.status.value,
        "created_at": c.created_at.isoformat(),
        "claimed_at": c.claimed_at.isoformat() if c.claimed_at else None,
    }


def _level_json(s: LevelStatus) -> Dict[str, Any]:
    return {
        "level_id": s.level_id,
        "name": s.name,
        "threshold": _fmt(s.threshold),
        "bonus": _fmt(s.bonus),
        "achieved": s.achieved,
        "claimed": s.claimed,
        "progress_percent": f"{s.progress_percent:.2f}",
    }


def _next_level_json(n: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if n is None:
        return None
    return {
        "level_id": n["level_id"],
        "name": n["name"],
        "threshold": _fmt(n["threshold"]),
        "bonus": _fmt(n["bonus"]),
        "current_turnover": _fmt(n["current_turnover"]),
        "progress": f"{n['progress']:.2f}",
    }


# ---------
# users + referral graph
# ---------


@app.post("/api/users")
def create_user(payload: UserCreateRequest, store: ReferralStore = Depends(get_store)):
    """
    create a user, optionally attaching them to the owner of `referrer_code`.
    """
    try:
        referrer = None
        if payload.referrer_code:
            referrer = store.get_user_by_referral_code(payload.referrer_code.strip().upper())
            if referrer is None:
                raise ReferralCodeNotFound(payload.referrer_code)

        user = store.create_user(payload.user_id, payload.referral_code)
        parent_id = None
        if referrer is not None:
            edge = referral_engine.register_referral(user.user_id, referrer.user_id, store)
            parent_id = edge.parent_user_id
    except ReferralEngineError as e:
        raise _http_error(e)
    except ValueError as e:
        # duplicate user id / referral code
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise _internal_error("create_user")

    return {"user_id": user.user_id, "referral_code": user.referral_code, "parent_id": parent_id}


@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest, store: ReferralStore = Depends(get_store)):
    """
    attach a child user to a referrer, by referrer id or referral_code.
    business rule violations (already has referrer, invalid code, cycle, etc.)
    become HTTP 4xx.
    """
    try:
        if payload.referral_code is not None:
            edge = referral_engine.register_referral_by_code(
                payload.child_user_id, payload.referral_code, store
            )
        else:
            event = ReferralSignupEvent(
                child_user_id=payload.child_user_id, parent_user_id=payload.parent_user_id
            )
            edge = referral_engine.handle_signup_event(event, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("referral_register")

    return {"status": "linked", "child_id": edge.child_user_id, "parent_id": edge.parent_user_id}


@app.post("/api/referral/generate")
def referral_generate(payload: ReferralGenerateRequest, store: ReferralStore = Depends(get_store)):
    """
    return the user's referral code, generating one if they don't have it yet.
    """
    try:
        code = referral_engine.get_or_generate_referral_code(payload.user_id, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("referral_generate")
    return {"user_id": payload.user_id, "referral_code": code}


@app.get("/api/referral/network")
def referral_network(
    user_id: str = Query(..., description="Root user ID whose network we want"),
    max_levels: int = Query(3, ge=1, le=10, description="How many levels deep to fetch"),
    limit_per_level: int = Query(50, ge=1, le=500, description="Max users per level"),
    store: ReferralStore = Depends(get_store),
):
    """
    return the user's downline/referral network up to max_levels deep.
    """
    try:
        levels = referral_engine.get_network_levels(
            user_id, store, max_levels=max_levels, limit_per_level=limit_per_level
        )
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("referral_network")

    return {
        "user_id": user_id,
        "max_levels": max_levels,
        "limit_per_level": limit_per_level,
        "levels": levels,
    }


# ---------
# event ingestion
# ---------


@app.post("/api/webhook/pnl")
def webhook_pnl(payload: PnLEvent, store: ReferralStore = Depends(get_store)):
    """
    profit/loss ingestion webhook.
    replays answer 200 with status 'duplicate'; they are not errors.
    """
    try:
        result = commission_engine.handle_pnl_event(payload, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("webhook_pnl")

    return {
        "status": result["status"],
        "event_id": result["event_id"],
        "records": [_commission_json(r) for r in result["records"]],
    }


@app.post("/api/webhook/investment")
def webhook_investment(payload: InvestmentEvent, store: ReferralStore = Depends(get_store)):
    """
    deposit / plan purchase ingestion webhook. credits team turnover upline.
    """
    try:
        result = turnover_engine.handle_investment_event(payload, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("webhook_investment")

    return {
        "status": result["status"],
        "event_id": result["event_id"],
        "amount": _fmt(result["amount"]),
        "credited": result["credited"],
    }


# ---------
# commissions
# ---------


@app.get("/api/referral/commissions")
def referral_commissions(
    user_id: str = Query(..., description="Beneficiary user ID"),
    level: Optional[int] = Query(None, ge=1, le=10, description="Only this upline level"),
    limit: Optional[int] = Query(None, ge=1, le=500, description="Max records to return"),
    store: ReferralStore = Depends(get_store),
):
    """commissions earned by a user, newest first."""
    try:
        if level is not None:
            records = stats_service.commissions_by_level(user_id, level, store)
            if limit is not None:
                records = records[:limit]
        else:
            records = stats_service.get_user_commissions(user_id, store, limit=limit)
    except Exception:
        raise _internal_error("referral_commissions")

    return {"user_id": user_id, "commissions": [_commission_json(r) for r in records]}


@app.get("/api/referral/commissions/stats")
def referral_commission_stats(
    user_id: str = Query(..., description="Beneficiary user ID"),
    store: ReferralStore = Depends(get_store),
):
    try:
        stats = stats_service.get_commission_stats(user_id, store)
    except Exception:
        raise _internal_error("referral_commission_stats")

    return {
        "user_id": user_id,
        "total_earned": _fmt(stats["total_earned"]),
        "total_commissions": stats["total_commissions"],
        "by_level": {
            str(level): {"count": b["count"], "total": _fmt(b["total"])}
            for level, b in sorted(stats["by_level"].items())
        },
    }


@app.get("/api/referral/commissions/preview")
def referral_commission_preview(
    user_id: str = Query(..., description="Investor user ID"),
    pnl_amount: Decimal = Query(..., description="Profit to split"),
    store: ReferralStore = Depends(get_store),
):
    """expected commission split for a profit, without recording anything."""
    try:
        splits = commission_engine.preview_commissions(user_id, pnl_amount, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("referral_commission_preview")

    return {
        "user_id": user_id,
        "pnl_amount": _fmt(pnl_amount),
        "splits": [
            {
                "beneficiary": s["beneficiary"],
                "level": s["level"],
                "rate": f"{s['rate']:.4f}",
                "amount": _fmt(s["amount"]),
            }
            for s in splits
        ],
    }


@app.post("/api/referral/commissions/{record_id}/paid")
def referral_commission_paid(record_id: str, store: ReferralStore = Depends(get_store)):
    """payout worker callback: PENDING -> PAID."""
    try:
        record = commission_engine.mark_commission_paid(record_id, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("referral_commission_paid")
    return _commission_json(record)


# ---------
# turnover + bonus levels
# ---------


@app.get("/api/turnover/stats")
def turnover_stats(
    user_id: str = Query(..., description="User ID"),
    store: ReferralStore = Depends(get_store),
):
    try:
        stats = stats_service.get_turnover_stats(user_id, store)
    except Exception:
        raise _internal_error("turnover_stats")

    return {
        "user_id": user_id,
        "team_turnover": _fmt(stats["team_turnover"]),
        "total_bonuses_earned": _fmt(stats["total_bonuses_earned"]),
        "current_level": stats["current_level"],
        "next_level": _next_level_json(stats["next_level"]),
    }


@app.get("/api/turnover/levels")
def turnover_levels(
    user_id: str = Query(..., description="User ID"),
    store: ReferralStore = Depends(get_store),
):
    try:
        statuses = stats_service.get_level_statuses(user_id, store)
    except Exception:
        raise _internal_error("turnover_levels")
    return {"user_id": user_id, "levels": [_level_json(s) for s in statuses]}


@app.get("/api/turnover/next-level")
def turnover_next_level(
    user_id: str = Query(..., description="User ID"),
    store: ReferralStore = Depends(get_store),
):
    try:
        target = stats_service.next_level(user_id, store)
    except Exception:
        raise _internal_error("turnover_next_level")
    return {"user_id": user_id, "next_level": _next_level_json(target)}


@app.get("/api/turnover/claims")
def turnover_claims(
    user_id: str = Query(..., description="User ID"),
    status: Optional[BonusClaimStatus] = Query(None, description="Only claims in this status"),
    store: ReferralStore = Depends(get_store),
):
    """
    the user's bonus claims by level. the payout worker lists AVAILABLE
    ones here before settling them.
    """
    try:
        claims = stats_service.get_user_bonus_claims(user_id, store, status=status)
    except Exception:
        raise _internal_error("turnover_claims")
    return {"user_id": user_id, "claims": [_claim_json(c) for c in claims]}


@app.post("/api/turnover/claim")
def turnover_claim(payload: LevelClaimRequest, store: ReferralStore = Depends(get_store)):
    """
    claim an achieved turnover level.
    - 400 when the level is not achieved yet
    - 404 for an unknown level
    - 409 when it was already claimed
    """
    try:
        claim = bonus_levels.claim(payload.user_id, payload.level_id, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("turnover_claim")
    return _claim_json(claim)


@app.post("/api/turnover/claims/{claim_id}/settled")
def turnover_claim_settled(claim_id: str, store: ReferralStore = Depends(get_store)):
    """payout worker callback: AVAILABLE -> CLAIMED."""
    try:
        claim = bonus_levels.mark_bonus_claimed(claim_id, store)
    except ReferralEngineError as e:
        raise _http_error(e)
    except Exception:
        raise _internal_error("turnover_claim_settled")
    return _claim_json(claim)
