import warnings
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from config import Settings, get_settings
from errors import GraphIntegrityWarning, ReferralCodeNotFound, UserNotFound
from models import ReferralEdge, ReferralSignupEvent
from store import ReferralStore, generate_referral_code


def register_referral(
    child_id: str,
    parent_id: str,
    store: ReferralStore,
    settings: Optional[Settings] = None,
) -> ReferralEdge:
    """
    register that `parent_id` referred `child_id`.
    rules:
      - a child can only have ONE referrer (cannot be overwritten)
      - adding the edge child -> parent must NOT create a cycle
    both checks run inside the store's atomic add_edge.
    """
    settings = settings or get_settings()
    edge = store.add_edge(child_id, parent_id, max_steps=settings.traversal_depth_cap)
    logger.info(f"Referral linked: {parent_id} -> {child_id}")
    return edge


def handle_signup_event(
    event: ReferralSignupEvent,
    store: ReferralStore,
    settings: Optional[Settings] = None,
) -> ReferralEdge:
    return register_referral(event.child_user_id, event.parent_user_id, store, settings)


def register_referral_by_code(
    child_id: str,
    referral_code: str,
    store: ReferralStore,
    settings: Optional[Settings] = None,
) -> ReferralEdge:
    """resolve the referrer from their referral code, then link."""
    parent = store.get_user_by_referral_code(referral_code.strip().upper())
    if parent is None:
        raise ReferralCodeNotFound(referral_code)
    return register_referral(child_id, parent.user_id, store, settings)


def get_ancestors(
    user_id: str,
    store: ReferralStore,
    max_depth: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> List[Tuple[str, int]]:
    """
    given a user_id, return [(L1, 1), (L2, 2), ...] nearest ancestor first.

    max_depth=None means the whole chain up to the root. the walk never
    exceeds settings.traversal_depth_cap and stops at the first repeated
    user; in both cases the partial chain is returned and a
    GraphIntegrityWarning is emitted.
    """
    settings = settings or get_settings()
    cap = settings.traversal_depth_cap
    limit = cap if max_depth is None else min(max_depth, cap)

    # one read; the extra entry tells whether the chain goes on past limit
    upline = store.get_upline(user_id, limit + 1)

    ancestors: List[Tuple[str, int]] = []
    seen = {user_id}

    for level, parent in enumerate(upline[:limit], start=1):
        if parent in seen:
            _integrity_problem(
                f"cycle in referral chain of {user_id}: {parent} reached twice "
                f"at level {level}; chain truncated to {len(ancestors)} levels"
            )
            return ancestors
        ancestors.append((parent, level))
        seen.add(parent)

    # ran out of levels: fine when the caller asked for a bounded chain,
    # suspicious when it hit the defensive cap
    if limit == cap and len(upline) > limit:
        _integrity_problem(
            f"referral chain of {user_id} exceeds depth cap {cap}; chain truncated"
        )

    return ancestors


def _integrity_problem(message: str) -> None:
    logger.warning(f"Graph integrity: {message}")
    warnings.warn(message, GraphIntegrityWarning, stacklevel=3)


def get_network_levels(
    root_user_id: str,
    store: ReferralStore,
    max_levels: int = 3,
    limit_per_level: int = 50,
) -> List[Dict[str, Any]]:
    """
    return up to max_levels of downline for a root user.

    structure:
    [
      {"level": 1, "users": [...]},
      {"level": 2, "users": [...]},
      {"level": 3, "users": [...]},
    ]
    """
    if not store.user_exists(root_user_id):
        raise UserNotFound(root_user_id)

    levels: List[Dict[str, Any]] = []
    current_level_ids = [root_user_id]
    seen = {root_user_id}

    for level in range(1, max_levels + 1):
        if not current_level_ids:
            levels.append({"level": level, "users": []})
            continue

        edges = [
            e for e in store.get_children(current_level_ids, limit_per_level)
            if e.child_user_id not in seen
        ]
        users = [
            {
                "user_id": e.child_user_id,
                "referrer_id": e.parent_user_id,
                "joined_at": e.created_at.isoformat(),
            }
            for e in edges
        ]

        levels.append({"level": level, "users": users})
        current_level_ids = [u["user_id"] for u in users]
        seen.update(current_level_ids)

    return levels


def get_or_generate_referral_code(user_id: str, store: ReferralStore) -> str:
    """
    return the user's existing referral_code; users created without one
    get a fresh unique code persisted on first request.
    """
    user = store.get_user(user_id)
    if user is None:
        raise UserNotFound(user_id)

    if user.referral_code:
        return user.referral_code

    while True:
        candidate = generate_referral_code()
        if store.get_user_by_referral_code(candidate) is None:
            return store.set_referral_code(user_id, candidate).referral_code
