import pytest

from config import Settings
from referral_engine import register_referral
from store import InMemoryStore


@pytest.fixture
def store():
    """fresh in-memory 'tables' for each test."""
    return InMemoryStore()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


def build_chain(store, user_ids, settings=None):
    """
    create users and link them top-down:
    build_chain(store, ["A", "B", "C"]) means A referred B, B referred C.
    """
    for user_id in user_ids:
        if not store.user_exists(user_id):
            store.create_user(user_id)
    for parent, child in zip(user_ids, user_ids[1:]):
        register_referral(child, parent, store, settings)
    return user_ids
