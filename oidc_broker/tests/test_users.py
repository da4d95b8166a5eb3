"""Tests for local user resolution."""
from unittest.mock import patch

import pytest

from oidc_broker.database import create_db_engine, create_session_factory, init_db
from oidc_broker.errors import AccountConflictError
from oidc_broker.users import SqlUserLookup, resolve_user


@pytest.fixture
def users():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    return SqlUserLookup(create_session_factory(engine))


def test_creates_new_user(users):
    user = resolve_user(users, external_id="g-1", email="alice@example.com", name="Alice")
    assert user.id is not None
    assert user.email == "alice@example.com"
    assert user.external_id == "g-1"
    assert users.find_by_id(user.id) == user


def test_matches_by_external_id(users):
    first = resolve_user(users, external_id="g-1", email="alice@example.com", name="Alice")
    again = resolve_user(users, external_id="g-1", email="alice@example.com", name="Alice")
    assert again.id == first.id


def test_known_user_keeps_registered_email_and_updates_name(users):
    first = resolve_user(users, external_id="g-1", email="alice@example.com", name="Alice")
    again = resolve_user(users, external_id="g-1", email="alice@new.example", name="Alice Liddell")
    assert again.id == first.id
    assert again.email == "alice@example.com"
    assert again.name == "Alice Liddell"


def test_email_owned_by_other_account_is_conflict(users):
    users.create(external_id=None, email="alice@example.com", name="Alice")
    with pytest.raises(AccountConflictError):
        resolve_user(users, external_id="g-2", email="alice@example.com", name="Alice")
    assert users.find_by_external_id("g-2") is None


def test_duplicate_create_is_conflict(users):
    users.create(external_id="g-1", email="alice@example.com", name="Alice")
    with pytest.raises(AccountConflictError):
        users.create(external_id="g-9", email="alice@example.com", name="Other")
    assert users.find_by_external_id("g-9") is None


def test_create_for_known_identity_returns_existing_user(users):
    """A second insert for the same upstream identity (two first sign-ins racing) yields the stored user."""
    first = users.create(external_id="g-1", email="alice@example.com", name="Alice")
    second = users.create(external_id="g-1", email="alice@example.com", name="Alice")
    assert second.id == first.id
    assert second.external_id == "g-1"


def test_concurrent_first_sign_in_resolves_to_one_user(users):
    winner = users.create(external_id="g-1", email="alice@example.com", name="Alice")
    real_find = users.find_by_external_id
    calls = []

    def stale_then_real(external_id):
        # The losing request read the table before the winner committed
        calls.append(external_id)
        return None if len(calls) == 1 else real_find(external_id)

    with patch.object(users, "find_by_external_id", side_effect=stale_then_real), patch.object(
        users, "find_by_email", return_value=None
    ):
        loser = resolve_user(users, external_id="g-1", email="alice@example.com", name="Alice")
    assert loser.id == winner.id


def test_to_dict():
    from oidc_broker.users import LocalUser

    assert LocalUser(id=3, email="c@example.com", name="C", external_id="g-3").to_dict() == {
        "id": 3,
        "email": "c@example.com",
        "name": "C",
    }
