"""Tests for subject <-> local user resolution, creation, email join and profile sync."""
from dataclasses import replace

import bcrypt
import pytest

from sso_login.database import SessionLocal
from sso_login.errors import (
    CouldNotCreateUser,
    DuplicateIdentity,
    EmailNotVerified,
    RegistrationNotEnabled,
)
from sso_login.hooks import Abort, LoginHooks
from sso_login.models import IdentityMapping, User
from sso_login.users import UsersRepo, description_from, hash_password, strategy_of


def _profile(**overrides):
    profile = {
        "sub": "auth0|alice",
        "nickname": "alice",
        "name": "Alice Example",
        "given_name": "Alice",
        "family_name": "Example",
        "email": "alice@example.com",
        "email_verified": True,
    }
    profile.update(overrides)
    return {k: v for k, v in profile.items() if v is not None}


def _local_user(db, username="existing", email=None):
    user = User(username=username, password_hash=hash_password("x"), email=email)
    db.add(user)
    db.commit()
    return user


def test_strategy_of():
    assert strategy_of("google-oauth2|123") == "google-oauth2"
    assert strategy_of("auth0|abc|def") == "auth0"
    assert strategy_of(None) == ""


def test_description_priority():
    assert description_from({"about": "a", "bio": "b", "headline": "h"}) == "h"
    assert description_from({"about": "a", "bio": "b"}) == "b"
    assert description_from({"about": "a"}) == "a"
    assert description_from({}) is None


def test_hash_password_long_input():
    hashed = hash_password("p" * 100)
    assert bcrypt.checkpw(b"p" * 72, hashed.encode("utf-8"))


def test_create_new_user_and_find_by_subject(db, settings):
    repo = UsersRepo(db, settings)
    user_id = repo.create(_profile(headline="Engineer"))
    user = repo.find("auth0|alice")
    assert user.id == user_id
    assert user.username == "alice"
    assert user.email == "alice@example.com"
    assert user.first_name == "Alice"
    assert user.description == "Engineer"
    assert repo.profile_for(user_id)["nickname"] == "alice"


def test_find_unknown_subject(db, settings):
    repo = UsersRepo(db, settings)
    assert repo.find("auth0|nobody") is None
    assert repo.find(None) is None


def test_username_collision_gets_suffix(db, settings):
    _local_user(db, username="alice")
    repo = UsersRepo(db, settings)
    user = repo.get_user(repo.create(_profile(email="other@example.com")))
    assert user.username != "alice"
    assert user.username.startswith("alice")


def test_username_strips_unsafe_characters(db, settings):
    repo = UsersRepo(db, settings)
    user = repo.get_user(repo.create(_profile(nickname="<b>bob</b>", email="bob@example.com", sub="auth0|bob")))
    assert user.username == "bbobb"


def test_registration_disabled(db, settings):
    repo = UsersRepo(db, replace(settings, registration_enabled=False, auto_provisioning=False))
    with pytest.raises(RegistrationNotEnabled):
        repo.create(_profile())
    assert db.query(User).count() == 0


def test_auto_provisioning_allows_creation_without_registration(db, settings):
    repo = UsersRepo(db, replace(settings, registration_enabled=False, auto_provisioning=True))
    assert repo.create(_profile()) > 0


def test_should_create_user_hook_can_veto(db, settings):
    hooks = LoginHooks(should_create_user=[lambda userinfo: False])
    with pytest.raises(CouldNotCreateUser):
        UsersRepo(db, settings, hooks).create(_profile())

    hooks = LoginHooks(should_create_user=[lambda userinfo: Abort("Invite only")])
    with pytest.raises(CouldNotCreateUser) as exc:
        UsersRepo(db, settings, hooks).create(_profile())
    assert exc.value.message == "Invite only"
    assert db.query(User).count() == 0


def test_user_created_notification(db, settings):
    created = []
    hooks = LoginHooks(user_created=[lambda user_id, userinfo: created.append((user_id, userinfo["sub"]))])
    user_id = UsersRepo(db, settings, hooks).create(_profile())
    assert created == [(user_id, "auth0|alice")]


def test_join_existing_account_by_verified_email(db, settings):
    existing = _local_user(db, email="alice@example.com")
    repo = UsersRepo(db, settings)
    assert repo.create(_profile()) == existing.id
    assert repo.find("auth0|alice").id == existing.id
    assert db.query(User).count() == 1


def test_join_requires_verified_email(db, settings):
    _local_user(db, email="alice@example.com")
    repo = UsersRepo(db, settings)
    with pytest.raises(EmailNotVerified) as exc:
        repo.create(_profile(email_verified=False))
    assert exc.value.userinfo["sub"] == "auth0|alice"
    assert repo.find("auth0|alice") is None


def test_join_allowed_for_skipped_strategy(db, settings):
    existing = _local_user(db, email="alice@example.com")
    repo = UsersRepo(db, replace(settings, skip_strategies=("auth0",)))
    assert repo.create(_profile(email_verified=False)) == existing.id


def test_join_refused_when_account_already_linked_elsewhere(db, settings):
    repo = UsersRepo(db, settings)
    repo.create(_profile(sub="google-oauth2|111"))
    with pytest.raises(CouldNotCreateUser) as exc:
        repo.create(_profile(sub="github|222"))
    assert exc.value.message == "There is a user with the same email"


def test_second_creation_for_same_subject_is_duplicate(db, settings):
    repo = UsersRepo(db, settings)
    first = repo.create(_profile(email=None))
    # A concurrent login that did its lookup before the first commit
    with pytest.raises(DuplicateIdentity):
        repo.create(_profile(email=None))
    assert db.query(User).count() == 1
    assert db.query(IdentityMapping).count() == 1
    assert repo.find("auth0|alice").id == first


def test_second_join_for_same_subject_is_duplicate(db, settings):
    repo = UsersRepo(db, settings)
    repo.create(_profile())
    with pytest.raises(DuplicateIdentity):
        repo.create(_profile())
    assert db.query(IdentityMapping).count() == 1


def test_find_for_profile_uses_linked_identities_in_order(db, settings):
    repo = UsersRepo(db, settings)
    first = repo.create(_profile(sub="github|1", email="one@example.com", nickname="one"))
    second = repo.create(_profile(sub="google-oauth2|2", email="two@example.com", nickname="two"))
    profile = _profile(
        sub="auth0|primary",
        identities=[
            {"provider": "auth0", "user_id": "primary"},
            {"provider": "google-oauth2", "user_id": "2"},
            {"provider": "github", "user_id": "1"},
        ],
    )
    assert repo.find_for_profile(profile).id == second
    assert first != second


def test_find_for_profile_empty_identities_falls_back_to_subject(db, settings):
    repo = UsersRepo(db, settings)
    user_id = repo.create(_profile())
    assert repo.find_for_profile(_profile(identities=[])).id == user_id


def test_email_verification_policy(db, settings):
    repo = UsersRepo(db, replace(settings, skip_strategies=("twitter",)))
    assert repo.email_verification_enforced({"sub": "auth0|x"}) is True
    assert repo.email_verification_enforced({"sub": "twitter|x"}) is False
    relaxed = UsersRepo(db, replace(settings, requires_verified_email=False))
    assert relaxed.email_verification_enforced({"sub": "auth0|x"}) is False


def test_update_local_user_follows_email_change(db, settings):
    repo = UsersRepo(db, settings)
    user = repo.get_user(repo.create(_profile()))
    repo.update_local_user(user, _profile(email="new@example.com", bio="Hello"))
    db.refresh(user)
    assert user.email == "new@example.com"
    assert user.description == "Hello"


def test_update_local_user_keeps_existing_description(db, settings):
    repo = UsersRepo(db, settings)
    user = repo.get_user(repo.create(_profile(headline="Original")))
    repo.update_local_user(user, _profile(email="new@example.com", headline="Changed"))
    db.refresh(user)
    assert user.description == "Original"


def test_update_syncs_profile(db, settings):
    repo = UsersRepo(db, settings)
    user_id = repo.create(_profile())
    repo.update(user_id, _profile(picture="https://cdn.example.com/a.png"))
    assert repo.profile_for(user_id)["picture"] == "https://cdn.example.com/a.png"


def test_delete_mapping(db, settings):
    repo = UsersRepo(db, settings)
    user_id = repo.create(_profile())
    assert repo.delete_mapping(user_id) is True
    assert repo.find("auth0|alice") is None
    assert repo.get_user(user_id) is not None
    assert repo.delete_mapping(user_id) is False


def test_concurrent_first_logins_one_mapping_wins(settings):
    first, second = SessionLocal(), SessionLocal()
    try:
        repo_a, repo_b = UsersRepo(first, settings), UsersRepo(second, settings)
        profile = _profile(email=None)
        # Both requests look the subject up before either has committed
        assert repo_a.find_for_profile(profile) is None
        assert repo_b.find_for_profile(profile) is None

        winner = repo_a.create(profile)
        with pytest.raises(DuplicateIdentity):
            repo_b.create(profile)

        assert repo_b.find_for_profile(profile).id == winner
        assert second.query(IdentityMapping).count() == 1
        assert second.query(User).count() == 1
    finally:
        first.close()
        second.close()
