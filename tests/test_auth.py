from datetime import timedelta

import pytest
from sqlmodel import select

from taskboard.core.exceptions import AuthenticationError, ConflictError, NotFoundError, ValidationError
from taskboard.core.security import create_access_token, decode_access_token, verify_password
from taskboard.models import (
    LoginRequest,
    LogoutRequest,
    RefreshToken,
    RegisterRequest,
    Tag,
    Task,
    TaskCreate,
    TaskHistory,
    TokenBlacklist,
    User,
    UserCreate,
    UserUpdate,
    get_utc_now,
)
from taskboard.services.auth_service import AuthService
from taskboard.services.task_service import TaskService
from taskboard.services.user_service import UserService


def register_request(email="carol@example.com", password="secret123", confirm=None, name=None):
    return RegisterRequest(email=email, password=password, confirm_password=confirm or password, name=name)


async def test_register_hashes_password_and_issues_tokens(db):
    response = await AuthService.register(register_request(email="Carol@Example.com"), db)

    assert response.user.email == "carol@example.com"
    assert response.user.name == "carol"
    assert response.user.avatar
    assert decode_access_token(response.tokens.token) == response.user.id

    user = (await db.exec(select(User).where(User.id == response.user.id))).one()
    assert user.password != "secret123"
    assert verify_password("secret123", user.password)


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"password": "secret123", "confirm": "different"},
        {"password": "short", "confirm": "short"},
    ],
)
async def test_register_rejects_bad_passwords(db, request_kwargs):
    with pytest.raises(ValidationError):
        await AuthService.register(register_request(**request_kwargs), db)


async def test_register_rejects_a_taken_email(db, owner):
    with pytest.raises(ConflictError):
        await AuthService.register(register_request(email="ALICE@example.com"), db)


async def test_display_names_are_disambiguated(db, make_user):
    first = await make_user("dana@one.com")
    second = await make_user("dana@two.com")
    third = await make_user("other@three.com", name="dana")

    assert [first.name, second.name, third.name] == ["dana", "dana1", "dana2"]


async def test_login_checks_credentials(db, owner):
    response = await AuthService.login(LoginRequest(email="Alice@example.com", password="secret123"), db)
    assert response.user.id == owner.id

    with pytest.raises(AuthenticationError):
        await AuthService.login(LoginRequest(email="alice@example.com", password="wrong"), db)
    with pytest.raises(AuthenticationError):
        await AuthService.login(LoginRequest(email="nobody@example.com", password="secret123"), db)
    with pytest.raises(ValidationError):
        await AuthService.login(LoginRequest(email="", password=""), db)


async def test_refresh_rotates_the_refresh_token(db, owner):
    tokens = (await AuthService.login(LoginRequest(email="alice@example.com", password="secret123"), db)).tokens

    rotated = await AuthService.refresh(tokens.refresh_token, db)

    assert rotated.refresh_token != tokens.refresh_token
    assert decode_access_token(rotated.token) == owner.id
    with pytest.raises(AuthenticationError):
        await AuthService.refresh(tokens.refresh_token, db)


async def test_expired_refresh_token_is_consumed_and_rejected(db, owner):
    db.add(RefreshToken(token="stale", user_id=owner.id, expires_at=get_utc_now() - timedelta(minutes=1)))
    await db.commit()

    with pytest.raises(AuthenticationError):
        await AuthService.refresh("stale", db)

    assert (await db.exec(select(RefreshToken).where(RefreshToken.token == "stale"))).first() is None


async def test_logout_revokes_access_and_refresh_tokens(db, owner):
    tokens = (await AuthService.login(LoginRequest(email="alice@example.com", password="secret123"), db)).tokens
    assert (await AuthService.resolve_user(tokens.token, db)).id == owner.id

    await AuthService.logout(LogoutRequest(token=tokens.token, refresh_token=tokens.refresh_token), db)

    with pytest.raises(AuthenticationError):
        await AuthService.resolve_user(tokens.token, db)
    with pytest.raises(AuthenticationError):
        await AuthService.refresh(tokens.refresh_token, db)

    # logging out twice is harmless
    await AuthService.logout(LogoutRequest(token=tokens.token), db)
    with pytest.raises(ValidationError):
        await AuthService.logout(LogoutRequest(), db)


async def test_resolve_user_rejects_bad_tokens(db, owner):
    with pytest.raises(AuthenticationError):
        await AuthService.resolve_user("not-a-jwt", db)
    with pytest.raises(AuthenticationError):
        await AuthService.resolve_user(create_access_token(owner.id, expires_delta=timedelta(seconds=-5)), db)
    with pytest.raises(AuthenticationError):
        await AuthService.resolve_user(create_access_token(9999), db)


async def test_cleanup_sweeps_remove_only_stale_rows(db, owner):
    now = get_utc_now()
    db.add(RefreshToken(token="old", user_id=owner.id, expires_at=now - timedelta(days=1)))
    db.add(RefreshToken(token="fresh", user_id=owner.id, expires_at=now + timedelta(days=1)))
    db.add(TokenBlacklist(token="ancient", created_at=now - timedelta(days=60)))
    db.add(TokenBlacklist(token="recent", created_at=now))
    await db.commit()

    assert await AuthService.cleanup_expired_refresh_tokens(db) == 1
    assert await AuthService.cleanup_blacklist(db) == 1

    assert (await db.exec(select(RefreshToken.token))).all() == ["fresh"]
    assert (await db.exec(select(TokenBlacklist.token))).all() == ["recent"]


async def test_update_user_checks_email_uniqueness(db, owner, other_owner):
    with pytest.raises(ConflictError):
        await UserService.update_user(other_owner.id, UserUpdate(email="alice@example.com"), db)
    with pytest.raises(ValidationError):
        await UserService.update_user(other_owner.id, UserUpdate(), db)
    with pytest.raises(ValidationError):
        await UserService.update_user(other_owner.id, UserUpdate(name="  "), db)

    updated = await UserService.update_user(other_owner.id, UserUpdate(name="Robert", avatar="a.png"), db)
    assert (updated.name, updated.avatar) == ("Robert", "a.png")


async def test_create_user_rejects_duplicates(db, owner):
    with pytest.raises(ConflictError):
        await UserService.create_user(UserCreate(email="alice@example.com", password="secret123"), db)


async def test_users_are_listed_newest_first(db, owner, other_owner):
    users = await UserService.list_users(db)

    assert [user.id for user in users] == [other_owner.id, owner.id]


async def test_deleting_a_user_removes_everything_they_own(db, owner, other_owner):
    await AuthService.login(LoginRequest(email="alice@example.com", password="secret123"), db)
    await TaskService.create_task(owner.id, TaskCreate(title="mine", tags=["t"]), db)
    kept = await TaskService.create_task(other_owner.id, TaskCreate(title="theirs", tags=["t"]), db)

    snapshot = await UserService.delete_user(owner.id, db)

    assert snapshot.email == "alice@example.com"
    with pytest.raises(NotFoundError):
        await UserService.get_user(owner.id, db)
    assert (await db.exec(select(Task.id))).all() == [kept.id]
    assert (await db.exec(select(Tag.user_id))).all() == [other_owner.id]
    assert (await db.exec(select(RefreshToken).where(RefreshToken.user_id == owner.id))).all() == []
    history_task_ids = (await db.exec(select(TaskHistory.task_id))).all()
    assert set(history_task_ids) == {kept.id}
