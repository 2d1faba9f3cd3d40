"""Tests for BookScouter token acquisition, caching and forced refresh."""

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import text

from resale_tracker.db.models import User
from resale_tracker.errors import AuthenticationError, NotFoundError
from resale_tracker.pricing.auth import TokenManager, read_token_expiry

from factories import BASE_URL, create_user, make_jwt


@pytest.mark.asyncio
async def test_cached_token_is_reused_within_validity(token_manager, bookscouter, session_factory, clock):
    user_id = await create_user(session_factory)

    first = await token_manager.get_valid_token(user_id)
    clock.advance(minutes=59)
    second = await token_manager.get_valid_token(user_id)

    assert first == second
    assert bookscouter.auth_calls == 1


@pytest.mark.asyncio
async def test_expired_token_is_exchanged(token_manager, bookscouter, session_factory, clock):
    user_id = await create_user(session_factory)

    first = await token_manager.get_valid_token(user_id)
    clock.advance(hours=1)
    second = await token_manager.get_valid_token(user_id)

    assert first != second
    assert bookscouter.auth_calls == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_exchange(token_manager, bookscouter, session_factory):
    user_id = await create_user(session_factory)

    tokens = await asyncio.gather(*(token_manager.get_valid_token(user_id) for _ in range(5)))

    assert len(set(tokens)) == 1
    assert bookscouter.auth_calls == 1


@pytest.mark.asyncio
async def test_token_and_expiry_are_stored_on_user(token_manager, session_factory, clock):
    user_id = await create_user(session_factory)

    token = await token_manager.get_valid_token(user_id)

    async with session_factory() as db:
        user = await db.get(User, user_id)
        raw = (await db.execute(text("SELECT bookscouter_token FROM users"))).scalar_one()

    assert user.bookscouter_token == token
    assert user.bookscouter_token_expiry == clock() + timedelta(hours=1)
    # Encrypted at rest
    assert raw != token


@pytest.mark.asyncio
async def test_force_refresh_always_exchanges(token_manager, bookscouter, session_factory):
    user_id = await create_user(session_factory)

    cached = await token_manager.get_valid_token(user_id)
    refreshed = await token_manager.force_refresh(user_id)

    assert refreshed != cached
    assert bookscouter.auth_calls == 2
    assert await token_manager.get_valid_token(user_id) == refreshed
    assert bookscouter.auth_calls == 2


@pytest.mark.asyncio
async def test_force_refresh_reuses_replacement_of_rejected_token(token_manager, bookscouter, session_factory):
    user_id = await create_user(session_factory)

    rejected = await token_manager.get_valid_token(user_id)
    replacement = await token_manager.force_refresh(user_id, rejected=rejected)
    again = await token_manager.force_refresh(user_id, rejected=rejected)

    assert again == replacement != rejected
    assert bookscouter.auth_calls == 2


@pytest.mark.asyncio
async def test_service_slot_does_not_need_a_user(token_manager, bookscouter):
    first = await token_manager.get_valid_token()
    second = await token_manager.get_valid_token(None)

    assert first == second
    assert bookscouter.auth_calls == 1


@pytest.mark.asyncio
async def test_auth_request_carries_credentials(token_manager, bookscouter):
    await token_manager.get_valid_token()

    request = bookscouter.requests_to("auth")[0]
    assert request.method == "POST"
    assert request.url == f"{BASE_URL}/auth"
    assert json.loads(request.content) == {
        "auth": False,
        "username": "reader@example.com",
        "password": "hunter2",
        "remember": True,
    }


@pytest.mark.asyncio
async def test_unknown_user_raises_not_found(token_manager):
    with pytest.raises(NotFoundError):
        await token_manager.get_valid_token(404)


@pytest.mark.asyncio
async def test_rejected_credentials_raise(token_manager, bookscouter):
    bookscouter.auth_response = 401

    with pytest.raises(AuthenticationError):
        await token_manager.get_valid_token()


@pytest.mark.asyncio
async def test_token_without_exp_raises(token_manager, bookscouter):
    bookscouter.auth_response = {"token": make_jwt(None, sub="reader")}

    with pytest.raises(AuthenticationError):
        await token_manager.get_valid_token()


@pytest.mark.asyncio
async def test_missing_credentials_raise_without_request(session_factory, http_client, bookscouter):
    manager = TokenManager(
        session_factory=session_factory,
        http_client=http_client,
        base_url=BASE_URL,
        username="",
        password="",
    )

    with pytest.raises(AuthenticationError):
        await manager.get_valid_token()
    assert bookscouter.auth_calls == 0


def test_read_token_expiry_rejects_garbage():
    with pytest.raises(AuthenticationError):
        read_token_expiry("not-a-jwt")
