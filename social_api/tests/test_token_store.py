"""Tests for the account token store."""
from datetime import datetime, timedelta, timezone

import pytest

from social_api.token_store import account_token_expires_at, public_account_view


@pytest.mark.asyncio
async def test_upsert_creates_then_updates_single_row(account_store):
    user = await account_store.get_or_create_user("alice")
    first = await account_store.upsert_account(user.id, "x", account_id="1", access_token="a1", refresh_token="r1")
    second = await account_store.upsert_account(user.id, "x", access_token="a2")

    assert first.id == second.id
    assert second.access_token == "a2"
    assert second.refresh_token == "r1"
    assert len(await account_store.list_accounts()) == 1


@pytest.mark.asyncio
async def test_upsert_rejects_unknown_fields(account_store):
    user = await account_store.get_or_create_user("alice")
    with pytest.raises(ValueError):
        await account_store.upsert_account(user.id, "x", password="nope")


@pytest.mark.asyncio
async def test_get_or_create_user_is_idempotent(account_store):
    a = await account_store.get_or_create_user("bob")
    b = await account_store.get_or_create_user("bob")
    assert a.id == b.id


@pytest.mark.asyncio
async def test_update_tokens_writes_all_fields_and_reactivates(account_store, make_account):
    account = await make_account(is_active=False)
    expires = datetime.now(timezone.utc) + timedelta(hours=2)

    updated = await account_store.update_tokens(
        account.id, access_token="new-at", refresh_token="new-rt", token_expires_at=expires, scope="tweet.read"
    )

    assert updated.access_token == "new-at"
    assert updated.refresh_token == "new-rt"
    assert updated.scope == "tweet.read"
    assert updated.is_active is True
    assert abs((account_token_expires_at(updated) - expires).total_seconds()) < 1


@pytest.mark.asyncio
async def test_deactivate_keeps_row(account_store, make_account):
    account = await make_account()
    await account_store.deactivate_account(account.id)

    stored = await account_store.get_account(account.user_id, "x")
    assert stored is not None
    assert stored.is_active is False
    assert await account_store.find_latest_active_account("x") is None


@pytest.mark.asyncio
async def test_list_refreshable_accounts_filters_inactive_and_missing_refresh(make_account, account_store):
    keep = await make_account("alice")
    await make_account("bob", refresh_token=None)
    await make_account("carol", refresh_token="")
    await make_account("dave", is_active=False)

    refreshable = await account_store.list_refreshable_accounts()
    assert [a.id for a in refreshable] == [keep.id]


@pytest.mark.asyncio
async def test_find_latest_active_account_prefers_newest(make_account, account_store):
    await make_account("alice")
    newest = await make_account("bob")
    found = await account_store.find_latest_active_account("x")
    assert found.id == newest.id


@pytest.mark.asyncio
async def test_public_view_has_no_token_material(make_account):
    account = await make_account()
    view = public_account_view(account)

    assert "access_token" not in view
    assert "refresh_token" not in view
    assert view["has_refresh_token"] is True
    assert view["platform"] == "x"
    assert view["token_expires_at"].endswith("+00:00")
