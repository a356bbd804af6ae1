"""
Tests for PurchaseHistoryService.

SECURITY: Users can only see and delete their own purchases.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import BASE_TIME, FakeSession, make_purchase
from entitlement_engine.exceptions import DatabaseError
from entitlement_engine.models.result import Err, ErrorCode, Ok
from entitlement_engine.services.authorization import AuthorizationGuard
from entitlement_engine.services.purchase_history import PurchaseHistoryService


class TestGetHistory:
    """Tests for listing purchases."""

    @pytest.mark.asyncio
    async def test_newest_first(self, history, store):
        await store.insert_or_update_purchase(make_purchase("txn_old"))
        await store.insert_or_update_purchase(
            make_purchase("txn_new", purchased_at=BASE_TIME + timedelta(days=1))
        )
        await store.insert_or_update_purchase(make_purchase("txn_bob", user_id="bob"))

        result = await history.get_history("alice")

        assert isinstance(result, Ok)
        assert [p.transaction_id for p in result.value] == ["txn_new", "txn_old"]

    @pytest.mark.asyncio
    async def test_empty(self, history):
        assert await history.get_history("alice") == Ok([])

    @pytest.mark.asyncio
    async def test_other_user_denied(self, history):
        result = await history.get_history("bob")
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_not_authenticated(self, store, gating):
        history = PurchaseHistoryService(
            store, AuthorizationGuard(FakeSession(None).current_user), gating
        )
        result = await history.get_history("alice")
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.NOT_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_store_failure(self, history, store):
        store.get_all_purchases = AsyncMock(side_effect=DatabaseError("timeout"))
        result = await history.get_history("alice")
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.DB_ERROR


class TestGetPurchase:
    """Tests for single purchase lookup."""

    @pytest.mark.asyncio
    async def test_found(self, history, store):
        purchase = make_purchase()
        await store.insert_or_update_purchase(purchase)
        assert await history.get_purchase("alice", "txn_001") == Ok(purchase)

    @pytest.mark.asyncio
    async def test_missing(self, history):
        assert await history.get_purchase("alice", "txn_404") == Ok(None)

    @pytest.mark.asyncio
    async def test_other_users_transaction_hidden(self, history, store):
        await store.insert_or_update_purchase(make_purchase("txn_bob", user_id="bob"))
        assert await history.get_purchase("alice", "txn_bob") == Ok(None)

    @pytest.mark.asyncio
    async def test_empty_transaction_id(self, history):
        result = await history.get_purchase("alice", "")
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.INVALID_INPUT


class TestDeletePurchase:
    """Tests for deletion."""

    @pytest.mark.asyncio
    async def test_delete_own_purchase(self, history, store, gating):
        await store.insert_or_update_purchase(make_purchase())
        gating.register_purchase(make_purchase())

        result = await history.delete_purchase("alice", "txn_001")

        assert result == Ok(True)
        assert await store.get_purchase("txn_001") is None
        assert gating.can_access_sync("advanced_search") is False

    @pytest.mark.asyncio
    async def test_delete_missing(self, history):
        assert await history.delete_purchase("alice", "txn_404") == Ok(False)

    @pytest.mark.asyncio
    async def test_cannot_delete_for_other_user(self, history, store):
        await store.insert_or_update_purchase(make_purchase("txn_bob", user_id="bob"))

        result = await history.delete_purchase("bob", "txn_bob")

        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.PERMISSION_DENIED
        assert await store.get_purchase("txn_bob") is not None

    @pytest.mark.asyncio
    async def test_cannot_delete_other_users_transaction_via_own_id(self, history, store):
        await store.insert_or_update_purchase(make_purchase("txn_bob", user_id="bob"))

        assert await history.delete_purchase("alice", "txn_bob") == Ok(False)
        assert await store.get_purchase("txn_bob") is not None

    @pytest.mark.asyncio
    async def test_delete_store_failure(self, history, store):
        await store.insert_or_update_purchase(make_purchase())
        store.delete_purchase = AsyncMock(side_effect=DatabaseError("locked"))

        result = await history.delete_purchase("alice", "txn_001")

        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.DB_ERROR
