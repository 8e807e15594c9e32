"""
Remote Account Store Tests

Runs MongoAccountStore against a mocked Motor database and checks the
queries it issues and how driver errors are mapped.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from entitlements.account_store import MongoAccountStore
from entitlements.errors import AccountConflict, DuplicateLedgerEntry, DuplicatePurchase, NetworkError
from entitlements.models import Account, CreditKind, CreditLedgerEntry, PurchaseRecord

ACCOUNT_DOC = {
    "account_id": "acct-1",
    "email": None,
    "display_name": None,
    "credit_balance": 4,
    "is_guest": True,
    "linked_installation_id": "device_1_abcd",
    "created_at": "2026-01-23T16:05:00+00:00"
}


@pytest.fixture
def mock_db():
    return AsyncMock()


@pytest.fixture
def store(mock_db):
    return MongoAccountStore(mock_db)


class TestAccounts:
    """Account documents"""

    @pytest.mark.asyncio
    async def test_get_account(self, store, mock_db):
        mock_db.accounts.find_one.return_value = ACCOUNT_DOC

        account = await store.get_account("acct-1")

        assert account.credit_balance == 4
        mock_db.accounts.find_one.assert_awaited_once_with({"account_id": "acct-1"}, {"_id": 0})

    @pytest.mark.asyncio
    async def test_find_guest_account_filters_guests(self, store, mock_db):
        mock_db.accounts.find_one.return_value = None

        assert await store.find_guest_account("device_1_abcd") is None
        query = mock_db.accounts.find_one.call_args.args[0]
        assert query == {"linked_installation_id": "device_1_abcd", "is_guest": True}

    @pytest.mark.asyncio
    async def test_create_account_upserts_on_insert_only(self, store, mock_db):
        mock_db.accounts.find_one.return_value = ACCOUNT_DOC

        await store.create_account(Account(account_id="acct-1", linked_installation_id="device_1_abcd"))

        args, kwargs = mock_db.accounts.update_one.call_args
        assert args[0] == {"account_id": "acct-1"}
        assert "$setOnInsert" in args[1]
        assert kwargs["upsert"] is True

    @pytest.mark.asyncio
    async def test_second_guest_for_installation_conflicts(self, store, mock_db):
        mock_db.accounts.update_one.side_effect = DuplicateKeyError("E11000 duplicate key")

        with pytest.raises(AccountConflict):
            await store.create_account(Account(account_id="acct-2", linked_installation_id="device_1_abcd"))

    @pytest.mark.asyncio
    async def test_update_account_rejects_balance(self, store):
        with pytest.raises(ValueError):
            await store.update_account("acct-1", {"credit_balance": 100})

    @pytest.mark.asyncio
    async def test_debit_is_conditional(self, store, mock_db):
        mock_db.accounts.find_one_and_update.return_value = {**ACCOUNT_DOC, "credit_balance": 3}

        account = await store.increment_balance("acct-1", -1)

        assert account.credit_balance == 3
        query, update = mock_db.accounts.find_one_and_update.call_args.args
        assert query == {"account_id": "acct-1", "credit_balance": {"$gte": 1}}
        assert update["$inc"] == {"credit_balance": -1}

    @pytest.mark.asyncio
    async def test_credit_is_unconditional(self, store, mock_db):
        mock_db.accounts.find_one_and_update.return_value = None

        assert await store.increment_balance("acct-1", 5) is None
        query = mock_db.accounts.find_one_and_update.call_args.args[0]
        assert query == {"account_id": "acct-1"}

    @pytest.mark.asyncio
    async def test_delete_account_removes_history(self, store, mock_db):
        await store.delete_account("acct-1")

        mock_db.credit_transactions.delete_many.assert_awaited_once_with({"account_id": "acct-1"})
        mock_db.generations.delete_many.assert_awaited_once_with({"account_id": "acct-1"})
        mock_db.accounts.delete_one.assert_awaited_once_with({"account_id": "acct-1"})
        mock_db.purchases.delete_many.assert_not_called()


class TestErrorMapping:
    """Timeouts and driver errors"""

    @pytest.mark.asyncio
    async def test_timeout_becomes_network_error(self, store, mock_db):
        mock_db.accounts.find_one.side_effect = asyncio.TimeoutError()

        with pytest.raises(NetworkError) as exc_info:
            await store.get_account("acct-1")

        assert exc_info.value.retryable is True
        assert exc_info.value.operation == "get_account"

    @pytest.mark.asyncio
    async def test_driver_error_becomes_network_error(self, store, mock_db):
        mock_db.accounts.find_one.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(NetworkError):
            await store.get_account("acct-1")

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self, mock_db):
        store = MongoAccountStore(mock_db, timeout_seconds=0.01)

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        mock_db.accounts.find_one.side_effect = slow

        with pytest.raises(NetworkError):
            await store.get_account("acct-1")


class TestLedgerAndPurchases:
    """Append-only collections"""

    @pytest.mark.asyncio
    async def test_duplicate_ledger_entry(self, store, mock_db):
        mock_db.credit_transactions.insert_one.side_effect = DuplicateKeyError("E11000")
        entry = CreditLedgerEntry(
            entry_id="purchase:txn-1", account_id="acct-1", amount=10,
            kind=CreditKind.PURCHASE, description="Purchased Starter Pack"
        )

        with pytest.raises(DuplicateLedgerEntry):
            await store.append_ledger_entry(entry)

    @pytest.mark.asyncio
    async def test_duplicate_purchase(self, store, mock_db):
        mock_db.purchases.insert_one.side_effect = DuplicateKeyError("E11000")
        record = PurchaseRecord(
            purchase_id="p-1", account_id="acct-1", product_id="com.nailapp.credits.starter",
            credits_granted=10, price_amount="2.99", currency="USD", vendor_transaction_id="txn-1"
        )

        with pytest.raises(DuplicatePurchase):
            await store.insert_purchase(record)

    @pytest.mark.asyncio
    async def test_list_ledger_newest_first(self, store, mock_db):
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[{
            "entry_id": "e-1", "account_id": "acct-1", "amount": -1,
            "kind": "consumption", "description": "design",
            "timestamp": "2026-01-23T16:05:00+00:00"
        }])
        mock_db.credit_transactions.find = MagicMock(return_value=cursor)

        entries = await store.list_ledger("acct-1", limit=10)

        assert entries[0].kind is CreditKind.CONSUMPTION
        cursor.sort.assert_called_once_with("timestamp", -1)
        cursor.limit.assert_called_once_with(10)

    @pytest.mark.asyncio
    async def test_sum_ledger(self, store, mock_db):
        aggregation = MagicMock()
        aggregation.to_list = AsyncMock(return_value=[{"_id": None, "total": 7}])
        mock_db.credit_transactions.aggregate = MagicMock(return_value=aggregation)

        assert await store.sum_ledger("acct-1") == 7


class TestFreeCreditClaims:
    """claim_free_credit"""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, store, mock_db):
        mock_db.free_credit_claims.update_one.return_value = SimpleNamespace(upserted_id="oid")

        assert await store.claim_free_credit("device_1_abcd", "member-1") is True

    @pytest.mark.asyncio
    async def test_repeat_claim_by_same_account(self, store, mock_db):
        mock_db.free_credit_claims.update_one.return_value = SimpleNamespace(upserted_id=None)
        mock_db.free_credit_claims.find_one.return_value = {"installation_id": "device_1_abcd", "account_id": "member-1"}

        assert await store.claim_free_credit("device_1_abcd", "member-1") is True

    @pytest.mark.asyncio
    async def test_claim_by_other_account(self, store, mock_db):
        mock_db.free_credit_claims.update_one.side_effect = DuplicateKeyError("E11000")
        mock_db.free_credit_claims.find_one.return_value = {"installation_id": "device_1_abcd", "account_id": "member-1"}

        assert await store.claim_free_credit("device_1_abcd", "member-2") is False


GENERATION_DOC = {
    "generation_id": "gen-1",
    "account_id": "member-1",
    "mode": "base",
    "image_path": "users/member-1/generations/gen-1.jpg",
    "credits_used": 1,
    "template_name": "french",
    "created_at": "2026-01-23T16:05:00+00:00"
}


class TestGenerations:
    """Saved design records"""

    @pytest.mark.asyncio
    async def test_list_generations_newest_first(self, store, mock_db):
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[GENERATION_DOC])
        mock_db.generations.find = MagicMock(return_value=cursor)

        records = await store.list_generations("member-1", limit=5)

        assert [r.generation_id for r in records] == ["gen-1"]
        assert mock_db.generations.find.call_args.args[0] == {"account_id": "member-1"}
        cursor.sort.assert_called_once_with("created_at", -1)

    @pytest.mark.asyncio
    async def test_delete_generation_scoped_to_account(self, store, mock_db):
        mock_db.generations.find_one_and_delete.return_value = GENERATION_DOC

        record = await store.delete_generation("member-1", "gen-1")

        assert record.image_path == "users/member-1/generations/gen-1.jpg"
        query = mock_db.generations.find_one_and_delete.call_args.args[0]
        assert query == {"account_id": "member-1", "generation_id": "gen-1"}

    @pytest.mark.asyncio
    async def test_delete_missing_generation(self, store, mock_db):
        mock_db.generations.find_one_and_delete.return_value = None

        assert await store.delete_generation("member-1", "gen-404") is None
