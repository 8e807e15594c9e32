"""
Entitlements API Route Tests

Tests for:
- GET /api/entitlements/packs
- GET /api/entitlements/accounts/{id} (+ /ledger, /purchases, /generations)
- DELETE /api/entitlements/accounts/{id}/generations/{generation_id}
- POST /api/entitlements/admin/credit

Requests go through httpx.ASGITransport with the database dependency
replaced by a mocked Motor database.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from pymongo.errors import ServerSelectionTimeoutError

from database import get_db
from entitlements.models import AuthIdentity
from entitlements.routes import get_asset_storage
from server import app
from utils.auth import create_token

ACCOUNT_DOC = {
    "account_id": "member-1",
    "email": "ana@example.com",
    "display_name": "Ana",
    "credit_balance": 4,
    "is_guest": False,
    "linked_installation_id": "device_1_abcd",
    "created_at": "2026-01-23T16:05:00+00:00"
}


def _headers(uid="member-1", is_admin=False):
    token = create_token(AuthIdentity(uid=uid, email=f"{uid}@example.com", is_admin=is_admin))
    return {"Authorization": f"Bearer {token}"}


def _cursor(docs):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    return cursor


@pytest.fixture
def mock_db():
    db = AsyncMock()
    app.dependency_overrides[get_db] = lambda: db
    yield db
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestCatalog:
    """Credit pack catalog"""

    @pytest.mark.asyncio
    async def test_get_packs(self, client):
        async with client:
            response = await client.get("/api/entitlements/packs")

        assert response.status_code == 200
        data = response.json()
        assert data["currency"] == "USD"
        assert {pack["pack_id"] for pack in data["packs"]} == {"starter", "popular", "pro"}


class TestAccountAccess:
    """Ownership checks"""

    @pytest.mark.asyncio
    async def test_own_account(self, client, mock_db):
        mock_db.accounts.find_one.return_value = ACCOUNT_DOC

        async with client:
            response = await client.get("/api/entitlements/accounts/member-1", headers=_headers())

        assert response.status_code == 200
        assert response.json()["credit_balance"] == 4

    @pytest.mark.asyncio
    async def test_other_account_forbidden(self, client, mock_db):
        async with client:
            response = await client.get("/api/entitlements/accounts/member-2", headers=_headers())

        assert response.status_code == 403
        mock_db.accounts.find_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_admin_reads_any_account(self, client, mock_db):
        mock_db.accounts.find_one.return_value = ACCOUNT_DOC

        async with client:
            response = await client.get(
                "/api/entitlements/accounts/member-1",
                headers=_headers("admin-1", is_admin=True)
            )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_requires_token(self, client, mock_db):
        async with client:
            response = await client.get("/api/entitlements/accounts/member-1")

        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_missing_account(self, client, mock_db):
        mock_db.accounts.find_one.return_value = None

        async with client:
            response = await client.get("/api/entitlements/accounts/member-1", headers=_headers())

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "ACCOUNT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_store_unavailable(self, client, mock_db):
        mock_db.accounts.find_one.side_effect = ServerSelectionTimeoutError("no servers")

        async with client:
            response = await client.get("/api/entitlements/accounts/member-1", headers=_headers())

        assert response.status_code == 503
        assert response.json()["detail"]["retryable"] is True


class TestHistory:
    """Ledger and purchase history"""

    @pytest.mark.asyncio
    async def test_ledger(self, client, mock_db):
        mock_db.credit_transactions.find = MagicMock(return_value=_cursor([{
            "entry_id": "e-1", "account_id": "member-1", "amount": 10,
            "kind": "purchase", "description": "Purchased Starter Pack",
            "timestamp": "2026-01-23T16:05:00+00:00"
        }]))

        async with client:
            response = await client.get("/api/entitlements/accounts/member-1/ledger?limit=5", headers=_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["entries"][0]["kind"] == "purchase"

    @pytest.mark.asyncio
    async def test_purchases(self, client, mock_db):
        mock_db.purchases.find = MagicMock(return_value=_cursor([{
            "purchase_id": "p-1", "account_id": "member-1",
            "product_id": "com.nailapp.credits.starter", "credits_granted": 10,
            "price_amount": "2.99", "currency": "USD",
            "timestamp": "2026-01-23T16:05:00+00:00",
            "vendor_transaction_id": "txn-1", "is_restored": False
        }]))

        async with client:
            response = await client.get("/api/entitlements/accounts/member-1/purchases", headers=_headers())

        assert response.status_code == 200
        assert response.json()["purchases"][0]["vendor_transaction_id"] == "txn-1"


GENERATION_DOC = {
    "generation_id": "gen-1",
    "account_id": "member-1",
    "mode": "advanced",
    "image_path": "users/member-1/generations/gen-1.jpg",
    "credits_used": 5,
    "template_name": None,
    "created_at": "2026-01-23T16:05:00+00:00"
}


class TestSavedDesigns:
    """Generation history and deletion"""

    @pytest.mark.asyncio
    async def test_list_generations(self, client, mock_db):
        mock_db.generations.find = MagicMock(return_value=_cursor([GENERATION_DOC]))

        async with client:
            response = await client.get("/api/entitlements/accounts/member-1/generations", headers=_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["generations"][0]["mode"] == "advanced"

    @pytest.mark.asyncio
    async def test_delete_generation_removes_image(self, client, mock_db, asset_storage):
        app.dependency_overrides[get_asset_storage] = lambda: asset_storage
        await asset_storage.upload(GENERATION_DOC["image_path"], b"img", "image/jpeg")
        mock_db.generations.find_one_and_delete.return_value = GENERATION_DOC

        async with client:
            response = await client.delete(
                "/api/entitlements/accounts/member-1/generations/gen-1",
                headers=_headers()
            )

        assert response.status_code == 200
        assert response.json() == {"success": True, "generation_id": "gen-1"}
        assert asset_storage.files == {}

    @pytest.mark.asyncio
    async def test_delete_unknown_generation(self, client, mock_db, asset_storage):
        app.dependency_overrides[get_asset_storage] = lambda: asset_storage
        mock_db.generations.find_one_and_delete.return_value = None

        async with client:
            response = await client.delete(
                "/api/entitlements/accounts/member-1/generations/gen-404",
                headers=_headers()
            )

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "GENERATION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_delete_other_accounts_generation_forbidden(self, client, mock_db, asset_storage):
        app.dependency_overrides[get_asset_storage] = lambda: asset_storage

        async with client:
            response = await client.delete(
                "/api/entitlements/accounts/member-2/generations/gen-1",
                headers=_headers()
            )

        assert response.status_code == 403
        mock_db.generations.find_one_and_delete.assert_not_called()


class TestAdminCredit:
    """POST /api/entitlements/admin/credit"""

    @pytest.mark.asyncio
    async def test_requires_admin(self, client, mock_db):
        async with client:
            response = await client.post(
                "/api/entitlements/admin/credit",
                json={"account_id": "member-1", "credits": 5},
                headers=_headers()
            )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_grants_bonus_through_ledger(self, client, mock_db):
        mock_db.credit_transactions.find_one.return_value = None
        mock_db.accounts.find_one_and_update.return_value = {**ACCOUNT_DOC, "credit_balance": 9}

        async with client:
            response = await client.post(
                "/api/entitlements/admin/credit",
                json={"account_id": "member-1", "credits": 5, "reason": "support refund"},
                headers=_headers("admin-1", is_admin=True)
            )

        assert response.status_code == 200
        assert response.json()["new_balance"] == 9
        entry = mock_db.credit_transactions.insert_one.call_args.args[0]
        assert entry["kind"] == "bonus"
        assert entry["amount"] == 5
        assert entry["description"] == "support refund"

    @pytest.mark.asyncio
    async def test_rejects_non_positive_credits(self, client, mock_db):
        async with client:
            response = await client.post(
                "/api/entitlements/admin/credit",
                json={"account_id": "member-1", "credits": 0},
                headers=_headers("admin-1", is_admin=True)
            )

        assert response.status_code == 422
