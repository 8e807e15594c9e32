"""
Entitlements API Routes

Endpoints:
- GET /api/entitlements/packs - Credit pack catalog
- GET /api/entitlements/accounts/{account_id} - Account and balance
- GET /api/entitlements/accounts/{account_id}/ledger - Credit history
- GET /api/entitlements/accounts/{account_id}/purchases - Purchase history
- GET /api/entitlements/accounts/{account_id}/generations - Saved designs
- DELETE /api/entitlements/accounts/{account_id}/generations/{generation_id} - Delete a saved design
- POST /api/entitlements/admin/credit - Grant bonus credits (admin)
"""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from database import get_db
from utils.auth import get_current_identity, get_admin_identity

from .account_store import MongoAccountStore
from .asset_storage import GridFSAssetStorage
from .config import LEDGER_PAGE_SIZE
from .errors import (
    AccountConflict,
    AccountNotFound,
    AuthenticationRequired,
    AuthError,
    DuplicateLedgerEntry,
    DuplicatePurchase,
    EntitlementError,
    GenerationNotFound,
    InsufficientCredits,
    NetworkError,
)
from .generation import delete_saved_design
from .ledger import CreditLedger
from .models import AdminCreditRequest, AuthIdentity, CreditKind
from .purchase_verifier import available_packs

logger = logging.getLogger(__name__)

entitlements_router = APIRouter(prefix="/entitlements", tags=["Entitlements"])


def _status_for(error: EntitlementError) -> int:
    if isinstance(error, InsufficientCredits):
        return 402
    if isinstance(error, (AuthenticationRequired, AuthError)):
        return 401
    if isinstance(error, (AccountNotFound, GenerationNotFound)):
        return 404
    if isinstance(error, (DuplicatePurchase, DuplicateLedgerEntry, AccountConflict)):
        return 409
    if isinstance(error, NetworkError):
        return 503
    return 400


def _http_error(error: EntitlementError) -> HTTPException:
    return HTTPException(status_code=_status_for(error), detail=error.to_dict())


def _require_access(identity: AuthIdentity, account_id: str) -> None:
    if identity.uid != account_id and not identity.is_admin:
        raise HTTPException(status_code=403, detail="Not allowed to access this account")


def get_asset_storage(db=Depends(get_db)):
    return GridFSAssetStorage(db)


# ==================== CATALOG ====================

@entitlements_router.get("/packs")
async def get_credit_packs():
    """Available credit packs with pricing and credit amounts."""
    return {
        "packs": [pack.model_dump() for pack in available_packs()],
        "currency": "USD"
    }


# ==================== ACCOUNT ENDPOINTS ====================

@entitlements_router.get("/accounts/{account_id}")
async def get_account(
    account_id: str,
    identity: AuthIdentity = Depends(get_current_identity),
    db=Depends(get_db)
):
    _require_access(identity, account_id)
    try:
        account = await MongoAccountStore(db).get_account(account_id)
    except EntitlementError as e:
        raise _http_error(e)
    if not account:
        raise _http_error(AccountNotFound(account_id))
    return account.model_dump(mode="json")


@entitlements_router.get("/accounts/{account_id}/ledger")
async def get_ledger(
    account_id: str,
    limit: int = Query(LEDGER_PAGE_SIZE, ge=1, le=200),
    identity: AuthIdentity = Depends(get_current_identity),
    db=Depends(get_db)
):
    """Credit history, newest first."""
    _require_access(identity, account_id)
    try:
        entries = await MongoAccountStore(db).list_ledger(account_id, limit)
    except EntitlementError as e:
        raise _http_error(e)
    return {
        "entries": [entry.model_dump(mode="json") for entry in entries],
        "count": len(entries)
    }


@entitlements_router.get("/accounts/{account_id}/purchases")
async def get_purchases(
    account_id: str,
    limit: int = Query(LEDGER_PAGE_SIZE, ge=1, le=200),
    identity: AuthIdentity = Depends(get_current_identity),
    db=Depends(get_db)
):
    _require_access(identity, account_id)
    try:
        purchases = await MongoAccountStore(db).list_purchases(account_id, limit)
    except EntitlementError as e:
        raise _http_error(e)
    return {
        "purchases": [record.model_dump(mode="json") for record in purchases],
        "count": len(purchases)
    }


@entitlements_router.get("/accounts/{account_id}/generations")
async def get_generations(
    account_id: str,
    limit: int = Query(LEDGER_PAGE_SIZE, ge=1, le=200),
    identity: AuthIdentity = Depends(get_current_identity),
    db=Depends(get_db)
):
    """Saved designs, newest first."""
    _require_access(identity, account_id)
    try:
        records = await MongoAccountStore(db).list_generations(account_id, limit)
    except EntitlementError as e:
        raise _http_error(e)
    return {
        "generations": [record.model_dump(mode="json") for record in records],
        "count": len(records)
    }


@entitlements_router.delete("/accounts/{account_id}/generations/{generation_id}")
async def delete_generation(
    account_id: str,
    generation_id: str,
    identity: AuthIdentity = Depends(get_current_identity),
    db=Depends(get_db),
    asset_storage=Depends(get_asset_storage)
):
    """Delete a saved design and its stored image."""
    _require_access(identity, account_id)
    try:
        record = await delete_saved_design(MongoAccountStore(db), asset_storage, account_id, generation_id)
    except EntitlementError as e:
        raise _http_error(e)
    return {"success": True, "generation_id": record.generation_id}


# ==================== ADMIN ====================

@entitlements_router.post("/admin/credit")
async def admin_credit(
    request: AdminCreditRequest,
    admin: AuthIdentity = Depends(get_admin_identity),
    db=Depends(get_db)
):
    """
    Grant bonus credits to an account.

    Written through the ledger like every other balance change.
    """
    ledger = CreditLedger(MongoAccountStore(db))
    try:
        account = await ledger.apply(
            request.account_id,
            request.credits,
            CreditKind.BONUS,
            request.reason,
            entry_id=f"admin:{uuid.uuid4()}"
        )
    except EntitlementError as e:
        raise _http_error(e)

    logger.info(f"Admin {admin.uid} granted {request.credits} credits to {request.account_id}")
    return {
        "success": True,
        "account_id": account.account_id,
        "credits_added": request.credits,
        "new_balance": account.credit_balance
    }
