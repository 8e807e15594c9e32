"""
Remote Account Store

MongoDB access for accounts, the credit ledger, purchase records,
free credit claims and generation records.

Every call is bounded by REMOTE_CALL_TIMEOUT_SECONDS. Timeouts and driver
errors are raised as NetworkError so callers can retry; duplicate keys are
mapped to the typed duplicate errors.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import COLLECTIONS, LEDGER_PAGE_SIZE, REMOTE_CALL_TIMEOUT_SECONDS
from .errors import AccountConflict, DuplicateLedgerEntry, DuplicatePurchase, NetworkError
from .models import Account, CreditLedgerEntry, GenerationRecord, PurchaseRecord
from .remote import bounded_call

logger = logging.getLogger(__name__)


class MongoAccountStore:
    """Document store for accounts and their append-only history."""

    def __init__(self, db, timeout_seconds: float = REMOTE_CALL_TIMEOUT_SECONDS):
        self.db = db
        self.timeout_seconds = timeout_seconds
        self.accounts = getattr(db, COLLECTIONS["accounts"])
        self.ledger = getattr(db, COLLECTIONS["ledger"])
        self.purchases = getattr(db, COLLECTIONS["purchases"])
        self.free_credit_claims = getattr(db, COLLECTIONS["free_credit_claims"])
        self.generations = getattr(db, COLLECTIONS["generations"])

    async def _call(self, operation: str, awaitable):
        return await bounded_call(operation, awaitable, self.timeout_seconds)

    # ==================== ACCOUNTS ====================

    async def get_account(self, account_id: str) -> Optional[Account]:
        doc = await self._call(
            "get_account",
            self.accounts.find_one({"account_id": account_id}, {"_id": 0})
        )
        return Account.model_validate(doc) if doc else None

    async def find_guest_account(self, installation_id: str) -> Optional[Account]:
        doc = await self._call(
            "find_guest_account",
            self.accounts.find_one(
                {"linked_installation_id": installation_id, "is_guest": True},
                {"_id": 0}
            )
        )
        return Account.model_validate(doc) if doc else None

    async def create_account(self, account: Account) -> Account:
        """
        Insert the account if no document with its id exists.

        Existing documents are returned untouched. A second guest account for
        the same installation raises AccountConflict.
        """
        doc = account.model_dump(mode="json")
        doc["updated_at"] = doc["created_at"]
        try:
            await self._call(
                "create_account",
                self.accounts.update_one(
                    {"account_id": account.account_id},
                    {"$setOnInsert": doc},
                    upsert=True
                )
            )
        except DuplicateKeyError:
            raise AccountConflict(account.linked_installation_id or "")

        stored = await self.get_account(account.account_id)
        if stored is None:
            raise NetworkError("create_account", RuntimeError("account missing after upsert"))
        return stored

    async def update_account(self, account_id: str, fields: dict) -> Optional[Account]:
        """Update profile fields. Balance changes go through increment_balance only."""
        if "credit_balance" in fields:
            raise ValueError("credit_balance cannot be updated directly")
        now = datetime.now(timezone.utc).isoformat()
        doc = await self._call(
            "update_account",
            self.accounts.find_one_and_update(
                {"account_id": account_id},
                {"$set": {**fields, "updated_at": now}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        )
        return Account.model_validate(doc) if doc else None

    async def increment_balance(self, account_id: str, delta: int) -> Optional[Account]:
        """
        Atomically add delta to the balance.

        Debits only match while balance >= -delta, so the balance cannot go
        negative under concurrent writers. Returns None when nothing matched.
        """
        query = {"account_id": account_id}
        if delta < 0:
            query["credit_balance"] = {"$gte": -delta}

        doc = await self._call(
            "increment_balance",
            self.accounts.find_one_and_update(
                query,
                {
                    "$inc": {"credit_balance": delta},
                    "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        )
        return Account.model_validate(doc) if doc else None

    async def delete_account(self, account_id: str) -> None:
        """Delete the account with its ledger and generation records."""
        await self._call("delete_ledger", self.ledger.delete_many({"account_id": account_id}))
        await self._call("delete_generations", self.generations.delete_many({"account_id": account_id}))
        await self._call("delete_account", self.accounts.delete_one({"account_id": account_id}))
        logger.info(f"Deleted account {account_id} with ledger and generations")

    # ==================== LEDGER ====================

    async def append_ledger_entry(self, entry: CreditLedgerEntry) -> None:
        try:
            await self._call("append_ledger_entry", self.ledger.insert_one(entry.model_dump(mode="json")))
        except DuplicateKeyError:
            raise DuplicateLedgerEntry(entry.entry_id)

    async def get_ledger_entry(self, entry_id: str) -> Optional[CreditLedgerEntry]:
        doc = await self._call(
            "get_ledger_entry",
            self.ledger.find_one({"entry_id": entry_id}, {"_id": 0})
        )
        return CreditLedgerEntry.model_validate(doc) if doc else None

    async def list_ledger(self, account_id: str, limit: int = LEDGER_PAGE_SIZE) -> List[CreditLedgerEntry]:
        """Recent ledger entries, newest first."""
        cursor = self.ledger.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)
        docs = await self._call("list_ledger", cursor.to_list(length=limit))
        return [CreditLedgerEntry.model_validate(doc) for doc in docs]

    async def sum_ledger(self, account_id: str) -> int:
        pipeline = [
            {"$match": {"account_id": account_id}},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}}
        ]
        result = await self._call("sum_ledger", self.ledger.aggregate(pipeline).to_list(1))
        return int(result[0]["total"]) if result else 0

    # ==================== PURCHASES ====================

    async def get_purchase(self, vendor_transaction_id: str) -> Optional[PurchaseRecord]:
        doc = await self._call(
            "get_purchase",
            self.purchases.find_one({"vendor_transaction_id": vendor_transaction_id}, {"_id": 0})
        )
        return PurchaseRecord.model_validate(doc) if doc else None

    async def insert_purchase(self, record: PurchaseRecord) -> None:
        try:
            await self._call("insert_purchase", self.purchases.insert_one(record.model_dump(mode="json")))
        except DuplicateKeyError:
            raise DuplicatePurchase(record.vendor_transaction_id)

    async def list_purchases(self, account_id: str, limit: int = LEDGER_PAGE_SIZE) -> List[PurchaseRecord]:
        cursor = self.purchases.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)
        docs = await self._call("list_purchases", cursor.to_list(length=limit))
        return [PurchaseRecord.model_validate(doc) for doc in docs]

    # ==================== FREE CREDIT CLAIMS ====================

    async def claim_free_credit(self, installation_id: str, account_id: str) -> bool:
        """
        Record that account_id receives this installation's free credit.

        Returns True for the first claimant and for repeat calls by the same
        account (retries); False when another account already claimed it.
        """
        now = datetime.now(timezone.utc).isoformat()
        try:
            result = await self._call(
                "claim_free_credit",
                self.free_credit_claims.update_one(
                    {"installation_id": installation_id},
                    {"$setOnInsert": {
                        "installation_id": installation_id,
                        "account_id": account_id,
                        "claimed_at": now
                    }},
                    upsert=True
                )
            )
            if result.upserted_id is not None:
                return True
        except DuplicateKeyError:
            pass  # lost the upsert race; the stored claim decides

        existing = await self._call(
            "get_free_credit_claim",
            self.free_credit_claims.find_one({"installation_id": installation_id}, {"_id": 0})
        )
        return bool(existing) and existing.get("account_id") == account_id

    # ==================== GENERATIONS ====================

    async def save_generation(self, record: GenerationRecord) -> None:
        await self._call("save_generation", self.generations.insert_one(record.model_dump(mode="json")))

    async def list_generations(self, account_id: str, limit: int = LEDGER_PAGE_SIZE) -> List[GenerationRecord]:
        cursor = self.generations.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        docs = await self._call("list_generations", cursor.to_list(length=limit))
        return [GenerationRecord.model_validate(doc) for doc in docs]

    async def delete_generation(self, account_id: str, generation_id: str) -> Optional[GenerationRecord]:
        """Remove one of the account's generation records; returns it, or None if absent."""
        doc = await self._call(
            "delete_generation",
            self.generations.find_one_and_delete(
                {"account_id": account_id, "generation_id": generation_id},
                {"_id": 0}
            )
        )
        return GenerationRecord.model_validate(doc) if doc else None
