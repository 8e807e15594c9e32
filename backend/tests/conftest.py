"""
Shared fixtures: in-memory stand-ins for the document store, the auth
provider, the receipt client and asset storage.

The fakes follow the same method contracts as MongoAccountStore,
MongoAuthProvider, RevenueCatReceiptClient and GridFSAssetStorage,
including the duplicate and conflict errors they raise.
"""

import sys
import uuid
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from entitlements.errors import (
    AccountConflict,
    DuplicateLedgerEntry,
    DuplicatePurchase,
    EmailAlreadyInUse,
    InvalidCredentials,
)
from entitlements.identity_store import LocalIdentityStore, MemoryBackend
from entitlements.ledger import CreditLedger
from entitlements.models import AuthIdentity, VerificationResult, VerificationStatus
from entitlements.reconciler import EntitlementReconciler


class FakeAccountStore:
    """In-memory account store. `failures` maps a method name to an error raised once."""

    def __init__(self):
        self.accounts = {}
        self.ledger = []
        self.purchases = {}
        self.claims = {}
        self.generations = []
        self.failures = {}

    def _maybe_fail(self, operation):
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    async def get_account(self, account_id):
        self._maybe_fail("get_account")
        account = self.accounts.get(account_id)
        return account.model_copy() if account else None

    async def find_guest_account(self, installation_id):
        self._maybe_fail("find_guest_account")
        for account in self.accounts.values():
            if account.is_guest and account.linked_installation_id == installation_id:
                return account.model_copy()
        return None

    async def create_account(self, account):
        self._maybe_fail("create_account")
        if account.account_id not in self.accounts:
            if account.is_guest:
                for other in self.accounts.values():
                    if other.is_guest and other.linked_installation_id == account.linked_installation_id:
                        raise AccountConflict(account.linked_installation_id)
            self.accounts[account.account_id] = account.model_copy()
        return self.accounts[account.account_id].model_copy()

    async def update_account(self, account_id, fields):
        if "credit_balance" in fields:
            raise ValueError("credit_balance cannot be updated directly")
        account = self.accounts.get(account_id)
        if account is None:
            return None
        self.accounts[account_id] = account.model_copy(update=fields)
        return self.accounts[account_id].model_copy()

    async def increment_balance(self, account_id, delta):
        self._maybe_fail("increment_balance")
        account = self.accounts.get(account_id)
        if account is None or account.credit_balance + delta < 0:
            return None
        self.accounts[account_id] = account.model_copy(update={"credit_balance": account.credit_balance + delta})
        return self.accounts[account_id].model_copy()

    async def delete_account(self, account_id):
        self.ledger = [e for e in self.ledger if e.account_id != account_id]
        self.generations = [g for g in self.generations if g.account_id != account_id]
        self.accounts.pop(account_id, None)

    async def append_ledger_entry(self, entry):
        self._maybe_fail("append_ledger_entry")
        if any(e.entry_id == entry.entry_id for e in self.ledger):
            raise DuplicateLedgerEntry(entry.entry_id)
        self.ledger.append(entry)

    async def get_ledger_entry(self, entry_id):
        for entry in self.ledger:
            if entry.entry_id == entry_id:
                return entry
        return None

    async def list_ledger(self, account_id, limit=50):
        entries = [e for e in self.ledger if e.account_id == account_id]
        return list(reversed(entries))[:limit]

    async def sum_ledger(self, account_id):
        return sum(e.amount for e in self.ledger if e.account_id == account_id)

    async def get_purchase(self, vendor_transaction_id):
        return self.purchases.get(vendor_transaction_id)

    async def insert_purchase(self, record):
        self._maybe_fail("insert_purchase")
        if record.vendor_transaction_id in self.purchases:
            raise DuplicatePurchase(record.vendor_transaction_id)
        self.purchases[record.vendor_transaction_id] = record

    async def list_purchases(self, account_id, limit=50):
        return [p for p in self.purchases.values() if p.account_id == account_id][:limit]

    async def claim_free_credit(self, installation_id, account_id):
        claimant = self.claims.setdefault(installation_id, account_id)
        return claimant == account_id

    async def save_generation(self, record):
        self._maybe_fail("save_generation")
        self.generations.append(record)

    async def list_generations(self, account_id, limit=50):
        return [g for g in self.generations if g.account_id == account_id][:limit]

    async def delete_generation(self, account_id, generation_id):
        for record in self.generations:
            if record.account_id == account_id and record.generation_id == generation_id:
                self.generations.remove(record)
                return record
        return None

    def entries_for(self, account_id):
        return [e for e in self.ledger if e.account_id == account_id]


class FakeAuthProvider:
    """Auth provider with email/password users kept in a dict."""

    def __init__(self):
        self.users = {}
        self.current = None
        self.deleted = []

    def current_identity(self):
        return self.current

    async def sign_up(self, email, password, display_name=None):
        if email in self.users:
            raise EmailAlreadyInUse()
        identity = AuthIdentity(uid=f"user-{uuid.uuid4().hex[:8]}", email=email, display_name=display_name)
        self.users[email] = (password, identity)
        self.current = identity
        return identity

    async def sign_in(self, email, password):
        stored = self.users.get(email)
        if not stored or stored[0] != password:
            raise InvalidCredentials()
        self.current = stored[1]
        return self.current

    async def sign_in_anonymously(self):
        if self.current and self.current.is_anonymous:
            return self.current
        self.current = AuthIdentity(uid=f"anon-{uuid.uuid4().hex[:8]}", is_anonymous=True)
        return self.current

    def sign_out(self):
        self.current = None

    async def delete(self, uid):
        self.deleted.append(uid)
        self.users = {k: v for k, v in self.users.items() if v[1].uid != uid}
        if self.current and self.current.uid == uid:
            self.current = None


class FakeReceiptClient:
    """Receipt client answering from a dict of vendor transaction id -> status."""

    def __init__(self):
        self.statuses = {}
        self.transactions = []
        self.verify_calls = 0

    async def verify(self, app_user_id, receipt):
        self.verify_calls += 1
        status = self.statuses.get(receipt.vendor_transaction_id, VerificationStatus.VERIFIED)
        return VerificationResult(
            status=status,
            vendor_transaction_id=receipt.vendor_transaction_id,
            product_id=receipt.product_id,
            price_amount=receipt.price_amount,
            currency=receipt.currency,
            reason=None if status is VerificationStatus.VERIFIED else "rejected"
        )

    async def list_transactions(self, app_user_id):
        return [
            VerificationResult(
                status=VerificationStatus.VERIFIED,
                vendor_transaction_id=transaction_id,
                product_id=product_id,
                price_amount=Decimal("0")
            )
            for transaction_id, product_id in self.transactions
        ]


class FakeAssetStorage:
    def __init__(self):
        self.files = {}
        self.fail_delete = False

    async def upload(self, path, data, content_type):
        self.files[path] = (data, content_type)
        return path

    async def list(self, prefix):
        return [path for path in self.files if path.startswith(prefix)]

    async def delete(self, path):
        return 1 if self.files.pop(path, None) is not None else 0

    async def delete_prefix(self, prefix):
        if self.fail_delete:
            raise RuntimeError("storage unavailable")
        doomed = [path for path in self.files if path.startswith(prefix)]
        for path in doomed:
            del self.files[path]
        return len(doomed)


@pytest.fixture
def identity_store():
    return LocalIdentityStore(MemoryBackend())


@pytest.fixture
def account_store():
    return FakeAccountStore()


@pytest.fixture
def auth_provider():
    return FakeAuthProvider()


@pytest.fixture
def asset_storage():
    return FakeAssetStorage()


@pytest.fixture
def receipt_client():
    return FakeReceiptClient()


@pytest.fixture
def ledger(account_store):
    return CreditLedger(account_store)


@pytest.fixture
def reconciler(identity_store, account_store, auth_provider, asset_storage):
    return EntitlementReconciler(identity_store, account_store, auth_provider, asset_storage=asset_storage)
