"""
Account Session

Drives the auth provider and the reconciler together for one installation:
restore on launch, sign up, sign in, sign out and account deletion.

While an operation runs the published state is Loading. A failed restore,
sign-up or sign-in leaves the previous account in place when there was
one; every other failure publishes Failed.
"""

import logging
from typing import Optional

from .account_store import MongoAccountStore
from .auth_provider import MongoAuthProvider
from .generation import GenerationClient, GenerationService
from .identity_store import LocalIdentityStore
from .models import Account, AccountProfile
from .purchase_verifier import PurchaseVerifier
from .receipt_client import RevenueCatReceiptClient
from .reconciler import EntitlementReconciler, Failed, Loading, Ready

logger = logging.getLogger(__name__)


class AccountSession:
    """Account lifecycle for the running installation."""

    def __init__(self, reconciler: EntitlementReconciler, auth_provider,
                 purchase_verifier: Optional[PurchaseVerifier] = None,
                 generation_service: Optional[GenerationService] = None):
        self.reconciler = reconciler
        self.auth = auth_provider
        self.purchases = purchase_verifier
        self.generation = generation_service

    @property
    def account(self) -> Optional[Account]:
        return self.reconciler.current_account

    async def _run(self, operation: str, coroutine, keep_previous: bool = True) -> Account:
        previous = self.reconciler.state
        self.reconciler.set_state(Loading())
        try:
            return await coroutine
        except Exception as e:
            logger.error(f"{operation} failed: {e}")
            if keep_previous and isinstance(previous, Ready):
                self.reconciler.set_state(previous)
            else:
                self.reconciler.set_state(Failed(e))
            raise

    async def restore(self) -> Account:
        """Load the account for the persisted session, or the guest account."""
        return await self._run("restore", self._restore())

    async def _restore(self) -> Account:
        identity = self.auth.current_identity()
        if identity and not identity.is_anonymous:
            logger.info(f"Restoring session for {identity.uid}")
            return await self.reconciler.reconcile_on_sign_in(
                identity.uid,
                AccountProfile(email=identity.email, display_name=identity.display_name)
            )
        return await self.reconciler.materialize_guest_account()

    async def sign_up(self, email: str, password: str, display_name: Optional[str] = None) -> Account:
        return await self._run("sign_up", self._sign_up(email, password, display_name))

    async def _sign_up(self, email: str, password: str, display_name: Optional[str]) -> Account:
        identity = await self.auth.sign_up(email, password, display_name)
        return await self.reconciler.promote_to_account(
            identity.uid,
            AccountProfile(email=identity.email, display_name=identity.display_name)
        )

    async def sign_in(self, email: str, password: str) -> Account:
        return await self._run("sign_in", self._sign_in(email, password))

    async def _sign_in(self, email: str, password: str) -> Account:
        identity = await self.auth.sign_in(email, password)
        return await self.reconciler.reconcile_on_sign_in(
            identity.uid,
            AccountProfile(email=identity.email, display_name=identity.display_name)
        )

    async def sign_out(self) -> Account:
        return await self._run("sign_out", self._sign_out(), keep_previous=False)

    async def _sign_out(self) -> Account:
        self.auth.sign_out()
        return await self.reconciler.reconcile_on_sign_out()

    async def delete_account(self) -> Account:
        return await self._run("delete_account", self.reconciler.delete_account(), keep_previous=False)


def build_session(db, identity_backend, asset_storage=None,
                  jwt_secret: Optional[str] = None,
                  receipt_client=None, generation_client=None) -> AccountSession:
    """Wire an AccountSession from a Motor database and a local key-value backend."""
    identity_store = LocalIdentityStore(identity_backend)
    account_store = MongoAccountStore(db)
    auth_provider = MongoAuthProvider(db, identity_store, jwt_secret=jwt_secret)

    reconciler = EntitlementReconciler(
        identity_store,
        account_store,
        auth_provider,
        asset_storage=asset_storage
    )
    return AccountSession(
        reconciler,
        auth_provider,
        purchase_verifier=PurchaseVerifier(reconciler, receipt_client or RevenueCatReceiptClient()),
        generation_service=GenerationService(
            reconciler,
            generation_client or GenerationClient(),
            asset_storage=asset_storage
        )
    )
