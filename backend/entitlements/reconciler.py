"""
Entitlement Reconciler

Merges local guest credit state with remote accounts across sign-up,
sign-in, sign-out, purchases and consumption.

Guest -> account rules:
- A guest's credits carry over to a new account only while the local
  free-credit latch is unset; the latch is set (and guest credits zeroed)
  only after the remote account exists, so a failed sign-up can be retried.
- Carried credits are debited from the installation's guest account, so
  they move rather than duplicate. A new account never receives more than
  that guest account still holds.
- The free credit reaches at most one account per installation
  (free_credit_claims), whichever sign-up or sign-in path is taken.
- Merge and grant entries have deterministic ids; retrying an operation
  never applies them twice.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .errors import AccountConflict, AuthenticationRequired, DuplicateLedgerEntry
from .ledger import CreditLedger
from .models import Account, AccountProfile, CreditKind

logger = logging.getLogger(__name__)


# ==================== PUBLISHED STATE ====================

@dataclass(frozen=True)
class Uninitialized:
    pass


@dataclass(frozen=True)
class Loading:
    pass


@dataclass(frozen=True)
class Ready:
    account: Account


@dataclass(frozen=True)
class Failed:
    error: Exception


AccountState = Union[Uninitialized, Loading, Ready, Failed]


class EntitlementReconciler:
    """Owns the current account and every balance change."""

    def __init__(self, identity_store, account_store, auth_provider,
                 ledger: Optional[CreditLedger] = None, asset_storage=None):
        self.identity_store = identity_store
        self.account_store = account_store
        self.auth = auth_provider
        self.ledger = ledger or CreditLedger(account_store)
        self.asset_storage = asset_storage
        self.state: AccountState = Uninitialized()
        self._listeners: List[Callable[[AccountState], None]] = []

    # ==================== STATE ====================

    @property
    def current_account(self) -> Optional[Account]:
        if isinstance(self.state, Ready):
            return self.state.account
        return None

    def subscribe(self, listener: Callable[[AccountState], None]) -> Callable[[], None]:
        """Register a state listener; returns an unsubscribe callable."""
        self._listeners.append(listener)
        listener(self.state)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def set_state(self, state: AccountState) -> None:
        self.state = state
        for listener in list(self._listeners):
            listener(state)

    def _ready(self, account: Account) -> Account:
        self.set_state(Ready(account))
        return account

    # ==================== GUEST ====================

    async def materialize_guest_account(self) -> Account:
        """
        Fetch or create the guest account for this installation.

        Idempotent: an existing guest account is returned without a second
        grant. A grant that failed on an earlier launch is completed first.
        """
        installation_id = self.identity_store.get_or_create_installation_id()

        existing = await self.account_store.find_guest_account(installation_id)
        if existing:
            existing = await self._grant_free_credit(existing, installation_id)
            self._mirror_guest_balance(existing)
            return self._ready(existing)

        anonymous = await self.auth.sign_in_anonymously()

        try:
            account = await self.account_store.create_account(Account(
                account_id=anonymous.uid,
                credit_balance=0,
                is_guest=True,
                linked_installation_id=installation_id
            ))
        except AccountConflict:
            # Another launch created the guest account first
            winner = await self.account_store.find_guest_account(installation_id)
            if winner is None:
                raise
            logger.info(f"Guest account for {installation_id} created concurrently, using {winner.account_id}")
            self._mirror_guest_balance(winner)
            return self._ready(winner)

        account = await self._grant_free_credit(account, installation_id)

        logger.info(f"Created guest account {account.account_id} for {installation_id}")
        return self._ready(account)

    async def _grant_free_credit(self, guest: Account, installation_id: str) -> Account:
        """Move the local free credit onto the guest account unless already granted."""
        if self.identity_store.has_consumed_free_credit():
            return guest
        local_credits = self.identity_store.get_local_credits()
        entry_id = f"guest-grant:{installation_id}"
        if local_credits <= 0 or await self.account_store.get_ledger_entry(entry_id):
            return guest

        return await self._apply_once(
            guest.account_id,
            local_credits,
            CreditKind.BONUS,
            "Free credit for new installation",
            entry_id=entry_id
        )

    # ==================== SIGN-UP / SIGN-IN ====================

    async def promote_to_account(self, new_account_id: str, credentials: AccountProfile) -> Account:
        """Create the signed-up account, carrying over guest credits."""
        latch_was_set = self.identity_store.has_consumed_free_credit()
        carry_over = 0 if latch_was_set else self.identity_store.get_local_credits()

        return await self._open_member_account(new_account_id, credentials, carry_over, latch_was_set)

    async def reconcile_on_sign_in(self, existing_account_id: str,
                                   credentials: Optional[AccountProfile] = None) -> Account:
        """
        Load the signed-in account. An existing account keeps its balance;
        a missing one is created with the installation's free credit if still
        available.
        """
        installation_id = self.identity_store.get_or_create_installation_id()

        account = await self.account_store.get_account(existing_account_id)
        if account:
            if account.linked_installation_id != installation_id:
                account = await self.account_store.update_account(
                    existing_account_id,
                    {"linked_installation_id": installation_id}
                ) or account
            return self._ready(account)

        latch_was_set = self.identity_store.has_consumed_free_credit()
        grant = self.identity_store.free_credits_available_for_new_account()
        return await self._open_member_account(
            existing_account_id,
            credentials or AccountProfile(),
            grant,
            latch_was_set
        )

    async def _open_member_account(self, account_id: str, profile: AccountProfile,
                                   initial_credits: int, latch_was_set: bool) -> Account:
        installation_id = self.identity_store.get_or_create_installation_id()

        guest = await self.account_store.find_guest_account(installation_id)
        if guest is not None and initial_credits > guest.credit_balance:
            logger.info(f"Guest {guest.account_id} holds {guest.credit_balance} credits, carrying only those")
            initial_credits = guest.credit_balance

        if initial_credits > 0:
            if not await self.account_store.claim_free_credit(installation_id, account_id):
                logger.info(f"Free credit of {installation_id} already claimed by another account")
                initial_credits = 0

        account = await self.account_store.create_account(Account(
            account_id=account_id,
            email=profile.email,
            display_name=profile.display_name,
            credit_balance=0,
            is_guest=False,
            linked_installation_id=installation_id
        ))

        if initial_credits > 0:
            account = await self._apply_once(
                account_id,
                initial_credits,
                CreditKind.MERGE,
                "Carried over guest credits",
                entry_id=f"merge-in:{account_id}"
            )
            await self._debit_guest_account(installation_id, initial_credits, account_id)

        # Remote work is done; only now consume the latch
        if not latch_was_set:
            self.identity_store.mark_free_credit_consumed()
            self.identity_store.set_local_credits(0)

        logger.info(f"Opened account {account_id} with {account.credit_balance} credits")
        return self._ready(account)

    async def _debit_guest_account(self, installation_id: str, amount: int, member_id: str) -> None:
        guest = await self.account_store.find_guest_account(installation_id)
        if guest is None:
            return
        moved = min(amount, guest.credit_balance)
        if moved <= 0:
            return
        try:
            await self.ledger.apply(
                guest.account_id,
                -moved,
                CreditKind.MERGE,
                f"Credits moved to account {member_id}",
                entry_id=f"merge-out:{member_id}"
            )
        except DuplicateLedgerEntry:
            logger.info(f"Guest credits already moved to {member_id}")

    # ==================== BALANCE ====================

    async def adjust_balance(self, account_id: str, delta: int, kind: CreditKind,
                             description: str, entry_id: Optional[str] = None) -> Account:
        """
        The only way to change a balance. Writes exactly one ledger entry;
        guest balances are mirrored into the local identity store.
        """
        account = await self.ledger.apply(account_id, delta, kind, description, entry_id=entry_id)
        self._mirror_guest_balance(account)

        current = self.current_account
        if current and current.account_id == account.account_id:
            self._ready(account)
        return account

    async def _apply_once(self, account_id: str, delta: int, kind: CreditKind,
                          description: str, entry_id: str) -> Account:
        try:
            return await self.adjust_balance(account_id, delta, kind, description, entry_id=entry_id)
        except DuplicateLedgerEntry:
            logger.info(f"Ledger entry {entry_id} already applied")
            account = await self.account_store.get_account(account_id)
            self._mirror_guest_balance(account)
            return account

    def _mirror_guest_balance(self, account: Account) -> None:
        if not account.is_guest:
            return
        if account.linked_installation_id != self.identity_store.get_or_create_installation_id():
            return
        if self.identity_store.get_local_credits() != account.credit_balance:
            self.identity_store.set_local_credits(account.credit_balance)

    # ==================== SIGN-OUT / DELETE ====================

    async def reconcile_on_sign_out(self) -> Account:
        """Drop the signed-in account and return to this installation's guest account."""
        self.set_state(Uninitialized())
        return await self.materialize_guest_account()

    async def delete_account(self) -> Account:
        """
        Delete the signed-in account and its data, then return to the guest account.

        Stored images are removed best-effort: a failed cleanup is logged and
        the deletion still completes.
        """
        account = self.current_account
        if account is None or account.is_guest:
            raise AuthenticationRequired("Cannot delete guest account")

        await self.account_store.delete_account(account.account_id)

        if self.asset_storage is not None:
            try:
                removed = await self.asset_storage.delete_prefix(f"users/{account.account_id}/")
                logger.info(f"Removed {removed} stored files for {account.account_id}")
            except Exception as e:
                logger.warning(f"Asset cleanup failed for {account.account_id}: {e}")

        await self.auth.delete(account.account_id)
        return await self.reconcile_on_sign_out()
