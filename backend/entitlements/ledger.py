"""
Credit Ledger Writer

The only code path that changes an account balance. Each change is an
atomic conditional increment followed by exactly one ledger entry, so
credit_balance always equals the sum of the account's ledger amounts.

If the ledger write fails after the increment, the increment is reversed
before the error is raised.
"""

import logging
import uuid
from typing import Optional

from .errors import AccountNotFound, DuplicateLedgerEntry, InsufficientCredits, NetworkError
from .models import Account, CreditKind, CreditLedgerEntry

logger = logging.getLogger(__name__)


class CreditLedger:
    """Pairs balance changes with immutable ledger entries."""

    def __init__(self, store):
        self.store = store

    async def apply(
        self,
        account_id: str,
        delta: int,
        kind: CreditKind,
        description: str,
        entry_id: Optional[str] = None
    ) -> Account:
        """
        Apply a signed balance change and record it.

        Args:
            account_id: Account to change
            delta: Signed credit amount, non-zero
            kind: Ledger entry kind
            description: Human readable reason
            entry_id: Deterministic id for idempotent operations; random if omitted

        Raises:
            InsufficientCredits: debit would make the balance negative
            DuplicateLedgerEntry: entry_id was already applied
            AccountNotFound: no such account
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValueError(f"delta must be a non-zero integer, got {delta!r}")
        kind = CreditKind(kind)
        entry_id = entry_id or str(uuid.uuid4())

        if await self.store.get_ledger_entry(entry_id):
            raise DuplicateLedgerEntry(entry_id)

        updated = await self.store.increment_balance(account_id, delta)
        if updated is None:
            updated = await self._retry_increment(account_id, delta)

        entry = CreditLedgerEntry(
            entry_id=entry_id,
            account_id=account_id,
            amount=delta,
            kind=kind,
            description=description
        )

        try:
            await self.store.append_ledger_entry(entry)
        except DuplicateLedgerEntry:
            await self._compensate(account_id, delta, entry_id)
            raise
        except NetworkError:
            # A timed-out insert may still have been written
            if await self.store.get_ledger_entry(entry_id):
                logger.info(f"Ledger entry {entry_id} was written despite the network error")
                return updated
            await self._compensate(account_id, delta, entry_id)
            raise

        logger.info(
            f"Applied {delta:+d} credits to {account_id} "
            f"(kind={kind.value}, balance={updated.credit_balance})"
        )
        return updated

    async def _retry_increment(self, account_id: str, delta: int) -> Account:
        """Distinguish a missing account from a failed debit, retrying once after a race."""
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        if account.credit_balance + delta < 0:
            raise InsufficientCredits(required=-delta, available=account.credit_balance)

        logger.warning(f"Balance changed during update for {account_id}, retrying...")
        updated = await self.store.increment_balance(account_id, delta)
        if updated is None:
            current = await self.store.get_account(account_id)
            available = current.credit_balance if current else 0
            raise InsufficientCredits(required=-delta, available=available)
        return updated

    async def _compensate(self, account_id: str, delta: int, entry_id: str) -> None:
        reverted = await self.store.increment_balance(account_id, -delta)
        if reverted is None:
            logger.error(
                f"Could not reverse {delta:+d} on {account_id} after ledger entry "
                f"{entry_id} failed; balance and ledger differ"
            )
        else:
            logger.warning(f"Reversed {delta:+d} on {account_id} after ledger entry {entry_id} failed")

    async def balance_matches_ledger(self, account_id: str) -> bool:
        """Audit check: stored balance equals the ledger sum."""
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account.credit_balance == await self.store.sum_ledger(account_id)
