"""
Purchase Verifier

Verifies credit pack receipts and credits the signed-in account.

Idempotency:
- A vendor transaction id is credited at most once. The purchase ledger
  entry id is derived from it, and purchase records are unique on it.
- A pending receipt changes nothing and can be retried later.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from .config import CREDIT_PACKS
from .errors import (
    AuthenticationRequired,
    DuplicateLedgerEntry,
    DuplicatePurchase,
    PurchasePending,
    VerificationFailed,
)
from .models import (
    Account,
    CreditKind,
    CreditPack,
    PurchaseReceipt,
    PurchaseRecord,
    VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


def available_packs() -> List[CreditPack]:
    return [CreditPack(pack_id=pack_id, **pack) for pack_id, pack in CREDIT_PACKS.items()]


def pack_for_product(product_id: str) -> Optional[CreditPack]:
    for pack in available_packs():
        if pack.product_id == product_id:
            return pack
    return None


class PurchaseVerifier:
    """Receipt verification and purchase crediting."""

    def __init__(self, reconciler, receipt_client):
        self.reconciler = reconciler
        self.receipt_client = receipt_client

    @property
    def account_store(self):
        return self.reconciler.account_store

    def _signed_in_account(self) -> Account:
        account = self.reconciler.current_account
        if account is None or account.is_guest:
            raise AuthenticationRequired()
        return account

    async def verify_and_credit(self, receipt: PurchaseReceipt, expected_pack: CreditPack) -> PurchaseRecord:
        """
        Verify a receipt and credit the pack to the signed-in account.

        Raises:
            AuthenticationRequired: no signed-in account (checked before verification)
            DuplicatePurchase: transaction already credited
            PurchasePending: store has not settled the transaction yet
            VerificationFailed: receipt rejected or for a different product
        """
        account = self._signed_in_account()
        transaction_id = receipt.vendor_transaction_id

        if await self.account_store.get_purchase(transaction_id):
            logger.info(f"Transaction {transaction_id} already credited, skipping")
            raise DuplicatePurchase(transaction_id)

        result = await self.receipt_client.verify(account.account_id, receipt)

        if result.status is VerificationStatus.PENDING:
            logger.info(f"Transaction {transaction_id} pending")
            raise PurchasePending(transaction_id)
        if result.status is not VerificationStatus.VERIFIED:
            raise VerificationFailed(result.reason or "receipt rejected", transaction_id)
        if result.product_id and result.product_id != expected_pack.product_id:
            raise VerificationFailed(
                f"product {result.product_id} does not match pack {expected_pack.pack_id}",
                transaction_id
            )

        return await self._credit(account.account_id, result, expected_pack, is_restored=False)

    async def restore_purchases(self) -> List[PurchaseRecord]:
        """Credit verified store transactions that have no purchase record yet."""
        account = self._signed_in_account()
        restored = []

        for result in await self.receipt_client.list_transactions(account.account_id):
            if result.status is not VerificationStatus.VERIFIED:
                continue
            pack = pack_for_product(result.product_id)
            if pack is None:
                logger.warning(f"Skipping restore of unknown product {result.product_id}")
                continue
            if await self.account_store.get_purchase(result.vendor_transaction_id):
                continue
            restored.append(await self._credit(account.account_id, result, pack, is_restored=True))

        logger.info(f"Restored {len(restored)} purchases for {account.account_id}")
        return restored

    async def _credit(self, account_id: str, result: VerificationResult,
                      pack: CreditPack, is_restored: bool) -> PurchaseRecord:
        transaction_id = result.vendor_transaction_id

        try:
            await self.reconciler.adjust_balance(
                account_id,
                pack.credits,
                CreditKind.PURCHASE,
                f"Purchased {pack.name}",
                entry_id=f"purchase:{transaction_id}"
            )
        except DuplicateLedgerEntry:
            if await self.account_store.get_purchase(transaction_id):
                raise DuplicatePurchase(transaction_id)
            # Credited by an earlier attempt that failed before the record was written
            logger.warning(f"Completing purchase record for credited transaction {transaction_id}")

        record = PurchaseRecord(
            purchase_id=str(uuid.uuid4()),
            account_id=account_id,
            product_id=pack.product_id,
            credits_granted=pack.credits,
            price_amount=result.price_amount or Decimal(str(pack.price_usd)),
            currency=result.currency,
            vendor_transaction_id=transaction_id,
            is_restored=is_restored
        )
        await self.account_store.insert_purchase(record)

        logger.info(f"Credited {pack.credits} credits to {account_id} for transaction {transaction_id}")
        return record
