"""
RevenueCat Receipt Client

Receipt verification for consumable credit packs through the RevenueCat
REST API v1.

Outcomes:
- verified: the store transaction is listed for the app user
- pending: RevenueCat accepted the receipt but the transaction is not listed yet
- unverified: RevenueCat rejected the receipt (4xx)

Timeouts, transport failures, 429 and 5xx raise NetworkError.

Required Environment Variables:
- REVENUECAT_API_KEY
"""

import logging
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .config import REMOTE_CALL_TIMEOUT_SECONDS, REVENUECAT_CONFIG
from .errors import NetworkError
from .models import PurchaseReceipt, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)


class RevenueCatReceiptClient:
    """Receipt verification through RevenueCat."""

    def __init__(self, api_key: Optional[str] = None,
                 timeout_seconds: float = REMOTE_CALL_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def api_key(self) -> str:
        return self._api_key or os.environ.get("REVENUECAT_API_KEY", "")

    @property
    def api_base(self) -> str:
        return os.environ.get("REVENUECAT_API_BASE", REVENUECAT_CONFIG["api_base"])

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Platform": REVENUECAT_CONFIG["platform"],
            "Content-Type": "application/json"
        }

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.request(method, f"{self.api_base}{path}", headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"RevenueCat {operation} timed out")
            raise NetworkError(operation, e)
        except httpx.TransportError as e:
            logger.error(f"RevenueCat {operation} transport error: {e}")
            raise NetworkError(operation, e)

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"RevenueCat {operation} failed: {response.status_code} {response.text}")
            raise NetworkError(operation, RuntimeError(f"HTTP {response.status_code}"))
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("message") or response.text
        except ValueError:
            return response.text

    @staticmethod
    def _non_subscriptions(payload: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        return (payload.get("subscriber") or {}).get("non_subscriptions") or {}

    async def verify(self, app_user_id: str, receipt: PurchaseReceipt) -> VerificationResult:
        """Post a store receipt and report whether its transaction is verified."""
        if not receipt.fetch_token:
            return VerificationResult(
                status=VerificationStatus.UNVERIFIED,
                vendor_transaction_id=receipt.vendor_transaction_id,
                product_id=receipt.product_id,
                reason="Missing receipt data"
            )

        response = await self._request(
            "revenuecat_verify",
            "POST",
            "/receipts",
            json={
                "app_user_id": app_user_id,
                "fetch_token": receipt.fetch_token,
                "product_id": receipt.product_id,
                "price": str(receipt.price_amount),
                "currency": receipt.currency
            }
        )

        if response.status_code not in (200, 201):
            reason = self._error_message(response)
            logger.warning(f"Receipt {receipt.vendor_transaction_id} rejected: {reason}")
            return VerificationResult(
                status=VerificationStatus.UNVERIFIED,
                vendor_transaction_id=receipt.vendor_transaction_id,
                product_id=receipt.product_id,
                reason=reason
            )

        purchases = self._non_subscriptions(response.json()).get(receipt.product_id, [])
        found = any(p.get("store_transaction_id") == receipt.vendor_transaction_id for p in purchases)

        return VerificationResult(
            status=VerificationStatus.VERIFIED if found else VerificationStatus.PENDING,
            vendor_transaction_id=receipt.vendor_transaction_id,
            product_id=receipt.product_id,
            price_amount=receipt.price_amount,
            currency=receipt.currency
        )

    async def list_transactions(self, app_user_id: str) -> List[VerificationResult]:
        """All consumable transactions RevenueCat knows for the app user."""
        response = await self._request(
            "revenuecat_subscriber",
            "GET",
            f"/subscribers/{quote(app_user_id, safe='')}"
        )
        if response.status_code != 200:
            raise NetworkError(
                "revenuecat_subscriber",
                RuntimeError(f"HTTP {response.status_code}: {self._error_message(response)}")
            )

        results = []
        for product_id, purchases in self._non_subscriptions(response.json()).items():
            for purchase in purchases:
                transaction_id = purchase.get("store_transaction_id")
                if not transaction_id:
                    continue
                results.append(VerificationResult(
                    status=VerificationStatus.VERIFIED,
                    vendor_transaction_id=transaction_id,
                    product_id=product_id,
                    price_amount=Decimal("0")
                ))
        return results
