"""
Design Generation

Client for the remote generation function plus the credit-charged flow
around it.

Credits are deducted before the remote call. A system failure (network,
timeout, bad response, function error) refunds the exact amount with a
bonus entry; the generation model itself is opaque.

Required Environment Variables:
- GENERATION_FUNCTION_URL (HTTPS callable endpoint)
"""

import base64
import binascii
import logging
import os
import uuid
from dataclasses import dataclass
from typing import List, Optional

import httpx

from .config import GENERATION_COSTS, GENERATION_FUNCTION_NAME, GENERATION_TIMEOUT_SECONDS, LEDGER_PAGE_SIZE
from .errors import AuthenticationRequired, EntitlementError, GenerationFailed, GenerationNotFound, NetworkError
from .models import CreditKind, GenerationMode, GenerationRecord

logger = logging.getLogger(__name__)


class GenerationClient:
    """HTTPS callable client: {"data": {...}} in, {"result": {...}} out."""

    def __init__(self, function_url: Optional[str] = None,
                 timeout_seconds: float = GENERATION_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._function_url = function_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def function_url(self) -> str:
        url = self._function_url or os.environ.get("GENERATION_FUNCTION_URL", "")
        if not url:
            raise ValueError("GENERATION_FUNCTION_URL is not configured")
        return url

    async def generate(self, nail_image: bytes, template_image: bytes,
                       mode: GenerationMode, auth_token: Optional[str] = None) -> bytes:
        """Send both images base64-encoded and return the generated image bytes."""
        payload = {
            "data": {
                "nailImageBase64": base64.b64encode(nail_image).decode("ascii"),
                "templateImageBase64": base64.b64encode(template_image).decode("ascii"),
                "mode": GenerationMode(mode).value,
                "requestId": str(uuid.uuid4())
            }
        }
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(self.function_url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise NetworkError(GENERATION_FUNCTION_NAME, e)
        except httpx.TransportError as e:
            raise NetworkError(GENERATION_FUNCTION_NAME, e)

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"Generation function failed: {response.status_code} {response.text}")
            raise NetworkError(GENERATION_FUNCTION_NAME, RuntimeError(f"HTTP {response.status_code}"))

        try:
            body = response.json()
        except ValueError:
            raise GenerationFailed("Invalid response from server")

        if response.status_code != 200:
            message = (body.get("error") or {}).get("message") or response.text
            raise GenerationFailed(f"API Error: {message}")

        result = body.get("result") or {}
        image_base64 = result.get("imageBase64") or result.get("generatedImageBase64")
        if not image_base64:
            logger.error(f"No image in generation response, keys: {list(result.keys())}")
            raise GenerationFailed("Invalid response from server")

        try:
            return base64.b64decode(image_base64, validate=True)
        except (binascii.Error, ValueError):
            raise GenerationFailed("Invalid image encoding in response")


@dataclass
class GenerationOutcome:
    image: bytes
    credits_used: int
    remaining_balance: int
    record: Optional[GenerationRecord] = None


async def delete_saved_design(account_store, asset_storage, account_id: str,
                              generation_id: str) -> GenerationRecord:
    """Remove a saved design's history record, then its stored image."""
    record = await account_store.delete_generation(account_id, generation_id)
    if record is None:
        raise GenerationNotFound(generation_id)
    if asset_storage is not None:
        removed = await asset_storage.delete(record.image_path)
        if not removed:
            logger.warning(f"No stored image at {record.image_path} for generation {generation_id}")
    logger.info(f"Deleted generation {generation_id} for {account_id}")
    return record


class GenerationService:
    """Charges credits for generations and refunds system failures."""

    def __init__(self, reconciler, client: GenerationClient, asset_storage=None):
        self.reconciler = reconciler
        self.client = client
        self.asset_storage = asset_storage

    @staticmethod
    def credit_cost(mode: GenerationMode) -> int:
        return GENERATION_COSTS[GenerationMode(mode).value]

    def _require_account(self):
        account = self.reconciler.current_account
        if account is None:
            raise AuthenticationRequired("No account loaded")
        return account

    async def history(self, limit: int = LEDGER_PAGE_SIZE) -> List[GenerationRecord]:
        """Saved designs of the current account, newest first."""
        account = self._require_account()
        return await self.reconciler.account_store.list_generations(account.account_id, limit)

    async def delete_generation(self, generation_id: str) -> GenerationRecord:
        account = self._require_account()
        return await delete_saved_design(
            self.reconciler.account_store,
            self.asset_storage,
            account.account_id,
            generation_id
        )

    async def generate_design(self, nail_image: bytes, template_image: bytes,
                              mode: GenerationMode = GenerationMode.BASE,
                              template_name: Optional[str] = None,
                              auth_token: Optional[str] = None) -> GenerationOutcome:
        account = self._require_account()

        mode = GenerationMode(mode)
        cost = self.credit_cost(mode)
        request_id = str(uuid.uuid4())

        # Raises InsufficientCredits before anything is sent
        charged = await self.reconciler.adjust_balance(
            account.account_id,
            -cost,
            CreditKind.CONSUMPTION,
            f"{mode.value.capitalize()} design generation",
            entry_id=f"generation:{request_id}"
        )

        try:
            image = await self.client.generate(nail_image, template_image, mode, auth_token=auth_token)
        except EntitlementError as e:
            logger.warning(f"Generation {request_id} failed, refunding {cost} credits: {e}")
            await self.reconciler.adjust_balance(
                account.account_id,
                cost,
                CreditKind.BONUS,
                "Refund: generation failed",
                entry_id=f"refund:{request_id}"
            )
            raise

        record = None
        if self.asset_storage is not None:
            record = await self._store(account.account_id, request_id, image, mode, cost, template_name)

        return GenerationOutcome(
            image=image,
            credits_used=cost,
            remaining_balance=charged.credit_balance,
            record=record
        )

    async def _store(self, account_id: str, request_id: str, image: bytes,
                     mode: GenerationMode, cost: int, template_name: Optional[str]) -> Optional[GenerationRecord]:
        """Save the image and its history record. The paid-for image is returned even if this fails."""
        path = f"users/{account_id}/generations/{request_id}.jpg"
        try:
            await self.asset_storage.upload(path, image, "image/jpeg")
            record = GenerationRecord(
                generation_id=request_id,
                account_id=account_id,
                mode=mode,
                image_path=path,
                credits_used=cost,
                template_name=template_name
            )
            await self.reconciler.account_store.save_generation(record)
            return record
        except NetworkError as e:
            logger.error(f"Could not store generation {request_id} for {account_id}: {e}")
            return None
