"""
Local Identity Store

Persists the installation id, the guest credit balance and the free-credit
latch in local key-value storage. All operations are synchronous and local.

Storage failures and invalid stored values raise IdentityStoreError; they
are never read as zero credits.
"""

import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .config import FREE_CREDIT_GRANT
from .errors import IdentityStoreError
from .models import FreeCreditState, Identity

logger = logging.getLogger(__name__)


class MemoryBackend:
    """Dict-backed key-value storage (tests, embedded use)."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data = dict(initial or {})

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileBackend:
    """
    JSON file key-value storage.

    Writes go to a temporary file first and are moved into place with
    os.replace, so a crash mid-write leaves the previous state intact.
    """

    def __init__(self, path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise IdentityStoreError(f"Cannot read identity state at {self.path}: {e}")
        if not isinstance(data, dict):
            raise IdentityStoreError(f"Identity state at {self.path} is not an object")
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise IdentityStoreError(f"Cannot write identity state at {self.path}: {e}")

    def get(self, key: str) -> Any:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class LocalIdentityStore:
    """Installation identity and guest credit state."""

    INSTALLATION_ID_KEY = "device_id"
    GUEST_CREDITS_KEY = "guest_credits"
    FREE_CREDIT_KEY = "free_credit"
    SESSION_TOKEN_KEY = "auth_session_token"

    def __init__(self, backend):
        self.backend = backend

    # ==================== INSTALLATION ID ====================

    def get_or_create_installation_id(self) -> str:
        existing = self.backend.get(self.INSTALLATION_ID_KEY)
        if existing:
            return existing

        installation_id = self._generate_installation_id()
        self.backend.set(self.INSTALLATION_ID_KEY, installation_id)
        self.backend.set(self._credits_key(installation_id), FREE_CREDIT_GRANT)
        self.backend.set(self._latch_key(installation_id), FreeCreditState.UNUSED.value)
        logger.info(f"Created installation {installation_id} with {FREE_CREDIT_GRANT} free credit")
        return installation_id

    @staticmethod
    def _generate_installation_id() -> str:
        return f"device_{int(time.time())}_{secrets.token_hex(4)}"

    def _credits_key(self, installation_id: str) -> str:
        return f"{self.GUEST_CREDITS_KEY}_{installation_id}"

    def _latch_key(self, installation_id: str) -> str:
        return f"{self.FREE_CREDIT_KEY}_{installation_id}"

    # ==================== GUEST CREDITS ====================

    def get_local_credits(self) -> int:
        installation_id = self.get_or_create_installation_id()
        value = self.backend.get(self._credits_key(installation_id))
        if value is None:
            raise IdentityStoreError(f"Guest credit balance missing for {installation_id}")
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise IdentityStoreError(f"Invalid guest credit balance {value!r} for {installation_id}")
        return value

    def set_local_credits(self, credits: int) -> None:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits < 0:
            raise ValueError(f"Guest credits must be a non-negative integer, got {credits!r}")
        installation_id = self.get_or_create_installation_id()
        self.backend.set(self._credits_key(installation_id), credits)

    # ==================== FREE CREDIT LATCH ====================

    def free_credit_state(self) -> FreeCreditState:
        installation_id = self.get_or_create_installation_id()
        raw = self.backend.get(self._latch_key(installation_id))
        if raw is None:
            return FreeCreditState.UNUSED
        try:
            return FreeCreditState(raw)
        except ValueError:
            raise IdentityStoreError(f"Invalid free credit state {raw!r} for {installation_id}")

    def has_consumed_free_credit(self) -> bool:
        return self.free_credit_state() is FreeCreditState.CONSUMED

    def mark_free_credit_consumed(self) -> None:
        installation_id = self.get_or_create_installation_id()
        self.backend.set(self._latch_key(installation_id), FreeCreditState.CONSUMED.value)

    def free_credits_available_for_new_account(self) -> int:
        return 0 if self.has_consumed_free_credit() else FREE_CREDIT_GRANT

    def snapshot(self) -> Identity:
        """Current identity as a validated model."""
        return Identity(
            installation_id=self.get_or_create_installation_id(),
            free_credit=self.free_credit_state(),
            local_credit_balance=self.get_local_credits()
        )

    # ==================== AUTH SESSION ====================

    def get_session_token(self) -> Optional[str]:
        return self.backend.get(self.SESSION_TOKEN_KEY)

    def set_session_token(self, token: str) -> None:
        self.backend.set(self.SESSION_TOKEN_KEY, token)

    def clear_session_token(self) -> None:
        self.backend.delete(self.SESSION_TOKEN_KEY)
