"""
Entitlements Data Models

Pydantic models for identities, accounts and credit operations.
These define the structure of documents stored in MongoDB collections.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class CreditKind(str, Enum):
    """Reason for a balance change."""
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    BONUS = "bonus"
    MERGE = "merge"


class FreeCreditState(str, Enum):
    """One-way latch: UNUSED -> CONSUMED, never back."""
    UNUSED = "unused"
    CONSUMED = "consumed"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    PENDING = "pending"


class GenerationMode(str, Enum):
    BASE = "base"
    ADVANCED = "advanced"


# ==================== IDENTITY MODELS ====================

class Identity(BaseModel):
    """Local per-installation identity"""
    installation_id: str
    free_credit: FreeCreditState = FreeCreditState.UNUSED
    local_credit_balance: int = Field(0, ge=0)

    @property
    def free_credit_consumed(self) -> bool:
        return self.free_credit is FreeCreditState.CONSUMED


class AuthIdentity(BaseModel):
    """Identity returned by the authentication provider"""
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    is_anonymous: bool = False
    is_admin: bool = False


class AccountProfile(BaseModel):
    """Profile fields supplied at sign-up / sign-in"""
    email: Optional[str] = None
    display_name: Optional[str] = None


# ==================== ACCOUNT MODELS ====================

class Account(BaseModel):
    """Remote account record (guest or signed-in)"""
    account_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    credit_balance: int = Field(0, ge=0)
    is_guest: bool = True
    linked_installation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


# ==================== LEDGER MODELS ====================

class CreditLedgerEntry(BaseModel):
    """Immutable ledger entry for a single balance change"""
    entry_id: str
    account_id: str
    amount: int
    kind: CreditKind
    description: str
    timestamp: datetime = Field(default_factory=utc_now)


# ==================== PURCHASE MODELS ====================

class CreditPack(BaseModel):
    """Credit pack offered for purchase"""
    pack_id: str
    product_id: str
    name: str
    credits: int = Field(..., gt=0)
    price_usd: float
    description: Optional[str] = None


class PurchaseReceipt(BaseModel):
    """Receipt handed over by the store after a purchase"""
    vendor_transaction_id: str
    product_id: str
    fetch_token: Optional[str] = None  # Base64 store receipt
    price_amount: Decimal = Field(Decimal("0"), ge=0)
    currency: str = "USD"


class VerificationResult(BaseModel):
    """Outcome of receipt verification"""
    status: VerificationStatus
    vendor_transaction_id: str
    product_id: Optional[str] = None
    price_amount: Decimal = Decimal("0")
    currency: str = "USD"
    reason: Optional[str] = None


class PurchaseRecord(BaseModel):
    """Verified credit pack purchase"""
    purchase_id: str
    account_id: str
    product_id: str
    credits_granted: int = Field(..., gt=0)
    price_amount: Decimal = Field(..., ge=0)
    currency: str
    timestamp: datetime = Field(default_factory=utc_now)
    vendor_transaction_id: str
    is_restored: bool = False


# ==================== GENERATION MODELS ====================

class GenerationRecord(BaseModel):
    """Stored result of a design generation"""
    generation_id: str
    account_id: str
    mode: GenerationMode
    image_path: str
    credits_used: int
    template_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


# ==================== API MODELS ====================

class AdminCreditRequest(BaseModel):
    """Request to grant bonus credits"""
    account_id: str
    credits: int = Field(..., ge=1)
    reason: str = "admin_grant"
