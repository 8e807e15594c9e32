"""
Entitlements Configuration and Constants

Credit packs, free credit grant, generation costs and remote endpoints.
Prices are in USD.
"""

import os

# ==================== FREE CREDIT ====================
# Granted once per installation, on first launch
FREE_CREDIT_GRANT = 1

# ==================== CREDIT PACKS (USD) ====================
CREDIT_PACKS = {
    "starter": {
        "product_id": "com.nailapp.credits.starter",
        "name": "Starter Pack",
        "credits": 10,
        "price_usd": 2.99,
        "description": "10 design credits"
    },
    "popular": {
        "product_id": "com.nailapp.credits.popular",
        "name": "Popular Pack",
        "credits": 30,
        "price_usd": 6.99,
        "description": "30 design credits"
    },
    "pro": {
        "product_id": "com.nailapp.credits.pro",
        "name": "Pro Pack",
        "credits": 100,
        "price_usd": 19.99,
        "description": "100 design credits"
    }
}

# ==================== GENERATION COSTS ====================
# Credits charged per generation mode
GENERATION_COSTS = {
    "base": 1,
    "advanced": 2
}

# ==================== COLLECTIONS ====================
COLLECTIONS = {
    "accounts": "accounts",
    "ledger": "credit_transactions",
    "purchases": "purchases",
    "free_credit_claims": "free_credit_claims",
    "generations": "generations",
    "auth_identities": "auth_identities",
    "assets": "assets"
}

LEDGER_PAGE_SIZE = 50

# ==================== REMOTE CALLS ====================
# Every remote call is bounded; a timeout surfaces as a retryable NetworkError
REMOTE_CALL_TIMEOUT_SECONDS = float(os.environ.get("REMOTE_CALL_TIMEOUT_SECONDS", "10"))
GENERATION_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "120"))

REVENUECAT_CONFIG = {
    "api_base": "https://api.revenuecat.com/v1",
    "platform": "ios"
}

GENERATION_FUNCTION_NAME = "generateNailDesign"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDITS": "Not enough credits. Please purchase a credit pack to continue.",
    "AUTHENTICATION_REQUIRED": "Create an account to securely save your credits.",
    "VERIFICATION_FAILED": "Purchase verification failed.",
    "PURCHASE_PENDING": "Purchase pending approval.",
    "NETWORK_ERROR": "Network error occurred. Please try again.",
    "DUPLICATE_PURCHASE": "This purchase has already been credited.",
    "DUPLICATE_LEDGER_ENTRY": "This credit change has already been applied.",
    "ACCOUNT_NOT_FOUND": "Account not found.",
    "ACCOUNT_CONFLICT": "A guest account already exists for this installation.",
    "INVALID_CREDENTIALS": "Invalid email or password.",
    "EMAIL_ALREADY_IN_USE": "An account with this email already exists.",
    "IDENTITY_STORE_UNAVAILABLE": "Local identity storage is unavailable.",
    "GENERATION_FAILED": "Design generation failed.",
    "GENERATION_NOT_FOUND": "Saved design not found."
}
