"""
Entitlements Module
Credit accounting for guest and signed-in users of the nail design app

This module provides:
- Per-installation guest identity with a one-time free credit
- Guest -> account credit reconciliation on sign-up / sign-in / sign-out
- Append-only credit ledger paired with every balance change
- Receipt verification and purchase records for credit packs
- Credit-charged calls to the remote generation function

Collections used:
- accounts: One document per guest or signed-in account
- credit_transactions: Immutable ledger of balance changes
- purchases: Verified credit pack purchases (one per vendor transaction)
- free_credit_claims: Server-side record of which account got an installation's free credit
- generations: Generated design records
- auth_identities: Email/password and anonymous identities
"""

__version__ = "1.0.0"
