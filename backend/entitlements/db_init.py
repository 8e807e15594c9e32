"""
Entitlements database setup

Creates the collections and indexes the credit ledger depends on. The
unique indexes back the idempotency of guest creation, ledger entry ids,
purchase transactions and free credit claims, so the server also runs
ensure_indexes at startup.

Nothing is dropped or rewritten; a repeated run only reports [SKIP].

Usage:
    python -m entitlements.db_init [--dry-run]

Production (APP_ENV=production) also needs ENTITLEMENTS_INIT_CONFIRM=YES.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Tuple

from pymongo.errors import CollectionInvalid, OperationFailure

from .config import COLLECTIONS

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "v1.0.0"
META_COLLECTION = "entitlements_meta"

REQUIRED_COLLECTIONS = [
    COLLECTIONS["accounts"],
    COLLECTIONS["ledger"],
    COLLECTIONS["purchases"],
    COLLECTIONS["free_credit_claims"],
    COLLECTIONS["generations"],
    COLLECTIONS["auth_identities"],
    META_COLLECTION
]

# (collection, keys, options)
REQUIRED_INDEXES = [
    # accounts: one guest account per installation
    (COLLECTIONS["accounts"], [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    (COLLECTIONS["accounts"], [("linked_installation_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"is_guest": True},
        "name": "idx_guest_installation_unique"
    }),

    # ledger
    (COLLECTIONS["ledger"], [("entry_id", 1)], {"unique": True, "name": "idx_entry_id_unique"}),
    (COLLECTIONS["ledger"], [("account_id", 1), ("timestamp", -1)], {"name": "idx_account_timestamp"}),

    # purchases
    (COLLECTIONS["purchases"], [("purchase_id", 1)], {"unique": True, "name": "idx_purchase_id_unique"}),
    (COLLECTIONS["purchases"], [("vendor_transaction_id", 1)], {"unique": True, "name": "idx_vendor_transaction_unique"}),
    (COLLECTIONS["purchases"], [("account_id", 1), ("timestamp", -1)], {"name": "idx_purchase_account_timestamp"}),

    # free credit claims
    (COLLECTIONS["free_credit_claims"], [("installation_id", 1)], {"unique": True, "name": "idx_claim_installation_unique"}),

    # auth identities: anonymous identities carry a null email
    (COLLECTIONS["auth_identities"], [("uid", 1)], {"unique": True, "name": "idx_uid_unique"}),
    (COLLECTIONS["auth_identities"], [("email", 1)], {
        "unique": True,
        "partialFilterExpression": {"email": {"$type": "string"}},
        "name": "idx_email_unique"
    }),

    # generations
    (COLLECTIONS["generations"], [("account_id", 1), ("created_at", -1)], {"name": "idx_generation_account_created"}),
]


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message); production needs explicit confirmation."""
    app_env = os.environ.get("APP_ENV", "development")
    if app_env.lower() != "production":
        return True, f"Environment: {app_env}"
    if os.environ.get("ENTITLEMENTS_INIT_CONFIRM") == "YES":
        return True, "Environment: production (confirmed)"
    return False, "Refusing to initialize production without ENTITLEMENTS_INIT_CONFIRM=YES"


async def ensure_collections(db, dry_run: bool = False) -> List[str]:
    existing = set(await db.list_collection_names())
    results = []
    for name in REQUIRED_COLLECTIONS:
        if name in existing:
            results.append(f"[SKIP] collection {name}")
        elif dry_run:
            results.append(f"[DRY-RUN] collection {name}")
        else:
            try:
                await db.create_collection(name)
                results.append(f"[CREATE] collection {name}")
            except CollectionInvalid:
                results.append(f"[SKIP] collection {name} (race)")
    return results


async def create_index_if_not_exists(db, collection_name: str, keys: List[Tuple],
                                     options: dict, dry_run: bool = False) -> str:
    collection = db[collection_name]
    label = f"index {collection_name}.{options['name']}"

    if options["name"] in await collection.index_information():
        return f"[SKIP] {label}"
    if dry_run:
        return f"[DRY-RUN] {label}"

    try:
        await collection.create_index(keys, **options)
    except OperationFailure as e:
        if "already exists" not in str(e).lower():
            raise
        return f"[SKIP] {label} (race)"
    return f"[CREATE] {label}"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create any missing index. Used at application startup."""
    results = []
    for collection_name, keys, options in REQUIRED_INDEXES:
        result = await create_index_if_not_exists(db, collection_name, keys, options, dry_run)
        logger.debug(result)
        results.append(result)
    return results


async def run_init(dry_run: bool = False) -> int:
    """Returns a process exit code."""
    from database import check_db_connection, close_client, get_db

    allowed, message = check_environment()
    if not allowed:
        logger.error(message)
        return 1
    logger.info(f"{message}, dry run: {dry_run}")

    try:
        connected, error = await check_db_connection()
        if not connected:
            logger.error(error)
            return 1

        db = get_db()
        for line in await ensure_collections(db, dry_run) + await ensure_indexes(db, dry_run):
            logger.info(line)

        if not dry_run:
            await db[META_COLLECTION].update_one(
                {"_id": "entitlements_init"},
                {"$set": {"version": SCHEMA_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
                upsert=True
            )
            logger.info(f"Schema version {SCHEMA_VERSION}")
    finally:
        close_client()
    return 0


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Create entitlements collections and indexes")
    parser.add_argument('--dry-run', action='store_true', help='Report what would be created')
    args = parser.parse_args(argv)

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
