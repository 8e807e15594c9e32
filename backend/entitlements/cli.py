"""
Entitlements command line

Runs the account session for a local installation whose identity state
lives in a JSON file.

Usage:
    python -m entitlements.cli status
    python -m entitlements.cli sign-up --email me@example.com --password secret1
    python -m entitlements.cli sign-in --email me@example.com --password secret1
    python -m entitlements.cli ledger --limit 20
    python -m entitlements.cli designs
    python -m entitlements.cli delete-design --id <generation_id>
    python -m entitlements.cli sign-out
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from .asset_storage import GridFSAssetStorage
from .errors import EntitlementError
from .identity_store import JsonFileBackend
from .purchase_verifier import available_packs
from .session import build_session

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path.home() / ".nail_credits" / "identity.json"


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_command(args) -> int:
    from database import close_client, get_db

    db = get_db()
    state_path = Path(os.environ.get("IDENTITY_STATE_PATH", DEFAULT_STATE_PATH))
    session = build_session(db, JsonFileBackend(state_path), asset_storage=GridFSAssetStorage(db))

    try:
        account = await session.restore()

        if args.command == "sign-up":
            account = await session.sign_up(args.email, args.password, args.name)
        elif args.command == "sign-in":
            account = await session.sign_in(args.email, args.password)
        elif args.command == "sign-out":
            account = await session.sign_out()
        elif args.command == "delete-account":
            account = await session.delete_account()
        elif args.command == "restore-purchases":
            restored = await session.purchases.restore_purchases()
            _print({"restored": [record.model_dump(mode="json") for record in restored]})
            return 0
        elif args.command == "ledger":
            entries = await session.reconciler.account_store.list_ledger(account.account_id, args.limit)
            _print({"entries": [entry.model_dump(mode="json") for entry in entries]})
            return 0
        elif args.command == "designs":
            records = await session.generation.history(args.limit)
            _print({"generations": [record.model_dump(mode="json") for record in records]})
            return 0
        elif args.command == "delete-design":
            record = await session.generation.delete_generation(args.id)
            _print({"deleted": record.generation_id})
            return 0

        _print(account.model_dump(mode="json"))
        return 0
    except EntitlementError as e:
        _print(e.to_dict())
        return 1
    finally:
        close_client()


def main(argv=None):
    load_dotenv(Path(__file__).parent.parent / '.env')
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "WARNING"),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Design credit account tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show the current account")
    subparsers.add_parser("packs", help="List credit packs")

    sign_up = subparsers.add_parser("sign-up", help="Create an account, carrying over guest credits")
    sign_up.add_argument("--email", required=True)
    sign_up.add_argument("--password", required=True)
    sign_up.add_argument("--name", default=None)

    sign_in = subparsers.add_parser("sign-in", help="Sign in to an existing account")
    sign_in.add_argument("--email", required=True)
    sign_in.add_argument("--password", required=True)

    subparsers.add_parser("sign-out", help="Return to the guest account")
    subparsers.add_parser("delete-account", help="Delete the signed-in account")
    subparsers.add_parser("restore-purchases", help="Credit store purchases missing from history")

    ledger = subparsers.add_parser("ledger", help="Show credit history")
    ledger.add_argument("--limit", type=int, default=20)

    designs = subparsers.add_parser("designs", help="List saved designs")
    designs.add_argument("--limit", type=int, default=20)

    delete_design = subparsers.add_parser("delete-design", help="Delete a saved design and its image")
    delete_design.add_argument("--id", required=True)

    args = parser.parse_args(argv)

    if args.command == "packs":
        _print([pack.model_dump() for pack in available_packs()])
        return

    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
