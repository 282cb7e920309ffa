"""
Credit Ledger Database Initialization

RULES:
1. Environment Guard - production requires LEDGER_INIT_CONFIRM=YES
2. Idempotent - running it twice changes nothing the second time
3. Non-destructive - never drops, deletes or truncates
4. Balances are created by signup/invite flows, never here
5. Dry-run mode - --dry-run prints what it would do
6. Version stamp - tracks the applied init version

The unique indexes below are load-bearing: the transaction logger relies on
`id` to detect landed retries, purchases rely on `payment_id` and `dedup_key`
for idempotency.

Usage:
    CLI one-off: python -m credit_ledger.db_init
    With dry-run: python -m credit_ledger.db_init --dry-run
    In production: APP_ENV=production LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "organizations",
    "organization_members",
    "organization_classes",
    "organization_transactions",
    "profiles",
    "parental_controls",
    "payment_events",
    "conversation_flags",
    "ledger_meta",
]

# (collection, keys, options)
REQUIRED_INDEXES = [
    ("organizations", [("id", 1)], {"unique": True, "name": "idx_org_id_unique"}),

    ("organization_members", [("id", 1)], {"unique": True, "name": "idx_member_id_unique"}),
    ("organization_members", [("organization_id", 1), ("user_id", 1)], {"name": "idx_member_org_user"}),
    ("organization_members", [("user_id", 1), ("status", 1)], {"name": "idx_member_user_status"}),
    ("organization_members", [("class_id", 1)], {"sparse": True, "name": "idx_member_class"}),

    ("organization_classes", [("id", 1)], {"unique": True, "name": "idx_class_id_unique"}),

    ("profiles", [("id", 1)], {"unique": True, "name": "idx_profile_id_unique"}),

    ("organization_transactions", [("id", 1)], {"unique": True, "name": "idx_txn_id_unique"}),
    ("organization_transactions", [("dedup_key", 1)], {"unique": True, "sparse": True, "name": "idx_txn_dedup_unique"}),
    ("organization_transactions", [("organization_id", 1), ("created_at", -1)], {"name": "idx_txn_org_created"}),
    ("organization_transactions", [("user_id", 1), ("created_at", -1)], {"name": "idx_txn_user_created"}),
    ("organization_transactions", [("pool", 1), ("pool_id", 1)], {"name": "idx_txn_pool"}),

    ("parental_controls", [("organization_id", 1), ("child_user_id", 1)], {"unique": True, "name": "idx_controls_org_child_unique"}),

    ("payment_events", [("payment_id", 1)], {"unique": True, "name": "idx_payment_id_unique"}),

    ("conversation_flags", [("organization_id", 1), ("created_at", -1)], {"name": "idx_flags_org_created"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check whether init may run in the current environment.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", os.environ.get("ENVIRONMENT", "development"))

    if app_env.lower() == "production":
        confirm = os.environ.get("LEDGER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: LEDGER_INIT_CONFIRM=YES\n"
                f"Current value: LEDGER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    if collection_name in await db.list_collection_names():
        return f"  [SKIP] Collection '{collection_name}' exists"
    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
    except CollectionInvalid:
        # Created by a concurrent init
        return f"  [SKIP] Collection '{collection_name}' exists"
    return f"  [CREATE] Collection '{collection_name}'"


def option_drift(existing: dict, options: dict) -> List[str]:
    """Uniqueness options that differ between a live index and its definition."""
    return [
        option for option in ("unique", "sparse")
        if bool(existing.get(option)) != bool(options.get(option))
    ]


async def ensure_index(
    db,
    collection_name: str,
    keys: List[Tuple[str, int]],
    options: dict,
    dry_run: bool = False
) -> str:
    """
    Create one named index. An existing index with the same name is never
    rebuilt; if its unique/sparse flags differ it is reported as [CONFLICT]
    so an operator can fix it by hand.
    """
    collection = db[collection_name]
    name = options["name"]

    existing = (await collection.index_information()).get(name)
    if existing is not None:
        drift = option_drift(existing, options)
        if drift:
            logger.warning(f"LEDGER_INDEX_CONFLICT | collection={collection_name} | index={name} | options={drift}")
            return f"  [CONFLICT] Index '{name}' on '{collection_name}' differs in {', '.join(drift)}; left unchanged"
        return f"  [SKIP] Index '{name}' on '{collection_name}'"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{name}' on '{collection_name}'"

    try:
        await collection.create_index(keys, **options)
    except OperationFailure as e:
        if "already exists" not in str(e).lower():
            raise
        return f"  [SKIP] Index '{name}' on '{collection_name}'"
    return f"  [CREATE] Index '{name}' on '{collection_name}'"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """
    Create every ledger index that does not exist yet.

    Called at server startup and by the CLI. Safe to call repeatedly.

    Returns:
        One status line per index
    """
    results = []
    for collection_name, keys, options in REQUIRED_INDEXES:
        results.append(await ensure_index(db, collection_name, keys, options, dry_run))
    return results


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.ledger_meta.update_one(
        {"_id": "credit_ledger_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def run_init(dry_run: bool = False):
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    logger.info("=== Collections ===")
    for collection_name in REQUIRED_COLLECTIONS:
        logger.info(await create_collection_if_not_exists(db, collection_name, dry_run))

    logger.info("=== Indexes ===")
    for line in await ensure_indexes(db, dry_run):
        logger.info(line)

    logger.info("=== Version Stamp ===")
    logger.info(await update_version_stamp(db, dry_run))

    client.close()
    logger.info("SUCCESS: Credit ledger DB init completed")


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Credit Ledger Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m credit_ledger.db_init
    python -m credit_ledger.db_init --dry-run
    APP_ENV=production LEDGER_INIT_CONFIRM=YES python -m credit_ledger.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()
    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
