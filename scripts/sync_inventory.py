#!/usr/bin/env python3
"""
Sync ShipStation inventory into inventory_sync_records, bypassing the job queue.
"""
import sys
import os
import asyncio
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import SessionLocal
from app.errors import IntegrationError
from app.models import Store
from app.services.credentials import SecretCipher
from app.services.shipstation_inventory_sync import InventoryReconciler, build_inventory_client

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def sync_store(store_id: str) -> bool:
    """Run one full sync for a store. Returns True when every page was applied."""
    db = SessionLocal()
    try:
        client = build_inventory_client(db, store_id, SecretCipher.from_settings())
        result = asyncio.run(InventoryReconciler(db, client).sync_inventory(store_id))
        logger.info(
            f"Store {store_id}: synced={result.synced} pages={result.pages_fetched} "
            f"complete={result.complete} errors={len(result.errors)}"
        )
        for error in result.errors:
            logger.warning(f"  {error}")
        return result.complete
    except IntegrationError as e:
        logger.error(f"Store {store_id}: {e.message}")
        return False
    finally:
        db.close()


def enabled_store_ids() -> list:
    db = SessionLocal()
    try:
        return [
            store_id
            for (store_id,) in db.query(Store.id)
            .filter(Store.is_active.is_(True), Store.integration_enabled.is_(True))
            .all()
        ]
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python sync_inventory.py [command]")
        print("Commands:")
        print("  all              - Sync every store with the integration enabled")
        print("  store <store_id> - Sync a single store")
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == "all":
        store_ids = enabled_store_ids()
        logger.info(f"Syncing inventory for {len(store_ids)} store(s)...")
        failures = [store_id for store_id in store_ids if not sync_store(store_id)]
        sys.exit(1 if failures else 0)

    elif command == "store":
        if len(sys.argv) < 3:
            print("Usage: python sync_inventory.py store <store_id>")
            sys.exit(1)
        sys.exit(0 if sync_store(sys.argv[2]) else 1)

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
