"""
Script to backfill draft snapshots on flows stored before drafts and
published copies were split.

This migration script:
- Copies nodes/edges into draft_nodes/draft_edges for flows without a draft
- Derives is_published from the legacy status field ("published" -> True)
- Clears nodes/edges of flows that were never published, so the runtime
  does not execute unpublished graphs
- Safe to run multiple times (idempotent)
"""

import asyncio
import sys
import os

# Add src directory to path to import modules
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, 'src')
sys.path.insert(0, src_dir)

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.flow_db import FlowDB


async def backfill_draft_snapshots():
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

    try:
        log_util.info(
            service_name="BackfillDraftSnapshots",
            message="Starting migration to backfill draft snapshots..."
        )

        client_data = flow_db._get_client_for_current_loop()
        collection = client_data['collections']['flows']

        query = {"draft_nodes": {"$exists": False}}
        count = await collection.count_documents(query)

        if count == 0:
            log_util.info(
                service_name="BackfillDraftSnapshots",
                message="No flows need to be updated. All flows already have a draft snapshot."
            )
            print("\nNo flows need to be updated.")
            return

        log_util.info(
            service_name="BackfillDraftSnapshots",
            message=f"Found {count} flow(s) that need to be updated."
        )
        print(f"\nFound {count} flow(s) that need to be updated.")

        published_count = 0
        updated_count = 0
        async for flow in collection.find(query):
            is_published = flow.get("is_published", flow.get("status") == "published")
            update = {
                "draft_nodes": flow.get("nodes", []),
                "draft_edges": flow.get("edges", []),
                "is_published": is_published,
            }
            if is_published:
                published_count += 1
            else:
                update["nodes"] = []
                update["edges"] = []

            result = await collection.update_one(
                {"_id": flow["_id"], "draft_nodes": {"$exists": False}},
                {"$set": update, "$unset": {"status": ""}}
            )
            updated_count += result.modified_count

        remaining_count = await collection.count_documents(query)
        total_count = await collection.count_documents({})

        print("\n" + "=" * 60)
        print("MIGRATION SUMMARY")
        print("=" * 60)
        print(f"  Total flows in database: {total_count}")
        print(f"  Flows updated: {updated_count}")
        print(f"  Of which published: {published_count}")
        print(f"  Flows still needing update: {remaining_count}")
        print("=" * 60)

        if remaining_count == 0:
            log_util.info(
                service_name="BackfillDraftSnapshots",
                message=f"Migration completed, {updated_count} flow(s) updated."
            )
        else:
            log_util.warning(
                service_name="BackfillDraftSnapshots",
                message=f"Migration completed but {remaining_count} flow(s) still need updating."
            )

    except Exception as e:
        log_util.error(
            service_name="BackfillDraftSnapshots",
            message=f"Fatal error during migration: {str(e)}"
        )
        raise
    finally:
        flow_db.close()
        log_util.info(
            service_name="BackfillDraftSnapshots",
            message="Database connection closed"
        )


if __name__ == "__main__":
    print("=" * 60)
    print("Backfill Draft Snapshots - Migration Script")
    print("=" * 60)

    try:
        asyncio.run(backfill_draft_snapshots())
        print("\n[SUCCESS] Script completed successfully!")
    except KeyboardInterrupt:
        print("\n[WARNING] Script interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] Script failed with error: {str(e)}")
        sys.exit(1)
