# University Grievance Desk: Seed Data Importer
# Resets the MongoDB collections and populates demo users, roles and grievances
#
# Usage:  python portal/importer.py      (from repo root)
#     or: python importer.py             (from portal/)

import asyncio
import sys
from pathlib import Path

from pymongo import MongoClient

# Ensure the portal modules are importable when running from repo root
_portal_dir = Path(__file__).resolve().parent
if str(_portal_dir) not in sys.path:
    sys.path.insert(0, str(_portal_dir))

from seed.config import MONGODB_URL, MONGODB_DB
from seed.users import import_users, import_staff_roles, USERS
from seed.grievances import import_grievances, GRIEVANCES
from grievance_workflow import GrievanceStore


async def main():
    print("=" * 64)
    print("  University Grievance Desk: Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/4] Connecting to MongoDB...")
    mongo_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = mongo_client[MONGODB_DB]
    print(f"  Connected: {MONGODB_URL} / {MONGODB_DB}")

    # ------------------------------------------------------------------
    # 2. Reset all collections
    # ------------------------------------------------------------------
    print("\n[2/4] Resetting collections...")
    for mongo_coll in ["grievances", "users", "admin_staff", "messages",
                       "uploads.files", "uploads.chunks"]:
        db[mongo_coll].drop()
    GrievanceStore(db).ensure_indexes()
    db.users.create_index([("id", 1)], unique=True)
    print("  MongoDB: grievances, users, admin_staff, messages,")
    print("           uploads.files, uploads.chunks (GridFS)")

    # ------------------------------------------------------------------
    # 3. Seed users and department roles
    # ------------------------------------------------------------------
    print("\n[3/4] Users")
    users = await import_users(db)
    n_roles = await import_staff_roles(db, users)

    # ------------------------------------------------------------------
    # 4. Seed grievances
    # ------------------------------------------------------------------
    print("\n[4/4] Grievances")
    await import_grievances(db, users)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------
    print("\n" + "=" * 64)
    print("  IMPORT COMPLETE")
    print("=" * 64)
    print(f"  Users:             {len(USERS)}")
    print(f"  Department roles:  {n_roles}")
    print(f"  Grievances:        {len(GRIEVANCES)}")
    print()
    print("  Test credentials:")
    print("    Master admin : 10001       / master123")
    print("    Dept admin   : EMP101      / staff123   (Examination)")
    print("    Staff        : EMP102      / staff123   (Examination)")
    print("    Student      : 2021BTCS001 / student123")
    print("=" * 64)


if __name__ == "__main__":
    asyncio.run(main())
