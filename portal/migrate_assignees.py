# One-off migration: rewrite legacy grievances whose assignedTo holds a staff
# member's name (or a numeric id) so every assignee is a normalized staff id.
#
# Usage:  python portal/migrate_assignees.py [--dry-run]

import argparse
import logging
import sys
from pathlib import Path

from pymongo import MongoClient

_portal_dir = Path(__file__).resolve().parent
if str(_portal_dir) not in sys.path:
    sys.path.insert(0, str(_portal_dir))

from seed.config import MONGODB_URL, MONGODB_DB
from grievance_workflow import now_utc

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _resolve(db, value):
    """Map a stored assignee to a canonical staff id, or None when nothing matches."""
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip().upper()
    if db.users.find_one({"id": candidate}, {"id": 1}):
        return candidate
    by_name = list(db.users.find({"fullName": value.strip()}, {"id": 1}).limit(2))
    if len(by_name) == 1:
        return by_name[0]["id"]
    by_record = list(db.admin_staff.find({"fullName": value.strip()}, {"_id": 1}).limit(2))
    if len(by_record) == 1:
        return by_record[0]["_id"]
    return None


def migrate(db, dry_run: bool = False) -> dict:
    """Rewrite non-canonical assignees.

    Returns counts of fixed, unchanged and unresolved records, plus ``conflicted``
    for records modified by someone else between the read and the write; rerun
    the migration to pick those up.
    """
    counts = {"fixed": 0, "unchanged": 0, "unresolved": 0, "conflicted": 0}
    pending = list(db.grievances.find({"assignedTo": {"$nin": [None, ""]}}, {"assignedTo": 1, "version": 1}))
    for g in pending:
        stored = g["assignedTo"]
        canonical = _resolve(db, stored)
        if canonical is None:
            counts["unresolved"] += 1
            logger.warning("Grievance %s: cannot resolve assignee %r", g["_id"], stored)
            continue
        if canonical == stored:
            counts["unchanged"] += 1
            continue
        if dry_run:
            counts["fixed"] += 1
            logger.info("Grievance %s: %r -> %s (dry run)", g["_id"], stored, canonical)
            continue
        result = db.grievances.update_one(
            {"_id": g["_id"], "version": g.get("version")},
            {"$set": {"assignedTo": canonical, "updatedAt": now_utc()}, "$inc": {"version": 1}})
        if result.modified_count:
            counts["fixed"] += 1
            logger.info("Grievance %s: %r -> %s", g["_id"], stored, canonical)
        else:
            counts["conflicted"] += 1
            logger.warning("Grievance %s changed during migration; left as %r", g["_id"], stored)
    return counts


def main():
    parser = argparse.ArgumentParser(description="Normalize grievance assignees to staff ids")
    parser.add_argument("--dry-run", action="store_true", help="report changes without writing")
    args = parser.parse_args()
    db = MongoClient(MONGODB_URL, tz_aware=True)[MONGODB_DB]
    counts = migrate(db, dry_run=args.dry_run)
    logger.info("Assignee migration %s: %s", "preview" if args.dry_run else "complete", counts)


if __name__ == "__main__":
    main()
