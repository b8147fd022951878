# Grievance workflow: staff hierarchy, assignment and lifecycle rules
# All rules run server-side against MongoDB (pymongo); callers pass identities
# derived from their own auth layer, never client-asserted role flags.

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, date, timedelta, timezone
from enum import Enum
from typing import List, Optional, Dict, Any, Iterable

from pymongo import ReturnDocument, ASCENDING, DESCENDING

from grievance_mailer import (
    verification_requested_email, resolution_accepted_email,
    resolution_rejected_email, extension_outcome_email,
    promotion_email, demotion_email,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums & constants
# ---------------------------------------------------------------------------
class GrievanceStatus(str, Enum):
    PENDING = "Pending"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    VERIFICATION = "Verification"
    RESOLVED = "Resolved"
    REJECTED = "Rejected"

class ExtensionStatus(str, Enum):
    NONE = "None"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"

class VerifyAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"

class ExtensionAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class RoleAction(str, Enum):
    PROMOTE = "promote"
    DEMOTE = "demote"

TERMINAL_STATUSES = [GrievanceStatus.RESOLVED.value, GrievanceStatus.REJECTED.value]

CATEGORIES = [
    "Accounts",
    "Student Welfare",
    "Student Section",
    "Admission",
    "Examination",
    "School of Engineering and Technology",
    "School of Management Studies",
    "School of Law",
    "School of Pharmaceutical Sciences",
    "School of Hotel Management",
    "School of Design and innovation",
    "School of Allied Health Sciences",
    "School of Social Sciences and Liberal Arts",
]

DEFAULT_MASTER_ADMIN_ID = "10001"
DEFAULT_VERIFICATION_WINDOW_HOURS = 36

# Reduced field set returned to assigned staff
ASSIGNED_PROJECTION = {
    "name": 1, "regid": 1, "category": 1, "message": 1, "status": 1,
    "deadlineDate": 1, "extensionRequest": 1, "attachment": 1,
    "resolutionRemarks": 1, "createdAt": 1,
}

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class WorkflowError(Exception):
    """Base for every typed failure the workflow returns to its caller."""
    status_code = 400
    kind = "WorkflowError"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind

class ValidationError(WorkflowError):
    status_code = 400
    kind = "ValidationError"

class NotFound(WorkflowError):
    status_code = 404
    kind = "NotFound"

class PermissionDenied(WorkflowError):
    status_code = 403
    kind = "PermissionDenied"

class InvalidAssignment(WorkflowError):
    status_code = 400
    kind = "InvalidAssignment"

class InvalidTransition(WorkflowError):
    status_code = 409
    kind = "InvalidTransition"

class Conflict(WorkflowError):
    status_code = 409
    kind = "Conflict"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes unless the client is tz_aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def normalize_id(value: Any) -> str:
    if value is None:
        raise ValidationError("Identifier is required")
    normalized = str(value).strip().upper()
    if not normalized:
        raise ValidationError("Identifier is required")
    return normalized

def parse_date(value: Any, field: str = "date", kind: Optional[str] = None,
               keep_offset: bool = False) -> datetime:
    """Parse an ISO date or datetime into an aware datetime.

    Normalized to UTC unless ``keep_offset`` is set, in which case an offset
    supplied by the caller is preserved (naive input is still read as UTC).
    """
    if isinstance(value, datetime):
        if keep_offset and value.tzinfo is not None:
            return value
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid {field}", kind=kind)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}", kind=kind)
    if keep_offset and parsed.tzinfo is not None:
        return parsed
    return as_utc(parsed)

def _notify(notifier, to, subject: str, html: str) -> None:
    if notifier is None or not to:
        return
    try:
        notifier.send(to, subject, html)
    except Exception as e:
        logger.error("Notification '%s' to %s failed: %s", subject, to, e)

def _unique_emails(emails: Iterable[Optional[str]]) -> List[str]:
    seen: Dict[str, str] = {}
    for email in emails:
        if email and email.strip().lower() not in seen:
            seen[email.strip().lower()] = email.strip()
    return list(seen.values())

# ---------------------------------------------------------------------------
# Grievance Store
# ---------------------------------------------------------------------------
class GrievanceStore:
    def __init__(self, db):
        self.collection = db.grievances

    def ensure_indexes(self):
        self.collection.create_index("category")
        self.collection.create_index([("assignedTo", ASCENDING), ("createdAt", DESCENDING)])
        self.collection.create_index("userId")
        self.collection.create_index("status")
        self.collection.create_index("createdAt")

    def get(self, grievance_id: str) -> dict:
        if not isinstance(grievance_id, str):
            raise ValidationError("Invalid grievance id")
        doc = self.collection.find_one({"_id": grievance_id})
        if doc is None:
            raise NotFound("Grievance not found")
        return doc

    def insert(self, doc: dict) -> dict:
        self.collection.insert_one(doc)
        return doc

    def apply(self, current: dict, set_fields: Dict[str, Any]) -> dict:
        """Write ``set_fields`` only if nobody changed the record since ``current`` was read."""
        update = {"$set": {**set_fields, "updatedAt": now_utc()}, "$inc": {"version": 1}}
        updated = self.collection.find_one_and_update(
            {"_id": current["_id"], "version": current.get("version")},
            update, return_document=ReturnDocument.AFTER)
        if updated is None:
            raise Conflict("Grievance was modified by another request; reload and retry")
        return updated

    def reset_assignments(self, assignee_keys: List[Any]) -> int:
        """Send every open grievance held by any of ``assignee_keys`` back to the unassigned queue."""
        if not assignee_keys:
            return 0
        result = self.collection.update_many(
            {"assignedTo": {"$in": assignee_keys}, "status": {"$nin": TERMINAL_STATUSES}},
            {"$set": {"status": GrievanceStatus.PENDING.value, "assignedTo": None,
                      "assignedRole": None, "assignedBy": None, "deadlineDate": None,
                      "updatedAt": now_utc()},
             "$inc": {"version": 1}})
        return result.modified_count

# ---------------------------------------------------------------------------
# Staff Directory
# ---------------------------------------------------------------------------
class StaffDirectory:
    def __init__(self, db, notifier=None, master_admin_id: str = DEFAULT_MASTER_ADMIN_ID):
        self.db = db
        self.notifier = notifier
        self.default_master_id = normalize_id(master_admin_id)
        self.grievances = GrievanceStore(db)

    # -- identity directory ------------------------------------------------
    def find_user(self, user_id: Any) -> Optional[dict]:
        return self.db.users.find_one({"id": normalize_id(user_id)})

    def email_of(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        user = self.db.users.find_one({"id": str(user_id).strip().upper()})
        if user and user.get("email"):
            return user["email"]
        record = self.db.admin_staff.find_one({"_id": str(user_id).strip().upper()})
        return record.get("email") if record else None

    def ensure_master_admin(self) -> Optional[str]:
        """Flag the configured default id as master when no user carries the flag yet."""
        if self.db.users.find_one({"isMasterAdmin": True}):
            return self.master_admin_id()
        updated = self.db.users.find_one_and_update(
            {"id": self.default_master_id},
            {"$set": {"isMasterAdmin": True, "role": "admin"}},
            return_document=ReturnDocument.AFTER)
        if updated:
            logger.info("Master admin seeded: %s", updated["id"])
            return updated["id"]
        logger.warning("No master admin flagged and default id %s not in users yet", self.default_master_id)
        return None

    def master_admin_id(self) -> str:
        flagged = self.db.users.find_one({"isMasterAdmin": True}, {"id": 1})
        return flagged["id"] if flagged else self.default_master_id

    def is_master(self, user_id: Any) -> bool:
        return normalize_id(user_id) == self.master_admin_id()

    # -- staff records -----------------------------------------------------
    def _record(self, staff_id: str) -> Optional[dict]:
        return self.db.admin_staff.find_one({"_id": staff_id})

    def get_staff(self, staff_id: Any) -> dict:
        record = self._record(normalize_id(staff_id))
        if record is None:
            raise NotFound("Staff record not found")
        return record

    def list_staff(self, department: Optional[str] = None) -> List[dict]:
        query: Dict[str, Any] = {}
        if department is not None:
            query["adminDepartment"] = department
        return list(self.db.admin_staff.find(query).sort("createdAt", DESCENDING))

    def department_staff(self, department: str) -> List[dict]:
        return list(self.db.admin_staff.find(
            {"adminDepartment": department}, {"id": 1, "fullName": 1, "isDeptAdmin": 1}
        ).sort("fullName", ASCENDING))

    def is_head_of(self, user_id: Any, department: Optional[str]) -> bool:
        if not department:
            return False
        record = self._record(normalize_id(user_id))
        return bool(record and record.get("isDeptAdmin") and record.get("adminDepartment") == department)

    def belongs_to(self, user_id: Any, department: Optional[str]) -> bool:
        if not department:
            return False
        record = self._record(normalize_id(user_id))
        return bool(record and record.get("adminDepartment") == department)

    def can_manage(self, user_id: Any, department: Optional[str]) -> bool:
        return self.is_master(user_id) or self.is_head_of(user_id, department)

    def manages_staff(self, user_id: Any, staff_id: Any) -> bool:
        """Master, or head of the department ``staff_id`` currently belongs to."""
        if self.is_master(user_id):
            return True
        record = self._record(normalize_id(staff_id))
        return bool(record and self.is_head_of(user_id, record.get("adminDepartment")))

    def check_admin_status(self, user_id: Any) -> dict:
        staff_id = normalize_id(user_id)
        if self.is_master(staff_id):
            return {"isAdmin": True, "isDeptAdmin": True, "isMasterAdmin": True,
                    "departments": ["All"], "adminDepartment": "All"}
        record = self._record(staff_id)
        department = (record or {}).get("adminDepartment") or ""
        return {
            "isAdmin": bool(department),
            "isDeptAdmin": bool(department and record.get("isDeptAdmin")),
            "isMasterAdmin": False,
            "departments": [department] if department else [],
            "adminDepartment": department,
        }

    # -- role changes ------------------------------------------------------
    def promote(self, requester_id: Any, target_id: Any, department: Optional[str]) -> dict:
        if not department or not str(department).strip():
            raise ValidationError("department is required")
        department = str(department).strip()
        requester = normalize_id(requester_id)
        target = normalize_id(target_id)
        as_master = self.is_master(requester)
        if not as_master and not self.is_head_of(requester, department):
            raise PermissionDenied("You can only manage staff for your own department")
        if self.is_master(target):
            raise ValidationError("The master admin cannot hold a department role")

        record = self._record(target)
        user = self.find_user(target)
        if record is None and user is None:
            raise NotFound("Target staff member not found")
        if not as_master and record and record.get("adminDepartment") not in ("", None, department):
            raise PermissionDenied("Target already belongs to another department")
        if not as_master and record and record.get("isDeptAdmin"):
            raise PermissionDenied("A department admin cannot change another department admin")

        now = now_utc()
        displaced: List[dict] = []
        if as_master:
            # One head per department: the previous head steps down in the same operation
            displaced = list(self.db.admin_staff.find(
                {"adminDepartment": department, "isDeptAdmin": True, "_id": {"$ne": target}}))
            if displaced:
                self.db.admin_staff.update_many(
                    {"_id": {"$in": [d["_id"] for d in displaced]}},
                    {"$set": {"isDeptAdmin": False, "adminDepartment": "", "updatedAt": now}})
                for prior in displaced:
                    logger.info("Removed %s from admin role for %s", prior["_id"], department)

        source = user or {}
        updated = self.db.admin_staff.find_one_and_update(
            {"_id": target},
            {"$set": {"adminDepartment": department, "isDeptAdmin": as_master, "updatedAt": now},
             "$setOnInsert": {"id": target,
                              "fullName": source.get("fullName") or target,
                              "email": source.get("email"),
                              "createdAt": now}},
            upsert=True, return_document=ReturnDocument.AFTER)
        title = "Department Admin" if as_master else "Team Member"
        logger.info("%s promoted %s to %s of %s", requester, target, title, department)

        for prior in displaced:
            subject, html = demotion_email(prior.get("fullName") or prior["_id"], department, displaced_by_new_head=True)
            _notify(self.notifier, self.email_of(prior["_id"]), subject, html)
        subject, html = promotion_email(updated.get("fullName") or target, title, department, target)
        _notify(self.notifier, self.email_of(target), subject, html)
        return updated

    def demote(self, requester_id: Any, target_id: Any) -> dict:
        requester = normalize_id(requester_id)
        target = normalize_id(target_id)
        record = self._record(target)
        department = (record or {}).get("adminDepartment") or ""
        if not self.is_master(requester):
            if not department or not self.is_head_of(requester, department):
                raise PermissionDenied("You cannot manage staff of other departments")

        held_role = bool(record and (department or record.get("isDeptAdmin")))
        if held_role:
            self.db.admin_staff.update_one(
                {"_id": target},
                {"$set": {"isDeptAdmin": False, "adminDepartment": "", "updatedAt": now_utc()}})

        # Legacy records may hold the raw id, a numeric id or the staff member's name
        keys: List[Any] = [target]
        raw = str(target_id).strip()
        if raw != target:
            keys.append(raw)
        if target.isdigit():
            keys.append(int(target))
        user = self.find_user(target)
        for name in {(record or {}).get("fullName"), (user or {}).get("fullName")}:
            if name and name not in keys:
                keys.append(name)
        modified = self.grievances.reset_assignments(keys)
        logger.info("%s demoted %s; reset %d grievances to Pending", requester, target, modified)

        if held_role:
            full_name = (record or {}).get("fullName") or (user or {}).get("fullName") or target
            subject, html = demotion_email(full_name, department or "your department")
            _notify(self.notifier, self.email_of(target), subject, html)
        return {"modifiedGrievanceCount": modified}

    def transfer_ownership(self, requester_id: Any, new_master_id: Any) -> dict:
        requester = normalize_id(requester_id)
        new_master = normalize_id(new_master_id)
        if not self.is_master(requester):
            raise PermissionDenied("Only the Master Admin can transfer ownership")
        if new_master == requester:
            raise ValidationError("You are already the Master Admin")
        target = self.find_user(new_master)
        if target is None:
            raise NotFound("Target user not found")
        self.db.users.update_many({"isMasterAdmin": True}, {"$set": {"isMasterAdmin": False, "role": "staff"}})
        self.db.users.update_one({"id": requester}, {"$set": {"isMasterAdmin": False, "role": "staff"}})
        self.db.users.update_one({"id": new_master}, {"$set": {"isMasterAdmin": True, "role": "admin"}})
        # Master sits above departments
        self.db.admin_staff.update_one(
            {"_id": new_master},
            {"$set": {"isDeptAdmin": False, "adminDepartment": "", "updatedAt": now_utc()}})
        logger.info("Ownership transferred: %s -> %s", requester, new_master)
        return {"previousMasterId": requester, "masterId": new_master,
                "fullName": target.get("fullName")}

# ---------------------------------------------------------------------------
# Assignment & Authorization Engine
# ---------------------------------------------------------------------------
@dataclass
class AssignmentResult:
    grievance: dict
    warning: Optional[str] = None

class AssignmentEngine:
    def __init__(self, db, directory: StaffDirectory):
        self.store = GrievanceStore(db)
        self.directory = directory

    def assign(self, grievance_id: str, staff_id: Any, admin_id: Any,
               deadline: Any = None) -> AssignmentResult:
        grievance = self.store.get(grievance_id)
        admin = normalize_id(admin_id)
        if not self.directory.can_manage(admin, grievance.get("category")):
            raise PermissionDenied(f"Only the {grievance.get('category')} admin can assign this grievance")
        if grievance.get("status") in TERMINAL_STATUSES:
            raise InvalidTransition(f"Grievance is already {grievance['status']}")
        staff = normalize_id(staff_id)
        if staff == str(grievance.get("userId", "")).strip().upper():
            raise InvalidAssignment("A grievance cannot be assigned to its own submitter")
        if self.directory.find_user(staff) is None:
            raise NotFound("Staff member not found")

        set_fields: Dict[str, Any] = {
            "assignedTo": staff, "assignedRole": "staff", "assignedBy": admin,
            "status": GrievanceStatus.ASSIGNED.value,
        }
        warning = None
        if deadline not in (None, ""):
            # Calendar days compare in the offset the admin wrote the deadline in
            deadline_local = parse_date(deadline, "deadline", kind="InvalidDeadline", keep_offset=True)
            created = as_utc(grievance.get("createdAt"))
            if created:
                created_day = created.astimezone(deadline_local.tzinfo).date()
                if deadline_local.date() < created_day:
                    warning = (f"Deadline {deadline_local.date().isoformat()} is before the grievance was "
                               f"submitted on {created_day.isoformat()}")
                    logger.warning("Admin override on %s: %s", grievance_id, warning)
            set_fields["deadlineDate"] = as_utc(deadline_local)

        updated = self.store.apply(grievance, set_fields)
        logger.info("Grievance %s assigned to %s by %s", grievance_id, staff, admin)
        return AssignmentResult(grievance=updated, warning=warning)

# ---------------------------------------------------------------------------
# Lifecycle State Machine
# ---------------------------------------------------------------------------
class GrievanceLifecycle:
    def __init__(self, db, directory: StaffDirectory, notifier=None,
                 verification_window_hours: int = DEFAULT_VERIFICATION_WINDOW_HOURS,
                 auto_resolve: bool = False):
        self.store = GrievanceStore(db)
        self.directory = directory
        self.notifier = notifier
        self.verification_window_hours = verification_window_hours
        self.auto_resolve = auto_resolve

    def submit(self, data: Dict[str, Any]) -> dict:
        if not data.get("studentProgram") or not data.get("category"):
            raise ValidationError("Student program or category missing")
        if data["category"] not in CATEGORIES:
            raise ValidationError(f"Unknown category: {data['category']}")
        if not data.get("message"):
            raise ValidationError("Grievance message is required")
        user_id = normalize_id(data.get("userId"))
        now = now_utc()
        doc = {
            "_id": str(uuid.uuid4()),
            "userId": user_id, "name": data.get("name"), "email": data.get("email"),
            "phone": data.get("phone"), "regid": data.get("regid"),
            "studentProgram": data["studentProgram"], "category": data["category"],
            "message": data["message"], "attachment": data.get("attachment") or None,
            "assignedTo": None, "assignedRole": None, "assignedBy": None, "deadlineDate": None,
            "extensionRequest": {"requestedDate": None, "reason": "", "status": ExtensionStatus.NONE.value},
            "status": GrievanceStatus.PENDING.value,
            "resolvedBy": None, "resolutionRemarks": "", "resolutionProposedAt": None,
            "verificationFeedback": None, "rating": None, "isRated": False,
            "hiddenFor": [], "version": 0,
            "createdAt": now, "updatedAt": now,
        }
        self.store.insert(doc)
        logger.info("Grievance %s submitted by %s to %s", doc["_id"], user_id, doc["category"])
        return doc

    def _ensure_open(self, grievance: dict):
        if grievance.get("status") in TERMINAL_STATUSES:
            raise InvalidTransition(f"Grievance is already {grievance['status']}")

    def update_status(self, grievance_id: str, new_status: str, actor_id: Any,
                      resolution_remarks: Optional[str] = None,
                      resolved_by: Optional[str] = None) -> dict:
        try:
            requested = GrievanceStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown status: {new_status}")
        grievance = self.store.get(grievance_id)
        actor = normalize_id(actor_id)
        if actor != grievance.get("assignedTo") and not self.directory.can_manage(actor, grievance.get("category")):
            raise PermissionDenied("Only the assigned staff or a department admin can update this grievance")
        self._ensure_open(grievance)

        set_fields: Dict[str, Any] = {}
        if resolution_remarks is not None:
            set_fields["resolutionRemarks"] = resolution_remarks
        if resolved_by is not None:
            set_fields["resolvedBy"] = resolved_by

        # Staff only propose a resolution; the submitter confirms it
        if requested in (GrievanceStatus.RESOLVED, GrievanceStatus.VERIFICATION):
            set_fields["status"] = GrievanceStatus.VERIFICATION.value
            set_fields["resolutionProposedAt"] = now_utc()
            set_fields.setdefault("resolvedBy", actor)
        elif requested == GrievanceStatus.ASSIGNED:
            if not grievance.get("assignedTo") or not grievance.get("assignedBy"):
                raise InvalidTransition("Grievance has no assignee; use assign instead")
            set_fields["status"] = requested.value
        else:
            set_fields["status"] = requested.value

        updated = self.store.apply(grievance, set_fields)
        logger.info("Grievance %s: %s -> %s by %s", grievance_id, grievance.get("status"), updated["status"], actor)
        if updated["status"] == GrievanceStatus.VERIFICATION.value:
            subject, html = verification_requested_email(
                updated.get("name"), updated.get("category"), updated.get("resolutionRemarks"),
                self.verification_window_hours)
            _notify(self.notifier, updated.get("email"), subject, html)
        return updated

    def verify_resolution(self, grievance_id: str, action: str, actor_id: Any,
                          feedback: Optional[str] = None) -> dict:
        try:
            verdict = VerifyAction(str(action).lower())
        except ValueError:
            raise ValidationError("action must be 'accept' or 'reject'")
        grievance = self.store.get(grievance_id)
        if normalize_id(actor_id) != grievance.get("userId"):
            raise PermissionDenied("Only the submitter can verify this resolution")
        if grievance.get("status") != GrievanceStatus.VERIFICATION.value:
            raise InvalidTransition("Grievance is not awaiting verification")

        staff_email = self.directory.email_of(grievance.get("assignedTo"))
        if verdict == VerifyAction.ACCEPT:
            updated = self.store.apply(grievance, {"status": GrievanceStatus.RESOLVED.value})
            logger.info("Grievance %s resolution accepted", grievance_id)
            subject, html = resolution_accepted_email(updated.get("category"), updated.get("_id"))
            _notify(self.notifier, staff_email, subject, html)
            return updated

        # Reopened, still routed to the same staff
        updated = self.store.apply(grievance, {
            "status": GrievanceStatus.PENDING.value, "verificationFeedback": feedback})
        logger.info("Grievance %s resolution rejected; reopened", grievance_id)
        recipients = _unique_emails([staff_email, self.directory.email_of(grievance.get("assignedBy"))])
        subject, html = resolution_rejected_email(updated.get("category"), updated.get("_id"), feedback)
        _notify(self.notifier, recipients, subject, html)
        return updated

    def request_extension(self, grievance_id: str, requested_date: Any, reason: str,
                          actor_id: Any) -> dict:
        grievance = self.store.get(grievance_id)
        if not grievance.get("assignedTo"):
            raise InvalidTransition("Grievance is not assigned")
        if normalize_id(actor_id) != grievance["assignedTo"]:
            raise PermissionDenied("Only the assigned staff can request an extension")
        self._ensure_open(grievance)
        requested_at = parse_date(requested_date, "requestedDate")
        updated = self.store.apply(grievance, {"extensionRequest": {
            "requestedDate": requested_at, "reason": reason or "",
            "status": ExtensionStatus.PENDING.value}})
        logger.info("Extension to %s requested on %s", requested_at.date(), grievance_id)
        return updated

    def resolve_extension(self, grievance_id: str, action: str, actor_id: Any) -> dict:
        try:
            decision = ExtensionAction(str(action).lower())
        except ValueError:
            raise ValidationError("action must be 'approve' or 'reject'")
        grievance = self.store.get(grievance_id)
        if not self.directory.can_manage(actor_id, grievance.get("category")):
            raise PermissionDenied("Only a department admin can resolve extension requests")
        self._ensure_open(grievance)
        request = grievance.get("extensionRequest") or {}
        if request.get("status") != ExtensionStatus.PENDING.value:
            raise InvalidTransition("No pending extension request")

        if decision == ExtensionAction.APPROVE:
            set_fields = {"deadlineDate": request.get("requestedDate"),
                          "extensionRequest.status": ExtensionStatus.APPROVED.value}
        else:
            set_fields = {"extensionRequest.status": ExtensionStatus.REJECTED.value}
        updated = self.store.apply(grievance, set_fields)
        outcome = updated["extensionRequest"]["status"]
        logger.info("Extension on %s %s", grievance_id, outcome.lower())
        subject, html = extension_outcome_email(
            updated.get("category"), outcome, as_utc(updated.get("deadlineDate")))
        _notify(self.notifier, self.directory.email_of(updated.get("assignedTo")), subject, html)
        return updated

    def rate(self, grievance_id: str, actor_id: Any, stars: int,
             feedback: Optional[str] = None) -> dict:
        if not isinstance(stars, int) or isinstance(stars, bool) or stars < 1 or stars > 5:
            raise ValidationError("Invalid rating")
        grievance = self.store.get(grievance_id)
        if normalize_id(actor_id) != grievance.get("userId"):
            raise PermissionDenied("You cannot rate this grievance")
        if grievance.get("status") != GrievanceStatus.RESOLVED.value:
            raise InvalidTransition("Grievance not resolved yet")
        if grievance.get("isRated"):
            raise InvalidTransition("Already rated")
        return self.store.apply(grievance, {
            "rating": {"stars": stars, "feedback": feedback, "ratedAt": now_utc()},
            "isRated": True})

    def hide(self, grievance_id: str, actor_id: Any) -> dict:
        actor = normalize_id(actor_id)
        self.store.get(grievance_id)
        return self.store.collection.find_one_and_update(
            {"_id": grievance_id}, {"$addToSet": {"hiddenFor": actor}},
            return_document=ReturnDocument.AFTER)

    def sweep_stale_verifications(self, now: Optional[datetime] = None) -> int:
        """Close grievances whose verification window lapsed without a decision."""
        if not self.auto_resolve:
            logger.info("Verification auto-resolve disabled; sweep skipped")
            return 0
        cutoff = as_utc(now or now_utc()) - timedelta(hours=self.verification_window_hours)
        awaiting = self.store.collection.find(
            {"status": GrievanceStatus.VERIFICATION.value}, {"resolutionProposedAt": 1})
        stale = [g["_id"] for g in awaiting
                 if g.get("resolutionProposedAt") and as_utc(g["resolutionProposedAt"]) < cutoff]
        if not stale:
            return 0
        result = self.store.collection.update_many(
            {"_id": {"$in": stale}, "status": GrievanceStatus.VERIFICATION.value},
            {"$set": {"status": GrievanceStatus.RESOLVED.value, "autoClosed": True,
                      "updatedAt": now_utc()},
             "$inc": {"version": 1}})
        if result.modified_count:
            logger.info("Auto-resolved %d grievances past the %dh verification window",
                        result.modified_count, self.verification_window_hours)
        return result.modified_count

# ---------------------------------------------------------------------------
# Routing / query layer
# ---------------------------------------------------------------------------
class GrievanceQueries:
    def __init__(self, db):
        self.db = db
        self.collection = db.grievances

    def get_all(self) -> List[dict]:
        return list(self.collection.find().sort("createdAt", DESCENDING))

    def get_by_category(self, category: str) -> List[dict]:
        return list(self.collection.find({"category": category.strip()}).sort("createdAt", DESCENDING))

    def get_assigned_to(self, staff_id: Any) -> List[dict]:
        return list(self.collection.find(
            {"assignedTo": normalize_id(staff_id)}, ASSIGNED_PROJECTION
        ).sort("createdAt", DESCENDING))

    def get_by_user(self, user_id: Any) -> List[dict]:
        uid = normalize_id(user_id)
        return list(self.collection.find(
            {"userId": uid, "hiddenFor": {"$nin": [uid]}}).sort("createdAt", DESCENDING))

    def get_detail(self, grievance_id: str) -> dict:
        g = GrievanceStore(self.db).get(grievance_id)
        staff_info = None
        if g.get("assignedTo"):
            staff = self.db.users.find_one({"id": g["assignedTo"]})
            staff_info = {
                "id": g["assignedTo"],
                "name": (staff or {}).get("fullName") or g["assignedTo"],
                "department": g.get("category"),
            }
        return {"id": g["_id"], "name": g.get("name"), "message": g.get("message"),
                "regid": g.get("regid"), "category": g.get("category"),
                "status": g.get("status"), "assignedStaff": staff_info}

# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------
class GrievanceDesk:
    """One database, one notifier, every workflow component wired together."""

    def __init__(self, db, notifier=None, master_admin_id: str = DEFAULT_MASTER_ADMIN_ID,
                 verification_window_hours: int = DEFAULT_VERIFICATION_WINDOW_HOURS,
                 auto_resolve: bool = False):
        self.db = db
        self.directory = StaffDirectory(db, notifier, master_admin_id)
        self.assignments = AssignmentEngine(db, self.directory)
        self.lifecycle = GrievanceLifecycle(db, self.directory, notifier,
                                            verification_window_hours, auto_resolve)
        self.queries = GrievanceQueries(db)
