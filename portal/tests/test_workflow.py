"""
Workflow engine tests: assignment rules, the lifecycle state machine,
extensions, ratings and the verification sweep, run directly against
GrievanceDesk on mongomock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from grievance_workflow import (
    GrievanceDesk, GrievanceStatus, ValidationError, NotFound, PermissionDenied,
    InvalidAssignment, InvalidTransition, Conflict, as_utc,
)
from conftest import (
    MASTER, EXAM_HEAD, ACCOUNTS_HEAD, EXAM_STAFF, FREE_STAFF, STUDENT, OTHER_STUDENT,
    FailingNotifier,
)


def _assigned(desk, submit, **kwargs):
    g = submit(**kwargs)
    return desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD).grievance


def _in_verification(desk, submit):
    g = _assigned(desk, submit)
    return desk.lifecycle.update_status(g["_id"], "Resolved", EXAM_STAFF, "Fixed it")


# ═══════════════════════════════════════════════════════════════════════════════
# SUBMISSION
# ═══════════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_new_grievance_starts_pending_and_unassigned(self, submit):
        g = submit()
        assert g["status"] == "Pending"
        assert g["assignedTo"] is None
        assert g["extensionRequest"]["status"] == "None"
        assert g["version"] == 0

    def test_missing_program_rejected(self, desk):
        with pytest.raises(ValidationError, match="Student program or category missing"):
            desk.lifecycle.submit({"userId": STUDENT, "category": "Accounts", "message": "x"})

    def test_missing_category_rejected(self, desk):
        with pytest.raises(ValidationError):
            desk.lifecycle.submit({"userId": STUDENT, "studentProgram": "MBA", "message": "x"})

    def test_unknown_category_rejected(self, submit):
        with pytest.raises(ValidationError, match="Unknown category"):
            submit(category="Parking")

    def test_category_round_trip(self, desk, submit):
        g = submit(category="Accounts")
        assert [x["_id"] for x in desk.queries.get_by_category("Accounts")] == [g["_id"]]
        assert desk.queries.get_by_category("Examination") == []


# ═══════════════════════════════════════════════════════════════════════════════
# ASSIGNMENT
# ═══════════════════════════════════════════════════════════════════════════════

class TestAssign:
    def test_head_assigns_own_category(self, desk, submit):
        g = submit()
        result = desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD)
        assert result.warning is None
        assert result.grievance["status"] == "Assigned"
        assert result.grievance["assignedTo"] == EXAM_STAFF
        assert result.grievance["assignedBy"] == EXAM_HEAD
        assert result.grievance["assignedRole"] == "staff"
        assert result.grievance["version"] == 1

    def test_master_assigns_any_category(self, desk, submit):
        g = submit(category="School of Law")
        result = desk.assignments.assign(g["_id"], FREE_STAFF, MASTER)
        assert result.grievance["assignedBy"] == MASTER

    def test_staff_ids_are_normalized(self, desk, submit):
        g = submit()
        result = desk.assignments.assign(g["_id"], " stf1 ", "adm1")
        assert result.grievance["assignedTo"] == EXAM_STAFF
        assert result.grievance["assignedBy"] == EXAM_HEAD

    def test_head_of_other_department_denied(self, desk, submit):
        g = submit()
        with pytest.raises(PermissionDenied):
            desk.assignments.assign(g["_id"], EXAM_STAFF, ACCOUNTS_HEAD)

    def test_team_member_cannot_assign(self, desk, submit):
        g = submit()
        with pytest.raises(PermissionDenied):
            desk.assignments.assign(g["_id"], FREE_STAFF, EXAM_STAFF)

    @pytest.mark.parametrize("admin", [MASTER, EXAM_HEAD])
    def test_self_assignment_always_fails(self, desk, submit, admin):
        g = submit()
        with pytest.raises(InvalidAssignment):
            desk.assignments.assign(g["_id"], STUDENT, admin)

    def test_unknown_staff(self, desk, submit):
        g = submit()
        with pytest.raises(NotFound):
            desk.assignments.assign(g["_id"], "GHOST", EXAM_HEAD)

    def test_unknown_grievance(self, desk):
        with pytest.raises(NotFound):
            desk.assignments.assign("missing", EXAM_STAFF, EXAM_HEAD)

    def test_terminal_grievance_cannot_be_reassigned(self, desk, submit):
        g = submit()
        desk.lifecycle.update_status(g["_id"], "Rejected", EXAM_HEAD)
        with pytest.raises(InvalidTransition):
            desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD)

    def test_deadline_before_submission_warns_but_assigns(self, desk, submit):
        g = submit()
        result = desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, "2025-01-10")
        assert result.warning is not None
        assert "before the grievance was submitted" in result.warning
        assert result.grievance["status"] == "Assigned"
        assert as_utc(result.grievance["deadlineDate"]).date().isoformat() == "2025-01-10"

    def test_future_deadline_has_no_warning(self, desk, submit):
        g = submit()
        deadline = (datetime.now(timezone.utc) + timedelta(days=7)).date().isoformat()
        result = desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, deadline)
        assert result.warning is None

    def test_unparseable_deadline(self, desk, submit):
        g = submit()
        with pytest.raises(ValidationError) as exc:
            desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, "next tuesday")
        assert exc.value.kind == "InvalidDeadline"

    def test_offset_deadline_compares_in_callers_calendar(self, desk, submit, mongo_db):
        g = submit()
        # Submitted 05:30 on the 10th in IST
        mongo_db.grievances.update_one(
            {"_id": g["_id"]}, {"$set": {"createdAt": datetime(2025, 1, 10, tzinfo=timezone.utc)}})
        result = desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, "2025-01-10T02:00+05:30")
        assert result.warning is None
        assert as_utc(result.grievance["deadlineDate"]) == datetime(2025, 1, 9, 20, 30, tzinfo=timezone.utc)

    def test_offset_deadline_on_previous_local_day_warns(self, desk, submit, mongo_db):
        g = submit()
        mongo_db.grievances.update_one(
            {"_id": g["_id"]}, {"$set": {"createdAt": datetime(2025, 1, 10, tzinfo=timezone.utc)}})
        result = desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, "2025-01-09T23:00+05:30")
        assert "2025-01-09" in result.warning
        assert "2025-01-10" in result.warning

    def test_stale_version_conflicts(self, desk, submit, mongo_db):
        g = submit()
        # Another writer bumps the version after our read
        mongo_db.grievances.update_one({"_id": g["_id"]}, {"$inc": {"version": 1}})
        with pytest.raises(Conflict):
            desk.assignments.store.apply(g, {"status": "In Progress"})

    def test_assignment_sends_no_notification(self, desk, submit, notifier):
        _assigned(desk, submit)
        assert notifier.sent == []


# ═══════════════════════════════════════════════════════════════════════════════
# STATUS TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestUpdateStatus:
    def test_resolved_is_redirected_to_verification(self, desk, submit):
        g = _in_verification(desk, submit)
        assert g["status"] == "Verification"
        assert g["resolutionProposedAt"] is not None
        assert g["resolutionRemarks"] == "Fixed it"
        assert g["resolvedBy"] == EXAM_STAFF

    def test_entering_verification_notifies_student(self, desk, submit, notifier):
        _in_verification(desk, submit)
        assert len(notifier.sent) == 1
        assert notifier.sent[0]["to"] == ["asha@student.uni.test"]
        assert "Please Verify" in notifier.sent[0]["subject"]
        assert "36 hours" in notifier.sent[0]["html"]

    def test_in_progress_by_assignee(self, desk, submit):
        g = _assigned(desk, submit)
        updated = desk.lifecycle.update_status(g["_id"], "In Progress", EXAM_STAFF)
        assert updated["status"] == "In Progress"

    def test_outsider_cannot_update(self, desk, submit):
        g = _assigned(desk, submit)
        with pytest.raises(PermissionDenied):
            desk.lifecycle.update_status(g["_id"], "In Progress", FREE_STAFF)

    def test_assigned_without_assignee_fails(self, desk, submit):
        g = submit()
        with pytest.raises(InvalidTransition):
            desk.lifecycle.update_status(g["_id"], "Assigned", EXAM_HEAD)

    def test_unknown_status(self, desk, submit):
        g = submit()
        with pytest.raises(ValidationError):
            desk.lifecycle.update_status(g["_id"], "Closed", EXAM_HEAD)

    def test_terminal_is_final(self, desk, submit):
        g = submit()
        desk.lifecycle.update_status(g["_id"], "Rejected", EXAM_HEAD, "Out of scope")
        with pytest.raises(InvalidTransition):
            desk.lifecycle.update_status(g["_id"], "In Progress", EXAM_HEAD)

    def test_failing_notifier_does_not_block_transition(self, mongo_db, submit):
        desk = GrievanceDesk(mongo_db, FailingNotifier(), master_admin_id=MASTER)
        g = submit()
        desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD)
        updated = desk.lifecycle.update_status(g["_id"], "Resolved", EXAM_STAFF, "Done")
        assert updated["status"] == "Verification"

    def test_assigned_always_has_assignee(self, desk, submit, mongo_db):
        for category in ("Examination", "Accounts"):
            g = submit(category=category)
            admin = EXAM_HEAD if category == "Examination" else ACCOUNTS_HEAD
            desk.assignments.assign(g["_id"], FREE_STAFF, admin)
        for g in mongo_db.grievances.find({"status": "Assigned"}):
            assert g["assignedTo"] is not None
            assert g["assignedBy"] is not None


# ═══════════════════════════════════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestVerifyResolution:
    def test_accept_resolves(self, desk, submit, notifier):
        g = _in_verification(desk, submit)
        updated = desk.lifecycle.verify_resolution(g["_id"], "accept", STUDENT)
        assert updated["status"] == "Resolved"
        assert notifier.sent[-1]["to"] == ["exam.clerk@uni.test"]
        assert "Accepted" in notifier.sent[-1]["subject"]

    def test_reject_reopens_and_keeps_assignee(self, desk, submit, notifier):
        g = _in_verification(desk, submit)
        updated = desk.lifecycle.verify_resolution(g["_id"], "reject", STUDENT, "Not fixed")
        assert updated["status"] == "Pending"
        assert updated["assignedTo"] == EXAM_STAFF
        assert updated["verificationFeedback"] == "Not fixed"
        assert sorted(notifier.sent[-1]["to"]) == ["exam.clerk@uni.test", "exam.head@uni.test"]

    def test_reject_deduplicates_recipients(self, desk, submit, notifier):
        g = submit()
        desk.assignments.assign(g["_id"], EXAM_HEAD, MASTER)
        desk.lifecycle.update_status(g["_id"], "Resolved", EXAM_HEAD, "Done")
        # Self-assigned by the head: staff and assigning admin share an inbox
        desk.assignments.store.collection.update_one({"_id": g["_id"]}, {"$set": {"assignedBy": EXAM_HEAD}})
        desk.lifecycle.verify_resolution(g["_id"], "reject", STUDENT, "No")
        assert notifier.sent[-1]["to"] == ["exam.head@uni.test"]

    def test_only_submitter_can_verify(self, desk, submit):
        g = _in_verification(desk, submit)
        with pytest.raises(PermissionDenied):
            desk.lifecycle.verify_resolution(g["_id"], "accept", OTHER_STUDENT)

    def test_must_be_in_verification(self, desk, submit):
        g = _assigned(desk, submit)
        with pytest.raises(InvalidTransition):
            desk.lifecycle.verify_resolution(g["_id"], "accept", STUDENT)

    def test_unknown_action(self, desk, submit):
        g = _in_verification(desk, submit)
        with pytest.raises(ValidationError):
            desk.lifecycle.verify_resolution(g["_id"], "maybe", STUDENT)

    def test_example_scenario(self, desk, submit):
        g = submit(category="Examination")
        assigned = desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, "2025-01-10").grievance
        assert assigned["status"] == "Assigned"
        proposed = desk.lifecycle.update_status(g["_id"], "Resolved", EXAM_STAFF, "Fixed it")
        assert proposed["status"] == "Verification"
        reopened = desk.lifecycle.verify_resolution(g["_id"], "reject", STUDENT, "Not fixed")
        assert reopened["status"] == "Pending"
        assert reopened["assignedTo"] == EXAM_STAFF


# ═══════════════════════════════════════════════════════════════════════════════
# EXTENSIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestExtensions:
    def test_request_and_approve(self, desk, submit, notifier):
        g = _assigned(desk, submit)
        requested = desk.lifecycle.request_extension(g["_id"], "2030-03-15", "Need evaluator input", EXAM_STAFF)
        assert requested["extensionRequest"]["status"] == "Pending"
        assert requested["status"] == "Assigned"
        approved = desk.lifecycle.resolve_extension(g["_id"], "approve", EXAM_HEAD)
        assert approved["extensionRequest"]["status"] == "Approved"
        assert as_utc(approved["deadlineDate"]) == as_utc(approved["extensionRequest"]["requestedDate"])
        assert as_utc(approved["deadlineDate"]).date().isoformat() == "2030-03-15"
        assert notifier.sent[-1]["to"] == ["exam.clerk@uni.test"]

    def test_reject_keeps_deadline(self, desk, submit):
        g = submit()
        desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD, "2030-01-01")
        desk.lifecycle.request_extension(g["_id"], "2030-02-01", "", EXAM_STAFF)
        rejected = desk.lifecycle.resolve_extension(g["_id"], "reject", MASTER)
        assert rejected["extensionRequest"]["status"] == "Rejected"
        assert as_utc(rejected["deadlineDate"]).date().isoformat() == "2030-01-01"

    def test_only_assignee_requests(self, desk, submit):
        g = _assigned(desk, submit)
        with pytest.raises(PermissionDenied):
            desk.lifecycle.request_extension(g["_id"], "2030-03-15", "", FREE_STAFF)

    def test_unassigned_cannot_request(self, desk, submit):
        g = submit()
        with pytest.raises(InvalidTransition):
            desk.lifecycle.request_extension(g["_id"], "2030-03-15", "", EXAM_STAFF)

    def test_resolve_requires_pending_request(self, desk, submit):
        g = _assigned(desk, submit)
        with pytest.raises(InvalidTransition):
            desk.lifecycle.resolve_extension(g["_id"], "approve", EXAM_HEAD)

    def test_team_member_cannot_resolve(self, desk, submit):
        g = _assigned(desk, submit)
        desk.lifecycle.request_extension(g["_id"], "2030-03-15", "", EXAM_STAFF)
        with pytest.raises(PermissionDenied):
            desk.lifecycle.resolve_extension(g["_id"], "approve", EXAM_STAFF)


class TestTransitionsWithFailingMail:
    @pytest.fixture
    def failing_desk(self, mongo_db):
        return GrievanceDesk(mongo_db, FailingNotifier(), master_admin_id=MASTER)

    def _verification(self, failing_desk, submit):
        g = submit()
        failing_desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD)
        return failing_desk.lifecycle.update_status(g["_id"], "Resolved", EXAM_STAFF, "Done")

    def test_accept_still_resolves(self, failing_desk, submit):
        g = self._verification(failing_desk, submit)
        assert failing_desk.lifecycle.verify_resolution(g["_id"], "accept", STUDENT)["status"] == "Resolved"

    def test_reject_still_reopens(self, failing_desk, submit):
        g = self._verification(failing_desk, submit)
        updated = failing_desk.lifecycle.verify_resolution(g["_id"], "reject", STUDENT, "Still broken")
        assert updated["status"] == "Pending"
        assert updated["assignedTo"] == EXAM_STAFF

    @pytest.mark.parametrize("action,outcome", [("approve", "Approved"), ("reject", "Rejected")])
    def test_extension_decision_still_applies(self, failing_desk, submit, action, outcome):
        g = submit()
        failing_desk.assignments.assign(g["_id"], EXAM_STAFF, EXAM_HEAD)
        failing_desk.lifecycle.request_extension(g["_id"], "2030-03-15", "", EXAM_STAFF)
        updated = failing_desk.lifecycle.resolve_extension(g["_id"], action, EXAM_HEAD)
        assert updated["extensionRequest"]["status"] == outcome


# ═══════════════════════════════════════════════════════════════════════════════
# RATING, HIDING, SWEEP
# ═══════════════════════════════════════════════════════════════════════════════

class TestRatingAndHide:
    def test_rate_resolved_once(self, desk, submit):
        g = _in_verification(desk, submit)
        desk.lifecycle.verify_resolution(g["_id"], "accept", STUDENT)
        rated = desk.lifecycle.rate(g["_id"], STUDENT, 4, "Helpful")
        assert rated["isRated"] is True
        assert rated["rating"]["stars"] == 4
        with pytest.raises(InvalidTransition, match="Already rated"):
            desk.lifecycle.rate(g["_id"], STUDENT, 5)

    def test_cannot_rate_open_grievance(self, desk, submit):
        g = submit()
        with pytest.raises(InvalidTransition):
            desk.lifecycle.rate(g["_id"], STUDENT, 3)

    @pytest.mark.parametrize("stars", [0, 6, True, False, 4.5])
    def test_invalid_stars(self, desk, submit, stars):
        g = submit()
        with pytest.raises(ValidationError):
            desk.lifecycle.rate(g["_id"], STUDENT, stars)

    def test_hide_removes_from_owner_view_only(self, desk, submit):
        g = submit()
        desk.lifecycle.hide(g["_id"], STUDENT)
        desk.lifecycle.hide(g["_id"], STUDENT)
        assert desk.queries.get_by_user(STUDENT) == []
        assert len(desk.queries.get_by_category("Examination")) == 1
        assert desk.assignments.store.get(g["_id"])["hiddenFor"] == [STUDENT]


class TestVerificationSweep:
    def test_disabled_by_default(self, desk, submit):
        _in_verification(desk, submit)
        assert desk.lifecycle.sweep_stale_verifications() == 0

    def test_closes_only_stale_verifications(self, mongo_db, submit):
        desk = GrievanceDesk(mongo_db, None, master_admin_id=MASTER, auto_resolve=True)
        stale = _in_verification(desk, submit)
        fresh = _in_verification(desk, submit)
        proposed = as_utc(fresh["resolutionProposedAt"])
        mongo_db.grievances.update_one(
            {"_id": stale["_id"]}, {"$set": {"resolutionProposedAt": proposed - timedelta(hours=40)}})
        assert desk.lifecycle.sweep_stale_verifications(now=proposed + timedelta(hours=1)) == 1
        assert desk.assignments.store.get(stale["_id"])["status"] == "Resolved"
        assert desk.assignments.store.get(stale["_id"])["autoClosed"] is True
        assert desk.assignments.store.get(fresh["_id"])["status"] == "Verification"


# ═══════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═══════════════════════════════════════════════════════════════════════════════

class TestQueries:
    def test_newest_first(self, desk, submit, mongo_db):
        first = submit(message="first")
        second = submit(message="second")
        mongo_db.grievances.update_one(
            {"_id": first["_id"]}, {"$set": {"createdAt": datetime(2024, 1, 1, tzinfo=timezone.utc)}})
        ids = [g["_id"] for g in desk.queries.get_all()]
        assert ids == [second["_id"], first["_id"]]

    def test_assigned_projection(self, desk, submit):
        _assigned(desk, submit)
        rows = desk.queries.get_assigned_to(EXAM_STAFF)
        assert len(rows) == 1
        assert "email" not in rows[0]
        assert "phone" not in rows[0]
        assert rows[0]["category"] == "Examination"

    def test_detail_resolves_staff(self, desk, submit):
        g = _assigned(desk, submit)
        detail = desk.queries.get_detail(g["_id"])
        assert detail["assignedStaff"] == {"id": EXAM_STAFF, "name": "Exam Clerk", "department": "Examination"}

    def test_detail_unassigned(self, desk, submit):
        g = submit()
        assert desk.queries.get_detail(g["_id"])["assignedStaff"] is None
