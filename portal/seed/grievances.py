# Seed data: Grievances across statuses and departments
#
# Coverage matrix:
#   Statuses   : Pending, Assigned, In Progress, Verification, Resolved, Rejected
#   Categories : Examination, Accounts, Student Welfare, Admission, School of Law
#   Special    : pending extension request, rated resolution, rejected verification
#                feedback, legacy name-based assignee (see migrate_assignees.py)

from datetime import timedelta

from .config import new_id, now_utc, days_ago

# ---------------------------------------------------------------------------
# Grievance records
# ---------------------------------------------------------------------------
GRIEVANCES = [
    # 1: fresh, unassigned
    {"student": "2021BTCS001", "category": "Examination", "status": "Pending", "age_days": 1,
     "message": "My end-semester marksheet shows absent for Data Structures although I appeared "
                "for the exam on 12 May. Hall ticket attached."},

    # 2: assigned with deadline
    {"student": "2021BTCS001", "category": "Accounts", "status": "Assigned", "age_days": 4,
     "assignedTo": "EMP202", "assignedBy": "EMP201", "deadline_days": 3,
     "message": "Hostel fee paid twice through the portal. Transaction IDs TXN88213 and TXN88214. "
                "Please refund the duplicate payment."},

    # 3: in progress with a pending extension request
    {"student": "2022MBA014", "category": "Examination", "status": "In Progress", "age_days": 9,
     "assignedTo": "EMP102", "assignedBy": "EMP101", "deadline_days": -1,
     "extension": {"days": 5, "reason": "Awaiting answer script from the external evaluator."},
     "message": "Requesting re-evaluation of Marketing Management paper. Expected at least 60 marks."},

    # 4: awaiting student verification
    {"student": "2022MBA014", "category": "Student Welfare", "status": "Verification", "age_days": 6,
     "assignedTo": "EMP301", "assignedBy": "EMP301", "proposed_hours": 10,
     "remarks": "Counselling slot booked for Monday 10 AM with the campus counsellor.",
     "message": "Need access to counselling services; the online booking form keeps failing."},

    # 5: resolved and rated
    {"student": "2023LLB007", "category": "Accounts", "status": "Resolved", "age_days": 20,
     "assignedTo": "EMP202", "assignedBy": "EMP201",
     "remarks": "Scholarship amount credited on 3rd of the month.",
     "rating": {"stars": 5, "feedback": "Quick and clear response."},
     "message": "Merit scholarship for the second semester has not been credited yet."},

    # 6: reopened after the student rejected the resolution
    {"student": "2023LLB007", "category": "Examination", "status": "Pending", "age_days": 12,
     "assignedTo": "EMP102", "assignedBy": "EMP101",
     "verificationFeedback": "Revised grade card still lists the old grade.",
     "message": "Grade for Constitutional Law changed after moderation but the grade card is not updated."},

    # 7: rejected by the department
    {"student": "2021BTCS001", "category": "Admission", "status": "Rejected", "age_days": 30,
     "remarks": "Branch change window closed on 15 July as per academic calendar.",
     "message": "Requesting branch change from CSE to ECE."},

    # 8: legacy record that stored the assignee by name
    {"student": "2023LLB007", "category": "School of Law", "status": "Assigned", "age_days": 15,
     "assignedTo": "Mr. Ajay Singh", "assignedBy": "10001",
     "message": "Moot court room projector has not worked for two weeks."},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
async def import_grievances(db, users: dict[str, dict]) -> list[dict]:
    """Insert seed grievances. Returns the inserted documents."""
    print("\n  Importing seed grievances...")
    inserted: list[dict] = []
    for g in GRIEVANCES:
        student = users[g["student"]]
        created = days_ago(g["age_days"])
        extension = {"requestedDate": None, "reason": "", "status": "None"}
        if g.get("extension"):
            extension = {"requestedDate": now_utc() + timedelta(days=g["extension"]["days"]),
                         "reason": g["extension"]["reason"], "status": "Pending"}
        rating = None
        if g.get("rating"):
            rating = {**g["rating"], "ratedAt": created + timedelta(days=2)}
        doc = {
            "_id": new_id(),
            "userId": student["id"],
            "name": student["fullName"],
            "email": student["email"],
            "phone": student["phone"],
            "regid": student["id"],
            "studentProgram": student["program"],
            "category": g["category"],
            "message": g["message"],
            "attachment": None,
            "assignedTo": g.get("assignedTo"),
            "assignedRole": "staff" if g.get("assignedTo") else None,
            "assignedBy": g.get("assignedBy"),
            "deadlineDate": (now_utc() + timedelta(days=g["deadline_days"])
                             if "deadline_days" in g else None),
            "extensionRequest": extension,
            "status": g["status"],
            "resolvedBy": g.get("assignedTo") if g.get("remarks") else None,
            "resolutionRemarks": g.get("remarks", ""),
            "resolutionProposedAt": (now_utc() - timedelta(hours=g["proposed_hours"])
                                     if "proposed_hours" in g else None),
            "verificationFeedback": g.get("verificationFeedback"),
            "rating": rating,
            "isRated": rating is not None,
            "hiddenFor": [],
            "version": 0,
            "createdAt": created,
            "updatedAt": created,
        }
        db.grievances.insert_one(doc)
        inserted.append(doc)
        print(f"    [{doc['status']:12s}] {doc['category']:16s} {doc['userId']}")
    return inserted
