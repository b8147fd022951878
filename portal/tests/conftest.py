"""
Shared pytest fixtures for the University Grievance Desk test suite.

Provides an in-memory MongoDB (mongomock) seeded with a small university,
a recording notifier, the workflow facade, and an httpx AsyncClient bound to
the FastAPI app with its database and notifier dependencies overridden.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
import httpx
import mongomock

os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-long-enough-for-hs256-signing")

# Ensure the portal modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from grievance_workflow import GrievanceDesk
from grievance_desk import app, limiter, get_db, get_notifier, create_access_token, pwd_context

PASSWORD = "secret123"
_PASSWORD_HASH = pwd_context.hash(PASSWORD)

MASTER = "10001"
EXAM_HEAD = "ADM1"
ACCOUNTS_HEAD = "ADM2"
EXAM_STAFF = "STF1"
FREE_STAFF = "STF2"
STUDENT = "STU1"
OTHER_STUDENT = "STU2"

PEOPLE = [
    {"id": MASTER, "fullName": "Registrar", "email": "registrar@uni.test", "role": "admin",
     "isMasterAdmin": True},
    {"id": EXAM_HEAD, "fullName": "Exam Head", "email": "exam.head@uni.test", "role": "staff",
     "department": "Examination"},
    {"id": ACCOUNTS_HEAD, "fullName": "Accounts Head", "email": "accounts.head@uni.test",
     "role": "staff", "department": "Accounts"},
    {"id": EXAM_STAFF, "fullName": "Exam Clerk", "email": "exam.clerk@uni.test", "role": "staff",
     "department": "Examination"},
    {"id": FREE_STAFF, "fullName": "Floating Staff", "email": "floating@uni.test", "role": "staff"},
    {"id": STUDENT, "fullName": "Asha Student", "email": "asha@student.uni.test", "role": "student",
     "program": "B.Tech CSE", "phone": "9000000001"},
    {"id": OTHER_STUDENT, "fullName": "Ravi Student", "email": "ravi@student.uni.test",
     "role": "student", "program": "MBA"},
]

STAFF_RECORDS = [
    (EXAM_HEAD, "Examination", True),
    (ACCOUNTS_HEAD, "Accounts", True),
    (EXAM_STAFF, "Examination", False),
]


class RecordingNotifier:
    """Captures every send instead of talking to SMTP."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        recipients = [to] if isinstance(to, str) else list(to)
        self.sent.append({"to": recipients, "subject": subject, "html": html})

    def subjects(self):
        return [m["subject"] for m in self.sent]


class FailingNotifier:
    def send(self, to, subject, html):
        raise ConnectionError("SMTP unreachable")


@pytest.fixture
def mongo_db():
    """Fresh in-memory database seeded with users and department roles."""
    db = mongomock.MongoClient().grievance_desk_test
    created = datetime(2024, 6, 1, tzinfo=timezone.utc)
    for person in PEOPLE:
        db.users.insert_one({**person, "hashed_password": _PASSWORD_HASH, "createdAt": created})
    for staff_id, department, is_head in STAFF_RECORDS:
        person = next(p for p in PEOPLE if p["id"] == staff_id)
        db.admin_staff.insert_one({
            "_id": staff_id, "id": staff_id, "fullName": person["fullName"],
            "email": person["email"], "adminDepartment": department, "isDeptAdmin": is_head,
            "createdAt": created, "updatedAt": created,
        })
    return db


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def desk(mongo_db, notifier):
    return GrievanceDesk(mongo_db, notifier, master_admin_id=MASTER)


@pytest.fixture
def submit(desk):
    """Submit a grievance for STU1 (or another student) and return the stored document."""
    def _submit(category="Examination", user_id=STUDENT, message="Marks missing on my result", **extra):
        data = {"userId": user_id, "name": "Asha Student", "email": "asha@student.uni.test",
                "regid": user_id, "studentProgram": "B.Tech CSE", "category": category,
                "message": message, **extra}
        return desk.lifecycle.submit(data)
    return _submit


@pytest_asyncio.fixture
async def client(mongo_db, notifier):
    """In-process httpx AsyncClient against the app, backed by mongomock."""
    # Disable rate limiting during tests so repeated logins aren't throttled
    limiter.enabled = False
    app.dependency_overrides[get_db] = lambda: mongo_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(user_id: str) -> dict:
    """Authorization headers for a seeded user, minted without a login round trip."""
    token = create_access_token({"sub": user_id})
    return {"Authorization": f"Bearer {token}"}
