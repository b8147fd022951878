# Seed data: Users (students, staff, department admins, master admin)

from .config import now_utc, pwd_context, MASTER_ADMIN_ID

# ---------------------------------------------------------------------------
# Raw user definitions
# ---------------------------------------------------------------------------
USERS = [
    # ---- Master admin ----
    {"id": MASTER_ADMIN_ID, "password": "master123",
     "fullName": "Dr. Meera Kapoor, Registrar", "email": "registrar@university.edu",
     "phone": "9810000001", "role": "admin", "department": None},

    # ---- Staff (department heads and team members) ----
    {"id": "EMP101", "password": "staff123",
     "fullName": "Prof. Arvind Rao", "email": "arvind.rao@university.edu",
     "phone": "9810000101", "role": "staff", "department": "Examination"},

    {"id": "EMP102", "password": "staff123",
     "fullName": "Ms. Kavita Sharma", "email": "kavita.sharma@university.edu",
     "phone": "9810000102", "role": "staff", "department": "Examination"},

    {"id": "EMP201", "password": "staff123",
     "fullName": "Mr. Rohit Verma", "email": "rohit.verma@university.edu",
     "phone": "9810000201", "role": "staff", "department": "Accounts"},

    {"id": "EMP202", "password": "staff123",
     "fullName": "Ms. Neha Joshi", "email": "neha.joshi@university.edu",
     "phone": "9810000202", "role": "staff", "department": "Accounts"},

    {"id": "EMP301", "password": "staff123",
     "fullName": "Dr. Sunil Menon", "email": "sunil.menon@university.edu",
     "phone": "9810000301", "role": "staff", "department": "Student Welfare"},

    {"id": "EMP999", "password": "staff123",
     "fullName": "Mr. Ajay Singh", "email": "ajay.singh@university.edu",
     "phone": "9810000999", "role": "staff", "department": None},

    # ---- Students ----
    {"id": "2021BTCS001", "password": "student123",
     "fullName": "Aarav Gupta", "email": "aarav.gupta@student.university.edu",
     "phone": "9900000001", "role": "student", "program": "B.Tech CSE"},

    {"id": "2022MBA014", "password": "student123",
     "fullName": "Isha Nair", "email": "isha.nair@student.university.edu",
     "phone": "9900000002", "role": "student", "program": "MBA"},

    {"id": "2023LLB007", "password": "student123",
     "fullName": "Kabir Malhotra", "email": "kabir.malhotra@student.university.edu",
     "phone": "9900000003", "role": "student", "program": "BA LLB"},
]

# Department roles: (staff id, department, is head)
STAFF_ROLES = [
    ("EMP101", "Examination", True),
    ("EMP102", "Examination", False),
    ("EMP201", "Accounts", True),
    ("EMP202", "Accounts", False),
    ("EMP301", "Student Welfare", True),
]

# ---------------------------------------------------------------------------
# Import functions
# ---------------------------------------------------------------------------
async def import_users(db) -> dict[str, dict]:
    """Insert seed users into MongoDB. Returns {id: user_doc} mapping."""
    print("\n  Importing seed users...")
    users: dict[str, dict] = {}
    for u in USERS:
        user_doc = {
            "id": u["id"],
            "hashed_password": pwd_context.hash(u["password"]),
            "fullName": u["fullName"],
            "email": u["email"],
            "phone": u["phone"],
            "role": u["role"],
            "department": u.get("department"),
            "program": u.get("program"),
            "isMasterAdmin": u["id"] == MASTER_ADMIN_ID,
            "createdAt": now_utc(),
        }
        db.users.insert_one(user_doc)
        users[u["id"]] = user_doc
        print(f"    {u['role']:8s} {u['id']:12s} ({u['fullName']})")
    return users


async def import_staff_roles(db, users: dict[str, dict]) -> int:
    """Create admin_staff records for every department assignment."""
    print("\n  Importing department roles...")
    for staff_id, department, is_head in STAFF_ROLES:
        user = users[staff_id]
        now = now_utc()
        db.admin_staff.insert_one({
            "_id": staff_id,
            "id": staff_id,
            "fullName": user["fullName"],
            "email": user["email"],
            "adminDepartment": department,
            "isDeptAdmin": is_head,
            "createdAt": now,
            "updatedAt": now,
        })
        title = "Admin" if is_head else "Team Member"
        print(f"    {staff_id:8s} {title:12s} {department}")
    return len(STAFF_ROLES)
