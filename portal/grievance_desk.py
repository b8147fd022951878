# University Grievance Desk
# FastAPI + MongoDB (GridFS attachments) + SMTP notifications

import os
import uuid
import asyncio
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor

import uvicorn
from fastapi import FastAPI, HTTPException, Depends, File, UploadFile, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer
from starlette.requests import Request
from pydantic import BaseModel, Field
from pymongo import MongoClient, ASCENDING
from gridfs import GridFSBucket
from gridfs.errors import NoFile
from jose import JWTError, jwt
from passlib.context import CryptContext
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from grievance_mailer import MailNotifier
from grievance_workflow import (
    GrievanceDesk, GrievanceStatus, ExtensionStatus, RoleAction, WorkflowError,
    PermissionDenied, NotFound, ValidationError, normalize_id, now_utc,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from dotenv import load_dotenv
# Try multiple .env locations: next to this file, one level up, then cwd
_script_dir = Path(__file__).resolve().parent
_env_candidates = [
    _script_dir / ".env",
    _script_dir.parent / ".env",
    Path.cwd() / ".env",
]
for _env_path in _env_candidates:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "grievance_desk")
JWT_SECRET = os.getenv("JWT_SECRET", "")
if not JWT_SECRET or len(JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "8"))
MASTER_ADMIN_ID = os.getenv("MASTER_ADMIN_ID", "10001")
VERIFICATION_WINDOW_HOURS = int(os.getenv("VERIFICATION_WINDOW_HOURS", "36"))
VERIFICATION_AUTO_RESOLVE = _env_flag("VERIFICATION_AUTO_RESOLVE")
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_FROM = os.getenv("SMTP_FROM", SMTP_USER or "")
SMTP_TLS = _env_flag("SMTP_TLS", "true")
UPLOAD_MAX_BYTES = int(os.getenv("UPLOAD_MAX_BYTES", str(10 * 1024 * 1024)))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class LoginRequest(BaseModel):
    id: str = Field(..., max_length=50)
    password: str = Field(..., max_length=72)

class UserResponse(BaseModel):
    id: str
    fullName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str
    department: Optional[str] = None
    isMasterAdmin: bool = False

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class GrievanceCreate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=20)
    regid: Optional[str] = Field(None, max_length=50)
    studentProgram: Optional[str] = Field(None, max_length=200)
    category: Optional[str] = Field(None, max_length=200)
    message: str = Field(..., max_length=5000)
    attachment: Optional[str] = Field(None, max_length=500)

class ExtensionRequestOut(BaseModel):
    requestedDate: Optional[datetime] = None
    reason: Optional[str] = ""
    status: ExtensionStatus = ExtensionStatus.NONE

class RatingOut(BaseModel):
    stars: int
    feedback: Optional[str] = None
    ratedAt: Optional[datetime] = None

class GrievanceResponse(BaseModel):
    id: str
    userId: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    regid: Optional[str] = None
    studentProgram: Optional[str] = None
    category: str
    message: Optional[str] = None
    attachment: Optional[str] = None
    assignedTo: Optional[str] = None
    assignedRole: Optional[str] = None
    assignedBy: Optional[str] = None
    deadlineDate: Optional[datetime] = None
    extensionRequest: Optional[ExtensionRequestOut] = None
    status: GrievanceStatus
    resolvedBy: Optional[str] = None
    resolutionRemarks: Optional[str] = None
    resolutionProposedAt: Optional[datetime] = None
    verificationFeedback: Optional[str] = None
    rating: Optional[RatingOut] = None
    isRated: bool = False
    createdAt: datetime
    updatedAt: datetime
    warning: Optional[str] = None

class AssignedGrievanceResponse(BaseModel):
    id: str
    name: Optional[str] = None
    regid: Optional[str] = None
    category: str
    message: Optional[str] = None
    status: GrievanceStatus
    deadlineDate: Optional[datetime] = None
    extensionRequest: Optional[ExtensionRequestOut] = None
    attachment: Optional[str] = None
    resolutionRemarks: Optional[str] = None
    createdAt: datetime

class AssignedStaffInfo(BaseModel):
    id: str
    name: str
    department: Optional[str] = None

class GrievanceDetailResponse(BaseModel):
    id: str
    name: Optional[str] = None
    message: Optional[str] = None
    regid: Optional[str] = None
    category: str
    status: GrievanceStatus
    assignedStaff: Optional[AssignedStaffInfo] = None

class AssignRequest(BaseModel):
    staffId: str = Field(..., max_length=50)
    deadline: Optional[str] = Field(None, max_length=40)

class StatusUpdate(BaseModel):
    status: str = Field(..., max_length=40)
    resolutionRemarks: Optional[str] = Field(None, max_length=5000)
    resolvedBy: Optional[str] = Field(None, max_length=200)

class VerifyRequest(BaseModel):
    action: str = Field(..., max_length=20)
    feedback: Optional[str] = Field(None, max_length=2000)

class ExtensionCreate(BaseModel):
    requestedDate: str = Field(..., max_length=40)
    reason: str = Field("", max_length=2000)

class ExtensionDecision(BaseModel):
    action: str = Field(..., max_length=20)

class RatingRequest(BaseModel):
    stars: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)

class StaffRecordResponse(BaseModel):
    id: str
    fullName: Optional[str] = None
    email: Optional[str] = None
    adminDepartment: str = ""
    isDeptAdmin: bool = False
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

class AdminStatusResponse(BaseModel):
    isAdmin: bool
    isDeptAdmin: bool
    isMasterAdmin: bool
    departments: List[str]
    adminDepartment: str

class RoleChangeRequest(BaseModel):
    targetStaffId: str = Field(..., max_length=50)
    action: RoleAction
    department: Optional[str] = Field(None, max_length=200)

class RoleChangeResponse(BaseModel):
    message: str
    staff: Optional[StaffRecordResponse] = None
    modifiedGrievanceCount: Optional[int] = None

class TransferOwnershipRequest(BaseModel):
    newMasterId: str = Field(..., max_length=50)

class ChatMessageCreate(BaseModel):
    grievanceId: str = Field(..., max_length=64)
    message: str = Field("", max_length=5000)
    fileData: Optional[Dict[str, Any]] = None

class ChatMessageResponse(BaseModel):
    id: str
    grievanceId: str
    senderId: str
    senderRole: str
    message: str
    messageType: str = "text"
    fileData: Optional[Dict[str, Any]] = None
    createdAt: datetime

class FileUploadResponse(BaseModel):
    filename: str
    fileId: str
    contentType: Optional[str] = None
    originalName: Optional[str] = None

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="University Grievance Desk")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS, allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])

db_client = None
db = None
executor = ThreadPoolExecutor(max_workers=10)
# Mail gets its own workers; a stalled SMTP server must never starve database calls
mail_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="mail")
notifier = MailNotifier(SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_FROM,
                        use_tls=SMTP_TLS, executor=mail_executor)

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_db()
    yield
    if db_client:
        db_client.close()

app.router.lifespan_context = lifespan

async def startup_db():
    global db_client, db
    db_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = db_client[MONGODB_DB]
    desk = GrievanceDesk(db, master_admin_id=MASTER_ADMIN_ID)
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, desk.assignments.store.ensure_indexes)
    await loop.run_in_executor(executor, lambda: db.users.create_index([("id", 1)], unique=True))
    await loop.run_in_executor(executor, db.admin_staff.create_index, "adminDepartment")
    await loop.run_in_executor(executor, lambda: db.messages.create_index([("grievanceId", 1), ("createdAt", 1)]))
    await loop.run_in_executor(executor, desk.directory.ensure_master_admin)
    logger.info("Database initialized: %s", MONGODB_DB)

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_db():
    return db

async def get_notifier():
    return notifier

async def get_desk(db=Depends(get_db), notifier=Depends(get_notifier)) -> GrievanceDesk:
    return GrievanceDesk(db, notifier, master_admin_id=MASTER_ADMIN_ID,
                         verification_window_hours=VERIFICATION_WINDOW_HOURS,
                         auto_resolve=VERIFICATION_AUTO_RESOLVE)

async def run_blocking(fn, *args):
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, fn, *args)

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return pwd_context.hash(password)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)):
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = await run_blocking(db.users.find_one, {"id": user_id})
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user

def user_to_response(user: dict) -> UserResponse:
    if user.get("role") == "student":
        department = user.get("program")
    else:
        department = user.get("department") or user.get("adminDepartment")
    return UserResponse(
        id=user["id"], fullName=user.get("fullName"), email=user.get("email"),
        phone=user.get("phone"), role=user.get("role", "student"),
        department=department or "General", isMasterAdmin=bool(user.get("isMasterAdmin")))

def grievance_to_response(g: dict, warning: Optional[str] = None) -> GrievanceResponse:
    return GrievanceResponse(**{**g, "id": g["_id"], "warning": warning})

def staff_to_response(record: dict) -> StaffRecordResponse:
    return StaffRecordResponse(**{**record, "id": record.get("id") or record["_id"]})

def _can_view(desk: GrievanceDesk, user: dict, g: dict) -> bool:
    uid = user["id"]
    return (uid == g.get("userId") or uid == g.get("assignedTo")
            or desk.directory.is_master(uid)
            or desk.directory.belongs_to(uid, g.get("category")))

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/auth/login", response_model=TokenResponse)
@limiter.limit("5/minute")
async def login(request: Request, form: LoginRequest, db=Depends(get_db)):
    user = await run_blocking(db.users.find_one, {"id": form.id.strip().upper()})
    if not user or not user.get("hashed_password") or not verify_password(form.password, user["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": user["id"], "role": user.get("role")})
    return TokenResponse(access_token=token, user=user_to_response(user))

@app.get("/auth/me", response_model=UserResponse)
async def get_me(user=Depends(get_current_user)):
    return user_to_response(user)

@app.get("/auth/user/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    target = await run_blocking(db.users.find_one, {"id": normalize_id(user_id)})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return user_to_response(target)

# ---------------------------------------------------------------------------
# GRIEVANCE ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/grievances", response_model=GrievanceResponse, status_code=201)
async def create_grievance(data: GrievanceCreate, user=Depends(get_current_user),
                           desk: GrievanceDesk = Depends(get_desk)):
    payload = data.model_dump()
    # Submitter identity comes from the token, contact details default to the directory entry
    payload["userId"] = user["id"]
    payload["name"] = payload.get("name") or user.get("fullName")
    payload["email"] = payload.get("email") or user.get("email")
    payload["phone"] = payload.get("phone") or user.get("phone")
    payload["studentProgram"] = payload.get("studentProgram") or user.get("program")
    try:
        g = await run_blocking(desk.lifecycle.submit, payload)
    except WorkflowError:
        raise
    except Exception as e:
        logger.error("Error creating grievance: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")
    return grievance_to_response(g)

@app.get("/grievances", response_model=List[GrievanceResponse])
async def get_all_grievances(user=Depends(get_current_user), desk: GrievanceDesk = Depends(get_desk)):
    if not await run_blocking(desk.directory.is_master, user["id"]):
        raise PermissionDenied("Only the master admin can view every grievance")
    grievances = await run_blocking(desk.queries.get_all)
    return [grievance_to_response(g) for g in grievances]

@app.get("/grievances/category/{category}", response_model=List[GrievanceResponse])
async def get_category_grievances(category: str, user=Depends(get_current_user),
                                  desk: GrievanceDesk = Depends(get_desk)):
    category = category.strip()
    if not await run_blocking(desk.directory.can_manage, user["id"], category):
        raise PermissionDenied(f"You do not manage the {category} inbox")
    grievances = await run_blocking(desk.queries.get_by_category, category)
    return [grievance_to_response(g) for g in grievances]

@app.get("/grievances/assigned/{staff_id}", response_model=List[AssignedGrievanceResponse])
async def get_assigned_grievances(staff_id: str, user=Depends(get_current_user),
                                  desk: GrievanceDesk = Depends(get_desk)):
    staff_id = normalize_id(staff_id)
    if staff_id != user["id"] and not await run_blocking(desk.directory.manages_staff, user["id"], staff_id):
        raise PermissionDenied("You can only view your own assignments")
    grievances = await run_blocking(desk.queries.get_assigned_to, staff_id)
    return [AssignedGrievanceResponse(**g, id=g["_id"]) for g in grievances]

@app.get("/grievances/user/{user_id}", response_model=List[GrievanceResponse])
async def get_user_grievances(user_id: str, user=Depends(get_current_user),
                              desk: GrievanceDesk = Depends(get_desk)):
    user_id = normalize_id(user_id)
    if user_id != user["id"] and not await run_blocking(desk.directory.is_master, user["id"]):
        raise PermissionDenied("You can only view your own grievances")
    grievances = await run_blocking(desk.queries.get_by_user, user_id)
    return [grievance_to_response(g) for g in grievances]

@app.get("/grievances/{grievance_id}/detail", response_model=GrievanceDetailResponse)
async def get_grievance_detail(grievance_id: str, user=Depends(get_current_user),
                               desk: GrievanceDesk = Depends(get_desk)):
    g = await run_blocking(desk.assignments.store.get, grievance_id)
    if not await run_blocking(_can_view, desk, user, g):
        raise PermissionDenied("Access denied")
    return GrievanceDetailResponse(**await run_blocking(desk.queries.get_detail, grievance_id))

@app.put("/grievances/{grievance_id}/assign", response_model=GrievanceResponse)
async def assign_grievance(grievance_id: str, req: AssignRequest, user=Depends(get_current_user),
                           desk: GrievanceDesk = Depends(get_desk)):
    result = await run_blocking(desk.assignments.assign, grievance_id, req.staffId, user["id"], req.deadline)
    return grievance_to_response(result.grievance, warning=result.warning)

@app.put("/grievances/{grievance_id}/status", response_model=GrievanceResponse)
async def update_status(grievance_id: str, req: StatusUpdate, user=Depends(get_current_user),
                        desk: GrievanceDesk = Depends(get_desk)):
    g = await run_blocking(desk.lifecycle.update_status, grievance_id, req.status, user["id"],
                           req.resolutionRemarks, req.resolvedBy)
    return grievance_to_response(g)

@app.post("/grievances/{grievance_id}/verify", response_model=GrievanceResponse)
async def verify_resolution(grievance_id: str, req: VerifyRequest, user=Depends(get_current_user),
                            desk: GrievanceDesk = Depends(get_desk)):
    g = await run_blocking(desk.lifecycle.verify_resolution, grievance_id, req.action, user["id"], req.feedback)
    return grievance_to_response(g)

@app.post("/grievances/{grievance_id}/extension", response_model=GrievanceResponse)
async def request_extension(grievance_id: str, req: ExtensionCreate, user=Depends(get_current_user),
                            desk: GrievanceDesk = Depends(get_desk)):
    g = await run_blocking(desk.lifecycle.request_extension, grievance_id, req.requestedDate,
                           req.reason, user["id"])
    return grievance_to_response(g)

@app.post("/grievances/{grievance_id}/extension/resolve", response_model=GrievanceResponse)
async def resolve_extension(grievance_id: str, req: ExtensionDecision, user=Depends(get_current_user),
                            desk: GrievanceDesk = Depends(get_desk)):
    g = await run_blocking(desk.lifecycle.resolve_extension, grievance_id, req.action, user["id"])
    return grievance_to_response(g)

@app.post("/grievances/{grievance_id}/rate", response_model=GrievanceResponse)
async def rate_grievance(grievance_id: str, req: RatingRequest, user=Depends(get_current_user),
                         desk: GrievanceDesk = Depends(get_desk)):
    g = await run_blocking(desk.lifecycle.rate, grievance_id, user["id"], req.stars, req.feedback)
    return grievance_to_response(g)

@app.put("/grievances/{grievance_id}/hide")
async def hide_grievance(grievance_id: str, user=Depends(get_current_user),
                         desk: GrievanceDesk = Depends(get_desk)):
    await run_blocking(desk.lifecycle.hide, grievance_id, user["id"])
    return {"detail": "Grievance removed from your view"}

# ---------------------------------------------------------------------------
# STAFF DIRECTORY ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/admin-staff", response_model=List[StaffRecordResponse])
async def list_admin_staff(department: Optional[str] = Query(None, max_length=200),
                           user=Depends(get_current_user), desk: GrievanceDesk = Depends(get_desk)):
    records = await run_blocking(desk.directory.list_staff, department)
    return [staff_to_response(r) for r in records]

@app.get("/admin-staff/check/{staff_id}", response_model=AdminStatusResponse)
async def check_admin_status(staff_id: str, user=Depends(get_current_user),
                             desk: GrievanceDesk = Depends(get_desk)):
    return AdminStatusResponse(**await run_blocking(desk.directory.check_admin_status, staff_id))

@app.get("/admin-staff/department/{department}", response_model=List[StaffRecordResponse])
async def department_staff(department: str, user=Depends(get_current_user),
                           desk: GrievanceDesk = Depends(get_desk)):
    allowed = await run_blocking(
        lambda: desk.directory.is_master(user["id"]) or desk.directory.belongs_to(user["id"], department))
    if not allowed:
        raise PermissionDenied(f"You do not manage {department}")
    records = await run_blocking(desk.directory.department_staff, department)
    return [StaffRecordResponse(id=r.get("id") or r["_id"], fullName=r.get("fullName"),
                                adminDepartment=department, isDeptAdmin=bool(r.get("isDeptAdmin")))
            for r in records]

@app.post("/admin-staff/role", response_model=RoleChangeResponse)
async def manage_role(req: RoleChangeRequest, user=Depends(get_current_user),
                      desk: GrievanceDesk = Depends(get_desk)):
    if req.action == RoleAction.PROMOTE:
        record = await run_blocking(desk.directory.promote, user["id"], req.targetStaffId, req.department)
        title = "Admin" if record.get("isDeptAdmin") else "Team Member"
        return RoleChangeResponse(
            message=f"{record.get('fullName')} is now {title} of {record['adminDepartment']}",
            staff=staff_to_response(record))
    result = await run_blocking(desk.directory.demote, user["id"], req.targetStaffId)
    count = result["modifiedGrievanceCount"]
    return RoleChangeResponse(
        message=f"{normalize_id(req.targetStaffId)} removed from department role. "
                f"{count} grievances reset to Pending.",
        modifiedGrievanceCount=count)

@app.post("/admin/transfer-ownership")
async def transfer_ownership(req: TransferOwnershipRequest, user=Depends(get_current_user),
                             desk: GrievanceDesk = Depends(get_desk)):
    result = await run_blocking(desk.directory.transfer_ownership, user["id"], req.newMasterId)
    return {"detail": f"Ownership transferred to {result['fullName']} ({result['masterId']})", **result}

@app.post("/admin/verification-sweep")
async def verification_sweep(user=Depends(get_current_user), desk: GrievanceDesk = Depends(get_desk)):
    if not await run_blocking(desk.directory.is_master, user["id"]):
        raise PermissionDenied("Only the master admin can run the verification sweep")
    resolved = await run_blocking(desk.lifecycle.sweep_stale_verifications)
    return {"enabled": desk.lifecycle.auto_resolve, "resolved": resolved,
            "windowHours": desk.lifecycle.verification_window_hours}

# ---------------------------------------------------------------------------
# ATTACHMENTS (GridFS blob store)
# ---------------------------------------------------------------------------
class BlobStore:
    def __init__(self, db, bucket_name: str = "uploads"):
        self.bucket = GridFSBucket(db, bucket_name=bucket_name)

    def store(self, original_name: str, data: bytes, content_type: Optional[str]) -> dict:
        filename = f"{int(now_utc().timestamp() * 1000)}-{Path(original_name).name}"
        file_id = self.bucket.upload_from_stream(filename, data, metadata={"contentType": content_type})
        return {"filename": filename, "fileId": str(file_id),
                "contentType": content_type, "originalName": original_name}

    def retrieve(self, filename: str) -> tuple:
        grid_out = self.bucket.open_download_stream_by_name(filename)
        content_type = (grid_out.metadata or {}).get("contentType") or "application/octet-stream"
        return grid_out.read(), content_type

@app.post("/files", response_model=FileUploadResponse)
async def upload_file(file: UploadFile = File(...), user=Depends(get_current_user), db=Depends(get_db)):
    data = await file.read()
    if not data:
        raise ValidationError("No file uploaded")
    if len(data) > UPLOAD_MAX_BYTES:
        raise ValidationError(f"File exceeds {UPLOAD_MAX_BYTES} bytes")
    stored = await run_blocking(BlobStore(db).store, file.filename or "upload", data, file.content_type)
    logger.info("User %s uploaded %s", user["id"], stored["filename"])
    return FileUploadResponse(**stored)

@app.get("/files/{filename}")
async def download_file(filename: str, user=Depends(get_current_user), db=Depends(get_db)):
    try:
        data, content_type = await run_blocking(BlobStore(db).retrieve, filename)
    except NoFile:
        raise NotFound("No file found")
    return Response(content=data, media_type=content_type)

# ---------------------------------------------------------------------------
# CHAT ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/chat", response_model=ChatMessageResponse, status_code=201)
async def send_message(req: ChatMessageCreate, user=Depends(get_current_user),
                       desk: GrievanceDesk = Depends(get_desk), db=Depends(get_db)):
    g = await run_blocking(desk.assignments.store.get, req.grievanceId)
    if not await run_blocking(_can_view, desk, user, g):
        raise PermissionDenied("You are not part of this grievance")
    if not req.message and not req.fileData:
        raise ValidationError("Message or attachment is required")
    text = req.message or f"Sent an attachment: {req.fileData.get('originalName', 'file')}"
    doc = {"_id": str(uuid.uuid4()), "grievanceId": req.grievanceId,
           "senderId": user["id"], "senderRole": user.get("role", "student"),
           "message": text, "messageType": "file" if req.fileData else "text",
           "fileData": req.fileData, "createdAt": now_utc()}
    await run_blocking(db.messages.insert_one, doc)
    return ChatMessageResponse(**doc, id=doc["_id"])

@app.get("/chat/{grievance_id}", response_model=List[ChatMessageResponse])
async def get_messages(grievance_id: str, user=Depends(get_current_user),
                       desk: GrievanceDesk = Depends(get_desk), db=Depends(get_db)):
    g = await run_blocking(desk.assignments.store.get, grievance_id)
    if not await run_blocking(_can_view, desk, user, g):
        raise PermissionDenied("You are not part of this grievance")
    messages = await run_blocking(
        lambda: list(db.messages.find({"grievanceId": grievance_id}).sort("createdAt", ASCENDING)))
    return [ChatMessageResponse(**m, id=m["_id"]) for m in messages]

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "University Grievance Desk",
            "timestamp": datetime.now(timezone.utc)}

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
