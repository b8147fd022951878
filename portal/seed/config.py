# Shared configuration, helpers, and constants for all seed modules

import os
import uuid
from pathlib import Path
from datetime import datetime, timedelta, timezone
from passlib.context import CryptContext
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
_script_dir = Path(__file__).resolve().parent.parent          # portal/
for _env_path in [_script_dir / ".env", _script_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------
MONGODB_URL     = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB      = os.getenv("MONGODB_DB", "grievance_desk")
MASTER_ADMIN_ID = os.getenv("MASTER_ADMIN_ID", "10001")

# ---------------------------------------------------------------------------
# Shared clients
# ---------------------------------------------------------------------------
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def new_id() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def days_ago(days: float) -> datetime:
    return now_utc() - timedelta(days=days)
