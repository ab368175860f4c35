"""
Configuration and shared helpers
"""

import os
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Load .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'repairdesk')
MONGO_TIMEOUT_MS = int(os.environ.get('MONGO_TIMEOUT_MS', '5000'))

client = AsyncIOMotorClient(MONGO_URL, serverSelectionTimeoutMS=MONGO_TIMEOUT_MS)
db = client[DB_NAME]

# HTTP
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

# Workflow
METRICS_DEFAULT_DAYS = int(os.environ.get('METRICS_DEFAULT_DAYS', '30'))
LEAD_STATUS_ALLOW_REGRESSION = _env_flag('LEAD_STATUS_ALLOW_REGRESSION')
ENABLE_SCHEDULER = _env_flag('ENABLE_SCHEDULER', 'true')

# Lead webhook (landing pages): shared key sent as X-API-Key, disabled when unset
LEAD_WEBHOOK_API_KEY = os.environ.get('LEAD_WEBHOOK_API_KEY', '')
WEBHOOK_DUPLICATE_WINDOW_HOURS = int(os.environ.get('WEBHOOK_DUPLICATE_WINDOW_HOURS', '24'))


# ==================== HELPERS ====================

def now_iso() -> str:
    """Current UTC date/time as ISO string"""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value) -> datetime:
    """
    Parse an ISO timestamp stored by now_iso() (or a bare YYYY-MM-DD date).
    Naive values are treated as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def validate_phone_in(phone: str) -> tuple[bool, str]:
    """
    Indian mobile number -> 10 digits.
    Non-digits are stripped, then a +91 / 91 or a leading 0 trunk prefix.
    Returns: (is_valid, cleaned_phone_or_error)
    """
    digits = ''.join(filter(str.isdigit, phone or ""))
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) != 10:
        return False, f"Invalid contact number: {len(digits)} digits (10 required)"
    return True, digits
