from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import smtplib
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, RedirectResponse
from starlette.background import BackgroundTask
from pydantic import BaseModel, field_validator

import reports
from pricing import calculate_pricing, normalize_service_type

logger = logging.getLogger(__name__)


def env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def env_list(name: str) -> List[str]:
    return [item.strip().lower() for item in os.getenv(name, "").split(",") if item.strip()]


BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

uploads_dir_raw = os.getenv("UPLOADS_DIR", str(BASE_DIR.parent / "uploads"))
UPLOADS_DIR = Path(uploads_dir_raw).expanduser()
if not UPLOADS_DIR.is_absolute():
    UPLOADS_DIR = (BASE_DIR.parent / UPLOADS_DIR).resolve()
else:
    UPLOADS_DIR = UPLOADS_DIR.resolve()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

DEV_SESSION_SECRET = "nxtkonekt-dev-session-secret"
SESSION_SECRET = os.getenv("SESSION_SECRET", "").strip() or DEV_SESSION_SECRET
SESSION_COOKIE_SECURE = env_flag("SESSION_COOKIE_SECURE")
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax").strip().lower()
if SESSION_COOKIE_SAMESITE not in {"lax", "strict", "none"}:
    SESSION_COOKIE_SAMESITE = "lax"
SESSION_COOKIE_NAME = "nxt_session"
SESSION_DURATION_HOURS = 24 * 7

OIDC_ISSUER_URL = os.getenv("OIDC_ISSUER_URL", "https://replit.com/oidc").strip().rstrip("/")
OIDC_CLIENT_ID = os.getenv("OIDC_CLIENT_ID", "").strip()
OIDC_CLIENT_SECRET = os.getenv("OIDC_CLIENT_SECRET", "").strip()
OIDC_REDIRECT_URI = os.getenv("OIDC_REDIRECT_URI", "").strip()
OIDC_ALLOWED_DOMAINS = env_list("OIDC_ALLOWED_DOMAINS")
OIDC_SCOPES = "openid email profile offline_access"
OIDC_DISCOVERY_TTL_SECONDS = 3600
OIDC_STATE_MINUTES = 15

ADMIN_EMAILS = set(env_list("ADMIN_EMAILS"))

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_ACCESS_TOKEN = os.getenv("HUBSPOT_ACCESS_TOKEN", "").strip()
HUBSPOT_PORTAL_ID = os.getenv("HUBSPOT_PORTAL_ID", "").strip()
HUBSPOT_DEAL_PIPELINE = os.getenv("HUBSPOT_DEAL_PIPELINE", "default").strip() or "default"
HUBSPOT_TICKET_PIPELINE = os.getenv("HUBSPOT_TICKET_PIPELINE", "0").strip() or "0"
HUBSPOT_TICKET_STAGE = os.getenv("HUBSPOT_TICKET_STAGE", "1").strip() or "1"
HUBSPOT_WEBHOOK_SECRET = os.getenv("HUBSPOT_WEBHOOK_SECRET", "").strip()
HUBSPOT_DEAL_STAGES = {
    "pending": "appointmentscheduled",
    "approved": "closedwon",
    "rejected": "closedlost",
    "closed": "closedlost",
}
HUBSPOT_WEBHOOK_STAGE_STATUS = {"closedwon": "approved", "closedlost": "rejected"}

SMTP_HOST = os.getenv("SMTP_HOST", "").strip()
SMTP_PORT = int(os.getenv("SMTP_PORT", "587") or 587)
SMTP_USER = os.getenv("SMTP_USER", "").strip()
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_SECURE = env_flag("SMTP_SECURE")
SMTP_FROM = os.getenv("SMTP_FROM", "").strip()

INVITATION_EXPIRY_DAYS = int(os.getenv("INVITATION_EXPIRY_DAYS", "7") or 7)

ALLOWED_USER_ROLES = {"partner", "sales_executive", "admin"}
PARTNER_STATUSES = {"pending", "approved", "suspended"}
SIGNUP_EVENTS = {"invitation_sent", "signup_completed", "organization_created"}

FILE_TYPES = {"photo", "document"}
MAX_UPLOAD_BYTES = 50 * 1024 * 1024
MAX_FILES_PER_REQUEST = 10
DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/acad",
    "image/vnd.dwg",
    "application/dwg",
}
# Public file routes map onto these upload subdirectories.
FILE_CATEGORY_DIRS = {"photo": "photos", "document": "documents", "pdf": "pdfs"}

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

app = FastAPI(title="NXTKonekt Partner Portal API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def configure_logging() -> None:
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------
# Database helpers
# ----------------------

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def ensure_columns(cur: sqlite3.Cursor, table: str, columns: Dict[str, str]) -> None:
    cur.execute(f"PRAGMA table_info({table})")
    existing = {row["name"] for row in cur.fetchall()}
    for name, column_type in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {column_type}")


def init_db() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS User(
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE,
                first_name TEXT,
                last_name TEXT,
                profile_image_url TEXT,
                role TEXT NOT NULL DEFAULT 'partner',
                is_system_admin INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Organization(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id),
                name TEXT NOT NULL,
                partner_organization TEXT,
                phone TEXT,
                partner_status TEXT NOT NULL DEFAULT 'pending',
                partner_type TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Assessment(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id),
                organization_id TEXT REFERENCES Organization(id),
                service_type TEXT NOT NULL DEFAULT 'fixed-wireless',
                sales_executive_name TEXT,
                sales_executive_email TEXT,
                sales_executive_phone TEXT,
                customer_company_name TEXT,
                customer_contact_name TEXT,
                customer_email TEXT,
                customer_phone TEXT,
                site_address TEXT,
                industry TEXT,
                preferred_installation_date TEXT,
                building_type TEXT,
                coverage_area INTEGER,
                number_of_floors INTEGER,
                device_count INTEGER,
                power_available INTEGER,
                ethernet_required INTEGER,
                ceiling_mount INTEGER,
                outdoor_coverage INTEGER,
                network_signal TEXT,
                signal_strength TEXT,
                connection_usage TEXT,
                router_location TEXT,
                router_count INTEGER,
                antenna_cable TEXT,
                device_connection_assistance TEXT,
                low_signal_antenna_cable TEXT,
                antenna_type TEXT,
                antenna_installation_location TEXT,
                router_mounting TEXT,
                dual_wan_support TEXT,
                ceiling_height TEXT,
                ceiling_type TEXT,
                router_make_model TEXT,
                cable_footage TEXT,
                interference_sources TEXT,
                special_requirements TEXT,
                total_cost REAL,
                additional_notes TEXT,
                status TEXT NOT NULL DEFAULT 'draft',
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Quote(
                id TEXT PRIMARY KEY,
                assessment_id TEXT NOT NULL UNIQUE REFERENCES Assessment(id),
                quote_number TEXT NOT NULL UNIQUE,
                hourly_rate REAL,
                survey_hours REAL,
                installation_hours REAL,
                configuration_hours REAL,
                labor_hold_hours REAL,
                survey_cost REAL,
                installation_cost REAL,
                configuration_cost REAL,
                labor_hold_cost REAL,
                training_cost REAL,
                hardware_cost REAL,
                total_cost REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                pdf_path TEXT,
                customer_token TEXT UNIQUE,
                email_sent INTEGER NOT NULL DEFAULT 0,
                hubspot_contact_id TEXT,
                hubspot_deal_id TEXT,
                hubspot_last_synced_at TEXT,
                hubspot_sync_error TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS UploadedFile(
                id TEXT PRIMARY KEY,
                assessment_id TEXT NOT NULL REFERENCES Assessment(id),
                file_name TEXT NOT NULL,
                original_name TEXT NOT NULL,
                file_type TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PartnerInvitation(
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                invited_by TEXT REFERENCES User(id),
                invited_by_name TEXT,
                invitation_token TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'pending',
                expires_at TEXT NOT NULL,
                accepted_at TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS SignupAnalytics(
                id TEXT PRIMARY KEY,
                event TEXT NOT NULL,
                email TEXT,
                invitation_id TEXT,
                metadata_json TEXT,
                timestamp TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AuthSession(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id),
                session_hash TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT,
                last_seen_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS OIDCLoginState(
                id TEXT PRIMARY KEY,
                state TEXT NOT NULL UNIQUE,
                code_verifier TEXT NOT NULL,
                redirect_uri TEXT NOT NULL,
                invitation_token TEXT,
                expires_at TEXT NOT NULL,
                created_at TEXT
            )
            """
        )
        # Lightweight migration for columns added after the first release
        ensure_columns(
            cur,
            "Assessment",
            {
                "tracker_type": "TEXT",
                "iot_tracking_partner": "TEXT",
                "camera_solution_type": "TEXT",
                "number_of_cameras": "INTEGER",
                "video_partner": "TEXT",
                "removal_needed": "TEXT",
                "existing_system": "TEXT",
                "vehicle_details": "TEXT",
            },
        )
        ensure_columns(
            cur,
            "Quote",
            {
                "removal_hours": "REAL",
                "removal_cost": "REAL",
                "customer_feedback": "TEXT",
                "accepted_at": "TEXT",
                "rejected_at": "TEXT",
                "hubspot_ticket_id": "TEXT",
            },
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_assessment_user ON Assessment(user_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_session_hash ON AuthSession(session_hash)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_quote_deal ON Quote(hubspot_deal_id)")
        conn.commit()


# ----------------------
# Models
# ----------------------

class AssessmentFields(BaseModel):
    service_type: Optional[str] = None
    sales_executive_name: Optional[str] = None
    sales_executive_email: Optional[str] = None
    sales_executive_phone: Optional[str] = None
    customer_company_name: Optional[str] = None
    customer_contact_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    site_address: Optional[str] = None
    industry: Optional[str] = None
    preferred_installation_date: Optional[str] = None
    building_type: Optional[str] = None
    coverage_area: Optional[int] = None
    number_of_floors: Optional[int] = None
    device_count: Optional[int] = None
    power_available: Optional[bool] = None
    ethernet_required: Optional[bool] = None
    ceiling_mount: Optional[bool] = None
    outdoor_coverage: Optional[bool] = None
    network_signal: Optional[str] = None
    signal_strength: Optional[str] = None
    connection_usage: Optional[str] = None
    router_location: Optional[str] = None
    router_count: Optional[int] = None
    antenna_cable: Optional[str] = None
    device_connection_assistance: Optional[str] = None
    low_signal_antenna_cable: Optional[str] = None
    antenna_type: Optional[str] = None
    antenna_installation_location: Optional[str] = None
    router_mounting: Optional[str] = None
    dual_wan_support: Optional[str] = None
    ceiling_height: Optional[str] = None
    ceiling_type: Optional[str] = None
    router_make_model: Optional[str] = None
    cable_footage: Optional[str] = None
    interference_sources: Optional[str] = None
    special_requirements: Optional[str] = None
    tracker_type: Optional[str] = None
    iot_tracking_partner: Optional[str] = None
    camera_solution_type: Optional[str] = None
    number_of_cameras: Optional[int] = None
    video_partner: Optional[str] = None
    removal_needed: Optional[str] = None
    existing_system: Optional[str] = None
    vehicle_details: Optional[List[Dict[str, Any]]] = None
    additional_notes: Optional[str] = None

    @field_validator(
        "coverage_area", "number_of_floors", "device_count", "router_count", "number_of_cameras", mode="before"
    )
    @classmethod
    def blank_number_to_none(cls, value: Any) -> Any:
        # Cleared form inputs arrive as "" and stray text is treated as unanswered.
        if isinstance(value, str):
            text = value.strip().replace(",", "")
            if not text:
                return None
            try:
                return int(float(text))
            except (ValueError, OverflowError):
                return None
        return value


class AssessmentIn(AssessmentFields):
    service_type: str = "fixed-wireless"
    sales_executive_name: str
    sales_executive_email: str
    customer_company_name: str
    customer_contact_name: str
    customer_email: str
    site_address: str


class AssessmentUpdate(AssessmentFields):
    pass


ASSESSMENT_FIELDS = list(AssessmentFields.model_fields.keys())
BOOLEAN_ASSESSMENT_FIELDS = {"power_available", "ethernet_required", "ceiling_mount", "outdoor_coverage"}
JSON_ASSESSMENT_FIELDS = {"vehicle_details"}


class QuoteOut(BaseModel):
    id: str
    assessment_id: str
    quote_number: str
    hourly_rate: float
    survey_hours: float
    installation_hours: float
    configuration_hours: float
    removal_hours: float
    labor_hold_hours: float
    survey_cost: float
    installation_cost: float
    configuration_cost: float
    removal_cost: float
    labor_hold_cost: float
    training_cost: float
    hardware_cost: float
    total_cost: float
    status: str
    pdf_url: Optional[str] = None
    customer_token: Optional[str] = None
    customer_share_url: Optional[str] = None
    customer_feedback: Optional[str] = None
    accepted_at: Optional[str] = None
    rejected_at: Optional[str] = None
    email_sent: bool = False
    hubspot_contact_id: Optional[str] = None
    hubspot_deal_id: Optional[str] = None
    hubspot_ticket_id: Optional[str] = None
    hubspot_last_synced_at: Optional[str] = None
    hubspot_sync_error: Optional[str] = None
    hubspot_deal_url: Optional[str] = None
    hubspot_ticket_url: Optional[str] = None
    created_at: str
    updated_at: str


class QuoteListOut(QuoteOut):
    customer_company_name: Optional[str] = None
    customer_email: Optional[str] = None
    service_type: Optional[str] = None
    organization_name: Optional[str] = None
    partner_email: Optional[str] = None


class UploadedFileOut(BaseModel):
    id: str
    assessment_id: str
    file_name: str
    original_name: str
    file_type: str
    mime_type: str
    file_size: int
    url: str
    created_at: str


class OrganizationIn(BaseModel):
    name: str
    partner_organization: Optional[str] = None
    phone: Optional[str] = None
    partner_type: Optional[str] = None


class OrganizationUpdate(BaseModel):
    name: Optional[str] = None
    partner_organization: Optional[str] = None
    phone: Optional[str] = None
    partner_type: Optional[str] = None


class OrganizationOut(BaseModel):
    id: str
    user_id: str
    name: str
    partner_organization: Optional[str]
    phone: Optional[str]
    partner_status: str
    partner_type: Optional[str]
    created_at: str
    updated_at: str


class UserOut(BaseModel):
    id: str
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    profile_image_url: Optional[str]
    role: str
    is_system_admin: bool
    is_active: bool
    created_at: str
    updated_at: str


class AuthUserOut(UserOut):
    organization: Optional[OrganizationOut] = None


class PartnerStatusIn(BaseModel):
    status: str


class UserRoleIn(BaseModel):
    role: str


class UserActiveIn(BaseModel):
    is_active: bool


class CustomerActionIn(BaseModel):
    feedback: Optional[str] = None


class InvitationIn(BaseModel):
    email: str
    partner_name: Optional[str] = None


class InvitationOut(BaseModel):
    id: str
    email: str
    invited_by: Optional[str]
    invited_by_name: Optional[str]
    status: str
    expires_at: str
    accepted_at: Optional[str]
    created_at: str


class HubSpotTestResponse(BaseModel):
    connected: bool
    message: str


class HubSpotSyncResponse(BaseModel):
    quote_id: str
    hubspot_contact_id: Optional[str]
    hubspot_deal_id: Optional[str]
    hubspot_ticket_id: Optional[str]
    hubspot_last_synced_at: Optional[str]
    hubspot_sync_error: Optional[str]
    hubspot_deal_url: Optional[str] = None
    hubspot_ticket_url: Optional[str] = None


# ----------------------
# Row helpers
# ----------------------

def fetch_user(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE id = ?", (user_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return row


def fetch_organization(conn: sqlite3.Connection, organization_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Organization WHERE id = ?", (organization_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Organization not found")
    return row


def fetch_user_organization(conn: sqlite3.Connection, user_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM Organization WHERE user_id = ? ORDER BY created_at LIMIT 1",
        (user_id,),
    )
    return cur.fetchone()


def fetch_assessment(conn: sqlite3.Connection, assessment_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Assessment WHERE id = ?", (assessment_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return row


def fetch_owned_assessment(conn: sqlite3.Connection, assessment_id: str, user_id: str) -> sqlite3.Row:
    # Rows owned by someone else answer exactly like missing rows.
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM Assessment WHERE id = ? AND user_id = ?",
        (assessment_id, user_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return row


def fetch_quote(conn: sqlite3.Connection, quote_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Quote WHERE id = ?", (quote_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Quote not found")
    return row


def fetch_owned_quote(conn: sqlite3.Connection, quote_id: str, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT q.*
        FROM Quote q
        JOIN Assessment a ON a.id = q.assessment_id
        WHERE q.id = ? AND a.user_id = ?
        """,
        (quote_id, user_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Quote not found")
    return row


def fetch_quote_for_assessment(conn: sqlite3.Connection, assessment_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Quote WHERE assessment_id = ?", (assessment_id,))
    return cur.fetchone()


def fetch_quote_by_token(conn: sqlite3.Connection, token: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Quote WHERE customer_token = ?", ((token or "").strip(),))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Quote not found")
    return row


def to_user_out(row: sqlite3.Row) -> UserOut:
    data = dict(row)
    return UserOut(
        id=data["id"],
        email=data.get("email"),
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        profile_image_url=data.get("profile_image_url"),
        role=data.get("role") or "partner",
        is_system_admin=bool(data.get("is_system_admin")),
        is_active=bool(data.get("is_active")),
        created_at=data.get("created_at") or "",
        updated_at=data.get("updated_at") or "",
    )


def to_organization_out(row: sqlite3.Row) -> OrganizationOut:
    return OrganizationOut(**dict(row))


def assessment_db_value(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in BOOLEAN_ASSESSMENT_FIELDS:
        return 1 if value else 0
    if field in JSON_ASSESSMENT_FIELDS:
        return json.dumps(value)
    return value


def assessment_payload(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for field in BOOLEAN_ASSESSMENT_FIELDS:
        if data.get(field) is not None:
            data[field] = bool(data[field])
    raw_vehicles = data.get("vehicle_details")
    try:
        data["vehicle_details"] = json.loads(raw_vehicles) if raw_vehicles else []
    except ValueError:
        data["vehicle_details"] = []
    return data


def quote_pdf_url(pdf_path: Optional[str]) -> Optional[str]:
    if not pdf_path:
        return None
    return f"/api/files/pdf/{Path(pdf_path).name}"


def customer_share_url(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return f"{FRONTEND_BASE_URL}/customer/quote/{token}"


def hubspot_record_url(object_type_id: str, object_id: Optional[str]) -> Optional[str]:
    if not HUBSPOT_PORTAL_ID or not object_id:
        return None
    return f"https://app.hubspot.com/contacts/{HUBSPOT_PORTAL_ID}/record/{object_type_id}/{object_id}"


def quote_payload(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for field in (
        "hourly_rate",
        "survey_hours",
        "installation_hours",
        "configuration_hours",
        "removal_hours",
        "labor_hold_hours",
        "survey_cost",
        "installation_cost",
        "configuration_cost",
        "removal_cost",
        "labor_hold_cost",
        "training_cost",
        "hardware_cost",
        "total_cost",
    ):
        data[field] = float(data.get(field) or 0)
    data["email_sent"] = bool(data.get("email_sent"))
    data["pdf_url"] = quote_pdf_url(data.get("pdf_path"))
    data["customer_share_url"] = customer_share_url(data.get("customer_token"))
    data["hubspot_deal_url"] = hubspot_record_url("0-3", data.get("hubspot_deal_id"))
    data["hubspot_ticket_url"] = hubspot_record_url("0-5", data.get("hubspot_ticket_id"))
    data["created_at"] = data.get("created_at") or ""
    data["updated_at"] = data.get("updated_at") or ""
    return data


def to_quote_out(row: sqlite3.Row) -> QuoteOut:
    return QuoteOut(**quote_payload(row))


def to_file_out(row: sqlite3.Row) -> UploadedFileOut:
    data = dict(row)
    category = "photo" if data["file_type"] == "photo" else "document"
    data["url"] = f"/api/files/{category}/{data['file_name']}"
    return UploadedFileOut(**data)


def is_admin_user(user: Any) -> bool:
    data = dict(user)
    return bool(data.get("is_system_admin")) or (data.get("role") or "").strip().lower() == "admin"


def build_quote_number(assessment_id: str) -> str:
    return f"Q-{datetime.utcnow().year}-{assessment_id.replace('-', '')[:8].upper()}"


def remove_upload_file(path_value: Optional[str]) -> None:
    if not path_value:
        return
    try:
        file_path = Path(path_value).expanduser().resolve()
        uploads_root = UPLOADS_DIR.resolve()
    except OSError:
        return
    if uploads_root not in file_path.parents:
        return
    try:
        file_path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove upload %s", file_path)


def parse_date_param(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# ----------------------
# Sessions and login
# ----------------------

def session_token_hash(token: str) -> str:
    return hmac.new(SESSION_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def create_auth_session(conn: sqlite3.Connection, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    now = now_iso()
    expires_at = (datetime.utcnow() + timedelta(hours=SESSION_DURATION_HOURS)).isoformat()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuthSession (id, user_id, session_hash, expires_at, created_at, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), user_id, session_token_hash(token), expires_at, now, now),
    )
    conn.commit()
    return token


def revoke_user_sessions(conn: sqlite3.Connection, user_id: str) -> None:
    cur = conn.cursor()
    cur.execute("DELETE FROM AuthSession WHERE user_id = ?", (user_id,))


def get_session_user(conn: sqlite3.Connection, request: Request) -> Optional[sqlite3.Row]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    session_hash = session_token_hash(token)
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT u.*, s.id AS session_id
        FROM AuthSession s
        JOIN User u ON u.id = s.user_id
        WHERE s.session_hash = ? AND s.expires_at > ?
        ORDER BY s.created_at DESC
        LIMIT 1
        """,
        (session_hash, now),
    )
    row = cur.fetchone()
    if not row:
        return None
    cur.execute(
        "UPDATE AuthSession SET last_seen_at = ? WHERE id = ?",
        (now, row["session_id"]),
    )
    conn.commit()
    return row


def require_session_user(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    user = get_session_user(conn, request)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not user["is_active"]:
        raise HTTPException(status_code=403, detail="Account is disabled")
    return user


def require_admin(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    user = require_session_user(conn, request)
    if not is_admin_user(user):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        httponly=True,
        samesite=SESSION_COOKIE_SAMESITE,
        secure=SESSION_COOKIE_SECURE,
        max_age=SESSION_DURATION_HOURS * 3600,
        path="/",
    )


_oidc_config_cache: Dict[str, Any] = {"config": None, "fetched_at": 0.0}
_oidc_config_lock = threading.Lock()


def oidc_request(
    url: str,
    *,
    form: Optional[Dict[str, str]] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    data = None
    headers = {"Accept": "application/json"}
    if form is not None:
        data = urlparse.urlencode(form).encode("utf-8")
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    req = urlrequest.Request(url, data=data, headers=headers, method="POST" if data else "GET")
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8").strip()
            parsed = json.loads(raw) if raw else {}
            if not isinstance(parsed, dict):
                raise HTTPException(status_code=502, detail="Invalid identity provider response")
            return parsed
    except urlerror.HTTPError as exc:
        try:
            detail = exc.read().decode("utf-8")
        except Exception:
            detail = str(exc)
        raise HTTPException(status_code=502, detail=f"Identity provider error ({exc.code}): {detail}")
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=502, detail=f"Identity provider request failed: {exc}")


def get_oidc_config() -> Dict[str, Any]:
    if not OIDC_CLIENT_ID:
        raise HTTPException(status_code=503, detail="Login is not configured")
    with _oidc_config_lock:
        cached = _oidc_config_cache["config"]
        if cached and time.monotonic() - _oidc_config_cache["fetched_at"] < OIDC_DISCOVERY_TTL_SECONDS:
            return cached
        config = oidc_request(f"{OIDC_ISSUER_URL}/.well-known/openid-configuration")
        for key in ("authorization_endpoint", "token_endpoint", "userinfo_endpoint"):
            if not config.get(key):
                raise HTTPException(status_code=502, detail=f"Identity provider discovery is missing {key}")
        _oidc_config_cache["config"] = config
        _oidc_config_cache["fetched_at"] = time.monotonic()
        return config


def resolve_oidc_redirect_uri(request: Request) -> str:
    if OIDC_REDIRECT_URI:
        return OIDC_REDIRECT_URI
    hostname = (request.url.hostname or "").lower()
    if OIDC_ALLOWED_DOMAINS and hostname not in OIDC_ALLOWED_DOMAINS:
        raise HTTPException(status_code=400, detail="Login is not available on this domain")
    return f"{request.url.scheme}://{request.url.netloc}/api/callback"


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def login_error_redirect(reason: str) -> RedirectResponse:
    query = urlparse.urlencode({"reason": reason})
    return RedirectResponse(f"{FRONTEND_BASE_URL}/login-error?{query}", status_code=302)


def upsert_user_from_claims(conn: sqlite3.Connection, claims: Dict[str, Any]) -> sqlite3.Row:
    """Create or refresh the local user for an identity provider login.

    Profile fields follow the provider on every login; the role is kept.
    """
    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="Identity token is missing a subject")
    email = str(claims.get("email") or "").strip().lower() or None
    first_name = claims.get("first_name") or claims.get("given_name")
    last_name = claims.get("last_name") or claims.get("family_name")
    profile_image_url = claims.get("profile_image_url") or claims.get("picture")
    is_listed_admin = bool(email and email in ADMIN_EMAILS)
    now = now_iso()

    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE id = ?", (user_id,))
    existing = cur.fetchone()
    if not existing and email:
        cur.execute("SELECT * FROM User WHERE email = ?", (email,))
        existing = cur.fetchone()

    if existing:
        if email and email != existing["email"]:
            cur.execute("SELECT id FROM User WHERE email = ? AND id != ?", (email, existing["id"]))
            if cur.fetchone():
                logger.warning(
                    "Login e-mail for user %s belongs to another account; keeping the stored one", existing["id"]
                )
                email = existing["email"]
                is_listed_admin = bool(email and email in ADMIN_EMAILS)
        cur.execute(
            """
            UPDATE User
            SET email = ?, first_name = ?, last_name = ?, profile_image_url = ?,
                is_system_admin = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                email or existing["email"],
                first_name,
                last_name,
                profile_image_url,
                1 if (existing["is_system_admin"] or is_listed_admin) else 0,
                now,
                existing["id"],
            ),
        )
        user_key = existing["id"]
    else:
        cur.execute(
            """
            INSERT INTO User (
                id, email, first_name, last_name, profile_image_url, role,
                is_system_admin, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                email,
                first_name,
                last_name,
                profile_image_url,
                "admin" if is_listed_admin else "partner",
                1 if is_listed_admin else 0,
                1,
                now,
                now,
            ),
        )
        user_key = user_id
    conn.commit()
    return fetch_user(conn, user_key)


# ----------------------
# Invitations and analytics
# ----------------------

def track_signup_event(
    conn: sqlite3.Connection,
    event: str,
    *,
    email: Optional[str] = None,
    invitation_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    try:
        conn.execute(
            """
            INSERT INTO SignupAnalytics (id, event, email, invitation_id, metadata_json, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                event,
                (email or "").strip().lower() or None,
                invitation_id,
                json.dumps(metadata or {}),
                now_iso(),
            ),
        )
    except sqlite3.Error:
        logger.exception("Failed to record signup event %s", event)


def invitation_status(row: sqlite3.Row) -> str:
    status = row["status"] or "pending"
    if status == "pending" and (row["expires_at"] or "") <= now_iso():
        return "expired"
    return status


def to_invitation_out(row: sqlite3.Row) -> InvitationOut:
    data = dict(row)
    data["status"] = invitation_status(row)
    return InvitationOut(**data)


def consume_invitation(conn: sqlite3.Connection, token: str, user: sqlite3.Row) -> bool:
    cur = conn.cursor()
    cur.execute("SELECT * FROM PartnerInvitation WHERE invitation_token = ?", (token,))
    invitation = cur.fetchone()
    if not invitation:
        logger.warning("Login carried an unknown invitation token")
        return False
    if invitation_status(invitation) != "pending":
        logger.info("Invitation %s is %s; ignoring", invitation["id"], invitation_status(invitation))
        return False
    user_email = (user["email"] or "").strip().lower()
    if user_email != (invitation["email"] or "").strip().lower():
        logger.warning("Invitation %s was opened by a different account", invitation["id"])
        return False
    now = now_iso()
    cur.execute(
        "UPDATE PartnerInvitation SET status = 'accepted', accepted_at = ? WHERE id = ?",
        (now, invitation["id"]),
    )
    track_signup_event(
        conn,
        "signup_completed",
        email=user_email,
        invitation_id=invitation["id"],
        metadata={"user_id": user["id"], "invited_by": invitation["invited_by"]},
    )
    conn.commit()
    return True


# ----------------------
# Email
# ----------------------

def smtp_configured() -> bool:
    return bool(SMTP_HOST and SMTP_USER and SMTP_PASS)


def open_smtp_connection() -> smtplib.SMTP:
    if SMTP_SECURE:
        server: smtplib.SMTP = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=20)
    else:
        server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=20)
        server.starttls()
    server.login(SMTP_USER, SMTP_PASS)
    return server


def send_email(to_email: str, subject: str, html_body: str, text_body: str) -> Dict[str, Any]:
    if not smtp_configured():
        logger.warning("SMTP is not configured; skipping email to %s", to_email)
        return {"success": False, "error": "Email service is not configured"}

    sender = SMTP_FROM or SMTP_USER
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = formataddr(("NXTKonekt", sender))
    message["To"] = to_email
    message_id = make_msgid(domain=sender.split("@")[-1] if "@" in sender else None)
    message["Message-ID"] = message_id
    message.attach(MIMEText(text_body, "plain"))
    message.attach(MIMEText(html_body, "html"))
    try:
        server = open_smtp_connection()
        try:
            server.sendmail(sender, [to_email], message.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as exc:
        logger.exception("Failed to send email to %s", to_email)
        return {"success": False, "error": str(exc)}
    return {"success": True, "message_id": message_id}


def send_partner_invitation(
    to_email: str,
    signup_link: str,
    *,
    inviter_name: Optional[str] = None,
    partner_name: Optional[str] = None,
) -> Dict[str, Any]:
    greeting = f"Hi {partner_name}," if partner_name else "Hello,"
    inviter = inviter_name or "The NXTKonekt team"
    text_body = (
        f"{greeting}\n\n"
        f"{inviter} has invited you to join the NXTKonekt Partner Portal, where you can run "
        "site assessments and generate installation quotes for your customers.\n\n"
        f"Create your account: {signup_link}\n\n"
        f"This invitation expires in {INVITATION_EXPIRY_DAYS} days.\n"
    )
    html_body = (
        f"<p>{greeting}</p>"
        f"<p>{inviter} has invited you to join the <strong>NXTKonekt Partner Portal</strong>, "
        "where you can run site assessments and generate installation quotes for your customers.</p>"
        f'<p><a href="{signup_link}">Create your account</a></p>'
        f"<p>This invitation expires in {INVITATION_EXPIRY_DAYS} days.</p>"
    )
    return send_email(to_email, "You're invited to the NXTKonekt Partner Portal", html_body, text_body)


def test_email_connection() -> Dict[str, Any]:
    if not smtp_configured():
        return {"success": False, "error": "Email service is not configured"}
    try:
        server = open_smtp_connection()
        server.quit()
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("SMTP connection test failed: %s", exc)
        return {"success": False, "error": str(exc)}
    return {"success": True}


# ----------------------
# HubSpot
# ----------------------

def hubspot_api_request(
    token: str,
    method: str,
    path: str,
    *,
    body: Optional[Dict[str, Any]] = None,
    query: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    normalized_token = (token or "").strip()
    if not normalized_token:
        raise HTTPException(status_code=400, detail="HubSpot access token is not configured")

    url = f"{HUBSPOT_API_BASE}{path}"
    if query:
        qs = urlparse.urlencode(query, doseq=True)
        url = f"{url}?{qs}"

    data = None
    headers = {"Authorization": f"Bearer {normalized_token}"}
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = urlrequest.Request(url, data=data, headers=headers, method=method.upper())
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8").strip()
            if not raw:
                return {}
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
            return {"results": parsed}
    except urlerror.HTTPError as exc:
        try:
            detail = exc.read().decode("utf-8")
        except Exception:
            detail = str(exc)
        parsed_message = detail
        try:
            parsed = json.loads(detail)
            parsed_message = str(parsed.get("message") or parsed.get("detail") or detail)
        except Exception:
            parsed_message = detail or str(exc)
        raise HTTPException(
            status_code=502,
            detail=f"HubSpot API error ({exc.code}): {parsed_message}",
        )
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=502, detail=f"HubSpot API request failed: {exc}")


def hubspot_exception_message(exc: Exception) -> str:
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    return str(exc)


def hubspot_search_object_id(token: str, object_type: str, property_name: str, value: str) -> Optional[str]:
    candidate = (value or "").strip()
    if not candidate:
        return None
    result = hubspot_api_request(
        token,
        "POST",
        f"/crm/v3/objects/{object_type}/search",
        body={
            "filterGroups": [
                {"filters": [{"propertyName": property_name, "operator": "EQ", "value": candidate}]}
            ],
            "limit": 1,
        },
    )
    rows = result.get("results") or []
    if not rows:
        return None
    object_id = str((rows[0] or {}).get("id") or "").strip()
    return object_id or None


def split_contact_name(name: Optional[str]) -> Tuple[str, str]:
    parts = (name or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def load_quote_sync_context(conn: sqlite3.Connection, quote_id: str) -> Dict[str, Any]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT q.*,
               a.service_type, a.customer_company_name, a.customer_contact_name,
               a.customer_email, a.customer_phone, a.site_address, a.industry,
               a.sales_executive_name, a.sales_executive_email,
               o.name AS organization_name
        FROM Quote q
        JOIN Assessment a ON a.id = q.assessment_id
        LEFT JOIN Organization o ON o.id = a.organization_id
        WHERE q.id = ?
        """,
        (quote_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Quote not found")
    return dict(row)


def upsert_hubspot_contact_for_quote(token: str, context: Dict[str, Any]) -> Optional[str]:
    email = (context.get("customer_email") or "").strip().lower()
    if not email:
        return None
    first_name, last_name = split_contact_name(context.get("customer_contact_name"))
    properties = {
        "email": email,
        "firstname": first_name,
        "lastname": last_name,
        "company": (context.get("customer_company_name") or "").strip(),
        "phone": (context.get("customer_phone") or "").strip(),
        "address": (context.get("site_address") or "").strip(),
    }
    properties = {key: value for key, value in properties.items() if value}
    contact_id = hubspot_search_object_id(token, "contacts", "email", email)
    if contact_id:
        hubspot_api_request(
            token,
            "PATCH",
            f"/crm/v3/objects/contacts/{contact_id}",
            body={"properties": properties},
        )
        return contact_id
    created = hubspot_api_request(
        token,
        "POST",
        "/crm/v3/objects/contacts",
        body={"properties": {**properties, "lifecyclestage": "lead"}},
    )
    return str(created.get("id") or "").strip() or None


def build_hubspot_deal_properties(context: Dict[str, Any]) -> Dict[str, str]:
    service = reports.service_label(context.get("service_type"))
    return {
        "dealname": f"{context.get('customer_company_name') or 'Customer'} - {service} - {context['quote_number']}",
        "amount": f"{float(context.get('total_cost') or 0):.2f}",
        "pipeline": HUBSPOT_DEAL_PIPELINE,
        "dealstage": HUBSPOT_DEAL_STAGES.get(context.get("status") or "pending", "appointmentscheduled"),
        "description": (
            f"{service} installation quote {context['quote_number']} for "
            f"{context.get('site_address') or 'customer site'}. "
            f"Prepared by {context.get('organization_name') or context.get('sales_executive_name') or 'partner'}."
        ),
    }


def build_hubspot_ticket_properties(context: Dict[str, Any]) -> Dict[str, str]:
    return {
        "subject": f"Quote Follow-up: {context.get('customer_company_name') or 'Customer'} - {context['quote_number']}",
        "content": (
            f"Follow up on {reports.service_label(context.get('service_type'))} quote "
            f"{context['quote_number']} ({reports.money(context.get('total_cost'))}). "
            f"Contact: {context.get('customer_contact_name') or ''} {context.get('customer_email') or ''}".strip()
        ),
        "hs_pipeline": HUBSPOT_TICKET_PIPELINE,
        "hs_pipeline_stage": HUBSPOT_TICKET_STAGE,
        "hs_ticket_priority": "MEDIUM",
    }


def associate_hubspot_records_default(
    token: str,
    *,
    from_object_type: str,
    from_object_id: str,
    to_object_type: str,
    to_object_id: str,
) -> None:
    hubspot_api_request(
        token,
        "PUT",
        f"/crm/v4/objects/{from_object_type}/{from_object_id}/associations/default/{to_object_type}/{to_object_id}",
    )


def try_associate(
    token: str,
    warnings: List[str],
    from_object_type: str,
    from_object_id: Optional[str],
    to_object_type: str,
    to_object_id: Optional[str],
) -> None:
    if not from_object_id or not to_object_id:
        return
    try:
        associate_hubspot_records_default(
            token,
            from_object_type=from_object_type,
            from_object_id=from_object_id,
            to_object_type=to_object_type,
            to_object_id=to_object_id,
        )
    except HTTPException as exc:
        logger.warning("HubSpot %s->%s association failed: %s", from_object_type, to_object_type, exc.detail)
        warnings.append(f"{from_object_type} to {to_object_type} association failed: {exc.detail}")


def update_quote_hubspot_sync_state(
    conn: sqlite3.Connection,
    quote_id: str,
    *,
    contact_id: Optional[str] = None,
    deal_id: Optional[str] = None,
    ticket_id: Optional[str] = None,
    sync_error: Optional[str] = None,
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE Quote
        SET hubspot_contact_id = COALESCE(?, hubspot_contact_id),
            hubspot_deal_id = COALESCE(?, hubspot_deal_id),
            hubspot_ticket_id = COALESCE(?, hubspot_ticket_id),
            hubspot_last_synced_at = ?,
            hubspot_sync_error = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (
            contact_id,
            deal_id,
            ticket_id,
            now_iso(),
            (sync_error or "").strip() or None,
            now_iso(),
            quote_id,
        ),
    )
    conn.commit()


def sync_quote_to_hubspot_async(quote_id: str, *, create_if_missing: bool) -> None:
    def worker() -> None:
        try:
            with get_db() as conn:
                sync_quote_to_hubspot(conn, quote_id, create_if_missing=create_if_missing)
        except Exception:
            logger.exception("Background HubSpot sync failed for quote %s", quote_id)

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()


def sync_quote_to_hubspot(conn: sqlite3.Connection, quote_id: str, *, create_if_missing: bool) -> Dict[str, Any]:
    """Push a quote to HubSpot as contact, deal and follow-up ticket.

    Errors are recorded on the quote instead of raised. Without an existing
    deal and with ``create_if_missing`` off nothing is sent.
    """
    token = HUBSPOT_ACCESS_TOKEN.strip()
    if not token:
        logger.warning("HubSpot access token is not configured; quote %s not synced", quote_id)
        update_quote_hubspot_sync_state(conn, quote_id, sync_error="HubSpot access token is not configured")
        return {}

    context = load_quote_sync_context(conn, quote_id)
    deal_id = (context.get("hubspot_deal_id") or "").strip() or None
    ticket_id = (context.get("hubspot_ticket_id") or "").strip() or None
    if not deal_id and not create_if_missing:
        return {}

    warnings: List[str] = []
    try:
        contact_id = upsert_hubspot_contact_for_quote(token, context)
        deal_properties = build_hubspot_deal_properties(context)
        if deal_id:
            hubspot_api_request(
                token,
                "PATCH",
                f"/crm/v3/objects/deals/{deal_id}",
                body={"properties": deal_properties},
            )
        else:
            created = hubspot_api_request(
                token,
                "POST",
                "/crm/v3/objects/deals",
                body={"properties": deal_properties},
            )
            deal_id = str(created.get("id") or "").strip() or None
            try_associate(token, warnings, "deals", deal_id, "contacts", contact_id)

        if not ticket_id and create_if_missing:
            # Portals without the tickets scope still get contact and deal.
            try:
                created_ticket = hubspot_api_request(
                    token,
                    "POST",
                    "/crm/v3/objects/tickets",
                    body={"properties": build_hubspot_ticket_properties(context)},
                )
                ticket_id = str(created_ticket.get("id") or "").strip() or None
            except HTTPException as exc:
                logger.warning("HubSpot ticket creation skipped for quote %s: %s", quote_id, exc.detail)
                warnings.append(f"Ticket not created: {exc.detail}")
            else:
                try_associate(token, warnings, "tickets", ticket_id, "contacts", contact_id)
                try_associate(token, warnings, "tickets", ticket_id, "deals", deal_id)
    except Exception as exc:
        detail = hubspot_exception_message(exc)
        logger.error("HubSpot sync failed for quote %s: %s", quote_id, detail)
        update_quote_hubspot_sync_state(conn, quote_id, sync_error=detail)
        return {}

    update_quote_hubspot_sync_state(
        conn,
        quote_id,
        contact_id=contact_id,
        deal_id=deal_id,
        ticket_id=ticket_id,
        sync_error="; ".join(warnings) or None,
    )
    logger.info("Synced quote %s to HubSpot deal %s", quote_id, deal_id)
    return {"contact_id": contact_id, "deal_id": deal_id, "ticket_id": ticket_id}


def test_hubspot_connection() -> HubSpotTestResponse:
    token = HUBSPOT_ACCESS_TOKEN.strip()
    if not token:
        return HubSpotTestResponse(connected=False, message="HubSpot access token is not configured")
    try:
        hubspot_api_request(token, "GET", "/crm/v3/objects/contacts", query={"limit": 1})
    except HTTPException as exc:
        return HubSpotTestResponse(connected=False, message=str(exc.detail))
    return HubSpotTestResponse(connected=True, message="HubSpot connection successful")


def verify_hubspot_signature(body: bytes, signature: Optional[str]) -> bool:
    if not HUBSPOT_WEBHOOK_SECRET:
        logger.warning("HUBSPOT_WEBHOOK_SECRET is not set; accepting unsigned webhook")
        return True
    provided = (signature or "").strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    if not provided:
        return False
    expected = hmac.new(HUBSPOT_WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


def apply_hubspot_webhook_event(conn: sqlite3.Connection, event: Dict[str, Any]) -> int:
    subscription = str(event.get("subscriptionType") or "").strip()
    object_id = str(event.get("objectId") or "").strip()
    if not object_id:
        return 0
    cur = conn.cursor()
    now = now_iso()
    if subscription == "deal.propertyChange" and event.get("propertyName") == "dealstage":
        status = HUBSPOT_WEBHOOK_STAGE_STATUS.get(str(event.get("propertyValue") or "").strip().lower())
        if not status:
            return 0
        timestamp_column = "accepted_at" if status == "approved" else "rejected_at"
        cur.execute(
            f"""
            UPDATE Quote
            SET status = ?, {timestamp_column} = COALESCE({timestamp_column}, ?), updated_at = ?
            WHERE hubspot_deal_id = ? AND status NOT IN ('closed', ?)
            """,
            (status, now, now, object_id, status),
        )
        return cur.rowcount
    if subscription == "deal.deletion":
        cur.execute(
            "UPDATE Quote SET hubspot_deal_id = NULL, updated_at = ? WHERE hubspot_deal_id = ?",
            (now, object_id),
        )
        return cur.rowcount
    if subscription == "contact.deletion":
        cur.execute(
            "UPDATE Quote SET hubspot_contact_id = NULL, updated_at = ? WHERE hubspot_contact_id = ?",
            (now, object_id),
        )
        return cur.rowcount
    return 0


def handle_hubspot_webhook(body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not verify_hubspot_signature(body, signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        events = json.loads(body.decode("utf-8") or "[]")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if isinstance(events, dict):
        events = [events]
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    with get_db() as conn:
        processed = sum(apply_hubspot_webhook_event(conn, event) for event in events if isinstance(event, dict))
        conn.commit()
    logger.info("Processed %s HubSpot webhook events, %s quotes updated", len(events), processed)
    return {"status": "ok", "updated": processed}


# ----------------------
# Uploads
# ----------------------

def validate_upload(file_type: str, file: UploadFile) -> bytes:
    mime_type = (file.content_type or "").strip().lower()
    if file_type == "photo" and not mime_type.startswith("image/"):
        raise HTTPException(status_code=400, detail=f"{file.filename}: photos must be image files")
    if file_type == "document" and mime_type not in DOCUMENT_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"{file.filename}: documents must be PDF, Word, Excel or DWG files",
        )
    content = file.file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail=f"{file.filename}: file exceeds the 50MB limit")
    return content


def save_upload(
    conn: sqlite3.Connection,
    assessment_id: str,
    file_type: str,
    file: UploadFile,
    content: bytes,
) -> UploadedFileOut:
    target_dir = UPLOADS_DIR / FILE_CATEGORY_DIRS[file_type]
    target_dir.mkdir(parents=True, exist_ok=True)
    file_id = str(uuid.uuid4())
    original_name = Path(file.filename or "").name or f"upload-{file_id}"
    file_name = f"{file_id}{Path(original_name).suffix.lower()[:10]}"
    target_path = target_dir / file_name
    with target_path.open("wb") as f:
        f.write(content)
    created_at = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO UploadedFile (
            id, assessment_id, file_name, original_name, file_type, mime_type, file_size, file_path, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            file_id,
            assessment_id,
            file_name,
            original_name,
            file_type,
            (file.content_type or "application/octet-stream").lower(),
            len(content),
            str(target_path),
            created_at,
        ),
    )
    cur.execute("SELECT * FROM UploadedFile WHERE id = ?", (file_id,))
    return to_file_out(cur.fetchone())


# ----------------------
# Admin queries
# ----------------------

ADMIN_ASSESSMENT_QUERY = """
    SELECT a.*,
           u.email AS partner_email,
           o.name AS organization_name,
           q.id AS quote_id,
           q.quote_number,
           q.status AS quote_status
    FROM Assessment a
    LEFT JOIN User u ON u.id = a.user_id
    LEFT JOIN Organization o ON o.id = a.organization_id
    LEFT JOIN Quote q ON q.assessment_id = a.id
"""

ADMIN_QUOTE_QUERY = """
    SELECT q.*,
           a.customer_company_name, a.customer_email, a.service_type,
           u.email AS partner_email,
           o.name AS organization_name
    FROM Quote q
    JOIN Assessment a ON a.id = q.assessment_id
    LEFT JOIN User u ON u.id = a.user_id
    LEFT JOIN Organization o ON o.id = a.organization_id
"""


def list_admin_assessment_rows(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(f"{ADMIN_ASSESSMENT_QUERY} ORDER BY a.created_at DESC")
    return [assessment_payload(row) for row in cur.fetchall()]


def list_admin_quote_rows(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(f"{ADMIN_QUOTE_QUERY} ORDER BY q.created_at DESC")
    return [quote_payload(row) for row in cur.fetchall()]


def set_partner_status(conn: sqlite3.Connection, organization_id: str, status: str) -> OrganizationOut:
    normalized = (status or "").strip().lower()
    if normalized not in PARTNER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid partner status")
    fetch_organization(conn, organization_id)
    cur = conn.cursor()
    cur.execute(
        "UPDATE Organization SET partner_status = ?, updated_at = ? WHERE id = ?",
        (normalized, now_iso(), organization_id),
    )
    conn.commit()
    logger.info("Organization %s partner status set to %s", organization_id, normalized)
    return to_organization_out(fetch_organization(conn, organization_id))


def delete_quote_row(conn: sqlite3.Connection, quote: sqlite3.Row) -> None:
    remove_upload_file(quote["pdf_path"])
    cur = conn.cursor()
    cur.execute("DELETE FROM Quote WHERE id = ?", (quote["id"],))
    conn.commit()


def export_response(content: Any, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    configure_logging()
    if SESSION_SECRET == DEV_SESSION_SECRET:
        logger.warning("SESSION_SECRET is not set; using the development secret")
    if not OIDC_CLIENT_ID:
        logger.warning("OIDC_CLIENT_ID is not set; login is disabled")
    if not HUBSPOT_ACCESS_TOKEN:
        logger.warning("HUBSPOT_ACCESS_TOKEN is not set; HubSpot sync is disabled")
    if not smtp_configured():
        logger.warning("SMTP is not configured; invitation emails are disabled")
    init_db()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/login")
def login(request: Request, invitation: Optional[str] = None) -> RedirectResponse:
    config = get_oidc_config()
    redirect_uri = resolve_oidc_redirect_uri(request)
    state = secrets.token_urlsafe(32)
    code_verifier = secrets.token_urlsafe(64)
    created_at = now_iso()
    expires_at = (datetime.utcnow() + timedelta(minutes=OIDC_STATE_MINUTES)).isoformat()
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM OIDCLoginState WHERE expires_at <= ?", (created_at,))
        cur.execute(
            """
            INSERT INTO OIDCLoginState (
                id, state, code_verifier, redirect_uri, invitation_token, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                state,
                code_verifier,
                redirect_uri,
                (invitation or "").strip() or None,
                expires_at,
                created_at,
            ),
        )
        conn.commit()

    query = urlparse.urlencode(
        {
            "client_id": OIDC_CLIENT_ID,
            "response_type": "code",
            "scope": OIDC_SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
            "prompt": "login consent",
            "code_challenge": pkce_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
    )
    return RedirectResponse(f"{config['authorization_endpoint']}?{query}", status_code=302)


@app.get("/api/callback")
def login_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    if error:
        return login_error_redirect(error)
    if not code or not state:
        return login_error_redirect("missing_code")

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM OIDCLoginState WHERE state = ? AND expires_at > ?",
            (state, now_iso()),
        )
        state_row = cur.fetchone()
        cur.execute("DELETE FROM OIDCLoginState WHERE state = ?", (state,))
        conn.commit()
    if not state_row:
        return login_error_redirect("expired_state")

    try:
        config = get_oidc_config()
        token_form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": state_row["redirect_uri"],
            "client_id": OIDC_CLIENT_ID,
            "code_verifier": state_row["code_verifier"],
        }
        if OIDC_CLIENT_SECRET:
            token_form["client_secret"] = OIDC_CLIENT_SECRET
        tokens = oidc_request(config["token_endpoint"], form=token_form)
        access_token = str(tokens.get("access_token") or "").strip()
        if not access_token:
            raise HTTPException(status_code=502, detail="Token response was incomplete")
        claims = oidc_request(config["userinfo_endpoint"], access_token=access_token)
    except HTTPException as exc:
        logger.warning("Login callback failed: %s", exc.detail)
        return login_error_redirect("token_exchange_failed")

    if not claims.get("sub"):
        return login_error_redirect("missing_claims")

    destination = "/"
    with get_db() as conn:
        try:
            user = upsert_user_from_claims(conn, claims)
        except sqlite3.IntegrityError:
            conn.rollback()
            logger.warning("Login for subject %s conflicts with an existing account", claims.get("sub"))
            return login_error_redirect("account_conflict")
        if not user["is_active"]:
            return login_error_redirect("account_disabled")
        session_token = create_auth_session(conn, user["id"])
        if state_row["invitation_token"] and consume_invitation(conn, state_row["invitation_token"], user):
            destination = "/dashboard?welcome=partner"

    response = RedirectResponse(f"{FRONTEND_BASE_URL}{destination}", status_code=302)
    set_session_cookie(response, session_token)
    return response


@app.get("/api/logout")
def logout(request: Request) -> RedirectResponse:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        with get_db() as conn:
            conn.execute("DELETE FROM AuthSession WHERE session_hash = ?", (session_token_hash(token),))
            conn.commit()

    destination = f"{FRONTEND_BASE_URL}/"
    if OIDC_CLIENT_ID:
        try:
            end_session = get_oidc_config().get("end_session_endpoint")
        except HTTPException as exc:
            logger.warning("Skipping identity provider logout: %s", exc.detail)
            end_session = None
        if end_session:
            query = urlparse.urlencode({"client_id": OIDC_CLIENT_ID, "post_logout_redirect_uri": destination})
            destination = f"{end_session}?{query}"
    response = RedirectResponse(destination, status_code=302)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


@app.get("/api/auth/user", response_model=AuthUserOut)
def get_auth_user(request: Request) -> AuthUserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        organization = fetch_user_organization(conn, user["id"])
    return AuthUserOut(
        **to_user_out(user).model_dump(),
        organization=to_organization_out(organization) if organization else None,
    )


@app.post("/api/organizations", response_model=OrganizationOut)
def create_organization(payload: OrganizationIn, request: Request) -> OrganizationOut:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Organization name is required")
    organization_id = str(uuid.uuid4())
    created_at = now_iso()
    with get_db() as conn:
        user = require_session_user(conn, request)
        if fetch_user_organization(conn, user["id"]):
            raise HTTPException(status_code=400, detail="Organization already exists")
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Organization (
                id, user_id, name, partner_organization, phone, partner_status, partner_type,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (
                organization_id,
                user["id"],
                name,
                payload.partner_organization,
                payload.phone,
                payload.partner_type,
                created_at,
                created_at,
            ),
        )
        track_signup_event(
            conn,
            "organization_created",
            email=user["email"],
            metadata={"organization_id": organization_id, "user_id": user["id"]},
        )
        conn.commit()
        row = fetch_organization(conn, organization_id)
    return to_organization_out(row)


@app.get("/api/organizations/my", response_model=Optional[OrganizationOut])
def get_my_organization(request: Request) -> Optional[OrganizationOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_user_organization(conn, user["id"])
    return to_organization_out(row) if row else None


@app.patch("/api/organizations/my", response_model=OrganizationOut)
def update_my_organization(payload: OrganizationUpdate, request: Request) -> OrganizationOut:
    updates = payload.model_dump(exclude_unset=True)
    if "name" in updates and not (updates["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Organization name is required")
    with get_db() as conn:
        user = require_session_user(conn, request)
        organization = fetch_user_organization(conn, user["id"])
        if not organization:
            raise HTTPException(status_code=404, detail="Organization not found")
        if updates:
            assignments = ", ".join(f"{key} = ?" for key in updates)
            conn.execute(
                f"UPDATE Organization SET {assignments}, updated_at = ? WHERE id = ?",
                [*updates.values(), now_iso(), organization["id"]],
            )
            conn.commit()
        row = fetch_organization(conn, organization["id"])
    return to_organization_out(row)


def ensure_partner_can_submit(conn: sqlite3.Connection, user: Any) -> Optional[sqlite3.Row]:
    organization = fetch_user_organization(conn, user["id"])
    if organization and organization["partner_status"] == "suspended":
        raise HTTPException(status_code=403, detail="Partner account is suspended")
    return organization


@app.post("/api/assessments")
def create_assessment(payload: AssessmentIn, request: Request) -> Dict[str, Any]:
    service_type = normalize_service_type(payload.service_type)
    if not service_type:
        raise HTTPException(status_code=400, detail="Unsupported service type")
    values = payload.model_dump()
    values["service_type"] = service_type
    assessment_id = str(uuid.uuid4())
    created_at = now_iso()
    with get_db() as conn:
        user = require_session_user(conn, request)
        organization = ensure_partner_can_submit(conn, user)
        columns = ["id", "user_id", "organization_id", "status", *ASSESSMENT_FIELDS, "created_at", "updated_at"]
        params = [
            assessment_id,
            user["id"],
            organization["id"] if organization else None,
            "draft",
            *[assessment_db_value(field, values.get(field)) for field in ASSESSMENT_FIELDS],
            created_at,
            created_at,
        ]
        conn.execute(
            f"INSERT INTO Assessment ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            params,
        )
        conn.commit()
        row = fetch_assessment(conn, assessment_id)
    return assessment_payload(row)


@app.put("/api/assessments/{assessment_id}")
def update_assessment(assessment_id: str, payload: AssessmentUpdate, request: Request) -> Dict[str, Any]:
    updates = payload.model_dump(exclude_unset=True)
    if "service_type" in updates:
        service_type = normalize_service_type(updates["service_type"])
        if not service_type:
            raise HTTPException(status_code=400, detail="Unsupported service type")
        updates["service_type"] = service_type
    with get_db() as conn:
        user = require_session_user(conn, request)
        fetch_owned_assessment(conn, assessment_id, user["id"])
        if updates:
            assignments = ", ".join(f"{field} = ?" for field in updates)
            conn.execute(
                f"UPDATE Assessment SET {assignments}, updated_at = ? WHERE id = ?",
                [*(assessment_db_value(field, value) for field, value in updates.items()), now_iso(), assessment_id],
            )
            conn.commit()
        row = fetch_assessment(conn, assessment_id)
    return assessment_payload(row)


@app.get("/api/assessments/{assessment_id}")
def get_assessment(assessment_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_owned_assessment(conn, assessment_id, user["id"])
        quote = fetch_quote_for_assessment(conn, assessment_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM UploadedFile WHERE assessment_id = ? ORDER BY created_at",
            (assessment_id,),
        )
        files = [to_file_out(file_row).model_dump() for file_row in cur.fetchall()]
    return {
        **assessment_payload(row),
        "quote": quote_payload(quote) if quote else None,
        "files": files,
    }


@app.get("/api/assessments")
def list_assessments(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT a.*, q.id AS quote_id, q.quote_number, q.status AS quote_status
            FROM Assessment a
            LEFT JOIN Quote q ON q.assessment_id = a.id
            WHERE a.user_id = ?
            ORDER BY a.created_at DESC
            """,
            (user["id"],),
        )
        rows = cur.fetchall()
    return [assessment_payload(row) for row in rows]


@app.post("/api/assessments/{assessment_id}/files", response_model=List[UploadedFileOut])
def upload_assessment_files(
    assessment_id: str,
    request: Request,
    file_type: str = Form(...),
    files: List[UploadFile] = File(...),
) -> List[UploadedFileOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        fetch_owned_assessment(conn, assessment_id, user["id"])
        normalized_type = (file_type or "").strip().lower()
        if normalized_type not in FILE_TYPES:
            raise HTTPException(status_code=400, detail="file_type must be photo or document")
        if not files:
            raise HTTPException(status_code=400, detail="No files uploaded")
        if len(files) > MAX_FILES_PER_REQUEST:
            raise HTTPException(status_code=400, detail=f"At most {MAX_FILES_PER_REQUEST} files per upload")
        contents = [validate_upload(normalized_type, file) for file in files]
        saved = [
            save_upload(conn, assessment_id, normalized_type, file, content)
            for file, content in zip(files, contents)
        ]
        conn.commit()
    return saved


@app.get("/api/assessments/{assessment_id}/files", response_model=List[UploadedFileOut])
def list_assessment_files(assessment_id: str, request: Request) -> List[UploadedFileOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        fetch_owned_assessment(conn, assessment_id, user["id"])
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM UploadedFile WHERE assessment_id = ? ORDER BY created_at",
            (assessment_id,),
        )
        rows = cur.fetchall()
    return [to_file_out(row) for row in rows]


@app.delete("/api/files/{file_id}")
def delete_assessment_file(file_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT f.*
            FROM UploadedFile f
            JOIN Assessment a ON a.id = f.assessment_id
            WHERE f.id = ? AND a.user_id = ?
            """,
            (file_id, user["id"]),
        )
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="File not found")
        cur.execute("DELETE FROM UploadedFile WHERE id = ?", (file_id,))
        conn.commit()
    remove_upload_file(row["file_path"])
    return {"status": "deleted"}


@app.get("/api/files/{category}/{filename}")
def get_stored_file(category: str, filename: str) -> FileResponse:
    directory = FILE_CATEGORY_DIRS.get(category)
    safe_name = Path(filename).name
    if not directory or safe_name != filename:
        raise HTTPException(status_code=404, detail="File not found")
    file_path = UPLOADS_DIR / directory / safe_name
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    if category == "pdf":
        return FileResponse(path=str(file_path), filename=safe_name, media_type="application/pdf")
    return FileResponse(path=str(file_path))


@app.post("/api/assessments/{assessment_id}/quote", response_model=QuoteOut)
def generate_quote(assessment_id: str, request: Request) -> QuoteOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        assessment = fetch_owned_assessment(conn, assessment_id, user["id"])
        existing = fetch_quote_for_assessment(conn, assessment_id)
        if existing:
            return to_quote_out(existing)
        ensure_partner_can_submit(conn, user)

        breakdown = calculate_pricing(assessment_payload(assessment))
        quote_id = str(uuid.uuid4())
        created_at = now_iso()
        try:
            conn.execute(
                """
                INSERT INTO Quote (
                    id, assessment_id, quote_number, hourly_rate,
                    survey_hours, installation_hours, configuration_hours, removal_hours, labor_hold_hours,
                    survey_cost, installation_cost, configuration_cost, removal_cost, labor_hold_cost,
                    training_cost, hardware_cost, total_cost, status, customer_token, email_sent,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, 0, ?, ?)
                """,
                (
                    quote_id,
                    assessment_id,
                    build_quote_number(assessment_id),
                    breakdown.hourly_rate,
                    breakdown.survey_hours,
                    breakdown.installation_hours,
                    breakdown.configuration_hours,
                    breakdown.removal_hours,
                    breakdown.labor_hold_hours,
                    breakdown.survey_cost,
                    breakdown.installation_cost,
                    breakdown.configuration_cost,
                    breakdown.removal_cost,
                    breakdown.labor_hold_cost,
                    breakdown.training_cost,
                    breakdown.hardware_cost,
                    breakdown.total_cost,
                    secrets.token_urlsafe(24),
                    created_at,
                    created_at,
                ),
            )
        except sqlite3.IntegrityError:
            # Another request generated the quote first.
            conn.rollback()
            existing = fetch_quote_for_assessment(conn, assessment_id)
            if not existing:
                raise
            return to_quote_out(existing)
        conn.execute(
            "UPDATE Assessment SET status = 'completed', total_cost = ?, updated_at = ? WHERE id = ?",
            (breakdown.total_cost, created_at, assessment_id),
        )
        conn.commit()
        row = fetch_quote(conn, quote_id)

    logger.info("Generated quote %s (%s) for assessment %s", row["quote_number"], breakdown.total_cost, assessment_id)
    sync_quote_to_hubspot_async(quote_id, create_if_missing=True)
    return to_quote_out(row)


@app.get("/api/quotes", response_model=List[QuoteListOut])
def list_quotes(request: Request) -> List[QuoteListOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            f"{ADMIN_QUOTE_QUERY} WHERE a.user_id = ? ORDER BY q.created_at DESC",
            (user["id"],),
        )
        rows = cur.fetchall()
    return [QuoteListOut(**quote_payload(row)) for row in rows]


@app.delete("/api/quotes/{quote_id}")
def delete_quote(quote_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_owned_quote(conn, quote_id, user["id"])
        delete_quote_row(conn, quote)
    return {"status": "deleted"}


@app.post("/api/quotes/{quote_id}/pdf")
def create_quote_pdf(quote_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_owned_quote(conn, quote_id, user["id"])
        assessment = fetch_assessment(conn, quote["assessment_id"])
        organization = fetch_user_organization(conn, assessment["user_id"])
        pdf_path = reports.generate_quote_pdf(
            assessment_payload(assessment),
            quote_payload(quote),
            organization["name"] if organization else None,
            UPLOADS_DIR / FILE_CATEGORY_DIRS["pdf"],
        )
        conn.execute(
            "UPDATE Quote SET pdf_path = ?, updated_at = ? WHERE id = ?",
            (str(pdf_path), now_iso(), quote_id),
        )
        conn.commit()
        row = fetch_quote(conn, quote_id)
    return {"pdf_url": quote_pdf_url(str(pdf_path)), "quote": to_quote_out(row)}


CUSTOMER_HIDDEN_QUOTE_FIELDS = {
    "hubspot_contact_id",
    "hubspot_deal_id",
    "hubspot_ticket_id",
    "hubspot_last_synced_at",
    "hubspot_sync_error",
    "hubspot_deal_url",
    "hubspot_ticket_url",
}
CUSTOMER_ACTIONS = {"approve": "approved", "reject": "rejected"}


def customer_quote_view(conn: sqlite3.Connection, quote: sqlite3.Row) -> Dict[str, Any]:
    assessment = fetch_assessment(conn, quote["assessment_id"])
    organization = fetch_user_organization(conn, assessment["user_id"])
    return {
        "quote": to_quote_out(quote).model_dump(exclude=CUSTOMER_HIDDEN_QUOTE_FIELDS),
        "assessment": {
            "service_type": assessment["service_type"],
            "customer_company_name": assessment["customer_company_name"],
            "customer_contact_name": assessment["customer_contact_name"],
            "customer_email": assessment["customer_email"],
            "site_address": assessment["site_address"],
            "sales_executive_name": assessment["sales_executive_name"],
            "sales_executive_email": assessment["sales_executive_email"],
        },
        "organization": {"name": organization["name"] if organization else "NXTKonekt"},
    }


@app.get("/api/customer/quote/{token}")
def get_customer_quote(token: str) -> Dict[str, Any]:
    with get_db() as conn:
        quote = fetch_quote_by_token(conn, token)
        return customer_quote_view(conn, quote)


@app.post("/api/customer/quote/{token}/{action}")
def customer_quote_action(token: str, action: str, payload: Optional[CustomerActionIn] = None) -> Dict[str, Any]:
    target_status = CUSTOMER_ACTIONS.get((action or "").strip().lower())
    if not target_status:
        raise HTTPException(status_code=400, detail="Action must be approve or reject")
    feedback = ((payload.feedback if payload else None) or "").strip() or None
    with get_db() as conn:
        quote = fetch_quote_by_token(conn, token)
        if quote["status"] == "closed":
            raise HTTPException(status_code=400, detail="Quote is closed")
        changed = quote["status"] != target_status
        if changed:
            now = now_iso()
            timestamp_column = "accepted_at" if target_status == "approved" else "rejected_at"
            conn.execute(
                f"""
                UPDATE Quote
                SET status = ?, {timestamp_column} = ?,
                    customer_feedback = COALESCE(?, customer_feedback), updated_at = ?
                WHERE id = ?
                """,
                (target_status, now, feedback, now, quote["id"]),
            )
            conn.commit()
            quote = fetch_quote(conn, quote["id"])
        view = customer_quote_view(conn, quote)

    if changed:
        logger.info("Customer %s quote %s", target_status, quote["quote_number"])
        sync_quote_to_hubspot_async(quote["id"], create_if_missing=False)
    return {**view, "changed": changed}


@app.post("/api/hubspot/sync-quote/{quote_id}", response_model=HubSpotSyncResponse)
def sync_quote_endpoint(quote_id: str, request: Request) -> HubSpotSyncResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        if is_admin_user(user):
            fetch_quote(conn, quote_id)
        else:
            fetch_owned_quote(conn, quote_id, user["id"])
        sync_quote_to_hubspot(conn, quote_id, create_if_missing=True)
        row = fetch_quote(conn, quote_id)
    return HubSpotSyncResponse(
        quote_id=row["id"],
        hubspot_contact_id=row["hubspot_contact_id"],
        hubspot_deal_id=row["hubspot_deal_id"],
        hubspot_ticket_id=row["hubspot_ticket_id"],
        hubspot_last_synced_at=row["hubspot_last_synced_at"],
        hubspot_sync_error=row["hubspot_sync_error"],
        hubspot_deal_url=hubspot_record_url("0-3", row["hubspot_deal_id"]),
        hubspot_ticket_url=hubspot_record_url("0-5", row["hubspot_ticket_id"]),
    )


@app.post("/api/hubspot/webhook")
async def hubspot_webhook(request: Request) -> Dict[str, Any]:
    body = await request.body()
    signature = request.headers.get("X-HubSpot-Signature-v3") or request.headers.get("X-HubSpot-Signature")
    return await run_in_threadpool(handle_hubspot_webhook, body, signature)


@app.get("/api/admin/stats")
def get_admin_stats(request: Request) -> Dict[str, Any]:
    month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()
    with get_db() as conn:
        require_admin(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS cnt FROM User WHERE role = 'partner'")
        total_partners = cur.fetchone()["cnt"]
        cur.execute("SELECT COUNT(*) AS cnt FROM Organization WHERE partner_status = 'pending'")
        pending_partners = cur.fetchone()["cnt"]
        cur.execute("SELECT COUNT(*) AS cnt FROM Assessment")
        total_assessments = cur.fetchone()["cnt"]
        cur.execute("SELECT COUNT(*) AS cnt FROM Quote")
        total_quotes = cur.fetchone()["cnt"]
        cur.execute(
            "SELECT COALESCE(SUM(total_cost), 0) AS revenue FROM Quote WHERE status = 'approved' AND created_at >= ?",
            (month_start,),
        )
        monthly_revenue = round(float(cur.fetchone()["revenue"] or 0), 2)
    return {
        "total_partners": total_partners,
        "pending_partners": pending_partners,
        "total_assessments": total_assessments,
        "total_quotes": total_quotes,
        "monthly_revenue": monthly_revenue,
    }


@app.get("/api/admin/partners")
def list_partners(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        require_admin(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT u.*,
                   o.id AS organization_id,
                   o.name AS organization_name,
                   o.partner_status,
                   o.partner_type,
                   (SELECT COUNT(*) FROM Assessment a WHERE a.user_id = u.id) AS assessment_count
            FROM User u
            LEFT JOIN Organization o ON o.user_id = u.id
            WHERE u.role = 'partner'
            ORDER BY u.created_at DESC
            """
        )
        rows = cur.fetchall()
    partners = []
    for row in rows:
        data = dict(row)
        partners.append(
            {
                **to_user_out(row).model_dump(),
                "organization_id": data["organization_id"],
                "organization_name": data["organization_name"],
                "partner_status": data["partner_status"],
                "partner_type": data["partner_type"],
                "assessment_count": data["assessment_count"],
            }
        )
    return partners


@app.patch("/api/admin/partners/{organization_id}/status", response_model=OrganizationOut)
def update_partner_status(organization_id: str, payload: PartnerStatusIn, request: Request) -> OrganizationOut:
    with get_db() as conn:
        require_admin(conn, request)
        return set_partner_status(conn, organization_id, payload.status)


@app.post("/api/admin/partners/{organization_id}/approve", response_model=OrganizationOut)
def approve_partner(organization_id: str, request: Request) -> OrganizationOut:
    with get_db() as conn:
        require_admin(conn, request)
        return set_partner_status(conn, organization_id, "approved")


@app.post("/api/admin/partners/{organization_id}/reject", response_model=OrganizationOut)
def reject_partner(organization_id: str, request: Request) -> OrganizationOut:
    with get_db() as conn:
        require_admin(conn, request)
        return set_partner_status(conn, organization_id, "suspended")


@app.get("/api/admin/organizations", response_model=List[OrganizationOut])
def list_organizations(request: Request) -> List[OrganizationOut]:
    with get_db() as conn:
        require_admin(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Organization ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [to_organization_out(row) for row in rows]


@app.get("/api/admin/users", response_model=List[UserOut])
def list_users(request: Request) -> List[UserOut]:
    with get_db() as conn:
        require_admin(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM User ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [to_user_out(row) for row in rows]


@app.patch("/api/admin/users/{user_id}/role", response_model=UserOut)
def update_user_role(user_id: str, payload: UserRoleIn, request: Request) -> UserOut:
    role = (payload.role or "").strip().lower()
    if role not in ALLOWED_USER_ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")
    with get_db() as conn:
        require_admin(conn, request)
        fetch_user(conn, user_id)
        conn.execute("UPDATE User SET role = ?, updated_at = ? WHERE id = ?", (role, now_iso(), user_id))
        conn.commit()
        row = fetch_user(conn, user_id)
    return to_user_out(row)


@app.patch("/api/admin/users/{user_id}/toggle", response_model=UserOut)
def toggle_user_active(user_id: str, payload: UserActiveIn, request: Request) -> UserOut:
    with get_db() as conn:
        admin = require_admin(conn, request)
        if admin["id"] == user_id and not payload.is_active:
            raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
        fetch_user(conn, user_id)
        conn.execute(
            "UPDATE User SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if payload.is_active else 0, now_iso(), user_id),
        )
        if not payload.is_active:
            revoke_user_sessions(conn, user_id)
        conn.commit()
        row = fetch_user(conn, user_id)
    return to_user_out(row)


@app.get("/api/admin/assessments")
def list_all_assessments(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        require_admin(conn, request)
        return list_admin_assessment_rows(conn)


@app.get("/api/admin/assessments/{assessment_id}/pdf")
def download_assessment_report(assessment_id: str, request: Request) -> FileResponse:
    with get_db() as conn:
        require_admin(conn, request)
        assessment = fetch_assessment(conn, assessment_id)
        user = fetch_user(conn, assessment["user_id"])
        organization = fetch_user_organization(conn, assessment["user_id"])
        quote = fetch_quote_for_assessment(conn, assessment_id)
    report_path = reports.generate_assessment_pdf(
        assessment_payload(assessment),
        dict(user),
        dict(organization) if organization else None,
        quote_payload(quote) if quote else None,
        UPLOADS_DIR / "reports",
    )
    return FileResponse(
        path=str(report_path),
        filename=report_path.name,
        media_type="application/pdf",
        background=BackgroundTask(report_path.unlink, missing_ok=True),
    )


@app.get("/api/admin/quotes", response_model=List[QuoteListOut])
def list_all_quotes(request: Request) -> List[QuoteListOut]:
    with get_db() as conn:
        require_admin(conn, request)
        rows = list_admin_quote_rows(conn)
    return [QuoteListOut(**row) for row in rows]


@app.get("/api/admin/quotes/{quote_id}/details")
def get_quote_details(quote_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_admin(conn, request)
        quote = fetch_quote(conn, quote_id)
        assessment = fetch_assessment(conn, quote["assessment_id"])
        user = fetch_user(conn, assessment["user_id"])
        organization = fetch_user_organization(conn, assessment["user_id"])
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM UploadedFile WHERE assessment_id = ? ORDER BY created_at",
            (assessment["id"],),
        )
        files = [to_file_out(row).model_dump() for row in cur.fetchall()]
    return {
        "quote": to_quote_out(quote).model_dump(),
        "assessment": assessment_payload(assessment),
        "user": to_user_out(user).model_dump(),
        "organization": to_organization_out(organization).model_dump() if organization else None,
        "files": files,
    }


@app.patch("/api/admin/quotes/{quote_id}/close", response_model=QuoteOut)
def close_quote(quote_id: str, request: Request) -> QuoteOut:
    with get_db() as conn:
        require_admin(conn, request)
        fetch_quote(conn, quote_id)
        conn.execute(
            "UPDATE Quote SET status = 'closed', updated_at = ? WHERE id = ?",
            (now_iso(), quote_id),
        )
        conn.commit()
        row = fetch_quote(conn, quote_id)
    sync_quote_to_hubspot_async(quote_id, create_if_missing=False)
    return to_quote_out(row)


@app.delete("/api/admin/quotes/{quote_id}")
def admin_delete_quote(quote_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        require_admin(conn, request)
        quote = fetch_quote(conn, quote_id)
        delete_quote_row(conn, quote)
    return {"status": "deleted"}


@app.get("/api/admin/export/assessments")
def export_assessments(request: Request, format: str = "csv") -> Response:
    export_format = (format or "csv").strip().lower()
    if export_format not in {"csv", "xlsx"}:
        raise HTTPException(status_code=400, detail="format must be csv or xlsx")
    with get_db() as conn:
        require_admin(conn, request)
        rows = list_admin_assessment_rows(conn)
    stamp = datetime.utcnow().strftime("%Y-%m-%d")
    if export_format == "xlsx":
        return export_response(
            reports.build_assessments_xlsx(rows),
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            f"assessments-{stamp}.xlsx",
        )
    return export_response(reports.build_assessments_csv(rows), "text/csv", f"assessments-{stamp}.csv")


@app.get("/api/admin/export/quotes")
def export_quotes(request: Request) -> Response:
    with get_db() as conn:
        require_admin(conn, request)
        rows = list_admin_quote_rows(conn)
    stamp = datetime.utcnow().strftime("%Y-%m-%d")
    return export_response(reports.build_quotes_csv(rows), "text/csv", f"quotes-{stamp}.csv")


@app.post("/api/admin/send-invitation")
def send_invitation(payload: InvitationIn, request: Request) -> Dict[str, Any]:
    email = (payload.email or "").strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required")
    invitation_id = str(uuid.uuid4())
    token = secrets.token_urlsafe(32)
    created_at = now_iso()
    expires_at = (datetime.utcnow() + timedelta(days=INVITATION_EXPIRY_DAYS)).isoformat()
    with get_db() as conn:
        admin = require_admin(conn, request)
        inviter_name = " ".join(part for part in [admin["first_name"], admin["last_name"]] if part) or admin["email"]
        conn.execute(
            """
            INSERT INTO PartnerInvitation (
                id, email, invited_by, invited_by_name, invitation_token, status, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (invitation_id, email, admin["id"], inviter_name, token, expires_at, created_at),
        )
        conn.commit()

        signup_link = f"{FRONTEND_BASE_URL}/api/login?{urlparse.urlencode({'invitation': token})}"
        result = send_partner_invitation(
            email,
            signup_link,
            inviter_name=inviter_name,
            partner_name=(payload.partner_name or "").strip() or None,
        )
        if result.get("success"):
            track_signup_event(
                conn,
                "invitation_sent",
                email=email,
                invitation_id=invitation_id,
                metadata={"invited_by": admin["id"], "message_id": result.get("message_id")},
            )
            conn.commit()
            logger.info("Sent partner invitation %s to %s", invitation_id, email)
        else:
            logger.warning("Invitation %s created but email failed: %s", invitation_id, result.get("error"))
        cur = conn.cursor()
        cur.execute("SELECT * FROM PartnerInvitation WHERE id = ?", (invitation_id,))
        row = cur.fetchone()
    return {"invitation": to_invitation_out(row), "email_sent": bool(result.get("success"))}


@app.get("/api/admin/invitations", response_model=List[InvitationOut])
def list_invitations(request: Request) -> List[InvitationOut]:
    with get_db() as conn:
        require_admin(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM PartnerInvitation ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [to_invitation_out(row) for row in rows]


@app.get("/api/admin/analytics")
def get_signup_analytics(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Dict[str, Any]:
    start = parse_date_param(start_date, "start_date")
    end = parse_date_param(end_date, "end_date")
    clauses: List[str] = []
    params: List[Any] = []
    if start:
        clauses.append("timestamp >= ?")
        params.append(start.isoformat())
    if end:
        # Whole end day is included.
        clauses.append("timestamp < ?")
        params.append((end + timedelta(days=1)).isoformat())
    where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_db() as conn:
        require_admin(conn, request)
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM SignupAnalytics {where_clause} ORDER BY timestamp DESC", params)
        rows = cur.fetchall()
    events = []
    summary = {event: 0 for event in sorted(SIGNUP_EVENTS)}
    for row in rows:
        data = dict(row)
        data["metadata"] = json.loads(data.pop("metadata_json") or "{}")
        events.append(data)
        summary[data["event"]] = summary.get(data["event"], 0) + 1
    sent = summary.get("invitation_sent", 0)
    conversion_rate = round(summary.get("signup_completed", 0) / sent, 4) if sent else 0.0
    return {"events": events, "summary": summary, "conversion_rate": conversion_rate}


@app.get("/api/admin/test-email")
def admin_test_email(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_admin(conn, request)
    return test_email_connection()


@app.get("/api/hubspot/test", response_model=HubSpotTestResponse)
def admin_test_hubspot(request: Request) -> HubSpotTestResponse:
    with get_db() as conn:
        require_admin(conn, request)
    return test_hubspot_connection()


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
