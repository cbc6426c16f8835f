from __future__ import annotations
import base64
import binascii
import csv
import io
import json
import os
import time
from collections import Counter
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Optional

from flask import (
    Flask,
    abort,
    flash,
    jsonify,
    redirect,
    render_template_string,
    request,
    send_file,
    session,
    url_for,
)

import requests
from jinja2 import DictLoader
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename
from sqlalchemy import (
    Column,
    DateTime,
    String,
    Text,
    create_engine,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    Session,
    declarative_base,
    scoped_session,
    sessionmaker,
)

FALLBACK_TAGS = ["Uncategorized"]


class TaggingServiceError(RuntimeError):
    """Raised when a tag suggestion cannot be produced."""


def _clean_tags(raw) -> list[str]:
    if not isinstance(raw, list):
        raise TaggingServiceError("Tag payload was not a list.")
    tags = [item.strip() for item in raw if isinstance(item, str) and item.strip()]
    if not tags:
        raise TaggingServiceError("Tag payload was empty.")
    return tags


def _tagging_headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if TAGGING_API_KEY:
        headers["Authorization"] = f"Bearer {TAGGING_API_KEY}"
    return headers


def request_tags(title: str, description: str) -> list[str]:
    """POST the ticket text to the tagging endpoint and return its tags."""

    if not TAGGING_ENDPOINT_URL:
        raise TaggingServiceError("TAGGING_ENDPOINT_URL is not configured.")
    try:
        response = requests.post(
            TAGGING_ENDPOINT_URL,
            headers=_tagging_headers(),
            json={"title": title, "description": description},
            timeout=TAGGING_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise TaggingServiceError(f"Tagging request failed: {exc}") from exc
    try:
        data = response.json()
    except ValueError as exc:
        raise TaggingServiceError("Tagging response was not valid JSON.") from exc
    if not isinstance(data, dict):
        raise TaggingServiceError("Tagging response was not an object.")
    return _clean_tags(data.get("tags"))


def suggest_tags(title: str, description: str) -> list[str]:
    """Return tags for a new ticket, or the fallback tag on any failure."""

    try:
        return request_tags(title, description)
    except TaggingServiceError as exc:
        app.logger.warning("Using fallback ticket tags: %s", exc)
        return list(FALLBACK_TAGS)


TAGGING_SYSTEM_PROMPT = (
    "You are an AI that categorizes IT support tickets for a school help desk. Analyze the "
    "ticket content and return 2-4 relevant tags that describe the issue.\n\n"
    "Common tag categories:\n"
    "- Technical: Hardware, Software, Network, Database, Security, Email, Printer, Access\n"
    "- Facility: Room, Maintenance, Cleaning, Temperature, Furniture\n"
    "- Academic: Course, Assignment, Grades, Registration, Library\n"
    "- General: Password, Login, Account, Billing\n\n"
    'Return ONLY a JSON object with a "tags" array. Example: {"tags": ["Hardware", "Network"]}'
)


def _openai_headers() -> dict[str, str]:
    if not OPENAI_API_KEY:
        raise TaggingServiceError("OPENAI_API_KEY is not configured.")
    return {
        "Authorization": f"Bearer {OPENAI_API_KEY}",
        "Content-Type": "application/json",
    }


def _openai_post(path: str, payload: dict, timeout: int = 30) -> dict:
    base = OPENAI_BASE_URL.rstrip("/")
    url = f"{base}/{path.lstrip('/')}"
    try:
        response = requests.post(url, headers=_openai_headers(), json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise TaggingServiceError(f"Model request failed: {exc}") from exc
    try:
        data = response.json()
    except ValueError as exc:  # JSONDecodeError inherits from ValueError
        raise TaggingServiceError("Model response was not valid JSON.") from exc
    return data


def _strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def categorize_ticket(title: str, description: str) -> list[str]:
    payload = {
        "model": OPENAI_TAG_MODEL,
        "messages": [
            {"role": "system", "content": TAGGING_SYSTEM_PROMPT},
            {"role": "user", "content": f"Title: {title}\nDescription: {description}"},
        ],
        "temperature": 0.3,
    }
    data = _openai_post("chat/completions", payload)
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise TaggingServiceError("Tags missing from model response.") from exc
    try:
        result = json.loads(_strip_code_fence(content or ""))
    except ValueError as exc:
        raise TaggingServiceError("Model reply was not a JSON object.") from exc
    if not isinstance(result, dict):
        raise TaggingServiceError("Model reply was not a JSON object.")
    return _clean_tags(result.get("tags"))

# --------------------------------------------------------------------------------------
# Flask app config
# --------------------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET", "dev-secret")
app.config["MAX_CONTENT_LENGTH"] = 8 * 1024 * 1024  # request cap, attachments included


def _candidate_path_from_env(value: str) -> Path | None:
    """Return a filesystem path for supported SQLite URI formats."""

    cleaned = value.strip()
    if not cleaned or cleaned == ":memory:":
        return None

    if cleaned.startswith("sqlite:///"):
        cleaned = cleaned[len("sqlite:///"):]
    elif cleaned.startswith("sqlite://"):
        cleaned = cleaned[len("sqlite://"):]

    if cleaned == ":memory:" or cleaned.startswith("file:") or "://" in cleaned:
        return None

    return Path(cleaned.split("?", 1)[0])


def _resolve_db_path(
    env_override: str | None = None,
    data_dir_override: str | None = None,
) -> str:
    """Work out where the SQLite document store lives and create its directory."""

    env_value = env_override if env_override is not None else os.environ.get("CAMPUSDESK_DB")
    data_dir = (
        data_dir_override
        if data_dir_override is not None
        else os.environ.get("CAMPUSDESK_DATA_DIR")
    )
    base_dir = Path(data_dir) if data_dir else Path(app.instance_path)

    if env_value:
        candidate = _candidate_path_from_env(env_value)
        if candidate is None:
            return env_value
        candidate = candidate.expanduser()
        if not candidate.is_absolute():
            candidate = (base_dir / candidate).resolve()
    else:
        candidate = (base_dir / "campusdesk.db").expanduser()

    candidate.parent.mkdir(parents=True, exist_ok=True)
    return str(candidate)


DB_PATH = _resolve_db_path()
DATABASE_URL = os.getenv("DATABASE_URL")


def _build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"sslmode": os.getenv("DATABASE_SSLMODE", "require")},
    )


engine = _build_engine(DATABASE_URL or f"sqlite:///{DB_PATH}")
app.logger.info("DB engine: %s", "Postgres" if DATABASE_URL else f"SQLite @ {DB_PATH}")

SessionLocal = scoped_session(
    sessionmaker(bind=engine, autoflush=False, autocommit=False)
)
Base = declarative_base()


class StoredDocument(Base):
    __tablename__ = "kv_documents"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


TAGGING_ENDPOINT_URL = os.getenv("TAGGING_ENDPOINT_URL")
TAGGING_API_KEY = os.getenv("TAGGING_API_KEY")
try:
    TAGGING_TIMEOUT = float(os.getenv("TAGGING_TIMEOUT", "15"))
except ValueError:
    TAGGING_TIMEOUT = 15.0

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_TAG_MODEL = os.getenv("OPENAI_TAG_MODEL", "gpt-4o-mini")


# --------------------------------------------------------------------------------------
# DB helpers
# --------------------------------------------------------------------------------------


def get_session() -> Session:
    return SessionLocal()


def close_session(exc: BaseException | None = None):  # noqa: ARG001
    SessionLocal.remove()


@app.teardown_appcontext
def _teardown_sqlalchemy(exc: BaseException | None):  # noqa: ARG001
    close_session(exc)


def init_db():
    try:
        Base.metadata.create_all(engine)
    except SQLAlchemyError as e:  # pragma: no cover - safeguard for startup
        app.logger.warning("SQLAlchemy create_all failed: %s", e)


def configure_database(url: str) -> None:
    """Point the document store at a different database and create its table."""

    global engine
    SessionLocal.remove()
    engine.dispose()
    engine = _build_engine(url)
    SessionLocal.configure(bind=engine)
    init_db()


init_db()

# --------------------------------------------------------------------------------------
# Document store
# --------------------------------------------------------------------------------------
STORAGE_KEY_TICKETS = "campusdesk_tickets_v10"
STORAGE_KEY_USER = "campusdesk_user_v10"
STORAGE_KEY_THEME = "campusdesk_theme_v10"
STORAGE_KEY_LIVE_USERS = "campusdesk_live_users_v10"


def kv_get(key: str) -> Optional[str]:
    record = get_session().get(StoredDocument, key)
    return record.value if record is not None else None


def kv_put(key: str, document: str) -> None:
    db = get_session()
    try:
        record = db.get(StoredDocument, key)
        if record is None:
            record = StoredDocument(key=key)
            db.add(record)
        record.value = document
        record.updated_at = datetime.now(timezone.utc)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def kv_delete(key: str) -> None:
    db = get_session()
    try:
        record = db.get(StoredDocument, key)
        if record is not None:
            db.delete(record)
            db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def _decode_document(key: str, raw, default):
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        app.logger.warning("Discarding unreadable document stored under %s", key)
        return default


def load_document(key: str, default):
    """Return the JSON document stored under ``key``.

    Missing, corrupt, or unreadable documents all come back as ``default``;
    the failure is logged and never raised to the caller.
    """

    try:
        raw = kv_get(key)
    except SQLAlchemyError as exc:
        app.logger.warning("Unable to read %s: %s", key, exc)
        get_session().rollback()
        return default
    return _decode_document(key, raw, default)


def save_document(key: str, value) -> None:
    """Overwrite the whole document stored under ``key``."""

    try:
        kv_put(key, json.dumps(value, ensure_ascii=False))
    except SQLAlchemyError as exc:
        app.logger.warning("Unable to write %s: %s", key, exc)


def _session_load(key: str, default):
    return _decode_document(key, session.get(key), default)


def _session_save(key: str, value) -> None:
    session[key] = json.dumps(value, ensure_ascii=False)

# --------------------------------------------------------------------------------------
# Users and auth
# --------------------------------------------------------------------------------------
PORTALS = ("student", "staff")
DEFAULT_AVATAR = "👤"
AVATARS = ["👨‍🎓", "👩‍🎓", "👮‍♂️", "👩‍💻", "👨‍💻", "🦸"]
MIN_PASSWORD_LENGTH = 4


class AuthError(ValueError):
    """Raised when a login, signup, or profile change is rejected."""


def _seed_user(name: str, password: str, role: str, display_name: str, avatar: str) -> dict:
    return {
        "name": name,
        "role": role,
        "displayName": display_name,
        "avatar": avatar,
        "passwordHash": generate_password_hash(password),
    }


DEFAULT_USERS = [
    _seed_user("alex", "pass", "student", "Alex Smith", "👨‍🎓"),
    _seed_user("jane", "pass", "student", "Jane Doe", "👩‍💻"),
    _seed_user("staff1", "admin", "staff", "Command Lead", "👮‍♂️"),
]


def public_user(user: dict) -> dict:
    return {
        "name": user.get("name"),
        "role": user.get("role"),
        "displayName": user.get("displayName") or user.get("name"),
        "avatar": user.get("avatar") or DEFAULT_AVATAR,
    }


def load_live_users() -> list[dict]:
    users = load_document(STORAGE_KEY_LIVE_USERS, [])
    if not isinstance(users, list):
        return []
    return [user for user in users if isinstance(user, dict) and user.get("name")]


def get_all_users() -> list[dict]:
    """Seed users first, then live users whose names are not already taken."""

    combined = list(DEFAULT_USERS)
    known = {user["name"] for user in combined}
    for user in load_live_users():
        if user["name"] not in known:
            combined.append(user)
            known.add(user["name"])
    return combined


def find_user(name: str) -> Optional[dict]:
    username = (name or "").strip().lower()
    for user in get_all_users():
        if user["name"] == username:
            return user
    return None


def authenticate(name: str, password: str, portal: str) -> dict:
    user = find_user(name)
    if not user or not check_password_hash(user.get("passwordHash") or "", password or ""):
        raise AuthError("Invalid credentials")
    if user.get("role") != portal:
        raise AuthError("Wrong portal")
    return public_user(user)


def register_user(name: str, password: str, portal: str) -> dict:
    display_name = (name or "").strip()
    username = display_name.lower()
    if not username:
        raise AuthError("Username required")
    if find_user(username):
        raise AuthError("Username taken")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise AuthError("Password too short")
    record = {
        "name": username,
        "role": portal,
        "displayName": display_name,
        "avatar": DEFAULT_AVATAR,
        "passwordHash": generate_password_hash(password),
    }
    save_document(STORAGE_KEY_LIVE_USERS, load_live_users() + [record])
    app.logger.info("Registered %s account %s", portal, username)
    return public_user(record)


def update_profile(user: dict, display_name: str, avatar: str) -> dict:
    """Change display name and avatar; name and role stay fixed."""

    label = (display_name or "").strip()
    if not label:
        raise AuthError("Display name is required")
    if avatar not in AVATARS and avatar != user.get("avatar"):
        avatar = user.get("avatar") or DEFAULT_AVATAR
    updated = {**user, "displayName": label, "avatar": avatar}

    live_users = load_live_users()
    for record in live_users:
        if record["name"] == user.get("name"):
            record["displayName"] = label
            record["avatar"] = avatar
            save_document(STORAGE_KEY_LIVE_USERS, live_users)
            break
    return public_user(updated)


def current_user() -> Optional[dict]:
    user = _session_load(STORAGE_KEY_USER, None)
    if not isinstance(user, dict) or not user.get("name"):
        return None
    return user


def start_session(user: dict) -> None:
    _session_save(STORAGE_KEY_USER, public_user(user))


def end_session() -> None:
    session.pop(STORAGE_KEY_USER, None)


def is_staff_user() -> bool:
    user = current_user()
    return bool(user and user.get("role") == "staff")


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not current_user():
            return redirect(url_for("home"))
        return view_func(*args, **kwargs)
    return wrapper

# --------------------------------------------------------------------------------------
# Constants / helpers
# --------------------------------------------------------------------------------------
STATUSES = ["Pending", "In Progress", "Resolved"]
PRIORITIES = ["Low", "Medium", "High", "Critical"]
CATEGORIES = ["Technical", "Curriculum", "Facility", "Career", "Other"]
DEFAULT_CATEGORY = "Technical"
RATING_CHOICES = [1, 2, 3, 4, 5]
MAX_ATTACHMENT_BYTES = 500_000
# raster only; anything else (svg included) is sent as a download
INLINE_ATTACHMENT_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}
IMMUTABLE_TICKET_FIELDS = ("id", "studentId", "timestamp")
SLA_HOURS = {"Critical": 6, "High": 24}
EXPORT_HEADERS = ["ID", "Title", "Category", "Priority", "Status", "Student", "Created"]
EXPORT_FILENAME = "campusdesk_export.csv"
STATUS_BADGES = {
    "Pending": {"cls": "badge-chip badge-pending", "icon": "bi bi-hourglass-split"},
    "In Progress": {"cls": "badge-chip badge-progress", "icon": "bi bi-arrow-repeat"},
    "Resolved": {"cls": "badge-chip badge-complete", "icon": "bi bi-check-circle"},
}
PRIORITY_BADGES = {
    "Critical": {"cls": "badge-chip priority-critical", "icon": "bi bi-fire"},
    "High": {"cls": "badge-chip priority-high", "icon": "bi bi-exclamation-octagon"},
    "Medium": {"cls": "badge-chip priority-medium", "icon": "bi bi-activity"},
    "Low": {"cls": "badge-chip priority-low", "icon": "bi bi-arrow-down"},
}
THEMES = {
    "cyan": {"name": "Cyber Cyan", "accent": "#06b6d4", "accent_dark": "#0e7490"},
    "purple": {"name": "Neon Purple", "accent": "#a855f7", "accent_dark": "#7e22ce"},
    "green": {"name": "Matrix Green", "accent": "#10b981", "accent_dark": "#047857"},
}
DEFAULT_THEME = "cyan"

KNOWLEDGE_BASE = [
    {"q": "wifi", "a": "Forget 'Campus-Net' and reconnect using your Student ID."},
    {"q": "vpn", "a": "Ensure Cisco AnyConnect is updated to v4.10."},
    {"q": "printer", "a": "Check if Tray 2 has paper. If error 'PC-Load-Letter', contact IT."},
    {"q": "grade", "a": "Grades are synced every Friday at 5 PM."},
    {"q": "login", "a": "Reset your portal password at auth.university.edu."},
]

HIGH_PRIORITY_TERMS = ("urgent", "fail", "deadline")
CRITICAL_PRIORITY_TERMS = ("critical", "broken", "security")
IMMEDIACY_TERMS = ("now", "today")


def now_ms() -> int:
    return int(time.time() * 1000)


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_file_size(num_bytes: int) -> str:
    """Convert a byte count to a human-friendly label."""
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    for unit in ["B", "KB", "MB"]:
        if value < 1024 or unit == "MB":
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} MB"


def format_timestamp(value) -> str:
    if value is None or value == "":
        return "—"
    try:
        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            text = str(value)
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).strftime("%b %d, %Y %I:%M %p UTC")
    except (TypeError, ValueError, OverflowError, OSError):
        return str(value)


def classify_priority(text: str) -> dict[str, str]:
    """Keyword triage: High for urgent/fail/deadline, Critical for critical/broken/security.

    Urgency is Critical only for High or Critical tickets that also mention
    "now" or "today".
    """

    normalized = (text or "").lower()
    priority = "Low"
    if any(term in normalized for term in HIGH_PRIORITY_TERMS):
        priority = "High"
    if any(term in normalized for term in CRITICAL_PRIORITY_TERMS):
        priority = "Critical"
    urgency = "Standard"
    if priority in ("High", "Critical") and any(term in normalized for term in IMMEDIACY_TERMS):
        urgency = "Critical"
    return {"priority": priority, "urgency": urgency}


def match_knowledge_base(title: str) -> list[dict[str, str]]:
    if len(title or "") <= 2:
        return []
    normalized = title.lower()
    return [dict(entry) for entry in KNOWLEDGE_BASE if entry["q"] in normalized]

# --------------------------------------------------------------------------------------
# Notifications (process memory only)
# --------------------------------------------------------------------------------------
_notifications: dict[str, list[dict]] = {}


def notify(username: str, text: str) -> None:
    if not username:
        return
    _notifications.setdefault(username, []).insert(
        0, {"text": text, "time": now_ms(), "read": False}
    )


def get_notifications(username: str) -> list[dict]:
    return list(_notifications.get(username, []))


def clear_notifications(username: str) -> None:
    _notifications.pop(username, None)

# --------------------------------------------------------------------------------------
# Ticket lifecycle
# --------------------------------------------------------------------------------------


class TicketValidationError(ValueError):
    """Raised when a ticket action is rejected; the message is shown to the user."""


class TicketNotFound(LookupError):
    pass


def load_tickets() -> list[dict]:
    tickets = load_document(STORAGE_KEY_TICKETS, [])
    if not isinstance(tickets, list):
        app.logger.warning("Ticket collection was not a list; starting empty")
        return []
    return [ticket for ticket in tickets if isinstance(ticket, dict) and ticket.get("id")]


def save_tickets(tickets: list[dict]) -> None:
    save_document(STORAGE_KEY_TICKETS, tickets)


def get_ticket(ticket_id: str) -> Optional[dict]:
    for ticket in load_tickets():
        if ticket["id"] == ticket_id:
            return ticket
    return None


def _require_ticket(ticket_id: str) -> dict:
    ticket = get_ticket(ticket_id)
    if ticket is None:
        raise TicketNotFound(ticket_id)
    return ticket


def _new_ticket_id(tickets: list[dict], timestamp: int) -> str:
    taken = {ticket["id"] for ticket in tickets}
    candidate = timestamp
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


def _history_entry(action: str, user: dict, details: str | None = None) -> dict:
    entry = {
        "action": action,
        "author": user.get("displayName") or user.get("name"),
        "role": user.get("role"),
        "time": now_ms(),
    }
    if details:
        entry["details"] = details
    return entry


def _with_history(ticket: dict, entry: dict) -> list[dict]:
    return list(ticket.get("history") or []) + [entry]


def create_ticket(data: dict, user: dict, tags: list[str] | None = None) -> dict:
    title = (data.get("title") or "").strip()
    desc = (data.get("desc") or "").strip()
    if not title:
        raise TicketValidationError("Title is required.")
    category = data.get("category")
    if category not in CATEGORIES:
        category = DEFAULT_CATEGORY

    tickets = load_tickets()
    timestamp = now_ms()
    ticket = {
        "id": _new_ticket_id(tickets, timestamp),
        "title": title,
        "desc": desc,
        "category": category,
        **classify_priority(f"{title} {desc}"),
        "status": "Pending",
        "studentName": user.get("displayName") or user["name"],
        "studentId": user["name"],
        "timestamp": timestamp,
        "comments": [],
        "attachments": list(data.get("attachments") or []),
        "history": [_history_entry("Ticket created", user)],
    }
    if tags:
        ticket["tags"] = list(tags)

    tickets.insert(0, ticket)
    save_tickets(tickets)
    notify(ticket["studentId"], f"Ticket #{ticket['id']} Created")
    app.logger.info("Ticket %s created by %s (%s)", ticket["id"], user["name"], ticket["priority"])
    return ticket


def update_ticket(ticket_id: str, updates: dict) -> Optional[dict]:
    """Shallow-merge ``updates`` into the matching ticket and persist the collection.

    Unknown ids are a no-op. Identity and ownership fields are never overwritten.
    """

    changes = {key: value for key, value in updates.items() if key not in IMMUTABLE_TICKET_FIELDS}
    tickets = load_tickets()
    updated = None
    for index, ticket in enumerate(tickets):
        if ticket["id"] == ticket_id:
            updated = {**ticket, **changes}
            tickets[index] = updated
            break
    save_tickets(tickets)
    return updated


def add_comment(ticket_id: str, text: str, user: dict) -> dict:
    body = (text or "").strip()
    if not body:
        raise TicketValidationError("Comment cannot be empty.")
    ticket = _require_ticket(ticket_id)
    if ticket.get("status") == "Resolved":
        raise TicketValidationError("This ticket is closed.")
    comment = {
        "text": body,
        "author": user.get("displayName") or user.get("name"),
        "role": user.get("role"),
        "avatar": user.get("avatar") or DEFAULT_AVATAR,
        "time": now_ms(),
    }
    updated = update_ticket(ticket_id, {"comments": list(ticket.get("comments") or []) + [comment]})
    if user.get("role") == "staff":
        notify(ticket.get("studentId"), f"New reply on Ticket #{ticket_id}")
    return updated


def start_progress(ticket_id: str, user: dict) -> dict:
    ticket = _require_ticket(ticket_id)
    status = ticket.get("status")
    if status == "Resolved":
        raise TicketValidationError("Resolved tickets cannot be reopened.")
    if status == "In Progress":
        return ticket
    updated = update_ticket(
        ticket_id,
        {
            "status": "In Progress",
            "history": _with_history(ticket, _history_entry("Marked In Progress", user)),
        },
    )
    notify(ticket.get("studentId"), f"Ticket #{ticket_id} In Progress")
    return updated


def resolve_ticket(ticket_id: str, summary: str, user: dict) -> dict:
    text = (summary or "").strip()
    if not text:
        raise TicketValidationError("Summary required!")
    ticket = _require_ticket(ticket_id)
    if ticket.get("status") == "Resolved":
        raise TicketValidationError("Ticket is already resolved.")
    resolver = user.get("displayName") or user.get("name")
    updated = update_ticket(
        ticket_id,
        {
            "status": "Resolved",
            "resolutionSummary": text,
            "resolvedBy": resolver,
            "resolvedAt": now_ts(),
            "history": _with_history(ticket, _history_entry("Resolved", user, details=text)),
        },
    )
    notify(ticket.get("studentId"), f"Ticket #{ticket_id} Resolved")
    app.logger.info("Ticket %s resolved by %s", ticket_id, user.get("name"))
    return updated


def rate_ticket(ticket_id: str, rating, comment: str, user: dict) -> dict:
    ticket = _require_ticket(ticket_id)
    if ticket.get("status") != "Resolved":
        raise TicketValidationError("Only resolved tickets can be rated.")
    if ticket.get("studentId") != user.get("name"):
        raise TicketValidationError("Only the ticket owner can rate this ticket.")
    if ticket.get("rating"):
        raise TicketValidationError("This ticket has already been rated.")
    try:
        score = int(rating)
    except (TypeError, ValueError):
        score = 0
    if score not in RATING_CHOICES:
        raise TicketValidationError("Please choose a rating from 1 to 5.")
    return update_ticket(
        ticket_id,
        {
            "rating": score,
            "ratingComment": (comment or "").strip(),
            "history": _with_history(ticket, _history_entry(f"Rated {score}/5", user)),
        },
    )


def reset_tickets(user: dict) -> None:
    try:
        kv_delete(STORAGE_KEY_TICKETS)
    except SQLAlchemyError as exc:
        app.logger.warning("Unable to clear %s: %s", STORAGE_KEY_TICKETS, exc)
        return
    notify(user.get("name"), "All tickets cleared")
    app.logger.warning("Ticket collection cleared by %s", user.get("name"))


def visible_tickets(tickets: list[dict], user: dict) -> list[dict]:
    """Students see their own tickets; staff see the open queue."""

    if user.get("role") == "staff":
        return [ticket for ticket in tickets if ticket.get("status") != "Resolved"]
    return [ticket for ticket in tickets if ticket.get("studentId") == user.get("name")]


def collect_attachments(uploads) -> list[dict]:
    attachments: list[dict] = []
    for upload in uploads:
        if not upload or not upload.filename:
            continue
        file_data = upload.read()
        if not file_data:
            continue
        if len(file_data) > MAX_ATTACHMENT_BYTES:
            raise TicketValidationError(
                f"File is too large (max {format_file_size(MAX_ATTACHMENT_BYTES)})"
            )
        mimetype = upload.mimetype or "application/octet-stream"
        encoded = base64.b64encode(file_data).decode("ascii")
        attachments.append(
            {
                "name": secure_filename(upload.filename) or f"attachment-{len(attachments) + 1}",
                "type": mimetype,
                "data": f"data:{mimetype};base64,{encoded}",
            }
        )
    return attachments


def decode_attachment(attachment: dict) -> tuple[bytes, str]:
    header, sep, payload = (attachment.get("data") or "").partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ValueError("Attachment has no inline data.")
    mimetype = header[len("data:"):-len(";base64")] or attachment.get("type")
    try:
        content = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Attachment data is not valid base64.") from exc
    return content, mimetype or "application/octet-stream"

# --------------------------------------------------------------------------------------
# Analytics, SLA and export
# --------------------------------------------------------------------------------------


def ticket_analytics(tickets: list[dict]) -> dict:
    total = len(tickets)
    resolved = sum(1 for ticket in tickets if ticket.get("status") == "Resolved")
    rate = int(resolved * 100 / total + 0.5) if total else 0

    category_counter: Counter[str] = Counter(ticket.get("category") for ticket in tickets)
    max_count = max(category_counter[name] for name in CATEGORIES) or 1
    categories = [
        {
            "name": name,
            "count": category_counter[name],
            "width": round(category_counter[name] / max_count * 100),
        }
        for name in CATEGORIES
    ]

    ratings = [ticket["rating"] for ticket in tickets if isinstance(ticket.get("rating"), int)]
    return {
        "total": total,
        "resolved": resolved,
        "open": total - resolved,
        "rate": rate,
        "categories": categories,
        "rated": len(ratings),
        "average_rating": round(sum(ratings) / len(ratings), 1) if ratings else None,
    }


def sla_deadline(ticket: dict) -> Optional[int]:
    if ticket.get("status") == "Resolved":
        return None
    hours = SLA_HOURS.get(ticket.get("priority"))
    if not hours:
        return None
    try:
        return int(ticket.get("timestamp")) + hours * 3_600_000
    except (TypeError, ValueError):
        return None


def sla_label(ticket: dict, now: int | None = None) -> Optional[str]:
    deadline = sla_deadline(ticket)
    if deadline is None:
        return None
    left = deadline - (now_ms() if now is None else now)
    if left <= 0:
        return "BREACHED"
    hours, remainder = divmod(left, 3_600_000)
    return f"{hours}h {remainder // 60_000}m left"


def format_export_date(timestamp) -> str:
    try:
        return datetime.fromtimestamp(int(timestamp) / 1000).strftime("%x")
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def export_csv(tickets: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for ticket in tickets:
        writer.writerow(
            [
                ticket.get("id", ""),
                ticket.get("title", ""),
                ticket.get("category", ""),
                ticket.get("priority", ""),
                ticket.get("status", ""),
                ticket.get("studentName", ""),
                format_export_date(ticket.get("timestamp")),
            ]
        )
    return buffer.getvalue()


def current_theme() -> str:
    theme = _session_load(STORAGE_KEY_THEME, DEFAULT_THEME)
    return theme if theme in THEMES else DEFAULT_THEME


@app.context_processor
def inject_workspace():
    user = current_user()
    notifications = get_notifications(user["name"]) if user else []
    theme_key = current_theme()
    return {
        "current_user": user,
        "theme_key": theme_key,
        "theme": THEMES[theme_key],
        "notifications": notifications,
        "unread_count": sum(1 for item in notifications if not item["read"]),
        "format_ts": format_timestamp,
    }

# --------------------------------------------------------------------------------------
# Templates (kept inline for single-file simplicity)
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>CampusDesk</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css" rel="stylesheet">
  <style>
    :root {
      --cd-ink: #0f172a;
      --cd-accent: {{ theme.accent }};
      --cd-accent-dark: {{ theme.accent_dark }};
      --cd-surface: #ffffff;
      --cd-muted: #f1f5f9;
      --cd-shadow: 0 18px 35px rgba(15, 23, 42, 0.08);
    }

    html, body {
      min-height: 100%;
      background: radial-gradient(circle at top, rgba(15,23,42,.06), transparent 55%), var(--cd-muted);
      color: var(--cd-ink);
      font-family: "Segoe UI", "Helvetica Neue", Arial, sans-serif;
    }

    a { color: var(--cd-accent-dark); text-decoration: none; }

    .app-header {
      background: linear-gradient(135deg, var(--cd-ink), #1e293b);
      color: #fff;
      padding: 0.85rem 1.5rem;
      display: flex;
      align-items: center;
      justify-content: space-between;
      border-bottom: 4px solid var(--cd-accent);
      position: sticky;
      top: 0;
      z-index: 1020;
    }

    .brand-mark { display: flex; align-items: center; gap: 0.6rem; font-weight: 700; font-size: 1.15rem; color: #fff; }
    .brand-mark span.accent { color: var(--cd-accent); }
    .app-user-meta { display: flex; align-items: center; gap: 0.75rem; font-size: 0.875rem; }
    .app-content { max-width: 1280px; margin: 0 auto; padding: 2rem 1.25rem; display: flex; flex-direction: column; gap: 1.5rem; }

    .surface-card {
      background: var(--cd-surface);
      border-radius: 18px;
      border: 1px solid rgba(15, 23, 42, 0.06);
      box-shadow: var(--cd-shadow);
    }

    .stat-kicker { font-size: 0.75rem; text-transform: uppercase; letter-spacing: 0.08em; color: #64748b; }
    .stat-value { font-size: 2rem; font-weight: 700; margin: 0; }
    .bar-track { background: var(--cd-muted); border-radius: 999px; height: 8px; }
    .bar-fill { background: var(--cd-accent); border-radius: 999px; height: 8px; }

    .badge-chip {
      display: inline-flex;
      align-items: center;
      gap: 0.35rem;
      padding: 0.3rem 0.7rem;
      border-radius: 999px;
      font-size: 0.75rem;
      font-weight: 600;
      background: var(--cd-muted);
    }
    .badge-pending { background: rgba(250,204,21,.2); color: #854d0e; }
    .badge-progress { background: rgba(59,130,246,.15); color: #1d4ed8; }
    .badge-complete { background: rgba(16,185,129,.18); color: #047857; }
    .priority-critical { background: rgba(220,38,38,.18); color: #991b1b; }
    .priority-high { background: rgba(249,115,22,.18); color: #9a3412; }
    .priority-medium { background: rgba(59,130,246,.12); color: #1e40af; }
    .priority-low { background: rgba(100,116,139,.15); color: #334155; }
    .tag-chip { background: rgba(15,23,42,.05); border: 1px solid var(--cd-accent); color: var(--cd-accent-dark); }

    .kanban-column { border-top: 4px solid var(--cd-accent); }
    .kanban-column.resolved { border-top-color: #10b981; }
    .ticket-card { display: block; color: inherit; border-left: 4px solid var(--cd-accent); }
    .ticket-card.hot { border-left-color: #dc2626; }
    .sla-label { font-size: 0.75rem; font-weight: 600; color: #b45309; }
    .sla-label.breached { color: #dc2626; }

    .btn-primary { background: var(--cd-accent); border-color: var(--cd-accent); }
    .btn-primary:hover, .btn-primary:focus { background: var(--cd-accent-dark); border-color: var(--cd-accent-dark); }
    .form-control, .form-select { border-radius: 14px; }

    .flash-message {
      border-radius: 16px;
      padding: 0.9rem 1.1rem;
      background: rgba(15,23,42,0.05);
      border: 1px solid var(--cd-accent);
      font-weight: 500;
      white-space: pre-line;
    }

    .timeline-entry { border-left: 2px solid var(--cd-muted); padding: 0 0 1rem 1rem; position: relative; }
    .timeline-entry::before {
      content: ""; position: absolute; left: -6px; top: 4px;
      width: 10px; height: 10px; border-radius: 50%; background: var(--cd-accent);
    }
    .chat-bubble { border-radius: 16px; padding: 0.6rem 0.9rem; max-width: 80%; background: var(--cd-muted); }
    .chat-bubble.mine { background: var(--cd-accent); color: #fff; }
  </style>
</head>
<body>
<header class="app-header">
  <a class="brand-mark" href="{{ url_for('dashboard') if current_user else url_for('home') }}">
    <i class="bi bi-lightning-charge-fill"></i><span>Campus<span class="accent">Desk</span></span>
  </a>
  <div class="app-user-meta">
    {% if current_user %}
      {% if current_user.role == 'student' %}
      <div class="dropdown">
        <button class="btn btn-outline-light btn-sm position-relative" data-bs-toggle="dropdown" aria-label="Notifications">
          <i class="bi bi-bell"></i>
          {% if unread_count %}<span class="position-absolute top-0 start-100 translate-middle badge rounded-pill bg-danger">{{ unread_count }}</span>{% endif %}
        </button>
        <div class="dropdown-menu dropdown-menu-end p-2" style="min-width: 280px;">
          <div class="d-flex justify-content-between align-items-center px-2 mb-2">
            <span class="fw-semibold small">Notifications</span>
            <form method="post" action="{{ url_for('clear_notifications_view') }}">
              <button class="btn btn-link btn-sm p-0" type="submit">CLEAR ALL</button>
            </form>
          </div>
          {% for n in notifications %}
            <div class="px-2 py-1 small border-top">
              <div>{{ n.text }}</div>
              <div class="text-secondary">{{ format_ts(n.time) }}</div>
            </div>
          {% else %}
            <div class="px-2 py-1 small text-secondary">No new notifications</div>
          {% endfor %}
        </div>
      </div>
      {% endif %}
      <a class="btn btn-outline-light btn-sm" href="{{ url_for('settings') }}">{{ current_user.avatar }} {{ current_user.displayName }}</a>
      <a class="btn btn-outline-light btn-sm" href="{{ url_for('logout') }}" aria-label="Logout"><i class="bi bi-power"></i></a>
    {% endif %}
  </div>
</header>
<main class="app-content">
  {% with messages = get_flashed_messages() %}
    {% if messages %}
      <div class="flash-message">{{ messages|join('\n') }}</div>
    {% endif %}
  {% endwith %}
  {% block content %}{% endblock %}
</main>
<script src="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js"></script>
{% block scripts %}{% endblock %}
</body>
</html>
"""


HOME_HTML = """
{% extends 'base.html' %}
{% block content %}
<section class="text-center py-4">
  <h1 class="display-4 fw-semibold">Campus<span style="color: var(--cd-accent)">Desk</span></h1>
  <p class="lead text-secondary">Campus support requests, tracked from report to resolution.</p>
</section>
<div class="row g-4 justify-content-center">
  <div class="col-md-5">
    <a class="surface-card p-5 d-block text-center h-100" href="{{ url_for('portal', role='student') }}">
      <i class="bi bi-mortarboard display-5"></i>
      <h3 class="fw-semibold mt-3">Student Portal</h3>
      <p class="text-secondary mb-0">Report an issue and follow its progress.</p>
    </a>
  </div>
  <div class="col-md-5">
    <a class="surface-card p-5 d-block text-center h-100" href="{{ url_for('portal', role='staff') }}">
      <i class="bi bi-person-check display-5"></i>
      <h3 class="fw-semibold mt-3">Staff Portal</h3>
      <p class="text-secondary mb-0">Triage the queue and resolve requests.</p>
    </a>
  </div>
</div>
{% endblock %}
"""


PORTAL_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="row justify-content-center">
  <div class="col-md-6 col-lg-4">
    <div class="surface-card p-4">
      <span class="badge-chip text-uppercase small">{{ role }} portal</span>
      <h2 class="fw-semibold mt-2 mb-3">{{ 'Login' if mode == 'login' else 'Sign Up' }}</h2>
      <form method="post" class="d-flex flex-column gap-3">
        <input type="hidden" name="mode" value="{{ mode }}">
        <input class="form-control" name="name" placeholder="Username" required>
        <input class="form-control" type="password" name="password" placeholder="Password" required>
        <button class="btn btn-primary" type="submit">{{ 'Enter' if mode == 'login' else 'Create' }}</button>
      </form>
      <div class="text-center mt-3 small">
        {% if mode == 'login' %}
          <a href="{{ url_for('portal', role=role, mode='signup') }}">Need account? Sign Up</a>
        {% else %}
          <a href="{{ url_for('portal', role=role) }}">Have account? Login</a>
        {% endif %}
      </div>
    </div>
  </div>
</div>
{% endblock %}
"""


DASHBOARD_HTML = """
{% extends 'base.html' %}
{% block content %}
{% if staff %}
<div class="row g-3">
  <div class="col-md-4">
    <div class="surface-card p-4 h-100">
      <div class="stat-kicker">Total</div>
      <p class="stat-value">{{ stats.total }}</p>
    </div>
  </div>
  <div class="col-md-4">
    <div class="surface-card p-4 h-100">
      <div class="stat-kicker">Resolved</div>
      <p class="stat-value text-success">{{ stats.resolved }}</p>
      <div class="text-secondary small">Success Rate {{ stats.rate }}%</div>
    </div>
  </div>
  <div class="col-md-4">
    <div class="surface-card p-4 h-100">
      <div class="stat-kicker">Satisfaction</div>
      <p class="stat-value">{% if stats.average_rating is not none %}{{ stats.average_rating }}/5{% else %}—{% endif %}</p>
      <div class="text-secondary small">{{ stats.rated }} rated tickets</div>
    </div>
  </div>
  <div class="col-12">
    <div class="surface-card p-4">
      <div class="stat-kicker mb-3">Tickets by category</div>
      {% for item in stats.categories %}
        <div class="d-flex align-items-center gap-3 mb-2">
          <span class="small" style="width: 110px;">{{ item.name }}</span>
          <div class="bar-track flex-grow-1"><div class="bar-fill" style="width: {{ item.width }}%"></div></div>
          <span class="small text-secondary">{{ item.count }}</span>
        </div>
      {% endfor %}
    </div>
  </div>
</div>
{% endif %}

<section class="d-flex flex-wrap align-items-center justify-content-between gap-3">
  <h2 class="fw-semibold mb-0">{{ 'Ticket Queue' if staff else 'My Requests' }}</h2>
  <div class="d-flex gap-2 flex-wrap">
    {% if staff %}
      <form method="get" class="d-flex gap-2">
        <select class="form-select form-select-sm" name="category">
          <option value="">All categories</option>
          {% for c in categories %}<option value="{{ c }}" {% if c == selected_category %}selected{% endif %}>{{ c }}</option>{% endfor %}
        </select>
        <select class="form-select form-select-sm" name="priority">
          <option value="">All priorities</option>
          {% for p in priorities %}<option value="{{ p }}" {% if p == selected_priority %}selected{% endif %}>{{ p }}</option>{% endfor %}
        </select>
        <button class="btn btn-sm btn-outline-dark" type="submit"><i class="bi bi-funnel"></i></button>
      </form>
      <form method="post" action="{{ url_for('reset') }}" onsubmit="return confirm('Reset all tickets and analytics? This cannot be undone.');">
        <button class="btn btn-sm btn-outline-danger" type="submit"><i class="bi bi-arrow-counterclockwise me-1"></i>Reset</button>
      </form>
      <a class="btn btn-sm btn-outline-dark" href="{{ url_for('export') }}"><i class="bi bi-download me-1"></i>Export</a>
    {% else %}
      <a class="btn btn-primary" href="{{ url_for('new_ticket') }}"><i class="bi bi-plus-lg me-1"></i>New Ticket</a>
    {% endif %}
  </div>
</section>

<div class="row g-4">
  {% for column in columns %}
  <div class="col-md-4">
    <div class="surface-card kanban-column {% if column.status == 'Resolved' %}resolved{% endif %} p-3 h-100">
      <h6 class="fw-semibold text-secondary d-flex justify-content-between">
        {{ column.status }} <span class="badge bg-light text-dark">{{ column.tickets|length }}</span>
      </h6>
      <div class="d-flex flex-column gap-3 mt-3">
        {% for t in column.tickets %}
        {% set priority_style = priority_badges.get(t.priority, priority_badges['Low']) %}
        <a class="surface-card ticket-card {% if t.priority in ('High', 'Critical') %}hot{% endif %} p-3" href="{{ url_for('ticket_detail', ticket_id=t.id) }}">
          <div class="d-flex justify-content-between align-items-center mb-2">
            <span class="badge-chip">{{ t.category }}</span>
            <span class="{{ priority_style.cls }}"><i class="{{ priority_style.icon }}"></i>{{ t.priority }}</span>
          </div>
          <div class="fw-semibold">{{ t.title }}</div>
          <div class="text-secondary small">#{{ t.id }} • {{ t.studentName }} • {{ format_ts(t.timestamp) }}</div>
          {% if t.sla %}
          <div class="sla-label {% if t.sla == 'BREACHED' %}breached{% endif %}" data-deadline="{{ t.sla_deadline }}"><i class="bi bi-clock me-1"></i><span>{{ t.sla }}</span></div>
          {% endif %}
          {% if t.rating %}<div class="small text-warning"><i class="bi bi-star-fill"></i> {{ t.rating }}/5</div>{% endif %}
        </a>
        {% else %}
        <div class="text-secondary small">Nothing here.</div>
        {% endfor %}
      </div>
    </div>
  </div>
  {% endfor %}
</div>
{% endblock %}
{% block scripts %}
<script>
(function() {
  function refreshSla() {
    document.querySelectorAll('[data-deadline]').forEach(function(node) {
      const left = Number(node.dataset.deadline) - Date.now();
      const label = node.querySelector('span');
      if (left <= 0) {
        label.textContent = 'BREACHED';
        node.classList.add('breached');
      } else {
        const hours = Math.floor(left / 3600000);
        const minutes = Math.floor((left % 3600000) / 60000);
        label.textContent = hours + 'h ' + minutes + 'm left';
      }
    });
  }
  window.setInterval(refreshSla, 60000);
})();
</script>
{% endblock %}
"""


NEW_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="surface-card p-4 p-lg-5">
  <h2 class="fw-semibold mb-3">New Request</h2>
  <div id="kb-suggestions" class="alert alert-info {% if not suggestions %}d-none{% endif %}">
    <div class="fw-semibold mb-1"><i class="bi bi-lightbulb me-1"></i>Try these first:</div>
    <ul class="mb-0" id="kb-suggestion-list">
      {% for s in suggestions %}<li>{{ s.a }}</li>{% endfor %}
    </ul>
  </div>
  <form method="post" enctype="multipart/form-data" class="d-flex flex-column gap-3">
    <input class="form-control" id="ticket-title" name="title" placeholder="Issue Title (e.g. Wifi)" value="{{ title }}" required>
    <textarea class="form-control" name="desc" rows="4" placeholder="Description..." required></textarea>
    <div class="row g-3">
      <div class="col-md-6">
        <select class="form-select" name="category">
          {% for c in categories %}<option value="{{ c }}">{{ c }}</option>{% endfor %}
        </select>
      </div>
      <div class="col-md-6">
        <input class="form-control" type="file" name="attachments" accept="image/*" multiple>
        <div class="form-text">Images up to {{ attachment_limit }} each.</div>
      </div>
    </div>
    <button class="btn btn-primary" type="submit">Submit Ticket</button>
  </form>
</div>
{% endblock %}
{% block scripts %}
<script>
(function() {
  const input = document.getElementById('ticket-title');
  const box = document.getElementById('kb-suggestions');
  const list = document.getElementById('kb-suggestion-list');
  if (!input) {
    return;
  }
  input.addEventListener('input', async function() {
    try {
      const response = await fetch('{{ url_for('kb_suggest') }}', {
        method: 'POST',
        headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({ title: input.value || '' })
      });
      const payload = await response.json();
      const items = Array.isArray(payload.suggestions) ? payload.suggestions : [];
      list.innerHTML = '';
      items.forEach(function(item) {
        const li = document.createElement('li');
        li.textContent = item.a;
        list.appendChild(li);
      });
      box.classList.toggle('d-none', items.length === 0);
    } catch (error) {
      box.classList.add('d-none');
    }
  });
})();
</script>
{% endblock %}
"""


DETAIL_HTML = """
{% extends 'base.html' %}
{% block content %}
{% set status_style = status_badges.get(t.status, status_badges['Pending']) %}
{% set priority_style = priority_badges.get(t.priority, priority_badges['Low']) %}
<div class="d-flex flex-wrap align-items-start justify-content-between gap-3">
  <div>
    <span class="badge-chip text-uppercase small">Ticket #{{ t.id }}</span>
    <h2 class="fw-semibold mt-2 mb-2">{{ t.title }}</h2>
    <div class="text-secondary small">{{ t.studentName }} • {{ t.category }} • Created {{ format_ts(t.timestamp) }}</div>
  </div>
  <div class="d-flex flex-wrap gap-2">
    <span class="{{ status_style.cls }}"><i class="{{ status_style.icon }}"></i>{{ t.status }}</span>
    <span class="{{ priority_style.cls }}"><i class="{{ priority_style.icon }}"></i>{{ t.priority }}</span>
    {% if t.urgency == 'Critical' %}<span class="badge-chip priority-critical">Urgent</span>{% endif %}
  </div>
</div>

<div class="row g-4">
  <div class="col-xl-8 d-flex flex-column gap-4">
    {% if staff and t.status != 'Resolved' %}
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Actions</h5>
      {% if t.status != 'In Progress' %}
      <form method="post" action="{{ url_for('mark_in_progress', ticket_id=t.id) }}" class="mb-3">
        <button class="btn btn-outline-dark" type="submit">In Progress</button>
      </form>
      {% endif %}
      <form method="post" action="{{ url_for('resolve', ticket_id=t.id) }}">
        <textarea class="form-control mb-2" name="summary" rows="3" placeholder="Summary of fix..."></textarea>
        <button class="btn btn-success" type="submit"><i class="bi bi-check-circle me-1"></i>Resolve</button>
      </form>
    </div>
    {% endif %}

    {% if t.status == 'Resolved' %}
    <div class="surface-card p-4">
      <h5 class="fw-semibold text-success"><i class="bi bi-check-circle me-1"></i>Resolution</h5>
      <p style="white-space: pre-line;">{{ t.resolutionSummary }}</p>
      <div class="d-flex justify-content-between align-items-center border-top pt-3">
        <span class="text-secondary small">By {{ t.resolvedBy }} • {{ format_ts(t.resolvedAt) }}</span>
        {% if t.rating %}
          <span class="text-warning fw-semibold"><i class="bi bi-star-fill"></i> {{ t.rating }}/5</span>
        {% endif %}
      </div>
      {% if t.rating and t.ratingComment %}<p class="text-secondary small mt-2 mb-0">“{{ t.ratingComment }}”</p>{% endif %}
      {% if can_rate %}
      <form method="post" action="{{ url_for('rate', ticket_id=t.id) }}" class="mt-3 d-flex flex-column gap-2">
        <div class="fw-semibold small">Rate Resolution</div>
        <div class="d-flex gap-3">
          {% for score in rating_choices %}
          <label class="d-flex align-items-center gap-1"><input type="radio" name="rating" value="{{ score }}" required> {{ score }}<i class="bi bi-star"></i></label>
          {% endfor %}
        </div>
        <input class="form-control" name="ratingComment" placeholder="Comment...">
        <button class="btn btn-warning align-self-start" type="submit">Submit</button>
      </form>
      {% endif %}
    </div>
    {% endif %}

    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Issue Details</h5>
      <p style="white-space: pre-wrap;">{{ t.desc }}</p>
      {% if t.tags %}
      <div class="border-top pt-3">
        <div class="text-secondary small mb-2"><i class="bi bi-tag me-1"></i>AI-Generated Tags:</div>
        <div class="d-flex flex-wrap gap-2">
          {% for tag in t.tags %}<span class="badge-chip tag-chip">{{ tag }}</span>{% endfor %}
        </div>
      </div>
      {% endif %}
      {% if t.attachments %}
      <div class="border-top pt-3 mt-3">
        <div class="text-secondary small mb-2">Attachments:</div>
        <div class="d-flex flex-wrap gap-2">
          {% for file in t.attachments %}
          <a class="badge-chip" href="{{ url_for('view_attachment', ticket_id=t.id, index=loop.index0) }}" target="_blank">
            <i class="bi {{ 'bi-image' if (file.type or '').startswith('image/') else 'bi-file-earmark' }}"></i>{{ file.name }}
          </a>
          {% endfor %}
        </div>
      </div>
      {% endif %}
    </div>

    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3">Activity Log</h5>
      <div class="d-flex flex-column gap-3">
        {% for c in t.comments %}
        <div class="d-flex gap-2 {% if c.role == current_user.role %}flex-row-reverse{% endif %}">
          <div class="fs-4">{{ c.avatar or '👤' }}</div>
          <div class="chat-bubble {% if c.role == current_user.role %}mine{% endif %}">
            <div class="small opacity-75">{{ c.author }} • {{ format_ts(c.time) }}</div>
            <div style="white-space: pre-line;">{{ c.text }}</div>
          </div>
        </div>
        {% else %}
        <div class="text-secondary small">No messages yet.</div>
        {% endfor %}
      </div>
      <form method="post" action="{{ url_for('comment', ticket_id=t.id) }}" class="d-flex gap-2 mt-4">
        <input class="form-control" name="text" placeholder="{{ 'Ticket Closed' if t.status == 'Resolved' else 'Type a message...' }}" {% if t.status == 'Resolved' %}disabled{% endif %}>
        <button class="btn btn-primary" type="submit" {% if t.status == 'Resolved' %}disabled{% endif %}><i class="bi bi-send"></i></button>
      </form>
    </div>
  </div>

  <div class="col-xl-4">
    <div class="surface-card p-4">
      <h5 class="fw-semibold mb-3"><i class="bi bi-clock-history me-1"></i>Ticket History</h5>
      {% for entry in t.history or [] %}
      <div class="timeline-entry">
        <div class="fw-semibold">{{ entry.action }}</div>
        <div class="text-secondary small">by {{ entry.author }} • {{ format_ts(entry.time) }}</div>
        {% if entry.details %}<div class="small fst-italic mt-1">{{ entry.details }}</div>{% endif %}
      </div>
      {% else %}
      <div class="text-secondary small">No history recorded.</div>
      {% endfor %}
    </div>
  </div>
</div>
{% endblock %}
"""


SETTINGS_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="row justify-content-center">
  <div class="col-md-8 col-lg-6">
    <form method="post" class="surface-card p-4 d-flex flex-column gap-4">
      <h2 class="fw-semibold mb-0">Settings</h2>
      <div>
        <label class="form-label text-uppercase small">System Theme</label>
        <div class="d-flex gap-3">
          {% for key, option in themes.items() %}
          <label class="d-flex align-items-center gap-2">
            <input type="radio" name="theme" value="{{ key }}" {% if key == theme_key %}checked{% endif %}>
            <span class="d-inline-block rounded-circle" style="width: 18px; height: 18px; background: {{ option.accent }};"></span>{{ option.name }}
          </label>
          {% endfor %}
        </div>
      </div>
      <div>
        <label class="form-label text-uppercase small">Display Name</label>
        <input class="form-control" name="displayName" value="{{ current_user.displayName }}" required>
      </div>
      <div>
        <label class="form-label text-uppercase small">Avatar Emoji</label>
        <div class="d-flex flex-wrap gap-3 fs-4">
          {% for emoji in avatars %}
          <label><input type="radio" name="avatar" value="{{ emoji }}" {% if emoji == current_user.avatar %}checked{% endif %}> {{ emoji }}</label>
          {% endfor %}
        </div>
      </div>
      <div class="d-flex gap-2">
        <button class="btn btn-primary" type="submit">Save Changes</button>
        <a class="btn btn-link" href="{{ url_for('dashboard') }}">Cancel</a>
      </div>
    </form>
  </div>
</div>
{% endblock %}
"""

# --------------------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------------------


@app.route("/")
def home():
    if current_user():
        return redirect(url_for("dashboard"))
    return render_template_string(HOME_HTML)


@app.route("/portal/<role>", methods=["GET", "POST"])
def portal(role: str):
    if role not in PORTALS:
        abort(404)
    mode = (request.values.get("mode") or "login").strip()
    if mode not in ("login", "signup"):
        mode = "login"

    if request.method == "POST":
        name = request.form.get("name") or ""
        password = request.form.get("password") or ""
        try:
            if mode == "login":
                user = authenticate(name, password, role)
            else:
                user = register_user(name, password, role)
        except AuthError as exc:
            flash(str(exc))
            return redirect(url_for("portal", role=role, mode=mode))
        start_session(user)
        flash(f"Welcome, {user['displayName']}")
        return redirect(url_for("dashboard"))

    return render_template_string(PORTAL_HTML, role=role, mode=mode)


@app.route("/logout")
def logout():
    user = current_user()
    if user:
        clear_notifications(user["name"])
    end_session()
    flash("Signed out.")
    return redirect(url_for("home"))


@app.route("/dashboard")
@login_required
def dashboard():
    user = current_user()
    staff = user.get("role") == "staff"
    all_tickets = load_tickets()
    tickets = visible_tickets(all_tickets, user)

    selected_category = ""
    selected_priority = ""
    if staff:
        category_filter = (request.args.get("category") or "").strip()
        priority_filter = (request.args.get("priority") or "").strip()
        selected_category = category_filter if category_filter in CATEGORIES else ""
        selected_priority = priority_filter if priority_filter in PRIORITIES else ""
        if selected_category:
            tickets = [t for t in tickets if t.get("category") == selected_category]
        if selected_priority:
            tickets = [t for t in tickets if t.get("priority") == selected_priority]

    cards = [
        {**ticket, "sla": sla_label(ticket), "sla_deadline": sla_deadline(ticket)}
        for ticket in tickets
    ]
    columns = [
        {"status": status, "tickets": [card for card in cards if card.get("status") == status]}
        for status in STATUSES
    ]
    return render_template_string(
        DASHBOARD_HTML,
        staff=staff,
        columns=columns,
        stats=ticket_analytics(all_tickets) if staff else None,
        categories=CATEGORIES,
        priorities=PRIORITIES,
        selected_category=selected_category,
        selected_priority=selected_priority,
        priority_badges=PRIORITY_BADGES,
    )


@app.route("/new", methods=["GET", "POST"])
@login_required
def new_ticket():
    user = current_user()
    if user.get("role") != "student":
        abort(403)

    if request.method == "POST":
        data = {k: (request.form.get(k) or "").strip() for k in ["title", "desc", "category"]}
        if not data["title"]:
            flash("Title is required.")
            return redirect(url_for("new_ticket"))
        try:
            data["attachments"] = collect_attachments(request.files.getlist("attachments"))
            tags = suggest_tags(data["title"], data["desc"])
            ticket = create_ticket(data, user, tags=tags)
        except TicketValidationError as exc:
            flash(str(exc))
            return redirect(url_for("new_ticket"))
        flash(f"Ticket #{ticket['id']} Created")
        return redirect(url_for("dashboard"))

    title = (request.args.get("title") or "").strip()
    return render_template_string(
        NEW_HTML,
        title=title,
        suggestions=match_knowledge_base(title),
        categories=CATEGORIES,
        attachment_limit=format_file_size(MAX_ATTACHMENT_BYTES),
    )


def _ticket_for_current_user(ticket_id: str):
    user = current_user()
    ticket = get_ticket(ticket_id)
    if ticket is None:
        return user, None
    if user.get("role") != "staff" and ticket.get("studentId") != user.get("name"):
        abort(403)
    return user, ticket


@app.route("/ticket/<ticket_id>")
@login_required
def ticket_detail(ticket_id: str):
    user, ticket = _ticket_for_current_user(ticket_id)
    if ticket is None:
        flash("Ticket not found.")
        return redirect(url_for("dashboard"))
    staff = user.get("role") == "staff"
    can_rate = (
        not staff
        and ticket.get("status") == "Resolved"
        and not ticket.get("rating")
        and ticket.get("studentId") == user.get("name")
    )
    return render_template_string(
        DETAIL_HTML,
        t=ticket,
        staff=staff,
        can_rate=can_rate,
        rating_choices=RATING_CHOICES,
        status_badges=STATUS_BADGES,
        priority_badges=PRIORITY_BADGES,
    )


@app.route("/ticket/<ticket_id>/attachment/<int:index>")
@login_required
def view_attachment(ticket_id: str, index: int):
    _, ticket = _ticket_for_current_user(ticket_id)
    attachments = (ticket or {}).get("attachments") or []
    if index >= len(attachments):
        abort(404)
    attachment = attachments[index]
    try:
        content, mimetype = decode_attachment(attachment)
    except ValueError:
        abort(404)
    return send_file(
        io.BytesIO(content),
        download_name=attachment.get("name") or f"attachment-{index + 1}",
        mimetype=mimetype,
        as_attachment=mimetype not in INLINE_ATTACHMENT_TYPES,
    )


@app.route("/ticket/<ticket_id>/comment", methods=["POST"])
@login_required
def comment(ticket_id: str):
    user, ticket = _ticket_for_current_user(ticket_id)
    if ticket is None:
        flash("Ticket not found.")
        return redirect(url_for("dashboard"))
    try:
        add_comment(ticket_id, request.form.get("text") or "", user)
    except TicketValidationError as exc:
        flash(str(exc))
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/ticket/<ticket_id>/progress", methods=["POST"])
@login_required
def mark_in_progress(ticket_id: str):
    if not is_staff_user():
        abort(403)
    try:
        start_progress(ticket_id, current_user())
    except TicketNotFound:
        flash("Ticket not found.")
        return redirect(url_for("dashboard"))
    except TicketValidationError as exc:
        flash(str(exc))
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/ticket/<ticket_id>/resolve", methods=["POST"])
@login_required
def resolve(ticket_id: str):
    if not is_staff_user():
        abort(403)
    try:
        resolve_ticket(ticket_id, request.form.get("summary") or "", current_user())
    except TicketNotFound:
        flash("Ticket not found.")
        return redirect(url_for("dashboard"))
    except TicketValidationError as exc:
        flash(str(exc))
        return redirect(url_for("ticket_detail", ticket_id=ticket_id))
    flash(f"Ticket #{ticket_id} Resolved")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/ticket/<ticket_id>/rate", methods=["POST"])
@login_required
def rate(ticket_id: str):
    user, ticket = _ticket_for_current_user(ticket_id)
    if ticket is None:
        flash("Ticket not found.")
        return redirect(url_for("dashboard"))
    try:
        rate_ticket(
            ticket_id,
            request.form.get("rating"),
            request.form.get("ratingComment") or "",
            user,
        )
    except TicketValidationError as exc:
        flash(str(exc))
    else:
        flash("Thanks for the feedback!")
    return redirect(url_for("ticket_detail", ticket_id=ticket_id))


@app.route("/reset", methods=["POST"])
@login_required
def reset():
    if not is_staff_user():
        abort(403)
    reset_tickets(current_user())
    flash("All tickets cleared")
    return redirect(url_for("dashboard"))


@app.route("/export.csv")
@login_required
def export():
    if not is_staff_user():
        abort(403)
    content = export_csv(load_tickets())
    return send_file(
        io.BytesIO(content.encode("utf-8")),
        download_name=EXPORT_FILENAME,
        mimetype="text/csv",
        as_attachment=True,
    )


@app.route("/settings", methods=["GET", "POST"])
@login_required
def settings():
    user = current_user()
    if request.method == "POST":
        try:
            updated = update_profile(
                user,
                request.form.get("displayName") or "",
                request.form.get("avatar") or user.get("avatar") or DEFAULT_AVATAR,
            )
        except AuthError as exc:
            flash(str(exc))
            return redirect(url_for("settings"))
        start_session(updated)
        theme = (request.form.get("theme") or "").strip()
        if theme in THEMES:
            _session_save(STORAGE_KEY_THEME, theme)
        flash("Settings saved.")
        return redirect(url_for("dashboard"))
    return render_template_string(SETTINGS_HTML, themes=THEMES, avatars=AVATARS)


@app.route("/notifications/clear", methods=["POST"])
@login_required
def clear_notifications_view():
    clear_notifications(current_user()["name"])
    return redirect(request.referrer or url_for("dashboard"))


@app.route("/kb/suggest", methods=["POST"])
@login_required
def kb_suggest():
    payload = request.get_json(silent=True) or {}
    title = str(payload.get("title") or "")
    return jsonify({"suggestions": match_knowledge_base(title)})


@app.route("/api/categorize-ticket", methods=["POST"])
def categorize_ticket_api():
    if TAGGING_API_KEY and request.headers.get("Authorization") != f"Bearer {TAGGING_API_KEY}":
        return jsonify({"error": "Unauthorized"}), 401
    payload = request.get_json(silent=True) or {}
    title = str(payload.get("title") or "").strip()
    description = str(payload.get("description") or "").strip()
    try:
        tags = categorize_ticket(title, description)
    except TaggingServiceError as exc:
        app.logger.warning("Ticket categorization failed: %s", exc)
        tags = list(FALLBACK_TAGS)
    return jsonify({"tags": tags})

# --------------------------------------------------------------------------------------
# Jinja loader (since we keep templates inline in this single file)
# --------------------------------------------------------------------------------------
app.jinja_loader = DictLoader({
    "base.html": BASE_HTML,
    "home.html": HOME_HTML,
    "portal.html": PORTAL_HTML,
    "dashboard.html": DASHBOARD_HTML,
    "new.html": NEW_HTML,
    "detail.html": DETAIL_HTML,
    "settings.html": SETTINGS_HTML,
})

# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
