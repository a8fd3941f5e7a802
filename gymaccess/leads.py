"""
Public lead capture: the website form and third-party webhooks.
"""
import logging
import re
from typing import Any, Dict, Optional, Tuple

from .errors import ServiceUnavailableError, ValidationError
from .models import Branch, Lead

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 255
MAX_PHONE_LENGTH = 20
MAX_SOURCE_LENGTH = 50
MAX_NOTES_LENGTH = 500

ALLOWED_SOURCES = (
    "website", "walk-in", "referral", "social", "phone", "instagram", "facebook",
    "google_ads", "landing_page", "embed", "api", "other",
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9]{10,15}$")
NAME_RE = re.compile(r"^[a-zA-Z\s\-'.]+$")
CONTROL_CHARS_RE = re.compile(r"[\u0000-\u001F\u007F-\u009F]")
PHONE_PUNCTUATION_RE = re.compile(r"[\s\-()]")

THANK_YOU = "Thank you! We will contact you soon."


def sanitize(value: Optional[str], max_length: int) -> str:
    if not value:
        return ""
    return CONTROL_CHARS_RE.sub("", str(value).strip())[:max_length]


def clean_phone(phone: str) -> str:
    return PHONE_PUNCTUATION_RE.sub("", phone)


def validate_name(name: str):
    if not name:
        raise ValidationError("Name is required")
    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters")
    if not NAME_RE.match(name):
        raise ValidationError("Name contains invalid characters")


def validate_phone(phone: str) -> str:
    if not phone:
        raise ValidationError("Phone number is required")
    cleaned = clean_phone(phone)
    if len(cleaned) < 10:
        raise ValidationError("Please enter a valid phone number")
    if not PHONE_RE.match(cleaned):
        raise ValidationError("Invalid phone number format")
    return cleaned


def validate_email(email: str):
    if email and not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")


def normalize_source(source: Optional[str]) -> str:
    if not source:
        return "website"
    source = str(source).strip().lower()[:MAX_SOURCE_LENGTH]
    return source if source in ALLOWED_SOURCES else "other"


def _first(body: Dict[str, Any], *keys) -> str:
    for key in keys:
        if body.get(key):
            return str(body[key])
    return ""


class LeadCaptureService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _default_branch_id(db) -> str:
        branch = db.query(Branch.id).filter(Branch.is_active == True).order_by(Branch.created_at).first()
        if not branch:
            logger.error("Lead capture failed: no active branch")
            raise ServiceUnavailableError("Service temporarily unavailable")
        return branch.id

    def _insert(self, full_name: str, phone: str, email: Optional[str], source: str,
                notes: Optional[str] = None) -> Tuple[str, bool]:
        """Insert unless a lead with this phone exists. Returns (lead_id, created)."""
        db = self.session_factory()
        try:
            existing = db.query(Lead.id).filter(Lead.phone == phone).first()
            if existing:
                return existing.id, False

            lead = Lead(
                branch_id=self._default_branch_id(db),
                full_name=full_name,
                phone=phone,
                email=email or None,
                source=source,
                status="new",
                notes=notes or None,
            )
            db.add(lead)
            db.commit()
            db.refresh(lead)
            return lead.id, True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def capture_lead(self, full_name: Optional[str], phone: Optional[str], email: Optional[str] = None,
                     source: Optional[str] = None) -> Dict[str, Any]:
        """
        Website form submission.

        A repeat submission with a known phone gets the same answer as a new
        one so the form never reveals who is already a lead.
        """
        full_name = sanitize(full_name, MAX_NAME_LENGTH)
        phone = sanitize(phone, MAX_PHONE_LENGTH)
        email = sanitize(email, MAX_EMAIL_LENGTH)
        source = normalize_source(source)

        validate_name(full_name)
        phone = validate_phone(phone)
        validate_email(email)

        lead_id, created = self._insert(full_name, phone, email, source)
        if created:
            logger.info("Lead %s captured from %s", lead_id, source)
        else:
            logger.info("Lead with phone %s**** already exists", phone[:4])
        return {"success": True, "message": THANK_YOU}

    def capture_webhook_lead(self, body: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """
        Lead pushed by an automation platform. Field names vary between
        platforms, so the common aliases are accepted.

        Returns the response payload and whether a new lead was created.
        """
        full_name = sanitize(_first(body, "full_name", "fullName", "name"), MAX_NAME_LENGTH)
        phone = clean_phone(_first(body, "phone", "phone_number", "mobile"))[:MAX_PHONE_LENGTH]
        email = sanitize(body.get("email"), MAX_EMAIL_LENGTH)
        source = sanitize(_first(body, "source", "utm_source", "platform") or "api", MAX_SOURCE_LENGTH).lower()
        notes = sanitize(_first(body, "notes", "message"), MAX_NOTES_LENGTH)

        if len(full_name) < 2:
            raise ValidationError("Name is required (min 2 chars)")
        if len(phone) < 10:
            raise ValidationError("Valid phone number is required")

        lead_id, created = self._insert(full_name, phone, email, source, notes)
        if not created:
            return {"success": True, "message": "Lead already exists", "lead_id": lead_id}, False

        logger.info("Webhook lead %s created (source: %s)", lead_id, source)
        return {"success": True, "lead_id": lead_id}, True
