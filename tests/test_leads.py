import pytest

from gymaccess.errors import ServiceUnavailableError, ValidationError
from gymaccess.leads import normalize_source, sanitize
from gymaccess.models import Lead


def test_capture_lead_creates_lead(services, seed, db):
    branch = seed.branch()

    result = services.leads.capture_lead("Ana Lopez", "+1 (555) 123-4567", "ana@example.com", "Instagram")

    assert result == {"success": True, "message": "Thank you! We will contact you soon."}
    lead = db.query(Lead).one()
    assert lead.phone == "+15551234567"
    assert lead.source == "instagram"
    assert lead.branch_id == branch
    assert lead.status == "new"


def test_duplicate_phone_is_silent(services, seed, db):
    seed.branch()
    services.leads.capture_lead("Ana Lopez", "5551234567")

    result = services.leads.capture_lead("Someone Else", "555-123-4567")

    assert result["success"] is True
    assert db.query(Lead).count() == 1


@pytest.mark.parametrize("name, phone, email", [
    ("", "5551234567", None),
    ("A", "5551234567", None),
    ("R2D2", "5551234567", None),
    ("Ana Lopez", "", None),
    ("Ana Lopez", "12345", None),
    ("Ana Lopez", "555123456x", None),
    ("Ana Lopez", "5551234567", "not-an-email"),
])
def test_capture_lead_validation(services, seed, name, phone, email):
    seed.branch()
    with pytest.raises(ValidationError):
        services.leads.capture_lead(name, phone, email)


def test_capture_lead_without_active_branch(services, seed):
    seed.branch(is_active=False)
    with pytest.raises(ServiceUnavailableError) as exc:
        services.leads.capture_lead("Ana Lopez", "5551234567")
    assert exc.value.message == "Service temporarily unavailable"


def test_source_normalization_and_sanitizing():
    assert normalize_source(None) == "website"
    assert normalize_source(" Referral ") == "referral"
    assert normalize_source("tiktok") == "other"
    assert sanitize("  Ana\x00 Lopez\x07 ", 100) == "Ana Lopez"
    assert sanitize("x" * 200, 100) == "x" * 100


def test_webhook_lead_aliases_and_duplicates(services, seed, db):
    seed.branch()

    payload, created = services.leads.capture_webhook_lead({
        "name": "Ben Ortiz",
        "mobile": "555 987 6543",
        "utm_source": "Facebook",
        "message": "Interested in classes",
    })

    assert created is True
    lead = db.query(Lead).one()
    assert payload == {"success": True, "lead_id": lead.id}
    assert lead.full_name == "Ben Ortiz"
    assert lead.phone == "5559876543"
    assert lead.source == "facebook"
    assert lead.notes == "Interested in classes"

    again, created = services.leads.capture_webhook_lead({"fullName": "Ben O", "phone_number": "5559876543"})
    assert created is False
    assert again == {"success": True, "message": "Lead already exists", "lead_id": lead.id}


def test_webhook_lead_validation(services, seed):
    seed.branch()
    with pytest.raises(ValidationError):
        services.leads.capture_webhook_lead({"name": "B", "phone": "5559876543"})
    with pytest.raises(ValidationError):
        services.leads.capture_webhook_lead({"name": "Ben", "phone": "123"})
