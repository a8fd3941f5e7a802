import os

os.environ["GYMACCESS_DATABASE_URL"] = "sqlite://"
os.environ["GYMACCESS_LOG_FILE"] = ""
os.environ["GYMACCESS_ENABLE_MAINTENANCE"] = "0"
os.environ["GYMACCESS_WEBHOOK_LEAD_SECRET"] = "test-webhook-secret"

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from gymaccess.database import init_db, make_engine
from gymaccess.main import Services, app, get_services
from gymaccess.models import (
    AccessDevice,
    Branch,
    Employee,
    Member,
    Membership,
    MembershipFreeze,
    MembershipPlan,
    UserRole,
    new_id,
    utcnow,
)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def services(session_factory):
    return Services(session_factory)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


class Seed:
    """Row builders for tests. Every helper commits and returns the new id."""

    def __init__(self, session_factory, services):
        self.session_factory = session_factory
        self.services = services

    def _add(self, row):
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    def branch(self, name="Downtown", is_active=True):
        return self._add(Branch(name=name, is_active=is_active))

    def member(self, branch_id, full_name="Jane Doe", member_code=None):
        return self._add(Member(
            branch_id=branch_id,
            full_name=full_name,
            member_code=member_code or f"M-{new_id()[:8]}",
        ))

    def employee(self, branch_id, full_name="Sam Staff", user_id=None, is_active=True):
        return self._add(Employee(
            branch_id=branch_id,
            full_name=full_name,
            user_id=user_id,
            employee_code=f"E-{new_id()[:8]}",
            is_active=is_active,
        ))

    def membership(self, member_id, branch_id, start_offset=-10, end_offset=20, status="active",
                   plan_name="Monthly"):
        plan_id = self._add(MembershipPlan(name=plan_name, duration_days=30))
        today = utcnow().date()
        return self._add(Membership(
            member_id=member_id,
            plan_id=plan_id,
            branch_id=branch_id,
            start_date=today + timedelta(days=start_offset),
            end_date=today + timedelta(days=end_offset),
            status=status,
        ))

    def freeze(self, membership_id, start_offset=-1, end_offset=5):
        today = utcnow().date()
        return self._add(MembershipFreeze(
            membership_id=membership_id,
            start_date=today + timedelta(days=start_offset),
            end_date=today + timedelta(days=end_offset),
        ))

    def device(self, branch_id, device_name="Front Gate", device_type="turnstile", is_online=True,
               relay_delay=None, last_heartbeat=None):
        return self._add(AccessDevice(
            branch_id=branch_id,
            device_name=device_name,
            ip_address="192.168.1.50",
            device_type=device_type,
            is_online=is_online,
            relay_delay=relay_delay,
            last_heartbeat=last_heartbeat if last_heartbeat is not None else (utcnow() if is_online else None),
        ))

    def user(self, *roles):
        """A user holding ``roles``; returns (user_id, bearer_token)."""
        user_id = new_id()
        db = self.session_factory()
        try:
            for role in roles:
                db.add(UserRole(user_id=user_id, role=role))
            db.commit()
        finally:
            db.close()
        return user_id, self.services.authenticator.issue_token(user_id)


@pytest.fixture
def seed(session_factory, services):
    return Seed(session_factory, services)


@pytest.fixture
def staff_headers(seed):
    _, token = seed.user("staff")
    return {"Authorization": f"Bearer {token}"}
