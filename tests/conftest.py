"""Shared pytest fixtures.

Provides a fresh temp-file SQLite DatabaseManager for each test, plus
staff accounts, membership plans, an open cashier shift and a member.
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta

import pytest

from database import DatabaseManager

ROOT_EMAIL = "root@gym.test"
ROOT_PASSWORD = "rootpass"


@pytest.fixture
def temp_db():
    """Yield a fresh, initialized DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="db-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.initialize(admin_email=ROOT_EMAIL, admin_password=ROOT_PASSWORD)

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def superadmin(temp_db):
    return temp_db.users.get_by_email(ROOT_EMAIL)


@pytest.fixture
def admin(temp_db):
    return temp_db.users.create_user("admin@gym.test", "adminpass",
                                     role="admin", name="Aisyah")


@pytest.fixture
def cashier(temp_db):
    return temp_db.users.create_user("cashier@gym.test", "cashpass",
                                     role="cashier", name="Ben")


@pytest.fixture
def cashier2(temp_db):
    return temp_db.users.create_user("cashier2@gym.test", "cashpass",
                                     role="cashier", name="Chong")


@pytest.fixture
def adult_plan(temp_db):
    """One month adult plan: RM 150 + RM 50 registration fee."""
    return temp_db.plans.create_plan("adult", 1, 150, 50, 0)


@pytest.fixture
def youth_plan(temp_db):
    return temp_db.plans.create_plan("youth", 6, 540, 30, 1)


@pytest.fixture
def cashier_shift(temp_db, cashier):
    """An open shift for the cashier."""
    return temp_db.shifts.get_or_create_active_shift(cashier.id)


@pytest.fixture
def member(temp_db, cashier, cashier_shift, adult_plan):
    """A freshly registered adult member (active)."""
    result = temp_db.memberships.register_member(
        {"name": "Ali Hassan", "phone": "0123456789",
         "nric": "900101-14-5678"},
        adult_plan.id, "cash", cashier.id
    )
    return result["member"]


def as_user(user):
    """Helper: the user dict the facade expects for actor arguments."""
    return {"id": user.id, "role": user.role, "email": user.email}


def set_expiry(db, member_pk, days_from_now):
    """Helper: move a member's expiry date relative to the current time."""
    return db.members.update_member(
        member_pk, expiry_date=datetime.utcnow() + timedelta(days=days_from_now)
    )
