"""
Pytest fixtures for the warehouse service test suite.

Provides:
- An in-memory SQLite database per test (StaticPool keeps one connection)
- A TestClient whose `get_db` dependency yields the test session
- Users for an admin, two picking warehouses and a requester
- Helpers to seed stock and build documents through the service layer
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from datetime import datetime
from typing import Optional

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from warehouse_core.app.db import Base
from warehouse_core.app import models
from warehouse_core.app.main import app
from warehouse_core.app.schemas import DocumentCreate
from warehouse_core.app.security import get_db, get_password_hash, create_access_token, RateLimiter
from warehouse_core.app.services.documents import DocumentService
from warehouse_core.app.services.ledger import LedgerService

TEST_PASSWORD = "Warehouse123"

# hashing is slow; every fixture user shares one hash
PASSWORD_HASH = get_password_hash(TEST_PASSWORD)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    RateLimiter.reset()
    yield
    RateLimiter.reset()


@pytest.fixture
def client(db):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# =============================================================================
# Users
# =============================================================================


def _make_user(db, username, vendor, role="USER", initials=None, first_name=None, last_name=None):
    user = models.User(
        username=username,
        email=f"{username}@example.com",
        password_hash=PASSWORD_HASH,
        first_name=first_name,
        last_name=last_name,
        initials=initials,
        vendor=vendor,
        company="ACME",
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db):
    return _make_user(db, "admin", "HQ", role="ADMIN", initials="AD")


@pytest.fixture
def picker_a(db):
    return _make_user(db, "picker_a", "WH-A", initials="PA")


@pytest.fixture
def picker_b(db):
    return _make_user(db, "picker_b", "WH-B", initials="PB")


@pytest.fixture
def requester(db):
    return _make_user(db, "requester", "WH-R", first_name="Rita", last_name="Quinn")


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.username})}"}


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


# =============================================================================
# Data helpers
# =============================================================================


def seed_stock(db, barcode: str, warehouse: str, asset_name: str = "Display Table", size: Optional[str] = None):
    """Register a barcode in the asset master and open its IN leg."""
    db.add(models.Asset(barcode=barcode, asset_name=asset_name, size=size, warehouse=warehouse))
    db.flush()
    row = LedgerService.open_in_leg(
        db, barcode, asset_name,
        warehouse_in=warehouse,
        from_vendor=warehouse,
        mcs_code_in="-",
        asset_status="NEW",
        grade="A",
    )
    db.commit()
    return row


def asset_line(name="Display Table", qty=1, withdraw_for=None, barcode=None, size=None, grade=None):
    return {"name": name, "qty": qty, "withdraw_for": withdraw_for, "barcode": barcode, "size": size, "grade": grade}


def security_line(name, qty=1, withdraw_for=None, barcode=None):
    return {"name": name, "qty": qty, "withdraw_for": withdraw_for, "barcode": barcode}


def shop(code="MCS001", name="Shop One", assets=(), security_sets=(), install=None):
    return {
        "shop_code": code,
        "shop_name": name,
        "start_install_date": install,
        "assets": list(assets),
        "security_sets": list(security_sets),
    }


def make_document(db, user, document_type, shops, status="submitted", **header):
    data = DocumentCreate(
        document_type=document_type,
        status=status,
        full_name=header.pop("full_name", "Rita Quinn"),
        company=header.pop("company", "ACME"),
        shops=shops,
        **header
    )
    document = DocumentService.create(db, user, data)
    db.commit()
    return document


def approve(db, document, admin_user, **options):
    result = DocumentService.approve(db, document.id, admin_user, **options)
    db.commit()
    return result


@pytest.fixture
def now():
    return datetime.utcnow()
