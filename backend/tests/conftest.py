"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import AsyncMock, MagicMock

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from auth import create_access_token


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


def auth_headers(role="ROLE_BUSINESS_OWNER", user_id="owner-1", email="owner@example.com", name="Olive Owner"):
    """Bearer header for a signed token carrying user_id, email, name and role."""
    token = create_access_token({"user_id": user_id, "email": email, "name": name, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner_headers():
    return auth_headers()


@pytest.fixture
def admin_headers():
    return auth_headers(role="ROLE_ADMIN", user_id="admin-1", email="admin@example.com", name="Ada Admin")


def cursor(items):
    """Motor-style cursor mock: find(...).sort(...).to_list(n) returns items."""
    mock = MagicMock()
    mock.to_list = AsyncMock(return_value=list(items))
    mock.sort = MagicMock(return_value=mock)
    mock.limit = MagicMock(return_value=mock)
    return mock


def make_collection(find_one=None, find=None, matched_count=1, modified_count=1):
    coll = MagicMock()
    coll.find_one = AsyncMock(return_value=find_one)
    coll.find = MagicMock(return_value=cursor(find or []))
    coll.insert_one = AsyncMock()
    coll.update_one = AsyncMock(return_value=MagicMock(matched_count=matched_count, modified_count=modified_count))
    coll.update_many = AsyncMock(return_value=MagicMock(modified_count=modified_count))
    return coll


def make_db(**collections):
    """Mock db; unspecified collections get an empty default."""
    db = MagicMock()
    for name in ("pricing_plans", "listings", "downgrade_requests", "policy_settings", "audit_logs", "message_logs"):
        setattr(db, name, collections.get(name) or make_collection())
    return db
