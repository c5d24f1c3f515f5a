# backend/tests/conftest.py
"""
Pytest configuration for the scheduling core.

Every test gets a brand new in-memory SQLite database, so tests never share
rows and never touch a configured database.
"""

import os
import sys

# Set the store BEFORE any mathbridge imports so the module-level engine is harmless
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("CI", "true")

# Add the backend directory to Python path so imports work
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from unittest.mock import Mock

import pytest
from sqlalchemy.orm import Session, sessionmaker

from mathbridge.database import build_engine, init_db
from mathbridge.schemas.payment import RefundResult


@pytest.fixture
def test_engine():
    engine = build_engine("sqlite:///:memory:")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    """A fresh session on a fresh database for each test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def notifier():
    """Notification sender double; records calls, delivers nothing."""
    return Mock(name="notifier")


@pytest.fixture
def refund_gateway():
    """Refund collaborator double that always succeeds."""
    gateway = Mock(name="refund_gateway")

    def _refund(contract_id, session_id, amount):
        return RefundResult(success=True, transaction_id="txn-test", amount=amount)

    gateway.refund.side_effect = _refund
    return gateway
