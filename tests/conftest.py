"""
Shared fixtures for the GreenPay wallet tests.

Each test gets a fresh in-memory SQLite database, a mocked Redis (locks always
granted) and no network: gateway clients are patched per test.
"""
import os

# Must be set before greenpay.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EXCHANGERATE_API_KEY"] = ""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from greenpay.config import Config
from greenpay.database import Base, get_db
from greenpay.main import app
from greenpay.models import User, Transaction
from greenpay.money import to_minor

ADMIN_KEY = "test-admin-key"


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
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def redis_mock():
    """Redis client whose locks are always acquired."""
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True
    with patch("greenpay.redis_client.get_redis", return_value=client):
        yield client


@pytest.fixture(autouse=True)
def admin_key():
    with patch.object(Config, "ADMIN_API_KEY", ADMIN_KEY):
        yield ADMIN_KEY


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def fixed_rate():
    """Exchange rate service pinned to the fallback USD/KES table."""
    rates = {("USD", "KES"): Decimal("129"), ("KES", "USD"): Decimal("0.0077")}
    service = MagicMock()
    service.get_exchange_rate.side_effect = lambda f, t: rates.get((f, t), Decimal("1"))
    with patch("greenpay.money_movement.exchange_rate_service", service):
        yield service


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Create a user whose stored balances are backed by completed deposit rows."""
    counter = {"n": 0}

    def _make_user(balance="0.00", kes_balance="0.00", has_card=True, phone=None, email=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            full_name=name or f"Test User {n}",
            email=email or f"user{n}@example.com",
            phone=phone,
            balance=to_minor(Decimal(balance)),
            kes_balance=to_minor(Decimal(kes_balance)),
            has_virtual_card=has_card,
        )
        db.add(user)
        db.flush()
        for currency, amount in (("USD", balance), ("KES", kes_balance)):
            if Decimal(amount) > 0:
                db.add(Transaction(
                    user_id=user.id, type="deposit", amount=to_minor(Decimal(amount)),
                    currency=currency, status="completed", fee=0,
                    reference=f"SEED-{user.id}-{currency}", meta={},
                ))
        db.commit()
        return user

    return _make_user


@pytest.fixture
def balances(db):
    """Fresh read of both wallets as decimal strings: (USD, KES)."""
    def _balances(user_id):
        db.expire_all()
        user = db.query(User).filter(User.id == user_id).one()
        return user.to_dict()["balance"], user.to_dict()["kesBalance"]

    return _balances
