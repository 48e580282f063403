"""Pytest fixtures for the Sufficius API tests."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main


class Account(NamedTuple):
    id: str
    headers: dict


@pytest.fixture
def mongo(monkeypatch):
    """In-memory MongoDB standing in for the configured database.

    mongomock has no sessions, so multi-document transactions are switched off.
    """
    db = mongomock.MongoClient()["sufficius_test"]
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(database, "USE_TRANSACTIONS", False)
    return db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def _account(mongo, username, role, password_hash="!"):
    now = datetime.now(timezone.utc)
    result = mongo["user"].insert_one({
        "username": username,
        "email": f"{username}@example.com",
        "password_hash": password_hash,
        "role": role,
        "created_at": now,
        "updated_at": now,
    })
    user_id = str(result.inserted_id)
    token = main.create_access_token({"sub": user_id})
    return Account(user_id, {"Authorization": f"Bearer {token}"})


@pytest.fixture
def customer(mongo):
    return _account(mongo, "maria", "customer")


@pytest.fixture
def other_customer(mongo):
    return _account(mongo, "joao", "customer")


@pytest.fixture
def admin(mongo):
    return _account(mongo, "admin", "admin")


@pytest.fixture
def make_product(mongo):
    def _make(name="Camiseta", price=10.0, stock=5, discounted_price=None):
        now = datetime.now(timezone.utc)
        result = mongo["product"].insert_one({
            "name": name,
            "category": "roupas",
            "price": price,
            "discounted_price": discounted_price,
            "stock": stock,
            "created_at": now,
            "updated_at": now,
        })
        return str(result.inserted_id)
    return _make


@pytest.fixture
def make_address(mongo):
    def _make(user_id, **overrides):
        now = datetime.now(timezone.utc)
        doc = {
            "user_id": user_id,
            "street": "Rua das Flores",
            "number": "100",
            "complement": None,
            "district": "Centro",
            "city": "Curitiba",
            "state": "PR",
            "zip_code": "80000-000",
            "country": "Brasil",
            "is_default": False,
            "created_at": now,
            "updated_at": now,
        }
        doc.update(overrides)
        return str(mongo["address"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def add_to_cart(mongo):
    def _add(user_id, product_id, quantity, price=10.0):
        now = datetime.now(timezone.utc)
        return str(mongo["cartitem"].insert_one({
            "user_id": user_id,
            "product_id": product_id,
            "quantity": quantity,
            "price": price,
            "created_at": now,
            "updated_at": now,
        }).inserted_id)
    return _add


@pytest.fixture
def make_coupon(mongo):
    def _make(code="SAVE10", discount_type="PERCENTAGE", value=10, active=True, expires_in_days=30):
        now = datetime.now(timezone.utc)
        return str(mongo["coupon"].insert_one({
            "code": code,
            "discount_type": discount_type,
            "value": value,
            "active": active,
            "valid_until": now + timedelta(days=expires_in_days),
            "used": 0,
            "created_at": now,
            "updated_at": now,
        }).inserted_id)
    return _make


@pytest.fixture
def registered(mongo):
    """Customer with a real bcrypt password, for login tests."""
    return _account(mongo, "carla", "customer", main.get_password_hash("secret123"))


class RecordingSession:
    """Stands in for a pymongo ClientSession and records the transaction lifecycle."""

    def __init__(self):
        self.events = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.events.append("end_session")
        return False

    @contextmanager
    def start_transaction(self):
        self.events.append("start_transaction")
        try:
            yield
        except Exception:
            self.events.append("abort")
            raise
        self.events.append("commit")


class _SessionCollection:
    def __init__(self, inner, writes):
        self._inner = inner
        self._writes = writes

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            session = kwargs.pop("session", None)
            if session is not None:
                self._writes.append((self._inner.name, name, session))
            return attr(*args, **kwargs)
        return call


class RecordingDatabase:
    """Wraps the mongomock database so writes may carry a session."""

    def __init__(self, inner):
        self._inner = inner
        self.session = RecordingSession()
        self.writes = []
        self.client = self

    def start_session(self):
        return self.session

    def __getitem__(self, name):
        return _SessionCollection(self._inner[name], self.writes)


@pytest.fixture
def transactional(mongo, monkeypatch):
    """Database wrapper with transactions switched on."""
    recording = RecordingDatabase(mongo)
    monkeypatch.setattr(database, "db", recording)
    monkeypatch.setattr(database, "USE_TRANSACTIONS", True)
    return recording
