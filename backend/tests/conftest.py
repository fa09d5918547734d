import itertools
import os

# Settings are read at import time, so they must be in place before the
# application modules are imported by the tests.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["REFRESH_SECRET_KEY"] = "test-refresh-secret-key-for-testing-only"
os.environ["REDIS_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest
from fastapi.testclient import TestClient

import auth
import models
from database import Base, SessionLocal, engine, get_db
from main import app

PASSWORD = "TestPass123!"

_counter = itertools.count(1)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def factory(role="waiter", restaurant_id="rest-1", permissions=None, is_active=True, password=PASSWORD):
        n = next(_counter)
        user = models.User(
            username=f"{role}_{n}",
            email=f"{role}{n}@example.com",
            password=auth.get_password_hash(password),
            role=role,
            first_name="Test",
            last_name=f"User{n}",
            restaurant_id=None if role == "admin" else restaurant_id,
            permissions=permissions or [],
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def headers_for():
    def bearer(user):
        return {"Authorization": f"Bearer {auth.create_access_token(user)}"}
    return bearer


@pytest.fixture
def order_items():
    """Two lines worth 28.0 in total."""
    return [
        {"menu_item_id": "m-1", "name": "Margherita", "price": 12.5, "quantity": 2},
        {"menu_item_id": "m-2", "name": "Lemonade", "price": 3.0, "quantity": 1, "customizations": ["no ice"]},
    ]
