"""
Shared fixtures: an in-memory Firestore seeded with one product and one
buyer, a verification service wired to a canned mailbox, and a TestClient
with the Firestore, auth and verification dependencies overridden.
"""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from fakes import FakeFirestore
from projectstore.core.auth import get_current_user
from projectstore.core.celery_app import celery_app
from projectstore.core.firebase import get_db
from projectstore.models.user_model import User
from projectstore.routers.payment_router import get_verification_service
from projectstore.services.email_search import RawEmail, SyntheticEmailSearch
from projectstore.services.grant_store import PurchaseGrantStore
from projectstore.services.verification_service import PaymentVerificationService

PRODUCT_ID = "prod-ebook"
PRODUCT_PRICE = 500.0
USER_ID = "user-ali"
OTHER_USER_ID = "user-sara"


def make_email(body: str, subject: str = "Transaction success: payment received") -> RawEmail:
    return RawEmail(subject=subject, body=body, date=datetime.now(timezone.utc))


def make_user(user_id: str = USER_ID) -> User:
    return User(_id=user_id, firebase_uid=user_id, name="Ali Khan", email=f"{user_id}@example.com")


@pytest.fixture
def db():
    fake = FakeFirestore()
    fake.collection("products").document(PRODUCT_ID).set({
        "title": "Python for Traders",
        "price": PRODUCT_PRICE,
        "short_description": "An ebook",
        "images": ["https://cdn.example.com/cover.png"],
        "download_link": "https://files.example.com/python-for-traders.pdf",
        "buyers": [],
    })
    for user_id in (USER_ID, OTHER_USER_ID):
        fake.collection("users").document(user_id).set(
            make_user(user_id).model_dump(by_alias=True)
        )
    return fake


@pytest.fixture
def store(db):
    return PurchaseGrantStore(db)


@pytest.fixture
def mailbox():
    return SyntheticEmailSearch(sender_name="John Doe", receiver_name="Project Store")


@pytest.fixture
def tokens():
    issued = []

    def factory():
        token = f"tok{len(issued) + 1:04d}"
        issued.append(token)
        return token

    factory.issued = issued
    return factory


@pytest.fixture
def service(mailbox, store, tokens):
    return PaymentVerificationService(
        email_search=mailbox,
        store=store,
        token_factory=tokens,
        search_days=7,
        retry_days=14,
        search_timeout=5.0,
    )


@pytest.fixture(autouse=True)
def eager_celery(db, monkeypatch):
    monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
    monkeypatch.setattr(celery_app.conf, "task_eager_propagates", True)
    monkeypatch.setattr("projectstore.tasks.receipt_celery.get_db", lambda: db)


@pytest.fixture
def current_user():
    return {"user": make_user(USER_ID)}


@pytest.fixture
def client(db, service, current_user):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: current_user["user"]
    app.dependency_overrides[get_verification_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
