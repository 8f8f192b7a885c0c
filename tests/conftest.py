from __future__ import annotations

import os
from datetime import timedelta

os.environ["ENV"] = "test"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
import settings  # noqa: E402
import wallet  # noqa: E402
from database import ensure_indexes, get_db, now_utc  # noqa: E402
from payments import expected_signature  # noqa: E402
from security import hash_password, issue_token  # noqa: E402

GATEWAY_SECRET = "test_gateway_secret"
PASSWORD = "s3cret-pass"


@pytest.fixture(autouse=True)
def _gateway(monkeypatch):
    # No key id: orders are generated locally, signatures still use the secret.
    monkeypatch.setattr(settings, "RAZORPAY_KEY_ID", "")
    monkeypatch.setattr(settings, "RAZORPAY_KEY_SECRET", GATEWAY_SECRET)
    monkeypatch.setattr(settings, "PLATFORM_COMMISSION_RATE", 0.10)
    monkeypatch.setattr(settings, "REFERRAL_BONUS", 100.0)


@pytest.fixture()
def db():
    """Fresh in-memory database per test, with the production indexes."""
    database = mongomock.MongoClient()["travonex_test"]
    ensure_indexes(database)
    return database


@pytest.fixture()
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def auth(subject_id, role: str) -> dict:
    return {"Authorization": f"Bearer {issue_token(str(subject_id), role)}"}


def sign(order_id: str, payment_id: str) -> str:
    return expected_signature(order_id, payment_id, GATEWAY_SECRET)


def day(offset: int) -> str:
    return (now_utc().date() + timedelta(days=offset)).isoformat()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(name: str = "Asha", balance: float = 0.0, **extra) -> str:
        counter["n"] += 1
        n = counter["n"]
        doc = {
            "name": name,
            "email": f"user{n}@example.com",
            "phone": f"+91990000{n:04d}",
            "passwordHash": hash_password(PASSWORD),
            "role": "user",
            "status": "Active",
            "walletBalance": 0.0,
            "walletTransactions": [],
            "referralCode": f"REF{n:05d}",
            "referredBy": None,
            "wishlist": [],
            "createdAt": now_utc(),
        }
        doc.update(extra)
        user_id = str(db["user"].insert_one(doc).inserted_id)
        if balance:
            wallet.credit(db, user_id, balance, "Opening balance", "Promo")
        return user_id

    return _make


@pytest.fixture()
def make_organizer(db):
    counter = {"n": 0}

    def _make(kyc: str = "Verified", **extra) -> str:
        counter["n"] += 1
        n = counter["n"]
        doc = {
            "name": f"Trails Co {n}",
            "email": f"org{n}@example.com",
            "phone": f"+91980000{n:04d}",
            "passwordHash": hash_password(PASSWORD),
            "kycStatus": kyc,
            "vendorAgreementStatus": "Verified" if kyc == "Verified" else "Not Submitted",
            "createdAt": now_utc(),
        }
        doc.update(extra)
        return str(db["organizer"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture()
def make_admin(db):
    def _make(email: str = "admin@example.com", status: str = "Active") -> str:
        return str(db["adminuser"].insert_one({
            "name": "Root",
            "email": email,
            "passwordHash": hash_password(PASSWORD),
            "role": "Super Admin",
            "status": status,
            "createdAt": now_utc(),
        }).inserted_id)

    return _make


@pytest.fixture()
def make_trip(db, make_organizer):
    counter = {"n": 0}

    def _make(organizer_id: str | None = None, price: float = 1000.0, max_participants: int = 10,
              start_in: int = 40, length: int = 4, status: str = "Published", tax_included: bool = True,
              tax_percentage: float = 0.0, rules=None, seats_booked: int = 0):
        counter["n"] += 1
        n = counter["n"]
        organizer_id = organizer_id or make_organizer()
        batch = {
            "id": f"batch{n}",
            "startDate": day(start_in),
            "endDate": day(start_in + length),
            "maxParticipants": max_participants,
            "priceOverride": None,
            "status": "Active",
            "notes": None,
            "seatsBooked": seats_booked,
        }
        trip_id = str(db["trip"].insert_one({
            "title": f"Trip {n}",
            "slug": f"trip-{n}",
            "city": "Manali",
            "tripType": "Trek",
            "organizerId": organizer_id,
            "price": price,
            "taxIncluded": tax_included,
            "taxPercentage": tax_percentage,
            "status": status,
            "batches": [batch],
            "cancellationRules": rules or [],
            "createdAt": now_utc(),
        }).inserted_id)
        return trip_id, batch["id"]

    return _make


def traveler(n: int = 1) -> dict:
    return {"name": f"Traveler {n}", "email": f"t{n}@example.com", "phone": "+919812345678"}
