import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
import admin
import bookings
import database
import organizers
import payments
import settings
import trips
from database import ensure_indexes, get_db, now_utc
from observability import RequestIDMiddleware, get_request_id, setup_json_logging
from security import hash_password

APP_VERSION = "1.0.0"

settings.enforce_secret_baseline()
setup_json_logging()

logger = logging.getLogger("travonex.errors")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version=APP_VERSION,
    docs_url="/docs" if settings.ENABLE_API_DOCS else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.ENABLE_API_DOCS else None,
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)


def configure_cors(app: FastAPI, allowed: str) -> None:
    origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    if "*" in origins:
        # wildcard origins can not be combined with credentials
        app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=False,
                           allow_methods=["*"], allow_headers=["*"])
    else:
        app.add_middleware(CORSMiddleware, allow_origins=origins, allow_credentials=True,
                           allow_methods=["*"], allow_headers=["*"])


configure_cors(app, settings.ALLOWED_ORIGINS)


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if settings.is_prod_env() and exc.status_code >= 500:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "internal error", "request_id": get_request_id()},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    logger.exception("unhandled exception on %s %s", request.method, request.url.path)
    payload: dict[str, Any] = {"detail": "internal error" if settings.is_prod_env() else str(exc)}
    payload["request_id"] = rid
    return JSONResponse(status_code=500, content=payload)


app.include_router(accounts.router)
app.include_router(trips.router)
app.include_router(bookings.router)
app.include_router(payments.router)
app.include_router(organizers.router)
app.include_router(admin.router)


# Routes
@app.get("/")
def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": settings.ENV,
        "service": app.title,
        "version": app.version,
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = database.db
    if db is None:
        return response
    response["database_url"] = "Set" if os.getenv("DATABASE_URL") else "Not Set"
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:20]
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("database check failed: %s", e)
        response["database"] = f"Connected but Error: {str(e)[:80]}"
    return response


# Development data

SEED_PASSWORD = "travonex123"

SAMPLE_TRIPS = [
    {
        "title": "Hampta Pass Trek",
        "city": "Manali",
        "tripType": "Trek",
        "price": 8500,
        "taxIncluded": False,
        "taxPercentage": 5,
        "description": "Five days across the Pir Panjal from Kullu to Lahaul.",
    },
    {
        "title": "Goa Coastal Weekend",
        "city": "Goa",
        "tripType": "Leisure",
        "price": 4200,
        "taxIncluded": True,
        "taxPercentage": 0,
        "description": "Beaches, forts and a sunset cruise.",
    },
    {
        "title": "Spiti Valley Road Trip",
        "city": "Kaza",
        "tripType": "Road Trip",
        "price": 16500,
        "taxIncluded": False,
        "taxPercentage": 5,
        "description": "Eight days through the cold desert villages of Spiti.",
    },
]

SAMPLE_RULES = [
    {"days": 30, "refundPercentage": 100},
    {"days": 15, "refundPercentage": 50},
    {"days": 7, "refundPercentage": 25},
]


def _seed_account(db: Database, collection: str, email: str, doc: dict):
    existing = db[collection].find_one({"email": email})
    if existing:
        return existing["_id"]
    return db[collection].insert_one({**doc, "email": email, "passwordHash": hash_password(SEED_PASSWORD),
                                      "createdAt": now_utc()}).inserted_id


@app.post("/api/seed")
def seed(db: Database = Depends(get_db)):
    if settings.ENV not in ("dev", "test"):
        raise HTTPException(404, "Not Found")

    _seed_account(db, "adminuser", "admin@travonex.dev", {"name": "Admin One", "role": "Super Admin", "status": "Active"})
    organizer_id = _seed_account(db, "organizer", "organizer@travonex.dev", {
        "name": "Himalayan Trails", "phone": "+919800000001", "kycStatus": "Verified",
        "vendorAgreementStatus": "Verified",
    })
    _seed_account(db, "user", "traveler@travonex.dev", {
        "name": "Traveler One", "phone": "+919800000002", "role": "user", "status": "Active",
        "walletBalance": 0.0, "walletTransactions": [], "referralCode": "TRAVONEX", "referredBy": None,
        "wishlist": [],
    })

    count = db["trip"].count_documents({"isSeeded": True})
    if count >= len(SAMPLE_TRIPS):
        return {"seeded": True, "trips": count}

    today = now_utc().date()
    for i, t in enumerate(SAMPLE_TRIPS):
        start = today + timedelta(days=20 + 10 * i)
        past_start = today - timedelta(days=15)
        batches = [
            {"id": f"b{i}-next", "startDate": start.isoformat(), "endDate": (start + timedelta(days=5)).isoformat(),
             "maxParticipants": 20, "priceOverride": None, "status": "Active", "notes": None, "seatsBooked": 0},
            {"id": f"b{i}-past", "startDate": past_start.isoformat(),
             "endDate": (past_start + timedelta(days=5)).isoformat(),
             "maxParticipants": 20, "priceOverride": None, "status": "Active", "notes": None, "seatsBooked": 0},
        ]
        db["trip"].insert_one({
            **t,
            "slug": trips.unique_slug(db, t["title"]),
            "organizerId": str(organizer_id),
            "status": "Published",
            "batches": batches,
            "cancellationRules": SAMPLE_RULES,
            "isSeeded": True,
            "createdAt": now_utc(),
        })
    db["coupon"].update_one(
        {"code": "WELCOME500"},
        {"$setOnInsert": {"discount": 500, "expiresAt": now_utc() + timedelta(days=365),
                          "usageLimit": None, "usageCount": 0, "createdAt": now_utc()}},
        upsert=True,
    )
    return {"seeded": True}
