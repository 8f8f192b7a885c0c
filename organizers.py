import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import payouts
import reports
from database import get_db, now_utc, oid, serialize_doc
from schemas import EDITABLE_TRIP_STATES, Trip
from security import require_role
from trips import TripIn, build_batches, public_trip, unique_slug

logger = logging.getLogger("travonex.organizers")

router = APIRouter(prefix="/api/organizers/me", tags=["organizers"])

organizer_auth = require_role("organizer")

PROFILE_FIELDS = (
    "name", "phone", "organizerType", "logo", "address", "website", "experience",
    "specializations", "authorizedSignatoryName", "authorizedSignatoryId",
    "emergencyContact", "pan", "gstin", "bankAccountNumber", "ifscCode",
)


def current_organizer(db: Database, claims: dict) -> dict:
    organizer = db["organizer"].find_one({"_id": oid(claims["id"])})
    if not organizer:
        raise HTTPException(404, "Organizer not found")
    return organizer


def _public(organizer: dict) -> dict:
    out = serialize_doc(organizer)
    out.pop("passwordHash", None)
    return out


# Profile / KYC

@router.get("/profile")
def get_profile(claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    return _public(current_organizer(db, claims))


class ProfileUpdate(BaseModel):
    fields: dict = {}
    submitForVerification: bool = False


@router.put("/profile")
def update_profile(payload: ProfileUpdate, claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    organizer = current_organizer(db, claims)
    updates = {k: v for k, v in payload.fields.items() if k in PROFILE_FIELDS}
    if payload.submitForVerification:
        if organizer.get("kycStatus") not in ("Incomplete", "Rejected"):
            raise HTTPException(409, f"KYC is already {organizer.get('kycStatus')}")
        merged = {**organizer, **updates}
        missing = [f for f in ("pan", "bankAccountNumber", "ifscCode", "address") if not merged.get(f)]
        if missing:
            raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")
        updates["kycStatus"] = "Pending"
        updates["vendorAgreementStatus"] = "Submitted"
    updates["updatedAt"] = now_utc()
    doc = db["organizer"].find_one_and_update(
        {"_id": organizer["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return _public(doc)


# Trips

@router.get("/trips")
def list_my_trips(claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    items = [public_trip(t) for t in db["trip"].find({"organizerId": claims["id"]}).sort("createdAt", -1)]
    return {"items": items}


@router.post("/trips", status_code=201)
def create_trip(payload: TripIn, claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    organizer = current_organizer(db, claims)
    if organizer.get("kycStatus") != "Verified":
        raise HTTPException(403, "KYC verification required before listing trips")
    doc = Trip(
        **payload.model_dump(exclude={"batches"}),
        batches=build_batches(payload.batches),
        organizerId=claims["id"],
        slug=unique_slug(db, payload.title),
        createdAt=now_utc(),
    ).model_dump(exclude={"id"})
    try:
        res = db["trip"].insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(409, "A trip with this title already exists")
    logger.info("trip created", extra={"trip_id": str(res.inserted_id), "organizer_id": claims["id"]})
    return public_trip(doc)


@router.put("/trips/{trip_id}")
def update_trip(trip_id: str, payload: TripIn, claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    trip = db["trip"].find_one({"_id": oid(trip_id), "organizerId": claims["id"]})
    if not trip:
        raise HTTPException(404, "Trip not found")
    if trip.get("status") not in EDITABLE_TRIP_STATES:
        raise HTTPException(409, f"A {trip.get('status')} trip can not be edited")
    updates = payload.model_dump(exclude={"batches"})
    updates["batches"] = build_batches(payload.batches, trip.get("batches", []))
    if payload.title != trip.get("title"):
        updates["slug"] = unique_slug(db, payload.title, exclude_id=trip["_id"])
    if trip.get("status") == "Rejected":
        updates["status"] = "Pending Approval"
    updates["updatedAt"] = now_utc()
    doc = db["trip"].find_one_and_update(
        {"_id": trip["_id"], "status": trip.get("status")},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise HTTPException(409, "Trip changed, please retry")
    return public_trip(doc)


# Dashboard & payouts

@router.get("/dashboard")
def dashboard(claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    return reports.organizer_dashboard(db, current_organizer(db, claims))


@router.get("/eligible-payouts")
def eligible_payouts(claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    return payouts.eligible_batches(db, claims["id"])


class PayoutRequest(BaseModel):
    tripId: str
    batchId: str
    notes: Optional[str] = None


@router.post("/payouts/request", status_code=201)
def request_payout(payload: PayoutRequest, claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    organizer = current_organizer(db, claims)
    return payouts.request_payout(db, organizer, payload.tripId, payload.batchId, payload.notes)


@router.get("/payout-history")
def payout_history(claims: dict = Depends(organizer_auth), db: Database = Depends(get_db)):
    return reports.payout_history(db, claims["id"])
