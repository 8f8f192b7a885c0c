import re
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, get_documents, oid, serialize_doc
from fares import available_slots
from schemas import BatchStatus, CancellationRule, Review
from security import require_role

router = APIRouter(tags=["trips"])


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (title or "").lower()).strip("-")
    return slug or "trip"


def unique_slug(db: Database, title: str, exclude_id=None) -> str:
    base = slugify(title)
    slug = base
    n = 2
    while True:
        filt = {"slug": slug}
        if exclude_id is not None:
            filt["_id"] = {"$ne": exclude_id}
        if db["trip"].count_documents(filt) == 0:
            return slug
        slug = f"{base}-{n}"
        n += 1


def public_trip(doc: dict) -> dict:
    t = serialize_doc(doc)
    batches = []
    for b in doc.get("batches", []):
        b = dict(b)
        b["availableSlots"] = available_slots(b)
        batches.append(b)
    t["batches"] = batches
    return t


class BatchIn(BaseModel):
    id: Optional[str] = None
    startDate: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    endDate: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    maxParticipants: int = Field(..., ge=1)
    priceOverride: Optional[float] = Field(default=None, ge=0)
    status: BatchStatus = "Active"
    notes: Optional[str] = None


class TripIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    city: Optional[str] = None
    tripType: Optional[str] = None
    price: float = Field(..., ge=0)
    taxIncluded: bool = True
    taxPercentage: float = Field(0, ge=0, le=100)
    batches: List[BatchIn] = []
    cancellationRules: List[CancellationRule] = []


def build_batches(batches: List[BatchIn], existing: Optional[List[dict]] = None) -> List[dict]:
    """
    Merge submitted batches with stored ones. Booked seat counts are kept for
    batches that survive the edit; a batch with bookings can not be removed
    or shrunk below its booked seats.
    """
    by_id = {b["id"]: b for b in (existing or [])}
    out = []
    for b in batches:
        if b.endDate < b.startDate:
            raise HTTPException(400, "Batch endDate must not be before startDate")
        doc = b.model_dump()
        doc["id"] = b.id or uuid.uuid4().hex[:12]
        prev = by_id.pop(doc["id"], None)
        booked = int(prev.get("seatsBooked", 0)) if prev else 0
        if doc["maxParticipants"] < booked:
            raise HTTPException(409, "maxParticipants is below seats already booked")
        doc["seatsBooked"] = booked
        out.append(doc)
    for leftover in by_id.values():
        if int(leftover.get("seatsBooked", 0)) > 0:
            raise HTTPException(409, "A batch with bookings can not be removed")
    return out


# Public catalogue

@router.get("/api/trips")
def list_trips(
    city: Optional[str] = None,
    q: Optional[str] = None,
    tripType: Optional[str] = None,
    limit: int = 20,
    skip: int = 0,
    db: Database = Depends(get_db),
):
    filt = {"status": "Published"}
    if city:
        filt["city"] = {"$regex": f"^{re.escape(city)}$", "$options": "i"}
    if tripType:
        filt["tripType"] = tripType
    if q:
        filt["title"] = {"$regex": re.escape(q), "$options": "i"}
    cursor = db["trip"].find(filt).sort("createdAt", -1).skip(skip).limit(limit)
    items = [public_trip(t) for t in cursor]
    return {"items": items, "count": len(items)}


@router.get("/api/trips/slug/{slug}")
def get_trip_by_slug(slug: str, db: Database = Depends(get_db)):
    t = db["trip"].find_one({"slug": slug, "status": "Published"})
    if not t:
        raise HTTPException(404, "Trip not found")
    return public_trip(t)


@router.get("/api/trips/{trip_id}")
def get_trip(trip_id: str, db: Database = Depends(get_db)):
    t = db["trip"].find_one({"_id": oid(trip_id), "status": "Published"})
    if not t:
        raise HTTPException(404, "Trip not found")
    return public_trip(t)


# Reviews

class AddReview(BaseModel):
    tripId: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


@router.post("/api/reviews", status_code=201)
def add_review(payload: AddReview, claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    # allow only if user has a completed booking for this trip
    has = db["booking"].find_one({"userId": claims["id"], "tripId": payload.tripId, "status": "completed"})
    if not has:
        raise HTTPException(403, "Not allowed to review")
    if db["review"].find_one({"userId": claims["id"], "tripId": payload.tripId}):
        raise HTTPException(409, "Trip already reviewed")
    try:
        review_id = create_document(db, "review", Review(userId=claims["id"], **payload.model_dump()))
    except DuplicateKeyError:
        raise HTTPException(409, "Trip already reviewed")
    return {"id": review_id}


@router.get("/api/trips/{trip_id}/reviews")
def list_reviews(trip_id: str, limit: int = 20, db: Database = Depends(get_db)):
    items = get_documents(db, "review", {"tripId": trip_id}, limit=limit, sort_newest=True)
    return {"items": items}
