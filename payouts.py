"""
Organizer settlements.

A batch becomes payable once its end date has passed. Its gross revenue is
the sum of confirmed and completed booking amounts; the platform keeps
``PLATFORM_COMMISSION_RATE`` of it and the organizer receives the rest.
At most one non-failed payout exists per batch, enforced by the unique
``batchKey`` index.
"""
import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import settings
from database import now_utc, oid, serialize_doc
from schemas import Payout

logger = logging.getLogger("travonex.payouts")

REVENUE_STATUSES = ("confirmed", "completed")


def batch_key(trip_id: str, batch_id: str) -> str:
    return f"{trip_id}:{batch_id}"


def split_revenue(gross: float, rate: Optional[float] = None) -> Tuple[float, float, float]:
    rate = settings.PLATFORM_COMMISSION_RATE if rate is None else rate
    gross = round(float(gross), 2)
    commission = round(gross * rate, 2)
    net = round(gross - commission, 2)
    return gross, commission, net


def batch_revenue(db: Database, trip_id: str, batch_id: str) -> Tuple[float, int]:
    gross = 0.0
    participants = 0
    for b in db["booking"].find({"tripId": trip_id, "batchId": batch_id, "status": {"$in": list(REVENUE_STATUSES)}}):
        gross += float(b.get("amount", 0) or 0)
        participants += len(b.get("travelers", []))
    return round(gross, 2), participants


def _has_active_payout(db: Database, trip_id: str, batch_id: str) -> bool:
    return db["payout"].count_documents(
        {"tripId": trip_id, "batchId": batch_id, "status": {"$ne": "Failed"}}
    ) > 0


def _batch_finished(batch: dict, today: date) -> bool:
    return batch.get("endDate", "9999-12-31") < today.isoformat()


def eligible_batches(db: Database, organizer_id: str, today: Optional[date] = None) -> List[dict]:
    today = today or now_utc().date()
    items = []
    for trip in db["trip"].find({"organizerId": organizer_id}):
        trip_id = str(trip["_id"])
        for batch in trip.get("batches", []):
            if not _batch_finished(batch, today):
                continue
            if _has_active_payout(db, trip_id, batch["id"]):
                continue
            gross, participants = batch_revenue(db, trip_id, batch["id"])
            if gross <= 0:
                continue
            gross, commission, net = split_revenue(gross)
            items.append({
                "tripId": trip_id,
                "batchId": batch["id"],
                "tripTitle": trip.get("title"),
                "batchDates": f"{batch.get('startDate')} - {batch.get('endDate')}",
                "participants": participants,
                "grossRevenue": gross,
                "commission": commission,
                "netPayout": net,
            })
    return items


def request_payout(db: Database, organizer: dict, trip_id: str, batch_id: str, notes: Optional[str] = None, today: Optional[date] = None) -> dict:
    organizer_id = str(organizer["_id"])
    if organizer.get("kycStatus") != "Verified":
        raise HTTPException(403, "KYC verification required before requesting payouts")
    trip = db["trip"].find_one({"_id": oid(trip_id), "organizerId": organizer_id})
    if not trip:
        raise HTTPException(404, "Trip not found")
    batch = next((b for b in trip.get("batches", []) if b.get("id") == batch_id), None)
    if not batch:
        raise HTTPException(404, "Batch not found")
    if not _batch_finished(batch, today or now_utc().date()):
        raise HTTPException(400, "Batch has not been completed yet")
    if _has_active_payout(db, trip_id, batch_id):
        raise HTTPException(409, "A payout for this batch already exists")
    gross, _ = batch_revenue(db, trip_id, batch_id)
    if gross <= 0:
        raise HTTPException(400, "No revenue to pay out for this batch")
    gross, commission, net = split_revenue(gross)
    doc = Payout(
        tripId=trip_id,
        batchId=batch_id,
        organizerId=organizer_id,
        totalRevenue=gross,
        platformCommission=commission,
        netPayout=net,
        requestDate=now_utc(),
        notes=notes,
        batchKey=batch_key(trip_id, batch_id),
    ).model_dump(exclude={"id"}, exclude_none=True)
    doc["createdAt"] = now_utc()
    try:
        res = db["payout"].insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(409, "A payout for this batch already exists")
    doc["_id"] = res.inserted_id
    logger.info("payout requested %.2f", net, extra={"organizer_id": organizer_id, "trip_id": trip_id, "batch_id": batch_id})
    return serialize_doc(doc)


def process_payout(db: Database, payout_id: str, payment_mode: str, utr_number: str, paid_date: Optional[datetime] = None,
                   invoice_url: Optional[str] = None, notes: Optional[str] = None) -> dict:
    updates = {
        "status": "Paid",
        "paymentMode": payment_mode,
        "utrNumber": utr_number,
        "paidDate": paid_date or now_utc(),
        "updatedAt": now_utc(),
    }
    if invoice_url:
        updates["invoiceUrl"] = invoice_url
    if notes:
        updates["notes"] = notes
    return _transition(db, payout_id, updates)


def fail_payout(db: Database, payout_id: str, notes: Optional[str] = None) -> dict:
    # A failed payout releases its batch key so the batch can be requested again.
    updates = {"status": "Failed", "batchKey": f"failed:{payout_id}", "updatedAt": now_utc()}
    if notes:
        updates["notes"] = notes
    return _transition(db, payout_id, updates)


def _transition(db: Database, payout_id: str, updates: dict) -> dict:
    doc = db["payout"].find_one_and_update(
        {"_id": oid(payout_id), "status": "Pending"},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        if db["payout"].count_documents({"_id": oid(payout_id)}) == 0:
            raise HTTPException(404, "Payout not found")
        raise HTTPException(409, "Payout is no longer pending")
    logger.info("payout %s", updates["status"].lower(), extra={"payout_id": payout_id})
    return serialize_doc(doc)
