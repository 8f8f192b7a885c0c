"""
Booking lifecycle: quote, create, confirm, cancel.

State machine::

    pending -> confirmed -> completed
    pending | confirmed -> cancelled      (refundStatus none -> pending -> processed)
    pending -> cancelled                  (payment window expired, wallet credit returned)

Every transition is a conditional update on the current status. Seats are a
per-batch ``seatsBooked`` counter moved with conditional ``$inc`` updates,
so a batch can not be oversold by concurrent requests.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

import settings
import wallet
from database import as_utc, create_document, get_db, now_utc, oid, serialize_doc
from fares import (
    FareBreakdown,
    available_slots,
    base_price_for,
    calculate_fare,
    find_batch,
    find_valid_coupon,
    redeem_coupon,
    refund_for,
    release_coupon,
)
from payments import GatewayError, create_gateway_order, record_order, recorded_order, to_minor_units, verify_signature
from schemas import Booking, Dispute, Traveler
from security import require_role

logger = logging.getLogger("travonex.bookings")

router = APIRouter(tags=["bookings"])

FARE_TOLERANCE = 0.01


# Seats

def reserve_seats(db: Database, trip_id: str, batch: dict, count: int) -> bool:
    limit = int(batch.get("maxParticipants", 0)) - count
    if limit < 0:
        return False
    res = db["trip"].update_one(
        {"_id": oid(trip_id), "batches": {"$elemMatch": {"id": batch["id"], "seatsBooked": {"$lte": limit}}}},
        {"$inc": {"batches.$.seatsBooked": count}},
    )
    return res.modified_count == 1


def release_seats(db: Database, trip_id: str, batch_id: str, count: int) -> None:
    db["trip"].update_one(
        {"_id": oid(trip_id), "batches": {"$elemMatch": {"id": batch_id, "seatsBooked": {"$gte": count}}}},
        {"$inc": {"batches.$.seatsBooked": -count}},
    )


# Pending expiry

def pending_expired(booking: dict) -> bool:
    expires = booking.get("pendingExpiresAt")
    return booking.get("status") == "pending" and expires is not None and as_utc(expires) <= now_utc()


def expire_booking(db: Database, booking: dict) -> bool:
    """Cancel an unpaid booking whose payment window closed and hand back what it held."""
    wallet_used = float(booking.get("walletUsed", 0) or 0)
    res = db["booking"].update_one(
        {"_id": booking["_id"], "status": "pending"},
        {"$set": {
            "status": "cancelled",
            "refundStatus": "processed" if wallet_used > 0 else "none",
            "refundAmount": wallet_used,
            "cancellationReason": "Payment window expired",
            "cancelledAt": now_utc(),
            "updatedAt": now_utc(),
        }},
    )
    if res.modified_count != 1:
        return False
    booking_id = str(booking["_id"])
    release_seats(db, booking["tripId"], booking["batchId"], len(booking.get("travelers", [])))
    if wallet_used > 0:
        wallet.credit(db, booking["userId"], wallet_used, f"Reversal for booking {booking_id}", "Booking")
    if booking.get("couponCode"):
        coupon = db["coupon"].find_one({"code": booking["couponCode"]})
        if coupon:
            release_coupon(db, coupon)
    logger.info("pending booking expired", extra={"booking_id": booking_id, "trip_id": booking["tripId"]})
    return True


def expire_pending_bookings(db: Database, trip_id: Optional[str] = None, batch_id: Optional[str] = None) -> int:
    filt = {"status": "pending", "pendingExpiresAt": {"$ne": None}}
    if trip_id:
        filt["tripId"] = trip_id
    if batch_id:
        filt["batchId"] = batch_id
    expired = 0
    for booking in list(db["booking"].find(filt)):
        if pending_expired(booking) and expire_booking(db, booking):
            expired += 1
    return expired


# Quote

def load_bookable(db: Database, trip_id: str, batch_id: str) -> Tuple[dict, dict]:
    expire_pending_bookings(db, trip_id, batch_id)
    trip = db["trip"].find_one({"_id": oid(trip_id)})
    if not trip or trip.get("status") != "Published":
        raise HTTPException(404, "Trip not found")
    batch = find_batch(trip, batch_id)
    if not batch or batch.get("status") != "Active":
        raise HTTPException(404, "Batch not found")
    if batch.get("startDate", "") <= now_utc().date().isoformat():
        raise HTTPException(409, "Batch has already departed")
    return trip, batch


def quote_booking(db: Database, user: dict, trip: dict, batch: dict, traveler_count: int,
                  coupon_code: Optional[str], use_wallet: bool) -> Tuple[FareBreakdown, Optional[dict]]:
    coupon = None
    if coupon_code:
        coupon = find_valid_coupon(db, coupon_code)
        if not coupon:
            raise HTTPException(404, "Invalid coupon")
    try:
        fare = calculate_fare(
            base_price=base_price_for(trip, batch),
            traveler_count=traveler_count,
            coupon_discount=float(coupon["discount"]) if coupon else 0.0,
            use_wallet=use_wallet,
            wallet_balance=max(0.0, float(user.get("walletBalance", 0) or 0)),
            tax_included=bool(trip.get("taxIncluded", True)),
            tax_percentage=float(trip.get("taxPercentage", 0) or 0),
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    return fare, coupon


def _current_user(db: Database, claims: dict) -> dict:
    user = db["user"].find_one({"_id": oid(claims["id"])})
    if not user:
        raise HTTPException(404, "User not found")
    if user.get("status", "Active") != "Active":
        raise HTTPException(403, "Account is not active")
    return user


class QuotePayload(BaseModel):
    tripId: str
    batchId: str
    travelers: int = Field(..., ge=1)
    couponCode: Optional[str] = None
    useWallet: bool = False


@router.post("/api/bookings/quote")
def quote(payload: QuotePayload, claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    user = _current_user(db, claims)
    trip, batch = load_bookable(db, payload.tripId, payload.batchId)
    fare, coupon = quote_booking(db, user, trip, batch, payload.travelers, payload.couponCode, payload.useWallet)
    out = fare.model_dump()
    out["couponCode"] = coupon["code"] if coupon else None
    out["availableSlots"] = available_slots(batch)
    return out


# Create

class CreateBookingPayload(BaseModel):
    tripId: str
    batchId: str
    travelers: List[Traveler] = Field(..., min_length=1)
    couponCode: Optional[str] = None
    useWallet: bool = False
    totalAmount: Optional[float] = None
    orderId: Optional[str] = None
    paymentId: Optional[str] = None
    signature: Optional[str] = None


def _rollback(db: Database, trip_id: str, batch_id: str, seats: int, user_id: str, wallet_amount: float,
              coupon: Optional[dict], booking_id: str) -> None:
    release_seats(db, trip_id, batch_id, seats)
    if wallet_amount > 0:
        wallet.credit(db, user_id, wallet_amount, f"Reversal for booking {booking_id}", "Booking")
    if coupon is not None:
        release_coupon(db, coupon)


@router.post("/api/bookings", status_code=201)
def create_booking(payload: CreateBookingPayload, response: Response,
                   claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    user = _current_user(db, claims)
    user_id = str(user["_id"])

    if payload.paymentId:
        existing = db["booking"].find_one({"paymentId": payload.paymentId})
        if existing:
            if existing.get("userId") != user_id:
                raise HTTPException(409, "Payment already used for another booking")
            response.status_code = 200
            return serialize_doc(existing)

    trip, batch = load_bookable(db, payload.tripId, payload.batchId)
    seats = len(payload.travelers)
    fare, coupon = quote_booking(db, user, trip, batch, seats, payload.couponCode, payload.useWallet)

    if payload.totalAmount is not None and abs(float(payload.totalAmount) - fare.total) > FARE_TOLERANCE:
        raise HTTPException(409, f"Fare mismatch: expected {fare.total:.2f}")

    paid = False
    if fare.total > 0 and (payload.paymentId or payload.signature):
        if not verify_signature(payload.orderId or "", payload.paymentId or "", payload.signature or ""):
            logger.warning("booking payment verification failed", extra={"order_id": payload.orderId, "user_id": user_id})
            raise HTTPException(400, "Payment verification failed")
        paid_order = recorded_order(db, payload.orderId)
        if paid_order is None or int(paid_order.get("amount", -1)) != to_minor_units(fare.total):
            logger.warning("paid order does not match fare", extra={"order_id": payload.orderId, "user_id": user_id})
            raise HTTPException(409, f"Payment order does not match the fare of {fare.total:.2f}")
        if db["booking"].find_one({"orderId": payload.orderId}, {"_id": 1}):
            raise HTTPException(409, "Payment order already used for another booking")
        paid = True
    status = "confirmed" if (paid or fare.total == 0) else "pending"

    booking_oid = ObjectId()
    booking_id = str(booking_oid)

    if not reserve_seats(db, payload.tripId, batch, seats):
        raise HTTPException(409, "Not enough seats available")

    wallet_used = 0.0
    try:
        if fare.walletDiscount > 0:
            wallet.debit(db, user_id, fare.walletDiscount, f"Used for booking {booking_id}", "Booking")
            wallet_used = fare.walletDiscount
        if coupon is not None and not redeem_coupon(db, coupon):
            coupon = None
            raise HTTPException(404, "Invalid coupon")
        order = None
        if status == "pending":
            order = create_gateway_order(fare.total, booking_id, notes={"bookingId": booking_id, "tripId": payload.tripId})
            record_order(db, order, user_id)

        doc = Booking(
            userId=user_id,
            tripId=payload.tripId,
            batchId=batch["id"],
            travelers=payload.travelers,
            subtotal=fare.subtotal,
            couponCode=coupon["code"] if coupon else None,
            couponDiscount=fare.couponDiscount,
            walletUsed=wallet_used,
            tax=fare.tax,
            amount=fare.total,
            status=status,
            orderId=order["id"] if order else payload.orderId,
            paymentId=payload.paymentId if paid else None,
            pendingExpiresAt=now_utc() + timedelta(minutes=settings.PENDING_BOOKING_TTL_MINUTES) if order else None,
            createdAt=now_utc(),
        ).model_dump(exclude={"id"})
        doc["_id"] = booking_oid
        db["booking"].insert_one(doc)
    except wallet.InsufficientBalance:
        _rollback(db, payload.tripId, batch["id"], seats, user_id, wallet_used, coupon, booking_id)
        raise HTTPException(409, "Wallet balance changed, please retry")
    except GatewayError:
        _rollback(db, payload.tripId, batch["id"], seats, user_id, wallet_used, coupon, booking_id)
        raise HTTPException(502, "Payment gateway error")
    except HTTPException:
        _rollback(db, payload.tripId, batch["id"], seats, user_id, wallet_used, coupon, booking_id)
        raise
    except Exception:
        logger.exception("booking insert failed, rolling back", extra={"booking_id": booking_id})
        _rollback(db, payload.tripId, batch["id"], seats, user_id, wallet_used, coupon, booking_id)
        raise
    logger.info("booking %s for %d travelers", status, seats, extra={"booking_id": booking_id, "trip_id": payload.tripId, "user_id": user_id})

    out = serialize_doc(doc)
    if order is not None:
        out["order"] = order
    return out


# Confirm / cancel

def _owned_booking(db: Database, booking_id: str, claims: dict) -> dict:
    booking = db["booking"].find_one({"_id": oid(booking_id)})
    if not booking:
        raise HTTPException(404, "Booking not found")
    if claims["role"] != "admin" and booking.get("userId") != claims["id"]:
        raise HTTPException(404, "Booking not found")
    return booking


@router.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, claims: dict = Depends(require_role("user", "admin")), db: Database = Depends(get_db)):
    return serialize_doc(_owned_booking(db, booking_id, claims))


class ConfirmPayload(BaseModel):
    paymentId: str
    signature: str


@router.post("/api/bookings/{booking_id}/confirm")
def confirm_booking(booking_id: str, payload: ConfirmPayload,
                    claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    booking = _owned_booking(db, booking_id, claims)
    if booking.get("status") == "confirmed" and booking.get("paymentId") == payload.paymentId:
        return serialize_doc(booking)
    if pending_expired(booking):
        expire_booking(db, booking)
        raise HTTPException(409, "Payment window expired")
    if booking.get("status") != "pending":
        raise HTTPException(409, f"Booking is {booking.get('status')}")
    if not verify_signature(booking.get("orderId") or "", payload.paymentId, payload.signature):
        logger.warning("booking confirmation signature mismatch", extra={"booking_id": booking_id})
        raise HTTPException(400, "Payment verification failed")
    updated = db["booking"].find_one_and_update(
        {"_id": booking["_id"], "status": "pending"},
        {"$set": {"status": "confirmed", "paymentId": payload.paymentId, "pendingExpiresAt": None, "updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(409, "Booking is no longer pending")
    logger.info("booking confirmed", extra={"booking_id": booking_id})
    return serialize_doc(updated)


def cancel(db: Database, booking: dict, reason: Optional[str] = None) -> dict:
    status = booking.get("status")
    if status == "cancelled":
        return serialize_doc(booking)
    if status not in ("pending", "confirmed"):
        raise HTTPException(409, f"A {status} booking can not be cancelled")

    trip = db["trip"].find_one({"_id": oid(booking["tripId"])}) or {}
    batch = find_batch(trip, booking["batchId"]) if trip else None
    refund = refund_for(booking, batch, trip.get("cancellationRules", []))

    updated = db["booking"].find_one_and_update(
        {"_id": booking["_id"], "status": status},
        {"$set": {
            "status": "cancelled",
            "refundStatus": "pending" if refund > 0 else "none",
            "refundAmount": refund,
            "cancellationReason": reason,
            "cancelledAt": now_utc(),
            "updatedAt": now_utc(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = db["booking"].find_one({"_id": booking["_id"]})
        if current and current.get("status") == "cancelled":
            return serialize_doc(current)
        raise HTTPException(409, "Booking changed, please retry")

    release_seats(db, booking["tripId"], booking["batchId"], len(booking.get("travelers", [])))
    logger.info("booking cancelled, refund %.2f", refund, extra={"booking_id": str(booking["_id"])})
    return serialize_doc(updated)


class CancelPayload(BaseModel):
    reason: Optional[str] = None


@router.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, payload: Optional[CancelPayload] = None,
                   claims: dict = Depends(require_role("user", "admin")), db: Database = Depends(get_db)):
    booking = _owned_booking(db, booking_id, claims)
    return cancel(db, booking, payload.reason if payload else None)


# Coupons

class ValidateCouponPayload(BaseModel):
    code: Optional[str] = None
    tripId: Optional[str] = None
    batchId: Optional[str] = None


@router.post("/api/coupons/validate")
def validate_coupon(payload: ValidateCouponPayload, db: Database = Depends(get_db)):
    coupon = find_valid_coupon(db, payload.code)
    if not coupon:
        raise HTTPException(404, "Invalid coupon")
    return {"discount": coupon["discount"], "code": coupon["code"], "couponId": str(coupon["_id"])}


# Disputes

class DisputePayload(BaseModel):
    bookingId: str
    reason: str = Field(..., min_length=1)


@router.post("/api/disputes", status_code=201)
def raise_dispute(payload: DisputePayload, claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    booking = _owned_booking(db, payload.bookingId, claims)
    trip = db["trip"].find_one({"_id": oid(booking["tripId"])}, {"organizerId": 1}) or {}
    dispute_id = create_document(db, "dispute", Dispute(
        userId=claims["id"],
        bookingId=payload.bookingId,
        organizerId=trip.get("organizerId"),
        reason=payload.reason,
    ))
    logger.info("dispute raised", extra={"booking_id": payload.bookingId})
    return {"id": dispute_id, "status": "Open"}
