import hashlib
import hmac
import logging
import uuid
from typing import Optional

import requests
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database

import settings
from database import get_db, now_utc

logger = logging.getLogger("travonex.payments")

router = APIRouter(prefix="/api/payments", tags=["payments"])


class GatewayError(Exception):
    pass


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def create_gateway_order(amount: float, receipt: str, currency: str = "INR", notes: Optional[dict] = None) -> dict:
    """
    Create a Razorpay order for ``amount`` in major units.

    Without gateway credentials a local order is returned so development and
    tests can run the whole booking flow offline.
    """
    minor = to_minor_units(amount)
    if not (settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET):
        return {"id": f"order_{uuid.uuid4().hex[:14]}", "amount": minor, "currency": currency, "receipt": receipt, "status": "created"}
    try:
        resp = requests.post(
            f"{settings.RAZORPAY_API_BASE}/orders",
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET),
            json={
                "amount": minor,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": notes or {},
            },
            timeout=10,
        )
        resp.raise_for_status()
        return resp.json()
    except requests.RequestException as e:
        logger.exception("razorpay order creation failed", extra={"order_id": receipt})
        raise GatewayError(str(e)) from e


def expected_signature(order_id: str, payment_id: str, secret: Optional[str] = None) -> str:
    msg = f"{order_id}|{payment_id}".encode()
    key = (secret if secret is not None else settings.RAZORPAY_KEY_SECRET).encode()
    return hmac.new(key, msg, hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: Optional[str] = None) -> bool:
    key = secret if secret is not None else settings.RAZORPAY_KEY_SECRET
    if not (key and order_id and payment_id and signature):
        return False
    dig = expected_signature(order_id, payment_id, key)
    return hmac.compare_digest(dig, signature)


# Orders issued by this API, keyed by gateway order id.

def record_order(db: Database, order: dict, user_id: Optional[str] = None) -> None:
    db["paymentorder"].update_one(
        {"orderId": order["id"]},
        {"$setOnInsert": {
            "amount": int(order["amount"]),
            "currency": order.get("currency", "INR"),
            "receipt": order.get("receipt"),
            "userId": user_id,
            "createdAt": now_utc(),
        }},
        upsert=True,
    )


def recorded_order(db: Database, order_id: Optional[str]) -> Optional[dict]:
    if not order_id:
        return None
    return db["paymentorder"].find_one({"orderId": order_id})


# Routes

class CreateOrderPayload(BaseModel):
    amount: Optional[float] = None
    currency: str = "INR"
    receipt: Optional[str] = None


@router.post("/create-order")
def create_order(payload: CreateOrderPayload, db: Database = Depends(get_db)):
    if not payload.amount or payload.amount <= 0:
        raise HTTPException(400, "amount required")
    receipt = payload.receipt or f"rcpt_{uuid.uuid4().hex[:12]}"
    try:
        order = create_gateway_order(payload.amount, receipt, payload.currency)
    except GatewayError:
        raise HTTPException(502, "Payment gateway error")
    record_order(db, order)
    return order


class VerifyPayload(BaseModel):
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None


@router.post("/verify")
def verify_payment(payload: VerifyPayload):
    if not (payload.order_id and payload.payment_id and payload.signature):
        raise HTTPException(400, "Missing params")
    if verify_signature(payload.order_id, payload.payment_id, payload.signature):
        return {"valid": True}
    logger.warning("payment signature mismatch", extra={"order_id": payload.order_id})
    return JSONResponse(status_code=400, content={"valid": False})
