"""
Fare arithmetic and coupon checks.

``calculate_fare`` is the single place the booking total is computed. The
quote endpoint and booking creation both run it server side from stored
trip, batch, coupon and wallet data.
"""
from datetime import date
from typing import List, Optional

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

from database import as_utc, now_utc


class FareBreakdown(BaseModel):
    basePrice: float
    travelerCount: int
    subtotal: float
    couponDiscount: float
    walletDiscount: float
    taxableAmount: float
    tax: float
    total: float


def _money(value: float) -> float:
    return round(float(value), 2)


def calculate_fare(
    base_price: float,
    traveler_count: int,
    coupon_discount: float = 0.0,
    use_wallet: bool = False,
    wallet_balance: float = 0.0,
    tax_included: bool = True,
    tax_percentage: float = 0.0,
) -> FareBreakdown:
    if traveler_count < 1:
        raise ValueError("traveler_count must be at least 1")
    if base_price < 0 or coupon_discount < 0 or wallet_balance < 0:
        raise ValueError("amounts must not be negative")
    if not 0 <= tax_percentage <= 100:
        raise ValueError("tax_percentage must be within 0-100")

    subtotal = _money(base_price * traveler_count)
    # A coupon can not discount more than the fare it applies to.
    coupon = _money(min(coupon_discount, subtotal))
    taxable = _money(subtotal - coupon)
    wallet = _money(min(wallet_balance, taxable)) if use_wallet else 0.0
    tax = 0.0 if tax_included else _money(taxable * tax_percentage / 100)
    total = _money(max(0.0, subtotal - coupon - wallet + tax))
    return FareBreakdown(
        basePrice=_money(base_price),
        travelerCount=traveler_count,
        subtotal=subtotal,
        couponDiscount=coupon,
        walletDiscount=wallet,
        taxableAmount=taxable,
        tax=tax,
        total=total,
    )


def base_price_for(trip: dict, batch: dict) -> float:
    override = batch.get("priceOverride")
    if override is not None:
        return float(override)
    return float(trip.get("price", 0))


def find_batch(trip: dict, batch_id: str) -> Optional[dict]:
    for b in trip.get("batches", []):
        if b.get("id") == batch_id:
            return b
    return None


def available_slots(batch: dict) -> int:
    return max(0, int(batch.get("maxParticipants", 0)) - int(batch.get("seatsBooked", 0)))


# Coupons

def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def coupon_is_usable(coupon: dict) -> bool:
    if as_utc(coupon["expiresAt"]) <= now_utc():
        return False
    limit = coupon.get("usageLimit")
    if limit is not None and int(coupon.get("usageCount", 0)) >= int(limit):
        return False
    return True


def find_valid_coupon(db: Database, code: Optional[str]) -> Optional[dict]:
    code = normalize_code(code)
    if not code:
        return None
    coupon = db["coupon"].find_one({"code": code})
    if not coupon or not coupon_is_usable(coupon):
        return None
    return coupon


def redeem_coupon(db: Database, coupon: dict) -> bool:
    """Count one use; False when a usage limit was hit in the meantime."""
    filt = {"_id": coupon["_id"]}
    limit = coupon.get("usageLimit")
    if limit is not None:
        filt["usageCount"] = {"$lt": int(limit)}
    res = db["coupon"].find_one_and_update(
        filt, {"$inc": {"usageCount": 1}}, return_document=ReturnDocument.AFTER
    )
    return res is not None


def release_coupon(db: Database, coupon: dict) -> None:
    db["coupon"].update_one({"_id": coupon["_id"], "usageCount": {"$gt": 0}}, {"$inc": {"usageCount": -1}})


# Refunds

def refund_percentage(rules: List[dict], days_before_departure: int) -> float:
    if not rules:
        return 100.0
    matching = [r for r in rules if int(r.get("days", 0)) <= days_before_departure]
    if not matching:
        return 0.0
    best = max(matching, key=lambda r: int(r.get("days", 0)))
    return float(best.get("refundPercentage", 0))


def refund_for(booking: dict, batch: Optional[dict], rules: List[dict], today: Optional[date] = None) -> float:
    today = today or now_utc().date()
    wallet_used = float(booking.get("walletUsed", 0) or 0)
    if booking.get("status") == "pending":
        # Nothing was charged through the gateway yet, only wallet credit was held.
        return _money(wallet_used)
    paid = float(booking.get("amount", 0) or 0) + wallet_used
    if batch is None:
        return _money(paid)
    days_left = (date.fromisoformat(batch["startDate"]) - today).days
    pct = refund_percentage(rules, days_left)
    return _money(paid * pct / 100)
