import csv
import logging
from datetime import datetime
from io import StringIO
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import payouts
import reports
import wallet
from bookings import cancel
from database import create_document, get_db, get_documents, now_utc, oid, serialize_doc
from fares import normalize_code
from schemas import (
    AccountStatus,
    AdminUser,
    AgreementStatus,
    AuditLog,
    Coupon,
    KycStatus,
    PaymentMode,
    RoleDef,
    TripStatus,
)
from security import hash_password, require_role

logger = logging.getLogger("travonex.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])

admin_auth = require_role("admin")


def audit(db: Database, claims: dict, action: str, collection: str, target_id: Optional[str], details: Optional[dict] = None) -> None:
    create_document(db, "auditlog", AuditLog(
        action=action,
        adminId=claims["id"],
        targetCollection=collection,
        targetId=target_id,
        details=details or {},
    ))


def _found(doc: Optional[dict], what: str) -> dict:
    if not doc:
        raise HTTPException(404, f"{what} not found")
    return doc


@router.get("/dashboard")
def dashboard(claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return reports.admin_dashboard(db)


# Users

@router.get("/users")
def list_users(limit: int = 50, skip: int = 0, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    items = []
    for u in db["user"].find({}, {"passwordHash": 0, "walletTransactions": 0}).sort("createdAt", -1).skip(skip).limit(limit):
        items.append(serialize_doc(u))
    return {"items": items}


class WalletAdjustment(BaseModel):
    amount: float
    description: str = Field(..., min_length=1)


@router.post("/users/{user_id}/wallet-adjustment")
def adjust_wallet(user_id: str, payload: WalletAdjustment, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    try:
        if payload.amount > 0:
            entry = wallet.credit(db, user_id, payload.amount, payload.description, "Admin Adjustment")
        elif payload.amount < 0:
            entry = wallet.debit(db, user_id, -payload.amount, payload.description, "Admin Adjustment")
        else:
            raise HTTPException(400, "amount must not be zero")
    except wallet.InsufficientBalance:
        raise HTTPException(409, "Insufficient wallet balance")
    except wallet.WalletError as e:
        raise HTTPException(404, str(e))
    audit(db, claims, "Update", "user", user_id, {"walletAdjustment": payload.amount})
    return {"transaction": entry, "balance": wallet.balance_of(db, user_id)}


# Organizers

@router.get("/organizers")
def list_organizers(kycStatus: Optional[str] = None, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    filt = {"kycStatus": kycStatus} if kycStatus else {}
    return {"items": [serialize_doc(o) for o in db["organizer"].find(filt, {"passwordHash": 0})]}


@router.get("/organizers/{organizer_id}")
def get_organizer(organizer_id: str, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return serialize_doc(_found(db["organizer"].find_one({"_id": oid(organizer_id)}, {"passwordHash": 0}), "Organizer"))


class OrganizerStatus(BaseModel):
    kycStatus: Optional[KycStatus] = None
    vendorAgreementStatus: Optional[AgreementStatus] = None


@router.patch("/organizers/{organizer_id}/status")
def update_organizer_status(organizer_id: str, payload: OrganizerStatus, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(400, "Nothing to update")
    doc = db["organizer"].find_one_and_update(
        {"_id": oid(organizer_id)},
        {"$set": {**updates, "updatedAt": now_utc()}},
        projection={"passwordHash": 0},
        return_document=ReturnDocument.AFTER,
    )
    _found(doc, "Organizer")
    audit(db, claims, "Update", "organizer", organizer_id, updates)
    return {"message": "Status updated", "organizer": serialize_doc(doc)}


# Trips

class TripStatusUpdate(BaseModel):
    status: TripStatus
    adminNotes: Optional[str] = None


@router.patch("/trips/{trip_id}/status")
def update_trip_status(trip_id: str, payload: TripStatusUpdate, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    trip = _found(db["trip"].find_one({"_id": oid(trip_id)}), "Trip")
    if payload.status == "Published":
        organizer = db["organizer"].find_one({"_id": oid(trip["organizerId"])}, {"kycStatus": 1}) or {}
        if organizer.get("kycStatus") != "Verified":
            raise HTTPException(409, "Organizer KYC is not verified")
    updates: Dict[str, Any] = {"status": payload.status, "updatedAt": now_utc()}
    if payload.adminNotes is not None:
        updates["adminNotes"] = payload.adminNotes
    doc = db["trip"].find_one_and_update({"_id": trip["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER)
    action = {"Published": "Approve", "Rejected": "Reject"}.get(payload.status, "Update")
    audit(db, claims, action, "trip", trip_id, {"from": trip.get("status"), "to": payload.status})
    return serialize_doc(doc)


# Bookings

@router.get("/bookings")
def list_bookings(status: Optional[str] = None, tripId: Optional[str] = None, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    filt = {}
    if status:
        filt["status"] = status
    if tripId:
        filt["tripId"] = tripId
    return {"items": [serialize_doc(b) for b in db["booking"].find(filt).sort("createdAt", -1)]}


@router.get("/bookings/{booking_id}")
def get_booking(booking_id: str, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return serialize_doc(_found(db["booking"].find_one({"_id": oid(booking_id)}), "Booking"))


@router.post("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    booking = _found(db["booking"].find_one({"_id": oid(booking_id)}), "Booking")
    out = cancel(db, booking, "Cancelled by admin")
    audit(db, claims, "Update", "booking", booking_id, {"status": "cancelled"})
    return out


@router.post("/bookings/complete-finished")
def complete_finished_bookings(claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    today = now_utc().date().isoformat()
    completed = 0
    for trip in db["trip"].find({}, {"batches": 1}):
        for batch in trip.get("batches", []):
            if batch.get("endDate", "9999-12-31") >= today:
                continue
            res = db["booking"].update_many(
                {"tripId": str(trip["_id"]), "batchId": batch["id"], "status": "confirmed"},
                {"$set": {"status": "completed", "updatedAt": now_utc()}},
            )
            completed += res.modified_count
    if completed:
        audit(db, claims, "Update", "booking", None, {"completed": completed})
    return {"completed": completed}


@router.post("/bookings/{booking_id}/refund")
def process_refund(booking_id: str, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    booking = db["booking"].find_one_and_update(
        {"_id": oid(booking_id), "status": "cancelled", "refundStatus": "pending"},
        {"$set": {"refundStatus": "processed", "refundedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if booking is None:
        _found(db["booking"].find_one({"_id": oid(booking_id)}, {"_id": 1}), "Booking")
        raise HTTPException(409, "No pending refund for this booking")
    amount = float(booking.get("refundAmount", 0) or 0)
    if amount > 0:
        wallet.credit(db, booking["userId"], amount, f"Refund for booking {booking_id}", "Refund")
    logger.info("refund processed %.2f", amount, extra={"booking_id": booking_id})
    audit(db, claims, "Process", "booking", booking_id, {"refund": amount})
    return serialize_doc(booking)


# Payouts

@router.get("/payouts")
def list_payouts(status: Optional[str] = None, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    filt = {"status": status} if status else {}
    return {"items": get_documents(db, "payout", filt, sort_newest=True)}


class ProcessPayout(BaseModel):
    paymentMode: PaymentMode
    utrNumber: str = Field(..., min_length=1)
    paidDate: Optional[datetime] = None
    invoiceUrl: Optional[str] = None
    notes: Optional[str] = None


@router.post("/payouts/{payout_id}/process")
def process_payout(payout_id: str, payload: ProcessPayout, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    out = payouts.process_payout(db, payout_id, payload.paymentMode, payload.utrNumber, payload.paidDate, payload.invoiceUrl, payload.notes)
    audit(db, claims, "Process", "payout", payout_id, {"utrNumber": payload.utrNumber, "netPayout": out.get("netPayout")})
    return out


class FailPayout(BaseModel):
    notes: Optional[str] = None


@router.post("/payouts/{payout_id}/fail")
def fail_payout(payout_id: str, payload: Optional[FailPayout] = None, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    out = payouts.fail_payout(db, payout_id, payload.notes if payload else None)
    audit(db, claims, "Reject", "payout", payout_id, {"status": "Failed"})
    return out


# Coupons

class CouponIn(BaseModel):
    code: str = Field(..., min_length=1)
    discount: float = Field(..., gt=0)
    expiresAt: datetime
    usageLimit: Optional[int] = Field(default=None, ge=1)


@router.post("/coupons", status_code=201)
def create_coupon(payload: CouponIn, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    coupon = Coupon(**{**payload.model_dump(), "code": normalize_code(payload.code)})
    try:
        coupon_id = create_document(db, "coupon", coupon)
    except DuplicateKeyError:
        raise HTTPException(409, "Coupon code already exists")
    audit(db, claims, "Create", "coupon", coupon_id, {"code": coupon.code})
    return {**coupon.model_dump(exclude={"id"}), "id": coupon_id}


@router.get("/coupons")
def list_coupons(claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return {"items": get_documents(db, "coupon", sort_newest=True)}


# Roles & admin users

class RoleIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    permissions: Dict[str, Any] = {}


@router.get("/roles")
def list_roles(claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return {"items": get_documents(db, "role")}


@router.post("/roles", status_code=201)
def create_role(payload: RoleIn, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    role = RoleDef(**payload.model_dump())
    try:
        role_id = create_document(db, "role", role)
    except DuplicateKeyError:
        raise HTTPException(409, "Role already exists")
    audit(db, claims, "Create", "role", role_id, {"name": payload.name})
    return {**role.model_dump(exclude={"id"}), "id": role_id}


@router.put("/roles/{role_id}")
def update_role(role_id: str, payload: RoleIn, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    doc = db["role"].find_one_and_update(
        {"_id": oid(role_id)}, {"$set": {**payload.model_dump(), "updatedAt": now_utc()}}, return_document=ReturnDocument.AFTER
    )
    _found(doc, "Role")
    audit(db, claims, "Update", "role", role_id, {"name": payload.name})
    return serialize_doc(doc)


@router.delete("/roles/{role_id}")
def delete_role(role_id: str, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    role = _found(db["role"].find_one({"_id": oid(role_id)}), "Role")
    if db["adminuser"].find_one({"role": {"$in": [role_id, role.get("name")]}}):
        raise HTTPException(409, "Role assigned to users")
    db["role"].delete_one({"_id": role["_id"]})
    audit(db, claims, "Delete", "role", role_id, {"name": role.get("name")})
    return {"message": "Role deleted"}


class AdminUserIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: str = "Super Admin"
    status: AccountStatus = "Active"


class AdminUserUpdate(BaseModel):
    name: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=8)
    role: Optional[str] = None
    status: Optional[AccountStatus] = None


@router.get("/admin-users")
def list_admin_users(claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return {"items": [serialize_doc(a) for a in db["adminuser"].find({}, {"passwordHash": 0})]}


@router.post("/admin-users", status_code=201)
def create_admin_user(payload: AdminUserIn, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    if db["adminuser"].find_one({"email": payload.email}):
        raise HTTPException(409, "Admin already exists")
    account = AdminUser(**payload.model_dump(exclude={"password"}), passwordHash=hash_password(payload.password))
    admin_id = create_document(db, "adminuser", account)
    audit(db, claims, "Create", "adminuser", admin_id, {"email": payload.email})
    return {**account.model_dump(exclude={"id", "passwordHash"}), "id": admin_id}


@router.put("/admin-users/{admin_id}")
def update_admin_user(admin_id: str, payload: AdminUserUpdate, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    updates = payload.model_dump(exclude_none=True, exclude={"password"})
    if payload.password:
        updates["passwordHash"] = hash_password(payload.password)
    if not updates:
        raise HTTPException(400, "Nothing to update")
    doc = db["adminuser"].find_one_and_update(
        {"_id": oid(admin_id)}, {"$set": updates}, projection={"passwordHash": 0}, return_document=ReturnDocument.AFTER
    )
    _found(doc, "Admin")
    audit(db, claims, "Update", "adminuser", admin_id, {k: v for k, v in updates.items() if k != "passwordHash"})
    return serialize_doc(doc)


# Audit logs

@router.get("/audit-logs")
def list_audit_logs(limit: int = 100, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    return {"items": get_documents(db, "auditlog", limit=limit, sort_newest=True)}


@router.get("/audit-logs/export")
def export_audit_logs(claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["createdAt", "action", "adminId", "targetCollection", "targetId"])
    for log in db["auditlog"].find().sort("createdAt", -1):
        writer.writerow([log.get("createdAt"), log.get("action"), log.get("adminId"), log.get("targetCollection"), log.get("targetId")])
    return Response(content=output.getvalue(), media_type="text/csv", headers={"Content-Disposition": "attachment; filename=audit-logs.csv"})


# Disputes

@router.get("/disputes")
def list_disputes(status: Optional[str] = None, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    filt = {"status": status} if status else {}
    return {"items": get_documents(db, "dispute", filt, sort_newest=True)}


class ResolveDispute(BaseModel):
    resolution: str = Field(..., min_length=1)
    close: bool = False


@router.post("/disputes/{dispute_id}/resolve")
def resolve_dispute(dispute_id: str, payload: ResolveDispute, claims: dict = Depends(admin_auth), db: Database = Depends(get_db)):
    status = "Closed" if payload.close else "Resolved"
    doc = db["dispute"].find_one_and_update(
        {"_id": oid(dispute_id), "status": "Open"},
        {"$set": {"status": status, "resolution": payload.resolution, "resolvedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        _found(db["dispute"].find_one({"_id": oid(dispute_id)}, {"_id": 1}), "Dispute")
        raise HTTPException(409, "Dispute is not open")
    audit(db, claims, "Update", "dispute", dispute_id, {"status": status})
    return serialize_doc(doc)
