from typing import List

from bson import ObjectId
from pymongo.database import Database

from database import serialize_doc

RECENT_LIMIT = 5


def _names_by_id(db: Database, collection: str, ids, field: str = "name") -> dict:
    oids = [ObjectId(i) for i in set(ids) if ObjectId.is_valid(i)]
    if not oids:
        return {}
    return {str(d["_id"]): d.get(field) for d in db[collection].find({"_id": {"$in": oids}}, {field: 1})}


def _recent(db: Database, bookings: List[dict], trip_titles: dict) -> List[dict]:
    recent = bookings[:RECENT_LIMIT]
    user_names = _names_by_id(db, "user", [b.get("userId") for b in recent])
    out = []
    for b in recent:
        out.append({
            "id": str(b["_id"]),
            "userName": user_names.get(b.get("userId")),
            "tripTitle": trip_titles.get(b.get("tripId")),
            "bookingDate": b.get("createdAt"),
            "amount": b.get("amount", 0),
            "status": b.get("status"),
        })
    return out


def organizer_dashboard(db: Database, organizer: dict) -> dict:
    organizer_id = str(organizer["_id"])
    trips = list(db["trip"].find({"organizerId": organizer_id}, {"title": 1, "status": 1}))
    titles = {str(t["_id"]): t.get("title") for t in trips}
    bookings = list(
        db["booking"].find({"tripId": {"$in": list(titles)}, "status": {"$ne": "cancelled"}}).sort("createdAt", -1)
    )
    recent = _recent(db, bookings, titles)
    for item, b in zip(recent, bookings):
        item["customerName"] = item.pop("userName")
        item["travelers"] = len(b.get("travelers", []))
    return {
        "totalRevenue": round(sum(float(b.get("amount", 0) or 0) for b in bookings), 2),
        "totalParticipants": sum(len(b.get("travelers", [])) for b in bookings),
        "activeTrips": sum(1 for t in trips if t.get("status") == "Published"),
        "kycStatus": organizer.get("kycStatus", "Incomplete"),
        "pendingPayouts": db["payout"].count_documents({"organizerId": organizer_id, "status": "Pending"}),
        "recentBookings": recent,
    }


def admin_dashboard(db: Database) -> dict:
    bookings = list(db["booking"].find({"status": {"$ne": "cancelled"}}).sort("createdAt", -1))
    titles = _names_by_id(db, "trip", [b.get("tripId") for b in bookings[:RECENT_LIMIT]], field="title")

    pending_kycs = db["organizer"].count_documents(
        {"$or": [{"kycStatus": "Pending"}, {"vendorAgreementStatus": "Submitted"}]}
    )
    pending_trips = db["trip"].count_documents({"status": "Pending Approval"})
    pending_payouts = db["payout"].count_documents({"status": "Pending"})
    pending_disputes = db["dispute"].count_documents({"status": "Open"})

    commission = sum(float(p.get("platformCommission", 0) or 0) for p in db["payout"].find({"status": "Paid"}))

    return {
        "totalRevenue": round(sum(float(b.get("amount", 0) or 0) for b in bookings), 2),
        "totalUsers": db["user"].count_documents({}),
        "totalOrganizers": db["organizer"].count_documents({}),
        "totalBookings": db["booking"].count_documents({}),
        "pendingKycs": pending_kycs,
        "pendingTrips": pending_trips,
        "pendingPayouts": pending_payouts,
        "pendingDisputes": pending_disputes,
        "totalPending": pending_kycs + pending_trips + pending_payouts + pending_disputes,
        "platformCommission": round(commission, 2),
        "recentBookings": _recent(db, bookings, titles),
    }


def payout_history(db: Database, organizer_id: str) -> List[dict]:
    return [serialize_doc(p) for p in db["payout"].find({"organizerId": organizer_id}).sort("createdAt", -1)]
