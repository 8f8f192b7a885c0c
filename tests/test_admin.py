from bson import ObjectId

from conftest import auth, traveler
from database import now_utc


def _booking(db, user_id, trip_id, batch_id, status="confirmed", **extra):
    doc = {"userId": user_id, "tripId": trip_id, "batchId": batch_id, "travelers": [traveler(1)],
           "amount": 1000, "walletUsed": 0, "status": status, "refundStatus": "none", "refundAmount": 0,
           "createdAt": now_utc()}
    doc.update(extra)
    return str(db["booking"].insert_one(doc).inserted_id)


def test_refund_is_credited_to_wallet_once(client, db, make_admin, make_user, make_trip):
    admin = auth(make_admin(), "admin")
    user_id = make_user()
    trip_id, batch_id = make_trip()
    booking_id = _booking(db, user_id, trip_id, batch_id, status="cancelled", refundStatus="pending", refundAmount=500)

    r = client.post(f"/api/admin/bookings/{booking_id}/refund", headers=admin)
    assert r.status_code == 200
    assert r.json()["refundStatus"] == "processed"
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    assert user["walletBalance"] == 500
    assert user["walletTransactions"][-1]["source"] == "Refund"

    again = client.post(f"/api/admin/bookings/{booking_id}/refund", headers=admin)
    assert again.status_code == 409
    assert db["user"].find_one({"_id": ObjectId(user_id)})["walletBalance"] == 500


def test_complete_finished_bookings(client, db, make_admin, make_user, make_trip):
    admin = auth(make_admin(), "admin")
    user_id = make_user()
    past_trip, past_batch = make_trip(start_in=-10, length=3)
    future_trip, future_batch = make_trip(start_in=10)
    done = _booking(db, user_id, past_trip, past_batch)
    upcoming = _booking(db, user_id, future_trip, future_batch)
    pending = _booking(db, user_id, past_trip, past_batch, status="pending")

    r = client.post("/api/admin/bookings/complete-finished", headers=admin)
    assert r.status_code == 200
    assert r.json() == {"completed": 1}
    assert db["booking"].find_one({"_id": ObjectId(done)})["status"] == "completed"
    assert db["booking"].find_one({"_id": ObjectId(upcoming)})["status"] == "confirmed"
    assert db["booking"].find_one({"_id": ObjectId(pending)})["status"] == "pending"


def test_admin_booking_listing(client, db, make_admin, make_user, make_trip):
    admin = auth(make_admin(), "admin")
    trip_id, batch_id = make_trip()
    booking_id = _booking(db, make_user(), trip_id, batch_id)
    _booking(db, make_user(), trip_id, batch_id, status="cancelled")
    items = client.get("/api/admin/bookings", params={"status": "confirmed"}, headers=admin).json()["items"]
    assert [b["id"] for b in items] == [booking_id]
    assert client.get(f"/api/admin/bookings/{booking_id}", headers=admin).json()["status"] == "confirmed"


def test_organizer_verification(client, db, make_admin, make_organizer):
    admin = auth(make_admin(), "admin")
    organizer_id = make_organizer(kyc="Pending")
    r = client.patch(f"/api/admin/organizers/{organizer_id}/status",
                     json={"kycStatus": "Verified", "vendorAgreementStatus": "Verified"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["organizer"]["kycStatus"] == "Verified"
    assert "passwordHash" not in r.json()["organizer"]

    listed = client.get("/api/admin/organizers", params={"kycStatus": "Verified"}, headers=admin).json()["items"]
    assert [o["id"] for o in listed] == [organizer_id]
    assert client.patch(f"/api/admin/organizers/{organizer_id}/status", json={}, headers=admin).status_code == 400
    assert client.get(f"/api/admin/organizers/{ObjectId()}", headers=admin).status_code == 404


def test_publishing_requires_verified_organizer(client, make_admin, make_organizer, make_trip):
    admin = auth(make_admin(), "admin")
    trip_id, _ = make_trip(organizer_id=make_organizer(kyc="Suspended"), status="Pending Approval")
    r = client.patch(f"/api/admin/trips/{trip_id}/status", json={"status": "Published"}, headers=admin)
    assert r.status_code == 409
    r = client.patch(f"/api/admin/trips/{trip_id}/status", json={"status": "Rejected", "adminNotes": "Add itinerary"},
                     headers=admin)
    assert r.status_code == 200
    assert r.json()["adminNotes"] == "Add itinerary"


def test_roles_and_admin_users(client, db, make_admin):
    admin = auth(make_admin(), "admin")
    role = client.post("/api/admin/roles", json={"name": "Support", "permissions": {"bookings": "read"}}, headers=admin)
    assert role.status_code == 201
    role_id = role.json()["id"]
    assert client.post("/api/admin/roles", json={"name": "Support"}, headers=admin).status_code == 409

    created = client.post("/api/admin/admin-users", json={"name": "Kiran", "email": "kiran@example.com",
                                                          "password": "longpassword", "role": "Support"}, headers=admin)
    assert created.status_code == 201
    assert "passwordHash" not in created.json()

    login = client.post("/api/auth/login", json={"identifier": "kiran@example.com", "credential": "longpassword"})
    assert login.status_code == 200
    assert login.json()["user"]["role"] == "admin"

    assert client.delete(f"/api/admin/roles/{role_id}", headers=admin).status_code == 409

    kiran_id = created.json()["id"]
    moved = client.put(f"/api/admin/admin-users/{kiran_id}", json={"role": "Super Admin"}, headers=admin)
    assert moved.status_code == 200
    assert client.delete(f"/api/admin/roles/{role_id}", headers=admin).status_code == 200
    assert client.get("/api/admin/roles", headers=admin).json()["items"] == []


def test_audit_log_export(client, db, make_admin, make_organizer):
    admin_id = make_admin()
    admin = auth(admin_id, "admin")
    organizer_id = make_organizer(kyc="Pending")
    client.patch(f"/api/admin/organizers/{organizer_id}/status", json={"kycStatus": "Rejected"}, headers=admin)

    logs = client.get("/api/admin/audit-logs", headers=admin).json()["items"]
    assert len(logs) == 1
    assert logs[0]["adminId"] == admin_id
    assert logs[0]["targetCollection"] == "organizer"

    r = client.get("/api/admin/audit-logs/export", headers=admin)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.strip().splitlines()
    assert lines[0] == "createdAt,action,adminId,targetCollection,targetId"
    assert organizer_id in lines[1]


def test_dispute_resolution(client, db, make_admin):
    admin = auth(make_admin(), "admin")
    dispute_id = str(db["dispute"].insert_one({"userId": "u", "bookingId": "b", "reason": "late pickup",
                                               "status": "Open", "createdAt": now_utc()}).inserted_id)
    assert len(client.get("/api/admin/disputes", params={"status": "Open"}, headers=admin).json()["items"]) == 1
    r = client.post(f"/api/admin/disputes/{dispute_id}/resolve", json={"resolution": "Partial credit"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["status"] == "Resolved"
    again = client.post(f"/api/admin/disputes/{dispute_id}/resolve", json={"resolution": "x"}, headers=admin)
    assert again.status_code == 409
