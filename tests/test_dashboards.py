from datetime import timedelta

from conftest import auth, traveler
from database import now_utc


def _booking(db, user_id, trip_id, batch_id, amount, status, minutes_ago=0, travelers=1):
    db["booking"].insert_one({
        "userId": user_id, "tripId": trip_id, "batchId": batch_id, "amount": amount, "status": status,
        "travelers": [traveler(i) for i in range(travelers)],
        "createdAt": now_utc() - timedelta(minutes=minutes_ago),
    })


def test_organizer_dashboard(client, db, make_organizer, make_user, make_trip):
    organizer_id = make_organizer()
    other_org = make_organizer()
    user_id = make_user(name="Asha")
    trip_id, batch_id = make_trip(organizer_id=organizer_id)
    make_trip(organizer_id=organizer_id, status="Draft")
    foreign_trip, foreign_batch = make_trip(organizer_id=other_org)

    _booking(db, user_id, trip_id, batch_id, 2000, "confirmed", minutes_ago=30, travelers=2)
    _booking(db, user_id, trip_id, batch_id, 1000, "pending", minutes_ago=10)
    _booking(db, user_id, trip_id, batch_id, 5000, "cancelled", minutes_ago=5)
    _booking(db, user_id, foreign_trip, foreign_batch, 9000, "confirmed")
    db["payout"].insert_one({"organizerId": organizer_id, "status": "Pending", "createdAt": now_utc()})

    r = client.get("/api/organizers/me/dashboard", headers=auth(organizer_id, "organizer"))
    assert r.status_code == 200
    body = r.json()
    assert body["totalRevenue"] == 3000
    assert body["totalParticipants"] == 3
    assert body["activeTrips"] == 1
    assert body["kycStatus"] == "Verified"
    assert body["pendingPayouts"] == 1
    recent = body["recentBookings"]
    assert [b["amount"] for b in recent] == [1000, 2000]
    assert recent[0]["customerName"] == "Asha"
    assert recent[1]["travelers"] == 2
    assert recent[0]["tripTitle"]


def test_admin_dashboard(client, db, make_admin, make_organizer, make_user, make_trip):
    admin = auth(make_admin(), "admin")
    make_organizer(kyc="Pending")
    user_id = make_user()
    trip_id, batch_id = make_trip()
    make_trip(status="Pending Approval")
    _booking(db, user_id, trip_id, batch_id, 1500, "confirmed")
    _booking(db, user_id, trip_id, batch_id, 800, "cancelled")
    db["payout"].insert_one({"status": "Paid", "platformCommission": 150.0, "createdAt": now_utc()})
    db["payout"].insert_one({"status": "Pending", "platformCommission": 40.0, "createdAt": now_utc()})
    db["dispute"].insert_one({"status": "Open", "createdAt": now_utc()})

    body = client.get("/api/admin/dashboard", headers=admin).json()
    assert body["totalRevenue"] == 1500
    assert body["totalUsers"] == 1
    assert body["totalOrganizers"] == 3
    assert body["totalBookings"] == 2
    assert body["pendingKycs"] == 1
    assert body["pendingTrips"] == 1
    assert body["pendingPayouts"] == 1
    assert body["pendingDisputes"] == 1
    assert body["totalPending"] == 4
    assert body["platformCommission"] == 150
    assert len(body["recentBookings"]) == 1


def test_service_endpoints(client):
    assert client.get("/").json() == {"app": "Travonex", "status": "ok"}
    health = client.get("/health")
    assert health.json()["status"] == "ok"
    assert health.headers["X-Request-ID"]
    assert client.get("/health", headers={"X-Request-ID": "abc"}).headers["X-Request-ID"] == "abc"
    assert client.get("/test").json()["backend"] == "Running"


def test_seed_is_repeatable(client, db):
    assert client.post("/api/seed").json() == {"seeded": True}
    again = client.post("/api/seed").json()
    assert again["trips"] == 3
    assert db["trip"].count_documents({"status": "Published"}) == 3
    assert db["adminuser"].count_documents({}) == 1

    login = client.post("/api/auth/login", json={"identifier": "organizer@travonex.dev", "credential": "travonex123"})
    assert login.json()["redirectPath"] == "/trip-organiser/dashboard"
    assert client.get("/api/trips").json()["count"] == 3
