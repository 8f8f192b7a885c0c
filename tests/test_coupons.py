from datetime import timedelta

from conftest import auth
from database import now_utc
from fares import find_valid_coupon, redeem_coupon


def _coupon(db, code="SAVE200", discount=200, days=30, usage_limit=None, usage_count=0):
    db["coupon"].insert_one({
        "code": code,
        "discount": discount,
        "expiresAt": now_utc() + timedelta(days=days),
        "usageLimit": usage_limit,
        "usageCount": usage_count,
        "createdAt": now_utc(),
    })


def test_validate_returns_discount(client, db):
    _coupon(db)
    r = client.post("/api/coupons/validate", json={"code": "save200", "tripId": "x"})
    assert r.status_code == 200
    body = r.json()
    assert body["discount"] == 200
    assert body["code"] == "SAVE200"
    assert body["couponId"]


def test_unknown_coupon_is_404(client):
    r = client.post("/api/coupons/validate", json={"code": "NOPE"})
    assert r.status_code == 404
    assert r.json()["detail"] == "Invalid coupon"


def test_expired_coupon_is_404(client, db):
    _coupon(db, code="OLD", days=-1)
    r = client.post("/api/coupons/validate", json={"code": "OLD"})
    assert r.status_code == 404


def test_usage_limit_reached_is_404(client, db):
    _coupon(db, code="ONCE", usage_limit=1, usage_count=1)
    r = client.post("/api/coupons/validate", json={"code": "ONCE"})
    assert r.status_code == 404


def test_redeem_respects_limit(db):
    _coupon(db, code="TWICE", usage_limit=2)
    coupon = find_valid_coupon(db, "twice")
    assert redeem_coupon(db, coupon)
    assert redeem_coupon(db, coupon)
    assert not redeem_coupon(db, coupon)
    assert db["coupon"].find_one({"code": "TWICE"})["usageCount"] == 2
    assert find_valid_coupon(db, "TWICE") is None


def test_admin_creates_coupon_uppercased(client, db, make_admin):
    admin_id = make_admin()
    payload = {"code": "summer24", "discount": 300, "expiresAt": (now_utc() + timedelta(days=10)).isoformat()}
    r = client.post("/api/admin/coupons", json=payload, headers=auth(admin_id, "admin"))
    assert r.status_code == 201
    assert r.json()["code"] == "SUMMER24"

    dup = client.post("/api/admin/coupons", json=payload, headers=auth(admin_id, "admin"))
    assert dup.status_code == 409

    listed = client.get("/api/admin/coupons", headers=auth(admin_id, "admin")).json()["items"]
    assert [c["code"] for c in listed] == ["SUMMER24"]
