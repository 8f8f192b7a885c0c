import pytest
from bson import ObjectId

import accounts
from conftest import PASSWORD, auth
from security import TokenError, decode_token, hash_password, issue_token, verify_password


def test_token_roundtrip():
    token = issue_token("abc123", "organizer")
    claims = decode_token(token)
    assert claims["id"] == "abc123"
    assert claims["role"] == "organizer"
    assert claims["exp"] - claims["iat"] == 7 * 86400


def test_tampered_and_foreign_tokens_rejected():
    token = issue_token("abc123", "user")
    with pytest.raises(TokenError):
        decode_token(token, secret="someone-else")
    h, p, s = token.split(".")
    with pytest.raises(TokenError):
        decode_token(f"{h}.{p}.{s[:-2]}xx")


def test_unknown_role_cannot_be_issued():
    with pytest.raises(ValueError):
        issue_token("abc", "superuser")


def test_passwords():
    stored = hash_password("hunter22")
    assert stored.startswith("pbkdf2_sha256$")
    assert verify_password("hunter22", stored)
    assert not verify_password("hunter23", stored)
    assert not verify_password("hunter22", None)


def test_mock_id_role_token_is_rejected(client, make_admin):
    admin_id = make_admin()
    r = client.get("/api/admin/dashboard", headers={"Authorization": f"Bearer {admin_id}-admin"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid token"


def test_missing_and_expired_tokens(client, make_user):
    user_id = make_user()
    assert client.get("/api/users/me/profile").status_code == 401
    expired = issue_token(user_id, "user", ttl_days=-1)
    r = client.get("/api/users/me/profile", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401


def test_wrong_role_is_forbidden(client, make_user):
    r = client.get("/api/admin/dashboard", headers=auth(make_user(), "user"))
    assert r.status_code == 403


def _login(client, identifier, credential=PASSWORD):
    return client.post("/api/auth/login", json={"identifier": identifier, "credential": credential})


def test_login_redirects_per_role(client, db, make_admin, make_organizer, make_user):
    make_admin(email="root@example.com")
    verified = make_organizer()
    unverified = make_organizer(kyc="Incomplete")
    user_id = make_user()

    r = _login(client, "root@example.com")
    assert r.status_code == 200
    assert r.json()["redirectPath"] == "/admin/dashboard"
    assert decode_token(r.json()["token"])["role"] == "admin"

    org = db["organizer"].find_one({"_id": ObjectId(verified)})
    assert _login(client, org["email"]).json()["redirectPath"] == "/trip-organiser/dashboard"
    org = db["organizer"].find_one({"_id": ObjectId(unverified)})
    assert _login(client, org["email"]).json()["redirectPath"] == "/trip-organiser/profile"

    user = db["user"].find_one({"_id": ObjectId(user_id)})
    r = _login(client, user["phone"])
    assert r.status_code == 200
    assert r.json()["redirectPath"] == "/"
    assert r.json()["user"]["id"] == user_id


def test_login_failures(client, db, make_admin, make_user):
    make_admin(email="off@example.com", status="Inactive")
    assert _login(client, "off@example.com").status_code == 403
    assert _login(client, "nobody@example.com").status_code == 401

    user = db["user"].find_one({"_id": ObjectId(make_user())})
    assert _login(client, user["email"], "wrong-pass").status_code == 401
    legacy = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert legacy.status_code == 200


def test_signup_and_duplicate(client, db):
    body = {"name": "Ravi", "email": "ravi@example.com", "phone": "+919811100000", "password": "secret12"}
    r = client.post("/api/auth/signup", json=body)
    assert r.status_code == 201
    assert db["user"].find_one({"email": "ravi@example.com"})["referralCode"]

    dup = client.post("/api/auth/signup", json={**body, "accountType": "ORGANIZER"})
    assert dup.status_code == 409

    org = client.post("/api/auth/signup", json={"name": "Peaks", "email": "peaks@example.com",
                                                "phone": "+919811100001", "accountType": "ORGANIZER"})
    assert org.status_code == 201
    stored = db["organizer"].find_one({"email": "peaks@example.com"})
    assert stored["kycStatus"] == "Incomplete"
    assert stored["vendorAgreementStatus"] == "Not Submitted"


def test_referral_credits_both_wallets(client, db, make_user):
    referrer_id = make_user()
    code = db["user"].find_one({"_id": ObjectId(referrer_id)})["referralCode"]
    r = client.post("/api/auth/signup", json={"name": "Neha", "email": "neha@example.com", "phone": "+919811100002",
                                              "password": "secret12", "referralCode": code.lower()})
    assert r.status_code == 201
    new_user = db["user"].find_one({"email": "neha@example.com"})
    assert new_user["walletBalance"] == 100
    assert new_user["referredBy"] == referrer_id
    assert db["user"].find_one({"_id": ObjectId(referrer_id)})["walletBalance"] == 100


def test_otp_signup(client, db, monkeypatch):
    monkeypatch.setattr(accounts, "lookup_firebase_phone", lambda token: {"uid": "fb-1", "phone": "+919822200000"})
    r = client.post("/api/auth/otp-signup", json={"idToken": "tok", "name": "Meera", "email": "meera@example.com"})
    assert r.status_code == 201
    body = r.json()
    assert body["user"]["phone"] == "+919822200000"
    assert decode_token(body["token"])["role"] == "user"

    again = client.post("/api/auth/otp-signup", json={"idToken": "tok", "name": "Meera", "email": "meera@example.com"})
    assert again.status_code == 201
    assert again.json()["user"]["id"] == body["user"]["id"]
    assert db["user"].count_documents({"phone": "+919822200000"}) == 1


def test_otp_signup_failures(client, monkeypatch):
    def reject(token):
        raise ValueError("invalid or expired token")

    monkeypatch.setattr(accounts, "lookup_firebase_phone", reject)
    assert client.post("/api/auth/otp-signup", json={"idToken": "x"}).status_code == 400
    r = client.post("/api/auth/otp-signup", json={"idToken": "x", "name": "A", "email": "a@example.com"})
    assert r.status_code == 401
