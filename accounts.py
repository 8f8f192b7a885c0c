import logging
import uuid
from typing import Literal, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import settings
import wallet
from database import create_document, get_db, now_utc, oid, serialize_doc
from schemas import Organizer, User
from security import hash_password, issue_token, require_role, verify_password

logger = logging.getLogger("travonex.accounts")

router = APIRouter(tags=["accounts"])

FIREBASE_LOOKUP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:lookup"

# Fields a user may set through the profile endpoint. Login identifiers stay out.
USER_PROFILE_FIELDS = (
    "name", "avatar", "gender", "dateOfBirth", "emergencyContact", "interests", "marketingOptIn",
)


def public_account(doc: dict, role: str) -> dict:
    out = serialize_doc(doc)
    out.pop("passwordHash", None)
    out["role"] = role
    return out


def new_referral_code() -> str:
    return uuid.uuid4().hex[:8].upper()


def _identity_taken(db: Database, email: Optional[str], phone: Optional[str]) -> bool:
    ors = []
    if email:
        ors.append({"email": email})
    if phone:
        ors.append({"phone": phone})
    if not ors:
        return False
    return bool(db["user"].find_one({"$or": ors}) or db["organizer"].find_one({"$or": ors}))


def create_user(db: Database, name: str, email: str, phone: Optional[str], password: Optional[str] = None,
                referral_code: Optional[str] = None) -> dict:
    referrer = None
    if referral_code:
        referrer = db["user"].find_one({"referralCode": referral_code.strip().upper()})
        if not referrer:
            raise HTTPException(400, "Unknown referral code")
    doc = User(
        name=name,
        email=email,
        phone=phone,
        passwordHash=hash_password(password) if password else None,
        referralCode=new_referral_code(),
        referredBy=str(referrer["_id"]) if referrer else None,
    ).model_dump(exclude={"id"})
    doc["createdAt"] = now_utc()
    try:
        res = db["user"].insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(409, "An account with this email or phone already exists.")
    user_id = str(res.inserted_id)
    if referrer and settings.REFERRAL_BONUS > 0:
        wallet.credit(db, user_id, settings.REFERRAL_BONUS, "Referral Bonus", "Referral")
        wallet.credit(db, str(referrer["_id"]), settings.REFERRAL_BONUS, f"Referral Bonus ({name})", "Referral")
    return db["user"].find_one({"_id": res.inserted_id})


# Auth

class SignupPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=5)
    accountType: Literal["USER", "ORGANIZER"] = "USER"
    password: Optional[str] = Field(default=None, min_length=6)
    referralCode: Optional[str] = None


@router.post("/api/auth/signup", status_code=201)
def signup(payload: SignupPayload, db: Database = Depends(get_db)):
    if _identity_taken(db, payload.email, payload.phone):
        raise HTTPException(409, "An account with this email or phone already exists.")
    if payload.accountType == "ORGANIZER":
        create_document(db, "organizer", Organizer(
            name=payload.name,
            email=payload.email,
            phone=payload.phone,
            passwordHash=hash_password(payload.password) if payload.password else None,
        ))
    else:
        create_user(db, payload.name, payload.email, payload.phone, payload.password, payload.referralCode)
    logger.info("account created (%s)", payload.accountType.lower())
    return {"message": "Account created successfully. Please login to continue."}


class LoginPayload(BaseModel):
    identifier: Optional[str] = None
    credential: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


def _by_identifier(db: Database, collection: str, identifier: str) -> Optional[dict]:
    return db[collection].find_one({"$or": [{"email": identifier}, {"phone": identifier}]})


@router.post("/api/auth/login")
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    identifier = (payload.identifier or payload.email or "").strip()
    credential = payload.credential or payload.password or ""
    if not identifier or not credential:
        raise HTTPException(400, "Email and password are required")

    admin = db["adminuser"].find_one({"email": identifier})
    if admin:
        if admin.get("status", "Active") != "Active":
            raise HTTPException(403, f"Admin account is {admin.get('status')}.")
        if not verify_password(credential, admin.get("passwordHash")):
            raise HTTPException(401, "Invalid password.")
        db["adminuser"].update_one({"_id": admin["_id"]}, {"$set": {"lastLogin": now_utc()}})
        account, role, redirect = admin, "admin", "/admin/dashboard"
    else:
        organizer = _by_identifier(db, "organizer", identifier)
        user = None if organizer else _by_identifier(db, "user", identifier)
        if organizer and verify_password(credential, organizer.get("passwordHash")):
            verified = organizer.get("kycStatus") == "Verified"
            account, role = organizer, "organizer"
            redirect = "/trip-organiser/dashboard" if verified else "/trip-organiser/profile"
        elif user and verify_password(credential, user.get("passwordHash")):
            if user.get("status", "Active") != "Active":
                raise HTTPException(403, "Account is suspended.")
            account, role, redirect = user, "user", "/"
        else:
            raise HTTPException(401, "Invalid email or password.")

    token = issue_token(str(account["_id"]), role)
    return {
        "user": {"id": str(account["_id"]), "name": account.get("name"), "email": account.get("email"), "role": role},
        "token": token,
        "redirectPath": redirect,
    }


def lookup_firebase_phone(id_token: str) -> dict:
    """
    Resolve a Firebase ID token to ``{uid, phone}`` through the Identity
    Toolkit REST API. Raises ``ValueError`` when the token is not accepted.
    """
    if not settings.FIREBASE_API_KEY:
        raise ValueError("identity provider not configured")
    try:
        resp = requests.post(
            FIREBASE_LOOKUP_URL,
            params={"key": settings.FIREBASE_API_KEY},
            json={"idToken": id_token},
            timeout=10,
        )
    except requests.RequestException as e:
        raise ValueError("identity provider unavailable") from e
    if resp.status_code != 200:
        raise ValueError("invalid or expired token")
    users = resp.json().get("users") or []
    if not users or not users[0].get("phoneNumber"):
        raise ValueError("no phone number in token")
    return {"uid": users[0].get("localId"), "phone": users[0]["phoneNumber"]}


class OtpSignupPayload(BaseModel):
    idToken: Optional[str] = None
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    referralCode: Optional[str] = None


@router.post("/api/auth/otp-signup", status_code=201)
def otp_signup(payload: OtpSignupPayload, db: Database = Depends(get_db)):
    if not payload.idToken or not payload.name or not payload.email:
        raise HTTPException(400, "Missing required fields")
    try:
        identity = lookup_firebase_phone(payload.idToken)
    except ValueError as e:
        logger.warning("otp verification failed: %s", e)
        raise HTTPException(401, "OTP verification failed")
    user = db["user"].find_one({"phone": identity["phone"]})
    if not user:
        if _identity_taken(db, payload.email, None):
            raise HTTPException(409, "An account with this email already exists.")
        user = create_user(db, payload.name, payload.email, identity["phone"], referral_code=payload.referralCode)
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"firebaseUid": identity["uid"]}})
    return {"user": public_account(user, "user"), "token": issue_token(str(user["_id"]), "user")}


# Current user

@router.get("/api/users/me/profile")
def get_profile(claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": oid(claims["id"])}, {"walletTransactions": 0})
    if not user:
        raise HTTPException(404, "User not found")
    return public_account(user, "user")


@router.put("/api/users/me/profile")
def update_profile(updates: dict, claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    if any("." in k or k.startswith("$") for k in updates):
        raise HTTPException(400, "Invalid field name")
    clean = {k: v for k, v in updates.items() if k in USER_PROFILE_FIELDS}
    if not clean:
        raise HTTPException(400, "Nothing to update")
    clean["updatedAt"] = now_utc()
    user = db["user"].find_one_and_update(
        {"_id": oid(claims["id"])},
        {"$set": clean},
        projection={"walletTransactions": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(404, "User not found")
    return public_account(user, "user")


@router.get("/api/users/me/wallet-transactions")
def wallet_transactions(claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": oid(claims["id"])}, {"walletTransactions": 1, "walletBalance": 1})
    if not user:
        raise HTTPException(404, "User not found")
    return {"balance": round(float(user.get("walletBalance", 0)), 2), "items": user.get("walletTransactions", [])}


@router.get("/api/users/me/bookings")
def my_bookings(claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    items = [serialize_doc(b) for b in db["booking"].find({"userId": claims["id"]}).sort("createdAt", -1)]
    return {"items": items}


@router.get("/api/users/me/wishlist")
def get_wishlist(claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": oid(claims["id"])}, {"wishlist": 1})
    if not user:
        raise HTTPException(404, "User not found")
    return user.get("wishlist", [])


class WishlistPayload(BaseModel):
    tripId: str


@router.post("/api/users/me/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistPayload, claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    if not db["trip"].find_one({"_id": oid(payload.tripId)}, {"_id": 1}):
        raise HTTPException(404, "Trip not found")
    user = db["user"].find_one_and_update(
        {"_id": oid(claims["id"])},
        {"$addToSet": {"wishlist": payload.tripId}},
        projection={"wishlist": 1},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(404, "User not found")
    return user.get("wishlist", [])


@router.delete("/api/users/me/wishlist/{trip_id}")
def remove_from_wishlist(trip_id: str, claims: dict = Depends(require_role("user")), db: Database = Depends(get_db)):
    user = db["user"].find_one_and_update(
        {"_id": oid(claims["id"])},
        {"$pull": {"wishlist": trip_id}},
        projection={"wishlist": 1},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(404, "User not found")
    return user.get("wishlist", [])
