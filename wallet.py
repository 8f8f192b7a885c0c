"""
User wallet ledger.

``walletBalance`` only ever moves together with an appended
``walletTransactions`` entry, inside one single-document update, so the
balance always equals the ledger sum.
"""
import logging
import uuid
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, oid
from schemas import WalletTransaction

logger = logging.getLogger("travonex.wallet")

SOURCES = ("Referral", "Booking", "Refund", "Admin Adjustment", "Promo")


class WalletError(Exception):
    pass


class InsufficientBalance(WalletError):
    pass


def _entry(amount: float, description: str, source: str) -> dict:
    if source not in SOURCES:
        raise WalletError(f"unknown source {source!r}")
    return WalletTransaction(
        id=uuid.uuid4().hex,
        date=now_utc(),
        description=description,
        amount=amount,
        type="Credit" if amount >= 0 else "Debit",
        source=source,
    ).model_dump()


def _apply(db: Database, user_id: str, amount: float, description: str, source: str, require_funds: bool) -> dict:
    amount = round(float(amount), 2)
    if amount == 0:
        raise WalletError("amount must not be zero")
    entry = _entry(amount, description, source)
    filt = {"_id": oid(user_id)}
    if require_funds:
        filt["walletBalance"] = {"$gte": -amount}
    user = db["user"].find_one_and_update(
        filt,
        {"$inc": {"walletBalance": amount}, "$push": {"walletTransactions": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        if db["user"].count_documents({"_id": oid(user_id)}) == 0:
            raise WalletError("user not found")
        raise InsufficientBalance("insufficient wallet balance")
    logger.info("wallet %s %.2f (%s)", entry["type"].lower(), amount, source, extra={"user_id": user_id})
    return entry


def credit(db: Database, user_id: str, amount: float, description: str, source: str) -> dict:
    if amount <= 0:
        raise WalletError("credit amount must be positive")
    return _apply(db, user_id, amount, description, source, require_funds=False)


def debit(db: Database, user_id: str, amount: float, description: str, source: str) -> dict:
    if amount <= 0:
        raise WalletError("debit amount must be positive")
    return _apply(db, user_id, -amount, description, source, require_funds=True)


def ledger_balance(user: dict) -> float:
    return round(sum(float(t.get("amount", 0)) for t in user.get("walletTransactions", [])), 2)


def balance_of(db: Database, user_id: str) -> Optional[float]:
    user = db["user"].find_one({"_id": oid(user_id)}, {"walletBalance": 1})
    if not user:
        return None
    return round(float(user.get("walletBalance", 0)), 2)
