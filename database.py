"""
MongoDB access for the Travonex API.

The handle is created once from DATABASE_URL / DATABASE_NAME. Routes receive
it through the ``get_db`` dependency so tests can swap in another database.
"""
from datetime import datetime, date, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import settings

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    _client = MongoClient(settings.DATABASE_URL)
    db = _client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise HTTPException(500, "Database not configured")
    return db


# Helpers

def oid(s: str) -> ObjectId:
    try:
        return ObjectId(s)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, (datetime, date)):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


def create_document(database: Database, collection_name: str, data: Any) -> str:
    if hasattr(data, "model_dump"):
        payload = data.model_dump(exclude_none=True)
    else:
        payload = dict(data)
    payload.pop("id", None)
    payload.setdefault("createdAt", now_utc())
    payload["updatedAt"] = now_utc()
    res = database[collection_name].insert_one(payload)
    return str(res.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort_newest: bool = False,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort_newest:
        cursor = cursor.sort("createdAt", -1)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize_doc(d) for d in cursor]


def ensure_indexes(database: Database) -> None:
    database["trip"].create_index([("slug", ASCENDING)], unique=True)
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("referralCode", ASCENDING)], unique=True)
    database["role"].create_index([("name", ASCENDING)], unique=True)
    database["payout"].create_index([("batchKey", ASCENDING)], unique=True)
    database["booking"].create_index([("paymentId", ASCENDING)])
    database["booking"].create_index([("orderId", ASCENDING)])
    database["paymentorder"].create_index([("orderId", ASCENDING)], unique=True)
    database["booking"].create_index([("userId", ASCENDING)])
    database["review"].create_index([("userId", ASCENDING), ("tripId", ASCENDING)], unique=True)
