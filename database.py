"""
MongoDB access layer.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; every helper
raises DatabaseNotConfigured in that case.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson.objectid import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


class DatabaseNotConfigured(RuntimeError):
    pass


def _db():
    if db is None:
        raise DatabaseNotConfigured("Database not configured")
    return db


def _now():
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def ensure_indexes():
    database = _db()
    database["user"].create_index("email", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["wishlist"].create_index("user_id", unique=True)
    database["category"].create_index("name", unique=True)
    database["category"].create_index("slug", unique=True)
    database["product"].create_index("category")
    database["review"].create_index("product_id")
    database["order"].create_index("user_id")
    database["order"].create_index("order_id")
    logger.info("Indexes ensured on %s", database.name)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = _now()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = _db()[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> List[dict]:
    cursor = _db()[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def count_documents(collection_name: str, filter_dict: Optional[dict] = None) -> int:
    return _db()[collection_name].count_documents(filter_dict or {})


def get_document_by_id(collection_name: str, document_id: Any) -> Optional[dict]:
    oid = to_object_id(document_id)
    if oid is None:
        return None
    return _db()[collection_name].find_one({"_id": oid})


def get_documents_by_ids(collection_name: str, document_ids: List[Any]) -> Dict[str, dict]:
    """Fetch many documents at once, keyed by their string id."""
    oids = [oid for oid in (to_object_id(i) for i in document_ids) if oid is not None]
    if not oids:
        return {}
    docs = _db()[collection_name].find({"_id": {"$in": oids}})
    return {str(d["_id"]): d for d in docs}


def find_one_by_field(collection_name: str, field: str, value: Any) -> Optional[dict]:
    return _db()[collection_name].find_one({field: value})


def find_by_field(collection_name: str, field: str, value: Any) -> List[dict]:
    return list(_db()[collection_name].find({field: value}))


def list_documents(
    collection_name: str,
    limit: Optional[int] = None,
    page_token: Optional[str] = None,
    include_total: bool = False,
) -> dict:
    """Newest-first listing with an id cursor.

    ObjectIds grow with insertion time, so `page_token` (the last id of the
    previous page) is enough to resume.
    """
    filter_dict: dict = {}
    if page_token:
        oid = to_object_id(page_token)
        if oid is not None:
            filter_dict["_id"] = {"$lt": oid}
    cursor = _db()[collection_name].find(filter_dict).sort("_id", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    items = list(cursor)
    total = count_documents(collection_name) if include_total else None
    next_page_token = str(items[-1]["_id"]) if items else None
    return {"items": items, "total": total, "next_page_token": next_page_token}


def update_document(
    collection_name: str,
    document_id: Any,
    data: dict,
    condition: Optional[dict] = None,
) -> Optional[dict]:
    """$set `data` (plus updated_at) and return the updated document.

    With `condition`, the write only applies if the document also matches it.
    Returns None when nothing matched.
    """
    oid = to_object_id(document_id)
    if oid is None:
        return None
    update = {**data, "updated_at": _now()}
    return _db()[collection_name].find_one_and_update(
        {**(condition or {}), "_id": oid},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )


def delete_document(collection_name: str, document_id: Any) -> bool:
    oid = to_object_id(document_id)
    if oid is None:
        return False
    return _db()[collection_name].delete_one({"_id": oid}).deleted_count == 1


def adjust_counter(
    collection_name: str,
    document_id: Any,
    field: str,
    amount: int,
    minimum: Optional[int] = None,
) -> bool:
    """Atomically add `amount` to a numeric field.

    With `minimum` set, the update only applies while the field is still
    >= minimum, which is how stock is reserved without overselling.
    Returns whether a document was changed.
    """
    oid = to_object_id(document_id)
    if oid is None:
        return False
    filter_dict: Dict[str, Any] = {"_id": oid}
    if minimum is not None:
        filter_dict[field] = {"$gte": minimum}
    result = _db()[collection_name].update_one(
        filter_dict,
        {"$inc": {field: amount}, "$set": {"updated_at": _now()}},
    )
    return result.modified_count == 1


def upsert_by_field(collection_name: str, field: str, value: Any, defaults: dict) -> dict:
    """Return the document where field == value, creating it from `defaults` if absent.

    Relies on a unique index on `field`; a concurrent insert that wins the
    race surfaces as DuplicateKeyError and we read back the winner.
    """
    now = _now()
    on_insert = {**defaults, "created_at": now, "updated_at": now}
    collection = _db()[collection_name]
    try:
        return collection.find_one_and_update(
            {field: value},
            {"$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        logger.info("Concurrent upsert on %s.%s=%s, reading existing", collection_name, field, value)
        return collection.find_one({field: value})

