"""
MongoDB access helpers

Collections are named after the lowercase schema class (see schemas.py):
user, product, order, news, setting.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

import config
from errors import InternalError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = client[config.DATABASE_NAME]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for value, or None when it cannot be one."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document and return it with its generated _id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = dict(data)
    now = _now()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(
    database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(database, collection_name: str, document_id: Any) -> Optional[Dict[str, Any]]:
    oid = to_object_id(document_id)
    if oid is None:
        return None
    return database[collection_name].find_one({"_id": oid})


def update_document(
    database,
    collection_name: str,
    document_id: Any,
    changes: Dict[str, Any],
    extra_filter: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Atomically $set changes on one document and return the new version.

    extra_filter turns the update into a conditional one; None is returned
    when the document is missing or the condition does not hold.
    """
    oid = to_object_id(document_id)
    if oid is None:
        return None
    query: Dict[str, Any] = {"_id": oid}
    if extra_filter:
        query.update(extra_filter)
    update = dict(changes)
    update["updated_at"] = _now()
    return database[collection_name].find_one_and_update(
        query,
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )


def delete_document(database, collection_name: str, document_id: Any) -> bool:
    oid = to_object_id(document_id)
    if oid is None:
        return False
    return database[collection_name].delete_one({"_id": oid}).deleted_count == 1


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: _id -> id, ObjectId -> str."""
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out["id" if key == "_id" else key] = serialize(item)
        return out
    if isinstance(value, list):
        return [serialize(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise InternalError("Database is not configured")
    return db


def ensure_indexes(database) -> None:
    # phone uniqueness is enforced here, not only by the register handler
    database["user"].create_index([("phone", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])


def ping(database) -> str:
    if database is None:
        return "not configured"
    try:
        database.command("ping")
        return "connected"
    except Exception as exc:
        logger.warning("Database ping failed: %s", exc)
        return "error"
