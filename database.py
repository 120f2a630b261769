"""
Database helpers

MongoDB access for the app. Each Pydantic model in schemas.py maps to the
collection named after its lowercased class name.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import get_config
from errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

_config = get_config()
client: Optional[MongoClient] = MongoClient(_config.database_url) if _config.database_url else None
db: Optional[Database] = client[_config.database_name] if client is not None else None


def get_db() -> Database:
    """Request dependency: the configured database."""
    if db is None:
        raise ServiceUnavailableError()
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """pymongo hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[List[tuple]] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize_doc(v)
    return out


@contextmanager
def transaction(database: Database, enabled: bool) -> Iterator[Any]:
    """
    Scope for a multi-document write.

    When enabled (MONGO_TRANSACTIONS, replica set deployments) this yields a
    session bound to an open transaction which commits on clean exit and
    aborts on exception. Otherwise it yields None and callers rely on guarded
    single-document updates plus compensation.
    """
    if not enabled:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session
