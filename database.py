"""
MongoDB access for ConnectAid.

The client is opened in the application lifespan and stored on ``app.state``;
handlers receive the database through the ``get_db`` dependency. Nothing in
this module keeps a connection of its own.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationError
from schemas import Document

USERS = "user"
REQUESTS = "request"
FEEDBACK = "feedback"
TOKENS = "verification_token"


def connect(url: str, name: str) -> Tuple[MongoClient, Database]:
    client = MongoClient(url, tz_aware=True)
    return client, client[name]


def ensure_indexes(db: Database) -> None:
    db[USERS].create_index("email", unique=True)
    db[USERS].create_index("role")

    db[REQUESTS].create_index("created_by")
    db[REQUESTS].create_index("assigned_to")
    db[REQUESTS].create_index([("status", ASCENDING), ("is_active", ASCENDING)])
    db[REQUESTS].create_index([("created_at", DESCENDING)])

    # one feedback per request per author
    db[FEEDBACK].create_index([("request_id", ASCENDING), ("from_user", ASCENDING)], unique=True)
    db[FEEDBACK].create_index("to_user")

    db[TOKENS].create_index("token", unique=True)
    db[TOKENS].create_index([("user_id", ASCENDING), ("type", ASCENDING)])
    db[TOKENS].create_index("expires_at", expireAfterSeconds=0)


def get_db(request: Request) -> Database:
    return request.app.state.db


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the driver as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id(value: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}") from None


def create_document(db: Database, collection_name: str, data: Union[Document, dict]) -> str:
    """Insert a model or dict, stamping ``created_at``/``updated_at``. Returns the new id."""
    if isinstance(data, Document):
        data_dict = data.to_document()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    if not data_dict.get("created_at"):
        data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[list] = None,
) -> list:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
