"""
MongoDB access layer.

Each schema class maps to one collection named after the lowercase class name
(``Car`` -> ``car``). Documents are stored in JSON mode so that a document read
back compares equal to the one written; the public ``id`` field is stored as
Mongo's ``_id``.

MongoDB only guarantees atomicity per document. Multi-document sequences are
sequenced by the services that own them, under ``EntityStore.lock``.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Collection names
STATION = "station"
AAR_TYPE = "aartype"
INDUSTRY = "industry"
CAR = "car"
LOCOMOTIVE = "locomotive"
ROUTE = "route"
CAR_ORDER = "carorder"
TRAIN = "train"
OPERATING_SESSION = "operatingsession"
AUDIT_EVENT = "auditevent"

db: Optional[Database] = None


def connect(settings: Settings) -> Optional[Database]:
    """Open the configured database and make it the module default. None without DATABASE_URL."""
    global db
    if not settings.database_url:
        return None
    db = MongoClient(settings.database_url)[settings.database_name]
    logger.info("connected to database %s", settings.database_name)
    return db


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_document(data: Union[BaseModel, dict]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return dict(data)


def _to_mongo(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    if "id" in out:
        out["_id"] = out.pop("id")
    return out


def _from_mongo(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = {"id": doc["_id"]}
    out.update((k, v) for k, v in doc.items() if k != "_id")
    return out


class EntityStore:
    """
    Thin document store over one Mongo database.

    ``lock`` serializes every engine operation that mutates shared state; it is
    re-entrant so a controller action may call into another one.
    """

    def __init__(self, database: Database):
        self._db = database
        self.lock = threading.RLock()

    @property
    def database(self) -> Database:
        return self._db

    def find_all(self, collection: str) -> List[Dict[str, Any]]:
        return self.find_by_query(collection, {})

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return _from_mongo(self._db[collection].find_one({"_id": doc_id}))

    def find_by_query(self, collection: str, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self._db[collection].find(_to_mongo(query)).sort("_id", ASCENDING)
        return [_from_mongo(d) for d in cursor]

    def create(self, collection: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
        doc = to_document(data)
        if not doc.get("id"):
            doc["id"] = new_id()
        self._db[collection].insert_one(_to_mongo(doc))
        return doc

    def bulk_insert(self, collection: str, docs: Iterable[Union[BaseModel, dict]]) -> List[Dict[str, Any]]:
        prepared = []
        for data in docs:
            doc = to_document(data)
            if not doc.get("id"):
                doc["id"] = new_id()
            prepared.append(doc)
        if prepared:
            self._db[collection].insert_many([_to_mongo(d) for d in prepared], ordered=True)
            logger.debug("bulk insert %d document(s) into %s", len(prepared), collection)
        return prepared

    def update(
        self, collection: str, doc_id: str, fields: Dict[str, Any], unset: Iterable[str] = (),
    ) -> bool:
        """Set ``fields`` and remove ``unset`` on one document. Returns False when it does not exist."""
        fields = {k: v for k, v in fields.items() if k != "id"}
        change: Dict[str, Any] = {}
        if fields:
            change["$set"] = fields
        removed = [k for k in unset if k != "id"]
        if removed:
            change["$unset"] = {k: "" for k in removed}
        if not change:
            return self._db[collection].count_documents({"_id": doc_id}) > 0
        result = self._db[collection].update_one({"_id": doc_id}, change)
        return result.matched_count > 0

    def increment(self, collection: str, query: Dict[str, Any], field: str, by: int = 1) -> int:
        result = self._db[collection].update_many(_to_mongo(query), {"$inc": {field: by}})
        return result.modified_count

    def delete(self, collection: str, doc_id: str) -> bool:
        return self._db[collection].delete_one({"_id": doc_id}).deleted_count > 0

    def delete_many(self, collection: str, query: Dict[str, Any]) -> int:
        return self._db[collection].delete_many(_to_mongo(query)).deleted_count

    def count(self, collection: str, query: Optional[Dict[str, Any]] = None) -> int:
        return self._db[collection].count_documents(_to_mongo(query or {}))

    def collection_names(self) -> List[str]:
        return self._db.list_collection_names()


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    doc = to_document(data)
    now = utcnow().isoformat()
    doc["created_at"] = now
    doc["updated_at"] = now
    doc.setdefault("id", new_id())
    target[collection_name].insert_one(_to_mongo(doc))
    return doc["id"]


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [_from_mongo(d) for d in cursor]


def load(model: type, doc: Dict[str, Any]):
    """Parse a stored document into ``model``; schema failures become ValidationError."""
    try:
        return model.model_validate(doc)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__} document",
            details=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        )


def find(store: EntityStore, collection: str, model: type, doc_id: str):
    """Return the parsed entity, or None when it is absent."""
    doc = store.find_by_id(collection, doc_id)
    return None if doc is None else load(model, doc)


def require(store: EntityStore, collection: str, model: type, doc_id: str):
    entity = find(store, collection, model, doc_id)
    if entity is None:
        raise NotFoundError(model.__name__, doc_id)
    return entity
