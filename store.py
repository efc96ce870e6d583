"""
Entity store.

Thin persistence contract over the four collections: get, put, query,
delete. Writes are compare-and-swap on the document's `version`, so a
read-modify-write that lost a race raises ConflictError instead of
silently overwriting someone else's update.

Two backends: MongoStore (pymongo) and MemoryStore (single process,
used when no DATABASE_URL is configured and in tests).
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from errors import ConflictError, NotFound, StoreFailure, ValidationError

logger = logging.getLogger(__name__)

# Fields holding a reference to a user, at any depth. Legacy documents may
# store these as ObjectIds or populated {_id, name, email} sub-documents.
REF_FIELDS = {"submittedBy", "createdBy", "assignedTo", "addedBy", "reviewedBy", "author", "user"}

RESOURCE_NAMES = {"user": "User", "report": "Report", "petition": "Petition", "idea": "Idea"}


def resolve_ref(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        ref = value.get("_id", value.get("id"))
        return str(ref) if ref is not None else None
    return value


def normalize(doc: Any) -> Any:
    """Resolve every user reference in a decoded document to a plain string id."""
    if isinstance(doc, list):
        return [normalize(item) for item in doc]
    if not isinstance(doc, dict):
        return doc
    out = {}
    for key, value in doc.items():
        if key in REF_FIELDS:
            out[key] = resolve_ref(value)
        elif key == "upvotes" and isinstance(value, list):
            out[key] = [resolve_ref(v) for v in value]
        else:
            out[key] = normalize(value)
    return out


def parse_id(entity_id: str) -> ObjectId:
    try:
        return ObjectId(entity_id)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def _lookup(doc: dict, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def matches(doc: dict, where: Optional[Dict[str, Any]]) -> bool:
    """Equality match with dotted paths, the subset of Mongo filters we push down."""
    return all(_lookup(doc, key) == value for key, value in (where or {}).items())


class ResultSet:
    """Lazy, restartable view over a query; every iteration re-reads the store."""

    def __init__(self, source: Callable[[], Iterable[dict]], predicate: Optional[Callable[[dict], bool]] = None):
        self._source = source
        self._predicate = predicate

    def __iter__(self) -> Iterator[dict]:
        for doc in self._source():
            if self._predicate is None or self._predicate(doc):
                yield doc

    def filter(self, predicate: Callable[[dict], bool]) -> "ResultSet":
        if self._predicate is None:
            return ResultSet(self._source, predicate)
        outer = self._predicate
        return ResultSet(self._source, lambda d: outer(d) and predicate(d))


class EntityStore:
    def get(self, collection: str, entity_id: str) -> dict:
        raise NotImplementedError

    def put(self, collection: str, doc: dict) -> dict:
        """Insert when doc has no id, else replace iff the stored version matches.

        Returns the stored document (with id and bumped version).
        """
        raise NotImplementedError

    def query(self, collection: str, where: Optional[Dict[str, Any]] = None) -> ResultSet:
        raise NotImplementedError

    def delete(self, collection: str, entity_id: str) -> None:
        raise NotImplementedError

    def find_one(self, collection: str, where: Dict[str, Any]) -> Optional[dict]:
        for doc in self.query(collection, where):
            return doc
        return None

    def ping(self) -> dict:
        return {"store": type(self).__name__}


class MemoryStore(EntityStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._collections: Dict[str, Dict[str, dict]] = {}

    def _coll(self, collection: str) -> Dict[str, dict]:
        return self._collections.setdefault(collection, {})

    def get(self, collection, entity_id):
        parse_id(entity_id)
        with self._lock:
            doc = self._coll(collection).get(entity_id)
            if doc is None:
                raise NotFound(RESOURCE_NAMES.get(collection, "Document"))
            return copy.deepcopy(doc)

    def put(self, collection, doc):
        doc = normalize(copy.deepcopy(doc))
        with self._lock:
            coll = self._coll(collection)
            if not doc.get("id"):
                if collection == "user" and any(u["email"] == doc.get("email") for u in coll.values()):
                    raise ValidationError("Email already registered")
                doc["id"] = str(ObjectId())
                doc["version"] = 1
            else:
                current = coll.get(doc["id"])
                if current is None:
                    raise NotFound(RESOURCE_NAMES.get(collection, "Document"))
                if current.get("version", 0) != doc.get("version", 0):
                    raise ConflictError()
                if collection == "user" and any(
                    u["email"] == doc.get("email") and uid != doc["id"] for uid, u in coll.items()
                ):
                    raise ValidationError("Email already registered")
                doc["version"] = doc.get("version", 0) + 1
            coll[doc["id"]] = doc
            return copy.deepcopy(doc)

    def query(self, collection, where=None):
        def source():
            with self._lock:
                snapshot = [copy.deepcopy(d) for d in self._coll(collection).values() if matches(d, where)]
            return snapshot

        return ResultSet(source)

    def delete(self, collection, entity_id):
        parse_id(entity_id)
        with self._lock:
            if self._coll(collection).pop(entity_id, None) is None:
                raise NotFound(RESOURCE_NAMES.get(collection, "Document"))


class MongoStore(EntityStore):
    def __init__(self, db):
        self.db = db

    @staticmethod
    def _decode(raw: dict) -> dict:
        doc = normalize({k: v for k, v in raw.items() if k != "_id"})
        doc["id"] = str(raw["_id"])
        doc.setdefault("version", 0)
        return doc

    def get(self, collection, entity_id):
        oid = parse_id(entity_id)
        try:
            raw = self.db[collection].find_one({"_id": oid})
        except PyMongoError as e:
            logger.exception("find_one failed on %s", collection)
            raise StoreFailure() from e
        if raw is None:
            raise NotFound(RESOURCE_NAMES.get(collection, "Document"))
        return self._decode(raw)

    def put(self, collection, doc):
        body = normalize({k: v for k, v in doc.items() if k != "id"})
        try:
            if not doc.get("id"):
                body["version"] = 1
                new_id = database.create_document(collection, body, using=self.db)
                return self.get(collection, new_id)
            oid = parse_id(doc["id"])
            expected = body.get("version", 0)
            body["version"] = expected + 1
            res = self.db[collection].replace_one(self._versioned(oid, expected), body)
            # either deleted underneath us or someone bumped the version
            missing = res.matched_count == 0 and self.db[collection].count_documents({"_id": oid}, limit=1) == 0
        except DuplicateKeyError:
            raise ValidationError("Email already registered")
        except PyMongoError as e:
            logger.exception("write failed on %s", collection)
            raise StoreFailure() from e
        if missing:
            raise NotFound(RESOURCE_NAMES.get(collection, "Document"))
        if res.matched_count == 0:
            raise ConflictError()
        body["id"] = doc["id"]
        return body

    @staticmethod
    def _versioned(oid: ObjectId, expected: int) -> dict:
        if expected == 0:
            # documents written before versioning have no version field at all
            return {"_id": oid, "$or": [{"version": 0}, {"version": {"$exists": False}}]}
        return {"_id": oid, "version": expected}

    @staticmethod
    def _pushdown(where: Optional[Dict[str, Any]]) -> dict:
        """Translate an equality filter so user refs match both stored shapes."""
        out = {}
        for key, value in (where or {}).items():
            if key.rsplit(".", 1)[-1] in REF_FIELDS and isinstance(value, str) and ObjectId.is_valid(value):
                out[key] = {"$in": [value, ObjectId(value)]}
            else:
                out[key] = value
        return out

    def query(self, collection, where=None):
        filter_dict = self._pushdown(where)

        def source():
            try:
                for raw in database.get_documents(collection, filter_dict, using=self.db):
                    yield self._decode(raw)
            except PyMongoError as e:
                logger.exception("query failed on %s", collection)
                raise StoreFailure() from e

        return ResultSet(source)

    def delete(self, collection, entity_id):
        oid = parse_id(entity_id)
        try:
            res = self.db[collection].delete_one({"_id": oid})
        except PyMongoError as e:
            logger.exception("delete failed on %s", collection)
            raise StoreFailure() from e
        if res.deleted_count == 0:
            raise NotFound(RESOURCE_NAMES.get(collection, "Document"))

    def ping(self):
        info = {"store": "MongoStore", "database": "connected", "collections": []}
        try:
            info["collections"] = self.db.list_collection_names()[:10]
        except Exception as e:
            info["database"] = f"error: {str(e)[:80]}"
        return info
