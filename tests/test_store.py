from bson import ObjectId
import mongomock
import pytest
from pymongo.errors import PyMongoError

import database
from errors import ConflictError, NotFound, StoreFailure, ValidationError
from identity import Identity
from queries import reports_for
from store import MemoryStore, MongoStore, normalize, resolve_ref
from workflow import Moderation

from conftest import NOW, Clock, make_identity


@pytest.fixture
def mongo_db():
    db = mongomock.MongoClient(tz_aware=True)["society"]
    database.ensure_indexes(using=db)
    return db


@pytest.fixture(params=["memory", "mongo"])
def store(request):
    if request.param == "memory":
        return MemoryStore()
    return MongoStore(request.getfixturevalue("mongo_db"))


def test_put_assigns_id_and_version(store):
    doc = store.put("idea", {"title": "Bike racks", "createdBy": "u1"})
    assert ObjectId.is_valid(doc["id"])
    assert doc["version"] == 1
    assert store.get("idea", doc["id"])["title"] == "Bike racks"


def test_put_is_visible_to_next_get(store):
    doc = store.put("idea", {"title": "Bike racks"})
    doc["title"] = "More bike racks"
    store.put("idea", doc)
    fetched = store.get("idea", doc["id"])
    assert fetched["title"] == "More bike racks"
    assert fetched["version"] == 2


def test_stale_version_is_rejected(store):
    doc = store.put("idea", {"title": "Bike racks"})
    first = store.get("idea", doc["id"])
    second = store.get("idea", doc["id"])
    first["title"] = "A"
    store.put("idea", first)
    second["title"] = "B"
    with pytest.raises(ConflictError):
        store.put("idea", second)
    assert store.get("idea", doc["id"])["title"] == "A"


def test_get_returns_a_copy(store):
    doc = store.put("idea", {"title": "Bike racks", "upvotes": []})
    fetched = store.get("idea", doc["id"])
    fetched["upvotes"].append("someone")
    assert store.get("idea", doc["id"])["upvotes"] == []


def test_unknown_and_malformed_ids(store):
    with pytest.raises(NotFound):
        store.get("petition", str(ObjectId()))
    with pytest.raises(ValidationError):
        store.get("petition", "not-an-id")
    with pytest.raises(NotFound):
        store.delete("petition", str(ObjectId()))


def test_delete(store):
    doc = store.put("petition", {"title": "x"})
    store.delete("petition", doc["id"])
    with pytest.raises(NotFound):
        store.get("petition", doc["id"])


def test_query_equality_and_dotted_paths(store):
    store.put("petition", {"title": "a", "adminReview": {"status": "approved"}})
    store.put("petition", {"title": "b", "adminReview": {"status": "pending"}})
    titles = [d["title"] for d in store.query("petition", {"adminReview.status": "approved"})]
    assert titles == ["a"]


def test_query_is_restartable_and_sees_new_writes(store):
    store.put("idea", {"title": "a"})
    results = store.query("idea")
    assert len(list(results)) == 1
    store.put("idea", {"title": "b"})
    assert [d["title"] for d in results] == ["a", "b"]


def test_duplicate_email_rejected(store):
    store.put("user", {"email": "ann@civic.org"})
    with pytest.raises(ValidationError):
        store.put("user", {"email": "ann@civic.org"})


def test_refs_are_resolved_to_plain_ids():
    oid = ObjectId()
    assert resolve_ref(oid) == str(oid)
    assert resolve_ref({"_id": oid, "name": "Ann", "email": "ann@civic.org"}) == str(oid)
    assert resolve_ref("abc") == "abc"
    doc = normalize({
        "createdBy": {"_id": oid, "name": "Ann"},
        "signatures": [{"user": oid, "name": "Ann"}],
        "upvotes": [oid],
    })
    assert doc["createdBy"] == str(oid)
    assert doc["signatures"][0]["user"] == str(oid)
    assert doc["signatures"][0]["name"] == "Ann"
    assert doc["upvotes"] == [str(oid)]


def test_write_after_delete(store):
    doc = store.put("idea", {"title": "Bike racks"})
    stale = store.get("idea", doc["id"])
    store.delete("idea", doc["id"])
    stale["title"] = "More bike racks"
    with pytest.raises(NotFound):
        store.put("idea", stale)


def _legacy_report(db, owner: ObjectId, **fields) -> str:
    doc = {
        "title": "Loud music after midnight",
        "description": "Every weekend from flat 4B",
        "type": "violation",
        "category": "Noise",
        "location": "Block C",
        "status": "pending",
        "submittedBy": owner,
        "comments": [],
        "adminNotes": [],
        "createdAt": NOW,
        "updatedAt": NOW,
    }
    doc.update(fields)
    return str(db["report"].insert_one(doc).inserted_id)


class TestLegacyMongoDocuments:
    def test_unversioned_document_reads_as_version_zero(self, mongo_db):
        owner = ObjectId()
        report_id = _legacy_report(mongo_db, owner)
        doc = MongoStore(mongo_db).get("report", report_id)
        assert doc["version"] == 0
        assert doc["submittedBy"] == str(owner)

    def test_unversioned_document_can_be_updated_once(self, mongo_db):
        store = MongoStore(mongo_db)
        report_id = _legacy_report(mongo_db, ObjectId())
        first = store.get("report", report_id)
        second = store.get("report", report_id)

        first["status"] = "in-progress"
        assert store.put("report", first)["version"] == 1
        assert mongo_db["report"].find_one({"_id": ObjectId(report_id)})["version"] == 1

        second["status"] = "rejected"
        with pytest.raises(ConflictError):
            store.put("report", second)
        assert store.get("report", report_id)["status"] == "in-progress"

    def test_status_change_on_unversioned_report(self, mongo_db):
        report_id = _legacy_report(mongo_db, ObjectId())
        moderation = Moderation(MongoStore(mongo_db), clock=Clock())
        report = moderation.update_report_status(make_identity("admin"), report_id, "resolved", "done")
        assert report.status == "resolved"
        assert report.resolvedAt == NOW
        assert report.version == 1

    def test_owner_filter_matches_object_id_refs(self, mongo_db):
        owner, stranger = ObjectId(), ObjectId()
        legacy_id = _legacy_report(mongo_db, owner)
        store = MongoStore(mongo_db)
        fresh = store.put("report", {"title": "x", "submittedBy": str(owner), "createdAt": NOW})
        _legacy_report(mongo_db, stranger)

        citizen = Identity(userId=str(owner), role="citizen")
        assert sorted(d["id"] for d in reports_for(store, citizen)) == sorted([legacy_id, fresh["id"]])
        assert [d["id"] for d in store.query("report", {"submittedBy": str(owner), "status": "pending"})] == [legacy_id]

    def test_store_uses_its_own_database(self, mongo_db):
        store = MongoStore(mongo_db)
        doc = store.put("idea", {"title": "Bike racks"})
        assert mongo_db["idea"].count_documents({}) == 1
        assert [d["id"] for d in store.query("idea")] == [doc["id"]]

    def test_driver_error_on_conflict_check_is_a_store_failure(self, mongo_db, monkeypatch):
        store = MongoStore(mongo_db)
        doc = store.put("idea", {"title": "Bike racks"})
        stale = store.get("idea", doc["id"])
        store.put("idea", dict(stale))

        def broken(*args, **kwargs):
            raise PyMongoError("connection reset")

        monkeypatch.setattr(mongomock.collection.Collection, "count_documents", broken)
        with pytest.raises(StoreFailure):
            store.put("idea", stale)
