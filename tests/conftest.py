"""Shared fixtures: an in-memory store, a controllable clock and identities."""

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from blobstore import BlobStore
from identity import Identity, create_token
from store import MemoryStore
from workflow import Moderation

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_identity(role: str = "citizen", name: str = "Citizen") -> Identity:
    return Identity(userId=str(ObjectId()), role=role, name=name)


def bearer(identity: Identity) -> dict:
    return {"Authorization": f"Bearer {create_token(identity.userId, identity.role, identity.name)}"}


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def moderation(store, clock) -> Moderation:
    return Moderation(store, clock=clock)


@pytest.fixture
def citizen() -> Identity:
    return make_identity("citizen", "Alice")


@pytest.fixture
def other_citizen() -> Identity:
    return make_identity("citizen", "Bob")


@pytest.fixture
def admin() -> Identity:
    return make_identity("admin", "Admin")


@pytest.fixture
def petition_factory(moderation, citizen, clock):
    def create(creator: Identity = None, goal: int = 10, days: int = 30, **fields):
        return moderation.create_petition(
            creator or citizen,
            title=fields.get("title", "Fix the park lights"),
            description=fields.get("description", "The lights at Block C have been out for weeks"),
            category=fields.get("category", "Infrastructure"),
            goal=goal,
            deadline=clock() + timedelta(days=days),
        )

    return create


@pytest.fixture
def report_factory(moderation, citizen):
    def create(submitter: Identity = None, **fields):
        return moderation.create_report(
            submitter or citizen,
            title=fields.get("title", "Loud music after midnight"),
            description=fields.get("description", "Every weekend from flat 4B"),
            report_type=fields.get("report_type", "violation"),
            category=fields.get("category", "Noise"),
            location=fields.get("location", "Block C"),
        )

    return create


@pytest.fixture
def client(store, clock, tmp_path):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_clock] = lambda: clock
    main.app.dependency_overrides[main.get_blobs] = lambda: BlobStore(str(tmp_path))
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
