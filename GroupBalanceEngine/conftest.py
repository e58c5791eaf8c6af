"""
Shared pytest fixtures.

FakeFirestore is an in-memory stand-in for the small slice of the Firestore
client API the engine uses: nested collections and documents, get/set/
create/update/delete, stream(transaction=...), transaction() and
write_option(last_update_time=...) preconditions.
"""

from types import SimpleNamespace

import pytest
from google.api_core.exceptions import Conflict, FailedPrecondition

import expenses
import group_balances
import members
import settlements


class FakeSnapshot:
    def __init__(self, doc_id, data, update_time=None):
        self.id = doc_id
        self._data = data
        self.update_time = update_time

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, db, path):
        self._db = db
        self._path = path
        self.id = path[-1]

    def collection(self, name):
        return FakeCollection(self._db, self._path + (name,))

    def get(self, transaction=None):
        return FakeSnapshot(self.id, self._db.store.get(self._path), self._db.update_times.get(self._path))

    def set(self, data):
        self._db.write(self._path, dict(data))

    def create(self, data):
        if self._path in self._db.store:
            raise Conflict(f"Document already exists: {'/'.join(self._path)}")
        self._db.write(self._path, dict(data))

    def update(self, data, option=None):
        if self._path not in self._db.store:
            raise KeyError(f"No document to update: {'/'.join(self._path)}")
        if option is not None and option.last_update_time != self._db.update_times[self._path]:
            raise FailedPrecondition(f"Document changed: {'/'.join(self._path)}")
        self._db.write(self._path, {**self._db.store[self._path], **data})

    def delete(self):
        self._db.store.pop(self._path, None)
        self._db.update_times.pop(self._path, None)


class FakeCollection:
    def __init__(self, db, path):
        self._db = db
        self._path = path

    def document(self, doc_id):
        return FakeDocument(self._db, self._path + (doc_id,))

    def stream(self, transaction=None):
        depth = len(self._path) + 1
        for path in sorted(self._db.store):
            if len(path) == depth and path[:-1] == self._path:
                yield FakeSnapshot(path[-1], self._db.store[path], self._db.update_times[path])


class FakeFirestore:
    def __init__(self):
        self.store = {}
        self.update_times = {}
        self._clock = 0

    def write(self, path, data):
        self._clock += 1
        self.store[path] = data
        self.update_times[path] = self._clock

    def collection(self, name):
        return FakeCollection(self, (name,))

    def transaction(self):
        return object()

    @staticmethod
    def write_option(last_update_time=None):
        return SimpleNamespace(last_update_time=last_update_time)


@pytest.fixture
def fake_db(monkeypatch):
    """Patch every module that talks to Firestore to use one FakeFirestore."""
    db = FakeFirestore()
    for module in (expenses, settlements, members, group_balances):
        monkeypatch.setattr(module, "get_db", lambda: db)
    return db


@pytest.fixture
def store_snapshot(fake_db, monkeypatch):
    """Run the snapshot read against the fake store, outside a real transaction."""
    monkeypatch.setattr(group_balances, "_read_snapshot", group_balances._read_snapshot.to_wrap)
    return fake_db


@pytest.fixture
def group(fake_db):
    """Group "G1" owned by A, with members B and C."""
    members.add_member("G1", "A", role="owner")
    members.add_member("G1", "B")
    members.add_member("G1", "C")
    return "G1"
