import threading

from database import MongoBackend, to_entity, to_stored


class FakeStream:
    def __init__(self, log):
        self.log = log
        self.alive = True

    def __enter__(self):
        self.log.append("watch")
        return self

    def __exit__(self, *exc):
        self.alive = False

    def try_next(self):
        self.alive = False
        return None


class FakeCollection:
    def __init__(self, log, docs):
        self.log = log
        self.docs = docs

    def watch(self):
        return FakeStream(self.log)

    def find(self):
        self.log.append("find")
        return [dict(d) for d in self.docs]


class FakeDatabase:
    name = "testdb"

    def __init__(self, collections):
        self.collections = collections

    def __getitem__(self, name):
        return self.collections[name]


class FakeClient:
    def __init__(self, db):
        self.db = db

    def __getitem__(self, name):
        return self.db


def test_stored_documents_use_id_as_key():
    assert to_stored({"id": "n1", "title": "Hi"}) == {"_id": "n1", "title": "Hi"}
    assert to_entity({"_id": "n1", "title": "Hi"}) == {"id": "n1", "title": "Hi"}


def test_mongo_subscription_watches_before_first_read():
    log = []
    collection = FakeCollection(log, [{"_id": "n1", "title": "Hi"}])
    backend = MongoBackend(FakeClient(FakeDatabase({"notices": collection})), "testdb", poll_seconds=0.01)
    delivered = threading.Event()
    snapshots = []

    def on_snapshot(snapshot):
        snapshots.append(snapshot)
        delivered.set()

    stop = backend.subscribe("notices", on_snapshot)
    assert delivered.wait(5)
    stop()
    assert log[:2] == ["watch", "find"]
    assert snapshots[0] == [{"id": "n1", "title": "Hi"}]
