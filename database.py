"""
Document store access.

Two backends share one contract: MongoDB for deployments (a collection per
entity type, ``_id`` holding the entity id) and an in-process store used when
no database is configured and in the tests. Both push a full snapshot of a
collection to subscribers whenever it changes.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional

from pymongo import MongoClient, UpdateOne
from pymongo.errors import PyMongoError

import config

logger = logging.getLogger(__name__)

Snapshot = List[dict]
SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]


def to_entity(doc):
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def to_stored(doc: dict) -> dict:
    d = dict(doc)
    d["_id"] = str(d.pop("id"))
    return d


class DocumentBackend(ABC):
    """Collection-based CRUD plus subscribe-to-changes."""

    name = "abstract"

    @abstractmethod
    def list(self, collection_name: str) -> Snapshot:
        ...

    @abstractmethod
    def set(self, collection_name: str, doc_id: str, doc: dict) -> None:
        """Create or fully replace one document."""

    @abstractmethod
    def delete(self, collection_name: str, doc_id: str) -> None:
        ...

    @abstractmethod
    def create_if_absent(self, collection_name: str, docs: Iterable[dict]) -> int:
        """Insert each document only where its id is unused. Returns the number inserted."""

    @abstractmethod
    def subscribe(
        self,
        collection_name: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        """Deliver the current snapshot, then one per change. Returns an unsubscribe callable."""

    def describe(self) -> dict:
        return {"backend": self.name}

    def close(self) -> None:
        pass


class InMemoryBackend(DocumentBackend):
    name = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._listeners: Dict[str, List[SnapshotCallback]] = {}
        self._lock = threading.RLock()
        # snapshots are taken and delivered under one lock so listeners never see them out of order
        self._delivery = threading.RLock()

    def _snapshot(self, collection_name: str) -> Snapshot:
        docs = self._collections.get(collection_name, {})
        return [copy.deepcopy(d) for d in docs.values()]

    def _notify(self, collection_name: str) -> None:
        with self._delivery:
            with self._lock:
                listeners = list(self._listeners.get(collection_name, []))
                snapshot = self._snapshot(collection_name)
            for listener in listeners:
                listener(copy.deepcopy(snapshot))

    def list(self, collection_name):
        with self._lock:
            return self._snapshot(collection_name)

    def set(self, collection_name, doc_id, doc):
        with self._lock:
            stored = copy.deepcopy(doc)
            stored["id"] = doc_id
            self._collections.setdefault(collection_name, {})[doc_id] = stored
        self._notify(collection_name)

    def delete(self, collection_name, doc_id):
        with self._lock:
            self._collections.get(collection_name, {}).pop(doc_id, None)
        self._notify(collection_name)

    def create_if_absent(self, collection_name, docs):
        inserted = 0
        with self._lock:
            coll = self._collections.setdefault(collection_name, {})
            for doc in docs:
                if doc["id"] not in coll:
                    coll[doc["id"]] = copy.deepcopy(doc)
                    inserted += 1
        if inserted:
            self._notify(collection_name)
        return inserted

    def subscribe(self, collection_name, on_snapshot, on_error=None):
        with self._delivery:
            with self._lock:
                self._listeners.setdefault(collection_name, []).append(on_snapshot)
                snapshot = self._snapshot(collection_name)
            on_snapshot(snapshot)

        def unsubscribe():
            with self._lock:
                listeners = self._listeners.get(collection_name, [])
                if on_snapshot in listeners:
                    listeners.remove(on_snapshot)

        return unsubscribe

    def describe(self):
        with self._lock:
            names = sorted(self._collections)
        return {"backend": self.name, "collections": names[:10]}


class MongoBackend(DocumentBackend):
    """MongoDB backend. Subscriptions use change streams, so the server must run as a replica set."""

    name = "mongodb"

    def __init__(self, client: MongoClient, database_name: str, poll_seconds: float = 1.0):
        self._client = client
        self.db = client[database_name]
        self.poll_seconds = poll_seconds

    def list(self, collection_name):
        return [to_entity(d) for d in self.db[collection_name].find()]

    def set(self, collection_name, doc_id, doc):
        stored = to_stored({**doc, "id": doc_id})
        self.db[collection_name].replace_one({"_id": doc_id}, stored, upsert=True)
        logger.debug("Wrote %s/%s", collection_name, doc_id)

    def delete(self, collection_name, doc_id):
        self.db[collection_name].delete_one({"_id": doc_id})
        logger.debug("Deleted %s/%s", collection_name, doc_id)

    def create_if_absent(self, collection_name, docs):
        ops = []
        for doc in docs:
            stored = to_stored(doc)
            ops.append(UpdateOne({"_id": stored["_id"]}, {"$setOnInsert": stored}, upsert=True))
        if not ops:
            return 0
        result = self.db[collection_name].bulk_write(ops, ordered=False)
        return result.upserted_count

    def subscribe(self, collection_name, on_snapshot, on_error=None):
        stop = threading.Event()
        collection = self.db[collection_name]

        def run():
            try:
                # the stream is open before the first read, so no change falls in between
                with collection.watch() as stream:
                    on_snapshot(self.list(collection_name))
                    while not stop.is_set() and stream.alive:
                        change = stream.try_next()
                        if change is None:
                            stop.wait(self.poll_seconds)
                            continue
                        on_snapshot(self.list(collection_name))
            except PyMongoError as e:
                logger.error("Error listening to %s: %s", collection_name, e)
                if on_error is not None:
                    on_error(e)

        thread = threading.Thread(target=run, name=f"watch-{collection_name}", daemon=True)
        thread.start()
        return stop.set

    def describe(self):
        info = {"backend": self.name, "database_name": self.db.name}
        try:
            info["collections"] = self.db.list_collection_names()[:10]
            info["connection_status"] = "Connected"
        except PyMongoError as e:
            info["connection_status"] = f"Error: {str(e)[:50]}"
        return info

    def close(self):
        self._client.close()


def get_backend() -> DocumentBackend:
    if config.DATABASE_URL and config.DATABASE_NAME:
        logger.info("Using MongoDB database %s", config.DATABASE_NAME)
        client = MongoClient(config.DATABASE_URL)
        return MongoBackend(client, config.DATABASE_NAME, poll_seconds=config.WATCH_POLL_SECONDS)
    logger.warning("DATABASE_URL/DATABASE_NAME not set, using in-memory store")
    return InMemoryBackend()
