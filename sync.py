"""
Synchronized collection store.

Each named collection is mirrored locally as a list of plain documents and
kept in step with the remote backend: remote snapshots replace the local
list, local writes are applied optimistically and pushed as per-document
replaces and deletes. Only records whose serialized form changed are sent.
"""

import copy
import itertools
import json
import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel

from database import DocumentBackend

logger = logging.getLogger(__name__)


class _Undefined:
    """Marker for a field that was never given a value. The backend rejects it."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNDEFINED"

    def __bool__(self):
        return False


UNDEFINED = _Undefined()


def normalize(value):
    """Return a JSON-compatible copy of ``value`` with every UNDEFINED replaced by None."""
    if value is UNDEFINED:
        return None
    if isinstance(value, BaseModel):
        return normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def serialize(doc) -> str:
    return json.dumps(normalize(doc), sort_keys=True, default=str)


def diff(previous: List[dict], following: List[dict]) -> Tuple[List[dict], List[str]]:
    """Documents to write and ids to delete to turn ``previous`` into ``following``."""
    before = {d["id"]: serialize(d) for d in previous}
    writes = [d for d in following if before.get(d["id"]) != serialize(d)]
    keep = {d["id"] for d in following}
    deletes = [d["id"] for d in previous if d["id"] not in keep]
    return writes, deletes


def _ordered(docs: Iterable[dict]) -> List[dict]:
    # newest first; ids are time-derived
    return sorted(docs, key=lambda d: str(d["id"]), reverse=True)


@dataclass
class SyncError:
    collection: str
    doc_id: Optional[str]
    operation: str
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict:
        return {
            "collection": self.collection,
            "doc_id": self.doc_id,
            "operation": self.operation,
            "message": self.message,
            "at": self.at.isoformat(),
        }


class SyncBatch:
    """The remote writes started by one ``set`` call."""

    def __init__(self, collection: str, writes: List[str], deletes: List[str], futures: List[Future]):
        self.collection = collection
        self.writes = writes
        self.deletes = deletes
        self.futures = futures

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every write finished. True when all of them succeeded."""
        if not self.futures:
            return True
        done, not_done = wait(self.futures, timeout=timeout)
        return not not_done and all(f.result() for f in done)


Updater = Union[List, Callable[[List[dict]], List]]


class CollectionHandle:
    def __init__(self, store: "CollectionStore", name: str, seed: Iterable = ()):
        self.name = name
        self._store = store
        self._backend = store.backend
        self._seed = [normalize(s) for s in seed]
        self._lock = threading.RLock()
        self._items: List[dict] = []
        self._pending: Dict[str, Tuple[int, Optional[dict]]] = {}
        self._tokens = itertools.count(1)
        self._inflight: Dict[str, Future] = {}
        self._listeners: List[Callable[[List[dict]], None]] = []
        self._seeded = False
        self._unsubscribe = None
        self.loading = True
        self.initialized = False
        self.failed: Dict[str, str] = {}

    def _open(self):
        self._unsubscribe = self._backend.subscribe(self.name, self._on_snapshot, self._on_subscribe_error)

    @property
    def items(self) -> List[dict]:
        with self._lock:
            return copy.deepcopy(self._items)

    @property
    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def get(self, doc_id: str) -> Optional[dict]:
        with self._lock:
            for d in self._items:
                if d["id"] == doc_id:
                    return copy.deepcopy(d)
        return None

    def subscribe(self, listener: Callable[[List[dict]], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, items: List[dict]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(copy.deepcopy(items))

    def _apply(self, snapshot: List[dict]) -> List[dict]:
        by_id = {d["id"]: d for d in snapshot}
        # writes still in flight keep their optimistic value
        for doc_id, (_, doc) in self._pending.items():
            if doc is None:
                by_id.pop(doc_id, None)
            else:
                by_id[doc_id] = doc
        self._items = _ordered(by_id.values())
        return copy.deepcopy(self._items)

    def _on_snapshot(self, snapshot: List[dict]) -> None:
        with self._lock:
            first = not self.initialized
            items = self._apply(snapshot)
            self.loading = False
            self.initialized = True
            seed_now = first and not snapshot and bool(self._seed) and not self._seeded
            if seed_now:
                self._seeded = True
        self._emit(items)
        if seed_now:
            self._seed_remote()

    def _on_subscribe_error(self, exc: Exception) -> None:
        with self._lock:
            self.loading = False
        self._store.report(SyncError(self.name, None, "subscribe", str(exc)))

    def _seed_remote(self) -> None:
        try:
            if self._backend.list(self.name):
                logger.info("Skipping seed of %s: collection is no longer empty", self.name)
                return
            logger.info("Seeding %s with %d records", self.name, len(self._seed))
            inserted = self._backend.create_if_absent(self.name, self._seed)
            logger.debug("Seeded %d/%d records into %s", inserted, len(self._seed), self.name)
        except Exception as e:
            self._store.report(SyncError(self.name, None, "seed", str(e)))

    def _prepare(self, docs, problems: List[SyncError]) -> List[dict]:
        """Normalized records, last one wins per id. Records that cannot be stored go to ``problems``."""
        by_id: Dict[str, dict] = {}
        for doc in docs:
            doc = normalize(doc)
            if not isinstance(doc, dict):
                problems.append(SyncError(self.name, None, "set", f"Not a record: {doc!r}"))
                continue
            doc_id = doc.get("id")
            if not doc_id:
                problems.append(SyncError(self.name, None, "set", f"Record has no id: {doc!r}"))
                continue
            if doc_id in by_id:
                logger.warning("Duplicate id %s in %s, keeping the last one", doc_id, self.name)
            by_id[str(doc_id)] = doc
        return list(by_id.values())

    def set(self, action: Updater) -> SyncBatch:
        """Replace the collection with a new list, or with ``action(previous)``.

        Local state changes immediately. The returned batch carries the remote
        writes; failures, including records without an id, are reported to the
        store and never raised here.
        """
        problems: List[SyncError] = []
        with self._lock:
            previous = self._items
            try:
                following = action(copy.deepcopy(previous)) if callable(action) else action
                following = self._prepare(following, problems)
            except Exception as e:
                problems.append(SyncError(self.name, None, "set", f"{type(e).__name__}: {e}"))
                following = None
            if following is not None:
                writes, deletes = diff(previous, following)
                token = next(self._tokens)
                for doc in writes:
                    self._pending[doc["id"]] = (token, doc)
                for doc_id in deletes:
                    self._pending[doc_id] = (token, None)
                self._items = _ordered(following)
                items = copy.deepcopy(self._items)
        for problem in problems:
            self._store.report(problem)
        if following is None:
            return SyncBatch(self.name, [], [], [])
        self._emit(items)

        futures = [self._submit(doc["id"], self._write, doc, token) for doc in writes]
        futures += [self._submit(doc_id, self._delete, doc_id, token) for doc_id in deletes]
        return SyncBatch(self.name, [d["id"] for d in writes], deletes, futures)

    def upsert(self, doc) -> SyncBatch:
        doc = normalize(doc)
        return self.set(lambda items: [d for d in items if d["id"] != doc.get("id")] + [doc])

    def remove(self, doc_id: str) -> SyncBatch:
        return self.set(lambda items: [d for d in items if d["id"] != doc_id])

    def _submit(self, doc_id: str, fn, *args) -> Future:
        # writes to one document reach the backend in the order they were made
        with self._lock:
            previous = self._inflight.get(doc_id)
            future = self._store.submit(self._after, previous, fn, *args)
            self._inflight[doc_id] = future
        future.add_done_callback(lambda f: self._forget(doc_id, f))
        return future

    @staticmethod
    def _after(previous: Optional[Future], fn, *args):
        if previous is not None:
            wait([previous])
        return fn(*args)

    def _forget(self, doc_id: str, future: Future) -> None:
        with self._lock:
            if self._inflight.get(doc_id) is future:
                del self._inflight[doc_id]

    def _write(self, doc: dict, token: int) -> bool:
        try:
            self._backend.set(self.name, doc["id"], doc)
        except Exception as e:
            self._fail(doc["id"], token, "write", e)
            return False
        self._confirm(doc["id"], token)
        return True

    def _delete(self, doc_id: str, token: int) -> bool:
        try:
            self._backend.delete(self.name, doc_id)
        except Exception as e:
            self._fail(doc_id, token, "delete", e)
            return False
        self._confirm(doc_id, token)
        return True

    def _confirm(self, doc_id: str, token: int) -> None:
        with self._lock:
            if self._pending.get(doc_id, (None,))[0] == token:
                del self._pending[doc_id]
            self.failed.pop(doc_id, None)

    def _fail(self, doc_id: str, token: int, operation: str, exc: Exception) -> None:
        with self._lock:
            if self._pending.get(doc_id, (None,))[0] == token:
                del self._pending[doc_id]
            self.failed[doc_id] = str(exc)
        self._store.report(SyncError(self.name, doc_id, operation, str(exc)))
        self.resync()

    def resync(self) -> None:
        """Re-read the remote collection and drop optimistic values that were not confirmed."""
        with self._lock:
            try:
                snapshot = self._backend.list(self.name)
            except Exception as e:
                error = SyncError(self.name, None, "resync", str(e))
            else:
                error = None
                items = self._apply(snapshot)
        if error is not None:
            self._store.report(error)
            return
        self._emit(items)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


class CollectionStore:
    """Session-wide registry of synchronized collections.

    ``notifier`` is called with every SyncError; the HTTP app keeps the recent
    ones in ``errors`` for display.
    """

    def __init__(
        self,
        backend: DocumentBackend,
        notifier: Optional[Callable[[SyncError], None]] = None,
        max_workers: int = 8,
        error_history: int = 50,
    ):
        self.backend = backend
        self.errors = deque(maxlen=error_history)
        self._notifier = notifier
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sync")
        self._handles: Dict[str, CollectionHandle] = {}
        self._lock = threading.Lock()
        self._closed = False

    def open(self, name: str, seed: Iterable = ()) -> CollectionHandle:
        with self._lock:
            handle = self._handles.get(name)
            if handle is not None:
                return handle
            handle = CollectionHandle(self, name, seed)
            self._handles[name] = handle
        handle._open()
        logger.info("Opened collection %s", name)
        return handle

    def __getitem__(self, name: str) -> CollectionHandle:
        return self._handles[name]

    def __contains__(self, name: str) -> bool:
        return name in self._handles

    def submit(self, fn, *args) -> Future:
        try:
            return self._executor.submit(fn, *args)
        except RuntimeError as e:
            self.report(SyncError("*", None, "submit", str(e)))
            future = Future()
            future.set_result(False)
            return future

    def report(self, error: SyncError) -> None:
        logger.error("Sync error on %s/%s during %s: %s", error.collection, error.doc_id, error.operation, error.message)
        self.errors.append(error)
        if self._notifier is not None:
            self._notifier(error)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.close()
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
