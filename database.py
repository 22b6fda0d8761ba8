"""
Realtime document store adapter.

The store is a hierarchical key/value namespace addressed by slash-separated
paths. Each top-level key is a collection ("teachers", "classes", ...) and
each child key is a record id produced by ``push``. Operations:

    get(path)              one-shot read, None when the path holds nothing
    listen(path, callback) callback(current value) now and after every change
                           to the path, its ancestors or its descendants;
                           returns an unsubscribe function
    set(path, value)       whole-value write (None or {} deletes)
    push(path, value)      append under a fresh time-ordered id, returns the id
    update(path, partial)  shallow merge, None values delete fields
    remove(path)           delete the subtree

Nothing here is transactional across paths. Writes to the same path are
last-write-wins.
"""

import copy
import logging
import random
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import get_config
from errors import StoreOperationError
from projections import materialize
from schemas import now_iso

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushIdGenerator:
    """20-character ids: 8 chars of millisecond timestamp, 12 random chars.

    Ids generated in the same millisecond increment the random part, so the
    lexical order of ids from one generator is their creation order.
    """

    def __init__(self):
        self._last_ts = -1
        self._last_rand = [0] * 12
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            now = int(time.time() * 1000)
            duplicate = now == self._last_ts
            self._last_ts = now

            ts_chars = []
            for _ in range(8):
                ts_chars.append(PUSH_CHARS[now % 64])
                now //= 64
            ts = "".join(reversed(ts_chars))

            if not duplicate:
                self._last_rand = [random.randrange(64) for _ in range(12)]
            else:
                i = 11
                while i >= 0 and self._last_rand[i] == 63:
                    self._last_rand[i] = 0
                    i -= 1
                if i >= 0:
                    self._last_rand[i] += 1
            return ts + "".join(PUSH_CHARS[n] for n in self._last_rand)


def split_path(path: str) -> List[str]:
    parts = [p for p in str(path).strip("/").split("/") if p]
    if not parts:
        raise ValueError("Store paths need at least one segment")
    return parts


def _overlaps(a: List[str], b: List[str]) -> bool:
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class Store:
    """Listener registry and public API shared by every backend.

    Backends implement ``_read``, ``_write``, ``_merge`` and ``_delete`` on
    already-split paths.
    """

    backend_errors: Tuple[type, ...] = ()

    def __init__(self):
        self._listeners: Dict[int, Tuple[List[str], Listener]] = {}
        self._next_token = 0
        self._lock = threading.RLock()
        self.new_id = PushIdGenerator()

    # -------------------- backend primitives -------------------- #

    def _read(self, parts: List[str]) -> Any:
        raise NotImplementedError

    def _write(self, parts: List[str], value: Any) -> None:
        raise NotImplementedError

    def _delete(self, parts: List[str]) -> None:
        raise NotImplementedError

    def _merge(self, parts: List[str], partial: Dict[str, Any]) -> None:
        current = self._read(parts)
        if current is not None and not isinstance(current, dict):
            raise StoreOperationError(f"Cannot update non-object value at {'/'.join(parts)}")
        merged = dict(current or {})
        for key, value in partial.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = copy.deepcopy(value)
        if merged:
            self._write(parts, merged)
        else:
            self._delete(parts)

    @contextmanager
    def _guard(self, op: str, path: str):
        try:
            yield
        except self.backend_errors as e:
            raise StoreOperationError(f"{op} {path} failed: {e}") from e

    # -------------------- public API -------------------- #

    def get(self, path: str) -> Any:
        parts = split_path(path)
        with self._guard("get", path), self._lock:
            return copy.deepcopy(self._read(parts))

    def listen(self, path: str, callback: Listener) -> Callable[[], None]:
        parts = split_path(path)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = (parts, callback)
        logger.debug("listener %s attached to %s", token, path)

        def unsubscribe():
            with self._lock:
                self._listeners.pop(token, None)
            logger.debug("listener %s detached from %s", token, path)

        try:
            callback(self.get(path))
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        with self._guard("set", path), self._lock:
            if value is None or value == {}:
                self._delete(parts)
            else:
                self._write(parts, copy.deepcopy(value))
        self._notify(parts)

    def push(self, path: str, value: Any) -> str:
        parts = split_path(path)
        key = self.new_id()
        with self._guard("push", path), self._lock:
            self._write(parts + [key], copy.deepcopy(value))
        self._notify(parts + [key])
        return key

    def update(self, path: str, partial: Dict[str, Any]) -> None:
        parts = split_path(path)
        if not partial:
            return
        with self._guard("update", path), self._lock:
            self._merge(parts, partial)
        self._notify(parts)

    def remove(self, path: str) -> None:
        parts = split_path(path)
        with self._guard("remove", path), self._lock:
            self._delete(parts)
        self._notify(parts)

    def _notify(self, changed: List[str]) -> None:
        with self._lock:
            targets = [(token, parts, cb) for token, (parts, cb) in self._listeners.items()
                       if _overlaps(parts, changed)]
        for token, parts, cb in targets:
            if token not in self._listeners:
                continue
            snapshot = self.get("/".join(parts))
            try:
                cb(snapshot)
            except Exception:
                logger.exception("listener on %s failed", "/".join(parts))


class MemoryStore(Store):
    """In-process dict tree. Empty parents are pruned on delete."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._root: Dict[str, Any] = copy.deepcopy(data) if data else {}

    def _read(self, parts):
        node = self._root
        for p in parts:
            if not isinstance(node, dict) or p not in node:
                return None
            node = node[p]
        return node

    def _write(self, parts, value):
        node = self._root
        for p in parts[:-1]:
            child = node.get(p)
            if not isinstance(child, dict):
                child = {}
                node[p] = child
            node = child
        node[parts[-1]] = value

    def _delete(self, parts):
        chain = [self._root]
        node = self._root
        for p in parts[:-1]:
            node = node.get(p) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                return
            chain.append(node)
        chain[-1].pop(parts[-1], None)
        for i in range(len(parts) - 2, -1, -1):
            if chain[i].get(parts[i]) == {}:
                chain[i].pop(parts[i])
            else:
                break


class MongoStore(Store):
    """pymongo backend.

    collection = first segment, document ``_id`` = second segment, deeper
    segments become dotted field paths inside that document.
    """

    backend_errors = (PyMongoError,)

    def __init__(self, url: Optional[str] = None, name: str = "school_portal", client=None):
        super().__init__()
        self.client = client or MongoClient(url)
        self.db = self.client[name]

    def _read(self, parts):
        coll = self.db[parts[0]]
        if len(parts) == 1:
            docs = {}
            for doc in coll.find():
                key = str(doc.pop("_id"))
                docs[key] = doc
            return docs or None
        node = coll.find_one({"_id": parts[1]})
        if node is None:
            return None
        node.pop("_id", None)
        for p in parts[2:]:
            if not isinstance(node, dict) or p not in node:
                return None
            node = node[p]
        return node

    def _write(self, parts, value):
        coll = self.db[parts[0]]
        if len(parts) == 1:
            if not isinstance(value, dict) or not all(isinstance(v, dict) for v in value.values()):
                raise StoreOperationError(f"Collection {parts[0]} only holds object records")
            coll.delete_many({})
            coll.insert_many([{**v, "_id": k} for k, v in value.items()])
        elif len(parts) == 2:
            if not isinstance(value, dict):
                raise StoreOperationError(f"Record {'/'.join(parts)} must be an object")
            coll.replace_one({"_id": parts[1]}, value, upsert=True)
        else:
            coll.update_one({"_id": parts[1]}, {"$set": {".".join(parts[2:]): value}}, upsert=True)

    def _merge(self, parts, partial):
        if len(parts) == 1:
            for key, value in partial.items():
                if value is None:
                    self._delete(parts + [key])
                else:
                    self._write(parts + [key], value)
            return
        prefix = ".".join(parts[2:])
        sets, unsets = {}, {}
        for key, value in partial.items():
            field = f"{prefix}.{key}" if prefix else key
            if value is None:
                unsets[field] = ""
            else:
                sets[field] = value
        update: Dict[str, Any] = {}
        if sets:
            update["$set"] = sets
        if unsets:
            update["$unset"] = unsets
        coll = self.db[parts[0]]
        coll.update_one({"_id": parts[1]}, update, upsert=True)
        self._prune(coll, parts[1])

    def _delete(self, parts):
        coll = self.db[parts[0]]
        if len(parts) == 1:
            coll.drop()
        elif len(parts) == 2:
            coll.delete_one({"_id": parts[1]})
        else:
            coll.update_one({"_id": parts[1]}, {"$unset": {".".join(parts[2:]): ""}})
            self._prune(coll, parts[1])

    @staticmethod
    def _prune(coll, doc_id):
        doc = coll.find_one({"_id": doc_id})
        if doc is not None and set(doc) == {"_id"}:
            coll.delete_one({"_id": doc_id})


def get_store(config=None) -> Store:
    config = config or get_config()
    if config.STORE_BACKEND == "mongo":
        if not config.DATABASE_URL:
            raise RuntimeError("DATABASE_URL not found. Set it in .env")
        logger.info("Using MongoDB store %s", config.DATABASE_NAME)
        return MongoStore(config.DATABASE_URL, config.DATABASE_NAME)
    logger.info("Using in-memory store")
    return MemoryStore()


db = get_store()


def create_document(store: Store, collection_name: str, data) -> str:
    """Push a record, stamping ``createdAt`` when the payload has none."""
    if isinstance(data, BaseModel):
        payload = data.model_dump(by_alias=True, exclude_none=True)
    else:
        payload = dict(data)
    payload.pop("id", None)
    payload.setdefault("createdAt", now_iso())
    return store.push(collection_name, payload)


def get_documents(store: Store, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    docs = materialize(store.get(collection_name))
    if filter_dict:
        docs = [d for d in docs if all(d.get(k) == v for k, v in filter_dict.items())]
    if limit:
        docs = docs[:limit]
    return docs
