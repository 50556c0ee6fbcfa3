"""
Realtime tree store backed by MongoDB

The chat layer reads and writes a tree of records addressed by slash paths:

    chatRooms/{roomId}
    messages/{roomId}/{messageId}
    typing/{roomId}/{userId}
    notifications/{notificationId}
    presence/{userId}

Each root is a MongoDB collection and each record is one document
{"_id": "<key path>", "parent": "<parent key path>", "value": {...}}.
A path one level above a record addresses a list of records (this is what
subscriptions watch); a path below a record addresses a field inside it.

Subscribers always receive the full snapshot of the list they watch, once on
subscribe and again after every write to that list.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

# Number of keys below the root that make up one record id
TREE_LAYOUT = {
    "chatRooms": 1,
    "messages": 2,
    "typing": 2,
    "notifications": 1,
    "presence": 1,
}

# Replaced by the store clock when written
SERVER_TIMESTAMP = {".sv": "timestamp"}

Snapshot = List[Tuple[str, dict]]
Listener = Callable[[Snapshot], None]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Query:
    """Ordering and limits applied by MongoDB when reading a list."""
    order_by_child: Optional[str] = None
    limit_to_last: Optional[int] = None
    equal_to: Any = None


@dataclass(frozen=True)
class Location:
    root: str
    keys: Tuple[str, ...]
    depth: int

    @property
    def path(self) -> str:
        return "/".join((self.root,) + self.keys)

    @property
    def is_list(self) -> bool:
        return len(self.keys) == self.depth - 1

    @property
    def is_record(self) -> bool:
        return len(self.keys) == self.depth

    @property
    def record_id(self) -> str:
        return "/".join(self.keys[:self.depth])

    @property
    def parent_id(self) -> str:
        return "/".join(self.keys[:self.depth - 1])

    @property
    def field(self) -> str:
        return ".".join(self.keys[self.depth:])


class _Subscription:
    def __init__(self, location: Location, listener: Listener, query: Optional[Query]):
        self.location = location
        self.listener = listener
        self.query = query


class RealtimeStore:
    def __init__(self, db, clock: Callable[[], int] = now_ms, layout: Optional[Dict[str, int]] = None):
        self.db = db
        self.clock = clock
        self.layout = dict(layout or TREE_LAYOUT)
        self._subscriptions: List[_Subscription] = []
        # Serializes each write with its fan-out so deliveries follow commit order
        self._lock = threading.RLock()

    # -----------------------------
    # Paths
    # -----------------------------

    def locate(self, path: str) -> Location:
        parts = path.strip("/").split("/")
        if not parts[0]:
            raise ValueError("Empty path")
        for part in parts:
            if not part or "." in part or part.startswith("$"):
                raise ValueError(f"Invalid path segment in {path!r}")
        root = parts[0]
        if root not in self.layout:
            raise ValueError(f"Unknown tree root {root!r}")
        location = Location(root=root, keys=tuple(parts[1:]), depth=self.layout[root])
        if len(location.keys) < location.depth - 1:
            raise ValueError(f"Path {path!r} is above the record list level")
        return location

    def _collection(self, location: Location):
        return self.db[location.root]

    @staticmethod
    def _key(doc: dict) -> str:
        return doc["_id"].rsplit("/", 1)[-1]

    def _resolve(self, value, now: int):
        if value == SERVER_TIMESTAMP:
            return now
        if isinstance(value, dict):
            return {k: self._resolve(v, now) for k, v in value.items() if v is not None}
        if isinstance(value, list):
            return [self._resolve(v, now) for v in value]
        return value

    # -----------------------------
    # Reads
    # -----------------------------

    def get(self, path: str, query: Optional[Query] = None):
        """Value at path: a dict of children for a list, a record, or a field."""
        location = self.locate(path)
        if location.is_list:
            return dict(self._children(location, query))
        doc = self._collection(location).find_one({"_id": location.record_id})
        if doc is None:
            return None
        value = doc.get("value", {})
        for key in location.keys[location.depth:]:
            if not isinstance(value, dict) or key not in value:
                return None
            value = value[key]
        return value

    def _children(self, location: Location, query: Optional[Query]) -> Snapshot:
        criteria: Dict[str, Any] = {"parent": location.parent_id}
        order = [("_id", ASCENDING)]
        if query is not None and query.order_by_child:
            field = "value." + query.order_by_child.replace("/", ".")
            if query.equal_to is not None:
                criteria[field] = query.equal_to
            order = [(field, ASCENDING), ("_id", ASCENDING)]

        cursor = self._collection(location).find(criteria)
        if query is not None and query.limit_to_last:
            docs = list(cursor.sort([(f, DESCENDING) for f, _ in order]).limit(query.limit_to_last))
            docs.reverse()
        else:
            docs = list(cursor.sort(order))
        return [(self._key(doc), doc.get("value", {})) for doc in docs]

    # -----------------------------
    # Writes
    # -----------------------------

    def push(self, path: str, value: dict) -> str:
        """Append a record under a list path and return its generated key."""
        location = self.locate(path)
        if not location.is_list:
            raise ValueError(f"push() needs a list path, got {path!r}")
        key = str(ObjectId())
        self.set(f"{location.path}/{key}", value)
        return key

    def set(self, path: str, value, create: bool = True) -> bool:
        """Write a record or a field. With ``create=False`` a field write to a
        missing record is skipped. Returns whether anything was written."""
        if value is None:
            self.remove(path)
            return True
        location = self.locate(path)
        if location.is_list:
            raise ValueError(f"set() cannot overwrite the list {path!r}")
        with self._lock:
            resolved = self._resolve(value, self.clock())
            collection = self._collection(location)
            if location.is_record:
                if not isinstance(resolved, dict):
                    raise TypeError("Records must be dicts")
                collection.replace_one(
                    {"_id": location.record_id},
                    {"_id": location.record_id, "parent": location.parent_id, "value": resolved},
                    upsert=True,
                )
            else:
                result = collection.update_one(
                    {"_id": location.record_id},
                    {
                        "$set": {"value." + location.field: resolved},
                        "$setOnInsert": {"parent": location.parent_id},
                    },
                    upsert=create,
                )
                if not self._written(result):
                    return False
            self._notify(location)
            return True

    def update(self, path: str, partial: dict, create: bool = True) -> bool:
        """Merge fields into a record; a None value removes that field.

        With ``create=False`` a missing record is left missing instead of
        being created from the partial fields. Returns whether anything was
        written.
        """
        location = self.locate(path)
        if location.is_list:
            raise ValueError(f"update() needs a record path, got {path!r}")
        if not partial:
            return False
        prefix = "value." + location.field if location.field else "value"
        with self._lock:
            now = self.clock()
            sets: Dict[str, Any] = {}
            unsets: Dict[str, str] = {}
            for key, value in partial.items():
                field = f"{prefix}.{key.strip('/').replace('/', '.')}"
                if value is None:
                    unsets[field] = ""
                else:
                    sets[field] = self._resolve(value, now)
            operation: Dict[str, Any] = {"$setOnInsert": {"parent": location.parent_id}}
            if sets:
                operation["$set"] = sets
            if unsets:
                operation["$unset"] = unsets
            result = self._collection(location).update_one(
                {"_id": location.record_id}, operation, upsert=create
            )
            if not self._written(result):
                return False
            self._notify(location)
            return True

    @staticmethod
    def _written(result) -> bool:
        return result.matched_count > 0 or result.upserted_id is not None

    def remove(self, path: str):
        location = self.locate(path)
        with self._lock:
            collection = self._collection(location)
            if location.is_list:
                collection.delete_many({"parent": location.parent_id})
            elif location.is_record:
                collection.delete_one({"_id": location.record_id})
            else:
                collection.update_one(
                    {"_id": location.record_id},
                    {"$unset": {"value." + location.field: ""}},
                )
            self._notify(location)

    # -----------------------------
    # Subscriptions
    # -----------------------------

    def subscribe(self, path: str, listener: Listener, query: Optional[Query] = None) -> Callable[[], None]:
        """Watch a list path. Returns a callable that cancels the subscription."""
        location = self.locate(path)
        if not location.is_list:
            raise ValueError(f"subscribe() needs a list path, got {path!r}")
        subscription = _Subscription(location, listener, query)
        with self._lock:
            self._subscriptions.append(subscription)
            self._deliver(subscription)

        def unsubscribe():
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def _notify(self, location: Location):
        for subscription in list(self._subscriptions):
            watched = subscription.location
            if watched.root == location.root and watched.parent_id == location.parent_id:
                self._deliver(subscription)

    def _deliver(self, subscription: _Subscription):
        try:
            snapshot = self._children(subscription.location, subscription.query)
        except PyMongoError:
            logger.warning("Snapshot read failed for %s", subscription.location.path, exc_info=True)
            snapshot = []
        try:
            subscription.listener(snapshot)
        except Exception:
            logger.exception("Listener for %s failed", subscription.location.path)
