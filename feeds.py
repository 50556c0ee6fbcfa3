"""
Notification feed and presence tracking on top of the realtime tree.
"""
from typing import Callable, Iterable, List, Optional

from realtime import SERVER_TIMESTAMP, Query, RealtimeStore, Snapshot, now_ms
from schemas import Notification, Presence, parse_snapshot

NOTIFICATIONS = "notifications"
PRESENCE = "presence"
FEED_LIMIT = 20


def notification_from_record(key: str, value: dict) -> Notification:
    return Notification.model_validate({**value, "id": key})


def presence_from_record(key: str, value: dict) -> Presence:
    return Presence.model_validate({**value, "id": key})


class NotificationFeed:
    """Global feed capped to the newest ``limit`` entries by query.

    Older notifications stay in the store, they are only left out of reads.
    """

    def __init__(self, store: RealtimeStore, limit: int = FEED_LIMIT):
        self.store = store
        self.query = Query(order_by_child="timestamp", limit_to_last=limit)

    @staticmethod
    def _newest_first(snapshot: Snapshot) -> List[Notification]:
        notifications = parse_snapshot(snapshot, notification_from_record)
        notifications.reverse()
        return notifications

    def push(self, title: str, body: str, notification_type: str = "general", created_by: str = "") -> str:
        return self.store.push(NOTIFICATIONS, {
            "title": title,
            "body": body,
            "type": notification_type,
            "createdBy": created_by,
            "timestamp": SERVER_TIMESTAMP,
            "readBy": {},
        })

    def subscribe(self, listener: Callable[[List[Notification]], None]):
        return self.store.subscribe(
            NOTIFICATIONS, lambda snapshot: listener(self._newest_first(snapshot)), self.query
        )

    def list_notifications(self) -> List[Notification]:
        return self._newest_first(list(self.store.get(NOTIFICATIONS, self.query).items()))

    def get(self, notification_id: str) -> Optional[Notification]:
        value = self.store.get(f"{NOTIFICATIONS}/{notification_id}")
        if value is None:
            return None
        return notification_from_record(notification_id, value)

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        # Unknown notifications stay unknown
        return self.store.set(f"{NOTIFICATIONS}/{notification_id}/readBy/{user_id}", True, create=False)

    def mark_all_read(self, user_id: str) -> int:
        """Mark every delivered notification read for the user, returns how many changed."""
        unread = [n for n in self.list_notifications() if not n.is_read_by(user_id)]
        for notification in unread:
            self.mark_read(notification.id, user_id)
        return len(unread)

    @staticmethod
    def unread_count(notifications: Iterable[Notification], user_id: str) -> int:
        return sum(1 for n in notifications if not n.is_read_by(user_id))


class PresenceTracker:
    """Online flags keyed by user id.

    There is no expiry: a user stays online until set_offline() is called,
    unless a reader passes ``stale_after_ms``.
    """

    def __init__(self, store: RealtimeStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock
        self.query = Query(order_by_child="online", equal_to=True)

    def set_online(self, user_id: str, name: str, avatar: Optional[str] = None):
        self.store.set(f"{PRESENCE}/{user_id}", {
            "online": True,
            "name": name,
            "avatar": avatar or "",
            "lastSeen": SERVER_TIMESTAMP,
        })

    def set_offline(self, user_id: str):
        self.store.update(f"{PRESENCE}/{user_id}", {"online": False, "lastSeen": SERVER_TIMESTAMP})

    def _online(self, snapshot: Snapshot, stale_after_ms: Optional[int]) -> List[Presence]:
        records = parse_snapshot(snapshot, presence_from_record)
        records = [r for r in records if r.online]
        if stale_after_ms is not None:
            now = self.clock()
            records = [r for r in records if now - r.last_seen < stale_after_ms]
        return records

    def subscribe_online(self, listener: Callable[[List[Presence]], None], stale_after_ms: Optional[int] = None):
        return self.store.subscribe(
            PRESENCE, lambda snapshot: listener(self._online(snapshot, stale_after_ms)), self.query
        )

    def list_online(self, stale_after_ms: Optional[int] = None) -> List[Presence]:
        return self._online(list(self.store.get(PRESENCE, self.query).items()), stale_after_ms)

    def get(self, user_id: str) -> Optional[Presence]:
        value = self.store.get(f"{PRESENCE}/{user_id}")
        if value is None:
            return None
        return presence_from_record(user_id, value)
