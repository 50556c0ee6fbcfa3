"""
Chat rooms, messages and typing indicators on top of the realtime tree.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from realtime import SERVER_TIMESTAMP, RealtimeStore, Snapshot, now_ms
from schemas import Message, Room, parse_snapshot

logger = logging.getLogger(__name__)

ROOMS = "chatRooms"
DELETED_PLACEHOLDER = "This message was deleted"
TYPING_WINDOW_MS = 3000


def _id_list(value) -> List[str]:
    # members/admins are stored as {userId: true} maps
    if isinstance(value, dict):
        return [k for k, v in value.items() if v]
    if isinstance(value, list):
        return list(value)
    return []


def room_from_record(key: str, value: dict) -> Room:
    data = dict(value)
    data["members"] = _id_list(value.get("members"))
    data["admins"] = _id_list(value.get("admins"))
    return Room.model_validate({**data, "id": key})


def message_from_record(key: str, value: dict) -> Message:
    return Message.model_validate({**value, "id": key})


class RoomDirectory:
    def __init__(self, store: RealtimeStore):
        self.store = store

    @staticmethod
    def _build(snapshot: Snapshot, member_id: Optional[str] = None) -> List[Room]:
        rooms = parse_snapshot(snapshot, room_from_record)
        if member_id is not None:
            rooms = [r for r in rooms if member_id in r.members]
        # Rooms without messages fall to the bottom; ties keep key order
        return sorted(rooms, key=lambda r: r.last_message_time or 0, reverse=True)

    def list_rooms(self, member_id: Optional[str] = None) -> List[Room]:
        return self._build(list(self.store.get(ROOMS).items()), member_id)

    def subscribe(self, listener: Callable[[List[Room]], None], member_id: Optional[str] = None):
        """Live room list, newest activity first. Returns the unsubscribe handle."""
        return self.store.subscribe(ROOMS, lambda snapshot: listener(self._build(snapshot, member_id)))

    def get_room(self, room_id: str) -> Optional[Room]:
        value = self.store.get(f"{ROOMS}/{room_id}")
        if value is None:
            return None
        return room_from_record(room_id, value)

    def create_room(
        self,
        name: str,
        created_by: str,
        room_type: str = "group",
        description: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> str:
        # Names are not unique
        return self.store.push(ROOMS, {
            "name": name,
            "description": description,
            "avatar": avatar,
            "type": room_type,
            "members": {created_by: True},
            "admins": {created_by: True},
            "createdAt": SERVER_TIMESTAMP,
            "createdBy": created_by,
        })

    def add_member(self, room_id: str, user_id: str) -> bool:
        return self.store.set(f"{ROOMS}/{room_id}/members/{user_id}", True, create=False)

    def remove_member(self, room_id: str, user_id: str):
        self.store.remove(f"{ROOMS}/{room_id}/members/{user_id}")

    def touch_preview(self, room_id: str, text: str, timestamp: int) -> bool:
        # A room that does not exist is not created from its preview
        return self.store.update(f"{ROOMS}/{room_id}", {
            "lastMessage": text,
            "lastMessageTime": timestamp,
        }, create=False)


class MessageStream:
    """Per-room message log plus the ephemeral typing records.

    Messages are ordered by server timestamp with ties broken by key.
    Typing records older than ``typing_window_ms`` at delivery time are
    ignored, whether or not they were ever cleared.
    """

    def __init__(
        self,
        store: RealtimeStore,
        directory: RoomDirectory,
        clock: Callable[[], int] = now_ms,
        typing_window_ms: int = TYPING_WINDOW_MS,
        auto_clear_ms: Optional[int] = TYPING_WINDOW_MS,
    ):
        self.store = store
        self.directory = directory
        self.clock = clock
        self.typing_window_ms = typing_window_ms
        self.auto_clear_ms = auto_clear_ms
        self._typing_timers: Dict[Tuple[str, str], threading.Timer] = {}
        self._timers_lock = threading.Lock()

    @staticmethod
    def _sorted(snapshot: Snapshot) -> List[Message]:
        messages = parse_snapshot(snapshot, message_from_record)
        return sorted(messages, key=lambda m: m.timestamp)

    def subscribe(self, room_id: str, listener: Callable[[List[Message]], None]):
        return self.store.subscribe(f"messages/{room_id}", lambda snapshot: listener(self._sorted(snapshot)))

    def list_messages(self, room_id: str) -> List[Message]:
        return self._sorted(list(self.store.get(f"messages/{room_id}").items()))

    def get_message(self, room_id: str, message_id: str) -> Optional[Message]:
        value = self.store.get(f"messages/{room_id}/{message_id}")
        if value is None:
            return None
        return message_from_record(message_id, value)

    def send(
        self,
        room_id: str,
        sender_id: str,
        sender_name: str,
        sender_avatar: Optional[str],
        text: str,
        message_type: str = "text",
        image_url: Optional[str] = None,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        path = f"messages/{room_id}"
        message_id = self.store.push(path, {
            "text": text,
            "senderId": sender_id,
            "senderName": sender_name,
            "senderAvatar": sender_avatar,
            "timestamp": SERVER_TIMESTAMP,
            "type": message_type,
            "imageUrl": image_url,
            "fileUrl": file_url,
            "fileName": file_name,
            "replyTo": reply_to,
        })

        # Separate write: the preview may lag or miss, the message stands
        preview = text or file_name or message_type
        try:
            timestamp = self.store.get(f"{path}/{message_id}/timestamp")
            self.directory.touch_preview(room_id, preview, timestamp)
        except PyMongoError:
            logger.warning("Room %s preview not updated for message %s", room_id, message_id, exc_info=True)
        return message_id

    def edit(self, room_id: str, message_id: str, new_text: str) -> bool:
        return self.store.update(
            f"messages/{room_id}/{message_id}", {"text": new_text, "edited": True}, create=False
        )

    def soft_delete(self, room_id: str, message_id: str) -> bool:
        return self.store.update(f"messages/{room_id}/{message_id}", {
            "deleted": True,
            "text": DELETED_PLACEHOLDER,
            "imageUrl": None,
            "fileUrl": None,
            "fileName": None,
        }, create=False)

    # -----------------------------
    # Typing
    # -----------------------------

    def set_typing(self, room_id: str, user_id: str, is_typing: bool):
        self._cancel_timer(room_id, user_id)
        path = f"typing/{room_id}/{user_id}"
        if not is_typing:
            self.store.remove(path)
            return
        self.store.set(path, {"timestamp": SERVER_TIMESTAMP})
        if self.auto_clear_ms:
            self._arm_timer(room_id, user_id)

    def typing_users(self, snapshot: Snapshot, exclude_user: Optional[str] = None) -> List[str]:
        now = self.clock()
        return [
            user_id for user_id, value in snapshot
            if user_id != exclude_user and now - value.get("timestamp", 0) < self.typing_window_ms
        ]

    def subscribe_typing(
        self,
        room_id: str,
        listener: Callable[[List[str]], None],
        exclude_user: Optional[str] = None,
    ):
        """Live list of users typing in a room, optionally without the viewer."""
        return self.store.subscribe(
            f"typing/{room_id}", lambda snapshot: listener(self.typing_users(snapshot, exclude_user))
        )

    def current_typing(self, room_id: str, exclude_user: Optional[str] = None) -> List[str]:
        return self.typing_users(list(self.store.get(f"typing/{room_id}").items()), exclude_user)

    def _arm_timer(self, room_id: str, user_id: str):
        timer = threading.Timer(self.auto_clear_ms / 1000.0, lambda: self._expire_typing(room_id, user_id, timer))
        timer.daemon = True
        with self._timers_lock:
            self._typing_timers[(room_id, user_id)] = timer
        timer.start()

    def _cancel_timer(self, room_id: str, user_id: str):
        with self._timers_lock:
            timer = self._typing_timers.pop((room_id, user_id), None)
        if timer is not None:
            timer.cancel()

    def _expire_typing(self, room_id: str, user_id: str, timer: threading.Timer):
        with self._timers_lock:
            if self._typing_timers.get((room_id, user_id)) is not timer:
                return
            del self._typing_timers[(room_id, user_id)]
        try:
            self.store.remove(f"typing/{room_id}/{user_id}")
        except PyMongoError:
            logger.warning("Could not clear typing for %s in %s", user_id, room_id, exc_info=True)

    def close(self):
        with self._timers_lock:
            timers = list(self._typing_timers.values())
            self._typing_timers.clear()
        for timer in timers:
            timer.cancel()
