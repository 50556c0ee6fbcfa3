import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

import database
from chat import MessageStream, RoomDirectory
from feeds import NotificationFeed, PresenceTracker
from realtime import RealtimeStore, now_ms
from schemas import MessageType, NotificationType, RoomType

logger = logging.getLogger(__name__)


class ChatServices:
    """The realtime store and the four services built on it."""

    def __init__(self, db, clock: Callable[[], int] = now_ms):
        self.store = RealtimeStore(db, clock=clock)
        self.rooms = RoomDirectory(self.store)
        self.messages = MessageStream(self.store, self.rooms, clock=clock)
        self.notifications = NotificationFeed(self.store)
        self.presence = PresenceTracker(self.store, clock=clock)

    def close(self):
        self.messages.close()


router = APIRouter()


def get_chat(request: Request) -> ChatServices:
    return request.app.state.chat


# -----------------------------
# Utilities
# -----------------------------

def serialize_list(records: list) -> List[dict]:
    return [r.to_json() for r in records]


def check_key(value: str, label: str) -> str:
    # Ids become tree keys
    if not value or "." in value or "/" in value or value.startswith("$"):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return value


def require_room(chat: ChatServices, room_id: str):
    room = chat.rooms.get_room(check_key(room_id, "room id"))
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


def require_message(chat: ChatServices, room_id: str, message_id: str):
    require_room(chat, room_id)
    message = chat.messages.get_message(room_id, check_key(message_id, "message id"))
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


def require_notification(chat: ChatServices, notification_id: str):
    notification = chat.notifications.get(check_key(notification_id, "notification id"))
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


# -----------------------------
# Root & Health
# -----------------------------

@router.get("/")
def read_root():
    return {"message": "Chat API is running"}


@router.get("/test")
def test_database(chat: ChatServices = Depends(get_chat)):
    response = {"backend": "✅ Running"}
    response.update(database.describe(chat.store.db))
    response["subscriptions"] = chat.store.subscription_count
    return response


# -----------------------------
# Schemas (Requests)
# -----------------------------

class CreateRoom(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    created_by: str
    type: RoomType = "group"
    description: Optional[str] = None
    avatar: Optional[str] = None


class RoomMember(BaseModel):
    user_id: str


class SendMessage(BaseModel):
    sender_id: str
    sender_name: str = ""
    sender_avatar: Optional[str] = None
    text: str = Field("", max_length=5000)
    type: MessageType = "text"
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    reply_to: Optional[str] = None


class EditMessage(BaseModel):
    text: str = Field(..., max_length=5000)


class SetTyping(BaseModel):
    is_typing: bool


class PushNotification(BaseModel):
    title: str = Field(..., min_length=1)
    body: str = ""
    type: NotificationType = "general"
    created_by: str = ""


class ReadBy(BaseModel):
    user_id: str


class SetOnline(BaseModel):
    name: str
    avatar: Optional[str] = None


# -----------------------------
# Rooms
# -----------------------------

@router.get("/api/rooms")
def list_rooms(member_id: Optional[str] = None, chat: ChatServices = Depends(get_chat)):
    return serialize_list(chat.rooms.list_rooms(member_id))


@router.post("/api/rooms")
def create_room(payload: CreateRoom, chat: ChatServices = Depends(get_chat)):
    check_key(payload.created_by, "user id")
    try:
        room_id = chat.rooms.create_room(
            payload.name.strip(),
            payload.created_by,
            room_type=payload.type,
            description=payload.description,
            avatar=payload.avatar,
        )
    except PyMongoError:
        logger.exception("Room creation failed")
        raise HTTPException(status_code=503, detail="Failed to create room")
    return chat.rooms.get_room(room_id).to_json()


@router.get("/api/rooms/{room_id}")
def get_room(room_id: str, chat: ChatServices = Depends(get_chat)):
    return require_room(chat, room_id).to_json()


@router.post("/api/rooms/{room_id}/members")
def add_member(room_id: str, payload: RoomMember, chat: ChatServices = Depends(get_chat)):
    require_room(chat, room_id)
    chat.rooms.add_member(room_id, check_key(payload.user_id, "user id"))
    return chat.rooms.get_room(room_id).to_json()


@router.delete("/api/rooms/{room_id}/members/{user_id}")
def remove_member(room_id: str, user_id: str, chat: ChatServices = Depends(get_chat)):
    require_room(chat, room_id)
    chat.rooms.remove_member(room_id, check_key(user_id, "user id"))
    return chat.rooms.get_room(room_id).to_json()


# -----------------------------
# Messages
# -----------------------------

@router.get("/api/rooms/{room_id}/messages")
def get_messages(room_id: str, chat: ChatServices = Depends(get_chat)):
    require_room(chat, room_id)
    return serialize_list(chat.messages.list_messages(room_id))


@router.post("/api/rooms/{room_id}/messages")
def send_message(room_id: str, payload: SendMessage, chat: ChatServices = Depends(get_chat)):
    require_room(chat, room_id)
    check_key(payload.sender_id, "user id")

    text = payload.text.strip()
    if payload.type == "text" and not text:
        raise HTTPException(status_code=400, detail="Text required for text messages")
    if payload.type == "image" and not payload.image_url:
        raise HTTPException(status_code=400, detail="image_url required for image messages")
    if payload.type == "file" and not payload.file_url:
        raise HTTPException(status_code=400, detail="file_url required for file messages")

    try:
        message_id = chat.messages.send(
            room_id,
            payload.sender_id,
            payload.sender_name,
            payload.sender_avatar,
            text,
            message_type=payload.type,
            image_url=payload.image_url,
            file_url=payload.file_url,
            file_name=payload.file_name,
            reply_to=payload.reply_to,
        )
    except PyMongoError:
        logger.exception("Sending message to room %s failed", room_id)
        raise HTTPException(status_code=503, detail="Failed to send message")

    try:
        chat.messages.set_typing(room_id, payload.sender_id, False)
    except PyMongoError:
        logger.warning("Typing not cleared for %s in %s", payload.sender_id, room_id, exc_info=True)
    return chat.messages.get_message(room_id, message_id).to_json()


@router.patch("/api/rooms/{room_id}/messages/{message_id}")
def edit_message(room_id: str, message_id: str, payload: EditMessage, chat: ChatServices = Depends(get_chat)):
    message = require_message(chat, room_id, message_id)
    if message.deleted:
        raise HTTPException(status_code=409, detail="Deleted messages cannot be edited")
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Text required")
    chat.messages.edit(room_id, message_id, text)
    return chat.messages.get_message(room_id, message_id).to_json()


@router.delete("/api/rooms/{room_id}/messages/{message_id}")
def delete_message(room_id: str, message_id: str, chat: ChatServices = Depends(get_chat)):
    require_message(chat, room_id, message_id)
    chat.messages.soft_delete(room_id, message_id)
    return chat.messages.get_message(room_id, message_id).to_json()


# -----------------------------
# Typing
# -----------------------------

@router.put("/api/rooms/{room_id}/typing/{user_id}")
def set_typing(room_id: str, user_id: str, payload: SetTyping, chat: ChatServices = Depends(get_chat)):
    require_room(chat, room_id)
    chat.messages.set_typing(room_id, check_key(user_id, "user id"), payload.is_typing)
    return {"typing": chat.messages.current_typing(room_id)}


@router.get("/api/rooms/{room_id}/typing")
def get_typing(room_id: str, exclude_user: Optional[str] = None, chat: ChatServices = Depends(get_chat)):
    require_room(chat, room_id)
    return {"typing": chat.messages.current_typing(room_id, exclude_user)}


# -----------------------------
# Notifications
# -----------------------------

@router.get("/api/notifications")
def list_notifications(chat: ChatServices = Depends(get_chat)):
    return serialize_list(chat.notifications.list_notifications())


@router.post("/api/notifications")
def push_notification(payload: PushNotification, chat: ChatServices = Depends(get_chat)):
    try:
        notification_id = chat.notifications.push(
            payload.title.strip(), payload.body, payload.type, payload.created_by
        )
    except PyMongoError:
        logger.exception("Notification push failed")
        raise HTTPException(status_code=503, detail="Failed to send notification")
    return chat.notifications.get(notification_id).to_json()


@router.get("/api/notifications/unread-count")
def unread_count(user_id: str, chat: ChatServices = Depends(get_chat)):
    notifications = chat.notifications.list_notifications()
    return {"user_id": user_id, "unread": chat.notifications.unread_count(notifications, user_id)}


@router.post("/api/notifications/read-all")
def mark_all_read(payload: ReadBy, chat: ChatServices = Depends(get_chat)):
    marked = chat.notifications.mark_all_read(check_key(payload.user_id, "user id"))
    return {"ok": True, "marked": marked}


@router.post("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, payload: ReadBy, chat: ChatServices = Depends(get_chat)):
    require_notification(chat, notification_id)
    chat.notifications.mark_read(notification_id, check_key(payload.user_id, "user id"))
    return chat.notifications.get(notification_id).to_json()


# -----------------------------
# Presence
# -----------------------------

@router.get("/api/presence")
def list_online(stale_after_ms: Optional[int] = None, chat: ChatServices = Depends(get_chat)):
    return serialize_list(chat.presence.list_online(stale_after_ms))


@router.put("/api/presence/{user_id}")
def set_online(user_id: str, payload: SetOnline, chat: ChatServices = Depends(get_chat)):
    chat.presence.set_online(check_key(user_id, "user id"), payload.name, payload.avatar)
    return chat.presence.get(user_id).to_json()


@router.delete("/api/presence/{user_id}")
def set_offline(user_id: str, chat: ChatServices = Depends(get_chat)):
    chat.presence.set_offline(check_key(user_id, "user id"))
    return chat.presence.get(user_id).to_json()


# -----------------------------
# Live subscriptions
# -----------------------------

def _to_payload(items: list) -> list:
    return [item if isinstance(item, str) else item.to_json() for item in items]


async def _send_snapshots(websocket: WebSocket, queue: asyncio.Queue):
    while True:
        payload = await queue.get()
        await websocket.send_json(payload)


async def stream_snapshots(websocket: WebSocket, subscribe: Callable):
    """Forward every snapshot of a subscription until the client goes away."""
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def deliver(items):
        # Called from whichever thread committed the write
        loop.call_soon_threadsafe(queue.put_nowait, _to_payload(items))

    unsubscribe = await run_in_threadpool(subscribe, deliver)
    sender = asyncio.create_task(_send_snapshots(websocket, queue))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        unsubscribe()
        sender.cancel()
        # Collect the sender, which may already have died on a failed send
        with suppress(asyncio.CancelledError, Exception):
            await sender


@router.websocket("/ws/rooms")
async def watch_rooms(websocket: WebSocket, member_id: Optional[str] = None):
    chat = websocket.app.state.chat
    await stream_snapshots(websocket, lambda deliver: chat.rooms.subscribe(deliver, member_id))


@router.websocket("/ws/rooms/{room_id}/messages")
async def watch_messages(websocket: WebSocket, room_id: str):
    chat = websocket.app.state.chat
    await stream_snapshots(websocket, lambda deliver: chat.messages.subscribe(room_id, deliver))


@router.websocket("/ws/rooms/{room_id}/typing")
async def watch_typing(websocket: WebSocket, room_id: str, exclude_user: Optional[str] = None):
    chat = websocket.app.state.chat
    await stream_snapshots(
        websocket, lambda deliver: chat.messages.subscribe_typing(room_id, deliver, exclude_user)
    )


@router.websocket("/ws/notifications")
async def watch_notifications(websocket: WebSocket):
    chat = websocket.app.state.chat
    await stream_snapshots(websocket, chat.notifications.subscribe)


@router.websocket("/ws/presence")
async def watch_presence(websocket: WebSocket, stale_after_ms: Optional[int] = None):
    chat = websocket.app.state.chat
    await stream_snapshots(websocket, lambda deliver: chat.presence.subscribe_online(deliver, stale_after_ms))


# -----------------------------
# Application
# -----------------------------

def create_app(db=None, clock: Callable[[], int] = now_ms) -> FastAPI:
    """Build the API. Without ``db`` a MongoDB connection is opened on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        connection = None
        handle = db
        if handle is None:
            connection = database.Connection()
            handle = connection.open()
        app.state.chat = ChatServices(handle, clock=clock)
        try:
            yield
        finally:
            app.state.chat.close()
            if connection is not None:
                connection.close()

    app = FastAPI(title="Chat App API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
