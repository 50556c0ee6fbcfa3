"""
Record Schemas for the Chat App

Each Pydantic model mirrors one kind of record in the realtime tree.
Field aliases are the camelCase names stored in the tree and sent to clients.
"""
import logging
from typing import Callable, Dict, Iterable, List, Literal, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

RoomType = Literal["group", "private"]
MessageType = Literal["text", "image", "file"]
NotificationType = Literal["activity", "announcement", "task", "general"]


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class Room(Record):
    """Rooms tree -> chatRooms/{roomId}"""
    id: Optional[str] = None
    name: str = Field(..., description="Room name")
    description: Optional[str] = Field(None, description="Optional description")
    avatar: Optional[str] = Field(None, description="Optional avatar URL")
    type: RoomType = Field("group", description="group or private")
    members: List[str] = Field(default_factory=list, description="Member user ids")
    admins: List[str] = Field(default_factory=list, description="Admin user ids")
    last_message: Optional[str] = Field(None, alias="lastMessage")
    last_message_time: Optional[int] = Field(None, alias="lastMessageTime")
    created_at: int = Field(0, alias="createdAt")
    created_by: str = Field(..., alias="createdBy")


class Message(Record):
    """Messages tree -> messages/{roomId}/{messageId}"""
    id: Optional[str] = None
    text: str = Field("", description="Message text, placeholder once deleted")
    sender_id: str = Field(..., alias="senderId")
    sender_name: str = Field("", alias="senderName")
    sender_avatar: Optional[str] = Field(None, alias="senderAvatar")
    timestamp: int = Field(0, description="Server time in ms")
    type: MessageType = "text"
    image_url: Optional[str] = Field(None, alias="imageUrl")
    file_url: Optional[str] = Field(None, alias="fileUrl")
    file_name: Optional[str] = Field(None, alias="fileName")
    reply_to: Optional[str] = Field(None, alias="replyTo")
    edited: bool = False
    deleted: bool = False


class Notification(Record):
    """Notifications tree -> notifications/{notificationId}"""
    id: Optional[str] = None
    title: str
    body: str = ""
    type: NotificationType = "general"
    created_by: str = Field("", alias="createdBy")
    timestamp: int = 0
    read_by: Dict[str, bool] = Field(default_factory=dict, alias="readBy")

    def is_read_by(self, user_id: str) -> bool:
        return bool(self.read_by.get(user_id))


class Presence(Record):
    """Presence tree -> presence/{userId}"""
    id: str
    online: bool = False
    name: Optional[str] = None
    avatar: Optional[str] = None
    last_seen: int = Field(0, alias="lastSeen")


RecordT = TypeVar("RecordT", bound=Record)


def parse_snapshot(
    snapshot: Iterable[Tuple[str, dict]],
    parse: Callable[[str, dict], RecordT],
) -> List[RecordT]:
    """Build records from a snapshot, leaving out any that fail validation."""
    records = []
    for key, value in snapshot:
        try:
            records.append(parse(key, value))
        except ValidationError:
            logger.warning("Skipping malformed record %s", key, exc_info=True)
    return records
