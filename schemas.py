"""
Database Schemas for Chat App

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

Request bodies and real-time event payloads live here too. Field names on the
wire are camelCase (avatarImage, isRoom, senderId...), attributes are snake_case.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from database import is_identity_ref, normalize_identity_ref


def _check_identity_ref(value: str) -> str:
    if not is_identity_ref(value):
        raise ValueError("must be a 24 character hex id")
    return normalize_identity_ref(value)


IdentityRef = Annotated[str, AfterValidator(_check_identity_ref)]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# -----------------------------
# Collections
# -----------------------------

class User(WireModel):
    """Users collection schema -> collection name: "user"""
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Login handle, unique")
    password: str = Field(..., description="bcrypt hash, never returned")
    avatar_image: Optional[str] = Field(None, alias="avatarImage", description="Avatar data URL or reference")


class Room(WireModel):
    """Rooms collection schema -> collection name: "room"""
    name: str = Field("", description="Room name")
    type: Literal["group", "channel"] = Field("group", description="group or channel")
    avatar: Optional[str] = Field(None, description="Optional avatar")
    creator: str = Field(..., description="User id of the creator")
    members: List[str] = Field(default_factory=list, description="List of user ids")
    admins: List[str] = Field(default_factory=list, description="List of user ids")


class Message(WireModel):
    """Messages collection schema -> collection name: "message"""
    sender: str = Field(..., description="User id (string)")
    receiver: str = Field(..., description="User id or room id (string)")
    text: Optional[str] = None
    file: Optional[str] = None
    type: str = Field("text", description="Message type: text/file/system")
    is_room: bool = Field(False, alias="isRoom", description="Receiver is a room id")
    time: datetime = Field(..., description="Assigned by the server on append")


# -----------------------------
# Requests (HTTP)
# -----------------------------

class RegisterUser(WireModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    avatar_image: Optional[str] = Field(None, alias="avatarImage")


class LoginUser(WireModel):
    email: str
    password: str


class UpdateUser(WireModel):
    name: Optional[str] = None
    avatar_image: Optional[str] = Field(None, alias="avatarImage")


# -----------------------------
# Real-time events (inbound)
# -----------------------------

class Frame(BaseModel):
    """Envelope of every WebSocket frame: {"event": name, "data": payload}."""
    event: str
    data: Any = None


class JoinEvent(WireModel):
    user_id: IdentityRef = Field(..., alias="userId")

    @model_validator(mode="before")
    @classmethod
    def _bare_id(cls, data):
        if isinstance(data, str):
            return {"userId": data}
        return data


class JoinRoomEvent(WireModel):
    room_id: IdentityRef = Field(..., alias="roomId")

    @model_validator(mode="before")
    @classmethod
    def _bare_id(cls, data):
        if isinstance(data, str):
            return {"roomId": data}
        return data


class ChatRequestEvent(WireModel):
    sender_id: IdentityRef = Field(..., alias="senderId")
    receiver_id: IdentityRef = Field(..., alias="receiverId")


class RespondRequestEvent(WireModel):
    accepted: bool
    sender_id: IdentityRef = Field(..., alias="senderId")
    receiver_name: str = Field(..., alias="receiverName")


class CreateRoomEvent(WireModel):
    name: str = ""
    type: Literal["group", "channel"] = "group"
    avatar: Optional[str] = None
    creator: IdentityRef
    members: List[IdentityRef]


class SendMessageEvent(WireModel):
    sender: IdentityRef
    receiver: IdentityRef
    text: Optional[str] = None
    file: Optional[str] = None
    type: str = "text"
    is_room: bool = Field(False, alias="isRoom")
    sender_name: Optional[str] = Field(None, alias="senderName")


class LeaveRoomEvent(WireModel):
    user_id: IdentityRef = Field(..., alias="userId")
    room_id: IdentityRef = Field(..., alias="roomId")


class DeleteChatEvent(WireModel):
    user_id: IdentityRef = Field(..., alias="userId")
    target_id: IdentityRef = Field(..., alias="targetId")
    is_room: bool = Field(False, alias="isRoom")


class ProfileUpdatedEvent(WireModel):
    """Arbitrary profile delta, forwarded as sent."""
    model_config = ConfigDict(extra="allow")
