"""
Persistence adapters for users, rooms and messages.

All methods are blocking pymongo calls; async callers go through
run_in_threadpool.
"""
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

import bcrypt
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, require
from schemas import CreateRoomEvent, Message, RegisterUser, Room, SendMessageEvent, UpdateUser, User

logger = logging.getLogger(__name__)

USER_FIELDS = {"name": 1, "email": 1, "avatarImage": 1}


class EmailTaken(Exception):
    pass


class InvalidCredentials(Exception):
    pass


class UserNotFound(Exception):
    pass


# -----------------------------
# Utilities
# -----------------------------

def serialize_doc(doc: dict):
    if not doc:
        return doc
    doc = dict(doc)
    if doc.get("_id"):
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def serialize_list(docs: List[dict]):
    return [serialize_doc(d) for d in docs]


def user_summary(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "avatarImage": doc.get("avatarImage"),
    }


def _secret(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return password.encode("utf-8")[:72]


# -----------------------------
# Users
# -----------------------------

class UserStore:
    def __init__(self, database, rounds: Optional[int] = None):
        self._db = database
        self._rounds = rounds or int(os.getenv("BCRYPT_ROUNDS", "10"))

    @property
    def collection(self):
        return require(self._db).user

    def list_users(self) -> List[dict]:
        return [user_summary(doc) for doc in self.collection.find({}, USER_FIELDS)]

    def register(self, payload: RegisterUser) -> dict:
        if self.collection.find_one({"email": payload.email}):
            raise EmailTaken(payload.email)

        hashed = bcrypt.hashpw(_secret(payload.password), bcrypt.gensalt(self._rounds))
        user = User(
            name=payload.name,
            email=payload.email,
            password=hashed.decode("ascii"),
            avatar_image=payload.avatar_image,
        )
        try:
            user_id = create_document("user", user.to_wire(), database=self._db)
        except DuplicateKeyError:
            raise EmailTaken(payload.email)
        logger.info("Registered user %s", user_id)
        return {"id": user_id, "name": user.name, "email": user.email, "avatarImage": user.avatar_image}

    def authenticate(self, email: str, password: str) -> dict:
        doc = self.collection.find_one({"email": email})
        if not doc or not bcrypt.checkpw(_secret(password), doc["password"].encode("ascii")):
            raise InvalidCredentials(email)
        return user_summary(doc)

    def get(self, user_id: str) -> Optional[dict]:
        docs = get_documents("user", {"_id": ObjectId(user_id)}, limit=1, database=self._db)
        return user_summary(docs[0]) if docs else None

    def update(self, user_id: str, payload: UpdateUser) -> dict:
        changes = payload.model_dump(by_alias=True, exclude_unset=True)
        changes["updated_at"] = datetime.now(timezone.utc)
        doc = self.collection.find_one_and_update(
            {"_id": ObjectId(user_id)},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise UserNotFound(user_id)
        return user_summary(doc)


# -----------------------------
# Rooms
# -----------------------------

class RoomDirectory:
    def __init__(self, database):
        self._db = database

    @property
    def collection(self):
        return require(self._db).room

    def create(self, payload: CreateRoomEvent) -> dict:
        """Persist a room; the creator is always a member and the only admin."""
        room = Room(
            name=payload.name,
            type=payload.type,
            avatar=payload.avatar,
            creator=payload.creator,
            members=list(dict.fromkeys([payload.creator, *payload.members])),
            admins=[payload.creator],
        )
        room_id = create_document("room", room, database=self._db)
        logger.info("Created %s %s with %d members", room.type, room_id, len(room.members))
        return {"id": room_id, **room.model_dump()}

    def list_for_user(self, user_id: str) -> List[dict]:
        docs = get_documents("room", {"members": user_id}, database=self._db)
        return [
            {k: v for k, v in doc.items() if k not in ("created_at", "updated_at")}
            for doc in serialize_list(docs)
        ]

    def room_ids_for_user(self, user_id: str) -> List[str]:
        return [str(doc["_id"]) for doc in self.collection.find({"members": user_id}, {"_id": 1})]

    def remove_member(self, room_id: str, user_id: str) -> bool:
        """Drop the user from members and admins.

        False when the room does not exist or the user was not a member.
        """
        result = self.collection.update_one(
            {"_id": ObjectId(room_id), "members": user_id},
            {"$pull": {"members": user_id, "admins": user_id}},
        )
        return result.modified_count > 0


# -----------------------------
# Messages
# -----------------------------

class MessageLog:
    def __init__(self, database):
        self._db = database

    @property
    def collection(self):
        return require(self._db).message

    def append(self, payload: SendMessageEvent) -> dict:
        message = Message(
            sender=payload.sender,
            receiver=payload.receiver,
            text=payload.text,
            file=payload.file,
            type=payload.type,
            is_room=payload.is_room,
            time=datetime.now(timezone.utc),
        )
        message_id = create_document("message", message.to_wire(), database=self._db)
        return {"id": message_id, **message.to_wire()}

    def delete_conversation(self, user_a: str, user_b: str) -> int:
        """Delete every direct message between the two users, in either direction."""
        result = self.collection.delete_many({
            "isRoom": {"$ne": True},
            "$or": [
                {"sender": user_a, "receiver": user_b},
                {"sender": user_b, "receiver": user_a},
            ],
        })
        return result.deleted_count
