"""
Typed datafeed events.

The payload of an event is one of a closed set of models, selected from the
event kind through ``PAYLOAD_TYPES``. Events of a kind outside that set are
dropped at decoding time.
"""
import html
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

_TAG = re.compile(r"<[^>]+>")
_SPACES = re.compile(r"\s+")


class EventKind(str, Enum):
    MESSAGE_SENT = "MESSAGESENT"
    MESSAGE_SUPPRESSED = "MESSAGESUPPRESSED"
    ELEMENTS_ACTION = "SYMPHONYELEMENTSACTION"
    SHARED_POST = "SHAREDPOST"
    INSTANT_MESSAGE_CREATED = "INSTANTMESSAGECREATED"
    ROOM_CREATED = "ROOMCREATED"
    ROOM_UPDATED = "ROOMUPDATED"
    USER_JOINED_ROOM = "USERJOINEDROOM"
    USER_LEFT_ROOM = "USERLEFTROOM"
    CONNECTION_REQUESTED = "CONNECTIONREQUESTED"
    CONNECTION_ACCEPTED = "CONNECTIONACCEPTED"
    MESSAGE_REACTION = "MESSAGEREACTION"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Initiator(_WireModel):
    user_id: int = Field(alias="userId")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    username: Optional[str] = None


class Stream(_WireModel):
    stream_id: str = Field(alias="streamId")
    stream_type: Optional[str] = Field(default=None, alias="streamType")
    room_name: Optional[str] = Field(default=None, alias="roomName")


class Message(_WireModel):
    message_id: str = Field(alias="messageId")
    stream: Stream
    message: str = Field(default="", description="PresentationML content")
    timestamp: Optional[int] = None
    data: Optional[str] = None

    @property
    def text(self) -> str:
        """Message content with markup stripped and whitespace collapsed"""
        return _SPACES.sub(" ", html.unescape(_TAG.sub(" ", self.message))).strip()


class MessageSent(_WireModel):
    message: Message


class MessageSuppressed(_WireModel):
    message_id: str = Field(alias="messageId")
    stream: Stream


class ElementsAction(_WireModel):
    stream: Stream
    form_message_id: str = Field(alias="formMessageId")
    form_id: str = Field(alias="formId")
    form_values: Dict[str, Any] = Field(default_factory=dict, alias="formValues")


class SharedPost(_WireModel):
    message: Message
    shared_message: Message = Field(alias="sharedMessage")


class InstantMessageCreated(_WireModel):
    stream: Stream


class RoomCreated(_WireModel):
    stream: Stream


class RoomUpdated(_WireModel):
    stream: Stream


class UserJoinedRoom(_WireModel):
    stream: Stream
    affected_user_id: int = Field(alias="affectedUserId")


class UserLeftRoom(_WireModel):
    stream: Stream
    affected_user_id: int = Field(alias="affectedUserId")


class ConnectionRequested(_WireModel):
    to_user_id: int = Field(alias="toUserId")


class ConnectionAccepted(_WireModel):
    from_user_id: int = Field(alias="fromUserId")


class MessageReaction(_WireModel):
    message_id: str = Field(alias="messageId")
    stream: Stream
    reaction: str
    removed: bool = False


EventPayload = Union[
    MessageSent, MessageSuppressed, ElementsAction, SharedPost, InstantMessageCreated,
    RoomCreated, RoomUpdated, UserJoinedRoom, UserLeftRoom, ConnectionRequested,
    ConnectionAccepted, MessageReaction,
]

# kind -> (key of the payload in the wire envelope, payload model)
PAYLOAD_TYPES: Dict[EventKind, Tuple[str, Type[BaseModel]]] = {
    EventKind.MESSAGE_SENT: ("messageSent", MessageSent),
    EventKind.MESSAGE_SUPPRESSED: ("messageSuppressed", MessageSuppressed),
    EventKind.ELEMENTS_ACTION: ("symphonyElementsAction", ElementsAction),
    EventKind.SHARED_POST: ("sharedPost", SharedPost),
    EventKind.INSTANT_MESSAGE_CREATED: ("instantMessageCreated", InstantMessageCreated),
    EventKind.ROOM_CREATED: ("roomCreated", RoomCreated),
    EventKind.ROOM_UPDATED: ("roomUpdated", RoomUpdated),
    EventKind.USER_JOINED_ROOM: ("userJoinedRoom", UserJoinedRoom),
    EventKind.USER_LEFT_ROOM: ("userLeftRoom", UserLeftRoom),
    EventKind.CONNECTION_REQUESTED: ("connectionRequested", ConnectionRequested),
    EventKind.CONNECTION_ACCEPTED: ("connectionAccepted", ConnectionAccepted),
    EventKind.MESSAGE_REACTION: ("messageReaction", MessageReaction),
}


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


class FeedEvent(_WireModel):
    id: str
    kind: EventKind
    initiator: Initiator
    payload: EventPayload
    timestamp: Optional[int] = None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> Optional["FeedEvent"]:
        """Decode one wire event; returns None for unknown kinds or malformed events"""
        if not isinstance(data, dict):
            logger.warning("Skipping event that is not an object: %r", data)
            return None

        try:
            kind = EventKind(data.get("type"))
        except (ValueError, TypeError):
            logger.warning("Skipping event %s of unsupported type %s", data.get("id"), data.get("type"))
            return None

        key, payload_type = PAYLOAD_TYPES[kind]
        try:
            payload = payload_type.model_validate(_section(data, "payload").get(key) or {})
            initiator = Initiator.model_validate(_section(data, "initiator").get("user") or {})
            return cls(
                id=data["id"],
                kind=kind,
                initiator=initiator,
                payload=payload,
                timestamp=data.get("timestamp"),
            )
        except (KeyError, ValidationError) as e:
            logger.warning("Skipping malformed %s event %s: %s", kind.value, data.get("id"), e)
            return None


class EventBatch(_WireModel):
    ack_id: Optional[str] = Field(default=None, alias="ackId")
    events: List[FeedEvent] = Field(default_factory=list)

    @classmethod
    def from_wire(cls, data: Optional[Dict[str, Any]]) -> "EventBatch":
        if not isinstance(data, dict):
            data = {}
        raw_events = data.get("events")
        if not isinstance(raw_events, list):
            raw_events = []
        events = [FeedEvent.from_wire(raw) for raw in raw_events]
        return cls(ack_id=data.get("ackId"), events=[e for e in events if e is not None])
