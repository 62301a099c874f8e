from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UserStatus(str, Enum):
    FOCUSED = "focused"
    BREAK = "break"
    AWAY = "away"


class TimerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class TimerMode(str, Enum):
    STUDY = "study"
    BREAK = "break"


class MessageType(str, Enum):
    USER = "user"
    SYSTEM = "system"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class Snapshot(BaseModel):
    """Detached copy of a stored row. Serialized to the wire in camelCase."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=AliasGenerator(serialization_alias=to_camel),
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class User(Snapshot):
    id: int
    username: str
    socket_id: Optional[str] = None
    room_id: Optional[str] = None
    status: UserStatus = UserStatus.FOCUSED
    is_host: bool = False


class Room(Snapshot):
    id: str
    name: str
    topic: Optional[str] = None
    timer_state: TimerState = TimerState.STOPPED
    timer_mode: TimerMode = TimerMode.STUDY
    timer_end_time: Optional[UtcDateTime] = None
    study_duration: Optional[int] = None
    break_duration: Optional[int] = None


class Message(Snapshot):
    id: int
    room_id: str
    user_id: Optional[int] = None
    username: Optional[str] = None
    text: str
    type: MessageType = MessageType.USER
    timestamp: UtcDateTime


# Inbound protocol

InboundType = Literal[
    "create_room",
    "join_room",
    "leave_room",
    "chat_message",
    "status_change",
    "timer_start",
    "timer_pause",
    "timer_reset",
    "timer_toggle_mode",
    "pong",
]


class WSMessage(BaseModel):
    type: InboundType
    payload: Any = None


class Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class CreateRoomPayload(Payload):
    nickname: str = Field(min_length=1)
    room_name: str = Field(min_length=1)
    room_topic: Optional[str] = None


class JoinRoomPayload(Payload):
    nickname: str = Field(min_length=1)
    room_id: str


class ChatMessagePayload(Payload):
    model_config = ConfigDict(str_strip_whitespace=False)

    # emptiness is a business rule, checked by the coordinator
    text: str = ""


class StatusChangePayload(Payload):
    status: UserStatus


def event(type_: str, **payload) -> dict:
    return {"type": type_, "payload": payload}


def error_event(message: str, details: Any = None) -> dict:
    payload = {"message": message}
    if details is not None:
        payload["details"] = details
    return event("error", **payload)
