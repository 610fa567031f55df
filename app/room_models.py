"""
Pydantic models for the room event protocol.

Inbound frames are validated into one variant of a tagged union keyed on
`type`; anything that does not fit is rejected here, before it reaches the
room coordinator.
"""
import logging
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from typing import Annotated, Dict, List, Literal, Optional, Union

import settings

logger = logging.getLogger(__name__)

# Outbound event names
MEMBER_LIST = "member-list"
OWNER_CHANGED = "owner-changed"
CODE_UPDATE = "code-update"
LANGUAGE_UPDATE = "language-update"
USER_TYPING = "user-typing"
CHAT_MESSAGE = "chat-message"
COMMIT_LIST = "commit-list"
SYNC_SNAPSHOT = "sync-snapshot"
CURSOR_UPDATE = "cursor-update"
RESTORE_FAILED = "restore-failed"
SHARE_LINK = "share-link"
SHARED_CODE_LOADED = "shared-code-loaded"
SHARED_CODE_ERROR = "shared-code-error"
ERROR = "error"

Language = Annotated[str, Field(min_length=1, max_length=32)]
Identity = Annotated[str, Field(min_length=1, max_length=settings.MAX_NAME_LENGTH)]
Code = Annotated[str, Field(max_length=settings.MAX_CODE_SIZE)]


class RoomEvent(BaseModel):
    """Fields shared by every inbound event."""
    room_key: str = Field(min_length=1, max_length=64)
    identity: Optional[str] = None
    connection_id: Optional[str] = None


class JoinEvent(RoomEvent):
    type: Literal["join"]
    identity: Identity


class LeaveEvent(RoomEvent):
    type: Literal["leave"]
    identity: Identity


class CodeUpdateEvent(RoomEvent):
    type: Literal["code-update"]
    language: Language
    content: Code


class TypingStartEvent(RoomEvent):
    type: Literal["typing-start"]
    identity: Identity


class TypingStopEvent(RoomEvent):
    type: Literal["typing-stop"]
    identity: Identity


class SendMessageEvent(RoomEvent):
    type: Literal["send-message"]
    identity: Identity
    message: str = Field(min_length=1, max_length=settings.MAX_CHAT_LENGTH)


class CommitEvent(RoomEvent):
    type: Literal["commit"]
    language: Language
    content: Code
    message: str = Field(default="", max_length=500)


class RestoreEvent(RoomEvent):
    type: Literal["restore"]
    commit_id: str = Field(min_length=1, max_length=128)


class LanguageRequestEvent(RoomEvent):
    """Ask for the current buffer of one language."""
    type: Literal["language-update"]
    language: Language


class CommitHistoryEvent(RoomEvent):
    type: Literal["get-commit-history"]


class CursorUpdateEvent(RoomEvent):
    type: Literal["cursor-update"]
    identity: Identity
    language: Language
    line: int = Field(ge=0)
    column: int = Field(ge=0)


class ShareCreateEvent(RoomEvent):
    type: Literal["generate-share-link"]
    content: Code


class ShareLoadEvent(RoomEvent):
    type: Literal["load-shared-code"]
    share_id: str = Field(min_length=1, max_length=32)


ClientEvent = Annotated[
    Union[
        JoinEvent,
        LeaveEvent,
        CodeUpdateEvent,
        TypingStartEvent,
        TypingStopEvent,
        SendMessageEvent,
        CommitEvent,
        RestoreEvent,
        LanguageRequestEvent,
        CommitHistoryEvent,
        CursorUpdateEvent,
        ShareCreateEvent,
        ShareLoadEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(ClientEvent)


def parse_event(data: dict) -> Optional[ClientEvent]:
    """Validate a decoded frame; None when it is not a known, complete event."""
    try:
        return _event_adapter.validate_python(data)
    except ValidationError as e:
        logger.debug(f"Rejected malformed event {data.get('type')!r}: {e.error_count()} errors")
        return None


class RoomInfo(BaseModel):
    """Room status information."""
    room_key: str
    members: List[str]
    host: Optional[str] = None
    user_count: int
    languages: List[str]
    commit_count: int
    created_at: str
    last_active: str


class HealthResponse(BaseModel):
    status: str
    rooms: int
    connections: int
    pending_timers: int
    stats: Dict[str, int] = {}
