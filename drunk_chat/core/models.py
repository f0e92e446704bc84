"""
Data records shared by the chat engine and the message store.

Timestamps are epoch milliseconds unless stated otherwise.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from .constants import NotificationMode


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_unique_id() -> str:
    """Globally unique message id, independent of any protocol stanza id."""
    return str(uuid.uuid4())


@dataclass
class Attachment:
    """File or media attached to a message."""
    file_path: Optional[str] = None
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    title: Optional[str] = None
    mime_type: Optional[str] = None
    is_image: bool = False
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    duration: Optional[int] = None  # seconds, for audio/video
    id: Optional[int] = None  # database row id


@dataclass
class MessageRecord:
    """
    A persisted chat message.

    previous_id is fixed at creation: it links the message to the conversation's
    last_message_id at that moment and is never rewritten.
    """
    unique_id: str
    account: str
    user: str
    resource: Optional[str] = None
    text: Optional[str] = None
    markup_text: Optional[str] = None
    action: Optional[str] = None
    timestamp: Optional[int] = None
    delay_timestamp: Optional[int] = None
    incoming: bool = False
    read: bool = False
    sent: bool = False
    encrypted: bool = False
    offline: bool = False
    from_muc: bool = False
    in_progress: bool = False
    error: bool = False
    error_description: Optional[str] = None
    acknowledged: bool = False
    forwarded: bool = False
    stanza_id: Optional[str] = None
    previous_id: Optional[str] = None
    original_stanza: Optional[str] = None
    original_from: Optional[str] = None
    parent_message_id: Optional[str] = None
    groupchat_user_id: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    forwarded_ids: List[str] = field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    @property
    def has_forwarded(self) -> bool:
        return bool(self.forwarded_ids)

    @property
    def chain_id(self) -> str:
        """Id other messages use to point at this one (stanza id, else unique id)."""
        return self.stanza_id or self.unique_id


@dataclass
class NotificationState:
    """Notification mode plus the second it was activated."""
    mode: NotificationMode = NotificationMode.DEFAULT
    timestamp: int = 0  # epoch seconds

    def is_expired_snooze(self, now_seconds: Optional[int] = None) -> bool:
        """True when a snooze mode has run past its duration."""
        duration = self.mode.snooze_seconds
        if not duration:
            return False
        now_seconds = int(time.time()) if now_seconds is None else now_seconds
        return now_seconds > self.timestamp + duration


@dataclass
class ChatData:
    """Conversation metadata persisted in the chat_data table."""
    account: str
    user: str
    last_position: Optional[str] = None
    archived: bool = False
    notification_state: NotificationState = field(default_factory=NotificationState)
    history_requested_at_start: bool = False


@dataclass
class GroupchatUser:
    """Author of a group chat message, as carried by a user reference."""
    id: str
    nickname: Optional[str] = None
    jid: Optional[str] = None
    role: Optional[str] = None
    avatar: Optional[str] = None


@dataclass
class Captcha:
    """Arithmetic challenge issued to a sender outside the roster."""
    account: str
    user: str
    question: str
    answer: str
    attempt_count: int = 0
