"""
Application constants and enums.

Centralized place for all magic strings and enumerated values to avoid inconsistencies.
"""

from enum import Enum


class ConversationKind(str, Enum):
    """
    Conversation variant.

    Drives target address resolution and the message type stamped on outgoing stanzas.
    """
    CHAT = "chat"                    # one-to-one
    ROOM = "room"                    # multi-user room
    PRIVATE_ROOM = "private_room"    # private chat with one room occupant

    @property
    def message_type(self) -> str:
        return 'groupchat' if self is ConversationKind.ROOM else 'chat'


class NotificationMode(str, Enum):
    """
    Per-conversation notification mode.

    Values match database storage format.
    """
    DEFAULT = "default"
    ENABLED = "enabled"
    DISABLED = "disabled"
    SNOOZE_15M = "snooze15m"
    SNOOZE_1H = "snooze1h"
    SNOOZE_2H = "snooze2h"
    SNOOZE_1D = "snooze1d"

    @classmethod
    def normalize(cls, value):
        """
        Normalize a stored mode string to an enum member.

        Unknown or empty values resolve to DEFAULT.

        Examples:
            >>> NotificationMode.normalize("DISABLED")
            NotificationMode.DISABLED
            >>> NotificationMode.normalize(None)
            NotificationMode.DEFAULT
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls.DEFAULT
        value_lower = str(value).lower()
        for member in cls:
            if member.value == value_lower:
                return member
        return cls.DEFAULT

    @property
    def snooze_seconds(self) -> int:
        """Snooze duration in seconds (0 for non-snooze modes)."""
        return SNOOZE_DURATIONS.get(self, 0)


SNOOZE_DURATIONS = {
    NotificationMode.SNOOZE_15M: 15 * 60,
    NotificationMode.SNOOZE_1H: 60 * 60,
    NotificationMode.SNOOZE_2H: 2 * 60 * 60,
    NotificationMode.SNOOZE_1D: 24 * 60 * 60,
}


class SpamFilterMode(str, Enum):
    """Handling of messages from senders outside the roster."""
    DISABLED = "disabled"
    NO_AUTH = "no_auth"
    AUTH_CAPTCHA = "auth_captcha"

    @classmethod
    def normalize(cls, value):
        if isinstance(value, cls):
            return value
        value_lower = str(value or '').lower()
        for member in cls:
            if member.value == value_lower:
                return member
        return cls.DISABLED


class SecurityMode(str, Enum):
    """Global off-the-record policy."""
    DISABLED = "disabled"
    MANUAL = "manual"
    AUTO = "auto"
    REQUIRED = "required"

    @classmethod
    def normalize(cls, value):
        if isinstance(value, cls):
            return value
        value_lower = str(value or '').lower()
        for member in cls:
            if member.value == value_lower:
                return member
        return cls.DISABLED


class CarbonDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class ChatAction(str, Enum):
    """Informational (non-text) message actions."""
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    JOIN = "join"
    LEAVE = "leave"
    NICKNAME = "nickname"
    SUBJECT = "subject"
    KICK = "kick"
    BAN = "ban"
    INVITE_SENT = "invite_sent"
    ENCRYPTION_STARTED = "otr_encryption"
    ENCRYPTION_FINISHED = "otr_plain"


# Messages older than this (ms) get a delay stamp when sent
DELAY_THRESHOLD_MS = 60 * 1000

# Error description stored when no stanza could be built for a message
INTERNAL_ERROR_NULL_MESSAGE = "Internal error: message is null"

# Placeholder text of an outgoing file message until upload finishes
FILE_MESSAGE_PLACEHOLDER = "Sending files.."

# Delay reason of legacy offline storage replays
OFFLINE_STORAGE_REASON = "Offline Storage"

# Thread id length for new conversations
THREAD_ID_LENGTH = 12

# Wrong captcha answers before the challenge is revoked
CAPTCHA_MAX_ATTEMPT_COUNT = 3

# Canned replies sent by the spam filter
SPAM_REPLY_LIMIT = "Your message was not delivered: {account} only accepts messages from contacts."
SPAM_REPLY_CAPTCHA = "{account} only accepts messages from contacts. To send a subscription request, answer: {question}"
SPAM_REPLY_CAPTCHA_CORRECT = "Correct. Your subscription request was delivered."
SPAM_REPLY_CAPTCHA_INCORRECT = "Incorrect answer. Try again: {question}"
SPAM_REPLY_CAPTCHA_MANY_ATTEMPTS = "Too many wrong answers. Your subscription request was discarded."
