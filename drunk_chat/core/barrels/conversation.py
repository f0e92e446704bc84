"""
Conversation: per-peer message state machine.

One Conversation exists per (account, peer) in the registry. It accepts inbound stanzas
addressed from its peer, persists the messages they carry, decides whether the user is
notified, tracks reads and owns the send queue (see OutgoingMixin).
"""

import asyncio
import secrets
import string
import time
from datetime import datetime
from typing import Iterable, List, Optional, Set

from slixmpp import Message, Presence

from drunk_xmpp.encryption import EncryptionError, UnencryptedContentError
from drunk_xmpp.references import (
    extract_attachments, extract_forward_comment, extract_forwarded, extract_groupchat_user,
    get_body, get_delay_reason, get_delay_stamp, get_stanza_id, get_thread,
    has_groupchat_marker, is_muc_invite, is_offline_message, rewrite_body_with_references,
)

from .outgoing import OutgoingMixin
from ..constants import (
    ChatAction, ConversationKind, NotificationMode, OFFLINE_STORAGE_REASON, THREAD_ID_LENGTH,
)
from ..errors import MessageCreationError
from ..models import (
    Attachment, ChatData, GroupchatUser, MessageRecord, NotificationState, new_unique_id, now_ms,
)
from ...utils.logger import get_account_logger


THREAD_ID_ALPHABET = string.ascii_letters + string.digits


def generate_thread_id() -> str:
    return ''.join(secrets.choice(THREAD_ID_ALPHABET) for _ in range(THREAD_ID_LENGTH))


def datetime_to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


class Conversation(OutgoingMixin):
    """
    Message history and delivery state of one peer of one account.

    user is the peer's bare JID, except for PRIVATE_ROOM conversations where it is the
    occupant's full JID (room@service/nick).
    """

    def __init__(self, context, registry, account: str, user: str,
                 kind: ConversationKind = ConversationKind.CHAT,
                 chat_data: Optional[ChatData] = None):
        """
        Args:
            context: ChatContext
            registry: ConversationBrewery owning this conversation (visibility queries)
            account: Account bare JID
            user: Peer JID
            kind: Conversation variant
            chat_data: Persisted metadata to restore
        """
        self.context = context
        self.registry = registry
        self.account = account
        self.user = user
        self.kind = kind
        self.logger = get_account_logger(account)

        self.active = False
        self.track_status = False
        self.first_notification = True
        self.thread_id = generate_thread_id()
        self.archived = False
        self.notification_state = NotificationState()
        self.last_position: Optional[str] = None
        self.last_message_id: Optional[str] = None
        self.history_is_full = False
        self.history_requested_at_start = False
        self.remote_history_loaded = False
        self.last_synced_time: Optional[int] = None
        # Ids marked read locally whose store update has not been confirmed yet
        self.wait_to_mark_as_read: Set[str] = set()

        self.resource: Optional[str] = None
        self.otr_resource: Optional[str] = None
        self.is_groupchat = False
        self.private_accepted = kind is not ConversationKind.PRIVATE_ROOM

        self._drain_lock = asyncio.Lock()
        self._drain_task: Optional[asyncio.Task] = None
        self._drain_requested = False

        if chat_data is not None:
            self.apply_chat_data(chat_data)

    def __repr__(self):
        return f"<Conversation {self.kind.value} {self.account} -> {self.user}>"

    @property
    def is_private_room(self) -> bool:
        return self.kind is ConversationKind.PRIVATE_ROOM

    # ============================================================================
    # Addressing
    # ============================================================================

    def get_to(self) -> str:
        """
        Target address of outgoing stanzas.

        One-to-one chats go to the resource pinned by an encrypted session, else to the
        last seen resource; rooms and private room chats go to the stored peer JID.
        """
        if self.kind is ConversationKind.CHAT:
            resource = self.otr_resource or self.resource
            if resource:
                return f"{self.user}/{resource}"
        return self.user

    def get_type(self) -> str:
        return self.kind.message_type

    def accepts(self, sender) -> bool:
        """
        Whether a stanza from sender belongs to this conversation.

        Args:
            sender: slixmpp JID of the stanza's from
        """
        if self.is_private_room:
            return sender.full == self.user
        return sender.bare == self.user

    # ============================================================================
    # Inbound
    # ============================================================================

    def on_packet(self, sender, packet, is_carbons: bool = False) -> bool:
        """
        Process a stanza routed to this conversation.

        Args:
            sender: slixmpp JID of the stanza's from
            packet: Message or Presence stanza
            is_carbons: True for a received-direction carbon copy

        Returns:
            True if the stanza was handled here (even when nothing was stored)
        """
        if not self.accepts(sender):
            return False
        if (self.kind is ConversationKind.ROOM and isinstance(packet, Message)
                and packet['type'] == 'chat' and sender.resource):
            # private message of an occupant, it gets its own conversation
            return False
        if isinstance(packet, Presence):
            return self._on_presence(sender, packet)
        if isinstance(packet, Message):
            return self._on_message(sender, packet, is_carbons)
        return True

    def _on_presence(self, sender, presence: Presence) -> bool:
        resource = sender.resource or None
        if presence['type'] == 'unavailable' and resource and resource == self.resource:
            self.resource = None
        if has_groupchat_marker(presence) and not self.is_groupchat:
            self.is_groupchat = True
            self.logger.debug(f"{self.user} is a group chat")
        return True

    def _on_message(self, sender, packet: Message, is_carbons: bool) -> bool:
        if packet['type'] == 'error':
            return True
        if is_muc_invite(packet):
            return True

        text = get_body(packet)
        if text is None:
            return True

        if get_delay_reason(packet) == OFFLINE_STORAGE_REASON:
            self.logger.debug(f"Skipping offline storage replay from {sender}")
            return True

        stanza_id = get_stanza_id(packet)
        if stanza_id and self.context.store.has_incoming_stanza_id(self.account, self.user, stanza_id):
            self.logger.debug(f"Duplicate message {stanza_id} from {sender} ignored")
            return True

        thread = get_thread(packet)
        if thread:
            self.thread_id = thread
        resource = sender.resource or None
        if resource:
            self.resource = resource

        encryption = self.context.encryption
        encrypted = encryption.is_encrypted_envelope(text)
        if not is_carbons:
            try:
                text = encryption.transform_incoming(self.account, self.user, text)
            except UnencryptedContentError as e:
                text = e.text
                encrypted = False
            except EncryptionError:
                self.logger.exception(f"Could not decrypt message from {sender}, dropping it")
                return True

        unique_id = new_unique_id()
        groupchat_user_id = self.save_groupchat_user(packet)
        attachments = [Attachment(**a) for a in extract_attachments(packet)]
        forwarded_ids = self.parse_forwarded(packet, unique_id)

        comment = extract_forward_comment(packet)
        if comment is not None:
            text = comment

        if not (text or '').strip() and not forwarded_ids:
            return True

        text, markup_text = rewrite_body_with_references(packet, text)

        self.create_message_item(
            text,
            unique_id=unique_id,
            resource=resource,
            markup_text=markup_text,
            delay_timestamp=datetime_to_ms(get_delay_stamp(packet)),
            incoming=True,
            notify=True,
            encrypted=encrypted,
            offline=is_offline_message(packet, self.context.transport.server_domain(self.account)),
            from_muc=self.kind is ConversationKind.ROOM,
            stanza_id=stanza_id,
            attachments=attachments,
            forwarded_ids=forwarded_ids,
            original_stanza=str(packet),
            original_from=str(packet['from']),
            groupchat_user_id=groupchat_user_id,
        )
        self.context.signals.new_incoming_message.emit(self.account, self.user)
        return True

    def on_sent_carbon(self, packet: Message) -> Optional[MessageRecord]:
        """
        Record a message the user sent from another client.

        Returns:
            The stored message, or None when the copy carries nothing to show
        """
        text = get_body(packet)
        if text is None:
            return None

        unique_id = new_unique_id()
        forwarded_ids = self.parse_forwarded(packet, unique_id)
        comment = extract_forward_comment(packet)
        if comment is not None:
            text = comment
        text, markup_text = rewrite_body_with_references(packet, text)
        attachments = [Attachment(**a) for a in extract_attachments(packet)]
        groupchat_user_id = self.save_groupchat_user(packet)

        if not text and not attachments and not forwarded_ids:
            return None

        message = self.create_message_item(
            text,
            unique_id=unique_id,
            markup_text=markup_text,
            incoming=False,
            sent=True,
            read=True,
            acknowledged=True,
            forwarded=True,
            stanza_id=get_stanza_id(packet),
            attachments=attachments,
            forwarded_ids=forwarded_ids,
            original_stanza=str(packet),
            original_from=str(packet['from']),
            groupchat_user_id=groupchat_user_id,
        )
        self.mark_as_read_all()
        return message

    def save_groupchat_user(self, packet: Message) -> Optional[str]:
        """Store the group chat author carried by the stanza, returning its id."""
        info = extract_groupchat_user(packet)
        if info is None:
            return None
        self.context.store.save_groupchat_user(GroupchatUser(**info))
        return info['id']

    def parse_forwarded(self, packet: Message, parent_message_id: str) -> List[str]:
        """
        Store the forwarded sub-messages of a stanza as children of parent_message_id.

        Children are read, never notify and do not move the conversation's chain pointer.

        Returns:
            Unique ids of the stored children, in document order
        """
        ids = []
        for inner, stamp in extract_forwarded(packet):
            child_id = self._parse_inner_message(inner, stamp, parent_message_id)
            if child_id is not None:
                ids.append(child_id)
        return ids

    def _parse_inner_message(self, inner: Message, stamp: Optional[datetime],
                             parent_message_id: str) -> Optional[str]:
        if inner['type'] == 'error' or is_muc_invite(inner):
            return None
        text = get_body(inner)
        if text is None:
            return None

        unique_id = new_unique_id()
        forwarded_ids = self.parse_forwarded(inner, unique_id)
        groupchat_user_id = self.save_groupchat_user(inner)
        comment = extract_forward_comment(inner)
        if comment:
            text = comment
        text, markup_text = rewrite_body_with_references(inner, text)

        sender = inner.xml.get('from')
        message = MessageRecord(
            unique_id=unique_id,
            account=self.account,
            user=self.user,
            resource=(inner['from'].resource or None) if sender else None,
            text=text,
            markup_text=markup_text,
            timestamp=datetime_to_ms(stamp) or now_ms(),
            delay_timestamp=datetime_to_ms(get_delay_stamp(inner)),
            incoming=True,
            read=True,
            sent=True,
            encrypted=self.context.encryption.is_encrypted_envelope(text),
            from_muc=inner['type'] == 'groupchat',
            stanza_id=get_stanza_id(inner),
            original_stanza=str(inner),
            original_from=sender or '',
            parent_message_id=parent_message_id,
            groupchat_user_id=groupchat_user_id,
            attachments=[Attachment(**a) for a in extract_attachments(inner)],
            forwarded_ids=forwarded_ids,
        )
        self.context.store.save(message)
        return unique_id

    # ============================================================================
    # Message creation
    # ============================================================================

    def create_message_item(
        self,
        text: Optional[str] = None,
        *,
        unique_id: Optional[str] = None,
        resource: Optional[str] = None,
        markup_text: Optional[str] = None,
        action: Optional[str] = None,
        timestamp: Optional[int] = None,
        delay_timestamp: Optional[int] = None,
        incoming: bool = False,
        notify: bool = False,
        encrypted: bool = False,
        offline: bool = False,
        from_muc: bool = False,
        stanza_id: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        forwarded_ids: Optional[List[str]] = None,
        original_stanza: Optional[str] = None,
        original_from: Optional[str] = None,
        groupchat_user_id: Optional[str] = None,
        sent: Optional[bool] = None,
        read: Optional[bool] = None,
        acknowledged: bool = False,
        forwarded: bool = False,
        in_progress: bool = False,
    ) -> MessageRecord:
        """
        Create, persist and announce a message of this conversation.

        Applies the notification policy: outgoing messages never notify, blank messages
        without attachments or forwards are never notify-eligible, and the visible
        conversation is never notified about.

        Args:
            text: Body (may be empty when attachments or forwards are present)
            action: ChatAction value for informational messages
            incoming: Received from the peer
            notify: Notification requested by the caller
            sent, read: Override the defaults derived from incoming/action

        Returns:
            The stored MessageRecord

        Raises:
            MessageCreationError: Neither an action nor any content was given
        """
        attachments = list(attachments or [])
        forwarded_ids = list(forwarded_ids or [])
        if action is None and not text and not attachments and not forwarded_ids:
            raise MessageCreationError(
                f"Message for {self.user} needs an action, text, attachments or forwards"
            )

        visible = self.registry.is_visible_chat(self)
        if read is None:
            read = not incoming
        if sent is None:
            sent = incoming
        if action is not None:
            read = True
            sent = True
        if timestamp is None:
            timestamp = now_ms()

        if not (text or '').strip() and not attachments and not forwarded_ids:
            notify = False
        if notify or not incoming:
            self.open_chat()
        if not incoming:
            notify = False
        if self.is_private_room and not self.private_accepted:
            notify = False

        message = MessageRecord(
            unique_id=unique_id or new_unique_id(),
            account=self.account,
            user=self.user,
            resource=resource,
            text=text,
            markup_text=markup_text,
            action=action.value if isinstance(action, ChatAction) else action,
            timestamp=timestamp,
            delay_timestamp=delay_timestamp,
            incoming=incoming,
            read=read,
            sent=sent,
            encrypted=encrypted,
            offline=offline,
            from_muc=from_muc,
            in_progress=in_progress,
            acknowledged=acknowledged,
            forwarded=forwarded,
            stanza_id=stanza_id,
            previous_id=self.last_message_id,
            original_stanza=original_stanza,
            original_from=original_from,
            groupchat_user_id=groupchat_user_id,
            attachments=attachments,
            forwarded_ids=forwarded_ids,
        )
        self.last_message_id = message.chain_id

        self.context.store.save(message)
        self.context.signals.new_message.emit()

        self.enable_notifications_if_need()
        notifications_on = self.notify_about_message()
        if notify and notifications_on and not visible:
            self.context.notifications.on_message_notification(
                self.account, self.user, message.unique_id, message.text
            )
        if not incoming:
            self.context.notifications.remove_message_notification(self.account, self.user)
        if notifications_on and self.archived:
            self.archived = False
            self.save_chat_data()

        return message

    def new_action(self, resource: Optional[str], text: Optional[str], action: ChatAction,
                   from_muc: bool = False) -> MessageRecord:
        """Record an informational message (join, leave, subject...)."""
        return self.create_message_item(
            text,
            resource=resource,
            action=action,
            incoming=True,
            from_muc=from_muc,
        )

    # ============================================================================
    # Notifications
    # ============================================================================

    def _events_enabled_globally(self) -> bool:
        if self.kind is ConversationKind.ROOM or self.context.rooms.has_room(self.account, self.user):
            return self.context.settings.events_on_muc
        return self.context.settings.events_on_chat

    def notify_about_message(self) -> bool:
        """Whether new messages should notify under the current notification mode."""
        mode = self.notification_state.mode
        if mode is NotificationMode.DEFAULT:
            return self._events_enabled_globally()
        return mode is NotificationMode.ENABLED

    def enable_notifications_if_need(self):
        """Turn an expired snooze back into enabled notifications."""
        if self.notification_state.is_expired_snooze():
            self.logger.debug(f"Snooze of {self.user} expired")
            self.set_notification_state_or_default(NotificationState(NotificationMode.ENABLED, 0))

    def set_notification_state(self, state: NotificationState, save: bool = True):
        self.notification_state = state
        if save:
            if state.mode is NotificationMode.DISABLED:
                self.context.notifications.remove_message_notification(self.account, self.user)
            self.save_chat_data()

    def set_notification_state_or_default(self, state: NotificationState, save: bool = True):
        """
        Set enabled or disabled notifications, storing 'default' when that is what the
        global setting already gives.

        Raises:
            ValueError: For modes other than enabled/disabled
        """
        if state.mode not in (NotificationMode.ENABLED, NotificationMode.DISABLED):
            raise ValueError(f"Expected enabled or disabled notification mode, got {state.mode.value}")
        globally = self._events_enabled_globally()
        if (state.mode is NotificationMode.ENABLED) == globally:
            state = NotificationState(NotificationMode.DEFAULT, state.timestamp)
        self.set_notification_state(state, save)

    def snooze(self, mode: NotificationMode):
        """Silence the conversation for the duration of a snooze mode."""
        if not mode.snooze_seconds:
            raise ValueError(f"{mode.value} is not a snooze mode")
        self.set_notification_state(NotificationState(mode, int(time.time())))

    # ============================================================================
    # Read tracking
    # ============================================================================

    def mark_as_read(self, message: MessageRecord):
        self.wait_to_mark_as_read.add(message.unique_id)
        self._execute_read([message.unique_id])

    def mark_as_read_all(self):
        ids = self.context.store.unread_ids(self.account, self.user)
        if not ids:
            return
        self.wait_to_mark_as_read.update(ids)
        self._execute_read(ids)

    def _execute_read(self, ids: List[str]):
        self.context.signals.message_updated.emit(self.account, self.user)
        self.context.notifications.remove_message_notification(self.account, self.user)
        self.context.scheduler.submit(self._write_read(ids), name=f"read {self.user}")

    async def _write_read(self, ids: List[str]):
        self.context.store.mark_read(ids)
        self.context.scheduler.post(self.approve_read, ids)

    def approve_read(self, ids: Iterable[str]):
        """Confirm that the store recorded the reads of ids."""
        for message_id in ids:
            self.wait_to_mark_as_read.discard(message_id)
        self.context.signals.message_updated.emit(self.account, self.user)

    def get_unread_message_count(self) -> int:
        unread = self.context.store.count_unread(self.account, self.user) - len(self.wait_to_mark_as_read)
        return max(unread, 0)

    def get_first_unread_message_id(self) -> Optional[str]:
        ids = self.context.store.unread_ids(self.account, self.user)
        return ids[0] if ids else None

    # ============================================================================
    # Lifecycle and history
    # ============================================================================

    def open_chat(self):
        self.active = True
        self.track_status = True

    def close_chat(self):
        self.active = False
        self.first_notification = True

    def on_disconnect(self):
        """The stream is gone: the next message must not claim continuity with the last one."""
        self.last_message_id = None

    def on_complete(self):
        """The account is online again: flush the send queue."""
        self.send_messages()

    def get_last_message(self) -> Optional[MessageRecord]:
        """Latest top-level text message (or 'available' action)."""
        candidates = self.context.store.query(
            self.account, self.user, action_null=True, text_not_null=True, descending=True, limit=1
        ) + self.context.store.query(
            self.account, self.user, action=ChatAction.AVAILABLE.value, text_not_null=True,
            descending=True, limit=1
        )
        if not candidates:
            return None
        return max(candidates, key=lambda m: m.timestamp or 0)

    def get_last_time(self) -> Optional[int]:
        message = self.get_last_message()
        return message.timestamp if message is not None else None

    def set_last_position(self, position: Optional[str]):
        self.last_position = position
        self.save_chat_data()

    def set_archived(self, archived: bool):
        self.archived = archived
        self.save_chat_data()

    def set_history_requested_at_start(self):
        self.history_requested_at_start = True
        self.save_chat_data()

    def to_chat_data(self) -> ChatData:
        return ChatData(
            account=self.account,
            user=self.user,
            last_position=self.last_position,
            archived=self.archived,
            notification_state=self.notification_state,
            history_requested_at_start=self.history_requested_at_start,
        )

    def apply_chat_data(self, data: ChatData):
        self.last_position = data.last_position
        self.archived = data.archived
        self.notification_state = data.notification_state
        self.history_requested_at_start = data.history_requested_at_start

    def save_chat_data(self):
        self.context.store.save_chat_data(self.to_chat_data())
