"""
Conversation Brewery for DrunkChat.

The brewery where conversations are brewed and kept: one Conversation per (account, peer).
Routes inbound stanzas and carbon copies to conversations (creating them on first
traffic), applies the spam policy to strangers, tracks the visible conversation and
exposes the chat operations of the UI.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from slixmpp import Message

from drunk_xmpp.references import get_body, has_muc_user
from drunk_xmpp.transport import NetworkError

from .barrels.conversation import Conversation
from .barrels.spam import SpamFilter
from .constants import CarbonDirection, ConversationKind
from .errors import MalformedJidError
from .models import MessageRecord
from ..services.export import export_chat_html
from ..utils.jid_utils import parse_jid


logger = logging.getLogger('drunk_chat.brewery')


class ConversationBrewery:
    """
    Registry of conversations per account.

    Also the listener of the stanza transport (route, process_carbons_message,
    on_roster_received, on_disconnect).
    """

    def __init__(self, context):
        """
        Args:
            context: ChatContext
        """
        self.context = context
        self.conversations: Dict[str, Dict[str, Conversation]] = {}
        self.visible_chat: Optional[Conversation] = None
        self.spam_filter = SpamFilter(context, self.send_message_without_chat)
        logger.debug("ConversationBrewery initialized")

    # =========================================================================
    # Conversation map
    # =========================================================================

    def get_chat(self, account: str, user: str) -> Optional[Conversation]:
        return self.conversations.get(account, {}).get(user)

    def get_chats(self, account: str) -> List[Conversation]:
        """Snapshot of the conversations of an account."""
        return list(self.conversations.get(account, {}).values())

    def get_all_chats(self) -> List[Conversation]:
        return [c for chats in self.conversations.values() for c in chats.values()]

    def create_chat(self, account: str, user: str,
                    kind: Optional[ConversationKind] = None) -> Conversation:
        """
        Create the conversation of a peer, restoring its persisted metadata.

        Rooms known to the room directory become ROOM conversations unless a kind
        is given. An existing conversation is returned as is.
        """
        existing = self.get_chat(account, user)
        if existing is not None:
            return existing
        if kind is None:
            kind = ConversationKind.ROOM if self.context.rooms.has_room(account, user) else ConversationKind.CHAT
        conversation = Conversation(
            self.context, self, account, user, kind,
            chat_data=self.context.store.load_chat_data(account, user),
        )
        self.conversations.setdefault(account, {})[user] = conversation
        logger.info(f"Created {kind.value} conversation {account} -> {user}")
        return conversation

    def get_or_create_chat(self, account: str, user: str,
                           kind: Optional[ConversationKind] = None) -> Conversation:
        conversation = self.get_chat(account, user)
        if conversation is None:
            conversation = self.create_chat(account, user, kind)
        return conversation

    def _drop_account(self, account: str):
        chats = self.conversations.pop(account, {})
        if self.visible_chat is not None and self.visible_chat.account == account:
            self.visible_chat = None
        for user in chats:
            self.context.signals.conversation_removed.emit(account, user)
        self.spam_filter.clear_account(account)
        self.context.notifications.clear_account(account)
        logger.info(f"Dropped {len(chats)} conversation(s) of {account}")

    # =========================================================================
    # Inbound routing
    # =========================================================================

    def route(self, account: str, packet) -> bool:
        """
        Route an inbound stanza of an account.

        Args:
            account: Receiving account
            packet: Message or Presence stanza

        Returns:
            True if a conversation (or the spam filter) handled the stanza
        """
        raw_from = packet.xml.get('from')
        if not raw_from:
            return False
        try:
            sender = parse_jid(raw_from)
        except MalformedJidError as e:
            logger.debug(f"Ignoring stanza with malformed sender: {e}")
            return False
        user = sender.bare

        for conversation in self.get_chats(account):
            if conversation.on_packet(sender, packet):
                if conversation.is_private_room and not conversation.private_accepted:
                    self.context.notifications.add_join_request(account, conversation.user)
                return True

        if not isinstance(packet, Message) or get_body(packet) is None:
            return False
        if packet['type'] == 'error':
            return False

        is_room = self.context.rooms.has_room(account, user)
        if is_room and packet['type'] == 'groupchat':
            return self.create_chat(account, user, ConversationKind.ROOM).on_packet(sender, packet)

        # Joined rooms and their occupants bypass the spam filter; only strangers are challenged
        if not is_room and self.spam_filter.check(account, user, packet):
            return True

        if is_room and packet['type'] == 'chat' and sender.resource:
            conversation = self.create_chat(account, sender.full, ConversationKind.PRIVATE_ROOM)
            conversation.on_packet(sender, packet)
            self.context.notifications.add_join_request(account, conversation.user)
            return True

        if has_muc_user(packet):
            logger.debug(f"Dropping room traffic from unknown room {user}")
            return False

        return self.create_chat(account, user, ConversationKind.CHAT).on_packet(sender, packet)

    def process_carbons_message(self, account: str, message: Message,
                                direction: Union[CarbonDirection, str]):
        """
        Handle a carbon copy of a message.

        Args:
            account: Account the copy was delivered to
            message: The forwarded inner message
            direction: 'sent' (the user wrote it elsewhere) or 'received'
        """
        direction = CarbonDirection(direction)
        if direction is CarbonDirection.SENT:
            try:
                user = parse_jid(message.xml.get('to')).bare
            except MalformedJidError as e:
                logger.debug(f"Ignoring sent carbon with malformed recipient: {e}")
                return
            if get_body(message) is None:
                return
            self.get_or_create_chat(account, user).on_sent_carbon(message)
            return

        try:
            sender = parse_jid(message.xml.get('from'))
        except MalformedJidError as e:
            logger.debug(f"Ignoring received carbon with malformed sender: {e}")
            return
        if not self.spam_filter.is_trusted(account, sender.bare):
            logger.debug(f"Ignoring carbon from stranger {sender.bare}")
            return

        for conversation in self.get_chats(account):
            if conversation.on_packet(sender, message, is_carbons=True):
                return
        if get_body(message) is None:
            return
        self.create_chat(account, sender.bare).on_packet(sender, message, is_carbons=True)

    # =========================================================================
    # Visibility
    # =========================================================================

    def set_visible_chat(self, account: str, user: str) -> Conversation:
        """Make a conversation the visible one, creating it if needed."""
        conversation = self.get_or_create_chat(account, user)
        self.visible_chat = conversation
        self.context.notifications.remove_message_notification(account, user)
        return conversation

    def remove_visible_chat(self):
        self.visible_chat = None

    def is_visible_chat(self, conversation: Conversation) -> bool:
        return conversation is not None and conversation is self.visible_chat

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def on_load(self):
        """Recreate the conversations that still have unsent messages."""
        peers = self.context.store.unsent_peers()
        for account, user in peers:
            self.get_or_create_chat(account, user)
        logger.info(f"Loaded {len(peers)} conversation(s) with unsent messages")

    def on_roster_received(self, account: str, contacts: Optional[Iterable[str]] = None):
        """
        The account is online with its roster: store trusted contacts and flush queues.
        """
        if contacts is not None:
            self.context.roster.set_contacts(account, contacts)
        for conversation in self.get_chats(account):
            conversation.on_complete()

    def on_disconnect(self, account: str):
        for conversation in self.get_chats(account):
            conversation.on_disconnect()

    def on_account_removed(self, account: str):
        """Forget an account: its conversations, stored history and directories."""
        self._drop_account(account)
        self.context.store.clear_account(account)
        self.context.roster.clear_account(account)
        self.context.rooms.clear_account(account)

    def on_account_disabled(self, account: str):
        self._drop_account(account)

    # =========================================================================
    # Chat operations
    # =========================================================================

    def open_chat(self, account: str, user: str) -> Conversation:
        conversation = self.get_or_create_chat(account, user)
        conversation.open_chat()
        return conversation

    def close_chat(self, account: str, user: str):
        conversation = self.get_chat(account, user)
        if conversation is not None:
            conversation.close_chat()

    def close_active_chats(self):
        for conversation in self.get_active_chats():
            conversation.close_chat()
            self.context.notifications.remove_message_notification(
                conversation.account, conversation.user
            )

    def get_active_chats(self) -> List[Conversation]:
        return [c for c in self.get_all_chats() if c.active]

    def has_active_chat(self, account: str, user: str) -> bool:
        conversation = self.get_chat(account, user)
        return conversation is not None and conversation.active

    def send_message(self, account: str, user: str, text: str) -> MessageRecord:
        """Queue a text message to a peer (see Conversation.send_message)."""
        return self.get_or_create_chat(account, user).send_message(text)

    def forward_messages(self, account: str, user: str, message_ids: Iterable[str],
                         text: str = '') -> MessageRecord:
        """Queue a message to a peer quoting stored messages."""
        return self.get_or_create_chat(account, user).send_forward_message(list(message_ids), text)

    def create_file_message(self, account: str, user: str, files: Iterable[str]) -> str:
        """
        Queue a file message waiting for upload.

        Returns:
            Unique id of the message
        """
        conversation = self.get_or_create_chat(account, user)
        conversation.open_chat()
        return conversation.new_file_message(files)

    def update_file_message(self, account: str, user: str, message_id: str,
                            urls: Dict[str, str], not_uploaded: Optional[Iterable[str]] = None) -> bool:
        conversation = self.get_chat(account, user)
        if conversation is None:
            return False
        return conversation.update_file_message(message_id, urls, not_uploaded)

    def update_message_with_error(self, message_id: str, error_description: str) -> bool:
        message = self.context.store.get(message_id)
        if message is None:
            return False
        conversation = self.get_or_create_chat(message.account, message.user)
        return conversation.update_message_with_error(message_id, error_description)

    def remove_error_and_resend(self, account: str, user: str, message_id: str) -> bool:
        conversation = self.get_chat(account, user)
        if conversation is None:
            return False
        return conversation.remove_error_and_resend(message_id)

    def clear_history(self, account: str, user: str) -> int:
        removed = self.context.store.clear_history(account, user)
        self.context.signals.new_message.emit()
        return removed

    def remove_message(self, message_id: str) -> int:
        return self.remove_messages([message_id])

    def remove_messages(self, message_ids: Iterable[str]) -> int:
        removed = self.context.store.delete(message_ids)
        if removed:
            self.context.signals.new_message.emit()
        return removed

    def accept_muc_private_chat(self, account: str, user: str) -> Conversation:
        """Accept a private chat opened by a room occupant (user is the occupant full JID)."""
        self.context.notifications.remove_join_request(account, user)
        conversation = self.get_or_create_chat(account, user, ConversationKind.PRIVATE_ROOM)
        conversation.private_accepted = True
        return conversation

    def discard_muc_private_chat(self, account: str, user: str):
        self.context.notifications.remove_join_request(account, user)

    def export_chat(self, account: str, user: str, file_path: Union[str, Path]) -> Path:
        """Write the conversation as an HTML transcript."""
        conversation = self.get_chat(account, user)
        is_room = conversation is not None and conversation.kind is ConversationKind.ROOM
        return export_chat_html(self.context.store, account, user, file_path, is_room=is_room)

    def send_message_without_chat(self, account: str, to: str, thread: Optional[str], text: str):
        """
        Send an automatic message without creating a conversation.

        Carbons are disabled for it; a transport failure is only logged.
        """
        msg = Message()
        msg['to'] = to
        msg['type'] = 'chat'
        msg['body'] = text
        if thread:
            msg['thread'] = thread
        msg.enable('carbon_private')
        try:
            self.context.transport.send(account, msg)
        except NetworkError as e:
            logger.warning(f"Could not send automatic message to {to}: {e}")
