"""
Server acknowledgement handling for database updates.

XEP-0198 acks flip the acknowledged flag of an outgoing message. Acks arrive
asynchronously and may reference messages that were deleted in the meantime.
"""

import logging
from typing import Optional

from ..db.message_store import MessageStore


logger = logging.getLogger('drunk_chat.receipt_handler')


class ReceiptHandler:
    """Handles server ack database updates."""

    def __init__(self, store: MessageStore, signals=None):
        """
        Initialize receipt handler.

        Args:
            store: MessageStore instance
            signals: ChatSignals for message_updated (optional)
        """
        self.store = store
        self.signals = signals

    def on_server_ack(self, account: str, user: str, message_id: str) -> bool:
        """
        Handle server ACK (XEP-0198).

        Args:
            account: Account bare JID
            user: Conversation peer
            message_id: Message unique id

        Returns:
            True if the message was found and updated
        """
        updated = self.store.mark_acknowledged(message_id)
        if updated:
            logger.debug(f"Server ACK: marked message {message_id} as acknowledged")
            if self.signals is not None:
                self.signals.message_updated.emit(account, user)
        else:
            logger.debug(f"Server ACK: message {message_id} not found (deleted?)")
        return updated

    def make_ack_callback(self, account: str, user: str, message_id: str, scheduler: Optional[object] = None):
        """
        Build the on_ack callback handed to the transport.

        With a scheduler the update is posted to the interactive context.
        """
        if scheduler is None:
            return lambda: self.on_server_ack(account, user, message_id)
        return lambda: scheduler.post(self.on_server_ack, account, user, message_id)
