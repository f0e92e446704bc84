"""
Qt signals emitted by the chat engine for the UI layer.
"""

from PySide6.QtCore import QObject, Signal


class ChatSignals(QObject):
    """
    Observable side effects of message processing.

    Without a running Qt event loop slots are invoked directly on emit.
    """

    new_message = Signal()  # a message was persisted or updated in bulk
    new_incoming_message = Signal(str, str)  # (account, user)
    message_updated = Signal(str, str)  # (account, user) - delivery/ack/error state changed
    conversation_removed = Signal(str, str)  # (account, user)
    muc_private_chat_request = Signal(str, str)  # (account, occupant full JID)

    def __init__(self):
        super().__init__()
