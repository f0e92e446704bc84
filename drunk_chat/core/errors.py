"""
Exceptions raised by the chat engine.

Transport and encryption failures live with their adapters in drunk_xmpp
(NetworkError, EncryptionError, UnencryptedContentError).
"""


class ChatError(Exception):
    """Base class for chat engine errors."""


class MessageCreationError(ChatError, ValueError):
    """A message was created with neither an action nor any content."""


class MalformedJidError(ChatError, ValueError):
    """A sender or recipient address could not be parsed."""
