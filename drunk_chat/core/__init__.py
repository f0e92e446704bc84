"""
Core business logic for DrunkChat.

Provides access to the conversation brewery and the shared chat context.
"""

from .brewery import ConversationBrewery
from .barrels.conversation import Conversation
from .context import ChatContext

__all__ = [
    'ConversationBrewery',
    'Conversation',
    'ChatContext',
]
