"""
Barrels - Components of a conversation.

- conversation: Conversation state machine (inbound, notifications, read tracking)
- outgoing: Send queue drainer and outgoing message construction
- spam: Spam filter for strangers
"""

from .conversation import Conversation
from .spam import SpamFilter

__all__ = ['Conversation', 'SpamFilter']
