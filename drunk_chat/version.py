"""
Version information for DrunkChat.

Update this file for releases or use environment variables for CI/CD.
"""

import os

# Version info - update for releases
VERSION = os.getenv('DRUNK_CHAT_VERSION', '0.1.0')
APP_NAME = 'DrunkChat'

# XEPs the chat engine reads or writes
SUPPORTED_XEPS = [
    ('0045', 'Multi-User Chat (private occupant chats)'),
    ('0066', 'Out of Band Data'),
    ('0085', 'Chat State Notifications'),
    ('0198', 'Stream Management'),
    ('0203', 'Delayed Delivery'),
    ('0280', 'Message Carbons'),
    ('0297', 'Stanza Forwarding'),
    ('0359', 'Unique and Stable Stanza IDs'),
]


def get_version_string():
    """Get formatted version string."""
    return f"{APP_NAME} {VERSION}"
