"""
HTML transcript export of a conversation.
"""

import html
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..db.message_store import MessageStore


logger = logging.getLogger('drunk_chat.export')


def format_timestamp(timestamp_ms: Optional[int]) -> str:
    if timestamp_ms is None:
        return ''
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime('%Y-%m-%d %H:%M:%S')


def export_chat_html(store: MessageStore, account: str, user: str, file_path: Union[str, Path],
                     is_room: bool = False, account_name: Optional[str] = None,
                     user_name: Optional[str] = None) -> Path:
    """
    Write the text messages of a conversation as an HTML transcript.

    Informational actions are skipped. Room messages are attributed to the occupant
    nickname (resource), one-to-one messages to the account or the peer.

    Args:
        store: MessageStore
        account: Account bare JID
        user: Peer JID
        file_path: Target file
        is_room: Conversation is a multi-user room
        account_name: Display name for outgoing messages (default: account JID)
        user_name: Display name for incoming messages (default: peer JID)

    Returns:
        Path of the written file
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    account_name = account_name or account
    user_name = user_name or user

    messages = store.query(account, user, action_null=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write("<html><head><title>")
        f.write(html.escape(f"{user_name} ({user})"))
        f.write("</title></head><body>")
        for message in messages:
            if is_room:
                name = message.resource or user_name
            else:
                name = user_name if message.incoming else account_name
            f.write("<b>")
            f.write(html.escape(name))
            f.write("</b>&nbsp;(")
            f.write(format_timestamp(message.timestamp))
            f.write(")<br />\n<p>")
            f.write(html.escape(message.text or ''))
            f.write("</p><hr />\n")
        f.write("</body></html>")

    logger.info(f"Exported {len(messages)} message(s) of {account} / {user} to {path}")
    return path
