"""
Notification service for DrunkChat.

Keeps the message notifications and private chat join requests raised by the chat
engine, and optionally shows desktop notifications with privacy controls.
"""

import platform
import logging
import subprocess
from typing import Dict, List, Optional, Set, Tuple


logger = logging.getLogger('drunk_chat.notification')


class NotificationService:
    """
    Message notification records plus optional OS notifications.

    OS notifications use notify-send on Linux (mako, dunst, etc.).
    """

    def __init__(self, settings=None, signals=None):
        """
        Args:
            settings: ChatSettings (desktop/privacy switches); None disables OS notifications
            signals: ChatSignals for join requests (optional)
        """
        self.settings = settings
        self.signals = signals
        self.system = platform.system()

        # Pending message notifications per conversation: message unique ids
        self.message_notifications: Dict[Tuple[str, str], List[str]] = {}
        # Private group chats waiting for the user to accept them
        self.join_requests: Set[Tuple[str, str]] = set()
        # notify-send ids, so a new message replaces the previous bubble
        self.chat_notification_ids: Dict[Tuple[str, str], int] = {}

        logger.debug(f"Notification service initialized for {self.system}")

    # =========================================================================
    # Message notifications
    # =========================================================================

    def on_message_notification(self, account: str, user: str, message_id: str, text: Optional[str]):
        """
        Record a notification for a new message and show it on the desktop if enabled.

        Args:
            account: Account bare JID
            user: Conversation peer
            message_id: Message unique id
            text: Message text
        """
        self.message_notifications.setdefault((account, user), []).append(message_id)
        logger.info(f"Message notification for {account} / {user}")

        if self.settings is None or not self.settings.desktop_notifications:
            return

        title = user if self.settings.show_sender else "DrunkChat"
        body = (text or '') if self.settings.show_body else "New message"
        # Truncate long titles to prevent wrapping
        if len(title) > 25:
            title = title[:22] + "..."

        if self.system == 'Linux':
            self._send_linux(account, user, title, body)
        else:
            logger.warning(f"Desktop notifications not supported on {self.system}")

    def remove_message_notification(self, account: str, user: str):
        """Drop pending notifications of a conversation (user answered or opened it)."""
        if self.message_notifications.pop((account, user), None):
            logger.debug(f"Cleared message notifications for {account} / {user}")
        self.chat_notification_ids.pop((account, user), None)

    def get_message_notifications(self, account: str, user: str) -> List[str]:
        return list(self.message_notifications.get((account, user), ()))

    def clear_account(self, account: str):
        for key in [k for k in self.message_notifications if k[0] == account]:
            del self.message_notifications[key]
        self.join_requests = {k for k in self.join_requests if k[0] != account}

    # =========================================================================
    # Private group chat join requests
    # =========================================================================

    def add_join_request(self, account: str, user: str):
        """Record that an occupant opened a private chat the user has not accepted yet."""
        key = (account, user)
        if key in self.join_requests:
            return
        self.join_requests.add(key)
        logger.info(f"Private chat request from {user} for {account}")
        if self.signals is not None:
            self.signals.muc_private_chat_request.emit(account, user)

    def remove_join_request(self, account: str, user: str):
        self.join_requests.discard((account, user))

    def has_join_request(self, account: str, user: str) -> bool:
        return (account, user) in self.join_requests

    # =========================================================================
    # Desktop
    # =========================================================================

    def _send_linux(self, account: str, user: str, title: str, body: str):
        """
        Send notification via notify-send (Linux).

        Args:
            account: Account bare JID
            user: Conversation peer
            title: Notification title
            body: Notification body
        """
        key = (account, user)
        replace_id = self.chat_notification_ids.get(key, 0)

        cmd = ['notify-send', '-a', 'DrunkChat', '-p']  # -p to print notification ID
        if replace_id > 0:
            cmd.extend(['-r', str(replace_id)])
        cmd.extend([title, body])

        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            logger.warning(f"notify-send unavailable: {e}")
            return

        if result.returncode != 0:
            logger.warning(f"notify-send failed: {result.stderr}")
            return

        try:
            self.chat_notification_ids[key] = int(result.stdout.strip())
        except ValueError as e:
            logger.warning(f"Could not parse notification ID: {e}")
