"""
Spam filter for messages from senders outside the roster.

Modes:
    disabled      every sender is accepted
    no_auth       strangers get a limit notice and their messages are dropped
    auth_captcha  strangers get an arithmetic challenge; a correct answer surfaces a
                  subscription request, too many wrong answers revoke the challenge
"""

import logging
import random
from typing import Callable, Dict, Optional, Tuple

from slixmpp import Message

from drunk_xmpp.references import get_body, get_thread

from ..constants import (
    CAPTCHA_MAX_ATTEMPT_COUNT, SPAM_REPLY_CAPTCHA, SPAM_REPLY_CAPTCHA_CORRECT,
    SPAM_REPLY_CAPTCHA_INCORRECT, SPAM_REPLY_CAPTCHA_MANY_ATTEMPTS, SPAM_REPLY_LIMIT,
    SpamFilterMode,
)
from ..models import Captcha


logger = logging.getLogger('drunk_chat.spam')


# reply(account, to, thread, text)
ReplySender = Callable[[str, str, Optional[str], str], None]


class SpamFilter:
    """Gate applied to inbound traffic before any conversation is involved."""

    def __init__(self, context, send_reply: ReplySender):
        """
        Args:
            context: ChatContext (settings and roster)
            send_reply: Sends a canned reply without creating a conversation
        """
        self.context = context
        self.send_reply = send_reply
        self.captchas: Dict[Tuple[str, str], Captcha] = {}

    def is_trusted(self, account: str, user: str) -> bool:
        if self.context.settings.spam_filter_mode is SpamFilterMode.DISABLED:
            return True
        return self.context.roster.is_contact(account, user)

    def check(self, account: str, user: str, packet: Message) -> bool:
        """
        Apply the spam policy to a message with a body.

        Args:
            account: Receiving account
            user: Sender bare JID
            packet: The message

        Returns:
            True if the message is rejected (exactly one canned reply was sent)
        """
        mode = self.context.settings.spam_filter_mode
        if mode is SpamFilterMode.DISABLED or self.context.roster.is_contact(account, user):
            return False

        thread = get_thread(packet)
        if mode is SpamFilterMode.NO_AUTH:
            logger.info(f"Dropping message from stranger {user} to {account}")
            self.send_reply(account, user, thread, SPAM_REPLY_LIMIT.format(account=account))
            return True

        captcha = self.captchas.get((account, user))
        if captcha is None:
            captcha = self.generate_captcha(account, user)
            logger.info(f"Challenging stranger {user} for {account}")
            self.send_reply(account, user, thread,
                            SPAM_REPLY_CAPTCHA.format(account=account, question=captcha.question))
            return True

        answer = (get_body(packet) or '').strip()
        if answer == captcha.answer:
            del self.captchas[(account, user)]
            self.context.roster.add_subscription_request(account, user)
            self.send_reply(account, user, thread, SPAM_REPLY_CAPTCHA_CORRECT)
            return True

        captcha.attempt_count += 1
        if captcha.attempt_count >= CAPTCHA_MAX_ATTEMPT_COUNT:
            del self.captchas[(account, user)]
            self.context.roster.discard_subscription_request(account, user)
            logger.info(f"Challenge of {user} for {account} revoked after {captcha.attempt_count} wrong answers")
            self.send_reply(account, user, thread, SPAM_REPLY_CAPTCHA_MANY_ATTEMPTS)
            return True

        self.send_reply(account, user, thread,
                        SPAM_REPLY_CAPTCHA_INCORRECT.format(question=captcha.question))
        return True

    def generate_captcha(self, account: str, user: str) -> Captcha:
        """Issue a new arithmetic challenge for a sender."""
        a = random.randint(1, 10)
        b = random.randint(1, 10)
        captcha = Captcha(account=account, user=user, question=f"{a} + {b} = ?", answer=str(a + b))
        self.captchas[(account, user)] = captcha
        return captcha

    def get_captcha(self, account: str, user: str) -> Optional[Captcha]:
        return self.captchas.get((account, user))

    def clear_account(self, account: str):
        for key in [k for k in self.captchas if k[0] == account]:
            del self.captchas[key]
