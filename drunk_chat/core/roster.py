"""
In-memory roster and room directories.

The roster decides which senders are trusted by the spam filter; the room directory
tells the registry which bare JIDs are multi-user rooms.
"""

import logging
from typing import Dict, Iterable, Set


logger = logging.getLogger('drunk_chat.roster')


class RosterDirectory:
    """Trusted contacts and pending subscription requests per account."""

    def __init__(self):
        self._contacts: Dict[str, Set[str]] = {}
        # Contacts pinned by the config survive server roster pushes
        self._configured: Dict[str, Set[str]] = {}
        self._subscription_requests: Dict[str, Set[str]] = {}

    def set_contacts(self, account: str, contacts: Iterable[str]):
        """Replace the server roster of an account, keeping configured contacts."""
        self._contacts[account] = set(contacts) | self._configured.get(account, set())
        logger.debug(f"Roster of {account}: {len(self._contacts[account])} contact(s)")

    def add_configured_contact(self, account: str, jid: str):
        self._configured.setdefault(account, set()).add(jid)
        self.add_contact(account, jid)

    def add_contact(self, account: str, jid: str):
        self._contacts.setdefault(account, set()).add(jid)

    def remove_contact(self, account: str, jid: str):
        self._contacts.get(account, set()).discard(jid)
        self._configured.get(account, set()).discard(jid)

    def is_contact(self, account: str, jid: str) -> bool:
        return jid in self._contacts.get(account, ())

    def add_subscription_request(self, account: str, jid: str):
        """Surface a subscription request from a sender that passed the captcha."""
        self._subscription_requests.setdefault(account, set()).add(jid)
        logger.info(f"Subscription request from {jid} for {account}")

    def discard_subscription_request(self, account: str, jid: str):
        self._subscription_requests.get(account, set()).discard(jid)

    def has_subscription_request(self, account: str, jid: str) -> bool:
        return jid in self._subscription_requests.get(account, ())

    def clear_account(self, account: str):
        self._contacts.pop(account, None)
        self._configured.pop(account, None)
        self._subscription_requests.pop(account, None)


class RoomDirectory:
    """Multi-user rooms known per account."""

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}

    def add_room(self, account: str, room: str):
        self._rooms.setdefault(account, set()).add(room)

    def remove_room(self, account: str, room: str):
        self._rooms.get(account, set()).discard(room)

    def has_room(self, account: str, room: str) -> bool:
        return room in self._rooms.get(account, ())

    def clear_account(self, account: str):
        self._rooms.pop(account, None)
