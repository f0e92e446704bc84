"""
Stanza transport.

Delivers inbound stanzas of each account to a listener (the conversation registry) and
sends outgoing stanzas, tracking XEP-0198 server acknowledgements per message id.

Listener interface:
    route(account, packet) -> bool
    process_carbons_message(account, message, direction) -> None
    on_roster_received(account, contacts) -> None
    on_disconnect(account) -> None
"""

import logging
from functools import partial
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from slixmpp import Message
from slixmpp.exceptions import IqError, IqTimeout
from slixmpp.jid import JID
from slixmpp.xmlstream.handler import Callback
from slixmpp.xmlstream.matcher import MatchXPath

from .stanzas import CARBONS_NS


logger = logging.getLogger('drunk-xmpp.transport')


# Roster subscriptions that make a contact trusted
TRUSTED_SUBSCRIPTIONS = ('both', 'to', 'from')


class NetworkError(Exception):
    """The stanza could not be handed to the server (not connected, stream broken)."""


class StanzaTransport:
    """Transport contract used by the chat engine."""

    def send(self, account: str, stanza: Message, on_ack: Optional[Callable[[], None]] = None):
        """
        Send a stanza.

        Args:
            account: Sending account (bare JID)
            stanza: Stanza to send
            on_ack: Called once the server acknowledged the stanza

        Raises:
            NetworkError: If the account is not connected
        """
        raise NotImplementedError

    def server_domain(self, account: str) -> str:
        """Domain of the account's server (used to spot offline-storage delays)."""
        return JID(account).domain


class XmppTransport(StanzaTransport):
    """Transport over one slixmpp ClientXMPP per account."""

    def __init__(self, listener=None):
        """
        Args:
            listener: Object receiving inbound traffic (see module docstring)
        """
        self.listener = listener
        self.clients: Dict[str, object] = {}
        self.connected: Set[str] = set()

        # Track pending server ACKs per account: {msg_id: (seq_number, on_ack)}
        self.pending_server_acks: Dict[str, Dict[str, Tuple[int, Optional[Callable]]]] = {}

    def set_listener(self, listener):
        self.listener = listener

    def attach(self, account: str, client):
        """
        Wire a client's events to the listener.

        Args:
            account: Account bare JID
            client: slixmpp ClientXMPP (XEP-0198 and XEP-0280 plugins registered)
        """
        self.clients[account] = client
        self.pending_server_acks[account] = {}

        client.add_event_handler('session_start', partial(self._on_session_start, account))
        client.add_event_handler('session_resumed', partial(self._on_session_resumed, account))
        client.add_event_handler('disconnected', partial(self._on_disconnected, account))
        client.add_event_handler('message', partial(self._on_message, account))
        client.add_event_handler('presence', partial(self._on_presence, account))
        client.add_event_handler('carbon_received', partial(self._on_carbon, account, 'received'))
        client.add_event_handler('carbon_sent', partial(self._on_carbon, account, 'sent'))

        # Register our own handler for ACK stanzas directly
        client.register_handler(
            Callback(f'SM Ack Handler ({account})',
                     MatchXPath('{urn:xmpp:sm:3}a'),
                     partial(self._on_sm_ack_received, account),
                     instream=True))
        logger.debug(f"Transport attached to {account}")

    def is_connected(self, account: str) -> bool:
        return account in self.connected

    def send(self, account: str, stanza: Message, on_ack: Optional[Callable[[], None]] = None):
        client = self.clients.get(account)
        if client is None or account not in self.connected:
            raise NetworkError(f"Account {account} is not connected")

        try:
            client.send(stanza)
        except (ConnectionError, OSError) as e:
            raise NetworkError(f"Send failed for {account}: {e}") from e

        # Track seq number and request server ACK (XEP-0198)
        msg_id = stanza['id']
        stream_management = client.plugin['xep_0198']
        if msg_id and hasattr(stream_management, 'seq'):
            self.pending_server_acks[account][msg_id] = (stream_management.seq, on_ack)
            logger.debug(f"Tracking message {msg_id} with seq {stream_management.seq}")
            stream_management.request_ack()
        else:
            logger.debug(f"Stream management unavailable, message {msg_id} will not be acked")

    # =========================================================================
    # Client events
    # =========================================================================

    async def _on_session_start(self, account: str, event):
        client = self.clients[account]
        self.connected.add(account)
        # A fresh stream counts from seq 0; acks of the old one can never arrive
        self.pending_server_acks[account] = {}
        logger.info(f"Session started for {account}")

        try:
            await client.get_roster()
        except (IqError, IqTimeout) as e:
            logger.warning(f"Roster fetch failed for {account}: {e}")
        client.send_presence()

        carbons = client.plugin['xep_0280']
        if carbons is not None:
            try:
                await carbons.enable()
            except (IqError, IqTimeout) as e:
                logger.warning(f"Could not enable carbons for {account}: {e}")

        self._dispatch('on_roster_received', account, self._trusted_contacts(client))

    def _on_session_resumed(self, account: str, event):
        self.connected.add(account)
        logger.info(f"Session resumed for {account}")
        self._dispatch('on_roster_received', account, self._trusted_contacts(self.clients[account]))

    def _on_disconnected(self, account: str, event):
        self.connected.discard(account)
        logger.info(f"Disconnected: {account}")
        self._dispatch('on_disconnect', account)

    def _on_message(self, account: str, msg: Message):
        # Carbon wrappers arrive again as carbon_received / carbon_sent
        if (msg.xml.find(f'{{{CARBONS_NS}}}received') is not None
                or msg.xml.find(f'{{{CARBONS_NS}}}sent') is not None):
            return
        self._dispatch('route', account, msg)

    def _on_presence(self, account: str, presence):
        self._dispatch('route', account, presence)

    def _on_carbon(self, account: str, direction: str, wrapper: Message):
        inner = wrapper[f'carbon_{direction}']
        if inner is None:
            logger.warning(f"Carbon {direction} wrapper had no forwarded message")
            return
        self._dispatch('process_carbons_message', account, inner, direction)

    def _on_sm_ack_received(self, account: str, ack_stanza):
        """
        Handler for XEP-0198 ACK stanzas (<a h="X" />).
        Checks if any of our pending messages are covered by this ACK.
        """
        try:
            ack_h = int(ack_stanza['h'])
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Could not process server ACK: {e}")
            return

        logger.debug(f"[XEP-0198] Server ACK received for {account}: h={ack_h}")
        pending = self.pending_server_acks.get(account, {})
        for msg_id, (msg_seq, on_ack) in list(pending.items()):
            if msg_seq > ack_h:
                continue
            del pending[msg_id]
            logger.info(f"[SERVER ACK] Message {msg_id} acknowledged by server (seq {msg_seq} <= h {ack_h})")
            if on_ack is None:
                continue
            try:
                on_ack()
            except Exception:
                logger.exception(f"Error in ack callback for {msg_id}")

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _trusted_contacts(client) -> Iterable[str]:
        roster = client.client_roster
        return [
            str(jid) for jid in roster
            if roster[jid]['subscription'] in TRUSTED_SUBSCRIPTIONS
        ]

    def _dispatch(self, method: str, *args):
        if self.listener is None:
            logger.debug(f"No listener for {method}, dropping")
            return
        try:
            getattr(self.listener, method)(*args)
        except Exception:
            logger.exception(f"Listener {method} failed for {args[0]}")
