"""
DRUNK-XMPP client: one slixmpp ClientXMPP per account.

Registers the XEPs the chat engine relies on:
- XEP-0030 (Service Discovery)
- XEP-0045 (Multi-User Chat) for rooms and private room chats
- XEP-0066 (Out of Band Data) for inline media
- XEP-0085 (Chat State Notifications)
- XEP-0198 (Stream Management) server acknowledgements
- XEP-0199 (XMPP Ping) keepalive
- XEP-0203 (Delayed Delivery)
- XEP-0280 (Message Carbons) and XEP-0297 (Stanza Forwarding)
- XEP-0359 (Unique and Stable Stanza IDs)

Inbound traffic is wired to the conversation registry by XmppTransport.attach().
"""

import logging
from typing import Dict, Optional

from slixmpp import ClientXMPP
from slixmpp.exceptions import IqError, IqTimeout

from .stanzas import register_stanzas


class DrunkXMPP(ClientXMPP):
    """Account connection used by the chat engine."""

    def __init__(
        self,
        jid: str,
        password: str,
        rooms: Optional[Dict[str, Dict]] = None,
        keepalive_interval: int = 60,
        sasl_mech: str = 'SCRAM-SHA-1',
    ):
        """
        Args:
            jid: Account JID
            password: Account password
            rooms: Rooms to join after session start: {room_jid: {'nick': ..., 'password': ...}}
            keepalive_interval: XEP-0199 ping interval in seconds
            sasl_mech: Preferred SASL mechanism
        """
        super().__init__(jid, password, sasl_mech=sasl_mech)

        self.logger = logging.getLogger('drunk-xmpp.client')
        self.rooms = rooms or {}
        self.user_disconnected = False

        # Monkey-patch XEP-0198 stanza interfaces BEFORE registering the plugin!
        # MatchIDSender checks every incoming stanza, including stream management
        # stanzas which carry no 'from'/'id' attributes.
        from slixmpp.plugins.xep_0198 import stanza as sm_stanza
        sm_stanza.Ack.interfaces = sm_stanza.Ack.interfaces | {'from', 'id'}
        sm_stanza.RequestAck.interfaces = sm_stanza.RequestAck.interfaces | {'from', 'id'}
        sm_stanza.Enabled.interfaces = sm_stanza.Enabled.interfaces | {'from'}
        sm_stanza.Resumed.interfaces = sm_stanza.Resumed.interfaces | {'from'}
        sm_stanza.Failed.interfaces = sm_stanza.Failed.interfaces | {'from', 'id'}

        self.register_plugin('xep_0198', {'window': 5})
        self.register_plugin('xep_0030')
        self.register_plugin('xep_0045')
        self.register_plugin('xep_0066')
        self.register_plugin('xep_0085')
        self.register_plugin('xep_0199', {'keepalive': True, 'interval': keepalive_interval})
        self.register_plugin('xep_0203')
        self.register_plugin('xep_0297')
        self.register_plugin('xep_0280')
        self.register_plugin('xep_0359')
        register_stanzas()

        self.add_event_handler("session_start", self._on_session_start)
        self.add_event_handler("failed_auth", self._on_failed_auth)

    async def _on_session_start(self, event):
        """Join configured rooms once the stream is up."""
        muc = self.plugin['xep_0045']
        for room_jid, room in self.rooms.items():
            nick = room.get('nick') or self.boundjid.user
            try:
                await muc.join_muc_wait(room_jid, nick, password=room.get('password'), maxstanzas=0)
                self.logger.info(f"Joined room {room_jid} as {nick}")
            except (IqError, IqTimeout, TimeoutError) as e:
                self.logger.warning(f"Failed to join room {room_jid}: {e}")

    async def _on_failed_auth(self, event):
        """Handler for authentication failure."""
        self.logger.critical("XMPP authentication failed! Check JID/password.")
        # Don't retry on auth failure
        self.abort()

    def connect(self, address=None, **kwargs):
        """
        Connect to the server.

        Args:
            address: Optional tuple (host, port) for manual server override
            **kwargs: Additional arguments (host, port) passed by slixmpp internals
        """
        self.user_disconnected = False
        self.logger.info("Connecting to XMPP server...")
        if address:
            return super().connect(host=address[0], port=address[1])
        return super().connect(**kwargs)

    def disconnect(self, wait=2.0, reason=None, ignore_send_queue=False, disable_auto_reconnect=False):
        """
        Disconnect from the server.

        Args:
            wait: Seconds to wait for disconnect
            reason: Optional disconnect reason string
            ignore_send_queue: Whether to ignore pending stanzas
            disable_auto_reconnect: Stop XEP-0199 keepalive so the account stays offline
        """
        if disable_auto_reconnect:
            self.user_disconnected = True
            if 'xep_0199' in self.plugin:
                self.plugin['xep_0199'].disable_keepalive()
            self.logger.info("Disconnecting from XMPP server (user-initiated, will not auto-reconnect)...")
        else:
            self.logger.info("Disconnecting from XMPP server (auto-reconnect may occur)...")
        return super().disconnect(wait=wait, reason=reason, ignore_send_queue=ignore_send_queue)
