"""
Stanza plugins used by the chat engine.

Registers the slixmpp XEP stanzas the engine reads and writes on Message (so they work
without loading the full plugins on a client), and defines the reference extension:

    <reference xmlns='https://xabber.com/protocol/references' type='mutable' begin='0' end='41'>
      <forwarded xmlns='urn:xmpp:forward:0'>...</forwarded>
    </reference>

Reference spans are inclusive and counted in characters of the XML-escaped body.
'mutable' references cover fallback text (quotes, file URLs, author nick) that clients
aware of the reference hide; 'markup' references carry formatting for their span.
"""

from slixmpp import Message, Presence
from slixmpp.xmlstream import ElementBase, register_stanza_plugin
from slixmpp.plugins.xep_0066.stanza import OOB
from slixmpp.plugins.xep_0085.stanza import ChatState
from slixmpp.plugins.xep_0203.stanza import Delay
from slixmpp.plugins.xep_0280.stanza import PrivateCarbon
from slixmpp.plugins.xep_0297.stanza import Forwarded
from slixmpp.plugins.xep_0359.stanza import OriginID, StanzaID


CLIENT_NS = 'jabber:client'
REFERENCES_NS = 'https://xabber.com/protocol/references'
FORWARD_COMMENT_NS = 'https://xabber.com/protocol/forward'
GROUPCHAT_NS = 'https://xabber.com/protocol/groupchat'
MEDIA_NS = 'https://xabber.com/protocol/otb'
FORWARD_NS = 'urn:xmpp:forward:0'
DELAY_NS = 'urn:xmpp:delay'
SID_NS = 'urn:xmpp:sid:0'
OOB_NS = 'jabber:x:oob'
MUC_USER_NS = 'http://jabber.org/protocol/muc#user'
CARBONS_NS = 'urn:xmpp:carbons:2'

REFERENCE_MUTABLE = 'mutable'
REFERENCE_MARKUP = 'markup'

MARKUP_ELEMENTS = ('bold', 'italic', 'underline', 'strike')


class Reference(ElementBase):
    """A span of the message body with structured meaning."""
    namespace = REFERENCES_NS
    name = 'reference'
    plugin_attrib = 'reference'
    plugin_multi_attrib = 'references'
    interfaces = {'type', 'begin', 'end'}

    def get_begin(self) -> int:
        return _int_attr(self._get_attr('begin'))

    def set_begin(self, value: int):
        self._set_attr('begin', str(value))

    def get_end(self) -> int:
        return _int_attr(self._get_attr('end'))

    def set_end(self, value: int):
        self._set_attr('end', str(value))

    def set_markup(self, bold=False, italic=False, underline=False, strike=False, uri=None):
        """Add formatting children for a markup reference."""
        flags = dict(bold=bold, italic=italic, underline=underline, strike=strike)
        for element_name in MARKUP_ELEMENTS:
            if flags[element_name]:
                self._set_sub_text(element_name, '', keep=True)
        if uri:
            self._set_sub_text('uri', uri)


def _int_attr(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class ForwardComment(ElementBase):
    """Legacy comment that replaces the body of a forwarding message."""
    namespace = FORWARD_COMMENT_NS
    name = 'comment'
    plugin_attrib = 'forward_comment'
    interfaces = set()


class GroupchatUser(ElementBase):
    """Group chat author of a message."""
    namespace = GROUPCHAT_NS
    name = 'user'
    plugin_attrib = 'groupchat_user'
    interfaces = {'id', 'nickname', 'jid', 'role', 'avatar'}
    sub_interfaces = {'nickname', 'jid', 'role', 'avatar'}


class GroupchatMarker(ElementBase):
    """Presence marker sent by group chat entities."""
    namespace = GROUPCHAT_NS
    name = 'x'
    plugin_attrib = 'groupchat'
    interfaces = set()


class MediaSharing(ElementBase):
    namespace = MEDIA_NS
    name = 'media-sharing'
    plugin_attrib = 'media_sharing'
    interfaces = set()


class MediaFile(ElementBase):
    namespace = MEDIA_NS
    name = 'file'
    plugin_attrib = 'file'
    interfaces = {'media-type', 'name', 'size', 'desc', 'height', 'width', 'duration'}
    sub_interfaces = interfaces


class MediaSources(ElementBase):
    namespace = MEDIA_NS
    name = 'sources'
    plugin_attrib = 'sources'
    interfaces = {'uri'}
    sub_interfaces = interfaces


def register_stanzas():
    """Register every stanza plugin the chat engine touches (idempotent)."""
    register_stanza_plugin(Message, OriginID)
    register_stanza_plugin(Message, StanzaID)
    register_stanza_plugin(Message, Delay)
    register_stanza_plugin(Message, ChatState)
    register_stanza_plugin(Message, PrivateCarbon)
    register_stanza_plugin(Message, OOB)
    register_stanza_plugin(Message, ForwardComment)
    register_stanza_plugin(Message, Reference, iterable=True)
    register_stanza_plugin(Message, GroupchatUser)

    register_stanza_plugin(Forwarded, Delay)
    register_stanza_plugin(Reference, Forwarded)
    register_stanza_plugin(Reference, MediaSharing)
    register_stanza_plugin(Reference, GroupchatUser)
    register_stanza_plugin(MediaSharing, MediaFile)
    register_stanza_plugin(MediaSharing, MediaSources)

    register_stanza_plugin(Presence, GroupchatMarker)


register_stanzas()
