"""
Reference/forward codec.

Reads references, forwarded sub-messages, attachments and group chat authors out of
incoming Message stanzas, rewrites reference-bearing bodies into plain and markup text,
and builds the references attached to outgoing stanzas.

Stanza reads go through the raw XML tree: reading an absent plugin through
msg['plugin'] would create an empty element on the incoming stanza.
"""

import html
import logging
import os
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape, quoteattr

from slixmpp import Message
from slixmpp.plugins.xep_0203.stanza import Delay
from slixmpp.plugins.xep_0297.stanza import Forwarded

from .stanzas import (
    CLIENT_NS, DELAY_NS, FORWARD_COMMENT_NS, FORWARD_NS, GROUPCHAT_NS, MEDIA_NS,
    MUC_USER_NS, OOB_NS, REFERENCES_NS, SID_NS, MARKUP_ELEMENTS,
    REFERENCE_MARKUP, REFERENCE_MUTABLE, GroupchatUser, MediaSharing, Reference,
)


logger = logging.getLogger('drunk-xmpp.references')


_XML_ENTITIES = {"'": "&apos;", '"': "&quot;"}

_MARKUP_TAGS = {
    'bold': ('<b>', '</b>'),
    'italic': ('<i>', '</i>'),
    'underline': ('<u>', '</u>'),
    'strike': ('<strike>', '</strike>'),
}


def _tag(ns: str, name: str) -> str:
    return f'{{{ns}}}{name}'


# ============================================================================
# Encoding
# ============================================================================

def xml_encode(text: str) -> str:
    """Escape the five XML special characters (& < > ' ")."""
    return escape(text or '', _XML_ENTITIES)


def xml_encoded_length(text: str) -> int:
    """
    Length of text once XML-escaped, in UTF-16 code units.

    Reference spans are counted in these units, so every begin/end written or read
    must use this function rather than len(). Characters outside the BMP count twice.
    """
    return _utf16_width(xml_encode(text))


def _utf16_width(text: str) -> int:
    return len(text.encode('utf-16-le')) // 2


# ============================================================================
# Simple stanza queries
# ============================================================================

def has_body(packet: Message) -> bool:
    """True if the stanza carries a <body/> element (possibly empty)."""
    return packet.xml.find(_tag(CLIENT_NS, 'body')) is not None


def get_body(packet: Message) -> Optional[str]:
    """Body text, or None without a <body/> element."""
    body = packet.xml.find(_tag(CLIENT_NS, 'body'))
    if body is None:
        return None
    return body.text or ''


def get_thread(packet: Message) -> Optional[str]:
    thread = packet.xml.find(_tag(CLIENT_NS, 'thread'))
    if thread is None or not thread.text:
        return None
    return thread.text


def get_stanza_id(packet: Message) -> Optional[str]:
    """
    Stable id of a message: origin-id, then server stanza-id, then the id attribute.
    """
    origin = packet.xml.find(_tag(SID_NS, 'origin-id'))
    if origin is not None and origin.get('id'):
        return origin.get('id')
    stanza_id = packet.xml.find(_tag(SID_NS, 'stanza-id'))
    if stanza_id is not None and stanza_id.get('id'):
        return stanza_id.get('id')
    return packet.xml.get('id') or None


def get_delay(packet: Message) -> Optional[Delay]:
    """XEP-0203 delay element, if present."""
    delay_xml = packet.xml.find(_tag(DELAY_NS, 'delay'))
    if delay_xml is None:
        return None
    return Delay(xml=delay_xml)


def get_delay_stamp(packet: Message) -> Optional[datetime]:
    delay = get_delay(packet)
    return delay['stamp'] if delay is not None else None


def get_delay_reason(packet: Message) -> Optional[str]:
    delay = get_delay(packet)
    if delay is None:
        return None
    return delay.xml.text


def is_offline_message(packet: Message, server_domain: str) -> bool:
    """True if the server stamped the delay, i.e. the message waited in offline storage."""
    delay = get_delay(packet)
    if delay is None:
        return False
    delay_from = delay.xml.get('from')
    return bool(delay_from) and delay_from == server_domain


def is_muc_invite(packet: Message) -> bool:
    muc_user = packet.xml.find(_tag(MUC_USER_NS, 'x'))
    return muc_user is not None and muc_user.find(_tag(MUC_USER_NS, 'invite')) is not None


def has_muc_user(packet) -> bool:
    return packet.xml.find(_tag(MUC_USER_NS, 'x')) is not None


def has_groupchat_marker(packet) -> bool:
    """True if a presence carries the group chat <x/> marker."""
    return packet.xml.find(_tag(GROUPCHAT_NS, 'x')) is not None


def _references(packet: Message) -> List:
    return packet.xml.findall(_tag(REFERENCES_NS, 'reference'))


def _span(ref_xml) -> Tuple[int, int]:
    try:
        return int(ref_xml.get('begin')), int(ref_xml.get('end'))
    except (TypeError, ValueError):
        return -1, -1


# ============================================================================
# Extraction
# ============================================================================

def _forwarded_pairs(forwarded_elements) -> List[Tuple[Message, Optional[datetime]]]:
    pairs = []
    for forwarded in forwarded_elements:
        inner = forwarded.find(_tag(CLIENT_NS, 'message'))
        if inner is None:
            continue
        delay_xml = forwarded.find(_tag(DELAY_NS, 'delay'))
        stamp = Delay(xml=delay_xml)['stamp'] if delay_xml is not None else None
        pairs.append((Message(xml=inner), stamp))
    return pairs


def extract_forwarded(packet: Message) -> List[Tuple[Message, Optional[datetime]]]:
    """
    Forwarded sub-messages in document order, with their delay stamps.

    Forward references are preferred; bare <forwarded/> children are the fallback.
    """
    in_references = [
        forwarded
        for ref in _references(packet)
        for forwarded in ref.findall(_tag(FORWARD_NS, 'forwarded'))
    ]
    if in_references:
        return _forwarded_pairs(in_references)
    return _forwarded_pairs(packet.xml.findall(_tag(FORWARD_NS, 'forwarded')))


def extract_forward_comment(packet: Message) -> Optional[str]:
    comment = packet.xml.find(_tag(FORWARD_COMMENT_NS, 'comment'))
    if comment is None:
        return None
    return comment.text or ''


def extract_groupchat_user(packet: Message) -> Optional[Dict[str, Optional[str]]]:
    """
    Group chat author carried by a user reference (or a bare <user/> child).

    Returns:
        Dict with id, nickname, jid, role, avatar, or None
    """
    user_xml = None
    for ref in _references(packet):
        user_xml = ref.find(_tag(GROUPCHAT_NS, 'user'))
        if user_xml is not None:
            break
    if user_xml is None:
        user_xml = packet.xml.find(_tag(GROUPCHAT_NS, 'user'))
    if user_xml is None or not user_xml.get('id'):
        return None

    user = GroupchatUser(xml=user_xml)
    return {
        'id': user['id'],
        'nickname': user['nickname'] or None,
        'jid': user['jid'] or None,
        'role': user['role'] or None,
        'avatar': user['avatar'] or None,
    }


def _optional_int(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, '') else None
    except ValueError:
        return None


def extract_attachments(packet: Message) -> List[Dict]:
    """
    Attachments carried by media references, in document order.

    Falls back to XEP-0066 out-of-band URLs when there are no media references.

    Returns:
        List of dicts keyed like drunk_chat Attachment fields
    """
    attachments = []
    for ref in _references(packet):
        media_xml = ref.find(_tag(MEDIA_NS, 'media-sharing'))
        if media_xml is None:
            continue
        media = MediaSharing(xml=media_xml)
        file_info = media['file']
        url = media['sources']['uri']
        if not url:
            continue
        mime_type = file_info['media-type'] or None
        attachments.append({
            'file_url': url,
            'title': file_info['name'] or os.path.basename(url),
            'mime_type': mime_type,
            'file_size': _optional_int(file_info['size']),
            'is_image': bool(mime_type and mime_type.startswith('image/')),
            'image_width': _optional_int(file_info['width']),
            'image_height': _optional_int(file_info['height']),
            'duration': _optional_int(file_info['duration']),
        })

    if not attachments:
        for oob in packet.xml.findall(_tag(OOB_NS, 'x')):
            url_xml = oob.find(_tag(OOB_NS, 'url'))
            if url_xml is not None and url_xml.text:
                attachments.append({
                    'file_url': url_xml.text,
                    'title': os.path.basename(url_xml.text),
                })
    return attachments


# ============================================================================
# Body rewriting
# ============================================================================

def _markup_tags(ref_xml) -> List[Tuple[str, str]]:
    tags = []
    for element_name in MARKUP_ELEMENTS:
        if ref_xml.find(_tag(REFERENCES_NS, element_name)) is not None:
            tags.append(_MARKUP_TAGS[element_name])
    uri = ref_xml.find(_tag(REFERENCES_NS, 'uri'))
    if uri is not None and uri.text:
        tags.append((f'<a href={quoteattr(uri.text)}>', '</a>'))
    return tags


def rewrite_body_with_references(packet: Message, text: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Apply the stanza's references to its body.

    Mutable references hide their fallback span from the plain body; markup references
    wrap their span in HTML tags in the markup twin.

    Args:
        packet: Stanza carrying the references
        text: Body to rewrite

    Returns:
        (plain body, markup body or None when no markup applies)
    """
    refs = _references(packet)
    if not refs or not text:
        return text, None

    escaped = xml_encode(text)
    length = _utf16_width(escaped)
    hidden = [False] * length
    opens = defaultdict(list)
    closes = defaultdict(list)
    has_markup = False

    for ref in refs:
        begin, end = _span(ref)
        if begin < 0 or end >= length or begin > end:
            logger.debug(f"Ignoring reference with bad span {begin}..{end} (body length {length})")
            continue

        if ref.get('type') == REFERENCE_MARKUP:
            tags = _markup_tags(ref)
            if not tags:
                continue
            has_markup = True
            for open_tag, close_tag in tags:
                opens[begin].append(open_tag)
                closes[end].insert(0, close_tag)
        else:
            for i in range(begin, end + 1):
                hidden[i] = True

    # Spans index UTF-16 units; a surrogate pair is one char covering two units
    plain_chars = []
    markup_parts = []
    unit = 0
    for char in escaped:
        units = range(unit, unit + _utf16_width(char))
        unit = units.stop
        for i in units:
            markup_parts.extend(opens.get(i, ()))
        if not any(hidden[i] for i in units):
            plain_chars.append(char)
            markup_parts.append(char)
        for i in units:
            markup_parts.extend(closes.get(i, ()))

    plain = html.unescape(''.join(plain_chars))
    markup = ''.join(markup_parts) if has_markup else None
    return plain, markup


# ============================================================================
# Builders
# ============================================================================

def _new_reference(ref_type: str, begin: int, end: int) -> Reference:
    ref = Reference()
    ref['type'] = ref_type
    ref['begin'] = begin
    ref['end'] = end
    return ref


def add_media_reference(msg: Message, begin: int, end: int, url: str, title: Optional[str] = None,
                        mime_type: Optional[str] = None, size: Optional[int] = None,
                        width: Optional[int] = None, height: Optional[int] = None,
                        duration: Optional[int] = None) -> Reference:
    """
    Attach a media reference covering the URL line of an attachment.

    Returns:
        The appended Reference
    """
    ref = _new_reference(REFERENCE_MUTABLE, begin, end)
    file_info = ref['media_sharing']['file']
    for key, value in (('media-type', mime_type), ('name', title), ('size', size),
                       ('width', width), ('height', height), ('duration', duration)):
        if value not in (None, ''):
            file_info[key] = str(value)
    ref['media_sharing']['sources']['uri'] = url
    msg.append(ref)
    return ref


def add_forward_reference(msg: Message, begin: int, end: int, forwarded_message: Message,
                          stamp: Optional[datetime] = None) -> Reference:
    """
    Attach a forward reference wrapping a copy of the quoted message.

    Returns:
        The appended Reference
    """
    ref = _new_reference(REFERENCE_MUTABLE, begin, end)
    forwarded = Forwarded()
    if stamp is not None:
        forwarded['delay']['stamp'] = stamp
    forwarded.xml.append(forwarded_message.xml)
    ref.xml.append(forwarded.xml)
    msg.append(ref)
    return ref


def add_markup_reference(msg: Message, begin: int, end: int, **markup) -> Reference:
    """Attach a markup reference (bold/italic/underline/strike/uri) to a span."""
    ref = _new_reference(REFERENCE_MARKUP, begin, end)
    ref.set_markup(**markup)
    msg.append(ref)
    return ref


def add_groupchat_user_reference(msg: Message, begin: int, end: int, user_id: str,
                                 nickname: Optional[str] = None, jid: Optional[str] = None,
                                 role: Optional[str] = None) -> Reference:
    """Attach a group chat author reference covering the nickname prefix."""
    ref = _new_reference(REFERENCE_MUTABLE, begin, end)
    user = ref['groupchat_user']
    user['id'] = user_id
    if nickname:
        user['nickname'] = nickname
    if jid:
        user['jid'] = jid
    if role:
        user['role'] = role
    msg.append(ref)
    return ref
