"""
JID utility functions for conversation keys and addressing.
"""

import zlib
from typing import Optional, Tuple

from slixmpp.jid import JID, InvalidJID

from ..core.errors import MalformedJidError


def generate_resource(bare_jid: str) -> str:
    """
    Generate a unique, deterministic resource identifier for an XMPP account.

    Uses CRC32 checksum of the bare JID to create a unique 8-character hex suffix.
    Format: drunk-chat.{8-hex-chars}

    Args:
        bare_jid: The bare JID (user@domain) without resource

    Returns:
        Resource string
    """
    crc = zlib.crc32(bare_jid.encode('utf-8')) & 0xffffffff  # Ensure unsigned 32-bit
    return f"drunk-chat.{crc:08x}"


def parse_jid(value) -> JID:
    """
    Parse a JID, raising MalformedJidError on garbage.

    Args:
        value: str or JID

    Returns:
        JID instance
    """
    if isinstance(value, JID):
        return value
    if not value:
        raise MalformedJidError(f"Empty JID: {value!r}")
    try:
        return JID(str(value))
    except InvalidJID as e:
        raise MalformedJidError(f"Invalid JID {value!r}: {e}") from e


def split_resource(value) -> Tuple[str, Optional[str]]:
    """
    Split a JID into (bare, resource).

    Args:
        value: str or JID

    Returns:
        Tuple of bare JID and resource (None if the JID has none)
    """
    jid = parse_jid(value)
    return jid.bare, (jid.resource or None)
