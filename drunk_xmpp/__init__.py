"""
DRUNK-XMPP - protocol layer of DrunkChat.

- client: slixmpp ClientXMPP with the XEPs the chat engine needs
- stanzas: stanza plugins (references, forward comments, group chat authors, media)
- references: reference/forward codec for incoming and outgoing messages
- transport: slixmpp-backed stanza transport with XEP-0198 ack tracking
- encryption: encryption adapter contract and the plaintext adapter
"""

from .client import DrunkXMPP
from .encryption import (
    EncryptionAdapter,
    EncryptionError,
    PlaintextEncryption,
    SecurityLevel,
    UnencryptedContentError,
)
from .transport import NetworkError, StanzaTransport, XmppTransport

__version__ = "1.0.0"
__all__ = [
    "DrunkXMPP",
    "EncryptionAdapter",
    "EncryptionError",
    "PlaintextEncryption",
    "SecurityLevel",
    "UnencryptedContentError",
    "NetworkError",
    "StanzaTransport",
    "XmppTransport",
]
