"""
Encryption adapter contract.

The chat engine never implements ciphers: it asks an adapter whether a body is an
encrypted envelope, hands bodies to it for outgoing/incoming transformation, and asks
for the security level of a peer. Session negotiation lives behind start_session().
"""

import logging
from enum import Enum


logger = logging.getLogger('drunk-xmpp.encryption')


# Prefix of off-the-record envelopes (queries, data and error messages alike)
OTR_ENVELOPE_PREFIX = '?OTR'


class SecurityLevel(str, Enum):
    PLAIN = "plain"
    ENCRYPTED = "encrypted"
    VERIFIED = "verified"
    FINISHED = "finished"


class EncryptionError(Exception):
    """Incoming or outgoing text could not be transformed."""


class UnencryptedContentError(EncryptionError):
    """
    The incoming text was plaintext while an encrypted session was expected.

    Carries the plaintext so the caller can keep it.
    """

    def __init__(self, text: str):
        super().__init__("Received unencrypted content")
        self.text = text


class EncryptionAdapter:
    """Base adapter: override the transforms for a real encryption backend."""

    def is_encrypted_envelope(self, text) -> bool:
        """True if text is wrapped in an encryption envelope."""
        return bool(text) and text.startswith(OTR_ENVELOPE_PREFIX)

    def transform_outgoing(self, account: str, user: str, text: str) -> str:
        raise NotImplementedError

    def transform_incoming(self, account: str, user: str, text: str) -> str:
        raise NotImplementedError

    def security_level(self, account: str, user: str) -> SecurityLevel:
        raise NotImplementedError

    def start_session(self, account: str, user: str):
        raise NotImplementedError


class PlaintextEncryption(EncryptionAdapter):
    """
    Adapter for a client without an encryption backend.

    Outgoing text passes through. Incoming envelopes cannot be opened and raise
    EncryptionError; everything else passes through.
    """

    def transform_outgoing(self, account: str, user: str, text: str) -> str:
        return text

    def transform_incoming(self, account: str, user: str, text: str) -> str:
        if self.is_encrypted_envelope(text):
            raise EncryptionError(f"No encryption session with {user}")
        return text

    def security_level(self, account: str, user: str) -> SecurityLevel:
        return SecurityLevel.PLAIN

    def start_session(self, account: str, user: str):
        logger.warning(f"Cannot start encrypted session with {user}: no encryption backend")
