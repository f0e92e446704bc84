"""
Chat context: the collaborators shared by the registry and its conversations.

Built once at startup and passed down explicitly.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from drunk_xmpp.encryption import EncryptionAdapter, PlaintextEncryption
from drunk_xmpp.transport import StanzaTransport

from .roster import RosterDirectory, RoomDirectory
from .scheduler import ChatScheduler
from .settings import ChatSettings
from .signals import ChatSignals
from ..db.database import Database
from ..db.message_store import MessageStore
from ..services.notification import NotificationService
from ..services.receipt_handler import ReceiptHandler


@dataclass
class ChatContext:
    store: MessageStore
    transport: StanzaTransport
    encryption: EncryptionAdapter
    settings: ChatSettings
    signals: ChatSignals
    scheduler: ChatScheduler
    notifications: NotificationService
    receipts: ReceiptHandler
    roster: RosterDirectory = field(default_factory=RosterDirectory)
    rooms: RoomDirectory = field(default_factory=RoomDirectory)

    @classmethod
    def create(cls, db: Database, transport: StanzaTransport,
               encryption: Optional[EncryptionAdapter] = None,
               loop: Optional[asyncio.AbstractEventLoop] = None) -> 'ChatContext':
        """
        Build a context with default services around an initialized database.

        Args:
            db: Initialized Database
            transport: Stanza transport
            encryption: Encryption adapter (default: PlaintextEncryption)
            loop: Event loop of the interactive context (default: running loop)
        """
        store = MessageStore(db)
        settings = ChatSettings(db)
        signals = ChatSignals()
        return cls(
            store=store,
            transport=transport,
            encryption=encryption or PlaintextEncryption(),
            settings=settings,
            signals=signals,
            scheduler=ChatScheduler(loop),
            notifications=NotificationService(settings, signals),
            receipts=ReceiptHandler(store, signals),
        )
