"""
Shared fixtures: an in-memory message database, a recording transport and a brewery.
"""

import pytest
from slixmpp import Message, Presence

from drunk_chat.core import ChatContext, ConversationBrewery
from drunk_chat.db.database import Database
from drunk_xmpp.transport import NetworkError, StanzaTransport


ACCOUNT = 'alice@example.com'
PEER = 'bob@example.org'
ROOM = 'lounge@conference.example.org'


class FakeTransport(StanzaTransport):
    """Records sent stanzas; refuses them while disconnected or after fail_after sends."""

    def __init__(self):
        self.connected = True
        self.fail_after = None
        self.sent = []
        self.acks = {}

    def send(self, account, stanza, on_ack=None):
        if not self.connected:
            raise NetworkError(f"{account} offline")
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise NetworkError("stream broken")
        self.sent.append(stanza)
        if on_ack is not None:
            self.acks[stanza['id']] = on_ack

    def ack(self, stanza_id):
        self.acks.pop(stanza_id)()


class SignalRecorder:
    def __init__(self, signals):
        self.new_message = 0
        self.incoming = []
        self.updated = []
        self.removed = []
        self.private_requests = []
        signals.new_message.connect(self._on_new_message)
        signals.new_incoming_message.connect(lambda a, u: self.incoming.append((a, u)))
        signals.message_updated.connect(lambda a, u: self.updated.append((a, u)))
        signals.conversation_removed.connect(lambda a, u: self.removed.append((a, u)))
        signals.muc_private_chat_request.connect(lambda a, u: self.private_requests.append((a, u)))

    def _on_new_message(self):
        self.new_message += 1


@pytest.fixture
def db():
    database = Database(':memory:')
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def context(db, transport):
    return ChatContext.create(db, transport)


@pytest.fixture
def store(context):
    return context.store


@pytest.fixture
def brewery(context):
    return ConversationBrewery(context)


@pytest.fixture
def recorder(context):
    return SignalRecorder(context.signals)


def make_message(body=None, sender=f'{PEER}/phone', to=ACCOUNT, mtype='chat', msg_id=None, thread=None):
    msg = Message()
    msg['from'] = sender
    msg['to'] = to
    msg['type'] = mtype
    if body is not None:
        msg['body'] = body
    if msg_id:
        msg['id'] = msg_id
    if thread:
        msg['thread'] = thread
    return msg


def make_presence(sender=f'{PEER}/phone', ptype=None):
    presence = Presence()
    presence['from'] = sender
    presence['to'] = ACCOUNT
    if ptype:
        presence['type'] = ptype
    return presence
