import xml.etree.ElementTree as ET

import pytest
from slixmpp import Message

from drunk_xmpp.transport import NetworkError, XmppTransport

from conftest import ACCOUNT, PEER, make_message, make_presence


class FakeStreamManagement:
    def __init__(self):
        self.seq = 0
        self.requests = 0

    def request_ack(self):
        self.requests += 1


class FakeClient:
    def __init__(self):
        self.sent = []
        self.plugin = {'xep_0198': FakeStreamManagement(), 'xep_0280': None}
        self.client_roster = {}
        self.presences = 0

    def send(self, stanza):
        self.plugin['xep_0198'].seq += 1
        self.sent.append(stanza)

    async def get_roster(self):
        return None

    def send_presence(self):
        self.presences += 1


class Listener:
    def __init__(self):
        self.calls = []

    def route(self, account, packet):
        self.calls.append(('route', account, packet))
        return True

    def on_disconnect(self, account):
        self.calls.append(('on_disconnect', account))

    def on_roster_received(self, account, contacts):
        self.calls.append(('on_roster_received', account, list(contacts)))


@pytest.fixture
def xmpp():
    transport = XmppTransport(Listener())
    client = FakeClient()
    transport.clients[ACCOUNT] = client
    transport.pending_server_acks[ACCOUNT] = {}
    return transport, client


def _outgoing(msg_id):
    msg = Message()
    msg['to'] = PEER
    msg['id'] = msg_id
    msg['body'] = msg_id
    return msg


def test_send_requires_connected_account(xmpp):
    transport, client = xmpp
    with pytest.raises(NetworkError):
        transport.send(ACCOUNT, _outgoing('m1'))
    with pytest.raises(NetworkError):
        transport.send('nobody@example.com', _outgoing('m1'))
    assert client.sent == []


def test_server_ack_fires_callbacks_up_to_h(xmpp):
    transport, client = xmpp
    transport.connected.add(ACCOUNT)
    acked = []
    for msg_id in ('m1', 'm2', 'm3'):
        transport.send(ACCOUNT, _outgoing(msg_id), on_ack=lambda i=msg_id: acked.append(i))
    assert client.plugin['xep_0198'].requests == 3

    transport._on_sm_ack_received(ACCOUNT, {'h': '2'})
    assert sorted(acked) == ['m1', 'm2']
    assert list(transport.pending_server_acks[ACCOUNT]) == ['m3']

    transport._on_sm_ack_received(ACCOUNT, {'h': 'garbage'})
    transport._on_sm_ack_received(ACCOUNT, {'h': '3'})
    assert sorted(acked) == ['m1', 'm2', 'm3']


def test_failing_ack_callback_does_not_stop_others(xmpp):
    transport, client = xmpp
    transport.connected.add(ACCOUNT)
    acked = []

    def broken():
        raise RuntimeError("boom")

    transport.send(ACCOUNT, _outgoing('m1'), on_ack=broken)
    transport.send(ACCOUNT, _outgoing('m2'), on_ack=lambda: acked.append('m2'))
    transport._on_sm_ack_received(ACCOUNT, {'h': '2'})
    assert acked == ['m2']


async def test_new_session_drops_acks_of_lost_stream(xmpp):
    transport, client = xmpp
    transport.connected.add(ACCOUNT)
    acked = []
    for msg_id in ('m1', 'm2', 'm3'):
        transport.send(ACCOUNT, _outgoing(msg_id), on_ack=lambda i=msg_id: acked.append(i))
    transport._on_disconnected(ACCOUNT, None)

    # Not resumed: the server starts counting again
    await transport._on_session_start(ACCOUNT, None)
    assert transport.pending_server_acks[ACCOUNT] == {}
    assert client.presences == 1
    client.plugin['xep_0198'].seq = 0
    transport.send(ACCOUNT, _outgoing('n1'), on_ack=lambda: acked.append('n1'))
    transport._on_sm_ack_received(ACCOUNT, {'h': '1'})

    assert acked == ['n1']
    assert ('on_roster_received', ACCOUNT, []) in transport.listener.calls


def test_resumed_session_keeps_pending_acks(xmpp):
    transport, _ = xmpp
    transport.connected.add(ACCOUNT)
    acked = []
    transport.send(ACCOUNT, _outgoing('m1'), on_ack=lambda: acked.append('m1'))
    transport._on_disconnected(ACCOUNT, None)

    transport._on_session_resumed(ACCOUNT, None)
    transport._on_sm_ack_received(ACCOUNT, {'h': '1'})
    assert acked == ['m1']


def test_inbound_traffic_is_dispatched_to_listener(xmpp):
    transport, _ = xmpp
    message = make_message('hi')
    presence = make_presence()
    transport._on_message(ACCOUNT, message)
    transport._on_presence(ACCOUNT, presence)

    carbon_wrapper = make_message(None, sender=ACCOUNT)
    ET.SubElement(carbon_wrapper.xml, '{urn:xmpp:carbons:2}received')
    transport._on_message(ACCOUNT, carbon_wrapper)

    transport.connected.add(ACCOUNT)
    transport._on_disconnected(ACCOUNT, None)

    calls = transport.listener.calls
    assert calls == [
        ('route', ACCOUNT, message),
        ('route', ACCOUNT, presence),
        ('on_disconnect', ACCOUNT),
    ]
    assert not transport.is_connected(ACCOUNT)


def test_listener_errors_are_logged_not_raised(xmpp):
    transport, _ = xmpp

    class BrokenListener:
        def route(self, account, packet):
            raise ValueError("bad stanza")

    transport.set_listener(BrokenListener())
    transport._on_message(ACCOUNT, make_message('hi'))


def test_server_domain():
    assert XmppTransport().server_domain(ACCOUNT) == 'example.com'
