import asyncio

from drunk_chat.core.constants import ConversationKind, FILE_MESSAGE_PLACEHOLDER, \
    INTERNAL_ERROR_NULL_MESSAGE
from drunk_chat.core.models import MessageRecord, now_ms
from drunk_xmpp.encryption import EncryptionError, PlaintextEncryption
from drunk_xmpp.references import (
    extract_attachments, extract_forwarded, get_body, rewrite_body_with_references,
)

from conftest import ACCOUNT, PEER, ROOM, make_message

CHATSTATES_NS = 'http://jabber.org/protocol/chatstates'


async def _settle(context):
    await context.scheduler.join()
    await asyncio.sleep(0)


async def test_offline_send_is_drained_on_reconnect_and_acked(brewery, context, transport, store):
    transport.connected = False
    message = brewery.send_message(ACCOUNT, PEER, 'hi')
    await _settle(context)

    stored = store.get(message.unique_id)
    assert stored.sent is False
    assert stored.stanza_id == message.unique_id
    assert transport.sent == []

    transport.connected = True
    brewery.on_roster_received(ACCOUNT, [PEER])
    await _settle(context)

    stored = store.get(message.unique_id)
    assert stored.sent is True
    assert stored.acknowledged is False
    assert stored.original_stanza

    transport.ack(message.unique_id)
    await asyncio.sleep(0)
    assert store.get(message.unique_id).acknowledged is True


async def test_stanza_decorations(brewery, context, transport):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    message = conversation.send_message('hello there')
    await _settle(context)

    [stanza] = transport.sent
    assert stanza['to'] == PEER
    assert stanza['type'] == 'chat'
    assert get_body(stanza) == 'hello there'
    assert stanza['thread'] == conversation.thread_id
    assert stanza['id'] == message.unique_id
    assert stanza['origin_id']['id'] == message.unique_id
    assert stanza.xml.find(f'{{{CHATSTATES_NS}}}active') is not None
    assert stanza.xml.find('{urn:xmpp:delay}delay') is None


async def test_outgoing_message_never_notifies_and_clears_notifications(brewery, context):
    brewery.route(ACCOUNT, make_message('ping'))
    assert context.notifications.get_message_notifications(ACCOUNT, PEER)

    conversation = brewery.get_chat(ACCOUNT, PEER)
    conversation.close_chat()
    brewery.send_message(ACCOUNT, PEER, 'pong')
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []
    assert conversation.active is True
    await _settle(context)
    assert conversation.get_unread_message_count() == 0


async def test_drain_stops_at_first_failure(brewery, context, transport, store):
    transport.connected = False
    conversation = brewery.create_chat(ACCOUNT, PEER)
    ids = [conversation.send_message(text).unique_id for text in ('one', 'two', 'three')]
    await _settle(context)

    transport.connected = True
    transport.fail_after = 1
    assert conversation.drain() == 1
    assert [store.get(i).sent for i in ids] == [True, False, False]

    transport.fail_after = None
    assert conversation.drain() == 2
    assert [get_body(s) for s in transport.sent] == ['one', 'two', 'three']


def test_unbuildable_message_is_errored_and_marked_sent(brewery, context, store, transport):
    class BrokenEncryption(PlaintextEncryption):
        def transform_outgoing(self, account, user, text):
            raise EncryptionError("no session")

    context.encryption = BrokenEncryption()
    conversation = brewery.create_chat(ACCOUNT, PEER)
    store.save(MessageRecord(unique_id='m1', account=ACCOUNT, user=PEER, text='secret',
                             stanza_id='m1', timestamp=now_ms()))

    assert conversation.drain() == 1
    stored = store.get('m1')
    assert stored.sent is True
    assert stored.error is True
    assert stored.error_description == INTERNAL_ERROR_NULL_MESSAGE
    assert transport.sent == []


def test_old_message_gets_delay_and_missing_timestamp_is_stamped(brewery, store, transport):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    old = now_ms() - 5 * 60 * 1000
    store.save(MessageRecord(unique_id='old', account=ACCOUNT, user=PEER, text='old',
                             stanza_id='old', timestamp=old))
    store.save(MessageRecord(unique_id='nots', account=ACCOUNT, user=PEER, text='no time',
                             stanza_id='nots'))

    assert conversation.drain() == 2
    stanzas = {s['id']: s for s in transport.sent}
    assert stanzas['old'].xml.find('{urn:xmpp:delay}delay') is not None
    assert store.get('old').delay_timestamp == old
    assert stanzas['nots'].xml.find('{urn:xmpp:delay}delay') is None
    assert store.get('nots').timestamp is not None


def test_required_security_defers_one_to_one_chats(brewery, context, store, transport):
    context.settings.set('security_otr_mode', 'required')
    conversation = brewery.create_chat(ACCOUNT, PEER)
    message = conversation.send_message('wait for it')
    assert conversation.can_send_message() is False
    assert conversation.drain() == 0
    assert store.get(message.unique_id).sent is False

    room = brewery.create_chat(ACCOUNT, ROOM, ConversationKind.ROOM)
    store.save(MessageRecord(unique_id='r1', account=ACCOUNT, user=ROOM, text='room text',
                             stanza_id='r1', timestamp=now_ms()))
    assert room.drain() == 1
    [stanza] = transport.sent
    assert stanza['type'] == 'groupchat'
    assert stanza['to'] == ROOM


async def test_file_message_upload_and_send(brewery, context, store, transport, tmp_path):
    paths = []
    for name in ('a.png', 'b.pdf', 'c.ogg', 'd.txt'):
        path = tmp_path / name
        path.write_bytes(b'0123456789')
        paths.append(str(path))

    message_id = brewery.create_file_message(ACCOUNT, PEER, paths)
    stored = store.get(message_id)
    assert stored.in_progress is True
    assert stored.text == FILE_MESSAGE_PLACEHOLDER
    assert [a.title for a in stored.attachments] == ['a.png', 'b.pdf', 'c.ogg', 'd.txt']
    assert stored.attachments[0].is_image is True
    assert stored.attachments[0].file_size == 10

    brewery.get_chat(ACCOUNT, PEER).send_messages()
    await _settle(context)
    assert transport.sent == []

    urls = {path: f'https://upload.example.com/{i}/{path.rsplit("/", 1)[1]}'
            for i, path in enumerate(paths[:3])}
    assert brewery.update_file_message(ACCOUNT, PEER, message_id, urls, not_uploaded=[paths[3]])
    await _settle(context)

    stored = store.get(message_id)
    assert stored.sent is True
    assert stored.in_progress is False
    assert stored.text == ''
    assert [a.file_url for a in stored.attachments] == list(urls.values())

    [stanza] = transport.sent
    body = get_body(stanza)
    assert body == '\n'.join(urls.values())
    assert [a['file_url'] for a in extract_attachments(stanza)] == list(urls.values())
    assert rewrite_body_with_references(stanza, body)[0] == ''


async def test_upload_error_and_resend(brewery, context, store, transport, tmp_path):
    path = tmp_path / 'a.txt'
    path.write_text('x')
    message_id = brewery.create_file_message(ACCOUNT, PEER, [str(path)])

    assert brewery.update_message_with_error(message_id, 'upload failed')
    stored = store.get(message_id)
    assert stored.error is True
    assert stored.in_progress is False

    assert brewery.remove_error_and_resend(ACCOUNT, PEER, message_id)
    await _settle(context)
    stored = store.get(message_id)
    assert stored.error is False
    assert stored.sent is True
    assert brewery.update_message_with_error('missing', 'x') is False


async def test_forwarded_message_quotes_and_references(brewery, context, store, transport):
    brewery.route(ACCOUNT, make_message('first line\nsecond line'))
    [quoted] = store.query(ACCOUNT, PEER)

    message = brewery.forward_messages(ACCOUNT, 'carol@example.org', [quoted.unique_id], 'look')
    await _settle(context)

    [stanza] = transport.sent
    quote = f'> {PEER}:\n> first line\n> second line\n'
    assert get_body(stanza) == quote + 'look'
    [(inner, stamp)] = extract_forwarded(stanza)
    assert get_body(inner) == 'first line\nsecond line'
    assert stamp is not None
    assert rewrite_body_with_references(stanza, get_body(stanza))[0] == 'look'
    assert store.get(message.unique_id).forwarded_ids == [quoted.unique_id]


def test_message_tree_nests_forwards(brewery, store):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    store.save(MessageRecord(unique_id='child', account=ACCOUNT, user=PEER, text='deep',
                             incoming=True, original_from='carol@example.org/x',
                             parent_message_id='top', timestamp=1))
    store.save(MessageRecord(unique_id='top', account=ACCOUNT, user=PEER, text='mine',
                             forwarded_ids=['child'], timestamp=2))
    assert conversation.create_message_tree('top') == (
        f'> {ACCOUNT}:\n'
        '>> carol@example.org:\n'
        '>> deep\n'
        '> mine'
    )
    assert conversation.create_message_tree('missing') == ''


async def test_coalesced_drain_requests_share_one_task(brewery, context):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    first = conversation.send_messages()
    second = conversation.send_messages()
    assert first is second
    assert conversation._drain_requested is True
    await _settle(context)
    assert conversation._drain_requested is False
