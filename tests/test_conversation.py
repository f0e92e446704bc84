import asyncio
import time
import xml.etree.ElementTree as ET
from datetime import datetime, timezone

import pytest
from slixmpp import Message

from drunk_chat.core.constants import ChatAction, ConversationKind, NotificationMode
from drunk_chat.core.errors import MessageCreationError
from drunk_chat.core.models import NotificationState
from drunk_xmpp.encryption import PlaintextEncryption, UnencryptedContentError
from drunk_xmpp.references import add_forward_reference, add_groupchat_user_reference, \
    add_markup_reference, xml_encoded_length

from conftest import ACCOUNT, PEER, ROOM, make_message, make_presence


def _messages(store, user=PEER):
    return store.query(ACCOUNT, user)


def test_inbound_message_creates_conversation_and_notifies(brewery, store, context, recorder):
    assert brewery.route(ACCOUNT, make_message('hello', msg_id='s1'))

    conversation = brewery.get_chat(ACCOUNT, PEER)
    assert conversation is not None
    assert conversation.kind is ConversationKind.CHAT

    [message] = _messages(store)
    assert message.text == 'hello'
    assert message.incoming is True
    assert message.read is False
    assert message.sent is True
    assert message.resource == 'phone'
    assert message.stanza_id == 's1'
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == [message.unique_id]
    assert recorder.incoming == [(ACCOUNT, PEER)]


def test_previous_id_chain(brewery, store):
    brewery.route(ACCOUNT, make_message('one', msg_id='x1'))
    brewery.route(ACCOUNT, make_message('two', msg_id='x2'))
    brewery.get_chat(ACCOUNT, PEER).on_disconnect()
    brewery.route(ACCOUNT, make_message('three', msg_id='x3'))

    one, two, three = _messages(store)
    assert one.previous_id is None
    assert two.previous_id == 'x1'
    assert three.previous_id is None
    assert brewery.get_chat(ACCOUNT, PEER).last_message_id == 'x3'


def test_duplicate_stanza_id_is_ignored(brewery, store):
    brewery.route(ACCOUNT, make_message('hello', msg_id='dup'))
    assert brewery.route(ACCOUNT, make_message('hello', msg_id='dup'))
    assert len(_messages(store)) == 1


def test_blank_body_is_handled_but_not_stored(brewery, store):
    brewery.route(ACCOUNT, make_message('first'))
    assert brewery.route(ACCOUNT, make_message('   '))
    assert brewery.route(ACCOUNT, make_message(None))
    assert [m.text for m in _messages(store)] == ['first']


def test_message_without_body_from_stranger_is_not_routed(brewery):
    assert brewery.route(ACCOUNT, make_message(None)) is False
    assert brewery.get_chat(ACCOUNT, PEER) is None


def test_offline_storage_replay_is_swallowed(brewery, store):
    brewery.route(ACCOUNT, make_message('first'))
    replay = make_message('again')
    replay['delay']['stamp'] = datetime(2024, 1, 1, tzinfo=timezone.utc)
    replay['delay']['text'] = 'Offline Storage'
    assert brewery.route(ACCOUNT, replay)
    assert [m.text for m in _messages(store)] == ['first']


def test_server_delay_marks_offline_delivery(brewery, store):
    msg = make_message('late')
    stamp = datetime(2024, 1, 1, 8, 30, tzinfo=timezone.utc)
    msg['delay']['stamp'] = stamp
    msg['delay']['from'] = 'example.com'
    brewery.route(ACCOUNT, msg)
    [message] = _messages(store)
    assert message.offline is True
    assert message.delay_timestamp == int(stamp.timestamp() * 1000)


def test_undecryptable_message_is_dropped(brewery, store):
    brewery.route(ACCOUNT, make_message('first'))
    assert brewery.route(ACCOUNT, make_message('?OTR:AAMG garbage'))
    assert [m.text for m in _messages(store)] == ['first']


def test_unencrypted_content_is_kept(brewery, store, context):
    class ExpectingEncryption(PlaintextEncryption):
        def transform_incoming(self, account, user, text):
            raise UnencryptedContentError(text)

    context.encryption = ExpectingEncryption()
    brewery.route(ACCOUNT, make_message('plain after all'))
    [message] = _messages(store)
    assert message.text == 'plain after all'
    assert message.encrypted is False


def test_thread_and_resource_are_adopted(brewery):
    brewery.route(ACCOUNT, make_message('hi', sender=f'{PEER}/laptop', thread='t-42'))
    conversation = brewery.get_chat(ACCOUNT, PEER)
    assert conversation.thread_id == 't-42'
    assert conversation.get_to() == f'{PEER}/laptop'

    brewery.route(ACCOUNT, make_presence(f'{PEER}/laptop', 'unavailable'))
    assert conversation.resource is None
    assert conversation.get_to() == PEER


def test_markup_is_stored_beside_plain_text(brewery, store):
    msg = make_message('very bold')
    add_markup_reference(msg, 5, 8, bold=True)
    brewery.route(ACCOUNT, msg)
    [message] = _messages(store)
    assert message.text == 'very bold'
    assert message.markup_text == 'very <b>bold</b>'


def test_forwarded_children_are_stored_under_parent(brewery, store):
    inner = Message()
    inner['from'] = 'carol@example.org/desk'
    inner['to'] = PEER
    inner['type'] = 'chat'
    inner['body'] = 'forwarded words'
    quote = '> carol@example.org:\n> forwarded words\n'
    msg = make_message(quote + 'look at this', msg_id='outer')
    add_forward_reference(msg, 0, xml_encoded_length(quote) - 1, inner,
                          datetime(2024, 2, 2, tzinfo=timezone.utc))
    brewery.route(ACCOUNT, msg)

    [top] = _messages(store)
    assert top.text == 'look at this'
    [child] = store.get_many(top.forwarded_ids)
    assert child.parent_message_id == top.unique_id
    assert child.text == 'forwarded words'
    assert child.read is True
    assert child.resource == 'desk'
    assert child.original_from == 'carol@example.org/desk'
    assert store.count_unread(ACCOUNT, PEER) == 1
    assert brewery.get_chat(ACCOUNT, PEER).last_message_id == 'outer'


def test_forward_without_text_is_stored(brewery, store):
    inner = Message()
    inner['from'] = 'carol@example.org'
    inner['type'] = 'chat'
    inner['body'] = 'only a forward'
    quote = '> carol@example.org:\n> only a forward\n'
    msg = make_message(quote)
    add_forward_reference(msg, 0, xml_encoded_length(quote) - 1, inner)
    brewery.route(ACCOUNT, msg)
    [top] = _messages(store)
    assert top.text == ''
    assert len(top.forwarded_ids) == 1


def test_room_message_is_from_muc_and_saves_author(brewery, store, context):
    context.rooms.add_room(ACCOUNT, ROOM)
    msg = make_message('[dave] hi all', sender=f'{ROOM}/dave', mtype='groupchat')
    add_groupchat_user_reference(msg, 0, 6, 'u-dave', nickname='dave')
    assert brewery.route(ACCOUNT, msg)

    conversation = brewery.get_chat(ACCOUNT, ROOM)
    assert conversation.kind is ConversationKind.ROOM
    assert conversation.get_type() == 'groupchat'
    [message] = _messages(store, ROOM)
    assert message.from_muc is True
    assert message.text == 'hi all'
    assert message.groupchat_user_id == 'u-dave'
    assert store.get_groupchat_user('u-dave').nickname == 'dave'


def test_invite_and_error_messages_store_nothing(brewery, store):
    brewery.route(ACCOUNT, make_message('first'))
    error = make_message('oops', mtype='error')
    assert brewery.route(ACCOUNT, error)

    invite = make_message('join us')
    muc_user = ET.SubElement(invite.xml, '{http://jabber.org/protocol/muc#user}x')
    ET.SubElement(muc_user, '{http://jabber.org/protocol/muc#user}invite', {'from': 'carol@example.org'})
    assert brewery.route(ACCOUNT, invite)
    assert [m.text for m in _messages(store)] == ['first']


def test_visible_conversation_is_not_notified(brewery, context):
    brewery.set_visible_chat(ACCOUNT, PEER)
    brewery.route(ACCOUNT, make_message('hi'))
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []


def test_disabled_conversation_is_not_notified(brewery, context):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    conversation.set_notification_state_or_default(NotificationState(NotificationMode.DISABLED))
    brewery.route(ACCOUNT, make_message('hi'))
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []
    assert context.store.load_chat_data(ACCOUNT, PEER).notification_state.mode is NotificationMode.DISABLED


def test_global_setting_off_silences_default_mode(brewery, context):
    context.settings.set('events_on_chat', False)
    brewery.route(ACCOUNT, make_message('hi'))
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []


def test_active_snooze_silences_and_expired_snooze_notifies(brewery, context):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    conversation.snooze(NotificationMode.SNOOZE_15M)
    brewery.route(ACCOUNT, make_message('quiet'))
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []

    conversation.notification_state = NotificationState(NotificationMode.SNOOZE_15M, int(time.time()) - 3600)
    brewery.route(ACCOUNT, make_message('loud'))
    assert conversation.notification_state.mode is NotificationMode.DEFAULT
    assert len(context.notifications.get_message_notifications(ACCOUNT, PEER)) == 1


def test_notification_state_or_default(brewery):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    conversation.set_notification_state_or_default(NotificationState(NotificationMode.ENABLED))
    assert conversation.notification_state.mode is NotificationMode.DEFAULT
    with pytest.raises(ValueError):
        conversation.set_notification_state_or_default(NotificationState(NotificationMode.SNOOZE_1H))
    with pytest.raises(ValueError):
        conversation.snooze(NotificationMode.ENABLED)


def test_notification_unarchives(brewery, context):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    conversation.set_archived(True)
    brewery.route(ACCOUNT, make_message('hi'))
    assert conversation.archived is False
    assert context.store.load_chat_data(ACCOUNT, PEER).archived is False


def test_message_needs_action_or_content(brewery):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    with pytest.raises(MessageCreationError):
        conversation.create_message_item('', incoming=True)


def test_action_is_read_and_sent_without_notification(brewery, context):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    message = conversation.new_action('phone', 'came online', ChatAction.AVAILABLE)
    assert message.action == 'available'
    assert message.read is True
    assert message.sent is True
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []
    assert conversation.get_last_message().unique_id == message.unique_id


def test_last_message_ignores_other_actions(brewery):
    conversation = brewery.create_chat(ACCOUNT, PEER)
    text = conversation.create_message_item('hello', incoming=True, timestamp=1000)
    conversation.new_action(None, 'joined', ChatAction.JOIN)
    assert conversation.get_last_message().unique_id == text.unique_id
    assert conversation.get_last_time() == 1000


async def test_unread_count_accounts_for_pending_reads(brewery, context):
    brewery.route(ACCOUNT, make_message('one'))
    brewery.route(ACCOUNT, make_message('two'))
    conversation = brewery.get_chat(ACCOUNT, PEER)
    assert conversation.get_unread_message_count() == 2

    first = conversation.get_first_unread_message_id()
    conversation.mark_as_read(context.store.get(first))
    assert conversation.get_unread_message_count() == 1
    assert first in conversation.wait_to_mark_as_read

    await context.scheduler.join()
    await asyncio.sleep(0)
    assert conversation.wait_to_mark_as_read == set()
    assert conversation.get_unread_message_count() == 1
    assert conversation.get_first_unread_message_id() != first


async def test_mark_as_read_all_clears_notifications(brewery, context):
    brewery.route(ACCOUNT, make_message('one'))
    conversation = brewery.get_chat(ACCOUNT, PEER)
    conversation.mark_as_read_all()
    assert context.notifications.get_message_notifications(ACCOUNT, PEER) == []
    await context.scheduler.join()
    await asyncio.sleep(0)
    assert conversation.get_unread_message_count() == 0
