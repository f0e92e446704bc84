import pytest

from drunk_chat.core.constants import (
    SPAM_REPLY_CAPTCHA_CORRECT, SPAM_REPLY_CAPTCHA_MANY_ATTEMPTS, SpamFilterMode,
)
from drunk_xmpp.references import get_body

from conftest import ACCOUNT, PEER, ROOM, make_message


@pytest.fixture
def captcha_mode(context):
    context.settings.set('spam_filter_mode', 'auth_captcha')


def _replies(transport):
    return [get_body(s) for s in transport.sent]


def test_stranger_is_challenged_and_nothing_is_stored(brewery, context, store, transport, captcha_mode):
    assert brewery.route(ACCOUNT, make_message('hello?', thread='t1'))

    assert brewery.get_chat(ACCOUNT, PEER) is None
    assert store.query(ACCOUNT) == []
    [challenge] = transport.sent
    assert challenge['to'] == PEER
    assert challenge['thread'] == 't1'
    captcha = brewery.spam_filter.get_captcha(ACCOUNT, PEER)
    assert captcha.question in get_body(challenge)


def test_three_wrong_answers_revoke_the_challenge(brewery, context, store, transport, captcha_mode):
    brewery.route(ACCOUNT, make_message('hello?'))
    answer = int(brewery.spam_filter.get_captcha(ACCOUNT, PEER).answer)

    for _ in range(3):
        assert brewery.route(ACCOUNT, make_message(str(answer + 1)))

    assert len(transport.sent) == 4
    assert _replies(transport)[-1] == SPAM_REPLY_CAPTCHA_MANY_ATTEMPTS
    assert brewery.spam_filter.get_captcha(ACCOUNT, PEER) is None
    assert not context.roster.has_subscription_request(ACCOUNT, PEER)
    assert store.query(ACCOUNT) == []

    # a new message starts over with a new challenge
    brewery.route(ACCOUNT, make_message('again'))
    assert brewery.spam_filter.get_captcha(ACCOUNT, PEER) is not None


def test_correct_answer_surfaces_subscription_request(brewery, context, transport, captcha_mode):
    brewery.route(ACCOUNT, make_message('hello?'))
    captcha = brewery.spam_filter.get_captcha(ACCOUNT, PEER)

    assert brewery.route(ACCOUNT, make_message(f'  {captcha.answer} '))
    assert _replies(transport)[-1] == SPAM_REPLY_CAPTCHA_CORRECT
    assert context.roster.has_subscription_request(ACCOUNT, PEER)
    assert brewery.spam_filter.get_captcha(ACCOUNT, PEER) is None
    assert brewery.get_chat(ACCOUNT, PEER) is None


def test_no_auth_mode_replies_with_limit_notice(brewery, context, store, transport):
    context.settings.set('spam_filter_mode', SpamFilterMode.NO_AUTH)
    assert brewery.route(ACCOUNT, make_message('buy now'))
    assert brewery.route(ACCOUNT, make_message('buy now!!'))

    assert len(transport.sent) == 2
    assert all(ACCOUNT in text for text in _replies(transport))
    assert store.query(ACCOUNT) == []
    assert brewery.spam_filter.get_captcha(ACCOUNT, PEER) is None


def test_contacts_and_disabled_mode_pass(brewery, context, store, transport, captcha_mode):
    context.roster.add_contact(ACCOUNT, PEER)
    brewery.route(ACCOUNT, make_message('friend here'))
    assert [m.text for m in store.query(ACCOUNT, PEER)] == ['friend here']

    context.settings.set('spam_filter_mode', SpamFilterMode.DISABLED)
    brewery.route(ACCOUNT, make_message('anyone', sender='carol@example.org/x'))
    assert [m.text for m in store.query(ACCOUNT, 'carol@example.org')] == ['anyone']
    assert transport.sent == []


def test_known_rooms_skip_the_filter(brewery, context, store, transport, captcha_mode):
    context.rooms.add_room(ACCOUNT, ROOM)
    brewery.route(ACCOUNT, make_message('hi all', sender=f'{ROOM}/dave', mtype='groupchat'))
    brewery.route(ACCOUNT, make_message('psst', sender=f'{ROOM}/dave'))

    assert transport.sent == []
    assert [m.text for m in store.query(ACCOUNT, ROOM)] == ['hi all']
    assert [m.text for m in store.query(ACCOUNT, f'{ROOM}/dave')] == ['psst']


def test_messages_without_body_never_reach_the_filter(brewery, transport, captcha_mode):
    assert brewery.route(ACCOUNT, make_message(None)) is False
    assert transport.sent == []


def test_account_removal_forgets_challenges(brewery, captcha_mode):
    brewery.route(ACCOUNT, make_message('hello?'))
    brewery.on_account_removed(ACCOUNT)
    assert brewery.spam_filter.get_captcha(ACCOUNT, PEER) is None
