import pytest
import requests

from xray_manager.models import MessageType
from xray_manager.settings import UISettings
from xray_manager.telegram.formatter import MessageFormatter
from xray_manager.telegram.ratelimit import RateLimiter
from xray_manager.telegram.router import CommandRouter
from xray_manager.telegram.sessions import SessionManager

from conftest import REALITY_LINK, UUID, FakeHTTP, FakeInvoker, file_bytes

ADMIN = 42
CHAT = 4242
CLOSED_LINK = f'vless://{UUID}@127.0.0.1:65529#Closed%20Local'


@pytest.fixture
def make_router(make_manager, transport):
    def factory(*links, invoker=None, limiter=None, ui=None, on_fatal=None):
        manager = make_manager(*links, invoker=invoker)
        sessions = SessionManager(transport)
        return CommandRouter(ADMIN, manager, sessions, transport, ui or UISettings(),
                             limiter=limiter, on_fatal=on_fatal)
    return factory


def callbacks(keyboard):
    return [button.callback_data for row in keyboard for button in row]


def test_unauthorised_command(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_message(7, 700, '/list')

    assert router.manager.http.calls == []
    assert not router.manager.has_servers()
    assert transport.sent == [(700, 101, MessageFormatter().unauthorized(), None)]
    assert len(router.sessions) == 0


def test_unauthorised_callback(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_callback(7, 700, 'cb1', 'nav:list')
    assert transport.answers == [('cb1', 'Access denied', True)]
    assert transport.sent == []
    assert router.manager.http.calls == []


def test_list_shows_servers(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_message(ADMIN, CHAT, '/list')

    session = router.sessions.get(ADMIN)
    assert session.message_type == MessageType.SERVER_LIST
    chat_id, _, text, keyboard = transport.sent[-1]
    assert chat_id == CHAT
    assert 'Test Server' in text
    server = router.manager.get_servers()[0]
    assert f'server:{server.id}' in callbacks(keyboard)


def test_command_with_bot_suffix(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_message(ADMIN, CHAT, '/list@xray_manager_bot')
    assert router.sessions.get(ADMIN).message_type == MessageType.SERVER_LIST


def test_unknown_text_shows_help(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_message(ADMIN, CHAT, 'hello')
    assert '/list' in transport.sent[-1][2]
    assert router.manager.http.calls == []


def test_start_sends_menu(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_message(ADMIN, CHAT, '/start')
    router.handle_message(ADMIN, CHAT, '/start')
    assert len(transport.sent) == 2
    assert transport.deleted == [(CHAT, 101)]
    assert router.sessions.get(ADMIN).message_type == MessageType.MENU


def test_rate_limit(make_router, transport):
    router = make_router(REALITY_LINK, limiter=RateLimiter(max_requests=2))
    for _ in range(3):
        router.handle_message(ADMIN, CHAT, '/start')
    assert transport.sent[-1][2] == MessageFormatter().rate_limited()


def test_switch_through_confirmation(make_router, transport):
    invoker = FakeInvoker()
    router = make_router(REALITY_LINK, invoker=invoker)
    router.handle_message(ADMIN, CHAT, '/list')
    server = router.manager.get_servers()[0]

    router.handle_callback(ADMIN, CHAT, 'cb1', f'server:{server.id}')
    assert router.sessions.get(ADMIN).message_type == MessageType.CONFIRMATION
    assert f'confirm:switch:{server.id}' in callbacks(transport.sent[-1][3])
    assert invoker.calls == 0

    router.handle_callback(ADMIN, CHAT, 'cb2', f'confirm:switch:{server.id}')
    assert invoker.calls == 1
    assert router.manager.get_current_server() == server
    assert router.sessions.get(ADMIN).message_type == MessageType.STATUS
    assert ('cb2', '', False) in transport.answers


def test_quick_switch(make_router, transport):
    invoker = FakeInvoker()
    router = make_router(REALITY_LINK, invoker=invoker)
    router.manager.load_servers()
    server = router.manager.get_servers()[0]
    router.handle_callback(ADMIN, CHAT, 'cb', f'quick:{server.id}')
    assert invoker.calls == 1


def test_restart_failure_reported(make_router, transport, xray_config_path):
    router = make_router(REALITY_LINK, invoker=FakeInvoker(fail=True))
    router.manager.load_servers()
    server = router.manager.get_servers()[0]
    before = file_bytes(xray_config_path)

    router.handle_callback(ADMIN, CHAT, 'cb', f'confirm:switch:{server.id}')
    assert router.sessions.get(ADMIN).message_type == MessageType.ERROR
    assert 'previous server remains active' in transport.sent[-1][2]
    assert file_bytes(xray_config_path) == before


def test_rollback_failure_is_fatal(make_router, transport, monkeypatch):
    fatal = []
    router = make_router(REALITY_LINK, invoker=FakeInvoker(fail=True), on_fatal=fatal.append)
    router.manager.load_servers()
    server = router.manager.get_servers()[0]

    def broken_restore(snapshot):
        raise OSError('disk full')

    monkeypatch.setattr(router.manager.writer, 'restore', broken_restore)
    router.handle_callback(ADMIN, CHAT, 'cb', f'confirm:switch:{server.id}')
    assert len(fatal) == 1
    assert router.sessions.get(ADMIN).message_type == MessageType.ERROR


def test_unknown_server_callback(make_router, transport):
    router = make_router(REALITY_LINK)
    router.manager.load_servers()
    router.handle_callback(ADMIN, CHAT, 'cb', 'server:ffffffffffff')
    assert router.sessions.get(ADMIN).message_type == MessageType.ERROR


@pytest.mark.parametrize('data', ['bogus', 'server:', 'page:x', 'confirm:delete', 'nav:nowhere', ''])
def test_unknown_callback(make_router, transport, data):
    router = make_router(REALITY_LINK)
    router.handle_callback(ADMIN, CHAT, 'cb', data)
    assert transport.answers == [('cb', 'Unknown command', False)]
    assert transport.sent == []


def test_noop_callback(make_router, transport):
    router = make_router(REALITY_LINK)
    router.handle_callback(ADMIN, CHAT, 'cb', 'noop')
    assert transport.answers == [('cb', '', False)]
    assert transport.sent == []


def test_pagination(make_router, transport):
    links = [f'vless://{UUID}@10.0.0.{i}:443#Server%20{i:02d}' for i in range(1, 6)]
    router = make_router(*links, ui=UISettings(servers_per_page=2))
    router.handle_message(ADMIN, CHAT, '/list')
    assert 'page:1' in callbacks(transport.sent[-1][3])

    router.handle_callback(ADMIN, CHAT, 'cb', 'page:2')
    chat_id, message_id, text, keyboard = transport.edited[-1]
    assert message_id == 101
    assert 'Page 3/3' in text
    assert 'Server 05' in text
    assert 'page:1' in callbacks(keyboard)

    router.handle_callback(ADMIN, CHAT, 'cb', 'page:99')
    assert 'Page 3/3' in transport.edited[-1][2]


def test_ping_replaces_progress_with_results(make_router, transport):
    router = make_router(CLOSED_LINK)
    router.handle_message(ADMIN, CHAT, '/ping')
    session = router.sessions.get(ADMIN)
    assert session.message_type == MessageType.PING_RESULT
    assert 'Available: 0/1' in transport.sent[-1][2]
    assert len(router.sessions) == 1


def test_fetch_failure_shown_as_error(make_router, transport):
    router = make_router(REALITY_LINK)
    router.manager.loader.fetcher.session = FakeHTTP(requests.ConnectionError('offline'))
    router.manager.loader.fetcher.backoff = 0
    router.handle_message(ADMIN, CHAT, '/list')
    assert router.sessions.get(ADMIN).message_type == MessageType.ERROR
