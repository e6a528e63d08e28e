import base64
import json
import os

import pytest
import requests

from xray_manager.cache import SubscriptionCache
from xray_manager.errors import ChatError, RestartFailed
from xray_manager.manager import ServerManager
from xray_manager.names import NameOptimizer
from xray_manager.ping import ProbeEngine
from xray_manager.settings import parse_settings
from xray_manager.subscription import SubscriptionFetcher, SubscriptionLoader
from xray_manager.xray_config import XrayConfigWriter

SUB_URL = 'https://sub.example.com/api/sub'
TOKEN = '123456789:AAHdqTcvCH1vGWJxfSeofSAs0K5PALDsaw'
UUID = 'ec82bca8-1072-4682-822f-30306af408ea'
REALITY_LINK = (f'vless://{UUID}@1.2.3.4:443?type=tcp&security=reality'
                '&sni=example.com&pbk=k&sid=s&fp=chrome#Test%20Server')

XRAY_CONFIG = {
    'outbounds': [
        {
            'tag': 'proxy',
            'protocol': 'vless',
            'settings': {'vnext': [{'address': '9.9.9.9', 'port': 8443,
                                    'users': [{'id': '11111111-2222-3333-4444-555555555555',
                                               'encryption': 'none', 'level': 0}]}]},
            'streamSettings': {'network': 'tcp', 'security': 'none'},
            'mux': {'enabled': False},
        },
        {'tag': 'direct', 'protocol': 'freedom'},
        {'tag': 'block', 'protocol': 'blackhole'},
    ],
}


def encode_subscription(*lines: str) -> str:
    return base64.b64encode('\n'.join(lines).encode('utf-8')).decode('ascii')


# ==================== Fakes ====================

class FakeResponse:
    def __init__(self, text: str = '', status_code: int = 200, headers=None, content: bytes = None):
        self.text = text
        self.status_code = status_code
        self.headers = headers or {}
        self.content = content if content is not None else text.encode('utf-8')

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        return json.loads(self.text)


class FakeHTTP:
    """Stands in for requests.Session; responses are consumed in order, the last one repeats"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.max_redirects = 30

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        response = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeInvoker:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def restart(self):
        self.calls += 1
        if self.fail:
            raise RestartFailed('restart command exited with code 1: boom', exit_code=1, stderr='boom')


class FakeTransport:
    def __init__(self):
        self.next_id = 100
        self.sent = []
        self.edited = []
        self.deleted = []
        self.answers = []
        self.edit_error = None
        self.delete_error = None

    def send_message(self, chat_id, text, keyboard=None):
        self.next_id += 1
        self.sent.append((chat_id, self.next_id, text, keyboard))
        return self.next_id

    def edit_message(self, chat_id, message_id, text, keyboard=None):
        if self.edit_error is not None:
            raise ChatError(self.edit_error)
        self.edited.append((chat_id, message_id, text, keyboard))

    def delete_message(self, chat_id, message_id):
        if self.delete_error is not None:
            raise ChatError(self.delete_error)
        self.deleted.append((chat_id, message_id))

    def answer_callback(self, callback_id, text='', show_alert=False):
        self.answers.append((callback_id, text, show_alert))


# ==================== Fixtures ====================

@pytest.fixture
def xray_config_path(tmp_path):
    path = tmp_path / 'xray' / '04_outbounds.json'
    path.parent.mkdir()
    path.write_text(json.dumps(XRAY_CONFIG, indent=4))
    return str(path)


@pytest.fixture
def cache_dir(tmp_path):
    return str(tmp_path / 'cache')


@pytest.fixture
def settings_data(tmp_path, xray_config_path, cache_dir):
    return {
        'admin_id': 42,
        'bot_token': TOKEN,
        'subscription_url': SUB_URL,
        'config_path': xray_config_path,
        'cache_dir': cache_dir,
        'xray_restart_command': '/bin/echo restart',
        'ping_timeout': 1,
        'health_check_interval': 0,
    }


@pytest.fixture
def settings(settings_data):
    return parse_settings(settings_data)


@pytest.fixture
def make_manager(xray_config_path, cache_dir):
    def factory(*lines, invoker=None, http=None, ttl=3600, optimizer=True):
        http = http or FakeHTTP(FakeResponse(encode_subscription(*(lines or (REALITY_LINK,)))))
        cache = SubscriptionCache(cache_dir, ttl)
        loader = SubscriptionLoader(SUB_URL, SubscriptionFetcher(http, backoff=0), cache)
        manager = ServerManager(
            loader,
            XrayConfigWriter(xray_config_path),
            invoker or FakeInvoker(),
            ProbeEngine(timeout=1),
            NameOptimizer() if optimizer else None,
        )
        manager.http = http
        return manager
    return factory


@pytest.fixture
def transport():
    return FakeTransport()


def file_bytes(path):
    with open(path, 'rb') as f:
        return f.read()


def mtime(path):
    return os.stat(path).st_mtime_ns
