import pytest

from xray_manager.models import ProbeResult, SubscriptionInfo
from xray_manager.telegram import keyboards
from xray_manager.telegram.formatter import MessageFormatter, format_bytes, progress_bar, quality_emoji
from xray_manager.vless import parse_vless_link

from conftest import REALITY_LINK


@pytest.mark.parametrize('value, text', [(0, '0B'), (512, '512B'), (1536, '1.5KB'), (1024 ** 3, '1GB')])
def test_format_bytes(value, text):
    assert format_bytes(value) == text


@pytest.mark.parametrize('latency, emoji', [(50, '🟢'), (150, '🟡'), (350, '🟠'), (900, '🔴')])
def test_quality_emoji(latency, emoji):
    assert quality_emoji(latency) == emoji


def test_progress_bar():
    assert progress_bar(5, 10) == '[' + '█' * 10 + '░' * 10 + '] 50%'
    assert progress_bar(0, 0).endswith('0%')


@pytest.mark.parametrize('page, expected_page, expected_items', [
    (0, 0, [0, 1]),
    (2, 2, [4]),
    (9, 2, [4]),
    (-1, 0, [0, 1]),
])
def test_paginate(page, expected_page, expected_items):
    items, page, total = keyboards.paginate(list(range(5)), page, 2)
    assert (items, page, total) == (expected_items, expected_page, 3)


def test_paginate_empty():
    assert keyboards.paginate([], 0, 10) == ([], 0, 1)


def test_single_page_has_no_navigation():
    keyboard = keyboards.server_list([('abc', 'Server')], 0, 1)
    data = [b.callback_data for row in keyboard for b in row]
    assert 'noop' not in data
    assert data[0] == 'server:abc'


def test_status_with_probe_and_quota():
    server = parse_vless_link(REALITY_LINK)
    result = ProbeResult(server_id=server.id, server_name=server.name, available=True, latency_ms=42)
    info = SubscriptionInfo(upload=1024, download=1024, total=1024 ** 3)
    text = MessageFormatter().status(server, 'Test Server', result, info, 3)
    assert 'Test Server' in text
    assert '42ms' in text
    assert '2KB/1GB' in text
    assert 'Servers: 3' in text


def test_ping_results_marks_current():
    results = [
        ProbeResult(server_id='a', server_name='Alpha', available=True, latency_ms=30),
        ProbeResult(server_id='b', server_name='Bravo', available=False, error_kind='timeout'),
    ]
    text = MessageFormatter().ping_results(results, lambda r: r.server_name, current_id='a')
    assert 'Alpha 30ms (Current)' in text
    assert 'Available: 1/2' in text
    assert '1 servers are currently unreachable' in text
