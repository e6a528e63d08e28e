import socket
import threading
import time

import pytest

from xray_manager.models import ProbeResult
from xray_manager.ping import ProbeEngine, fastest, sort_results
from xray_manager.vless import parse_vless_link

from conftest import UUID


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    sock.listen(8)
    yield sock.getsockname()[1]
    sock.close()


def make_server(address, port, name):
    return parse_vless_link(f'vless://{UUID}@{address}:{port}#{name}')


def test_probe_mixed(listener):
    servers = [make_server('127.0.0.1', listener, 'open'), make_server('127.0.0.1', 65529, 'closed')]
    results = ProbeEngine(timeout=2).probe_all(servers)

    assert [r.server_name for r in results] == ['open', 'closed']
    assert results[0].available
    assert results[0].latency_ms >= 0
    assert results[0].error_kind is None
    assert not results[1].available
    assert results[1].latency_ms is None
    assert results[1].error_kind in ('refused', 'timeout')


def test_progress_reports_every_server(listener):
    servers = [make_server('127.0.0.1', listener, f'srv{i}') for i in range(5)]
    calls = []
    lock = threading.Lock()

    def progress(completed, total, name):
        with lock:
            calls.append((completed, total, name))

    ProbeEngine(timeout=2).probe_all(servers, progress)
    assert sorted(c[0] for c in calls) == [1, 2, 3, 4, 5]
    assert all(c[1] == 5 for c in calls)
    assert sorted(c[2] for c in calls) == [f'srv{i}' for i in range(5)]


def test_failing_progress_callback_does_not_break_probe(listener):
    def progress(completed, total, name):
        raise RuntimeError('chat is down')

    results = ProbeEngine(timeout=2).probe_all([make_server('127.0.0.1', listener, 'one')], progress)
    assert results[0].available


def test_cancelled_before_start(listener):
    cancel = threading.Event()
    cancel.set()
    results = ProbeEngine(timeout=2).probe_all([make_server('127.0.0.1', listener, 'one')], cancel=cancel)
    assert results[0].error_kind == 'cancelled'
    assert not results[0].available


def test_dns_failure():
    result = ProbeEngine(timeout=2).probe(make_server('does-not-exist.invalid', 443, 'nx'))
    assert result.error_kind in ('dns', 'error', 'timeout')
    assert not result.available


def test_empty_list():
    assert ProbeEngine().probe_all([]) == []


@pytest.fixture
def silent_port():
    """A listener whose accept queue is full, so further SYNs go unanswered"""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(0)
    port = server.getsockname()[1]
    clients = []
    for _ in range(4):
        client = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        client.setblocking(False)
        client.connect_ex(('127.0.0.1', port))
        clients.append(client)
    time.sleep(0.2)
    yield port
    for client in clients:
        client.close()
    server.close()


def test_unanswered_port_times_out(silent_port):
    engine = ProbeEngine(timeout=0.5)
    start = time.monotonic()
    result = engine.probe(make_server('127.0.0.1', silent_port, 'silent'))
    elapsed = time.monotonic() - start

    assert not result.available
    assert result.error_kind == 'timeout'
    assert elapsed <= 0.5 + 0.2


def test_probes_run_in_parallel(silent_port):
    servers = [make_server('127.0.0.1', silent_port, f'srv{i}') for i in range(16)]
    start = time.monotonic()
    results = ProbeEngine(timeout=0.5).probe_all(servers)
    elapsed = time.monotonic() - start

    assert [r.error_kind for r in results] == ['timeout'] * 16
    assert elapsed <= 16 * 0.5 / 16 + 0.5


def test_cancelled_mid_flight(silent_port):
    servers = [make_server('127.0.0.1', silent_port, f'srv{i}') for i in range(4)]
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    start = time.monotonic()
    try:
        results = ProbeEngine(timeout=10).probe_all(servers, cancel=cancel)
    finally:
        timer.cancel()
    elapsed = time.monotonic() - start

    assert [r.error_kind for r in results] == ['cancelled'] * 4
    assert not any(r.available for r in results)
    assert elapsed < 2


def test_slow_resolver_bounded_by_timeout(monkeypatch):
    release = threading.Event()

    def hanging_getaddrinfo(*args, **kwargs):
        release.wait(5)
        raise socket.gaierror('resolver gave up')

    monkeypatch.setattr(socket, 'getaddrinfo', hanging_getaddrinfo)
    start = time.monotonic()
    try:
        result = ProbeEngine(timeout=0.3).probe(make_server('slow.example.org', 443, 'slow'))
    finally:
        release.set()
    elapsed = time.monotonic() - start

    assert result.error_kind == 'timeout'
    assert elapsed <= 0.3 + 0.2


def make_result(name, latency=None, kind=None):
    return ProbeResult(server_id=name, server_name=name, available=kind is None,
                       latency_ms=latency, error_kind=kind)


def test_sort_results():
    results = [
        make_result('zeta', kind='timeout'),
        make_result('slow', 400),
        make_result('alpha', kind='refused'),
        make_result('fast', 20),
    ]
    assert [r.server_name for r in sort_results(results)] == ['fast', 'slow', 'alpha', 'zeta']


def test_fastest_limits_to_available():
    results = [make_result(f's{i}', latency=100 - i) for i in range(12)] + [make_result('down', kind='timeout')]
    quick = fastest(results, 10)
    assert len(quick) == 10
    assert quick[0].server_name == 's11'
    assert all(r.available for r in quick)
    assert fastest(results, 0) == []
