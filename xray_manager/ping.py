"""
TCP connect probes.

Each probe resolves the server address and opens a plain TCP connection;
the time until the connection is established is the reported latency.
Resolution and connect share one deadline.
Probes run on a bounded thread pool and poll the cancellation event while
waiting for the connect to finish.
"""

import errno
import ipaddress
import logging
import select
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from .models import ProbeResult, Server

logger = logging.getLogger(__name__)

MAX_WORKERS = 16
POLL_INTERVAL = 0.1

ProgressCallback = Callable[[int, int, str], None]

UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.ENETDOWN, errno.EHOSTDOWN}
IN_PROGRESS_ERRNOS = {errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY}


def classify_errno(code: int) -> str:
    if code == errno.ECONNREFUSED:
        return 'refused'
    if code in UNREACHABLE_ERRNOS:
        return 'unreachable'
    if code == errno.ETIMEDOUT:
        return 'timeout'
    return 'error'


class ProbeEngine:
    def __init__(self, timeout: float = 5, max_workers: int = MAX_WORKERS):
        self.timeout = timeout
        self.max_workers = max_workers

    def _result(self, server: Server, latency: Optional[int] = None,
                kind: Optional[str] = None, error: str = '') -> ProbeResult:
        return ProbeResult(
            server_id=server.id,
            server_name=server.name,
            available=kind is None,
            latency_ms=latency if kind is None else None,
            error_kind=kind,
            error=error,
        )

    def _connect(self, sockaddr, family, socktype, proto, deadline: float,
                 cancel: Optional[threading.Event]) -> Optional[str]:
        """Returns None on success, otherwise the error kind"""
        sock = socket.socket(family, socktype, proto)
        try:
            sock.setblocking(False)
            code = sock.connect_ex(sockaddr)
            if code == 0:
                return None
            if code not in IN_PROGRESS_ERRNOS:
                return classify_errno(code)
            while True:
                if cancel is not None and cancel.is_set():
                    return 'cancelled'
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return 'timeout'
                _, writable, _ = select.select([], [sock], [], min(remaining, POLL_INTERVAL))
                if writable:
                    code = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
                    return None if code == 0 else classify_errno(code)
        finally:
            sock.close()

    def _resolve(self, server: Server, deadline: float, cancel: Optional[threading.Event]):
        """getaddrinfo bounded by the probe deadline; returns (addresses, error kind, error)"""
        try:
            ipaddress.ip_address(server.address)
        except ValueError:
            pass
        else:
            return socket.getaddrinfo(server.address, server.port, type=socket.SOCK_STREAM), None, ''

        outcome = {}
        done = threading.Event()

        def run():
            try:
                outcome['addresses'] = socket.getaddrinfo(server.address, server.port, type=socket.SOCK_STREAM)
            except OSError as e:
                outcome['error'] = e
            finally:
                done.set()

        # a hung resolver thread is left behind; it exits once getaddrinfo returns
        threading.Thread(target=run, name='probe-resolve', daemon=True).start()
        while not done.wait(max(min(deadline - time.monotonic(), POLL_INTERVAL), 0)):
            if cancel is not None and cancel.is_set():
                return None, 'cancelled', 'probe cancelled'
            if time.monotonic() >= deadline:
                return None, 'timeout', f"name resolution took longer than {self.timeout:g}s"

        error = outcome.get('error')
        if isinstance(error, socket.gaierror):
            return None, 'dns', str(error)
        if error is not None:
            return None, 'error', str(error)
        return outcome['addresses'], None, ''

    def probe(self, server: Server, cancel: Optional[threading.Event] = None) -> ProbeResult:
        """Probe a single server"""
        if cancel is not None and cancel.is_set():
            return self._result(server, kind='cancelled', error='probe cancelled')

        deadline = time.monotonic() + self.timeout
        try:
            addresses, kind, error = self._resolve(server, deadline, cancel)
        except OSError as e:
            return self._result(server, kind='error', error=str(e))
        if kind is not None:
            return self._result(server, kind=kind, error=error)

        kind = 'error'
        for family, socktype, proto, _, sockaddr in addresses:
            start = time.perf_counter()
            try:
                kind = self._connect(sockaddr, family, socktype, proto, deadline, cancel)
            except OSError as e:
                kind = classify_errno(e.errno) if e.errno else 'error'
            if kind is None:
                latency = int(round((time.perf_counter() - start) * 1000))
                return self._result(server, latency=latency)
            if kind in ('timeout', 'cancelled'):
                break

        messages = {
            'timeout': f"no response within {self.timeout:g}s",
            'refused': 'connection refused',
            'unreachable': 'host unreachable',
            'cancelled': 'probe cancelled',
        }
        return self._result(server, kind=kind, error=messages.get(kind, 'connection failed'))

    def probe_all(self, servers: Sequence[Server], progress: Optional[ProgressCallback] = None,
                  cancel: Optional[threading.Event] = None) -> List[ProbeResult]:
        """Probe every server; results come back in input order"""
        servers = list(servers)
        total = len(servers)
        if not total:
            return []

        results: List[Optional[ProbeResult]] = [None] * total
        counter = {'completed': 0}
        counter_lock = threading.Lock()

        def run(index: int):
            server = servers[index]
            results[index] = self.probe(server, cancel)
            with counter_lock:
                counter['completed'] += 1
                completed = counter['completed']
            if progress is not None:
                try:
                    progress(completed, total, server.name)
                except Exception:
                    logger.exception("Probe progress callback failed")

        workers = min(total, self.max_workers)
        logger.debug("Probing %d servers with %d workers", total, workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='probe') as executor:
            for future in [executor.submit(run, i) for i in range(total)]:
                future.result()

        available = sum(1 for r in results if r.available)
        logger.info("Probe finished: %d/%d servers available", available, total)
        return results


# ==================== Ordering ====================

def sort_results(results: Sequence[ProbeResult]) -> List[ProbeResult]:
    """Available first by latency, then the rest by name"""
    return sorted(results, key=lambda r: (
        not r.available,
        r.latency_ms if r.available and r.latency_ms is not None else 0,
        r.server_name.lower(),
    ))


def fastest(results: Sequence[ProbeResult], limit: int) -> List[ProbeResult]:
    return [r for r in sort_results(results) if r.available][:max(limit, 0)]
