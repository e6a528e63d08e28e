"""
Server manager: owns the server list and the active selection.

The manager lock guards the server list and the active selection. Loads are
serialised by their own lock so the subscription fetch runs outside the
manager lock; probes never take it. A switch holds it for the config write
and the restart.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import (AlreadyActive, CommandRejected, FetchFailed, RestartFailed, RestartFailedRollbackFailed,
                     ServerNotFound, SwitchInProgress)
from .models import CachedSubscription, ProbeResult, Server, SubscriptionInfo
from .names import NameOptimizer
from .ping import ProbeEngine, ProgressCallback, fastest, sort_results
from .restart import RestartInvoker
from .subscription import SubscriptionLoader
from .xray_config import XrayConfigWriter

logger = logging.getLogger(__name__)


class ServerManager:
    def __init__(self, loader: SubscriptionLoader, writer: XrayConfigWriter, invoker: RestartInvoker,
                 prober: ProbeEngine, optimizer: Optional[NameOptimizer] = None,
                 quick_select_limit: int = 10):
        self.loader = loader
        self.writer = writer
        self.invoker = invoker
        self.prober = prober
        self.optimizer = optimizer
        self.quick_select_limit = quick_select_limit

        self._lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._switch_guard = threading.Lock()

        self._servers: Tuple[Server, ...] = ()
        self._by_id: Dict[str, Server] = {}
        self._display_names: Dict[str, str] = {}
        self._current_id: Optional[str] = None
        self._info: Optional[SubscriptionInfo] = None
        self._loaded_at: Optional[float] = None

    # ==================== Server list ====================

    def _set_servers(self, servers: Sequence[Server]):
        self._servers = tuple(servers)
        self._by_id = {server.id: server for server in self._servers}
        names = [server.name for server in self._servers]
        if self.optimizer is not None:
            result = self.optimizer.optimize(names)
            names = result.optimized_names
            if result.applied_count:
                logger.info("Display names shortened: removed %r from %d/%d names",
                            result.removed_suffix, result.applied_count, result.total_count)
        self._display_names = {server.id: name for server, name in zip(self._servers, names)}
        if self._current_id is not None and self._current_id not in self._by_id:
            logger.info("Active server %s is no longer in the subscription", self._current_id)
            self._current_id = None

    def _apply(self, entry: CachedSubscription) -> List[Server]:
        with self._lock:
            self._set_servers(entry.servers)
            self._info = entry.info
            self._loaded_at = entry.fetched_at
            servers = list(self._servers)
        logger.info("Loaded %d servers", len(servers))
        return servers

    def load_servers(self, force: bool = False, cancel: Optional[threading.Event] = None) -> List[Server]:
        """Load servers from the cache or the subscription; force bypasses the cache"""
        with self._load_lock:
            return self._apply(self.loader.load(force=force, cancel=cancel))

    def refresh_servers(self, cancel: Optional[threading.Event] = None) -> List[Server]:
        """Drop the cache entry and fetch again; a failed fetch keeps the servers already loaded"""
        with self._load_lock:
            self.loader.invalidate()
            try:
                entry = self.loader.load(force=True, cancel=cancel)
            except FetchFailed:
                with self._lock:
                    servers = list(self._servers)
                if not servers:
                    raise
                logger.warning("Subscription refresh failed, keeping %d loaded servers", len(servers))
                return servers
            return self._apply(entry)

    def get_servers(self) -> List[Server]:
        with self._lock:
            return list(self._servers)

    def get_servers_sorted(self) -> List[Server]:
        with self._lock:
            servers = list(self._servers)
            names = dict(self._display_names)
        return sorted(servers, key=lambda s: names.get(s.id, s.name).lower())

    def get_server(self, server_id: str) -> Server:
        with self._lock:
            server = self._by_id.get(server_id)
        if server is None:
            raise ServerNotFound(f"server {server_id} not found")
        return server

    def display_name(self, server: Server) -> str:
        return self._display_names.get(server.id, server.name)

    def has_servers(self) -> bool:
        return bool(self._servers)

    @property
    def subscription_info(self) -> Optional[SubscriptionInfo]:
        return self._info

    @property
    def loaded_at(self) -> Optional[float]:
        return self._loaded_at

    # ==================== Active selection ====================

    def get_current_server(self) -> Optional[Server]:
        with self._lock:
            if self._current_id is None:
                return None
            return self._by_id.get(self._current_id)

    def detect_current(self) -> Optional[Server]:
        """Match the proxy outbound of the xray config against the server list"""
        with self._lock:
            endpoint = self.writer.current_endpoint()
            self._current_id = None
            if endpoint is None:
                return None
            address, port, uuid = endpoint
            matches = [s for s in self._servers
                       if s.address.lower() == address.lower() and s.port == port]
            if not matches:
                logger.info("Current xray outbound %s:%d does not match any server", address, port)
                return None
            exact = [s for s in matches if uuid and s.uuid.lower() == uuid.lower()]
            server = (exact or matches)[0]
            self._current_id = server.id
        logger.info("Current server: %s", server.name)
        return server

    def switch(self, target_id: str) -> Server:
        """Rewrite the xray config for target_id and restart xray, rolling back on failure"""
        if not self._switch_guard.acquire(blocking=False):
            raise SwitchInProgress()
        try:
            with self._lock:
                server = self._by_id.get(target_id)
                if server is None:
                    raise ServerNotFound(f"server {target_id} not found")
                if self._current_id == target_id:
                    raise AlreadyActive(f"{server.name} is already active")

                snapshot = self.writer.write_server(server)
                try:
                    self.invoker.restart()
                except (RestartFailed, CommandRejected) as e:
                    logger.error("Restart failed, rolling back xray config: %s", e)
                    try:
                        self.writer.restore(snapshot)
                    except OSError as rollback_error:
                        raise RestartFailedRollbackFailed(
                            f"restart failed ({e}) and restoring the config failed ({rollback_error})",
                            cause=rollback_error)
                    if isinstance(e, RestartFailed):
                        raise
                    raise RestartFailed(str(e), cause=e)

                self._current_id = server.id
            logger.info("Switched to server %s (%s)", server.name, server.endpoint)
            return server
        finally:
            self._switch_guard.release()

    # ==================== Probing ====================

    def probe(self, progress: Optional[ProgressCallback] = None,
              cancel: Optional[threading.Event] = None) -> List[ProbeResult]:
        servers = self.get_servers()
        return sort_results(self.prober.probe_all(servers, progress, cancel))

    def probe_server(self, server: Server, cancel: Optional[threading.Event] = None) -> ProbeResult:
        return self.prober.probe(server, cancel)

    def quick_select(self, results: Sequence[ProbeResult], limit: Optional[int] = None) -> List[ProbeResult]:
        return fastest(results, self.quick_select_limit if limit is None else limit)
