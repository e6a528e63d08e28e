"""
Service supervisor: builds every component from the settings, runs the
background loops and owns the cancellation event they all share.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

import requests

from . import __version__
from .cache import SubscriptionCache
from .errors import ChatError, XrayManagerError
from .manager import ServerManager
from .models import CurrentServerInfo, HealthCheck, HealthInfo, Server, ServiceStatus
from .names import NameOptimizer
from .ping import ProbeEngine
from .restart import RestartInvoker
from .settings import Settings
from .subscription import SubscriptionFetcher, SubscriptionLoader
from .telegram.bot import TelegramBot, create_bot
from .telegram.ratelimit import RateLimiter
from .telegram.router import CommandRouter
from .telegram.sessions import SessionManager
from .telegram.transport import ChatTransport, TelebotTransport
from .telegram.updates import UpdateManager
from .xray_config import XrayConfigWriter

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 300
STOP_GRACE = 1.0


class Service:
    def __init__(self, settings: Settings, settings_path: str = '',
                 transport: Optional[ChatTransport] = None,
                 http: Optional[requests.Session] = None):
        self.settings = settings
        self.settings_path = settings_path
        self.cancel = threading.Event()
        self.exit_code = 0

        ui = settings.ui
        cache = SubscriptionCache(settings.cache_dir, settings.cache_duration)
        loader = SubscriptionLoader(settings.subscription_url, SubscriptionFetcher(http), cache)
        optimizer = NameOptimizer(ui.name_optimization_threshold) if ui.enable_name_optimization else None
        self.manager = ServerManager(
            loader,
            XrayConfigWriter(settings.config_path),
            RestartInvoker(settings.xray_restart_command),
            ProbeEngine(settings.ping_timeout),
            optimizer,
            quick_select_limit=ui.max_quick_select_servers,
        )

        telebot_instance = None
        if transport is None:
            telebot_instance = create_bot(settings.bot_token)
            transport = TelebotTransport(telebot_instance)
        self.transport = transport
        self.limiter = RateLimiter()
        self.sessions = SessionManager(transport, ui.message_timeout_minutes)
        self.updater = UpdateManager(settings.update, settings_path, http)
        self.router = CommandRouter(settings.admin_id, self.manager, self.sessions, transport, ui,
                                    limiter=self.limiter, updater=self.updater,
                                    on_fatal=self.fatal, cancel=self.cancel)
        self.bot = TelegramBot(telebot_instance, self.router) if telebot_instance is not None else None

        self.health = HealthInfo(enabled=settings.health_check_interval > 0,
                                 interval=settings.health_check_interval)
        self.api_server = None
        self._threads: List[threading.Thread] = []
        self._running = False
        self._stop_lock = threading.Lock()

    # ==================== Lifecycle ====================

    def start(self):
        logger.info("Starting xray-telegram-manager %s", __version__)
        self._running = True
        try:
            self.manager.load_servers(cancel=self.cancel)
        except XrayManagerError as e:
            logger.warning("Initial server load failed, will retry on demand: %s", e)
        self.manager.detect_current()

        if self.bot is not None:
            self.bot.start()
        if self.health.enabled:
            self._spawn('health-check', self.settings.health_check_interval, self.perform_health_check)
        self._spawn('session-cleanup', CLEANUP_INTERVAL, self.cleanup)
        if self.settings.api.enabled:
            self._start_api()
        logger.info("Service started")

    def _spawn(self, name: str, interval: float, func: Callable[[], object]):
        def loop():
            while not self.cancel.wait(interval):
                try:
                    func()
                except (XrayManagerError, ChatError, OSError) as e:
                    logger.error("%s failed: %s", name, e)

        thread = threading.Thread(target=loop, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _start_api(self):
        import uvicorn
        from .api import create_app

        config = uvicorn.Config(create_app(self), host=self.settings.api.host, port=self.settings.api.port,
                                log_level='warning')
        self.api_server = uvicorn.Server(config)
        thread = threading.Thread(target=self.api_server.run, name='status-api', daemon=True)
        thread.start()
        self._threads.append(thread)
        logger.info("Status API listening on %s:%d", self.settings.api.host, self.settings.api.port)

    def stop(self):
        with self._stop_lock:
            if not self._running:
                return
            self._running = False
        logger.info("Stopping service")
        self.cancel.set()
        if self.bot is not None:
            self.bot.stop()
        if self.api_server is not None:
            self.api_server.should_exit = True

        deadline = time.monotonic() + STOP_GRACE
        for thread in self._threads:
            thread.join(max(deadline - time.monotonic(), 0))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("Threads still running after stop: %s", ', '.join(alive))
        logger.info("Service stopped")

    def wait(self):
        while not self.cancel.wait(1):
            pass

    def reload(self) -> List[Server]:
        """Refresh the subscription and the server list, keeping the chat transport"""
        logger.info("Reloading server list")
        servers = self.manager.refresh_servers(cancel=self.cancel)
        if self.manager.get_current_server() is None:
            self.manager.detect_current()
        return servers

    def fatal(self, error: BaseException):
        logger.critical("Fatal error, shutting down: %s", error)
        self.exit_code = 2
        self.cancel.set()

    @property
    def running(self) -> bool:
        return self._running

    # ==================== Status ====================

    def cleanup(self):
        self.sessions.cleanup_expired()
        self.limiter.cleanup()

    def perform_health_check(self) -> HealthInfo:
        checks = [HealthCheck(name='service_running', ok=self._running)]

        servers = self.manager.get_servers()
        checks.append(HealthCheck(name='servers_loaded', ok=bool(servers),
                                  message=f"{len(servers)} servers" if servers else 'no servers loaded'))

        current = self.manager.get_current_server()
        if current is None:
            checks.append(HealthCheck(name='current_server', ok=False, message='no active server'))
        else:
            result = self.manager.probe_server(current, self.cancel)
            message = f"{result.latency_ms}ms" if result.available else (result.error or result.error_kind or '')
            checks.append(HealthCheck(name='current_server', ok=result.available, message=message))

        endpoint = self.manager.writer.current_endpoint()
        checks.append(HealthCheck(name='xray_config', ok=endpoint is not None,
                                  message=self.settings.config_path))

        failed = {c.name for c in checks if not c.ok}
        if not failed:
            status = 'healthy'
        elif failed & {'service_running', 'servers_loaded'}:
            status = 'unhealthy'
        else:
            status = 'degraded'

        self.health = HealthInfo(enabled=self.health.enabled, interval=self.health.interval,
                                 last_check=time.time(), status=status, checks=checks)
        if status == 'healthy':
            logger.debug("Health check: healthy")
        else:
            # no automatic restart; the operator decides
            logger.warning("Health check: %s (%s)", status, ', '.join(sorted(failed)))
        return self.health

    def status(self) -> ServiceStatus:
        current = self.manager.get_current_server()
        return ServiceStatus(
            running=self._running,
            version=__version__,
            config_path=self.settings.config_path,
            log_level=self.settings.log_level,
            admin_id=self.settings.admin_id,
            servers_count=len(self.manager.get_servers()),
            current_server=CurrentServerInfo(id=current.id, name=self.manager.display_name(current))
            if current else None,
            health=self.health if self.health.enabled else None,
        )
