"""
Command router: authorises and rate limits chat input, then dispatches text
commands and button callbacks to the server manager.

Callback data namespaces:

    server:<id>           ask to confirm a switch
    quick:<id>            switch right away (ping results)
    page:<n>              server list page
    confirm:switch:<id>   perform a confirmed switch
    confirm:update        run the self-update
    cancel                back to the main menu
    nav:<target>          menu, list, ping, refresh, status
    noop                  page indicator
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..errors import (ChatError, ConfigWriteFailed, RestartFailed, RestartFailedRollbackFailed,
                      XrayManagerError)
from ..manager import ServerManager
from ..models import MessageContent, MessageType, ProbeResult
from ..settings import UISettings
from . import keyboards
from .buttons import button_text, server_button_text
from .formatter import MessageFormatter, quality_emoji
from .ratelimit import RateLimiter
from .sessions import SessionManager
from .transport import ChatTransport
from .updates import UpdateManager, UpdateStatus

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 1.0


class CommandRouter:
    def __init__(self, admin_id: int, manager: ServerManager, sessions: SessionManager,
                 transport: ChatTransport, ui: UISettings, limiter: Optional[RateLimiter] = None,
                 updater: Optional[UpdateManager] = None,
                 on_fatal: Optional[Callable[[BaseException], None]] = None,
                 cancel: Optional[threading.Event] = None):
        self.admin_id = admin_id
        self.manager = manager
        self.sessions = sessions
        self.transport = transport
        self.ui = ui
        self.limiter = limiter or RateLimiter()
        self.updater = updater
        self.on_fatal = on_fatal
        self.cancel = cancel or threading.Event()
        self.formatter = MessageFormatter(max_name_length=max(ui.max_button_text_length, 20))
        self.progress_interval = PROGRESS_INTERVAL

        self.commands: Dict[str, Callable[[int, int], None]] = {
            '/start': self.show_menu,
            '/list': self.show_servers,
            '/status': self.show_status,
            '/ping': self.run_ping,
            '/refresh': self.refresh,
            '/update': self.show_update,
        }
        self.navigation: Dict[str, Callable[[int, int], None]] = {
            'menu': self.show_menu,
            'list': self.show_servers,
            'status': self.show_status,
            'ping': self.run_ping,
            'refresh': self.refresh,
        }

    # ==================== Entry points ====================

    def handle_message(self, user_id: int, chat_id: int, text: str):
        if user_id != self.admin_id:
            logger.warning("Unauthorised message from user %d", user_id)
            self._reply(chat_id, self.formatter.unauthorized())
            return
        if not self.limiter.allow(user_id):
            logger.info("Rate limit hit by user %d", user_id)
            self._reply(chat_id, self.formatter.rate_limited())
            return

        words = (text or '').strip().split()
        command = words[0].split('@')[0].lower() if words else ''
        handler = self.commands.get(command)
        logger.debug("Command %r from user %d", command, user_id)
        if handler is None:
            handler = self.show_help
        self._dispatch(handler, user_id, chat_id)

    def handle_callback(self, user_id: int, chat_id: int, callback_id: str, data: str):
        if user_id != self.admin_id:
            logger.warning("Unauthorised callback from user %d", user_id)
            self._answer(callback_id, 'Access denied', show_alert=True)
            return
        if not self.limiter.allow(user_id):
            self._answer(callback_id, 'Too many requests, please wait', show_alert=True)
            return

        handler = self._resolve_callback(data or '')
        if handler is None:
            logger.debug("Unknown callback %r", data)
            self._answer(callback_id, 'Unknown command')
            return
        self._answer(callback_id)
        self._dispatch(handler, user_id, chat_id)

    def _resolve_callback(self, data: str) -> Optional[Callable[[int, int], None]]:
        namespace, _, arg = data.partition(':')
        if data == 'cancel':
            return self.show_menu
        if data == 'noop':
            return lambda user_id, chat_id: None
        if namespace == 'nav':
            return self.navigation.get(arg)
        if namespace == 'page' and arg.lstrip('-').isdigit():
            return lambda user_id, chat_id: self.show_servers(user_id, chat_id, int(arg))
        if namespace == 'server' and arg:
            return lambda user_id, chat_id: self.confirm_switch(user_id, chat_id, arg)
        if namespace == 'quick' and arg:
            return lambda user_id, chat_id: self.switch(user_id, chat_id, arg)
        if namespace == 'confirm':
            action, _, target = arg.partition(':')
            if action == 'switch' and target:
                return lambda user_id, chat_id: self.switch(user_id, chat_id, target)
            if action == 'update' and not target:
                return self.run_update
        return None

    def _dispatch(self, handler: Callable[[int, int], None], user_id: int, chat_id: int):
        try:
            handler(user_id, chat_id)
        except RestartFailedRollbackFailed as e:
            logger.critical("Switch left xray without a valid config: %s", e)
            self._show_error(user_id, chat_id, e)
            if self.on_fatal is not None:
                self.on_fatal(e)
        except ChatError as e:
            logger.error("Chat delivery failed: %s", e)
        except XrayManagerError as e:
            logger.info("%s: %s", type(e).__name__, e)
            self._show_error(user_id, chat_id, e)

    # ==================== Helpers ====================

    def _reply(self, chat_id: int, text: str):
        try:
            self.transport.send_message(chat_id, text)
        except ChatError as e:
            logger.warning("Failed to send reply: %s", e)

    def _answer(self, callback_id: str, text: str = '', show_alert: bool = False):
        try:
            self.transport.answer_callback(callback_id, text, show_alert)
        except ChatError as e:
            logger.debug("Failed to answer callback: %s", e)

    def _show(self, user_id: int, chat_id: int, text: str, message_type: MessageType, keyboard=()):
        self.sessions.send_or_edit(user_id, chat_id, MessageContent(text, message_type, keyboard))

    def _show_error(self, user_id: int, chat_id: int, error: XrayManagerError):
        suggestions = []
        if isinstance(error, (ConfigWriteFailed, RestartFailed)) and not isinstance(error, RestartFailedRollbackFailed):
            suggestions = ['The previous server remains active', 'Try another server']
        elif isinstance(error, RestartFailedRollbackFailed):
            suggestions = ['Check the xray configuration manually', 'The bot will stop now']
        text = self.formatter.error(error.user_message, str(error), suggestions)
        try:
            self._show(user_id, chat_id, text, MessageType.ERROR, keyboards.error())
        except ChatError as e:
            logger.error("Failed to report error to user: %s", e)

    def _ensure_servers(self) -> bool:
        if not self.manager.has_servers():
            self.manager.load_servers(cancel=self.cancel)
            if self.manager.get_current_server() is None:
                self.manager.detect_current()
        return self.manager.has_servers()

    def _current_name(self) -> Optional[str]:
        current = self.manager.get_current_server()
        return self.manager.display_name(current) if current else None

    # ==================== Commands ====================

    def show_help(self, user_id: int, chat_id: int):
        self._show(user_id, chat_id, self.formatter.help(), MessageType.MENU, keyboards.main_menu())

    def show_menu(self, user_id: int, chat_id: int):
        self._ensure_servers()
        text = self.formatter.welcome(len(self.manager.get_servers()), self._current_name())
        self.sessions.send_new(user_id, chat_id, MessageContent(text, MessageType.MENU, keyboards.main_menu()))

    def show_servers(self, user_id: int, chat_id: int, page: int = 0):
        if not self._ensure_servers():
            self._show(user_id, chat_id, self.formatter.no_servers(), MessageType.ERROR, keyboards.error())
            return

        servers = self.manager.get_servers_sorted()
        current = self.manager.get_current_server()
        current_id = current.id if current else None
        visible, page, total_pages = keyboards.paginate(servers, page, self.ui.servers_per_page)

        entries = [(self.manager.display_name(s), s.id == current_id) for s in visible]
        buttons = [(s.id, server_button_text(self.manager.display_name(s), '✅' if s.id == current_id else '🌐',
                                             self.ui.max_button_text_length)) for s in visible]
        text = self.formatter.server_list(entries, page, total_pages, len(servers))
        self._show(user_id, chat_id, text, MessageType.SERVER_LIST,
                   keyboards.server_list(buttons, page, total_pages))

    def show_status(self, user_id: int, chat_id: int):
        self._ensure_servers()
        current = self.manager.get_current_server() or self.manager.detect_current()
        count = len(self.manager.get_servers())
        info = self.manager.subscription_info
        name = self.manager.display_name(current) if current else ''

        self._show(user_id, chat_id, self.formatter.status(current, name, None, info, count),
                   MessageType.STATUS, keyboards.status())
        if current is None:
            return
        result = self.manager.probe_server(current, self.cancel)
        self._show(user_id, chat_id, self.formatter.status(current, name, result, info, count),
                   MessageType.STATUS, keyboards.status())

    def refresh(self, user_id: int, chat_id: int):
        self._show(user_id, chat_id, '🔄 Refreshing the server list...', MessageType.PROGRESS)
        self.manager.refresh_servers(cancel=self.cancel)
        if self.manager.get_current_server() is None:
            self.manager.detect_current()
        self.show_servers(user_id, chat_id)

    def run_ping(self, user_id: int, chat_id: int):
        if not self._ensure_servers():
            self._show(user_id, chat_id, self.formatter.no_servers(), MessageType.ERROR, keyboards.error())
            return

        servers = self.manager.get_servers()
        names = {s.id: self.manager.display_name(s) for s in servers}
        self._show(user_id, chat_id, self.formatter.ping_progress(0, len(servers), ''), MessageType.PROGRESS)

        guard = threading.Lock()
        last_update = [0.0]

        def progress(completed: int, total: int, name: str):
            if not guard.acquire(blocking=False):
                return
            try:
                now = time.monotonic()
                if completed < total and now - last_update[0] < self.progress_interval:
                    return
                last_update[0] = now
                self._show(user_id, chat_id, self.formatter.ping_progress(completed, total, name),
                           MessageType.PROGRESS)
            except ChatError as e:
                logger.debug("Progress update failed: %s", e)
            finally:
                guard.release()

        results = self.manager.probe(progress, self.cancel)
        current = self.manager.get_current_server()
        current_id = current.id if current else None

        def result_name(result: ProbeResult) -> str:
            return names.get(result.server_id, result.server_name)

        quick = []
        for result in self.manager.quick_select(results):
            suffix = f' {result.latency_ms}ms'
            label = button_text(f'{quality_emoji(result.latency_ms or 0)} {result_name(result)}',
                                max(self.ui.max_button_text_length - len(suffix), 4)) + suffix
            quick.append((result.server_id, label))

        text = self.formatter.ping_results(results, result_name, current_id, self.ui.max_quick_select_servers)
        self._show(user_id, chat_id, text, MessageType.PING_RESULT, keyboards.ping_results(quick))

    # ==================== Switching ====================

    def confirm_switch(self, user_id: int, chat_id: int, server_id: str):
        server = self.manager.get_server(server_id)
        current = self.manager.get_current_server()
        if current is not None and current.id == server.id:
            info = self.manager.subscription_info
            text = self.formatter.status(current, self.manager.display_name(current), None, info,
                                         len(self.manager.get_servers()))
            self._show(user_id, chat_id, '✅ This server is already active\n\n' + text,
                       MessageType.STATUS, keyboards.status())
            return
        text = self.formatter.switch_confirmation(self.manager.display_name(server), self._current_name())
        self._show(user_id, chat_id, text, MessageType.CONFIRMATION, keyboards.confirmation(f'switch:{server.id}'))

    def switch(self, user_id: int, chat_id: int, server_id: str):
        server = self.manager.get_server(server_id)
        name = self.manager.display_name(server)
        self._show(user_id, chat_id, self.formatter.switching(name), MessageType.PROGRESS)
        server = self.manager.switch(server_id)
        self._show(user_id, chat_id, self.formatter.switch_success(server, name), MessageType.STATUS,
                   keyboards.status())

    # ==================== Update ====================

    def show_update(self, user_id: int, chat_id: int):
        if self.updater is None:
            self._show(user_id, chat_id, self.formatter.error('Update Unavailable', 'Updates are not configured'),
                       MessageType.ERROR, keyboards.back_to_menu())
            return
        text = self.formatter.update_info(self.updater.current_version, self.updater.latest_version())
        self._show(user_id, chat_id, text, MessageType.CONFIRMATION, keyboards.confirmation('update'))

    def run_update(self, user_id: int, chat_id: int):
        if self.updater is None:
            return

        def on_progress(status: UpdateStatus):
            try:
                self._show(user_id, chat_id, self.formatter.update_progress(status.stage, status.progress,
                                                                            status.message), MessageType.PROGRESS)
            except ChatError as e:
                logger.debug("Update progress message failed: %s", e)

        def on_done(status: UpdateStatus):
            ok = status.error is None
            text = self.formatter.update_finished(ok, status.message if ok else status.error)
            try:
                self._show(user_id, chat_id, text, MessageType.STATUS if ok else MessageType.ERROR,
                           keyboards.back_to_menu())
            except ChatError as e:
                logger.debug("Update result message failed: %s", e)

        if not self.updater.start(on_progress, on_done):
            self._show(user_id, chat_id, self.formatter.error('Update In Progress', 'An update is already running'),
                       MessageType.ERROR, keyboards.back_to_menu())
