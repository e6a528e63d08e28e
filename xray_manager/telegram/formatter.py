"""
Chat message texts.
"""

import time
from datetime import datetime
from typing import Callable, Optional, Sequence, Tuple

from ..models import ProbeResult, Server, SubscriptionInfo

MAX_ERROR_LENGTH = 200
PROGRESS_BAR_LENGTH = 20


def format_bytes(b) -> str:
    if not b:
        return '0B'
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if b < 1024:
            return f'{b:.1f}{unit}' if b != int(b) else f'{int(b)}{unit}'
        b /= 1024
    return f'{b:.1f}PB'


def format_expire(ts) -> str:
    if not ts:
        return ''
    return datetime.fromtimestamp(ts).strftime('%Y-%m-%d')


def shorten(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:max(limit - 3, 0)] + '...'


def quality_emoji(latency: int) -> str:
    if latency < 100:
        return '🟢'
    if latency < 300:
        return '🟡'
    if latency < 500:
        return '🟠'
    return '🔴'


def quality_text(latency: int) -> str:
    if latency < 100:
        return 'Excellent'
    if latency < 300:
        return 'Good'
    if latency < 500:
        return 'Fair'
    return 'Poor'


def progress_bar(completed: int, total: int, length: int = PROGRESS_BAR_LENGTH) -> str:
    percent = completed * 100 // total if total else 0
    filled = length * percent // 100
    return f"[{'█' * filled}{'░' * (length - filled)}] {percent}%"


class MessageFormatter:
    def __init__(self, max_name_length: int = 40):
        self.max_name_length = max_name_length

    def name(self, name: str) -> str:
        return shorten(name, self.max_name_length)

    # ==================== Menus ====================

    def welcome(self, servers_count: int, current: Optional[str] = None) -> str:
        lines = [
            '🚀 Xray Telegram Manager',
            '',
            'Welcome! I can help you manage your xray proxy servers.',
            '',
            '📊 Server Status',
            f'└ Available servers: {servers_count}',
        ]
        if current:
            lines.append(f'└ Current: {self.name(current)}')
        lines += ['', '💡 Quick Actions', 'Use the buttons below to get started:']
        return '\n'.join(lines)

    def help(self) -> str:
        return ('ℹ️ Available Commands\n\n'
                '/start - main menu\n'
                '/list - show servers\n'
                '/status - current server status\n'
                '/ping - test all servers\n'
                '/refresh - reload the subscription\n'
                '/update - update the bot')

    def server_list(self, entries: Sequence[Tuple[str, bool]], page: int, total_pages: int,
                    total: int) -> str:
        """entries are (display name, is current) pairs of the visible page"""
        if total_pages > 1:
            lines = [f'📋 Server List (Page {page + 1}/{total_pages})', '']
        else:
            lines = ['📋 Server List', '']
        lines += ['📊 Summary', f'└ Total servers: {total}', '', '🌐 Available Servers']
        for name, current in entries:
            if current:
                lines.append(f'✅ {self.name(name)} (Current)')
            else:
                lines.append(f'🌐 {self.name(name)}')
        lines += ['', 'Select a server below to switch:']
        return '\n'.join(lines)

    def no_servers(self) -> str:
        return ('❌ No Servers Available\n\n'
                '🔴 Issue\n'
                '└ No servers were found in your subscription\n\n'
                '💡 Possible Solutions\n'
                '└ Check your subscription configuration\n'
                '└ Verify your internet connection\n'
                '└ Try refreshing the server list\n\n'
                '🔄 Use the refresh button to try again')

    # ==================== Switching ====================

    def switch_confirmation(self, target: str, current: Optional[str]) -> str:
        lines = ['🔄 Switch Server', '', f'└ To: {self.name(target)}']
        if current:
            lines.append(f'└ From: {self.name(current)}')
        lines += ['', 'xray will be restarted. Continue?']
        return '\n'.join(lines)

    def switching(self, target: str) -> str:
        return f'⏳ Switching to {self.name(target)}...\n\nxray is restarting, please wait.'

    def switch_success(self, server: Server, name: str) -> str:
        return ('✅ Server Switched\n\n'
                f'└ Name: {self.name(name)}\n'
                f'└ Address: {server.endpoint}\n\n'
                'xray was restarted with the new server.')

    # ==================== Probing ====================

    def ping_progress(self, completed: int, total: int, current: str) -> str:
        percent = completed * 100 // total if total else 0
        return ('🏓 Ping Test in Progress\n\n'
                '📊 Progress Overview\n'
                f'└ Completed: {completed}/{total} servers ({percent}%)\n\n'
                f'{progress_bar(completed, total)}\n\n'
                '🔄 Currently Testing\n'
                f'└ {shorten(current, 25)}\n\n'
                '⏳ Please wait while testing continues...')

    def ping_results(self, results: Sequence[ProbeResult], display_name: Callable[[ProbeResult], str],
                     current_id: Optional[str] = None, limit: int = 10) -> str:
        available = [r for r in results if r.available]
        total = len(results)
        rate = len(available) * 100.0 / total if total else 0.0
        lines = [
            '🏓 Ping Test Complete',
            '',
            '📊 Test Summary',
            f'└ Available: {len(available)}/{total} servers',
            f'└ Success rate: {rate:.1f}%',
            '',
        ]
        if available:
            lines.append('⚡ Fastest Servers')
            for result in available[:limit]:
                icon = '✅' if result.server_id == current_id else quality_emoji(result.latency_ms or 0)
                suffix = ' (Current)' if result.server_id == current_id else ''
                lines.append(f'{icon} {shorten(display_name(result), 20)} {result.latency_ms}ms{suffix}')
            lines.append('')
        unavailable = total - len(available)
        if unavailable:
            lines += ['❌ Unavailable Servers', f'└ {unavailable} servers are currently unreachable', '']

        lines.append('💡 Recommendations')
        if available:
            lines += ['└ Select a fast server from the quick-select buttons',
                      '└ Servers with 🟢 quality are recommended']
        else:
            lines += ['└ Check your internet connection', '└ Try refreshing the server list']
        return '\n'.join(lines)

    # ==================== Status ====================

    def status(self, server: Optional[Server], name: str = '', result: Optional[ProbeResult] = None,
               info: Optional[SubscriptionInfo] = None, servers_count: int = 0) -> str:
        lines = ['📊 Current Server Status', '']
        if server is None:
            lines += ['🏷️ Server Information', '└ No active server detected', '']
        else:
            lines += [
                '🏷️ Server Information',
                f'└ Name: {self.name(name or server.name)}',
                f'└ Address: {server.endpoint}',
                f'└ Transport: {server.network or "tcp"}/{server.security or "none"}',
                '',
                '🔗 Connection Status',
            ]
            if result is None:
                lines.append('└ Status: ⏳ Testing connection...')
            elif result.available:
                latency = result.latency_ms or 0
                lines += ['└ Status: ✅ Connected',
                          f'└ Latency: ⚡ {latency}ms',
                          f'└ Quality: {quality_emoji(latency)} {quality_text(latency)}']
            else:
                lines += ['└ Status: ❌ Disconnected',
                          f'└ Error: {shorten(result.error or result.error_kind or "unknown", MAX_ERROR_LENGTH)}',
                          '└ Quality: 🔴 Unavailable']
            lines.append('')

        lines += ['📦 Subscription', f'└ Servers: {servers_count}']
        if info is not None and info.total:
            used = info.upload + info.download
            lines.append(f'└ Traffic: {format_bytes(used)}/{format_bytes(info.total)}')
        if info is not None and info.expire:
            lines.append(f'└ Expires: {format_expire(info.expire)}')
        lines += ['', '🕐 Last Updated', f'└ {time.strftime("%H:%M:%S")}']
        return '\n'.join(lines)

    # ==================== Errors ====================

    def error(self, title: str, message: str, suggestions: Sequence[str] = ()) -> str:
        lines = [f'❌ {title}', '', '🔴 Error Details', f'└ {shorten(message, MAX_ERROR_LENGTH)}']
        if suggestions:
            lines += ['', '💡 Suggested Actions'] + [f'└ {s}' for s in suggestions]
        return '\n'.join(lines)

    def unauthorized(self) -> str:
        return ('❌ Unauthorized Access\n\n'
                '🔒 Access Denied\n'
                '└ This bot is restricted to authorized users only\n\n'
                '💡 Information\n'
                '└ Contact the administrator for access\n'
                "└ Ensure you're using the correct account")

    def rate_limited(self) -> str:
        return ('⚠️ Rate Limit Exceeded\n\n'
                '🚫 Request Limit\n'
                '└ You are sending requests too quickly\n\n'
                '💡 Next Steps\n'
                '└ Please wait a moment before trying again\n'
                '└ This helps maintain system stability')

    # ==================== Update ====================

    def update_info(self, current: str, latest: Optional[str]) -> str:
        lines = ['🔄 Bot Update', '', f'└ Installed version: {current}']
        if latest:
            lines.append(f'└ Latest release: {latest}')
        lines += ['', 'The update script will be downloaded and run.',
                  'The bot restarts when it finishes. Continue?']
        return '\n'.join(lines)

    def update_progress(self, stage: str, progress: int, message: str = '') -> str:
        stage_emoji = {
            'downloading': '📥',
            'backing_up': '💾',
            'installing': '⚙️',
            'completing': '✅',
        }.get(stage, '🔄')
        lines = [
            '🔄 Bot Update in Progress',
            '',
            '📊 Update Progress',
            f'└ Completion: {progress}%',
            f'└ {progress_bar(progress, 100)}',
            '',
            '⚙️ Current Stage',
            f'└ {stage_emoji} {stage.replace("_", " ").title()}',
        ]
        if message:
            lines.append(f'└ {message}')
        lines += ['', '⏳ Please Wait', '└ The update process is running']
        return '\n'.join(lines)

    def update_finished(self, ok: bool, message: str) -> str:
        if ok:
            return f'✅ Update Complete\n\n└ {shorten(message, MAX_ERROR_LENGTH)}'
        return self.error('Update Failed', message, ['Check the log file', 'Try again later'])

