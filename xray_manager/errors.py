"""
Error taxonomy shared by every component.

Components raise these; the command router turns them into short chat
messages through ``user_message`` and the local API maps them onto HTTP
status codes.
"""

from typing import Optional


class XrayManagerError(Exception):
    kind = 'error'
    user_message = 'Something went wrong'

    def __init__(self, message: str = '', cause: Optional[BaseException] = None):
        super().__init__(message or self.user_message)
        self.cause = cause


# ==================== Startup ====================

class ConfigInvalid(XrayManagerError):
    kind = 'config_invalid'
    user_message = 'Settings file is invalid'


# ==================== Subscription ====================

class FetchFailed(XrayManagerError):
    kind = 'fetch_failed'
    user_message = 'Failed to download the subscription'


class DecodeFailed(XrayManagerError):
    kind = 'decode_failed'
    user_message = 'Subscription content is not valid base64'


class ParseFailed(XrayManagerError):
    kind = 'parse_failed'
    user_message = 'Server link could not be parsed'


class NoServersError(XrayManagerError):
    kind = 'no_servers'
    user_message = 'No servers found in the subscription'


# ==================== Switching ====================

class ServerNotFound(XrayManagerError):
    kind = 'server_not_found'
    user_message = 'Server not found'


class AlreadyActive(XrayManagerError):
    kind = 'already_active'
    user_message = 'This server is already active'


class SwitchInProgress(XrayManagerError):
    kind = 'switch_in_progress'
    user_message = 'Another switch is in progress, try again in a moment'


class ConfigWriteFailed(XrayManagerError):
    kind = 'config_write_failed'
    user_message = 'Failed to update the xray configuration, the previous server remains active'


class CommandRejected(XrayManagerError):
    kind = 'command_rejected'
    user_message = 'Restart command is not allowed'


class RestartFailed(XrayManagerError):
    kind = 'restart_failed'
    user_message = 'Failed to restart xray, the previous server remains active'

    def __init__(self, message: str = '', exit_code: Optional[int] = None,
                 stderr: str = '', cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.exit_code = exit_code
        self.stderr = stderr


class RestartFailedRollbackFailed(XrayManagerError):
    kind = 'restart_failed_rollback_failed'
    user_message = 'Failed to restart xray and to restore the previous configuration'


# ==================== Chat ====================

class Unauthorised(XrayManagerError):
    kind = 'unauthorised'
    user_message = 'Access denied'


class RateLimited(XrayManagerError):
    kind = 'rate_limited'
    user_message = 'Too many requests'


class ChatError(XrayManagerError):
    kind = 'chat_error'
    user_message = 'Failed to deliver the message'

    @property
    def not_modified(self) -> bool:
        return 'message is not modified' in str(self).lower()

    @property
    def retryable(self) -> bool:
        text = str(self).lower()
        return any(marker in text for marker in (
            'timeout', 'timed out', 'connection', 'too many requests',
            'retry after', 'bad gateway', 'internal server error',
            'service unavailable', 'gateway timeout',
        ))


class UpdateFailed(XrayManagerError):
    kind = 'update_failed'
    user_message = 'Update failed'
