import logging
import os
import subprocess
from typing import List, Sequence

from .errors import CommandRejected, RestartFailed

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = (
    '/opt/etc/init.d/S24xray',
    '/bin/systemctl',
    '/usr/bin/systemctl',
    '/sbin/service',
    '/usr/sbin/service',
    '/etc/init.d/xray',
    '/bin/echo',
    '/usr/bin/echo',
)

DANGEROUS_CHARS = (';', '&', '|', '`', '$', '(', ')', '<', '>', '"', "'", '\\')
MAX_COMMAND_LENGTH = 256
RESTART_TIMEOUT = 30


def validate_restart_command(command: str, allowed: Sequence[str] = ALLOWED_COMMANDS) -> List[str]:
    """Check a restart command against the whitelist and return its tokens"""
    if len(command.encode('utf-8')) > MAX_COMMAND_LENGTH:
        raise CommandRejected(f"command longer than {MAX_COMMAND_LENGTH} bytes")
    for char in DANGEROUS_CHARS:
        if char in command:
            raise CommandRejected(f"command contains forbidden character {char!r}")

    parts = command.split()
    if not parts:
        raise CommandRejected('command is empty')
    if not os.path.isabs(parts[0]):
        raise CommandRejected('command must start with an absolute path')
    if not any(parts[0].startswith(prefix) for prefix in allowed):
        raise CommandRejected(f"{parts[0]} is not an allowed restart command")
    return parts


class RestartInvoker:
    """Runs the whitelisted xray restart command without a shell"""

    def __init__(self, command: str, timeout: float = RESTART_TIMEOUT,
                 allowed: Sequence[str] = ALLOWED_COMMANDS):
        self.command = command
        self.timeout = timeout
        self.allowed = tuple(allowed)

    def restart(self):
        args = validate_restart_command(self.command, self.allowed)
        logger.info("Restarting xray: %s", self.command)
        try:
            completed = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise RestartFailed(f"restart command timed out after {self.timeout:g}s", cause=e)
        except OSError as e:
            raise RestartFailed(f"failed to run restart command: {e}", cause=e)

        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()[-500:]
            raise RestartFailed(
                f"restart command exited with code {completed.returncode}: {stderr or 'no output'}",
                exit_code=completed.returncode, stderr=stderr)
        logger.debug("Restart command output: %s", (completed.stdout or '').strip())
