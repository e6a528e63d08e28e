"""
Self-update: downloads the installer's update script and runs it detached,
so it survives the service restart it triggers.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from typing import Callable, Optional

import requests
from pydantic import BaseModel

from .. import __version__
from ..errors import UpdateFailed
from ..settings import UpdateSettings

logger = logging.getLogger(__name__)

RELEASES_URL = 'https://api.github.com/repos/ad/xray-subscription-telegram-manager-for-keenetic/releases/latest'
SHELLS = ('/bin/bash', '/usr/bin/bash', '/bin/sh', '/usr/bin/sh')
UPDATE_LOG = '/tmp/xray-tg-update.log'
SCRIPT_ENV = {
    'PATH': '/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin:/opt/sbin:/opt/bin',
    'HOME': '/root',
}


class UpdateStatus(BaseModel):
    in_progress: bool = False
    stage: str = 'idle'
    progress: int = 0
    message: str = ''
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


def available_shell() -> str:
    for shell in SHELLS:
        if os.path.exists(shell):
            return shell
    return '/bin/sh'


def parse_version(version: str):
    parts = []
    for part in version.strip().lstrip('vV').split('.'):
        digits = ''.join(c for c in part if c.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def is_newer(current: str, latest: str) -> bool:
    return parse_version(latest) > parse_version(current)


class UpdateManager:
    def __init__(self, settings: UpdateSettings, settings_path: str = '',
                 session: Optional[requests.Session] = None):
        self.settings = settings
        self.settings_path = settings_path
        self.session = session or requests.Session()
        self._status = UpdateStatus()
        self._lock = threading.Lock()

    @property
    def current_version(self) -> str:
        return __version__

    def status(self) -> UpdateStatus:
        with self._lock:
            return self._status.model_copy()

    def latest_version(self) -> Optional[str]:
        """Tag of the latest published release, or None when it cannot be determined"""
        try:
            response = self.session.get(RELEASES_URL, timeout=10,
                                        headers={'Accept': 'application/vnd.github+json'})
            response.raise_for_status()
            return response.json().get('tag_name') or None
        except (requests.RequestException, ValueError) as e:
            logger.debug("Cannot check latest release: %s", e)
            return None

    def _progress(self, stage: str, progress: int, message: str,
                  on_progress: Optional[Callable[[UpdateStatus], None]]):
        with self._lock:
            self._status.stage = stage
            self._status.progress = progress
            self._status.message = message
            snapshot = self._status.model_copy()
        logger.debug("Update progress: %s (%d%%) %s", stage, progress, message)
        if on_progress is not None:
            on_progress(snapshot)

    def start(self, on_progress: Optional[Callable[[UpdateStatus], None]] = None,
              on_done: Optional[Callable[[UpdateStatus], None]] = None) -> bool:
        """Run the update in a background thread; False when one is already running"""
        with self._lock:
            if self._status.in_progress:
                return False
            self._status = UpdateStatus(in_progress=True, stage='initializing', started_at=time.time())

        def worker():
            self.run(on_progress)
            if on_done is not None:
                on_done(self.status())

        threading.Thread(target=worker, name='update', daemon=True).start()
        return True

    def run(self, on_progress: Optional[Callable[[UpdateStatus], None]] = None):
        script = None
        try:
            self._progress('downloading', 10, 'Downloading update script', on_progress)
            script = self.download_script()
            if self.settings.backup_config and self.settings_path:
                self._progress('backing_up', 30, 'Backing up settings', on_progress)
                self.backup_settings()
            self._progress('installing', 50, 'Running update script', on_progress)
            self.execute_script(script)
            self._progress('completing', 100, 'Update script finished', on_progress)
        except UpdateFailed as e:
            logger.error("Update failed: %s", e)
            with self._lock:
                self._status.error = str(e)
        finally:
            with self._lock:
                self._status.in_progress = False
                self._status.finished_at = time.time()
            if script:
                try:
                    os.unlink(script)
                except OSError:
                    logger.debug("Update script %s already removed", script)

    def download_script(self) -> str:
        try:
            response = self.session.get(self.settings.script_url, timeout=60)
            response.raise_for_status()
        except requests.RequestException as e:
            raise UpdateFailed(f"failed to download update script: {e}", cause=e)

        content = response.content
        if not content.startswith(b'#!'):
            raise UpdateFailed('downloaded update script is not a shell script')

        try:
            fd, path = tempfile.mkstemp(prefix='xray-tg-update-', suffix='.sh')
            with os.fdopen(fd, 'wb') as f:
                f.write(content)
            os.chmod(path, 0o755)
        except OSError as e:
            raise UpdateFailed(f"failed to save update script: {e}", cause=e)
        return path

    def backup_settings(self) -> str:
        backup = f"{self.settings_path}.backup.{time.strftime('%Y%m%d%H%M%S')}"
        try:
            shutil.copy2(self.settings_path, backup)
        except OSError as e:
            raise UpdateFailed(f"failed to back up settings: {e}", cause=e)
        logger.info("Settings backed up to %s", backup)
        return backup

    def execute_script(self, script: str):
        shell = available_shell()
        env = dict(SCRIPT_ENV, SHELL=shell)
        timeout = self.settings.timeout_minutes * 60
        logger.info("Running update script with %s", shell)
        try:
            with open(UPDATE_LOG, 'ab') as log:
                process = subprocess.Popen([shell, script, '--force'], stdout=log, stderr=subprocess.STDOUT,
                                           env=env, start_new_session=True)
                code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            raise UpdateFailed(f"update script did not finish within {self.settings.timeout_minutes} minutes",
                               cause=e)
        except OSError as e:
            raise UpdateFailed(f"failed to start update script: {e}", cause=e)
        if code != 0:
            raise UpdateFailed(f"update script exited with code {code}, see {UPDATE_LOG}")
