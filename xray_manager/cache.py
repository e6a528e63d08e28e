import hashlib
import json
import logging
import os
import stat
import tempfile
import time
from typing import Callable, List, Optional

from pydantic import ValidationError

from .models import CachedSubscription, Server, SubscriptionInfo

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644


def atomic_write(path: str, data: bytes, default_mode: int = DEFAULT_FILE_MODE):
    """Write data next to path, fsync, then rename over it

    The replacement keeps the permission bits of the file it replaces, or
    gets default_mode when path does not exist yet.
    """
    directory = os.path.dirname(path) or '.'
    try:
        mode = stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        mode = default_mode
    fd, tmp_path = tempfile.mkstemp(prefix='.' + os.path.basename(path) + '.', suffix='.tmp', dir=directory)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class SubscriptionCache:
    """One JSON file per subscription URL, named after the URL's SHA-256"""

    def __init__(self, directory: str, ttl: int, clock: Callable[[], float] = time.time):
        self.directory = directory
        self.ttl = ttl
        self.clock = clock

    def path_for(self, url: str) -> str:
        return os.path.join(self.directory, hashlib.sha256(url.encode('utf-8')).hexdigest() + '.json')

    def _read(self, url: str) -> Optional[CachedSubscription]:
        path = self.path_for(url)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                entry = CachedSubscription.model_validate(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable cache file %s: %s", path, e)
            return None
        if entry.url != url:
            logger.warning("Cache file %s belongs to another URL, ignoring", path)
            return None
        return entry

    def get(self, url: str) -> Optional[CachedSubscription]:
        """Return the cached entry while it is younger than the TTL"""
        entry = self._read(url)
        if entry is None:
            return None
        age = self.clock() - entry.fetched_at
        if self.ttl <= 0 or age > self.ttl:
            logger.debug("Cache entry for subscription expired (age %.0fs)", age)
            return None
        return entry

    def get_stale(self, url: str) -> Optional[CachedSubscription]:
        return self._read(url)

    def put(self, url: str, raw_text: str, servers: List[Server],
            info: Optional[SubscriptionInfo] = None) -> CachedSubscription:
        entry = CachedSubscription(
            url=url,
            fetched_at=self.clock(),
            raw_sha256=hashlib.sha256(raw_text.encode('utf-8')).hexdigest(),
            raw_text=raw_text,
            servers=list(servers),
            info=info,
        )
        os.makedirs(self.directory, exist_ok=True)
        atomic_write(self.path_for(url), entry.model_dump_json(indent=2).encode('utf-8'))
        logger.debug("Cached %d servers", len(entry.servers))
        return entry

    def invalidate(self, url: str):
        try:
            os.remove(self.path_for(url))
            logger.info("Subscription cache invalidated")
        except FileNotFoundError:
            pass
