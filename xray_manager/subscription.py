import base64
import binascii
import hashlib
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

import requests

from . import __version__
from .cache import SubscriptionCache
from .errors import DecodeFailed, FetchFailed, NoServersError, ParseFailed
from .models import CachedSubscription, Server, SubscriptionInfo
from .vless import parse_vless_link

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30
MAX_REDIRECTS = 5
FETCH_ATTEMPTS = 3


# ==================== Decoding ====================

def decode_base64(content: str) -> str:
    """Decode a base64 subscription body; URL-safe alphabet and missing padding are accepted"""
    content = ''.join(content.split()).replace('-', '+').replace('_', '/')
    missing_padding = len(content) % 4
    if missing_padding:
        content += '=' * (4 - missing_padding)
    try:
        return base64.b64decode(content, validate=True).decode('utf-8')
    except (binascii.Error, ValueError) as e:
        raise DecodeFailed(f"subscription body is not valid base64: {e}", cause=e)


def parse_subscription_info(headers) -> Optional[SubscriptionInfo]:
    userinfo = headers.get('subscription-userinfo', '') or headers.get('Subscription-Userinfo', '')
    if not userinfo:
        return None
    info = {}
    for part in userinfo.split(';'):
        if '=' in part:
            key, val = part.split('=', 1)
            try:
                info[key.strip().lower()] = int(float(val.strip()))
            except ValueError:
                logger.debug("Ignoring subscription-userinfo field %r", part)
    return SubscriptionInfo(**{k: v for k, v in info.items() if k in SubscriptionInfo.model_fields})


def parse_subscription(text: str) -> List[Server]:
    """Parse decoded subscription text, one link per line; bad lines are skipped"""
    servers = []
    seen = set()
    failed = 0
    for number, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            server = parse_vless_link(line)
        except ParseFailed as e:
            failed += 1
            logger.warning("Skipping subscription line %d: %s", number, e)
            continue
        if server.id in seen:
            logger.debug("Skipping duplicate server %s on line %d", server.id, number)
            continue
        seen.add(server.id)
        servers.append(server)

    if not servers:
        if failed:
            raise NoServersError(f"none of the {failed} subscription lines could be parsed")
        raise NoServersError('subscription is empty')
    return servers


# ==================== Fetching ====================

class SubscriptionFetcher:
    """Downloads the subscription body over HTTP(S)

    timeout bounds the whole fetch, retries and backoff included. Each
    attempt gets what is left of it as its connect and read timeout.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = FETCH_TIMEOUT,
                 attempts: int = FETCH_ATTEMPTS, backoff: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.session = session or requests.Session()
        self.session.max_redirects = MAX_REDIRECTS
        self.timeout = timeout
        self.attempts = attempts
        self.backoff = backoff
        self.clock = clock

    def fetch_once(self, url: str, timeout: Optional[float] = None) -> Tuple[str, Optional[SubscriptionInfo]]:
        headers = {'User-Agent': f"xray-telegram-manager/{__version__}", 'Accept': '*/*'}
        response = self.session.get(url, headers=headers, timeout=timeout or self.timeout)
        response.raise_for_status()
        return response.text, parse_subscription_info(response.headers)

    def fetch(self, url: str, cancel: Optional[threading.Event] = None) -> Tuple[str, Optional[SubscriptionInfo]]:
        deadline = self.clock() + self.timeout
        last_error = None
        for attempt in range(1, self.attempts + 1):
            if cancel is not None and cancel.is_set():
                raise FetchFailed('subscription fetch cancelled')
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            try:
                return self.fetch_once(url, remaining)
            except requests.RequestException as e:
                last_error = e
                logger.warning("Subscription fetch attempt %d/%d failed: %s", attempt, self.attempts, e)
            if attempt < self.attempts:
                delay = min(self.backoff * attempt, max(deadline - self.clock(), 0))
                if cancel is not None:
                    if cancel.wait(delay):
                        raise FetchFailed('subscription fetch cancelled')
                else:
                    time.sleep(delay)
        raise FetchFailed(f"failed to fetch subscription within {self.timeout:g}s: {last_error}",
                          cause=last_error)


class SubscriptionLoader:
    """Serves the subscription from cache while fresh, otherwise fetches and caches it"""

    def __init__(self, url: str, fetcher: SubscriptionFetcher, cache: SubscriptionCache):
        self.url = url
        self.fetcher = fetcher
        self.cache = cache

    def load(self, force: bool = False, cancel: Optional[threading.Event] = None) -> CachedSubscription:
        if not force:
            cached = self.cache.get(self.url)
            if cached is not None:
                logger.debug("Using cached subscription with %d servers", len(cached.servers))
                return cached

        try:
            body, info = self.fetcher.fetch(self.url, cancel)
        except FetchFailed:
            stale = self.cache.get_stale(self.url)
            if stale is None:
                raise
            logger.warning("Subscription fetch failed, using stale cache from %.0fs ago",
                           self.cache.clock() - stale.fetched_at)
            return stale

        text = decode_base64(body)
        servers = parse_subscription(text)
        logger.info("Fetched subscription: %d servers", len(servers))
        try:
            return self.cache.put(self.url, text, servers, info)
        except OSError as e:
            logger.warning("Failed to write subscription cache: %s", e)
            return CachedSubscription(url=self.url, fetched_at=self.cache.clock(),
                                      raw_sha256=hashlib.sha256(text.encode('utf-8')).hexdigest(),
                                      raw_text=text, servers=servers, info=info)

    def invalidate(self):
        self.cache.invalidate(self.url)
