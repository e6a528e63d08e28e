"""
Rewrites the proxy outbound of the xray configuration file.

Only the targeted outbound is touched; every other key of the file survives
re-serialisation unchanged.
"""

import json
import logging
from typing import List, Optional, Tuple

from .cache import atomic_write
from .errors import ConfigWriteFailed
from .models import Server

logger = logging.getLogger(__name__)

PROXY_TAG = 'proxy'


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def _compact(settings: dict) -> dict:
    return {key: value for key, value in settings.items() if value not in ('', None, [])}


def build_stream_settings(server: Server) -> dict:
    network = server.network or 'tcp'
    security = server.security or 'none'
    stream = {'network': network, 'security': security}

    if security == 'reality':
        stream['realitySettings'] = _compact({
            'serverName': server.sni,
            'fingerprint': server.fingerprint,
            'publicKey': server.public_key,
            'shortId': server.short_id,
            'spiderX': server.extra.get('spx') or '/',
        })
    elif security == 'tls':
        stream['tlsSettings'] = _compact({
            'serverName': server.sni,
            'fingerprint': server.fingerprint,
            'alpn': _split_list(server.alpn),
        })

    if network == 'ws':
        ws = _compact({'path': server.path})
        if server.host:
            ws['headers'] = {'Host': server.host}
        stream['wsSettings'] = ws
    elif network == 'grpc':
        stream['grpcSettings'] = _compact({'serviceName': server.service_name})
    elif network in ('http', 'h2'):
        stream['httpSettings'] = _compact({'path': server.path, 'host': _split_list(server.host)})
    elif network == 'httpupgrade':
        stream['httpupgradeSettings'] = _compact({'path': server.path, 'host': server.host})
    elif network in ('xhttp', 'splithttp'):
        stream['xhttpSettings'] = _compact({'path': server.path, 'host': server.host})
    elif network == 'tcp' and server.header_type == 'http':
        stream['tcpSettings'] = {'header': {'type': 'http'}}

    return stream


def build_outbound(server: Server, base: Optional[dict] = None) -> dict:
    """Return a vless outbound for server, keeping unrelated keys of base"""
    outbound = dict(base or {})
    outbound.setdefault('tag', PROXY_TAG)
    outbound['protocol'] = 'vless'

    user = {'id': server.uuid, 'encryption': server.encryption or 'none', 'level': 0}
    if server.flow:
        user['flow'] = server.flow
    outbound['settings'] = {
        'vnext': [{
            'address': server.address,
            'port': server.port,
            'users': [user],
        }],
    }
    outbound['streamSettings'] = build_stream_settings(server)
    return outbound


def find_proxy_outbound(outbounds: list) -> Optional[int]:
    for index, outbound in enumerate(outbounds):
        if isinstance(outbound, dict) and outbound.get('tag') == PROXY_TAG:
            return index
    for index, outbound in enumerate(outbounds):
        if isinstance(outbound, dict) and outbound.get('protocol') == 'vless':
            return index
    return None


class XrayConfigWriter:
    def __init__(self, path: str):
        self.path = path

    def read_bytes(self) -> bytes:
        with open(self.path, 'rb') as f:
            return f.read()

    def load(self) -> dict:
        return self._parse(self.snapshot())

    def _parse(self, data: bytes) -> dict:
        try:
            config = json.loads(data.decode('utf-8'))
        except ValueError as e:
            raise ConfigWriteFailed(f"failed to parse {self.path}: {e}", cause=e)
        if not isinstance(config, dict) or not isinstance(config.get('outbounds'), list):
            raise ConfigWriteFailed(f"{self.path} has no outbounds array")
        return config

    def snapshot(self) -> bytes:
        try:
            return self.read_bytes()
        except OSError as e:
            raise ConfigWriteFailed(f"failed to read {self.path}: {e}", cause=e)

    def write_server(self, server: Server) -> bytes:
        """Point the proxy outbound at server; returns the previous file contents"""
        previous = self.snapshot()
        config = self._parse(previous)
        outbounds = config['outbounds']
        index = find_proxy_outbound(outbounds)
        if index is None:
            logger.info("No proxy outbound in %s, adding one", self.path)
            outbounds.insert(0, build_outbound(server))
        else:
            outbounds[index] = build_outbound(server, outbounds[index])

        data = json.dumps(config, ensure_ascii=False, indent=4) + '\n'
        try:
            atomic_write(self.path, data.encode('utf-8'))
        except OSError as e:
            raise ConfigWriteFailed(f"failed to write {self.path}: {e}", cause=e)
        logger.info("xray config updated to %s (%s)", server.name, server.endpoint)
        return previous

    def restore(self, snapshot: bytes):
        atomic_write(self.path, snapshot)
        logger.info("xray config restored from snapshot")

    def current_endpoint(self) -> Optional[Tuple[str, int, str]]:
        """(address, port, uuid) of the proxy outbound, if any"""
        try:
            config = self.load()
        except ConfigWriteFailed as e:
            logger.warning("Cannot read current xray config: %s", e)
            return None

        index = find_proxy_outbound(config['outbounds'])
        if index is None:
            return None
        try:
            vnext = config['outbounds'][index]['settings']['vnext'][0]
            users = vnext.get('users') or [{}]
            return str(vnext['address']), int(vnext['port']), str(users[0].get('id', ''))
        except (KeyError, IndexError, TypeError, ValueError, AttributeError):
            return None
