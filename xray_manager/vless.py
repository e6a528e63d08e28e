"""
vless:// link parsing

    vless://<uuid>@<host>:<port>?<query>#<name>
"""

import hashlib
import re
from typing import Dict, Tuple
from urllib.parse import parse_qs, quote, unquote, urlencode

from .errors import ParseFailed
from .models import Server

UUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

# query key -> Server field
QUERY_FIELDS = {
    'type': 'network',
    'security': 'security',
    'sni': 'sni',
    'alpn': 'alpn',
    'fp': 'fingerprint',
    'flow': 'flow',
    'path': 'path',
    'host': 'host',
    'pbk': 'public_key',
    'sid': 'short_id',
    'encryption': 'encryption',
    'headerType': 'header_type',
    'serviceName': 'service_name',
}


def server_id(address: str, port: int, uuid: str) -> str:
    return hashlib.sha256(f"{address}|{port}|{uuid}".encode('utf-8')).hexdigest()[:12]


def split_host_port(host_port: str) -> Tuple[str, int]:
    if host_port.startswith('['):
        end = host_port.find(']')
        if end == -1:
            raise ParseFailed('unterminated IPv6 literal')
        address = host_port[1:end]
        rest = host_port[end + 1:]
        if not rest.startswith(':'):
            raise ParseFailed('missing port')
        port_text = rest[1:]
    else:
        if ':' not in host_port:
            raise ParseFailed('missing port')
        address, port_text = host_port.rsplit(':', 1)
        if ':' in address:
            raise ParseFailed('IPv6 address must be enclosed in brackets')

    if not address:
        raise ParseFailed('empty host')
    if any(c.isspace() or c in '/?#@' for c in address):
        raise ParseFailed(f"invalid host {address!r}")
    if not port_text.isdigit():
        raise ParseFailed(f"invalid port {port_text!r}")
    port = int(port_text)
    if not 1 <= port <= 65535:
        raise ParseFailed(f"port {port} out of range")
    return address, port


def parse_vless_link(link: str) -> Server:
    """Parse vless:// link into a Server, raising ParseFailed on any malformed part"""
    link = link.strip()
    if not link.lower().startswith('vless://'):
        raise ParseFailed('not a vless:// link')

    main, _, fragment = link[8:].partition('#')
    main, _, query = main.partition('?')
    main = main.rstrip('/')

    if '@' not in main:
        raise ParseFailed('missing user id')
    uuid, host_port = main.rsplit('@', 1)
    uuid = unquote(uuid)
    if not UUID_PATTERN.match(uuid):
        raise ParseFailed(f"invalid uuid {uuid!r}")

    address, port = split_host_port(host_port)

    fields: Dict[str, str] = {}
    extra: Dict[str, str] = {}
    for key, values in parse_qs(query, keep_blank_values=True).items():
        value = values[0]
        if key in QUERY_FIELDS:
            fields[QUERY_FIELDS[key]] = value
        else:
            extra[key] = value

    name = unquote(fragment).strip() or f"{address}:{port}"

    return Server(
        id=server_id(address, port, uuid),
        name=name,
        address=address,
        port=port,
        uuid=uuid,
        extra=extra,
        raw_uri=link,
        **fields,
    )


def to_vless_link(server: Server) -> str:
    """Serialise a Server back into a vless:// link"""
    params = {}
    for key, field in QUERY_FIELDS.items():
        value = getattr(server, field)
        if value:
            params[key] = value
    for key, value in server.extra.items():
        params.setdefault(key, value)

    host = f"[{server.address}]" if ':' in server.address else server.address
    link = f"vless://{server.uuid}@{host}:{server.port}"
    if params:
        link += '?' + urlencode(params, quote_via=quote)
    return link + '#' + quote(server.name, safe='')
