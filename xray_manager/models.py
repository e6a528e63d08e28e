import time
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


# ==================== Servers ====================

class Server(BaseModel):
    """One proxy endpoint parsed from a vless:// link"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    address: str
    port: int = Field(ge=1, le=65535)
    uuid: str
    network: str = ''
    header_type: str = ''
    security: str = ''
    sni: str = ''
    alpn: str = ''
    fingerprint: str = ''
    path: str = ''
    host: str = ''
    flow: str = ''
    public_key: str = ''
    short_id: str = ''
    service_name: str = ''
    encryption: str = ''
    extra: Dict[str, str] = Field(default_factory=dict)
    raw_uri: str = ''

    @property
    def endpoint(self) -> str:
        if ':' in self.address:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


class SubscriptionInfo(BaseModel):
    """Traffic quota advertised in the subscription-userinfo header"""
    upload: int = 0
    download: int = 0
    total: int = 0
    expire: int = 0


class CachedSubscription(BaseModel):
    url: str
    fetched_at: float
    raw_sha256: str
    raw_text: str
    servers: List[Server]
    info: Optional[SubscriptionInfo] = None


# ==================== Probing ====================

class ProbeResult(BaseModel):
    server_id: str
    server_name: str
    available: bool
    latency_ms: Optional[int] = None
    error_kind: Optional[str] = None
    error: str = ''
    measured_at: float = Field(default_factory=time.time)


# ==================== Status ====================

class CurrentServerInfo(BaseModel):
    id: str
    name: str


class HealthCheck(BaseModel):
    name: str
    ok: bool
    message: str = ''


class HealthInfo(BaseModel):
    enabled: bool
    interval: int
    last_check: Optional[float] = None
    status: str = 'unknown'
    checks: List[HealthCheck] = Field(default_factory=list)


class ServiceStatus(BaseModel):
    running: bool
    version: str
    config_path: str
    log_level: str
    admin_id: int
    servers_count: int
    current_server: Optional[CurrentServerInfo] = None
    health: Optional[HealthInfo] = None


# ==================== Chat ====================

class MessageType(str, Enum):
    MENU = 'menu'
    SERVER_LIST = 'server_list'
    STATUS = 'status'
    PING_RESULT = 'ping_result'
    PROGRESS = 'progress'
    CONFIRMATION = 'confirmation'
    ERROR = 'error'


class Button(NamedTuple):
    label: str
    callback_data: str


class MessageContent(NamedTuple):
    text: str
    type: MessageType
    keyboard: Sequence[Sequence[Button]] = ()


class ChatSession(BaseModel):
    chat_id: int
    message_id: int
    message_type: MessageType
    created_at: float
    expires_at: float
