"""
Settings file loading and validation.

The settings record is immutable once loaded; a reload of the process is the
only way to pick up a changed file.
"""

import json
import logging
import os
import re
from typing import Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import CommandRejected, ConfigInvalid
from .restart import validate_restart_command

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = '/opt/etc/xray-manager/config.json'
DEFAULT_CACHE_DIR = '/opt/etc/xray-manager/cache'
DEFAULT_UPDATE_SCRIPT_URL = ('https://raw.githubusercontent.com/ad/'
                             'xray-subscription-telegram-manager-for-keenetic/main/scripts/update.sh')

TOKEN_PATTERN = re.compile(r'^\d{8,10}:[A-Za-z0-9_-]{20,}$')
LOG_LEVELS = ('debug', 'info', 'warn', 'error')


def _check_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValueError('must be an http or https URL with a host')
    return value


def _check_absolute_path(value: str) -> str:
    if not os.path.isabs(value):
        raise ValueError('must be an absolute path')
    if '..' in value.split('/'):
        raise ValueError('must not contain ".." components')
    return value


# ==================== Data Models ====================

class UISettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    max_button_text_length: int = Field(50, ge=1, le=200)
    servers_per_page: int = Field(32, ge=1, le=100)
    max_quick_select_servers: int = Field(10, ge=1, le=50)
    message_timeout_minutes: int = Field(60, ge=1, le=1440)
    enable_name_optimization: bool = True
    name_optimization_threshold: float = Field(0.7, ge=0.0, le=1.0)


class UpdateSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    script_url: str = DEFAULT_UPDATE_SCRIPT_URL
    timeout_minutes: int = Field(10, ge=1, le=60)
    backup_config: bool = False

    @field_validator('script_url')
    @classmethod
    def check_script_url(cls, value: str) -> str:
        return _check_http_url(value)


class APISettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    enabled: bool = False
    host: str = '127.0.0.1'
    port: int = Field(8666, ge=1, le=65535)
    token: Optional[str] = None


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='ignore')

    admin_id: int = Field(gt=0)
    bot_token: str
    subscription_url: str
    config_path: str = '/opt/etc/xray/configs/04_outbounds.json'
    log_level: str = 'info'
    xray_restart_command: str = '/opt/etc/init.d/S24xray restart'
    cache_duration: int = Field(3600, ge=0, le=86400)
    health_check_interval: int = Field(300, ge=0, le=3600)
    ping_timeout: int = Field(5, ge=1, le=60)
    cache_dir: str = DEFAULT_CACHE_DIR
    log_file: Optional[str] = None
    ui: UISettings = Field(default_factory=UISettings)
    update: UpdateSettings = Field(default_factory=UpdateSettings)
    api: APISettings = Field(default_factory=APISettings)

    @field_validator('bot_token')
    @classmethod
    def check_token(cls, value: str) -> str:
        if not TOKEN_PATTERN.match(value):
            raise ValueError('does not look like a Telegram bot token')
        return value

    @field_validator('subscription_url')
    @classmethod
    def check_subscription_url(cls, value: str) -> str:
        return _check_http_url(value)

    @field_validator('config_path', 'cache_dir')
    @classmethod
    def check_paths(cls, value: str) -> str:
        return _check_absolute_path(value)

    @field_validator('log_file')
    @classmethod
    def check_log_file(cls, value: Optional[str]) -> Optional[str]:
        if value:
            return _check_absolute_path(value)
        return None

    @field_validator('log_level', mode='before')
    @classmethod
    def check_log_level(cls, value) -> str:
        level = str(value).strip().lower()
        if level == 'warning':
            level = 'warn'
        if level not in LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator('xray_restart_command')
    @classmethod
    def check_restart_command(cls, value: str) -> str:
        try:
            validate_restart_command(value)
        except CommandRejected as e:
            raise ValueError(str(e))
        return value


# ==================== Loading ====================

TEMPLATE = {
    'admin_id': 0,
    'bot_token': 'YOUR_BOT_TOKEN_HERE',
    'subscription_url': 'https://your-subscription-url.com/config',
    'config_path': '/opt/etc/xray/configs/04_outbounds.json',
    'log_level': 'info',
    'xray_restart_command': '/opt/etc/init.d/S24xray restart',
    'cache_duration': 3600,
    'health_check_interval': 300,
    'ping_timeout': 5,
    'ui': {
        'max_button_text_length': 50,
        'servers_per_page': 32,
        'max_quick_select_servers': 10,
        'message_timeout_minutes': 60,
        'enable_name_optimization': True,
        'name_optimization_threshold': 0.7,
    },
    'update': {
        'script_url': DEFAULT_UPDATE_SCRIPT_URL,
        'timeout_minutes': 10,
        'backup_config': False,
    },
}


def create_template(path: str):
    """Write a settings skeleton for the operator to fill in"""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        if path.endswith(('.yaml', '.yml')):
            yaml.safe_dump(TEMPLATE, f, sort_keys=False)
        else:
            json.dump(TEMPLATE, f, ensure_ascii=False, indent=2)


def read_settings_file(path: str) -> dict:
    with open(path, 'r', encoding='utf-8') as f:
        if path.endswith(('.yaml', '.yml')):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise ConfigInvalid(f"{path}: top level must be an object")
    return data


def parse_settings(data: dict) -> Settings:
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        problems = []
        for error in e.errors():
            field = '.'.join(str(part) for part in error['loc']) or 'settings'
            problems.append(f"{field}: {error['msg']}")
        raise ConfigInvalid('; '.join(problems), cause=e)


def load_settings(path: str = DEFAULT_SETTINGS_PATH) -> Settings:
    """Load and validate the settings file, creating a template when it is missing"""
    if not os.path.exists(path):
        try:
            create_template(path)
        except OSError as e:
            raise ConfigInvalid(f"settings file {path} not found and template could not be created: {e}", cause=e)
        raise ConfigInvalid(
            f"settings file not found, a template was created at {path}; "
            f"fill in admin_id, bot_token and subscription_url")

    try:
        data = read_settings_file(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigInvalid(f"failed to read {path}: {e}", cause=e)

    settings = parse_settings(data)
    logger.debug("Settings loaded from %s", path)
    return settings
