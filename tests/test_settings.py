import json

import pytest
import yaml
from pydantic import ValidationError

from xray_manager.errors import ConfigInvalid
from xray_manager.settings import TEMPLATE, load_settings, parse_settings

from conftest import SUB_URL, TOKEN


def test_defaults(settings_data):
    settings = parse_settings({k: settings_data[k] for k in ('admin_id', 'bot_token', 'subscription_url')})
    assert settings.config_path == '/opt/etc/xray/configs/04_outbounds.json'
    assert settings.xray_restart_command == '/opt/etc/init.d/S24xray restart'
    assert settings.cache_duration == 3600
    assert settings.health_check_interval == 300
    assert settings.ping_timeout == 5
    assert settings.log_level == 'info'
    assert settings.ui.servers_per_page == 32
    assert settings.ui.max_button_text_length == 50
    assert settings.ui.name_optimization_threshold == 0.7
    assert settings.update.timeout_minutes == 10
    assert not settings.api.enabled


def test_full_settings(settings):
    assert settings.admin_id == 42
    assert settings.bot_token == TOKEN
    assert settings.subscription_url == SUB_URL
    assert settings.ping_timeout == 1


def test_settings_are_frozen(settings):
    with pytest.raises(ValidationError):
        settings.admin_id = 1


@pytest.mark.parametrize('level, expected', [('DEBUG', 'debug'), ('Warning', 'warn'), ('error', 'error')])
def test_log_level_normalised(settings_data, level, expected):
    settings_data['log_level'] = level
    assert parse_settings(settings_data).log_level == expected


@pytest.mark.parametrize('field, value', [
    ('admin_id', 0),
    ('bot_token', 'not-a-token'),
    ('subscription_url', 'ftp://example.com/sub'),
    ('subscription_url', 'example.com/sub'),
    ('config_path', 'relative/config.json'),
    ('config_path', '/opt/etc/../etc/passwd'),
    ('log_level', 'verbose'),
    ('xray_restart_command', '/bin/echo ok; reboot'),
    ('xray_restart_command', '/usr/local/bin/anything'),
    ('ping_timeout', 0),
    ('cache_duration', 100000),
    ('health_check_interval', -1),
])
def test_invalid_values(settings_data, field, value):
    settings_data[field] = value
    with pytest.raises(ConfigInvalid) as info:
        parse_settings(settings_data)
    assert field in str(info.value)


def test_missing_required_field(settings_data):
    del settings_data['bot_token']
    with pytest.raises(ConfigInvalid) as info:
        parse_settings(settings_data)
    assert 'bot_token' in str(info.value)


def test_invalid_nested_value(settings_data):
    settings_data['ui'] = {'servers_per_page': 0}
    with pytest.raises(ConfigInvalid) as info:
        parse_settings(settings_data)
    assert 'ui.servers_per_page' in str(info.value)


def test_unknown_keys_ignored(settings_data):
    settings_data['legacy_option'] = True
    assert parse_settings(settings_data).admin_id == 42


def test_load_json(tmp_path, settings_data):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(settings_data))
    assert load_settings(str(path)).admin_id == 42


def test_load_yaml(tmp_path, settings_data):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(settings_data))
    assert load_settings(str(path)).bot_token == TOKEN


def test_missing_file_creates_template(tmp_path):
    path = tmp_path / 'etc' / 'config.json'
    with pytest.raises(ConfigInvalid) as info:
        load_settings(str(path))
    assert 'template' in str(info.value)
    with open(path) as f:
        assert json.load(f) == TEMPLATE
    with pytest.raises(ConfigInvalid):
        load_settings(str(path))


def test_unreadable_json(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('{"admin_id": ')
    with pytest.raises(ConfigInvalid):
        load_settings(str(path))


def test_top_level_must_be_object(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('- just\n- a list\n')
    with pytest.raises(ConfigInvalid):
        load_settings(str(path))
