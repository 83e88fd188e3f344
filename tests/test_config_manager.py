#!/usr/bin/env python3
"""
Configuration and Camera Registry Tests
"""

import json
from unittest.mock import patch

import pytest

import config_manager
from camera_manager import CameraEndpoint, CameraManager
from config_manager import ConfigManager

CONFIG = {
    'proxy': {
        'listen_address': '0.0.0.0:8123',
        'base_url': 'http://gateway.local:8123/',
        'log_level': 'debug',
    },
    'cameras': [
        {
            'id': 'cam1',
            'name': 'Front Door',
            'address': '192.168.1.10:8000',
            'username': 'admin',
            'password': 'secret',
            'quirks': ['add_missing_namespaces'],
            'rules': [
                {'name': 'ok', 'kind': 'topic-map', 'pattern': 'A', 'replacement': 'B'},
                {'name': 'bad', 'kind': 'xslt', 'pattern': 'A'},
            ],
        },
        {'id': 'cam2', 'address': 'http://192.168.1.11/', 'channel': 1},
        {'id': 'cam3', 'address': '192.168.1.12', 'enabled': False},
        {'name': 'no id', 'address': '192.168.1.13'},
    ],
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('CONFIG_PATH', 'LISTEN_ADDRESS', 'BASE_URL', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'cameras.json'
    path.write_text(json.dumps(CONFIG))
    return path


class TestConfigManager:

    def test_loads_enabled_valid_cameras(self, config_file):
        manager = ConfigManager(str(config_file))
        assert sorted(manager.cameras) == ['cam1', 'cam2']

    def test_camera_fields(self, config_file):
        camera = ConfigManager(str(config_file)).get_camera('cam1')

        assert camera.name == 'Front Door'
        assert camera.model == 'reolink'
        assert camera.quirks == ('add_missing_namespaces',)
        assert [rule.name for rule in camera.rules] == ['ok']

    def test_address_scheme_is_stripped(self, config_file):
        camera = ConfigManager(str(config_file)).get_camera('cam2')
        assert camera.address == '192.168.1.11'
        assert camera.name == 'cam2'
        assert camera.channel == 1

    def test_proxy_settings(self, config_file):
        manager = ConfigManager(str(config_file))
        assert manager.get_listen_address() == ('0.0.0.0', 8123)
        assert manager.get_base_url() == 'http://gateway.local:8123'
        assert manager.proxy['log_level'] == 'DEBUG'

    def test_environment_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv('LISTEN_ADDRESS', '127.0.0.1:9000')
        monkeypatch.setenv('LOG_LEVEL', 'warning')
        manager = ConfigManager(str(config_file))

        assert manager.get_listen_address() == ('127.0.0.1', 9000)
        assert manager.proxy['log_level'] == 'WARNING'

    def test_config_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv('CONFIG_PATH', str(config_file))
        assert len(ConfigManager().get_cameras()) == 2

    def test_missing_file_starts_empty(self, tmp_path):
        manager = ConfigManager(str(tmp_path / 'missing.json'))
        assert manager.get_cameras() == []
        assert manager.get_listen_address() == ('0.0.0.0', 8000)

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / 'broken.json'
        path.write_text('{"cameras": [')
        with pytest.raises(ValueError):
            ConfigManager(str(path))

    def test_base_url_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv('BASE_URL', 'http://env-gw:8000/')
        assert ConfigManager(str(tmp_path / 'missing.json')).get_base_url() == 'http://env-gw:8000'

    def test_base_url_auto_detected(self, tmp_path):
        manager = ConfigManager(str(tmp_path / 'missing.json'))
        with patch('config_manager.get_server_ip', return_value='10.0.0.5'):
            assert manager.get_base_url() == 'http://10.0.0.5:8000'

    def test_server_ip_falls_back_to_loopback(self):
        with patch('config_manager.socket.socket', side_effect=OSError('no network')):
            assert config_manager.get_server_ip() == '127.0.0.1'


class TestCameraManager:

    def test_add_and_lookup(self, endpoint):
        manager = CameraManager()
        client = manager.add_camera(endpoint)

        assert manager.get_camera('cam1') is client
        assert manager.get_camera('missing') is None
        assert manager.list_camera_ids() == ['cam1']
        assert client.pipeline.names == list(endpoint.quirks)

    def test_remove(self, endpoint):
        manager = CameraManager()
        manager.add_camera(endpoint)
        manager.remove_camera('cam1')
        assert manager.get_camera('cam1') is None
        with pytest.raises(KeyError):
            manager.remove_camera('cam1')

    def test_endpoint_dict_has_no_credentials(self, endpoint):
        data = endpoint.to_dict()
        assert data['id'] == 'cam1'
        assert 'password' not in data
        assert 'username' not in data

    @pytest.mark.parametrize('address, host', [
        ('192.168.1.10:8000', '192.168.1.10'),
        ('camera.local', 'camera.local'),
        ('[fe80::1]:8000', '[fe80::1]'),
    ])
    def test_host_strips_port(self, address, host):
        endpoint = CameraEndpoint('c', 'c', address, 'u', 'p')
        assert endpoint.host == host
        assert endpoint.base_url == f'http://{address}'
