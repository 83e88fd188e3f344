#!/usr/bin/env python3
"""
Configuration Manager
Loads gateway settings and camera definitions, applies environment overrides
"""

import json
import logging
import os
import socket
from typing import Dict, List, Any, Optional

from camera_manager import CameraEndpoint
from quirks_engine import TranslationRule

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/cameras.json'
DEFAULT_LISTEN_ADDRESS = '0.0.0.0:8000'


class ConfigManager:
    """Manages gateway configuration and the camera list"""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.getenv('CONFIG_PATH', DEFAULT_CONFIG_PATH)
        self.proxy = {}
        self.cameras = {}

        self.load_config()

    def load_config(self):
        """Load configuration from file"""
        config = self.load_config_file()

        self.proxy = self.validate_proxy_config(config.get('proxy') or {})

        self.cameras = {}
        for camera_data in config.get('cameras') or []:
            endpoint = self.validate_camera_config(camera_data)
            if endpoint is None:
                continue
            if endpoint.id in self.cameras:
                logger.warning(f"Duplicate camera id {endpoint.id}, keeping the last definition")
            self.cameras[endpoint.id] = endpoint

        logger.info(f"Loaded configuration with {len(self.cameras)} cameras")

    def load_config_file(self) -> Dict[str, Any]:
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file {self.config_path} not found, starting without cameras")
            return {}

        with open(self.config_path, 'r') as f:
            try:
                config = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Failed to parse configuration {self.config_path}: {e}") from e

        if not isinstance(config, dict):
            raise ValueError(f"Configuration {self.config_path} must be a JSON object")
        logger.debug(f"Loaded configuration file {self.config_path}")
        return config

    def validate_proxy_config(self, proxy_data: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize proxy settings, environment variables take precedence"""
        return {
            'listen_address': os.getenv('LISTEN_ADDRESS') or proxy_data.get('listen_address') or DEFAULT_LISTEN_ADDRESS,
            'base_url': (proxy_data.get('base_url') or '').strip(),
            'log_level': (os.getenv('LOG_LEVEL') or proxy_data.get('log_level') or 'info').upper(),
        }

    def validate_camera_config(self, camera_data: Dict[str, Any]) -> Optional[CameraEndpoint]:
        """Validate and normalize one camera entry"""
        camera_id = str(camera_data.get('id') or '').strip()
        address = str(camera_data.get('address') or '').strip()

        if not camera_id or not address:
            logger.error(f"Camera entry missing id or address, skipping: {camera_data.get('name', camera_data)}")
            return None

        if not camera_data.get('enabled', True):
            logger.info(f"Camera {camera_id} is disabled, skipping")
            return None

        if '://' in address:
            logger.warning(f"Camera {camera_id} address should be host[:port], got {address}")
            address = address.split('://', 1)[1].rstrip('/')

        rules = []
        for rule_data in camera_data.get('rules') or []:
            try:
                rules.append(TranslationRule.from_dict(rule_data))
            except ValueError as e:
                logger.error(f"Invalid translation rule for camera {camera_id}: {e}")

        return CameraEndpoint(
            id=camera_id,
            name=camera_data.get('name') or camera_id,
            address=address,
            username=camera_data.get('username', ''),
            password=camera_data.get('password', ''),
            model=camera_data.get('model') or 'reolink',
            quirks=tuple(camera_data.get('quirks') or ()),
            rules=tuple(rules),
            channel=int(camera_data.get('channel', 0)),
        )

    def get_cameras(self) -> List[CameraEndpoint]:
        return list(self.cameras.values())

    def get_camera(self, camera_id: str) -> Optional[CameraEndpoint]:
        return self.cameras.get(camera_id)

    def get_listen_address(self):
        """Split listen address into (host, port)"""
        host, _, port = self.proxy['listen_address'].rpartition(':')
        return host or '0.0.0.0', int(port or 8000)

    def get_base_url(self) -> str:
        """Config value, then BASE_URL, then auto-detected local address"""
        base_url = self.proxy.get('base_url') or os.getenv('BASE_URL', '').strip()
        if base_url:
            return base_url.rstrip('/')

        _, port = self.get_listen_address()
        url = f'http://{get_server_ip()}:{port}'
        logger.info(f"Auto-detected base URL: {url}")
        return url


def get_server_ip() -> str:
    """Get server IP address"""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"
