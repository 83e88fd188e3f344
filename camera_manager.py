#!/usr/bin/env python3
"""
Camera Registry
Keyed store of camera connection parameters and their clients
"""

import logging
import threading
from typing import Dict, List, NamedTuple, Optional, Tuple

from camera_client import CameraClient
from quirks_engine import QUIRKS, TranslationRule

logger = logging.getLogger(__name__)


class CameraEndpoint(NamedTuple):
    """Immutable per-camera connection facts"""
    id: str
    name: str
    address: str
    username: str
    password: str
    model: str = 'reolink'
    quirks: Tuple[str, ...] = ()
    rules: Tuple[TranslationRule, ...] = ()
    channel: int = 0

    @property
    def base_url(self) -> str:
        return f'http://{self.address}'

    @property
    def host(self) -> str:
        """Address without the port"""
        if self.address.startswith('['):
            return self.address.split(']', 1)[0] + ']'
        return self.address.split(':', 1)[0]

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'model': self.model,
            'quirks': list(self.quirks),
            'rules': [rule.name for rule in self.rules],
        }


class CameraManager:
    """Registry of camera clients. The lock covers lookups only, never network calls."""

    def __init__(self, registry=QUIRKS):
        self.registry = registry
        self._cameras: Dict[str, CameraClient] = {}
        self._lock = threading.Lock()

    def add_camera(self, endpoint: CameraEndpoint) -> CameraClient:
        """Register a camera, resolving its quirk pipeline once"""
        pipeline = self.registry.resolve(endpoint.model, endpoint.quirks, endpoint.rules)
        client = CameraClient(endpoint, pipeline)

        with self._lock:
            self._cameras[endpoint.id] = client

        logger.info(f"Added camera: {endpoint.name} ({endpoint.id}) quirks={pipeline.names}")
        return client

    def get_camera(self, camera_id: str) -> Optional[CameraClient]:
        with self._lock:
            return self._cameras.get(camera_id)

    def remove_camera(self, camera_id: str):
        with self._lock:
            if camera_id not in self._cameras:
                raise KeyError(f"Camera {camera_id} not found")
            del self._cameras[camera_id]
        logger.info(f"Removed camera: {camera_id}")

    def list_camera_ids(self) -> List[str]:
        with self._lock:
            return list(self._cameras)

    def get_endpoints(self) -> List[CameraEndpoint]:
        with self._lock:
            return [client.endpoint for client in self._cameras.values()]
