#!/usr/bin/env python3
"""
Camera Transport Client
Sends WS-Security authenticated SOAP requests and proprietary state queries to one camera
"""

import logging
import warnings
from typing import Dict

import requests
from urllib3.exceptions import InsecureRequestWarning

import soap_envelope
import wsse_auth

logger = logging.getLogger(__name__)

SOAP_TIMEOUT = 10
MOTION_STATE_TIMEOUT = 5

# Camera-side ONVIF service paths
SERVICE_PATHS = {
    'device': '/onvif/device_service',
    'media': '/onvif/media_service',
    'media2': '/onvif/Media2',
    'events': '/onvif/event_service',
}

REQUEST_NAMESPACES = {
    'SOAP-ENV': soap_envelope.SOAP_ENV_NS,
    'tds': soap_envelope.NAMESPACES['tds'],
    'trt': soap_envelope.NAMESPACES['trt'],
    'tev': soap_envelope.NAMESPACES['tev'],
    'tt': soap_envelope.NAMESPACES['tt'],
    'wsse': soap_envelope.NAMESPACES['wsse'],
    'wsu': soap_envelope.NAMESPACES['wsu'],
}

MOTION_STATE_PATH = '/cgi-bin/api.cgi'


class CameraRequestError(Exception):
    """Camera unreachable, timed out, or answered with an error"""


class CameraClient:
    """Client for one camera's ONVIF and proprietary HTTP interfaces"""

    def __init__(self, endpoint, pipeline=None):
        self.endpoint = endpoint
        self.pipeline = pipeline

    @property
    def camera_id(self) -> str:
        return self.endpoint.id

    def translate(self, xml: str) -> str:
        """Apply this camera's quirk pipeline"""
        if self.pipeline is None:
            return xml
        return self.pipeline.translate(xml)

    def send_soap_request(self, service_path: str, soap_body: str,
                          namespaces: Dict[str, str] = None, authenticate: bool = True) -> str:
        """POST a SOAP body to the camera and return the raw response text"""
        url = f'{self.endpoint.base_url}{service_path}'

        envelope_namespaces = dict(REQUEST_NAMESPACES)
        if namespaces:
            envelope_namespaces.update(namespaces)
        header = None
        if authenticate:
            header = wsse_auth.generate_header(self.endpoint.username, self.endpoint.password)
        envelope = soap_envelope.serialize(envelope_namespaces, header, soap_body)

        logger.debug(f"Sending SOAP request to {url}: {envelope}")

        headers = {'Content-Type': 'application/soap+xml; charset=utf-8'}
        try:
            response = requests.post(url, data=envelope.encode('utf-8'), headers=headers, timeout=SOAP_TIMEOUT)
        except requests.RequestException as e:
            logger.error(f"SOAP request to camera {self.camera_id} at {url} failed: {e}")
            raise CameraRequestError(f"Failed to send SOAP request to camera: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(f"Camera {self.camera_id} returned status {response.status_code}: {response.text}")
            raise CameraRequestError(f"Camera returned status {response.status_code}")

        logger.debug(f"Received SOAP response from camera {self.camera_id}: {response.text}")
        return response.text

    def get_motion_state(self) -> bool:
        """Query the vendor motion-detection state over HTTPS.

        The cameras ship self-signed certificates, so verification is
        disabled for this call only.
        """
        url = f'https://{self.endpoint.host}{MOTION_STATE_PATH}'
        params = {
            'cmd': 'GetMdState',
            'channel': self.endpoint.channel,
            'user': self.endpoint.username,
            'password': self.endpoint.password,
        }

        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', InsecureRequestWarning)
                response = requests.get(url, params=params, timeout=MOTION_STATE_TIMEOUT, verify=False)
        except requests.RequestException as e:
            raise CameraRequestError(f"Motion state query failed: {e}") from e

        if response.status_code != 200:
            raise CameraRequestError(f"Motion state query returned status {response.status_code}")

        try:
            payload = response.json()
            item = payload[0]
            value = item.get('value') or {}
            state = value.get('state', item.get('state'))
            return int(state) == 1
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            raise CameraRequestError(f"Unexpected motion state payload: {response.text[:200]}") from e
