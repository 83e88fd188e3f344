#!/usr/bin/env python3
"""
ONVIF Service Handlers
Routes Device, Media, Media2, Events and subscription requests to the camera and translates responses
"""

import logging
import re
from typing import Optional, Tuple

import onvif_requests
import quirks_engine
import soap_envelope
from camera_client import SERVICE_PATHS, CameraRequestError
from quirks_engine import TranslationError
from soap_envelope import SoapParseError
from subscription_manager import SubscriptionNotFound

logger = logging.getLogger(__name__)

SOAP_CONTENT_TYPE = 'application/soap+xml; charset=utf-8'
TEXT_CONTENT_TYPE = 'text/plain; charset=utf-8'

MEDIA2_NS = 'http://www.onvif.org/ver20/media/wsdl'

# Media2 calls forwarded to the camera unchanged
MEDIA2_ACTIONS = (
    'GetProfiles',
    'GetStreamUri',
    'GetSnapshotUri',
    'GetVideoSourceConfigurations',
    'GetVideoEncoderConfigurations',
    'GetServiceCapabilities',
)

DEFAULT_PROFILE_TOKEN = 'Profile_1'
DEFAULT_PULL_TIMEOUT = 'PT1S'
DEFAULT_MESSAGE_LIMIT = 10

_SUBSCRIPTION_REF_RE = re.compile(r'/subscription/([^/?#\s]+)')


class UnsupportedActionError(Exception):
    """Recognized service, unimplemented action"""

    def __init__(self, service: str, action: str):
        super().__init__(f"Action not implemented by {service}: {action}")
        self.service = service
        self.action = action


class ONVIFGateway:
    """Terminates ONVIF requests for every configured camera"""

    def __init__(self, camera_manager, subscription_manager, base_url: str):
        self.camera_manager = camera_manager
        self.subscriptions = subscription_manager
        self.base_url = base_url.rstrip('/')

        self.services = {
            'device_service': self.handle_device_service,
            'media_service': self.handle_media_service,
            'Media2': self.handle_media2_service,
            'event_service': self.handle_event_service,
            'subscription': self.handle_subscription,
        }

    def handle_request(self, camera_id: str, service: str, body: str,
                       subscription_ref: str = None) -> Tuple[int, str, str]:
        """Handle one SOAP request, returning (status, body, content type)"""
        camera = self.camera_manager.get_camera(camera_id)
        if camera is None:
            logger.warning(f"Request for unknown camera {camera_id} on {service}")
            return 404, 'Camera not found', TEXT_CONTENT_TYPE

        handler = self.services[service]
        logger.debug(f"ONVIF request for {camera_id}/{service}: {body}")

        try:
            envelope = soap_envelope.parse(body)
            if not envelope.action:
                return 200, soap_envelope.empty_response(), SOAP_CONTENT_TYPE

            logger.info(f"{service} action {envelope.action} for camera {camera_id}")
            response = handler(camera, envelope, subscription_ref)
            return 200, response, SOAP_CONTENT_TYPE

        except SoapParseError as e:
            logger.warning(f"Invalid SOAP request for camera {camera_id}: {e}")
            return 400, soap_envelope.create_fault(f"Invalid SOAP: {e}", 'Sender'), SOAP_CONTENT_TYPE
        except UnsupportedActionError as e:
            logger.warning(str(e))
            return 501, soap_envelope.create_fault(str(e), 'Sender', 'ActionNotSupported'), SOAP_CONTENT_TYPE
        except SubscriptionNotFound as e:
            logger.warning(f"Unknown subscription {e.args[0] if e.args else ''} for camera {camera_id}")
            return 404, soap_envelope.create_fault("Subscription not found", 'Sender', 'ResourceUnknownFault'), SOAP_CONTENT_TYPE
        except CameraRequestError as e:
            logger.error(f"Camera {camera_id} request failed: {e}")
            return 500, soap_envelope.create_fault(str(e), 'Receiver'), SOAP_CONTENT_TYPE

    def _finish(self, camera, xml: str, fix_urls: bool = True, rewrite_services: bool = False) -> str:
        """Apply the camera's quirks and URL fixes; on failure return the raw response"""
        try:
            translated = camera.translate(xml)
            if fix_urls:
                translated = quirks_engine.rewrite_urls(
                    translated,
                    camera.camera_id,
                    camera.endpoint.host,
                    self.base_url if rewrite_services else None
                )
            return translated
        except TranslationError as e:
            logger.error(f"Translation failed for camera {camera.camera_id}, returning raw response: {e}")
            return xml

    def _forward_verbatim(self, camera, envelope) -> str:
        response = camera.send_soap_request(
            SERVICE_PATHS['media2'],
            envelope.body.raw_xml,
            namespaces=envelope.namespaces
        )
        return self._finish(camera, response)

    def handle_device_service(self, camera, envelope, subscription_ref=None) -> str:
        """Handle device management requests"""
        action = envelope.action
        raw = envelope.body.raw_xml
        path = SERVICE_PATHS['device']

        if action == 'GetDeviceInformation':
            response = camera.send_soap_request(path, onvif_requests.get_device_information())
            return self._finish(camera, response)
        elif action == 'GetCapabilities':
            category = soap_envelope.extract_value(raw, 'Category') or 'All'
            response = camera.send_soap_request(path, onvif_requests.get_capabilities(category))
            return self._finish(camera, response, rewrite_services=True)
        elif action == 'GetServices':
            include = soap_envelope.extract_value(raw, 'IncludeCapability')
            response = camera.send_soap_request(path, onvif_requests.get_services(include != 'false'))
            return self._finish(camera, response, rewrite_services=True)
        raise UnsupportedActionError('device_service', action)

    def handle_media_service(self, camera, envelope, subscription_ref=None) -> str:
        """Handle media service requests"""
        if envelope.body.namespace == MEDIA2_NS:
            logger.info(f"Forwarding misrouted Media2 call {envelope.action} to {SERVICE_PATHS['media2']}")
            return self._forward_verbatim(camera, envelope)

        action = envelope.action
        raw = envelope.body.raw_xml
        path = SERVICE_PATHS['media']

        if action == 'GetProfiles':
            response = camera.send_soap_request(path, onvif_requests.get_profiles())
        elif action == 'GetStreamUri':
            token = soap_envelope.extract_value(raw, 'ProfileToken') or DEFAULT_PROFILE_TOKEN
            protocol = soap_envelope.extract_value(raw, 'Protocol') or 'RTSP'
            response = camera.send_soap_request(path, onvif_requests.get_stream_uri(token, protocol))
        elif action == 'GetSnapshotUri':
            token = soap_envelope.extract_value(raw, 'ProfileToken') or DEFAULT_PROFILE_TOKEN
            response = camera.send_soap_request(path, onvif_requests.get_snapshot_uri(token))
        else:
            raise UnsupportedActionError('media_service', action)
        return self._finish(camera, response)

    def handle_media2_service(self, camera, envelope, subscription_ref=None) -> str:
        if envelope.action not in MEDIA2_ACTIONS:
            raise UnsupportedActionError('Media2', envelope.action)
        return self._forward_verbatim(camera, envelope)

    def handle_event_service(self, camera, envelope, subscription_ref=None) -> str:
        """Handle event service requests"""
        action = envelope.action

        if action == 'GetEventProperties':
            response = camera.send_soap_request(SERVICE_PATHS['events'], onvif_requests.get_event_properties())
            try:
                normalized = quirks_engine.normalize_event_properties(response)
            except TranslationError as e:
                logger.error(f"Event property normalisation failed for camera {camera.camera_id}: {e}")
                return response
            return self._finish(camera, normalized)
        elif action == 'CreatePullPointSubscription':
            response = self.subscriptions.create_subscription(camera, self.base_url)
            return self._finish(camera, response, fix_urls=False)
        elif action in ('PullMessages', 'Renew', 'Unsubscribe'):
            reference = self.subscription_from_header(envelope.header)
            if reference is None:
                raise SubscriptionNotFound(f"No subscription address in {action} request")
            return self.handle_subscription(camera, envelope, reference)
        raise UnsupportedActionError('event_service', action)

    def handle_subscription(self, camera, envelope, subscription_ref=None) -> str:
        """Handle PullMessages, Renew and Unsubscribe for one subscription"""
        action = envelope.action

        if action == 'PullMessages':
            raw = envelope.body.raw_xml
            timeout = soap_envelope.extract_value(raw, 'Timeout') or DEFAULT_PULL_TIMEOUT
            try:
                limit = int(soap_envelope.extract_value(raw, 'MessageLimit') or DEFAULT_MESSAGE_LIMIT)
            except ValueError:
                limit = DEFAULT_MESSAGE_LIMIT
            return self.subscriptions.pull_messages(subscription_ref, timeout, limit, camera.camera_id)
        elif action == 'Renew':
            response = self.subscriptions.renew(camera, subscription_ref)
            return self._finish(camera, response, fix_urls=False)
        elif action == 'Unsubscribe':
            response = self.subscriptions.unsubscribe(camera, subscription_ref)
            return self._finish(camera, response, fix_urls=False)
        raise UnsupportedActionError('subscription', action)

    @staticmethod
    def subscription_from_header(header: Optional[str]) -> Optional[str]:
        """Subscription reference from the WS-Addressing To header"""
        if not header:
            return None
        to = soap_envelope.extract_value(header, 'To')
        if not to:
            return None
        match = _SUBSCRIPTION_REF_RE.search(to)
        return match.group(1) if match else None
