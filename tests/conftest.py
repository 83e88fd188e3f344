#!/usr/bin/env python3
"""
Gateway Test Configuration
Shared fixtures; nothing here talks to a real camera
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from camera_manager import CameraEndpoint  # noqa: E402

SOAP_NS = 'http://www.w3.org/2003/05/soap-envelope'

CREATE_SUBSCRIPTION_RESPONSE = f"""<?xml version="1.0" encoding="UTF-8"?>
<SOAP-ENV:Envelope xmlns:SOAP-ENV="{SOAP_NS}" xmlns:tev="http://www.onvif.org/ver10/events/wsdl" xmlns:wsa5="http://www.w3.org/2005/08/addressing" xmlns:wsnt="http://docs.oasis-open.org/wsn/b-2">
<SOAP-ENV:Body>
<tev:CreatePullPointSubscriptionResponse>
<tev:SubscriptionReference>
<wsa5:Address>http://192.168.1.10:8000/onvif/Subscription?Idx=0</wsa5:Address>
</tev:SubscriptionReference>
<wsnt:CurrentTime>2024-01-01T00:00:00Z</wsnt:CurrentTime>
<wsnt:TerminationTime>2024-01-01T00:10:00Z</wsnt:TerminationTime>
</tev:CreatePullPointSubscriptionResponse>
</SOAP-ENV:Body>
</SOAP-ENV:Envelope>"""


@pytest.fixture
def make_envelope():
    """Build a SOAP 1.2 request envelope around a body fragment"""
    def _make(body, header=None, namespaces=''):
        header_xml = f'<s:Header>{header}</s:Header>' if header is not None else ''
        return (f'<?xml version="1.0" encoding="UTF-8"?>'
                f'<s:Envelope xmlns:s="{SOAP_NS}"{namespaces}>'
                f'{header_xml}<s:Body>{body}</s:Body></s:Envelope>')
    return _make


@pytest.fixture
def endpoint():
    return CameraEndpoint(
        id='cam1',
        name='Front Door',
        address='192.168.1.10:8000',
        username='admin',
        password='secret',
        model='reolink',
        quirks=(
            'fix_device_info_namespace',
            'normalize_media_profiles',
            'translate_smart_events',
            'add_missing_namespaces',
        ),
    )


@pytest.fixture
def fake_camera(endpoint):
    """Camera client double with a quiet motion sensor"""
    camera = MagicMock()
    camera.endpoint = endpoint
    camera.camera_id = endpoint.id
    camera.get_motion_state.return_value = False
    camera.translate.side_effect = lambda xml: xml
    camera.send_soap_request.return_value = CREATE_SUBSCRIPTION_RESPONSE
    return camera


@pytest.fixture
def create_subscription_response():
    return CREATE_SUBSCRIPTION_RESPONSE
