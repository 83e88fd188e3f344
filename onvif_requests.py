#!/usr/bin/env python3
"""
Camera-facing ONVIF request bodies
"""

from xml.sax.saxutils import escape

TDS = 'http://www.onvif.org/ver10/device/wsdl'
TRT = 'http://www.onvif.org/ver10/media/wsdl'
TEV = 'http://www.onvif.org/ver10/events/wsdl'
TT = 'http://www.onvif.org/ver10/schema'
WSNT = 'http://docs.oasis-open.org/wsn/b-2'

SUBSCRIPTION_LIFETIME = 'PT600S'


def get_device_information():
    return f'<tds:GetDeviceInformation xmlns:tds="{TDS}"/>'


def get_capabilities(category='All'):
    return f'<tds:GetCapabilities xmlns:tds="{TDS}"><tds:Category>{escape(category)}</tds:Category></tds:GetCapabilities>'


def get_services(include_capability=True):
    flag = 'true' if include_capability else 'false'
    return f'<tds:GetServices xmlns:tds="{TDS}"><tds:IncludeCapability>{flag}</tds:IncludeCapability></tds:GetServices>'


def get_profiles():
    return f'<trt:GetProfiles xmlns:trt="{TRT}"/>'


def get_stream_uri(profile_token, protocol='RTSP', stream='RTP-Unicast'):
    return f"""<trt:GetStreamUri xmlns:trt="{TRT}">
  <trt:StreamSetup>
    <tt:Stream xmlns:tt="{TT}">{escape(stream)}</tt:Stream>
    <tt:Transport xmlns:tt="{TT}">
      <tt:Protocol>{escape(protocol)}</tt:Protocol>
    </tt:Transport>
  </trt:StreamSetup>
  <trt:ProfileToken>{escape(profile_token)}</trt:ProfileToken>
</trt:GetStreamUri>"""


def get_snapshot_uri(profile_token):
    return f"""<trt:GetSnapshotUri xmlns:trt="{TRT}">
  <trt:ProfileToken>{escape(profile_token)}</trt:ProfileToken>
</trt:GetSnapshotUri>"""


def get_event_properties():
    return f'<tev:GetEventProperties xmlns:tev="{TEV}"/>'


def create_pull_point_subscription():
    return f"""<tev:CreatePullPointSubscription xmlns:tev="{TEV}">
  <tev:InitialTerminationTime>{SUBSCRIPTION_LIFETIME}</tev:InitialTerminationTime>
</tev:CreatePullPointSubscription>"""


def pull_messages(timeout, message_limit):
    return f"""<tev:PullMessages xmlns:tev="{TEV}">
  <tev:Timeout>{escape(timeout)}</tev:Timeout>
  <tev:MessageLimit>{int(message_limit)}</tev:MessageLimit>
</tev:PullMessages>"""


def renew():
    return f"""<wsnt:Renew xmlns:wsnt="{WSNT}">
  <wsnt:TerminationTime>{SUBSCRIPTION_LIFETIME}</wsnt:TerminationTime>
</wsnt:Renew>"""


def unsubscribe():
    return f'<wsnt:Unsubscribe xmlns:wsnt="{WSNT}"/>'
