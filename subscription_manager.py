#!/usr/bin/env python3
"""
Subscription & Polling Engine
Emulates ONVIF pull-point subscriptions on top of the camera's motion-state API
"""

import logging
import re
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, NamedTuple, Optional
from urllib.parse import urlparse

import onvif_requests
import soap_envelope
from camera_client import SERVICE_PATHS, CameraRequestError
from soap_envelope import SoapParseError

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME = 600
CACHE_CAPACITY = 100
POLL_INTERVAL = 0.5
PULL_CHECK_INTERVAL = 0.1
SWEEP_INTERVAL = 30
SHUTDOWN_TIMEOUT = 2

MOTION_TOPIC = 'tns1:RuleEngine/CellMotionDetector/Motion'
TOPIC_DIALECT = 'http://www.onvif.org/ver10/tev/topicExpression/ConcreteSet'

ADDRESS_TAGS = ('wsa5:Address', 'wsa:Address', 'wsa2:Address', 'Address')

EVENT_NAMESPACES = {
    'SOAP-ENV': soap_envelope.SOAP_ENV_NS,
    'tev': soap_envelope.NAMESPACES['tev'],
    'wsnt': soap_envelope.NAMESPACES['wsnt'],
    'wsa5': soap_envelope.NAMESPACES['wsa5'],
    'tt': soap_envelope.NAMESPACES['tt'],
    'tns1': soap_envelope.NAMESPACES['tns1'],
}

_DURATION_RE = re.compile(r'^PT(\d+(?:\.\d+)?)([SM])$')


class SubscriptionNotFound(KeyError):
    """Unknown or expired subscription reference"""


class CachedEvent(NamedTuple):
    xml: str
    received_at: datetime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_duration(value: Optional[str]) -> float:
    """Seconds from PT<n>S or PT<n>M; anything else is 1 second"""
    match = _DURATION_RE.match((value or '').strip())
    if not match:
        return 1.0
    amount = float(match.group(1))
    return amount * 60 if match.group(2) == 'M' else amount


def build_motion_notification(is_motion: bool, utc_time: datetime = None,
                              source_token: str = 'VideoSource_1') -> str:
    """Synthesize one NotificationMessage for a motion state transition"""
    utc_time = utc_time or utc_now()
    return f"""<wsnt:NotificationMessage>
  <wsnt:Topic Dialect="{TOPIC_DIALECT}">{MOTION_TOPIC}</wsnt:Topic>
  <wsnt:Message>
    <tt:Message UtcTime="{format_time(utc_time)}" PropertyOperation="Changed">
      <tt:Source>
        <tt:SimpleItem Name="VideoSourceConfigurationToken" Value="{source_token}"/>
      </tt:Source>
      <tt:Data>
        <tt:SimpleItem Name="IsMotion" Value="{'true' if is_motion else 'false'}"/>
      </tt:Data>
    </tt:Message>
  </wsnt:Message>
</wsnt:NotificationMessage>"""


class Subscription:
    """One emulated pull-point and its bounded event cache"""

    def __init__(self, reference: str, camera_id: str, camera_subscription_url: str,
                 lifetime: int = DEFAULT_LIFETIME, capacity: int = CACHE_CAPACITY):
        self.reference = reference
        self.camera_id = camera_id
        self.camera_subscription_url = camera_subscription_url
        self.created_at = utc_now()
        self.expires_at = self.created_at + timedelta(seconds=lifetime)
        self.last_poll: Optional[datetime] = None
        self.poller: Optional['MotionPoller'] = None

        self._events = deque(maxlen=capacity)
        self._cache_lock = threading.Lock()

    @property
    def camera_subscription_path(self) -> str:
        parsed = urlparse(self.camera_subscription_url)
        path = parsed.path or SERVICE_PATHS['events']
        if parsed.query:
            path = f'{path}?{parsed.query}'
        return path

    def append_event(self, xml: str):
        """Append to the cache; the oldest entry is dropped when full"""
        with self._cache_lock:
            self._events.append(CachedEvent(xml, utc_now()))

    def drain(self, limit: int) -> List[CachedEvent]:
        with self._cache_lock:
            count = min(limit, len(self._events))
            return [self._events.popleft() for _ in range(count)]

    def cache_size(self) -> int:
        with self._cache_lock:
            return len(self._events)

    def renew(self, lifetime: int = DEFAULT_LIFETIME):
        with self._cache_lock:
            self.expires_at = utc_now() + timedelta(seconds=lifetime)

    def is_expired(self, now: datetime = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reference': self.reference,
            'camera_id': self.camera_id,
            'camera_subscription_url': self.camera_subscription_url,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'last_poll': self.last_poll.isoformat() if self.last_poll else None,
            'cached_events': self.cache_size(),
        }


class MotionPoller(threading.Thread):
    """Background poller for one subscription, edge-triggered on motion state"""

    def __init__(self, subscription: Subscription, camera, interval: float = POLL_INTERVAL):
        super().__init__(name=f'motion-poller-{subscription.reference[:8]}', daemon=True)
        self.subscription = subscription
        self.camera = camera
        self.interval = interval
        self.last_state = False
        self._stop_event = threading.Event()

    def run(self):
        logger.debug(f"Motion poller started for subscription {self.subscription.reference}")
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.interval)
        logger.debug(f"Motion poller stopped for subscription {self.subscription.reference}")

    def poll_once(self) -> bool:
        """Query the camera once; returns True when an event was emitted"""
        try:
            state = self.camera.get_motion_state()
        except CameraRequestError as e:
            logger.debug(f"Motion poll failed for camera {self.subscription.camera_id}: {e}")
            return False

        self.subscription.last_poll = utc_now()
        if state == self.last_state:
            return False

        self.last_state = state
        self.subscription.append_event(build_motion_notification(state))
        logger.info(f"Motion {'started' if state else 'stopped'} on camera {self.subscription.camera_id}")
        return True

    def stop(self):
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()


class SubscriptionManager:
    """Owns all emulated subscriptions, their pollers and the expiry sweep"""

    def __init__(self, poll_interval: float = POLL_INTERVAL, lifetime: int = DEFAULT_LIFETIME,
                 capacity: int = CACHE_CAPACITY, sweep_interval: float = SWEEP_INTERVAL):
        self.poll_interval = poll_interval
        self.lifetime = lifetime
        self.capacity = capacity
        self.sweep_interval = sweep_interval

        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._sweeper = None
        self._sweeper_stop = threading.Event()

    # --- lifecycle ---

    def start(self):
        """Start the expiry sweeper"""
        if self._sweeper is not None:
            return
        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name='subscription-sweeper', daemon=True)
        self._sweeper.start()
        logger.info(f"Subscription sweeper started (interval {self.sweep_interval}s)")

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT):
        """Stop the sweeper and every poller, waiting briefly for each thread"""
        self._sweeper_stop.set()
        sweeper, self._sweeper = self._sweeper, None
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            self._stop_poller(subscription)

        threads = [s.poller for s in subscriptions if s.poller is not None]
        if sweeper is not None:
            threads.append(sweeper)
        for thread in threads:
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning(f"Thread {thread.name} did not stop within {timeout}s")
        logger.info(f"Stopped {len(subscriptions)} subscriptions")

    def _sweep_loop(self):
        while not self._sweeper_stop.wait(self.sweep_interval):
            self.sweep_expired()

    def sweep_expired(self, now: datetime = None) -> List[str]:
        """Remove subscriptions past their expiry and stop their pollers"""
        now = now or utc_now()
        with self._lock:
            expired = [s for s in self._subscriptions.values() if s.is_expired(now)]
            for subscription in expired:
                del self._subscriptions[subscription.reference]

        for subscription in expired:
            self._stop_poller(subscription)
            logger.info(f"Subscription {subscription.reference} expired")
        return [s.reference for s in expired]

    def _stop_poller(self, subscription: Subscription):
        if subscription.poller is not None:
            subscription.poller.stop()

    # --- lookups ---

    def get_subscription(self, reference: str, camera_id: str = None) -> Subscription:
        with self._lock:
            subscription = self._subscriptions.get(reference)
        if subscription is None or subscription.is_expired():
            raise SubscriptionNotFound(reference)
        if camera_id is not None and subscription.camera_id != camera_id:
            raise SubscriptionNotFound(reference)
        return subscription

    def list_subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def __len__(self):
        with self._lock:
            return len(self._subscriptions)

    # --- operations ---

    def create_subscription(self, camera, base_url: str) -> str:
        """Subscribe on the camera, start a poller and return the rewritten response"""
        response = camera.send_soap_request(SERVICE_PATHS['events'], onvif_requests.create_pull_point_subscription())

        document = None
        address = None
        try:
            document = soap_envelope.parse_document(response)
            address = self._find_address(document)
        except SoapParseError as e:
            logger.warning(f"Unparsable CreatePullPointSubscription response from camera {camera.camera_id}: {e}")

        camera_subscription_url = None
        if address is not None:
            camera_subscription_url = soap_envelope.text_content(address).strip()
        if not camera_subscription_url:
            camera_subscription_url = f"{camera.endpoint.base_url}{SERVICE_PATHS['events']}"
            logger.warning(f"No subscription address from camera {camera.camera_id}, using {camera_subscription_url}")

        reference = str(uuid.uuid4())
        subscription = Subscription(reference, camera.camera_id, camera_subscription_url,
                                    self.lifetime, self.capacity)
        subscription.poller = MotionPoller(subscription, camera, self.poll_interval)

        with self._lock:
            self._subscriptions[reference] = subscription
        subscription.poller.start()

        proxy_url = f"{base_url.rstrip('/')}/onvif/{camera.camera_id}/subscription/{reference}"
        logger.info(f"Created subscription {reference} for camera {camera.camera_id} -> {camera_subscription_url}")

        if address is None:
            return self._create_subscription_response(subscription, proxy_url)

        for child in list(address.childNodes):
            address.removeChild(child)
        address.appendChild(document.createTextNode(proxy_url))
        return soap_envelope.to_string(document)

    def _find_address(self, document):
        for tag in ADDRESS_TAGS:
            elements = document.getElementsByTagName(tag)
            if elements:
                return elements[0]
        return None

    def _create_subscription_response(self, subscription: Subscription, proxy_url: str) -> str:
        body = f"""<tev:CreatePullPointSubscriptionResponse>
  <tev:SubscriptionReference>
    <wsa5:Address>{proxy_url}</wsa5:Address>
  </tev:SubscriptionReference>
  <wsnt:CurrentTime>{format_time(utc_now())}</wsnt:CurrentTime>
  <wsnt:TerminationTime>{format_time(subscription.expires_at)}</wsnt:TerminationTime>
</tev:CreatePullPointSubscriptionResponse>"""
        return soap_envelope.serialize(EVENT_NAMESPACES, None, body)

    def pull_messages(self, reference: str, timeout: str, message_limit: int,
                      camera_id: str = None) -> str:
        """Wait up to timeout for cached events and return a PullMessagesResponse"""
        subscription = self.get_subscription(reference, camera_id)
        limit = max(1, int(message_limit))
        deadline = time.monotonic() + parse_duration(timeout)

        events: List[CachedEvent] = []
        while True:
            events.extend(subscription.drain(limit - len(events)))
            remaining = deadline - time.monotonic()
            if events or remaining <= 0:
                break
            time.sleep(min(PULL_CHECK_INTERVAL, remaining))

        logger.debug(f"PullMessages on {reference} returned {len(events)} events")
        messages = '\n'.join(event.xml for event in events)
        body = f"""<tev:PullMessagesResponse>
  <tev:CurrentTime>{format_time(utc_now())}</tev:CurrentTime>
  <tev:TerminationTime>{format_time(subscription.expires_at)}</tev:TerminationTime>
{messages}
</tev:PullMessagesResponse>"""
        return soap_envelope.serialize(EVENT_NAMESPACES, None, body)

    def _lookup_for_camera(self, camera, reference: str,
                           include_expired: bool = False) -> Optional[Subscription]:
        with self._lock:
            subscription = self._subscriptions.get(reference)
        if subscription is None or subscription.camera_id != camera.camera_id:
            return None
        if subscription.is_expired() and not include_expired:
            return None
        return subscription

    def renew(self, camera, reference: str) -> str:
        """Forward Renew to the camera and extend the local expiry"""
        subscription = self._lookup_for_camera(camera, reference)
        path = subscription.camera_subscription_path if subscription else SERVICE_PATHS['events']

        response = camera.send_soap_request(path, onvif_requests.renew())

        if subscription is not None:
            subscription.renew(self.lifetime)
            logger.info(f"Renewed subscription {reference} until {subscription.expires_at.isoformat()}")
        else:
            logger.warning(f"Renew for unknown subscription {reference}, local expiry not updated")
        return response

    def unsubscribe(self, camera, reference: str) -> str:
        """Forward Unsubscribe to the camera, drop the record and stop its poller"""
        subscription = self._lookup_for_camera(camera, reference, include_expired=True)
        path = subscription.camera_subscription_path if subscription else SERVICE_PATHS['events']

        response = camera.send_soap_request(path, onvif_requests.unsubscribe())

        removed = None
        if subscription is not None:
            with self._lock:
                removed = self._subscriptions.pop(reference, None)
        if removed is not None:
            self._stop_poller(removed)
            logger.info(f"Unsubscribed {reference}")
        return response
