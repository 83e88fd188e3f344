#!/usr/bin/env python3
"""
WS-Security Authentication
Builds UsernameToken headers (PasswordDigest) for requests sent to cameras
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from xml.sax.saxutils import escape

WSSE_NS = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd'
WSU_NS = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd'
PASSWORD_DIGEST_TYPE = (
    'http://docs.oasis-open.org/wss/2004/01/'
    'oasis-200401-wss-username-token-profile-1.0#PasswordDigest'
)
NONCE_ENCODING_TYPE = (
    'http://docs.oasis-open.org/wss/2004/01/'
    'oasis-200401-wss-soap-message-security-1.0#Base64Binary'
)
NONCE_SIZE = 16


def created_timestamp(now: datetime = None) -> str:
    """UTC time with millisecond precision and a literal Z suffix"""
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f'{now.microsecond // 1000:03d}Z'


def password_digest(nonce: bytes, created: str, password: str) -> str:
    """Base64(SHA1(nonce + created + password))"""
    digest_input = nonce + created.encode('utf-8') + password.encode('utf-8')
    return base64.b64encode(hashlib.sha1(digest_input).digest()).decode('ascii')


def generate_header(username: str, password: str, nonce: bytes = None, created: str = None) -> str:
    """Create a wsse:Security block for one request.

    A fresh nonce and timestamp are drawn on every call unless given
    explicitly, so headers must never be cached between requests.
    """
    if nonce is None:
        nonce = secrets.token_bytes(NONCE_SIZE)
    if created is None:
        created = created_timestamp()

    nonce_b64 = base64.b64encode(nonce).decode('ascii')
    digest = password_digest(nonce, created, password)

    return f"""<wsse:Security xmlns:wsse="{WSSE_NS}" xmlns:wsu="{WSU_NS}">
  <wsse:UsernameToken>
    <wsse:Username>{escape(username)}</wsse:Username>
    <wsse:Password Type="{PASSWORD_DIGEST_TYPE}">{digest}</wsse:Password>
    <wsse:Nonce EncodingType="{NONCE_ENCODING_TYPE}">{nonce_b64}</wsse:Nonce>
    <wsu:Created>{created}</wsu:Created>
  </wsse:UsernameToken>
</wsse:Security>"""
