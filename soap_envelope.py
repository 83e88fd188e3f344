#!/usr/bin/env python3
"""
SOAP Envelope Codec
Parses inbound ONVIF SOAP requests and builds outbound envelopes
"""

import logging
from typing import Dict, List, NamedTuple, Optional
from xml.dom import expatbuilder
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape, quoteattr

logger = logging.getLogger(__name__)

SOAP_ENV_NS = 'http://www.w3.org/2003/05/soap-envelope'
SOAP11_ENV_NS = 'http://schemas.xmlsoap.org/soap/envelope/'
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

# ONVIF namespaces
NAMESPACES = {
    'SOAP-ENV': SOAP_ENV_NS,
    'tds': 'http://www.onvif.org/ver10/device/wsdl',
    'trt': 'http://www.onvif.org/ver10/media/wsdl',
    'tr2': 'http://www.onvif.org/ver20/media/wsdl',
    'tev': 'http://www.onvif.org/ver10/events/wsdl',
    'tt': 'http://www.onvif.org/ver10/schema',
    'tns1': 'http://www.onvif.org/ver10/topics',
    'wsnt': 'http://docs.oasis-open.org/wsn/b-2',
    'wsa5': 'http://www.w3.org/2005/08/addressing',
    'wsse': 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd',
    'wsu': 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd',
}


class SoapParseError(ValueError):
    """Raised when a document is not a usable SOAP envelope"""


class SoapBody(NamedTuple):
    action: str
    raw_xml: str
    content: str
    namespace: Optional[str] = None


class SoapEnvelope(NamedTuple):
    """Parsed envelope. Never mutated; transformations produce new strings."""
    header: Optional[str]
    body: SoapBody
    namespaces: Dict[str, str]

    @property
    def action(self) -> str:
        return self.body.action


# --- DOM helpers -----------------------------------------------------------
# Documents are parsed without namespace processing so that responses using
# undeclared prefixes can still be loaded and repaired.

def parse_document(xml):
    """Parse XML text or bytes into a namespace-unaware DOM document"""
    try:
        return expatbuilder.parseString(xml, namespaces=False)
    except ExpatError as e:
        raise SoapParseError(f"XML parsing error: {e}") from e


def local_name(name: str) -> str:
    return name.split(':', 1)[-1]


def prefix_of(name: str) -> str:
    return name.split(':', 1)[0] if ':' in name else ''


def child_elements(node) -> List:
    return [c for c in node.childNodes if c.nodeType == c.ELEMENT_NODE]


def find_elements(node, name: str) -> List:
    """All descendant elements whose local name matches, in document order"""
    return [el for el in node.getElementsByTagName('*') if local_name(el.tagName) == name]


def find_element(node, name: str):
    found = find_elements(node, name)
    return found[0] if found else None


def text_content(node) -> str:
    parts = []
    for child in node.childNodes:
        if child.nodeType in (child.TEXT_NODE, child.CDATA_SECTION_NODE):
            parts.append(child.data)
        elif child.nodeType == child.ELEMENT_NODE:
            parts.append(text_content(child))
    return ''.join(parts)


def inner_xml(node) -> str:
    return ''.join(child.toxml() for child in node.childNodes).strip()


def declared_namespaces(element) -> Dict[str, str]:
    """xmlns declarations on one element; the default namespace is keyed ''"""
    namespaces = {}
    for name, value in element.attributes.items():
        if name == 'xmlns':
            namespaces[''] = value
        elif name.startswith('xmlns:'):
            namespaces[name[6:]] = value
    return namespaces


def resolve_namespace(element, prefix: str) -> Optional[str]:
    attr = f'xmlns:{prefix}' if prefix else 'xmlns'
    node = element
    while node is not None and node.nodeType == node.ELEMENT_NODE:
        if node.hasAttribute(attr):
            return node.getAttribute(attr)
        node = node.parentNode
    return None


def to_string(document) -> str:
    return XML_DECLARATION + '\n' + document.documentElement.toxml()


# --- Codec -----------------------------------------------------------------

def parse(xml) -> SoapEnvelope:
    """Parse an inbound envelope.

    The action is the local name of the first element inside Body, or the
    empty string when Body is empty (connectivity checks). A missing Header is
    tolerated; a missing Body is a SoapParseError.
    """
    document = parse_document(xml)
    root = document.documentElement
    if local_name(root.tagName) != 'Envelope':
        raise SoapParseError(f"Root element is not a SOAP Envelope: {root.tagName}")

    header_el = body_el = None
    for child in child_elements(root):
        name = local_name(child.tagName)
        if name == 'Header' and header_el is None:
            header_el = child
        elif name == 'Body' and body_el is None:
            body_el = child

    if body_el is None:
        raise SoapParseError("SOAP Body not found")

    action = ''
    content = ''
    namespace = None
    body_children = child_elements(body_el)
    if body_children:
        action_el = body_children[0]
        action = local_name(action_el.tagName)
        content = text_content(action_el).strip()
        namespace = resolve_namespace(action_el, prefix_of(action_el.tagName))

    # Header and Body are serialized as inner XML, so their own declarations
    # move up to the envelope. The root wins on conflicting prefixes.
    namespaces = {}
    for element in (header_el, body_el):
        if element is not None:
            namespaces.update(declared_namespaces(element))
    namespaces.update(declared_namespaces(root))

    logger.debug(f"Parsed SOAP envelope, action: {action or '(empty)'}")

    return SoapEnvelope(
        header=inner_xml(header_el) if header_el is not None else None,
        body=SoapBody(action=action, raw_xml=inner_xml(body_el), content=content, namespace=namespace),
        namespaces=namespaces,
    )


def serialize(namespaces: Dict[str, str], header: Optional[str], body_xml: str) -> str:
    """Build an envelope: declaration, Envelope with namespaces, Header, Body"""
    namespaces = dict(namespaces or {})
    env_prefix = next(
        (p for p, uri in namespaces.items() if p and uri in (SOAP_ENV_NS, SOAP11_ENV_NS)),
        None
    )
    if env_prefix is None:
        env_prefix = 'SOAP-ENV'
        namespaces = {env_prefix: SOAP_ENV_NS, **namespaces}

    attrs = ''.join(
        f' xmlns:{prefix}={quoteattr(uri)}' if prefix else f' xmlns={quoteattr(uri)}'
        for prefix, uri in namespaces.items()
    )

    parts = [XML_DECLARATION, f'<{env_prefix}:Envelope{attrs}>']
    if header is not None:
        parts.append(f'<{env_prefix}:Header>{header}</{env_prefix}:Header>')
    parts.append(f'<{env_prefix}:Body>{body_xml}</{env_prefix}:Body>')
    parts.append(f'</{env_prefix}:Envelope>')
    return '\n'.join(parts)


def extract_value(xml_fragment: str, name: str) -> Optional[str]:
    """Text of the first element with the given local name in a body fragment"""
    document = parse_document(f'<fragment>{xml_fragment}</fragment>')
    element = find_element(document.documentElement, name)
    if element is None:
        return None
    return text_content(element).strip()


def create_fault(reason: str, code: str = 'Sender', subcode: str = None) -> str:
    """Create SOAP 1.2 fault response"""
    subcode_xml = ''
    if subcode:
        subcode_xml = f"""
            <SOAP-ENV:Subcode>
                <SOAP-ENV:Value>ter:{subcode}</SOAP-ENV:Value>
            </SOAP-ENV:Subcode>"""
    body = f"""
        <SOAP-ENV:Fault>
            <SOAP-ENV:Code>
                <SOAP-ENV:Value>SOAP-ENV:{code}</SOAP-ENV:Value>{subcode_xml}
            </SOAP-ENV:Code>
            <SOAP-ENV:Reason>
                <SOAP-ENV:Text xml:lang="en">{escape(reason)}</SOAP-ENV:Text>
            </SOAP-ENV:Reason>
        </SOAP-ENV:Fault>
    """
    return serialize(
        {'SOAP-ENV': SOAP_ENV_NS, 'ter': 'http://www.onvif.org/ver10/error'},
        None,
        body
    )


def empty_response() -> str:
    return serialize({'SOAP-ENV': SOAP_ENV_NS}, None, '')
