#!/usr/bin/env python3
"""
Quirks Translation Engine
Repairs non-conformant camera responses before they reach ONVIF clients
"""

import logging
import re
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from soap_envelope import (
    NAMESPACES, SoapParseError, child_elements, find_element, find_elements,
    local_name, parse_document, prefix_of, text_content, to_string
)

logger = logging.getLogger(__name__)

# Namespaces that the target vendor uses without declaring them
VENDOR_NAMESPACES = [
    ('tds', NAMESPACES['tds']),
    ('trt', NAMESPACES['trt']),
    ('tev', NAMESPACES['tev']),
    ('tt', NAMESPACES['tt']),
    ('tns1', NAMESPACES['tns1']),
    ('wsnt', NAMESPACES['wsnt']),
]

MOTION_TOPIC = 'tns1:RuleEngine/CellMotionDetector/Motion'
VENDOR_TOPIC_PREFIX = 'reo'

# Proprietary smart-detection identifiers, longest first
SMART_EVENT_NAMES = [
    'PersonDetection', 'PeopleDetect',
    'VehicleDetection', 'VehicleDetect',
    'PetDetection', 'DogCatDetect',
    'FaceDetection', 'FaceDetect',
    'SmartDetection', 'AIDetection',
]

_NAMES_ALT = '|'.join(SMART_EVENT_NAMES)
_SMART_TOPIC_RE = re.compile(r'(?:\b[\w.-]+:)?RuleEngine/MyRuleDetector/(?:%s)\b' % _NAMES_ALT)
# Bare identifiers are matched anywhere, including inside names like Vendor_PeopleDetect_1
_SMART_NAME_RE = re.compile(r'(?:%s)' % _NAMES_ALT)
_VENDOR_PREFIX_RE = re.compile(r'(?<![\w.-])%s:' % VENDOR_TOPIC_PREFIX)
_QNAME_PREFIX_RE = re.compile(r'(?<![\w.:/-])([A-Za-z_][\w.-]*):[A-Za-z_]')

LOOPBACK_HOSTS = ('127.0.0.1', 'localhost', '0.0.0.0')
_LOOPBACK_RE = re.compile(
    r'\b(rtsp|https?)://([^@/\s<"]*@)?(?:%s)(?=[:/\s<"?]|$)' % '|'.join(re.escape(host) for host in LOOPBACK_HOSTS)
)

# Camera service path -> gateway route
GATEWAY_SERVICES = {
    'device_service': 'device_service',
    'media_service': 'media_service',
    'event_service': 'event_service',
    'Media2': 'Media2',
    'media2_service': 'Media2',
}
_SERVICE_URL_RE = re.compile(
    r'https?://[^\s<"]*?/onvif/(%s)(?=[\s<"?/]|$)' % '|'.join(GATEWAY_SERVICES)
)


class TranslationError(Exception):
    """Raised when a quirk or rule cannot be applied to a response"""


# --- Document helpers ------------------------------------------------------

def _all_elements(document) -> List:
    return document.getElementsByTagName('*')


def _text_nodes(node) -> Iterable:
    for child in node.childNodes:
        if child.nodeType in (child.TEXT_NODE, child.CDATA_SECTION_NODE):
            yield child
        elif child.nodeType == child.ELEMENT_NODE:
            yield from _text_nodes(child)


def _is_xmlns(name: str) -> bool:
    return name == 'xmlns' or name.startswith('xmlns:')


def declared_prefixes(document) -> set:
    declared = set()
    for element in _all_elements(document):
        for name in element.attributes.keys():
            if name.startswith('xmlns:'):
                declared.add(name[6:])
    return declared


def used_prefixes(document) -> set:
    """Prefixes referenced by element names, attribute names and QName values"""
    used = set()
    for element in _all_elements(document):
        used.add(prefix_of(element.tagName))
        for name, value in element.attributes.items():
            if _is_xmlns(name):
                continue
            used.add(prefix_of(name))
            used.update(_QNAME_PREFIX_RE.findall(value))
    for node in _text_nodes(document.documentElement):
        used.update(_QNAME_PREFIX_RE.findall(node.data))
    used.discard('')
    used.discard('xml')
    return used


def add_namespace(document, prefix: str, uri: str) -> bool:
    """Declare xmlns:prefix on the root element unless already declared"""
    if prefix in declared_prefixes(document):
        return False
    document.documentElement.setAttribute(f'xmlns:{prefix}', uri)
    return True


def repair_namespaces(document, table) -> List[str]:
    used = used_prefixes(document)
    declared = declared_prefixes(document)
    added = []
    for prefix, uri in table:
        if prefix in used and prefix not in declared:
            document.documentElement.setAttribute(f'xmlns:{prefix}', uri)
            added.append(prefix)
    if added:
        logger.debug(f"Injected namespace declarations: {', '.join(added)}")
    return added


def _rename_element(element, name: str):
    element.tagName = element.nodeName = name


def _substitute_text(document, substitute: Callable[[str], str]):
    for node in _text_nodes(document.documentElement):
        new_data = substitute(node.data)
        if new_data != node.data:
            node.data = new_data
    for element in _all_elements(document):
        for name, value in element.attributes.items():
            if _is_xmlns(name):
                continue
            new_value = substitute(value)
            if new_value != value:
                element.setAttribute(name, new_value)


# --- Quirks ----------------------------------------------------------------

def remap_topic_text(text: str) -> str:
    """Map proprietary detection topics in a text value to the motion topic"""
    text = _SMART_TOPIC_RE.sub(MOTION_TOPIC, text)
    text = _VENDOR_PREFIX_RE.sub('tns1:', text)
    return _SMART_NAME_RE.sub('Motion', text)


def fix_device_info_namespace(document):
    repair_namespaces(document, [ns for ns in VENDOR_NAMESPACES if ns[0] in ('tds', 'tt')])


def normalize_media_profiles(document):
    if find_element(document, 'Profiles') is None and find_element(document, 'GetProfilesResponse') is None:
        return
    repair_namespaces(document, [ns for ns in VENDOR_NAMESPACES if ns[0] in ('trt', 'tt')])


def add_missing_namespaces(document):
    repair_namespaces(document, VENDOR_NAMESPACES)


def _rename_vendor_prefix(document):
    vendor_declared = False
    for element in _all_elements(document):
        if prefix_of(element.tagName) == VENDOR_TOPIC_PREFIX:
            _rename_element(element, 'tns1:' + local_name(element.tagName))
        for name, value in list(element.attributes.items()):
            if name == f'xmlns:{VENDOR_TOPIC_PREFIX}':
                element.removeAttribute(name)
                vendor_declared = True
            elif prefix_of(name) == VENDOR_TOPIC_PREFIX:
                element.removeAttribute(name)
                element.setAttribute('tns1:' + local_name(name), value)
    if vendor_declared:
        add_namespace(document, 'tns1', NAMESPACES['tns1'])


def _rename_smart_event_elements(document):
    """TopicSet form: proprietary topic elements become Motion, duplicates merged"""
    for element in _all_elements(document):
        if local_name(element.tagName) not in SMART_EVENT_NAMES:
            continue
        prefix = prefix_of(element.tagName)
        new_name = f'{prefix}:Motion' if prefix else 'Motion'
        parent = element.parentNode
        duplicate = any(
            sibling is not element and sibling.tagName == new_name
            for sibling in child_elements(parent)
        )
        if duplicate:
            parent.removeChild(element)
        else:
            _rename_element(element, new_name)


def _inject_state_items(document):
    """Add a State SimpleItem to motion notifications that only carry IsMotion"""
    for notification in find_elements(document, 'NotificationMessage'):
        topic = find_element(notification, 'Topic')
        if topic is None or 'Motion' not in text_content(topic):
            continue

        data = find_element(notification, 'Data')
        if data is None:
            messages = find_elements(notification, 'Message')
            if not messages:
                continue
            message = messages[-1]
            prefix = prefix_of(message.tagName) or 'tt'
            data = document.createElement(f'{prefix}:Data')
            message.appendChild(data)

        items = [el for el in child_elements(data) if local_name(el.tagName) == 'SimpleItem']
        if any(item.getAttribute('Name') == 'State' for item in items):
            continue

        value = 'true'
        for item in items:
            if item.getAttribute('Name') == 'IsMotion':
                value = item.getAttribute('Value') or value

        prefix = prefix_of(data.tagName) or 'tt'
        state = document.createElement(f'{prefix}:SimpleItem')
        state.setAttribute('Name', 'State')
        state.setAttribute('Value', value)
        data.appendChild(state)


def translate_smart_events(document):
    _rename_vendor_prefix(document)
    _substitute_text(document, remap_topic_text)
    _rename_smart_event_elements(document)
    _inject_state_items(document)
    repair_namespaces(document, [ns for ns in VENDOR_NAMESPACES if ns[0] in ('tns1', 'tt')])


# --- Rules and pipelines ---------------------------------------------------

class QuirkRule(NamedTuple):
    """Named, stateless transformation of a parsed response document"""
    name: str
    transform: Callable

    def apply(self, document):
        self.transform(document)


RULE_KINDS = ('literal-replace', 'regex-replace', 'namespace-add', 'topic-map')


class TranslationRule(NamedTuple):
    name: str
    pattern: str
    replacement: str
    kind: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'TranslationRule':
        kind = data.get('kind', 'literal-replace')
        if kind not in RULE_KINDS:
            raise ValueError(f"Unknown rule kind: {kind}")
        if not data.get('pattern'):
            raise ValueError(f"Rule {data.get('name', '?')} has no pattern")
        if kind == 'regex-replace':
            try:
                re.compile(data['pattern'])
            except re.error as e:
                raise ValueError(f"Invalid pattern in rule {data.get('name', '?')}: {e}") from e
        return cls(
            name=data.get('name', data['pattern']),
            pattern=data['pattern'],
            replacement=data.get('replacement', ''),
            kind=kind,
        )


class RuleEngine:
    """Ordered, configurable translation rules applied after the quirks"""

    def __init__(self, rules: Iterable[TranslationRule] = ()):
        self.rules = list(rules)

    def add_rule(self, rule: TranslationRule):
        self.rules.append(rule)

    def apply_rules(self, xml: str) -> str:
        for rule in self.rules:
            try:
                xml = self.apply_rule(xml, rule)
            except (SoapParseError, re.error) as e:
                raise TranslationError(f"Rule {rule.name} failed: {e}") from e
        return xml

    def apply_rule(self, xml: str, rule: TranslationRule) -> str:
        if rule.kind == 'literal-replace':
            return xml.replace(rule.pattern, rule.replacement)
        if rule.kind == 'regex-replace':
            return re.sub(rule.pattern, rule.replacement, xml)

        document = parse_document(xml)
        if rule.kind == 'namespace-add':
            if rule.pattern in used_prefixes(document):
                add_namespace(document, rule.pattern, rule.replacement)
        else:
            _substitute_text(document, lambda text: text.replace(rule.pattern, rule.replacement))
        return to_string(document)


class QuirkPipeline:
    """Ordered quirks (and optional rules) resolved for one camera"""

    def __init__(self, model: str, quirks: Iterable[QuirkRule] = (), rule_engine: RuleEngine = None):
        self.model = model
        self.quirks = list(quirks)
        self.rule_engine = rule_engine

    @property
    def names(self) -> List[str]:
        return [quirk.name for quirk in self.quirks]

    def translate(self, xml: str) -> str:
        if not self.quirks and not (self.rule_engine and self.rule_engine.rules):
            return xml

        result = xml
        if self.quirks:
            try:
                document = parse_document(xml)
            except SoapParseError as e:
                raise TranslationError(f"Response is not well-formed: {e}") from e

            for quirk in self.quirks:
                try:
                    quirk.apply(document)
                except Exception as e:
                    raise TranslationError(f"Quirk {quirk.name} failed: {e}") from e
            result = to_string(document)

        if self.rule_engine:
            result = self.rule_engine.apply_rules(result)
        return result


class QuirksRegistry:
    """Maps camera model names to their named quirk sets"""

    def __init__(self):
        self._models: Dict[str, Dict[str, QuirkRule]] = {}

    def register_model(self, model: str, quirks: Iterable[QuirkRule]):
        self._models[model] = {quirk.name: quirk for quirk in quirks}

    def models(self) -> List[str]:
        return list(self._models)

    def resolve(self, model: str, quirk_names: Iterable[str],
                rules: Iterable[TranslationRule] = ()) -> QuirkPipeline:
        """Build the pipeline for one camera; done once at configuration time"""
        rules = list(rules)
        rule_engine = RuleEngine(rules) if rules else None

        available = self._models.get(model)
        if available is None:
            logger.warning(f"Unknown camera model: {model}, no translation applied")
            return QuirkPipeline(model, rule_engine=rule_engine)

        selected = []
        for name in quirk_names:
            quirk = available.get(name)
            if quirk is None:
                logger.warning(f"Unknown quirk: {name} (model {model})")
                continue
            selected.append(quirk)

        return QuirkPipeline(model, selected, rule_engine)


QUIRKS = QuirksRegistry()
QUIRKS.register_model('reolink', [
    QuirkRule('fix_device_info_namespace', fix_device_info_namespace),
    QuirkRule('normalize_media_profiles', normalize_media_profiles),
    QuirkRule('translate_smart_events', translate_smart_events),
    QuirkRule('add_missing_namespaces', add_missing_namespaces),
])


def translate(xml: str, camera_model: str, quirk_names: Iterable[str]) -> str:
    return QUIRKS.resolve(camera_model, quirk_names).translate(xml)


def normalize_event_properties(xml: str) -> str:
    """Vendor topic normalisation applied to every GetEventProperties response"""
    try:
        document = parse_document(xml)
        translate_smart_events(document)
    except SoapParseError as e:
        raise TranslationError(f"Response is not well-formed: {e}") from e
    return to_string(document)


# --- URL rewriting ---------------------------------------------------------

def replace_loopback_hosts(text: str, camera_host: str) -> str:
    return _LOOPBACK_RE.sub(lambda m: f"{m.group(1)}://{m.group(2) or ''}{camera_host}", text)


def rewrite_service_url(text: str, camera_id: str, base_url: str) -> str:
    base_url = base_url.rstrip('/')
    return _SERVICE_URL_RE.sub(
        lambda m: f"{base_url}/onvif/{camera_id}/{GATEWAY_SERVICES[m.group(1)]}", text
    )


def rewrite_urls(xml: str, camera_id: str, camera_host: str,
                 base_url: Optional[str] = None) -> str:
    """Fix URLs in a camera response.

    Loopback and placeholder hosts are replaced with the camera's address.
    When base_url is given, service URLs are also pointed at the gateway.
    """
    try:
        document = parse_document(xml)
    except SoapParseError as e:
        raise TranslationError(f"Response is not well-formed: {e}") from e

    for node in _text_nodes(document.documentElement):
        data = node.data
        if base_url:
            data = rewrite_service_url(data, camera_id, base_url)
        data = replace_loopback_hosts(data, camera_host)
        if data != node.data:
            node.data = data
    return to_string(document)
