#!/usr/bin/env python3
"""
Quirks Translation Engine Tests
"""

import logging

import pytest

import quirks_engine
from quirks_engine import QUIRKS, RuleEngine, TranslationError, TranslationRule

SOAP_OPEN = '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://www.w3.org/2003/05/soap-envelope"><SOAP-ENV:Body>'
SOAP_CLOSE = '</SOAP-ENV:Body></SOAP-ENV:Envelope>'

DEVICE_INFO = (
    SOAP_OPEN
    + '<tds:GetDeviceInformationResponse>'
    + '<tds:Manufacturer>Reolink</tds:Manufacturer>'
    + '<tt:Extension/>'
    + '</tds:GetDeviceInformationResponse>'
    + SOAP_CLOSE
)

SMART_NOTIFICATION = (
    SOAP_OPEN
    + '<tev:PullMessagesResponse><wsnt:NotificationMessage>'
    + '<wsnt:Topic Dialect="http://www.onvif.org/ver10/tev/topicExpression/ConcreteSet">'
    + 'tns1:RuleEngine/MyRuleDetector/PeopleDetect</wsnt:Topic>'
    + '<wsnt:Message><tt:Message UtcTime="2024-01-01T00:00:00Z">'
    + '<tt:Data><tt:SimpleItem Name="IsMotion" Value="false"/></tt:Data>'
    + '</tt:Message></wsnt:Message>'
    + '</wsnt:NotificationMessage></tev:PullMessagesResponse>'
    + SOAP_CLOSE
)

TOPIC_SET = (
    '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://www.w3.org/2003/05/soap-envelope" xmlns:reo="http://vendor/topics">'
    + '<SOAP-ENV:Body><tev:GetEventPropertiesResponse><wstop:TopicSet>'
    + '<reo:RuleEngine><MyRuleDetector>'
    + '<PeopleDetect wstop:topic="true"/><VehicleDetect wstop:topic="true"/>'
    + '</MyRuleDetector></reo:RuleEngine>'
    + '</wstop:TopicSet></tev:GetEventPropertiesResponse>'
    + SOAP_CLOSE
)


class TestNamespaceRepair:

    def test_injects_missing_declarations(self):
        result = quirks_engine.translate(DEVICE_INFO, 'reolink', ['add_missing_namespaces'])
        assert f'xmlns:tds="{quirks_engine.NAMESPACES["tds"]}"' in result
        assert f'xmlns:tt="{quirks_engine.NAMESPACES["tt"]}"' in result

    def test_repair_is_idempotent(self):
        once = quirks_engine.translate(DEVICE_INFO, 'reolink', ['add_missing_namespaces'])
        twice = quirks_engine.translate(once, 'reolink', ['add_missing_namespaces'])

        assert once == twice
        assert once.count('xmlns:tt=') == 1

    def test_existing_declaration_is_kept(self):
        xml = DEVICE_INFO.replace('<tds:GetDeviceInformationResponse>',
                                  '<tds:GetDeviceInformationResponse xmlns:tds="urn:custom">')
        result = quirks_engine.translate(xml, 'reolink', ['fix_device_info_namespace'])
        assert result.count('xmlns:tds=') == 1
        assert 'urn:custom' in result

    def test_profile_normalization_ignores_other_responses(self):
        result = quirks_engine.translate(DEVICE_INFO, 'reolink', ['normalize_media_profiles'])
        assert 'xmlns:tt' not in result

    def test_profile_normalization_repairs_profiles(self):
        xml = SOAP_OPEN + '<trt:GetProfilesResponse><trt:Profiles token="Profile_1"><tt:Name>Main</tt:Name></trt:Profiles></trt:GetProfilesResponse>' + SOAP_CLOSE
        result = quirks_engine.translate(xml, 'reolink', ['normalize_media_profiles'])
        assert 'xmlns:trt=' in result
        assert 'xmlns:tt=' in result


class TestSmartEvents:

    def test_topic_remapped_to_motion(self):
        result = quirks_engine.translate(SMART_NOTIFICATION, 'reolink', ['translate_smart_events'])
        assert 'tns1:RuleEngine/CellMotionDetector/Motion' in result
        assert 'PeopleDetect' not in result

    def test_remap_is_independent_of_surrounding_xml(self):
        text = 'before tns1:RuleEngine/MyRuleDetector/PeopleDetect after'
        assert quirks_engine.remap_topic_text(text) == 'before tns1:RuleEngine/CellMotionDetector/Motion after'

    def test_embedded_identifier_remapped(self):
        assert quirks_engine.remap_topic_text('Reolink_PeopleDetect_1') == 'Reolink_Motion_1'
        assert quirks_engine.remap_topic_text('camFaceDetection2') == 'camMotion2'

    def test_vendor_prefix_renamed(self):
        assert quirks_engine.remap_topic_text('reo:RuleEngine/MyRuleDetector/PersonDetection') == quirks_engine.MOTION_TOPIC

    def test_state_item_injected_from_is_motion(self):
        result = quirks_engine.translate(SMART_NOTIFICATION, 'reolink', ['translate_smart_events'])
        assert '<tt:SimpleItem Name="State" Value="false"/>' in result
        assert 'xmlns:tns1=' in result

    def test_smart_event_translation_is_idempotent(self):
        once = quirks_engine.translate(SMART_NOTIFICATION, 'reolink', ['translate_smart_events'])
        twice = quirks_engine.translate(once, 'reolink', ['translate_smart_events'])
        assert once == twice
        assert once.count('Name="State"') == 1

    def test_topic_set_normalized(self):
        result = quirks_engine.normalize_event_properties(TOPIC_SET)

        assert 'tns1:RuleEngine' in result
        assert 'xmlns:reo' not in result
        assert 'xmlns:tns1=' in result
        assert result.count('<Motion ') == 1
        assert 'PeopleDetect' not in result
        assert 'VehicleDetect' not in result

    def test_normalize_event_properties_rejects_malformed(self):
        with pytest.raises(TranslationError):
            quirks_engine.normalize_event_properties('<broken')


class TestRegistry:

    def test_unknown_model_passes_through_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger='quirks_engine'):
            result = quirks_engine.translate(DEVICE_INFO, 'acme', ['add_missing_namespaces'])
        assert result == DEVICE_INFO
        assert 'Unknown camera model' in caplog.text

    def test_unknown_quirk_is_skipped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger='quirks_engine'):
            pipeline = QUIRKS.resolve('reolink', ['no_such_quirk', 'add_missing_namespaces'])
        assert pipeline.names == ['add_missing_namespaces']
        assert 'no_such_quirk' in caplog.text

    def test_pipeline_rejects_malformed_response(self):
        pipeline = QUIRKS.resolve('reolink', ['add_missing_namespaces'])
        with pytest.raises(TranslationError):
            pipeline.translate('<broken')

    def test_rules_run_after_quirks(self):
        rule = TranslationRule('visitor', 'Visitor', 'Motion', 'topic-map')
        pipeline = QUIRKS.resolve('reolink', ['add_missing_namespaces'], [rule])
        result = pipeline.translate(SOAP_OPEN + '<tt:Topic>Visitor</tt:Topic>' + SOAP_CLOSE)
        assert '<tt:Topic>Motion</tt:Topic>' in result
        assert 'xmlns:tt=' in result


class TestTranslationRules:

    def test_literal_replace(self):
        engine = RuleEngine([TranslationRule('r', 'foo', 'bar', 'literal-replace')])
        assert engine.apply_rules('<a>foo</a>') == '<a>bar</a>'

    def test_regex_replace(self):
        engine = RuleEngine([TranslationRule('r', r'Idx=\d+', 'Idx=X', 'regex-replace')])
        assert engine.apply_rules('<a>sub?Idx=42</a>') == '<a>sub?Idx=X</a>'

    def test_namespace_add_only_when_used(self):
        rule = TranslationRule('acme', 'acme', 'urn:acme', 'namespace-add')
        engine = RuleEngine([rule])
        assert 'xmlns:acme="urn:acme"' in engine.apply_rules('<a><acme:b/></a>')
        assert 'xmlns:acme' not in engine.apply_rules('<a><b/></a>')

    def test_topic_map(self):
        engine = RuleEngine()
        engine.add_rule(TranslationRule('t', 'reo:Visitor', 'tns1:Visitor', 'topic-map'))
        assert '<t>tns1:Visitor</t>' in engine.apply_rules('<a><t>reo:Visitor</t></a>')

    def test_structural_rule_on_malformed_xml(self):
        engine = RuleEngine([TranslationRule('t', 'a', 'b', 'topic-map')])
        with pytest.raises(TranslationError):
            engine.apply_rules('<broken')

    def test_from_dict(self):
        rule = TranslationRule.from_dict({'name': 'x', 'kind': 'regex-replace', 'pattern': 'a+', 'replacement': 'b'})
        assert rule == TranslationRule('x', 'a+', 'b', 'regex-replace')

    @pytest.mark.parametrize('data', [
        {'kind': 'xslt', 'pattern': 'a'},
        {'kind': 'literal-replace'},
        {'kind': 'regex-replace', 'pattern': '('},
    ])
    def test_from_dict_rejects_invalid(self, data):
        with pytest.raises(ValueError):
            TranslationRule.from_dict(data)


class TestUrlRewriting:

    def test_loopback_host_replaced(self, endpoint):
        xml = SOAP_OPEN + '<trt:MediaUri><tt:Uri>rtsp://127.0.0.1:554/stream</tt:Uri></trt:MediaUri>' + SOAP_CLOSE
        result = quirks_engine.rewrite_urls(xml, endpoint.id, endpoint.host)
        assert '<tt:Uri>rtsp://192.168.1.10:554/stream</tt:Uri>' in result

    @pytest.mark.parametrize('url, expected', [
        ('rtsp://127.0.0.1:554/stream', 'rtsp://192.168.1.10:554/stream'),
        ('rtsp://admin:pw@localhost/h264', 'rtsp://admin:pw@192.168.1.10/h264'),
        ('http://0.0.0.0/cgi-bin/snap.cgi', 'http://192.168.1.10/cgi-bin/snap.cgi'),
        ('rtsp://192.168.1.20:554/stream', 'rtsp://192.168.1.20:554/stream'),
    ])
    def test_replace_loopback_hosts(self, url, expected):
        assert quirks_engine.replace_loopback_hosts(url, '192.168.1.10') == expected

    def test_service_urls_point_at_gateway(self):
        xml = (SOAP_OPEN
               + '<tt:XAddr>http://192.168.1.10:8000/onvif/device_service</tt:XAddr>'
               + '<tt:XAddr>http://192.168.1.10:8000/onvif/media2_service</tt:XAddr>'
               + '<tt:XAddr>http://192.168.1.10:8000/onvif/ptz_service</tt:XAddr>'
               + SOAP_CLOSE)
        result = quirks_engine.rewrite_urls(xml, 'cam1', '192.168.1.10', 'http://gw:8000/')

        assert 'http://gw:8000/onvif/cam1/device_service' in result
        assert 'http://gw:8000/onvif/cam1/Media2' in result
        assert 'http://192.168.1.10:8000/onvif/ptz_service' in result

    def test_rewrite_urls_rejects_malformed(self):
        with pytest.raises(TranslationError):
            quirks_engine.rewrite_urls('<broken', 'cam1', '192.168.1.10')
