"""
Tests for response resolution and rendering

Tests:
- Override order: expectation, active preset, rule default
- Script, file and text rendering
- Data template expansion and its fallback
- Custom response headers
"""

import asyncio
import json

import pytest

from rulemock.mock.errors import ClientError, ScriptError
from rulemock.mock.resolver import (
    ResponseResolver,
    content_disposition,
    find_active_preset,
    resolve_descriptor,
)
from rulemock.mock.sandbox import ScriptRequest
from rulemock.mock.template import DataTemplate

from conftest import make_rule


@pytest.fixture
def resolver():
    return ResponseResolver(template=DataTemplate(seed=5))


def request(**kwargs):
    defaults = {'method': 'GET', 'path': '/'}
    defaults.update(kwargs)
    return ScriptRequest(**defaults)


def respond(resolver, rule, req=None):
    return asyncio.run(resolver.respond(rule, req or request()))


class TestResolveDescriptor:
    """Test which layer supplies the response."""

    def test_default_layer(self):
        rule = make_rule('/a', responseBasic='{"a": 1}')

        descriptor = resolve_descriptor(rule, request())

        assert descriptor.source == 'default'
        assert descriptor.status_code == 200
        assert descriptor.body == '{"a": 1}'

    def test_active_preset_overrides_default(self):
        rule = make_rule('/a', activePresetId=2, responsePresets=[
            {'id': 1, 'statusCode': 201, 'responseBasic': 'one'},
            {'id': 2, 'statusCode': 503, 'responseType': 'text/plain', 'responseBasic': 'down'},
        ])

        descriptor = resolve_descriptor(rule, request())

        assert descriptor.source == 'preset'
        assert descriptor.status_code == 503
        assert descriptor.content_type == 'text/plain'
        assert descriptor.body == 'down'

    def test_unknown_preset_id_ignored(self):
        rule = make_rule('/a', activePresetId=9, responsePresets=[{'id': 1}])
        assert find_active_preset(rule) is None
        assert resolve_descriptor(rule, request()).source == 'default'

    def test_expectation_overrides_preset(self):
        rule = make_rule(
            '/a',
            activePresetId=1,
            responsePresets=[{'id': 1, 'statusCode': 500, 'responseBasic': 'preset'}],
            expectations=[{
                'conditions': [{'source': 'query', 'key': 'mode', 'operator': 'equals', 'value': 'vip'}],
                'statusCode': 202,
                'responseMode': 'basic',
                'responseType': 'application/json',
                'responseBasic': '{"vip": true}',
            }],
        )

        vip = resolve_descriptor(rule, request(query={'mode': 'vip'}))
        other = resolve_descriptor(rule, request(query={'mode': 'basic'}))

        assert (vip.source, vip.status_code) == ('expectation', 202)
        assert (other.source, other.status_code) == ('preset', 500)

    def test_bad_status_code_falls_back_to_200(self):
        rule = make_rule('/a', activePresetId=1, responsePresets=[{'id': 1, 'statusCode': 'abc'}])
        assert resolve_descriptor(rule, request()).status_code == 200


class TestRendering:
    """Test ResponseResolver.respond."""

    def test_text_body_as_is(self, resolver):
        rule = make_rule('/ping', responseType='text/plain', responseBasic='pong')

        response = respond(resolver, rule)

        assert response.status_code == 200
        assert response.body == b'pong'
        assert response.headers['content-type'].startswith('text/plain')

    def test_template_expansion(self, resolver):
        rule = make_rule('/users', mockjsEnabled=True, responseBasic='{"list|2": [{"id|+1": 1}]}')

        data = json.loads(respond(resolver, rule).body)

        assert data == {'list': [{'id': 1}, {'id': 2}]}

    def test_template_only_for_json(self, resolver):
        rule = make_rule('/t', mockjsEnabled=True, responseType='text/plain', responseBasic='{"n|1-9": 1}')
        assert respond(resolver, rule).body == b'{"n|1-9": 1}'

    def test_bad_template_degrades_to_raw_body(self, resolver):
        rule = make_rule('/bad', mockjsEnabled=True, responseBasic='{not json')
        assert respond(resolver, rule).body == b'{not json'

    def test_advanced_script(self, resolver):
        rule = make_rule('/users/:id', responseMode='advanced', responseAdvanced=(
            "def main(req, faker):\n"
            "    return {'id': int(req.params['id'])}\n"
        ))

        response = respond(resolver, rule, request(params={'id': '7'}))

        assert response.status_code == 200
        assert json.loads(response.body) == {'id': 7}
        assert response.headers['content-type'] == 'application/json'

    def test_advanced_expectation_uses_its_status(self, resolver):
        rule = make_rule('/a', expectations=[{
            'conditions': [{'source': 'header', 'key': 'x-fail', 'operator': 'exists'}],
            'statusCode': 418,
            'responseMode': 'advanced',
            'responseAdvanced': "def main(req, faker):\n    return {'teapot': True}\n",
        }])

        response = respond(resolver, rule, request(headers={'x-fail': '1'}))

        assert response.status_code == 418
        assert json.loads(response.body) == {'teapot': True}

    def test_script_without_main(self, resolver):
        rule = make_rule('/a', responseMode='advanced', responseAdvanced='x = 1')
        with pytest.raises(ScriptError, match='main is not defined'):
            respond(resolver, rule)

    def test_failed_script_leaves_later_scripts_unaffected(self, resolver):
        hijack = make_rule('/a', responseMode='advanced', responseAdvanced=(
            "import json\n"
            "json.dumps = lambda *args, **kwargs: '\"hijacked\"'\n"
            "def main(req, faker):\n"
            "    return 1\n"
        ))
        clean = make_rule('/b', responseMode='advanced', responseAdvanced=(
            "def main(req, faker):\n"
            "    return {'ok': True}\n"
        ))

        with pytest.raises(ScriptError, match='read-only'):
            respond(resolver, hijack)

        assert json.loads(respond(resolver, clean).body) == {'ok': True}

    def test_response_headers_applied(self, resolver):
        rule = make_rule('/a', responseHeaders=[
            {'key': 'X-Trace', 'value': 'abc'},
            {'key': 'X-Empty', 'value': ''},
        ])

        response = respond(resolver, rule)

        assert response.headers['x-trace'] == 'abc'
        assert 'x-empty' not in response.headers


class TestBinaryRendering:
    """Test file-backed responses."""

    def test_file_streamed_with_disposition(self, resolver, tmp_path):
        path = tmp_path / 'report.pdf'
        path.write_bytes(b'%PDF-1.4 data')
        rule = make_rule('/report', responseType='application/pdf', responseFile=str(path))

        response = respond(resolver, rule)

        assert response.body == b'%PDF-1.4 data'
        assert response.headers['content-type'] == 'application/pdf'
        assert response.headers['content-disposition'] == 'attachment; filename="report.pdf"'

    def test_missing_path_is_400(self, resolver):
        rule = make_rule('/report', responseType='application/zip')
        with pytest.raises(ClientError) as exc_info:
            respond(resolver, rule)
        assert exc_info.value.status_code == 400

    def test_missing_file_is_404(self, resolver, tmp_path):
        rule = make_rule('/report', responseType='application/zip', responseFile=str(tmp_path / 'gone.zip'))
        with pytest.raises(ClientError) as exc_info:
            respond(resolver, rule)
        assert exc_info.value.status_code == 404

    def test_non_ascii_filename(self):
        assert content_disposition('报告.pdf').startswith("attachment; filename*=UTF-8''")
