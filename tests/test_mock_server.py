"""
Tests for the rulemock HTTP mock server

Tests the per-service FastAPI app including:
- Liveness and prefix handling
- Rule matching, validation and delays
- Request body decoding and the script request view
- Error isolation
- Metrics and the request log
"""

import json
from unittest.mock import patch, call, AsyncMock

import pytest
from fastapi.testclient import TestClient

from rulemock.mock.server import (
    MockConfig,
    MockEngine,
    MockMetrics,
    ServiceListener,
    compute_delay_ms,
    create_service_app,
    validate_request,
)

from conftest import make_rule, make_service


ECHO_SCRIPT = (
    "def main(req, faker):\n"
    "    return {'method': req.method, 'path': req.path, 'query': req.query,\n"
    "            'body': req.body, 'params': req.params}\n"
)


@pytest.fixture
def service():
    return make_service([
        make_rule('/ping', responseType='text/plain', responseBasic='pong'),
        make_rule('/users/:id', responseMode='advanced', responseAdvanced=ECHO_SCRIPT),
        make_rule('/users/me', responseBasic='{"me": true}'),
        make_rule('/echo', method='POST', responseMode='advanced', responseAdvanced=ECHO_SCRIPT),
        make_rule('/secure', headers=[{'key': 'x-api-key', 'required': True}],
                  params=[{'key': 'token', 'required': True}], responseBasic='{"ok": true}'),
        make_rule('/broken', responseMode='advanced', responseAdvanced='x = 1'),
    ])


@pytest.fixture
def engine(repository, service):
    repository.save_services([service])
    return MockEngine(repository, MockConfig())


def make_client(engine, prefix='', service_id='1'):
    listener = ServiceListener(service_id=service_id, port=4001, prefix=prefix)
    return TestClient(create_service_app(listener, engine)), listener


class TestMockConfig:
    """Test MockConfig dataclass."""

    def test_default_config(self):
        config = MockConfig()

        assert config.store_path == 'rulemock-db.json'
        assert config.admin_port == 3000
        assert config.recording_enabled is True
        assert config.recording_limit == 50
        assert config.ws_log_capacity == 200
        assert config.script_entry == 'main'


class TestMockMetrics:
    """Test MockMetrics dataclass."""

    def test_metrics_to_dict(self):
        metrics = MockMetrics(total_requests=4, matched_requests=3, unmatched_requests=1)

        data = metrics.to_dict()

        assert data['total_requests'] == 4
        assert data['match_rate'] == 75.0
        assert 'uptime_seconds' in data


class TestRouting:
    """Test liveness, prefixes and matching."""

    def test_liveness(self, engine):
        client, _ = make_client(engine)

        response = client.get('/')

        assert response.status_code == 200
        assert 'running on port 4001' in response.text

    def test_ping_pong(self, engine):
        client, _ = make_client(engine)

        response = client.get('/ping')

        assert response.status_code == 200
        assert response.text == 'pong'

    def test_prefix_required(self, engine):
        client, _ = make_client(engine, prefix='/api')

        assert client.get('/api/ping').text == 'pong'

        response = client.get('/ping')
        assert response.status_code == 404
        assert response.json() == {'error': 'Path must start with prefix: /api'}

    def test_prefix_snapshot_updates_in_place(self, engine):
        client, listener = make_client(engine, prefix='/api')
        listener.prefix = '/v2'

        assert client.get('/v2/ping').status_code == 200
        assert client.get('/api/ping').status_code == 404

    def test_unmatched_is_404(self, engine):
        client, _ = make_client(engine)

        response = client.get('/nothing')

        assert response.status_code == 404
        assert response.json() == {'error': 'No mock rule matched for GET /nothing'}

    def test_exact_rule_beats_parameterized(self, engine):
        client, _ = make_client(engine)

        assert client.get('/users/me').json() == {'me': True}
        assert client.get('/users/42').json()['params'] == {'id': '42'}

    def test_unknown_service(self, engine):
        client, _ = make_client(engine, service_id='999')

        response = client.get('/ping')

        assert response.status_code == 404
        assert 'not found' in response.json()['error']

    def test_rule_edits_apply_without_restart(self, engine, repository):
        client, _ = make_client(engine)
        assert client.get('/ping').text == 'pong'

        services = repository.get_services()
        services[0]['groups'][0]['children'][0]['responseBasic'] = 'PONG!'
        repository.save_services(services)

        assert client.get('/ping').text == 'PONG!'

    def test_cors_headers(self, engine):
        client, _ = make_client(engine)

        response = client.get('/ping', headers={'Origin': 'http://editor.local'})

        assert response.headers['access-control-allow-origin'] == '*'


class TestValidation:
    """Test required header and query param checks."""

    def test_all_missing_fields_reported(self, engine):
        client, _ = make_client(engine)

        response = client.get('/secure')

        assert response.status_code == 400
        assert response.json() == {
            'error': 'Validation failed',
            'details': ['Missing header: x-api-key', 'Missing query param: token'],
        }

    def test_header_case_insensitive(self, engine):
        client, _ = make_client(engine)

        response = client.get('/secure?token=t', headers={'X-API-KEY': 'k'})

        assert response.status_code == 200
        assert response.json() == {'ok': True}

    def test_validate_request_helper(self):
        rule = {'headers': [{'key': 'X-Api-Key', 'required': True}, {'key': 'x-opt', 'required': False}]}

        assert validate_request(rule, {'x-api-key': 'v'}, {}) == []
        assert validate_request(rule, {}, {}) == ['Missing header: X-Api-Key']

    @patch('rulemock.mock.server.asyncio.sleep', new_callable=AsyncMock)
    def test_validation_failure_not_delayed(self, mock_sleep, engine, repository):
        services = repository.get_services()
        services[0]['groups'][0]['children'][4]['delay'] = 500
        repository.save_services(services)
        client, _ = make_client(engine)

        assert client.get('/secure').status_code == 400
        assert call(0.5) not in mock_sleep.call_args_list


class TestDelay:
    """Test response delay simulation."""

    @patch('rulemock.mock.server.asyncio.sleep', new_callable=AsyncMock)
    def test_fixed_delay(self, mock_sleep, repository):
        repository.save_services([make_service([make_rule('/slow', delay=250)])])
        client, _ = make_client(MockEngine(repository))

        client.get('/slow')

        assert call(0.25) in mock_sleep.call_args_list

    def test_compute_delay_range(self):
        with patch('rulemock.mock.server.random.randint', return_value=150) as mock_randint:
            assert compute_delay_ms({'delay': 100, 'delayMax': 200}) == 150
        mock_randint.assert_called_once_with(100, 199)

    def test_compute_delay_without_range(self):
        assert compute_delay_ms({'delay': 100, 'delayMax': 50}) == 100
        assert compute_delay_ms({'delay': 'soon'}) == 0
        assert compute_delay_ms({}) == 0


class TestRequestView:
    """Test the request data handed to scripts."""

    def test_json_body(self, engine):
        client, _ = make_client(engine)

        data = client.post('/echo', json={'name': 'Ann'}).json()

        assert data['body'] == {'name': 'Ann'}
        assert data['method'] == 'POST'

    def test_malformed_json_stays_text(self, engine):
        client, _ = make_client(engine)

        data = client.post('/echo', content=b'{oops', headers={'Content-Type': 'application/json'}).json()

        assert data['body'] == '{oops'

    def test_form_body(self, engine):
        client, _ = make_client(engine)

        data = client.post('/echo', data={'a': '1', 'b': '2'}).json()

        assert data['body'] == {'a': '1', 'b': '2'}

    def test_text_body(self, engine):
        client, _ = make_client(engine)

        data = client.post('/echo', content=b'hello', headers={'Content-Type': 'text/plain'}).json()

        assert data['body'] == 'hello'

    def test_other_content_type_is_empty(self, engine):
        client, _ = make_client(engine)

        data = client.post('/echo', content=b'\x00\x01', headers={'Content-Type': 'application/octet-stream'}).json()

        assert data['body'] == {}

    def test_repeated_query_is_list(self, engine):
        client, _ = make_client(engine)

        data = client.get('/users/1?tag=a&tag=b&page=2').json()

        assert data['query'] == {'tag': ['a', 'b'], 'page': '2'}

    def test_full_path_given_to_scripts(self, engine):
        client, _ = make_client(engine, prefix='/api')

        assert client.get('/api/users/5').json()['path'] == '/api/users/5'


class TestErrors:
    """Test per-request error isolation."""

    def test_missing_main_is_500(self, engine):
        client, _ = make_client(engine)

        response = client.get('/broken')

        assert response.status_code == 500
        assert 'main is not defined' in response.json()['error']

    def test_unexpected_error_is_500_and_listener_survives(self, engine):
        client, listener = make_client(engine)

        with patch.object(engine.resolver, 'respond', side_effect=RuntimeError('boom')):
            response = client.get('/ping')

        assert response.status_code == 500
        assert response.json() == {'error': 'Internal mock error: boom'}
        assert listener.metrics.errors == 1
        assert client.get('/ping').text == 'pong'


class TestMetricsAndLog:
    """Test per-listener metrics and the request log."""

    def test_metrics_track_requests(self, engine):
        client, listener = make_client(engine)

        client.get('/ping')
        client.get('/nothing')
        client.get('/secure')

        assert listener.metrics.total_requests == 3
        assert listener.metrics.matched_requests == 2
        assert listener.metrics.unmatched_requests == 1
        assert listener.metrics.validation_failures == 1

    def test_request_log_bounded(self, repository, service):
        repository.save_services([service])
        client, listener = make_client(MockEngine(repository, MockConfig(request_log_limit=2)))

        for _ in range(3):
            client.get('/ping')
        client.get('/users/me')

        entries = list(listener.request_log)
        assert len(entries) == 2
        assert entries[-1]['url'].endswith('/users/me')
        assert entries[-1]['status'] == 200
        assert entries[-1]['mode'] == 'mock'
        assert entries[-1]['ruleName'] == 'GET /users/me'

    def test_liveness_not_logged(self, engine):
        client, listener = make_client(engine)

        client.get('/')

        assert listener.metrics.total_requests == 0
        assert len(listener.request_log) == 0

    def test_verbose_mode_prints(self, repository, service, capsys):
        repository.save_services([service])
        client, _ = make_client(MockEngine(repository, MockConfig(verbose_mode=True)))

        client.get('/ping')

        assert 'GET http://testserver/ping -> 200' in capsys.readouterr().out
