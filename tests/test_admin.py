"""
Tests for the rulemock admin API

Tests:
- Document endpoints (services, templates, ws servers)
- Service start/stop/status/logs over real sockets
- WebSocket server lifecycle endpoints
- Error mapping for lifecycle failures
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from rulemock.admin import AdminServer, create_admin_app

from conftest import make_rule, make_service


@pytest.fixture
def admin(repository):
    repository.save_services([
        make_service([make_rule('/ping', responseType='text/plain', responseBasic='pong')], port=0)
    ])
    repository.save_ws_servers([{
        'id': 7, 'name': 'ws', 'port': 0, 'path': '/ws', 'onConnectMessage': '',
        'rules': [{'matchType': 'any', 'responseBasic': 'ok'}],
    }])
    return AdminServer(repository)


class TestDocuments:
    """Test document endpoints."""

    def test_get_and_replace_services(self, admin):
        client = TestClient(admin.app)

        assert client.get('/_admin/services').json()[0]['id'] == 1

        response = client.post('/_admin/services', json={'services': [make_service(id=2)]})
        assert response.json() == {'status': 'saved', 'count': 1}
        assert [s['id'] for s in client.get('/_admin/services').json()] == [2]

    def test_bare_list_accepted(self, admin):
        client = TestClient(admin.app)

        assert client.post('/_admin/services', json=[make_service(id=3)]).status_code == 200

    def test_invalid_services_payload(self, admin):
        client = TestClient(admin.app)

        response = client.post('/_admin/services', json={'nope': 1})

        assert response.status_code == 400
        assert response.json() == {'error': 'Expected a list of services'}

    def test_templates(self, admin):
        client = TestClient(admin.app)

        client.post('/_admin/templates', json=[{'id': 1, 'name': 'user'}])

        assert client.get('/_admin/templates').json() == [{'id': 1, 'name': 'user'}]

    def test_ws_servers_seeded_on_empty_store(self):
        from rulemock.store import MemoryDocumentStore, RuleRepository

        client = TestClient(create_admin_app(RuleRepository(MemoryDocumentStore())))

        servers = client.get('/_admin/ws/servers').json()
        assert servers[0]['path'] == '/ws'

    def test_info(self, admin):
        data = TestClient(admin.app).get('/_admin/info').json()

        assert data['adminPort'] == 3000
        assert data['localIp']


class TestServiceLifecycle:
    """Test service endpoints."""

    def test_start_status_logs_stop(self, admin):
        with TestClient(admin.app) as client:
            started = client.post('/_admin/service/start', json={'serviceId': 1}).json()
            port = started['port']
            assert started['status'] == 'started'

            assert httpx.get(f'http://127.0.0.1:{port}/ping', trust_env=False).text == 'pong'

            assert client.get('/_admin/service/status').json() == {
                '1': {'running': True, 'port': port, 'prefix': ''}
            }

            logs = client.get('/_admin/service/1/logs').json()
            assert logs['total'] == 1
            assert logs['requests'][0]['status'] == 200

            metrics = client.get('/_admin/service/1/metrics').json()
            assert metrics['matched_requests'] == 1

            assert client.post('/_admin/service/stop', json={'serviceId': 1}).json()['status'] == 'stopped'
            assert client.post('/_admin/service/stop', json={'serviceId': 1}).json()['status'] == 'not_running'
            assert client.get('/_admin/service/1/logs').status_code == 404

    def test_start_with_prefix_override(self, admin):
        with TestClient(admin.app) as client:
            port = client.post('/_admin/service/start', json={'serviceId': 1, 'prefix': '/api'}).json()['port']

            assert httpx.get(f'http://127.0.0.1:{port}/api/ping', trust_env=False).text == 'pong'
            assert client.get('/_admin/service/status').json()['1']['prefix'] == '/api'

    def test_start_unknown_service(self, admin):
        client = TestClient(admin.app)

        response = client.post('/_admin/service/start', json={'serviceId': 404})

        assert response.status_code == 404
        assert response.json() == {'error': 'Service 404 not found'}

    def test_start_requires_service_id(self, admin):
        response = TestClient(admin.app).post('/_admin/service/start', json={})

        assert response.status_code == 400
        assert response.json() == {'error': 'Missing field: serviceId'}

    def test_check_port(self, admin):
        import socket

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('0.0.0.0', 0))
        sock.listen()
        port = sock.getsockname()[1]
        client = TestClient(admin.app)
        try:
            assert client.post('/_admin/service/check', json={'port': port}).json() == {
                'port': port, 'available': False
            }
        finally:
            sock.close()

    def test_autostart(self, repository):
        repository.save_services([make_service(port=0)])
        repository.save_ws_servers([])
        admin = AdminServer(repository, autostart=True)

        with TestClient(admin.app):
            assert '1' in admin.manager.status()

        assert admin.manager.status() == {}


class TestWsLifecycle:
    """Test WebSocket server endpoints."""

    def test_start_status_logs_stop(self, admin):
        with TestClient(admin.app) as client:
            started = client.post('/_admin/ws/start', json={'serverId': 7}).json()
            assert started['status'] == 'started'
            assert started['path'] == '/ws'

            assert client.get('/_admin/ws/status').json()['7']['running'] is True
            assert client.get('/_admin/ws/7/clients').json() == []
            assert client.post('/_admin/ws/7/broadcast', json={'message': 'hi'}).json() == {
                'status': 'sent', 'clients': 0
            }

            missing = client.post('/_admin/ws/7/send', json={'clientId': 'nobody', 'message': 'x'})
            assert missing.status_code == 404

            logs = client.get('/_admin/ws/7/logs').json()
            assert logs[0]['message'].startswith('Server started on port')
            assert client.get('/_admin/ws/7/logs', params={'since': logs[-1]['timestamp']}).json() == []

            assert client.delete('/_admin/ws/7/logs').json() == {'status': 'cleared'}
            assert client.get('/_admin/ws/7/logs').json() == []

            assert client.post('/_admin/ws/stop', json={'serverId': 7}).json()['status'] == 'stopped'

            response = client.post('/_admin/ws/7/broadcast', json={'message': 'hi'})
            assert response.status_code == 409
            assert 'not running' in response.json()['error']

    def test_start_unknown_ws_server(self, admin):
        response = TestClient(admin.app).post('/_admin/ws/start', json={'serverId': 99})

        assert response.status_code == 404
