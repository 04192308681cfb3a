"""
Rule repository.

Reads and writes whole lists of services, WebSocket servers and templates.
Nothing is cached: every call goes to the document store so the running
listeners always see the latest edits.
"""

import logging
import time
from typing import List, Dict, Any, Optional

from .documents import DocumentStore


SERVICES_KEY = 'mock_services_v1'
WS_SERVERS_KEY = 'mock_ws_servers_v1'
TEMPLATES_KEY = 'mock_templates_v1'

logger = logging.getLogger("rulemock.store")


def _example_ws_server() -> Dict[str, Any]:
    now = int(time.time() * 1000)
    return {
        'id': now,
        'name': 'Example WebSocket',
        'port': 8765,
        'path': '/ws',
        'description': 'Replies pong to ping and echoes everything else',
        'onConnectMessage': '{"type": "welcome"}',
        'rules': [
            {
                'id': now + 1,
                'name': 'ping',
                'active': True,
                'matchType': 'exact',
                'matchPattern': 'ping',
                'delay': 0,
                'responseMode': 'basic',
                'responseBasic': 'pong',
                'responseAdvanced': '',
            },
            {
                'id': now + 2,
                'name': 'echo',
                'active': True,
                'matchType': 'any',
                'matchPattern': '',
                'delay': 0,
                'responseMode': 'advanced',
                'responseBasic': '',
                'responseAdvanced': (
                    "def main(req, faker):\n"
                    "    return {'echo': req.message, 'client': req.client_id}\n"
                ),
            },
        ],
        'createdAt': now,
        'updatedAt': now,
    }


class RuleRepository:
    """
    Access to the rule documents.

    Example:
        repo = RuleRepository(JsonFileDocumentStore('rulemock-db.json'))
        services = repo.get_services()
        services[0]['groups'][0]['children'].append(rule)
        repo.save_services(services)
    """

    def __init__(self, store: DocumentStore):
        """
        Initialize repository.

        Args:
            store: Backing document store
        """
        self.store = store

    def _load_list(self, key: str) -> List[Dict[str, Any]]:
        doc = self.store.get(key)
        data = doc.get('data') if doc else None
        return data if isinstance(data, list) else []

    # Services

    def get_services(self) -> List[Dict[str, Any]]:
        """
        Load all services.

        A stored flat list of rules (older layout) is wrapped into a single
        default service with one default group and written back.
        """
        services = self._load_list(SERVICES_KEY)
        if services and isinstance(services[0], dict) and 'url' in services[0]:
            now = int(time.time() * 1000)
            services = [{
                'id': now,
                'name': 'Default service',
                'port': 4000,
                'prefix': '',
                'proxyEnabled': False,
                'proxyTarget': '',
                'groups': [{
                    'id': now + 1,
                    'name': 'Default group',
                    'subPrefix': '',
                    'children': services,
                }],
            }]
            logger.info("Migrated flat rule list into a default service")
            self.save_services(services)
        return services

    def save_services(self, services: List[Dict[str, Any]]) -> None:
        """Replace the stored services list."""
        self.store.put_data(SERVICES_KEY, services)

    def find_service(self, service_id: Any) -> Optional[Dict[str, Any]]:
        """Find a service by id (ids compare as strings)."""
        wanted = str(service_id)
        for service in self.get_services():
            if str(service.get('id')) == wanted:
                return service
        return None

    # WebSocket servers

    def get_ws_servers(self) -> List[Dict[str, Any]]:
        """Load all WebSocket server configs, seeding an example on first read."""
        doc = self.store.get(WS_SERVERS_KEY)
        if doc is None:
            servers = [_example_ws_server()]
            self.save_ws_servers(servers)
            logger.info("Seeded example WebSocket server")
            return servers
        data = doc.get('data')
        return data if isinstance(data, list) else []

    def save_ws_servers(self, servers: List[Dict[str, Any]]) -> None:
        """Replace the stored WebSocket server list."""
        self.store.put_data(WS_SERVERS_KEY, servers)

    def find_ws_server(self, server_id: Any) -> Optional[Dict[str, Any]]:
        """Find a WebSocket server config by id (ids compare as strings)."""
        wanted = str(server_id)
        for server in self.get_ws_servers():
            if str(server.get('id')) == wanted:
                return server
        return None

    # Templates

    def get_templates(self) -> List[Dict[str, Any]]:
        """Load saved response templates."""
        return self._load_list(TEMPLATES_KEY)

    def save_templates(self, templates: List[Dict[str, Any]]) -> None:
        """Replace the stored template list."""
        self.store.put_data(TEMPLATES_KEY, templates)
