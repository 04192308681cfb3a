"""
Tests for the HTTP listener manager

These tests bind real sockets on localhost and drive listeners with httpx.
"""

import asyncio
import socket

import httpx
import pytest

from rulemock.mock import LifecycleError, MockServerManager

from conftest import make_rule, make_service


@pytest.fixture
def manager(repository):
    repository.save_services([make_service([make_rule('/ping', responseType='text/plain', responseBasic='pong')])])
    return MockServerManager(repository)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('0.0.0.0', 0))
        return sock.getsockname()[1]


async def fetch(port: int, path: str) -> httpx.Response:
    async with httpx.AsyncClient(trust_env=False) as client:
        return await client.get(f'http://127.0.0.1:{port}{path}')


class TestLifecycle:
    """Test start/stop/status."""

    def test_start_serve_stop(self, manager):
        async def scenario():
            port = await manager.start('1', 0, '')
            try:
                response = await fetch(port, '/ping')
                assert response.status_code == 200
                assert response.text == 'pong'
                assert manager.status() == {'1': {'running': True, 'port': port, 'prefix': ''}}
            finally:
                assert await manager.stop('1') is True

            assert await manager.stop('1') is False
            assert manager.status() == {}

        asyncio.run(scenario())

    def test_same_port_updates_prefix_only(self, manager):
        async def scenario():
            port = await manager.start('1', 0, '')
            listener = manager.get_listener('1')
            try:
                assert await manager.start('1', port, 'api/') == port
                assert manager.get_listener('1') is listener
                assert listener.prefix == '/api'

                assert (await fetch(port, '/api/ping')).text == 'pong'
                assert (await fetch(port, '/ping')).status_code == 404
            finally:
                await manager.stop_all()

        asyncio.run(scenario())

    def test_port_zero_keeps_running_listener(self, manager):
        async def scenario():
            port = await manager.start('1', 0, '')
            listener = manager.get_listener('1')
            try:
                assert await manager.start('1', 0, '/v2') == port
                assert manager.get_listener('1') is listener
                assert (await fetch(port, '/v2/ping')).text == 'pong'
            finally:
                await manager.stop_all()

        asyncio.run(scenario())

    def test_different_port_rebinds(self, manager):
        async def scenario():
            first = await manager.start('1', 0, '')
            try:
                second = await manager.start('1', free_port(), '')
                assert second != first
                assert manager.status()['1']['port'] == second
                assert (await fetch(second, '/ping')).text == 'pong'
                with pytest.raises(httpx.ConnectError):
                    await fetch(first, '/ping')
            finally:
                await manager.stop_all()

        asyncio.run(scenario())

    def test_restart_on_same_port_after_stop(self, manager):
        async def scenario():
            port = await manager.start('1', 0, '')
            assert (await fetch(port, '/ping')).text == 'pong'
            await manager.stop('1')

            assert await manager.start('1', port, '') == port
            try:
                assert (await fetch(port, '/ping')).text == 'pong'
            finally:
                await manager.stop_all()

        asyncio.run(scenario())

    def test_port_in_use_raises(self, manager):
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(('0.0.0.0', 0))
        holder.listen()
        port = holder.getsockname()[1]

        async def scenario():
            with pytest.raises(LifecycleError) as exc_info:
                await manager.start('1', port, '')
            assert exc_info.value.status_code == 409
            assert manager.status() == {}

        try:
            asyncio.run(scenario())
        finally:
            holder.close()

    def test_listeners_are_independent(self, repository):
        repository.save_services([
            make_service([make_rule('/who', responseType='text/plain', responseBasic='one')], id=1),
            make_service([make_rule('/who', responseType='text/plain', responseBasic='two')], id=2),
        ])
        manager = MockServerManager(repository)

        async def scenario():
            port_one = await manager.start(1, 0, '')
            port_two = await manager.start(2, 0, '')
            try:
                assert (await fetch(port_one, '/who')).text == 'one'
                assert (await fetch(port_two, '/who')).text == 'two'
                await manager.stop(1)
                assert (await fetch(port_two, '/who')).text == 'two'
            finally:
                await manager.stop_all()

        asyncio.run(scenario())
