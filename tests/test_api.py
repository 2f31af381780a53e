"""Tests for the REST API with a mocked node."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from chunkdrop.api.rest import create_app
from chunkdrop.errors import ChannelClosed
from chunkdrop.node import PeerNode
from chunkdrop.storage.database import TransferDirection, TransferRecord


def make_record(name='a.txt') -> TransferRecord:
    return TransferRecord(id=f"1000-{name}", file_name=name, file_type='text/plain',
                          file_size=5, timestamp=1000, direction=TransferDirection.SENT)


@pytest.fixture
def node():
    """Running, connected mock node."""
    mock_node = MagicMock(spec=PeerNode)
    mock_node.is_running = True
    mock_node.is_connected = True
    mock_node.send_file = AsyncMock(return_value=make_record())
    mock_node.send_chat = AsyncMock()
    mock_node.connect = AsyncMock()
    mock_node.history = AsyncMock(return_value=[make_record('x.txt'), make_record('y.txt')])
    mock_node.chat_history.return_value = [{'sender': 'You', 'message': 'hey'}]
    mock_node.get_status.return_value = {
        'running': True,
        'connected': True,
        'peer': '10.0.0.2:8470',
        'transfer_port': 8470,
        'last_status': 'File sent successfully',
        'sending': None,
        'receiving': None,
    }
    return mock_node


@pytest.fixture
def client(node):
    return TestClient(create_app(node))


class TestWithoutNode:

    def test_root_reports_not_running(self):
        client = TestClient(create_app(None))

        response = client.get('/')

        assert response.status_code == 200
        assert response.json()['status'] == 'not running'

    def test_status_unavailable(self):
        client = TestClient(create_app(None))

        assert client.get('/status').status_code == 503
        assert client.get('/history').status_code == 503


class TestNodeEndpoints:

    def test_status(self, client):
        response = client.get('/status')

        assert response.status_code == 200
        assert response.json()['peer'] == '10.0.0.2:8470'

    def test_connect(self, client, node):
        response = client.post('/connect', json={'host': '10.0.0.2', 'port': 8470})

        assert response.status_code == 200
        node.connect.assert_awaited_once_with('10.0.0.2', 8470)

    def test_connect_bad_port(self, client):
        response = client.post('/connect', json={'host': '10.0.0.2', 'port': 70000})

        assert response.status_code == 400

    def test_connect_refused(self, client, node):
        node.connect.side_effect = ChannelClosed("Could not connect to 10.0.0.2:8470")

        response = client.post('/connect', json={'host': '10.0.0.2', 'port': 8470})

        assert response.status_code == 502


class TestFileEndpoints:

    def test_send_file(self, client, node, tmp_path):
        path = tmp_path / 'a.txt'
        path.write_text('hello')

        response = client.post('/files/send', json={'file_path': str(path)})

        assert response.status_code == 200
        assert response.json()['record']['file_name'] == 'a.txt'
        node.send_file.assert_awaited_once_with(path)

    def test_send_missing_file(self, client, tmp_path):
        response = client.post('/files/send', json={'file_path': str(tmp_path / 'nope')})

        assert response.status_code == 404

    def test_send_directory(self, client, tmp_path):
        response = client.post('/files/send', json={'file_path': str(tmp_path)})

        assert response.status_code == 400

    def test_send_without_peer(self, client, node, tmp_path):
        node.is_connected = False
        path = tmp_path / 'a.txt'
        path.write_text('hello')

        response = client.post('/files/send', json={'file_path': str(path)})

        assert response.status_code == 409

    def test_connection_lost_during_send(self, client, node, tmp_path):
        node.send_file.side_effect = ChannelClosed("Connection closed")
        path = tmp_path / 'a.txt'
        path.write_text('hello')

        response = client.post('/files/send', json={'file_path': str(path)})

        assert response.status_code == 409

    def test_history(self, client):
        response = client.get('/history')

        assert response.status_code == 200
        assert [r['file_name'] for r in response.json()] == ['x.txt', 'y.txt']
        assert response.json()[0]['direction'] == 'sent'


class TestChatEndpoints:

    def test_send_chat(self, client, node):
        response = client.post('/chat', json={'message': 'hello'})

        assert response.status_code == 200
        node.send_chat.assert_awaited_once_with('hello')

    def test_empty_chat(self, client):
        response = client.post('/chat', json={'message': '   '})

        assert response.status_code == 400

    def test_chat_history(self, client):
        response = client.get('/chat')

        assert response.json() == [{'sender': 'You', 'message': 'hey'}]
