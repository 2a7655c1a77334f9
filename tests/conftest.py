"""
Pytest configuration and fixtures for session client tests.
"""
import os
import sys
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from session_client.app import create_app, shutdown_services
from session_client.connectivity import ConnectivityMonitor
from session_client.devices import DeviceInfo, DeviceRegistry
from session_client.offline_queue import OfflineQueue
from session_client.operations import OperationKind
from session_client.provisioning import ProvisioningSaga, SagaPolicies
from session_client.remote import Identity
from session_client.storage import MemoryStore


class FakeTimer:
    """Stands in for threading.Timer; fire() runs the callback synchronously."""

    created = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function()


@pytest.fixture
def mock_remote(mocker):
    """Remote data service double with an empty device table and no stored session."""
    remote = mocker.MagicMock()
    remote.get_session.return_value = None
    remote.select.return_value = []
    remote.select_one.return_value = None
    remote.insert.return_value = {'id': 'row-1'}
    remote.update.return_value = []
    remote.authorize_url.return_value = 'https://remote.test/auth/v1/authorize?provider=google'
    return remote


@pytest.fixture
def app(mock_remote):
    """Create application for testing."""
    app = create_app('testing', remote=mock_remote)
    yield app
    shutdown_services(app)


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def connectivity():
    """Connectivity monitor without a probe; tests flip it with set_online()."""
    return ConnectivityMonitor(probe_url=None, initial_online=True)


@pytest.fixture
def applier(mocker):
    return mocker.MagicMock()


@pytest.fixture
def sleeps():
    """Records every backoff delay instead of sleeping."""
    return []


@pytest.fixture
def make_queue(memory_store, connectivity, applier, sleeps):
    """Factory for queues sharing one store (a second call simulates a restart)."""
    created = []

    def factory(**kwargs):
        kwargs.setdefault('base_delay', 1.0)
        kwargs.setdefault('sleep', sleeps.append)
        kwargs.setdefault('timer_factory', FakeTimer)
        queue = OfflineQueue(
            kwargs.pop('store', memory_store),
            kwargs.pop('connectivity', connectivity),
            kwargs.pop('applier', applier),
            **kwargs
        )
        created.append(queue)
        return queue

    yield factory
    for queue in created:
        queue.cleanup()
    FakeTimer.created.clear()


@pytest.fixture
def queue(make_queue):
    queue = make_queue()
    queue.initialize()
    return queue


@pytest.fixture
def score_payload():
    return {
        'round_index': 0,
        'match_index': 1,
        'team1_score': 11,
        'team2_score': 7,
        'updated_rounds': [{'matches': [{'team1': ['p1', 'p2'], 'team2': ['p3', 'p4']}]}],
        'description': 'Court 2: 11-7',
    }


@pytest.fixture
def enqueue_scores(queue, score_payload):
    def factory(count, session_id='session-1'):
        return [
            queue.enqueue(OperationKind.UPDATE_SCORE, session_id, dict(score_payload, match_index=i))
            for i in range(count)
        ]
    return factory


@pytest.fixture
def device_info():
    return DeviceInfo(platform='android', vendor_id='test-vendor-id', model='Pixel 8', os_version='14')


@pytest.fixture
def device_registry(mock_remote, device_info):
    return DeviceRegistry(mock_remote, device_info, limit=3)


@pytest.fixture
def identity():
    return Identity(
        user_id='user-123',
        email='player@example.com',
        access_token='access-token',
        refresh_token='refresh-token'
    )


@pytest.fixture
def saga(mock_remote, device_registry, sleeps):
    return ProvisioningSaga(
        mock_remote,
        device_registry,
        policies=SagaPolicies.with_base_delay(1.0),
        sleep=sleeps.append,
        completion_delay=0.0
    )


@pytest.fixture
def device_rows():
    """Three active devices, none of them the current one."""
    return [
        {'id': f'device-{i}', 'device_name': f'Phone {i}', 'device_model': f'Model {i}',
         'device_fingerprint': f'fingerprint-{i}', 'platform': 'android',
         'last_active_at': f'2024-01-0{i}T00:00:00+00:00', 'is_active': True}
        for i in (3, 2, 1)
    ]
