"""
Unit tests for the durable store backends.
"""
import pytest
import redis

from shared.errors import StorageError
from session_client.models import StoredValue, db
from session_client.storage import MemoryStore, RedisStore, SqlStore, create_store


class TestMemoryStore:
    """Tests for the in-process store."""

    def test_set_get_delete(self, memory_store):
        memory_store.set('OFFLINE_QUEUE', '[]')
        assert memory_store.get('OFFLINE_QUEUE') == '[]'

        memory_store.delete('OFFLINE_QUEUE')
        assert memory_store.get('OFFLINE_QUEUE') is None

    def test_delete_missing_key(self, memory_store):
        memory_store.delete('missing')
        assert memory_store.keys() == []

    def test_initial_values(self):
        store = MemoryStore({'AUTH_SESSION': '{}'})
        assert store.get('AUTH_SESSION') == '{}'


class TestRedisStore:
    """Tests for the Redis backend (client mocked)."""

    def test_keys_are_namespaced(self, mocker):
        client = mocker.MagicMock()
        client.get.return_value = '[]'
        store = RedisStore(client, namespace='courtster')

        store.set('OFFLINE_QUEUE', '[]')
        assert store.get('OFFLINE_QUEUE') == '[]'
        store.delete('OFFLINE_QUEUE')

        client.set.assert_called_once_with('courtster:OFFLINE_QUEUE', '[]')
        client.get.assert_called_once_with('courtster:OFFLINE_QUEUE')
        client.delete.assert_called_once_with('courtster:OFFLINE_QUEUE')

    def test_write_failure_raises_storage_error(self, mocker):
        client = mocker.MagicMock()
        client.set.side_effect = redis.ConnectionError("Connection refused")
        store = RedisStore(client)

        with pytest.raises(StorageError) as exc_info:
            store.set('OFFLINE_QUEUE', '[]')
        assert exc_info.value.key == 'OFFLINE_QUEUE'

    def test_read_failure_raises_storage_error(self, mocker):
        client = mocker.MagicMock()
        client.get.side_effect = redis.TimeoutError("timeout")

        with pytest.raises(StorageError):
            RedisStore(client).get('OFFLINE_QUEUE')

    def test_from_url(self, mocker):
        from_url = mocker.patch('session_client.storage.redis.from_url')
        store = RedisStore.from_url('redis://cache:6379')
        from_url.assert_called_once()
        assert store.redis is from_url.return_value


class TestSqlStore:
    """Tests for the SQLAlchemy backend."""

    def test_set_get_update_delete(self, app):
        store = SqlStore(app)

        store.set('OFFLINE_QUEUE', '[]')
        store.set('OFFLINE_QUEUE', '[{"id": "1"}]')
        assert store.get('OFFLINE_QUEUE') == '[{"id": "1"}]'

        with app.app_context():
            assert StoredValue.query.filter_by(key='OFFLINE_QUEUE').count() == 1

        store.delete('OFFLINE_QUEUE')
        assert store.get('OFFLINE_QUEUE') is None

    def test_commit_failure_rolls_back(self, app, mocker):
        store = SqlStore(app)
        mocker.patch.object(db.session, 'commit', side_effect=RuntimeError("database is locked"))

        with pytest.raises(StorageError):
            store.set('OFFLINE_QUEUE', '[]')

    def test_read_failure_raises_storage_error(self, app):
        store = SqlStore(app)
        with app.app_context():
            db.drop_all()

        with pytest.raises(StorageError) as exc_info:
            store.get('OFFLINE_QUEUE')
        assert exc_info.value.key == 'OFFLINE_QUEUE'

    def test_queue_starts_empty_when_table_unreadable(self, app, make_queue):
        store = SqlStore(app)
        with app.app_context():
            db.drop_all()

        queue = make_queue(store=store)
        queue.initialize()

        assert len(queue) == 0

    def test_stored_value_to_dict(self, app):
        store = SqlStore(app)
        store.set('AUTH_SESSION', '{}')
        with app.app_context():
            row = StoredValue.query.filter_by(key='AUTH_SESSION').first()
            assert row.to_dict()['value'] == '{}'


class TestCreateStore:
    """Tests for backend selection."""

    def test_memory_backend(self, app):
        assert isinstance(create_store(app), MemoryStore)

    def test_sql_backend(self, app):
        app.config['STORE_BACKEND'] = 'sql'
        assert isinstance(create_store(app), SqlStore)

    def test_redis_backend(self, app, mocker):
        mocker.patch('session_client.storage.redis.from_url')
        app.config['STORE_BACKEND'] = 'redis'
        assert isinstance(create_store(app), RedisStore)

    def test_unknown_backend(self, app):
        app.config['STORE_BACKEND'] = 'floppy'
        with pytest.raises(ValueError):
            create_store(app)
