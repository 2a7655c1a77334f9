import logging
import os
import time

from flask import Flask, request, jsonify

from shared.errors import (
    AccountCreationFailed, AdmissionDenied, AuthInProgressError, NetworkError,
    PermanentFailure, RemoteConflict, StorageError, ValidationError
)
from shared.events import SyncStatus
from .config import config
from .connectivity import ConnectivityMonitor
from .devices import DeviceInfo, DeviceRegistry
from .models import db
from .offline_queue import OfflineQueue
from .operations import OperationApplier
from .provisioning import ProvisioningSaga, SagaPolicies, SignInStatus
from .remote import RemoteDataService
from .storage import create_store

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, remote: RemoteDataService = None) -> Flask:
    """Application factory for the session client service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    with app.app_context():
        db.create_all()

    # Initialize services
    store = create_store(app)
    if remote is None:
        remote = RemoteDataService(
            app.config['REMOTE_URL'],
            api_key=app.config['REMOTE_API_KEY'],
            timeout=app.config['REMOTE_TIMEOUT'],
            store=store,
            session_key=app.config['AUTH_SESSION_KEY']
        )

    connectivity = ConnectivityMonitor(
        probe_url=app.config['CONNECTIVITY_PROBE_URL'] or None,
        poll_interval=app.config['CONNECTIVITY_POLL_INTERVAL']
    )

    base_delay = app.config['RETRY_BASE_DELAY']
    queue = OfflineQueue(
        store,
        connectivity,
        OperationApplier(remote),
        key=app.config['QUEUE_KEY'],
        max_retries=app.config['QUEUE_MAX_RETRIES'],
        base_delay=base_delay,
        idle_reset_seconds=app.config['SYNC_IDLE_RESET_SECONDS'] or None
    )

    device_info = DeviceInfo.from_config(app.config)
    if not device_info.vendor_id:
        logger.error("DEVICE_VENDOR_ID is not set: sign-in will fail and sign-up will skip device registration")
    devices = DeviceRegistry(
        remote,
        device_info,
        limit=app.config['DEVICE_LIMIT']
    )
    saga = ProvisioningSaga(
        remote,
        devices,
        policies=SagaPolicies.with_base_delay(base_delay),
        sleep=time.sleep,
        completion_delay=app.config['SIGNUP_COMPLETE_DELAY'],
        redirect_uri=app.config['OAUTH_REDIRECT_URI']
    )

    # Store services on app for access in routes
    app.store = store
    app.remote = remote
    app.connectivity = connectivity
    app.queue = queue
    app.devices = devices
    app.saga = saga

    queue.initialize()
    saga.restore_session()
    connectivity.start()

    register_error_handlers(app)
    register_api_routes(app)

    logger.info(f"Session client started with {config_name} config")
    return app


def shutdown_services(app: Flask):
    app.connectivity.stop()
    app.queue.cleanup()
    app.saga.cleanup()


def register_error_handlers(app: Flask):

    def _error(error, status, **extra):
        body = {'error': str(error), 'kind': getattr(getattr(error, 'kind', None), 'value', None)}
        body.update(extra)
        return jsonify(body), status

    @app.errorhandler(NetworkError)
    def handle_network_error(error):
        return _error(error, 503)

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return _error(error, error.status or 400)

    @app.errorhandler(RemoteConflict)
    def handle_conflict(error):
        return _error(error, 409)

    @app.errorhandler(PermanentFailure)
    def handle_permanent_failure(error):
        return _error(error, 422)

    @app.errorhandler(AdmissionDenied)
    def handle_admission_denied(error):
        return _error(error, 423, devices=[d.to_dict() for d in error.devices], limit=error.limit)

    @app.errorhandler(AccountCreationFailed)
    def handle_account_creation_failed(error):
        return _error(error, 500, title=error.title, user_id=error.user_id)

    @app.errorhandler(AuthInProgressError)
    def handle_auth_in_progress(error):
        return _error(error, 409, operation=error.operation)

    @app.errorhandler(StorageError)
    def handle_storage_error(error):
        return _error(error, 500, key=error.key)


def _current_user_id(app: Flask) -> str:
    """Signed-in user, or the user whose sign-in is waiting on a free device slot."""
    if app.saga.identity is not None:
        return app.saga.identity.user_id
    pending = app.saga.pending_auth
    if pending is not None and pending.user_id:
        return pending.user_id
    raise ValidationError("Not signed in", status=401)


def register_api_routes(app: Flask):
    """Register API routes."""

    # ==================== Offline queue ====================

    @app.route('/api/v1/queue', methods=['GET'])
    def api_list_queue():
        operations = app.queue.operations()
        current, total = app.queue.progress
        return jsonify({
            'operations': [op.to_dict() for op in operations],
            'count': len(operations),
            'sync_status': (app.queue.sync_status.latest or SyncStatus.IDLE).value,
            'draining': app.queue.is_draining,
            'progress': {'current': current, 'total': total},
        })

    @app.route('/api/v1/queue', methods=['POST'])
    def api_enqueue():
        data = request.json or {}
        if not data.get('type') or not data.get('session_id'):
            return jsonify({'error': 'type and session_id are required'}), 400

        operation_id = app.queue.enqueue(data['type'], data['session_id'], data.get('data') or {})
        return jsonify({'operation_id': operation_id, 'pending': len(app.queue)}), 201

    @app.route('/api/v1/queue/submit', methods=['POST'])
    def api_submit():
        data = request.json or {}
        if not data.get('type') or not data.get('session_id'):
            return jsonify({'error': 'type and session_id are required'}), 400

        result = app.queue.submit(data['type'], data['session_id'], data.get('data') or {})
        return jsonify(result.to_dict()), (200 if result.applied else 202)

    @app.route('/api/v1/queue/drain', methods=['POST'])
    def api_drain():
        result = app.queue.drain()
        return jsonify(result.to_dict())

    @app.route('/api/v1/queue', methods=['DELETE'])
    def api_clear_queue():
        app.queue.clear()
        return jsonify({'message': 'Offline queue cleared'})

    # ==================== Connectivity ====================

    @app.route('/api/v1/connectivity', methods=['GET'])
    def api_get_connectivity():
        return jsonify({'online': app.connectivity.is_online})

    @app.route('/api/v1/connectivity', methods=['POST'])
    def api_report_connectivity():
        data = request.json or {}
        if 'connected' not in data:
            return jsonify({'error': 'connected is required'}), 400

        app.connectivity.set_online(data['connected'], data.get('internet_reachable', True))
        return jsonify({'online': app.connectivity.is_online, 'pending': len(app.queue)})

    # ==================== Auth ====================

    @app.route('/api/v1/auth/sign-up', methods=['POST'])
    def api_sign_up():
        data = request.json or {}
        email = data.get('email')
        password = data.get('password')
        if not email or not password:
            return jsonify({'error': 'email and password are required'}), 400

        identity = app.saga.sign_up(email, password, data.get('display_name'))
        return jsonify({'user_id': identity.user_id, 'email': identity.email}), 201

    def _sign_in_response(result):
        if result.status == SignInStatus.SUSPENDED:
            raise AdmissionDenied(result.devices, app.devices.limit)
        return jsonify(result.to_dict())

    @app.route('/api/v1/auth/sign-in', methods=['POST'])
    def api_sign_in():
        data = request.json or {}
        email = data.get('email')
        password = data.get('password')
        if not email or not password:
            return jsonify({'error': 'email and password are required'}), 400

        return _sign_in_response(app.saga.sign_in(email, password))

    @app.route('/api/v1/auth/oauth/<provider>', methods=['GET'])
    def api_oauth_start(provider: str):
        url = app.saga.oauth_start(provider, request.args.get('redirect_to'))
        return jsonify({'url': url})

    @app.route('/api/v1/auth/oauth/callback', methods=['POST'])
    def api_oauth_callback():
        data = request.json or {}
        if not data.get('url'):
            return jsonify({'error': 'url is required'}), 400

        return _sign_in_response(app.saga.complete_oauth(data['url']))

    @app.route('/api/v1/auth/device-removed', methods=['POST'])
    def api_device_removed():
        result = app.saga.on_device_removed()
        if result is None:
            return jsonify({'message': 'No pending sign in'}), 200
        return _sign_in_response(result)

    @app.route('/api/v1/auth/device-limit/dismiss', methods=['POST'])
    def api_dismiss_device_limit():
        app.saga.dismiss_device_limit()
        return jsonify(app.saga.state())

    @app.route('/api/v1/auth/sign-out', methods=['POST'])
    def api_sign_out():
        app.saga.sign_out()
        return jsonify({'message': 'Signed out'})

    @app.route('/api/v1/auth/state', methods=['GET'])
    def api_auth_state():
        return jsonify(app.saga.state())

    # ==================== Devices ====================

    @app.route('/api/v1/devices', methods=['GET'])
    def api_list_devices():
        user_id = _current_user_id(app)
        devices = app.devices.list_devices(user_id)
        return jsonify({
            'devices': [d.to_dict() for d in devices],
            'count': len(devices),
            'limit': app.devices.limit,
        })

    @app.route('/api/v1/devices/<device_id>', methods=['DELETE'])
    def api_remove_device(device_id: str):
        app.devices.remove_device(device_id, _current_user_id(app))
        return jsonify({'message': 'Device removed'})

    @app.route('/api/v1/devices/<device_id>', methods=['PATCH'])
    def api_rename_device(device_id: str):
        data = request.json or {}
        app.devices.rename_device(device_id, _current_user_id(app), data.get('name'))
        return jsonify({'message': 'Device renamed'})

    # ==================== Health ====================

    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'online': app.connectivity.is_online,
            'pending_operations': len(app.queue),
            'sync_status': (app.queue.sync_status.latest or SyncStatus.IDLE).value,
        })
