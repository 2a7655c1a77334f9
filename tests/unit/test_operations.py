"""
Unit tests for queued operations and the operation applier.
"""
import pytest
from shared.errors import (
    MalformedOperationError, NetworkError, PermanentFailure, UnknownOperationError
)
from session_client.operations import (
    EVENT_LOG_TABLE,
    PLAYERS_TABLE,
    SESSIONS_TABLE,
    GenerateRoundPayload,
    OperationApplier,
    OperationKind,
    QueuedOperation,
    UpdatePlayerStatusPayload,
    UpdateScorePayload,
    build_payload,
    new_operation_id,
    parse_kind
)


class TestParseKind:
    """Tests for operation kind parsing."""

    def test_wire_names(self):
        assert parse_kind('UPDATE_SCORE') == OperationKind.UPDATE_SCORE
        assert parse_kind(OperationKind.REASSIGN_PLAYER) == OperationKind.REASSIGN_PLAYER

    def test_unknown_kind_is_permanent(self):
        """An unrecognized kind should be a permanent failure."""
        with pytest.raises(UnknownOperationError) as exc_info:
            parse_kind('DELETE_EVERYTHING')
        assert isinstance(exc_info.value, PermanentFailure)
        assert exc_info.value.operation_kind == 'DELETE_EVERYTHING'


class TestBuildPayload:
    """Tests for typed payload construction."""

    def test_from_dict(self, score_payload):
        payload = build_payload(OperationKind.UPDATE_SCORE, score_payload)
        assert isinstance(payload, UpdateScorePayload)
        assert payload.team1_score == 11

    def test_unknown_fields_ignored(self):
        payload = build_payload(OperationKind.REGENERATE_ROUND, {'updated_rounds': [], 'extra': 1})
        assert payload.updated_rounds == []

    def test_missing_fields_are_malformed(self):
        with pytest.raises(MalformedOperationError):
            build_payload(OperationKind.UPDATE_PLAYER_STATUS, {'player_id': 'p1'})

    def test_non_mapping_is_malformed(self):
        with pytest.raises(MalformedOperationError):
            build_payload(OperationKind.GENERATE_ROUND, ['not', 'a', 'dict'])

    def test_typed_payload_passes_through(self):
        payload = GenerateRoundPayload(updated_rounds=[], current_round=2)
        assert build_payload(OperationKind.GENERATE_ROUND, payload) is payload


class TestQueuedOperation:
    """Tests for the stored form of queued operations."""

    def test_operation_id_format(self):
        """IDs should be <epoch ms>_<9 hex chars>."""
        millis, suffix = new_operation_id().split('_')
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_create_defaults(self, score_payload):
        op = QueuedOperation.create('UPDATE_SCORE', 'session-1', score_payload)
        assert op.attempt == 0
        assert op.kind == OperationKind.UPDATE_SCORE
        assert op.enqueued_at > 0

    def test_to_dict_uses_stored_keys(self, score_payload):
        op = QueuedOperation.create(OperationKind.UPDATE_SCORE, 'session-1', score_payload)
        data = op.to_dict()
        assert set(data) == {'id', 'type', 'sessionId', 'data', 'timestamp', 'retryCount'}
        assert data['type'] == 'UPDATE_SCORE'
        assert data['sessionId'] == 'session-1'
        assert data['data']['updated_rounds'] == score_payload['updated_rounds']
        assert isinstance(data['timestamp'], int)

    def test_from_dict(self):
        op = QueuedOperation.from_dict({
            'id': '1700000000000_abcdef123',
            'type': 'UPDATE_PLAYER_STATUS',
            'sessionId': 'session-9',
            'data': {'player_id': 'p1', 'new_status': 'sitting_out'},
            'timestamp': 1700000000000,
            'retryCount': 2,
        })
        assert op.attempt == 2
        assert op.enqueued_at == 1700000000.0
        assert isinstance(op.payload, UpdatePlayerStatusPayload)

    def test_from_dict_missing_field(self):
        with pytest.raises(MalformedOperationError):
            QueuedOperation.from_dict({'type': 'UPDATE_SCORE', 'data': {}})

    @pytest.mark.parametrize('field, value', [
        ('retryCount', 'x'),
        ('retryCount', [1]),
        ('timestamp', 'yesterday'),
    ])
    def test_from_dict_unreadable_number(self, field, value):
        data = {
            'id': '1', 'type': 'UPDATE_PLAYER_STATUS', 'sessionId': 's1',
            'data': {'player_id': 'p1', 'new_status': 'active'},
        }
        data[field] = value
        with pytest.raises(MalformedOperationError):
            QueuedOperation.from_dict(data)


class TestOperationApplier:
    """Tests for applying each operation kind remotely."""

    def test_update_score(self, mocker, score_payload):
        remote = mocker.MagicMock()
        op = QueuedOperation.create(OperationKind.UPDATE_SCORE, 'session-1', score_payload)

        OperationApplier(remote)(op)

        remote.update.assert_called_once_with(
            SESSIONS_TABLE, {'round_data': score_payload['updated_rounds']}, id='session-1'
        )
        remote.insert.assert_called_once_with(EVENT_LOG_TABLE, {
            'session_id': 'session-1',
            'event_type': 'score_updated',
            'description': 'Court 2: 11-7',
        })

    def test_generate_round_sets_current_round(self, mocker):
        remote = mocker.MagicMock()
        op = QueuedOperation.create(OperationKind.GENERATE_ROUND, 'session-1',
                                    {'updated_rounds': [{'r': 1}], 'current_round': 1})

        OperationApplier(remote).apply(op)

        remote.update.assert_called_once_with(
            SESSIONS_TABLE, {'round_data': [{'r': 1}], 'current_round': 1}, id='session-1'
        )
        assert remote.insert.call_args.args[1]['event_type'] == 'round_generated'

    def test_regenerate_round(self, mocker):
        remote = mocker.MagicMock()
        op = QueuedOperation.create(OperationKind.REGENERATE_ROUND, 'session-1', {'updated_rounds': []})

        OperationApplier(remote).apply(op)

        assert remote.insert.call_args.args[1]['event_type'] == 'round_generated'

    def test_update_player_status(self, mocker):
        remote = mocker.MagicMock()
        op = QueuedOperation.create(OperationKind.UPDATE_PLAYER_STATUS, 'session-1',
                                    {'player_id': 'p7', 'new_status': 'active', 'description': 'back'})

        OperationApplier(remote).apply(op)

        remote.update.assert_called_once_with(PLAYERS_TABLE, {'status': 'active'}, id='p7')
        event = remote.insert.call_args.args[1]
        assert event['event_type'] == 'player_status_changed'
        assert event['player_id'] == 'p7'

    def test_reassign_player(self, mocker):
        remote = mocker.MagicMock()
        op = QueuedOperation.create(OperationKind.REASSIGN_PLAYER, 'session-1', {
            'old_player_id': 'p1', 'new_player_id': 'p2', 'updated_rounds': [],
        })

        OperationApplier(remote).apply(op)

        assert remote.insert.call_args.args[1]['event_type'] == 'player_reassigned'

    def test_update_failure_propagates(self, mocker, score_payload):
        """A failed primary update should raise and skip the event log."""
        remote = mocker.MagicMock()
        remote.update.side_effect = NetworkError("offline")
        op = QueuedOperation.create(OperationKind.UPDATE_SCORE, 'session-1', score_payload)

        with pytest.raises(NetworkError):
            OperationApplier(remote).apply(op)
        remote.insert.assert_not_called()

    def test_event_log_failure_is_ignored(self, mocker, score_payload):
        """Event log writes should never fail the operation."""
        remote = mocker.MagicMock()
        remote.insert.side_effect = NetworkError("offline")
        op = QueuedOperation.create(OperationKind.UPDATE_SCORE, 'session-1', score_payload)

        OperationApplier(remote).apply(op)

        remote.update.assert_called_once()

    def test_missing_handler_is_permanent(self, mocker, score_payload):
        op = QueuedOperation.create(OperationKind.UPDATE_SCORE, 'session-1', score_payload)
        op.kind = 'LEGACY_KIND'

        with pytest.raises(UnknownOperationError):
            OperationApplier(mocker.MagicMock()).apply(op)
