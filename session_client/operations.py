"""
Queued tournament mutations.

Each OperationKind has exactly one payload dataclass, and OperationApplier has
exactly one handler per kind. Round data is carried through untouched: it is
produced by the pairing engine and only ever written back as a whole.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any, Dict, List, Type

from shared.errors import MalformedOperationError, RemoteError, UnknownOperationError

logger = logging.getLogger(__name__)

SESSIONS_TABLE = 'game_sessions'
PLAYERS_TABLE = 'players'
EVENT_LOG_TABLE = 'event_history'


class OperationKind(str, Enum):
    UPDATE_SCORE = "UPDATE_SCORE"
    GENERATE_ROUND = "GENERATE_ROUND"
    REGENERATE_ROUND = "REGENERATE_ROUND"
    UPDATE_PLAYER_STATUS = "UPDATE_PLAYER_STATUS"
    REASSIGN_PLAYER = "REASSIGN_PLAYER"


@dataclass
class UpdateScorePayload:
    round_index: int
    match_index: int
    team1_score: int
    team2_score: int
    updated_rounds: List[Any]
    description: str = ""


@dataclass
class GenerateRoundPayload:
    updated_rounds: List[Any]
    current_round: int
    description: str = ""


@dataclass
class RegenerateRoundPayload:
    updated_rounds: List[Any]
    description: str = ""


@dataclass
class UpdatePlayerStatusPayload:
    player_id: str
    new_status: str
    description: str = ""


@dataclass
class ReassignPlayerPayload:
    old_player_id: str
    new_player_id: str
    updated_rounds: List[Any]
    description: str = ""


PAYLOAD_TYPES: Dict[OperationKind, Type] = {
    OperationKind.UPDATE_SCORE: UpdateScorePayload,
    OperationKind.GENERATE_ROUND: GenerateRoundPayload,
    OperationKind.REGENERATE_ROUND: RegenerateRoundPayload,
    OperationKind.UPDATE_PLAYER_STATUS: UpdatePlayerStatusPayload,
    OperationKind.REASSIGN_PLAYER: ReassignPlayerPayload,
}


def parse_kind(value) -> OperationKind:
    if isinstance(value, OperationKind):
        return value
    try:
        return OperationKind(value)
    except ValueError:
        raise UnknownOperationError(str(value))


def build_payload(kind: OperationKind, payload):
    """Accept a payload instance or a plain dict and return the typed payload."""
    payload_type = PAYLOAD_TYPES[kind]
    if isinstance(payload, payload_type):
        return payload
    if not isinstance(payload, dict):
        raise MalformedOperationError(f"{kind.value} payload must be a mapping")

    known = {f.name for f in fields(payload_type)}
    try:
        return payload_type(**{k: v for k, v in payload.items() if k in known})
    except TypeError as e:
        raise MalformedOperationError(f"Invalid {kind.value} payload: {e}")


def new_operation_id() -> str:
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class QueuedOperation:
    kind: OperationKind
    target_id: str
    payload: Any
    id: str = field(default_factory=new_operation_id)
    enqueued_at: float = field(default_factory=time.time)
    attempt: int = 0

    @classmethod
    def create(cls, kind, target_id: str, payload) -> "QueuedOperation":
        kind = parse_kind(kind)
        return cls(kind=kind, target_id=target_id, payload=build_payload(kind, payload))

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'type': self.kind.value,
            'sessionId': self.target_id,
            'data': asdict(self.payload),
            'timestamp': int(self.enqueued_at * 1000),
            'retryCount': self.attempt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedOperation":
        try:
            kind = parse_kind(data['type'])
            return cls(
                kind=kind,
                target_id=data['sessionId'],
                payload=build_payload(kind, data.get('data') or {}),
                id=data['id'],
                enqueued_at=float(data.get('timestamp') or 0) / 1000.0,
                attempt=int(data.get('retryCount') or 0),
            )
        except KeyError as e:
            raise MalformedOperationError(f"Queued operation is missing field {e}")
        except (TypeError, ValueError) as e:
            raise MalformedOperationError(f"Queued operation has an unreadable field: {e}")


class OperationApplier:
    """Applies one queued operation to the remote data service."""

    def __init__(self, remote):
        self.remote = remote
        self._handlers = {
            OperationKind.UPDATE_SCORE: self._update_score,
            OperationKind.GENERATE_ROUND: self._generate_round,
            OperationKind.REGENERATE_ROUND: self._regenerate_round,
            OperationKind.UPDATE_PLAYER_STATUS: self._update_player_status,
            OperationKind.REASSIGN_PLAYER: self._reassign_player,
        }

    def apply(self, operation: QueuedOperation):
        handler = self._handlers.get(operation.kind)
        if handler is None:
            raise UnknownOperationError(getattr(operation.kind, 'value', str(operation.kind)))
        handler(operation.target_id, operation.payload)

    __call__ = apply

    def _log_event(self, session_id: str, event_type: str, description: str, player_id: str = None):
        # Event log writes are best effort: logged, never raised.
        row = {
            'session_id': session_id,
            'event_type': event_type,
            'description': description,
        }
        if player_id:
            row['player_id'] = player_id
        try:
            self.remote.insert(EVENT_LOG_TABLE, row)
        except RemoteError as e:
            logger.warning(f"Failed to log {event_type} for session {session_id}: {e}")

    def _update_score(self, session_id: str, payload: UpdateScorePayload):
        self.remote.update(SESSIONS_TABLE, {'round_data': payload.updated_rounds}, id=session_id)
        self._log_event(session_id, 'score_updated', payload.description)

    def _generate_round(self, session_id: str, payload: GenerateRoundPayload):
        self.remote.update(SESSIONS_TABLE, {
            'round_data': payload.updated_rounds,
            'current_round': payload.current_round,
        }, id=session_id)
        self._log_event(session_id, 'round_generated', payload.description)

    def _regenerate_round(self, session_id: str, payload: RegenerateRoundPayload):
        self.remote.update(SESSIONS_TABLE, {'round_data': payload.updated_rounds}, id=session_id)
        self._log_event(session_id, 'round_generated', payload.description)

    def _update_player_status(self, session_id: str, payload: UpdatePlayerStatusPayload):
        self.remote.update(PLAYERS_TABLE, {'status': payload.new_status}, id=payload.player_id)
        self._log_event(session_id, 'player_status_changed', payload.description,
                        player_id=payload.player_id)

    def _reassign_player(self, session_id: str, payload: ReassignPlayerPayload):
        self.remote.update(SESSIONS_TABLE, {'round_data': payload.updated_rounds}, id=session_id)
        self._log_event(session_id, 'player_reassigned', payload.description)
