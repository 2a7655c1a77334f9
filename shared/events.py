from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
import json


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class QueueChange(str, Enum):
    ENQUEUED = "queue.enqueued"
    REMOVED = "queue.removed"
    UPDATED = "queue.updated"
    CLEARED = "queue.cleared"
    LOADED = "queue.loaded"


class SignUpProgress(str, Enum):
    NONE = "none"
    CREATING_IDENTITY = "creatingIdentity"
    CREATING_PROFILE = "creatingProfile"
    CREATING_SETTINGS = "creatingSettings"
    REGISTERING_DEVICE = "registeringDevice"
    COMPLETE = "complete"


class EventType(str, Enum):
    # Queue
    SAVED_OFFLINE = "queue.saved_offline"
    SYNC_COMPLETED = "queue.sync_completed"

    # Sign-up
    SIGN_UP_COMPLETED = "auth.sign_up_completed"
    SIGN_UP_FAILED = "auth.sign_up_failed"
    ACCOUNT_CREATION_FAILED = "auth.account_creation_failed"

    # Sign-in
    SIGN_IN_COMPLETED = "auth.sign_in_completed"
    SIGN_IN_FAILED = "auth.sign_in_failed"
    OAUTH_COMPLETED = "auth.oauth_completed"
    OAUTH_FAILED = "auth.oauth_failed"
    SIGNED_OUT = "auth.signed_out"

    # Admission
    DEVICE_LIMIT_EXCEEDED = "device.limit_exceeded"
    DEVICE_LIMIT_DISMISSED = "device.limit_dismissed"


@dataclass
class Event:
    type: EventType
    title: str = ""
    message: str = ""
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            title=data.get("title", ""),
            message=data.get("message", ""),
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def saved_offline_event(operation_id: str, kind: str, target_id: str) -> Event:
    return Event(
        type=EventType.SAVED_OFFLINE,
        title="Saved offline",
        message="Changes will sync when you're back online",
        data={
            "operation_id": operation_id,
            "kind": kind,
            "target_id": target_id
        }
    )


def sync_completed_event(succeeded: int, failed: int) -> Event:
    if failed:
        title, message = "Sync Failed", f"{failed} operation(s) could not be synced"
    else:
        title, message = "Synced!", f"{succeeded} operation(s) synced successfully"
    return Event(
        type=EventType.SYNC_COMPLETED,
        title=title,
        message=message,
        data={
            "succeeded": succeeded,
            "failed": failed
        }
    )


def device_limit_event(user_id: str, devices: list, limit: int) -> Event:
    return Event(
        type=EventType.DEVICE_LIMIT_EXCEEDED,
        title="Device limit reached",
        message=f"You can be signed in on at most {limit} devices. Remove one to continue.",
        data={
            "user_id": user_id,
            "limit": limit,
            "devices": devices
        }
    )
