"""
Device fingerprinting and the active-device limit.

A device is identified by a SHA-256 of "<platform>-<vendor id>", which stays
stable across OS updates. A user may have at most `limit` active devices; a
device that is already registered is always let back in.
"""
import hashlib
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from shared.errors import NetworkError, RemoteError, ValidationError

logger = logging.getLogger(__name__)

DEVICES_TABLE = 'user_devices'
DEFAULT_DEVICE_LIMIT = 3


class DeviceCheckStatus(str, Enum):
    OK = "OK"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


@dataclass
class DeviceRecord:
    id: str
    display_name: str
    last_active_at: Optional[str] = None
    fingerprint: Optional[str] = None
    platform: Optional[str] = None
    model: Optional[str] = None
    os_version: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: dict) -> "DeviceRecord":
        return cls(
            id=row['id'],
            display_name=row.get('device_name') or row.get('device_model') or 'Unknown Device',
            last_active_at=row.get('last_active_at'),
            fingerprint=row.get('device_fingerprint'),
            platform=row.get('platform'),
            model=row.get('device_model'),
            os_version=row.get('os_version'),
            is_active=row.get('is_active', True),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DeviceCheck:
    status: DeviceCheckStatus
    active_device_count: int
    devices: List[DeviceRecord]
    current_device_registered: bool = False

    @property
    def limit_exceeded(self) -> bool:
        return self.status == DeviceCheckStatus.LIMIT_EXCEEDED


@dataclass
class DeviceInfo:
    """Metadata about the device this client runs on."""
    platform: str
    vendor_id: str
    model: str = 'Unknown Device'
    os_version: str = 'Unknown'

    @property
    def fingerprint(self) -> str:
        return device_fingerprint(self.platform, self.vendor_id)

    @classmethod
    def from_config(cls, config) -> "DeviceInfo":
        return cls(
            platform=config.get('DEVICE_PLATFORM', 'android'),
            vendor_id=config.get('DEVICE_VENDOR_ID', ''),
            model=config.get('DEVICE_MODEL', 'Unknown Device'),
            os_version=config.get('DEVICE_OS_VERSION', 'Unknown'),
        )


def device_fingerprint(platform: str, vendor_id: str) -> str:
    if not vendor_id:
        raise ValidationError("Failed to get device vendor ID")
    return hashlib.sha256(f"{platform}-{vendor_id}".encode('utf-8')).hexdigest()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeviceRegistry:
    def __init__(self, remote, device: DeviceInfo, limit: int = DEFAULT_DEVICE_LIMIT):
        self.remote = remote
        self.device = device
        self.limit = limit

    def list_devices(self, user_id: str) -> List[DeviceRecord]:
        """Active devices for the user, most recently active first."""
        rows = self.remote.select(
            DEVICES_TABLE,
            order='last_active_at.desc',
            user_id=user_id,
            is_active=True
        )
        return [DeviceRecord.from_row(row) for row in rows]

    def check_limit(self, user_id: str) -> DeviceCheck:
        fingerprint = self.device.fingerprint
        devices = self.list_devices(user_id)
        registered = any(d.fingerprint == fingerprint for d in devices)

        if not registered and len(devices) >= self.limit:
            return DeviceCheck(
                status=DeviceCheckStatus.LIMIT_EXCEEDED,
                active_device_count=len(devices),
                devices=devices,
                current_device_registered=False
            )

        return DeviceCheck(
            status=DeviceCheckStatus.OK,
            active_device_count=len(devices),
            devices=devices,
            current_device_registered=registered
        )

    def register_current(self, user_id: str) -> DeviceRecord:
        """Refresh this device's row (reactivating it) or insert a new one."""
        fingerprint = self.device.fingerprint
        existing = self.remote.select_one(
            DEVICES_TABLE,
            user_id=user_id,
            device_fingerprint=fingerprint
        )

        if existing:
            rows = self.remote.update(DEVICES_TABLE, {
                'last_active_at': _now(),
                'os_version': self.device.os_version,
                'is_active': True,
            }, id=existing['id'])
            return DeviceRecord.from_row(rows[0] if rows else existing)

        row = self.remote.insert(DEVICES_TABLE, {
            'user_id': user_id,
            'device_fingerprint': fingerprint,
            'device_name': self.device.model,
            'device_model': self.device.model,
            'platform': self.device.platform,
            'os_version': self.device.os_version,
            'is_active': True,
        })
        return DeviceRecord.from_row(row or {'id': '', 'device_fingerprint': fingerprint})

    def update_activity(self, user_id: str):
        try:
            self.remote.update(
                DEVICES_TABLE,
                {'last_active_at': _now()},
                user_id=user_id,
                device_fingerprint=self.device.fingerprint
            )
        except RemoteError as e:
            logger.warning(f"Failed to update device activity for {user_id}: {e}")

    def remove_device(self, device_id: str, user_id: str):
        """Mark a device inactive; scoped to the owner."""
        self.remote.update(DEVICES_TABLE, {'is_active': False}, id=device_id, user_id=user_id)
        logger.info(f"Device {device_id} removed for user {user_id}")

    def rename_device(self, device_id: str, user_id: str, name: str):
        name = (name or '').strip()
        if not name:
            raise ValidationError("Device name is required")
        self.remote.update(DEVICES_TABLE, {'device_name': name}, id=device_id, user_id=user_id)

    def validate_session(self, user_id: str) -> bool:
        """
        False when this device was removed or deactivated elsewhere. An
        unreachable service keeps the session.
        """
        try:
            row = self.remote.select_one(
                DEVICES_TABLE,
                columns='is_active',
                user_id=user_id,
                device_fingerprint=self.device.fingerprint
            )
        except NetworkError as e:
            logger.warning(f"Could not validate device session for {user_id}, keeping it: {e}")
            return True
        except RemoteError as e:
            logger.error(f"Error validating device session for {user_id}: {e}")
            return False
        return bool(row and row.get('is_active'))
