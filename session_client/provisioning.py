"""
Account provisioning and session bootstrap.

Sign-up runs as a saga over independent remote writes:

    identity -> profile (critical) -> settings (best effort)
             -> device (best effort) -> complete

A profile that cannot be created after its retries is compensated by signing
the new identity out locally; the remote identity itself is left in place.

Sign-in and OAuth completion pass through device admission control: when the
user already has the maximum number of active devices, the attempt is
suspended, the credentials are kept as PendingAuth and the local session is
dropped until a device is removed (on_device_removed) or the prompt is
dismissed (dismiss_device_limit).
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from shared.channels import Channel
from shared.errors import (
    AccountCreationFailed, AuthInProgressError, NetworkError, ValidationError
)
from shared.events import Event, EventType, SignUpProgress, device_limit_event
from shared.retry import NETWORK_ONLY, RetryPolicy, attempt_with_retry, tolerate_conflict
from shared.state_machine import (
    AdmissionState, AdmissionStateMachine, SignUpStateMachine
)
from .devices import DeviceRecord, DeviceRegistry
from .remote import Identity

logger = logging.getLogger(__name__)

PROFILES_TABLE = 'profiles'
SETTINGS_TABLE = 'user_settings'

DEFAULT_SETTINGS = {
    'animations_enabled': True,
    'notifications_enabled': True,
    'theme': 'system',
}

NETWORK_MESSAGE = 'Network error. Please check your connection and try again.'


def mask_email(email: Optional[str]) -> str:
    if not email or '@' not in email:
        return '***'
    local, domain = email.split('@', 1)
    return f"{local[:2]}***@{domain}"


def extract_oauth_tokens(return_url: str) -> Tuple[str, str]:
    """
    Pull access/refresh tokens from an OAuth return URL. The query string is
    checked first; the fragment only when the query has no access token.
    """
    parts = urlsplit(return_url)

    params = parse_qs(parts.query)
    access_token = (params.get('access_token') or [None])[0]
    refresh_token = (params.get('refresh_token') or [None])[0]

    if not access_token and parts.fragment:
        params = parse_qs(parts.fragment)
        access_token = (params.get('access_token') or [None])[0]
        refresh_token = (params.get('refresh_token') or [None])[0]

    if not access_token or not refresh_token:
        raise ValidationError("No authentication tokens received. Please try again.")
    return access_token, refresh_token


@dataclass
class PendingAuth:
    """Credentials of a sign-in suspended by the device limit (memory only)."""
    email: str
    password: str = field(default='', repr=False)
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    user_id: Optional[str] = None

    @property
    def is_oauth(self) -> bool:
        return bool(self.access_token)


class SignInStatus(str, Enum):
    ADMITTED = "admitted"
    SUSPENDED = "suspended"


@dataclass
class SignInResult:
    status: SignInStatus
    identity: Optional[Identity] = None
    devices: List[DeviceRecord] = field(default_factory=list)

    @property
    def show_device_modal(self) -> bool:
        return self.status == SignInStatus.SUSPENDED

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'user_id': self.identity.user_id if self.identity else None,
            'show_device_modal': self.show_device_modal,
            'devices': [d.to_dict() for d in self.devices],
        }


def _policy(max_retries: int, retry_on=None):
    return field(default_factory=lambda: RetryPolicy(max_retries, 1.0, retry_on))


@dataclass
class SagaPolicies:
    authenticate: RetryPolicy = _policy(2, NETWORK_ONLY)
    identity: RetryPolicy = _policy(2, NETWORK_ONLY)
    profile: RetryPolicy = _policy(3)
    profile_check: RetryPolicy = _policy(2)
    settings: RetryPolicy = _policy(2)
    device: RetryPolicy = _policy(2)

    @classmethod
    def with_base_delay(cls, base_delay: float) -> "SagaPolicies":
        defaults = cls()
        return cls(
            authenticate=defaults.authenticate.with_base_delay(base_delay),
            identity=defaults.identity.with_base_delay(base_delay),
            profile=defaults.profile.with_base_delay(base_delay),
            profile_check=defaults.profile_check.with_base_delay(base_delay),
            settings=defaults.settings.with_base_delay(base_delay),
            device=defaults.device.with_base_delay(base_delay),
        )


class ProvisioningSaga:
    """
    Owns the sign-up progress marker, the device-limit prompt state and the
    PendingAuth slot. Only one saga operation runs at a time; a concurrent call
    raises AuthInProgressError instead of racing on that state.
    """

    def __init__(
        self,
        remote,
        devices: DeviceRegistry,
        policies: SagaPolicies = None,
        sleep=time.sleep,
        completion_delay: float = 0.5,
        redirect_uri: str = 'courtster://auth/callback',
        timer_factory=threading.Timer
    ):
        self.remote = remote
        self.devices = devices
        self.policies = policies or SagaPolicies()
        self.sleep = sleep
        self.completion_delay = completion_delay
        self.redirect_uri = redirect_uri
        self.timer_factory = timer_factory

        self.progress: Channel[SignUpProgress] = Channel("sign_up_progress")
        self.device_limit: Channel[Event] = Channel("device_limit")
        self.notifications: Channel[Event] = Channel("auth_notifications")

        self.identity: Optional[Identity] = None
        self.pending_auth: Optional[PendingAuth] = None
        self.show_device_modal = False
        self.device_modal_devices: List[DeviceRecord] = []
        self.admission: Optional[AdmissionStateMachine] = None

        self._sign_up_machine: Optional[SignUpStateMachine] = None
        self._flight = threading.Lock()
        self._completion_timer = None

    @contextmanager
    def _single_flight(self, operation: str):
        if not self._flight.acquire(blocking=False):
            logger.warning(f"Rejected concurrent {operation}: another auth request is running")
            raise AuthInProgressError(operation)
        try:
            yield
        finally:
            self._flight.release()

    @property
    def sign_up_progress(self) -> SignUpProgress:
        if self._sign_up_machine is None:
            return SignUpProgress.NONE
        return self._sign_up_machine.progress

    def _advance(self, action: str):
        machine = self._sign_up_machine
        machine.transition(action)
        self.progress.publish(machine.progress)

    def _notify(self, event_type: EventType, title: str, message: str, **data):
        self.notifications.publish(Event(type=event_type, title=title, message=message, data=data))

    def _notify_failure(self, event_type: EventType, title: str, error: Exception):
        message = NETWORK_MESSAGE if isinstance(error, NetworkError) else (str(error) or 'Please try again.')
        self._notify(event_type, title, message, error=type(error).__name__)

    def _sign_out_locally(self):
        self.identity = None
        try:
            self.remote.sign_out(scope='local')
        except Exception as e:
            logger.error(f"Error during local sign out: {e}")

    # ==================== Sign-up ====================

    def sign_up(self, email: str, password: str, display_name: str = None) -> Identity:
        with self._single_flight('sign_up'):
            return self._sign_up(email, password, display_name)

    def _sign_up(self, email: str, password: str, display_name: str = None) -> Identity:
        logger.info(f"Sign up attempt started for {mask_email(email)}")
        self._cancel_completion_timer()
        self._sign_up_machine = SignUpStateMachine()
        self._advance('begin')

        try:
            identity = self._create_identity(email, password, display_name)
        except Exception as error:
            self._advance('abort')
            self._notify_failure(EventType.SIGN_UP_FAILED, 'Sign Up Failed', error)
            logger.error(f"Sign up failed for {mask_email(email)}: {error}")
            raise

        self.identity = identity
        logger.info(f"Identity {identity.user_id} created for {mask_email(email)}")
        self._advance('identity_created')

        profile = {
            'id': identity.user_id,
            'email': identity.email or email,
            'display_name': display_name or None,
            'username': (identity.email or email).split('@')[0],
        }
        if not self._insert_profile(profile):
            self._roll_back(identity)
        self._advance('profile_created')

        settings_created = self._create_settings(identity.user_id)
        self._advance('settings_created' if settings_created else 'settings_skipped')

        device_registered = self._register_device(identity.user_id)
        self._advance('device_registered' if device_registered else 'device_skipped')

        logger.info(
            f"Sign up completed for {identity.user_id} "
            f"(settings={'ok' if settings_created else 'skipped'}, "
            f"device={'ok' if device_registered else 'skipped'})"
        )
        self._notify(EventType.SIGN_UP_COMPLETED, 'Account Created!', 'Welcome to Courtster.',
                     user_id=identity.user_id)

        if self.completion_delay:
            self._schedule_progress_reset(self._sign_up_machine)
        else:
            self._advance('reset')
        return identity

    def _schedule_progress_reset(self, machine: SignUpStateMachine):
        """Leave the marker on complete for completion_delay seconds, then reset it."""
        self._cancel_completion_timer()
        timer = self.timer_factory(self.completion_delay, lambda: self._reset_progress(machine))
        timer.daemon = True
        self._completion_timer = timer
        timer.start()

    def _reset_progress(self, machine: SignUpStateMachine):
        # A newer sign-up owns the marker.
        if self._sign_up_machine is not machine or machine.progress != SignUpProgress.COMPLETE:
            return
        self._completion_timer = None
        self._advance('reset')

    def _cancel_completion_timer(self):
        if self._completion_timer is not None:
            self._completion_timer.cancel()
            self._completion_timer = None

    def cleanup(self):
        self._cancel_completion_timer()

    def _create_identity(self, email: str, password: str, display_name: str = None) -> Identity:
        try:
            return attempt_with_retry(
                lambda: self.remote.sign_up(email, password, {'display_name': display_name}),
                self.policies.identity,
                sleep=self.sleep,
                label='Identity creation'
            )
        except NetworkError as e:
            raise NetworkError(
                'Network error: Unable to create account. '
                'Please check your connection and try again.',
                code=e.code, status=e.status
            ) from e

    def _insert_profile(self, profile: dict) -> bool:
        insert = tolerate_conflict(
            lambda: self.remote.insert(PROFILES_TABLE, profile), 'Profile creation'
        )
        try:
            attempt_with_retry(insert, self.policies.profile, sleep=self.sleep, label='Profile creation')
            return True
        except Exception as e:
            logger.error(f"Profile creation failed after retries for {profile['id']}: {e}")
            return False

    def _roll_back(self, identity: Identity):
        logger.error(f"Rolling back sign up for {identity.user_id}: profile could not be created")
        self._advance('rollback')
        self._sign_out_locally()

        error = AccountCreationFailed(user_id=identity.user_id)
        self._notify(EventType.ACCOUNT_CREATION_FAILED, error.title, error.reason,
                     user_id=identity.user_id)
        raise error

    def _create_settings(self, user_id: str) -> bool:
        row = dict(DEFAULT_SETTINGS, user_id=user_id)
        insert = tolerate_conflict(lambda: self.remote.insert(SETTINGS_TABLE, row), 'Settings creation')
        try:
            attempt_with_retry(insert, self.policies.settings, sleep=self.sleep, label='Settings creation')
            return True
        except Exception as e:
            logger.error(f"Settings creation failed after retries for {user_id}, user can set up later: {e}")
            return False

    def _register_device(self, user_id: str) -> bool:
        register = tolerate_conflict(
            lambda: self.devices.register_current(user_id), 'Device registration'
        )
        try:
            attempt_with_retry(register, self.policies.device, sleep=self.sleep, label='Device registration')
            return True
        except Exception as e:
            logger.error(f"Device registration failed after retries for {user_id}: {e}")
            return False

    # ==================== Sign-in ====================

    def sign_in(self, email: str, password: str) -> SignInResult:
        with self._single_flight('sign_in'):
            return self._sign_in(email, password)

    def _sign_in(self, email: str, password: str) -> SignInResult:
        logger.info(f"Sign in attempt started for {mask_email(email)}")
        try:
            identity = self._authenticate(email, password)
            result = self._admit(identity, PendingAuth(email=email, password=password))
        except Exception as error:
            self._notify_failure(EventType.SIGN_IN_FAILED, 'Login Failed', error)
            logger.error(f"Sign in failed for {mask_email(email)}: {error}")
            raise

        if result.status == SignInStatus.ADMITTED:
            logger.info(f"Sign in completed for {identity.user_id}")
            self._notify(EventType.SIGN_IN_COMPLETED, 'Welcome back!',
                         'You have successfully logged in.', user_id=identity.user_id)
        return result

    def _authenticate(self, email: str, password: str) -> Identity:
        try:
            return attempt_with_retry(
                lambda: self.remote.sign_in_with_password(email, password),
                self.policies.authenticate,
                sleep=self.sleep,
                label='Sign in'
            )
        except NetworkError as e:
            raise NetworkError(
                'Network error: Unable to sign in. Please check your connection and try again.',
                code=e.code, status=e.status
            ) from e

    def _admit(self, identity: Identity, pending: PendingAuth) -> SignInResult:
        admission = self.admission
        if admission is None or admission.state != AdmissionState.EVALUATING:
            admission = AdmissionStateMachine(limit=self.devices.limit)
            self.admission = admission

        try:
            check = self.devices.check_limit(identity.user_id)
        except Exception as e:
            logger.error(f"Device limit check failed for {identity.user_id}: {e}")
            self._sign_out_locally()
            raise

        state = admission.evaluate(check.active_device_count, check.current_device_registered)
        if state == AdmissionState.SUSPENDED:
            return self._suspend(identity, pending, check.devices)

        self.identity = identity
        self._register_device(identity.user_id)
        return SignInResult(status=SignInStatus.ADMITTED, identity=identity)

    def _suspend(self, identity: Identity, pending: PendingAuth, devices: List[DeviceRecord]) -> SignInResult:
        logger.warning(
            f"Device limit exceeded for {identity.user_id} "
            f"({len(devices)}/{self.devices.limit} active devices), suspending sign in"
        )
        pending.user_id = identity.user_id
        self.pending_auth = pending
        self.device_modal_devices = list(devices)
        self.show_device_modal = True
        self._sign_out_locally()

        self.device_limit.publish(device_limit_event(
            identity.user_id, [d.to_dict() for d in devices], self.devices.limit
        ))
        return SignInResult(status=SignInStatus.SUSPENDED, devices=list(devices))

    def on_device_removed(self) -> Optional[SignInResult]:
        """Replay the suspended sign-in once a device slot was freed."""
        with self._single_flight('device_removed'):
            self.show_device_modal = False
            self.device_modal_devices = []

            pending = self.pending_auth
            if pending is None:
                return None
            self.pending_auth = None

            if self.admission is not None and self.admission.can_transition('device_removed'):
                self.admission.transition('device_removed')

            logger.info(f"Device removed, retrying sign in for {mask_email(pending.email)}")
            if pending.is_oauth:
                return self._complete_oauth(pending.access_token, pending.refresh_token)
            return self._sign_in(pending.email, pending.password)

    def dismiss_device_limit(self):
        self.show_device_modal = False
        self.device_modal_devices = []
        self.pending_auth = None
        if self.admission is not None and self.admission.can_transition('dismiss'):
            self.admission.transition('dismiss')
        self._notify(EventType.DEVICE_LIMIT_DISMISSED, 'Sign in cancelled',
                     'Remove a device to sign in on this one.')

    # ==================== OAuth ====================

    def oauth_start(self, provider: str = 'google', redirect_to: str = None) -> str:
        url = self.remote.authorize_url(
            provider,
            redirect_to or self.redirect_uri,
            {'access_type': 'offline', 'prompt': 'consent'}
        )
        logger.info(f"OAuth sign in started with {provider}")
        return url

    def complete_oauth(self, return_url: str) -> SignInResult:
        with self._single_flight('oauth'):
            try:
                access_token, refresh_token = extract_oauth_tokens(return_url)
            except ValidationError as error:
                logger.error("No tokens found in OAuth callback URL")
                self._notify_failure(EventType.OAUTH_FAILED, 'Google Sign In Failed', error)
                raise
            return self._complete_oauth(access_token, refresh_token)

    def _complete_oauth(self, access_token: str, refresh_token: str) -> SignInResult:
        try:
            identity = self.remote.set_session(access_token, refresh_token)
            if not identity.email:
                self._sign_out_locally()
                raise ValidationError("User email is required for OAuth sign in")

            pending = PendingAuth(
                email=identity.email, access_token=access_token, refresh_token=refresh_token
            )
            result = self._admit(identity, pending)
            if result.status == SignInStatus.SUSPENDED:
                return result

            self._ensure_profile(identity)
        except Exception as error:
            self._notify_failure(EventType.OAUTH_FAILED, 'Google Sign In Failed', error)
            logger.error(f"OAuth sign in failed: {error}")
            raise

        logger.info(f"OAuth sign in completed for {identity.user_id}")
        self._notify(EventType.OAUTH_COMPLETED, 'Welcome!', 'Signed in with Google successfully.',
                     user_id=identity.user_id)
        return result

    def _ensure_profile(self, identity: Identity):
        existing = attempt_with_retry(
            lambda: self.remote.select_one(PROFILES_TABLE, columns='id', id=identity.user_id),
            self.policies.profile_check,
            sleep=self.sleep,
            label='Profile check'
        )
        if existing:
            return

        metadata = identity.user_metadata or {}
        logger.info(f"Creating profile for new OAuth user {identity.user_id}")
        profile = {
            'id': identity.user_id,
            'email': identity.email,
            'display_name': metadata.get('full_name') or None,
            'username': identity.email.split('@')[0] or None,
            'avatar_url': metadata.get('avatar_url') or None,
        }
        if not self._insert_profile(profile):
            self._sign_out_locally()
            raise AccountCreationFailed('Failed to create profile. Please try again.', identity.user_id)

    # ==================== Sign-out ====================

    def sign_out(self):
        with self._single_flight('sign_out'):
            user_id = self.identity.user_id if self.identity else None
            logger.info(f"Sign out started for {user_id}")
            self.remote.sign_out(scope='global')
            self.identity = None
            self.pending_auth = None
            self.show_device_modal = False
            self.device_modal_devices = []
            self._notify(EventType.SIGNED_OUT, 'Signed Out', 'You have been logged out.')

    def restore_session(self) -> Optional[Identity]:
        """
        Pick up a session persisted by a previous process. A session whose
        device was removed from another device is dropped.
        """
        identity = self.remote.get_session()
        if identity is None:
            self.identity = None
            return None

        if not self.devices.validate_session(identity.user_id):
            logger.warning(f"Device no longer active for {identity.user_id}, signing out")
            self._sign_out_locally()
            return None

        self.devices.update_activity(identity.user_id)
        self.identity = identity
        return identity

    def state(self) -> dict:
        return {
            'authenticated': self.identity is not None,
            'user_id': self.identity.user_id if self.identity else None,
            'sign_up_progress': self.sign_up_progress.value,
            'show_device_modal': self.show_device_modal,
            'devices': [d.to_dict() for d in self.device_modal_devices],
            'pending_auth': self.pending_auth is not None,
            'admission': self.admission.state.value if self.admission else None,
        }
