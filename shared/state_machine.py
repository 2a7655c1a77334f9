from enum import Enum
from typing import Optional, Callable, List, Dict
from dataclasses import dataclass

from .events import SignUpProgress


class SignUpState(str, Enum):
    IDLE = "idle"
    CREATING_IDENTITY = "creating_identity"
    CREATING_PROFILE = "creating_profile"
    CREATING_SETTINGS = "creating_settings"
    REGISTERING_DEVICE = "registering_device"
    COMPLETE = "complete"
    FAILED = "failed"


class AdmissionState(str, Enum):
    EVALUATING = "evaluating"
    ADMITTED = "admitted"
    SUSPENDED = "suspended"
    DISMISSED = "dismissed"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: Enum
    to_state: Enum
    action: str
    guard: Optional[Callable] = None


class StateMachine:
    """Table-driven state machine; subclasses provide STATES and TRANSITIONS."""

    STATES = None
    INITIAL = None
    TRANSITIONS: List[Transition] = []

    def __init__(self, initial_state=None):
        self._state = initial_state if initial_state is not None else self.INITIAL
        self._history: List[tuple] = []

    @property
    def state(self):
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return [t.action for t in self.TRANSITIONS if t.from_state == self._state]

    @property
    def is_terminal(self) -> bool:
        return not self.allowed_actions

    def can_transition(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str, guard_context: dict = None):
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and guard_context is not None:
                    if not t.guard(guard_context):
                        raise TransitionError(
                            self._state.value,
                            t.to_state.value,
                            f"Guard condition failed for action '{action}'"
                        )

                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "StateMachine":
        try:
            state = cls.STATES(state_str)
        except ValueError:
            state = cls.INITIAL
        return cls(initial_state=state)


class SignUpStateMachine(StateMachine):
    """
    Idle -> CreatingIdentity -> CreatingProfile -> CreatingSettings
         -> RegisteringDevice -> Complete

    CreatingProfile may instead roll back to the terminal Failed state. The
    settings and device steps continue forward whether they succeed or are
    skipped after exhausting their retries.
    """

    STATES = SignUpState
    INITIAL = SignUpState.IDLE
    TRANSITIONS = [
        Transition(SignUpState.IDLE, SignUpState.CREATING_IDENTITY, "begin"),
        Transition(SignUpState.CREATING_IDENTITY, SignUpState.CREATING_PROFILE, "identity_created"),
        Transition(SignUpState.CREATING_IDENTITY, SignUpState.IDLE, "abort"),
        Transition(SignUpState.CREATING_PROFILE, SignUpState.CREATING_SETTINGS, "profile_created"),
        Transition(SignUpState.CREATING_PROFILE, SignUpState.FAILED, "rollback"),
        Transition(SignUpState.CREATING_SETTINGS, SignUpState.REGISTERING_DEVICE, "settings_created"),
        Transition(SignUpState.CREATING_SETTINGS, SignUpState.REGISTERING_DEVICE, "settings_skipped"),
        Transition(SignUpState.REGISTERING_DEVICE, SignUpState.COMPLETE, "device_registered"),
        Transition(SignUpState.REGISTERING_DEVICE, SignUpState.COMPLETE, "device_skipped"),
        Transition(SignUpState.COMPLETE, SignUpState.IDLE, "reset"),
    ]

    PROGRESS: Dict[SignUpState, SignUpProgress] = {
        SignUpState.IDLE: SignUpProgress.NONE,
        SignUpState.CREATING_IDENTITY: SignUpProgress.CREATING_IDENTITY,
        SignUpState.CREATING_PROFILE: SignUpProgress.CREATING_PROFILE,
        SignUpState.CREATING_SETTINGS: SignUpProgress.CREATING_SETTINGS,
        SignUpState.REGISTERING_DEVICE: SignUpProgress.REGISTERING_DEVICE,
        SignUpState.COMPLETE: SignUpProgress.COMPLETE,
        SignUpState.FAILED: SignUpProgress.NONE,
    }

    @property
    def progress(self) -> SignUpProgress:
        return self.PROGRESS.get(self._state, SignUpProgress.NONE)


def device_limit_guard(limit: int = 3):
    def guard(context: dict) -> bool:
        if context.get("current_device_registered"):
            return True
        return context.get("active_device_count", 0) < limit
    return guard


class AdmissionStateMachine(StateMachine):
    """
    Evaluating -> Admitted | Suspended. A suspended attempt returns to
    Evaluating only when a device is removed, or ends when dismissed.
    """

    STATES = AdmissionState
    INITIAL = AdmissionState.EVALUATING

    def __init__(self, initial_state=None, limit: int = 3):
        super().__init__(initial_state)
        self.limit = limit
        self.TRANSITIONS = [
            Transition(AdmissionState.EVALUATING, AdmissionState.ADMITTED, "admit",
                       guard=device_limit_guard(limit)),
            Transition(AdmissionState.EVALUATING, AdmissionState.SUSPENDED, "suspend"),
            Transition(AdmissionState.SUSPENDED, AdmissionState.EVALUATING, "device_removed"),
            Transition(AdmissionState.SUSPENDED, AdmissionState.DISMISSED, "dismiss"),
        ]

    def evaluate(self, active_device_count: int, current_device_registered: bool = False) -> AdmissionState:
        """Admit when the guard allows it, otherwise suspend."""
        context = {
            "active_device_count": active_device_count,
            "current_device_registered": current_device_registered,
        }
        try:
            return self.transition("admit", guard_context=context)
        except TransitionError:
            if self._state != AdmissionState.EVALUATING:
                raise
            return self.transition("suspend")
