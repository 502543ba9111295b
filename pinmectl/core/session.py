"""Provisioning state machine.

Every function here is pure: it takes a :class:`ProvisioningSession` and an
input (a notification, a fired timer, an orchestrator milestone) and returns
the next session together with the side effects the caller must execute.
Timers are tracked by key on the session so teardown has a single place to
cancel them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

from pinmectl.core.errors import FailureKind, FAILURE_MESSAGES, SessionStateError
from pinmectl.core.model import ProvisioningTimings
from pinmectl.core.protocol import Notification, NotificationKind, wifi_set_command

LOGGER = logging.getLogger(__name__)


class ProvisioningState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTED = "connected"
    AWAITING_WIFI_RESULT = "awaiting_wifi_result"
    WIFI_CONFIRMED = "wifi_confirmed"
    PUSHING_CONFIG = "pushing_config"
    DONE = "done"
    FAILED = "failed"


class TimerKey(str, Enum):
    WIFI_RETRY = "wifi_retry"
    WIFI_RESULT_TIMEOUT = "wifi_result_timeout"


@dataclass(frozen=True)
class SendCommand:
    command: str


@dataclass(frozen=True)
class ScheduleTimer:
    """Arm ``key`` after ``delay_s``; an already armed timer with the same key is replaced."""

    key: TimerKey
    delay_s: float


@dataclass(frozen=True)
class CancelTimer:
    key: TimerKey


@dataclass(frozen=True)
class StartCredentialPush:
    pass


@dataclass(frozen=True)
class ReportStatus:
    message: str
    level: int = logging.INFO


@dataclass(frozen=True)
class ReportFailure:
    kind: FailureKind
    message: str


Effect = SendCommand | ScheduleTimer | CancelTimer | StartCredentialPush | ReportStatus | ReportFailure

_WIFI_SUCCESS = {NotificationKind.WIFI_OK, NotificationKind.WIFI_STA_CONNECTED}
_WIFI_RETRYABLE_FAILURE = {NotificationKind.WIFI_FAIL, NotificationKind.WIFI_DISCONNECTED}


@dataclass(frozen=True)
class ProvisioningSession:
    device_id: str
    timings: ProvisioningTimings = field(default_factory=ProvisioningTimings)
    state: ProvisioningState = ProvisioningState.IDLE
    ssid: str | None = None
    password: str | None = None
    attempt: int = 0
    busy_retries: int = 0
    fail_retries: int = 0
    push_started: bool = False
    heartbeat_sent: bool = False
    timers: frozenset[TimerKey] = frozenset()
    failure: FailureKind | None = None
    last_status: str | None = None

    @property
    def awaiting(self) -> bool:
        return self.state is ProvisioningState.AWAITING_WIFI_RESULT

    @property
    def wifi_joined(self) -> bool:
        return self.state in (
            ProvisioningState.WIFI_CONFIRMED,
            ProvisioningState.PUSHING_CONFIG,
            ProvisioningState.DONE,
        )

    def wifi_command(self) -> str:
        if self.ssid is None:
            raise SessionStateError("No Wi-Fi network selected for this session")
        return wifi_set_command(self.ssid, self.password or "")


Transition = tuple[ProvisioningSession, tuple[Effect, ...]]


def _arm(session: ProvisioningSession, key: TimerKey, delay_s: float) -> Transition:
    return replace(session, timers=session.timers | {key}), (ScheduleTimer(key, delay_s),)


def _disarm_all(session: ProvisioningSession) -> Transition:
    effects = tuple(CancelTimer(key) for key in sorted(session.timers, key=lambda k: k.value))
    return replace(session, timers=frozenset()), effects


def start_scan(session: ProvisioningSession) -> ProvisioningSession:
    if session.state is not ProvisioningState.IDLE:
        raise SessionStateError(f"Cannot scan from state {session.state.value}")
    return replace(session, state=ProvisioningState.SCANNING)


def mark_connected(session: ProvisioningSession) -> ProvisioningSession:
    if session.state not in (ProvisioningState.IDLE, ProvisioningState.SCANNING):
        raise SessionStateError(f"Cannot connect from state {session.state.value}")
    return replace(session, state=ProvisioningState.CONNECTED)


def begin_wifi(session: ProvisioningSession, ssid: str, password: str) -> Transition:
    """Issue ``WIFI_SET`` and open the result window."""
    if session.state not in (ProvisioningState.CONNECTED, ProvisioningState.FAILED):
        raise SessionStateError(
            f"Cannot send Wi-Fi credentials from state {session.state.value}"
        )
    command = wifi_set_command(ssid, password)
    session = replace(
        session,
        state=ProvisioningState.AWAITING_WIFI_RESULT,
        ssid=ssid.strip(),
        password=password.strip(),
        attempt=session.attempt + 1,
        busy_retries=0,
        fail_retries=0,
        failure=None,
        last_status=None,
    )
    session, arm = _arm(session, TimerKey.WIFI_RESULT_TIMEOUT, session.timings.wifi_result_timeout_s)
    return session, (SendCommand(command),) + arm


def abort_attempt(session: ProvisioningSession) -> Transition:
    """Return to ``CONNECTED`` after a transport error so the user can retry."""
    session, cancels = _disarm_all(session)
    if session.awaiting:
        session = replace(session, state=ProvisioningState.CONNECTED)
    return session, cancels


def _fail(session: ProvisioningSession, kind: FailureKind) -> Transition:
    session, cancels = _disarm_all(session)
    message = FAILURE_MESSAGES[kind]
    session = replace(
        session,
        state=ProvisioningState.FAILED,
        failure=kind,
        last_status=message,
    )
    return session, cancels + (ReportFailure(kind, message),)


def _schedule_retry(session: ProvisioningSession, delay_s: float, reason: str) -> Transition:
    session, arm = _arm(session, TimerKey.WIFI_RETRY, delay_s)
    return session, arm + (ReportStatus(f"{reason}; retrying in {delay_s:g}s", logging.WARNING),)


def on_notification(session: ProvisioningSession, note: Notification) -> Transition:
    kind = note.kind

    if kind in _WIFI_SUCCESS:
        if session.push_started or not session.awaiting:
            return session, ()
        session, cancels = _disarm_all(session)
        session = replace(
            session,
            state=ProvisioningState.WIFI_CONFIRMED,
            push_started=True,
            last_status="connect wifi success",
        )
        return session, cancels + (ReportStatus("connect wifi success"), StartCredentialPush())

    if not session.awaiting:
        return session, ()

    if kind is NotificationKind.WIFI_AUTH_FAIL:
        return _fail(session, FailureKind.AUTH)

    if kind is NotificationKind.WIFI_BUSY:
        if TimerKey.WIFI_RETRY in session.timers:
            return session, ()
        if session.busy_retries >= session.timings.busy_retry_limit:
            return _fail(session, FailureKind.BUSY)
        session = replace(session, busy_retries=session.busy_retries + 1)
        return _schedule_retry(session, session.timings.busy_retry_delay_s, "Device busy")

    if kind in _WIFI_RETRYABLE_FAILURE:
        if TimerKey.WIFI_RETRY in session.timers:
            return session, ()
        if session.fail_retries >= session.timings.fail_retry_limit:
            return _fail(session, FailureKind.NETWORK)
        session = replace(session, fail_retries=session.fail_retries + 1)
        return _schedule_retry(session, session.timings.fail_retry_delay_s, f"Device reported {note.text}")

    if kind is NotificationKind.WIFI_AP_NOT_FOUND:
        # The firmware keeps retrying association; only the result window ends the wait.
        return session, (ReportStatus(f"Device reported {note.text}; waiting", logging.DEBUG),)

    if kind is NotificationKind.WIFI_CONNECTING:
        return replace(session, last_status="connecting"), (ReportStatus("Device is joining Wi-Fi", logging.DEBUG),)

    return session, ()


def on_timer(session: ProvisioningSession, key: TimerKey) -> Transition:
    if key not in session.timers:
        return session, ()
    session = replace(session, timers=session.timers - {key})
    if not session.awaiting:
        return session, ()

    if key is TimerKey.WIFI_RETRY:
        session, arm = _arm(session, TimerKey.WIFI_RESULT_TIMEOUT, session.timings.wifi_result_timeout_s)
        return session, (SendCommand(session.wifi_command()),) + arm

    return _fail(session, FailureKind.TIMEOUT)


def mark_pushing(session: ProvisioningSession) -> ProvisioningSession:
    if session.state is not ProvisioningState.WIFI_CONFIRMED:
        raise SessionStateError(f"Cannot push credentials from state {session.state.value}")
    return replace(session, state=ProvisioningState.PUSHING_CONFIG)


def claim_heartbeat(session: ProvisioningSession) -> tuple[ProvisioningSession, bool]:
    """One-shot guard for ``HEARTBEAT_NOW``; returns whether the caller should send it."""
    if session.heartbeat_sent:
        return session, False
    return replace(session, heartbeat_sent=True), True


def mark_done(session: ProvisioningSession) -> ProvisioningSession:
    if session.state is not ProvisioningState.PUSHING_CONFIG:
        raise SessionStateError(f"Cannot finish from state {session.state.value}")
    return replace(session, state=ProvisioningState.DONE)


def teardown(session: ProvisioningSession) -> Transition:
    return _disarm_all(session)
