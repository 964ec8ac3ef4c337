"""
State Machine for Proctored Test Attempts

Every student action, timer tick and fullscreen change is a discrete event
fed into one pure reducer. The reducer returns the next attempt snapshot plus
the side effects to run; it never touches the network, the clock or the
screen itself, so it is testable without a terminal.

Architecture:
┌──────────────────────────────────────────────────────────────────┐
│                       ATTEMPT STATE MACHINE                       │
├──────────────────────────────────────────────────────────────────┤
│  NOT_STARTED ──open──→ VIEWING ──submit──→ SUBMITTING → SUBMITTED │
│       │  ↑               │ close ↑              │ failure         │
│       │  └───────────────┘       └──────────────┘                 │
│       └── time left == 0 ──→ EXPIRED                              │
│                                                                   │
│  Orthogonal: compromised (set on fullscreen exit, never cleared)  │
└──────────────────────────────────────────────────────────────────┘

Snapshots are immutable - transitions create new snapshot objects.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from schoolportal.exceptions import ValidationError
from schoolportal.logging_config import logger
from schoolportal.models import SubmissionFile, SubmitResult, Test, validate_submission_file


class AttemptState(str, Enum):
    """Lifecycle of one student's attempt at one test"""
    NOT_STARTED = "not_started"
    VIEWING = "viewing"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    EXPIRED = "expired"


# Valid state transitions
ATTEMPT_TRANSITIONS: Dict[AttemptState, Set[AttemptState]] = {
    AttemptState.NOT_STARTED: {AttemptState.VIEWING, AttemptState.SUBMITTING, AttemptState.EXPIRED},
    AttemptState.VIEWING: {AttemptState.SUBMITTING, AttemptState.NOT_STARTED},
    AttemptState.SUBMITTING: {AttemptState.SUBMITTED, AttemptState.VIEWING, AttemptState.NOT_STARTED},
    AttemptState.SUBMITTED: set(),
    AttemptState.EXPIRED: set(),
}


# User-facing messages
MSG_COMPROMISED_OPEN = (
    "This test has been compromised. You cannot view the test paper, "
    "but you may still submit your answer file."
)
MSG_EXPIRED = "This test has expired and can no longer be taken."
MSG_FULLSCREEN_FAILED = "Failed to enter fullscreen mode. Please try again."
MSG_INTEGRITY_WARNING = "Warning: Test session compromised - Exited fullscreen mode"
MSG_NO_FILE = "Please select a file to submit"
MSG_TIME_UP = "Time is up. Submission is no longer available."
MSG_LATE_ACCEPTED = "Test submitted after the allowed duration - marked as late submission"
MSG_SUBMIT_FAILED = "Failed to submit test. Please try again or contact support."
MSG_CONTENT_FAILED = "Failed to load test content. Please try again."


# ============================================
# Events
# ============================================

@dataclass(frozen=True)
class OpenRequested:
    now: datetime


@dataclass(frozen=True)
class FullscreenEntered:
    pass


@dataclass(frozen=True)
class FullscreenFailed:
    reason: str = MSG_FULLSCREEN_FAILED


@dataclass(frozen=True)
class FullscreenExited:
    pass


@dataclass(frozen=True)
class Tick:
    now: datetime


@dataclass(frozen=True)
class FileSelected:
    file: SubmissionFile


@dataclass(frozen=True)
class SubmitRequested:
    now: datetime
    auto: bool = False


@dataclass(frozen=True)
class SubmitSucceeded:
    result: SubmitResult


@dataclass(frozen=True)
class SubmitFailed:
    message: Optional[str] = MSG_SUBMIT_FAILED


@dataclass(frozen=True)
class ContentLoaded:
    pass


@dataclass(frozen=True)
class ContentFailed:
    message: str = MSG_CONTENT_FAILED


@dataclass(frozen=True)
class CloseRequested:
    pass


@dataclass(frozen=True)
class ErrorDismissed:
    pass


Event = Union[
    OpenRequested, FullscreenEntered, FullscreenFailed, FullscreenExited,
    Tick, FileSelected, SubmitRequested, SubmitSucceeded, SubmitFailed,
    ContentLoaded, ContentFailed, CloseRequested, ErrorDismissed,
]


# ============================================
# Effects
# ============================================

@dataclass(frozen=True)
class RequestFullscreen:
    pass


@dataclass(frozen=True)
class ExitFullscreen:
    pass


@dataclass(frozen=True)
class StartTimer:
    pass


@dataclass(frozen=True)
class StopTimer:
    pass


@dataclass(frozen=True)
class LoadContent:
    test_id: int


@dataclass(frozen=True)
class CancelContent:
    test_id: int


@dataclass(frozen=True)
class PersistCompromise:
    test_id: int


@dataclass(frozen=True)
class SendSubmission:
    test_id: int
    file: SubmissionFile
    is_late: bool


@dataclass(frozen=True)
class RefreshTests:
    pass


Effect = Union[
    RequestFullscreen, ExitFullscreen, StartTimer, StopTimer, LoadContent,
    CancelContent, PersistCompromise, SendSubmission, RefreshTests,
]


# ============================================
# Snapshot
# ============================================

@dataclass(frozen=True)
class StateTransition:
    """Record of a state transition"""
    from_state: str
    to_state: str
    event: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state,
            "to": self.to_state,
            "event": self.event,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Attempt:
    """Complete attempt snapshot for one test"""
    test: Test
    state: AttemptState = AttemptState.NOT_STARTED
    compromised: bool = False

    # Dialog
    opening: bool = False
    selected_file: Optional[SubmissionFile] = None
    content_ready: bool = False

    # Countdown, recomputed from the wall clock on every tick
    time_left: Optional[int] = None
    is_late: bool = False
    time_up: bool = False
    auto_submit_fired: bool = False

    # Where a SUBMITTING attempt returns to on failure
    submitted_from: Optional[AttemptState] = None
    result: Optional[SubmitResult] = None

    # Dismissible banner and the non-dismissible integrity warning
    error: Optional[str] = None
    notice: Optional[str] = None
    warning: Optional[str] = None

    @property
    def is_open(self) -> bool:
        """Whether the test-paper dialog is showing"""
        return self.state == AttemptState.VIEWING or (
            self.state == AttemptState.SUBMITTING
            and self.submitted_from == AttemptState.VIEWING
        )

    @property
    def can_view_paper(self) -> bool:
        return self.state == AttemptState.NOT_STARTED and not self.compromised

    @property
    def can_submit(self) -> bool:
        if self.selected_file is None:
            return False
        if self.state == AttemptState.NOT_STARTED:
            return True
        if self.state == AttemptState.VIEWING:
            # after a failed forced submit the student may retry by hand
            return not self.time_up or self.auto_submit_fired
        return False


@dataclass(frozen=True)
class Transition:
    """Result of one reducer step"""
    attempt: Attempt
    effects: Tuple[Effect, ...] = ()
    record: Optional[StateTransition] = None


def initial_attempt(test: Test, compromised: bool, now: datetime) -> Attempt:
    """Attempt snapshot for a test as listed by the server"""
    if test.has_submitted:
        return Attempt(
            test=test,
            state=AttemptState.SUBMITTED,
            compromised=compromised,
            result=SubmitResult(is_late=test.submission.is_late, submission=test.submission)
            if test.submission else None,
        )
    if test.time_left(now) == 0:
        return Attempt(test=test, state=AttemptState.EXPIRED, compromised=compromised,
                       time_left=0, is_late=True, time_up=True)
    return Attempt(test=test, compromised=compromised)


def _go(attempt: Attempt, event: Event, to_state: AttemptState, *effects: Effect, **changes) -> Transition:
    if to_state != attempt.state and to_state not in ATTEMPT_TRANSITIONS[attempt.state]:
        raise RuntimeError(
            f"Invalid transition {attempt.state.value} → {to_state.value} "
            f"on {type(event).__name__}"
        )
    record = None
    if to_state != attempt.state:
        record = StateTransition(
            from_state=attempt.state.value,
            to_state=to_state.value,
            event=type(event).__name__,
        )
    return Transition(replace(attempt, state=to_state, **changes), tuple(effects), record)


def _stay(attempt: Attempt, *effects: Effect, **changes) -> Transition:
    return Transition(replace(attempt, **changes) if changes else attempt, tuple(effects))


def _start_submission(attempt: Attempt, event: Event, now: datetime, auto: bool) -> Transition:
    is_late = attempt.test.is_late(now)
    return _go(
        attempt, event, AttemptState.SUBMITTING,
        SendSubmission(attempt.test.id, attempt.selected_file, is_late),
        submitted_from=attempt.state,
        is_late=is_late or attempt.is_late,
        auto_submit_fired=attempt.auto_submit_fired or auto,
        error=None,
        notice=None,
    )


def reduce(attempt: Attempt, event: Event) -> Transition:
    """
    Apply one event to an attempt.

    Events that are not meaningful in the current state leave the snapshot
    untouched and produce no effects.
    """
    state = attempt.state

    if isinstance(event, ErrorDismissed):
        return _stay(attempt, error=None, notice=None)

    if isinstance(event, OpenRequested):
        if state != AttemptState.NOT_STARTED or attempt.opening:
            return _stay(attempt)
        if attempt.compromised:
            return _stay(attempt, error=MSG_COMPROMISED_OPEN)
        time_left = attempt.test.time_left(event.now)
        if time_left == 0:
            return _go(attempt, event, AttemptState.EXPIRED,
                       time_left=0, is_late=True, time_up=True, error=MSG_EXPIRED)
        return _stay(
            attempt, RequestFullscreen(),
            opening=True,
            time_left=time_left,
            is_late=attempt.test.is_late(event.now),
            time_up=False,
            auto_submit_fired=False,
            selected_file=None,
            content_ready=False,
            error=None,
            notice=None,
        )

    if isinstance(event, FullscreenEntered):
        if not attempt.opening:
            return _stay(attempt)
        return _go(attempt, event, AttemptState.VIEWING,
                   StartTimer(), LoadContent(attempt.test.id), opening=False)

    if isinstance(event, FullscreenFailed):
        if not attempt.opening:
            return _stay(attempt)
        return _stay(attempt, opening=False, time_left=None, error=event.reason)

    if isinstance(event, FullscreenExited):
        if not attempt.is_open:
            return _stay(attempt)
        logger.log_integrity_event(attempt.test.id, "fullscreen_exit", state=state.value)
        return _stay(attempt, PersistCompromise(attempt.test.id),
                     compromised=True, warning=MSG_INTEGRITY_WARNING)

    if isinstance(event, Tick):
        if state not in (AttemptState.VIEWING, AttemptState.SUBMITTING) or attempt.time_up:
            return _stay(attempt)
        time_left = attempt.test.time_left(event.now)
        if time_left > 0:
            return _stay(attempt, time_left=time_left, is_late=attempt.test.is_late(event.now))

        expired = _stay(attempt, StopTimer(), time_left=0, is_late=True, time_up=True)
        if state == AttemptState.VIEWING and attempt.selected_file is not None \
                and not attempt.auto_submit_fired:
            submitting = _start_submission(expired.attempt, event, event.now, auto=True)
            return Transition(submitting.attempt, expired.effects + submitting.effects,
                              submitting.record)
        return expired

    if isinstance(event, FileSelected):
        if state not in (AttemptState.NOT_STARTED, AttemptState.VIEWING):
            return _stay(attempt)
        try:
            validate_submission_file(event.file)
        except ValidationError as e:
            return _stay(attempt, selected_file=None, error=e.message)
        return _stay(attempt, selected_file=event.file, error=None)

    if isinstance(event, SubmitRequested):
        if state == AttemptState.EXPIRED:
            return _stay(attempt, error=MSG_EXPIRED)
        if state not in (AttemptState.NOT_STARTED, AttemptState.VIEWING):
            return _stay(attempt)
        if attempt.selected_file is None:
            return _stay(attempt, error=MSG_NO_FILE)
        if state == AttemptState.NOT_STARTED and attempt.test.time_left(event.now) == 0:
            return _go(attempt, event, AttemptState.EXPIRED,
                       time_left=0, is_late=True, time_up=True, error=MSG_EXPIRED)
        if not attempt.can_submit:
            return _stay(attempt, error=MSG_TIME_UP)
        return _start_submission(attempt, event, event.now, event.auto)

    if isinstance(event, SubmitSucceeded):
        if state != AttemptState.SUBMITTING:
            return _stay(attempt)
        effects: List[Effect] = [StopTimer()]
        if attempt.submitted_from == AttemptState.VIEWING:
            effects += [CancelContent(attempt.test.id), ExitFullscreen()]
        effects.append(RefreshTests())
        return _go(
            attempt, event, AttemptState.SUBMITTED, *effects,
            result=event.result,
            is_late=event.result.is_late,
            selected_file=None,
            warning=None,
            notice=MSG_LATE_ACCEPTED if event.result.is_late else None,
        )

    if isinstance(event, SubmitFailed):
        if state != AttemptState.SUBMITTING:
            return _stay(attempt)
        return _go(attempt, event, attempt.submitted_from or AttemptState.NOT_STARTED,
                   submitted_from=None, error=event.message)

    if isinstance(event, ContentLoaded):
        if not attempt.is_open:
            return _stay(attempt)
        return _stay(attempt, content_ready=True)

    if isinstance(event, ContentFailed):
        if not attempt.is_open:
            return _stay(attempt)
        return _stay(attempt, error=event.message)

    if isinstance(event, CloseRequested):
        if state != AttemptState.VIEWING:
            return _stay(attempt)
        return _go(
            attempt, event, AttemptState.NOT_STARTED,
            StopTimer(), CancelContent(attempt.test.id), ExitFullscreen(),
            selected_file=None,
            content_ready=False,
            time_left=None,
            time_up=False,
            auto_submit_fired=False,
            error=None,
            warning=None,
        )

    raise TypeError(f"Unknown event: {event!r}")
