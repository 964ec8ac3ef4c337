"""
Proctored test sessions

ProctoredTestSession owns one Attempt and is the only place where the
reducer's effects meet the outside world: the fullscreen driver, the
countdown task, the API and the compromise registry. StudentTestDesk holds
the student's test list and hands out sessions for it.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from schoolportal.api import SchoolAPI, TestsAPI
from schoolportal.exceptions import (
    ApiError,
    AuthenticationError,
    FullscreenError,
    NetworkError,
    RequestCanceledError,
    SchoolPortalError,
    ValidationError,
)
from schoolportal.fullscreen import FullscreenDriver
from schoolportal.logging_config import logger, set_test_id
from schoolportal.models import SubmissionFile, Test, TestBuckets, TestType, utcnow
from schoolportal.state_machine import (
    MSG_CONTENT_FAILED,
    MSG_SUBMIT_FAILED,
    Attempt,
    AttemptState,
    CancelContent,
    CloseRequested,
    ContentFailed,
    ContentLoaded,
    Effect,
    ErrorDismissed,
    Event,
    ExitFullscreen,
    FileSelected,
    FullscreenEntered,
    FullscreenExited,
    FullscreenFailed,
    LoadContent,
    OpenRequested,
    PersistCompromise,
    RefreshTests,
    RequestFullscreen,
    SendSubmission,
    StartTimer,
    StateTransition,
    StopTimer,
    SubmitFailed,
    SubmitRequested,
    SubmitSucceeded,
    Tick,
    initial_attempt,
    reduce,
)
from schoolportal.storage import CompromiseRegistry


MSG_LOAD_TESTS_FAILED = "Failed to load tests"

Clock = Callable[[], datetime]


def server_message(error: Exception, default: str) -> str:
    """The server's own error text when it sent one"""
    if isinstance(error, ApiError) and isinstance(error.body, dict):
        message = error.body.get("error") or error.body.get("message")
        if message:
            return str(message)
    return default


class ProctoredTestSession:
    """
    Runs one student's attempt at one test.

    All state changes go through dispatch(); callers read `attempt` and
    `paper` and may register on_change callbacks to re-render.
    """

    def __init__(
        self,
        tests: TestsAPI,
        registry: CompromiseRegistry,
        fullscreen: FullscreenDriver,
        test: Test,
        clock: Clock = utcnow,
        tick_interval: float = 1.0,
        on_submitted: Optional[Callable[[], Awaitable[Any]]] = None,
        max_history: int = 100,
    ):
        self.tests = tests
        self.registry = registry
        self.fullscreen = fullscreen
        self.clock = clock
        self.tick_interval = tick_interval
        self.on_submitted = on_submitted

        self.attempt: Attempt = initial_attempt(test, registry.is_compromised(test.id), clock())
        self.paper: Optional[bytes] = None

        self._timer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._history: deque = deque(maxlen=max_history)
        self._callbacks: List[Callable[[Attempt], None]] = []

    @property
    def test(self) -> Test:
        return self.attempt.test

    @property
    def content_key(self) -> str:
        return f"content:{self.test.id}"

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def on_change(self, callback: Callable[[Attempt], None]) -> None:
        self._callbacks.append(callback)

    def get_history(self, limit: int = 10) -> List[StateTransition]:
        return list(self._history)[-limit:]

    # ==================== Student actions ====================

    async def open(self) -> Attempt:
        return await self.dispatch(OpenRequested(self.clock()))

    async def select_file(self, file: SubmissionFile) -> Attempt:
        return await self.dispatch(FileSelected(file))

    async def submit(self) -> Attempt:
        return await self.dispatch(SubmitRequested(self.clock()))

    async def close(self) -> Attempt:
        return await self.dispatch(CloseRequested())

    async def dismiss_error(self) -> Attempt:
        return await self.dispatch(ErrorDismissed())

    async def settle(self) -> None:
        """Wait for background work such as the paper download"""
        while self._background:
            await asyncio.gather(*list(self._background))

    async def shutdown(self) -> None:
        """Tear down timer, background work and fullscreen"""
        self._stop_timer()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.tests.client.cancel(self.content_key, "session closed")
        self.fullscreen.set_exit_listener(None)
        await self.fullscreen.exit()

    def sync(self, test: Test) -> None:
        """Adopt a fresher server copy of the test while the dialog is closed"""
        if self.attempt.is_open or self.attempt.opening:
            return
        if self.attempt.state not in (AttemptState.NOT_STARTED, AttemptState.EXPIRED):
            return
        compromised = self.attempt.compromised or self.registry.is_compromised(test.id)
        self.attempt = initial_attempt(test, compromised, self.clock())

    # ==================== Event loop ====================

    async def dispatch(self, event: Event) -> Attempt:
        set_test_id(str(self.test.id))
        transition = reduce(self.attempt, event)
        self.attempt = transition.attempt

        if transition.record is not None:
            self._history.append(transition.record)
            logger.info(
                f"[test {self.test.id}] State transition: "
                f"{transition.record.from_state} → {transition.record.to_state} "
                f"({transition.record.event})"
            )

        for callback in self._callbacks:
            try:
                callback(self.attempt)
            except Exception as e:
                logger.error(f"[test {self.test.id}] Callback error: {e}")

        for effect in transition.effects:
            await self._run(effect)
        return self.attempt

    async def _run(self, effect: Effect) -> None:
        if isinstance(effect, RequestFullscreen):
            await self._enter_fullscreen()
        elif isinstance(effect, ExitFullscreen):
            self.fullscreen.set_exit_listener(None)
            await self.fullscreen.exit()
        elif isinstance(effect, StartTimer):
            self._start_timer()
        elif isinstance(effect, StopTimer):
            self._stop_timer()
        elif isinstance(effect, LoadContent):
            self._spawn(self._load_content())
        elif isinstance(effect, CancelContent):
            self.tests.client.cancel(self.content_key, "dialog closed")
            self.paper = None
        elif isinstance(effect, PersistCompromise):
            self.registry.mark(effect.test_id)
        elif isinstance(effect, SendSubmission):
            await self._send(effect)
        elif isinstance(effect, RefreshTests):
            if self.on_submitted is not None:
                await self.on_submitted()
        else:
            raise TypeError(f"Unknown effect: {effect!r}")

    # ==================== Effects ====================

    async def _enter_fullscreen(self) -> None:
        try:
            await self.fullscreen.enter()
        except FullscreenError as e:
            logger.warning(f"[test {self.test.id}] Fullscreen refused: {e.message}")
            await self.dispatch(FullscreenFailed(e.message))
            return
        self.fullscreen.set_exit_listener(self._on_fullscreen_exit)
        await self.dispatch(FullscreenEntered())

    def _on_fullscreen_exit(self) -> None:
        self._spawn(self.dispatch(FullscreenExited()))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _start_timer(self) -> None:
        self._stop_timer()
        self._timer = asyncio.ensure_future(self._countdown())

    def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        # The countdown itself may be the one asking to stop
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _countdown(self) -> None:
        me = asyncio.current_task()
        while self._timer is me:
            await asyncio.sleep(self.tick_interval)
            await self.dispatch(Tick(self.clock()))

    async def _load_content(self) -> None:
        if self.test.type == TestType.TEXT:
            self.paper = (self.test.content or "").encode("utf-8")
            await self.dispatch(ContentLoaded())
            return

        token = self.tests.client.supersede(self.content_key)
        try:
            paper = await self.tests.get_content(self.test.id, signal=token)
        except RequestCanceledError:
            return
        except AuthenticationError:
            return
        except (ApiError, NetworkError) as e:
            logger.log_error_with_context(e, "load test content")
            await self.dispatch(ContentFailed(server_message(e, MSG_CONTENT_FAILED)))
            return
        self.paper = paper
        await self.dispatch(ContentLoaded())

    async def _send(self, effect: SendSubmission) -> None:
        try:
            result = await self.tests.submit(effect.test_id, effect.file, effect.is_late)
        except (RequestCanceledError, AuthenticationError):
            await self.dispatch(SubmitFailed(None))
            return
        except (ApiError, NetworkError) as e:
            logger.log_error_with_context(e, "submit test")
            await self.dispatch(SubmitFailed(server_message(e, MSG_SUBMIT_FAILED)))
            return
        except OSError as e:
            logger.error(f"Could not read {effect.file.name}: {e}")
            await self.dispatch(SubmitFailed(f"Could not read {effect.file.name}"))
            return

        logger.info(
            f"[test {effect.test_id}] Submitted {effect.file.name}"
            + (" (late)" if result.is_late else "")
        )
        await self.dispatch(SubmitSucceeded(result))


class StudentTestDesk:
    """The student's test list plus one ProctoredTestSession per test"""

    def __init__(
        self,
        api: SchoolAPI,
        registry: CompromiseRegistry,
        fullscreen: FullscreenDriver,
        clock: Clock = utcnow,
        tick_interval: float = 1.0,
    ):
        self.api = api
        self.registry = registry
        self.fullscreen = fullscreen
        self.clock = clock
        self.tick_interval = tick_interval

        self.buckets = TestBuckets()
        self.error: Optional[str] = None
        self._sessions: Dict[int, ProctoredTestSession] = {}

    async def refresh(self) -> Optional[TestBuckets]:
        """
        Reload /tests/available.

        A newer refresh supersedes an older one still in flight; the older
        one then returns None and leaves the list untouched.
        """
        token = self.api.client.supersede("tests:available")
        try:
            buckets = await self.api.tests.get_available(signal=token)
        except RequestCanceledError:
            return None
        except (ApiError, NetworkError) as e:
            logger.log_error_with_context(e, "load tests")
            self.error = server_message(e, MSG_LOAD_TESTS_FAILED)
            return None

        self.error = None
        self.buckets = buckets
        for test in buckets.all():
            session = self._sessions.get(test.id)
            if session is not None:
                session.sync(test)
        return buckets

    def is_compromised(self, test_id: int) -> bool:
        return self.registry.is_compromised(test_id)

    def session_for(self, test_id: int) -> ProctoredTestSession:
        session = self._sessions.get(test_id)
        if session is not None:
            return session

        test = self.buckets.find(test_id)
        if test is None:
            raise ValidationError(f"Test {test_id} not found", field="test_id")

        session = ProctoredTestSession(
            self.api.tests,
            self.registry,
            self.fullscreen,
            test,
            clock=self.clock,
            tick_interval=self.tick_interval,
            on_submitted=self.refresh,
        )
        self._sessions[test_id] = session
        return session

    async def close(self) -> None:
        for session in self._sessions.values():
            try:
                await session.shutdown()
            except SchoolPortalError as e:
                logger.warning(f"Session shutdown failed: {e.message}")
        self._sessions.clear()
