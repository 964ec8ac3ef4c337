"""
SchoolPortal - Test Configuration and Fixtures
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import httpx
import pytest

# Quiet console logging during tests
os.environ.setdefault('SCHOOLPORTAL_LOG_LEVEL', 'CRITICAL')

from schoolportal.api import SchoolAPI
from schoolportal.api_client import ApiClient
from schoolportal.config import ClientConfig
from schoolportal.exceptions import FullscreenError
from schoolportal.fullscreen import FullscreenDriver
from schoolportal.models import SubmissionFile, Test, TestType
from schoolportal.session import InMemorySessionProvider
from schoolportal.storage import CompromiseRegistry, MemoryStore


NOW = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable wall clock"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every delay"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeFullscreen(FullscreenDriver):
    """Fullscreen driver that never touches a terminal"""

    def __init__(self, refuse: bool = False):
        super().__init__()
        self.refuse = refuse
        self._active = False
        self.enter_calls = 0
        self.exit_calls = 0

    @property
    def is_active(self) -> bool:
        return self._active

    async def enter(self) -> None:
        self.enter_calls += 1
        if self.refuse:
            raise FullscreenError()
        self._active = True

    async def exit(self) -> None:
        if self._active:
            self.exit_calls += 1
        self._active = False

    def user_exits(self) -> None:
        """Simulate the student leaving fullscreen"""
        self._active = False
        self._notify_exit()


def make_test(
    test_id: int = 1,
    start_offset: timedelta = timedelta(minutes=-10),
    duration: int = 60,
    test_type: TestType = TestType.TEXT,
    content: Optional[str] = "Answer all questions.",
    **kwargs,
) -> Test:
    """A test that started `start_offset` relative to NOW"""
    return Test(
        id=test_id,
        title=kwargs.pop("title", f"Test {test_id}"),
        start_time=NOW + start_offset,
        duration=duration,
        type=test_type,
        content=content,
        **kwargs,
    )


def answer_file(name: str = "answer.pdf", size: int = 1024) -> SubmissionFile:
    return SubmissionFile(name=name, size=size, content_type="application/pdf", content=b"%PDF" * 4)


@pytest.fixture
def config(tmp_path) -> ClientConfig:
    """Client config rooted in a temp dir"""
    return ClientConfig(
        api_base_url="http://test/api",
        config_dir=str(tmp_path / "config"),
    )


@pytest.fixture
def session() -> InMemorySessionProvider:
    return InMemorySessionProvider("test-token")


@pytest.fixture
def registry() -> CompromiseRegistry:
    return CompromiseRegistry(MemoryStore())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fullscreen() -> FakeFullscreen:
    return FakeFullscreen()


@pytest.fixture
def make_client(config, session, sleep) -> Callable[..., ApiClient]:
    """Build an ApiClient whose transport is a request handler"""

    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> ApiClient:
        return ApiClient(
            kwargs.pop("config", config),
            kwargs.pop("session", session),
            transport=httpx.MockTransport(handler),
            sleep=kwargs.pop("sleep", sleep),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_api(make_client) -> Callable[..., SchoolAPI]:
    def factory(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> SchoolAPI:
        return SchoolAPI(make_client(handler, **kwargs))

    return factory
