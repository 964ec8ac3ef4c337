"""
Unit Tests for the endpoint facade and authentication flows
Tests for: request shapes of /auth and /tests, AuthManager login/logout
"""
import json

import httpx
import pytest

from conftest import answer_file
from schoolportal.auth import AuthManager
from schoolportal.exceptions import ApiError, AuthenticationError
from schoolportal.session import InMemorySessionProvider


class Recorder:
    """Request handler that answers from a route table and keeps the requests"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": "Not found"})
        status, payload = self.routes[key]
        if isinstance(payload, bytes):
            return httpx.Response(status, content=payload, headers={"content-type": "application/pdf"})
        return httpx.Response(status, json=payload)

    @property
    def last(self):
        return self.requests[-1]


class TestAuthAPI:
    """Test /auth endpoints"""

    @pytest.mark.asyncio
    async def test_login_returns_token(self, make_api):
        recorder = Recorder({("POST", "/api/auth/login"): (200, {"token": "jwt-1"})})

        token = await make_api(recorder).auth.login("a@school.test", "pw")

        assert token == "jwt-1"
        assert json.loads(recorder.last.content) == {"email": "a@school.test", "password": "pw"}

    @pytest.mark.asyncio
    async def test_login_without_token_fails(self, make_api):
        recorder = Recorder({("POST", "/api/auth/login"): (200, {"user": {}})})

        with pytest.raises(AuthenticationError):
            await make_api(recorder).auth.login("a@school.test", "pw")


class TestTestsAPI:
    """Test /tests endpoints"""

    @pytest.mark.asyncio
    async def test_get_available(self, make_api):
        recorder = Recorder({("GET", "/api/tests/available"): (200, {
            "upcoming": [],
            "ongoing": [{"id": 1, "title": "Maths", "startTime": "2024-05-01T09:00:00Z", "duration": 30}],
            "submitted": [],
            "expired": [],
        })})

        buckets = await make_api(recorder).tests.get_available()

        assert buckets.find(1).title == "Maths"

    @pytest.mark.asyncio
    async def test_submit_uses_upload_timeout(self, make_api, config):
        """Test uploads get the longer timeout and high priority"""
        seen = {}

        def handler(request):
            seen["timeout"] = request.extensions["timeout"]
            return httpx.Response(200, json={"isLate": False})

        result = await make_api(handler).tests.submit(4, answer_file(), is_late=False)

        assert result.is_late is False
        assert seen["timeout"]["read"] == config.upload_timeout_ms / 1000

    @pytest.mark.asyncio
    async def test_create_text_test_as_json(self, make_api):
        recorder = Recorder({("POST", "/api/tests"): (201, {"id": 9})})

        created = await make_api(recorder).tests.create(
            title="Essay", description="", duration=45,
            start_time="2024-05-02T09:00:00Z", content="Write about rivers", subject="Geography",
        )

        body = json.loads(recorder.last.content)
        assert created == {"id": 9}
        assert body["type"] == "TEXT"
        assert body["content"] == "Write about rivers"
        assert body["duration"] == "45"
        assert "class" not in body

    @pytest.mark.asyncio
    async def test_create_pdf_test_as_multipart(self, make_api):
        recorder = Recorder({("POST", "/api/tests"): (201, {"id": 10})})

        await make_api(recorder).tests.create(
            title="Paper", description="d", duration=60,
            start_time="2024-05-02T09:00:00Z", test_type="PDF", paper=answer_file("paper.pdf"),
        )

        assert recorder.last.headers["content-type"].startswith("multipart/form-data")
        assert b'filename="paper.pdf"' in recorder.last.content

    @pytest.mark.asyncio
    async def test_teacher_endpoints(self, make_api):
        recorder = Recorder({
            ("GET", "/api/tests/teacher"): (200, [{"id": 1}]),
            ("GET", "/api/tests/1/submissions"): (200, [
                {"id": 40, "submitted_at": "2024-05-01T09:30:00Z", "is_late": True,
                 "student_name": "Asha", "grade": None},
            ]),
            ("GET", "/api/tests/submissions/40/content"): (200, b"%PDF answer"),
            ("POST", "/api/tests/submissions/40/grade"): (200, {"message": "ok"}),
            ("DELETE", "/api/tests/1"): (200, {}),
            ("DELETE", "/api/tests/submissions/40"): (200, {}),
            ("POST", "/api/tests/1/reset-compromise/7"): (200, {"message": "reset"}),
        })
        tests = make_api(recorder).tests

        assert await tests.get_teacher_tests() == [{"id": 1}]

        submissions = await tests.get_submissions(1)
        assert submissions[0].student_name == "Asha"
        assert submissions[0].is_late
        assert not submissions[0].is_graded

        assert await tests.get_submission_content(40) == b"%PDF answer"

        await tests.grade_submission(40, 8.5, "Well argued")
        assert json.loads(recorder.last.content) == {"grade": 8.5, "feedback": "Well argued"}

        await tests.delete_test(1)
        await tests.delete_submission(40)
        assert await tests.reset_compromise(1, 7) == {"message": "reset"}

    @pytest.mark.asyncio
    async def test_missing_resource(self, make_api):
        with pytest.raises(ApiError) as exc_info:
            await make_api(Recorder({})).tests.delete_test(99)

        assert exc_info.value.status == 404


class TestAuthManager:
    """Test login, logout and whoami"""

    @pytest.mark.asyncio
    async def test_login_stores_token_and_loads_user(self, make_api):
        session = InMemorySessionProvider()
        recorder = Recorder({
            ("POST", "/api/auth/login"): (200, {"token": "jwt-2"}),
            ("GET", "/api/auth/me"): (200, {"email": "s@school.test", "role": "student"}),
        })
        auth = AuthManager(make_api(recorder, session=session), session)

        user = await auth.login("s@school.test", "pw")

        assert session.get_token() == "jwt-2"
        assert user["role"] == "student"
        assert recorder.last.headers["authorization"] == "Bearer jwt-2"
        assert await auth.whoami() == user

    @pytest.mark.asyncio
    async def test_bad_credentials(self, make_api):
        session = InMemorySessionProvider()
        recorder = Recorder({("POST", "/api/auth/login"): (400, {"error": "Invalid credentials"})})
        auth = AuthManager(make_api(recorder, session=session), session)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth.login("s@school.test", "wrong")

        assert exc_info.value.message == "Invalid credentials"
        assert not auth.is_authenticated()

    @pytest.mark.asyncio
    async def test_logout_clears_session(self, make_api, session):
        auth = AuthManager(make_api(Recorder({})), session)

        auth.logout()

        assert not auth.is_authenticated()
        assert await auth.whoami() is None
