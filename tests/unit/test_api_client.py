"""
Unit Tests for the Resilient API Client
Tests for: retries and backoff, timeouts, 401 teardown, cancellation
"""
import asyncio
import json

import httpx
import pytest

from schoolportal.api_client import (
    MAX_BACKOFF_MS,
    CancellationToken,
    RequestDescriptor,
    backoff_delay,
)
from schoolportal.exceptions import (
    ApiError,
    AuthenticationError,
    NetworkError,
    RequestCanceledError,
)
from schoolportal.session import InMemorySessionProvider


class TestBackoff:
    """Test the retry delay schedule"""

    def test_schedule_for_default_retries(self):
        """Test 1s, 3s, 7s for the three default retries"""
        assert [backoff_delay(n) for n in (1, 2, 3)] == [1.0, 3.0, 7.0]

    def test_delay_is_capped(self):
        """Test that the delay never exceeds the cap"""
        assert backoff_delay(4) == MAX_BACKOFF_MS / 1000
        assert backoff_delay(10) == 10.0

    def test_descriptor_next_attempt_is_a_copy(self):
        """Test that retrying produces a new descriptor"""
        first = RequestDescriptor(method="GET", path="/x", timeout=20.0)
        second = first.next_attempt()

        assert first.retry_count == 0
        assert second.retry_count == 1
        assert second.path == "/x"


class TestRetries:
    """Test retry policy"""

    @pytest.mark.asyncio
    async def test_server_error_retried_with_backoff(self, make_client, sleep):
        """Test that a persistent 503 is attempted 1 + 3 times"""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={"error": "down"})

        async with make_client(handler) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.request("GET", "/tests/available")

        assert len(calls) == 4
        assert sleep.delays == [1.0, 3.0, 7.0]
        assert exc_info.value.status == 503
        assert exc_info.value.body == {"error": "down"}

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, make_client, sleep):
        """Test that a success after two failures is returned"""
        statuses = iter([500, 502, 200])

        def handler(request):
            status = next(statuses)
            return httpx.Response(status, json={"ok": status == 200})

        async with make_client(handler) as client:
            response = await client.request("GET", "/tests/available")

        assert response.status == 200
        assert response.data == {"ok": True}
        assert sleep.delays == [1.0, 3.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, make_client, sleep):
        """Test that a 404 fails after a single attempt"""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"error": "Test not found"})

        async with make_client(handler) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.request("GET", "/tests/99/content")

        assert len(calls) == 1
        assert sleep.delays == []
        assert exc_info.value.status == 404
        assert exc_info.value.body["error"] == "Test not found"

    @pytest.mark.asyncio
    async def test_connection_error_retried(self, make_client, sleep):
        """Test that connection failures are retried then surfaced"""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.request("GET", "/auth/me")

        assert len(calls) == 4
        assert exc_info.value.timed_out is False

    @pytest.mark.asyncio
    async def test_timeout_treated_as_network_failure(self, make_client, sleep):
        """Test that a timeout is retried and reported as timed out"""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.request("GET", "/auth/me")

        assert len(calls) == 4
        assert exc_info.value.timed_out is True
        assert exc_info.value.code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_timeout_bounds_whole_request(self, make_client, sleep):
        """Test that a slow server is cut off at the deadline, not per read"""
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        loop = asyncio.get_running_loop()
        started = loop.time()
        async with make_client(handler) as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.request("GET", "/tests/1/content", timeout=50)

        assert loop.time() - started < 2
        assert exc_info.value.timed_out is True
        assert len(calls) == 4
        assert sleep.delays == [1.0, 3.0, 7.0]

    @pytest.mark.asyncio
    async def test_max_retries_from_config(self, make_client, config, sleep):
        """Test that max_retries=0 disables retrying"""
        config.max_retries = 0
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        async with make_client(handler, config=config) as client:
            with pytest.raises(ApiError):
                await client.request("GET", "/tests/available")

        assert len(calls) == 1
        assert sleep.delays == []


class TestHeaders:
    """Test request decoration"""

    @pytest.mark.asyncio
    async def test_bearer_token_attached(self, make_client):
        """Test that the session token is sent as a bearer token"""
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={})

        async with make_client(handler) as client:
            await client.request("POST", "/tests/1/grade", {"grade": 9})

        assert seen["authorization"] == "Bearer test-token"
        assert seen["content-type"] == "application/json"
        assert seen["accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_no_authorization_without_token(self, make_client):
        """Test anonymous requests carry no Authorization header"""
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={"token": "abc"})

        async with make_client(handler, session=InMemorySessionProvider()) as client:
            await client.request("POST", "/auth/login", {"email": "a@b.c", "password": "x"})

        assert "authorization" not in seen

    @pytest.mark.asyncio
    async def test_json_body_sent(self, make_client):
        """Test the JSON body reaches the server unchanged"""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        async with make_client(handler) as client:
            await client.request("POST", "/tests/submissions/4/grade", {"grade": 7.5, "feedback": "ok"})

        assert bodies == [{"grade": 7.5, "feedback": "ok"}]

    @pytest.mark.asyncio
    async def test_multipart_leaves_content_type_to_httpx(self, make_client):
        """Test that multipart uploads get a boundary content type"""
        seen = {}

        def handler(request):
            seen["content-type"] = request.headers["content-type"]
            seen["body"] = request.read()
            return httpx.Response(200, json={"isLate": False})

        async with make_client(handler) as client:
            await client.request(
                "POST", "/tests/submit",
                files={"file": ("answer.pdf", b"%PDF-1.4", "application/pdf")},
                data={"testId": "3", "isLate": "false"},
            )

        assert seen["content-type"].startswith("multipart/form-data; boundary=")
        assert b'name="testId"' in seen["body"]
        assert b"%PDF-1.4" in seen["body"]

    @pytest.mark.asyncio
    async def test_binary_response_returned_as_bytes(self, make_client):
        """Test that non-JSON payloads are returned raw"""

        def handler(request):
            return httpx.Response(
                200, content=b"%PDF-1.4 paper", headers={"content-type": "application/pdf"}
            )

        async with make_client(handler) as client:
            response = await client.request("GET", "/tests/1/content")

        assert response.data == b"%PDF-1.4 paper"


class TestUnauthorized:
    """Test global 401 handling"""

    @pytest.mark.asyncio
    async def test_401_clears_token_and_redirects_once(self, make_client, session, sleep):
        """Test that a 401 tears down the session and is not retried"""
        redirects = []
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": "Token expired"})

        async with make_client(handler, on_unauthorized=redirects.append) as client:
            with pytest.raises(AuthenticationError):
                await client.request("GET", "/tests/available")

        assert session.get_token() is None
        assert redirects == ["/login"]
        assert len(calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_401_without_redirect_hook(self, make_client, session):
        """Test that a missing hook still clears the session"""

        def handler(request):
            return httpx.Response(401)

        async with make_client(handler) as client:
            with pytest.raises(AuthenticationError):
                await client.request("GET", "/auth/me")

        assert not session.is_authenticated()

    @pytest.mark.asyncio
    async def test_401_on_retry_stops_retrying(self, make_client, session, sleep):
        """Test that a 401 after a 5xx still tears down and ends the loop"""
        redirects = []
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500)
            return httpx.Response(401)

        async with make_client(handler, on_unauthorized=redirects.append) as client:
            with pytest.raises(AuthenticationError):
                await client.request("GET", "/tests/available")

        assert len(calls) == 2
        assert redirects == ["/login"]
        assert session.get_token() is None
        assert sleep.delays == [1.0]


class TestCancellation:
    """Test cancellation and de-duplication"""

    @pytest.mark.asyncio
    async def test_cancelled_before_send(self, make_client):
        """Test that a pre-cancelled token sends nothing"""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        token = CancellationToken()
        token.cancel("navigated away")

        async with make_client(handler) as client:
            with pytest.raises(RequestCanceledError) as exc_info:
                await client.request("GET", "/tests/available", signal=token)

        assert calls == []
        assert exc_info.value.reason == "navigated away"

    @pytest.mark.asyncio
    async def test_cancel_pending_request(self, make_client):
        """Test that cancelling an in-flight request aborts it"""
        started = asyncio.Event()
        never = asyncio.Event()

        async def handler(request):
            started.set()
            await never.wait()
            return httpx.Response(200, json={})

        token = CancellationToken()
        async with make_client(handler) as client:
            pending = asyncio.ensure_future(client.request("GET", "/tests/1/content", signal=token))
            await started.wait()
            token.cancel()

            with pytest.raises(RequestCanceledError):
                await pending

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, make_client):
        """Test that cancellation also interrupts the wait between retries"""
        sleeping = asyncio.Event()
        never = asyncio.Event()
        calls = []

        async def slow_sleep(delay):
            sleeping.set()
            await never.wait()

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        token = CancellationToken()
        async with make_client(handler, sleep=slow_sleep) as client:
            pending = asyncio.ensure_future(client.request("GET", "/tests/available", signal=token))
            await sleeping.wait()
            token.cancel()

            with pytest.raises(RequestCanceledError):
                await pending

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        """Test that cancelling twice keeps the first reason"""
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, make_client):
        """Test that cancelling a finished request leaves its response alone"""

        def handler(request):
            return httpx.Response(200, json={"ongoing": []})

        async with make_client(handler) as client:
            token = client.supersede("tests:available")
            response = await client.request("GET", "/tests/available", signal=token)
            token.cancel("late")
            client.cancel("tests:available")

        assert response.status == 200
        assert response.data == {"ongoing": []}

    @pytest.mark.asyncio
    async def test_supersede_cancels_stale_request(self, make_client):
        """Test that only the latest request under a key resolves"""
        first_started = asyncio.Event()
        never = asyncio.Event()
        calls = []

        async def handler(request):
            calls.append(request)
            if len(calls) == 1:
                first_started.set()
                await never.wait()
            return httpx.Response(200, json={"call": len(calls)})

        async with make_client(handler) as client:
            stale = asyncio.ensure_future(
                client.request("GET", "/tests/available", signal=client.supersede("tests"))
            )
            await first_started.wait()

            fresh = await client.request("GET", "/tests/available", signal=client.supersede("tests"))

            with pytest.raises(RequestCanceledError) as exc_info:
                await stale

        assert fresh.data == {"call": 2}
        assert "superseded" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_cancel_by_key(self, make_client):
        """Test that cancel(key) aborts the request issued under that key"""
        started = asyncio.Event()
        never = asyncio.Event()

        async def handler(request):
            started.set()
            await never.wait()
            return httpx.Response(200)

        async with make_client(handler) as client:
            pending = asyncio.ensure_future(
                client.request("GET", "/tests/5/content", signal=client.supersede("content:5"))
            )
            await started.wait()
            client.cancel("content:5")

            with pytest.raises(RequestCanceledError):
                await pending

            # Nothing registered under the key any more
            client.cancel("content:5")
