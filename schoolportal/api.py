"""
SchoolPortal API - typed wrappers over the REST endpoints

Only request shapes live here; retry, auth and cancellation are the
ApiClient's business.
"""

from typing import Any, Dict, List, Optional

from schoolportal.api_client import ApiClient, CancellationToken
from schoolportal.exceptions import AuthenticationError
from schoolportal.models import SubmissionFile, SubmitResult, Submission, TestBuckets


class AuthAPI:
    """/auth endpoints"""

    def __init__(self, client: ApiClient):
        self.client = client

    async def login(self, email: str, password: str) -> str:
        """Exchange credentials for a bearer token"""
        response = await self.client.request(
            "POST", "/auth/login", {"email": email, "password": password},
            priority="high",
        )
        token = (response.data or {}).get("token") if isinstance(response.data, dict) else None
        if not token:
            raise AuthenticationError("No token received from server")
        return token

    async def me(self) -> Dict[str, Any]:
        response = await self.client.request("GET", "/auth/me")
        return response.data or {}


class TestsAPI:
    """/tests endpoints for students and teachers"""

    __test__ = False

    def __init__(self, client: ApiClient):
        self.client = client
        self.upload_timeout = client.config.upload_timeout_ms

    # ==================== Student ====================

    async def get_available(self, signal: Optional[CancellationToken] = None) -> TestBuckets:
        response = await self.client.request("GET", "/tests/available", signal=signal)
        return TestBuckets.from_dict(response.data or {})

    async def get_content(self, test_id: int, signal: Optional[CancellationToken] = None) -> bytes:
        """Download the test paper (PDF payload)"""
        response = await self.client.request(
            "GET", f"/tests/{test_id}/content",
            headers={"Accept": "application/pdf"},
            signal=signal,
        )
        data = response.data
        if isinstance(data, str):
            return data.encode("utf-8")
        return data

    async def submit(self, test_id: int, file: SubmissionFile, is_late: bool) -> SubmitResult:
        # Read once; every retry re-sends the same bytes
        content = file.read()
        response = await self.client.request(
            "POST", "/tests/submit",
            files={"file": (file.name, content, file.content_type)},
            data={"testId": str(test_id), "isLate": "true" if is_late else "false"},
            timeout=self.upload_timeout,
            priority="high",
        )
        return SubmitResult.from_dict(response.data or {})

    # ==================== Teacher ====================

    async def create(
        self,
        title: str,
        description: str,
        duration: int,
        start_time: str,
        test_type: str = "TEXT",
        content: Optional[str] = None,
        paper: Optional[SubmissionFile] = None,
        class_id: Optional[str] = None,
        subject: Optional[str] = None,
        assigned_students: Optional[str] = None,
    ) -> Dict[str, Any]:
        fields = {
            "title": title,
            "description": description,
            "duration": str(duration),
            "startTime": start_time,
            "type": test_type,
        }
        optional = {
            "content": content,
            "class": class_id,
            "subject": subject,
            "assignedStudents": assigned_students,
        }
        fields.update({key: value for key, value in optional.items() if value is not None})

        if paper is None:
            response = await self.client.request(
                "POST", "/tests", fields, timeout=self.upload_timeout
            )
        else:
            response = await self.client.request(
                "POST", "/tests",
                files={"file": (paper.name, paper.read(), paper.content_type)},
                data=fields,
                timeout=self.upload_timeout,
            )
        return response.data or {}

    async def get_teacher_tests(self) -> List[Dict[str, Any]]:
        response = await self.client.request("GET", "/tests/teacher")
        return response.data or []

    async def get_submissions(self, test_id: int) -> List[Submission]:
        response = await self.client.request("GET", f"/tests/{test_id}/submissions")
        return [Submission.from_dict(item) for item in response.data or []]

    async def get_submission_content(self, submission_id: int) -> bytes:
        response = await self.client.request(
            "GET", f"/tests/submissions/{submission_id}/content",
            headers={"Accept": "application/pdf"},
        )
        return response.data

    async def grade_submission(
        self, submission_id: int, grade: float, feedback: Optional[str] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"grade": grade}
        if feedback is not None:
            payload["feedback"] = feedback
        response = await self.client.request(
            "POST", f"/tests/submissions/{submission_id}/grade", payload
        )
        return response.data or {}

    async def delete_test(self, test_id: int) -> None:
        await self.client.request("DELETE", f"/tests/{test_id}")

    async def delete_submission(self, submission_id: int) -> None:
        await self.client.request("DELETE", f"/tests/submissions/{submission_id}")

    async def reset_compromise(self, test_id: int, student_id: int) -> Dict[str, Any]:
        """Server-side authority for clearing a student's Compromise Flag"""
        response = await self.client.request(
            "POST", f"/tests/{test_id}/reset-compromise/{student_id}"
        )
        return response.data or {}


class SchoolAPI:
    """All endpoint groups over one client"""

    def __init__(self, client: ApiClient):
        self.client = client
        self.auth = AuthAPI(client)
        self.tests = TestsAPI(client)
