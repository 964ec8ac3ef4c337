"""
Test and submission models

Tests are immutable on the client. Everything time-dependent (time left,
lateness, grace period) is computed from an explicit `now` against the
fixed start time, never from elapsed-time bookkeeping.
"""

import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from schoolportal.config import GRACE_PERIOD_MINUTES
from schoolportal.exceptions import FileTooLargeError, InvalidFileTypeError


ALLOWED_FILE_TYPES = [".pdf", ".doc", ".docx"]
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB


class TestType(str, Enum):
    __test__ = False

    TEXT = "TEXT"
    PDF = "PDF"


class TestStatus(str, Enum):
    """Bucket the server placed a test in"""
    __test__ = False

    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    SUBMITTED = "submitted"
    EXPIRED = "expired"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class Submission:
    """A student's one submission for a test; read-only to the student"""
    id: int
    submitted_at: Optional[datetime]
    is_late: bool = False
    grade: Optional[float] = None
    feedback: Optional[str] = None
    status: str = "pending"
    student_id: Optional[int] = None
    student_name: Optional[str] = None
    student_email: Optional[str] = None

    @property
    def is_graded(self) -> bool:
        return self.grade is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Submission":
        return cls(
            id=data["id"],
            submitted_at=parse_timestamp(_pick(data, "submitted_at", "submittedAt")),
            is_late=bool(_pick(data, "is_late", "isLate", default=False)),
            grade=data.get("grade"),
            feedback=data.get("feedback"),
            status=data.get("status", "pending"),
            student_id=data.get("student_id"),
            student_name=data.get("student_name"),
            student_email=data.get("student_email"),
        )


@dataclass(frozen=True)
class Test:
    """A server-defined, time-boxed test"""
    id: int
    title: str
    start_time: datetime
    duration: int  # minutes
    description: str = ""
    type: TestType = TestType.TEXT
    content: Optional[str] = None
    subject: Optional[str] = None
    has_submitted: bool = False
    submission: Optional[Submission] = None
    status: Optional[TestStatus] = None

    __test__ = False  # not a pytest test class

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration)

    @property
    def late_end_time(self) -> datetime:
        return self.end_time + timedelta(minutes=GRACE_PERIOD_MINUTES)

    def time_left(self, now: datetime) -> int:
        """Whole seconds until the grace period closes, never negative"""
        return max(0, int((self.late_end_time - now).total_seconds()))

    def is_late(self, now: datetime) -> bool:
        return now > self.end_time

    def is_in_grace_period(self, now: datetime) -> bool:
        return self.end_time < now <= self.late_end_time

    def late_time_left(self, now: datetime) -> int:
        """Seconds of grace period remaining, 0 outside the grace period"""
        if not self.is_in_grace_period(now):
            return 0
        return self.time_left(now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], status: Optional[TestStatus] = None) -> "Test":
        submission_data = data.get("submission")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description") or "",
            type=TestType(str(data.get("type", "TEXT")).upper()),
            content=data.get("content"),
            start_time=parse_timestamp(_pick(data, "startTime", "start_time")),
            duration=int(data["duration"]),
            subject=data.get("subject"),
            has_submitted=bool(_pick(data, "hasSubmitted", "has_submitted", default=False)),
            submission=Submission.from_dict(submission_data) if submission_data else None,
            status=status,
        )


@dataclass
class TestBuckets:
    """Response of GET /tests/available"""
    upcoming: List[Test] = field(default_factory=list)
    ongoing: List[Test] = field(default_factory=list)
    submitted: List[Test] = field(default_factory=list)
    expired: List[Test] = field(default_factory=list)

    __test__ = False

    def all(self) -> List[Test]:
        return self.upcoming + self.ongoing + self.submitted + self.expired

    def find(self, test_id: int) -> Optional[Test]:
        for test in self.all():
            if test.id == test_id:
                return test
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestBuckets":
        def bucket(status: TestStatus) -> List[Test]:
            return [Test.from_dict(item, status) for item in data.get(status.value) or []]

        return cls(
            upcoming=bucket(TestStatus.UPCOMING),
            ongoing=bucket(TestStatus.ONGOING),
            submitted=bucket(TestStatus.SUBMITTED),
            expired=bucket(TestStatus.EXPIRED),
        )


@dataclass(frozen=True)
class SubmitResult:
    """Server answer to POST /tests/submit"""
    is_late: bool
    submission: Optional[Submission] = None
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmitResult":
        submission_data = data.get("submission")
        return cls(
            is_late=bool(_pick(data, "isLate", "is_late", default=False)),
            submission=Submission.from_dict(submission_data) if submission_data else None,
            message=data.get("message"),
        )


@dataclass(frozen=True)
class SubmissionFile:
    """An answer file chosen by the student"""
    name: str
    size: int
    content_type: str = "application/octet-stream"
    path: Optional[str] = None
    content: Optional[bytes] = field(default=None, repr=False)

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower()

    def read(self) -> bytes:
        if self.content is not None:
            return self.content
        return Path(self.path).read_bytes()

    @classmethod
    def from_path(cls, path: str) -> "SubmissionFile":
        """Read the answer once; files over the size limit stay on disk"""
        file_path = Path(path)
        content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        size = file_path.stat().st_size
        return cls(
            name=file_path.name,
            size=size,
            content_type=content_type,
            path=str(file_path),
            content=file_path.read_bytes() if size <= MAX_FILE_SIZE else None,
        )

    @classmethod
    def from_bytes(cls, name: str, content: bytes) -> "SubmissionFile":
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        return cls(name=name, size=len(content), content_type=content_type, content=content)


def validate_submission_file(file: SubmissionFile) -> None:
    """
    Pre-flight checks for an answer file.

    Raises:
        InvalidFileTypeError: extension not .pdf/.doc/.docx
        FileTooLargeError: larger than 50MB
    """
    if file.extension not in ALLOWED_FILE_TYPES:
        raise InvalidFileTypeError(file.extension or file.name, ALLOWED_FILE_TYPES)
    if file.size > MAX_FILE_SIZE:
        raise FileTooLargeError(file.size, MAX_FILE_SIZE)


def format_time(seconds: int) -> str:
    """HH:MM:SS"""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    remaining = seconds % 60
    return f"{hours:02d}:{minutes:02d}:{remaining:02d}"
