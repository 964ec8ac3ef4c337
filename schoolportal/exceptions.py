"""
Custom Exceptions for SchoolPortal
==================================

Use these instead of generic Exception so callers can tell apart:
1. Transient failures (network, timeout, 5xx) that the API client retries
2. Authentication failures that tear the session down
3. Validation failures that are shown immediately and never retried
4. Cancellations that must be dropped silently

Usage:
    from schoolportal.exceptions import ApiError, RequestCanceledError

    try:
        await client.request("GET", "/tests/available", signal=token)
    except RequestCanceledError:
        return
    except ApiError as e:
        logger.error(f"Listing tests failed: {e}")
        raise
"""

from typing import Optional, Any, Dict, List


class SchoolPortalError(Exception):
    """Base exception for all SchoolPortal errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(SchoolPortalError):
    """Authentication failed or the session is no longer valid"""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, code="AUTH_FAILED")


# ============================================
# Validation Errors (client-side pre-flight)
# ============================================

class ValidationError(SchoolPortalError):
    """Input validation failed"""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class InvalidFileTypeError(ValidationError):
    """File type not allowed"""

    def __init__(self, file_type: str, allowed_types: List[str]):
        super().__init__(
            f"Invalid file type. Allowed types: {', '.join(allowed_types)}",
            field="file"
        )
        self.code = "INVALID_FILE_TYPE"
        self.details = {"file_type": file_type, "allowed_types": allowed_types}


class FileTooLargeError(ValidationError):
    """File exceeds the upload size limit"""

    def __init__(self, size: int, max_size: int):
        super().__init__(
            f"File size exceeds {max_size // (1024 * 1024)}MB limit",
            field="file"
        )
        self.code = "FILE_TOO_LARGE"
        self.details = {"size": size, "max_size": max_size}


# ============================================
# Transport Errors
# ============================================

class ApiError(SchoolPortalError):
    """
    The server answered with an error status.

    The response body is kept exactly as received; the client does not
    interpret it. Callers pick the message they want to show.
    """

    def __init__(self, status: int, body: Any = None, method: str = "", path: str = ""):
        super().__init__(
            f"{method} {path} failed with status {status}".strip(),
            code=f"HTTP_{status}",
            details={"status": status, "method": method, "path": path}
        )
        self.status = status
        self.body = body

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500


class NetworkError(SchoolPortalError):
    """No response was received (connection failure or timeout)"""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message, code="TIMEOUT" if timed_out else "NETWORK_ERROR")
        self.timed_out = timed_out


class RequestCanceledError(SchoolPortalError):
    """
    The caller cancelled the request.

    Not an error for the user; the outcome on the server is unknown.
    """

    def __init__(self, reason: str = "canceled"):
        super().__init__(reason, code="CANCELED")
        self.reason = reason


# ============================================
# Proctoring Errors
# ============================================

class FullscreenError(SchoolPortalError):
    """The display could not be switched into fullscreen mode"""

    def __init__(self, message: str = "Failed to enter fullscreen mode. Please try again."):
        super().__init__(message, code="FULLSCREEN_FAILED")


def is_transient(error: Exception) -> bool:
    """Whether the API client should retry after this error"""
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, ApiError):
        return error.is_server_error
    return False
