"""
Session storage - the client-side record of the bearer token

The API client never reads the token from a global; it asks the injected
SessionProvider. At most one session is active per process.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from schoolportal.logging_config import logger


class SessionProvider(ABC):
    """Capability for reading and replacing the current bearer token"""

    @abstractmethod
    def get_token(self) -> Optional[str]:
        ...

    @abstractmethod
    def set_token(self, token: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def is_authenticated(self) -> bool:
        return bool(self.get_token())


class InMemorySessionProvider(SessionProvider):
    """Keeps the token for the lifetime of the process only"""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get_token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileSessionProvider(SessionProvider):
    """
    Persists the token in a credentials file.

    The file is created with 0600 permissions where the platform allows it
    and removed on logout or on an authentication failure.
    """

    def __init__(self, credentials_file: str):
        self.credentials_file = Path(credentials_file)
        self._token: Optional[str] = None
        self._load()

    def _load(self) -> None:
        if not self.credentials_file.exists():
            return
        try:
            with open(self.credentials_file, 'r') as f:
                data = json.load(f)
            self._token = data.get("token") or None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load credentials from {self.credentials_file}: {e}")
            self._token = None

    def get_token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token
        self.credentials_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.credentials_file, 'w') as f:
            json.dump({"token": token}, f, indent=2)
        try:
            os.chmod(self.credentials_file, 0o600)
        except OSError:
            logger.debug("Could not restrict credentials file permissions")

    def clear(self) -> None:
        self._token = None
        if self.credentials_file.exists():
            self.credentials_file.unlink()


_provider: Optional[SessionProvider] = None
_provider_lock = threading.Lock()


def get_session_provider(credentials_file: Optional[str] = None) -> SessionProvider:
    """
    Get the process-wide session provider.

    The first call decides the backing store: a credentials file when a path
    is given, memory otherwise.
    """
    global _provider
    with _provider_lock:
        if _provider is None:
            if credentials_file:
                _provider = FileSessionProvider(credentials_file)
            else:
                _provider = InMemorySessionProvider()
        return _provider
