"""
Fullscreen capability for proctored viewing

The proctoring layer only sees FullscreenDriver. The terminal implementation
maps "fullscreen" onto rich's alternate screen and treats Ctrl-C while the
paper is showing as the student leaving fullscreen.
"""

import asyncio
import signal
from abc import ABC, abstractmethod
from typing import Callable, Optional

from rich.console import Console

from schoolportal.exceptions import FullscreenError
from schoolportal.logging_config import logger


ExitListener = Callable[[], None]


class FullscreenDriver(ABC):
    """Enter/exit fullscreen and report exits the client did not ask for"""

    def __init__(self):
        self._listener: Optional[ExitListener] = None

    def set_exit_listener(self, listener: Optional[ExitListener]) -> None:
        self._listener = listener

    def _notify_exit(self) -> None:
        if self._listener is not None:
            self._listener()

    @property
    @abstractmethod
    def is_active(self) -> bool:
        ...

    @abstractmethod
    async def enter(self) -> None:
        """Raises FullscreenError when the platform refuses"""

    @abstractmethod
    async def exit(self) -> None:
        ...


class TerminalFullscreen(FullscreenDriver):
    """Alternate-screen "fullscreen" for an interactive terminal"""

    def __init__(self, console: Console):
        super().__init__()
        self.console = console
        self._active = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_active(self) -> bool:
        return self._active

    async def enter(self) -> None:
        if self._active:
            return
        if not self.console.is_terminal:
            raise FullscreenError()
        self.console.set_alt_screen(True)
        self._active = True

        self._loop = asyncio.get_running_loop()
        try:
            self._loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported; fullscreen exits will not be detected")
            self._loop = None

    async def exit(self) -> None:
        if not self._active:
            return
        self._release()

    def _release(self) -> None:
        if self._loop is not None:
            self._loop.remove_signal_handler(signal.SIGINT)
            self._loop = None
        self.console.set_alt_screen(False)
        self._active = False

    def _on_interrupt(self) -> None:
        logger.info("Ctrl-C while in fullscreen")
        self._release()
        self._notify_exit()
