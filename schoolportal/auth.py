"""
SchoolPortal Authentication

Login, logout and status for the terminal client. The token itself lives in
the SessionProvider; this module only produces and destroys it.
"""

from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from schoolportal.api import SchoolAPI
from schoolportal.exceptions import (
    ApiError,
    AuthenticationError,
    NetworkError,
    SchoolPortalError,
)
from schoolportal.logging_config import logger
from schoolportal.session import SessionProvider


class AuthManager:
    """Email/password login against /auth/login"""

    def __init__(self, api: SchoolAPI, session: SessionProvider, console: Optional[Console] = None):
        self.api = api
        self.session = session
        self.console = console or Console()
        self.user: Optional[Dict[str, Any]] = None

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Log in and load the user profile.

        Raises:
            AuthenticationError: bad credentials or no token in the answer
            ApiError, NetworkError: the server could not be reached properly
        """
        try:
            token = await self.api.auth.login(email, password)
        except ApiError as e:
            if e.is_server_error:
                raise
            logger.log_auth_event("login", success=False, user_email=email, reason=str(e.status))
            message = e.body.get("error") if isinstance(e.body, dict) else None
            raise AuthenticationError(message or "Invalid email or password") from e

        self.session.set_token(token)
        self.user = await self.api.auth.me()
        logger.log_auth_event("login", success=True, user_email=email)
        return self.user

    def logout(self) -> None:
        self.session.clear()
        self.user = None
        logger.log_auth_event("logout", success=True)

    async def whoami(self) -> Optional[Dict[str, Any]]:
        """Current user, or None when there is no session"""
        if not self.is_authenticated():
            return None
        if self.user is None:
            self.user = await self.api.auth.me()
        return self.user

    async def interactive_login(self) -> bool:
        """Interactive login flow"""
        self.console.print(Panel(
            "[bold cyan]SchoolPortal - Login[/bold cyan]\n\n"
            "Login using your school account.",
            border_style="cyan"
        ))

        email = Prompt.ask("Email", console=self.console)
        password = Prompt.ask("Password", password=True, console=self.console)

        try:
            await self.login(email, password)
        except AuthenticationError as e:
            self.console.print(f"[red]Login failed: {e.message}[/red]")
            return False
        except NetworkError:
            self.console.print("[red]Cannot connect to server. Is the backend running?[/red]")
            return False
        except SchoolPortalError as e:
            self.console.print(f"[red]Login error: {e.message}[/red]")
            return False
        return True

    async def show_status(self) -> None:
        """Show current authentication status"""
        user = None
        if self.is_authenticated():
            try:
                user = await self.whoami()
            except AuthenticationError:
                user = None

        if user:
            self.console.print(Panel(
                f"[green]Authenticated[/green]\n\n"
                f"[bold]User:[/bold] {user.get('name', '-')}\n"
                f"[bold]Email:[/bold] {user.get('email', '-')}\n"
                f"[bold]Role:[/bold] {user.get('role', '-')}",
                title="Authentication Status",
                border_style="green"
            ))
        else:
            self.console.print(Panel(
                "[red]Not authenticated[/red]\n\n"
                "Please login using: [cyan]schoolportal login[/cyan]",
                title="Authentication Status",
                border_style="red"
            ))
