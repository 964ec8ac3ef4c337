#!/usr/bin/env python3
"""
SchoolPortal CLI - Main Entry Point

Usage:
    schoolportal login                       # Login to your school account
    schoolportal tests                       # List your tests
    schoolportal take 12 --file answer.pdf   # Take a proctored test
    schoolportal submit 12 answer.pdf        # Submit without opening the paper
    schoolportal --help                      # Show help
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from schoolportal.api import SchoolAPI
from schoolportal.api_client import ApiClient
from schoolportal.auth import AuthManager
from schoolportal.config import ClientConfig
from schoolportal.exceptions import (
    AuthenticationError,
    NetworkError,
    SchoolPortalError,
)
from schoolportal.fullscreen import TerminalFullscreen
from schoolportal.logging_config import setup_logging
from schoolportal.models import SubmissionFile, Test, TestBuckets, TestType, format_time, utcnow
from schoolportal.proctoring import ProctoredTestSession, StudentTestDesk
from schoolportal.session import SessionProvider, get_session_provider
from schoolportal.state_machine import Attempt, AttemptState
from schoolportal.storage import CompromiseRegistry, JsonFileStore


console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="schoolportal",
        description="SchoolPortal - timed, proctored tests from the terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  schoolportal login                           Login to your account
  schoolportal logout                          Logout
  schoolportal status                          Check login status
  schoolportal tests                           List upcoming, ongoing and finished tests
  schoolportal take 12                         Open test 12 in fullscreen
  schoolportal take 12 --file answer.pdf       Open test 12 with an answer file ready
  schoolportal submit 12 answer.pdf            Submit an answer file from the list

Teachers:
  schoolportal created                         List tests you created
  schoolportal submissions 12                  List submissions for test 12
  schoolportal download 40 answer.pdf          Save submission 40 to a file
  schoolportal grade 40 8.5 --feedback "Good"  Grade submission 40
  schoolportal reset-compromise 12 7           Let student 7 view test 12 again

Proctoring:
  While a test paper is open the terminal switches to fullscreen.
  Pressing Ctrl-C there counts as leaving fullscreen: the test is marked
  as compromised and the paper can no longer be opened, although the
  answer file may still be submitted.

  Answer files must be .pdf, .doc or .docx and at most 50MB. Submissions
  are accepted up to 10 minutes after the test ends and are marked late.
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Auth
    login_parser = subparsers.add_parser("login", help="Login to SchoolPortal")
    login_parser.add_argument("--email", "-e", help="Email (prompts for the password)")
    subparsers.add_parser("logout", help="Logout from SchoolPortal")
    subparsers.add_parser("status", help="Show authentication status")

    # Student
    subparsers.add_parser("tests", help="List available tests")

    take_parser = subparsers.add_parser("take", help="Open a test paper in fullscreen")
    take_parser.add_argument("test_id", type=int)
    take_parser.add_argument("--file", "-f", help="Answer file to submit")

    submit_parser = subparsers.add_parser("submit", help="Submit an answer file")
    submit_parser.add_argument("test_id", type=int)
    submit_parser.add_argument("file")

    # Teacher
    subparsers.add_parser("created", help="List tests you created")

    create_parser_ = subparsers.add_parser("create-test", help="Create a test")
    create_parser_.add_argument("title")
    create_parser_.add_argument("--start", required=True, help="ISO start time, e.g. 2024-05-01T09:00:00Z")
    create_parser_.add_argument("--duration", type=int, required=True, help="Minutes")
    create_parser_.add_argument("--description", default="")
    create_parser_.add_argument("--content", help="Question text for a TEXT test")
    create_parser_.add_argument("--paper", help="PDF question paper (makes a PDF test)")
    create_parser_.add_argument("--class", dest="class_id")
    create_parser_.add_argument("--subject")
    create_parser_.add_argument("--students", help="Comma-separated student ids")

    submissions_parser = subparsers.add_parser("submissions", help="List submissions for a test")
    submissions_parser.add_argument("test_id", type=int)

    download_parser = subparsers.add_parser("download", help="Save a submitted answer file")
    download_parser.add_argument("submission_id", type=int)
    download_parser.add_argument("output")

    grade_parser = subparsers.add_parser("grade", help="Grade a submission")
    grade_parser.add_argument("submission_id", type=int)
    grade_parser.add_argument("grade", type=float)
    grade_parser.add_argument("--feedback")

    delete_test_parser = subparsers.add_parser("delete-test", help="Delete a test")
    delete_test_parser.add_argument("test_id", type=int)

    delete_sub_parser = subparsers.add_parser("delete-submission", help="Delete a submission")
    delete_sub_parser.add_argument("submission_id", type=int)

    reset_parser = subparsers.add_parser(
        "reset-compromise", help="Clear a student's compromise flag for a test"
    )
    reset_parser.add_argument("test_id", type=int)
    reset_parser.add_argument("student_id", type=int)

    # Verbose mode
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output"
    )

    # Print version
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    # Config file
    parser.add_argument(
        "--config",
        type=str,
        help="Path to config file"
    )

    # Server URL
    parser.add_argument(
        "--server-url",
        type=str,
        help="Backend API URL (default: http://localhost:5000/api)"
    )

    return parser


def load_config(args: argparse.Namespace) -> ClientConfig:
    config = ClientConfig.load_default()
    if args.config:
        config.load_from_file(args.config)
    if args.server_url:
        config.api_base_url = args.server_url
    if args.verbose:
        config.verbose = True
        config.log_level = "DEBUG"
    return config


def on_unauthorized(login_path: str) -> None:
    console.print(
        "\n[yellow]Session expired. Please login again:[/yellow] "
        "[cyan]schoolportal login[/cyan]"
    )


# ==================== Rendering ====================

def _time_left_cell(test: Test, compromised: bool) -> str:
    now = utcnow()
    if test.has_submitted:
        return "[green]submitted[/green]" + (" [yellow](late)[/yellow]"
                                             if test.submission and test.submission.is_late else "")
    left = test.time_left(now)
    if left == 0:
        return "[red]expired[/red]"
    if test.start_time > now:
        return f"starts {test.start_time:%Y-%m-%d %H:%M} UTC"
    cell = format_time(left)
    if test.is_in_grace_period(now):
        cell = f"[yellow]{cell} (late)[/yellow]"
    if compromised:
        cell += " [red]compromised[/red]"
    return cell


def render_tests(buckets: TestBuckets, registry: CompromiseRegistry) -> Table:
    table = Table(title="Tests", show_lines=False)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Title")
    table.add_column("Subject")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Time left")

    for test in buckets.all():
        table.add_row(
            str(test.id),
            test.title,
            test.subject or "-",
            test.status.value if test.status else "-",
            f"{test.duration} min",
            _time_left_cell(test, registry.is_compromised(test.id)),
        )
    return table


def render_attempt(session: ProctoredTestSession, paper_path: Optional[Path]) -> Panel:
    attempt = session.attempt
    test = attempt.test
    lines = [f"[bold]{test.title}[/bold]"]
    if test.description:
        lines.append(test.description)
    lines.append("")

    if attempt.time_left is not None:
        style = "red" if attempt.is_late else "green"
        label = "Late submission window" if attempt.is_late else "Time left"
        lines.append(f"[{style}]{label}: {format_time(attempt.time_left)}[/{style}]")
    if attempt.warning:
        lines.append(f"[bold red]{attempt.warning}[/bold red]")
    if attempt.error:
        lines.append(f"[red]{attempt.error}[/red]")
    if attempt.notice:
        lines.append(f"[yellow]{attempt.notice}[/yellow]")
    lines.append("")

    if not attempt.content_ready:
        lines.append("[dim]Loading test paper...[/dim]")
    elif paper_path is not None:
        lines.append(f"Question paper: [cyan]{paper_path}[/cyan]")
    else:
        lines.append((session.paper or b"").decode("utf-8", errors="replace"))

    lines.append("")
    lines.append(
        "Answer file: " + (f"[cyan]{attempt.selected_file.name}[/cyan]"
                           if attempt.selected_file else "[dim]none[/dim]")
    )
    lines.append("[dim]Commands: file PATH | submit | close | refresh[/dim]")
    return Panel("\n".join(lines), title=f"Test {test.id}", border_style="cyan")


def print_result(attempt: Attempt) -> None:
    if attempt.state == AttemptState.SUBMITTED:
        console.print("\n[green]✓ Test submitted successfully[/green]")
        if attempt.notice:
            console.print(f"[yellow]{attempt.notice}[/yellow]")
    elif attempt.error:
        console.print(f"\n[red]✗ {attempt.error}[/red]")


# ==================== Commands ====================

class Context:
    """Everything a command needs, built once per invocation"""

    def __init__(self, config: ClientConfig, session: SessionProvider, client: ApiClient):
        self.config = config
        self.session = session
        self.client = client
        self.api = SchoolAPI(client)
        self.auth = AuthManager(self.api, session, console)
        self.registry = CompromiseRegistry(JsonFileStore(config.compromise_file))

    def desk(self) -> StudentTestDesk:
        return StudentTestDesk(self.api, self.registry, TerminalFullscreen(console))


async def cmd_login(ctx: Context, args: argparse.Namespace) -> int:
    if args.email:
        password = Prompt.ask("Password", password=True, console=console)
        try:
            await ctx.auth.login(args.email, password)
        except AuthenticationError as e:
            console.print(f"\n[red]✗ Login failed: {e.message}[/red]")
            return 1
        success = True
    else:
        success = await ctx.auth.interactive_login()

    if success:
        user = ctx.auth.user or {}
        console.print("\n[green]✓ Login successful![/green]")
        console.print(f"Welcome, [bold]{user.get('name', user.get('email', ''))}[/bold]!")
        console.print("\nTry: [cyan]schoolportal tests[/cyan]")
        return 0
    console.print("\n[red]✗ Login failed[/red]")
    return 1


async def cmd_logout(ctx: Context, args: argparse.Namespace) -> int:
    ctx.auth.logout()
    console.print("[green]Logged out successfully[/green]")
    return 0


async def cmd_status(ctx: Context, args: argparse.Namespace) -> int:
    await ctx.auth.show_status()
    return 0


async def cmd_tests(ctx: Context, args: argparse.Namespace) -> int:
    desk = ctx.desk()
    buckets = await desk.refresh()
    if buckets is None:
        console.print(f"[red]{desk.error}[/red]")
        return 1
    if not buckets.all():
        console.print("[dim]No tests available[/dim]")
        return 0
    console.print(render_tests(buckets, ctx.registry))
    return 0


async def _open_desk_session(ctx: Context, test_id: int):
    desk = ctx.desk()
    if await desk.refresh() is None:
        console.print(f"[red]{desk.error}[/red]")
        return desk, None
    return desk, desk.session_for(test_id)


async def cmd_submit(ctx: Context, args: argparse.Namespace) -> int:
    desk, session = await _open_desk_session(ctx, args.test_id)
    if session is None:
        return 1
    try:
        attempt = await session.select_file(SubmissionFile.from_path(args.file))
        if attempt.error:
            console.print(f"[red]✗ {attempt.error}[/red]")
            return 1
        attempt = await session.submit()
        print_result(attempt)
        return 0 if attempt.state == AttemptState.SUBMITTED else 1
    finally:
        await desk.close()


async def _read_command() -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: Prompt.ask("[cyan]>[/cyan]", console=console))


async def cmd_take(ctx: Context, args: argparse.Namespace) -> int:
    desk, session = await _open_desk_session(ctx, args.test_id)
    if session is None:
        return 1

    paper_path: Optional[Path] = None
    last_state = session.attempt.state

    def on_change(attempt: Attempt) -> None:
        nonlocal last_state
        if attempt.warning and attempt.state == AttemptState.VIEWING and last_state == attempt.state:
            console.print(f"\n[bold red]{attempt.warning}[/bold red]")
        if attempt.time_up and attempt.state == AttemptState.SUBMITTING and last_state != attempt.state:
            console.print("\n[yellow]Time is up - submitting your answer file...[/yellow]")
        if attempt.state == AttemptState.SUBMITTED and last_state == AttemptState.SUBMITTING \
                and attempt.auto_submit_fired:
            console.print("\n[green]Answer submitted automatically. Press Enter to continue.[/green]")
        last_state = attempt.state

    session.on_change(on_change)

    try:
        answer = SubmissionFile.from_path(args.file) if args.file else None

        attempt = await session.open()
        if not attempt.is_open:
            console.print(f"[red]✗ {attempt.error or 'Could not open the test'}[/red]")
            return 1

        if answer is not None:
            await session.select_file(answer)
        await session.settle()

        if session.paper is not None and session.test.type == TestType.PDF:
            paper_path = Path(ctx.config.config_dir) / "papers" / f"test-{session.test.id}.pdf"
            paper_path.parent.mkdir(parents=True, exist_ok=True)
            paper_path.write_bytes(session.paper)

        console.print(render_attempt(session, paper_path))
        while session.attempt.is_open:
            command = (await _read_command()).strip()
            if not session.attempt.is_open:
                break
            name, _, rest = command.partition(" ")
            if name == "file" and rest:
                try:
                    await session.select_file(SubmissionFile.from_path(rest.strip()))
                except OSError as e:
                    console.print(f"[red]Cannot read {rest.strip()}: {e.strerror}[/red]")
                    continue
            elif name == "submit":
                await session.submit()
            elif name == "close":
                await session.close()
                break
            elif name not in ("refresh", ""):
                console.print("[dim]Commands: file PATH | submit | close | refresh[/dim]")
                continue
            if session.attempt.is_open:
                console.print(render_attempt(session, paper_path))
                await session.dismiss_error()

        attempt = session.attempt
        print_result(attempt)
        if attempt.compromised:
            console.print(
                "[yellow]This test is marked as compromised. "
                "You may still submit with: [cyan]schoolportal submit "
                f"{attempt.test.id} FILE[/cyan][/yellow]"
            )
        return 0 if attempt.state == AttemptState.SUBMITTED else 1
    finally:
        await desk.close()
        if paper_path is not None and paper_path.exists():
            paper_path.unlink()


async def cmd_created(ctx: Context, args: argparse.Namespace) -> int:
    tests = await ctx.api.tests.get_teacher_tests()
    table = Table(title="Your tests")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Start")
    table.add_column("Duration", justify="right")
    table.add_column("Submissions", justify="right")
    for item in tests:
        table.add_row(
            str(item.get("id")),
            item.get("title", ""),
            item.get("type", "-"),
            str(item.get("startTime") or item.get("start_time") or "-"),
            f"{item.get('duration', '-')} min",
            str(item.get("submissionCount", item.get("submission_count", "-"))),
        )
    console.print(table)
    return 0


async def cmd_create_test(ctx: Context, args: argparse.Namespace) -> int:
    paper = SubmissionFile.from_path(args.paper) if args.paper else None
    created = await ctx.api.tests.create(
        title=args.title,
        description=args.description,
        duration=args.duration,
        start_time=args.start,
        test_type="PDF" if paper else "TEXT",
        content=args.content,
        paper=paper,
        class_id=args.class_id,
        subject=args.subject,
        assigned_students=args.students,
    )
    console.print(f"[green]✓ Created test {created.get('id', '')}[/green]")
    return 0


async def cmd_submissions(ctx: Context, args: argparse.Namespace) -> int:
    submissions = await ctx.api.tests.get_submissions(args.test_id)
    table = Table(title=f"Submissions for test {args.test_id}")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Student")
    table.add_column("Submitted")
    table.add_column("Late")
    table.add_column("Grade", justify="right")
    table.add_column("Feedback")
    for sub in submissions:
        table.add_row(
            str(sub.id),
            sub.student_name or sub.student_email or str(sub.student_id or "-"),
            f"{sub.submitted_at:%Y-%m-%d %H:%M}" if sub.submitted_at else "-",
            "[yellow]yes[/yellow]" if sub.is_late else "no",
            f"{sub.grade:g}" if sub.is_graded else "-",
            sub.feedback or "",
        )
    console.print(table)
    return 0


async def cmd_download(ctx: Context, args: argparse.Namespace) -> int:
    content = await ctx.api.tests.get_submission_content(args.submission_id)
    Path(args.output).write_bytes(content)
    console.print(f"[green]✓ Saved to {args.output}[/green]")
    return 0


async def cmd_grade(ctx: Context, args: argparse.Namespace) -> int:
    await ctx.api.tests.grade_submission(args.submission_id, args.grade, args.feedback)
    console.print(f"[green]✓ Graded submission {args.submission_id}[/green]")
    return 0


async def cmd_delete_test(ctx: Context, args: argparse.Namespace) -> int:
    await ctx.api.tests.delete_test(args.test_id)
    console.print(f"[green]✓ Deleted test {args.test_id}[/green]")
    return 0


async def cmd_delete_submission(ctx: Context, args: argparse.Namespace) -> int:
    await ctx.api.tests.delete_submission(args.submission_id)
    console.print(f"[green]✓ Deleted submission {args.submission_id}[/green]")
    return 0


async def cmd_reset_compromise(ctx: Context, args: argparse.Namespace) -> int:
    await ctx.api.tests.reset_compromise(args.test_id, args.student_id)
    console.print(
        f"[green]✓ Compromise flag cleared for student {args.student_id} on test {args.test_id}[/green]"
    )
    return 0


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "status": cmd_status,
    "tests": cmd_tests,
    "take": cmd_take,
    "submit": cmd_submit,
    "created": cmd_created,
    "create-test": cmd_create_test,
    "submissions": cmd_submissions,
    "download": cmd_download,
    "grade": cmd_grade,
    "delete-test": cmd_delete_test,
    "delete-submission": cmd_delete_submission,
    "reset-compromise": cmd_reset_compromise,
}

PUBLIC_COMMANDS = {"login", "logout", "status"}


async def run(args: argparse.Namespace, config: ClientConfig) -> int:
    session = get_session_provider(config.credentials_file)

    if args.command not in PUBLIC_COMMANDS and not session.is_authenticated():
        console.print("\n[red]✗ Authentication required[/red]")
        console.print("\nPlease login first:")
        console.print("  [cyan]schoolportal login[/cyan]")
        return 1

    async with ApiClient(config, session, on_unauthorized=on_unauthorized) as client:
        ctx = Context(config, session, client)
        return await COMMANDS[args.command](ctx, args)


def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config = load_config(args)
    setup_logging(config.log_level, config.log_file, config.environment)

    try:
        sys.exit(asyncio.run(run(args, config)))
    except KeyboardInterrupt:
        console.print("\n\nGoodbye!")
        sys.exit(0)
    except AuthenticationError as e:
        console.print(f"\n[red]✗ {e.message}[/red]")
        sys.exit(1)
    except NetworkError as e:
        console.print(f"\n[red]❌ Connection Error: {e.message}[/red]")
        console.print("\nThe SchoolPortal server is not available.")
        console.print("Please try again later or contact support.")
        sys.exit(1)
    except (SchoolPortalError, OSError) as e:
        if args.verbose:
            console.print_exception()
        else:
            message = e.message if isinstance(e, SchoolPortalError) else str(e)
            console.print(f"\n[red]❌ Error: {message}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
