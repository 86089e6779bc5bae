"""
CLI interface for Vigil.

Runs tools through the approval gate, approves pending runs, inspects
the tool-run ledger and offers an interactive chat session. Runs are
kept in the JSON-file ledger so an approval given in one invocation
applies to a run requested in another.
"""

from __future__ import annotations

import asyncio
import getpass
import json
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Annotated, Any, Optional

import structlog
import typer
from rich.console import Console
from rich.json import JSON
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from vigil import __version__
from vigil.agent.orchestrator import PlanNotFoundError, VigilAgent, create_approval_gate
from vigil.cli.logging_config import configure_cli_logging
from vigil.config.environment import discover_security_tools, validate_environment
from vigil.config.manager import ConfigurationError, get_config_manager
from vigil.core.approval import ApprovalConflictError
from vigil.core.ledger import JsonFileToolRunStore, ToolRunNotFound, ToolRunStatus
from vigil.core.scope import PolicyViolation, TargetPolicy

if TYPE_CHECKING:
    from vigil.agent.orchestrator import AgentResponse
    from vigil.config.settings import VigilSettings
    from vigil.core.approval import ApprovalGate
    from vigil.core.ledger import ToolRun

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="vigil",
    help="Vigil - conversational security-operations assistant",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()

_STATUS_STYLES = {
    ToolRunStatus.PENDING: "yellow",
    ToolRunStatus.APPROVED: "cyan",
    ToolRunStatus.RUNNING: "blue",
    ToolRunStatus.COMPLETED: "green",
    ToolRunStatus.FAILED: "red",
}

_RISK_STYLES = {"low": "green", "medium": "yellow", "high": "red"}

VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")]
SessionOption = Annotated[Optional[str], typer.Option("--session", "-s", help="Session id")]
UserOption = Annotated[Optional[str], typer.Option("--user", "-u", help="User id (defaults to the login name)")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Vigil[/bold blue] version {__version__}")
        raise typer.Exit()


def _load_settings(verbose: bool) -> VigilSettings:
    configure_cli_logging(verbose)
    try:
        return get_config_manager().load_settings(configure_logging=False)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {rich_escape(str(e))}")
        raise typer.Exit(2)


def _gate(settings: VigilSettings) -> ApprovalGate:
    return create_approval_gate(settings, store=JsonFileToolRunStore(settings.storage.ledger_dir))


def _user(user: str | None) -> str:
    return user or getpass.getuser()


def parse_tool_arguments(pairs: list[str] | None) -> dict[str, Any]:
    """
    Parse ``key=value`` pairs.

    Values that parse as JSON (numbers, booleans, lists) are decoded;
    everything else is kept as a string.
    """
    arguments: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {pair!r}")
        try:
            arguments[key.strip()] = json.loads(value)
        except json.JSONDecodeError:
            arguments[key.strip()] = value
    return arguments


def print_run(run: ToolRun, show_result: bool = True) -> None:
    """Print a tool run as a summary panel."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    status_style = _STATUS_STYLES[run.status]
    risk_style = _RISK_STYLES[run.risk_level.value]
    table.add_row("Run ID", run.id)
    table.add_row("Tool", run.tool_name)
    table.add_row("Arguments", rich_escape(json.dumps(run.arguments)))
    table.add_row("Status", f"[{status_style}]{run.status.value}[/{status_style}]")
    table.add_row("Risk", f"[{risk_style}]{run.risk_level.value}[/{risk_style}]")
    table.add_row("Approval required", "yes" if run.approval_required else "no")
    if run.requested_by:
        table.add_row("Requested by", rich_escape(run.requested_by))
    if run.approved_by:
        table.add_row("Approved by", f"{rich_escape(run.approved_by)} at {run.approved_at}")
    table.add_row("Created", run.created_at)
    if run.completed_at:
        table.add_row("Completed", run.completed_at)
    if run.error_message:
        table.add_row("Error", f"[red]{rich_escape(run.error_message)}[/red]")

    console.print(Panel(table, title=f"[bold]Tool Run[/bold] {run.tool_name}", border_style=status_style))
    if show_result and run.result is not None:
        console.print(JSON.from_data(run.result))


def print_pending(runs: list[ToolRun]) -> None:
    if not runs:
        console.print("[dim]No tool runs are waiting for approval[/dim]")
        return

    table = Table(title="Pending Approvals")
    table.add_column("Run ID", style="cyan", no_wrap=True)
    table.add_column("Tool")
    table.add_column("Arguments")
    table.add_column("Risk")
    table.add_column("Requested by", style="dim")
    table.add_column("Created", style="dim")

    for run in runs:
        risk_style = _RISK_STYLES[run.risk_level.value]
        table.add_row(
            run.id,
            run.tool_name,
            rich_escape(json.dumps(run.arguments)),
            f"[{risk_style}]{run.risk_level.value}[/{risk_style}]",
            rich_escape(run.requested_by or "-"),
            run.created_at,
        )
    console.print(table)


def print_response(response: AgentResponse) -> None:
    console.print(Panel(Markdown(response.content), title="[bold cyan]Vigil[/bold cyan]", border_style="cyan"))
    if response.sources:
        console.print(f"[dim]Sources: {rich_escape(', '.join(response.sources))}[/dim]")


@app.command()
def run(
    tool_name: Annotated[str, typer.Argument(help="Tool to run (nmap, dns_lookup, whois, subdomain_enum, domain_intel)")],
    arguments: Annotated[
        Optional[list[str]],
        typer.Argument(help="Tool arguments as key=value pairs"),
    ] = None,
    require_approval: Annotated[
        bool,
        typer.Option("--require-approval", help="Park the run until it is approved"),
    ] = False,
    session: SessionOption = None,
    user: UserOption = None,
    output_json: Annotated[bool, typer.Option("--json", help="Print the run as JSON")] = False,
    verbose: VerboseOption = False,
) -> None:
    """
    Run a security tool through the approval gate.

    Examples:

        vigil run nmap target=192.168.1.10 scan_type=ping

        vigil run dns_lookup domain=example.com record_type=MX

        vigil run nmap target=10.0.0.0/28 scan_type=syn --require-approval
    """
    settings = _load_settings(verbose)
    gate = _gate(settings)
    args = parse_tool_arguments(arguments)

    try:
        with console.status(f"[bold green]Running {rich_escape(tool_name)}..."):
            result = asyncio.run(
                gate.submit(
                    tool_name,
                    args,
                    session_id=session or f"cli-{uuid.uuid4().hex[:8]}",
                    requested_by=_user(user),
                    requires_approval=require_approval,
                )
            )
    except PolicyViolation as e:
        console.print(f"[bold red]Rejected:[/bold red] {rich_escape(str(e))}")
        raise typer.Exit(2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Run interrupted[/yellow]")
        raise typer.Exit(130)

    if output_json:
        console.print_json(data=result.to_dict())
    else:
        print_run(result)
        if result.status is ToolRunStatus.PENDING:
            console.print(f"\nApprove with: [cyan]vigil approve {result.id}[/cyan]")

    if result.status is ToolRunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def approve(
    run_id: Annotated[str, typer.Argument(help="Tool run id")],
    approver: Annotated[
        Optional[str],
        typer.Option("--as", help="Approver id (defaults to the login name)"),
    ] = None,
    verbose: VerboseOption = False,
) -> None:
    """Approve a pending tool run and execute it."""
    settings = _load_settings(verbose)
    gate = _gate(settings)

    try:
        with console.status("[bold green]Executing approved run..."):
            result = asyncio.run(gate.approve(run_id, _user(approver)))
    except ToolRunNotFound:
        console.print(f"[red]Tool run not found: {rich_escape(run_id)}[/red]")
        raise typer.Exit(1)
    except ApprovalConflictError as e:
        console.print(f"[bold yellow]Conflict:[/bold yellow] {rich_escape(str(e))}")
        raise typer.Exit(1)

    print_run(result)
    if result.status is ToolRunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def pending(
    user: Annotated[Optional[str], typer.Option("--user", "-u", help="Only runs requested by this user")] = None,
    verbose: VerboseOption = False,
) -> None:
    """List tool runs waiting for approval."""
    settings = _load_settings(verbose)
    runs = asyncio.run(_gate(settings).list_pending(user))
    print_pending(runs)


@app.command()
def show(
    run_id: Annotated[str, typer.Argument(help="Tool run id")],
    audit: Annotated[bool, typer.Option("--audit", "-a", help="Show the audit log")] = False,
    output_json: Annotated[bool, typer.Option("--json", help="Print the run as JSON")] = False,
    verbose: VerboseOption = False,
) -> None:
    """Show a tool run from the ledger."""
    settings = _load_settings(verbose)
    try:
        result = asyncio.run(_gate(settings).get(run_id))
    except ToolRunNotFound:
        console.print(f"[red]Tool run not found: {rich_escape(run_id)}[/red]")
        raise typer.Exit(1)

    if output_json:
        console.print_json(data=result.to_dict())
        return

    print_run(result)
    if audit:
        table = Table(title="Audit Log")
        table.add_column("Time", style="dim")
        table.add_column("Event")
        table.add_column("Status")
        table.add_column("Actor")
        table.add_column("Detail")
        for entry in result.audit_log:
            detail = entry.detail or entry.outcome or ""
            if entry.commands:
                detail = f"{detail} {' | '.join(entry.commands)}".strip()
            table.add_row(
                entry.timestamp,
                entry.event,
                entry.status.value,
                rich_escape(entry.actor or "-"),
                rich_escape(detail),
            )
        console.print(table)


@app.command("check-target")
def check_target(
    target: Annotated[str, typer.Argument(help="Host, address or CIDR block")],
    verbose: VerboseOption = False,
) -> None:
    """Check whether a target is inside the scan allow-list."""
    settings = _load_settings(verbose)
    allowed, reason = TargetPolicy.from_config(settings.scope).explain(target)
    if allowed:
        console.print(f"[green]Allowed:[/green] {rich_escape(target)}")
        return
    console.print(f"[red]Not allowed:[/red] {rich_escape(target)} ({rich_escape(reason or 'outside the allow-list')})")
    raise typer.Exit(1)


@app.command()
def doctor(
    fail_interrupted: Annotated[
        bool,
        typer.Option("--fail-interrupted", help="Mark runs left approved or running as failed"),
    ] = False,
    older_than: Annotated[
        int,
        typer.Option("--older-than", help="Only runs idle for at least this many minutes"),
    ] = 10,
    verbose: VerboseOption = False,
) -> None:
    """Check tool binaries, credentials and the ledger directory."""
    settings = _load_settings(verbose)

    table = Table(title="Security Tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Status")
    table.add_column("Version", style="dim")
    for name, tool in discover_security_tools(settings).items():
        status = "[green]Available[/green]" if tool.available else "[red]Missing[/red]"
        table.add_row(name, status, rich_escape(tool.version or "-"))
    console.print(table)

    valid, errors = validate_environment(settings)
    for error in errors:
        console.print(f"[red]-[/red] {rich_escape(error)}")

    if settings.get_api_key():
        console.print("[green]Anthropic API key configured[/green]")
    else:
        console.print("[yellow]No Anthropic API key; 'vigil chat' is unavailable[/yellow]")
    console.print(f"[dim]Ledger: {settings.storage.ledger_dir}[/dim]")

    if fail_interrupted:
        failed = asyncio.run(_gate(settings).fail_interrupted_runs(timedelta(minutes=older_than)))
        console.print(f"Marked {len(failed)} interrupted run(s) as failed")

    if not valid:
        raise typer.Exit(1)


async def _chat_loop(agent: VigilAgent, session_id: str, user_id: str) -> None:
    while True:
        message = await asyncio.to_thread(Prompt.ask, "[bold green]you[/bold green]")
        message = message.strip()
        if not message:
            continue
        if message in ("exit", "quit", "/exit", "/quit"):
            return

        command, _, rest = message.partition(" ")
        try:
            if command == "/pending":
                print_pending(await agent.gate.list_pending(user_id))
            elif command == "/approve" and rest.strip():
                response = await agent.approve_tool_run(rest.strip(), user_id)
                print_run(response.tool_run)
            elif command == "/plan":
                plan = await agent.advance_plan(session_id, user_id)
                console.print_json(data=plan.to_dict())
            else:
                with console.status("[bold green]Thinking..."):
                    response = await agent.process_message(message, session_id, user_id)
                print_response(response)
        except (ToolRunNotFound, ApprovalConflictError, PlanNotFoundError) as e:
            console.print(f"[yellow]{rich_escape(str(e))}[/yellow]")


@app.command()
def chat(
    session: SessionOption = None,
    user: UserOption = None,
    verbose: VerboseOption = False,
) -> None:
    """
    Start an interactive chat session.

    Type /pending to list runs awaiting approval, /approve <run-id> to
    approve one, /plan to advance the current plan, and exit to leave.
    """
    settings = _load_settings(verbose)
    if not settings.get_api_key():
        console.print("[bold yellow]Authentication required[/bold yellow]")
        console.print("Set [cyan]ANTHROPIC_API_KEY[/cyan] or [cyan]VIGIL_ANTHROPIC_API_KEY[/cyan]")
        raise typer.Exit(1)

    agent = VigilAgent.from_settings(settings, store=JsonFileToolRunStore(settings.storage.ledger_dir))
    session_id = session or uuid.uuid4().hex
    console.print(f"[bold blue]Vigil[/bold blue] {__version__} [dim]session {session_id}[/dim]")

    try:
        asyncio.run(_chat_loop(agent, session_id, _user(user)))
    except (KeyboardInterrupt, EOFError):
        console.print("\n[yellow]Session ended[/yellow]")


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version",
        ),
    ] = None,
) -> None:
    """
    Vigil - conversational security-operations assistant

    Runs nmap, DNS, WHOIS and subdomain lookups against an allow-listed
    scope, with human approval for high-risk operations.
    """


if __name__ == "__main__":
    app()
