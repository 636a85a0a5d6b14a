"""CLI entry point for the tech transfer workbench.

Provides commands:
  - sessions: List the sessions of a project
  - new-session / delete-session: Create or remove a session
  - show: Show a session's stage, lifecycle, files and comments
  - stage: Move a session to another workflow stage
  - upload / note: Add files (same name replaces the old version)
  - convert / generate-metadata: Queue agent task batches and poll them
  - cancel / retry: Control a running or failed batch
  - comment / lifecycle: Edit per-file comments and the product lifecycle
  - sync-metadata / critique: One-shot agent requests
  - download: Save a session file locally
  - config: Manage the API token
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import keyring
import typer
from keyring.errors import KeyringError, PasswordDeleteError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from techxfer.api.client import SessionStoreError
from techxfer.config import (
    KEY_NAME,
    SERVICE_NAME,
    TOKEN_ENV_VAR,
    find_api_token,
    load_workbench_config,
)
from techxfer.models import (
    Session,
    SessionStatus,
    StartType,
    UploadFile,
    WorkbenchConfig,
    WorkflowStage,
)
from techxfer.workflow.exceptions import WorkflowError
from techxfer.workflow.poller import PollOutcome
from techxfer.workflow.progress import BatchProgressTracker
from techxfer.workflow.prompts import DOC_PROMPTS
from techxfer.workflow.workbench import SessionWorkbench

logger = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(
    help="Tech transfer workbench - drive sessions from upload to Golden Master",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (API token)")
app.add_typer(config_app, name="config")


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to workbench_config.json"),
    ] = None,
    api_url: Annotated[
        str | None,
        typer.Option("--api-url", help="Session store base URL"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show info-level logs"),
    ] = False,
) -> None:
    """Load configuration and set up logging."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    try:
        config = load_workbench_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] Could not load configuration: {e}")
        raise typer.Exit(code=1)
    if api_url:
        config.api_url = api_url
    ctx.obj = config


def _make_workbench(config: WorkbenchConfig) -> SessionWorkbench:
    return SessionWorkbench.from_config(config)


def _run(ctx: typer.Context, action: Callable[[SessionWorkbench], Awaitable[T]]) -> T:
    """Run *action* against a fresh workbench, mapping failures to exit code 1."""
    config: WorkbenchConfig = ctx.obj or load_workbench_config()

    async def main() -> T:
        async with _make_workbench(config) as wb:
            return await action(wb)

    try:
        return asyncio.run(main())
    except (SessionStoreError, WorkflowError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _report_outcome(outcome: PollOutcome, session_id: str) -> None:
    if outcome is PollOutcome.COMPLETED:
        console.print("[green]✓[/green] Batch completed.")
    elif outcome is PollOutcome.CANCELLED:
        console.print("[yellow]Process cancelled.[/yellow]")
    elif outcome is PollOutcome.SKIPPED:
        console.print("[yellow]A batch is already running for this session.[/yellow]")
    elif outcome is PollOutcome.ERROR:
        console.print(
            "[red]Execution error.[/red]\n"
            f"Retry with: [bold]techxfer retry {session_id}[/bold]"
        )
        raise typer.Exit(code=1)
    elif outcome is PollOutcome.TIMED_OUT:
        console.print(
            "[red]Timed out waiting for the batch.[/red] It may still be running; "
            f"check with [bold]techxfer show {session_id} --watch[/bold]"
        )
        raise typer.Exit(code=1)


async def _tracked(
    wb: SessionWorkbench, description: str, batch: Callable[[], Awaitable[PollOutcome]]
) -> PollOutcome:
    tracker = BatchProgressTracker(description, console=console)
    wb.poller.listener = tracker
    with tracker:
        return await batch()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@app.command()
def sessions(
    ctx: typer.Context,
    project_id: Annotated[str, typer.Argument(help="Project ID")],
) -> None:
    """List the sessions of a project."""

    async def action(wb: SessionWorkbench) -> tuple:
        return await wb.load_project(project_id)

    project, items = _run(ctx, action)
    if not items:
        console.print(f"[yellow]No sessions found in {project.name or project_id}.[/yellow]")
        return

    table = Table(title=f"Sessions in {project.name or project_id}")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status", style="green")
    table.add_column("Pending", justify="right")
    for s in items:
        table.add_row(s.id, s.title, s.status, str(s.pending_count))
    console.print(table)


@app.command("new-session")
def new_session(
    ctx: typer.Context,
    project_id: Annotated[str, typer.Argument(help="Project ID")],
    title: Annotated[str, typer.Argument(help="Session title")],
) -> None:
    """Create a session in a project."""

    async def action(wb: SessionWorkbench) -> Session:
        return await wb.create_session(project_id, title)

    created = _run(ctx, action)
    console.print(f"[green]✓[/green] Created session [cyan]{created.id}[/cyan] ({created.title})")


@app.command("delete-session")
def delete_session(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Delete without asking for confirmation"),
    ] = False,
) -> None:
    """Delete a session and everything stored in it."""
    if not yes and not typer.confirm(f"Delete session {session_id}?"):
        console.print("Aborted.")
        raise typer.Exit(code=1)

    async def action(wb: SessionWorkbench) -> None:
        await wb.delete_session(session_id)

    _run(ctx, action)
    console.print(f"[green]✓[/green] Deleted session {session_id}")


@app.command()
def show(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Keep polling if the session is processing"),
    ] = False,
) -> None:
    """Show a session's stage, lifecycle, files and comments."""

    async def action(wb: SessionWorkbench) -> SessionWorkbench:
        await wb.select_session(session_id, resume_polling=False)
        session = wb.state.session
        if watch and session is not None and session.known_status == SessionStatus.PROCESSING:
            await _tracked(wb, "Processing", lambda: wb.poller.resume(session_id))
        return wb

    wb = _run(ctx, action)
    state = wb.state
    session = state.session
    if session is None:
        return

    lines = [
        f"[bold]Status:[/bold] {session.status}",
        f"[bold]Stage:[/bold] {state.stage.value}",
        f"[bold]Wizard step:[/bold] {state.wizard_step.name.lower()}",
        f"[bold]Metadata:[/bold] {'loaded' if state.metadata is not None else 'none'}",
    ]
    if state.processing_status:
        lines.append(f"[bold]Last status:[/bold] {state.processing_status}")
    if state.lifecycle.steps:
        rendered = " → ".join(
            f"[bold green]{step}[/bold green]" if i == state.lifecycle.current_step else step
            for i, step in enumerate(state.lifecycle.steps)
        )
        lines.append(f"[bold]Lifecycle:[/bold] {rendered}")
    console.print(Panel("\n".join(lines), title=session.title or session.id))

    if not state.blobs:
        console.print("[dim]No files.[/dim]")
        return
    table = Table(title="Files")
    table.add_column("Blob ID", style="cyan", no_wrap=True)
    table.add_column("File Name")
    table.add_column("Size", justify="right")
    table.add_column("Comments")
    for blob in state.blobs:
        notes = state.comments.get(blob.id, [])
        table.add_row(
            blob.id,
            blob.file_name,
            str(blob.size) if blob.size is not None else "",
            "\n".join(notes),
        )
    console.print(table)


@app.command()
def stage(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    target: Annotated[WorkflowStage, typer.Argument(help="Target stage")],
    force: Annotated[
        bool,
        typer.Option("--force", help="Skip the verification preconditions"),
    ] = False,
) -> None:
    """Move a session to another workflow stage."""

    async def action(wb: SessionWorkbench) -> WorkflowStage:
        await wb.select_session(session_id, resume_polling=False)
        previous = wb.state.stage
        await wb.change_stage(target, force=force)
        return previous

    previous = _run(ctx, action)
    console.print(f"[green]✓[/green] Stage: {previous.value} → [bold]{target.value}[/bold]")


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@app.command()
def upload(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    files: Annotated[
        list[Path],
        typer.Argument(help="Files to upload", exists=True, dir_okay=False, readable=True),
    ],
) -> None:
    """Upload files.  A file with an existing name replaces the old version."""
    uploads = [UploadFile.from_path(p) for p in files]

    async def action(wb: SessionWorkbench) -> list:
        await wb.select_session(session_id, resume_polling=False)
        return await wb.upload(uploads)

    blobs = _run(ctx, action)
    console.print(
        f"[green]✓[/green] Uploaded {len(uploads)} file(s); session now has {len(blobs)} file(s)"
    )


@app.command()
def note(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    title: Annotated[str, typer.Argument(help="Entry title (.txt is appended)")],
    text: Annotated[str, typer.Argument(help="Entry text")],
) -> None:
    """Store a pasted text entry as a session file."""

    async def action(wb: SessionWorkbench) -> list:
        await wb.select_session(session_id, resume_polling=False)
        return await wb.save_text_entry(title, text)

    _run(ctx, action)
    console.print(f"[green]✓[/green] Saved text entry '{title}'")


@app.command()
def download(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    file_name: Annotated[str, typer.Argument(help="File name in the session")],
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Output path (default: ./<file_name>)"),
    ] = None,
) -> None:
    """Download the current version of a session file."""

    async def action(wb: SessionWorkbench) -> bytes:
        await wb.select_session(session_id, resume_polling=False)
        matches = wb.blobs.by_name(file_name)
        if not matches:
            raise ValueError(f"No file named {file_name} in session {session_id}")
        return await wb.download(matches[-1])

    data = _run(ctx, action)
    target = out or Path(file_name)
    target.write_bytes(data)
    console.print(f"[green]✓[/green] Saved {file_name} to {target} ({len(data)} bytes)")


# ---------------------------------------------------------------------------
# Task batches
# ---------------------------------------------------------------------------


@app.command()
def convert(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    start: Annotated[
        StartType,
        typer.Option("--start", help="Starting point of the ingestion"),
    ] = StartType.BOM,
    description: Annotated[
        str,
        typer.Option("--description", help="Product description (for --start description)"),
    ] = "",
    docs: Annotated[
        list[str] | None,
        typer.Option("--doc", help=f"Deliverable to generate: {', '.join(DOC_PROMPTS)}"),
    ] = None,
) -> None:
    """Queue the conversion batch and poll it until it finishes."""
    selected = docs or []
    unknown = [d for d in selected if d not in DOC_PROMPTS]
    if unknown:
        console.print(f"[yellow]Warning:[/yellow] no template for {', '.join(unknown)}")

    async def action(wb: SessionWorkbench) -> PollOutcome:
        await wb.select_session(session_id, resume_polling=False)
        return await _tracked(
            wb,
            "Conversion",
            lambda: wb.convert(start, selected, product_description=description),
        )

    _report_outcome(_run(ctx, action), session_id)


@app.command("generate-metadata")
def generate_metadata(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Queue the metadata analysis batch and poll it."""

    async def action(wb: SessionWorkbench) -> PollOutcome:
        await wb.select_session(session_id, resume_polling=False)
        return await _tracked(wb, "Metadata", wb.generate_metadata)

    _report_outcome(_run(ctx, action), session_id)


@app.command()
def cancel(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Request cancellation of the running batch."""

    async def action(wb: SessionWorkbench) -> None:
        await wb.select_session(session_id, resume_polling=False)
        await wb.cancel()

    _run(ctx, action)
    console.print("Cancellation requested; the batch stops at its next poll.")


@app.command()
def retry(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Re-run a failed batch from scratch and poll it."""

    async def action(wb: SessionWorkbench) -> PollOutcome:
        await wb.select_session(session_id, resume_polling=False)
        return await _tracked(wb, "Retry", wb.retry)

    _report_outcome(_run(ctx, action), session_id)


# ---------------------------------------------------------------------------
# Overlay
# ---------------------------------------------------------------------------


@app.command()
def comment(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    blob_id: Annotated[str, typer.Argument(help="Blob ID")],
    text: Annotated[str, typer.Argument(help="Comment text")],
) -> None:
    """Attach a comment to a session file."""
    if not text.strip():
        console.print("[red]Error:[/red] Comment cannot be empty")
        raise typer.Exit(code=1)

    async def action(wb: SessionWorkbench) -> dict[str, list[str]]:
        await wb.select_session(session_id, resume_polling=False)
        return await wb.add_comment(blob_id, text)

    comments = _run(ctx, action)
    console.print(
        f"[green]✓[/green] Comment added ({len(comments.get(blob_id, []))} on {blob_id})"
    )


@app.command()
def lifecycle(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    generate: Annotated[
        bool, typer.Option("--generate", help="Ask the agent for a lifecycle plan")
    ] = False,
    steps: Annotated[
        str | None, typer.Option("--set", help="Comma-separated list of steps")
    ] = None,
    next_: Annotated[bool, typer.Option("--next", help="Advance one step")] = False,
    prev: Annotated[bool, typer.Option("--prev", help="Go back one step")] = False,
    goto: Annotated[
        int | None, typer.Option("--goto", help="Jump to step N (1-based)")
    ] = None,
) -> None:
    """Show or edit the product lifecycle."""

    async def action(wb: SessionWorkbench) -> Any:
        await wb.select_session(session_id, resume_polling=False)
        if generate:
            return await wb.generate_lifecycle()
        if steps is not None:
            parsed = [s.strip() for s in steps.split(",") if s.strip()]
            return await wb.update_lifecycle(parsed, 0)
        if next_:
            return await wb.overlay.next_step()
        if prev:
            return await wb.overlay.previous_step()
        if goto is not None:
            return await wb.overlay.goto_step(goto - 1)
        return wb.state.lifecycle

    result = _run(ctx, action)
    if not result.steps:
        console.print("[dim]No lifecycle defined.[/dim]")
        return
    for i, step in enumerate(result.steps):
        marker = "[bold green]▶[/bold green]" if i == result.current_step else " "
        console.print(f"{marker} {i + 1}. {step}")


# ---------------------------------------------------------------------------
# One-shot agent calls
# ---------------------------------------------------------------------------


@app.command("sync-metadata")
def sync_metadata(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Ask the agent to refresh metadata.json from the session files."""

    async def action(wb: SessionWorkbench) -> Any:
        await wb.select_session(session_id, resume_polling=False)
        await wb.sync_metadata()
        return wb.state.metadata

    metadata = _run(ctx, action)
    if metadata is None:
        console.print("[yellow]No metadata.json found after sync.[/yellow]")
        return
    console.print(Panel(json.dumps(metadata, indent=2), title="metadata.json"))


@app.command()
def critique(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Ask the agent for a critical review of the generated assets."""

    async def action(wb: SessionWorkbench) -> str:
        await wb.select_session(session_id, resume_polling=False)
        await wb.generate_critique()
        messages = await wb.client.list_messages(session_id)
        return messages[-1].content if messages else ""

    reply = _run(ctx, action)
    console.print(Panel(reply or "[dim](no reply)[/dim]", title="Critique"))


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(token: str) -> str:
    if len(token) <= 4:
        return "*" * len(token)
    return "*" * (len(token) - 4) + token[-4:]


@config_app.command("set-token")
def set_token(
    token: Annotated[str, typer.Argument(help="API token to save in the system keyring")],
) -> None:
    """Save the API token in the system keyring."""
    token = token.strip()
    if not token or any(c.isspace() for c in token):
        console.print("[red]Error:[/red] A token is a single non-blank word")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, KEY_NAME, token)
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Keyring rejected the token: {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Saved token {_mask(token)} to the keyring")


@config_app.command("get-token")
def get_token() -> None:
    """Show which API token requests will use, and where it comes from."""
    found = find_api_token()
    if found is None:
        console.print(
            "[yellow]No API token configured.[/yellow]\n"
            "Save one with [bold]techxfer config set-token TOKEN[/bold] "
            f"or export {TOKEN_ENV_VAR}."
        )
        raise typer.Exit(code=1)

    token, source = found
    where = f"keyring service {SERVICE_NAME}" if source == "keyring" else TOKEN_ENV_VAR
    console.print(f"Active token: {_mask(token)} [dim](from {where})[/dim]")


@config_app.command("remove-token")
def remove_token() -> None:
    """Forget the API token saved in the system keyring."""
    try:
        keyring.delete_password(SERVICE_NAME, KEY_NAME)
    except PasswordDeleteError:
        console.print("[yellow]The keyring holds no token; nothing changed.[/yellow]")
    except KeyringError as e:
        console.print(f"[red]Error:[/red] Keyring refused to delete the token: {e}")
        raise typer.Exit(code=1)
    else:
        console.print("[green]✓[/green] Removed the token from the keyring")

    if os.environ.get(TOKEN_ENV_VAR):
        console.print(f"[yellow]{TOKEN_ENV_VAR} is still set and will be used.[/yellow]")


if __name__ == "__main__":
    app()
