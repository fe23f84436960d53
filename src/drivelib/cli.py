"""CLI entry point for the drive upload client.

Provides commands:
  - upload: Resumable upload of a local file (create or update in place)
  - config: Manage the stored access token and show effective settings
  - sessions: Inspect or purge persisted upload sessions
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import signal
from pathlib import Path
from typing import Annotated

import keyring
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from drivelib.config import (
    KEY_NAME,
    SERVICE_NAME,
    delete_credential,
    get_credential,
    load_config,
    save_credential,
)

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="drivelib - resumable uploads to a remote drive",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (access token, settings)")
app.add_typer(config_app, name="config")

sessions_app = typer.Typer(help="Inspect persisted upload sessions")
app.add_typer(sessions_app, name="sessions")

DEFAULT_CONFIG_PATH = Path("drivelib.json")


@app.callback()
def app_callback(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log protocol detail"),
    ] = False,
) -> None:
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@app.command()
def upload(
    path: Annotated[
        Path,
        typer.Argument(help="Local file to upload", exists=True, dir_okay=False, readable=True),
    ],
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Remote file name (default: local file name)"),
    ] = None,
    mime_type: Annotated[
        str | None,
        typer.Option("--mime-type", "-m", help="Content type (default: guessed from name)"),
    ] = None,
    parent: Annotated[
        str | None,
        typer.Option("--parent", "-p", help="Parent folder id"),
    ] = None,
    update: Annotated[
        str | None,
        typer.Option("--update", "-u", help="Replace the content of this existing file id"),
    ] = None,
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to JSON config file"),
    ] = DEFAULT_CONFIG_PATH,
    db_path: Annotated[
        Path | None,
        typer.Option("--db", "-d", help="Session database (default from config)"),
    ] = None,
    resume: Annotated[
        bool,
        typer.Option("--resume/--no-resume", help="Resume a persisted session if one exists"),
    ] = True,
) -> None:
    """Upload a file with the resumable protocol.

    Interrupted uploads (Ctrl+C, crash, network loss) resume from the
    server's confirmed offset on the next run of the same command.
    """
    from drivelib.auth import CredentialError, CredentialProvider
    from drivelib.drive import DriveClient
    from drivelib.models import UploadRequest
    from drivelib.upload.exceptions import (
        ProtocolError,
        RetriesExhaustedError,
        SessionExpiredError,
        UploadAbortedError,
    )
    from drivelib.upload.progress import UploadProgressTracker
    from drivelib.upload.source import FileRangeSource
    from drivelib.upload.state import Fingerprint, SessionStore

    try:
        config = load_config(config_path)
        credential = get_credential()
    except (RuntimeError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    source = FileRangeSource(path)
    request = UploadRequest(
        name=name or path.name,
        mime_type=mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
        total_length=source.size,
        parent_id=parent,
        existing_resource_id=update,
    )
    store_path = str(db_path or config.db_path)

    provider = CredentialProvider(credential)
    provider.add_listener(save_credential)

    async def _run_upload():
        fingerprint = Fingerprint.of(path)
        async with SessionStore(store_path) as store, DriveClient(provider, config) as drive:
            session = None
            if resume:
                session = await store.load(fingerprint, config.session_ttl_seconds)
                if session is not None and session.request != request:
                    logger.info("Stored session was for different metadata; starting fresh")
                    session = None
                if session is not None:
                    console.print("[dim]Resuming a previous upload session[/dim]")

            async def remember(new_session) -> None:
                await store.save(fingerprint, new_session)

            with UploadProgressTracker() as tracker:
                task = tracker.add_file(request.name, request.total_length)
                controller = drive.controller(
                    request,
                    source,
                    session=session,
                    on_session=remember,
                    on_progress=tracker.progress_callback(task),
                    on_status=tracker.status_callback(task),
                )
                _install_abort_handler(controller.abort)
                try:
                    resource = await controller.run()
                except (SessionExpiredError, ProtocolError):
                    # Session is unusable; do not offer it for resume.
                    await store.delete(fingerprint)
                    raise

            await store.delete(fingerprint)
            return resource

    try:
        resource = asyncio.run(_run_upload())
    except UploadAbortedError:
        console.print(
            "[yellow]Upload aborted.[/yellow] Run the same command again to resume."
        )
        raise typer.Exit(code=1)
    except RetriesExhaustedError as e:
        console.print(
            f"[red]Upload failed:[/red] {e}\n"
            "The session was kept; run the same command again to resume."
        )
        raise typer.Exit(code=1)
    except SessionExpiredError as e:
        console.print(f"[red]Upload failed:[/red] {e}")
        raise typer.Exit(code=1)
    except ProtocolError as e:
        console.print(f"[red]Protocol error:[/red] {e}")
        raise typer.Exit(code=1)
    except CredentialError as e:
        console.print(f"[red]Credential error:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Id", resource.id)
    table.add_row("Name", resource.name or request.name)
    table.add_row("Type", resource.mime_type or request.mime_type)
    table.add_row("Size", str(resource.size if resource.size is not None else request.total_length))
    if resource.md5_checksum:
        table.add_row("MD5", resource.md5_checksum)
    console.print(Panel(table, title="Upload Complete"))


def _install_abort_handler(abort) -> None:
    """First SIGINT/SIGTERM aborts the upload cleanly; a second one exits immediately."""
    loop = asyncio.get_running_loop()
    count = 0

    def _handler() -> None:
        nonlocal count
        count += 1
        if count == 1:
            logger.warning("Aborting upload...")
            abort()
        else:
            logger.warning("Forced shutdown. Exiting immediately.")
            raise SystemExit(1)

    try:
        loop.add_signal_handler(signal.SIGINT, _handler)
        loop.add_signal_handler(signal.SIGTERM, _handler)
    except (NotImplementedError, RuntimeError):
        # signal handlers are unavailable on this platform/thread
        logger.debug("Could not set signal handlers")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("set-token")
def set_token(
    token: Annotated[
        str,
        typer.Argument(help="OAuth access token to store in the system keyring"),
    ],
    token_type: Annotated[
        str,
        typer.Option("--token-type", help="Authorization scheme"),
    ] = "Bearer",
) -> None:
    """Store the access token in the system keyring (service: drivelib)."""
    from drivelib.auth import Credential

    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Token cannot be empty")
        raise typer.Exit(code=1)

    try:
        save_credential(Credential(access_token=token.strip(), token_type=token_type))
        console.print(
            f"[green]✓[/green] Token stored in system keyring (service: {SERVICE_NAME})"
        )
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to store token: {e}")
        raise typer.Exit(code=1)


@config_app.command("remove-token")
def remove_token() -> None:
    """Delete the stored access token from the system keyring."""
    try:
        if not keyring.get_password(SERVICE_NAME, KEY_NAME):
            console.print(
                "[yellow]Warning:[/yellow] No token found in keyring.\nNothing to remove."
            )
            return
        delete_credential()
        console.print(f"[green]✓[/green] Token removed (service: {SERVICE_NAME})")
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to remove token: {e}")
        raise typer.Exit(code=1)


@config_app.command("show")
def show_config(
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to JSON config file"),
    ] = DEFAULT_CONFIG_PATH,
) -> None:
    """Show the effective configuration and a masked token."""
    from dataclasses import asdict

    try:
        config = load_config(config_path)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Configuration ({config_path})")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in asdict(config).items():
        if key == "fields":
            value = f"{len(value.split(','))} fields"
        table.add_row(key, str(value))

    try:
        credential = get_credential()
        token = credential.access_token
        masked = token[:8] + "*" * max(1, len(token) - 8)
        table.add_row("token", f"{credential.token_type} {masked}")
    except RuntimeError:
        table.add_row("token", "[yellow]not set[/yellow]")

    console.print(table)


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


@sessions_app.command("list")
def sessions_list(
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to JSON config file"),
    ] = DEFAULT_CONFIG_PATH,
) -> None:
    """List persisted upload sessions."""
    from drivelib.upload.state import SessionStore

    config = load_config(config_path)

    async def _list() -> list[dict]:
        async with SessionStore(config.db_path) as store:
            return await store.list_sessions()

    rows = asyncio.run(_list())
    if not rows:
        console.print("[green]No persisted upload sessions.[/green]")
        return

    table = Table(title="Upload Sessions")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    table.add_column("Local file", style="dim", no_wrap=True)
    for row in rows:
        table.add_row(
            row["name"],
            str(row["total_length"]),
            row["created_at"],
            row["fingerprint"].split("|", 1)[0],
        )
    console.print(table)


@sessions_app.command("purge")
def sessions_purge(
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to JSON config file"),
    ] = DEFAULT_CONFIG_PATH,
) -> None:
    """Delete persisted sessions whose validity window has passed."""
    from drivelib.upload.state import SessionStore

    config = load_config(config_path)

    async def _purge() -> int:
        async with SessionStore(config.db_path) as store:
            return await store.purge_expired(config.session_ttl_seconds)

    removed = asyncio.run(_purge())
    console.print(f"[green]✓[/green] Purged {removed} expired session(s)")


if __name__ == "__main__":
    app()
