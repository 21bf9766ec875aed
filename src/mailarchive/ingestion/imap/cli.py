"""CLI commands for IMAP archiving and OAuth account management."""

from __future__ import annotations

import json
import re
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console
from rich.table import Table

from mailarchive.configuration.settings import DEFAULT_CONFIG_PATH, Settings, bootstrap_settings
from mailarchive.errors import MailArchiveError
from mailarchive.errors.user_messages import format_error_for_cli
from mailarchive.privacy.encryption import CredentialVault

from .config import ImapAccount
from .connection_manager import AuthResolver, ImapConnection, RetryPolicy
from .email_parser import EmailParser
from .oauth_flow import OAuthFlowManager
from .oauth_service import CallerIdentity, OAuthAccountService
from .pending_auth import InMemoryPendingAuthorizationStore, create_pending_store
from .sync_engine import ImapSyncEngine, SyncOptions
from .sync_state import SyncPositionStore
from .token_store import OAuthTokenStore

console = Console()
error_console = Console(stderr=True)

imap_app = typer.Typer(help="IMAP archiving commands")
oauth_app = typer.Typer(help="OAuth mailbox account commands")
imap_app.add_typer(oauth_app, name="oauth")

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Settings file")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _load_settings(config_path: Path) -> Settings:
    return bootstrap_settings(path=config_path)


def _build_flow(settings: Settings) -> OAuthFlowManager:
    security = settings.security
    vault = CredentialVault(
        key=security.encryption_key.get_secret_value() if security.encryption_key else None,
        service_name=security.keyring_service,
        key_id=security.keyring_key_id,
    )
    token_store = OAuthTokenStore(settings.storage.database_path)
    return OAuthFlowManager(vault=vault, token_store=token_store, settings=settings.oauth)


def _fail(exc: MailArchiveError) -> None:
    error_console.print(f"[red]{format_error_for_cli(exc)}[/red]")
    raise typer.Exit(code=1)


class OAuthCallbackHandler(BaseHTTPRequestHandler):
    """Captures the provider redirect on the loopback interface."""

    def do_GET(self):
        params = parse_qs(urlparse(self.path).query)
        self.server.callback_params = {key: values[0] for key, values in params.items()}
        ok = "code" in params
        self.send_response(200 if ok else 400)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        title = "Authentication Successful" if ok else "Authentication Failed"
        self.wfile.write(
            f"<html><body><h1>{title}</h1>"
            "<p>You can close this window and return to the terminal.</p>"
            "</body></html>".encode()
        )

    def log_message(self, format, *args):
        """Suppress HTTP server logging."""


def _wait_for_callback(port: int, timeout: float) -> Dict[str, str]:
    server = HTTPServer(("localhost", port), OAuthCallbackHandler)
    server.timeout = timeout
    server.callback_params = {}
    try:
        server.handle_request()
    finally:
        server.server_close()
    return server.callback_params


# ---------------------------------------------------------------------------
# OAuth commands
# ---------------------------------------------------------------------------


@oauth_app.command("login")
def oauth_login(
    user_id: str = typer.Option(..., "--user-id", help="Owning user identifier"),
    email: str = typer.Option(..., "--email", "-e", help="Mailbox address to connect"),
    port: int = typer.Option(8765, "--port", "-p", help="Loopback port for the redirect"),
    no_browser: bool = typer.Option(False, "--no-browser", help="Only print the URL"),
    config_path: Path = ConfigOption,
) -> None:
    """Connect a Microsoft mailbox through the browser consent flow."""
    settings = _load_settings(config_path)
    if not settings.oauth.redirect_uri:
        settings.oauth.redirect_uri = f"http://localhost:{port}/callback"

    flow = _build_flow(settings)
    service = OAuthAccountService(flow, create_pending_store(settings.pending_auth))
    caller = CallerIdentity(user_id=user_id, email=email)

    with service:
        start = service.start_authorization(caller)
        console.print("[bold blue]Open this URL to grant mailbox access:[/bold blue]")
        console.print(start.authorization_url)
        if not no_browser:
            webbrowser.open(start.authorization_url)

        params = _wait_for_callback(port, timeout=settings.pending_auth.ttl_seconds)
        result = service.handle_callback(
            caller,
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
    flow.token_store.close()

    if not result.success:
        error_console.print(f"[red]Authorization failed:[/red] {result.reason}")
        raise typer.Exit(code=1)
    console.print(f"[green]Connected {result.email}[/green] (credential {result.credential_id})")


@oauth_app.command("list")
def oauth_list(
    user_id: str = typer.Option(..., "--user-id", help="Owning user identifier"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = ConfigOption,
) -> None:
    """List connected OAuth mailboxes (metadata only)."""
    settings = _load_settings(config_path)
    flow = _build_flow(settings)
    service = OAuthAccountService(flow, InMemoryPendingAuthorizationStore())
    try:
        summaries = service.list_credentials(CallerIdentity(user_id=user_id, email=""))
    finally:
        flow.token_store.close()

    if json_output:
        print(json.dumps([summary.model_dump(mode="json") for summary in summaries]))
        return

    if not summaries:
        console.print("[yellow]No OAuth accounts connected[/yellow]")
        return
    table = Table(title="OAuth accounts")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Email")
    table.add_column("Expires")
    table.add_column("Updated")
    for summary in summaries:
        table.add_row(
            summary.id,
            summary.provider,
            summary.email,
            summary.expires_at.isoformat() if summary.expires_at else "-",
            summary.updated_at.isoformat(),
        )
    console.print(table)


@oauth_app.command("delete")
def oauth_delete(
    credential_id: str = typer.Argument(..., help="Credential identifier"),
    user_id: str = typer.Option(..., "--user-id", help="Owning user identifier"),
    config_path: Path = ConfigOption,
) -> None:
    """Remove a connected OAuth mailbox."""
    settings = _load_settings(config_path)
    flow = _build_flow(settings)
    service = OAuthAccountService(flow, InMemoryPendingAuthorizationStore())
    try:
        service.delete_credential(CallerIdentity(user_id=user_id, email=""), credential_id)
    except MailArchiveError as exc:
        _fail(exc)
    finally:
        flow.token_store.close()
    console.print(f"[green]Deleted credential {credential_id}[/green]")


@oauth_app.command("refresh")
def oauth_refresh(
    credential_id: str = typer.Argument(..., help="Credential identifier"),
    user_id: str = typer.Option(..., "--user-id", help="Owning user identifier"),
    config_path: Path = ConfigOption,
) -> None:
    """Refresh the access token of a connected mailbox now."""
    settings = _load_settings(config_path)
    flow = _build_flow(settings)
    service = OAuthAccountService(flow, InMemoryPendingAuthorizationStore())
    try:
        expires_at = service.manual_refresh(CallerIdentity(user_id=user_id, email=""), credential_id)
    except MailArchiveError as exc:
        _fail(exc)
    finally:
        flow.token_store.close()
    expiry = expires_at.isoformat() if expires_at else "no expiry reported"
    console.print(f"[green]Refreshed credential {credential_id}[/green] ({expiry})")


# ---------------------------------------------------------------------------
# Sync commands
# ---------------------------------------------------------------------------


def _safe_dirname(path: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", path).strip("_") or "mailbox"


@imap_app.command("sync")
def sync_mailboxes(
    source_id: str = typer.Option(..., "--source-id", "-s", help="Ingestion source identifier"),
    host: str = typer.Option(..., "--host", "-h", help="IMAP hostname"),
    username: str = typer.Option(..., "--username", "-u", help="Login name"),
    port: int = typer.Option(993, "--port", "-p", help="IMAP port"),
    password: Optional[str] = typer.Option(
        None, "--password", envvar="MAILARCHIVE_IMAP_PASSWORD", help="Account password"
    ),
    oauth_credential_id: Optional[str] = typer.Option(
        None, "--oauth-credential-id", help="Use a stored OAuth credential"
    ),
    insecure: bool = typer.Option(False, "--insecure", help="Skip TLS certificate checks"),
    all_inclusive: Optional[bool] = typer.Option(
        None, "--all-inclusive/--skip-trash-junk", help="Also archive Trash and Junk"
    ),
    eml_dir: Optional[Path] = typer.Option(None, "--eml-dir", help="Write each message as .eml"),
    config_path: Path = ConfigOption,
) -> None:
    """Run one incremental sync cycle and persist the new position."""
    settings = _load_settings(config_path)
    try:
        account = ImapAccount(
            host=host,
            port=port,
            username=username,
            password=SecretStr(password) if password else None,
            oauth_credential_id=oauth_credential_id,
            allow_insecure_cert=insecure,
        )
    except ValidationError as exc:
        error_console.print(f"[red]Invalid account options:[/red] {exc}")
        raise typer.Exit(code=1)

    options = SyncOptions.from_settings(settings.sync)
    if all_inclusive is not None:
        options.all_inclusive_archive = all_inclusive

    flow = _build_flow(settings) if oauth_credential_id else None
    connection = ImapConnection(
        account=account,
        auth_resolver=AuthResolver(account, flow),
        retry_policy=RetryPolicy.from_settings(settings.sync),
        connection_timeout=settings.sync.connection_timeout_seconds,
    )
    engine = ImapSyncEngine(connection, parser=EmailParser(), options=options)
    positions = SyncPositionStore(settings.storage.database_path)
    counts: Dict[str, int] = {}

    try:
        position = positions.fetch(source_id)
        with engine.fetch_messages(position) as messages:
            for message in messages:
                counts[message.path] = counts.get(message.path, 0) + 1
                if eml_dir is not None:
                    target = eml_dir / _safe_dirname(message.path)
                    target.mkdir(parents=True, exist_ok=True)
                    (target / f"{message.uid}.eml").write_bytes(message.eml)
        updated = engine.get_updated_sync_position()
        positions.upsert(source_id, updated)
    except MailArchiveError as exc:
        _fail(exc)
    finally:
        positions.close()
        if flow is not None:
            flow.token_store.close()

    table = Table(title=f"Sync {source_id}")
    table.add_column("Mailbox", style="cyan")
    table.add_column("New messages", justify="right")
    table.add_column("Max UID", justify="right")
    table.add_column("Error", style="red")
    for path, max_uid in sorted(updated.mailboxes.items()):
        table.add_row(
            path, str(counts.get(path, 0)), str(max_uid), engine.mailbox_errors.get(path, "")
        )
    console.print(table)
    if updated.status_message:
        console.print(f"[yellow]{updated.status_message}[/yellow]")


@imap_app.command("position")
def show_position(
    source_id: str = typer.Option(..., "--source-id", "-s", help="Ingestion source identifier"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = ConfigOption,
) -> None:
    """Show the stored sync position of a source."""
    settings = _load_settings(config_path)
    positions = SyncPositionStore(settings.storage.database_path)
    try:
        position = positions.fetch(source_id)
    finally:
        positions.close()

    if position is None:
        error_console.print(f"[yellow]No sync position stored for {source_id}[/yellow]")
        raise typer.Exit(code=1)
    if json_output:
        print(json.dumps(position.to_wire()))
        return
    table = Table(title=f"Position {source_id}")
    table.add_column("Mailbox", style="cyan")
    table.add_column("Max UID", justify="right")
    for path, uid in sorted(position.mailboxes.items()):
        table.add_row(path, str(uid))
    console.print(table)
    if position.status_message:
        console.print(f"[yellow]{position.status_message}[/yellow]")


__all__ = ["imap_app", "oauth_app"]
