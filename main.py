"""
orgguard - Main Entry Point

CLI for operating an orgguard deployment: inspect the command policy
table, generate license signing keys, hash credentials for seeding, and
run the HTTP API.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from orgguard.config.loader import load_settings
from orgguard.config.schema import Settings
from orgguard.enterprise.commands import COMMAND_POLICIES
from orgguard.integrations.credentials import hash_password
from orgguard.integrations.license_signer import Ed25519LicenseSigner
from orgguard.observability.logging_config import configure_logging

# .env values override the process environment
load_dotenv(Path(__file__).parent / ".env", override=True)

app = typer.Typer(
    name="orgguard",
    help="orgguard - organization command layer",
)
console = Console()
logger = logging.getLogger("orgguard")


def _get_settings(config: Optional[str]) -> Settings:
    """Load settings, with friendly error on failure."""
    try:
        return load_settings(config)
    except FileNotFoundError:
        console.print(Panel(
            f"[red]Settings file not found:[/] [bold]{config}[/]",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(Panel(
            f"[red]Invalid settings:[/] {e}",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)


# =========================================================================
# Commands
# =========================================================================


@app.command()
def policy(
    config: Optional[str] = typer.Option(None, help="Path to settings YAML"),
):
    """Show every command with its role, mode and guard requirements."""
    settings = _get_settings(config)

    table = Table(title=f"Command policies ({settings.mode.value})")
    table.add_column("Command", style="cyan")
    table.add_column("Min Role", style="white")
    table.add_column("Modes", style="green")
    table.add_column("Credential", style="yellow")
    table.add_column("Payload", style="dim")

    for command, rule in COMMAND_POLICIES.items():
        table.add_row(
            command.value,
            rule.min_role.value if rule.min_role else "-",
            rule.availability.value,
            "yes" if rule.sensitive else "",
            rule.payload.__name__ if rule.payload else "",
        )

    console.print(table)


@app.command()
def keygen(
    out_dir: Path = typer.Argument(Path("keys"), help="Directory for the PEM files"),
    force: bool = typer.Option(False, help="Overwrite existing keys"),
):
    """Generate an Ed25519 key pair for signing licenses."""
    private_path = out_dir / "license_signing.pem"
    public_path = out_dir / "license_verify.pem"

    if private_path.exists() and not force:
        console.print(f"[red]Refusing to overwrite {private_path} (use --force).[/]")
        raise typer.Exit(code=1)

    signer = Ed25519LicenseSigner.generate()
    out_dir.mkdir(parents=True, exist_ok=True)
    private_path.write_bytes(signer.private_pem())
    private_path.chmod(0o600)
    public_path.write_bytes(signer.public_pem())

    console.print(Panel(
        f"Signing key: [bold]{private_path}[/]\n"
        f"Verify key:  [bold]{public_path}[/]\n\n"
        f"Set in config/orgguard.yaml:\n"
        f"  [dim]licensing.signing_key_path: {private_path}[/]\n"
        f"  [dim]licensing.verify_key_path: {public_path}[/]",
        title="License keys generated",
        border_style="green",
    ))


@app.command(name="hash-password")
def hash_password_cmd(
    master_password_hash: str = typer.Option(
        ..., prompt=True, hide_input=True, help="Client-side master password hash",
    ),
):
    """Hash a master password hash for storage on a user record."""
    console.print(hash_password(master_password_hash))


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, help="Path to settings YAML"),
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    cors_origin: Optional[list[str]] = typer.Option(None, help="Allowed CORS origin"),
):
    """Run the organization HTTP API."""
    import uvicorn

    from orgguard.enterprise.api_server import create_api_app
    from orgguard.enterprise.dispatcher import CommandDispatcher

    configure_logging()
    settings = _get_settings(config)
    dispatcher = CommandDispatcher.from_settings(settings)
    api = create_api_app(dispatcher, cors_origins=cors_origin)

    logger.info(
        "api_server_starting",
        extra={"mode": settings.mode.value, "host": host, "port": port},
    )
    uvicorn.run(api, host=host, port=port)


if __name__ == "__main__":
    app()
