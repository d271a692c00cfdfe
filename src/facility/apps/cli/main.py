# src/facility/apps/cli/main.py
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from facility.adapters.users.yaml_store import load_identities
from facility.build_info import BUILD_INFO
from facility.services.audit.log import AuditLog
from facility.services.logging import setup_logging
from facility.services.settings import FacilitySettings, config_path, load_settings, save_settings

app = typer.Typer(help="Facility web chat: device-aware PIN login over websockets.")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to facility.yaml (default: $FACILITY_CONFIG or ~/.facility/facility.yaml)")


def _parse_when(value: Optional[str]) -> Optional[float]:
    """Accept epoch milliseconds or an ISO date/datetime; returns epoch ms."""
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        return datetime.fromisoformat(value).timestamp() * 1000
    except ValueError:
        raise typer.BadParameter(f"not a timestamp: {value}") from None


@app.command("serve")
def serve(
    config: Optional[Path] = ConfigOption,
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the websocket server (FastAPI + uvicorn)."""
    from facility.apps.api.server import create_app

    settings = load_settings(config)
    if host:
        settings.server.host = host
    if port:
        settings.server.port = port
    setup_logging(settings.logging.level, log_file=settings.log_path)
    application = create_app(settings)
    uvicorn.run(
        application,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
    )


@app.command("audit")
def audit(
    config: Optional[Path] = ConfigOption,
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only entries of this user id"),
    since: Optional[str] = typer.Option(None, "--since", help="Epoch ms or ISO date"),
    until: Optional[str] = typer.Option(None, "--until", help="Epoch ms or ISO date"),
    limit: int = typer.Option(50, "--limit", "-n", min=1),
):
    """Print audit entries newest first, one JSON object per line."""
    settings = load_settings(config)
    log = AuditLog(settings.audit_path, settings.audit.retention_months)
    try:
        entries = log.query(identity_filter=user, since=_parse_when(since), until=_parse_when(until), limit=limit)
    finally:
        log.close()
    for entry in entries:
        typer.echo(json.dumps(entry.to_dict(), ensure_ascii=False))


@app.command("users")
def users(config: Optional[Path] = ConfigOption):
    """List configured users without secrets."""
    settings = load_settings(config)
    identities = load_identities(settings.users_path)
    if not identities:
        typer.echo(f"no users in {settings.users_path}", err=True)
        raise typer.Exit(code=1)
    for ident in identities:
        typer.echo(json.dumps(ident.summary(), ensure_ascii=False))


@app.command("init-config")
def init_config(
    path: Optional[Path] = typer.Argument(None, help="Where to write facility.yaml"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write a facility.yaml holding the built-in defaults."""
    target = config_path(path)
    if target.exists() and not force:
        typer.echo(f"{target} already exists (use --force)", err=True)
        raise typer.Exit(code=1)
    written = save_settings(FacilitySettings(), target)
    typer.echo(str(written))


@app.command("version")
def version():
    typer.echo(f"facility-chat {BUILD_INFO.version}")


if __name__ == "__main__":
    app()
