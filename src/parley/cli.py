"""CLI for parley administration.

Settings come from ``--config PATH`` (YAML) or ``PARLEY_CONFIG``, then
``PARLEY_*`` environment variables. Commands that touch the database open it
directly; ``status`` talks to a running server over HTTP.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import cyclopts
import httpx

from .auth import sign_token
from .config import Settings
from .crypto import bytes_to_base64url, generate_key
from .errors import ParleyError
from .jobs import JobStatus
from .service import Parley

app = cyclopts.App(
    name="parley",
    help="Encrypted real-time room messaging",
)

jobs_app = cyclopts.App(name="jobs", help="Maintenance jobs")
room_app = cyclopts.App(name="room", help="Room operations")

app.command(jobs_app)
app.command(room_app)


def load_settings(config: str | None = None) -> Settings:
    """Load settings or exit with error."""
    try:
        if config:
            return Settings.load(config)
        return Settings.from_env()
    except ParleyError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


@app.command
def init(path: str = "parley.yaml", *, db: str = "parley.db", force: bool = False):
    """Write a new settings file with freshly generated secrets.

    Args:
        path: Where to write the YAML file
        db: SQLite database path to configure
        force: Overwrite an existing file
    """
    target = Path(path)
    if target.exists() and not force:
        print(f"Error: {target} already exists (use --force to overwrite)", file=sys.stderr)
        sys.exit(1)

    settings = Settings(
        db_path=db,
        room_key_secret=bytes_to_base64url(generate_key()),
        auth_token_secret=bytes_to_base64url(generate_key()),
    )
    settings.save(target)
    print(f"Wrote {target}")
    print("Keep room_key_secret safe: room keys cannot be read without it.")


@app.command(name="config")
def show_config(*, config: str | None = None):
    """Show effective settings (secrets redacted)."""
    print_json(load_settings(config).to_dict())


@app.command
def token(
    user_id: str,
    *,
    config: str | None = None,
    secret: str | None = None,
    ttl_minutes: int | None = None,
):
    """Mint a signed bearer token for a user.

    Args:
        user_id: User the token identifies
        config: Settings file holding auth_token_secret
        secret: Signing secret (overrides settings)
        ttl_minutes: Token lifetime (overrides auth_token_ttl_minutes)
    """
    settings = load_settings(config)
    secret = secret or settings.auth_token_secret
    if not secret:
        print("Error: No auth_token_secret configured.", file=sys.stderr)
        sys.exit(1)
    try:
        print(sign_token(user_id, secret, ttl_minutes or settings.auth_token_ttl_minutes))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


@app.command
def status(*, url: str = "http://localhost:8000"):
    """Show health and metrics of a running server."""
    try:
        health = httpx.get(f"{url}/health", timeout=10.0)
    except httpx.HTTPError as e:
        print(f"Error: cannot reach {url}: {e}", file=sys.stderr)
        sys.exit(1)
    print_json(health.json())

    metrics = httpx.get(f"{url}/metrics", timeout=10.0)
    if metrics.status_code >= 400:
        print(f"Metrics unavailable ({metrics.status_code}): {metrics.text}", file=sys.stderr)
        return
    print_json(metrics.json())


# --- Jobs Commands ---


@jobs_app.command(name="sweep-invitations")
def sweep_invitations(*, config: str | None = None):
    """Mark every overdue pending invitation as expired."""
    settings = load_settings(config)

    async def run() -> int:
        async with Parley(settings) as parley:
            return await parley.participants.sweep_expired_invitations()

    count = asyncio.run(run())
    print(f"Expired {count} invitations")


# --- Room Commands ---


@room_app.command(name="export")
def room_export(
    room_id: str,
    *,
    actor: str,
    output: str | None = None,
    config: str | None = None,
):
    """Export a room's messages, participants, reactions and read receipts.

    Args:
        room_id: Room to export
        actor: Admin user the export runs as
        output: Write JSON here instead of stdout
        config: Settings file
    """
    settings = load_settings(config)

    async def run():
        async with Parley(settings) as parley:
            job = await parley.rooms.export_room_data(room_id, actor, output_path=output)
            return await parley.jobs.wait(job.job_id)

    try:
        job = asyncio.run(run())
    except ParleyError as e:
        print(f"Error: {e.code}: {e}", file=sys.stderr)
        sys.exit(1)

    if job.status != JobStatus.COMPLETED:
        print(f"Error: export {job.status}: {job.error}", file=sys.stderr)
        sys.exit(1)
    if output:
        print(f"Exported {job.done} messages to {output}")
    else:
        print_json(job.result)


# --- Server Command ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    no_auth: bool = False,
    config: str | None = None,
):
    """Run the parley server.

    Authentication modes:
    - --no-auth: Trust the X-User-Id header (development only!)
    - PARLEY_AUTH_TOKEN_SECRET: Signed bearer tokens (see ``parley token``)
    - PARLEY_AUTH_MODULE: Custom auth module
    """
    import uvicorn

    if config:
        os.environ["PARLEY_CONFIG"] = config
    if no_auth:
        os.environ["PARLEY_NO_AUTH"] = "1"
        print("WARNING: Running in no-auth mode. X-User-Id is trusted as-is!")
        print("         Do not use in production.\n")

    settings = load_settings(config)
    if not (settings.no_auth or settings.auth_token_secret or settings.auth_module):
        print("Error: No auth method configured.", file=sys.stderr)
        print("Options:", file=sys.stderr)
        print("  --no-auth                    Development mode", file=sys.stderr)
        print("  PARLEY_AUTH_TOKEN_SECRET=..  Signed bearer tokens", file=sys.stderr)
        print("  PARLEY_AUTH_MODULE=..        Custom auth module", file=sys.stderr)
        sys.exit(1)

    uvicorn.run(
        "parley.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
