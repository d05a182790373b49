"""ArtifyMe CLI — run the servers and poke a running API.

Usage:
    artifyme serve                      # API on :3000 (uvicorn)
    artifyme realtime                   # WebSocket process on :3001
    artifyme styles                     # Available art styles
    artifyme plans --region PT          # Plans and credit packages for a region
    artifyme status <job-id>            # One transformation's status

API calls read ARTIFYME_API_URL and ARTIFYME_TOKEN (a Keycloak access token).
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from artifyme import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:3000"


def _api_url() -> str:
    return os.environ.get("ARTIFYME_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str]) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the ArtifyMe API."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


async def _get(path: str, token: Optional[str], params: Optional[dict] = None) -> dict:
    async with _client(token) as c:
        try:
            r = await c.get(path, params=params)
        except httpx.HTTPError as e:
            click.secho(f"Error: cannot reach {_api_url()} ({e})", fg="red", err=True)
            sys.exit(1)
    if r.is_error:
        try:
            detail = r.json().get("detail", r.text)
        except ValueError:
            detail = r.text
        click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
        sys.exit(1)
    return r.json()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "—"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _status_color(status: str) -> str:
    colors = {
        "pending": "yellow",
        "processing": "cyan",
        "completed": "green",
        "failed": "red",
    }
    return colors.get(status, "white")


token_option = click.option(
    "--token",
    envvar="ARTIFYME_TOKEN",
    help="Keycloak access token (or set ARTIFYME_TOKEN)",
)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="artifyme")
def main():
    """ArtifyMe — image style transfer backend."""


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", type=int, default=None, help="Port (default 3000)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the HTTP API."""
    import uvicorn

    from artifyme.config import settings

    uvicorn.run(
        "artifyme.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@main.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", type=int, default=None, help="Port (default 3001)")
def realtime(host: Optional[str], port: Optional[int]):
    """Run the WebSocket fan-out process."""
    import uvicorn

    from artifyme.config import settings

    uvicorn.run(
        "artifyme.realtime.server:app",
        host=host or settings.host,
        port=port or settings.realtime_port,
    )


# ---------------------------------------------------------------------------
# API queries
# ---------------------------------------------------------------------------


@main.command()
@token_option
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def styles(token: Optional[str], as_json: bool):
    """List the available art styles."""
    data = _run(_get("/api/transform/styles", token))
    if as_json:
        click.echo(_pretty_json(data))
        return
    _print_table(
        data["styles"],
        [("ID", "id", 12), ("Name", "name", 16), ("Description", "description", 48)],
    )


@main.command()
@token_option
@click.option(
    "--region",
    type=click.Choice(["BR", "PT"]),
    default="BR",
    show_default=True,
    help="BR prices in BRL, PT in EUR",
)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def plans(token: Optional[str], region: str, as_json: bool):
    """Show subscription plans and credit packages (prices in cents)."""
    data = _run(_get("/api/payments/plans", token, params={"region": region}))
    if as_json:
        click.echo(_pretty_json(data))
        return
    click.secho("Plans", bold=True)
    _print_table(
        data["plans"],
        [
            ("ID", "id", 10),
            ("Monthly", "monthly_price", 9),
            ("Yearly", "yearly_price", 9),
            ("Per month", "transformations_per_month", 10),
            ("Currency", "currency", 8),
        ],
    )
    click.echo()
    click.secho("Credit packages", bold=True)
    _print_table(
        data["packages"],
        [("ID", "id", 10), ("Credits", "credits", 8), ("Price", "price", 8), ("Currency", "currency", 8)],
    )


@main.command()
@click.argument("job_id")
@token_option
def status(job_id: str, token: Optional[str]):
    """Show a transformation's status."""
    if not token:
        click.secho("Error: --token required (or set ARTIFYME_TOKEN)", fg="red", err=True)
        sys.exit(1)
    data = _run(_get(f"/api/transform/status/{job_id}", token))
    state = data.get("status", "unknown")
    click.echo(f"Job:    {data.get('job_id', job_id)}")
    click.echo(f"Status: {click.style(state, fg=_status_color(state))}")
    if data.get("style"):
        click.echo(f"Style:  {data['style']}")
    if data.get("output_url"):
        click.echo(f"Output: {data['output_url']}")
    if data.get("error"):
        click.secho(f"Error:  {data['error']}", fg="red")


if __name__ == "__main__":
    main()
