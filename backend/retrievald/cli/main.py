"""CLI entrypoint for the retrieval daemon."""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import requests
import typer

from retrievald.core.config import get_settings

app = typer.Typer(name="retrievald", help="Local retrieval daemon command-line interface")


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip("/")
    env_host = os.environ.get("RETRIEVALD_URL")
    if env_host:
        return env_host.rstrip("/")
    settings = get_settings()
    return f"http://{settings.host}:{settings.port}"


def _request(method: str, path: str, host: Optional[str] = None, **kwargs: Any) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    try:
        resp = requests.request(method, url, timeout=120, **kwargs)
    except requests.ConnectionError as exc:
        typer.echo(f"Could not reach retrievald at {base}: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _print(resp: requests.Response) -> None:
    typer.echo(json.dumps(resp.json(), indent=2))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (defaults to settings)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (defaults to settings)"),
) -> None:
    """Run the daemon in the foreground."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "retrievald.app:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
    )


@app.command()
def backfill(
    limit: int = typer.Option(50_000, "--limit", help="Maximum files per scan page"),
    host: Optional[str] = typer.Option(None, "--host", help="Override daemon URL"),
) -> None:
    """Run a full file backfill."""
    _print(_request("POST", "/backfill", host=host, json={"limit": limit}))


@app.command()
def suggest(
    q: str = typer.Argument(..., help="Query text"),
    limit: int = typer.Option(12, "--limit", help="Number of suggestions"),
    typing: bool = typer.Option(False, "--typing/--deep", help="Use the typing-mode latency budget"),
    no_cold: bool = typer.Option(False, "--no-cold", help="Disable the cold partition fallback"),
    host: Optional[str] = typer.Option(None, "--host", help="Override daemon URL"),
) -> None:
    """Ask the daemon for suggestions."""
    payload = {
        "query": q,
        "limit": limit,
        "typing_mode": typing,
        "include_cold_partition_fallback": not no_cold,
    }
    _print(_request("POST", "/suggest", host=host, json=payload))


@app.command()
def state(host: Optional[str] = typer.Option(None, "--host", help="Override daemon URL")) -> None:
    """Show the daemon state snapshot."""
    _print(_request("GET", "/state", host=host))


@app.command()
def stats(host: Optional[str] = typer.Option(None, "--host", help="Override daemon URL")) -> None:
    """Show indexed document counts."""
    _print(_request("GET", "/stats", host=host))


@app.command()
def benchmark(
    queries: list[str] = typer.Argument(..., help="Queries to time"),
    host: Optional[str] = typer.Option(None, "--host", help="Override daemon URL"),
) -> None:
    """Time typing-mode suggests for a few queries."""
    _print(_request("POST", "/benchmark", host=host, json={"queries": queries}))


@app.command()
def purge(
    extensions: list[str] = typer.Argument(..., help="Extensions to remove, e.g. json csv"),
    host: Optional[str] = typer.Option(None, "--host", help="Override daemon URL"),
) -> None:
    """Remove indexed files with the given extensions."""
    _print(_request("POST", "/purge", host=host, json={"extensions": extensions}))


if __name__ == "__main__":  # pragma: no cover
    app()
