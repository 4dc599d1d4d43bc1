#!/usr/bin/env python3
"""
CLI for jotx - local digital memory.

Usage:
    jot capture "text"              - Store a note (or -s shell / -s clipboard)
    jot search "query"              - Literal/semantic search over history
    jot ask "question"              - Ask a question answered from history
    jot privacy show|add|remove     - Manage privacy exclusion rules
    jot settings show|set           - Manage capture settings
    jot clean --all | --before TS   - Delete captured history
    jot daemon start|stop|status    - Manage the daemon
"""

import asyncio
import os
import sys
from typing import Any, Dict, Optional

import click
import httpx
from loguru import logger
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

console = Console()

DAEMON_URL = os.environ.get("JOTX_URL", "http://localhost:8765")

PRIVACY_CATEGORIES = ["contains", "starts_with", "ends_with", "regex", "exclude_folders"]


async def request(method: str, path: str, timeout: float = 5.0, **kwargs) -> httpx.Response:
    async with httpx.AsyncClient(base_url=DAEMON_URL) as client:
        return await client.request(method, path, timeout=timeout, **kwargs)


def call_daemon(method: str, path: str, timeout: float = 5.0, **kwargs) -> Optional[Dict[str, Any]]:
    """Call the daemon and return the JSON body, printing any error."""
    try:
        response = asyncio.run(request(method, path, timeout=timeout, **kwargs))
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        console.print("Start with: [cyan]jot daemon start[/cyan]")
        return None
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] {e}")
        return None

    try:
        data = response.json()
    except ValueError:
        console.print(f"[red]Unexpected response ({response.status_code}):[/red] {response.text}")
        return None

    if response.status_code >= 400 and "error" in data:
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else error
        console.print(f"[red]Failed:[/red] {message}")
        return None
    return data


def current_directory() -> str:
    """Working directory, or $PWD when it has been deleted out from under the shell."""
    try:
        return os.getcwd()
    except OSError:
        return os.environ.get("PWD", "")


@click.group()
def cli():
    """jotx - remember what you copied and ran."""
    logger.remove()
    logger.add(sys.stderr, level="WARNING")


@cli.command()
@click.argument("content")
@click.option("--source", "-s", "source_type",
              type=click.Choice(["note", "shell", "clipboard", "file"]), default="note")
@click.option("--cwd", help="Working directory (shell entries)")
@click.option("--path", "file_path", help="File path (file entries)")
@click.option("--quiet", "-q", is_flag=True, help="Print nothing; for shell hooks")
@click.option("--timeout", default=0.5, show_default=True, help="Seconds to wait for the daemon")
def capture(content: str, source_type: str, cwd: Optional[str], file_path: Optional[str],
            quiet: bool, timeout: float):
    """Capture a note, shell command, clipboard text or file reference.

    Always exits 0 so it is safe to call from a shell prompt hook.
    """
    context: Dict[str, Any] = {}
    if source_type == "shell":
        context = {
            "cwd": cwd or current_directory(),
            "user": os.environ.get("USER", ""),
            "host": os.uname().nodename if hasattr(os, "uname") else "",
        }
    elif source_type == "file" and file_path:
        context = {"path": file_path}

    try:
        response = asyncio.run(request(
            "POST", "/capture", timeout=timeout,
            json={"content": content, "source_type": source_type, "context": context or None},
        ))
        data = response.json()
    except Exception as e:
        # Never disturb the calling shell
        logger.debug(f"Capture not delivered: {e}")
        return

    if quiet:
        return
    status = data.get("status")
    if status == "stored":
        console.print(f"[green]✓[/green] Stored #{data.get('id')}")
    elif status in ("dropped", "disabled"):
        console.print(f"[yellow]{status.capitalize()}[/yellow]: {data.get('reason')}")
    else:
        console.print(f"[red]Not stored[/red]: {data.get('reason') or data.get('error')}")


@cli.command()
@click.argument("query")
@click.option("--mode", "-m", type=click.Choice(["auto", "literal", "semantic"]), default="literal",
              show_default=True)
@click.option("--source", "-s", "sources", multiple=True,
              type=click.Choice(["note", "shell", "clipboard", "file"]), help="Filter by source")
@click.option("--limit", "-l", type=int, help="Max results")
@click.option("--case-sensitive/--ignore-case", default=None)
@click.option("--here", is_flag=True, help="Boost commands run in the current directory")
def search(query: str, mode: str, sources, limit: Optional[int], case_sensitive: Optional[bool], here: bool):
    """Search captured history."""
    params: Dict[str, Any] = {"q": query, "mode": mode}
    if sources:
        params["source"] = list(sources)
    if limit:
        params["limit"] = limit
    if case_sensitive is not None:
        params["case_sensitive"] = str(case_sensitive).lower()
    if here:
        params["cwd"] = current_directory()

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                  transient=True, console=console) as progress:
        progress.add_task(description="Searching...", total=None)
        data = call_daemon("GET", "/search", params=params)
    if data is not None:
        display_search_results(data)


def display_search_results(data: dict):
    if data.get("status") == "failed":
        console.print(f"[red]Search failed:[/red] {data.get('error')}")
        return

    results = data.get("results", [])
    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Search Results ({data.get('latency_ms', 0):.1f}ms)")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Source", style="magenta")
    table.add_column("When", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Content", no_wrap=False)

    for r in results:
        content = r.get("content", "")
        if len(content) > 200:
            content = content[:200] + "..."
        table.add_row(
            str(r.get("id")),
            r.get("source_type", "unknown"),
            r.get("timestamp", "")[:19].replace("T", " "),
            f"{r.get('score', 0):.2f}",
            content,
        )

    console.print(table)


@cli.command()
@click.argument("question")
@click.option("--timeout", type=float, help="Seconds to wait for the language model")
def ask(question: str, timeout: Optional[float]):
    """Ask a question answered from your history."""
    payload: Dict[str, Any] = {"question": question}
    if timeout:
        payload["timeout_s"] = timeout

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                  transient=True, console=console) as progress:
        progress.add_task(description="Thinking...", total=None)
        data = call_daemon("POST", "/ask", timeout=(timeout or 30.0) + 10.0, json=payload)
    if data is None:
        return

    console.print(data.get("text", ""))
    if data.get("degraded"):
        console.print("\n[yellow]Answered from raw history (language model unavailable)[/yellow]")
    if data.get("used_entries"):
        console.print(f"[dim]Based on entries: {', '.join(str(i) for i in data['used_entries'])}[/dim]")


@cli.group()
def privacy():
    """Manage privacy exclusion rules."""


@privacy.command(name="show")
def privacy_show():
    """Show current privacy rules."""
    data = call_daemon("GET", "/privacy")
    if data is None:
        return
    table = Table(title="Privacy Rules")
    table.add_column("Category", style="cyan")
    table.add_column("Patterns")
    for category in PRIVACY_CATEGORIES:
        table.add_row(category, "\n".join(data.get(category, [])) or "[dim]-[/dim]")
    console.print(table)


@privacy.command(name="add")
@click.argument("category", type=click.Choice(PRIVACY_CATEGORIES))
@click.argument("pattern")
def privacy_add(category: str, pattern: str):
    """Add a privacy rule."""
    if call_daemon("POST", "/privacy/rules", json={"category": category, "pattern": pattern}) is not None:
        console.print(f"[green]✓[/green] Added {category} rule: {pattern}")


@privacy.command(name="remove")
@click.argument("category", type=click.Choice(PRIVACY_CATEGORIES))
@click.argument("pattern")
def privacy_remove(category: str, pattern: str):
    """Remove a privacy rule."""
    if call_daemon("DELETE", "/privacy/rules", json={"category": category, "pattern": pattern}) is not None:
        console.print(f"[green]✓[/green] Removed {category} rule: {pattern}")


@cli.group()
def settings():
    """Manage capture and retention settings."""


@settings.command(name="show")
def settings_show():
    data = call_daemon("GET", "/settings")
    if data is None:
        return
    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


def _parse_setting(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "on", "yes"):
        return True
    if lowered in ("false", "off", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        return value


@settings.command(name="set")
@click.argument("key")
@click.argument("value")
def settings_set(key: str, value: str):
    """Change one setting, e.g. `jot settings set clipboard_limit 500`."""
    if call_daemon("PUT", "/settings", json={key: _parse_setting(value)}) is not None:
        console.print(f"[green]✓[/green] {key} = {value}")


@cli.command()
@click.option("--all", "wipe_all", is_flag=True, help="Delete everything")
@click.option("--before", help="Delete entries captured before this ISO timestamp")
@click.confirmation_option(prompt="Delete captured history?")
def clean(wipe_all: bool, before: Optional[str]):
    """Delete captured history."""
    if not wipe_all and not before:
        raise click.UsageError("Pass --all or --before")
    payload: Dict[str, Any] = {"all": True} if wipe_all else {"before": before}
    data = call_daemon("POST", "/clean", json=payload)
    if data is not None:
        console.print(f"[green]✓[/green] Deleted {data.get('deleted', 0)} entries")


@cli.group()
def daemon():
    """Manage the jotx daemon."""


@daemon.command()
@click.option("--config", "-c", type=click.Path(), help="Config file path")
def start(config: Optional[str]):
    """Start the jotx daemon in the foreground."""
    console.print("[cyan]Starting jotx daemon...[/cyan]")

    # Import here so the other commands stay light
    from ..daemon.main import main as daemon_main

    try:
        asyncio.run(daemon_main(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Daemon error:[/red] {e}")
        logger.exception("Daemon crashed")
        sys.exit(1)


@daemon.command()
def stop():
    """Stop the jotx daemon."""
    try:
        response = asyncio.run(request("POST", "/shutdown"))
    except httpx.ConnectError:
        console.print("[yellow]Daemon not running[/yellow]")
        return
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] {e}")
        return

    if response.status_code == 200:
        console.print("[green]Daemon stopping[/green]")
    else:
        console.print(f"[red]Failed to stop daemon:[/red] {response.text}")


@daemon.command()
def status():
    """Check daemon status."""
    try:
        response = asyncio.run(request("GET", "/status", timeout=2.0))
    except httpx.ConnectError:
        console.print("[red]✗ Daemon is not running[/red]")
        console.print("Start with: [cyan]jot daemon start[/cyan]")
        return
    except httpx.HTTPError as e:
        console.print(f"[red]Error checking status:[/red] {e}")
        return

    if response.status_code != 200:
        console.print("[red]Daemon error[/red]")
        return

    data = response.json()
    console.print(f"[green]✓ Daemon is running[/green] (v{data.get('version')}, up {data.get('uptime')})")
    entries = data.get("entries", {})
    index = data.get("index", {})
    stats = data.get("stats", {})
    console.print("\nEntries: " + ", ".join(f"{k} {v}" for k, v in entries.items()))
    console.print(f"Indexed vectors: {index.get('vectors', 0)} (queue {index.get('queue_depth', 0)})")
    console.print(f"Searches: {stats.get('search_count', 0)}, questions: {stats.get('ask_count', 0)}")
    console.print(f"Memory: {stats.get('memory_mb', 0):.1f} MB")
    console.print(f"LLM: {data.get('llm', {}).get('state', 'unknown')}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
