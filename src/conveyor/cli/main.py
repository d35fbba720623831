"""Conveyor CLI — validates definitions locally, talks to the daemon over HTTP."""

import json
import logging
import time
from pathlib import Path
from typing import Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

from conveyor import __version__
from conveyor.adapters.registry import AdapterRegistry
from conveyor.core.config import get_client_settings, get_settings
from conveyor.core.errors import CycleError, LoadError
from conveyor.pipeline.loader import load_definition

app = typer.Typer(
    name="conveyor",
    help="Release pipeline orchestration",
    no_args_is_help=True,
)
console = Console()

_TERMINAL = ("succeeded", "failed", "rolled_back")
_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "rolled_back": "magenta",
    "skipped": "dim",
    "running": "yellow",
    "retrying": "yellow",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _client() -> httpx.Client:
    settings = get_client_settings()
    return httpx.Client(
        base_url=settings.host,
        headers={"Authorization": f"Bearer {settings.api_key}"},
        timeout=120,
    )


def _api(method: str, path: str, **kwargs) -> dict:
    """Make an API call to the daemon."""
    with _client() as client:
        try:
            resp = client.request(method, f"/api/v1{path}", **kwargs)
        except httpx.ConnectError:
            settings = get_client_settings()
            console.print(f"[red]Error:[/red] Cannot connect to Conveyor daemon at {settings.host}")
            console.print("Start the daemon with: [bold]conveyord[/bold]")
            raise typer.Exit(1)

        if resp.status_code >= 400:
            detail = resp.json().get("detail", resp.text) if resp.headers.get("content-type", "").startswith("application/json") else resp.text
            console.print(f"[red]Error {resp.status_code}:[/red] {detail}")
            raise typer.Exit(1)

        return resp.json()


def _colored(status: str) -> str:
    color = _COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _print_run(run: dict) -> None:
    console.print(
        f"\n{_colored(run['status'])} {run['definition_name']} "
        f"[dim]{run['id']}[/dim] @ {run['trigger']['commit']}"
    )
    if run.get("rollback_outcome") and run["rollback_outcome"] != "not_attempted":
        console.print(f"  Rollback: {run['rollback_outcome']}")
    if run.get("duration_ms") is not None:
        console.print(f"  Duration: {run['duration_ms']}ms")

    table = Table(show_lines=False)
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Artifact")
    table.add_column("Detail")
    for s in run["stages"]:
        detail = ""
        if s.get("last_error") and s["status"] in ("failed", "retrying"):
            detail = s["last_error"]["message"][:120]
        elif s.get("skip_reason"):
            detail = s["skip_reason"]
        if s.get("rollback_error"):
            detail = f"rollback failed: {s['rollback_error']['message'][:100]}"
        table.add_row(s["name"], _colored(s["status"]), str(s["attempts"]), s.get("artifact") or "—", detail)
    console.print(table)


# ─── Definition Commands ───


@app.command()
def validate(
    file: Path = typer.Argument(..., help="Pipeline definition (.toml, .yaml, .json)"),
    check_bindings: bool = typer.Option(
        False, "--check-bindings", help="Also check adapter bindings from conveyor.toml"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the stage graph as JSON"),
):
    """Validate a pipeline definition locally."""
    try:
        definition = load_definition(file)
        if check_bindings:
            AdapterRegistry(get_settings().adapters).validate(definition)
    except CycleError as e:
        console.print(f"[red]✗ Cycle:[/red] {' → '.join(e.cycle)}")
        raise typer.Exit(1)
    except (LoadError, ValueError) as e:
        console.print(f"[red]✗ Invalid:[/red] {e}")
        raise typer.Exit(1)

    graph = definition.graph
    if as_json:
        console.print_json(json.dumps({"name": definition.name, "version": definition.version, **graph.to_dict()}))
        return

    console.print(
        f"[green]✓[/green] [bold]{definition.name}[/bold] "
        f"(schema {definition.schema_version}, version {definition.version})"
    )
    table = Table(title="Stages")
    table.add_column("Depth", justify="right", style="dim")
    table.add_column("Stage", style="bold")
    table.add_column("Kind")
    table.add_column("Depends on")
    table.add_column("Retries", justify="right")
    table.add_column("Rollback")
    for name in graph.topological_sort():
        spec = definition.stage(name)
        table.add_row(
            str(graph.depth(name)),
            name if spec.enabled else f"{name} [dim](disabled)[/dim]",
            spec.kind.value,
            ", ".join(graph.sort(graph.dependencies(name))) or "—",
            str(spec.retry.max_attempts),
            spec.rollback or "—",
        )
    console.print(table)


# ─── Run Commands ───


@app.command()
def trigger(
    definition: str = typer.Argument(..., help="Definition name or path on the daemon"),
    commit: str = typer.Option(..., "--commit", "-c", help="Commit to release"),
    params: Optional[str] = typer.Option(None, "--params", "-p", help="JSON params"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait for the run to finish"),
    interval: float = typer.Option(2.0, "--interval", help="Polling interval with --wait"),
):
    """Trigger a run."""
    body = {"commit": commit, "definition": definition, "params": json.loads(params) if params else {}}
    run = _api("POST", "/runs", json=body)
    console.print(f"[green]✓[/green] Triggered run [bold]{run['id']}[/bold]")
    if not wait:
        return

    while run["status"] not in _TERMINAL:
        time.sleep(interval)
        run = _api("GET", f"/runs/{run['id']}")
    _print_run(run)
    if run["status"] != "succeeded":
        raise typer.Exit(1)


@app.command()
def runs(
    definition: Optional[str] = typer.Option(None, "--definition", "-d", help="Only runs of this definition"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only runs with this status"),
    last: int = typer.Option(20, "--last", "-l", help="Number of runs to show"),
):
    """Show recent runs."""
    query = {"limit": last}
    if definition:
        query["definition"] = definition
    if status:
        query["status"] = status
    result = _api("GET", "/runs", params=query)

    if not result["runs"]:
        console.print("[dim]No runs[/dim]")
        return

    table = Table(title="Runs")
    table.add_column("ID", style="dim", max_width=8)
    table.add_column("Definition", style="bold")
    table.add_column("Commit", max_width=12)
    table.add_column("Status")
    table.add_column("Rollback")
    table.add_column("Created")

    for r in result["runs"]:
        table.add_row(
            r["id"][:8],
            r["definition_name"],
            r["commit"],
            _colored(r["status"]),
            r["rollback_outcome"] if r["rollback_outcome"] != "not_attempted" else "—",
            r.get("created_at", "—") or "—",
        )

    console.print(table)


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run ID"),
    transitions: bool = typer.Option(False, "--transitions", "-t", help="Also print the transition log"),
):
    """Show a run and its stages."""
    _print_run(_api("GET", f"/runs/{run_id}"))
    if not transitions:
        return

    log = _api("GET", f"/runs/{run_id}/transitions")["transitions"]
    table = Table(title="Transitions")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Attempt", justify="right")
    table.add_column("At")
    for t in log:
        table.add_row(str(t["seq"]), t["stage"], t["from_status"] or "—", _colored(t["to_status"]), str(t["attempt"]), t["at"])
    console.print(table)


@app.command()
def cancel(run_id: str = typer.Argument(..., help="Run ID")):
    """Cancel a running run. Succeeded stages are rolled back."""
    result = _api("POST", f"/runs/{run_id}/cancel")
    if result["cancelled"]:
        console.print(f"[yellow]Cancelling run {run_id}[/yellow]")
    else:
        console.print(f"[dim]Run {run_id} is not active on the daemon[/dim]")


@app.command()
def resume(run_id: str = typer.Argument(..., help="Run ID")):
    """Resume an interrupted run."""
    run = _api("POST", f"/runs/{run_id}/resume")
    if run["status"] in _TERMINAL:
        console.print(f"[dim]Run {run_id} already {run['status']}[/dim]")
    else:
        console.print(f"[green]✓[/green] Resumed run [bold]{run_id}[/bold]")


# ─── Daemon Commands ───


@app.command()
def version():
    """Show Conveyor version."""
    console.print(f"conveyor v{__version__}")


@app.command()
def status():
    """Show daemon status."""
    with _client() as client:
        try:
            resp = client.get("/health")
            data = resp.json()
            console.print(f"[green]●[/green] Conveyor daemon v{data['version']} running")
            load = data.get("runs") or {}
            active = load.get("active_runs", [])
            console.print(f"  Active runs: {len(active)}/{load.get('max_active_runs', '?')}")
            for run_id in active:
                console.print(f"    {run_id}")
        except httpx.ConnectError:
            settings = get_client_settings()
            console.print(f"[red]●[/red] Daemon not running at {settings.host}")


if __name__ == "__main__":
    app()
