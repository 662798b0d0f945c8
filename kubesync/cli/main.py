"""kubesync command-line interface.

Commands:
    kubesync status                      Sync status, health and halted resources.
    kubesync sync                        Request a manual sync.
    kubesync pause | resume              Pause or resume auto-sync.
    kubesync rollout [NAME]              Show one rollout, or all of them.
    kubesync promote NAME                Promote a rollout.
    kubesync rollback NAME               Roll a rollout back.
    kubesync events [--resource KEY]     Recent sync events.
    kubesync version                     Print version and exit.

All commands call the REST API at http://localhost:8080 (configurable via
``--api-url``).  Output is colourised for readability.
"""

from __future__ import annotations

import json

import click
import httpx

from kubesync import __version__

_DEFAULT_API_URL = "http://localhost:8080"

# ---------------------------------------------------------------------------
# Colour helpers
# ---------------------------------------------------------------------------

_HEALTH_COLORS: dict[str, str] = {
    "healthy": "green",
    "progressing": "yellow",
    "unknown": "white",
    "degraded": "red",
}

_SYNC_COLORS: dict[str, str] = {
    "synced": "green",
    "out_of_sync": "yellow",
    "unknown": "white",
}

_OUTCOME_COLORS: dict[str, str] = {
    "applied": "green",
    "skipped": "yellow",
    "failed": "red",
}

_PHASE_COLORS: dict[str, str] = {
    "progressing": "yellow",
    "paused": "cyan",
    "promoted": "green",
    "completed": "green",
    "rolled_back": "red",
    "aborted": "red",
}


def _styled(value: str, colors: dict[str, str], bold: bool = False) -> str:
    return click.style(value, fg=colors.get(value.lower(), "white"), bold=bold)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _get(api_url: str, path: str, params: dict[str, str] | None = None) -> object:
    """Perform a GET request and return the parsed JSON body.

    Raises click.ClickException on connection errors or non-2xx responses.
    """
    url = api_url.rstrip("/") + path
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.get(url, params=params or {})
        response.raise_for_status()
        return response.json()
    except httpx.ConnectError as err:
        raise click.ClickException(f"Cannot connect to kubesync API at {api_url}. Is the controller running?") from err
    except httpx.HTTPStatusError as exc:
        _handle_error_response(exc.response)
        raise


def _post(api_url: str, path: str) -> dict[str, object]:
    """Perform a body-less POST request and return the parsed JSON body."""
    url = api_url.rstrip("/") + path
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.post(url)
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]
    except httpx.ConnectError as err:
        raise click.ClickException(f"Cannot connect to kubesync API at {api_url}. Is the controller running?") from err
    except httpx.HTTPStatusError as exc:
        _handle_error_response(exc.response)
        raise


def _handle_error_response(response: httpx.Response) -> None:
    """Parse an error response body and raise a friendly ClickException."""
    try:
        data: dict[str, object] = response.json()
        msg = f"{data.get('error', 'ERROR')}: {data.get('detail', 'Unknown error')}"
    except ValueError:
        msg = f"HTTP {response.status_code}: {response.text[:200]}"
    raise click.ClickException(msg)


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2))


json_option = click.option("--json", "output_json", is_flag=True, default=False, help="Print raw JSON response.")

# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--api-url",
    default=_DEFAULT_API_URL,
    envvar="KUBESYNC_API_URL",
    show_default=True,
    help="kubesync REST API base URL.",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str) -> None:
    """kubesync: GitOps reconciliation and progressive delivery."""
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url


@cli.command("version")
def cmd_version() -> None:
    """Print the kubesync version and exit."""
    click.echo(f"kubesync {__version__}")


# ---------------------------------------------------------------------------
# kubesync status
# ---------------------------------------------------------------------------


@cli.command("status")
@json_option
@click.pass_context
def cmd_status(ctx: click.Context, output_json: bool) -> None:
    """Show sync status, health, halted resources and the last cycle."""
    data = _get(ctx.obj["api_url"], "/api/v1/status")
    if output_json:
        _echo_json(data)
        return
    assert isinstance(data, dict)
    _print_status(data)


def _print_status(data: dict[str, object]) -> None:
    sync_status = str(data.get("sync_status", "unknown"))
    health = str(data.get("health", "unknown"))
    click.echo(
        click.style(f"Application {data.get('app', '?')}", bold=True)
        + f"  revision: {data.get('revision') or '-'}"
        + f"  sync: {_styled(sync_status, _SYNC_COLORS, bold=True)}"
        + f"  health: {_styled(health, _HEALTH_COLORS, bold=True)}"
    )
    click.echo(f"  phase: {data.get('phase', '?')}" + (click.style("  (auto-sync paused)", fg="yellow") if data.get("paused") else ""))
    click.echo("")

    resource_health: dict[str, str] = data.get("resource_health") or {}  # type: ignore[assignment]
    if resource_health:
        click.echo(click.style("Resources:", bold=True))
        for resource, state in resource_health.items():
            click.echo(f"  {_styled(state, _HEALTH_COLORS):<24} {resource}")
        click.echo("")

    halted: dict[str, str] = data.get("halted") or {}  # type: ignore[assignment]
    if halted:
        click.echo(click.style(f"Halted ({len(halted)}), run `kubesync sync` to resume:", bold=True, fg="red"))
        for resource, reason in halted.items():
            click.echo(f"  {resource}: {reason}")
        click.echo("")

    cycle: dict[str, object] | None = data.get("last_cycle")  # type: ignore[assignment]
    if cycle:
        click.echo(click.style("Last cycle", bold=True) + f" {cycle.get('cycle_id')}  changes: {cycle.get('changes', 0)}")
        if cycle.get("error"):
            click.echo(click.style(f"  error: {cycle['error']}", fg="red"))
        results: list[dict[str, object]] = cycle.get("results") or []  # type: ignore[assignment]
        for result in results:
            outcome = str(result.get("outcome", "?"))
            line = f"  [{_styled(outcome, _OUTCOME_COLORS)}] {result.get('delta_kind', '?')} {result.get('resource', '?')}"
            if result.get("error"):
                line += f"  ({result['error']})"
            click.echo(line)


# ---------------------------------------------------------------------------
# Sync controls
# ---------------------------------------------------------------------------


@cli.command("sync")
@click.pass_context
def cmd_sync(ctx: click.Context) -> None:
    """Request a manual sync (applies while paused and clears halts)."""
    data = _post(ctx.obj["api_url"], "/api/v1/sync")
    click.echo(click.style("Sync requested", fg="green") + f": {data.get('detail', '')}")


@cli.command("pause")
@click.pass_context
def cmd_pause(ctx: click.Context) -> None:
    """Pause auto-sync; diffs keep running."""
    data = _post(ctx.obj["api_url"], "/api/v1/sync/pause")
    click.echo(str(data.get("detail", "paused")))


@cli.command("resume")
@click.pass_context
def cmd_resume(ctx: click.Context) -> None:
    """Resume auto-sync."""
    data = _post(ctx.obj["api_url"], "/api/v1/sync/resume")
    click.echo(str(data.get("detail", "resumed")))


# ---------------------------------------------------------------------------
# Rollouts
# ---------------------------------------------------------------------------


@cli.command("rollout")
@click.argument("name", required=False)
@json_option
@click.pass_context
def cmd_rollout(ctx: click.Context, name: str | None, output_json: bool) -> None:
    """Show the rollout of NAME, or every rollout when NAME is omitted."""
    path = f"/api/v1/rollouts/{name}" if name else "/api/v1/rollouts"
    data = _get(ctx.obj["api_url"], path)
    if output_json:
        _echo_json(data)
        return
    rollouts = data if isinstance(data, list) else [data]
    if not rollouts:
        click.echo("No rollouts.")
        return
    for rollout in rollouts:
        _print_rollout(rollout)


def _print_rollout(data: dict[str, object]) -> None:
    phase = str(data.get("phase", "?"))
    click.echo(
        click.style(str(data.get("release", "?")), bold=True)
        + f"  {data.get('from_version') or 'none'} -> {data.get('to_version', '?')}"
        + f"  [{data.get('strategy', '?')}]  {_styled(phase, _PHASE_COLORS, bold=True)}"
    )
    if data.get("message"):
        click.echo(f"  {data['message']}")
    tracks: list[dict[str, object]] = data.get("tracks") or []  # type: ignore[assignment]
    for track in tracks:
        marker = "*" if track.get("name") == data.get("active_track") else " "
        health = str(track.get("health", "unknown"))
        click.echo(
            f"  {marker} {track.get('name', '?'):<6} {track.get('version', '?'):<12} "
            f"{track.get('traffic_weight', 0):>3}%  {_styled(health, _HEALTH_COLORS)}"
        )


@cli.command("promote")
@click.argument("name")
@click.pass_context
def cmd_promote(ctx: click.Context, name: str) -> None:
    """Promote the rollout of release NAME."""
    data = _post(ctx.obj["api_url"], f"/api/v1/rollouts/{name}/promote")
    click.echo(click.style("Promote requested", fg="green") + f" for {name}")
    _print_rollout(data)


@cli.command("rollback")
@click.argument("name")
@click.pass_context
def cmd_rollback(ctx: click.Context, name: str) -> None:
    """Roll back the rollout of release NAME."""
    data = _post(ctx.obj["api_url"], f"/api/v1/rollouts/{name}/rollback")
    click.echo(click.style("Rollback requested", fg="yellow") + f" for {name}")
    _print_rollout(data)


# ---------------------------------------------------------------------------
# kubesync events
# ---------------------------------------------------------------------------


@cli.command("events")
@click.option("--resource", "-r", default=None, metavar="KEY", help="Filter by Kind/namespace/name.")
@click.option("--limit", "-l", default=20, show_default=True, type=click.IntRange(1, 1000))
@json_option
@click.pass_context
def cmd_events(ctx: click.Context, resource: str | None, limit: int, output_json: bool) -> None:
    """Show recent sync events, newest first."""
    params = {"limit": str(limit)}
    if resource:
        params["resource"] = resource
    data = _get(ctx.obj["api_url"], "/api/v1/events", params=params)
    if output_json:
        _echo_json(data)
        return
    assert isinstance(data, dict)
    events: list[dict[str, object]] = data.get("events") or []  # type: ignore[assignment]
    if not events:
        click.echo("No events.")
        return
    for event in events:
        outcome = str(event.get("outcome") or "-")
        health = event.get("health")
        click.echo(
            f"{event.get('timestamp', '')}  [{_styled(outcome, {**_OUTCOME_COLORS, **_PHASE_COLORS})}] "
            f"{event.get('delta_kind', '?')} {event.get('key', '?')}"
            + (f"  health={health}" if health else "")
            + (f"  {event['message']}" if event.get("message") else "")
        )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
