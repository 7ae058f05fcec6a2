from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from beacon.config import BeaconSettings, get_settings
from beacon.domain.models import EndpointDescriptor
from beacon.endpoints.documents import SiteInfo, builtin_descriptors
from beacon.errors import UnknownEndpointError
from beacon.orchestrator.engine import EndpointOrchestrator, report_summary
from beacon.probe.prober import determine_recommended_strategy

app = typer.Typer(no_args_is_help=True, add_completion=False)

conflicts_app = typer.Typer(no_args_is_help=True)
app.add_typer(conflicts_app, name="conflicts")

backups_app = typer.Typer(no_args_is_help=True)
app.add_typer(backups_app, name="backups")

console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


@app.callback()
def main_options(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", help="Document root the web server serves"),
    base_url: Optional[str] = typer.Option(None, help="Public base URL of the site"),
    db: Optional[Path] = typer.Option(None, help="State DB path (default: next to the document root)"),
    prefer_analytics: Optional[bool] = typer.Option(
        None, "--prefer-analytics/--no-prefer-analytics", help="Route through the app so hits are counted"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    _setup_logging(verbose)
    ctx.obj = get_settings(
        document_root=root, base_url=base_url, db_path=db, prefer_analytics=prefer_analytics
    )


def _orchestrator(settings: BeaconSettings) -> EndpointOrchestrator:
    root = settings.document_root.expanduser().resolve()
    if not root.is_dir():
        raise typer.BadParameter(f"Document root is not a directory: {root}")
    return EndpointOrchestrator.from_settings(settings)


def _descriptors(settings: BeaconSettings) -> dict[str, EndpointDescriptor]:
    return {d.path: d for d in builtin_descriptors(SiteInfo.from_settings(settings))}


def _pick(settings: BeaconSettings, path: str) -> EndpointDescriptor:
    known = _descriptors(settings)
    if path not in known:
        raise typer.BadParameter(f"Unknown endpoint {path}; known: {', '.join(sorted(known))}")
    return known[path]


def _ts(value: Optional[int]) -> str:
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@app.command()
def register(
    ctx: typer.Context,
    paths: Optional[list[str]] = typer.Argument(None, help="Endpoint paths (default: all built-in)"),
) -> None:
    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    targets = [_pick(settings, p) for p in paths] if paths else list(_descriptors(settings).values())
    orch.load_routes(_descriptors(settings).values())

    failed = 0
    for d in targets:
        result = orch.register(d)
        if result.noop:
            console.print(f"[dim]=[/dim] {d.path:<32} {result.strategy_id} (unchanged)")
        elif result.success:
            console.print(f"[bold green]+[/bold green] {d.path:<32} {result.strategy_id}")
        else:
            failed += 1
            console.print(f"[bold red]x[/bold red] {d.path:<32} all strategies failed")
            if result.conflict_id is not None:
                console.print(
                    f"    conflict {result.conflict_id}: run [bold]beacon conflicts list[/bold] to review"
                )
        for w in result.warnings:
            console.print(f"    [yellow]{w}[/yellow]")
        for e in result.errors:
            console.print(f"    [red]{e}[/red]")

    if failed:
        raise typer.Exit(code=1)


@app.command()
def status(ctx: typer.Context) -> None:
    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    orch.load_routes(_descriptors(settings).values())

    table = Table(show_header=True, header_style="bold")
    table.add_column("PATH")
    table.add_column("STATE", no_wrap=True)
    table.add_column("STRATEGY")
    table.add_column("UPDATED", no_wrap=True)
    table.add_column("LAST ERROR")
    for s in orch.status():
        table.add_row(s.endpoint_key, s.state.value, s.strategy_id or "-", _ts(s.timestamp), s.last_error or "")
    console.print(f"[bold]DB:[/bold] {settings.resolved_db_path()}")
    console.print(table)

    stats = orch.store.list_access_stats()
    if stats:
        console.print("")
        console.print("[bold]Access (routed endpoints):[/bold]")
        for a in stats:
            console.print(f"  {a.hits:>6}  {a.endpoint_key}  last={_ts(a.last_access)}")


@app.command()
def history(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Endpoint path"),
    limit: int = typer.Option(10, help="How many records to show"),
) -> None:
    orch = _orchestrator(ctx.obj)
    for rec in orch.attempt_history(path)[:limit]:
        mark = "[green]ok[/green]" if rec.success else "[red]failed[/red]"
        console.print(f"{_ts(rec.timestamp)}  {mark}  {rec.strategy_id or '-'}")
        for a in rec.attempts:
            if a.error:
                rolled = f" (rolled back: {', '.join(a.rolled_back)})" if a.rolled_back else ""
                console.print(f"    {a.strategy_id}: {a.error}{rolled}")


@app.command()
def probe(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Endpoint path to probe (a sibling temp path is used)"),
    format: str = typer.Option("table", help="Output format: table|json"),
) -> None:
    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    report = orch.prober.probe(path)
    rec = determine_recommended_strategy(report, settings.prefer_analytics)

    if format.lower() == "json":
        payload = {"report": report.model_dump(), "recommended": rec.approach, "errors": rec.errors}
        console.print(json.dumps(payload, indent=2))
        return

    for k, v in report_summary(report).items():
        console.print(f"  {k:<34} {v}")
    for e in report.direct_file_errors:
        console.print(f"  [dim]direct file:[/dim] {e}")
    for e in report.application_routing_errors:
        console.print(f"  [dim]routing:[/dim] {e}")
    console.print("")
    if rec.can_proceed:
        console.print(f"Recommended: [bold]{rec.approach}[/bold]")
    else:
        console.print("[bold red]Cannot proceed:[/bold red] no serving mode works")
    for w in rec.warnings:
        console.print(f"  [yellow]{w}[/yellow]")


@app.command()
def deactivate(ctx: typer.Context, path: str = typer.Argument(..., help="Endpoint path")) -> None:
    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    orch.load_routes([_pick(settings, path)])
    try:
        result = orch.deactivate(path)
    except UnknownEndpointError:
        raise typer.BadParameter(f"{path} is not registered") from None
    for r in result.removed:
        console.print(f"[green]-[/green] {r}")
    for e in result.errors:
        console.print(f"[red]{e}[/red]")
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def reevaluate(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Endpoint path"),
    force: bool = typer.Option(False, help="Re-probe even if the endpoint answers"),
) -> None:
    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    orch.load_routes(_descriptors(settings).values())
    result = orch.reevaluate(path, force=force)
    label = "unchanged" if result.noop else result.state.value
    console.print(f"{path}: {label} ({result.strategy_id or '-'})")
    for w in result.warnings:
        console.print(f"  [yellow]{w}[/yellow]")


@app.command()
def refresh(
    ctx: typer.Context,
    path: Optional[str] = typer.Argument(None, help="Only this endpoint (default: all)"),
) -> None:
    orch = _orchestrator(ctx.obj)
    n = orch.refresh_capabilities(path)
    console.print(f"Cleared {n} cached capability report(s). Next register will re-probe.")


@app.command()
def suggestions(ctx: typer.Context) -> None:
    orch = _orchestrator(ctx.obj)
    rows = orch.store.list_suggestions()
    if not rows:
        console.print("No manual configuration suggestions.")
        return
    for s in rows:
        console.print(f"[bold]{s.endpoint_key}[/bold] ({s.server_family}, {_ts(s.created_at)})")
        console.print(s.snippet, markup=False, highlight=False)


@conflicts_app.command("list")
def conflicts_list(
    ctx: typer.Context,
    include_resolved: bool = typer.Option(False, "--all", help="Include resolved conflicts"),
) -> None:
    orch = _orchestrator(ctx.obj)
    rows = orch.store.list_conflicts(None if include_resolved else "pending")

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", no_wrap=True)
    table.add_column("PATH")
    table.add_column("STATUS", no_wrap=True)
    table.add_column("DETECTED", no_wrap=True)
    for c in rows:
        status = c.status if c.resolution is None else f"{c.status} ({c.resolution})"
        table.add_row(str(c.id), c.path, status, _ts(c.detected_at))
    console.print(table)


@conflicts_app.command("show")
def conflicts_show(ctx: typer.Context, conflict_id: int = typer.Argument(...)) -> None:
    orch = _orchestrator(ctx.obj)
    c = orch.store.get_conflict(conflict_id)
    if c is None:
        raise typer.BadParameter(f"Unknown conflict: {conflict_id}")
    console.print(f"[bold]{c.path}[/bold] ({c.status})")
    console.print("[bold]--- on disk[/bold]")
    console.print(c.existing_content, markup=False, highlight=False)
    console.print("[bold]--- proposed[/bold]")
    console.print(c.proposed_content, markup=False, highlight=False)


@conflicts_app.command("resolve")
def conflicts_resolve(
    ctx: typer.Context,
    conflict_id: int = typer.Argument(...),
    accept: bool = typer.Option(False, "--accept/--reject", help="Apply the proposed content (backs up first)"),
) -> None:
    orch = _orchestrator(ctx.obj)
    res = orch.files.resolve_conflict(conflict_id, accept)
    for m in res.messages:
        console.print(m)
    for e in res.errors:
        console.print(f"[red]{e}[/red]")
    if not res.success:
        raise typer.Exit(code=1)


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    path: Optional[Path] = typer.Argument(None, help="Only backups of this file"),
) -> None:
    orch = _orchestrator(ctx.obj)
    for b in orch.files.list_backups(path.expanduser().resolve() if path else None):
        console.print(f"{_ts(b.created_at)}  {b.original_path}  <-  {b.backup_path}")


@backups_app.command("restore")
def backups_restore(ctx: typer.Context, backup: Path = typer.Argument(..., help="Backup file path")) -> None:
    orch = _orchestrator(ctx.obj)
    res = orch.files.restore_backup(backup.expanduser().resolve())
    for m in res.messages:
        console.print(m)
    for e in res.errors:
        console.print(f"[red]{e}[/red]")
    if not res.success:
        raise typer.Exit(code=1)


@app.command()
def ping(ctx: typer.Context) -> None:
    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    resp = orch.prober.http.get("/")
    if resp.error:
        console.print(f"[red]{resp.url}: {resp.error}[/red]")
        raise typer.Exit(code=1)
    server = resp.headers.get("server", "-")
    console.print(f"{resp.url}: HTTP {resp.status_code} in {resp.elapsed_ms}ms (server: {server})")


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
) -> None:
    import uvicorn

    from beacon.web.app import create_app

    settings: BeaconSettings = ctx.obj
    orch = _orchestrator(settings)
    api = create_app(orch, _descriptors(settings).values())
    uvicorn.run(api, host=host, port=port, log_config=None)


def main() -> None:
    app()
