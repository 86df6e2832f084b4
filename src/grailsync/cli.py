"""CLI interface for grailsync."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from grailsync.app import LAST_SYNC_KEY, LAST_USERNAME_KEY, GrailApp, NotSignedInError, open_app
from grailsync.config import AppConfig, ensure_dirs, get_base_dir, load_config, save_config
from grailsync.logging import APP_LOG, SYNC_LOG, setup_logging
from grailsync.storage.kv import KeyValueStore
from grailsync.sync.discogs import DiscogsError
from grailsync.sync.market import STORAGE_KEY as MARKET_STORAGE_KEY
from grailsync.sync.market import normalize_condition, price_for_condition

if TYPE_CHECKING:
    from grailsync.models import SyncCredential, SyncResult
    from grailsync.sync.discogs import DiscogsClient

app = typer.Typer(
    name="grailsync",
    help="Sync a Discogs vinyl collection, want list and market prices into a local library.",
    add_completion=False,
)
console = Console()

# Overridden in tests to route Discogs requests through a mock transport.
CLIENT_FACTORY: Callable[[SyncCredential], DiscogsClient] | None = None


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _bootstrap() -> AppConfig:
    ensure_dirs()
    cfg = load_config()
    setup_logging(cfg.app.log_level, cfg.log_dir)
    return cfg


def _print_progress(message: str) -> None:
    if message:
        console.print(f"[dim]{message}[/dim]")


def _open(cfg: AppConfig):
    return open_app(cfg, client_factory=CLIENT_FACTORY, on_progress=_print_progress)


def _print_result(result: SyncResult | None, grail: GrailApp) -> None:
    if result is None:
        error = grail.state.sync_error or "nothing to sync"
        console.print(f"[red]Sync failed:[/red] {error}")
        raise typer.Exit(1)
    console.print(
        f"[green]Synced[/green] [bold]{grail.state.username}[/bold]: "
        f"{result.album_count} records, {result.folder_count} folders, {result.want_count} wants"
    )
    value = grail.state.collection_value
    if value is not None:
        console.print(
            f"  value: {value.minimum:.2f} / {value.median:.2f} / {value.maximum:.2f} {value.currency}"
            " [dim](min / median / max)[/dim]"
        )


def _human_time(iso_str: str | None) -> str:
    """Convert an ISO timestamp to a relative time string."""
    if not iso_str:
        return "—"
    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return iso_str
    diff = (datetime.now(UTC) - dt).total_seconds()
    if diff < 60:
        return f"{int(diff)}s ago"
    if diff < 3600:
        return f"{int(diff / 60)} min ago"
    if diff < 86400:
        return f"{int(diff / 3600)}h {int((diff % 3600) / 60)}m ago"
    return f"{int(diff / 86400)}d ago"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(token: str = typer.Argument(help="Discogs personal access token")) -> None:
    """Sign in with a personal access token, save it, and run a first sync."""
    cfg = _bootstrap()

    async def _run() -> None:
        async with _open(cfg) as grail:
            try:
                result = await grail.login_with_token(token)
            except (DiscogsError, NotSignedInError) as exc:
                console.print(f"[red]Login failed:[/red] {exc}")
                raise typer.Exit(1) from exc
            cfg.discogs.token = SecretStr(token)
            save_config(cfg)
            _print_result(result, grail)

    asyncio.run(_run())


@app.command()
def sync() -> None:
    """Restore the last session and sync it with Discogs."""
    cfg = _bootstrap()
    kv = KeyValueStore(cfg.storage_path)
    username = kv.get(LAST_USERNAME_KEY)

    async def _run() -> None:
        async with _open(cfg) as grail:
            result = await grail.restore_session(username)
            if result is None and grail.state.username is None and grail.state.sync_error is None:
                console.print("[yellow]Not signed in.[/yellow]  Run [bold]grailsync login <token>[/bold] first.")
                raise typer.Exit(1)
            _print_result(result, grail)

    asyncio.run(_run())


@app.command(name="dev-sync")
def dev_sync(token: str = typer.Argument(help="Discogs personal access token")) -> None:
    """Wipe all local data and sync a personal token from scratch."""
    cfg = _bootstrap()

    async def _run() -> None:
        async with _open(cfg) as grail:
            result = await grail.dev_sync(token)
            _print_result(result, grail)

    asyncio.run(_run())


@app.command()
def status() -> None:
    """Show the signed-in account and the last sync."""
    cfg = load_config()
    kv = KeyValueStore(cfg.storage_path)
    username = kv.get(LAST_USERNAME_KEY)
    last = kv.get(LAST_SYNC_KEY)

    console.print()
    if username:
        console.print(f"  [bold]Account:[/bold]  {username}")
    else:
        console.print("  [bold]Account:[/bold]  [dim](not signed in)[/dim]")
    token_state = "set" if cfg.has_manual_token() else "not set"
    console.print(f"  [bold]Token:[/bold]    {token_state}")

    if last:
        console.print("\n  [bold cyan]Last sync[/bold cyan]")
        console.print(f"    when:     {_human_time(last.get('at'))}")
        console.print(f"    records:  {last.get('album_count', 0)}")
        console.print(f"    folders:  {last.get('folder_count', 0)}")
        console.print(f"    wants:    {last.get('want_count', 0)}")
    else:
        console.print("\n  [dim]Never synced.[/dim]")

    cached = kv.get(MARKET_STORAGE_KEY) or {}
    console.print(f"\n  [bold]Cached prices:[/bold] {len(cached)}")
    console.print()


@app.command()
def price(
    release_id: int = typer.Argument(help="Discogs release id"),
    refresh: bool = typer.Option(False, "--refresh", help="Ignore the cache and look the price up again"),
    condition: str = typer.Option("", "--condition", "-c", help="Highlight the price for this condition"),
) -> None:
    """Show suggested prices per condition grade for a release."""
    cfg = _bootstrap()
    kv = KeyValueStore(cfg.storage_path)
    username = kv.get(LAST_USERNAME_KEY)

    async def _run() -> None:
        async with _open(cfg) as grail:
            restored = username is not None and await grail.resolver.restore(grail.db, username)
            if not restored and cfg.has_manual_token():
                grail.resolver.use_manual_token(cfg.discogs.token.get_secret_value())
            try:
                entry = await grail.price(release_id, force_refresh=refresh)
            except NotSignedInError as exc:
                console.print("[yellow]Not signed in.[/yellow]  Run [bold]grailsync login <token>[/bold] first.")
                raise typer.Exit(1) from exc

        grade = normalize_condition(condition) if condition else None
        if condition and grade is None:
            console.print(f"[yellow]Unrecognised condition:[/yellow] {condition}")

        table = Table(title=f"Release {release_id}")
        table.add_column("Condition")
        table.add_column("Suggested", justify="right")
        for p in entry.prices:
            style = "bold green" if p.condition == grade else None
            table.add_row(p.condition, f"{p.value:.2f} {p.currency}", style=style)
        console.print(table)

        stats = entry.stats
        lowest = f"{stats.lowest_price:.2f} {stats.currency}" if stats.lowest_price is not None else "—"
        console.print(f"  for sale: {stats.num_for_sale}   lowest: {lowest}")
        match = price_for_condition(entry, condition) if condition else None
        if match is not None:
            console.print(f"  [green]{match.condition}:[/green] {match.value:.2f} {match.currency}")

    asyncio.run(_run())


@app.command()
def wipe(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete stored annotations, cached prices and the saved session."""
    if not yes:
        typer.confirm("This deletes all grailsync data for the signed-in account. Continue?", abort=True)
    cfg = _bootstrap()
    kv = KeyValueStore(cfg.storage_path)
    username = kv.get(LAST_USERNAME_KEY)

    async def _run() -> None:
        async with _open(cfg) as grail:
            grail.state.username = username
            await grail.wipe()

    asyncio.run(_run())
    console.print("[green]Local data wiped.[/green]")


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    sync: bool = typer.Option(False, "--sync", help="Show sync.log (JSON) instead of app.log"),
) -> None:
    """Show recent log output (--sync for the JSON sync log)."""
    filename = SYNC_LOG if sync else APP_LOG
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style string based on the log level found in *line*.

    Matches structlog formats only:
    - ConsoleRenderer: ``[error    ]``
    - JSONRenderer: ``"level": "error"``
    """
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(secret: SecretStr) -> str:
    """Return '***' if the secret is non-empty, else '(not set)'."""
    return "[bold]***[/bold]" if secret.get_secret_value() else "[dim](not set)[/dim]"


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")

    console.print("[bold cyan]\\[app][/bold cyan]")
    console.print(f"  log_level = {cfg.app.log_level}")

    console.print("\n[bold cyan]\\[discogs][/bold cyan]")
    console.print(f"  consumer_key    = {cfg.discogs.consumer_key or '[dim](not set)[/dim]'}")
    console.print(f"  consumer_secret = {_mask(cfg.discogs.consumer_secret)}")
    console.print(f"  token           = {_mask(cfg.discogs.token)}")
    console.print(f"  user_agent      = {cfg.discogs.user_agent}")

    console.print("\n[bold cyan]\\[sync][/bold cyan]")
    console.print(f"  page_size                 = {cfg.sync.page_size}")
    console.print(f"  page_delay_seconds        = {cfg.sync.page_delay_seconds}")
    console.print(f"  price_batch_delay_seconds = {cfg.sync.price_batch_delay_seconds}")

    console.print("\n[bold cyan]\\[cache][/bold cyan]")
    console.print(f"  market_ttl_days = {cfg.cache.market_ttl_days}")
    console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. sync.page_size"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. grailsync config set cache.market_ttl_days 7)."""
    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. sync.page_size).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    section_map = {
        "app": cfg.app,
        "discogs": cfg.discogs,
        "sync": cfg.sync,
        "cache": cfg.cache,
    }

    if section_name not in section_map:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(section_map)}[/dim]")
        raise typer.Exit(1)

    section_model = section_map[section_name]
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    section_data = section_model.model_dump(mode="python")
    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
        section_data[field_name] = coerced
        updated = type(section_model)(**section_data)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    setattr(cfg, section_name, updated)
    save_config(cfg)

    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: type | None) -> object:
    """Coerce a string value to the expected field type."""
    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    if field_type is float:
        return float(raw)

    return raw
