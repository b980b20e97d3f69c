"""
CLI interface for tokentop.

Read-only views over the usage store, pricing lookups, and a one-shot
refresh that aggregates session rows and polls providers.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from tokentop.config.loader import DEFAULT_CONFIG_PATH, AppConfig, load_app_config
from tokentop.core.clock import now_ms
from tokentop.core.dashboard import Dashboard
from tokentop.core.pricing import (
    PricingResolver,
    estimate_cost,
    format_cost,
    format_token_count,
)
from tokentop.core.token_counter import TokenCounts
from tokentop.providers import builtin_providers
from tokentop.storage.repository import UsageStore

app = typer.Typer(help="Token usage and spend across AI providers and agent sessions.")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_HOUR_MS = 3_600_000


class _State:
    def __init__(self) -> None:
        self.config: AppConfig = AppConfig()
        self.db_path: Optional[str] = None

    def open_store(self) -> UsageStore:
        return UsageStore(self.db_path or self.config.storage.db_path).initialize()

    def resolver(self, offline: bool = False) -> PricingResolver:
        return PricingResolver.from_config(self.config.pricing, offline=offline)


_state = _State()


def _window(hours: float) -> tuple:
    end = now_ms()
    return end - int(hours * _HOUR_MS), end


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to the usage database"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """tokentop CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        _state.config = load_app_config(config, missing_ok=True)
    except (ValueError, yaml.YAMLError) as e:
        _fail(f"invalid config {config}: {e}")
    _state.db_path = db

    if ctx.invoked_subcommand is None:
        console.print("tokentop - Use --help to see available commands")


@app.command()
def init():
    """Create the usage database and its schema."""
    try:
        with _state.open_store() as store:
            console.print(f"[green]✓[/] Database initialized at {store.db_path}")
    except Exception as e:
        _fail(f"initializing database: {e}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(hours: float = typer.Option(24, "--hours", "-H", help="Trailing window in hours")):
    """Total usage over the trailing window."""
    start, end = _window(hours)
    with _state.open_store() as store:
        result = store.get_usage_summary(start, end)

    if result.request_count == 0:
        console.print(f"[yellow]No usage data found[/] in the last {hours:g}h")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage, last {hours:g}h")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Input tokens", format_token_count(result.total_input_tokens))
    table.add_row("Output tokens", format_token_count(result.total_output_tokens))
    table.add_row("Cache read", format_token_count(result.total_cache_read))
    table.add_row("Cache write", format_token_count(result.total_cache_write))
    table.add_row("Total tokens", format_token_count(result.total_tokens))
    table.add_row("Requests", str(result.request_count))
    table.add_row("Cost", format_cost(result.total_cost_usd))
    console.print(table)


def _print_grouped(by: str, hours: float) -> None:
    start, end = _window(hours)
    with _state.open_store() as store:
        rows = Dashboard(store, config=_state.config).grouped_summary(start, end, by=by)

    if not rows:
        console.print("[yellow]No usage data found[/]")
        return

    table = Table(title=f"Usage by {by}, last {hours:g}h")
    table.add_column("Provider")
    if by == "model":
        table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Cost", justify="right")
    for row in rows:
        cells = [row.provider]
        if by == "model":
            cells.append(row.model or "")
        cells += [
            format_token_count(row.total_input_tokens),
            format_token_count(row.total_output_tokens),
            str(row.request_count),
            format_cost(row.total_cost_usd),
        ]
        table.add_row(*cells)
    console.print(table)


@app.command("by-provider")
def by_provider(hours: float = typer.Option(24, "--hours", "-H")):
    """Usage grouped by provider."""
    _print_grouped("provider", hours)


@app.command("by-model")
def by_model(hours: float = typer.Option(24, "--hours", "-H")):
    """Usage grouped by provider and model."""
    _print_grouped("model", hours)


@app.command()
def series(
    hours: float = typer.Option(24, "--hours", "-H"),
    bucket_minutes: Optional[float] = typer.Option(None, "--bucket", "-b", help="Bucket width in minutes"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    agent: Optional[str] = typer.Option(None, "--agent", "-a"),
):
    """Token and cost totals per fixed-width time bucket."""
    start, end = _window(hours)
    width = bucket_minutes or _state.config.storage.bucket_minutes
    try:
        with _state.open_store() as store:
            points = store.get_usage_time_series(start, end, width, provider, model, agent)
    except ValueError as e:
        _fail(str(e))

    if not points:
        console.print("[yellow]No usage data found[/]")
        return

    table = Table(title=f"Usage per {width:g} min")
    table.add_column("Bucket start (UTC ms)")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Cost", justify="right")
    for point in points:
        table.add_row(
            str(point.bucket_start),
            format_token_count(point.total_tokens),
            str(point.request_count),
            format_cost(point.cost_usd),
        )
    console.print(table)


@app.command("burn-rate")
def burn_rate(
    minutes: float = typer.Option(60, "--minutes", "-M", help="Trailing window in minutes"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
):
    """Tokens per minute and cost per hour over the trailing window."""
    if minutes <= 0:
        _fail("--minutes must be > 0")
    with _state.open_store() as store:
        rate = store.calculate_burn_rate(int(minutes * 60_000), now_ms(), provider)

    console.print(
        f"Last {minutes:g} min: {format_token_count(rate.total_tokens)} tokens, "
        f"{rate.request_count} requests, {format_cost(rate.total_cost_usd)}"
    )
    console.print(f"Burn rate: {rate.tokens_per_minute:,.1f} tokens/min, {format_cost(rate.cost_per_hour)}/h")


@app.command()
def sessions(limit: int = typer.Option(20, "--limit", "-n")):
    """Recently seen agent sessions."""
    with _state.open_store() as store:
        records = store.get_recent_sessions(limit)

    if not records:
        console.print("[yellow]No sessions recorded[/]")
        return

    table = Table(title="Agent sessions")
    table.add_column("Agent")
    table.add_column("Session")
    table.add_column("Project")
    table.add_column("Last seen (ms)", justify="right")
    for record in records:
        table.add_row(record.agent_id, record.session_id, record.project_path or "", str(record.last_seen_at))
    console.print(table)


@app.command()
def snapshots(
    provider: str = typer.Argument(..., help="Provider id, e.g. openai-api"),
    limit: int = typer.Option(10, "--limit", "-n"),
):
    """Latest stored provider snapshots."""
    with _state.open_store() as store:
        rows = store.get_provider_snapshots(provider, limit=limit)

    if not rows:
        console.print(f"[yellow]No snapshots for {provider}[/]")
        return

    table = Table(title=f"{provider} snapshots")
    table.add_column("Timestamp (ms)")
    table.add_column("Used %", justify="right")
    table.add_column("Limit reached")
    table.add_column("Cost", justify="right")
    for snap in rows:
        table.add_row(
            str(snap.timestamp),
            f"{snap.used_percent:.1f}" if snap.used_percent is not None else "-",
            "-" if snap.limit_reached is None else ("yes" if snap.limit_reached else "no"),
            format_cost(snap.cost_usd) if snap.cost_usd is not None else "-",
        )
    console.print(table)


@app.command()
def price(
    provider: str = typer.Argument(..., help="Provider id, e.g. anthropic"),
    model: str = typer.Argument(..., help="Model id"),
    input_tokens: int = typer.Option(0, "--input", "-i", min=0),
    output_tokens: int = typer.Option(0, "--output", "-o", min=0),
    cache_read: int = typer.Option(0, "--cache-read", min=0),
    cache_write: int = typer.Option(0, "--cache-write", min=0),
    offline: bool = typer.Option(False, "--offline", help="Skip models.dev and use the built-in table"),
):
    """Resolve a model's pricing and price a token count."""
    entry = _state.resolver(offline).resolve(provider, model)
    if entry is None:
        _fail(f"no pricing known for {provider}/{model}")

    tokens = TokenCounts(
        input=input_tokens,
        output=output_tokens,
        cache_read=cache_read or None,
        cache_write=cache_write or None,
    )
    cost = estimate_cost(tokens, entry)

    console.print(f"[bold]{provider}/{model}[/] (source: {entry.source.value})")
    console.print(
        f"Rates per 1M tokens: input ${entry.input}, output ${entry.output}, "
        f"cache read {_rate(entry.cache_read)}, cache write {_rate(entry.cache_write)}"
    )
    if tokens.total_tokens:
        console.print(f"Cost of {format_token_count(tokens.total_tokens)} tokens: {format_cost(cost.total)}")
    sys.exit(EXIT_CODE_PASS)


def _rate(value: Optional[float]) -> str:
    return f"${value}" if value is not None else "-"


def _read_rows(path: Path) -> List[Any]:
    text = path.read_text(encoding="utf-8")
    stripped = text.lstrip()
    if stripped.startswith("["):
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError("rows file must hold a JSON list")
        return data
    return [json.loads(line) for line in text.splitlines() if line.strip()]


@app.command()
def refresh(
    rows: Optional[Path] = typer.Option(None, "--rows", "-r", help="JSON or JSON-lines file of usage rows"),
    poll: bool = typer.Option(False, "--poll/--no-poll", help="Also poll the built-in providers"),
    offline: bool = typer.Option(False, "--offline", help="Price sessions from the built-in table only"),
):
    """Run one refresh cycle and show the resulting sessions."""
    source = None
    if rows is not None:
        try:
            data = _read_rows(rows)
        except (OSError, ValueError) as e:
            _fail(f"reading {rows}: {e}")
        source = lambda: data  # noqa: E731

    config = _state.config
    providers = builtin_providers({pid: cfg.enabled for pid, cfg in config.providers.items()}) if poll else []

    with _state.open_store() as store:
        dashboard = Dashboard(store, source, providers, config=config, resolver=_state.resolver(offline))
        if poll:
            aggregates = asyncio.run(dashboard.refresh())
        else:
            aggregates = dashboard.refresh_sessions()
        results = dashboard.provider_results()

    if aggregates:
        table = Table(title="Sessions")
        table.add_column("Agent")
        table.add_column("Session")
        table.add_column("Status")
        table.add_column("Tokens", justify="right")
        table.add_column("Requests", justify="right")
        table.add_column("Cost", justify="right")
        for agg in aggregates:
            table.add_row(
                agg.agent_id,
                agg.session_id,
                agg.status.value,
                format_token_count(agg.totals.total_tokens),
                str(agg.request_count),
                format_cost(agg.total_cost_usd) if agg.total_cost_usd is not None else "-",
            )
        console.print(table)
    else:
        console.print("[yellow]No sessions[/]")

    for provider_id, result in results.items():
        if result.error:
            console.print(f"[red]✗[/] {provider_id}: {result.error}")
        else:
            cost = result.usage.cost_usd if result.usage else None
            console.print(f"[green]✓[/] {provider_id}" + (f": {format_cost(cost)} in the last 24h" if cost is not None else ""))


if __name__ == "__main__":
    app()
