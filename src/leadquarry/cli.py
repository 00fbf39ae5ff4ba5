"""Command-line interface for leadquarry."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from leadquarry import __version__
from leadquarry.config.config import Config, validate_config
from leadquarry.container import DependencyContainer
from leadquarry.emails.feedback import FEEDBACK_IMPACTS
from leadquarry.exceptions import AppError, ValidationError, to_friendly_error
from leadquarry.orchestrator.events import EventType
from leadquarry.protocols import RunResult, SearchRequest
from leadquarry.sources.catalog import CATEGORIES, estimate_scrape_time, get_category_description
from leadquarry.storage.schema import BOUNCE_TYPES

console = Console()
logger = structlog.get_logger(__name__)


def _container(ctx: click.Context) -> DependencyContainer:
    config = ctx.obj.get("config")
    return DependencyContainer(ctx.obj["config_path"], config=config)


def _print_error(error: BaseException) -> None:
    friendly = to_friendly_error(error)
    body = friendly.message
    if friendly.suggestions:
        body += "\n\n" + "\n".join(f"• {s}" for s in friendly.suggestions)
    console.print(Panel(body, title=friendly.title, border_style="red"))


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """leadquarry - multi-source business contact discovery."""
    ctx.ensure_object(dict)
    config_path = Path(config) if config else None
    ctx.obj["config_path"] = config_path
    ctx.obj["config"] = None
    if log_level:
        loaded = Config.from_yaml(config_path) if config_path else Config()
        loaded.monitoring.log_level = log_level
        ctx.obj["config"] = loaded


def _results_table(result: RunResult) -> Table:
    table = Table(title=f"{len(result.records)} businesses ({get_category_description(result.category)})")
    table.add_column("Name", style="bold")
    table.add_column("Email", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Phone")
    table.add_column("Website", overflow="fold")
    table.add_column("Sources", style="dim")
    for record in result.records:
        confidence = ""
        if record.score is not None:
            confidence = f"{record.score.overall} ({record.score.confidence_level.value})"
        table.add_row(
            record.name,
            record.email or "",
            confidence,
            record.phone or "",
            record.website or "",
            ", ".join(record.sources),
        )
    return table


def _sources_table(result: RunResult) -> Table:
    table = Table(title="Sources")
    table.add_column("Source", style="cyan")
    table.add_column("Attempts", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right")
    table.add_column("Results", justify="right")
    table.add_column("Avg latency", justify="right")
    for source, stats in result.source_stats.items():
        table.add_row(
            source,
            str(stats.attempts),
            str(stats.successes),
            str(stats.failures),
            str(stats.skipped),
            str(stats.results),
            f"{stats.avg_latency:.2f}s",
        )
    return table


async def _run_search(container: DependencyContainer, request: SearchRequest, as_json: bool) -> RunResult:
    orchestrator = await container.get_orchestrator()
    category, sources = orchestrator.plan(request)
    handle = orchestrator.start(request)

    if as_json:
        return await handle.result()

    estimate = estimate_scrape_time(sources, request.count)
    console.print(
        Panel.fit(
            f"[bold blue]{request.query}[/bold blue]"
            + (f" in {request.location}" if request.location else "")
            + f"\nCategory: {get_category_description(category)}"
            + f"\nSources: {len(sources)}  (estimated ~{estimate}s)",
            title="Starting search",
        )
    )

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total} sources"),
        TimeElapsedColumn(),
        console=console,
    )
    with progress:
        task = progress.add_task("Searching", total=len(sources))
        async for event in handle.events:
            if event.type in (EventType.SOURCE_COMPLETED, EventType.SOURCE_FAILED, EventType.SOURCE_SKIPPED):
                progress.advance(task)
            if event.type is EventType.SOURCE_STARTED:
                progress.update(task, description=f"Searching {event.data['source']}")
            elif event.type is EventType.SOURCE_FAILED:
                progress.console.print(f"[yellow]{event.data['source']} failed: {event.data['error']}[/yellow]")
    return await handle.result()


@cli.command()
@click.argument("query")
@click.option("--location", "-l", default=None, help="City, state or ZIP to search around")
@click.option("--count", "-n", default=25, show_default=True, help="Number of businesses to return")
@click.option("--industry", type=click.Choice(CATEGORIES), default=None, help="Force a category")
@click.option("--state", default=None, help="Only keep businesses whose address is in this state")
@click.option("--size-min", type=int, default=None, help="Minimum estimated employee count")
@click.option("--size-max", type=int, default=None, help="Maximum estimated employee count")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    location: Optional[str],
    count: int,
    industry: Optional[str],
    state: Optional[str],
    size_min: Optional[int],
    size_max: Optional[int],
    as_json: bool,
) -> None:
    """Discover businesses matching QUERY."""
    try:
        request = SearchRequest(
            query=query,
            location=location,
            count=count,
            industry=industry,
            state=state,
            company_size_min=size_min,
            company_size_max=size_max,
        )
    except ValidationError as e:
        _print_error(e)
        sys.exit(2)

    async def _search() -> RunResult:
        async with _container(ctx).lifecycle() as container:
            return await _run_search(container, request, as_json)

    result = asyncio.run(_search())

    if as_json:
        payload: Dict[str, Any] = {
            "run_id": request.run_id,
            "category": result.category,
            "status": result.status.value,
            "records": [r.to_dict() for r in result.records],
            "sources": {s: stats.to_dict() for s, stats in result.source_stats.items()},
            "errors": result.errors,
        }
        click.echo(json.dumps(payload, indent=2))
        return

    console.print(_results_table(result))
    console.print(_sources_table(result))
    style = "green" if result.status.value == "completed" else "yellow"
    console.print(f"[{style}]Run {result.status.value} in {result.duration_seconds:.1f}s[/{style}]")


@cli.command()
@click.pass_context
def quota(ctx: click.Context) -> None:
    """Show API key usage for today."""

    async def _quota() -> Dict[str, Dict[str, Any]]:
        async with _container(ctx).lifecycle() as container:
            pool = await container.get_key_pool()
            for provider in pool.providers():
                await pool.hydrate(provider)
            return pool.get_quota_stats()

    stats = asyncio.run(_quota())
    if not stats:
        console.print("[yellow]No API keys configured[/yellow]")
        return

    table = Table(title="API quota")
    table.add_column("Provider", style="cyan")
    table.add_column("Keys", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right", style="green")
    for provider, data in stats.items():
        table.add_row(provider, str(data["key_count"]), str(data["used"]), str(data["limit"]), str(data["remaining"]))
    console.print(table)


@cli.command()
@click.argument("business_id")
@click.argument("feedback_type", type=click.Choice(sorted(FEEDBACK_IMPACTS)))
@click.option("--field", default=None, help="Field the feedback is about")
@click.option("--original", default=None, help="Value that was shown")
@click.option("--corrected", default=None, help="Correct value, if known")
@click.pass_context
def feedback(
    ctx: click.Context,
    business_id: str,
    feedback_type: str,
    field: Optional[str],
    original: Optional[str],
    corrected: Optional[str],
) -> None:
    """Record user feedback about a business."""

    async def _feedback() -> int:
        async with _container(ctx).lifecycle() as container:
            service = await container.get_feedback()
            await service.record_feedback(
                business_id, feedback_type, field=field, original_value=original, corrected_value=corrected
            )
            return await service.get_verification_score(business_id)

    try:
        score = asyncio.run(_feedback())
    except AppError as e:
        _print_error(e)
        sys.exit(1)
    console.print(f"[green]Recorded {feedback_type}[/green] - verification score is now {score}")


@cli.command()
@click.argument("email")
@click.option("--type", "bounce_type", type=click.Choice(BOUNCE_TYPES), default="hard", show_default=True)
@click.option("--reason", default=None, help="Bounce reason from the mail server")
@click.option("--business-id", default=None, help="Business the address belongs to")
@click.pass_context
def bounce(
    ctx: click.Context,
    email: str,
    bounce_type: str,
    reason: Optional[str],
    business_id: Optional[str],
) -> None:
    """Record an email bounce."""

    async def _bounce() -> None:
        async with _container(ctx).lifecycle() as container:
            service = await container.get_feedback()
            await service.record_bounce(email, bounce_type, reason=reason, business_id=business_id)

    try:
        asyncio.run(_bounce())
    except (AppError, ValueError) as e:
        _print_error(e)
        sys.exit(1)
    console.print(f"[green]Recorded {bounce_type} bounce for {email}[/green]")


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate configuration and list warnings."""
    config_path: Optional[Path] = ctx.obj["config_path"]
    config = ctx.obj.get("config") or (Config.from_yaml(config_path) if config_path else Config())
    warnings = validate_config(config)

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Config file", str(config_path) if config_path else "defaults")
    table.add_row("Stealth", "on" if config.stealth.enabled else "off")
    table.add_row("Rate limit", f"{config.rate_limit.per_domain} rpm, {config.rate_limit.min_delay_ms} ms min delay")
    table.add_row("Proxy", config.proxy.provider if config.proxy.enabled else "off")
    table.add_row("API fallback", "on" if config.api_fallback.enabled else "off")
    table.add_row("Shared state", config.shared_state.redis_url if config.shared_state.enabled else "off")
    table.add_row("Database", str(config.storage.db_path))
    console.print(table)

    if warnings:
        console.print(Panel("\n".join(f"• {w}" for w in warnings), title="Warnings", border_style="yellow"))
        sys.exit(1)
    console.print("[green]Configuration OK[/green]")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
