"""
CLI interface for Token Meter.

Operator access to ingestion, analytics and storage management.
"""

import logging
import sys
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from token_meter.config.loader import CONFIG_ENV_VAR, MeterConfig, resolve_config
from token_meter.core.metrics import Dimension, Interval, Metric, ProjectionMethod, ProjectionPeriod
from token_meter.core.timeutil import format_utc, utc_now
from token_meter.core.upload import parse_jsonl
from token_meter.storage.base import UsageStorage
from token_meter.storage.factory import create_storage
from token_meter.storage.models import (
    CostBreakdownRequest,
    DimensionBreakdown,
    ExportRequest,
    OrderBy,
    ProjectionRequest,
    TopUsageRequest,
    TrendRequest,
    UsageQuery,
    UsageSummaryRequest,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_WINDOW_DAYS = 30


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar=CONFIG_ENV_VAR,
        help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Token Meter CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("Token Meter - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> MeterConfig:
    return resolve_config((ctx.obj or {}).get("config_path"))


def _open_storage(ctx: typer.Context) -> UsageStorage:
    return create_storage(_load_config(ctx).storage.to_mapping())


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {escape(str(error))}")
    sys.exit(EXIT_CODE_FAIL)


def _time_range(start: Optional[str], end: Optional[str]) -> Tuple[str, str]:
    """Default to the last 30 days ending now."""
    now = utc_now()
    return (
        start or format_utc(now - timedelta(days=DEFAULT_WINDOW_DAYS)),
        end or format_utc(now),
    )


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _format_percent(value: float) -> str:
    return f"{value:,.1f}%"


def _parse_order_by(values: List[str]) -> List[OrderBy]:
    """Parse ``field`` or ``field:desc`` sort keys."""
    order_by = []
    for value in values:
        name, _, direction = value.partition(":")
        if direction and direction.lower() not in ("asc", "desc"):
            raise ValueError(f"Sort direction must be 'asc' or 'desc', got '{direction}'")
        order_by.append(OrderBy(field=name, desc=direction.lower() == "desc"))
    return order_by


def _choices(vocabulary: Type[Enum]) -> str:
    return ", ".join(member.value for member in vocabulary)


def _vocabulary_callback(vocabulary: Type[Enum]):
    """Option callback rejecting values outside ``vocabulary``."""
    allowed = {member.value for member in vocabulary}

    def check(value):
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item is not None and item not in allowed:
                raise typer.BadParameter(f"'{item}' is not one of: {_choices(vocabulary)}")
        return value

    return check


@app.command()
def init(ctx: typer.Context):
    """Initialize the configured usage store."""
    try:
        storage = _open_storage(ctx)
        health = storage.health_check()
        storage.close()
    except Exception as e:
        console.print(f"[red]Error initializing storage:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Storage initialized successfully ({health.message})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ingest(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="JSONL file with one usage record per line"),
    client_id: str = typer.Option(..., "--client-id", help="Client the records belong to")
):
    """Ingest a JSONL file of usage records for one client."""
    try:
        records = parse_jsonl(file.read_bytes())
        storage = _open_storage(ctx)
        try:
            result = storage.store_usage_records(client_id, records)
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    table = Table(title=f"Ingestion for {client_id}")
    table.add_column("Processed", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Duplicate", justify="right")
    table.add_column("Invalid", justify="right")
    table.add_row(
        str(result.records_processed),
        str(result.records_stored),
        str(result.records_duplicate),
        str(result.records_invalid),
    )
    console.print(table)
    for error in result.errors:
        console.print(f"[yellow]{escape(error)}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def query(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    client_id: Optional[List[str]] = typer.Option(None, "--client-id", help="Filter by client"),
    service: Optional[List[str]] = typer.Option(None, "--service", help="Filter by service"),
    model: Optional[List[str]] = typer.Option(None, "--model", help="Filter by model"),
    order_by: Optional[List[str]] = typer.Option(
        None,
        "--order-by",
        help="Sort key as field or field:desc"
    ),
    limit: int = typer.Option(100, "--limit", help="Maximum records to show"),
    offset: int = typer.Option(0, "--offset", help="Records to skip")
):
    """List stored usage records."""
    start, end = _time_range(start, end)
    try:
        storage = _open_storage(ctx)
        try:
            result = storage.query_usage(UsageQuery(
                start_time=start,
                end_time=end,
                client_ids=client_id or None,
                services=service or None,
                models=model or None,
                aggregates=["count", "sum"],
                order_by=_parse_order_by(order_by or []),
                limit=limit,
                offset=offset,
            ))
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    table = Table(title="Usage Records")
    for column in ("Timestamp", "Client", "Service", "Model", "Tokens", "Cost"):
        table.add_column(column, justify="right" if column in ("Tokens", "Cost") else "left")
    for record in result.records:
        table.add_row(
            record.timestamp,
            record.client_id or "",
            record.service,
            record.model,
            "" if record.total_tokens is None else f"{record.total_tokens:,}",
            "" if record.cost_usd is None else _format_currency(record.cost_usd),
        )
    console.print(table)
    console.print(
        f"Showing {len(result.records)} of {result.total_records} records, "
        f"total cost {_format_currency(result.aggregates.get('sum_cost_usd', 0))}"
    )
    sys.exit(EXIT_CODE_PASS)


def _breakdown_table(title: str, breakdown: Dict[str, DimensionBreakdown]) -> Table:
    table = Table(title=title)
    table.add_column("Name")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Share", justify="right")
    for entry in sorted(breakdown.values(), key=lambda b: b.cost, reverse=True):
        table.add_row(
            entry.name,
            _format_currency(entry.cost),
            f"{entry.tokens:,}",
            f"{entry.requests:,}",
            _format_percent(entry.percentage),
        )
    return table


@app.command()
def summary(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    client_id: Optional[List[str]] = typer.Option(None, "--client-id", help="Filter by client")
):
    """Summarize cost, tokens and requests for a period."""
    start, end = _time_range(start, end)
    try:
        storage = _open_storage(ctx)
        try:
            result = storage.get_usage_summary(UsageSummaryRequest(
                start_time=start, end_time=end, client_ids=client_id or None
            ))
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    console.print("\n[bold]Usage Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Period: {start} to {end}")
    console.print(f"Total cost: {_format_currency(result.total_cost)}")
    console.print(f"Total tokens: {result.total_tokens:,}")
    console.print(f"Total requests: {result.total_requests:,}")
    console.print(f"Cost growth: {_format_percent(result.cost_growth_rate)}")
    console.print(f"Token growth: {_format_percent(result.token_growth_rate)}")
    console.print(_breakdown_table("By Service", result.service_breakdown))
    console.print(_breakdown_table("By Model", result.model_breakdown))
    console.print(_breakdown_table("By Client", result.client_breakdown))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def trend(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    interval: str = typer.Option(
        "day", "--interval", "-i", help=f"One of: {_choices(Interval)}", callback=_vocabulary_callback(Interval)
    ),
    metric: str = typer.Option(
        "cost", "--metric", "-m", help=f"One of: {_choices(Metric)}", callback=_vocabulary_callback(Metric)
    ),
    client_id: Optional[List[str]] = typer.Option(None, "--client-id", help="Filter by client")
):
    """Show a metric bucketed over time."""
    start, end = _time_range(start, end)
    try:
        storage = _open_storage(ctx)
        try:
            result = storage.get_usage_trend(TrendRequest(
                start_time=start,
                end_time=end,
                interval=interval,
                metric=metric,
                client_ids=client_id or None,
            ))
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    monetary = metric == "cost"
    table = Table(title=f"{metric.capitalize()} per {interval}")
    table.add_column("Bucket")
    table.add_column("Value", justify="right")
    table.add_column("Records", justify="right")
    for point in result.data_points:
        value = _format_currency(point.value) if monetary else f"{point.value:,}"
        table.add_row(point.timestamp, value, str(point.count))
    console.print(table)
    total = _format_currency(result.total_value) if monetary else f"{result.total_value:,}"
    console.print(f"Total: {total}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def top(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    group_by: str = typer.Option(
        "service", "--group-by", "-g", help=f"One of: {_choices(Dimension)}", callback=_vocabulary_callback(Dimension)
    ),
    metric: str = typer.Option(
        "cost", "--metric", "-m", help=f"One of: {_choices(Metric)}", callback=_vocabulary_callback(Metric)
    ),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of entries to show")
):
    """Rank the top consumers along one dimension."""
    start, end = _time_range(start, end)
    try:
        storage = _open_storage(ctx)
        try:
            result = storage.get_top_usage(TopUsageRequest(
                start_time=start, end_time=end, group_by=group_by, metric=metric, limit=limit
            ))
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    monetary = metric == "cost"
    table = Table(title=f"Top {limit} by {group_by}")
    table.add_column("#", justify="right")
    table.add_column(group_by.capitalize())
    table.add_column("Value", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Records", justify="right")
    for rank, ranking in enumerate(result.rankings, start=1):
        value = _format_currency(ranking.value) if monetary else f"{ranking.value:,}"
        table.add_row(
            str(rank), ranking.name, value, _format_percent(ranking.percentage), str(ranking.record_count)
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def breakdown(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    by: Optional[List[str]] = typer.Option(
        None, "--by", help=f"Dimension, one of: {_choices(Dimension)}", callback=_vocabulary_callback(Dimension)
    ),
    client_id: Optional[List[str]] = typer.Option(None, "--client-id", help="Filter by client")
):
    """Break cost down by one or more dimensions."""
    start, end = _time_range(start, end)
    dimensions = by or ["service"]
    try:
        storage = _open_storage(ctx)
        try:
            result = storage.get_cost_breakdown(CostBreakdownRequest(
                start_time=start,
                end_time=end,
                breakdown_by=dimensions,
                client_ids=client_id or None,
            ))
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    table = Table(title="Cost Breakdown")
    for dimension in dimensions:
        table.add_column(dimension.capitalize())
    table.add_column("Cost", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    for entry in result.breakdowns:
        table.add_row(
            *[entry.dimensions.get(dimension, "") for dimension in dimensions],
            _format_currency(entry.cost),
            _format_percent(entry.percentage),
            f"{entry.token_count:,}",
            f"{entry.request_count:,}",
        )
    console.print(table)
    console.print(f"Total cost: {_format_currency(result.total_cost)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def project(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="Base period ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Base period ISO-8601 end"),
    period: str = typer.Option(
        "monthly", "--period", "-p", help=f"One of: {_choices(ProjectionPeriod)}",
        callback=_vocabulary_callback(ProjectionPeriod)
    ),
    method: str = typer.Option(
        "linear", "--method", help=f"One of: {_choices(ProjectionMethod)}",
        callback=_vocabulary_callback(ProjectionMethod)
    ),
    client_id: Optional[List[str]] = typer.Option(None, "--client-id", help="Filter by client")
):
    """Project cost forward from a base period."""
    start, end = _time_range(start, end)
    try:
        storage = _open_storage(ctx)
        try:
            result = storage.calculate_projected_cost(ProjectionRequest(
                base_start_time=start,
                base_end_time=end,
                project_period=period,
                method=method,
                client_ids=client_id or None,
            ))
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    console.print("\n[bold]Cost Projection[/bold]")
    console.print("-" * 40)
    console.print(f"Method: {result.method}")
    console.print(f"Base period: {start} to {end}")
    console.print(f"Projected cost: {_format_currency(result.projected_cost)}")
    console.print(f"Projected tokens: {result.projected_tokens:,}")
    console.print(f"Projected requests: {result.projected_requests:,}")
    console.print(f"Confidence: {result.confidence:.2f}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def retention(ctx: typer.Context):
    """Apply the configured retention policy."""
    try:
        config = _load_config(ctx)
        storage = create_storage(config.storage.to_mapping())
        try:
            result = storage.apply_retention_policy(config.retention)
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    console.print(
        f"[green]✓[/] Deleted {result.records_deleted:,} records "
        f"(~{result.storage_freed_gb:.3f} GB freed)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("retention-info")
def retention_info(ctx: typer.Context):
    """Show record age distribution and estimated size."""
    try:
        storage = _open_storage(ctx)
        try:
            info = storage.get_retention_info()
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    console.print(f"Total records: {info.total_records:,}")
    console.print(f"Oldest record: {info.oldest_record or '-'}")
    console.print(f"Newest record: {info.newest_record or '-'}")
    console.print(f"Estimated size: {info.estimated_size_gb:.3f} GB")
    table = Table(title="Records by Age")
    table.add_column("Window")
    table.add_column("Records", justify="right")
    for window, count in info.records_by_age.items():
        table.add_row(window.replace("_", " "), f"{count:,}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(ctx: typer.Context):
    """Show storage health and record counts."""
    try:
        storage = _open_storage(ctx)
        try:
            health = storage.health_check()
            storage_stats = storage.get_storage_stats()
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    color = "green" if health.status == "healthy" else "red"
    console.print(f"[{color}]{health.status}[/] {health.message}")
    console.print(f"Total records: {storage_stats.total_records:,}")
    console.print(f"Records ingested today: {storage_stats.records_today:,}")
    console.print(f"Estimated size: {storage_stats.total_size_gb:.3f} GB")
    sys.exit(EXIT_CODE_FAIL if health.status != "healthy" else EXIT_CODE_PASS)


@app.command()
def export(
    ctx: typer.Context,
    destination: str = typer.Argument(..., help="File to write"),
    start: Optional[str] = typer.Option(None, "--start", help="Inclusive ISO-8601 start"),
    end: Optional[str] = typer.Option(None, "--end", help="Exclusive ISO-8601 end"),
    format: str = typer.Option("jsonl", "--format", "-f", help="jsonl or csv"),
    compression: str = typer.Option("none", "--compression", help="none or gzip"),
    client_id: Optional[List[str]] = typer.Option(None, "--client-id", help="Filter by client")
):
    """Export stored records to a file."""
    try:
        request = ExportRequest(
            destination=destination,
            start_time=start,
            end_time=end,
            format=format,
            compression=compression,
            client_ids=client_id or None,
        )
        storage = _open_storage(ctx)
        try:
            result = storage.export_usage_data(request)
        finally:
            storage.close()
    except Exception as e:
        _fail(e)

    console.print(
        f"[green]✓[/] Exported {result.records_exported:,} records to {result.file_path} "
        f"({result.file_size_bytes:,} bytes)"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
