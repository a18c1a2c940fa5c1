from __future__ import annotations

import asyncio
import io
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pandas as pd
import typer

from feedback_insights.config import APP_NAME, APP_VERSION, LOG_LEVEL, NAME_SUGGEST_THRESHOLD
from feedback_insights.core.overlay import MergeRequestError
from feedback_insights.core.service import AnalyticsService, default_service
from feedback_insights.core.sheets import SheetAccessError

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help=f"{APP_NAME}: survey feedback analytics over Google Sheets.",
)


def _print_version(value: bool) -> None:
    if value:
        typer.echo(f"{APP_NAME} {APP_VERSION}")
        raise typer.Exit()


@app.callback()
def _configure(
    log_level: str = typer.Option(LOG_LEVEL, help="Logging level (DEBUG, INFO, WARNING...)"),
    version: bool = typer.Option(
        False, "--version", callback=_print_version, is_eager=True, help="Show the version and exit."
    ),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_service() -> AnalyticsService:
    return default_service()


def _run(work: Callable[[AnalyticsService], Awaitable[Any]]) -> Any:
    """Run one service call on a fresh event loop and surface known failures as exit 1."""

    async def main() -> Any:
        service = _build_service()
        try:
            return await work(service)
        finally:
            await service.close()

    try:
        return asyncio.run(main())
    except (SheetAccessError, MergeRequestError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _parse_filters(items: Optional[List[str]]) -> Dict[str, List[str]]:
    """["Department=CSE", "Department=ECE", "Section=A"] -> {category: [values]}"""
    filters: Dict[str, List[str]] = {}
    for item in items or []:
        if "=" not in item:
            raise typer.BadParameter(f"Expected COLUMN=VALUE, got '{item}'")
        column, value = item.split("=", 1)
        filters.setdefault(column.strip(), []).append(value.strip())
    return filters


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


@app.command()
def metadata(url: str = typer.Argument(..., help="Google Sheet URL")) -> None:
    """Headers, facet values and row count of a sheet."""
    _echo_json(_run(lambda s: s.get_sheet_metadata(url)))


@app.command()
def analytics(
    url: str = typer.Argument(..., help="Google Sheet URL"),
    filter_: Optional[List[str]] = typer.Option(None, "--filter", "-f", help="COLUMN=VALUE, repeatable"),
    account: Optional[str] = typer.Option(None, help="Apply this account's merged names"),
) -> None:
    """Aggregated scores for the (filtered) responses."""
    filters = _parse_filters(filter_)
    result = _run(lambda s: s.get_analytics(url, filters, account=account))
    _echo_json(result.to_dict())


@app.command()
def report(
    url: str = typer.Argument(..., help="Google Sheet URL"),
    filter_: Optional[List[str]] = typer.Option(None, "--filter", "-f", help="COLUMN=VALUE, repeatable"),
    account: Optional[str] = typer.Option(None, help="Apply this account's merged names"),
) -> None:
    """Question averages and remarks per faculty, with a summary row."""
    filters = _parse_filters(filter_)
    result = _run(lambda s: s.get_faculty_report(url, filters, account=account))
    _echo_json(result.to_dict())


@app.command()
def validate(url: str = typer.Argument(..., help="Google Sheet URL")) -> None:
    """Check that a sheet can be read."""
    result = _run(lambda s: s.validate_sheet(url))
    _echo_json(result.to_dict())
    if not result.valid:
        raise typer.Exit(code=1)


@app.command()
def names(url: str = typer.Argument(..., help="Google Sheet URL")) -> None:
    """Automatic name groups found in the faculty column."""
    _echo_json(_run(lambda s: s.get_name_mappings(url)))


@app.command()
def export(
    url: str = typer.Argument(..., help="Google Sheet URL"),
    filter_: Optional[List[str]] = typer.Option(None, "--filter", "-f", help="COLUMN=VALUE, repeatable"),
    account: Optional[str] = typer.Option(None, help="Apply this account's merged names"),
    fmt: str = typer.Option("csv", "--format", help="csv or json"),
) -> None:
    """Every matching row, with the sheet's original spellings."""
    fmt = fmt.lower()
    if fmt not in ("csv", "json"):
        raise typer.BadParameter("format must be 'csv' or 'json'")

    filters = _parse_filters(filter_)
    result = _run(lambda s: s.get_filtered_data_for_export(url, filters, account=account))

    if fmt == "json":
        _echo_json(result)
        return

    buf = io.StringIO()
    pd.DataFrame(result["data"], columns=result["headers"]).to_csv(buf, index=False)
    typer.echo(buf.getvalue(), nl=False)


@app.command()
def merge(
    url: str = typer.Argument(..., help="Google Sheet URL"),
    category: str = typer.Option(..., help="Column whose values are merged"),
    canonical: str = typer.Option(..., help="Label shown for the merged values"),
    variant: List[str] = typer.Option(..., "--variant", "-v", help="Value to merge, repeat for each"),
    account: str = typer.Option(..., help="Account owning the merge"),
) -> None:
    """Merge several spellings under one label."""

    async def work(service: AnalyticsService) -> Any:
        return service.merge_names(account, url, category, canonical, variant)

    _echo_json(_run(work))


@app.command()
def unmerge(
    url: str = typer.Argument(..., help="Google Sheet URL"),
    category: str = typer.Option(..., help="Column of the merge"),
    canonical: str = typer.Option(..., help="Label of the merge to remove"),
    account: str = typer.Option(..., help="Account owning the merge"),
) -> None:
    """Remove one merge."""

    async def work(service: AnalyticsService) -> bool:
        return service.unmerge_names(account, url, category, canonical)

    if not _run(work):
        typer.echo(f"No merge named '{canonical}' in '{category}'", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed merge '{canonical}'")


@app.command()
def suggest(
    url: str = typer.Argument(..., help="Google Sheet URL"),
    category: str = typer.Option(..., help="Column to search"),
    name: List[str] = typer.Option(..., "--name", "-n", help="Selected value, repeatable"),
    threshold: float = typer.Option(NAME_SUGGEST_THRESHOLD, help="Similarity threshold (0-1)"),
) -> None:
    """Values similar to the selected ones, as merge candidates."""
    _echo_json(_run(lambda s: s.suggest_similar_names(url, category, name, threshold=threshold)))


if __name__ == "__main__":
    app()
