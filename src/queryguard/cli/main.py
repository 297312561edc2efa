"""
QueryGuard CLI - query governance for multi-tenant SQL.

Usage:
    queryguard optimize "SELECT * FROM transactions" --client c1 --upload u1
    queryguard validate --file query.sql --client c1
    queryguard analyze "SELECT id FROM journal_entries WHERE id = 5"
    queryguard rules
    queryguard modes
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from queryguard import __version__
from queryguard.config import get_config
from queryguard.exceptions import QueryGuardError
from queryguard.modes import WorkflowMode, WorkflowModeFactory
from queryguard.optimizer import (
    OptimizationEngine,
    OptimizationOptions,
    OptimizationRequest,
    QueryContext,
    QueryOptimizer,
    ViolationSeverity,
    WarningLevel,
)

app = typer.Typer(
    name="queryguard",
    help="Query governance engine: rewrite, validate and analyze SQL before it runs",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"QueryGuard version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log pipeline steps."),
    ] = False,
) -> None:
    """QueryGuard - query governance engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose or get_config().debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_path=False)],
        force=True,
    )


def _read_sql(sql: str | None, file: Path | None) -> str:
    if file is not None:
        return file.read_text()
    if sql:
        return sql
    error_console.print("[red]Error:[/red] pass SQL as an argument or with --file")
    raise typer.Exit(code=2)


def _severity_style(level: str) -> str:
    if level == "error":
        return "red bold"
    if level == "warning":
        return "yellow"
    return "blue"


SqlArgument = Annotated[Optional[str], typer.Argument(help="SQL statement to process")]
FileOption = Annotated[
    Optional[Path],
    typer.Option(
        "--file",
        "-f",
        help="Read the SQL statement from a file",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
JsonOption = Annotated[bool, typer.Option("--json", "-j", help="Output results as JSON")]


@app.command()
def optimize(
    sql: SqlArgument = None,
    file: FileOption = None,
    client: Annotated[str, typer.Option("--client", "-c", help="Client (tenant) id")] = "default",
    upload: Annotated[
        Optional[str], typer.Option("--upload", "-u", help="Upload (company dataset) id")
    ] = None,
    domain: Annotated[
        WorkflowMode, typer.Option("--domain", "-d", help="Workflow domain")
    ] = WorkflowMode.AUDIT,
    max_rows: Annotated[
        Optional[int], typer.Option("--max-rows", help="Row cap for the rewritten query", min=1)
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """
    Rewrite a query for isolation and performance, then validate it.

    Examples:

        $ queryguard optimize "SELECT * FROM transactions" -c c1 -u upload_c1_q1
    """
    text = _read_sql(sql, file)
    config = get_config()
    try:
        optimizer = QueryOptimizer(config=config)
    except QueryGuardError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    response = optimizer.optimize(
        OptimizationRequest(
            sql=text,
            client_id=client,
            upload_id=upload,
            context=QueryContext(domain=domain.value),
            options=OptimizationOptions(
                max_row_limit=max_rows or config.max_row_limit,
                enforce_upload_id=upload is not None or domain == WorkflowMode.AUDIT,
            ),
        )
    )

    if json_output:
        console.print_json(response.model_dump_json())
    else:
        border = "green" if response.is_valid else "red"
        console.print(Panel(response.optimized_sql, title="Optimized SQL", border_style=border))

        applied = response.applied_optimizations
        if applied:
            table = Table(title="Applied optimizations")
            table.add_column("Rule", style="cyan")
            table.add_column("Impact")
            table.add_column("Description")
            for result in applied:
                table.add_row(result.rule_id, result.impact.value, result.description)
            console.print(table)

        for warning in response.warnings:
            style = _severity_style(warning.level.value)
            console.print(f"[{style}][{warning.code}][/{style}] {warning.message}")
            if warning.suggestion and warning.level != WarningLevel.INFO:
                console.print(f"   [dim]{warning.suggestion}[/dim]")

        for error in response.errors:
            console.print(f"[red bold][ERROR][/red bold] {error}")

        console.print()
        console.print(response.explanation)

    if not response.is_valid:
        raise typer.Exit(code=1)


@app.command()
def validate(
    sql: SqlArgument = None,
    file: FileOption = None,
    client: Annotated[str, typer.Option("--client", "-c", help="Client (tenant) id")] = "default",
    upload: Annotated[
        Optional[str], typer.Option("--upload", "-u", help="Upload (company dataset) id")
    ] = None,
    json_output: JsonOption = False,
) -> None:
    """
    Check a query for unsafe operations and missing isolation without rewriting it.
    """
    text = _read_sql(sql, file)
    result = QueryOptimizer(config=get_config()).validate(text, client, upload)

    if json_output:
        console.print_json(result.model_dump_json())
    else:
        if not result.violations:
            console.print(Panel("[green]No violations found[/green]", title="QueryGuard", border_style="green"))
        for violation in result.violations:
            style = _severity_style(violation.severity.value)
            console.print(
                f"[{style}][{violation.severity.value.upper()}][/{style}] "
                f"{violation.type.value}: {violation.message}"
            )
        status = "[green]safe[/green]" if result.is_safe else "[red]unsafe[/red]"
        console.print(f"\n[dim]Query is[/dim] {status}")

    if any(v.severity == ViolationSeverity.ERROR for v in result.violations):
        raise typer.Exit(code=1)


@app.command()
def analyze(
    sql: SqlArgument = None,
    file: FileOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Estimate rows, cost and scan type for a query.
    """
    text = _read_sql(sql, file)
    analysis = QueryOptimizer(config=get_config()).analyze(text)
    if analysis is None:
        error_console.print("[red]Error:[/red] query could not be parsed")
        raise typer.Exit(code=1)

    if json_output:
        console.print_json(analysis.model_dump_json())
        return

    table = Table(title="Performance analysis", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Score", str(analysis.score))
    table.add_row("Scan type", analysis.scan_type.value)
    table.add_row("Estimated rows", str(analysis.estimated_rows))
    table.add_row("Estimated cost", str(analysis.estimated_cost))
    table.add_row("Indexes", ", ".join(analysis.indexes_used) or "-")
    console.print(table)

    for warning in analysis.warnings:
        console.print(f"[yellow][WARNING][/yellow] {warning}")
    for recommendation in analysis.recommendations:
        console.print(f"[blue][TIP][/blue] {recommendation}")


@app.command()
def rules(json_output: JsonOption = False) -> None:
    """
    List optimization rules in execution order.
    """
    engine = OptimizationEngine(config=get_config())

    if json_output:
        console.print_json(
            json.dumps([
                {
                    "rule_id": rule.rule_id,
                    "priority": rule.priority,
                    "type": rule.optimization_type.value,
                    "option": rule.option_flag,
                    "description": rule.description,
                }
                for rule in engine.rules
            ])
        )
        return

    table = Table()
    table.add_column("Priority", justify="right")
    table.add_column("Rule ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Option")
    table.add_column("Description")

    for rule in engine.rules:
        table.add_row(
            str(rule.priority),
            rule.rule_id,
            rule.optimization_type.value,
            rule.option_flag or "-",
            rule.description,
        )

    console.print(table)


@app.command()
def modes(json_output: JsonOption = False) -> None:
    """
    Show the constraints of each workflow mode.
    """
    factory = WorkflowModeFactory()
    constraints = {
        mode.value: factory.create_mode(mode).get_constraints() for mode in factory.available_modes()
    }

    if json_output:
        console.print_json(
            json.dumps({name: c.model_dump(mode="json") for name, c in constraints.items()})
        )
        return

    table = Table()
    table.add_column("Setting", style="cyan", no_wrap=True)
    for name in constraints:
        table.add_column(name)

    for field_name in next(iter(constraints.values())).model_dump():
        row = []
        for c in constraints.values():
            value = getattr(c, field_name)
            row.append(", ".join(value) if isinstance(value, tuple) else str(value))
        table.add_row(field_name, *row)

    console.print(table)


if __name__ == "__main__":
    app()
