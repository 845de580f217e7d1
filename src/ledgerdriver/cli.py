"""Command-line interface for ledgerdriver."""

import dataclasses
import importlib
import json
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from ledgerdriver.config import DriverConfig, EnvConfigSource
from ledgerdriver.driver import LedgerDriver
from ledgerdriver.transport import SessionTransport

app = typer.Typer(
    name="ledgerdriver",
    help="Run transactions against a ledger database",
    add_completion=False,
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Configuration file (YAML, JSON or TOML)"),
]
LedgerOption = Annotated[
    Optional[str],
    typer.Option("--ledger", "-l", help="Ledger name (overrides configuration)"),
]
TransportOption = Annotated[
    str,
    typer.Option("--transport", "-t", help="Transport factory as 'module:callable'"),
]


def load_transport(target: str) -> SessionTransport:
    """Import ``module:callable`` and call it to build a transport."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Transport must look like 'module:callable', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attribute)
    return factory()


def resolve_config(config_file: Optional[Path], ledger: Optional[str]) -> DriverConfig:
    """Load the configuration file (or environment) and apply overrides."""
    if config_file is not None:
        data = DriverConfig.from_file(config_file).to_dict()
    else:
        data = EnvConfigSource().load()
    if ledger:
        data["ledger_name"] = ledger
    return DriverConfig.from_dict(data)


def _fail(error: Exception) -> None:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(1)


@app.command(name="tables")
def tables_cmd(
    transport: TransportOption,
    config_file: ConfigOption = None,
    ledger: LedgerOption = None,
) -> None:
    """List the active tables of the ledger."""
    try:
        config = resolve_config(config_file, ledger)
        with LedgerDriver(config, load_transport(transport)) as driver:
            names = driver.list_table_names()
    except Exception as e:
        _fail(e)
        return

    console = Console()
    table = Table(title=f"Tables in {config.ledger_name}")
    table.add_column("Name", style="cyan")
    for name in names:
        table.add_row(name)
    console.print(table)


@app.command(name="execute")
def execute_cmd(
    statement: Annotated[str, typer.Argument(help="Statement to execute")],
    transport: TransportOption,
    parameters: Annotated[
        Optional[list[str]],
        typer.Option("--param", "-p", help="Statement parameter as JSON (repeatable)"),
    ] = None,
    config_file: ConfigOption = None,
    ledger: LedgerOption = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (console, json)"),
    ] = "console",
) -> None:
    """Execute one statement in its own transaction and print the documents."""
    try:
        config = resolve_config(config_file, ledger)
        values: list[Any] = [json.loads(p) for p in parameters or []]
        with LedgerDriver(config, load_transport(transport)) as driver:
            result = driver.execute(lambda txn: txn.execute(statement, *values))
    except Exception as e:
        _fail(e)
        return

    documents = list(result)
    ios = result.consumed_ios
    timing = result.timing_information

    if format == "json":
        output = {
            "documents": documents,
            "consumed_ios": dataclasses.asdict(ios) if ios else None,
            "timing_information": dataclasses.asdict(timing) if timing else None,
        }
        typer.echo(json.dumps(output, indent=2, default=str))
        return

    console = Console()
    for document in documents:
        console.print_json(json.dumps(document, default=str))
    console.print(f"[bold]{len(documents)}[/bold] document(s)")
    if ios is not None:
        console.print(f"  Read IOs: {ios.read_ios}  Write IOs: {ios.write_ios}")
    if timing is not None:
        console.print(f"  Processing time: {timing.processing_time_milliseconds} ms")


@app.command(name="config")
def config_cmd(
    config_file: ConfigOption = None,
    ledger: LedgerOption = None,
) -> None:
    """Print the resolved driver configuration."""
    try:
        config = resolve_config(config_file, ledger)
    except Exception as e:
        _fail(e)
        return
    typer.echo(json.dumps(config.to_dict(), indent=2))


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
