"""CLI for the SEACE ETL job service."""

import typer
from dataclasses import replace
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from dotenv import load_dotenv

from .client import DEFAULT_BASE_URL, OperationClient, StreamConnectionError
from .config import PROVIDER_GOOGLE, list_models, load_settings
from .credentials import CredentialNotFound, InvalidPermutation
from .crypto import generate_key
from .models import Operation, OperationKind
from .operations import OperationNotFound

load_dotenv()

app = typer.Typer(
    name="seace-etl",
    help="Scrape, categorize and geolocate public procurement processes from SEACE.",
    add_completion=False
)
console = Console()


def _local_runtime():
    """Runtime over the configured stores that runs jobs in the foreground."""
    from .server import build_runtime
    settings = replace(load_settings(), execute_async=False, reaper_enabled=False)
    return build_runtime(settings)


def parse_params(pairs: List[str]) -> Dict[str, Any]:
    """Turn repeated `key=value` options into a parameter dict."""
    params: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got '{pair}'")
        params[key.strip()] = value.strip()
    return params


def _print_operation(operation: Operation) -> None:
    colors = {"completed": "green", "failed": "red", "running": "cyan", "pending": "yellow"}
    color = colors.get(operation.status.value, "white")
    console.print(
        f"[bold]{operation.kind.value}[/bold] {operation.operation_id} "
        f"[{color}]{operation.status.value}[/{color}] {operation.percentage}%"
    )
    if operation.current_message:
        console.print(f"  {operation.current_message}")
    console.print(
        f"  inserted={operation.counts.inserted} updated={operation.counts.updated} "
        f"errors={operation.counts.errors}"
    )
    if operation.error_message:
        console.print(f"  [red]{operation.error_type.value if operation.error_type else 'error'}: "
                      f"{escape(operation.error_message)}[/red]")
    if operation.details is not None:
        details = operation.details.model_dump(mode="json", by_alias=True, exclude={"kind"})
        table = Table(title="Details")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key, value in details.items():
            if isinstance(value, list):
                value = f"{len(value)} item(s)"
            table.add_row(key, str(value))
        console.print(table)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8001, "--port", "-p", help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
):
    """Start the HTTP API."""
    import uvicorn
    uvicorn.run("seace_etl.server:app", host=host, port=port, reload=reload)


@app.command()
def models():
    """List supported AI models."""
    table = Table(title="Models")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("Context")
    for model in list_models():
        table.add_row(model.id, model.name, model.provider, str(model.context_window))
    console.print(table)


@app.command()
def keys():
    """List API keys in priority order (secrets masked)."""
    runtime = _local_runtime()
    credentials = runtime.pool.list()
    if not credentials:
        console.print("[yellow]No API keys configured.[/yellow]")
        return

    table = Table(title=f"API keys ({runtime.pool.name})")
    table.add_column("Priority", justify="right")
    table.add_column("ID", justify="right")
    table.add_column("Alias", style="cyan")
    table.add_column("Key")
    table.add_column("Status")
    table.add_column("Uses", justify="right")
    table.add_column("Errors", justify="right")
    for credential in credentials:
        if not credential.active:
            status = "[dim]inactive[/dim]"
        elif credential.quota_exceeded:
            status = f"[red]quota until {credential.quota_reset_at}[/red]"
        else:
            status = "[green]available[/green]"
        table.add_row(
            str(credential.priority),
            str(credential.id),
            credential.alias,
            credential.masked_secret,
            status,
            str(credential.usage_count),
            str(credential.error_count),
        )
    console.print(table)


@app.command("add-key")
def add_key(
    alias: str = typer.Argument(..., help="Display name for the key"),
    secret: str = typer.Option(..., "--secret", "-s", prompt=True, hide_input=True, help="API key"),
    provider: str = typer.Option(PROVIDER_GOOGLE, "--provider", "-p", help="Provider of the key"),
):
    """Append an API key at the lowest priority."""
    runtime = _local_runtime()
    try:
        view = runtime.pool.add(alias=alias, secret=secret, provider=provider)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Added '{view.alias}' ({view.masked_secret}) at priority {view.priority}[/green]")


@app.command("gen-key")
def gen_key():
    """Print a fresh value for CREDENTIAL_ENCRYPTION_KEY."""
    console.print(generate_key(), soft_wrap=True)


@app.command()
def reorder(ids: List[int] = typer.Argument(..., help="Credential ids, highest priority first")):
    """Set key priorities from the given order."""
    runtime = _local_runtime()
    try:
        views = runtime.pool.reorder(ids)
    except (InvalidPermutation, CredentialNotFound) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    for view in views:
        console.print(f"{view.priority}: {view.alias}")


@app.command()
def run(
    kind: OperationKind = typer.Argument(..., help="Job kind"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-P", help="Job parameter as key=value (repeatable)"),
):
    """
    Run a job in the foreground and print its outcome.

    Example:
        seace-etl run scrape -P keywords=obra,agua -P max_processes=50
        seace-etl run infer_location -P limit=20
    """
    runtime = _local_runtime()
    params = parse_params(param or [])
    try:
        with console.status(f"Running {kind.value}..."):
            operation_id = runtime.runner.start(kind, params)
    except ValueError as e:
        console.print(f"[red]Invalid parameters: {escape(str(e))}[/red]")
        raise typer.Exit(2)
    operation = runtime.registry.get(operation_id)
    _print_operation(operation)
    if operation.status.value == "failed":
        raise typer.Exit(1)


@app.command()
def status(operation_id: str = typer.Argument(..., help="Operation id")):
    """Show a stored operation."""
    runtime = _local_runtime()
    try:
        _print_operation(runtime.registry.get(operation_id))
    except OperationNotFound as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)


@app.command()
def watch(
    operation_id: str = typer.Argument(..., help="Operation id"),
    url: str = typer.Option(DEFAULT_BASE_URL, "--url", "-u", help="API base URL"),
    poll: bool = typer.Option(False, "--poll", help="Poll instead of streaming events"),
):
    """Follow a running operation on a server until it finishes."""
    client = OperationClient(base_url=url)
    try:
        if poll:
            operation = client.poll_until_terminal(
                operation_id, on_update=lambda op: console.print(f"{op.percentage}% {op.current_message or ''}")
            )
        else:
            for event in client.stream(operation_id):
                message = event.data.get("message") or (event.data.get("operation") or {}).get("current_message")
                console.print(f"[dim]{event.event}[/dim] {message or ''}")
            operation = client.get(operation_id)
    except OperationNotFound as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    except (TimeoutError, StreamConnectionError) as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")
        raise typer.Exit(1)
    _print_operation(operation)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
