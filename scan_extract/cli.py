"""CLI entry point for the scan extraction tool.

Provides commands for running extractions and managing API keys.
"""

import asyncio
import hashlib
import logging
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .clients import GeminiClient
from .core.config import DispatchConfig, ExtractConfig, get_config
from .core.errors import DispatchCancelled
from .core.files import load_work_items
from .orchestration import DispatchOrchestrator, RateLimiter
from .output import ResultWriter, format_findings, inspect_results
from .storage import CredentialError, CredentialStore, JsonFileBackend, KeyQuotaStore
from .types import ApiTier, Credential, KeyStatus, ProgressSnapshot, WorkItem, mask_secret

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# CLI app
app = typer.Typer(
    name="scan-extract",
    help="Extract structured data from scanned documents with rate-limited API keys",
    add_completion=False,
)
keys_app = typer.Typer(help="Manage API keys")
app.add_typer(keys_app, name="keys")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"scan-extract version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        help="Show version and exit",
    ),
) -> None:
    """Scan extraction tool - batch documents through rate-limited keys."""
    pass


def build_rate_limiter(config: ExtractConfig, credentials: list[Credential]) -> RateLimiter:
    """Create a limiter backed by the on-disk quota state."""
    path = config.state_dir / "quota_state.json" if config.state_dir else None
    return RateLimiter(credentials, quota_store=KeyQuotaStore(JsonFileBackend(path)))


def env_credentials(config: ExtractConfig) -> list[Credential]:
    """Credentials supplied through SCAN_EXTRACT_API_KEYS.

    Ids derive from the secret so quota state survives restarts.
    """
    credentials = []
    for index, secret in enumerate(config.api_keys):
        digest = hashlib.sha256(secret.encode()).hexdigest()[:12]
        credentials.append(
            Credential(
                id=f"env_{digest}",
                secret=secret,
                tier=ApiTier(config.default_tier),
                label=f"env #{index + 1}",
            )
        )
    return credentials


def load_credentials(config: ExtractConfig) -> list[Credential]:
    """Registered credentials followed by any env-supplied ones."""
    credentials = CredentialStore().list_credentials()
    known = {c.secret for c in credentials}
    credentials.extend(c for c in env_credentials(config) if c.secret not in known)
    return credentials


def key_status_table(statuses: list[KeyStatus], title: str = "API Keys") -> Table:
    """Render per-key quota status."""
    table = Table(title=title)
    table.add_column("Key", style="cyan")
    table.add_column("Tier")
    table.add_column("Tokens", justify="right")
    table.add_column("Today", justify="right")
    table.add_column("State")

    for status in statuses:
        daily_limit = "∞" if status.daily_limit is None else str(status.daily_limit)
        state = "[green]available[/green]" if status.is_available else "[red]exhausted[/red]"
        table.add_row(
            escape(status.label or status.key_id),
            status.tier,
            f"{status.available_tokens}/{status.max_tokens}",
            f"{status.daily_used}/{daily_limit}",
            state,
        )

    return table


@app.command()
def run(
    paths: list[Path] = typer.Argument(..., help="Image files or directories of images"),
    output_dir: Path = typer.Option(
        Path("./extractions"),
        "--output-dir",
        "-o",
        help="Output directory",
    ),
    batch_size: int = typer.Option(
        10,
        "--batch-size",
        "-b",
        min=1,
        help="Maximum documents per request",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose logging",
    ),
) -> None:
    """Extract structured data from scanned document images."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = get_config()
    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    credentials = load_credentials(config)
    if not credentials:
        console.print("[red]No API keys configured.[/red]")
        console.print("Add one with 'scan-extract keys add' or set SCAN_EXTRACT_API_KEYS.")
        raise typer.Exit(1)

    loaded = load_work_items(paths)
    for path, reason in loaded.rejected.items():
        console.print(f"[yellow]Skipped[/yellow] {escape(path)}: {escape(reason)}")

    if not loaded.items:
        console.print("[red]No documents to process.[/red]")
        raise typer.Exit(1)

    dispatch_config = DispatchConfig(max_docs_per_batch=batch_size)

    try:
        asyncio.run(
            run_cli_extraction(config, dispatch_config, credentials, loaded.items, output_dir)
        )
    except DispatchCancelled as e:
        console.print(f"\n[yellow]{escape(str(e))}[/yellow]")
        snapshot = e.snapshot
        if snapshot is not None:
            console.print(
                f"Completed {snapshot.completed_count}, failed {snapshot.failed_count} "
                f"of {snapshot.total} before cancellation"
            )
        raise typer.Exit(130)


async def run_cli_extraction(
    config: ExtractConfig,
    dispatch_config: DispatchConfig,
    credentials: list[Credential],
    items: list[WorkItem],
    output_dir: Path,
) -> None:
    """Run extraction in CLI mode with progress display."""
    console.print("\n[bold]Scan Extraction[/bold]")
    console.print(f"Documents: {len(items)}")
    console.print(f"Keys: {len(credentials)}")
    console.print(f"Output: {output_dir}")
    console.print()

    limiter = build_rate_limiter(config, credentials)
    orchestrator = DispatchOrchestrator(GeminiClient(config), limiter, dispatch_config)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable, Ctrl-C will abort immediately")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Extracting...", total=len(items))

        def progress_callback(snapshot: ProgressSnapshot) -> None:
            if snapshot.is_waiting_for_key:
                description = f"Waiting {snapshot.wait_time_ms / 1000:.1f}s for a key..."
            else:
                description = (
                    f"Batch {snapshot.current_batch_index + 1}/{snapshot.total_batches} "
                    f"({snapshot.failed_count} failed)"
                )
            progress.update(task, completed=snapshot.resolved_count, description=description)

        try:
            result = await orchestrator.run(
                credentials, items, progress_callback, cancel_event
            )
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

        progress.update(task, description="Writing output...")
        report = inspect_results(result.results)
        output_path = ResultWriter(output_dir).write(result, report)

    # Print summary
    console.print()
    table = Table(title="Extraction Summary")
    table.add_column("Document", style="cyan")
    table.add_column("Status")
    table.add_column("Confidence", justify="right")
    table.add_column("Detail")

    labels = {item.id: item.source_label for item in items}
    results_by_id = {r.item_id: r for r in result.results}
    for item_id, label in labels.items():
        if item_id in results_by_id:
            extracted = results_by_id[item_id]
            review = " [yellow](review)[/yellow]" if extracted.meta.needs_review else ""
            table.add_row(
                escape(label),
                f"[green]OK[/green]{review}",
                str(extracted.meta.confidence_score),
                escape(extracted.property_number),
            )
        else:
            table.add_row(
                escape(label), "[red]FAILED[/red]", "-", escape(result.errors.get(item_id, ""))
            )

    console.print(table)
    console.print(key_status_table(result.key_statuses))

    console.print()
    for line in format_findings(report):
        console.print(line, markup=False)

    console.print()
    console.print(f"[bold]Completed:[/bold] {result.completed_count}/{result.total}")
    console.print(f"[bold]Failed:[/bold] {result.failed_count}")
    console.print(f"[bold]Needs review:[/bold] {result.needs_review_count}")
    console.print(f"[bold]Duration:[/bold] {result.duration_seconds:.1f}s")
    console.print(f"[bold]Output:[/bold] {output_path}")


@keys_app.command("add")
def keys_add(
    secret: str = typer.Argument(..., help="API key"),
    tier: ApiTier = typer.Option(ApiTier.FREE, "--tier", "-t", help="Quota tier"),
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Display label"),
) -> None:
    """Register an API key."""
    try:
        credential = CredentialStore().add(secret, tier.value, label)
    except CredentialError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Added[/green] {credential.id} ({mask_secret(credential.secret)})")


@keys_app.command("list")
def keys_list() -> None:
    """List registered API keys."""
    credentials = CredentialStore().list_credentials()
    if not credentials:
        console.print("[yellow]No API keys registered.[/yellow]")
        return

    table = Table(title=f"Registered Keys ({len(credentials)})")
    table.add_column("ID", style="cyan")
    table.add_column("Key")
    table.add_column("Tier")
    table.add_column("Label")
    table.add_column("Added")

    for credential in credentials:
        table.add_row(
            credential.id,
            mask_secret(credential.secret),
            credential.tier.value,
            escape(credential.label or ""),
            credential.added_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@keys_app.command("remove")
def keys_remove(key_id: str = typer.Argument(..., help="Key id to remove")) -> None:
    """Remove an API key and its stored quota state."""
    config = get_config()
    store = CredentialStore()
    limiter = build_rate_limiter(config, store.list_credentials())

    if not store.remove(key_id, rate_limiter=limiter):
        console.print(f"[red]Unknown key: {key_id}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Removed[/green] {key_id}")


@keys_app.command("status")
def keys_status() -> None:
    """Show per-key token and daily quota status."""
    config = get_config()
    credentials = load_credentials(config)
    if not credentials:
        console.print("[yellow]No API keys configured.[/yellow]")
        return

    limiter = build_rate_limiter(config, credentials)
    console.print(key_status_table(limiter.status_snapshot()))

    wait_ms = limiter.estimated_wait_ms()
    if wait_ms:
        console.print(f"Next token in ~{wait_ms / 1000:.1f}s")


@app.command()
def check() -> None:
    """Check configuration."""
    config = get_config()

    console.print("[bold]Configuration Check[/bold]\n")

    errors = config.validate()
    if errors:
        console.print("[red]Invalid configuration:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    console.print(f"[green]Model:[/green] {config.model}")
    console.print(f"[green]Endpoint:[/green] {config.generate_url}")
    console.print(f"[green]Default tier:[/green] {config.default_tier}")

    credentials = load_credentials(config)
    if credentials:
        console.print(f"[green]Keys:[/green] {len(credentials)}")
    else:
        console.print("[yellow]Keys:[/yellow] none configured")


if __name__ == "__main__":
    app()
