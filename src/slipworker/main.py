import asyncio
import os
import uuid
from datetime import timedelta
from pathlib import Path

import typer
from dotenv import load_dotenv

# Disable gRPC fork support warnings raised when the Vision client is used
# from the default thread pool executor.
os.environ.setdefault("GRPC_ENABLE_FORK_SUPPORT", "0")

from slipworker.config import PipelineSettings, get_settings
from slipworker.errors import RecordNotFoundError
from slipworker.integrations.anthropic_parser import AnthropicReceiptParser
from slipworker.integrations.catalog_matcher import CatalogMatcher
from slipworker.integrations.local_store import LocalImageStore
from slipworker.integrations.ocr import VisionRecognizer
from slipworker.integrations.sqlite_store import SQLiteRepository
from slipworker.log_setup import EventCallback, configure_logging
from slipworker.models import (
    CatalogProduct,
    ErrorCategory,
    ErrorFilters,
    ErrorSeverity,
    JobStatus,
    ParsingStrategy,
    ProcessingJob,
    ProcessingOptions,
    ReviewFilters,
    UploadMetadata,
    utcnow,
)
from slipworker.pipeline import ReceiptProcessor
from slipworker.privacy import build_image_key
from slipworker.queue import InMemoryQueue
from slipworker.validation import ErrorHandlingService

load_dotenv()

app = typer.Typer(no_args_is_help=True)

_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".pdf": "application/pdf",
}


@app.callback(invoke_without_command=True)
def callback(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON logs"),
):
    """Slipworker receipt processing CLI."""
    configure_logging(log_level.upper(), json=json_logs)  # type: ignore[arg-type]
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def cli_progress(event_type: str, message: str) -> None:
    """Callback to handle pipeline events and output to CLI."""
    if "error" in event_type or "failed" in event_type or "exhausted" in event_type:
        typer.echo(message, err=True)
    else:
        typer.echo(message)


def _open_repository(db: Path | None, settings: PipelineSettings) -> SQLiteRepository:
    return SQLiteRepository(db or settings.database_path)


def build_processor(
    repository: SQLiteRepository,
    settings: PipelineSettings,
    on_event: EventCallback | None = None,
) -> ReceiptProcessor:
    """Wire the reference adapters into a processor."""
    api_key = settings.anthropic_api_key.get_secret_value() or os.getenv(
        "ANTHROPIC_API_KEY", ""
    )
    if not api_key:
        raise ValueError(
            "No Anthropic API key configured "
            "(set SLIPWORKER_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY)"
        )

    recognizer = VisionRecognizer()
    # Eagerly initialize the Vision API client in the main thread
    _ = recognizer.client

    error_service = ErrorHandlingService(
        repository, repository, settings=settings, on_event=on_event
    )
    return ReceiptProcessor(
        image_store=LocalImageStore(settings.image_root),
        recognizer=recognizer,
        parser=AnthropicReceiptParser(api_key=api_key, model=settings.anthropic_model),
        matcher=CatalogMatcher(),
        repository=repository,
        error_service=error_service,
        settings=settings,
        on_event=on_event,
    )


@app.command()
def process(
    image: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Receipt image file"
    ),
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    user: str = typer.Option(..., "--user", "-u", help="Submitting user id"),
    strategy: ParsingStrategy = typer.Option(
        ParsingStrategy.ADAPTIVE, "--strategy", help="Parsing strategy"
    ),
    threshold: float = typer.Option(
        0.7, "--threshold", min=0.0, max=1.0, help="Product matching threshold"
    ),
    review: bool = typer.Option(
        False, "--review", help="Always send the receipt to manual review"
    ),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """Process one receipt image through the pipeline."""
    settings = get_settings()
    repository = _open_repository(db, settings)

    try:
        processor = build_processor(repository, settings, on_event=cli_progress)
    except Exception as e:
        typer.echo(f"Failed to initialize pipeline: {e}", err=True)
        raise typer.Exit(code=1) from e

    upload_id = uuid.uuid4().hex
    image_key = build_image_key(tenant, user, upload_id)
    LocalImageStore(settings.image_root).put_file(image_key, image)

    job = ProcessingJob(
        id=uuid.uuid4().hex,
        tenant_id=tenant,
        user_id=user,
        image_key=image_key,
        upload_metadata=UploadMetadata(
            file_name=image.name,
            file_size=image.stat().st_size,
            content_type=_CONTENT_TYPES.get(
                image.suffix.lower(), "application/octet-stream"
            ),
        ),
        processing_options=ProcessingOptions(
            parsing_strategy=strategy,
            product_matching_threshold=threshold,
            require_manual_review=review,
        ),
    )

    async def execute() -> ProcessingJob | None:
        await repository.create_job(job)
        queue = InMemoryQueue(max_deliveries=settings.max_retry_count + 1)
        queue.send(job.to_message())
        await queue.drain(processor, repository)
        return await repository.get_job(job.id)

    final = asyncio.run(execute())
    repository.close()

    if final is None:
        typer.echo(f"Job {job.id} disappeared from the store", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Job {final.id}: {final.status}")
    if final.status == JobStatus.FAILED:
        typer.echo(final.error_message or "Processing failed", err=True)
        raise typer.Exit(code=1)


@app.command("add-product")
def add_product(
    name: str = typer.Argument(..., help="Product name"),
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    alias: list[str] = typer.Option([], "--alias", "-a", help="Alternative name"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """Add a product to a tenant's catalog."""
    repository = _open_repository(db, get_settings())
    product = CatalogProduct(
        id=uuid.uuid4().hex, tenant_id=tenant, name=name, aliases=alias
    )
    asyncio.run(repository.add_product(product))
    repository.close()
    typer.echo(f"Added product {product.id}: {name}")


@app.command()
def errors(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    category: ErrorCategory | None = typer.Option(None, "--category"),
    severity: ErrorSeverity | None = typer.Option(None, "--severity"),
    unresolved: bool = typer.Option(False, "--unresolved", help="Only open errors"),
    limit: int = typer.Option(50, "--limit"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """List logged processing errors for a tenant."""
    settings = get_settings()
    repository = _open_repository(db, settings)
    service = ErrorHandlingService(repository, repository, settings=settings)
    filters = ErrorFilters(
        category=category,
        severity=severity,
        resolved=False if unresolved else None,
        limit=limit,
    )
    records = asyncio.run(service.get_processing_errors(tenant, filters))
    repository.close()

    if not records:
        typer.echo("No errors found.")
        return
    for record in records:
        status = "resolved" if record.resolved else "open"
        typer.echo(
            f"{record.id}  {record.timestamp:%Y-%m-%d %H:%M}  {record.severity:<8} "
            f"{record.category}:{record.code}  [{status}]  {record.message}"
        )


@app.command()
def reviews(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    unresolved: bool = typer.Option(False, "--unresolved", help="Only open flags"),
    limit: int = typer.Option(50, "--limit"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """List manual review flags for a tenant."""
    settings = get_settings()
    repository = _open_repository(db, settings)
    service = ErrorHandlingService(repository, repository, settings=settings)
    filters = ReviewFilters(resolved=False if unresolved else None, limit=limit)
    flags = asyncio.run(service.get_manual_review_items(tenant, filters))
    repository.close()

    if not flags:
        typer.echo("No review items found.")
        return
    for flag in flags:
        status = "resolved" if flag.resolved else "open"
        typer.echo(
            f"{flag.id}  {flag.flagged_at:%Y-%m-%d %H:%M}  {flag.severity:<8} "
            f"{flag.reason}  job={flag.job_id}  [{status}]  {flag.description}"
        )


@app.command()
def metrics(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    days: int | None = typer.Option(None, "--days", help="Only the last N days"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """Show processing quality metrics for a tenant."""
    settings = get_settings()
    repository = _open_repository(db, settings)
    service = ErrorHandlingService(repository, repository, settings=settings)
    start = utcnow() - timedelta(days=days) if days else None
    result = asyncio.run(service.get_quality_metrics(tenant, start=start))
    repository.close()

    typer.echo(f"Total processed:        {result.total_processed}")
    typer.echo(f"Successful:             {result.successful_processed}")
    typer.echo(f"Failed:                 {result.failed_processed}")
    typer.echo(f"Requiring review:       {result.manual_review_required}")
    typer.echo(f"Avg confidence:         {result.avg_confidence_score:.2f}")
    typer.echo(f"Avg processing time:    {result.avg_processing_time_ms:.0f} ms")
    for reason in result.common_failure_reasons:
        typer.echo(f"  {reason.count:>4}  {reason.reason}")


@app.command("resolve-review")
def resolve_review(
    flag_id: str = typer.Argument(..., help="Review flag id"),
    by: str = typer.Option(..., "--by", help="Reviewer id"),
    resolution: str = typer.Option(..., "--resolution", help="Resolution note"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """Resolve a manual review flag."""
    settings = get_settings()
    repository = _open_repository(db, settings)
    service = ErrorHandlingService(repository, repository, settings=settings)
    try:
        asyncio.run(service.resolve_manual_review(flag_id, by, resolution))
    except RecordNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        repository.close()
    typer.echo(f"Resolved review flag {flag_id}")


@app.command("resolve-error")
def resolve_error(
    error_id: str = typer.Argument(..., help="Error record id"),
    by: str = typer.Option(..., "--by", help="Operator id"),
    resolution: str | None = typer.Option(None, "--resolution", help="Resolution note"),
    db: Path | None = typer.Option(None, "--db", help="SQLite database path"),
):
    """Mark a logged processing error as resolved."""
    settings = get_settings()
    repository = _open_repository(db, settings)
    service = ErrorHandlingService(repository, repository, settings=settings)
    try:
        asyncio.run(service.resolve_error(error_id, by, resolution))
    except RecordNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        repository.close()
    typer.echo(f"Resolved error {error_id}")


def main():
    app()


if __name__ == "__main__":
    main()
