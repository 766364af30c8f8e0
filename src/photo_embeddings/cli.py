"""Command line entry point for indexing and querying the photo library."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import typer

from photo_embeddings.assets import sort_refs
from photo_embeddings.config import Settings, load_settings
from photo_embeddings.context import IndexContext, open_context
from photo_embeddings.duplicates import find_duplicates
from photo_embeddings.maintenance import cleanup_orphans, embedding_stats, reset_watermark
from photo_embeddings.scanner import IncrementalScanner
from photo_embeddings.similarity import find_similar
from photo_embeddings.stacks import StackBuilder
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "cli"})

app = typer.Typer(help="Build and query a local photo embedding index.", no_args_is_help=True)

_state: dict[str, object] = {}


def _apply_cli_overrides(
    settings: Settings,
    roots: list[Path] | None,
    backend: str | None,
    device: str | None,
) -> Settings:
    """Return a copy of ``settings`` with CLI overrides applied."""

    library = settings.library
    if roots:
        library = replace(library, roots=[str(root) for root in roots])

    embedding = settings.embedding
    if backend:
        if backend not in {"siglip", "histogram"}:
            raise typer.BadParameter(f"unsupported backend {backend!r}", param_hint="--backend")
        embedding = replace(embedding, backend=backend)
    if device:
        embedding = replace(embedding, device=device)

    return replace(settings, library=library, embedding=embedding)


@app.callback()
def main(
    root: list[Path] | None = typer.Option(
        None,
        "--root",
        file_okay=False,
        dir_okay=True,
        help="Album root directory. May be specified multiple times; defaults to library.roots in settings.yaml.",
    ),
    db: str | None = typer.Option(
        None,
        "--db",
        help="Database URL or path. Defaults to databases.url in settings.yaml.",
    ),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        dir_okay=False,
        help="Settings file; defaults to $PHOTO_EMBEDDINGS_SETTINGS or config/settings.yaml.",
    ),
    backend: str | None = typer.Option(
        None,
        "--backend",
        help="Feature extractor backend override: siglip or histogram.",
    ),
    device: str | None = typer.Option(
        None,
        "--device",
        help="Override the model device from settings.yaml, for example cpu, cuda, or mps.",
    ),
) -> None:
    """Photo embedding index."""

    settings = _apply_cli_overrides(load_settings(settings_path), root, backend, device)
    _state["settings"] = settings
    _state["db"] = db


def _context() -> IndexContext:
    settings = _state.get("settings")
    if not isinstance(settings, Settings):
        settings = load_settings()
    database_url = _state.get("db")
    return open_context(settings, database_url=database_url if isinstance(database_url, str) else None)


@app.command()
def scan(
    reset: bool = typer.Option(False, "--reset", help="Forget the watermark and rescan the whole library first."),
) -> None:
    """Compute embeddings for photos newer than the scan watermark."""

    ctx = _context()
    if reset:
        reset_watermark(ctx)

    with typer.progressbar(length=0, label="Embedding") as bar:
        last = 0

        def _progress(processed: int, total: int) -> None:
            nonlocal last
            bar.length = total
            bar.update(processed - last)
            last = processed

        report = IncrementalScanner(ctx).run(progress=_progress)

    typer.echo(
        f"processed={report.processed}/{report.total} computed={report.computed} cached={report.cached} "
        f"failed={report.failed} skipped_permanent={report.skipped_permanent} "
        f"persist_failures={report.persist_failures} watermark={report.watermark}"
    )
    for photo_id in report.failed_ids:
        typer.echo(f"failed: {photo_id}", err=True)


@app.command()
def similar(
    photo_id: str = typer.Argument(..., help="Photo id (absolute path) to search around."),
    threshold: float | None = typer.Option(None, "--threshold", "-t", help="Minimum cosine similarity."),
    limit: int | None = typer.Option(None, "--limit", "-n", help="Maximum number of results."),
) -> None:
    """List stored photos most similar to PHOTO_ID."""

    ctx = _context()
    report = find_similar(ctx, photo_id, threshold=threshold, limit=limit)
    if report.target is not None and not report.target.ok and not report.results:
        typer.echo(f"could not embed {photo_id}: {report.target.error}", err=True)
        raise typer.Exit(code=1)

    for hit in report.results:
        typer.echo(f"{hit.similarity:.4f}\t{hit.photo_id}")
    LOGGER.info(
        "cli_similar_complete",
        extra={"photo_id": photo_id, "results": len(report.results), "total_seconds": round(report.total_seconds, 3)},
    )


@app.command()
def duplicates(
    threshold: float | None = typer.Option(None, "--threshold", "-t", help="Minimum cosine similarity."),
) -> None:
    """Print groups of near-identical photos."""

    ctx = _context()
    groups = find_duplicates(ctx, threshold=threshold)
    for index, group in enumerate(groups, start=1):
        typer.echo(f"group {index} ({group.count} photos)")
        typer.echo(f"  original  {group.original}")
        for photo_id in group.duplicates:
            typer.echo(f"  duplicate {photo_id}\t{group.similarities.get(photo_id, 0.0):.4f}")


@app.command()
def stacks(
    oldest_first: bool = typer.Option(True, "--oldest-first/--newest-first", help="Creation-time order to stack in."),
) -> None:
    """Group consecutive near-identical captures and persist stack ids."""

    ctx = _context()
    photos = sort_refs(ctx.assets.enumerate(newest_first=False), newest_first=not oldest_first)

    def _missing() -> None:
        typer.echo("no embeddings stored yet; run `scan` first", err=True)

    built = StackBuilder(ctx, on_missing_embeddings=_missing).build(photos)
    for stack in built:
        if stack.stack_id is None:
            continue
        typer.echo(f"stack {stack.stack_id} ({len(stack)} photos)")
        for photo_id in stack.photo_ids:
            typer.echo(f"  {photo_id}")


@app.command()
def stats() -> None:
    """Show embedding coverage for the library."""

    result = embedding_stats(_context())
    typer.echo(
        f"{result.photos_with_embeddings}/{result.total_photos} photos embedded "
        f"({result.coverage_percentage}%), watermark={result.watermark}"
    )


@app.command()
def cleanup() -> None:
    """Delete embeddings for photos that no longer exist."""

    removed = cleanup_orphans(_context())
    typer.echo(f"removed {removed} orphaned embeddings")


@app.command("reset-watermark")
def reset_watermark_command() -> None:
    """Forget the scan watermark so the next scan covers every photo."""

    reset_watermark(_context())
    typer.echo("watermark reset")


if __name__ == "__main__":
    app()


__all__ = ["app"]
