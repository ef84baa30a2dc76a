"""Command line interface for fbhash."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from fbhash.config import AppConfig, OutputFormat
from fbhash.errors import CompatibilityError, EmptyCorpusError, FormatError, IoFailure
from fbhash.index.compare import as_percentage, cosine_similarity
from fbhash.index.corpus import CorpusBuilder
from fbhash.index.digest import DigestBuilder
from fbhash.index.indexer import Indexer
from fbhash.index.records import load_corpus, load_digest, save_corpus, save_digest
from fbhash.index.search import Searcher
from fbhash.index.storage import SQLiteDigestStore
from fbhash.models import CorpusModel
from fbhash.utils.files import iter_file_paths


console = Console()
app = typer.Typer(help="fbhash - feature-based similarity hashing for files")

DIGEST_SUFFIX = ".fbd"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{message}[/red]")
    return typer.Exit(code=1)


def _default_digest_path(path: Path, output_format: OutputFormat) -> Path:
    suffix = DIGEST_SUFFIX if output_format is OutputFormat.BINARY else DIGEST_SUFFIX + ".json"
    return path.with_name(path.name + suffix)


def _progress(quiet: bool) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        disable=quiet,
    )


def _load_model(path: Path) -> CorpusModel:
    try:
        return load_corpus(path)
    except (FormatError, IoFailure) as exc:
        raise _fail(f"Cannot load corpus model: {exc}") from exc


def _make_config(**kwargs) -> AppConfig:
    try:
        return AppConfig(**kwargs)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command("build-corpus")
def build_corpus(
    inputs: List[Path] = typer.Argument(..., help="Reference files or directories."),
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the corpus model"),
    output_format: OutputFormat = typer.Option(
        AppConfig().output_format, "--format", help="Record format"
    ),
    window: int = typer.Option(AppConfig().window_size, "--window", help="Chunk length in bytes"),
    hash_name: str = typer.Option(AppConfig().hash_name, "--hash", help="Chunk hash function"),
    workers: Optional[int] = typer.Option(None, "--workers", help="Number of workers"),
    processes: bool = typer.Option(False, "--processes", help="Use worker processes"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide progress output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Build a corpus model from reference files."""
    _setup_logging(verbose)
    config = _make_config(
        window_size=window, hash_name=hash_name, workers=workers, output_format=output_format
    )

    paths = list(iter_file_paths(inputs))
    if not paths:
        raise _fail("No files found.")

    builder = CorpusBuilder(
        config.chunking_scheme(),
        workers=config.workers,
        shard_size=config.shard_size,
        use_processes=processes,
    )
    try:
        with _progress(quiet) as progress:
            task = progress.add_task("Building corpus...", total=len(paths))
            result = builder.build_paths(
                paths, on_progress=lambda done: progress.advance(task, done)
            )
    except EmptyCorpusError as exc:
        for failure in exc.failures:
            console.print(f"[yellow]Failed: {failure.path} ({failure.reason})[/yellow]")
        raise _fail(str(exc)) from exc

    try:
        save_corpus(result.model, output, config.output_format)
    except OSError as exc:
        raise _fail(f"Cannot write corpus model to {output}: {exc}") from exc
    stats = result.stats
    if not quiet:
        for failure in stats.failures:
            console.print(f"[yellow]Failed: {failure.path} ({failure.reason})[/yellow]")
    console.print(
        f"Processed: {stats.processed}, empty: {stats.empty}, failed: {stats.failed}, "
        f"distinct chunks: {len(result.model)}"
    )
    console.print(f"Corpus model [bold]{result.model.fingerprint}[/bold] written to {output}")


@app.command("hash")
def hash_file(
    file: Path = typer.Argument(..., help="File to hash"),
    model: Path = typer.Option(..., "--model", "-m", help="Corpus model file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to write the digest"),
    output_format: OutputFormat = typer.Option(
        AppConfig().output_format, "--format", help="Record format"
    ),
    tf: str = typer.Option(AppConfig().tf_mode, "--tf", help="Term frequency mode: raw or log"),
    unseen: str = typer.Option(
        AppConfig().unseen, "--unseen", help="Chunks missing from the corpus: rare or ignore"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Compute the digest of a file against a corpus model."""
    _setup_logging(verbose)
    config = _make_config(tf_mode=tf, unseen=unseen, output_format=output_format)
    corpus = _load_model(model)

    builder = DigestBuilder(corpus, config.weighting_scheme())
    try:
        digest = builder.digest_file(file)
    except IoFailure as exc:
        raise _fail(str(exc)) from exc

    destination = output or _default_digest_path(file, config.output_format)
    try:
        save_digest(digest, destination, config.output_format)
    except OSError as exc:
        raise _fail(f"Cannot write digest to {destination}: {exc}") from exc
    if digest.is_empty:
        console.print(f"[yellow]{file} has no weighted chunks; its digest is empty.[/yellow]")
    console.print(f"Digest with {len(digest)} features written to {destination}")


@app.command()
def compare(
    first: Path = typer.Argument(..., help="First digest file"),
    second: Path = typer.Argument(..., help="Second digest file"),
    percent: bool = typer.Option(False, "--percent", help="Print the score as a percentage"),
    ignore_provenance: bool = typer.Option(
        False, "--ignore-provenance", help="Compare digests from different corpus models"
    ),
) -> None:
    """Print the similarity of two digests."""
    try:
        left = load_digest(first)
        right = load_digest(second)
        score = cosine_similarity(left, right, check_provenance=not ignore_provenance)
    except (IoFailure, FormatError, CompatibilityError) as exc:
        raise _fail(str(exc)) from exc

    if percent:
        console.print(f"{as_percentage(score):.2f}%")
    else:
        console.print(f"{score:.6f}")


@app.command()
def index(
    inputs: List[Path] = typer.Argument(..., help="Files or directories to index."),
    model: Path = typer.Option(..., "--model", "-m", help="Corpus model file"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    tf: str = typer.Option(AppConfig().tf_mode, "--tf", help="Term frequency mode: raw or log"),
    unseen: str = typer.Option(
        AppConfig().unseen, "--unseen", help="Chunks missing from the corpus: rare or ignore"
    ),
    workers: Optional[int] = typer.Option(None, "--workers", help="Number of workers"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide progress output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Store digests of files in the digest database."""
    _setup_logging(verbose)
    config = _make_config(
        db_path=db if db is not None else AppConfig().db_path,
        tf_mode=tf,
        unseen=unseen,
        workers=workers,
    )
    corpus = _load_model(model)

    paths = list(iter_file_paths(inputs))
    if not paths:
        console.print("[yellow]No files found.[/yellow]")
        return

    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)
    store = SQLiteDigestStore(resolved_db)
    indexer = Indexer(DigestBuilder(corpus, config.weighting_scheme()), store, workers=config.workers)

    console.print(f"Indexing into [bold]{resolved_db}[/bold]...")
    try:
        with _progress(quiet) as progress:
            task = progress.add_task("Hashing files...", total=len(paths))
            stats = indexer.index(paths, on_progress=lambda done: progress.advance(task, done))
    except CompatibilityError as exc:
        raise _fail(str(exc)) from exc
    finally:
        store.close()

    console.print(
        f"Inserted: {stats.inserted}, updated: {stats.updated}, "
        f"skipped: {stats.skipped}, failed: {stats.failed}"
    )


@app.command()
def query(
    files: List[Path] = typer.Argument(..., help="Files to look up"),
    model: Path = typer.Option(..., "--model", "-m", help="Corpus model file"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    top_k: int = typer.Option(10, help="Number of results to display"),
    tf: str = typer.Option(AppConfig().tf_mode, "--tf", help="Term frequency mode: raw or log"),
    unseen: str = typer.Option(
        AppConfig().unseen, "--unseen", help="Chunks missing from the corpus: rare or ignore"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Find the stored files most similar to each query file."""
    _setup_logging(verbose)
    config = _make_config(
        db_path=db if db is not None else AppConfig().db_path, tf_mode=tf, unseen=unseen
    )
    resolved_db = config.resolve_db_path(Path.cwd())

    if not resolved_db.exists():
        raise typer.BadParameter(f"Database not found: {resolved_db}")

    corpus = _load_model(model)
    store = SQLiteDigestStore(resolved_db)
    searcher = Searcher(DigestBuilder(corpus, config.weighting_scheme()), store)

    try:
        for file in files:
            try:
                results = searcher.search(file, top_k=top_k)
            except (IoFailure, CompatibilityError) as exc:
                raise _fail(str(exc)) from exc

            if not results:
                console.print(f"[yellow]No matches found for {file}.[/yellow]")
                continue

            table = Table(title=str(file), show_header=True, header_style="bold magenta")
            table.add_column("Score")
            table.add_column("Document")
            for result in results:
                table.add_row(f"{as_percentage(result.score):.2f}%", str(result.path))
            console.print(table)
    finally:
        store.close()


@app.command()
def prune(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Remove database entries whose files no longer exist on disk."""
    config = AppConfig(db_path=db if db is not None else AppConfig().db_path)
    resolved_db = config.resolve_db_path(Path.cwd())

    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to prune.[/yellow]")
        return

    store = SQLiteDigestStore(resolved_db)
    try:
        removed = store.remove_missing_files()
    finally:
        store.close()
    console.print(f"Removed {removed} orphaned documents.")


if __name__ == "__main__":
    app()
