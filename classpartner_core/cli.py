"""ClassPartner CLI - knowledge base and transcript management."""

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.table import Table

from classpartner_core import __version__
from classpartner_core.config import Settings, get_settings
from classpartner_core.core.logging import setup_logging
from classpartner_core.errors import ClassPartnerError
from classpartner_core.knowledge.chunking import ChunkingConfig, RecursiveChunker
from classpartner_core.knowledge.embeddings import EmbeddingProviderFactory
from classpartner_core.knowledge.indexer import EmbeddingIndexer
from classpartner_core.knowledge.ingestion import ContextIngestionService
from classpartner_core.storage.database import DatabaseManager
from classpartner_core.storage.store import TranscriptStore, format_time

console = Console()


def _format_date(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


@asynccontextmanager
async def open_store(settings: Settings) -> AsyncIterator[TranscriptStore]:
    """Store on the configured database, tables created if missing."""
    db = DatabaseManager(settings.database_url, echo=settings.database_echo)
    store = TranscriptStore(db, search_window=settings.search_window)
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


def run(coro):
    """Run a coroutine, turning library errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except ClassPartnerError as e:
        console.print(f"[red]✗[/red] {e.message}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="classpartner")
@click.option("--database-url", envvar="CLASSPARTNER_DATABASE_URL", default=None,
              help="Database URL (defaults to settings)")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str], debug: bool):
    """ClassPartner - manage class knowledge bases and lecture transcripts.

    \b
    Examples:
      classpartner ingest notes.md --class-id bio101
      classpartner sessions --limit 5
      classpartner transcript 1c9e...
    """
    ctx.ensure_object(dict)

    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})

    # Command output owns stdout
    setup_logging(
        level="DEBUG" if debug else "WARNING",
        format=settings.log_format,
        stream=sys.stderr,
    )
    ctx.obj["settings"] = settings


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database tables."""
    settings: Settings = ctx.obj["settings"]

    async def _init():
        async with open_store(settings):
            pass

    run(_init())
    console.print(f"[green]✓[/green] Database ready at {settings.database_url}")


@cli.command("ingest")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--class-id", "-c", required=True, help="Class id, or 'global' for all classes")
@click.option("--no-embed", is_flag=True, help="Store chunks without embeddings")
@click.pass_context
def ingest(ctx: click.Context, file: Path, class_id: str, no_embed: bool):
    """Add a text document to a class knowledge base."""
    settings: Settings = ctx.obj["settings"]
    text = file.read_text(encoding="utf-8", errors="replace")

    async def _ingest():
        provider = None if no_embed else EmbeddingProviderFactory.from_settings(settings)
        indexer = EmbeddingIndexer(provider, cooldown_s=settings.embed_cooldown_s)
        chunker = RecursiveChunker(
            ChunkingConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)
        )
        try:
            async with open_store(settings) as store:
                service = ContextIngestionService(
                    store,
                    embed_batch=indexer.embed_context_batch,
                    chunker=chunker,
                )
                return await service.ingest(class_id, file.name, text)
        finally:
            await indexer.close()

    try:
        result = run(_ingest())
    except ValueError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)

    if result.duplicate:
        console.print(
            f"[yellow]![/yellow] {file.name} is already in {class_id} "
            f"(source {result.source.id})"
        )
        return

    console.print(f"[green]✓[/green] Ingested {file.name} into {class_id}")
    console.print(f"  Source: {result.source.id}")
    console.print(f"  Chunks: {result.chunk_count} ({result.embedded_count} embedded)")


@cli.command("sources")
@click.option("--class-id", "-c", required=True, help="Class id, or 'global'")
@click.pass_context
def sources(ctx: click.Context, class_id: str):
    """List documents in a class knowledge base."""
    settings: Settings = ctx.obj["settings"]

    async def _list():
        async with open_store(settings) as store:
            return await store.list_sources(class_id)

    items = run(_list())
    if not items:
        console.print(f"No sources for {class_id}")
        return

    table = Table(title=f"Sources: {class_id}")
    table.add_column("ID", style="cyan")
    table.add_column("File")
    table.add_column("Uploaded")
    table.add_column("Hash", style="dim")
    for source in items:
        table.add_row(
            source.id,
            source.file_name,
            _format_date(source.uploaded_at),
            source.content_hash[:12],
        )
    console.print(table)


@cli.command("delete-source")
@click.argument("source_id")
@click.pass_context
def delete_source(ctx: click.Context, source_id: str):
    """Delete a knowledge-base document and its chunks."""
    settings: Settings = ctx.obj["settings"]

    async def _delete():
        async with open_store(settings) as store:
            return await store.delete_source(source_id)

    if run(_delete()):
        console.print(f"[green]✓[/green] Deleted source {source_id}")
    else:
        console.print(f"[red]✗[/red] Source {source_id} not found")
        sys.exit(1)


@cli.command("sessions")
@click.option("--limit", "-l", default=20, show_default=True, help="Maximum sessions to show")
@click.option("--class-id", "-c", default=None, help="Only sessions of this class")
@click.pass_context
def sessions(ctx: click.Context, limit: int, class_id: Optional[str]):
    """List recorded sessions, newest first."""
    settings: Settings = ctx.obj["settings"]

    async def _list():
        async with open_store(settings) as store:
            return await store.list_sessions(limit=limit, class_id=class_id)

    items = run(_list())
    if not items:
        console.print("No sessions recorded")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Class")
    table.add_column("Started")
    table.add_column("Duration")
    table.add_column("Segments", justify="right")
    table.add_column("Words", justify="right")
    for session in items:
        table.add_row(
            session.id,
            session.class_id or "-",
            _format_date(session.start_time),
            format_time(session.duration) if session.duration is not None else "open",
            str(session.segment_count),
            str(session.word_count),
        )
    console.print(table)


@cli.command("transcript")
@click.argument("session_id")
@click.option("--no-timestamps", is_flag=True, help="Print text only")
@click.pass_context
def transcript(ctx: click.Context, session_id: str, no_timestamps: bool):
    """Print the full transcript of a session."""
    settings: Settings = ctx.obj["settings"]

    async def _get():
        async with open_store(settings) as store:
            if await store.get_session(session_id) is None:
                return None
            return await store.get_full_transcript(
                session_id, include_timestamps=not no_timestamps
            )

    text = run(_get())
    if text is None:
        console.print(f"[red]✗[/red] Session {session_id} not found")
        sys.exit(1)
    click.echo(text)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
