"""
Command-line interface for the audio stream gateway.

Runs the HTTP server and offers a few maintenance commands using Click.
"""

import logging
import time

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from shared.config import GatewayConfig
from shared.content_id import extract_content_id, parse_content_id
from shared.errors import GatewayError
from shared.models import Hit, MissFailed, MissInProgress, MissStarted
from store.provider_factory import StorageProviderFactory
from . import __version__
from .coordinator import CacheCoordinator
from .origin import OriginFetcher
from .transcoder import Transcoder

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def build_coordinator(config: GatewayConfig):
    """Wire store, fetcher and transcoder from the configuration."""
    store = StorageProviderFactory.create(config)
    fetcher = OriginFetcher(yt_dlp_binary=config.yt_dlp_binary, cookies_file=config.cookies_file)
    transcoder = Transcoder(ffmpeg_binary=config.ffmpeg_binary, bitrate=config.audio_bitrate)
    coordinator = CacheCoordinator(
        store,
        fetcher,
        transcoder,
        signed_url_ttl=config.signed_url_ttl,
        max_concurrent_jobs=config.max_concurrent_jobs,
        job_timeout=config.job_timeout,
    )
    return coordinator, store


def _load_config() -> GatewayConfig:
    try:
        config = GatewayConfig.from_env()
    except GatewayError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)
    configure_logging(config.log_level)
    return config


@click.group(name='gateway')
@click.version_option(version=__version__)
def cli():
    """
    Audio stream gateway

    Serves cached audio from R2 / S3 / a local directory and fills the cache
    on demand with yt-dlp and ffmpeg.
    """
    pass


@cli.command()
@click.option('--host', default='0.0.0.0', help='Interface to bind')
@click.option('--port', default=None, type=int, help='Port (defaults to PORT or 3000)')
def serve(host, port):
    """Run the HTTP server."""
    from shared.api import create_app

    config = _load_config()
    coordinator, store = build_coordinator(config)
    app = create_app(coordinator, store)
    port = port or config.port
    logger.info(f"Gateway listening on {host}:{port} ({StorageProviderFactory.get_provider_name(config.backend)})")
    try:
        app.run(host=host, port=port, threaded=True)
    finally:
        coordinator.shutdown(wait=False)


@cli.command()
@click.argument('candidate')
@click.option('--wait/--no-wait', default=True, help='Wait for a started job to finish')
@click.option('--timeout', default=None, type=float, help='Seconds to wait for the job')
def resolve(candidate, wait, timeout):
    """Resolve a content id (or URL), caching it if needed."""
    config = _load_config()
    try:
        content_id = parse_content_id(candidate)
    except GatewayError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(2)

    coordinator, _ = build_coordinator(config)
    try:
        resolution = coordinator.resolve(content_id)
        if isinstance(resolution, (MissStarted, MissInProgress)) and wait:
            started = time.time()
            with console.status(f"Caching {content_id}..."):
                finished = coordinator.wait_for(content_id, timeout)
            if finished:
                console.print(f"Job finished in {time.time() - started:.1f}s")
                resolution = coordinator.resolve(content_id)
    finally:
        coordinator.shutdown(wait=True)

    if isinstance(resolution, Hit):
        console.print(f"[green]✓[/green] Cached at [cyan]{resolution.storage_key}[/cyan]")
        console.print(resolution.locator)
    elif isinstance(resolution, MissFailed):
        console.print(f"[red]❌ {resolution.error}[/red]")
        raise SystemExit(1)
    else:
        console.print(f"[yellow]Caching {content_id} in progress[/yellow]")


@cli.command()
def tracks():
    """List cached tracks."""
    config = _load_config()
    store = StorageProviderFactory.create(config)
    records = store.list_metadata()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Content ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Duration", justify="right")
    table.add_column("Cached", style="dim")
    for record in records:
        duration = ""
        if record.duration_seconds is not None:
            minutes, seconds = divmod(int(record.duration_seconds), 60)
            duration = f"{minutes}:{seconds:02d}"
        table.add_row(record.content_id, record.title, record.author, duration, record.created_at)

    console.print(table)
    console.print(f"{len(records)} track(s)")


@cli.command('parse-id')
@click.argument('value')
def parse_id(value):
    """Print the content id contained in VALUE."""
    content_id = extract_content_id(value)
    if content_id is None:
        console.print(f"[red]No content id in {value!r}[/red]")
        raise SystemExit(2)
    click.echo(content_id)


if __name__ == '__main__':
    cli()
