"""
Command line for the read-through cache.

    readthrough demo        Cold read, warm read, committed write, reload
    readthrough stampede    Many threads miss one key; count database queries
    readthrough config      Show effective settings
"""

import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, List, Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .cache import (
    CacheError,
    InMemoryBackend,
    KeyValueBackend,
    PydanticSerializer,
    ReadThroughCache,
    ValkeyBackend,
    ValkeyConfig,
)
from .config import load_settings
from .logging import setup_logging
from .models import CATS_KEY, Cat, CatRead, CatRepository, create_demo_engine
from .services import InvalidationRegistry

app = typer.Typer(help="Read-through cache with single-flight loading")
console = Console()

cats_serializer = PydanticSerializer(List[CatRead])


class BackendChoice(str, Enum):
    memory = "memory"
    valkey = "valkey"


def build_backend(choice: BackendChoice) -> KeyValueBackend:
    """Create the store selected on the command line; Valkey is connected with retries."""
    if choice == BackendChoice.valkey:
        backend = ValkeyBackend(ValkeyConfig.from_env())
        backend.connect()
        return backend
    return InMemoryBackend()


def seed_cats(repository: CatRepository) -> None:
    repository.add_cat("Tom", "grey")
    repository.add_cat("Felix", "black")


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Logging level, defaults to READTHROUGH_LOG_LEVEL"
    ),
) -> None:
    """Configure logging for every command."""
    if log_level is None:
        try:
            log_level = load_settings().log_level
        except ValueError as e:
            console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
            raise typer.Exit(code=1)
    setup_logging(log_level)


@app.command()
def demo(
    backend: BackendChoice = typer.Option(BackendChoice.memory, help="Cache store"),
    ttl: float = typer.Option(10800.0, help="TTL in seconds for the cats list"),
) -> None:
    """Walk through cache-aside reads and commit-time invalidation."""
    settings = load_settings()
    repository = CatRepository(create_demo_engine())
    seed_cats(repository)

    try:
        with ReadThroughCache(build_backend(backend), settings, cats_serializer) as cache:
            registry = InvalidationRegistry(cache)
            registry.register(Cat, CATS_KEY)
            registry.attach(repository.session_factory)
            cache.invalidate(CATS_KEY)

            table = Table(title="Cache-aside walkthrough", box=box.ROUNDED, show_lines=True)
            table.add_column("Step", style="cyan bold")
            table.add_column("Cats", style="white")
            table.add_column("DB queries", justify="right")

            def step(label: str) -> None:
                cats = cache.fetch(CATS_KEY, repository.list_cats, ttl)
                names = ", ".join(cat.name for cat in cats)
                table.add_row(label, names, str(repository.queries))

            step("1. Cold fetch (miss, loads)")
            step("2. Warm fetch (hit)")
            repository.add_cat("Garfield", "orange")
            step("3. Fetch after commit (hook invalidated, reloads)")
            step("4. Warm fetch (hit)")

            registry.detach_all()
            console.print(table)
            console.print(_stats_table(cache.get_stats()))
    except CacheError as e:
        console.print(f"[red]Cache error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)


@app.command()
def stampede(
    requests: int = typer.Option(50, min=1, max=10000, help="Concurrent fetches of one key"),
    threads: int = typer.Option(20, min=1, max=200, help="Worker threads"),
    latency_ms: int = typer.Option(200, min=0, help="Simulated database latency"),
    timeout: Optional[float] = typer.Option(None, help="Waiter deadline in seconds"),
    backend: BackendChoice = typer.Option(BackendChoice.memory, help="Cache store"),
) -> None:
    """Fire many concurrent fetches at one cold key."""
    settings = load_settings()
    repository = CatRepository(create_demo_engine(), latency=latency_ms / 1000.0)
    seed_cats(repository)
    key = f"stampede:{CATS_KEY}"

    try:
        with ReadThroughCache(build_backend(backend), settings, cats_serializer) as cache:
            cache.invalidate(key)

            def worker(_: int) -> str:
                try:
                    cache.fetch(key, repository.list_cats, 60, timeout=timeout)
                    return "ok"
                except CacheError as e:
                    return type(e).__name__

            start = time.time()
            with ThreadPoolExecutor(max_workers=threads) as pool:
                outcomes = list(pool.map(worker, range(requests)))
            elapsed = time.time() - start

            stats = cache.get_stats()
    except CacheError as e:
        console.print(f"[red]Cache error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    failures = len(outcomes) - outcomes.count("ok")

    table = Table(title="Stampede results", box=box.ROUNDED, show_lines=True)
    table.add_column("Metric", style="cyan bold")
    table.add_column("Value", justify="right")
    table.add_row("Requests", str(requests))
    table.add_row("Database queries", f"[cyan bold]{repository.queries}[/cyan bold]")
    table.add_row("Cache hits", str(stats["hit_count"]))
    table.add_row("Coalesced waits", str(stats["coalesced_waits"]))
    table.add_row("Failures", f"[red]{failures}[/red]" if failures else "0")
    table.add_row("Elapsed", f"{elapsed:.3f}s")
    console.print(table)

    if repository.queries == 1:
        console.print(Panel.fit("[green bold]Stampede prevented[/green bold]", box=box.DOUBLE))
    else:
        console.print(Panel.fit(f"[red bold]{repository.queries} database queries[/red bold]", box=box.DOUBLE))


@app.command()
def config() -> None:
    """Print the effective cache and Valkey settings."""
    try:
        settings = load_settings()
        valkey_config = ValkeyConfig.from_env()
    except (ValueError, CacheError) as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"readthrough {__version__}", box=box.ROUNDED, show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in settings.model_dump(mode="json").items():
        table.add_row(name, str(value))
    table.add_row("valkey", str(valkey_config))
    console.print(table)


def _stats_table(stats: Dict[str, object]) -> Table:
    table = Table(title="Cache statistics", box=box.ROUNDED)
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in stats.items():
        if isinstance(value, float):
            value = f"{value:.2f}"
        table.add_row(name, str(value))
    return table


if __name__ == "__main__":
    app()
