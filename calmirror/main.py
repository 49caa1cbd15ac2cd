from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from calmirror.config_manager import ConfigManager
from calmirror.models import SyncResult
from calmirror.scheduler import SyncScheduler
from calmirror.state_store import StateStore
from calmirror.sync_engine import SyncEngine
from calmirror.web_admin import DEFAULT_CONFIG_PATH, DEFAULT_STATE_PATH, create_app

logger = logging.getLogger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="One-way calendar mirror: ICS feeds, Google and Microsoft calendars into one destination calendar.",
)

console = Console()


@dataclass
class _State:
    config_path: Path = Path(DEFAULT_CONFIG_PATH)
    state_db: Path = Path(DEFAULT_STATE_PATH)
    verbose: bool = False


state = _State()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", envvar="CALMIRROR_CONFIG_PATH", help="YAML config file path"),
    ] = Path(DEFAULT_CONFIG_PATH),
    state_db: Annotated[
        Path,
        typer.Option("--state-db", envvar="CALMIRROR_STATE_PATH", help="SQLite state database path"),
    ] = Path(DEFAULT_STATE_PATH),
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


def _build_engine() -> tuple[ConfigManager, SyncEngine]:
    config_manager = ConfigManager(state.config_path)
    state_store = StateStore(str(state.state_db))
    return config_manager, SyncEngine(config_manager, state_store)


def _print_result(result: SyncResult) -> None:
    table = Table(title=f"Sync {result.status} ({result.duration_ms} ms)")
    table.add_column("Subscription", style="cyan")
    table.add_column("Status")
    table.add_column("Fetched", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Message")
    for outcome in result.outcomes:
        metrics = outcome.result.metrics if outcome.result else None
        table.add_row(
            outcome.subscription_id,
            "[green]ok[/]" if outcome.ok else "[red]error[/]",
            str(metrics.fetched) if metrics else "-",
            str(metrics.created) if metrics else "-",
            str(metrics.updated) if metrics else "-",
            str(metrics.deleted) if metrics else "-",
            outcome.message,
        )
    console.print(table)
    if not result.outcomes:
        console.print(result.message)


@app.command()
def once(
    subscription: Annotated[
        Optional[list[str]],
        typer.Option("--subscription", "-s", help="Only sync these subscription ids"),
    ] = None,
) -> None:
    """Run one sync batch and exit non-zero if any subscription failed."""
    _, engine = _build_engine()
    result = engine.run_once(trigger="cli", subscription_ids=subscription or None)
    _print_result(result)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def health() -> None:
    """Check that the destination and every enabled source are reachable."""
    _, engine = _build_engine()
    checks = engine.health_check()
    table = Table(title="Health")
    table.add_column("Target", style="cyan")
    table.add_column("Result")
    table.add_column("Message")
    for check in checks:
        table.add_row(check["target"], "[green]ok[/]" if check["ok"] else "[red]fail[/]", check["message"])
    console.print(table)
    if not all(check["ok"] for check in checks):
        raise typer.Exit(code=1)


@app.command()
def start(
    no_initial_run: Annotated[bool, typer.Option("--no-initial-run", help="Wait one interval before syncing")] = False,
) -> None:
    """Sync on a fixed interval until SIGINT/SIGTERM."""
    config_manager, engine = _build_engine()
    scheduler = SyncScheduler(engine, config_manager)
    stopping = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("Received %s, waiting for the running batch to finish", signal.Signals(signum).name)
        stopping.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    scheduler.start(run_immediately=not no_initial_run)
    logger.info("Scheduler started, interval %ss", config_manager.load().sync.interval_seconds)
    while not stopping.wait(timeout=1.0):
        pass
    scheduler.stop()
    logger.info("Scheduler stopped")


@app.command()
def serve(
    host: Annotated[str, typer.Option(envvar="CALMIRROR_HOST")] = "0.0.0.0",
    port: Annotated[int, typer.Option(envvar="CALMIRROR_PORT")] = 8080,
) -> None:
    """Serve the admin API with the scheduler running in the background."""
    uvicorn.run(create_app(str(state.config_path), str(state.state_db)), host=host, port=port, reload=False)


@app.command()
def cleanup(
    subscription: Annotated[
        Optional[str],
        typer.Option("--subscription", "-s", help="Only remove events mirrored by this subscription"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt")] = False,
) -> None:
    """Delete every destination event this tool created, identified by its private metadata."""
    scope = f"subscription {subscription!r}" if subscription else "all subscriptions"
    if not yes and not typer.confirm(f"Delete mirrored events for {scope}?"):
        raise typer.Abort()
    _, engine = _build_engine()
    deleted = engine.cleanup(subscription)
    console.print(f"Removed [bold]{deleted}[/] managed events.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
