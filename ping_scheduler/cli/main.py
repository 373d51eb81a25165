"""
CLI interface for Ping Scheduler.

Provides command-line access to the scheduling engine, the ping history and
the usage velocity report.
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ping_scheduler.config.loader import (
    DEFAULT_CONFIG_PATH,
    PingMethod,
    ScheduleMode,
    Settings,
    load_settings,
)
from ping_scheduler.core.engine import PingEngine
from ping_scheduler.core.interfaces import PingExecutor
from ping_scheduler.core.scheduler import Scheduler
from ping_scheduler.core.usage import UsageFeed
from ping_scheduler.core.velocity import VelocityTracker
from ping_scheduler.core.window import compute_next_fire, is_allowed_now
from ping_scheduler.sdk.cli_executor import ClaudeCliExecutor
from ping_scheduler.sdk.openai_executor import OpenAIPingExecutor
from ping_scheduler.sdk.usage_client import ClaudeUsageClient, UsagePoller
from ping_scheduler.sdk.web_executor import ClaudeWebPingExecutor
from ping_scheduler.storage.repository import (
    PingHistoryRepository,
    SampleRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_ERRORS = (FileNotFoundError, ValueError, yaml.YAMLError)

config_option = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    help="Path to the YAML settings file"
)


def _load_or_exit(config_path: str, required: bool = False) -> Settings:
    """Load settings, falling back to defaults when an optional file is absent."""
    try:
        return load_settings(config_path)
    except FileNotFoundError as e:
        if required:
            console.print(f"[red]Error loading settings:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        return Settings()
    except CONFIG_ERRORS as e:
        console.print(f"[red]Error loading settings:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    """Console logging through rich plus a size-capped log file."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [RichHandler(console=console, show_path=False)]

    if settings.storage.log_file:
        file_handler = RotatingFileHandler(
            settings.storage.log_file,
            maxBytes=settings.storage.max_log_size_mb * 1024 * 1024,
            backupCount=1,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))
        handlers.append(file_handler)

    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)


def build_usage_client(settings: Settings) -> Optional[ClaudeUsageClient]:
    """Web session client when usage credentials are configured."""
    usage = settings.usage
    if not usage.enabled:
        return None
    return ClaudeUsageClient(usage.org_id, usage.session_key)


def build_executor(
    settings: Settings,
    usage_client: Optional[ClaudeUsageClient] = None
) -> PingExecutor:
    """Executor for the configured ping method.

    Raises:
        ValueError: If the api method is chosen without usage credentials
    """
    method = settings.ping.method
    if method is PingMethod.OPENAI:
        return OpenAIPingExecutor(base_url=settings.ping.api_base_url)
    if method is PingMethod.API:
        client = usage_client or build_usage_client(settings)
        if client is None:
            raise ValueError(
                f"ping method 'api' needs usage.org_id and \${settings.usage.session_key_env}"
            )
        return ClaudeWebPingExecutor(client)
    return ClaudeCliExecutor(settings.ping.claude_path)


def build_usage_source(
    settings: Settings,
    usage_client: Optional[ClaudeUsageClient] = None
) -> UsageFeed:
    """Polling source when a usage client is available, else a silent feed."""
    if usage_client is None:
        logger.info("Usage polling disabled: set usage.org_id and $%s", settings.usage.session_key_env)
        return UsageFeed()
    return UsagePoller(usage_client, settings.usage.poll_seconds)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Ping Scheduler CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Ping Scheduler - Use --help to see available commands")


@app.command()
def init(config: str = config_option):
    """Initialize the Ping Scheduler database."""
    settings = _load_or_exit(config)
    try:
        initialize_schema(settings.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


async def _serve(config_path: str, settings: Settings) -> None:
    loop = asyncio.get_running_loop()
    db_path = settings.storage.db_path
    usage_client = build_usage_client(settings)
    engine = PingEngine(
        settings,
        executor=build_executor(settings, usage_client),
        history=PingHistoryRepository(db_path),
        usage_source=build_usage_source(settings, usage_client),
        sample_store=SampleRepository(db_path),
    )
    stop_requested = asyncio.Event()

    def reload_settings() -> None:
        try:
            new_settings = load_settings(config_path)
        except CONFIG_ERRORS as e:
            logger.error("Settings reload failed, keeping current settings: %s", e)
            return
        logger.info("Settings reloaded from %s", config_path)
        engine.apply_settings(new_settings)

    handlers = {
        "SIGINT": stop_requested.set,
        "SIGTERM": stop_requested.set,
        "SIGUSR1": engine.on_suspend,
        "SIGUSR2": engine.on_resume,
        "SIGHUP": reload_settings,
    }
    for name, handler in handlers.items():
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, handler)
        except NotImplementedError:
            logger.warning("Signal %s not supported on this platform", name)

    engine.start()
    await stop_requested.wait()
    await engine.shutdown()


@app.command()
def run(
    config: str = config_option,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output"
    )
):
    """
    Run the scheduler until interrupted.

    Signals: SIGUSR1 = system going to sleep, SIGUSR2 = system woke up,
    SIGHUP = reload settings, SIGINT/SIGTERM = stop.
    """
    settings = _load_or_exit(config)
    configure_logging(settings, verbose)
    try:
        initialize_schema(settings.storage.db_path)
        asyncio.run(_serve(config, settings))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ping(config: str = config_option):
    """Send one ping now and record it in the history."""
    settings = _load_or_exit(config)
    try:
        initialize_schema(settings.storage.db_path)
        scheduler = Scheduler(
            settings,
            build_executor(settings),
            PingHistoryRepository(settings.storage.db_path),
        )
        outcome = asyncio.run(scheduler.ping_now())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if outcome.ok:
        console.print(f"[green]✓[/] Ping succeeded in {outcome.duration_seconds:.1f}s")
        if outcome.response:
            console.print(f"[dim]{outcome.response}[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] Ping failed: {outcome.error_text}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def schedule(config: str = config_option):
    """Show when the next regular ping would fire."""
    settings = _load_or_exit(config)
    sched = settings.schedule
    now = datetime.now()
    next_fire = compute_next_fire(now, sched)

    console.print("\n[bold]Schedule[/bold]")
    console.print("-" * 40)
    console.print(f"Enabled: {'yes' if sched.enabled else 'no'}")
    if sched.mode is ScheduleMode.TIME_WINDOW:
        window = f"{sched.window_start.strftime('%H:%M')}-{sched.window_end.strftime('%H:%M')}"
        inside = "inside" if is_allowed_now(now, sched) else "outside"
        console.print(f"Mode: time window {window} (now {inside})")
    else:
        console.print("Mode: all day")
    console.print(f"Interval: {sched.interval_minutes} min")
    console.print(f"Next ping: {next_fire.strftime('%Y-%m-%d %H:%M:%S')}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    config: str = config_option,
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Number of records to show"
    ),
    pings_only: bool = typer.Option(
        False,
        "--pings-only",
        help="Hide system events"
    )
):
    """Show recent pings and system events."""
    settings = _load_or_exit(config)
    try:
        initialize_schema(settings.storage.db_path)
        records = PingHistoryRepository(settings.storage.db_path).fetch_recent(
            limit=limit, include_system=not pings_only
        )
    except Exception as e:
        console.print(f"[red]Error reading history:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("[dim]No history yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Ping History")
    table.add_column("Time")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Details")

    for record in records:
        if record.is_system_event:
            table.add_row(
                record.timestamp.strftime("%Y-%m-%d %H:%M:%S"), "-", "[blue]system[/]", "-", record.response
            )
            continue
        status = "[green]ok[/]" if record.status == "success" else "[red]error[/]"
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.trigger or "-",
            status,
            f"{record.duration_seconds:.1f}s",
            record.error_text or record.response,
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def velocity(config: str = config_option):
    """Show usage velocity and time remaining in the session."""
    settings = _load_or_exit(config)
    initialize_schema(settings.storage.db_path)
    tracker = VelocityTracker(SampleRepository(settings.storage.db_path))
    report = tracker.report

    console.print("\n[bold]Usage Velocity[/bold]")
    console.print("-" * 40)
    if report.calculating:
        console.print(f"[dim]Not enough samples yet ({report.total_sample_count}); calculating...[/]")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"Session utilization: {report.current_utilization:.1f}%")
    console.print(f"Session velocity: {report.session_velocity_text}")
    console.print(f"7-day velocity: {report.weekly_velocity_text}")
    console.print(f"All-time velocity: {report.all_time_velocity_text}")
    console.print(f"Time remaining: {report.time_remaining_text}")
    console.print(f"Detected model: {report.detected_model or 'unknown'}")
    if report.advisory is not None:
        console.print(f"\n[bold yellow]Advisory:[/] {report.advisory.message}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
