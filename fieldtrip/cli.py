from __future__ import annotations

import asyncio
import importlib.metadata as md
import logging
import signal
from pathlib import Path
from typing import Any, Coroutine, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import (
    FieldtripConfig,
    SourceEnum,
    load_config,
    load_config_or_default,
    resolve_config_path,
)
from .core.events import EventBus, TripEvent, TripEventType
from .core.formatting import describe_distance_delta, format_distance, format_duration
from .core.tracker import TripResult, TripTracker
from .domain.errors import EstimationError, PermissionDeniedError, PersistenceError
from .domain.models import FinishedSessionRecord
from .infrastructure.gps.position_source import (
    GpsdPositionSource,
    GpsdSettings,
    MockPositionSource,
    ReplayPositionSource,
    SampleThrottle,
    StreamingPositionSource,
    load_samples,
)
from .infrastructure.routing.estimator import (
    DistanceMatrixEstimator,
    EstimationSource,
    MapsSettings,
    MockEstimator,
    estimate_route,
)
from .infrastructure.storage.session_store import SqliteSessionStore

# Typer application: tests import this
app = typer.Typer(no_args_is_help=True, add_completion=False, help="fieldtrip CLI")
console = Console()
logger = logging.getLogger(__name__)

T = TypeVar("T")


def _setup(config: Path | None) -> FieldtripConfig:
    """Load configuration and configure root logging from it."""
    try:
        cfg = load_config_or_default(config)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Config error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    logging.basicConfig(
        level=cfg.logging.level,
        format=cfg.logging.format,
        datefmt=cfg.logging.datefmt,
    )
    return cfg


def _build_estimator(cfg: FieldtripConfig) -> EstimationSource:
    est = cfg.estimation
    if est.use_mock:
        return MockEstimator(delay=est.mock_delay_s)
    return DistanceMatrixEstimator(
        MapsSettings(
            api_key=est.api_key,
            distance_matrix_url=est.distance_matrix_url,
            geocoding_url=est.geocoding_url,
            timeout=est.timeout,
        )
    )


def _build_source(
    cfg: FieldtripConfig, source: SourceEnum | None, replay: Path | None
) -> StreamingPositionSource:
    # Mock and replay sources deliver every sample; only real fixes are throttled.
    if replay is not None:
        return ReplayPositionSource(load_samples(replay), interval=cfg.gps.mock_interval_s)

    gps = cfg.gps
    if (source or gps.source) is SourceEnum.GPSD:
        throttle = SampleThrottle(
            min_distance_m=cfg.tracking.distance_interval_m,
            min_interval_s=cfg.tracking.time_interval_s,
        )
        return GpsdPositionSource(
            GpsdSettings(
                host=gps.host,
                port=gps.port,
                reconnect_delay=gps.reconnect_delay,
                timeout=gps.timeout,
                max_reconnect_attempts=gps.max_reconnect_attempts,
            ),
            throttle=throttle,
        )
    return MockPositionSource(
        start_lat=gps.mock_lat,
        start_lon=gps.mock_lon,
        speed_mps=gps.mock_speed_mps,
        interval=gps.mock_interval_s,
    )


def _build_store(cfg: FieldtripConfig) -> SqliteSessionStore:
    return SqliteSessionStore(cfg.storage.db_path, storage_key=cfg.storage.storage_key)


def _query_store(call: Coroutine[Any, Any, T]) -> T:
    """Run one store call; unreadable storage ends the command with exit code 1."""
    try:
        return asyncio.run(call)
    except PersistenceError as exc:
        console.print(f"[red]Trip store error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc


def _record_table(record: FinishedSessionRecord) -> Table:
    table = Table(title=f"Trip {record.id}", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("From", record.from_address)
    table.add_row("To", record.to_address)
    table.add_row(
        "Distance",
        f"{format_distance(record.actual_distance_km)} / {format_distance(record.estimated_distance_km)}",
    )
    table.add_row(
        "Deviation",
        describe_distance_delta(record.actual_distance_km, record.estimated_distance_km),
    )
    table.add_row(
        "Time",
        f"{format_duration(record.actual_time_min)} / {format_duration(record.estimated_duration_min)}",
    )
    table.add_row("Pause", format_duration(record.pause_duration_min))
    table.add_row(
        "Total",
        f"{format_duration(record.total_time_min)} (incl. {format_duration(record.pause_duration_min)} pause)",
    )
    table.add_row("GPS points", str(record.sample_count))
    table.add_row("Started", record.start_time.isoformat(timespec="seconds"))
    table.add_row("Ended", record.end_time.isoformat(timespec="seconds"))
    return table


@app.command()
def version() -> None:
    """Print version information."""
    try:
        console.print(f"fieldtrip {md.version('fieldtrip')}")
    except md.PackageNotFoundError:
        from . import __version__

        console.print(f"fieldtrip {__version__}")
    raise typer.Exit(code=0)


@app.command(name="config-validate")
def config_validate(path: Path = typer.Argument(Path("configs/fieldtrip.yml"))) -> None:
    """Validate and show resolved configuration."""
    resolved = resolve_config_path(path)
    console.print(f"Using config: {resolved}")
    try:
        cfg = load_config(resolved)
    except Exception as exc:
        console.print(f"Config validation failed: {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    console.print("Config OK.")
    console.print(f"- position source: {cfg.gps.source.value}")
    console.print(f"- estimation: {'mock' if cfg.estimation.use_mock else 'distance matrix'}")
    console.print(f"- storage: {cfg.storage.db_path} (key {cfg.storage.storage_key})")


@app.command(name="config-which")
def config_which(
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
) -> None:
    """Print resolved config path by priority rules."""
    console.print(str(resolve_config_path(config)))


@app.command()
def estimate(
    from_address: str = typer.Argument(..., metavar="FROM"),
    to_address: str = typer.Argument(..., metavar="TO"),
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
) -> None:
    """Estimate distance and duration between two addresses."""
    cfg = _setup(config)
    try:
        result = asyncio.run(estimate_route(_build_estimator(cfg), from_address, to_address))
    except (EstimationError, ValueError) as exc:
        console.print(f"[red]Could not calculate route:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    console.print(f"Distance: {format_distance(result.distance_km)}")
    console.print(f"Duration: {format_duration(result.duration_min)}")


async def _run_trip(
    cfg: FieldtripConfig,
    from_address: str,
    to_address: str,
    source: StreamingPositionSource,
    duration: float | None,
) -> TripResult:
    store = _build_store(cfg)
    await store.init_schema()
    bus = EventBus()

    @bus.on(TripEventType.TICK)
    async def _show_progress(event: TripEvent) -> None:
        data = event.data
        console.print(
            f"{format_distance(data['actual_distance_km'])} "
            f"({data['progress_percent']:.0f}%) - {format_duration(data['elapsed_minutes'])} "
            f"- {data['sample_count']} points"
        )

    @bus.on(TripEventType.ARRIVED)
    async def _show_arrival(event: TripEvent) -> None:
        console.print("[green]Destination reached[/green]")

    tracker = await TripTracker.plan(
        from_address,
        to_address,
        estimator=_build_estimator(cfg),
        source=source,
        store=store,
        bus=bus,
        tick_interval=cfg.tracking.tick_interval_s,
        geofence_radius_m=cfg.tracking.geofence_radius_m,
        locate_destination=cfg.tracking.locate_destination,
    )
    est = tracker.session.estimate
    console.print(
        f"Estimate: {format_distance(est.distance_km)}, {format_duration(est.duration_min)}"
    )

    await bus.start()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    if hasattr(signal, "SIGINT"):
        try:
            loop.add_signal_handler(signal.SIGINT, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await tracker.start()
        console.print(f"Tracking trip {tracker.session.session_id} ...")

        if isinstance(source, ReplayPositionSource) and duration is None:
            while source.remaining and not stop.is_set():
                await asyncio.sleep(0.05)
            await tracker.drain()
        else:
            try:
                await asyncio.wait_for(stop.wait(), timeout=duration)
            except asyncio.TimeoutError:
                pass

        return await tracker.finish()
    finally:
        if hasattr(signal, "SIGINT"):
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
        await source.close()
        await bus.stop()


@app.command()
def track(
    from_address: str = typer.Argument(..., metavar="FROM"),
    to_address: str = typer.Argument(..., metavar="TO"),
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
    source: SourceEnum | None = typer.Option(None, "--source", help="Override position source"),
    replay: Path | None = typer.Option(None, "--replay", help="Replay samples from a JSON track"),
    duration: float | None = typer.Option(None, "--duration", min=0, help="Stop after N seconds"),
) -> None:
    """Track a trip live until Ctrl-C, DURATION seconds, or the end of a replay."""
    cfg = _setup(config)
    try:
        position_source = _build_source(cfg, source, replay)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Could not load track:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    try:
        result = asyncio.run(_run_trip(cfg, from_address, to_address, position_source, duration))
    except (EstimationError, ValueError) as exc:
        console.print(f"[red]Could not calculate route:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    except PermissionDeniedError as exc:
        console.print(f"[red]Location access required:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    console.print(_record_table(result.record))
    if not result.persisted:
        console.print(f"[yellow]Warning:[/yellow] {escape(str(result.error))}")


@app.command(name="sessions-list")
def sessions_list(
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
) -> None:
    """List stored trips."""
    cfg = _setup(config)
    records = _query_store(_build_store(cfg).list_all())
    if not records:
        console.print("No trips stored.")
        return

    table = Table(title="Trips")
    for column in ("ID", "Started", "From", "To", "Distance", "Time"):
        table.add_column(column)
    for r in records:
        table.add_row(
            r.id,
            r.start_time.isoformat(timespec="minutes"),
            r.from_address,
            r.to_address,
            format_distance(r.actual_distance_km),
            format_duration(r.actual_time_min),
        )
    console.print(table)


@app.command(name="sessions-show")
def sessions_show(
    record_id: str = typer.Argument(..., metavar="ID"),
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
) -> None:
    """Show one stored trip."""
    cfg = _setup(config)
    record = _query_store(_build_store(cfg).get_by_id(record_id))
    if record is None:
        console.print(f"No trip with id {record_id}")
        raise typer.Exit(code=1)
    console.print(_record_table(record))


@app.command(name="sessions-delete")
def sessions_delete(
    record_id: str = typer.Argument(..., metavar="ID"),
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
) -> None:
    """Delete one stored trip."""
    cfg = _setup(config)
    if not _query_store(_build_store(cfg).remove_by_id(record_id)):
        console.print(f"No trip with id {record_id}")
        raise typer.Exit(code=1)
    console.print(f"Deleted {record_id}")


@app.command(name="sessions-clear")
def sessions_clear(
    config: Path = typer.Option(Path("configs/fieldtrip.yml"), "--config", "-c"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete all stored trips."""
    cfg = _setup(config)
    if not yes and not typer.confirm("Delete all stored trips?"):
        raise typer.Exit(code=1)
    asyncio.run(_build_store(cfg).clear_all())
    console.print("All trips deleted.")


cli = typer.main.get_command(app)


def launch() -> None:
    """Entry point when executed as a module/script."""
    cli()
