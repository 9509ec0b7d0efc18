"""Command-line entry points for worker processes and maintenance.

Each production worker runs as its own process bound to one queue:

    guidebook-pipeline worker document-generation
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Annotated, Any, Dict, Optional

import typer
from omegaconf import DictConfig, OmegaConf

from .configuration import configure_logging, make_runtime_config
from .services import PipelineServices, build_services

app = typer.Typer(
    name="guidebook-pipeline",
    no_args_is_help=True,
    help="Guidebook generation pipeline workers and maintenance commands.",
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", help="YAML file merged over the packaged defaults."),
]


def _load_config(config_path: Optional[Path]) -> DictConfig:
    overrides: Optional[Dict[str, Any]] = None
    if config_path is not None:
        if not config_path.exists():
            typer.echo(f"Config file not found: {config_path}", err=True)
            raise typer.Exit(code=2)
        overrides = OmegaConf.to_container(OmegaConf.load(config_path), resolve=False)  # type: ignore[assignment]
    config = make_runtime_config(overrides)
    configure_logging(config)
    return config


def _services(config_path: Optional[Path]) -> PipelineServices:
    return build_services(_load_config(config_path))


@app.command("worker")
def worker_command(
    queue_name: Annotated[str, typer.Argument(help="Queue this worker consumes.")],
    config_path: ConfigOption = None,
    once: Annotated[bool, typer.Option("--once", help="Drain available jobs, then exit.")] = False,
) -> None:
    """Run a single-queue worker process."""
    services = _services(config_path)
    try:
        worker = services.worker(queue_name)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    if once:
        processed = 0
        while worker.run_once():
            processed += 1
        typer.echo(f"Processed {processed} job(s) from {queue_name}")
        return

    typer.echo(f"Worker started for {queue_name}")
    stop_event = threading.Event()
    try:
        worker.run_forever(stop_event)
    except KeyboardInterrupt:
        stop_event.set()
        typer.echo("Worker stopped")


@app.command("workers")
def workers_command(config_path: ConfigOption = None) -> None:
    """Run one worker thread per queue in this process (development)."""
    services = _services(config_path)
    pool = services.worker_pool()
    typer.echo(f"Starting {len(pool.workers)} workers: {', '.join(w.queue_name for w in pool.workers)}")
    pool.start()
    pool.wait()


@app.command("purge-cache")
def purge_cache_command(
    config_path: ConfigOption = None,
    project: Annotated[
        Optional[str], typer.Option("--project", help="Only purge entries of this project.")
    ] = None,
    expired: Annotated[bool, typer.Option("--expired", help="Only purge expired entries.")] = False,
) -> None:
    """Delete asset cache entries."""
    services = _services(config_path)
    if expired:
        count = services.cache.purge_expired()
    elif project:
        count = services.cache.clear_project(project)
    else:
        count = services.cache.clear_all()
    typer.echo(f"Purged {count} cache entries")


@app.command("metrics")
def metrics_command(config_path: ConfigOption = None) -> None:
    """Print job counts per queue."""
    services = _services(config_path)
    for queue_name in services.queue.queue_names:
        metrics = services.queue.metrics(queue_name)
        typer.echo(
            f"{queue_name}: waiting={metrics.waiting} active={metrics.active} "
            f"completed={metrics.completed} failed={metrics.failed}"
        )


def main() -> None:
    """CLI entrypoint for console scripts."""
    app()


if __name__ == "__main__":
    main()
