"""Command line entry point for the automation engine API."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Optional

from .configuration import Settings, configure_logging, load_engine_config

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn
    from fastapi import FastAPI

    from .api.controllers import EngineController

logger = logging.getLogger(__name__)


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to run the automation engine API. "
            "Install it with 'pip install uvicorn' or add it to your environment."
        ) from exc
    return uvicorn


def build_app(controller: "EngineController", *, tick_interval: float) -> "FastAPI":
    """Create the API and attach a lifespan that drives the scheduler in the background."""

    from .automation.runner import run_scheduler
    from .web import create_app  # imported lazily to avoid heavy dependencies at import time

    app = create_app(controller)

    @contextlib.asynccontextmanager
    async def lifespan(_app) -> AsyncIterator[None]:
        stop_event = asyncio.Event()
        task = None
        if tick_interval > 0:
            task = asyncio.create_task(run_scheduler(controller.scheduler, tick_interval, stop_event=stop_event))
        try:
            yield
        finally:
            stop_event.set()
            if task is not None:
                await task

    app.router.lifespan_context = lifespan
    return app


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Launch the portfolio automation engine API")
    parser.add_argument("--config", type=Path, help="Path to the engine configuration file")
    parser.add_argument("--host", default="127.0.0.1", help="Host address for the web server")
    parser.add_argument("--port", type=int, default=8000, help="Port for the web server")
    parser.add_argument(
        "--tick-interval",
        type=float,
        help="Seconds between scheduler ticks; 0 disables the background driver",
    )
    parser.add_argument("--debug-level", type=int, help="0=warnings, 1=info, 2+=debug")
    args = parser.parse_args(argv)

    engine = load_engine_config(args.config) if args.config else None
    settings = Settings.from_environment(engine=engine)
    config = settings.engine
    if args.debug_level is not None:
        config.debug_level = args.debug_level
    configure_logging(config.debug_level)

    tick_interval = config.scheduler.tick_interval_seconds if args.tick_interval is None else args.tick_interval
    from .api.controllers import build_controller

    controller = build_controller(config)
    if controller.audit_logger is not None:
        try:
            controller.audit_logger.log(
                action="web_server.start",
                actor="system",
                details={"host": args.host, "port": args.port, "tick_interval": tick_interval},
            )
        except Exception as exc:  # pragma: no cover - audit is best effort here
            logger.warning("Failed to emit web server audit entry: %s", exc)

    app = build_app(controller, tick_interval=tick_interval)
    uvicorn = _import_uvicorn()
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if config.debug_level >= 2 else "info",
    )


if __name__ == "__main__":
    main()
