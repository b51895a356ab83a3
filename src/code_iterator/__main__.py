"""code-iterator CLI bootstrap."""

from __future__ import annotations

from pathlib import Path

import typer
import uvicorn
from loguru import logger

from code_iterator.config import load_settings
from code_iterator.errors import ConfigurationError
from code_iterator.logging_utils import configure_logging
from code_iterator.service import build_service

app = typer.Typer(name="code-iterator", help="Prompt an LLM for Python code and run it in a sandbox.", add_completion=False)


@app.callback()
def main() -> None:
    """code-iterator service."""


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind host"),
    port: int | None = typer.Option(None, help="Bind port"),
    ui_dir: Path | None = typer.Option(None, help="Directory of built UI assets"),
    log_level: str | None = typer.Option(None, help="Log level"),
) -> None:
    """Run the HTTP/WebSocket service and its dispatch loop."""

    try:
        settings = load_settings(host=host, port=port, ui_dir=ui_dir, log_level=log_level)
        configure_logging(profile=settings.log_profile, level=settings.log_level)
        service = build_service(settings)
    except ConfigurationError as exc:
        logger.critical("startup.failed error={}", exc)
        raise typer.Exit(1) from exc

    uvicorn.run(service.app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
