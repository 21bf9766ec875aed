"""Command line entry points for mailarchive."""

import logging
import os
from typing import Optional

import typer
from typer import Typer

from ..ingestion.imap.cli import imap_app


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


cli = Typer(help="mailarchive command line tools")
cli.add_typer(imap_app, name="imap")


@cli.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="DEBUG, INFO, WARNING or ERROR"
    ),
) -> None:
    setup_logging(log_level or os.getenv("MAILARCHIVE_LOG_LEVEL", "INFO"))


__all__ = ["cli", "imap_app", "setup_logging"]
