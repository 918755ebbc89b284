"""Shared utilities for CLI commands."""

import logging
import os
import sys

import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from stackloop.config import Config, load_config

# Shared console instance for all CLI output
console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Send log records through rich.

    The level comes from ``--verbose`` or ``STACKLOOP_LOG_LEVEL`` (default INFO).
    """
    if verbose:
        level = logging.DEBUG
    else:
        name = os.environ.get("STACKLOOP_LOG_LEVEL", "INFO").upper()
        level = getattr(logging, name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def get_config() -> Config:
    """Load configuration, exiting with a readable error if it is invalid."""
    try:
        return load_config()
    except (ValidationError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)
