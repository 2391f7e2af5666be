from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: int | str | None = None, console: Console | None = None) -> None:
    """
    Route log records through rich.

    Args:
      level: Logging level; defaults to the LOG_LEVEL environment variable, else INFO
      console: Console to write to (stderr by default, keeping stdout for reports)
    """
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # avoid duplicate handlers if called multiple times
    if any(isinstance(h, RichHandler) for h in root.handlers):
        return

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        log_time_format="[%Y-%m-%dT%H:%M:%S]",
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
