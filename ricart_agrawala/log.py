from __future__ import annotations

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

console = Console()


def setup_logging(level: str = "INFO", rich_tracebacks: bool = True) -> None:
    """Route loguru output through a rich handler on the shared console."""
    logger.configure(
        handlers=[
            {
                "sink": RichHandler(
                    console=console,
                    rich_tracebacks=rich_tracebacks,
                ),
                "format": "{message}",
                "level": level.upper(),
            },
        ]
    )
