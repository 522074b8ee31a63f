"""
Logging for Rollcam.

Example:
    from rollcam.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Launching engine")
    logger.warning("Readiness probe timed out")
    logger.error("Failed to send command", exc_info=True)
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.theme import Theme

# Custom theme for Rollcam
ROLLCAM_THEME = Theme({
    "log.time": "dim cyan",
    "log.level.debug": "dim blue",
    "log.level.info": "green",
    "log.level.warning": "yellow",
    "log.level.error": "bold red",
    "log.level.critical": "bold white on red",
    "rollcam.success": "bold green",
    "rollcam.step": "cyan",
    "rollcam.limitation": "bold yellow",
    "rollcam.state.idle": "dim",
    "rollcam.state.initializing": "cyan",
    "rollcam.state.ready": "green",
    "rollcam.state.recording": "bold red",
    "rollcam.state.paused": "yellow",
    "rollcam.state.stopping": "magenta",
    "rollcam.state.error": "bold white on red",
})

# Global console instance
console = Console(theme=ROLLCAM_THEME, stderr=True)

# Flag to track if logging has been initialized
_initialized = False


def setup_logging(
    level: str = "INFO",
    show_time: bool = True,
    show_path: bool = False,
    rich_tracebacks: bool = True,
) -> None:
    """
    init Rollcam's logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        show_time: Show timestamps in log output
        show_path: Show file path in log output
        rich_tracebacks: Use rich formatting for tracebacks

    Note:
        This should be called once at application startup.
        Subsequent calls will be ignored to prevent duplicate handlers.
    """
    global _initialized

    if _initialized:
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = RichHandler(
        console=console,
        show_time=show_time,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        markup=False,
        tracebacks_show_locals=numeric_level <= logging.DEBUG,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    logging.basicConfig(
        level=numeric_level,
        handlers=[handler],
        force=True,  # Override any existing configuration
    )

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a given module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class RollcamLogger:
    """
    Rollcam-specific logger

    Wraps standard logger with convenience methods for recording status
    output. Plain messages go through the logging tree; the styled helpers
    print straight to the shared console.
    """

    def __init__(self, name: str):
        self.logger = get_logger(name)
        self.console = console

    def debug(self, message: str, *args, **kwargs) -> None:
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs) -> None:
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs) -> None:
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs) -> None:
        self.logger.error(message, *args, **kwargs)

    def exception(self, message: str, *args, **kwargs) -> None:
        self.logger.exception(message, *args, **kwargs)

    def success(self, message: str) -> None:
        """
        Log success message with special formatting.

        Args:
            message: Success message to display
        """
        self.console.print(f"[rollcam.success]✓[/rollcam.success] {escape(message)}")

    def step(self, message: str) -> None:
        """
        Log a provisioning/launch step.

        Args:
            message: Step description
        """
        self.logger.info(message)
        self.console.print(f"[rollcam.step]→[/rollcam.step] {escape(message)}")

    def status(self, state: str, message: Optional[str] = None) -> None:
        """
        Render a session status line.

        Args:
            state: Session state value (idle, recording, ...)
            message: Optional status message
        """
        style = f"rollcam.state.{state.lower()}"
        line = f"[{style}]{escape(state.upper()):<12}[/{style}]"
        if message:
            line += f" {escape(message)}"
        self.console.print(line)

    def limitation(self, message: str, title: Optional[str] = None) -> None:
        """
        Print a documented limitation the user should know about.

        Args:
            message: Limitation description
            title: Optional heading
        """
        separator = "-" * 70
        header = f"\n{separator}\n"
        header += "NOTE"
        if title:
            header += f": {title}"
        header += f"\n{separator}"

        self.console.print(f"[rollcam.limitation]{escape(header)}[/rollcam.limitation]")
        self.console.print(f"[rollcam.limitation]{escape(message)}[/rollcam.limitation]")
        self.console.print(f"[rollcam.limitation]{separator}[/rollcam.limitation]\n")

    def table_row(self, *columns, widths: Optional[list[int]] = None) -> None:
        """
        Print a table row (for status listings).

        Args:
            *columns: Column values
            widths: Optional column widths
        """
        if widths:
            row = "  ".join(str(col).ljust(w) for col, w in zip(columns, widths))
        else:
            row = "  ".join(str(col) for col in columns)

        self.console.print(escape(row))


def get_rollcam_logger(name: str) -> RollcamLogger:
    """
    Get a RollcamLogger instance for the given module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        RollcamLogger instance

    Example:
        logger = get_rollcam_logger(__name__)
        logger.step("Downloading engine bundle")
        logger.status("recording", "Recording - 00:00:05.00")
    """
    return RollcamLogger(name)
