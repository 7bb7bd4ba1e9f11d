"""Colorful console logging formatter."""

import logging
import re
import sys
from datetime import datetime

COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
    "white": "\033[37m",
    "bright_black": "\033[90m",
    "bright_red": "\033[91m",
    "bright_green": "\033[92m",
    "bright_yellow": "\033[93m",
    "bright_blue": "\033[94m",
    "bright_magenta": "\033[95m",
    "bright_cyan": "\033[96m",
    "bg_red": "\033[41m",
}

LEVEL_COLORS = {
    "DEBUG": COLORS["bright_black"],
    "INFO": COLORS["bright_green"],
    "WARNING": COLORS["bright_yellow"],
    "ERROR": COLORS["bright_red"],
    "CRITICAL": COLORS["bg_red"] + COLORS["white"] + COLORS["bold"],
}

# Logger name prefix -> color
COMPONENT_COLORS = {
    "workspace_ssh.server": COLORS["bright_cyan"],
    "workspace_ssh.services.resolver": COLORS["bright_blue"],
    "workspace_ssh.services.helper": COLORS["bright_magenta"],
    "workspace_ssh.services.locks": COLORS["yellow"],
    "workspace_ssh.services.prober": COLORS["cyan"],
    "workspace_ssh.middleware": COLORS["yellow"],
    "workspace_ssh.config": COLORS["green"],
    "default": COLORS["white"],
}

_PREFIX = "workspace_ssh."

_SSH_DEST_RE = re.compile(r"(\S+@[\w.\-]+:\d+)")
_URL_RE = re.compile(r"(https?://[^\s]+)")
_DURATION_RE = re.compile(r"(\d+\.?\d*m?s)\b")


class ColorfulFormatter(logging.Formatter):
    """Log formatter with local timestamps and component highlighting."""

    def __init__(self, use_colors: bool = True) -> None:
        """Initialize the formatter.

        Args:
            use_colors: Whether to use ANSI colors.
        """
        super().__init__()
        self.use_colors = use_colors

    def _colorize(self, text: str, color: str) -> str:
        if not self.use_colors:
            return text
        return f"{color}{text}{COLORS['reset']}"

    def _get_component_color(self, name: str) -> str:
        for prefix, color in COMPONENT_COLORS.items():
            if prefix != "default" and name.startswith(prefix):
                return color
        return COMPONENT_COLORS["default"]

    def _format_timestamp(self, record: logging.LogRecord) -> str:
        dt = datetime.fromtimestamp(record.created).astimezone()
        return f"{dt:%H:%M:%S}.{int(record.msecs):03d} {dt:%m/%d}"

    def _format_component(self, record: logging.LogRecord) -> str:
        name = record.name
        if name.startswith(_PREFIX):
            name = name[len(_PREFIX):]
        return self._colorize(f"{name:<20}", self._get_component_color(record.name))

    def _highlight_message(self, message: str) -> str:
        """Highlight destinations, URLs and durations."""
        if not self.use_colors:
            return message
        if "://" in message:
            message = _URL_RE.sub(f"{COLORS['bright_blue']}\\1{COLORS['reset']}", message)
        if "@" in message and ":" in message:
            message = _SSH_DEST_RE.sub(
                f"{COLORS['bright_magenta']}\\1{COLORS['reset']}", message
            )
        if "s" in message:
            message = _DURATION_RE.sub(
                f"{COLORS['bright_yellow']}\\1{COLORS['reset']}", message
            )
        return message

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with colors and timestamp."""
        timestamp = self._colorize(self._format_timestamp(record), COLORS["dim"])
        level = self._colorize(
            f"{record.levelname:<8}", LEVEL_COLORS.get(record.levelname, COLORS["white"])
        )
        component = self._format_component(record)
        sep = self._colorize("|", COLORS["dim"])
        message = self._highlight_message(record.getMessage())

        line = f"{timestamp} {sep} {level} {sep} {component} {sep} {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ResolutionFormatter(ColorfulFormatter):
    """Adds a leading marker for connection lifecycle events."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_colors:
            return base

        message = record.getMessage().lower()
        if "connected" in message or "ready" in message:
            return f"{COLORS['bright_green']}OK{COLORS['reset']}  {base}"
        elif "failed" in message or "error" in message:
            return f"{COLORS['bright_red']}!!{COLORS['reset']}  {base}"
        elif "falling back" in message or "retrying" in message:
            return f"{COLORS['bright_yellow']}!{COLORS['reset']}   {base}"
        elif "starting" in message or "installing" in message:
            return f"{COLORS['bright_cyan']}+{COLORS['reset']}   {base}"
        elif "releasing" in message or "closing" in message or "shutting down" in message:
            return f"{COLORS['bright_yellow']}-{COLORS['reset']}   {base}"
        return f"    {base}"


def configure_logging(level: str = "INFO", use_colors: bool = True) -> None:
    """Install the formatter on the package logger and quiet noisy libraries.

    Args:
        level: Level name for the workspace_ssh logger
        use_colors: Whether to emit ANSI colors
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ResolutionFormatter(use_colors=use_colors and sys.stderr.isatty()))

    package_logger = logging.getLogger("workspace_ssh")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    package_logger.propagate = False

    for name in ("asyncssh", "httpx", "httpcore", "uvicorn", "uvicorn.access", "fastmcp"):
        logging.getLogger(name).setLevel(logging.WARNING)
