"""
Tracker Logger
==============
Static Rich logger shared by the codec, builder, RPC client and tracker.

Messages carry their component as a leading tag:

    Logger.info("[RPC] Switched to endpoint 2")
    Logger.success("[TRADER] Open request submitted")
    Logger.section("Position Monitor")

The tag picks the console icon and is kept verbatim in the session file log.
"""

import os
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional, Tuple

from rich.console import Console
from rich.text import Text

COMPONENT_ICONS = {
    "SYSTEM": "🛸",
    "RPC": "📡",
    "CODEC": "🧬",
    "BUILDER": "🧱",
    "TRADER": "💰",
    "TRACKER": "🎯",
    "ALERT": "🔔",
    "DB": "🗄️",
    "TG": "📣",
    "FEED": "📈",
    "KEYS": "🔑",
}

# name -> (console style or None for file-only, file level)
_LEVELS = {
    "DEBUG": (None, logging.DEBUG),
    "INFO": ("cyan", logging.INFO),
    "SUCCESS": ("green bold", logging.INFO),
    "WARNING": ("yellow", logging.WARNING),
    "ERROR": ("red bold", logging.ERROR),
}

_console = Console()


def _session_logger() -> logging.Logger:
    """File logger for this run, created on first write."""
    file_logger = logging.getLogger("perps_tracker")
    if file_logger.handlers:
        return file_logger

    from config.settings import Settings

    os.makedirs(Settings.LOG_DIR, exist_ok=True)
    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    handler = RotatingFileHandler(
        os.path.join(Settings.LOG_DIR, f"perps_{run_id}.log"),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
        delay=True,
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    file_logger.addHandler(handler)
    file_logger.setLevel(getattr(logging, Settings.LOG_LEVEL, logging.DEBUG))
    file_logger.propagate = False
    return file_logger


class Logger:
    """Console + rotating file output, keyed by a [COMPONENT] tag."""

    _silent_mode = False

    @staticmethod
    def split_tag(message: str) -> Tuple[str, str]:
        """'[RPC] text' -> ('RPC', 'text'); untagged messages belong to SYSTEM."""
        stripped = message.strip()
        if stripped.startswith("["):
            end = stripped.find("]")
            if 1 < end < 16:
                return stripped[1:end].upper(), stripped[end + 1:].strip()
        return "SYSTEM", stripped

    @staticmethod
    def _console_enabled() -> bool:
        if Logger._silent_mode:
            return False
        from config.settings import Settings
        return not getattr(Settings, "SILENT_MODE", False)

    @staticmethod
    def _emit(level: str, message: str) -> None:
        component, text = Logger.split_tag(message)
        style, file_level = _LEVELS[level]

        if style and Logger._console_enabled():
            now = datetime.now()
            icon = COMPONENT_ICONS.get(component)
            line = Text()
            line.append(f"{now:%H:%M:%S}.{now.microsecond // 1000:03d} ", style="dim")
            line.append(f"| {level:<8} ", style=style)
            line.append(f"| {component[:10]:<10} | ", style="dim")
            line.append(f"{icon} {text}" if icon else text)
            _console.print(line)

        _session_logger().log(file_level, f"[{component}] {text}")

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @staticmethod
    def debug(message: str) -> None:
        Logger._emit("DEBUG", message)

    @staticmethod
    def info(message: str) -> None:
        Logger._emit("INFO", message)

    @staticmethod
    def success(message: str) -> None:
        Logger._emit("SUCCESS", message)

    @staticmethod
    def warning(message: str) -> None:
        Logger._emit("WARNING", message)

    @staticmethod
    def error(message: str) -> None:
        Logger._emit("ERROR", message)

    @staticmethod
    def section(title: str, subtitle: Optional[str] = None) -> None:
        if Logger._console_enabled():
            _console.print()
            heading = f"[bold magenta]{title}[/]"
            if subtitle:
                heading += f" [dim]{subtitle}[/]"
            _console.rule(heading, style="dim")
        _session_logger().info(f"[SYSTEM] === {title} ===")

    @staticmethod
    def set_silent(silent: bool) -> None:
        Logger._silent_mode = silent
