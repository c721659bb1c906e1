"""Colored console logging plus an optional per-run log file."""

from __future__ import annotations

import os
import re
import logging
from pathlib import Path
from typing import Optional

from tripmode.config import REPO_ROOT


# ANSI color codes for enhanced logging
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    # Text colors
    BLACK = '\033[30m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'

    # Bright colors
    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_CYAN = '\033[96m'

    # Background colors
    BG_RED = '\033[41m'


# Stage prefixes emitted by the pipeline modules
STAGE_COLORS = {
    'Reference:': Colors.YELLOW,
    'Survey:': Colors.GREEN,
    'Brackets:': Colors.MAGENTA,
    'Model:': Colors.BLUE,
    'Report:': Colors.CYAN,
}

KEYWORD_COLORS = {
    'completed': Colors.BRIGHT_GREEN,
    'failed': Colors.BRIGHT_RED,
    'error': Colors.BRIGHT_RED,
    'warning': Colors.YELLOW,
    'missing': Colors.YELLOW,
    'excluded': Colors.YELLOW,
    'saved': Colors.GREEN,
    'loaded': Colors.GREEN,
    'imputed': Colors.BLUE,
    'filtered': Colors.BLUE,
    'joined': Colors.BLUE,
}

_PATH_PATTERN = r'(/[^/\s]+(?:/[^/\s]+)*\.(?:csv(?:\.gz)?|json|ya?ml|png|md|log|xml|gz))'
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class ColorFormatter(logging.Formatter):
    """Custom formatter to add colors to log messages"""

    LEVEL_COLORS = {
        'DEBUG': Colors.DIM + Colors.WHITE,
        'INFO': Colors.GREEN,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.BRIGHT_RED,
        'CRITICAL': Colors.BG_RED + Colors.WHITE,
    }

    def __init__(self, root: Optional[Path] = None):
        super().__init__()
        self.root = Path(root) if root is not None else REPO_ROOT

    def format(self, record):
        timestamp = f"{Colors.DIM}{Colors.BLACK}{self.formatTime(record)}{Colors.RESET}"
        level_color = self.LEVEL_COLORS.get(record.levelname, Colors.WHITE)
        level_text = f"{level_color}{record.levelname}{Colors.RESET}"
        message = self.enhance_message(record.getMessage())
        out = f"{timestamp} - {level_text} - {message}"
        if record.exc_info:
            out += "\n" + self.formatException(record.exc_info)
        return out

    def shorten_paths(self, message: str) -> str:
        """Rewrite absolute paths under the project root as project-relative."""
        root = str(self.root)

        def _repl(m: re.Match) -> str:
            p = m.group(1)
            if p.startswith(root + os.sep):
                return os.path.relpath(p, root).replace(os.sep, '/')
            return p

        return re.sub(_PATH_PATTERN, _repl, message)

    def enhance_message(self, message: str) -> str:
        """Add highlighting to row counts, percentages, file paths and stage prefixes."""
        message = self.shorten_paths(message)

        # Row counts with thousands separators
        message = re.sub(r'(\d{1,3}(?:,\d{3})+)', f'{Colors.BRIGHT_CYAN}\\1{Colors.RESET}', message)
        # Percentages
        message = re.sub(r'(\d+\.?\d*%)', f'{Colors.BRIGHT_YELLOW}\\1{Colors.RESET}', message)

        for keyword, color in KEYWORD_COLORS.items():
            pattern = re.compile(rf'\b({keyword})\b', re.IGNORECASE)
            message = pattern.sub(f'{color}\\1{Colors.RESET}', message)

        for prefix, color in STAGE_COLORS.items():
            if message.startswith(prefix):
                message = f'{Colors.BOLD}{color}{prefix}{Colors.RESET}' + message[len(prefix):]
                break

        return message


def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO, color: bool = True) -> logging.Logger:
    """
    Configure root logging for a pipeline run.

    Removes existing root handlers, installs a (colored) console handler and,
    when log_file is given, a plain-text file handler.
    """
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColorFormatter() if color else logging.Formatter(LOG_FORMAT))
    logging.root.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.root.addHandler(file_handler)

    logging.root.setLevel(level)
    return logging.getLogger("tripmode")
