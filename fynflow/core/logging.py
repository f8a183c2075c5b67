# fynflow/core/logging.py
"""
Component loggers for the engine.

Each part of the engine logs through ``get_logger(<component>)``, which
returns the ``fynflow.<component>`` logger writing to stdout:

    - engine:      start/stop of the composition root
    - loader:      definition files loaded, rejected, pruned
    - scheduler:   timers, slot firings, catch-up
    - coordinator: run lifecycle
    - dag:         task success, retry, skip and failure inside a run
    - executor:    subprocess and http attempts
    - cli:         command-line errors

Lines are aligned as ``[HH:MM:SS] [component] [LEVEL] message``. The CLI's
``--loglevel`` goes through ``set_default_level()``.
"""

import logging
import sys
from datetime import datetime

# Module-level default log level, can be changed by set_default_level()
_default_level: int = logging.INFO

# Widest component tag is "[coordinator]"
_COMPONENT_WIDTH = len('[coordinator]') + 2


class ColoredFormatter(logging.Formatter):
    """Colored formatter for fynflow logging"""

    # ANSI color codes
    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # Component name from logger name (e.g., 'fynflow.scheduler' -> 'scheduler')
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        component_section = f'[{component}]'
        level_section = f'[{record.levelname}]'

        component_padded = component_section.ljust(_COMPONENT_WIDTH)
        level_padded = level_section.ljust(10)  # [WARNING] = 9 chars

        level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])

        # Format: [time] [comp_name]   [level]     message
        formatted = (
            f"{self.COLORS['LIGHT_BLUE']}[{time_str}]{self.COLORS['RESET']} "
            f"{self.COLORS['WHITE']}{component_padded}{self.COLORS['RESET']}"
            f"{level_color}{level_padded}{self.COLORS['RESET']}"
            f"{self.COLORS['WHITE']}{record.getMessage()}{self.COLORS['RESET']}"
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger_name = f'fynflow.{component_name}'
    logger = logging.getLogger(logger_name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger
