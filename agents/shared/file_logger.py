"""
File Logger Utility

Every service process (orchestrator, admin API, agents) writes one rotating
log file per run and optionally echoes to stdout. Package loggers are
pointed at the same handlers so library modules need no setup of their own.
"""

import logging
import os
import sys
from pathlib import Path
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Iterable, List, Optional

PROJECT_LOGGERS = ("orchestrator", "agents", "api")

FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
CONSOLE_FORMAT = '[%(name)s] %(levelname)s: %(message)s'


def _build_handlers(log_file: Path, level: int, console_output: bool,
                    max_bytes: int, backup_count: int) -> List[logging.Handler]:
    rotating = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8')
    rotating.setLevel(logging.DEBUG)
    rotating.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    if not console_output:
        return [rotating]

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setLevel(level)
    stdout.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return [rotating, stdout]


def setup_file_logger(
    service_name: str,
    log_level: str = "INFO",
    output_dir: Optional[str] = None,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    attach_to: Iterable[str] = PROJECT_LOGGERS
) -> logging.Logger:
    """
    Route a service's logs to logs/<service>_<start time>.log.

    Args:
        service_name: Log file prefix and name of the returned logger
        log_level: Level for the loggers and the console echo; the file always takes DEBUG
        output_dir: Where log files go; LOG_DIR or ./logs when omitted
        console_output: Echo to stdout as well
        max_bytes: Rotation threshold per file
        backup_count: Rotated files kept
        attach_to: Package loggers rewired to the same handlers (propagation off)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    log_dir = Path(output_dir or os.getenv("LOG_DIR", "./logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{service_name}_{datetime.now():%Y%m%d_%H%M%S}.log"

    handlers = _build_handlers(log_file, level, console_output, max_bytes, backup_count)

    for name in dict.fromkeys([service_name, *attach_to]):
        target = logging.getLogger(name)
        target.handlers.clear()
        target.handlers.extend(handlers)
        target.setLevel(level)
        target.propagate = False

    service_logger = logging.getLogger(service_name)
    service_logger.info(f"Writing {service_name} logs to {log_file}")
    return service_logger


def get_logger(service_name: str) -> logging.Logger:
    return logging.getLogger(service_name)
