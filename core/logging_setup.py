"""Logging for backtest runs.

Engine modules log through ``logging.getLogger(__name__)``: per-asset loop
summaries at INFO, individual fills and order transitions at DEBUG, optimizer
fallbacks at WARNING. The CLI installs the handlers below once per run.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Close every handler on ``logger`` (root by default) so log files are released."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.flush()
        handler.close()


def setup_logging(
    log_level: str = 'INFO',
    logs_dir: Optional[Path] = None,
    console_output: bool = True,
    log_file_name: str = 'backtest.log',
) -> logging.Logger:
    """
    Route engine and portfolio records to a rotating run log and stdout.

    The file handler always records DEBUG, so per-trade fills and rebalance
    weights stay available after a run even when the console shows INFO only.

    Args:
        log_level: Console level name; unknown names fall back to INFO
        logs_dir: Directory for the run log, ``./logs`` when omitted
        console_output: Mirror records at ``log_level`` to stdout
        log_file_name: Name of the rotating file inside ``logs_dir``

    Returns:
        The configured root logger
    """
    logs_dir = Path(logs_dir) if logs_dir is not None else Path.cwd() / 'logs'
    logs_dir.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Re-running setup inside one process must not stack handlers.
    teardown_logging(root)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    run_log = logs_dir / log_file_name
    file_handler = logging.handlers.RotatingFileHandler(
        run_log,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8',
        delay=True,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    root.info("Backtest logging at %s; run log %s", logging.getLevelName(level), run_log)
    return root
