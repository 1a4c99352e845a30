"""CLI for config-driven signal backtests."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from backtest import BacktestError, BacktestRunConfig, run_backtest  # noqa: E402
from core.logging_setup import setup_logging  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Signal-driven single-asset and portfolio backtests")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--logs-dir", help="Optional directory for a rotating log file")

    subparsers = parser.add_subparsers(dest="command", required=True)
    run_parser = subparsers.add_parser("run", help="Run a backtest from a JSON config")
    run_parser.add_argument("--config", required=True, help="Path to the run JSON config")

    return parser.parse_args(argv)


def _run_config(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return 2

    try:
        config = BacktestRunConfig.from_path(config_path)
    except (ValueError, OSError) as exc:
        logger.error("Invalid config: %s", exc)
        return 3

    try:
        artifacts = run_backtest(config)
    except FileNotFoundError as exc:
        logger.error(str(exc))
        return 4
    except BacktestError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 5

    logger.info("Report dir: %s", artifacts.paths["report_dir"])
    for symbol, start, final in zip(artifacts.symbols, artifacts.starting_balances, artifacts.final_balances):
        logger.info("%s balance %.2f -> %.2f", symbol, start, final)
    logger.info("Closed trades: %s", artifacts.total_trades)
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "run":
        return _run_config(args)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level, logs_dir=args.logs_dir)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
