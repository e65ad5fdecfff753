"""Command line entry point for threadmon."""

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

from threadmon.config import MonitorConfig
from threadmon.log import setup_logging
from threadmon.monitor import SamplingLoop

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    defaults = MonitorConfig()
    parser = argparse.ArgumentParser(
        prog="threadmon",
        description=(
            "Automates top/pidstat monitoring and exports resource usage "
            "statistics in a format spreadsheets import directly."
        ),
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="be verbose")
    parser.add_argument(
        "--use-pidstat",
        action="store_true",
        help="use pidstat rather than top",
    )
    parser.add_argument(
        "-t",
        "--threads",
        dest="thread_pattern",
        default=defaults.thread_pattern,
        metavar="TREGEX",
        help="monitor threads whose name matches the regex TREGEX, e.g. 'mythread|myotherthread' "
        "(default: %(default)s)",
    )
    parser.add_argument(
        "-p",
        "--process",
        dest="aux_names",
        action="append",
        default=[],
        metavar="AUXPROC",
        help="monitor CPU and memory usage of the auxiliary process AUXPROC (repeatable)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=defaults.interval,
        help="seconds between two samples (default: %(default)s)",
    )
    parser.add_argument(
        "--top-delay",
        type=float,
        default=defaults.top_delay,
        help="averaging delay passed to top, when allowed (default: %(default)s)",
    )
    parser.add_argument(
        "--backoff",
        type=float,
        default=defaults.backoff,
        help="seconds to wait before a new setup attempt (default: %(default)s)",
    )
    parser.add_argument(
        "--missing-threshold",
        type=float,
        default=defaults.missing_threshold,
        help="fraction of missing threads that ends a session (default: %(default)s)",
    )
    parser.add_argument(
        "--decimal",
        choices=("comma", "dot"),
        default="comma" if defaults.comma_decimal else "dot",
        help="decimal separator of the output file (default: %(default)s)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=defaults.output_dir,
        help="directory of the output file (default: current directory)",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="also log to this file")
    parser.add_argument("--live", action="store_true", help="show a live table in the terminal")
    return parser


def config_from_args(args: argparse.Namespace) -> MonitorConfig:
    """Turn parsed arguments into a :class:`MonitorConfig`."""
    return MonitorConfig(
        thread_pattern=args.thread_pattern,
        aux_names=tuple(args.aux_names),
        backend="pidstat" if args.use_pidstat else "top",
        interval=args.interval,
        top_delay=args.top_delay,
        backoff=args.backoff,
        missing_threshold=args.missing_threshold,
        comma_decimal=args.decimal == "comma",
        output_dir=args.output_dir,
        verbose=args.verbose,
        log_file=args.log_file,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the threadmon command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    setup_logging(config.verbose, config.log_file, console=not args.live)
    if args.live:
        from threadmon.app import ThreadmonApp

        ThreadmonApp(config).run()
        return 0

    loop = SamplingLoop(config)
    try:
        loop.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
