#!/usr/bin/env python3
# PID Tune Analysis - Example Usage
# Copyright (C) 2024
# License: GPLv3

"""
Example script demonstrating how to use the PID Tune Analysis library.

This script shows how to:
1. Parse a BBL (blackbox) file
2. Run the noise, transfer function, step response and diagnostics analyses
3. Print a summary per log
4. Generate spectrum, Bode and step response plots
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from pid_tune_analysis import AnalysisConfig, DEFAULT_CONFIG, FlightStyle, TuneAnalyzer

logger = logging.getLogger("example_analysis")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Analyze a Betaflight blackbox log for PID and filter tuning."
    )
    parser.add_argument("bbl_file", help="Blackbox log (.bbl / .bfl)")
    parser.add_argument("--log", type=int, default=None, dest="log_index",
                        help="Log index to analyze (1-based), all logs by default")
    parser.add_argument("--style", choices=[s.value for s in FlightStyle], default="balanced",
                        help="Flying style targeted by gain suggestions")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON file with AnalysisConfig overrides")
    parser.add_argument("--plot", action="store_true", help="Show plots (requires matplotlib)")
    parser.add_argument("--save-plots", type=Path, default=None, metavar="DIR",
                        help="Save plots as PNG files into DIR")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    """Main example function."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not Path(args.bbl_file).exists():
        logger.error("File not found: %s", args.bbl_file)
        return 1

    config = DEFAULT_CONFIG
    if args.config is not None:
        config = AnalysisConfig.from_dict(json.loads(args.config.read_text()))

    analyzer = TuneAnalyzer(config=config, flight_style=FlightStyle(args.style))
    logger.info("Found %d log(s) in file: %s", analyzer.get_log_count(args.bbl_file), args.bbl_file)

    def on_progress(stage, done, total):
        logger.debug("Finished %s (%d/%d)", stage, done, total)

    results = analyzer.analyze(args.bbl_file, log_index=args.log_index, on_progress=on_progress)

    for result in results:
        print("=" * 60)
        print(result.summary())
        print()

        if args.plot or args.save_plots:
            try:
                from pid_tune_analysis.plotter import plot_analysis
                plot_analysis(result, save_dir=args.save_plots, show=args.plot)
            except ImportError as e:
                logger.warning("%s", e)

    logger.info("Analysis complete: %d log(s)", len(results))
    return 0


if __name__ == "__main__":
    sys.exit(main())
