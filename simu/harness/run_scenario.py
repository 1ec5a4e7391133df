#!/usr/bin/env python3
"""
run_scenario.py - simu command line entry point

Usage:
    python3 -m simu.harness.run_scenario config.yaml
    python3 -m simu.harness.run_scenario config.yaml --autorun charging-session
    python3 -m simu.harness.run_scenario config.yaml --percent 50 --verbose
    python3 -m simu.harness.run_scenario config.yaml --dry-run

Without autorun the engine serves its verb surface (injector control verbs
or responder verbs) until interrupted. With autorun it executes one
scenario, prints the report on stdout and exits 0: pass/fail is carried
by the report, not by the exit code.
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

import yaml

from simu.config.scenario import load_config
from simu.harness.launcher import SimulationLauncher
from simu.harness.report import format_report
from simu.harness.status import SimulationError

logger = logging.getLogger("simu")


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the simu protocol simulation engine from a YAML configuration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the configured verb surface
  python3 -m simu.harness.run_scenario iso15118-evse.yaml

  # Headless batch verification of one scenario
  python3 -m simu.harness.run_scenario iso15118-ev.yaml --autorun charging-session

  # Run every delay at half speed
  python3 -m simu.harness.run_scenario iso15118-ev.yaml --autorun charging-session --percent 200
        """
    )

    parser.add_argument(
        "config",
        type=Path,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--autorun",
        default=None,
        help="Execute this scenario, print its report and exit"
    )

    parser.add_argument(
        "--percent",
        type=int,
        default=None,
        help="Override the global delay scaling percent"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output (debug logging)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration without executing"
    )

    return parser.parse_args(argv)


def setup_logging(verbose: bool):
    # stdout carries reports only
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='[%(name)s] %(levelname)s: %(message)s',
        stream=sys.stderr
    )


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        0 on success (including any autorun), 1 on configuration errors
    """
    args = parse_args(argv)
    setup_logging(args.verbose)

    if not args.config.exists():
        print(f"ERROR: Configuration file not found: {args.config}", file=sys.stderr)
        return 1

    try:
        config = load_config(str(args.config))
        if args.percent is not None:
            logger.info(f"Overriding delay percent: {config.delay.percent} -> {args.percent}")
            config.delay = replace(config.delay, percent=args.percent)

        launcher = SimulationLauncher(config)

        if args.dry_run:
            errors = launcher.validate_config()
            if errors:
                print("Configuration validation FAILED:")
                for error in errors:
                    print(f"  - {error}")
                return 1
            print("Configuration validation PASSED")
            print(f"  Api: {config.api}")
            print(f"  Mode: {config.mode}")
            print(f"  Transport: {config.transport.kind}")
            for scenario in config.scenarios:
                print(f"  Scenario {scenario.uid}: {len(scenario.transactions)} transaction(s)")
            return 0

        autorun = args.autorun or config.autorun
        if autorun:
            try:
                result = launcher.run_autorun(autorun)
            finally:
                launcher.shutdown()
            if result.report:
                print(format_report(result.report))
            if result.error_message:
                logger.warning(f"{autorun}: {result.error_message}")
            return 0

        launcher.launch()
        launcher.serve()
        logger.info("Ready. Press Ctrl+C to stop")
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            launcher.shutdown()
        return 0

    except yaml.YAMLError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    except SimulationError as e:
        print("ERROR: Invalid configuration:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
