"""
CLI to export a feature catalogue for the training pipeline.

Usage:
    python -m src.features.export [options]
"""

import argparse
import json
import logging
import os
import sys

import structlog

from src.core.logger import setup_logging

from .catalogues import get_catalogue, list_families

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Export a feature catalogue and its ordered feature names",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Print the feature names of the anomaly detector
        python -m src.features.export --family anomaly-detector --format names

        # Write the full catalogue artifact
        python -m src.features.export --family anomaly-detector --output catalogue.json
        """,
    )
    parser.add_argument(
        "--family",
        default="anomaly-detector",
        choices=list_families(),
        help="Model family (default: anomaly-detector)",
    )
    parser.add_argument(
        "--format",
        choices=["json", "names", "summary"],
        default="json",
        help="Output format (default: json)",
    )
    parser.add_argument(
        "--output",
        help="Write to this file instead of stdout",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "WARNING"),
        help="Logging level (default: WARNING)",
    )
    return parser.parse_args(argv)


def render(family: str, fmt: str) -> str:
    """Render a catalogue in the requested format"""
    catalogue = get_catalogue(family)
    if fmt == "names":
        return "\n".join(catalogue.feature_names()) + "\n"
    if fmt == "summary":
        return (
            f"{catalogue.identity}: {catalogue.lookback_steps} x "
            f"({catalogue.base_metric_count} + {catalogue.calendar_feature_count} + "
            f"{catalogue.derived_features_per_metric} x {catalogue.base_metric_count}) = "
            f"{catalogue.feature_count()}\n"
        )
    return json.dumps(catalogue.to_dict(), indent=2) + "\n"


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    setup_logging(level=getattr(logging, args.log_level))

    try:
        content = render(args.family, args.format)
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(content)
            logger.info("Catalogue exported", family=args.family, output=args.output)
        else:
            sys.stdout.write(content)
        return 0

    except Exception as e:
        logger.error("Export failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
