"""
CLI to run one analysis request against the configured backends.

Usage:
    python -m src.pipeline.analyze [options]
"""

import argparse
import asyncio
import json
import logging
import os
import sys

import structlog

from src.core.errors import PipelineError
from src.core.logger import setup_logging
from src.core.settings import Settings
from src.metrics.scope import Scope, ScopeLevel

from .models import AnalysisRequest, parse_timestamp
from .service import AnalysisPipeline

logger = structlog.get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Run a feature-parity analysis for one Kubernetes scope",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Analyze a deployment with the default anomaly detector
        python -m src.pipeline.analyze --namespace shop --deployment checkout

        # Ensemble over two registered detectors, focused on memory
        python -m src.pipeline.analyze --namespace shop --pod checkout-7d9f-abcde \\
            --model anomaly-detector --model anomaly-detector-canary \\
            --metric-focus memory_usage

        # Forecast for a given timestamp
        python -m src.pipeline.analyze --namespace shop \\
            --model predictive-analytics --target 2024-05-01T12:00:00Z
        """,
    )

    # Scope
    parser.add_argument("--namespace", help="Kubernetes namespace")
    parser.add_argument("--deployment", help="Deployment name (needs --namespace)")
    parser.add_argument("--pod", help="Pod name (needs --namespace)")
    parser.add_argument(
        "--label",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Label selector entry, repeatable",
    )

    # Models
    parser.add_argument(
        "--model",
        action="append",
        default=[],
        help="Logical model name, repeat for an ensemble (default: anomaly-detector)",
    )
    parser.add_argument("--metric-focus", help="Base metric to emphasize in the result")
    parser.add_argument("--target", help="Target timestamp, ISO-8601 (default: now)")

    # Timeouts
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
        help="Whole-request timeout in seconds (default: 30)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_scope(args) -> Scope:
    """Build the request scope from arguments"""
    labels = {}
    for entry in args.label:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid label selector entry: {entry!r}")
        labels[key] = value

    if labels:
        level = ScopeLevel.LABEL_SELECTOR
    elif args.pod:
        level = ScopeLevel.POD
    elif args.deployment:
        level = ScopeLevel.DEPLOYMENT
    elif args.namespace:
        level = ScopeLevel.NAMESPACE
    else:
        level = ScopeLevel.CLUSTER

    return Scope(
        level=level,
        namespace=args.namespace,
        deployment=args.deployment,
        pod=args.pod,
        labels=labels,
    )


def build_request(args) -> AnalysisRequest:
    models = args.model or ["anomaly-detector"]
    return AnalysisRequest(
        scope=build_scope(args),
        model=models[0],
        models=models if len(models) > 1 else [],
        metric_focus=args.metric_focus,
        target_timestamp=parse_timestamp(args.target),
    )


async def run(settings: Settings, request: AnalysisRequest) -> dict:
    async with AnalysisPipeline.from_settings(settings) as pipeline:
        response = await pipeline.analyze(request)
    return response.to_dict()


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    setup_logging(level=getattr(logging, args.log_level))

    try:
        settings = Settings.from_env()
        settings.request_timeout_seconds = args.request_timeout
        request = build_request(args)

        logger.info(
            "Running analysis",
            scope=request.scope.describe(),
            models=request.model_names(),
            prometheus=settings.prometheus_url,
        )
        result = asyncio.run(run(settings, request))
        sys.stdout.write(json.dumps(result, indent=2) + "\n")
        return 0

    except PipelineError as e:
        logger.error("Analysis failed", error=e.category, message=e.message)
        sys.stdout.write(json.dumps(e.to_dict(), indent=2, default=str) + "\n")
        return 2

    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
