"""Command-line entry point for flakewatch.

Usage:
    python -m flakewatch.cli reconcile
    python -m flakewatch.cli report ORG [--period-days N]
    python -m flakewatch.cli analyze PROJECT [--no-quarantine]
"""

import argparse
import logging
import sys

from flakewatch.engine.errors import FlakewatchError
from flakewatch.engine.service import FlakinessEngine, build_engine
from flakewatch.report.markdown import format_effectiveness_markdown

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def _reconcile(engine: FlakinessEngine, args: argparse.Namespace) -> None:  # noqa: ARG001
    summary = engine.reconcile()
    print(
        f"Scanned {summary.scanned} due resolutions: {summary.verified} verified, "
        f"{summary.regressions} regressions, {summary.unavailable} unavailable, {summary.failed} failed"
    )


def _report(engine: FlakinessEngine, args: argparse.Namespace) -> None:
    summary = engine.get_effectiveness_metrics(args.organization, args.period_days)
    recommendations = engine.get_proactive_recommendations(args.organization)
    trend = engine.get_recurrence_trend(args.organization)
    print(format_effectiveness_markdown(summary, recommendations, trend))


def _analyze(engine: FlakinessEngine, args: argparse.Namespace) -> None:
    analysis = engine.analyze_project(args.project, auto_quarantine=not args.no_quarantine)
    print(
        f"{analysis.project_id}: {analysis.flaky_tests}/{analysis.total_tests} tests flaky "
        f"({analysis.flaky_percentage:.1f}%), {analysis.critical_tests} critical"
    )
    for verdict in analysis.verdicts:
        print(f"  - {verdict.test_name} [{verdict.confidence:.0f}%] {verdict.recommendation}")
        for reason in verdict.reasons:
            print(f"      {reason}")
    for rec in analysis.recommendations:
        print(f"* {rec}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flakewatch", description="Flaky test classification and fix tracking")
    sub = parser.add_subparsers(dest="command", required=True)

    reconcile = sub.add_parser("reconcile", help="Verify every resolution whose window has elapsed")
    reconcile.set_defaults(handler=_reconcile)

    report = sub.add_parser("report", help="Print a markdown effectiveness report for an organization")
    report.add_argument("organization", help="Organization ID")
    report.add_argument("--period-days", type=int, default=None, help="Reporting period (default from settings)")
    report.set_defaults(handler=_report)

    analyze = sub.add_parser("analyze", help="Classify every test in a project")
    analyze.add_argument("project", help="Project ID")
    analyze.add_argument("--no-quarantine", action="store_true", help="Do not quarantine flaky tests automatically")
    analyze.set_defaults(handler=_analyze)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and run the selected command."""
    args = build_parser().parse_args(argv)

    try:
        engine = build_engine()
    except ValueError as e:
        print(f"Failed to open store: {e}", file=sys.stderr)
        print("Set DATABASE_PATH in your environment or .env file.", file=sys.stderr)
        sys.exit(1)

    try:
        args.handler(engine, args)
    except FlakewatchError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
