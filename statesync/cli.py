"""
State Reconciliation CLI

Commands:
    reconcile   Fetch, diff, apply and verify
    plan        Fetch and diff only; prints the plan and its fingerprint
    status      List journaled runs

Usage:
    statesync-reconcile --config statesync.yaml plan --kinds session_type --from fixtures --to prod-db
    statesync-reconcile --config statesync.yaml reconcile --kinds session_type --from fixtures --to prod-db
    statesync-reconcile --config statesync.yaml reconcile --kinds session_type --from fixtures --to prod-db \\
        --destructive --confirm 3f2a9c1d0b7e
    statesync-reconcile status

Exit codes: 0 when the run is done without failures or mismatches, 2 when a
destructive plan awaits confirmation, 1 otherwise.
"""

import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry

from statesync.config import AppConfig, build_sources, close_resources, load_config, resolve_secrets
from statesync.monitoring.metrics import ReconciliationMetrics
from statesync.reconciliation.differ import Plan
from statesync.reconciliation.errors import ReconciliationError, UnconfirmedDestructivePlan
from statesync.reconciliation.executor import ApplyExecutor
from statesync.reconciliation.models import Filter
from statesync.reconciliation.reconciler import Reconciler, RunRequest, RunState
from statesync.reconciliation.report import ReconciliationReport, ReportJournal
from statesync.reconciliation.verifier import VerificationProbe
from statesync.utils.logging_setup import setup_logging
from statesync.utils.vault_client import VaultClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AWAITING_CONFIRMATION = 2

UNCONFIRMED_REASON = UnconfirmedDestructivePlan("").message


def parse_filter(where: Optional[List[str]], within: Optional[List[str]]) -> Optional[Filter]:
    """
    Build a Filter from --where field=value and --in field=v1,v2 arguments.

    Raises:
        ValueError: If an argument is not of the form field=value
    """
    equals: Dict[str, str] = {}
    contains: Dict[str, List[str]] = {}

    for item in where or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ValueError(f"Invalid --where {item!r}; expected field=value")
        equals[name] = value

    for item in within or []:
        name, sep, values = item.partition("=")
        if not sep or not name:
            raise ValueError(f"Invalid --in {item!r}; expected field=v1,v2")
        contains[name] = [value for value in values.split(",") if value]

    if not equals and not contains:
        return None
    return Filter(equals=equals, contains=contains)


def prompt_confirmer(plan: Plan) -> bool:
    """Ask on the terminal whether a destructive plan may be applied."""
    print(json.dumps(plan.summary(), indent=2), file=sys.stderr)
    for operation in plan.deletes:
        print(f"  {operation.describe()}", file=sys.stderr)
    answer = input(f"Apply plan {plan.fingerprint}? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def exit_code_for(report: ReconciliationReport) -> int:
    """Map a finished report onto the process exit code."""
    if report.state == RunState.DONE.value and not report.failures and not report.mismatches:
        return EXIT_OK
    if report.state == RunState.FAILED.value and report.failure_reason == UNCONFIRMED_REASON:
        return EXIT_AWAITING_CONFIRMATION
    return EXIT_FAILED


def build_request(args: argparse.Namespace, config: AppConfig) -> RunRequest:
    threshold = args.blast_radius_threshold
    if threshold is None:
        threshold = config.blast_radius_threshold

    return RunRequest(
        entity_kinds=args.kinds,
        desired_origin=args.desired,
        actual_origin=args.actual,
        destructive=args.destructive,
        blast_radius_threshold=threshold,
        continue_on_error=getattr(args, "continue_on_error", False),
        confirmation_token=getattr(args, "confirm", None),
        filter=parse_filter(args.where, args.within),
        parallel_creates=getattr(args, "parallel_creates", None) or config.parallel_creates,
    )


def build_reconciler(
    config: AppConfig,
    sources: Dict[str, object],
    metrics: Optional[ReconciliationMetrics] = None,
    interactive: bool = False
) -> Reconciler:
    return Reconciler(
        sources=sources,
        entities=config.entities,
        kind_order=config.kind_order,
        executor=ApplyExecutor(retry_policy=config.retry),
        verifier=VerificationProbe(batch_size=config.verification_batch_size),
        metrics=metrics,
        journal=ReportJournal(config.journal_dir),
        confirmer=prompt_confirmer if interactive else None,
        confirmation_timeout_seconds=config.confirmation_timeout_seconds,
    )


def command_reconcile(args: argparse.Namespace, config: AppConfig, sources: Dict[str, object]) -> int:
    metrics = ReconciliationMetrics(registry=CollectorRegistry())
    reconciler = build_reconciler(config, sources, metrics=metrics, interactive=args.interactive)

    try:
        report = reconciler.run(build_request(args, config))
    finally:
        if args.pushgateway:
            try:
                metrics.push(args.pushgateway)
            except OSError:
                logger.warning("Metrics were not pushed")

    print(json.dumps(report.to_dict(), indent=2, default=str))

    code = exit_code_for(report)
    if code == EXIT_AWAITING_CONFIRMATION:
        fingerprint = report.plan_summary.get("fingerprint")
        logger.warning(f"Plan needs confirmation; re-run with --confirm {fingerprint}")
    return code


def command_plan(args: argparse.Namespace, config: AppConfig, sources: Dict[str, object]) -> int:
    reconciler = build_reconciler(config, sources)
    request = build_request(args, config)
    plan = reconciler.preview(request)

    output = plan.to_dict()
    output["needs_confirmation"] = reconciler.needs_confirmation(plan, request)
    print(json.dumps(output, indent=2, default=str))
    return EXIT_OK


def command_status(journal_dir: str) -> int:
    reports = ReportJournal(journal_dir).list_reports()
    print(json.dumps(reports, indent=2, default=str))
    return EXIT_OK


def add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--kinds", nargs="+", required=True, help="Entity kinds to reconcile")
    parser.add_argument("--from", dest="desired", required=True, help="Desired-state origin")
    parser.add_argument("--to", dest="actual", required=True, help="Actual-state origin")
    parser.add_argument("--destructive", action="store_true", help="Delete actual-only records")
    parser.add_argument("--blast-radius-threshold", type=float, help="Confirmation threshold (0-1)")
    parser.add_argument("--where", action="append", help="Equality filter field=value")
    parser.add_argument("--in", dest="within", action="append", help="Containment filter field=v1,v2")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statesync-reconcile",
        description="State reconciliation tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument(
        "--config",
        default=os.getenv("STATESYNC_CONFIG", "statesync.yaml"),
        help="Configuration file (default $STATESYNC_CONFIG or statesync.yaml)"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--json-logs", action="store_true", default=None, help="JSON log lines")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile entity kinds")
    add_run_arguments(reconcile_parser)
    reconcile_parser.add_argument("--continue-on-error", action="store_true", help="Keep applying after failures")
    reconcile_parser.add_argument("--confirm", metavar="FINGERPRINT", help="Confirm a destructive plan")
    reconcile_parser.add_argument("--interactive", action="store_true", help="Ask before destructive plans")
    reconcile_parser.add_argument("--parallel-creates", type=int, help="Workers for independent creates")
    reconcile_parser.add_argument("--pushgateway", help="Pushgateway address for run metrics")

    plan_parser = subparsers.add_parser("plan", help="Show the plan without applying it")
    add_run_arguments(plan_parser)

    status_parser = subparsers.add_parser("status", help="List journaled runs")
    status_parser.add_argument("--journal-dir", default=None, help="Journal directory")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging("DEBUG" if args.verbose else "INFO", json_logging=args.json_logs)

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    if args.command == "status" and args.journal_dir:
        return command_status(args.journal_dir)

    resources = []
    try:
        config = load_config(args.config)

        if args.command == "status":
            return command_status(config.journal_dir)

        vault = VaultClient.from_env()
        if vault is not None:
            health = vault.health_check()
            if not health:
                logger.error(f"Vault at {vault.vault_url} is not usable: {health.error}")
                return EXIT_FAILED

        resolve_secrets(config, vault)
        sources, resources = build_sources(config)

        if args.command == "reconcile":
            return command_reconcile(args, config, sources)
        return command_plan(args, config, sources)

    except ReconciliationError as e:
        logger.error(f"Run aborted: {e}")
        if e.report is not None:
            print(json.dumps(e.report.to_dict(), indent=2, default=str))
        return EXIT_FAILED

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return EXIT_FAILED

    finally:
        close_resources(resources)


if __name__ == "__main__":
    sys.exit(main())
