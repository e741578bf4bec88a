"""CLI entry point: orchestrate run|execute|resume|approve|reject|verify|add|status|metrics."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import OrchestratorConfig
    from .orchestrator import FeatureOrchestrator


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project", "-p", type=str, default=".",
        help="Project directory (default: current dir)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose logging",
    )


def _add_feature_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("feature_id", type=str, help="Feature id (directory under .orchestrator/features)")
    parser.add_argument(
        "--no-worktrees", dest="use_worktrees", action="store_false", default=None,
        help="Run in the project root instead of the feature's worktree",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrate",
        description="Feature execution orchestrator -- plan, implement, verify and judge features",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Run the auto-loop until interrupted")
    _add_common(run_parser)
    run_parser.add_argument(
        "--concurrency", "-c", dest="max_concurrency", type=int,
        help="Max features in flight",
    )
    run_parser.add_argument(
        "--task-concurrency", dest="max_task_concurrency", type=int,
        help="Max tasks in flight per feature (1-8)",
    )
    run_parser.add_argument(
        "--skip-verification", dest="skip_verification_in_auto_mode",
        action="store_true", default=None,
        help="Treat waiting_approval dependencies as satisfied",
    )
    run_parser.add_argument(
        "--no-worktrees", dest="use_worktrees", action="store_false", default=None,
        help="Run every feature in the project root",
    )
    run_parser.add_argument("--model", dest="worker_model", type=str, help="Worker model override")
    run_parser.add_argument(
        "--no-resume", action="store_true",
        help="Do not resume interrupted features on startup",
    )

    # --- execute / resume / verify ---
    for name, help_text in (
        ("execute", "Run one feature to completion"),
        ("resume", "Resume an interrupted feature"),
        ("verify", "Run the quality gate for one feature"),
    ):
        cmd = subparsers.add_parser(name, help=help_text)
        _add_common(cmd)
        _add_feature_arg(cmd)

    # --- approve / reject ---
    approve_cmd = subparsers.add_parser("approve", help="Approve a generated plan")
    _add_common(approve_cmd)
    _add_feature_arg(approve_cmd)
    approve_cmd.add_argument("--feedback", type=str, help="Notes passed to the implementation")
    approve_cmd.add_argument("--plan-file", type=str, help="Approve an edited plan from this file")

    reject_cmd = subparsers.add_parser("reject", help="Reject a generated plan")
    _add_common(reject_cmd)
    _add_feature_arg(reject_cmd)
    reject_cmd.add_argument("--feedback", type=str, help="Why the plan was rejected")

    # --- add ---
    add_cmd = subparsers.add_parser("add", help="Create a feature record")
    _add_common(add_cmd)
    add_cmd.add_argument("feature_id", type=str)
    add_cmd.add_argument("--title", type=str)
    add_cmd.add_argument("--description", "-d", type=str, default="")
    add_cmd.add_argument(
        "--planning-mode", choices=["skip", "lite", "spec", "full"], default="skip",
    )
    add_cmd.add_argument("--require-approval", action="store_true")
    add_cmd.add_argument("--skip-tests", action="store_true")
    add_cmd.add_argument("--branch", type=str)
    add_cmd.add_argument("--depends-on", type=str, nargs="*", default=[])

    # --- status / metrics ---
    status_cmd = subparsers.add_parser("status", help="Show feature statuses")
    _add_common(status_cmd)
    metrics_cmd = subparsers.add_parser("metrics", help="Show auto-mode metrics")
    _add_common(metrics_cmd)
    metrics_cmd.add_argument("--json", action="store_true", help="Print the full snapshot as JSON")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    handlers = {
        "run": _run,
        "execute": _execute,
        "resume": _resume,
        "verify": _verify,
        "approve": _approve,
        "reject": _reject,
        "add": _add,
        "status": _status,
        "metrics": _metrics,
    }
    return handlers[args.command](args)


def _load(args: argparse.Namespace, **overrides) -> OrchestratorConfig:
    from .config import load_config

    cli_args = {"project": args.project, "use_worktrees": getattr(args, "use_worktrees", None)}
    cli_args.update(overrides)
    config = load_config(cli_args)
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def _orchestrator(config: OrchestratorConfig) -> FeatureOrchestrator:
    from .orchestrator import FeatureOrchestrator

    return FeatureOrchestrator(config)


def _run(args: argparse.Namespace) -> int:
    from .errors import OrchestratorError

    config = _load(
        args,
        max_concurrency=args.max_concurrency,
        max_task_concurrency=args.max_task_concurrency,
        skip_verification_in_auto_mode=args.skip_verification_in_auto_mode,
        worker_model=args.worker_model,
    )
    try:
        asyncio.run(_run_loop(config, resume=not args.no_resume))
    except KeyboardInterrupt:
        # Signal handler already cleaned up, just exit cleanly
        pass
    except OrchestratorError as e:
        return _report_error(e)
    return 0


async def _run_loop(config: OrchestratorConfig, resume: bool = True) -> None:
    from .human_input import TerminalApprovalHandler

    orchestrator = _orchestrator(config)
    approvals = TerminalApprovalHandler(orchestrator)
    shutdown = asyncio.Event()

    def handle_signal(sig: signal.Signals) -> None:
        if shutdown.is_set():
            orchestrator.logger.warning(f"Second {sig.name} received, force exiting")
            raise SystemExit(1)
        orchestrator.logger.info(f"{sig.name} received, shutting down gracefully...")
        orchestrator.logger.info("  (press Ctrl-C again to force-quit)")
        shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    orchestrator.logger.info("=" * 60)
    orchestrator.logger.info("Feature orchestrator starting")
    orchestrator.logger.info(f"Project: {config.project_dir}")
    orchestrator.logger.info("=" * 60)

    try:
        orchestrator.start_auto_loop(config.max_concurrency)
        if resume:
            orchestrator.resume_interrupted_features()
        await shutdown.wait()
    finally:
        approvals.close()
        await orchestrator.shutdown()
        orchestrator.logger.info("Orchestrator stopped")


async def _single(config: OrchestratorConfig, action) -> int:
    from .human_input import TerminalApprovalHandler

    orchestrator = _orchestrator(config)
    approvals = TerminalApprovalHandler(orchestrator)
    try:
        result = await action(orchestrator)
        await orchestrator.drain()
        return result
    finally:
        approvals.close()


def _report_error(e: Exception) -> int:
    print(f"Error: {e}", file=sys.stderr)
    return 1


def _execute(args: argparse.Namespace) -> int:
    from .errors import OrchestratorError

    config = _load(args)

    async def action(orchestrator: FeatureOrchestrator) -> int:
        await orchestrator.execute_feature(args.feature_id, config.use_worktrees)
        return 0

    try:
        return asyncio.run(_single(config, action))
    except OrchestratorError as e:
        return _report_error(e)


def _resume(args: argparse.Namespace) -> int:
    from .errors import OrchestratorError

    config = _load(args)

    async def action(orchestrator: FeatureOrchestrator) -> int:
        await orchestrator.resume_feature(args.feature_id, config.use_worktrees)
        return 0

    try:
        return asyncio.run(_single(config, action))
    except OrchestratorError as e:
        return _report_error(e)


def _verify(args: argparse.Namespace) -> int:
    from .errors import OrchestratorError

    config = _load(args)

    async def action(orchestrator: FeatureOrchestrator) -> int:
        passed = await orchestrator.verify_feature(args.feature_id, config.use_worktrees)
        print("PASS" if passed else "FAIL")
        return 0 if passed else 1

    try:
        return asyncio.run(_single(config, action))
    except OrchestratorError as e:
        return _report_error(e)


def _decide(args: argparse.Namespace, approved: bool) -> int:
    from .errors import OrchestratorError

    config = _load(args)
    edited_plan = None
    plan_file = getattr(args, "plan_file", None)
    if plan_file:
        edited_plan = Path(plan_file).read_text()

    async def action(orchestrator: FeatureOrchestrator) -> int:
        delivered = orchestrator.resolve_plan_approval(
            args.feature_id, approved, edited_plan=edited_plan, feedback=args.feedback,
        )
        if not delivered:
            print(f"No plan waiting for approval on {args.feature_id}", file=sys.stderr)
            return 1
        print(f"Plan for {args.feature_id} {'approved' if approved else 'rejected'}")
        return 0

    try:
        return asyncio.run(_single(config, action))
    except OrchestratorError as e:
        return _report_error(e)


def _approve(args: argparse.Namespace) -> int:
    return _decide(args, approved=True)


def _reject(args: argparse.Namespace) -> int:
    return _decide(args, approved=False)


def _add(args: argparse.Namespace) -> int:
    from .models import Feature, PlanningMode
    from .state import FeatureStore

    config = _load(args)
    store = FeatureStore(config.state_dir)
    if store.load_feature(args.feature_id) is not None:
        print(f"Feature {args.feature_id} already exists", file=sys.stderr)
        return 1
    feature = Feature(
        id=args.feature_id,
        title=args.title,
        description=args.description,
        planning_mode=PlanningMode(args.planning_mode),
        require_plan_approval=args.require_approval,
        skip_tests=args.skip_tests,
        branch_name=args.branch,
        dependencies=args.depends_on,
    )
    store.save_feature(feature)
    print(f"Created feature {feature.id}")
    return 0


def _status(args: argparse.Namespace) -> int:
    from .state import ExecutionStateStore, FeatureStore

    config = _load(args)
    store = FeatureStore(config.state_dir)
    features = store.list_features()
    state = ExecutionStateStore(config.state_dir).load()

    if state.auto_loop_was_running:
        print(f"Auto mode was running (max {state.max_concurrency}) at {state.saved_at}")
        if state.running_feature_ids:
            print(f"  In flight: {', '.join(state.running_feature_ids)}")
        print()

    if not features:
        print("No features found")
        return 0
    for f in features:
        extra = ""
        if f.plan_spec is not None:
            plan = f.plan_spec
            extra = f" [plan {plan.status.value} v{plan.version}"
            if plan.tasks_total:
                extra += f", {plan.tasks_completed}/{plan.tasks_total} tasks"
            extra += "]"
        print(f"  [{f.status:>16}] {f.id}: {f.title or f.description[:60]}{extra}")
    return 0


def _metrics(args: argparse.Namespace) -> int:
    from .metrics import MetricsCollector

    config = _load(args)
    collector = MetricsCollector(config.state_dir, max_history=config.max_metrics_history)
    if args.json:
        print(json.dumps(collector.snapshot().model_dump(mode="json"), indent=2))
        return 0

    summary = collector.summarize()
    print(f"Runs: {summary.total_runs}")
    print(f"Success rate: {summary.success_rate:.0%}")
    print(f"Revision rate: {summary.revision_rate:.2f}")
    if summary.average_duration_ms is not None:
        print(f"Average duration: {summary.average_duration_ms / 1000:.1f}s")
    for bucket, ms in summary.average_duration_by_complexity.items():
        print(f"  {bucket}: {ms / 1000:.1f}s")
    if summary.token_efficiency is not None:
        print(f"Token efficiency: {summary.token_efficiency:.1f} tokens/line")
    if summary.bottleneck:
        print(f"Bottleneck: {summary.bottleneck}")
    return 0


def cli_entry() -> None:
    """Entry point for pyproject.toml console_scripts."""
    sys.exit(main())
