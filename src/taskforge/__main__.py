"""Entry point for `python -m taskforge` and the `taskforge` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from taskforge.agents import build_llm_capabilities
from taskforge.engine import TaskEngine, hard_fail_summary
from taskforge.errors import ConfigurationError, GraphValidationError, TaskInputError
from taskforge.graph import TaskGraph
from taskforge.loader import load_task_set
from taskforge.models import EXIT_CODES, RunOutcome, RunSummary
from taskforge.settings import EngineConfig, RuntimeSettings
from taskforge.state_store import FileStateStore

LOG_LEVEL_CHOICES = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger("taskforge")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskforge", description="Run a task graph through generate/review loops")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVEL_CHOICES, help="Logging verbosity")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute every task in a task-set file")
    run_parser.add_argument("--tasks", type=Path, required=True, help="Path to the task-set JSON file")
    run_parser.add_argument("--project", default=None, help="Project id for the state store (default: from file or env)")
    run_parser.add_argument("--parallel", type=int, default=None, help="Maximum tasks running at once")
    run_parser.add_argument(
        "--voting",
        default=None,
        help="Voting strategy: self-consistency[:N] | pair-debate | committee[:N]",
    )
    run_parser.add_argument("--max-iter", type=int, default=None, help="Review attempts per task before rejecting")
    run_parser.add_argument("--dry-run", action="store_true", help="Validate and print dispatch waves without executing")
    run_parser.add_argument("--verbose", action="store_true", help="Debug logging and full JSON summary")

    status_parser = subparsers.add_parser("status", help="Show recorded task states for a project")
    status_parser.add_argument("--project", required=True, help="Project id to inspect")
    return parser


def print_waves(graph: TaskGraph) -> None:
    waves = graph.waves()
    print(f"tasks={len(graph)} waves={len(waves)}")
    for index, wave in enumerate(waves, start=1):
        print(f"wave {index}: {', '.join(wave)}")


def print_summary(summary: RunSummary, *, verbose: bool = False) -> None:
    average = f"{summary.average_score:.1f}" if summary.average_score is not None else "n/a"
    print(f"outcome={summary.outcome.value}")
    print(
        f"approved={len(summary.done)} rejected={len(summary.rejected)} "
        f"blocked={len(summary.blocked)} cancelled={len(summary.cancelled)} average_score={average}"
    )
    if summary.error:
        print(f"error={summary.error}")
    if verbose:
        print(json.dumps(summary.model_dump(mode="json"), indent=2))


async def _run_until_done(engine: TaskEngine, graph: TaskGraph, config: EngineConfig) -> RunSummary:
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, engine.cancel)
    try:
        return await engine.arun(graph, config)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def command_run(args: argparse.Namespace) -> int:
    try:
        settings = RuntimeSettings.from_env()
        config = settings.engine_config(max_parallel=args.parallel, max_iterations=args.max_iter, voting=args.voting)
        task_set = load_task_set(args.tasks)
        graph = task_set.build_graph()
    except (ConfigurationError, TaskInputError, GraphValidationError) as exc:
        logger.error("Run aborted before dispatch: %s", exc)
        print_summary(hard_fail_summary(exc))
        return EXIT_CODES[RunOutcome.HARD_FAIL]

    if args.dry_run:
        print_waves(graph)
        return EXIT_CODES[RunOutcome.SUCCESS]

    project_id = args.project or task_set.project or settings.project_id
    try:
        capabilities = build_llm_capabilities(settings, repo_root=Path.cwd())
        store = FileStateStore(settings.state_store_path(Path.cwd()), project_id=project_id)
    except (RuntimeError, ValueError, OSError) as exc:
        logger.error("Unable to initialise run: %s", exc)
        print_summary(hard_fail_summary(exc))
        return EXIT_CODES[RunOutcome.HARD_FAIL]

    engine = TaskEngine(
        generator=capabilities.generator,
        reviewer=capabilities.reviewer,
        arbiter=capabilities.arbiter,
        store=store,
    )
    summary = asyncio.run(_run_until_done(engine, graph, config))
    print_summary(summary, verbose=args.verbose)
    print(f"state_store={store.root}")
    return summary.exit_code


def command_status(args: argparse.Namespace) -> int:
    try:
        settings = RuntimeSettings.from_env()
        store = FileStateStore(settings.state_store_path(Path.cwd()), project_id=args.project)
        task_ids = store.task_ids()
    except (ConfigurationError, ValueError, OSError) as exc:
        logger.error("Unable to read project %s: %s", args.project, exc)
        return 1
    if not task_ids:
        print(f"No tasks recorded for project {args.project}", file=sys.stderr)
        return 1
    for task_id in task_ids:
        state = store.get(task_id)
        score = f"{state.last_score:.1f}" if state.last_score is not None else "-"
        print(f"{task_id}\t{state.status.value}\tattempts={state.attempt}\tlast_score={score}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    verbose = getattr(args, "verbose", False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "run":
        return command_run(args)
    return command_status(args)


if __name__ == "__main__":
    raise SystemExit(main())
