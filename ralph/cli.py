#!/usr/bin/env python3
"""Ralph CLI entrypoint."""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from ralph.agents.worker import CliWorker
from ralph.lib.agents_config import load_agents_config, validate_stage_binaries
from ralph.lib.config import ConfigError, load_config
from ralph.lib.constants import EXIT_CONFIG_ERROR, EXIT_ESCALATED, EXIT_LOCKED, EXIT_OK
from ralph.lib.ledger import LedgerError, StatusLedger
from ralph.lib.manifest import MalformedManifest, extract_next_task
from ralph.lib.progress import ProgressReport
from ralph.lib.timeline import Timeline
from ralph.runner.discovery import Discovery
from ralph.runner.locking import LockTimeout, lock_holder, pipeline_lock
from ralph.runner.pipeline import ChainController
from ralph.workflow import engine
from ralph.workflow.state_machine import InvalidTransition, Lifecycle, parse_state, transition

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


def get_config(args):
    """Load pipeline config for --project (default: cwd). Prints and returns None on error."""
    project_root = Path(args.project or ".").resolve()
    try:
        return load_config(project_root)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return None


def apply_run_overrides(config, args):
    """CLI flags take precedence over ralph.env and the environment."""
    overrides = {}
    if args.max_retries is not None:
        overrides["max_retries"] = args.max_retries
    if args.cr_iterations is not None:
        overrides["max_cr_iterations"] = args.cr_iterations
    if args.chain_mode is not None:
        overrides["chain_mode"] = args.chain_mode
    if args.skip_validation:
        overrides["skip_validation"] = True
    if args.skip_cs:
        overrides["skip_generation"] = True
    if args.story:
        overrides["chain_mode"] = False
    config = dataclasses.replace(config, **overrides)
    if config.max_retries < 1 or config.max_cr_iterations < 1:
        raise ConfigError("--max-retries and --cr-iterations must be at least 1")
    return config


def _print_banner(config, story):
    print("Ralph autonomous pipeline")
    print(f"  Chain mode:         {config.chain_mode}")
    print(f"  Max retries/task:   {config.max_retries}")
    print(f"  Max CR iterations:  {config.max_cr_iterations}")
    print(f"  Wall-clock timeout: {config.wall_clock_timeout}s ({config.wall_clock_timeout // 60}m)")
    print(f"  Skip validation:    {config.skip_validation}")
    print(f"  Skip story gen:     {config.skip_generation}")
    print(f"  Ledger:             {config.ledger_path}")
    if story:
        print(f"  Explicit story:     {story}")
    print()


def cmd_run(args):
    setup_logging(args.verbose)
    config = get_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR
    try:
        config = apply_run_overrides(config, args)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    agents = load_agents_config(config.project_root)
    stages = ["implement", "review", "learnings"]
    if not config.skip_generation:
        stages.append("create_story")
    check = validate_stage_binaries(agents, stages)
    if not check.ok:
        print(f"ERROR: {check.error_message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    _print_banner(config, args.story)

    worker = CliWorker(agents, config.project_root)
    ledger = StatusLedger(config.ledger_path)
    controller = ChainController(config, ledger, worker, explicit_story=args.story)

    try:
        with pipeline_lock(config.project_root):
            return engine.run(controller, use_prefect=not args.no_prefect)
    except LockTimeout as e:
        holder = lock_holder(config.project_root)
        print(f"ERROR: {e}" + (f" (held by pid {holder})" if holder else ""), file=sys.stderr)
        return EXIT_LOCKED


def cmd_next(args):
    """Print the next story discovery would pick, as JSON."""
    setup_logging(args.verbose)
    config = get_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR
    try:
        story = Discovery(StatusLedger(config.ledger_path), config).find()
    except LedgerError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    print(json.dumps(story.to_dict() if story else {"done": True}, indent=2))
    return EXIT_OK


def cmd_task(args):
    """Print the next task of a story file, as JSON."""
    try:
        next_task = extract_next_task(Path(args.story_file))
    except MalformedManifest as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ESCALATED
    print(json.dumps(next_task.to_dict(), indent=2))
    return EXIT_OK


def cmd_epic(args):
    """Print the stories of an epic and whether all are done, as JSON."""
    config = get_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR
    try:
        epic = StatusLedger(config.ledger_path).epic_stories(args.epic)
    except LedgerError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    print(json.dumps({
        "epicNum": epic.epic_num,
        "epicStatus": epic.epic_status,
        "allDone": epic.all_done,
        "stories": [{"key": s.key, "status": s.status} for s in epic.stories],
    }, indent=2))
    return EXIT_OK


def cmd_set_status(args):
    """Move a story or epic to a new state, through the lifecycle unless --force."""
    setup_logging(args.verbose)
    config = get_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR

    to_state = parse_state(args.status)
    if to_state is None:
        valid = ", ".join(s.value for s in Lifecycle)
        print(f"ERROR: Unknown status '{args.status}'. Valid: {valid}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    ledger = StatusLedger(config.ledger_path)
    kind = "epic" if args.key.startswith("epic-") else "story"
    story_file = config.story_file(args.key) if kind == "story" else None
    try:
        if args.force:
            changed = ledger.update(args.key, to_state.value)
        else:
            changed = transition(ledger, args.key, to_state, reason="set-status", kind=kind,
                                 story_file=story_file)
    except (InvalidTransition, LedgerError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ESCALATED

    print(f"{args.key}: {to_state.value}" + ("" if changed else " (unchanged)"))
    return EXIT_OK


def cmd_report(args):
    """Regenerate the progress report from the ledger."""
    config = get_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR
    ledger = StatusLedger(config.ledger_path)
    if not ledger.exists():
        print(f"ERROR: Ledger not found: {config.ledger_path}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    ProgressReport(config.progress_report, ledger, config.story_file, Timeline()).update(None, "Idle")
    print(f"Wrote {config.progress_report}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--project', '-C', help='Project root (default: current directory)')
    common.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    parser = argparse.ArgumentParser(
        prog='ralph',
        description='Autonomous story pipeline: tasks, validation, review, chaining',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    # ralph run
    p_run = subparsers.add_parser('run', parents=[common], help='Run the pipeline')
    p_run.add_argument('story', nargs='?', help='Story key or story file (implies --single)')
    p_run.add_argument('--max-retries', type=int, help='Attempts per task (default 3)')
    p_run.add_argument('--cr-iterations', type=int, help='Review iterations (default 3)')
    mode = p_run.add_mutually_exclusive_group()
    mode.add_argument('--single', dest='chain_mode', action='store_false', default=None,
                      help='Stop after one story')
    mode.add_argument('--chain', dest='chain_mode', action='store_true', default=None, help='Chain to the next story')
    p_run.add_argument('--skip-validation', action='store_true', help='Skip story and epic validation')
    p_run.add_argument('--skip-cs', action='store_true', help='Never generate missing story files')
    p_run.add_argument('--no-prefect', action='store_true', help='Run without the Prefect flow wrapper')
    p_run.set_defaults(func=cmd_run)

    # ralph next
    p_next = subparsers.add_parser('next', parents=[common], help='Show the next story to work on')
    p_next.set_defaults(func=cmd_next)

    # ralph task
    p_task = subparsers.add_parser('task', parents=[common], help='Show the next task of a story file')
    p_task.add_argument('story_file', help='Path to the story file')
    p_task.set_defaults(func=cmd_task)

    # ralph epic
    p_epic = subparsers.add_parser('epic', parents=[common], help='Show the stories of an epic')
    p_epic.add_argument('epic', type=int, help='Epic number')
    p_epic.set_defaults(func=cmd_epic)

    # ralph set-status
    p_set = subparsers.add_parser('set-status', parents=[common], help='Change a story or epic status')
    p_set.add_argument('key', help='Story or epic key')
    p_set.add_argument('status', help='New status')
    p_set.add_argument('--force', action='store_true', help='Write the ledger without lifecycle checks')
    p_set.set_defaults(func=cmd_set_status)

    # ralph report
    p_report = subparsers.add_parser('report', parents=[common], help='Regenerate the progress report')
    p_report.set_defaults(func=cmd_report)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
