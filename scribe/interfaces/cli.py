"""CLI interface driving the operation orchestrator."""

import argparse
import asyncio
import logging
from pathlib import Path

from scribe.activity_log import get_activity_log_tail
from scribe.config import LOG_FILE, QUEUE_DB_PATH, VERSION, setup_logging
from scribe.connectivity import ConnectivityMonitor
from scribe.core.modes import ModeStateMachine
from scribe.core.orchestrator import ModificationType, OperationOrchestrator, OperationOutcome
from scribe.progress import ProgressReporter
from scribe.resilience.classifier import ErrorClassifier, user_friendly_message
from scribe.resilience.offline import OfflineQueue
from scribe.resilience.retry import RetryExecutor
from scribe.store import SQLiteKeyValueStore
from scribe.transport import HttpTransport

logger = logging.getLogger(__name__)


async def _build(quiet: bool = False) -> OperationOrchestrator:
    """Wire the orchestrator with the persisted queue and a CLI progress printer."""
    store = SQLiteKeyValueStore(QUEUE_DB_PATH)
    await store.init()
    queue = OfflineQueue(store)
    await queue.load()

    machine = ModeStateMachine()
    classifier = ErrorClassifier()

    def cli_progress_callback(message: str) -> None:
        print(message, flush=True)

    return OperationOrchestrator(
        HttpTransport(),
        machine=machine,
        classifier=classifier,
        executor=RetryExecutor(classifier),
        offline_queue=queue,
        connectivity=ConnectivityMonitor(),
        reporter=ProgressReporter(machine, output=None if quiet else cli_progress_callback),
    )


async def _shutdown(orchestrator: OperationOrchestrator) -> None:
    await orchestrator.close()
    store = orchestrator.offline_queue.store
    if isinstance(store, SQLiteKeyValueStore):
        await store.close()


def _print_outcome(outcome: OperationOutcome) -> int:
    """Render an outcome. Returns the process exit code."""
    if outcome.success and outcome.queued:
        print(f"📥 Offline: change queued ({outcome.value.id[:8]}), will sync when back online")
        return 0

    if outcome.success:
        value = outcome.value
        if outcome.degraded:
            cause = outcome.error.user_message if outcome.error else "requested"
            print(f"⚠️ Reduced functionality ({cause})")
        concerns = getattr(value, "concerns", None)
        if concerns is not None:
            source = "cache" if value.cache_used else "local" if value.fallback_used else "AI"
            print(f"\n{len(concerns)} concerns ({source} analysis):")
            for concern in concerns:
                print(f"- [{concern.severity}] {concern.category}: {concern.title}")
                for suggestion in concern.suggestions:
                    print(f"    • {suggestion}")
        elif getattr(value, "content", None) is not None:
            print("\n" + value.content)
        else:
            print("✅ Done")
        return 0

    error = outcome.error
    if outcome.cancelled:
        print("Cancelled.")
        return 130
    print(f"\n❌ {user_friendly_message(error)}")
    if error.recovery_actions:
        print("Options: " + ", ".join(action.label for action in error.recovery_actions))
    return 1


def _read(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


async def _run_intent(args: argparse.Namespace) -> int:
    orchestrator = await _build(quiet=args.quiet)
    try:
        if args.command == "prompt":
            if args.file:
                orchestrator.update_document(_read(args.file))
            outcome = await orchestrator.submit_prompt(args.text, cursor=args.cursor)
        elif args.command == "continue":
            orchestrator.update_document(_read(args.file))
            outcome = await orchestrator.continue_writing(cursor=args.cursor)
        elif args.command == "modify":
            document = _read(args.file)
            orchestrator.update_document(document)
            start = args.start or 0
            end = args.end if args.end is not None else len(document)
            outcome = await orchestrator.modify_selection(
                document[start:end], ModificationType(args.type), custom_prompt=args.prompt
            )
        elif args.command == "analyze":
            document = _read(args.file)
            orchestrator.update_document(document)
            outcome = await orchestrator.analyze_document(document)
        else:
            await orchestrator.connectivity.check()
            outcome = await orchestrator.update_concern_status(args.concern_id, args.status)
        return _print_outcome(outcome)
    finally:
        await _shutdown(orchestrator)


async def _queue_command(action: str) -> int:
    orchestrator = await _build(quiet=True)
    try:
        queue = orchestrator.offline_queue
        if action == "drain":
            online = await orchestrator.connectivity.check()
            if not online:
                print(f"Backend unreachable; {len(queue)} operations stay queued.")
                return 1
            report = await queue.drain()
            print(
                f"Replayed {len(report.replayed)}, failed {len(report.failed)}, "
                f"dropped {len(report.dropped)}, remaining {report.remaining}"
            )
            return 0

        status = queue.status()
        print(f"Pending operations: {status.pending}")
        for op in status.queue:
            print(f"  {op.id[:8]}  {op.kind:<14} retries={op.retry_count}  {op.payload}")
        return 0
    finally:
        await _shutdown(orchestrator)


def _show_logs(n: int) -> None:
    try:
        with open(LOG_FILE, encoding="utf-8") as f:
            lines = f.readlines()
    except FileNotFoundError:
        print(f"Log file not found: {LOG_FILE}")
        return
    tail = lines[-n:] if len(lines) > n else lines
    print(f"--- last {len(tail)} of {len(lines)} log entries ---")
    print("".join(tail), end="")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scribe",
        description=f"Scribe v{VERSION}: resilient AI writing assistance from the command line",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Hide progress output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    prompt_parser = sub.add_parser("prompt", help="Generate content from a prompt")
    prompt_parser.add_argument("text", help="Prompt text")
    prompt_parser.add_argument("--file", help="Document providing context")
    prompt_parser.add_argument("--cursor", type=int, help="Insertion position")

    continue_parser = sub.add_parser("continue", help="Continue writing a document")
    continue_parser.add_argument("file", help="Document to continue")
    continue_parser.add_argument("--cursor", type=int, help="Continue from this position")

    modify_parser = sub.add_parser("modify", help="Modify a range of a document")
    modify_parser.add_argument("file", help="Document containing the selection")
    modify_parser.add_argument(
        "--type",
        default=ModificationType.IMPROVE_CLARITY.value,
        choices=[t.value for t in ModificationType],
        help="Modification type",
    )
    modify_parser.add_argument("--prompt", help="Custom instruction (with --type prompt)")
    modify_parser.add_argument("--start", type=int, help="Selection start (default 0)")
    modify_parser.add_argument("--end", type=int, help="Selection end (default: end of file)")

    analyze_parser = sub.add_parser("analyze", help="Proofread a document")
    analyze_parser.add_argument("file", help="Document to analyze")

    concern_parser = sub.add_parser("concern", help="Update a concern status")
    concern_parser.add_argument("concern_id", help="Concern ID")
    concern_parser.add_argument("status", choices=["to_be_done", "addressed", "rejected"])

    queue_parser = sub.add_parser("queue", help="Offline queue commands")
    queue_sub = queue_parser.add_subparsers(dest="queue_cmd")
    queue_sub.add_parser("status", help="List pending operations")
    queue_sub.add_parser("drain", help="Replay pending operations now")

    activity_parser = sub.add_parser("activity", help="Show activity log tail")
    activity_parser.add_argument("n", type=int, nargs="?", default=30, help="Number of lines")

    logs_parser = sub.add_parser("logs", help="Show log tail")
    logs_parser.add_argument("n", type=int, nargs="?", default=30, help="Number of lines")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if args.command in ("prompt", "continue", "modify", "analyze", "concern"):
        return asyncio.run(_run_intent(args))
    if args.command == "queue":
        if args.queue_cmd not in ("status", "drain"):
            parser.parse_args(["queue", "--help"])
            return 2
        return asyncio.run(_queue_command(args.queue_cmd))
    if args.command == "activity":
        print(get_activity_log_tail(args.n))
    elif args.command == "logs":
        _show_logs(args.n)
    return 0
