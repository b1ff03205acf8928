"""Command-line interface router for tdd-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import re
import signal
import sys
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import psutil

from tdd_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    assert_valid_config,
    load_config,
)
from tdd_orchestrator.control_plane import (
    AttentionWindowScheduler,
    CommandCodeChangeActor,
    CommandReviewActor,
    PhaseDriver,
    PhaseStateMachine,
    PhaseTransitionError,
    SchedulerSettings,
    project_source_factory,
)
from tdd_orchestrator.domain.ids import generate_prefixed_id, short_id
from tdd_orchestrator.domain.models import (
    WORK_PHASES,
    AttentionWindow,
    HandoffReport,
    Phase,
    WorkItem,
    WorkItemStatus,
    iso8601z,
)
from tdd_orchestrator.intake import TicketValidationError, enqueue_ticket, load_ticket
from tdd_orchestrator.observability import (
    HandoffRenderer,
    correlation_scope,
    format_duration,
    setup_logging,
    shutdown_logging,
)
from tdd_orchestrator.persistence import (
    AttentionWindowRepo,
    ControlRequestRepo,
    CursorRepo,
    EscalationRepo,
    StateDB,
    WorkItemRepo,
)
from tdd_orchestrator.ui.render import CLIRenderer, create_renderer

EXIT_INVALID_INPUT: Final[int] = 1
EXIT_NO_ACTIVE_SESSION: Final[int] = 2

_DURATION_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?:(?P<h>\d+(?:\.\d+)?)h)?(?:(?P<m>\d+(?:\.\d+)?)m)?(?:(?P<s>\d+(?:\.\d+)?)s)?$"
)
_STATUS_LIST_LIMIT: Final[int] = 1_000


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_INVALID_INPUT

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class _Stores:
    db: StateDB
    work_items: WorkItemRepo
    windows: AttentionWindowRepo
    escalations: EscalationRepo
    control_requests: ControlRequestRepo


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="tddo",
        description=(
            "tdd-orchestrator: drive tickets through RED, GREEN, REFACTOR and REVIEW.\n\n"
            "Common workflows:\n"
            "  tddo enqueue ticket.yaml    Add a ticket to the queue\n"
            "  tddo run --budget 4h        Open an attention window\n"
            "  tddo status                 Show queue, escalations and the last window\n"
            "  tddo resume <id>            Re-enter a phase after fixing an escalation\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to orchestrator TOML config (default: ./orchestrator.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and mirror structured logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # enqueue -------------------------------------------------------------
    enqueue_parser = subparsers.add_parser(
        "enqueue",
        parents=[common],
        help="Validate a ticket and add it to the queue",
        description=(
            "Read a ticket (JSON or YAML) and create its work item in RED.\n"
            "Tickets with untestable acceptance criteria are stored as escalated\n"
            "and the command exits with status 1.\n\n"
            "Examples:\n"
            "  tddo enqueue ticket.yaml\n"
            "  cat ticket.json | tddo enqueue -\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    enqueue_parser.add_argument("ticket", help="Ticket file path, or '-' for stdin")
    enqueue_parser.add_argument(
        "--json", action="store_true", help="Emit deterministic JSON output"
    )
    enqueue_parser.set_defaults(handler=_cmd_enqueue)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show work items, open escalations and the attention window",
        description=(
            "Summarize persisted state. Works with or without an active window.\n\n"
            "Examples:\n"
            "  tddo status\n"
            "  tddo status --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    status_parser.set_defaults(handler=_cmd_status)

    # resume --------------------------------------------------------------
    resume_parser = subparsers.add_parser(
        "resume",
        parents=[common],
        help="Return an escalated or paused work item to the queue",
        description=(
            "Clear the escalation of a work item and queue it again.\n"
            "An escalated item may re-enter the phase it escalated from or an\n"
            "earlier one; attempt counters start over.\n\n"
            "Examples:\n"
            "  tddo resume wi-01J...\n"
            "  tddo resume wi-01J... --phase red\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    resume_parser.add_argument("work_item_id", help="Work item id")
    resume_parser.add_argument(
        "--phase",
        choices=[phase.value for phase in WORK_PHASES],
        default=None,
        help="Phase to re-enter (default: the phase that escalated)",
    )
    resume_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    resume_parser.set_defaults(handler=_cmd_resume)

    # pause ---------------------------------------------------------------
    pause_parser = subparsers.add_parser(
        "pause",
        parents=[common],
        help="Ask the active window to stop after its current steps",
        description=(
            "Running work items finish their current step and go back to the queue.\n"
            "Exits with status 2 when no window is active.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pause_parser.set_defaults(handler=_cmd_pause)

    # cancel --------------------------------------------------------------
    cancel_parser = subparsers.add_parser(
        "cancel",
        parents=[common],
        help="Stop the active window and park one work item",
        description=(
            "The target work item is paused (resume it later with 'tddo resume');\n"
            "other running items go back to the queue.\n"
            "Exits with status 2 when no window is active.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    cancel_parser.add_argument("work_item_id", help="Work item id")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Open an attention window and work the queue",
        description=(
            "Recover state left by a dead window, then drive queued work items\n"
            "until the queue drains, the budget is spent or an operator stops it.\n\n"
            "Examples:\n"
            "  tddo run\n"
            "  tddo run --budget 4h\n"
            "  tddo run --budget 90m --profile overnight\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "--budget",
        default=None,
        help="Autonomous time budget, e.g. 4h, 30m, 1h30m or plain seconds",
    )
    run_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    run_parser.set_defaults(handler=_cmd_run)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    try:
        namespace = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse exits 2 on usage errors; 2 is reserved for "no active session".
        return 0 if exc.code in (0, None) else EXIT_INVALID_INPUT
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_INVALID_INPUT

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_enqueue(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    ticket_arg = _optional_str(getattr(args, "ticket", None))
    if ticket_arg is None:
        raise CLIError("ticket path is required")

    try:
        payload = load_ticket(ticket_arg)
    except TicketValidationError as exc:
        raise CLIError(str(exc)) from exc
    project_ref = payload.get("project_ref")
    projects = config.get("projects") or {}
    if isinstance(project_ref, str) and projects and project_ref not in projects:
        raise CLIError(
            f"unknown project {project_ref!r}; configured: {', '.join(sorted(projects))}"
        )

    with _logging_session(config, args, "enqueue"):
        stores = _open_stores(config)
        try:
            result = enqueue_ticket(payload, stores.work_items)
        except TicketValidationError as exc:
            raise CLIError(str(exc)) from exc

    item = result.work_item
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "enqueue",
                "accepted": result.accepted,
                "work_item": item.to_dict(),
                "ambiguities": list(result.ambiguities),
            }
        )
        return 0 if result.accepted else EXIT_INVALID_INPUT

    renderer = _get_renderer(args)
    if result.accepted:
        renderer.kv("Queued", item.id)
        renderer.kv("Ticket", item.ticket_id)
        renderer.kv("Project", item.project_ref)
        renderer.kv("Expected failing tests", item.expected_failing_tests)
        renderer.next_steps(["tddo run", "tddo status"])
        return 0

    renderer.warning(f"ticket {item.ticket_id} is ambiguous; stored as escalated {item.id}")
    renderer.items(result.ambiguities)
    renderer.next_steps([f"tddo resume {item.id}"])
    return EXIT_INVALID_INPUT


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    stores = _open_stores(config)

    items = stores.work_items.list_items(limit=_STATUS_LIST_LIMIT)
    counts = stores.work_items.count_by_status()
    escalations = stores.escalations.list_open(limit=_STATUS_LIST_LIMIT)
    active = _active_window(stores.windows)
    latest = stores.windows.latest()
    report = stores.windows.get_report(latest.id) if latest is not None else None

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "status",
                "state_db": str(stores.db.path),
                "counts": counts,
                "work_items": [_work_item_summary(item) for item in items],
                "open_escalations": [record.to_dict() for record in escalations],
                "active_window": active.to_dict() if active is not None else None,
                "last_window": latest.to_dict() if latest is not None else None,
                "last_report": report.to_dict() if report is not None else None,
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not items:
        renderer.text(f"No work items in {stores.db.path}")
        renderer.next_steps(["tddo enqueue ticket.yaml"])
        return 0

    renderer.kv(
        "Work items",
        ", ".join(f"{status}={count}" for status, count in sorted(counts.items())),
    )
    if active is not None:
        renderer.kv(
            "Active window",
            f"{active.id} (pid {active.pid}, started {iso8601z(active.started_at)}, "
            f"budget {format_duration(active.budget_seconds)})",
        )
    else:
        renderer.kv("Active window", "none")
    if latest is not None and latest.close_reason is not None:
        renderer.kv(
            "Last window",
            f"{latest.id} closed: {latest.close_reason.value} "
            f"after {format_duration(latest.elapsed_seconds)}",
        )

    renderer.table(
        ["ID", "TICKET", "PROJECT", "PHASE", "STATUS", "ATTEMPTS"],
        [
            [
                item.id if renderer.verbose else short_id(item.id),
                item.ticket_id,
                item.project_ref,
                item.phase.value,
                item.status.value,
                _attempts_text(item),
            ]
            for item in items
        ],
        title="Work items:",
    )
    renderer.table(
        ["WORK ITEM", "PHASE", "REASON", "SINCE", "DETAIL"],
        [
            [
                record.work_item_id,
                record.phase.value,
                record.reason.value,
                iso8601z(record.created_at),
                record.detail or "",
            ]
            for record in escalations
        ],
        title="Open escalations:",
    )
    if escalations:
        renderer.next_steps(sorted({f"tddo resume {r.work_item_id}" for r in escalations}))
    return 0


def _cmd_resume(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    work_item_id = _require_str(getattr(args, "work_item_id", None), "work_item_id")
    phase_arg = _optional_str(getattr(args, "phase", None))
    target = Phase(phase_arg) if phase_arg is not None else None

    with _logging_session(config, args, "resume"):
        stores = _open_stores(config)
        item = _get_work_item(stores.work_items, work_item_id)
        if item.status is WorkItemStatus.ACTIVE:
            raise CLIError(f"work item {item.id} is running in an active window")
        with correlation_scope(work_item_id=item.id, project_ref=item.project_ref):
            try:
                outcome = PhaseStateMachine(item).resume(target)
            except PhaseTransitionError as exc:
                raise CLIError(str(exc)) from exc
            cleared = stores.work_items.record_resume(
                outcome.work_item, audit_entries=outcome.audit_entries
            )

    resumed = outcome.work_item
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "resume",
                "work_item": resumed.to_dict(),
                "cleared_escalations": cleared,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Resumed", resumed.id)
    renderer.kv("Phase", resumed.phase.value)
    renderer.kv("Cleared escalations", cleared)
    if _active_window(stores.windows) is None:
        renderer.next_steps(["tddo run"])
    return 0


def _cmd_pause(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    stores = _open_stores(config)
    window = _require_active_window(stores.windows)
    request_id = stores.control_requests.request(window.id, "pause")

    renderer = _get_renderer(args)
    renderer.kv("Pause requested", window.id)
    if renderer.verbose:
        renderer.kv("Request", request_id)
    renderer.text("Running work items stop after their current step.")
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    work_item_id = _require_str(getattr(args, "work_item_id", None), "work_item_id")
    stores = _open_stores(config)
    item = _get_work_item(stores.work_items, work_item_id)
    if item.is_terminal:
        raise CLIError(f"work item {item.id} already finished ({item.phase.value})")
    window = _require_active_window(stores.windows)
    stores.control_requests.request(window.id, "cancel", work_item_id=item.id)

    renderer = _get_renderer(args)
    renderer.kv("Cancel requested", item.id)
    renderer.kv("Window", window.id)
    renderer.next_steps([f"tddo resume {item.id}"])
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    budget_arg = _optional_str(getattr(args, "budget", None))
    budget_seconds = parse_duration(budget_arg) if budget_arg is not None else None
    if not config.get("projects"):
        raise CLIError("no projects configured; add a [projects.<name>] table to the config")

    with _logging_session(config, args, "run"):
        stores = _open_stores(config)
        active = _active_window(stores.windows)
        if active is not None:
            raise CLIError(f"attention window {active.id} is already running (pid {active.pid})")
        _recover(stores)

        actors = config["actors"]
        timeout_seconds = float(actors["timeout_seconds"])
        driver = PhaseDriver.from_config(
            config,
            stores.work_items,
            project_source_factory(config, CursorRepo(stores.db)),
            CommandCodeChangeActor(actors["code_change_command"], timeout_seconds=timeout_seconds),
            CommandReviewActor(actors["review_command"], timeout_seconds=timeout_seconds),
        )
        try:
            settings = SchedulerSettings.from_config(config, budget_seconds=budget_seconds)
        except ValueError as exc:
            raise CLIError(str(exc)) from exc
        scheduler = AttentionWindowScheduler(
            stores.work_items,
            stores.windows,
            stores.escalations,
            stores.control_requests,
            driver,
            settings,
            handoff=HandoffRenderer(config["paths"]["handoff_dir"]),
        )
        report = asyncio.run(_run_window(scheduler))

    if _flag(args, "json"):
        _emit_json({"command": "run", "report": report.to_dict()})
        return 0
    _render_report(_get_renderer(args), report, Path(config["paths"]["handoff_dir"]))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_duration(raw: str) -> float:
    """``"4h"``, ``"30m"``, ``"1h30m"``, ``"90s"`` or plain seconds to seconds."""

    text = raw.strip().lower()
    try:
        seconds = float(text)
    except ValueError:
        match = _DURATION_RE.fullmatch(text)
        if not text or match is None:
            raise CLIError(f"invalid duration {raw!r}; expected e.g. 4h, 30m or 1h30m") from None
        seconds = (
            float(match.group("h") or 0) * 3600
            + float(match.group("m") or 0) * 60
            + float(match.group("s") or 0)
        )
    if seconds <= 0:
        raise CLIError(f"duration must be positive, got {raw!r}")
    return seconds


def is_window_alive(window: AttentionWindow) -> bool:
    """An open window counts as active only while its owning process lives."""

    if window.pid is None:
        return False
    try:
        return psutil.Process(window.pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


async def _run_window(scheduler: AttentionWindowScheduler) -> HandoffReport:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, scheduler.request_pause)
        loop.add_signal_handler(signal.SIGTERM, scheduler.request_pause)
    try:
        return await scheduler.run_window()
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)


def _recover(stores: _Stores) -> None:
    for window in stores.windows.list_open():
        if not is_window_alive(window):
            stores.windows.mark_abandoned(window.id)
    stores.work_items.requeue_active()


def _active_window(windows: AttentionWindowRepo) -> AttentionWindow | None:
    for window in windows.list_open():
        if is_window_alive(window):
            return window
    return None


def _require_active_window(windows: AttentionWindowRepo) -> AttentionWindow:
    window = _active_window(windows)
    if window is None:
        raise CLIError("no active attention window", exit_code=EXIT_NO_ACTIVE_SESSION)
    return window


def _get_work_item(repo: WorkItemRepo, work_item_id: str) -> WorkItem:
    try:
        item = repo.get(work_item_id)
    except ValueError as exc:
        raise CLIError(f"invalid work item id {work_item_id!r}: {exc}") from exc
    if item is None:
        raise CLIError(f"work item not found: {work_item_id}")
    return item


def _open_stores(config: Mapping[str, Any]) -> _Stores:
    db = StateDB(config["paths"]["state_db"])
    return _Stores(
        db=db,
        work_items=WorkItemRepo(db),
        windows=AttentionWindowRepo(db),
        escalations=EscalationRepo(db),
        control_requests=ControlRequestRepo(db),
    )


@contextlib.contextmanager
def _logging_session(
    config: Mapping[str, Any], args: argparse.Namespace, command: str
) -> Iterator[None]:
    handle = setup_logging(
        config["observability"],
        session_id=generate_prefixed_id(command),
        log_to_stderr=_flag(args, "verbose"),
    )
    try:
        yield
    finally:
        shutdown_logging(handle)


def _render_report(renderer: CLIRenderer, report: HandoffReport, handoff_dir: Path) -> None:
    renderer.heading("Attention window closed")
    renderer.kv("Window", report.window_id)
    renderer.kv("Closed", report.close_reason.value)
    renderer.kv(
        "Elapsed",
        f"{format_duration(report.elapsed_seconds)} of {format_duration(report.budget_seconds)}",
    )
    renderer.kv("Completed", len(report.completed))
    renderer.items(report.completed)
    renderer.table(
        ["WORK ITEM", "PHASE", "REASON", "DETAIL"],
        [
            [record.work_item_id, record.phase.value, record.reason.value, record.detail or ""]
            for record in report.pending_escalations
        ],
        title="Pending escalations:",
    )
    if report.aborted:
        renderer.section("Aborted:")
        renderer.items(report.aborted)
    if report.paused:
        renderer.section("Paused:")
        renderer.items(report.paused)
    renderer.kv("Remaining queue", len(report.remaining_queue))
    renderer.kv("Hand-off", handoff_dir / f"{report.window_id}.md")


def _work_item_summary(item: WorkItem) -> dict[str, object]:
    return {
        "id": item.id,
        "ticket_id": item.ticket_id,
        "project_ref": item.project_ref,
        "phase": item.phase.value,
        "status": item.status.value,
        "attempts": dict(sorted(item.attempts.items())),
        "escalation_reason": (
            item.escalation_reason.value if item.escalation_reason is not None else None
        ),
        "updated_at": iso8601z(item.updated_at),
    }


def _attempts_text(item: WorkItem) -> str:
    if not item.attempts:
        return "-"
    return " ".join(f"{phase}={count}" for phase, count in sorted(item.attempts.items()))


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    """Retrieve or create a CLI renderer from the parsed namespace."""

    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        loaded = load_config(config_path, profile=profile)
        validated = assert_valid_config(loaded, active_profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc

    return {key: value for key, value in validated.items()}


def _require_str(value: object, name: str) -> str:
    parsed = _optional_str(value)
    if parsed is None:
        raise CLIError(f"{name} is required")
    return parsed


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument")
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


__all__ = [
    "CLIError",
    "build_parser",
    "is_window_alive",
    "parse_duration",
    "run_cli",
]
