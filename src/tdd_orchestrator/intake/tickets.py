"""
Ticket intake: validate a ticket, judge its acceptance criteria and create the
work item.

A ticket whose criteria cannot be turned into an expected failing test never
reaches RED. It is created directly in ``ESCALATED(ambiguous_requirement)``
with an escalation record so the operator sees it in the hand-off report.

Criterion heuristics:
- fewer than three words is too short to test;
- placeholder text (``TBD``, ``TODO``, ``?``, ``...``) means nobody decided yet;
- qualitative words such as "fast" or "user-friendly" need something
  measurable next to them: a number, a quoted literal, a code identifier or
  an observable verb ("returns", "raises", "displays").
"""

from __future__ import annotations

import json
import re
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, TextIO, cast

import structlog
import yaml

from tdd_orchestrator.domain.ids import generate_escalation_id, generate_work_item_id
from tdd_orchestrator.domain.models import (
    AcceptanceCriterion,
    AuditEntry,
    EscalationReason,
    EscalationRecord,
    Phase,
    Ticket,
    WorkItem,
    WorkItemStatus,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tdd_orchestrator.persistence.repositories import WorkItemRepo

INTAKE_SIGNAL_ID: Final[str] = "intake"
STDIN_MARKER: Final[str] = "-"
MIN_CRITERION_WORDS: Final[int] = 3

_PLACEHOLDER_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)^\W*(?:tbd|tbc|todo|fixme|n/?a|xxx|\?+|\.{3,}|…)\W*$|\b(?:tbd|tbc|fixme)\b|\?\?"
)
_VAGUE_TERMS: Final[frozenset[str]] = frozenset(
    {
        "fast",
        "faster",
        "quick",
        "quickly",
        "slow",
        "nice",
        "nicer",
        "good",
        "better",
        "best",
        "easy",
        "easier",
        "simple",
        "intuitive",
        "user-friendly",
        "friendly",
        "robust",
        "scalable",
        "efficient",
        "efficiently",
        "seamless",
        "seamlessly",
        "appropriate",
        "appropriately",
        "properly",
        "reasonable",
        "modern",
        "clean",
        "improved",
        "improve",
        "optimal",
        "flexible",
    }
)
_MEASURABLE_RE: Final[re.Pattern[str]] = re.compile(
    r"\d|\"[^\"]+\"|'[^']+'|`[^`]+`|[<>=]|\w+\(\)|\w+_\w+|/\w+"
    r"|(?i:\b(?:returns?|raises?|rejects?|responds?|displays?|shows?|contains?|equals?"
    r"|emits?|logs?|redirects?|writes?|creates?|deletes?|within|at most|at least)\b)"
)
_WORD_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9][\w'-]*")
_CAMEL_KEYS: Final[dict[str, str]] = {
    "requirementText": "requirement_text",
    "acceptanceCriteria": "acceptance_criteria",
    "projectRef": "project_ref",
}


class TicketValidationError(ValueError):
    """A malformed ticket; it is rejected before a work item exists."""


@dataclass(frozen=True, slots=True)
class IntakeResult:
    """The work item created for a ticket and what intake recorded about it."""

    work_item: WorkItem
    audit_entry: AuditEntry
    escalation: EscalationRecord | None = None
    ambiguities: tuple[str, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.escalation is None


def criterion_ambiguity(criterion: AcceptanceCriterion) -> str | None:
    """Return why ``criterion`` cannot become a failing test, or ``None``."""

    text = criterion.text.strip()
    if _PLACEHOLDER_RE.search(text):
        return f"{criterion.tag}: placeholder text"
    words = _WORD_RE.findall(text)
    if len(words) < MIN_CRITERION_WORDS:
        return f"{criterion.tag}: too short to test"
    vague = sorted({word.lower() for word in words} & _VAGUE_TERMS)
    if vague and _MEASURABLE_RE.search(text) is None:
        return f"{criterion.tag}: vague without a measurable outcome ({', '.join(vague)})"
    return None


def assess_ambiguity(criteria: Sequence[AcceptanceCriterion]) -> tuple[str, ...]:
    if not criteria:
        return ("no acceptance criteria",)
    problems = (criterion_ambiguity(criterion) for criterion in criteria)
    return tuple(problem for problem in problems if problem is not None)


def parse_ticket(payload: Ticket | Mapping[str, object]) -> Ticket:
    """Validate a raw ticket payload; camelCase and snake_case keys are accepted."""

    if isinstance(payload, Ticket):
        return payload
    if not isinstance(payload, Mapping):
        raise TicketValidationError(f"ticket must be an object, got {type(payload).__name__}")
    try:
        return Ticket.from_dict(payload)
    except ValueError as exc:
        raise TicketValidationError(str(exc)) from exc


def intake_ticket(
    payload: Ticket | Mapping[str, object],
    *,
    clock: Callable[[], datetime] = utc_now,
    logger: Any | None = None,
) -> IntakeResult:
    """Create the work item for a ticket; ambiguous tickets start escalated."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    ticket = parse_ticket(payload)
    now = clock()
    item = WorkItem(
        id=generate_work_item_id(),
        ticket_id=ticket.id,
        title=ticket.title,
        requirement_text=ticket.requirement_text,
        acceptance_criteria=ticket.acceptance_criteria,
        project_ref=ticket.project_ref,
        constraints=ticket.constraints,
        expected_failing_tests=len(ticket.acceptance_criteria),
        created_at=now,
        updated_at=now,
    )

    ambiguities = assess_ambiguity(ticket.acceptance_criteria)
    if not ambiguities:
        entry = AuditEntry(
            work_item_id=item.id,
            occurred_at=now,
            from_phase=None,
            to_phase=Phase.RED,
            signal_id=INTAKE_SIGNAL_ID,
        )
        log.info(
            "ticket_accepted",
            ticket_id=ticket.id,
            work_item_id=item.id,
            project_ref=item.project_ref,
            expected_failing_tests=item.expected_failing_tests,
        )
        return IntakeResult(work_item=item, audit_entry=entry)

    reason = EscalationReason.AMBIGUOUS_REQUIREMENT
    item.phase = Phase.ESCALATED
    item.status = WorkItemStatus.ESCALATED
    item.escalation_reason = reason
    item.escalated_from = Phase.RED
    record = EscalationRecord(
        id=generate_escalation_id(),
        work_item_id=item.id,
        phase=Phase.RED,
        reason=reason,
        created_at=now,
        detail="; ".join(ambiguities),
    )
    entry = AuditEntry(
        work_item_id=item.id,
        occurred_at=now,
        from_phase=None,
        to_phase=Phase.ESCALATED,
        signal_id=INTAKE_SIGNAL_ID,
        note=reason.value,
    )
    log.warning(
        "ticket_ambiguous",
        ticket_id=ticket.id,
        work_item_id=item.id,
        project_ref=item.project_ref,
        ambiguities=list(ambiguities),
    )
    return IntakeResult(
        work_item=item, audit_entry=entry, escalation=record, ambiguities=ambiguities
    )


def enqueue_ticket(
    payload: Ticket | Mapping[str, object],
    repo: WorkItemRepo,
    *,
    clock: Callable[[], datetime] = utc_now,
    logger: Any | None = None,
) -> IntakeResult:
    """Run intake and persist the result; a ticket may only be in flight once."""

    ticket = parse_ticket(payload)
    existing = repo.get_by_ticket(ticket.id)
    if existing is not None and not existing.is_terminal:
        raise TicketValidationError(
            f"ticket {ticket.id!r} is already tracked by {existing.id} "
            f"(phase={existing.phase.value})"
        )
    result = intake_ticket(ticket, clock=clock, logger=logger)
    repo.record_step(
        result.work_item, audit_entries=[result.audit_entry], escalation=result.escalation
    )
    return result


def load_ticket(source: str | Path, *, stdin: TextIO | None = None) -> dict[str, object]:
    """Read a ticket payload from a JSON or YAML file, or from stdin for ``-``."""

    if str(source) == STDIN_MARKER:
        stream = stdin if stdin is not None else sys.stdin
        text = stream.read()
        origin = "<stdin>"
    else:
        path = Path(source).expanduser()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TicketValidationError(f"cannot read ticket {path}: {exc}") from exc
        origin = str(path)

    if not text.strip():
        raise TicketValidationError(f"{origin}: ticket is empty")
    if text.lstrip().startswith(("{", "[")):
        try:
            loaded = cast("object", json.loads(text))
        except json.JSONDecodeError as exc:
            raise TicketValidationError(f"{origin}: invalid JSON ({exc})") from exc
    else:
        try:
            loaded = cast("object", yaml.safe_load(text))
        except yaml.YAMLError as exc:
            raise TicketValidationError(f"{origin}: invalid YAML ({exc})") from exc

    if not isinstance(loaded, Mapping):
        raise TicketValidationError(
            f"{origin}: expected a ticket object, got {type(loaded).__name__}"
        )
    return _normalize_keys(loaded)


def _normalize_keys(raw: Mapping[object, object]) -> dict[str, object]:
    normalized: dict[str, object] = {}
    for key, value in raw.items():
        name = str(key)
        normalized[_CAMEL_KEYS.get(name, name)] = value
    return normalized


__all__ = [
    "INTAKE_SIGNAL_ID",
    "IntakeResult",
    "TicketValidationError",
    "assess_ambiguity",
    "criterion_ambiguity",
    "enqueue_ticket",
    "intake_ticket",
    "load_ticket",
    "parse_ticket",
]
