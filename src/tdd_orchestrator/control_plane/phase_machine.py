"""
Per-work-item phase state machine.

The machine owns one :class:`WorkItem` and is the only code that changes its
phase. It consumes :class:`Signal` objects one at a time and reports what the
caller has to do next through a :class:`TransitionOutcome`; it never touches
the working tree, the database or a process itself.

Transition graph (``None`` is intake)::

    None      -> RED | ESCALATED
    RED       -> GREEN | ESCALATED | ABORTED
    GREEN     -> REFACTOR | ESCALATED | ABORTED
    REFACTOR  -> REFACTOR | REVIEW | ESCALATED | ABORTED
    REVIEW    -> DONE | ESCALATED | ABORTED
    ESCALATED -> RED | GREEN | REFACTOR | REVIEW   (resume only)

Attempt accounting:
- RED and GREEN count every test run, every failed compile and every
  non-silent timeout.
- REFACTOR counts regressions (failures, a missing GREEN test, a failed
  compile) and timeouts. Clean runs are free.
- Review rework is bounded separately by ``max_review_cycles``.
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final

import structlog

from tdd_orchestrator.config.schema import resolve_max_attempts
from tdd_orchestrator.constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_REVIEW_CYCLES
from tdd_orchestrator.control_plane.escalation import EscalationPolicy, PolicyDecision
from tdd_orchestrator.domain.ids import generate_escalation_id
from tdd_orchestrator.domain.models import (
    TERMINAL_PHASES,
    WORK_PHASES,
    AuditEntry,
    EscalationReason,
    EscalationRecord,
    Phase,
    PolicyAction,
    Severity,
    WorkItem,
    WorkItemStatus,
    utc_now,
)
from tdd_orchestrator.domain.signals import (
    CompileStatus,
    PhaseTimeout,
    ProcessCrashed,
    ReviewCompleted,
    Signal,
    TestRunSummary,
)

RESUME_SIGNAL_ID: Final[str] = "resume"
OPERATOR_SIGNAL_ID: Final[str] = "operator"
DEFAULT_HISTORY_SIZE: Final[int] = 20

TRANSITIONS: Final[Mapping[Phase | None, frozenset[Phase]]] = {
    None: frozenset({Phase.RED, Phase.ESCALATED}),
    Phase.RED: frozenset({Phase.GREEN, Phase.ESCALATED, Phase.ABORTED}),
    Phase.GREEN: frozenset({Phase.REFACTOR, Phase.ESCALATED, Phase.ABORTED}),
    Phase.REFACTOR: frozenset({Phase.REFACTOR, Phase.REVIEW, Phase.ESCALATED, Phase.ABORTED}),
    Phase.REVIEW: frozenset({Phase.DONE, Phase.ESCALATED, Phase.ABORTED}),
    Phase.ESCALATED: frozenset(WORK_PHASES),
    Phase.DONE: frozenset(),
    Phase.ABORTED: frozenset(),
}

_TAG_SEPARATORS: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")


class PhaseTransitionError(RuntimeError):
    """Raised for an operation the transition graph does not allow."""


@dataclass(frozen=True, slots=True)
class MachineSettings:
    max_attempts: Mapping[str, int] = field(default_factory=dict)
    max_review_cycles: int = DEFAULT_MAX_REVIEW_CYCLES
    review_severity_threshold: Severity = Severity.HIGH
    history_size: int = DEFAULT_HISTORY_SIZE

    def __post_init__(self) -> None:
        if self.max_review_cycles < 1:
            raise ValueError("max_review_cycles must be >= 1")
        if self.history_size < 1:
            raise ValueError("history_size must be >= 1")
        for phase, bound in self.max_attempts.items():
            if bound < 1:
                raise ValueError(f"max_attempts[{phase}] must be >= 1")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> MachineSettings:
        phases = config["phases"]
        return cls(
            max_attempts=resolve_max_attempts(config),
            max_review_cycles=int(phases["max_review_cycles"]),
            review_severity_threshold=Severity(str(phases["review_severity_threshold"])),
        )

    def bound(self, phase: Phase) -> int:
        return int(self.max_attempts.get(phase.value, DEFAULT_MAX_ATTEMPTS))


@dataclass(slots=True)
class TransitionOutcome:
    """What one machine step changed and what the caller must do about it.

    ``discarded`` names why a signal was ignored (``frozen``, ``terminal``,
    ``paused``, ``duplicate``, ``stale_epoch``, ``unexpected``); an ignored
    signal leaves the work item untouched and must not be recorded as applied.
    """

    work_item: WorkItem
    signal_key: str | None = None
    audit_entries: list[AuditEntry] = field(default_factory=list)
    decision: PolicyDecision | None = None
    discarded: str | None = None
    needs_action: bool = False
    capture_snapshot: bool = False
    rollback_to: str | None = None
    review_requested: bool = False
    escalation: EscalationRecord | None = None

    @property
    def applied(self) -> bool:
        return self.discarded is None

    @property
    def transitioned(self) -> bool:
        return bool(self.audit_entries)


def is_valid_audit_path(entries: Sequence[AuditEntry]) -> bool:
    """Return ``True`` when ``entries`` form one walk through the transition graph."""

    previous: Phase | None = None
    for index, entry in enumerate(entries):
        if index == 0 and entry.from_phase is not None:
            return False
        if index > 0:
            if entry.work_item_id != entries[0].work_item_id:
                return False
            if entry.from_phase is None or entry.from_phase is not previous:
                return False
        if entry.to_phase not in TRANSITIONS[entry.from_phase]:
            return False
        previous = entry.to_phase
    return True


def criterion_matches(tag: str, test_name: str) -> bool:
    """``AC-1`` matches ``test_api.py::test_ac_1_returns_200`` (case-insensitive token)."""

    token = _TAG_SEPARATORS.sub("_", tag.lower()).strip("_")
    if not token:
        return False
    haystack = f"_{_TAG_SEPARATORS.sub('_', test_name.lower())}_"
    return f"_{token}_" in haystack


class PhaseStateMachine:
    """
    Drive one work item through RED -> GREEN -> REFACTOR -> REVIEW -> DONE.

    Signals are applied in the order given. Each call returns a
    :class:`TransitionOutcome`; the caller persists ``outcome.work_item`` with
    ``outcome.audit_entries`` and ``outcome.escalation`` in one transaction
    and records ``outcome.signal_key`` as applied when ``outcome.applied``.
    """

    def __init__(
        self,
        work_item: WorkItem,
        settings: MachineSettings | None = None,
        *,
        policy: EscalationPolicy | None = None,
        applied_keys: Iterable[str] = (),
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._item = work_item
        self._settings = settings if settings is not None else MachineSettings()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._policy = policy if policy is not None else EscalationPolicy(logger=self._logger)
        self._applied: set[str] = set(applied_keys)
        self._history: deque[Signal] = deque(maxlen=self._settings.history_size)
        self._clock = clock

    @property
    def work_item(self) -> WorkItem:
        return self._item

    @property
    def settings(self) -> MachineSettings:
        return self._settings

    @property
    def history(self) -> tuple[Signal, ...]:
        return tuple(self._history)

    # ----- signal intake -----

    def apply(
        self, signal: Signal, *, budget_remaining_seconds: float | None = None
    ) -> TransitionOutcome:
        item = self._item
        outcome = TransitionOutcome(work_item=item, signal_key=signal.key)

        if item.phase in TERMINAL_PHASES:
            return self._discard(outcome, signal, "terminal")
        if item.phase is Phase.ESCALATED:
            return self._discard(outcome, signal, "frozen")
        if item.status is WorkItemStatus.PAUSED:
            return self._discard(outcome, signal, "paused")
        if signal.key in self._applied:
            return self._discard(outcome, signal, "duplicate")
        known_epoch = item.stream_epochs.get(signal.stream_id, 0)
        if signal.epoch < known_epoch:
            return self._discard(outcome, signal, "stale_epoch")

        payload = signal.payload
        if isinstance(payload, ReviewCompleted) and not self._awaiting_review():
            return self._discard(outcome, signal, "unexpected")

        self._applied.add(signal.key)
        if signal.epoch > known_epoch:
            item.stream_epochs[signal.stream_id] = signal.epoch
        self._history.append(signal)

        if isinstance(payload, (ProcessCrashed, PhaseTimeout)):
            self._on_interruption(outcome, signal, payload, budget_remaining_seconds)
        elif isinstance(payload, CompileStatus):
            self._on_compile_status(outcome, signal, payload, budget_remaining_seconds)
        elif isinstance(payload, TestRunSummary):
            if item.compile_error_stream == signal.stream_id:
                # A finished run on the failing stream means it compiles again.
                item.compile_error_stream = None
            if item.phase is Phase.RED:
                self._on_red_summary(outcome, signal, payload, budget_remaining_seconds)
            elif item.phase is Phase.GREEN:
                self._on_green_summary(outcome, signal, payload, budget_remaining_seconds)
            elif item.phase is Phase.REFACTOR:
                self._on_refactor_summary(outcome, signal, payload, budget_remaining_seconds)
            else:
                self._on_review_summary(outcome, signal, payload, budget_remaining_seconds)
        elif isinstance(payload, ReviewCompleted):
            self._on_review_completed(outcome, signal, payload)
        # ServerReady and RuntimeFault only feed the history.

        item.updated_at = self._clock()
        return outcome

    # ----- operator / scheduler entry points -----

    def escalate(
        self,
        reason: EscalationReason,
        *,
        signal_id: str = OPERATOR_SIGNAL_ID,
        detail: str | None = None,
    ) -> TransitionOutcome:
        """Escalate for a condition detected outside the signal stream."""

        item = self._item
        if item.phase not in WORK_PHASES:
            raise PhaseTransitionError(
                f"cannot escalate {item.id} from phase {item.phase.value!r}"
            )
        outcome = TransitionOutcome(work_item=item)
        self._escalate(outcome, reason, signal_id=signal_id, detail=detail)
        item.updated_at = self._clock()
        return outcome

    def abort(self, reason_code: str, *, signal_id: str = OPERATOR_SIGNAL_ID) -> TransitionOutcome:
        """Abort for an unrecoverable environment failure."""

        item = self._item
        if item.phase not in WORK_PHASES:
            raise PhaseTransitionError(f"cannot abort {item.id} from phase {item.phase.value!r}")
        outcome = TransitionOutcome(work_item=item)
        self._abort(outcome, reason_code, signal_id=signal_id)
        item.updated_at = self._clock()
        return outcome

    def pause(self) -> TransitionOutcome:
        """Park an in-progress item; only ``resume`` brings it back to the queue."""

        item = self._item
        if item.phase not in WORK_PHASES:
            raise PhaseTransitionError(f"cannot pause {item.id} in phase {item.phase.value!r}")
        item.status = WorkItemStatus.PAUSED
        item.updated_at = self._clock()
        self._logger.info("work_item_paused", work_item_id=item.id, phase=item.phase.value)
        return TransitionOutcome(work_item=item)

    def resume(self, target: Phase | None = None) -> TransitionOutcome:
        """
        Re-enter a work phase after human intervention.

        Allowed from ``ESCALATED`` (any phase up to the one that escalated) and
        from a paused item (its current phase only). Attempt counters and
        review cycles are reset; the item goes back to ``QUEUED``.
        """

        item = self._item
        outcome = TransitionOutcome(work_item=item)

        if item.phase is Phase.ESCALATED:
            origin = item.escalated_from if item.escalated_from is not None else Phase.RED
            chosen = origin if target is None else target
            if chosen not in WORK_PHASES:
                raise PhaseTransitionError(f"resume target must be a work phase, got {chosen}")
            if WORK_PHASES.index(chosen) > WORK_PHASES.index(origin):
                raise PhaseTransitionError(
                    f"cannot resume {item.id} into {chosen.value!r}: "
                    f"it escalated from {origin.value!r}"
                )
            self._reset_progress(chosen)
            item.escalation_reason = None
            item.escalated_from = None
            self._transition(outcome, chosen, signal_id=RESUME_SIGNAL_ID, note="resume")
        elif item.status is WorkItemStatus.PAUSED and item.phase in WORK_PHASES:
            if target is not None and target is not item.phase:
                raise PhaseTransitionError(
                    f"paused item {item.id} can only resume into {item.phase.value!r}"
                )
            self._reset_progress(item.phase)
        else:
            raise PhaseTransitionError(
                f"cannot resume {item.id}: phase={item.phase.value} status={item.status.value}"
            )

        item.status = WorkItemStatus.QUEUED
        item.updated_at = self._clock()
        outcome.review_requested = item.phase is Phase.REVIEW
        outcome.needs_action = not outcome.review_requested
        return outcome

    # ----- per-signal handlers -----

    def _on_interruption(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        payload: ProcessCrashed | PhaseTimeout,
        budget_remaining_seconds: float | None,
    ) -> None:
        phase = self._item.phase
        if isinstance(payload, PhaseTimeout) and not payload.stream_silent:
            self._count_attempt(phase)
        decision = self._decide(phase, budget_remaining_seconds)
        outcome.decision = decision
        if decision.action is PolicyAction.CONTINUE:
            outcome.needs_action = isinstance(payload, PhaseTimeout)
            return
        self._act_on_decision(outcome, signal, decision)

    def _on_compile_status(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        payload: CompileStatus,
        budget_remaining_seconds: float | None,
    ) -> None:
        item = self._item
        if payload.ok:
            item.compile_error_stream = None
            return
        item.compile_error_stream = signal.stream_id
        if item.phase is Phase.REFACTOR:
            self._on_regression(
                outcome, signal, budget_remaining_seconds, note="rollback (compile error)"
            )
            return
        self._count_attempt(item.phase)
        self._retry_or_stop(outcome, signal, budget_remaining_seconds)

    def _on_red_summary(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        summary: TestRunSummary,
        budget_remaining_seconds: float | None,
    ) -> None:
        item = self._item
        self._count_attempt(Phase.RED)
        if summary.failed > 0 and item.compile_error_stream is None:
            item.red_test_names = tuple(sorted(summary.test_names))
            item.red_test_count = summary.total
            self._transition(outcome, Phase.GREEN, signal_id=signal.id)
            outcome.needs_action = True
            return
        self._retry_or_stop(outcome, signal, budget_remaining_seconds)

    def _on_green_summary(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        summary: TestRunSummary,
        budget_remaining_seconds: float | None,
    ) -> None:
        item = self._item
        self._count_attempt(Phase.GREEN)
        missing = set(item.red_test_names) - summary.passing_names
        if (
            summary.failed == 0
            and item.compile_error_stream is None
            and not missing
            and summary.passed >= item.red_test_count
        ):
            item.green_test_names = tuple(sorted(summary.passing_names))
            item.green_test_count = summary.passed
            item.passing_test_names = item.green_test_names
            self._transition(outcome, Phase.REFACTOR, signal_id=signal.id)
            outcome.capture_snapshot = True
            outcome.needs_action = True
            return
        self._retry_or_stop(outcome, signal, budget_remaining_seconds)

    def _on_refactor_summary(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        summary: TestRunSummary,
        budget_remaining_seconds: float | None,
    ) -> None:
        item = self._item
        missing = set(item.green_test_names) - summary.passing_names
        if summary.failed > 0 or missing or summary.passed < item.green_test_count:
            note = "rollback" if not missing else f"rollback ({len(missing)} test(s) missing)"
            self._on_regression(outcome, signal, budget_remaining_seconds, note=note)
            return
        item.passing_test_names = tuple(sorted(summary.passing_names))
        if not item.review_pending:
            item.review_pending = True
            outcome.review_requested = True

    def _on_review_summary(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        summary: TestRunSummary,
        budget_remaining_seconds: float | None,
    ) -> None:
        item = self._item
        if summary.failed == 0 and item.compile_error_stream is None:
            item.passing_test_names = tuple(sorted(summary.passing_names))
            return
        self._count_attempt(Phase.REVIEW)
        self._retry_or_stop(outcome, signal, budget_remaining_seconds)

    def _on_regression(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        budget_remaining_seconds: float | None,
        *,
        note: str,
    ) -> None:
        item = self._item
        self._count_attempt(Phase.REFACTOR)
        item.review_pending = False
        item.compile_error_stream = None
        outcome.rollback_to = item.green_snapshot_ref
        decision = self._decide(Phase.REFACTOR, budget_remaining_seconds)
        outcome.decision = decision
        if decision.action is not PolicyAction.CONTINUE:
            self._act_on_decision(outcome, signal, decision)
            return
        self._transition(outcome, Phase.REFACTOR, signal_id=signal.id, note=note)
        outcome.needs_action = True

    def _on_review_completed(
        self, outcome: TransitionOutcome, signal: Signal, payload: ReviewCompleted
    ) -> None:
        item = self._item
        blocking = payload.blocking_issues(self._settings.review_severity_threshold)
        item.review_pending = False
        if blocking:
            item.review_cycles += 1
            if item.phase is Phase.REVIEW or (
                item.review_cycles >= self._settings.max_review_cycles
            ):
                self._escalate(
                    outcome,
                    EscalationReason.REVIEW_FAILED,
                    signal_id=signal.id,
                    detail=f"{len(blocking)} blocking review issue(s): {blocking[0].message}",
                )
                return
            self._transition(outcome, Phase.REFACTOR, signal_id=signal.id, note="review_rework")
            outcome.needs_action = True
            return

        if item.phase is Phase.REFACTOR:
            self._transition(outcome, Phase.REVIEW, signal_id=signal.id)
        unmapped = [
            criterion.tag
            for criterion in item.acceptance_criteria
            if not any(criterion_matches(criterion.tag, name) for name in item.passing_test_names)
        ]
        lost = sorted(set(item.green_test_names) - set(item.passing_test_names))
        if not unmapped and not lost:
            self._transition(outcome, Phase.DONE, signal_id=signal.id)
            item.status = WorkItemStatus.DONE
            return
        problems: list[str] = []
        if unmapped:
            problems.append("no passing test for " + ", ".join(unmapped))
        if lost:
            problems.append("GREEN tests no longer passing: " + ", ".join(lost[:5]))
        self._escalate(
            outcome,
            EscalationReason.REVIEW_FAILED,
            signal_id=signal.id,
            detail="; ".join(problems),
        )

    # ----- helpers -----

    def _awaiting_review(self) -> bool:
        item = self._item
        return item.phase is Phase.REVIEW or (item.phase is Phase.REFACTOR and item.review_pending)

    def _count_attempt(self, phase: Phase) -> None:
        self._item.attempts[phase.value] = self._item.attempt_count(phase) + 1

    def _decide(self, phase: Phase, budget_remaining_seconds: float | None) -> PolicyDecision:
        return self._policy.decide(
            phase,
            self._item.attempt_count(phase),
            self._settings.bound(phase),
            tuple(self._history),
            budget_remaining_seconds=budget_remaining_seconds,
            work_item_id=self._item.id,
        )

    def _retry_or_stop(
        self,
        outcome: TransitionOutcome,
        signal: Signal,
        budget_remaining_seconds: float | None,
    ) -> None:
        decision = self._decide(self._item.phase, budget_remaining_seconds)
        outcome.decision = decision
        if decision.action is PolicyAction.CONTINUE:
            outcome.needs_action = True
            return
        self._act_on_decision(outcome, signal, decision)

    def _act_on_decision(
        self, outcome: TransitionOutcome, signal: Signal, decision: PolicyDecision
    ) -> None:
        if decision.action is PolicyAction.ABORT:
            code = decision.reason_codes[-1] if decision.reason_codes else "aborted"
            self._abort(outcome, code, signal_id=signal.id)
            return
        if decision.reason is None:
            raise PhaseTransitionError("escalation decision without a reason")
        self._escalate(
            outcome,
            decision.reason,
            signal_id=signal.id,
            detail=", ".join(decision.reason_codes) or None,
        )

    def _escalate(
        self,
        outcome: TransitionOutcome,
        reason: EscalationReason,
        *,
        signal_id: str,
        detail: str | None = None,
    ) -> None:
        item = self._item
        origin = item.phase
        record = EscalationRecord(
            id=generate_escalation_id(),
            work_item_id=item.id,
            phase=origin,
            reason=reason,
            created_at=self._clock(),
            snapshot_ref=item.green_snapshot_ref,
            recent_signals=tuple(entry.describe() for entry in self._history),
            detail=detail,
        )
        item.escalation_reason = reason
        item.escalated_from = origin
        self._transition(outcome, Phase.ESCALATED, signal_id=signal_id, note=reason.value)
        item.status = WorkItemStatus.ESCALATED
        outcome.escalation = record
        outcome.needs_action = False
        outcome.review_requested = False
        self._logger.warning(
            "work_item_escalated",
            work_item_id=item.id,
            project_ref=item.project_ref,
            phase=origin.value,
            reason=reason.value,
            detail=detail,
        )

    def _abort(self, outcome: TransitionOutcome, reason_code: str, *, signal_id: str) -> None:
        item = self._item
        self._transition(outcome, Phase.ABORTED, signal_id=signal_id, note=reason_code)
        item.status = WorkItemStatus.ABORTED
        outcome.needs_action = False
        outcome.review_requested = False
        self._logger.error(
            "work_item_aborted",
            work_item_id=item.id,
            project_ref=item.project_ref,
            reason_code=reason_code,
        )

    def _transition(
        self,
        outcome: TransitionOutcome,
        target: Phase,
        *,
        signal_id: str,
        note: str | None = None,
    ) -> None:
        item = self._item
        source = item.phase
        if target not in TRANSITIONS[source]:
            raise PhaseTransitionError(
                f"illegal transition {source.value} -> {target.value} for {item.id}"
            )
        entry = AuditEntry(
            work_item_id=item.id,
            occurred_at=self._clock(),
            from_phase=source,
            to_phase=target,
            signal_id=signal_id,
            note=note,
        )
        item.phase = target
        outcome.audit_entries.append(entry)
        self._logger.info(
            "phase_transition",
            work_item_id=item.id,
            project_ref=item.project_ref,
            from_phase=source.value,
            to_phase=target.value,
            signal_id=signal_id,
            note=note,
        )

    def _reset_progress(self, target: Phase) -> None:
        item = self._item
        item.attempts = {}
        item.review_cycles = 0
        item.review_pending = False
        item.compile_error_stream = None
        if target is Phase.RED:
            item.red_test_names = ()
            item.red_test_count = 0
        if target in (Phase.RED, Phase.GREEN):
            item.green_test_names = ()
            item.green_test_count = 0
            item.passing_test_names = ()
            item.green_snapshot_ref = None

    def _discard(
        self, outcome: TransitionOutcome, signal: Signal, reason: str
    ) -> TransitionOutcome:
        outcome.discarded = reason
        self._logger.debug(
            "signal_discarded",
            work_item_id=self._item.id,
            signal_id=signal.id,
            signal_type=signal.type.value,
            reason=reason,
        )
        return outcome


__all__ = [
    "OPERATOR_SIGNAL_ID",
    "RESUME_SIGNAL_ID",
    "TRANSITIONS",
    "MachineSettings",
    "PhaseStateMachine",
    "PhaseTransitionError",
    "TransitionOutcome",
    "criterion_matches",
    "is_valid_audit_path",
]
