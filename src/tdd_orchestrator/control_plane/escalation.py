"""
Escalation policy: the single place that decides continue / escalate / abort.

The decision is a pure function of the current phase, its attempt counter,
the configured bound, the recent signal history and (optionally) the
remaining attention budget. Rules are evaluated in a fixed order so that a
given input always yields the same decision:

1. last signal is ``ProcessCrashed``: ``abort`` unless a restart is scheduled
2. attention budget spent: ``escalate(attention_budget_expired)``
3. last signal is a ``Timeout`` on a silent stream:
   ``escalate(external_dependency_unavailable)``
4. ``attempt_count >= max_attempts``: ``escalate(<phase reason>)``
5. otherwise ``continue``

It integrates with:
- `PhaseStateMachine`, which asks for a decision after every attempt
- `AttentionWindowScheduler`, which passes the remaining budget
- `structlog` for machine-parseable decision logs
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from tdd_orchestrator.domain.models import (
    PHASE_EXHAUSTION_REASON,
    EscalationReason,
    Phase,
    PolicyAction,
)
from tdd_orchestrator.domain.signals import PhaseTimeout, ProcessCrashed

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tdd_orchestrator.domain.signals import Signal


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Outcome of one policy evaluation."""

    action: PolicyAction
    reason: EscalationReason | None
    reason_codes: tuple[str, ...]
    phase: Phase
    attempt_count: int
    max_attempts: int

    @property
    def should_continue(self) -> bool:
        return self.action is PolicyAction.CONTINUE

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason": None if self.reason is None else self.reason.value,
            "reason_codes": list(self.reason_codes),
            "phase": self.phase.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
        }


def decide(
    phase: Phase,
    attempt_count: int,
    max_attempts: int,
    signal_history: Sequence[Signal],
    *,
    budget_remaining_seconds: float | None = None,
) -> PolicyDecision:
    """Return the policy decision for ``phase`` after its latest attempt."""

    if attempt_count < 0:
        raise ValueError("attempt_count must be >= 0")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    reason_codes: list[str] = []
    last = signal_history[-1].payload if signal_history else None

    def _decision(action: PolicyAction, reason: EscalationReason | None) -> PolicyDecision:
        return PolicyDecision(
            action=action,
            reason=reason,
            reason_codes=tuple(reason_codes),
            phase=phase,
            attempt_count=attempt_count,
            max_attempts=max_attempts,
        )

    if isinstance(last, ProcessCrashed):
        if last.start_failed:
            _append_reason(reason_codes, "process_start_failed")
        if not last.restart_scheduled:
            _append_reason(reason_codes, "process_crashed")
            return _decision(PolicyAction.ABORT, None)
        _append_reason(reason_codes, "process_restart_scheduled")

    if budget_remaining_seconds is not None and budget_remaining_seconds <= 0:
        _append_reason(reason_codes, "attention_budget_expired")
        return _decision(PolicyAction.ESCALATE, EscalationReason.ATTENTION_BUDGET_EXPIRED)

    if isinstance(last, PhaseTimeout):
        _append_reason(reason_codes, "phase_timeout")
        if last.stream_silent:
            _append_reason(reason_codes, "stream_silent")
            return _decision(
                PolicyAction.ESCALATE, EscalationReason.EXTERNAL_DEPENDENCY_UNAVAILABLE
            )

    if attempt_count >= max_attempts:
        _append_reason(reason_codes, "max_attempts_reached")
        return _decision(PolicyAction.ESCALATE, exhaustion_reason(phase))

    return _decision(PolicyAction.CONTINUE, None)


def exhaustion_reason(phase: Phase) -> EscalationReason:
    """Escalation reason for running out of attempts in ``phase``."""

    try:
        return PHASE_EXHAUSTION_REASON[phase]
    except KeyError:
        raise ValueError(f"phase {phase.value!r} has no attempt bound") from None


class EscalationPolicy:
    """Stateless wrapper around :func:`decide` that logs every decision."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def decide(
        self,
        phase: Phase,
        attempt_count: int,
        max_attempts: int,
        signal_history: Sequence[Signal],
        *,
        budget_remaining_seconds: float | None = None,
        work_item_id: str | None = None,
    ) -> PolicyDecision:
        decision = decide(
            phase,
            attempt_count,
            max_attempts,
            signal_history,
            budget_remaining_seconds=budget_remaining_seconds,
        )
        self._log_decision(decision, work_item_id=work_item_id)
        return decision

    def _log_decision(self, decision: PolicyDecision, *, work_item_id: str | None) -> None:
        log = self._logger.info if decision.should_continue else self._logger.warning
        log(
            "escalation_policy_decision",
            work_item_id=work_item_id,
            action=decision.action.value,
            reason=None if decision.reason is None else decision.reason.value,
            reason_codes=list(decision.reason_codes),
            phase=decision.phase.value,
            attempt_count=decision.attempt_count,
            max_attempts=decision.max_attempts,
        )


def _append_reason(reason_codes: list[str], reason_code: str) -> None:
    if reason_code not in reason_codes:
        reason_codes.append(reason_code)


__all__ = ["EscalationPolicy", "PolicyDecision", "decide", "exhaustion_reason"]
