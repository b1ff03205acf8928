"""Unit tests for the per-work-item phase state machine."""

from __future__ import annotations

import pytest

from tdd_orchestrator.control_plane.phase_machine import (
    MachineSettings,
    PhaseStateMachine,
    PhaseTransitionError,
    criterion_matches,
    is_valid_audit_path,
)
from tdd_orchestrator.domain.models import (
    AuditEntry,
    EscalationReason,
    Phase,
    PolicyAction,
    WorkItem,
    WorkItemStatus,
)
from tdd_orchestrator.domain.signals import (
    CompileStatus,
    PhaseTimeout,
    ProcessCrashed,
    ReviewCompleted,
    RuntimeFault,
    ServerReady,
    Signal,
    SignalPayload,
)

from tests.unit import (
    BASE_TS,
    RecordingLogger,
    SignalFactory,
    fixed_clock,
    make_work_item,
    review,
    summary,
)

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True

SNAPSHOT_REF = "wi-green/snap-0001"
AC_TESTS = ("tests/test_items.py::test_ac_1_lists_items", "tests/test_items.py::test_ac_2_404")


def _machine(
    item: WorkItem | None = None, **bounds: int
) -> tuple[PhaseStateMachine, SignalFactory, RecordingLogger]:
    phases = ("red", "green", "refactor", "review")
    settings_ = MachineSettings(
        max_attempts={phase: bounds.get(phase, 5) for phase in phases},
        max_review_cycles=bounds.get("review_cycles", 3),
    )
    logger = RecordingLogger()
    machine = PhaseStateMachine(
        item if item is not None else make_work_item(),
        settings_,
        clock=fixed_clock(),
        logger=logger,
    )
    return machine, SignalFactory(), logger


def _drive_to_refactor(machine: PhaseStateMachine, signal: SignalFactory) -> None:
    machine.apply(signal(summary(failing=AC_TESTS)))
    outcome = machine.apply(signal(summary(passing=AC_TESTS)))
    assert outcome.capture_snapshot
    machine.work_item.green_snapshot_ref = SNAPSHOT_REF


# ----- RED -----


def test_red_with_failures_moves_to_green_and_records_red_tests() -> None:
    machine, signal, _ = _machine()

    sig = signal(summary(failed=2))
    outcome = machine.apply(sig)

    item = machine.work_item
    assert item.phase is Phase.GREEN
    assert item.red_test_count == 2
    assert item.attempt_count(Phase.RED) == 1
    assert outcome.needs_action
    assert [(e.from_phase, e.to_phase, e.signal_id) for e in outcome.audit_entries] == [
        (Phase.RED, Phase.GREEN, sig.key)
    ]


def test_red_without_failures_counts_attempt_and_stays() -> None:
    machine, signal, _ = _machine()

    outcome = machine.apply(signal(summary(passed=3)))

    assert machine.work_item.phase is Phase.RED
    assert machine.work_item.attempt_count(Phase.RED) == 1
    assert outcome.decision is not None
    assert outcome.decision.action is PolicyAction.CONTINUE
    assert outcome.needs_action
    assert not outcome.transitioned


def test_red_exhaustion_escalates_cannot_achieve_red() -> None:
    machine, signal, _ = _machine(red=2)

    machine.apply(signal(summary(passed=1)))
    outcome = machine.apply(signal(summary(passed=1)))

    item = machine.work_item
    assert item.phase is Phase.ESCALATED
    assert item.status is WorkItemStatus.ESCALATED
    assert item.escalation_reason is EscalationReason.CANNOT_ACHIEVE_RED
    assert item.escalated_from is Phase.RED
    assert outcome.escalation is not None
    assert outcome.escalation.reason is EscalationReason.CANNOT_ACHIEVE_RED
    assert len(outcome.escalation.recent_signals) == 2


def test_red_failure_during_compile_error_does_not_advance() -> None:
    machine, signal, _ = _machine()
    other = SignalFactory("api/dev-server")

    machine.apply(other(CompileStatus(ok=False, errors=("SyntaxError",))))
    outcome = machine.apply(signal(summary(failed=1)))

    assert machine.work_item.phase is Phase.RED
    assert machine.work_item.compile_error_stream == "api/dev-server"
    assert not outcome.transitioned

    machine.apply(other(CompileStatus(ok=True)))
    outcome = machine.apply(signal(summary(failed=1)))
    assert machine.work_item.phase is Phase.GREEN
    assert outcome.transitioned


def test_summary_on_failing_stream_clears_its_compile_error() -> None:
    machine, signal, _ = _machine()

    machine.apply(signal(CompileStatus(ok=False)))
    machine.apply(signal(summary(failed=1)))

    assert machine.work_item.compile_error_stream is None
    assert machine.work_item.phase is Phase.GREEN


# ----- GREEN -----


def test_green_clean_run_moves_to_refactor_and_requests_snapshot() -> None:
    machine, signal, _ = _machine()
    machine.apply(signal(summary(failed=2)))

    outcome = machine.apply(signal(summary(passed=2)))

    item = machine.work_item
    assert item.phase is Phase.REFACTOR
    assert item.green_test_count == 2
    assert outcome.capture_snapshot
    assert outcome.needs_action


def test_green_requires_every_red_test_to_pass() -> None:
    machine, signal, _ = _machine()
    machine.apply(signal(summary(failing=AC_TESTS)))

    outcome = machine.apply(
        signal(summary(passing=(AC_TESTS[0], "tests/test_other.py::test_unrelated")))
    )

    assert machine.work_item.phase is Phase.GREEN
    assert machine.work_item.attempt_count(Phase.GREEN) == 1
    assert not outcome.capture_snapshot


def test_green_with_fewer_passes_than_red_count_stays() -> None:
    machine, signal, _ = _machine()
    machine.apply(signal(summary(failed=3)))

    machine.apply(signal(summary(passed=2)))

    assert machine.work_item.phase is Phase.GREEN


def test_green_exhaustion_escalates_cannot_achieve_green() -> None:
    machine, signal, _ = _machine(green=1)
    machine.apply(signal(summary(failed=1)))

    machine.apply(signal(summary(failed=1)))

    assert machine.work_item.escalation_reason is EscalationReason.CANNOT_ACHIEVE_GREEN


# ----- REFACTOR -----


def test_refactor_regression_rolls_back_and_counts() -> None:
    machine, signal, _ = _machine()
    _drive_to_refactor(machine, signal)

    outcome = machine.apply(signal(summary(passing=AC_TESTS, failed=1)))

    item = machine.work_item
    assert item.phase is Phase.REFACTOR
    assert outcome.rollback_to == SNAPSHOT_REF
    assert item.attempt_count(Phase.REFACTOR) == 1
    assert outcome.needs_action
    assert outcome.audit_entries[0].note == "rollback"


def test_refactor_missing_green_test_is_a_regression() -> None:
    machine, signal, _ = _machine()
    _drive_to_refactor(machine, signal)

    outcome = machine.apply(signal(summary(passing=(AC_TESTS[0], "tests/test_new.py::test_x"))))

    assert outcome.rollback_to == SNAPSHOT_REF
    assert outcome.audit_entries[0].note == "rollback (1 test(s) missing)"


def test_refactor_compile_error_is_a_regression() -> None:
    machine, signal, _ = _machine()
    _drive_to_refactor(machine, signal)

    outcome = machine.apply(signal(CompileStatus(ok=False, errors=("E1",))))

    assert outcome.rollback_to == SNAPSHOT_REF
    assert machine.work_item.attempt_count(Phase.REFACTOR) == 1
    assert machine.work_item.compile_error_stream is None


def test_refactor_regression_loop_escalates_after_bound() -> None:
    machine, signal, _ = _machine(refactor=3)
    _drive_to_refactor(machine, signal)

    outcomes = [machine.apply(signal(summary(passed=1, failed=1))) for _ in range(3)]

    assert machine.work_item.phase is Phase.ESCALATED
    assert machine.work_item.escalation_reason is EscalationReason.REGRESSION_LOOP
    assert all(outcome.rollback_to == SNAPSHOT_REF for outcome in outcomes)
    assert outcomes[-1].escalation is not None
    assert outcomes[-1].escalation.snapshot_ref == SNAPSHOT_REF


def test_refactor_clean_run_requests_review_once() -> None:
    machine, signal, _ = _machine()
    _drive_to_refactor(machine, signal)

    first = machine.apply(signal(summary(passing=AC_TESTS)))
    second = machine.apply(signal(summary(passing=AC_TESTS)))

    assert first.review_requested
    assert not second.review_requested
    assert machine.work_item.review_pending
    assert machine.work_item.attempt_count(Phase.REFACTOR) == 0


# ----- REVIEW -----


def test_clean_review_with_mapped_criteria_completes() -> None:
    machine, signal, _ = _machine()
    _drive_to_refactor(machine, signal)
    machine.apply(signal(summary(passing=AC_TESTS)))

    outcome = machine.apply(signal(review("low")))

    item = machine.work_item
    assert item.phase is Phase.DONE
    assert item.status is WorkItemStatus.DONE
    assert [(e.from_phase, e.to_phase) for e in outcome.audit_entries] == [
        (Phase.REFACTOR, Phase.REVIEW),
        (Phase.REVIEW, Phase.DONE),
    ]


def test_blocking_review_returns_to_refactor_then_escalates() -> None:
    machine, signal, _ = _machine(review_cycles=2)
    _drive_to_refactor(machine, signal)
    machine.apply(signal(summary(passing=AC_TESTS)))

    rework = machine.apply(signal(review("high")))
    assert machine.work_item.phase is Phase.REFACTOR
    assert rework.audit_entries[0].note == "review_rework"
    assert machine.work_item.review_cycles == 1

    machine.apply(signal(summary(passing=AC_TESTS)))
    machine.apply(signal(review("critical")))

    assert machine.work_item.phase is Phase.ESCALATED
    assert machine.work_item.escalation_reason is EscalationReason.REVIEW_FAILED


def test_review_with_unmapped_criterion_escalates() -> None:
    machine, signal, _ = _machine()
    names = (AC_TESTS[0], "tests/test_items.py::test_unrelated")
    machine.apply(signal(summary(failing=names)))
    machine.apply(signal(summary(passing=names)))
    machine.apply(signal(summary(passing=names)))

    outcome = machine.apply(signal(review()))

    assert machine.work_item.phase is Phase.ESCALATED
    assert outcome.escalation is not None
    assert outcome.escalation.phase is Phase.REVIEW
    assert outcome.escalation.detail is not None
    assert "AC-2" in outcome.escalation.detail


def test_review_completion_outside_review_is_discarded() -> None:
    machine, signal, _ = _machine()

    outcome = machine.apply(signal(review()))

    assert outcome.discarded == "unexpected"
    assert machine.work_item.phase is Phase.RED


# ----- discards -----


def test_duplicate_signal_is_discarded() -> None:
    machine, signal, _ = _machine()
    sig = signal(summary(passed=1))

    machine.apply(sig)
    outcome = machine.apply(sig)

    assert outcome.discarded == "duplicate"
    assert machine.work_item.attempt_count(Phase.RED) == 1


def test_applied_keys_from_storage_are_discarded() -> None:
    signal = SignalFactory()
    sig = signal(summary(failed=1))
    machine = PhaseStateMachine(make_work_item(), applied_keys=[sig.key])

    outcome = machine.apply(sig)

    assert outcome.discarded == "duplicate"
    assert machine.work_item.phase is Phase.RED


def test_stale_epoch_signal_is_discarded() -> None:
    machine, signal, _ = _machine()
    machine.apply(signal(summary(passed=1), epoch=2))

    outcome = machine.apply(signal(summary(failed=1), epoch=1))

    assert outcome.discarded == "stale_epoch"
    assert machine.work_item.stream_epochs == {signal.stream_id: 2}


def test_escalated_item_is_frozen() -> None:
    item = make_work_item(
        phase=Phase.ESCALATED,
        status=WorkItemStatus.ESCALATED,
        escalation_reason=EscalationReason.CANNOT_ACHIEVE_RED,
        escalated_from=Phase.RED,
    )
    machine, signal, _ = _machine(item)

    outcome = machine.apply(signal(summary(failed=1)))

    assert outcome.discarded == "frozen"
    assert item.phase is Phase.ESCALATED


def test_terminal_item_ignores_signals() -> None:
    item = make_work_item(phase=Phase.DONE, status=WorkItemStatus.DONE)
    machine, signal, _ = _machine(item)

    assert machine.apply(signal(summary(failed=1))).discarded == "terminal"


def test_paused_item_ignores_signals() -> None:
    machine, signal, _ = _machine()
    machine.pause()

    assert machine.apply(signal(summary(failed=1))).discarded == "paused"


def test_informational_signals_only_feed_history() -> None:
    machine, signal, _ = _machine()

    machine.apply(signal(ServerReady(port=8000)))
    outcome = machine.apply(signal(RuntimeFault(message="KeyError: 'x'")))

    assert outcome.applied
    assert not outcome.transitioned
    assert len(machine.history) == 2
    assert machine.work_item.attempt_count(Phase.RED) == 0


# ----- interruptions -----


def test_crash_without_restart_aborts() -> None:
    machine, signal, _ = _machine()

    outcome = machine.apply(signal(ProcessCrashed("dev-server", exit_code=1)))

    assert machine.work_item.phase is Phase.ABORTED
    assert machine.work_item.status is WorkItemStatus.ABORTED
    assert outcome.audit_entries[-1].note == "process_crashed"
    assert outcome.escalation is None


def test_crash_with_restart_scheduled_continues() -> None:
    machine, signal, _ = _machine()

    outcome = machine.apply(
        signal(ProcessCrashed("dev-server", exit_code=1, restart_scheduled=True))
    )

    assert machine.work_item.phase is Phase.RED
    assert outcome.decision is not None
    assert outcome.decision.should_continue
    assert not outcome.needs_action


def test_silent_timeout_escalates_external_dependency() -> None:
    machine, signal, _ = _machine()

    machine.apply(signal(PhaseTimeout(Phase.RED, waited_seconds=600.0, stream_silent=True)))

    assert machine.work_item.escalation_reason is (
        EscalationReason.EXTERNAL_DEPENDENCY_UNAVAILABLE
    )
    assert machine.work_item.attempt_count(Phase.RED) == 0


def test_noisy_timeout_counts_as_attempt() -> None:
    machine, signal, _ = _machine()

    outcome = machine.apply(signal(PhaseTimeout(Phase.RED, waited_seconds=600.0)))

    assert machine.work_item.attempt_count(Phase.RED) == 1
    assert outcome.needs_action


def test_expired_budget_escalates() -> None:
    machine, signal, _ = _machine()

    machine.apply(signal(summary(passed=1)), budget_remaining_seconds=0.0)

    assert machine.work_item.escalation_reason is EscalationReason.ATTENTION_BUDGET_EXPIRED


# ----- operator operations -----


def test_resume_from_escalation_resets_counters() -> None:
    machine, signal, _ = _machine(green=1)
    machine.apply(signal(summary(failed=1)))
    machine.apply(signal(summary(failed=1)))
    assert machine.work_item.phase is Phase.ESCALATED

    outcome = machine.resume()

    item = machine.work_item
    assert item.phase is Phase.GREEN
    assert item.status is WorkItemStatus.QUEUED
    assert item.attempts == {}
    assert item.escalation_reason is None
    assert outcome.needs_action
    assert outcome.audit_entries[0].signal_id == "resume"


def test_resume_into_earlier_phase_clears_later_evidence() -> None:
    machine, signal, _ = _machine(refactor=1)
    _drive_to_refactor(machine, signal)
    machine.apply(signal(summary(failed=1)))

    machine.resume(Phase.RED)

    item = machine.work_item
    assert item.phase is Phase.RED
    assert item.red_test_names == ()
    assert item.green_snapshot_ref is None


def test_resume_past_origin_is_rejected() -> None:
    machine, signal, _ = _machine(red=1)
    machine.apply(signal(summary(passed=1)))

    with pytest.raises(PhaseTransitionError, match="escalated from 'red'"):
        machine.resume(Phase.GREEN)


def test_resume_into_review_requests_review() -> None:
    item = make_work_item(
        phase=Phase.ESCALATED,
        status=WorkItemStatus.ESCALATED,
        escalation_reason=EscalationReason.REVIEW_FAILED,
        escalated_from=Phase.REVIEW,
    )
    machine = PhaseStateMachine(item)

    outcome = machine.resume()

    assert item.phase is Phase.REVIEW
    assert outcome.review_requested
    assert not outcome.needs_action


def test_pause_then_resume_requeues_in_same_phase() -> None:
    machine, signal, _ = _machine()
    machine.apply(signal(summary(failed=1)))
    machine.pause()

    with pytest.raises(PhaseTransitionError):
        machine.resume(Phase.RED)
    outcome = machine.resume()

    assert machine.work_item.phase is Phase.GREEN
    assert machine.work_item.status is WorkItemStatus.QUEUED
    assert not outcome.transitioned


def test_resume_of_active_item_is_rejected() -> None:
    machine, _, _ = _machine()

    with pytest.raises(PhaseTransitionError, match="cannot resume"):
        machine.resume()


def test_escalate_and_abort_reject_terminal_items() -> None:
    item = make_work_item(phase=Phase.DONE, status=WorkItemStatus.DONE)
    machine = PhaseStateMachine(item)

    with pytest.raises(PhaseTransitionError):
        machine.escalate(EscalationReason.ATTENTION_BUDGET_EXPIRED)
    with pytest.raises(PhaseTransitionError):
        machine.abort("runner_failed")


def test_transitions_are_logged() -> None:
    machine, signal, logger = _machine()

    machine.apply(signal(summary(failed=1)))

    level, event, fields = next(e for e in logger.events if e[1] == "phase_transition")
    assert level == "info"
    assert fields["from_phase"] == "red"
    assert fields["to_phase"] == "green"


# ----- helpers -----


@pytest.mark.parametrize(
    ("tag", "name", "expected"),
    [
        ("AC-1", "tests/test_api.py::test_ac_1_returns_200", True),
        ("AC-1", "tests/test_api.py::TestItems::test_AC_1", True),
        ("AC-1", "tests/test_api.py::test_ac_10_returns_200", False),
        ("login", "tests/test_auth.py::test_login_rejects_bad_password", True),
        ("---", "tests/test_auth.py::test_anything", False),
    ],
)
def test_criterion_matches(tag: str, name: str, expected: bool) -> None:
    assert criterion_matches(tag, name) is expected


def test_audit_path_validation() -> None:
    item_id = make_work_item().id

    def entry(source: Phase | None, target: Phase) -> AuditEntry:
        return AuditEntry(
            work_item_id=item_id,
            occurred_at=BASE_TS,
            from_phase=source,
            to_phase=target,
            signal_id="s",
        )

    assert is_valid_audit_path([entry(None, Phase.RED), entry(Phase.RED, Phase.GREEN)])
    assert not is_valid_audit_path([entry(Phase.RED, Phase.GREEN)])
    assert not is_valid_audit_path([entry(None, Phase.RED), entry(Phase.RED, Phase.REFACTOR)])
    assert not is_valid_audit_path([entry(None, Phase.RED), entry(Phase.GREEN, Phase.REFACTOR)])


def test_machine_settings_reject_bad_bounds() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        MachineSettings(max_attempts={"red": 0})
    with pytest.raises(ValueError, match="max_review_cycles"):
        MachineSettings(max_review_cycles=0)


# ----- properties -----


if _HYPOTHESIS_AVAILABLE:
    _NAMES = st.sampled_from(AC_TESTS + ("tests/test_items.py::test_extra",))

    _PAYLOADS: st.SearchStrategy[SignalPayload] = st.one_of(
        st.builds(
            summary,
            passed=st.integers(min_value=0, max_value=3),
            failed=st.integers(min_value=0, max_value=3),
            passing=st.lists(_NAMES, unique=True, max_size=3).map(tuple),
        ),
        st.builds(CompileStatus, ok=st.booleans()),
        st.builds(
            ReviewCompleted,
            issues=st.just(()),
        ),
        st.sampled_from([review("high"), review("info")]),
        st.builds(
            PhaseTimeout,
            phase=st.just(Phase.RED),
            waited_seconds=st.just(60.0),
            stream_silent=st.just(False),
        ),
        st.builds(
            ProcessCrashed,
            process_name=st.just("dev-server"),
            exit_code=st.just(1),
            restart_scheduled=st.booleans(),
        ),
    )

    def _run(payloads: list[SignalPayload]) -> tuple[PhaseStateMachine, list[AuditEntry], list]:
        item = make_work_item()
        machine = PhaseStateMachine(
            item, MachineSettings(max_attempts={"red": 4, "green": 4, "refactor": 4})
        )
        factory = SignalFactory()
        entries = [
            AuditEntry(
                work_item_id=item.id,
                occurred_at=BASE_TS,
                from_phase=None,
                to_phase=Phase.RED,
                signal_id="intake",
            )
        ]
        applied: list[tuple[Signal, dict[str, int], str | None]] = []
        for payload in payloads:
            before = dict(item.attempts)
            sig = factory(payload)
            outcome = machine.apply(sig)
            entries.extend(outcome.audit_entries)
            applied.append((sig, before, outcome.discarded))
        return machine, entries, applied

    @given(payloads=st.lists(_PAYLOADS, max_size=25))
    @settings(max_examples=80, derandomize=True, deadline=None)
    def test_property_audit_log_is_a_valid_walk(payloads: list[SignalPayload]) -> None:
        machine, entries, _ = _run(payloads)

        assert is_valid_audit_path(entries)
        assert entries[-1].to_phase is machine.work_item.phase

    @given(payloads=st.lists(_PAYLOADS, max_size=25))
    @settings(max_examples=80, derandomize=True, deadline=None)
    def test_property_red_to_green_needs_a_failing_run(payloads: list[SignalPayload]) -> None:
        item = make_work_item()
        machine = PhaseStateMachine(item)
        factory = SignalFactory()
        for payload in payloads:
            sig = factory(payload)
            outcome = machine.apply(sig)
            for entry in outcome.audit_entries:
                if entry.from_phase is Phase.RED and entry.to_phase is Phase.GREEN:
                    assert sig.payload.signal_type.value == "test_run_summary"
                    assert sig.payload.failed > 0  # type: ignore[union-attr]

    @given(payloads=st.lists(_PAYLOADS, max_size=25))
    @settings(max_examples=80, derandomize=True, deadline=None)
    def test_property_escalation_never_loses_the_item(payloads: list[SignalPayload]) -> None:
        machine, _, _ = _run(payloads)
        item = machine.work_item

        if item.phase is Phase.ESCALATED:
            assert item.escalation_reason is not None
            assert item.escalated_from is not None
            assert item.status is WorkItemStatus.ESCALATED

    @given(payloads=st.lists(_PAYLOADS, max_size=25))
    @settings(max_examples=80, derandomize=True, deadline=None)
    def test_property_attempt_counters_only_grow(payloads: list[SignalPayload]) -> None:
        machine, _, applied = _run(payloads)
        history = [before for _, before, _ in applied] + [dict(machine.work_item.attempts)]

        for earlier, later in zip(history, history[1:], strict=False):
            for phase, count in earlier.items():
                assert later.get(phase, 0) >= count

    @given(payloads=st.lists(_PAYLOADS, min_size=1, max_size=25))
    @settings(max_examples=60, derandomize=True, deadline=None)
    def test_property_replay_applies_nothing_twice(payloads: list[SignalPayload]) -> None:
        machine, _, applied = _run(payloads)
        snapshot = machine.work_item.to_dict()

        for sig, _, discarded in applied:
            if discarded is not None:
                continue
            outcome = machine.apply(sig)
            assert not outcome.applied
            assert not outcome.transitioned

        after = machine.work_item.to_dict()
        after.pop("updated_at")
        snapshot.pop("updated_at")
        assert after == snapshot
