"""Typed signals extracted from log streams and external actors.

A signal is identified by the stream it came from, the stream epoch, and the
byte offset of the line that completed it. That triple is the idempotency key:
replaying a stream from an older cursor reproduces the same keys, so the phase
machine can drop anything it has already applied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from tdd_orchestrator.domain.models import Phase, Severity, utc_now


class SignalType(StrEnum):
    TEST_RUN_SUMMARY = "test_run_summary"
    COMPILE_STATUS = "compile_status"
    SERVER_READY = "server_ready"
    RUNTIME_ERROR = "runtime_error"
    PROCESS_CRASHED = "process_crashed"
    TIMEOUT = "timeout"
    REVIEW_COMPLETED = "review_completed"


class TestOutcome(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"

    __test__ = False


@dataclass(frozen=True, slots=True)
class TestCaseResult:
    name: str
    outcome: TestOutcome
    message: str | None = None

    __test__ = False


@dataclass(frozen=True, slots=True)
class TestRunSummary:
    total: int
    passed: int
    failed: int
    skipped: int = 0
    failure_messages: tuple[str, ...] = ()
    tests: tuple[TestCaseResult, ...] = ()

    __test__ = False
    signal_type = SignalType.TEST_RUN_SUMMARY

    @property
    def test_names(self) -> frozenset[str]:
        return frozenset(item.name for item in self.tests)

    @property
    def passing_names(self) -> frozenset[str]:
        return frozenset(item.name for item in self.tests if item.outcome is TestOutcome.PASSED)

    @property
    def failing_names(self) -> frozenset[str]:
        return frozenset(
            item.name
            for item in self.tests
            if item.outcome in {TestOutcome.FAILED, TestOutcome.ERROR}
        )


@dataclass(frozen=True, slots=True)
class CompileStatus:
    ok: bool
    errors: tuple[str, ...] = ()

    signal_type = SignalType.COMPILE_STATUS


@dataclass(frozen=True, slots=True)
class ServerReady:
    port: int

    signal_type = SignalType.SERVER_READY


@dataclass(frozen=True, slots=True)
class RuntimeFault:
    """An uncaught error reported by a running process (``RuntimeError`` signal)."""

    message: str
    detail: tuple[str, ...] = ()

    signal_type = SignalType.RUNTIME_ERROR


@dataclass(frozen=True, slots=True)
class ProcessCrashed:
    process_name: str
    exit_code: int | None
    restart_scheduled: bool = False
    start_failed: bool = False

    signal_type = SignalType.PROCESS_CRASHED


@dataclass(frozen=True, slots=True)
class PhaseTimeout:
    phase: Phase
    waited_seconds: float
    stream_silent: bool = False

    signal_type = SignalType.TIMEOUT


@dataclass(frozen=True, slots=True)
class ReviewIssue:
    severity: Severity
    message: str
    location: str | None = None


@dataclass(frozen=True, slots=True)
class ReviewCompleted:
    issues: tuple[ReviewIssue, ...] = ()

    signal_type = SignalType.REVIEW_COMPLETED

    def blocking_issues(self, threshold: Severity) -> tuple[ReviewIssue, ...]:
        return tuple(issue for issue in self.issues if issue.severity.rank >= threshold.rank)


SignalPayload = (
    TestRunSummary
    | CompileStatus
    | ServerReady
    | RuntimeFault
    | ProcessCrashed
    | PhaseTimeout
    | ReviewCompleted
)


@dataclass(frozen=True, slots=True)
class Signal:
    stream_id: str
    epoch: int
    offset: int
    sequence: int
    payload: SignalPayload
    observed_at: datetime = field(default_factory=utc_now)

    @property
    def type(self) -> SignalType:
        return self.payload.signal_type

    @property
    def key(self) -> str:
        return f"{self.stream_id}@{self.epoch}:{self.offset}"

    @property
    def id(self) -> str:
        return self.key

    def describe(self) -> str:
        """Return a one-line excerpt suitable for escalation records."""
        payload = self.payload
        if isinstance(payload, TestRunSummary):
            detail = f"total={payload.total} passed={payload.passed} failed={payload.failed}"
        elif isinstance(payload, CompileStatus):
            detail = "ok" if payload.ok else f"{len(payload.errors)} error(s)"
        elif isinstance(payload, ServerReady):
            detail = f"port={payload.port}"
        elif isinstance(payload, RuntimeFault):
            detail = payload.message
        elif isinstance(payload, ProcessCrashed):
            detail = f"{payload.process_name} exit={payload.exit_code}"
        elif isinstance(payload, PhaseTimeout):
            detail = f"{payload.phase.value} after {payload.waited_seconds:.0f}s"
        else:
            detail = f"{len(payload.issues)} issue(s)"
        return f"{self.key} {self.type.value}: {detail}"[:512]


__all__ = [
    "CompileStatus",
    "PhaseTimeout",
    "ProcessCrashed",
    "ReviewCompleted",
    "ReviewIssue",
    "RuntimeFault",
    "ServerReady",
    "Signal",
    "SignalPayload",
    "SignalType",
    "TestCaseResult",
    "TestOutcome",
    "TestRunSummary",
]
