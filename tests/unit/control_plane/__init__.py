"""Unit tests for tdd_orchestrator.control_plane, plus scripted collaborators."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from tdd_orchestrator.control_plane.actors import ActorError, ChangeRequest, ChangeResult
from tdd_orchestrator.domain.models import Phase, WindowCloseReason
from tdd_orchestrator.domain.signals import ReviewCompleted, Signal, SignalPayload

from tests.unit import SignalFactory


class ScriptedSource:
    """
    In-memory signal source.

    Every ``run_tests`` call releases the next scripted batch of payloads.
    Once the script is exhausted a wait returns ``None`` and reports the
    stream as silent (or not, per ``silent``).
    """

    def __init__(
        self,
        runs: Sequence[Sequence[SignalPayload]] = (),
        *,
        stream_id: str = "api/test-output",
        silent: bool = True,
        on_run: Callable[[], None] | None = None,
    ) -> None:
        self._runs = deque(list(run) for run in runs)
        self._pending: deque[Signal] = deque()
        self._factory = SignalFactory(stream_id)
        self._silent = silent
        self._on_run = on_run
        self.last_wait_silent = False
        self.test_runs = 0
        self.commits = 0
        self.opened = False
        self.closed = False
        self.waits: list[float] = []

    async def open(self) -> None:
        self.opened = True

    async def run_tests(self) -> None:
        self.test_runs += 1
        if self._on_run is not None:
            self._on_run()
        if self._runs:
            self._pending.extend(self._factory(payload) for payload in self._runs.popleft())

    async def next_signal(self, timeout_seconds: float) -> Signal | None:
        self.waits.append(timeout_seconds)
        if self._pending:
            self.last_wait_silent = False
            return self._pending.popleft()
        self.last_wait_silent = self._silent
        return None

    def commit(self) -> None:
        self.commits += 1

    async def close(self) -> None:
        self.closed = True


@dataclass(slots=True)
class FakeCodeActor:
    """Record change requests; ``edit`` runs against each request."""

    edit: Callable[[ChangeRequest], None] | None = None
    fail: bool = False
    requests: list[ChangeRequest] = field(default_factory=list)

    @property
    def phases(self) -> list[Phase]:
        return [request.phase for request in self.requests]

    async def act(self, request: ChangeRequest) -> ChangeResult:
        self.requests.append(request)
        if self.fail:
            raise ActorError("code actor unavailable")
        if self.edit is not None:
            self.edit(request)
        return ChangeResult(change_set_applied=True, summary=f"{request.phase.value} change")


@dataclass(slots=True)
class FakeReviewActor:
    results: list[ReviewCompleted] = field(default_factory=list)
    fail: bool = False
    refs: list[str] = field(default_factory=list)

    async def review(self, changeset_ref: str) -> ReviewCompleted:
        self.refs.append(changeset_ref)
        if self.fail:
            raise ActorError("reviewer offline")
        if self.results:
            return self.results.pop(0)
        return ReviewCompleted()


@dataclass(slots=True)
class FakeCheckpoint:
    work_item_id: str = ""
    budget_remaining_seconds: float = 3600.0
    stop: WindowCloseReason | None = None

    def stop_reason(self) -> WindowCloseReason | None:
        return self.stop


__all__ = ["FakeCheckpoint", "FakeCodeActor", "FakeReviewActor", "ScriptedSource"]
