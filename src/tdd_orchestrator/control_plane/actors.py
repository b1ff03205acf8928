"""
External actor boundary.

The orchestrator never writes code or judges it. A :class:`CodeChangeActor`
edits the working tree when the phase machine asks for work and a
:class:`ReviewActor` reviews the result after a clean refactor. Their effect
on the phase machine only ever arrives as signals: test output written to the
log streams, and a ``ReviewCompleted`` payload turned into a signal on the
``review`` stream.

The command-backed actors run a configured executable with a JSON request on
stdin and read one JSON object from stdout:

- code change: ``{"change_set_applied": true, "summary": "..."}``
- review: ``{"issues": [{"severity": "high", "message": "...", "location": "..."}]}``
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Protocol

import structlog

from tdd_orchestrator.domain.models import Phase, Severity, WorkItem
from tdd_orchestrator.domain.signals import ReviewCompleted, ReviewIssue
from tdd_orchestrator.utils.concurrency import run_with_timeout

DEFAULT_ACTOR_TIMEOUT_SECONDS: Final[float] = 1800.0
_MAX_SIGNAL_CONTEXT: Final[int] = 20


class ActorError(RuntimeError):
    """Raised when an actor cannot be run or returns something unusable."""


class ActorTimeoutError(ActorError):
    """Raised when an actor command exceeds its timeout."""


@dataclass(frozen=True, slots=True)
class ChangeRequest:
    phase: Phase
    work_item: WorkItem
    signal_context: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase.value,
            "work_item": self.work_item.to_dict(),
            "signal_context": list(self.signal_context[-_MAX_SIGNAL_CONTEXT:]),
        }


@dataclass(frozen=True, slots=True)
class ChangeResult:
    change_set_applied: bool
    summary: str = ""


class CodeChangeActor(Protocol):
    async def act(self, request: ChangeRequest) -> ChangeResult: ...


class ReviewActor(Protocol):
    async def review(self, changeset_ref: str) -> ReviewCompleted: ...


@dataclass(slots=True)
class _CommandRunner:
    command: tuple[str, ...]
    cwd: Path | None
    timeout_seconds: float
    env: Mapping[str, str] | None = None

    async def run(self, payload: Mapping[str, object]) -> dict[str, object]:
        if not self.command:
            raise ActorError("actor command is empty")
        stdin_data = json.dumps(payload, sort_keys=True).encode("utf-8")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd is not None else None,
                env=dict(self.env) if self.env is not None else None,
            )
        except OSError as exc:
            raise ActorError(f"cannot start actor {self.command[0]!r}: {exc}") from exc

        try:
            stdout, stderr = await run_with_timeout(
                proc.communicate(stdin_data), self.timeout_seconds
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise ActorTimeoutError(
                f"actor {self.command[0]!r} timed out after {self.timeout_seconds}s"
            ) from None

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise ActorError(f"actor {self.command[0]!r} exited with {proc.returncode}: {tail}")
        return _parse_json_object(stdout.decode("utf-8", errors="replace"))


class CommandCodeChangeActor:
    """Run a code-change command per request; the command edits the working tree."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout_seconds: float = DEFAULT_ACTOR_TIMEOUT_SECONDS,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._runner = _CommandRunner(
            command=tuple(command),
            cwd=Path(cwd) if cwd is not None else None,
            timeout_seconds=timeout_seconds,
            env=env,
        )

    async def act(self, request: ChangeRequest) -> ChangeResult:
        raw = await self._runner.run(request.to_dict())
        applied = raw.get("change_set_applied", False)
        if not isinstance(applied, bool):
            raise ActorError("change_set_applied must be a boolean")
        summary = raw.get("summary", "")
        result = ChangeResult(change_set_applied=applied, summary=str(summary)[:2000])
        self._logger.info(
            "code_change_actor_finished",
            work_item_id=request.work_item.id,
            phase=request.phase.value,
            change_set_applied=result.change_set_applied,
        )
        return result


class CommandReviewActor:
    """Run a review command with ``{"changeset_ref": ...}`` on stdin."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout_seconds: float = DEFAULT_ACTOR_TIMEOUT_SECONDS,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._runner = _CommandRunner(
            command=tuple(command),
            cwd=Path(cwd) if cwd is not None else None,
            timeout_seconds=timeout_seconds,
            env=env,
        )

    async def review(self, changeset_ref: str) -> ReviewCompleted:
        raw = await self._runner.run({"changeset_ref": changeset_ref})
        completed = review_from_mapping(raw)
        self._logger.info(
            "review_actor_finished", changeset_ref=changeset_ref, issues=len(completed.issues)
        )
        return completed


def review_from_mapping(raw: Mapping[str, object]) -> ReviewCompleted:
    """Build ``ReviewCompleted`` from ``{"issues": [...]}``; unknown severities are errors."""

    issues_raw = raw.get("issues", [])
    if not isinstance(issues_raw, list):
        raise ActorError("review issues must be a list")
    issues: list[ReviewIssue] = []
    for index, item in enumerate(issues_raw):
        if not isinstance(item, Mapping):
            raise ActorError(f"issues[{index}] must be an object")
        try:
            severity = Severity(str(item.get("severity", "info")).lower())
        except ValueError as exc:
            raise ActorError(f"issues[{index}].severity: {exc}") from exc
        location = item.get("location")
        issues.append(
            ReviewIssue(
                severity=severity,
                message=str(item.get("message", "")),
                location=None if location is None else str(location),
            )
        )
    return ReviewCompleted(issues=tuple(issues))


def _parse_json_object(text: str) -> dict[str, object]:
    # Tools may print progress first; the last non-empty line carries the result.
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise ActorError("actor produced no output")
    for candidate in (text.strip(), lines[-1].strip()):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ActorError("actor output is not a JSON object")


__all__ = [
    "DEFAULT_ACTOR_TIMEOUT_SECONDS",
    "ActorError",
    "ActorTimeoutError",
    "ChangeRequest",
    "ChangeResult",
    "CodeChangeActor",
    "CommandCodeChangeActor",
    "CommandReviewActor",
    "ReviewActor",
    "review_from_mapping",
]
