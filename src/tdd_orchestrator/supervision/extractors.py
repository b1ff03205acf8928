"""
Line-oriented extractors that turn raw log output into typed signal payloads.

An extractor is fed one complete line at a time together with the byte offset
at which the line starts. It returns the payloads that line completes, which
is usually nothing. Multi-line constructs (a pytest session, a traceback) are
buffered inside the extractor; :attr:`pending_start` reports where the oldest
unfinished block began so the tailer never commits its cursor past it.

Both extractors also accept structured lines such as
``{"signal": "test_run_summary", "total": 3, "passed": 1, "failed": 2}`` for
tools that can emit machine-readable output directly. Only signal types a log
can legitimately carry are accepted; anything else is counted and dropped.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Final, Protocol

from tdd_orchestrator.domain.models import Phase, Severity
from tdd_orchestrator.domain.signals import (
    CompileStatus,
    PhaseTimeout,
    ProcessCrashed,
    ReviewCompleted,
    ReviewIssue,
    RuntimeFault,
    ServerReady,
    SignalPayload,
    SignalType,
    TestCaseResult,
    TestOutcome,
    TestRunSummary,
)

# Signal types a log line may carry; timeouts, crashes and reviews come from
# the orchestrator itself.
LOG_SIGNAL_TYPES: Final[frozenset[SignalType]] = frozenset(
    {
        SignalType.TEST_RUN_SUMMARY,
        SignalType.COMPILE_STATUS,
        SignalType.SERVER_READY,
        SignalType.RUNTIME_ERROR,
    }
)

_MAX_MESSAGES: Final[int] = 50
_MAX_DETAIL_LINES: Final[int] = 40

_TEST_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<name>\S+::\S+)\s+(?P<outcome>PASSED|FAILED|ERROR|SKIPPED|XFAIL|XPASS)\b"
)
_SHORT_SUMMARY_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<outcome>FAILED|ERROR)\s+(?P<name>\S+::\S+)(?:\s+-\s+(?P<message>.*))?$"
)
_SUMMARY_RE: Final[re.Pattern[str]] = re.compile(
    r"^=+\s+(?P<body>.+?)\s+in\s+[\d.]+s(?:\s+\([^)]*\))?\s+=+$"
)
_COUNT_RE: Final[re.Pattern[str]] = re.compile(
    r"(?P<count>\d+)\s+(?P<label>failed|passed|skipped|errors?|xfailed|xpassed|deselected)"
)
_SESSION_START_RE: Final[re.Pattern[str]] = re.compile(r"^=+\s+test session starts\s+=+$")
_COLLECTION_ERROR_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?:_+\s+)?ERROR collecting (?P<where>\S+)|error(?:s)? during collection"
)
_ERROR_DETAIL_RE: Final[re.Pattern[str]] = re.compile(r"^E\s+\w*(?:Error|Exception)\b")

_LISTENING_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)\blistening\s+on\s+(?:port\s+)?(?:[\w.\-\[\]]*:)?(?P<port>\d{2,5})\b"
)
_URL_RE: Final[re.Pattern[str]] = re.compile(
    r"\bhttps?://(?:localhost|[\d.]+|\[[0-9a-fA-F:]+\]|[\w.\-]+):(?P<port>\d{2,5})\b"
)
_COMPILED_OK_RE: Final[re.Pattern[str]] = re.compile(r"(?i)\bcompiled\s+successfully\b")
_COMPILE_FAILED_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)\bfailed\s+to\s+compile\b|\bcompiled\s+with\s+\d+\s+errors?\b"
)
_TRACEBACK_RE: Final[re.Pattern[str]] = re.compile(r"^Traceback \(most recent call last\):")
_ERROR_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^(?:\w+)?Error:\s|^Unhandled\b")


class SignalParseError(ValueError):
    """Raised for a structured line that cannot be turned into a payload."""


class SignalExtractor(Protocol):
    """Stateful line parser for one log stream."""

    dropped_lines: int

    @property
    def pending_start(self) -> int | None: ...

    def feed(self, line: str, *, offset: int) -> list[SignalPayload]: ...

    def reset(self) -> None: ...


class TestOutputExtractor:
    """Parse pytest-style test runner output into ``TestRunSummary`` payloads.

    A run is the span from the first per-test line (or the session banner) to
    the closing ``== N failed, M passed in Xs ==`` line. Collection failures
    inside the span turn the whole run into ``CompileStatus(ok=False)``.
    """

    __test__ = False

    def __init__(self) -> None:
        self.dropped_lines = 0
        self._block_start: int | None = None
        self._tests: dict[str, TestCaseResult] = {}
        self._messages: list[str] = []
        self._compile_errors: list[str] = []

    @property
    def pending_start(self) -> int | None:
        return self._block_start

    def reset(self) -> None:
        self._block_start = None
        self._tests = {}
        self._messages = []
        self._compile_errors = []

    def feed(self, line: str, *, offset: int) -> list[SignalPayload]:
        text = line.rstrip("\r\n")
        stripped = text.strip()
        if not stripped:
            return []
        if stripped.startswith("{"):
            return self._feed_structured(stripped)

        if _SESSION_START_RE.match(stripped):
            self.reset()
            self._block_start = offset
            return []

        summary = _SUMMARY_RE.match(stripped)
        if summary is not None and _COUNT_RE.search(summary.group("body")) is not None:
            return [self._close_block(summary.group("body"))]
        if summary is not None and "no tests ran" in summary.group("body"):
            return [self._close_block(summary.group("body"))]

        short = _SHORT_SUMMARY_RE.match(stripped)
        if short is not None:
            self._open(offset)
            name = short.group("name")
            message = short.group("message")
            self._tests[name] = TestCaseResult(
                name=name, outcome=_map_outcome(short.group("outcome")), message=message
            )
            if message and len(self._messages) < _MAX_MESSAGES:
                self._messages.append(f"{name}: {message}")
            return []

        test_line = _TEST_LINE_RE.match(stripped)
        if test_line is not None:
            self._open(offset)
            name = test_line.group("name")
            self._tests.setdefault(
                name,
                TestCaseResult(name=name, outcome=_map_outcome(test_line.group("outcome"))),
            )
            return []

        if _COLLECTION_ERROR_RE.search(stripped) or (
            self._compile_errors and _ERROR_DETAIL_RE.match(stripped)
        ):
            self._open(offset)
            if len(self._compile_errors) < _MAX_MESSAGES:
                self._compile_errors.append(stripped)
        return []

    def _open(self, offset: int) -> None:
        if self._block_start is None:
            self._block_start = offset

    def _close_block(self, body: str) -> SignalPayload:
        counts = {"failed": 0, "passed": 0, "skipped": 0, "error": 0}
        for match in _COUNT_RE.finditer(body):
            label = match.group("label")
            count = int(match.group("count"))
            if label.startswith("error"):
                counts["error"] += count
            elif label == "xfailed":
                counts["skipped"] += count
            elif label == "xpassed":
                counts["passed"] += count
            elif label in counts:
                counts[label] += count

        payload: SignalPayload
        if self._compile_errors:
            payload = CompileStatus(ok=False, errors=tuple(self._compile_errors))
        else:
            failed = counts["failed"] + counts["error"]
            payload = TestRunSummary(
                total=counts["passed"] + failed + counts["skipped"],
                passed=counts["passed"],
                failed=failed,
                skipped=counts["skipped"],
                failure_messages=tuple(self._messages),
                tests=tuple(self._tests[name] for name in sorted(self._tests)),
            )
        self.reset()
        return payload

    def _feed_structured(self, text: str) -> list[SignalPayload]:
        try:
            return [parse_structured_line(text)]
        except SignalParseError:
            self.dropped_lines += 1
            return []


class DevServerExtractor:
    """Parse dev-server output: readiness, compile results and runtime faults."""

    def __init__(self) -> None:
        self.dropped_lines = 0
        self._traceback_start: int | None = None
        self._traceback: list[str] = []

    @property
    def pending_start(self) -> int | None:
        return self._traceback_start

    def reset(self) -> None:
        self._traceback_start = None
        self._traceback = []

    def feed(self, line: str, *, offset: int) -> list[SignalPayload]:
        text = line.rstrip("\r\n")
        stripped = text.strip()
        if not stripped:
            return []

        if self._traceback_start is not None:
            if text[:1].isspace():
                if len(self._traceback) < _MAX_DETAIL_LINES:
                    self._traceback.append(text)
                return []
            fault = RuntimeFault(message=stripped, detail=tuple(self._traceback))
            self.reset()
            return [fault]

        if stripped.startswith("{"):
            try:
                return [parse_structured_line(stripped)]
            except SignalParseError:
                self.dropped_lines += 1
                return []

        if _TRACEBACK_RE.match(stripped):
            self._traceback_start = offset
            self._traceback = [stripped]
            return []

        ready = _LISTENING_RE.search(stripped) or _URL_RE.search(stripped)
        if ready is not None:
            return [ServerReady(port=int(ready.group("port")))]
        if _COMPILE_FAILED_RE.search(stripped):
            return [CompileStatus(ok=False, errors=(stripped,))]
        if _COMPILED_OK_RE.search(stripped):
            return [CompileStatus(ok=True)]
        if _ERROR_LINE_RE.match(stripped):
            return [RuntimeFault(message=stripped)]
        return []


def parse_structured_line(text: str) -> SignalPayload:
    """Decode one ``{"signal": ...}`` JSON log line into a payload.

    Only :data:`LOG_SIGNAL_TYPES` are accepted.
    """

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SignalParseError(f"invalid JSON line: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise SignalParseError("structured line must be a JSON object")
    payload = payload_from_mapping(raw)
    if payload.signal_type not in LOG_SIGNAL_TYPES:
        raise SignalParseError(f"{payload.signal_type.value} signals cannot come from a log")
    return payload


def payload_from_mapping(raw: Mapping[str, object]) -> SignalPayload:
    kind = raw.get("signal")
    try:
        signal_type = SignalType(kind) if isinstance(kind, str) else None
    except ValueError:
        signal_type = None
    if signal_type is None:
        raise SignalParseError(f"unknown signal type: {kind!r}")

    try:
        if signal_type is SignalType.TEST_RUN_SUMMARY:
            tests = tuple(
                TestCaseResult(
                    name=str(item["name"]),
                    outcome=TestOutcome(str(item.get("outcome", "passed"))),
                    message=_optional_text(item.get("message")),
                )
                for item in _mapping_list(raw.get("tests", []))
            )
            passed = _count(raw, "passed")
            failed = _count(raw, "failed")
            skipped = _count(raw, "skipped")
            total = _count(raw, "total") if "total" in raw else passed + failed + skipped
            if total < passed + failed:
                raise SignalParseError("total must be >= passed + failed")
            return TestRunSummary(
                total=total,
                passed=passed,
                failed=failed,
                skipped=skipped,
                failure_messages=tuple(str(m) for m in _list(raw.get("failure_messages", []))),
                tests=tests,
            )
        if signal_type is SignalType.COMPILE_STATUS:
            return CompileStatus(
                ok=bool(raw.get("ok", False)),
                errors=tuple(str(item) for item in _list(raw.get("errors", []))),
            )
        if signal_type is SignalType.SERVER_READY:
            return ServerReady(port=_count(raw, "port"))
        if signal_type is SignalType.RUNTIME_ERROR:
            return RuntimeFault(
                message=str(raw.get("message", "runtime error")),
                detail=tuple(str(item) for item in _list(raw.get("detail", []))),
            )
        if signal_type is SignalType.PROCESS_CRASHED:
            exit_code = raw.get("exit_code")
            return ProcessCrashed(
                process_name=str(raw.get("process_name", "unknown")),
                exit_code=exit_code if isinstance(exit_code, int) else None,
                restart_scheduled=bool(raw.get("restart_scheduled", False)),
            )
        if signal_type is SignalType.TIMEOUT:
            return PhaseTimeout(
                phase=Phase(str(raw.get("phase"))),
                waited_seconds=float(str(raw.get("waited_seconds", 0.0))),
                stream_silent=bool(raw.get("stream_silent", False)),
            )
        return ReviewCompleted(
            issues=tuple(
                ReviewIssue(
                    severity=Severity(str(item.get("severity", "info")).lower()),
                    message=str(item.get("message", "")),
                    location=_optional_text(item.get("location")),
                )
                for item in _mapping_list(raw.get("issues", []))
            )
        )
    except SignalParseError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise SignalParseError(f"malformed {signal_type.value} payload: {exc}") from exc


def extractor_for_stream(stream_id: str) -> SignalExtractor:
    """Pick the extractor for a stream name such as ``test-output`` or ``dev-server``."""
    if stream_id.endswith("dev-server"):
        return DevServerExtractor()
    return TestOutputExtractor()


def _map_outcome(token: str) -> TestOutcome:
    if token in {"PASSED", "XPASS"}:
        return TestOutcome.PASSED
    if token == "FAILED":
        return TestOutcome.FAILED
    if token == "ERROR":
        return TestOutcome.ERROR
    return TestOutcome.SKIPPED


def _count(raw: Mapping[str, object], key: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise SignalParseError(f"{key} must be a non-negative integer")
    return value


def _list(value: object) -> list[object]:
    if not isinstance(value, list):
        raise SignalParseError("expected a JSON array")
    return value


def _mapping_list(value: object) -> list[Mapping[str, object]]:
    items = _list(value)
    for item in items:
        if not isinstance(item, Mapping):
            raise SignalParseError("expected an array of objects")
    return items  # type: ignore[return-value]


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "LOG_SIGNAL_TYPES",
    "DevServerExtractor",
    "SignalExtractor",
    "SignalParseError",
    "TestOutputExtractor",
    "extractor_for_stream",
    "parse_structured_line",
    "payload_from_mapping",
]
