"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar, cast

from tdd_orchestrator.constants import SEVERITY_RANK
from tdd_orchestrator.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION = 1
_MAX_TEXT = 8192
_MAX_COLLECTION = 10_000


class Phase(StrEnum):
    RED = "red"
    GREEN = "green"
    REFACTOR = "refactor"
    REVIEW = "review"
    DONE = "done"
    ESCALATED = "escalated"
    ABORTED = "aborted"


class WorkItemStatus(StrEnum):
    QUEUED = "queued"
    ACTIVE = "active"
    PAUSED = "paused"
    DONE = "done"
    ESCALATED = "escalated"
    ABORTED = "aborted"


class EscalationReason(StrEnum):
    AMBIGUOUS_REQUIREMENT = "ambiguous_requirement"
    CANNOT_ACHIEVE_RED = "cannot_achieve_red"
    CANNOT_ACHIEVE_GREEN = "cannot_achieve_green"
    REGRESSION_LOOP = "regression_loop"
    REVIEW_FAILED = "review_failed"
    EXTERNAL_DEPENDENCY_UNAVAILABLE = "external_dependency_unavailable"
    ATTENTION_BUDGET_EXPIRED = "attention_budget_expired"


class PolicyAction(StrEnum):
    CONTINUE = "continue"
    ESCALATE = "escalate"
    ABORT = "abort"


class Severity(StrEnum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self.value]


class WindowStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"
    ABANDONED = "abandoned"


class WindowCloseReason(StrEnum):
    QUEUE_EMPTY = "queue_empty"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ESCALATION_BLOCKED = "escalation_blocked"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# Phases an item actively works through; the only valid Resume targets.
WORK_PHASES: Final[tuple[Phase, ...]] = (Phase.RED, Phase.GREEN, Phase.REFACTOR, Phase.REVIEW)
TERMINAL_PHASES: Final[frozenset[Phase]] = frozenset({Phase.DONE, Phase.ABORTED})

PHASE_EXHAUSTION_REASON: Final[dict[Phase, EscalationReason]] = {
    Phase.RED: EscalationReason.CANNOT_ACHIEVE_RED,
    Phase.GREEN: EscalationReason.CANNOT_ACHIEVE_GREEN,
    Phase.REFACTOR: EscalationReason.REGRESSION_LOOP,
    Phase.REVIEW: EscalationReason.REVIEW_FAILED,
}


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(UTC)


def iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    unknown = sorted(key for key in parsed if key not in required | (optional or set()))
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_optional_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum | None:
    if value is None:
        return None
    return _as_enum(enum_type, value, path)


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_COLLECTION:
            _fail(path, f"too many items (>{_MAX_COLLECTION})")
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    unique: bool = False,
    max_len: int = _MAX_TEXT,
) -> tuple[str, ...]:
    parsed = tuple(
        _as_str(item, f"{path}[{index}]", max_len=max_len)
        for index, item in enumerate(_as_sequence(value, path))
    )
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _as_counter_map(value: object, path: str) -> dict[str, int]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, int] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key:
            _fail(path, "keys must be non-empty strings")
        parsed[key] = _as_int(item, f"{path}.{key}", minimum=0)
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("str", value.value)
    if isinstance(value, datetime):
        return iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        return {
            item.name: _serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def _pick(parsed: Mapping[str, object], *keys: str, default: object = None) -> object:
    """Return the first present key, so intake payloads may use either spelling."""
    for key in keys:
        if key in parsed:
            return parsed[key]
    return default


@dataclass(slots=True)
class AcceptanceCriterion(CanonicalModel):
    tag: str
    text: str

    def __post_init__(self) -> None:
        self.tag = _as_str(self.tag, "AcceptanceCriterion.tag", max_len=64)
        self.text = _as_str(self.text, "AcceptanceCriterion.text", max_len=2048)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AcceptanceCriterion:
        parsed = _expect_object(data, "AcceptanceCriterion", required={"tag", "text"})
        return cls(tag=cast("str", parsed["tag"]), text=cast("str", parsed["text"]))


def _parse_criteria(value: object, path: str) -> tuple[AcceptanceCriterion, ...]:
    """Accept plain strings (tagged ``AC-<n>``) or ``{tag, text}`` objects."""
    criteria: list[AcceptanceCriterion] = []
    for index, item in enumerate(_as_sequence(value, path)):
        item_path = f"{path}[{index}]"
        if isinstance(item, AcceptanceCriterion):
            criteria.append(item)
        elif isinstance(item, str):
            criteria.append(AcceptanceCriterion(tag=f"AC-{index + 1}", text=item))
        elif isinstance(item, Mapping):
            parsed = _expect_object(item, item_path, required={"text"}, optional={"tag"})
            criteria.append(
                AcceptanceCriterion(
                    tag=_as_str(parsed.get("tag", f"AC-{index + 1}"), f"{item_path}.tag"),
                    text=_as_str(parsed["text"], f"{item_path}.text"),
                )
            )
        else:
            _fail(item_path, f"expected string or object, got {type(item).__name__}")
    tags = [criterion.tag.lower() for criterion in criteria]
    if len(set(tags)) != len(tags):
        _fail(path, "criterion tags must be unique")
    return tuple(criteria)


@dataclass(slots=True)
class Ticket(CanonicalModel):
    id: str
    title: str
    requirement_text: str
    acceptance_criteria: tuple[AcceptanceCriterion, ...]
    project_ref: str
    constraints: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Ticket.id", max_len=128)
        self.title = _as_str(self.title, "Ticket.title", max_len=256)
        self.requirement_text = _as_str(self.requirement_text, "Ticket.requirement_text")
        self.acceptance_criteria = _parse_criteria(
            self.acceptance_criteria, "Ticket.acceptance_criteria"
        )
        self.project_ref = _as_str(self.project_ref, "Ticket.project_ref", max_len=128)
        self.constraints = _as_str_tuple(self.constraints, "Ticket.constraints")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Ticket:
        parsed = _expect_object(
            data,
            "Ticket",
            required={"id", "title"},
            optional={
                "requirement_text",
                "requirementText",
                "acceptance_criteria",
                "acceptanceCriteria",
                "constraints",
                "project_ref",
                "projectRef",
            },
        )
        requirement_text = _pick(parsed, "requirement_text", "requirementText")
        project_ref = _pick(parsed, "project_ref", "projectRef")
        if requirement_text is None:
            _fail("Ticket", "missing required field 'requirement_text'")
        if project_ref is None:
            _fail("Ticket", "missing required field 'project_ref'")
        return cls(
            id=_as_str(parsed["id"], "Ticket.id", max_len=128),
            title=_as_str(parsed["title"], "Ticket.title", max_len=256),
            requirement_text=_as_str(requirement_text, "Ticket.requirement_text"),
            acceptance_criteria=_parse_criteria(
                _pick(parsed, "acceptance_criteria", "acceptanceCriteria", default=()),
                "Ticket.acceptance_criteria",
            ),
            project_ref=_as_str(project_ref, "Ticket.project_ref", max_len=128),
            constraints=_as_str_tuple(parsed.get("constraints", ()), "Ticket.constraints"),
        )


@dataclass(slots=True)
class WorkItem(CanonicalModel):
    """A ticket being driven through the test-first phases.

    ``attempts`` maps a phase value to its attempt counter. Counters only grow
    while the item stays in a phase; ``resume`` is the only operation that
    clears them. ``stream_epochs`` remembers the highest epoch observed per
    log stream so that signals from a rotated or restarted stream can be
    told apart from current ones.
    """

    id: str
    ticket_id: str
    title: str
    requirement_text: str
    acceptance_criteria: tuple[AcceptanceCriterion, ...]
    project_ref: str
    constraints: tuple[str, ...] = ()
    phase: Phase = Phase.RED
    status: WorkItemStatus = WorkItemStatus.QUEUED
    attempts: dict[str, int] = field(default_factory=dict)
    escalation_reason: EscalationReason | None = None
    escalated_from: Phase | None = None
    red_test_names: tuple[str, ...] = ()
    green_test_names: tuple[str, ...] = ()
    red_test_count: int = 0
    green_test_count: int = 0
    passing_test_names: tuple[str, ...] = ()
    green_snapshot_ref: str | None = None
    review_cycles: int = 0
    review_pending: bool = False
    compile_error_stream: str | None = None
    stream_epochs: dict[str, int] = field(default_factory=dict)
    expected_failing_tests: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(self.schema_version, "WorkItem.schema_version", minimum=1)
        self.id = _as_str(self.id, "WorkItem.id")
        try:
            domain_ids.validate_work_item_id(self.id)
        except ValueError as exc:
            _fail("WorkItem.id", str(exc))
        self.ticket_id = _as_str(self.ticket_id, "WorkItem.ticket_id", max_len=128)
        self.title = _as_str(self.title, "WorkItem.title", max_len=256)
        self.requirement_text = _as_str(self.requirement_text, "WorkItem.requirement_text")
        self.acceptance_criteria = _parse_criteria(
            self.acceptance_criteria, "WorkItem.acceptance_criteria"
        )
        self.project_ref = _as_str(self.project_ref, "WorkItem.project_ref", max_len=128)
        self.constraints = _as_str_tuple(self.constraints, "WorkItem.constraints")
        self.phase = _as_enum(Phase, self.phase, "WorkItem.phase")
        self.status = _as_enum(WorkItemStatus, self.status, "WorkItem.status")
        self.attempts = _as_counter_map(self.attempts, "WorkItem.attempts")
        self.escalation_reason = _as_optional_enum(
            EscalationReason, self.escalation_reason, "WorkItem.escalation_reason"
        )
        self.escalated_from = _as_optional_enum(
            Phase, self.escalated_from, "WorkItem.escalated_from"
        )
        self.red_test_names = _as_str_tuple(
            self.red_test_names, "WorkItem.red_test_names", unique=True
        )
        self.green_test_names = _as_str_tuple(
            self.green_test_names, "WorkItem.green_test_names", unique=True
        )
        self.red_test_count = _as_int(self.red_test_count, "WorkItem.red_test_count", minimum=0)
        self.green_test_count = _as_int(
            self.green_test_count, "WorkItem.green_test_count", minimum=0
        )
        self.passing_test_names = _as_str_tuple(
            self.passing_test_names, "WorkItem.passing_test_names", unique=True
        )
        self.green_snapshot_ref = _as_optional_str(
            self.green_snapshot_ref, "WorkItem.green_snapshot_ref"
        )
        self.review_cycles = _as_int(self.review_cycles, "WorkItem.review_cycles", minimum=0)
        self.review_pending = _as_bool(self.review_pending, "WorkItem.review_pending")
        self.compile_error_stream = _as_optional_str(
            self.compile_error_stream, "WorkItem.compile_error_stream"
        )
        self.stream_epochs = _as_counter_map(self.stream_epochs, "WorkItem.stream_epochs")
        self.expected_failing_tests = _as_int(
            self.expected_failing_tests, "WorkItem.expected_failing_tests", minimum=0
        )
        self.created_at = _as_datetime(self.created_at, "WorkItem.created_at")
        self.updated_at = _as_datetime(self.updated_at, "WorkItem.updated_at")
        if self.phase is Phase.ESCALATED and self.escalation_reason is None:
            _fail("WorkItem.escalation_reason", "required while phase is escalated")

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def attempt_count(self, phase: Phase) -> int:
        return self.attempts.get(phase.value, 0)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        parsed = _expect_object(
            data,
            "WorkItem",
            required={"id", "ticket_id", "title", "requirement_text", "project_ref"},
            optional={
                "acceptance_criteria",
                "constraints",
                "phase",
                "status",
                "attempts",
                "escalation_reason",
                "escalated_from",
                "red_test_names",
                "green_test_names",
                "red_test_count",
                "green_test_count",
                "passing_test_names",
                "green_snapshot_ref",
                "review_cycles",
                "review_pending",
                "compile_error_stream",
                "stream_epochs",
                "expected_failing_tests",
                "created_at",
                "updated_at",
                "schema_version",
            },
        )
        now = utc_now()
        return cls(
            id=_as_str(parsed["id"], "WorkItem.id"),
            ticket_id=_as_str(parsed["ticket_id"], "WorkItem.ticket_id"),
            title=_as_str(parsed["title"], "WorkItem.title"),
            requirement_text=_as_str(parsed["requirement_text"], "WorkItem.requirement_text"),
            acceptance_criteria=_parse_criteria(
                parsed.get("acceptance_criteria", ()), "WorkItem.acceptance_criteria"
            ),
            project_ref=_as_str(parsed["project_ref"], "WorkItem.project_ref"),
            constraints=_as_str_tuple(parsed.get("constraints", ()), "WorkItem.constraints"),
            phase=_as_enum(Phase, parsed.get("phase", Phase.RED), "WorkItem.phase"),
            status=_as_enum(
                WorkItemStatus, parsed.get("status", WorkItemStatus.QUEUED), "WorkItem.status"
            ),
            attempts=_as_counter_map(parsed.get("attempts", {}), "WorkItem.attempts"),
            escalation_reason=_as_optional_enum(
                EscalationReason, parsed.get("escalation_reason"), "WorkItem.escalation_reason"
            ),
            escalated_from=_as_optional_enum(
                Phase, parsed.get("escalated_from"), "WorkItem.escalated_from"
            ),
            red_test_names=_as_str_tuple(
                parsed.get("red_test_names", ()), "WorkItem.red_test_names"
            ),
            green_test_names=_as_str_tuple(
                parsed.get("green_test_names", ()), "WorkItem.green_test_names"
            ),
            red_test_count=_as_int(parsed.get("red_test_count", 0), "WorkItem.red_test_count"),
            green_test_count=_as_int(
                parsed.get("green_test_count", 0), "WorkItem.green_test_count"
            ),
            passing_test_names=_as_str_tuple(
                parsed.get("passing_test_names", ()), "WorkItem.passing_test_names"
            ),
            green_snapshot_ref=_as_optional_str(
                parsed.get("green_snapshot_ref"), "WorkItem.green_snapshot_ref"
            ),
            review_cycles=_as_int(parsed.get("review_cycles", 0), "WorkItem.review_cycles"),
            review_pending=_as_bool(
                parsed.get("review_pending", False), "WorkItem.review_pending"
            ),
            compile_error_stream=_as_optional_str(
                parsed.get("compile_error_stream"), "WorkItem.compile_error_stream"
            ),
            stream_epochs=_as_counter_map(
                parsed.get("stream_epochs", {}), "WorkItem.stream_epochs"
            ),
            expected_failing_tests=_as_int(
                parsed.get("expected_failing_tests", 0), "WorkItem.expected_failing_tests"
            ),
            created_at=_as_datetime(parsed.get("created_at", now), "WorkItem.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "WorkItem.updated_at"),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION), "WorkItem.schema_version"
            ),
        )


@dataclass(slots=True)
class EscalationRecord(CanonicalModel):
    id: str
    work_item_id: str
    phase: Phase
    reason: EscalationReason
    created_at: datetime = field(default_factory=utc_now)
    snapshot_ref: str | None = None
    recent_signals: tuple[str, ...] = ()
    detail: str | None = None
    cleared_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "EscalationRecord.id")
        self.work_item_id = _as_str(self.work_item_id, "EscalationRecord.work_item_id")
        self.phase = _as_enum(Phase, self.phase, "EscalationRecord.phase")
        self.reason = _as_enum(EscalationReason, self.reason, "EscalationRecord.reason")
        self.created_at = _as_datetime(self.created_at, "EscalationRecord.created_at")
        self.snapshot_ref = _as_optional_str(self.snapshot_ref, "EscalationRecord.snapshot_ref")
        self.recent_signals = _as_str_tuple(
            self.recent_signals, "EscalationRecord.recent_signals"
        )
        self.detail = _as_optional_str(self.detail, "EscalationRecord.detail")
        self.cleared_at = _as_optional_datetime(self.cleared_at, "EscalationRecord.cleared_at")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> EscalationRecord:
        parsed = _expect_object(
            data,
            "EscalationRecord",
            required={"id", "work_item_id", "phase", "reason", "created_at"},
            optional={"snapshot_ref", "recent_signals", "detail", "cleared_at"},
        )
        return cls(
            id=cast("str", parsed["id"]),
            work_item_id=cast("str", parsed["work_item_id"]),
            phase=_as_enum(Phase, parsed["phase"], "EscalationRecord.phase"),
            reason=_as_enum(EscalationReason, parsed["reason"], "EscalationRecord.reason"),
            created_at=_as_datetime(parsed["created_at"], "EscalationRecord.created_at"),
            snapshot_ref=_as_optional_str(
                parsed.get("snapshot_ref"), "EscalationRecord.snapshot_ref"
            ),
            recent_signals=_as_str_tuple(
                parsed.get("recent_signals", ()), "EscalationRecord.recent_signals"
            ),
            detail=_as_optional_str(parsed.get("detail"), "EscalationRecord.detail"),
            cleared_at=_as_optional_datetime(
                parsed.get("cleared_at"), "EscalationRecord.cleared_at"
            ),
        )


@dataclass(frozen=True, slots=True)
class AuditEntry(CanonicalModel):
    """One phase transition. ``from_phase`` is ``None`` for the intake entry."""

    work_item_id: str
    occurred_at: datetime
    from_phase: Phase | None
    to_phase: Phase
    signal_id: str
    note: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AuditEntry:
        parsed = _expect_object(
            data,
            "AuditEntry",
            required={"work_item_id", "occurred_at", "from_phase", "to_phase", "signal_id"},
            optional={"note"},
        )
        return cls(
            work_item_id=_as_str(parsed["work_item_id"], "AuditEntry.work_item_id"),
            occurred_at=_as_datetime(parsed["occurred_at"], "AuditEntry.occurred_at"),
            from_phase=_as_optional_enum(Phase, parsed["from_phase"], "AuditEntry.from_phase"),
            to_phase=_as_enum(Phase, parsed["to_phase"], "AuditEntry.to_phase"),
            signal_id=_as_str(parsed["signal_id"], "AuditEntry.signal_id"),
            note=_as_optional_str(parsed.get("note"), "AuditEntry.note"),
        )


@dataclass(frozen=True, slots=True)
class StreamCursor(CanonicalModel):
    """Durable read position of one log stream.

    ``offset`` is the byte position of the first line not yet committed and
    ``sequence`` the next sequence number to hand out. ``inode`` and ``size``
    let a restarted tailer notice that the file was rotated or truncated while
    it was down.
    """

    stream_id: str
    path: str
    epoch: int = 0
    offset: int = 0
    sequence: int = 0
    inode: int | None = None
    size: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StreamCursor:
        parsed = _expect_object(
            data,
            "StreamCursor",
            required={"stream_id", "path"},
            optional={"epoch", "offset", "sequence", "inode", "size"},
        )
        inode = parsed.get("inode")
        return cls(
            stream_id=_as_str(parsed["stream_id"], "StreamCursor.stream_id"),
            path=_as_str(parsed["path"], "StreamCursor.path"),
            epoch=_as_int(parsed.get("epoch", 0), "StreamCursor.epoch", minimum=0),
            offset=_as_int(parsed.get("offset", 0), "StreamCursor.offset", minimum=0),
            sequence=_as_int(parsed.get("sequence", 0), "StreamCursor.sequence", minimum=0),
            inode=None if inode is None else _as_int(inode, "StreamCursor.inode"),
            size=_as_int(parsed.get("size", 0), "StreamCursor.size", minimum=0),
        )


@dataclass(slots=True)
class AttentionWindow(CanonicalModel):
    id: str
    started_at: datetime
    budget_seconds: float
    status: WindowStatus = WindowStatus.OPEN
    elapsed_seconds: float = 0.0
    queue_snapshot: tuple[str, ...] = ()
    pid: int | None = None
    closed_at: datetime | None = None
    close_reason: WindowCloseReason | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "AttentionWindow.id")
        self.started_at = _as_datetime(self.started_at, "AttentionWindow.started_at")
        self.budget_seconds = _as_float(
            self.budget_seconds, "AttentionWindow.budget_seconds", minimum=0.0
        )
        self.status = _as_enum(WindowStatus, self.status, "AttentionWindow.status")
        self.elapsed_seconds = _as_float(
            self.elapsed_seconds, "AttentionWindow.elapsed_seconds", minimum=0.0
        )
        self.queue_snapshot = _as_str_tuple(
            self.queue_snapshot, "AttentionWindow.queue_snapshot", unique=True
        )
        if self.pid is not None:
            self.pid = _as_int(self.pid, "AttentionWindow.pid", minimum=0)
        self.closed_at = _as_optional_datetime(self.closed_at, "AttentionWindow.closed_at")
        self.close_reason = _as_optional_enum(
            WindowCloseReason, self.close_reason, "AttentionWindow.close_reason"
        )

    @property
    def remaining_seconds(self) -> float:
        return self.budget_seconds - self.elapsed_seconds

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AttentionWindow:
        parsed = _expect_object(
            data,
            "AttentionWindow",
            required={"id", "started_at", "budget_seconds"},
            optional={
                "status",
                "elapsed_seconds",
                "queue_snapshot",
                "pid",
                "closed_at",
                "close_reason",
            },
        )
        return cls(
            id=cast("str", parsed["id"]),
            started_at=_as_datetime(parsed["started_at"], "AttentionWindow.started_at"),
            budget_seconds=_as_float(parsed["budget_seconds"], "AttentionWindow.budget_seconds"),
            status=_as_enum(
                WindowStatus, parsed.get("status", WindowStatus.OPEN), "AttentionWindow.status"
            ),
            elapsed_seconds=_as_float(
                parsed.get("elapsed_seconds", 0.0), "AttentionWindow.elapsed_seconds"
            ),
            queue_snapshot=_as_str_tuple(
                parsed.get("queue_snapshot", ()), "AttentionWindow.queue_snapshot"
            ),
            pid=cast("int | None", parsed.get("pid")),
            closed_at=_as_optional_datetime(parsed.get("closed_at"), "AttentionWindow.closed_at"),
            close_reason=_as_optional_enum(
                WindowCloseReason, parsed.get("close_reason"), "AttentionWindow.close_reason"
            ),
        )


@dataclass(slots=True)
class HandoffReport(CanonicalModel):
    """What the human finds when an attention window closes."""

    window_id: str
    started_at: datetime
    closed_at: datetime
    close_reason: WindowCloseReason
    budget_seconds: float
    elapsed_seconds: float
    wall_clock_seconds: float
    completed: tuple[str, ...] = ()
    pending_escalations: tuple[EscalationRecord, ...] = ()
    aborted: tuple[str, ...] = ()
    paused: tuple[str, ...] = ()
    remaining_queue: tuple[str, ...] = ()
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.window_id = _as_str(self.window_id, "HandoffReport.window_id")
        self.started_at = _as_datetime(self.started_at, "HandoffReport.started_at")
        self.closed_at = _as_datetime(self.closed_at, "HandoffReport.closed_at")
        self.close_reason = _as_enum(
            WindowCloseReason, self.close_reason, "HandoffReport.close_reason"
        )
        self.budget_seconds = _as_float(self.budget_seconds, "HandoffReport.budget_seconds")
        self.elapsed_seconds = _as_float(
            self.elapsed_seconds, "HandoffReport.elapsed_seconds", minimum=0.0
        )
        self.wall_clock_seconds = _as_float(
            self.wall_clock_seconds, "HandoffReport.wall_clock_seconds", minimum=0.0
        )
        for name in ("completed", "aborted", "paused", "remaining_queue"):
            setattr(
                self, name, _as_str_tuple(getattr(self, name), f"HandoffReport.{name}", unique=True)
            )
        for index, record in enumerate(self.pending_escalations):
            if not isinstance(record, EscalationRecord):
                _fail(f"HandoffReport.pending_escalations[{index}]", "must be EscalationRecord")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> HandoffReport:
        parsed = _expect_object(
            data,
            "HandoffReport",
            required={
                "window_id",
                "started_at",
                "closed_at",
                "close_reason",
                "budget_seconds",
                "elapsed_seconds",
                "wall_clock_seconds",
            },
            optional={
                "completed",
                "pending_escalations",
                "aborted",
                "paused",
                "remaining_queue",
                "schema_version",
            },
        )
        escalations = tuple(
            EscalationRecord.from_dict(
                _expect_object(
                    item,
                    f"HandoffReport.pending_escalations[{index}]",
                    required={"id", "work_item_id", "phase", "reason", "created_at"},
                    optional={"snapshot_ref", "recent_signals", "detail", "cleared_at"},
                )
            )
            for index, item in enumerate(
                _as_sequence(
                    parsed.get("pending_escalations", ()), "HandoffReport.pending_escalations"
                )
            )
        )
        return cls(
            window_id=cast("str", parsed["window_id"]),
            started_at=_as_datetime(parsed["started_at"], "HandoffReport.started_at"),
            closed_at=_as_datetime(parsed["closed_at"], "HandoffReport.closed_at"),
            close_reason=_as_enum(
                WindowCloseReason, parsed["close_reason"], "HandoffReport.close_reason"
            ),
            budget_seconds=_as_float(parsed["budget_seconds"], "HandoffReport.budget_seconds"),
            elapsed_seconds=_as_float(parsed["elapsed_seconds"], "HandoffReport.elapsed_seconds"),
            wall_clock_seconds=_as_float(
                parsed["wall_clock_seconds"], "HandoffReport.wall_clock_seconds"
            ),
            completed=_as_str_tuple(parsed.get("completed", ()), "HandoffReport.completed"),
            pending_escalations=escalations,
            aborted=_as_str_tuple(parsed.get("aborted", ()), "HandoffReport.aborted"),
            paused=_as_str_tuple(parsed.get("paused", ()), "HandoffReport.paused"),
            remaining_queue=_as_str_tuple(
                parsed.get("remaining_queue", ()), "HandoffReport.remaining_queue"
            ),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION), "HandoffReport.schema_version"
            ),
        )


__all__ = [
    "PHASE_EXHAUSTION_REASON",
    "TERMINAL_PHASES",
    "WORK_PHASES",
    "AcceptanceCriterion",
    "AttentionWindow",
    "AuditEntry",
    "CanonicalModel",
    "EscalationReason",
    "EscalationRecord",
    "HandoffReport",
    "Phase",
    "PolicyAction",
    "Severity",
    "StreamCursor",
    "Ticket",
    "WindowCloseReason",
    "WindowStatus",
    "WorkItem",
    "WorkItemStatus",
    "canonical_json",
    "iso8601z",
    "utc_now",
]
