"""
tdd-orchestrator — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.
- Validate payloads into structured issues (field path + message).
- Deep-merge profile overlays and redact sensitive fields for logs.

Phase bounds resolve per phase: ``phases.max_attempts.<phase>`` when present,
otherwise ``phases.default_max_attempts``.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from tdd_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ATTENTION_BUDGET_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_REVIEW_CYCLES,
    HANDOFF_DIR,
    LOGS_DIR,
    SEVERITIES,
    SNAPSHOTS_DIR,
    STATE_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "overnight", "exploration")
WORK_PHASE_NAMES: Final[tuple[str, ...]] = ("red", "green", "refactor", "review")
RESTART_POLICIES: Final[tuple[str, ...]] = ("never", "backoff")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_PROJECT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "logs_root"),
    ("paths", "snapshot_root"),
    ("paths", "handoff_dir"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PhasesConfig(TypedDict):
    default_max_attempts: int
    max_attempts: dict[str, int]
    review_severity_threshold: Literal["info", "low", "medium", "high", "critical"]
    max_review_cycles: int
    wait_timeout_seconds: dict[str, float]


class AttentionConfig(TypedDict):
    budget_seconds: float
    max_concurrent_projects: int
    checkpoint_interval_seconds: float


class SupervisorConfig(TypedDict):
    restart_policy: Literal["never", "backoff"]
    max_restarts: int
    backoff_initial_seconds: float
    backoff_multiplier: float
    backoff_max_seconds: float
    ring_buffer_lines: int
    stop_timeout_seconds: float
    start_retries: int


class TailerConfig(TypedDict):
    poll_interval_seconds: float
    max_read_bytes: int


class ActorsConfig(TypedDict):
    code_change_command: list[str]
    review_command: list[str]
    timeout_seconds: float


class PathsConfig(TypedDict):
    state_db: str
    logs_root: str
    snapshot_root: str
    handoff_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool


class ProjectConfig(TypedDict):
    root: str
    test_command: list[str]
    dev_server_command: NotRequired[list[str]]


class ProfileOverlay(TypedDict, total=False):
    phases: dict[str, object]
    attention: dict[str, object]
    supervisor: dict[str, object]
    tailer: dict[str, object]
    actors: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    phases: PhasesConfig
    attention: AttentionConfig
    supervisor: SupervisorConfig
    tailer: TailerConfig
    actors: ActorsConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    projects: dict[str, ProjectConfig]
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[OrchestratorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "phases": {
        "default_max_attempts": DEFAULT_MAX_ATTEMPTS,
        "max_attempts": {},
        "review_severity_threshold": "high",
        "max_review_cycles": DEFAULT_MAX_REVIEW_CYCLES,
        "wait_timeout_seconds": {
            "red": 900.0,
            "green": 1800.0,
            "refactor": 900.0,
            "review": 600.0,
        },
    },
    "attention": {
        "budget_seconds": float(DEFAULT_ATTENTION_BUDGET_SECONDS),
        "max_concurrent_projects": 4,
        "checkpoint_interval_seconds": 1.0,
    },
    "supervisor": {
        "restart_policy": "never",
        "max_restarts": 3,
        "backoff_initial_seconds": 1.0,
        "backoff_multiplier": 2.0,
        "backoff_max_seconds": 30.0,
        "ring_buffer_lines": 500,
        "stop_timeout_seconds": 10.0,
        "start_retries": 0,
    },
    "tailer": {
        "poll_interval_seconds": 0.25,
        "max_read_bytes": 1024 * 1024,
    },
    "actors": {
        "code_change_command": [],
        "review_command": [],
        "timeout_seconds": 1800.0,
    },
    "paths": {
        "state_db": f"{STATE_DIR}/orchestrator.sqlite",
        "logs_root": f"{LOGS_DIR}/",
        "snapshot_root": f"{SNAPSHOTS_DIR}/",
        "handoff_dir": f"{HANDOFF_DIR}/",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": f"{LOGS_DIR}/orchestrator/",
        "redact_secrets": True,
    },
    "projects": {},
    "profiles": {
        "strict": {
            "phases": {"default_max_attempts": 5, "max_review_cycles": 2},
        },
        "overnight": {
            "attention": {"budget_seconds": 8.0 * 60 * 60},
            "supervisor": {"restart_policy": "backoff"},
        },
        "exploration": {
            "phases": {"default_max_attempts": 15},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> OrchestratorConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the tdd-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues, partial=False)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def resolve_max_attempts(config: Mapping[str, Any]) -> dict[str, int]:
    """Return the attempt bound for every work phase."""

    phases = config["phases"]
    overrides = phases.get("max_attempts", {})
    default = int(phases["default_max_attempts"])
    return {name: int(overrides.get(name, default)) for name in WORK_PHASE_NAMES}


def resolve_wait_timeouts(config: Mapping[str, Any]) -> dict[str, float]:
    timeouts = config["phases"].get("wait_timeout_seconds", {})
    fallback = DEFAULT_CONFIG["phases"]["wait_timeout_seconds"]
    return {name: float(timeouts.get(name, fallback[name])) for name in WORK_PHASE_NAMES}


# ----- Section validators -----


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    validators: dict[str, Callable[..., dict[str, Any]]] = {
        "meta": _validate_meta,
        "phases": _validate_phases,
        "attention": _validate_attention,
        "supervisor": _validate_supervisor,
        "tailer": _validate_tailer,
        "actors": _validate_actors,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, {*validators, "projects", "profiles"}, path, issues)
    if not partial:
        _require_keys(payload, set(validators), path, issues)

    out: dict[str, Any] = {}
    for key, validator in validators.items():
        _section(
            payload,
            key=key,
            path=path,
            issues=issues,
            validator=lambda section, section_path, fn=validator: fn(
                section, section_path, issues, partial=partial
            ),
            out=out,
        )

    projects_raw = payload.get("projects")
    if projects_raw is not None:
        projects_obj = _as_object(projects_raw, _join(path, "projects"), issues)
        if projects_obj is not None:
            out["projects"] = _validate_projects(projects_obj, _join(path, "projects"), issues)
    elif not partial:
        out["projects"] = {}

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, _join(path, "profiles"), issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, _join(path, "profiles"), issues)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, section_path)


def _validate_meta(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_phases(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {
        "default_max_attempts",
        "max_attempts",
        "review_severity_threshold",
        "max_review_cycles",
        "wait_timeout_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed - {"max_attempts"}, path, issues)

    out: dict[str, Any] = {}
    for key in ("default_max_attempts", "max_review_cycles"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed

    if "max_attempts" in payload:
        attempts_path = _join(path, "max_attempts")
        attempts = _as_object(payload["max_attempts"], attempts_path, issues)
        if attempts is not None:
            _reject_unknown_keys(attempts, set(WORK_PHASE_NAMES), attempts_path, issues)
            out["max_attempts"] = {}
            for name in WORK_PHASE_NAMES:
                if name in attempts:
                    bound = _as_int(attempts[name], _join(attempts_path, name), issues, minimum=1)
                    if bound is not None:
                        out["max_attempts"][name] = bound
    elif not partial:
        out["max_attempts"] = {}

    if "review_severity_threshold" in payload:
        parsed_threshold = _as_enum(
            payload["review_severity_threshold"],
            _join(path, "review_severity_threshold"),
            issues,
            allowed_values=SEVERITIES,
        )
        if parsed_threshold is not None:
            out["review_severity_threshold"] = parsed_threshold

    if "wait_timeout_seconds" in payload:
        timeouts_path = _join(path, "wait_timeout_seconds")
        timeouts = _as_object(payload["wait_timeout_seconds"], timeouts_path, issues)
        if timeouts is not None:
            _reject_unknown_keys(timeouts, set(WORK_PHASE_NAMES), timeouts_path, issues)
            out["wait_timeout_seconds"] = {}
            for name in WORK_PHASE_NAMES:
                if name in timeouts:
                    seconds = _as_float(
                        timeouts[name], _join(timeouts_path, name), issues, minimum=0.001
                    )
                    if seconds is not None:
                        out["wait_timeout_seconds"][name] = seconds
    return out


def _validate_attention(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"budget_seconds", "max_concurrent_projects", "checkpoint_interval_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "budget_seconds" in payload:
        parsed = _as_float(payload["budget_seconds"], _join(path, "budget_seconds"), issues)
        if parsed is not None:
            if parsed <= 0:
                issues.add(_join(path, "budget_seconds"), "must be > 0")
            else:
                out["budget_seconds"] = parsed
    if "max_concurrent_projects" in payload:
        parsed_int = _as_int(
            payload["max_concurrent_projects"],
            _join(path, "max_concurrent_projects"),
            issues,
            minimum=1,
        )
        if parsed_int is not None:
            out["max_concurrent_projects"] = parsed_int
    if "checkpoint_interval_seconds" in payload:
        parsed = _as_float(
            payload["checkpoint_interval_seconds"],
            _join(path, "checkpoint_interval_seconds"),
            issues,
            minimum=0.01,
        )
        if parsed is not None:
            out["checkpoint_interval_seconds"] = parsed
    return out


def _validate_supervisor(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    int_keys = {"max_restarts": 0, "ring_buffer_lines": 1, "start_retries": 0}
    float_keys = {
        "backoff_initial_seconds": 0.0,
        "backoff_multiplier": 1.0,
        "backoff_max_seconds": 0.0,
        "stop_timeout_seconds": 0.0,
    }
    allowed = {"restart_policy", *int_keys, *float_keys}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "restart_policy" in payload:
        policy = _as_enum(
            payload["restart_policy"],
            _join(path, "restart_policy"),
            issues,
            allowed_values=RESTART_POLICIES,
        )
        if policy is not None:
            out["restart_policy"] = policy
    for key in sorted(int_keys):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=int_keys[key])
            if parsed_int is not None:
                out[key] = parsed_int
    for key in sorted(float_keys):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, minimum=float_keys[key])
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_tailer(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"poll_interval_seconds", "max_read_bytes"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "poll_interval_seconds" in payload:
        parsed = _as_float(
            payload["poll_interval_seconds"],
            _join(path, "poll_interval_seconds"),
            issues,
            minimum=0.01,
        )
        if parsed is not None:
            out["poll_interval_seconds"] = parsed
    if "max_read_bytes" in payload:
        parsed_int = _as_int(
            payload["max_read_bytes"], _join(path, "max_read_bytes"), issues, minimum=1024
        )
        if parsed_int is not None:
            out["max_read_bytes"] = parsed_int
    return out


def _validate_actors(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"code_change_command", "review_command", "timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("code_change_command", "review_command"):
        if key in payload:
            parsed_command = _as_command(payload[key], _join(path, key), issues, allow_empty=True)
            if parsed_command is not None:
                out[key] = parsed_command
    if "timeout_seconds" in payload:
        parsed = _as_float(
            payload["timeout_seconds"], _join(path, "timeout_seconds"), issues, minimum=1.0
        )
        if parsed is not None:
            out["timeout_seconds"] = parsed
    return out


def _validate_paths(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"state_db", "logs_root", "snapshot_root", "handoff_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_dir" in payload:
        parsed_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_dir is not None:
            out["log_dir"] = parsed_dir
    if "redact_secrets" in payload:
        parsed_redact = _as_bool(payload["redact_secrets"], _join(path, "redact_secrets"), issues)
        if parsed_redact is not None:
            out["redact_secrets"] = parsed_redact
    return out


def _validate_projects(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        project_path = _join(path, name)
        if not _PROJECT_NAME_PATTERN.fullmatch(name):
            issues.add(project_path, "project name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
            continue
        project = _as_object(payload[name], project_path, issues)
        if project is None:
            continue
        _reject_unknown_keys(
            project, {"root", "test_command", "dev_server_command"}, project_path, issues
        )
        _require_keys(project, {"root", "test_command"}, project_path, issues)

        parsed: dict[str, Any] = {}
        if "root" in project:
            root = _as_path_text(project["root"], _join(project_path, "root"), issues)
            if root is not None:
                parsed["root"] = root
        if "test_command" in project:
            command = _as_command(
                project["test_command"], _join(project_path, "test_command"), issues
            )
            if command is not None:
                parsed["test_command"] = command
        if "dev_server_command" in project:
            command = _as_command(
                project["dev_server_command"], _join(project_path, "dev_server_command"), issues
            )
            if command is not None:
                parsed["dev_server_command"] = command
        out[name] = parsed
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    overlay_validators: dict[str, Callable[..., dict[str, Any]]] = {
        "phases": _validate_phases,
        "attention": _validate_attention,
        "supervisor": _validate_supervisor,
        "tailer": _validate_tailer,
        "actors": _validate_actors,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(overlay_validators), profile_path, issues)

        overlay: dict[str, Any] = {}
        for section in sorted(overlay_validators):
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                overlay[section] = overlay_validators[section](
                    section_obj, section_path, issues, partial=True
                )
        out[profile_name] = overlay
    return out


# ----- Value helpers -----


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_command(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allow_empty: bool = False,
) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array of strings, got {type(value).__name__}")
        return None
    if not value and not allow_empty:
        issues.add(path, "must not be empty")
        return None
    parts: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item:
            issues.add(f"{path}[{index}]", "expected non-empty string")
            return None
        parts.append(item)
    return parts


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping):
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "RESTART_POLICIES",
    "WORK_PHASE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "OrchestratorConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "resolve_max_attempts",
    "resolve_wait_timeouts",
]
