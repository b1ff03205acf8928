"""Executable CLI entrypoint for ``tdd_orchestrator``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    INVALID_INPUT = 1
    NO_ACTIVE_SESSION = 2
    PROCESS_FAILURE = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m tdd_orchestrator`` and the ``tddo`` script."""

    try:
        from tdd_orchestrator.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:  # pragma: no cover - argparse exits are handled in run_cli.
        return _normalize_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    if isinstance(exc, KeyboardInterrupt):
        return ExitCode.INTERNAL_ERROR
    input_error_types = _load_input_error_types()
    process_error_types = _load_process_error_types()

    for item in _iter_exception_chain(exc):
        if isinstance(item, input_error_types):
            return ExitCode.INVALID_INPUT
        if isinstance(item, process_error_types):
            return ExitCode.PROCESS_FAILURE
    return ExitCode.INTERNAL_ERROR


def _load_input_error_types() -> tuple[type[BaseException], ...]:
    from tdd_orchestrator.config.loader import ConfigLoadError
    from tdd_orchestrator.config.schema import ConfigValidationError
    from tdd_orchestrator.intake.tickets import TicketValidationError

    return (ConfigLoadError, ConfigValidationError, TicketValidationError)


def _load_process_error_types() -> tuple[type[BaseException], ...]:
    from tdd_orchestrator.supervision.process_supervisor import SupervisorError

    return (SupervisorError,)


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(f"error: {str(exc).strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
