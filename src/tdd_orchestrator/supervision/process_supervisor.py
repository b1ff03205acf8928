"""
Process supervision for a project's test runner and dev server.

Each supervised process writes its merged stdout/stderr line by line to an
append-only log file (``<logs_root>/<project_ref>/<name>.log``) and to an
in-memory ring buffer. The log file is what the tailers read, so nothing the
process prints is lost when the orchestrator restarts.

Exit handling:
- ``one_shot`` processes (a test run) simply exit; their results travel
  through the log.
- Long-running processes that exit without being asked to crash. Under the
  ``never`` restart policy a ``ProcessCrashed`` payload is emitted and the
  escalation policy aborts the work item. Under ``backoff`` the process is
  restarted with exponential backoff, the handle epoch increments and
  ``on_restart`` listeners run so tailers can start a new stream epoch.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import os
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

import psutil
import structlog

from tdd_orchestrator.domain import ids
from tdd_orchestrator.domain.signals import ProcessCrashed

DEFAULT_STARTUP_GRACE_SECONDS: Final[float] = 0.2
PUMP_CHUNK_BYTES: Final[int] = 65_536
RING_LINE_MAX_BYTES: Final[int] = 8_192

CrashSink = Callable[[ProcessCrashed, "ProcessHandle"], "Awaitable[None] | None"]
RestartListener = Callable[["ProcessHandle"], "Awaitable[None] | None"]


class SupervisorError(RuntimeError):
    """Base error for process supervision."""


class ProcessStartError(SupervisorError):
    """Raised when a process cannot be started (missing binary, permissions, early exit)."""


class ProcessNotFoundError(SupervisorError):
    """Raised for a handle this supervisor does not own."""


class RestartPolicy(StrEnum):
    NEVER = "never"
    BACKOFF = "backoff"


class ProcessStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED = "exited"
    CRASHED = "crashed"
    STOPPED = "stopped"


_LIVE_STATUSES: Final[frozenset[ProcessStatus]] = frozenset(
    {ProcessStatus.STARTING, ProcessStatus.RUNNING, ProcessStatus.RESTARTING}
)


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    restart_policy: RestartPolicy = RestartPolicy.NEVER
    max_restarts: int = 3
    backoff_initial_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    ring_buffer_lines: int = 500
    stop_timeout_seconds: float = 10.0
    start_retries: int = 0
    startup_grace_seconds: float = DEFAULT_STARTUP_GRACE_SECONDS

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> SupervisorSettings:
        def number(key: str, default: float) -> float:
            value = section.get(key, default)
            return float(value) if isinstance(value, (int, float)) else default

        def count(key: str, default: int) -> int:
            value = section.get(key, default)
            return value if isinstance(value, int) and not isinstance(value, bool) else default

        return cls(
            restart_policy=RestartPolicy(str(section.get("restart_policy", "never"))),
            max_restarts=count("max_restarts", 3),
            backoff_initial_seconds=number("backoff_initial_seconds", 1.0),
            backoff_multiplier=number("backoff_multiplier", 2.0),
            backoff_max_seconds=number("backoff_max_seconds", 30.0),
            ring_buffer_lines=count("ring_buffer_lines", 500),
            stop_timeout_seconds=number("stop_timeout_seconds", 10.0),
            start_retries=count("start_retries", 0),
        )

    def backoff_delay(self, restart_number: int) -> float:
        """Delay before restart ``restart_number`` (1-based)."""
        delay = self.backoff_initial_seconds * (
            self.backoff_multiplier ** max(restart_number - 1, 0)
        )
        return min(delay, self.backoff_max_seconds)


@dataclass(slots=True)
class ProcessHandle:
    id: str
    name: str
    command: tuple[str, ...]
    cwd: str
    log_path: Path
    one_shot: bool = False
    pid: int | None = None
    status: ProcessStatus = ProcessStatus.STARTING
    exit_code: int | None = None
    epoch: int = 0
    restarts: int = 0


@dataclass(frozen=True, slots=True)
class ProcessHealth:
    running: bool
    status: ProcessStatus
    exit_code: int | None
    pid: int | None
    restarts: int
    epoch: int


@dataclass(slots=True)
class _Supervised:
    handle: ProcessHandle
    ring: deque[str]
    process: asyncio.subprocess.Process | None = None
    monitor: asyncio.Task[None] | None = None
    stop_requested: bool = False
    exited: asyncio.Event = field(default_factory=asyncio.Event)


class ProcessSupervisor:
    """Start, observe and stop the processes of one project."""

    def __init__(
        self,
        logs_root: Path | str,
        project_ref: str,
        *,
        settings: SupervisorSettings | None = None,
        crash_sink: CrashSink | None = None,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._log_dir = Path(logs_root) / project_ref
        self._project_ref = project_ref
        self._settings = settings if settings is not None else SupervisorSettings()
        self._crash_sink = crash_sink
        self._env = dict(env) if env is not None else None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._processes: dict[str, _Supervised] = {}
        self._restart_listeners: list[RestartListener] = []

    @property
    def settings(self) -> SupervisorSettings:
        return self._settings

    def log_path(self, name: str) -> Path:
        return self._log_dir / f"{name}.log"

    def set_crash_sink(self, sink: CrashSink | None) -> None:
        self._crash_sink = sink

    def on_restart(self, listener: RestartListener) -> None:
        self._restart_listeners.append(listener)

    async def start(
        self,
        command: Sequence[str],
        cwd: Path | str,
        *,
        name: str,
        one_shot: bool = False,
    ) -> ProcessHandle:
        """Start ``command``; a live process with the same identity is returned as-is."""

        argv = tuple(str(part) for part in command)
        if not argv:
            raise ProcessStartError(f"{name}: empty command")
        cwd_text = Path(cwd).as_posix()

        existing = self._processes.get(name)
        if existing is not None and existing.handle.status in _LIVE_STATUSES:
            if existing.handle.command == argv and existing.handle.cwd == cwd_text:
                return existing.handle
            raise SupervisorError(
                f"{name}: already running with a different command or working directory"
            )

        handle = ProcessHandle(
            id=ids.generate_process_id(),
            name=name,
            command=argv,
            cwd=cwd_text,
            log_path=self.log_path(name),
            one_shot=one_shot,
        )
        if existing is not None:
            handle.epoch = existing.handle.epoch
        entry = _Supervised(handle=handle, ring=deque(maxlen=self._settings.ring_buffer_lines))
        self._processes[name] = entry
        await self._spawn_with_retries(entry)
        entry.monitor = asyncio.create_task(self._monitor(entry), name=f"supervise:{name}")

        if not one_shot and self._settings.startup_grace_seconds > 0:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    entry.exited.wait(), timeout=self._settings.startup_grace_seconds
                )
            if entry.exited.is_set() and handle.exit_code not in (None, 0):
                handle.status = ProcessStatus.CRASHED
                raise ProcessStartError(
                    f"{name}: exited with code {handle.exit_code} during startup"
                )
        return handle

    async def stop(self, handle: ProcessHandle) -> ProcessHealth:
        entry = self._entry(handle)
        entry.stop_requested = True
        process = entry.process
        if process is not None and process.returncode is None:
            await asyncio.to_thread(
                _terminate_tree, process.pid, self._settings.stop_timeout_seconds
            )
        if entry.monitor is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await entry.monitor
        if handle.status in _LIVE_STATUSES:
            handle.status = ProcessStatus.STOPPED
        self._logger.info(
            "process_stopped",
            project_ref=self._project_ref,
            process_name=handle.name,
            exit_code=handle.exit_code,
        )
        return self.health(handle)

    async def stop_all(self) -> None:
        for entry in list(self._processes.values()):
            if entry.handle.status in _LIVE_STATUSES:
                await self.stop(entry.handle)

    async def wait(self, handle: ProcessHandle, timeout: float | None = None) -> int | None:
        """Wait for a one-shot process to finish and return its exit code."""
        entry = self._entry(handle)
        if entry.monitor is not None:
            await asyncio.wait_for(asyncio.shield(entry.monitor), timeout=timeout)
        return handle.exit_code

    def health(self, handle: ProcessHandle) -> ProcessHealth:
        entry = self._entry(handle)
        running = entry.handle.status in _LIVE_STATUSES and _pid_alive(entry.handle.pid)
        return ProcessHealth(
            running=running,
            status=entry.handle.status,
            exit_code=entry.handle.exit_code,
            pid=entry.handle.pid,
            restarts=entry.handle.restarts,
            epoch=entry.handle.epoch,
        )

    def recent_lines(self, handle: ProcessHandle, limit: int | None = None) -> list[str]:
        lines = list(self._entry(handle).ring)
        return lines if limit is None else lines[-limit:]

    def _entry(self, handle: ProcessHandle) -> _Supervised:
        entry = self._processes.get(handle.name)
        if entry is None or entry.handle.id != handle.id:
            raise ProcessNotFoundError(f"unknown process handle {handle.name} ({handle.id})")
        return entry

    async def _spawn_with_retries(self, entry: _Supervised) -> None:
        handle = entry.handle
        attempts = self._settings.start_retries + 1
        last_error: OSError | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._spawn(entry)
                return
            except OSError as exc:
                last_error = exc
                self._logger.warning(
                    "process_start_failed",
                    project_ref=self._project_ref,
                    process_name=handle.name,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < attempts:
                    await asyncio.sleep(self._settings.backoff_delay(attempt))
        handle.status = ProcessStatus.CRASHED
        raise ProcessStartError(f"{handle.name}: cannot start {handle.command[0]!r}: {last_error}")

    async def _spawn(self, entry: _Supervised) -> None:
        handle = entry.handle
        handle.log_path.parent.mkdir(parents=True, exist_ok=True)
        env = None if self._env is None else {**os.environ, **self._env}
        process = await asyncio.create_subprocess_exec(
            *handle.command,
            cwd=handle.cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        entry.process = process
        entry.exited.clear()
        handle.pid = process.pid
        handle.exit_code = None
        handle.status = ProcessStatus.RUNNING
        self._logger.info(
            "process_started",
            project_ref=self._project_ref,
            process_name=handle.name,
            pid=process.pid,
            epoch=handle.epoch,
        )

    async def _monitor(self, entry: _Supervised) -> None:
        handle = entry.handle
        while True:
            process = entry.process
            if process is None:
                return
            await self._pump_output(entry, process)
            handle.exit_code = await process.wait()
            entry.exited.set()

            if entry.stop_requested:
                handle.status = ProcessStatus.STOPPED
                return
            if handle.one_shot:
                handle.status = ProcessStatus.EXITED
                return

            restart = (
                self._settings.restart_policy is RestartPolicy.BACKOFF
                and handle.restarts < self._settings.max_restarts
            )
            handle.status = ProcessStatus.RESTARTING if restart else ProcessStatus.CRASHED
            self._logger.warning(
                "process_crashed",
                project_ref=self._project_ref,
                process_name=handle.name,
                exit_code=handle.exit_code,
                restart_scheduled=restart,
                restarts=handle.restarts,
            )
            await _call(
                self._crash_sink,
                ProcessCrashed(
                    process_name=handle.name,
                    exit_code=handle.exit_code,
                    restart_scheduled=restart,
                ),
                handle,
            )
            if not restart:
                return

            handle.restarts += 1
            await asyncio.sleep(self._settings.backoff_delay(handle.restarts))
            if entry.stop_requested:
                handle.status = ProcessStatus.STOPPED
                return
            handle.epoch += 1
            for listener in list(self._restart_listeners):
                await _call(listener, handle)
            try:
                await self._spawn(entry)
            except OSError as exc:
                handle.status = ProcessStatus.CRASHED
                self._logger.error(
                    "process_restart_failed",
                    project_ref=self._project_ref,
                    process_name=handle.name,
                    error=str(exc),
                )
                await _call(
                    self._crash_sink,
                    ProcessCrashed(
                        process_name=handle.name,
                        exit_code=None,
                        restart_scheduled=False,
                        start_failed=True,
                    ),
                    handle,
                )
                return

    async def _pump_output(self, entry: _Supervised, process: asyncio.subprocess.Process) -> None:
        # Chunked reads: readline() fails on lines longer than the stream limit.
        stream = process.stdout
        if stream is None:
            return
        pending = bytearray()
        overflowed = False
        with open(entry.handle.log_path, "ab") as log_file:
            while True:
                chunk = await stream.read(PUMP_CHUNK_BYTES)
                if not chunk:
                    break
                log_file.write(chunk)
                log_file.flush()
                for index, part in enumerate(chunk.split(b"\n")):
                    if index:
                        entry.ring.append(_ring_text(pending, truncated=overflowed))
                        pending.clear()
                        overflowed = False
                    if not overflowed:
                        pending += part
                        if len(pending) > RING_LINE_MAX_BYTES:
                            del pending[RING_LINE_MAX_BYTES:]
                            overflowed = True
            if pending or overflowed:
                log_file.write(b"\n")
                log_file.flush()
                entry.ring.append(_ring_text(pending, truncated=overflowed))


def _ring_text(line: bytes | bytearray, *, truncated: bool) -> str:
    text = bytes(line).decode("utf-8", errors="replace").rstrip("\r")
    return f"{text}...[truncated]" if truncated else text


async def _call(callback: Callable[..., Any] | None, *args: object) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _pid_alive(pid: int | None) -> bool:
    if pid is None:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def _terminate_tree(pid: int, timeout_seconds: float) -> None:
    """Terminate ``pid`` and all of its descendants, killing stragglers."""

    try:
        root = psutil.Process(pid)
        procs = [*root.children(recursive=True), root]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        with contextlib.suppress(psutil.NoSuchProcess):
            proc.terminate()
    _, alive = psutil.wait_procs(procs, timeout=timeout_seconds)
    for proc in alive:
        with contextlib.suppress(psutil.NoSuchProcess):
            proc.kill()
    psutil.wait_procs(alive, timeout=timeout_seconds)


__all__ = [
    "ProcessHandle",
    "ProcessHealth",
    "ProcessNotFoundError",
    "ProcessStartError",
    "ProcessStatus",
    "ProcessSupervisor",
    "RestartPolicy",
    "SupervisorError",
    "SupervisorSettings",
]
