"""Unit tests for durable log tailing."""

from __future__ import annotations

import asyncio
import json
import os
from typing import TYPE_CHECKING

import pytest

from tdd_orchestrator.domain.signals import ServerReady, TestRunSummary
from tdd_orchestrator.supervision.extractors import TestOutputExtractor
from tdd_orchestrator.supervision.log_tailer import LogTailer, MemoryCursorStore
from tdd_orchestrator.utils.concurrency import CancellationToken

from tests.unit import RecordingLogger

if TYPE_CHECKING:
    from pathlib import Path

STREAM = "api/test-output"


def _structured(**fields: object) -> bytes:
    return (json.dumps(fields) + "\n").encode("utf-8")


def _summary_line(passed: int = 1, failed: int = 0) -> bytes:
    return _structured(signal="test_run_summary", passed=passed, failed=failed)


def _append(path: Path, data: bytes) -> None:
    with open(path, "ab") as handle:
        handle.write(data)


def test_missing_file_yields_nothing(tmp_path: Path) -> None:
    tailer = LogTailer(STREAM, tmp_path / "missing.log")

    assert tailer.poll() == []


def test_partial_line_waits_for_its_newline(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    line = _summary_line()
    _append(log, line[:-5])
    tailer = LogTailer(STREAM, log)

    assert tailer.poll() == []
    _append(log, line[-5:])
    signals = tailer.poll()

    assert [signal.key for signal in signals] == [f"{STREAM}@0:0"]
    assert signals[0].sequence == 0


def test_keys_use_line_start_offsets(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    first = _summary_line(passed=1)
    _append(log, first + b"noise\n" + _summary_line(passed=2))
    tailer = LogTailer(STREAM, log)

    signals = tailer.poll()

    assert [signal.offset for signal in signals] == [0, len(first) + len(b"noise\n")]
    assert [signal.sequence for signal in signals] == [0, 1]
    assert isinstance(signals[1].payload, TestRunSummary)
    assert signals[1].payload.passed == 2


def test_restart_resumes_from_committed_cursor(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    store = MemoryCursorStore()
    _append(log, _summary_line() + _summary_line())
    first = LogTailer(STREAM, log, cursor_store=store)
    assert len(first.poll()) == 2
    cursor = first.commit()

    _append(log, _summary_line(failed=1))
    second = LogTailer(STREAM, log, cursor_store=store)
    signals = second.poll()

    assert len(signals) == 1
    assert signals[0].offset == cursor.offset
    assert signals[0].sequence == 2


def test_commit_never_passes_an_unfinished_block(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    store = MemoryCursorStore()
    header = b"============================= test session starts ==============================\n"
    test_line = b"tests/test_items.py::test_ac_1_lists PASSED\n"
    _append(log, b"warming up\n" + header + test_line)
    tailer = LogTailer(STREAM, log, TestOutputExtractor(), store)

    assert tailer.poll() == []
    cursor = tailer.commit()
    assert cursor.offset == len(b"warming up\n")

    _append(log, b"============ 1 passed in 0.01s ============\n")
    live = tailer.poll()
    replayed = LogTailer(STREAM, log, TestOutputExtractor(), store).poll()

    assert [signal.key for signal in live] == [signal.key for signal in replayed]
    assert [signal.sequence for signal in live] == [signal.sequence for signal in replayed]
    assert replayed[0].payload == live[0].payload


def test_truncation_starts_a_new_epoch(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    logger = RecordingLogger()
    _append(log, _summary_line() + _summary_line())
    tailer = LogTailer(STREAM, log, logger=logger)
    assert len(tailer.poll()) == 2

    log.write_bytes(_summary_line(failed=3))
    signals = tailer.poll()

    assert tailer.epoch == 1
    assert [signal.key for signal in signals] == [f"{STREAM}@1:0"]
    assert signals[0].sequence == 2
    assert logger.events[-1][2]["reason"] == "truncated"


def test_replaced_file_starts_a_new_epoch(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    _append(log, _summary_line())
    tailer = LogTailer(STREAM, log, logger=RecordingLogger())
    tailer.poll()

    os.replace(log, tmp_path / "tests.log.1")
    _append(log, _summary_line() + _summary_line())
    signals = tailer.poll()

    assert tailer.epoch == 1
    assert [signal.offset for signal in signals] == [0, len(_summary_line())]


def test_rotation_while_down_is_detected_from_cursor(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    store = MemoryCursorStore()
    _append(log, _summary_line() + _summary_line())
    tailer = LogTailer(STREAM, log, cursor_store=store)
    tailer.poll()
    tailer.commit()

    log.write_bytes(b"")
    restarted = LogTailer(STREAM, log, cursor_store=store, logger=RecordingLogger())
    restarted.poll()

    assert restarted.epoch == 1


def test_advance_epoch_persists_the_new_epoch(tmp_path: Path) -> None:
    log = tmp_path / "dev.log"
    store = MemoryCursorStore()
    _append(log, _structured(signal="server_ready", port=3000))
    tailer = LogTailer("web/dev-server", log, cursor_store=store, logger=RecordingLogger())
    tailer.poll()

    assert tailer.advance_epoch() == 1
    saved = store.get("web/dev-server")
    assert saved is not None
    assert saved.epoch == 1

    _append(log, _structured(signal="server_ready", port=3001))
    signals = tailer.poll()
    assert signals[0].epoch == 1
    assert signals[0].payload == ServerReady(port=3001)


def test_rejects_non_positive_read_size(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="max_read_bytes"):
        LogTailer(STREAM, tmp_path / "x.log", max_read_bytes=0)


@pytest.mark.asyncio
async def test_follow_pushes_into_queue_until_cancelled(tmp_path: Path) -> None:
    log = tmp_path / "tests.log"
    tailer = LogTailer(STREAM, log)
    queue: asyncio.Queue = asyncio.Queue()
    token = CancellationToken()
    task = asyncio.create_task(tailer.follow(queue, token=token, poll_interval_seconds=0.01))

    _append(log, _summary_line())
    signal = await asyncio.wait_for(queue.get(), timeout=2.0)
    token.cancel()
    await asyncio.wait_for(task, timeout=2.0)

    assert signal.key == f"{STREAM}@0:0"
    assert task.done()
