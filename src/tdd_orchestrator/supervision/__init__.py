"""Process supervision and log tailing.

The supervisor owns the project processes and their durable logs; tailers turn
those logs into ordered, replayable signals for the phase machine.
"""

from tdd_orchestrator.supervision.extractors import (
    DevServerExtractor,
    SignalExtractor,
    SignalParseError,
    TestOutputExtractor,
    extractor_for_stream,
)
from tdd_orchestrator.supervision.log_tailer import CursorStore, LogTailer, MemoryCursorStore
from tdd_orchestrator.supervision.process_supervisor import (
    ProcessHandle,
    ProcessHealth,
    ProcessNotFoundError,
    ProcessStartError,
    ProcessStatus,
    ProcessSupervisor,
    RestartPolicy,
    SupervisorError,
    SupervisorSettings,
)

__all__ = [
    "CursorStore",
    "DevServerExtractor",
    "LogTailer",
    "MemoryCursorStore",
    "ProcessHandle",
    "ProcessHealth",
    "ProcessNotFoundError",
    "ProcessStartError",
    "ProcessStatus",
    "ProcessSupervisor",
    "RestartPolicy",
    "SignalExtractor",
    "SignalParseError",
    "SupervisorError",
    "SupervisorSettings",
    "TestOutputExtractor",
    "extractor_for_stream",
]
