"""RMBT measurement client -- protocol sessions, orchestration and statistics."""

from .control import ControlServerAPI
from .errors import (
    ConnectionLostError,
    ControlServerError,
    ProtocolError,
    RMBTError,
    TestAbortedError,
)
from .orchestrator import TestOrchestrator, TestWorker
from .params import TestParameters
from .progress import CurrentSpeed, SharedState, TestStatus
from .results import PingResult, ThreadTestResult, TotalTestResult
from .ringbuffer import ResultRingBuffer
from .session import RMBTSession, find_terminator, needs_fallback, run_calibration
from .stats import LatencyStats, SpeedStats, calculate_jitter, calculate_speed, format_latency, format_speed
from .transport import CountingStream
from .watcher import TerminationPolicy, UploadOutcome, UploadWatcher

__all__ = [
    "ConnectionLostError",
    "ControlServerAPI",
    "ControlServerError",
    "CountingStream",
    "CurrentSpeed",
    "LatencyStats",
    "PingResult",
    "ProtocolError",
    "RMBTError",
    "RMBTSession",
    "ResultRingBuffer",
    "SharedState",
    "SpeedStats",
    "TerminationPolicy",
    "TestAbortedError",
    "TestOrchestrator",
    "TestParameters",
    "TestStatus",
    "TestWorker",
    "ThreadTestResult",
    "TotalTestResult",
    "UploadOutcome",
    "UploadWatcher",
    "calculate_jitter",
    "calculate_speed",
    "find_terminator",
    "format_latency",
    "format_speed",
    "needs_fallback",
    "run_calibration",
]
