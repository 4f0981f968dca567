"""Parameters for one measurement run."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from .constants import (
    DEFAULT_DURATION,
    DEFAULT_PORT,
    DEFAULT_PRETEST_DURATION,
    DEFAULT_THREADS,
    MAX_DURATION,
    MAX_THREADS,
    MIN_DURATION,
    MIN_THREADS,
)
from .errors import ControlServerError


@dataclass(frozen=True)
class TestParameters:
    """Where to measure and for how long.  Immutable for the run."""

    __test__ = False  # keep pytest from collecting this as a test class

    host: str
    port: int = DEFAULT_PORT
    token: str = ""
    pretest_duration: float = DEFAULT_PRETEST_DURATION
    duration: int = DEFAULT_DURATION
    threads: int = DEFAULT_THREADS
    encryption: bool = False

    # -- Constructors -------------------------------------------------------

    @classmethod
    def from_control_response(cls, data: Dict[str, Any], **overrides: Any) -> TestParameters:
        """Build parameters from a control server ``testRequest`` reply."""
        try:
            values: Dict[str, Any] = {
                "host": data["test_server_address"],
                "port": int(data["test_server_port"]),
                "token": data["test_token"],
                "duration": int(data.get("test_duration", DEFAULT_DURATION)),
                "threads": int(data.get("test_numthreads", DEFAULT_THREADS)),
                "encryption": bool(data.get("test_server_encryption", False)),
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise ControlServerError(f"incomplete test request reply: {exc}") from exc
        values.update(overrides)
        return cls(**values)

    # -- Validation ---------------------------------------------------------

    def validate(self) -> None:
        """Raise ``ValueError`` if any parameter is out of range."""
        if not self.host:
            raise ValueError("Host must not be empty")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {self.port}")
        if not MIN_DURATION <= self.duration <= MAX_DURATION:
            raise ValueError(f"Duration must be between {MIN_DURATION} and {MAX_DURATION} s")
        if self.pretest_duration <= 0:
            raise ValueError("Pretest duration must be positive")
        if not MIN_THREADS <= self.threads <= MAX_THREADS:
            raise ValueError(f"Threads must be between {MIN_THREADS} and {MAX_THREADS}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "pretest_duration": self.pretest_duration,
            "duration": self.duration,
            "threads": self.threads,
            "encryption": self.encryption,
        }
