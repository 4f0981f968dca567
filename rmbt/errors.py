"""Exception hierarchy for the measurement client."""


class RMBTError(Exception):
    """Base class for all measurement errors."""


class ProtocolError(RMBTError):
    """The server sent something the protocol does not allow at this point."""


class ConnectionLostError(RMBTError):
    """The stream ended or failed while data was still expected."""


class TestAbortedError(RMBTError):
    """A worker failed and the whole run was stopped."""

    __test__ = False  # keep pytest from collecting this as a test class


class ControlServerError(RMBTError):
    """The control server rejected the test request or answered garbage."""
