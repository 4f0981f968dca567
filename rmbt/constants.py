"""
Shared constants used across all rmbt modules.

Centralises protocol strings, timing tunables and thresholds so they live in
exactly one place.  Anything here can be overridden per session or per
orchestrator; the values are the ones the measurement servers are tuned for.
"""

NSECS = 1_000_000_000

# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

EXPECT_GREETING = "RMBTv0.3"
DEFAULT_PORT = 443

CHUNK_CONTINUE = 0x00
CHUNK_TERMINATE = 0xFF

# ---------------------------------------------------------------------------
# Connection limits
# ---------------------------------------------------------------------------

MIN_THREADS = 1
MAX_THREADS = 64
DEFAULT_THREADS = 3

# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

DEFAULT_DURATION = 7             # seconds for download / upload
DEFAULT_PRETEST_DURATION = 2.0   # seconds for each calibration burst loop
MIN_DURATION = 1
MAX_DURATION = 300

PING_COUNT = 5

DOWNLOAD_GRACE_SECONDS = 1.0     # extra time before a download is cut off

UPLOAD_SETTLE_DELAY = 0.1        # let in-flight data reach the server
UPLOAD_MAX_WAIT = 3.0            # graceful watcher wait
UPLOAD_FORCED_WAIT = 0.25        # forced watcher wait
UPLOAD_MAX_DISCARD_TIME = 2 * NSECS

# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

FALLBACK_CHUNK_THRESHOLD = 4     # chunk counter at or below -> single thread

# ---------------------------------------------------------------------------
# Result buffer
# ---------------------------------------------------------------------------

DEFAULT_STORE_RESULTS = 20
DEFAULT_MIN_DIFF_TIME = 100_000_000   # 100 ms in ns

# ---------------------------------------------------------------------------
# Data transfer
# ---------------------------------------------------------------------------

YIELD_CHECK_INTERVAL = 256 * 1024     # yield to the event loop every 256 KB
STATUS_INTERVAL = 0.25                # 250 ms between status refreshes

# ---------------------------------------------------------------------------
# Control server
# ---------------------------------------------------------------------------

CLIENT_NAME = "RMBT"
CLIENT_VERSION = "0.3"
CLIENT_TYPE = "DESKTOP"
CONTROL_TIMEOUT = 10.0
