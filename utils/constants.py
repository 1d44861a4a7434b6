"""
Centralized constants for the sandbox execution layer.

Collects timing windows, limits, and defaults shared between the backend,
the execution targets and the local sandbox client.
"""
import re

# ── Local sandbox client ──
DEFAULT_IMAGE = "hackeraidev/sandbox"
CLIENT_VERSION = "1.0.0"
POLL_INTERVAL_SECONDS = 0.5
HEARTBEAT_INTERVAL_SECONDS = 10.0
DEFAULT_COMMAND_TIMEOUT_MS = 30_000
CONTAINER_CAPABILITIES = ("NET_RAW", "NET_ADMIN", "SYS_PTRACE")
DEFAULT_SHELL = "/bin/sh"

# ── Connection liveness ──
CONNECTION_LIVENESS_SECONDS = 30.0  # three missed heartbeats
STALE_CONNECTION_SECONDS = 60.0
DISCONNECTED_RETENTION_SECONDS = 24 * 60 * 60
COMPLETED_COMMAND_RETENTION_SECONDS = 60 * 60
MAINTENANCE_INTERVAL_SECONDS = 60.0
MAX_PENDING_COMMANDS = 10

# ── Tokens ──
TOKEN_PREFIX = "hsb_"
TOKEN_RE = re.compile(r'^hsb_[a-f0-9]{64}$')

# ── Output limits ──
MAX_OUTPUT_SIZE = 100_000
TRUNCATION_MARKER = "\n...\n"
HEAD_RATIO = 0.25

# ── Exit codes ──
EXIT_CODE_TIMEOUT = 124
EXIT_CODE_ABORTED = 130

# ── Process checks ──
PROCESS_QUERY_TIMEOUT_MS = 5_000
TERMINATION_VERIFY_ATTEMPTS = 3
TERMINATION_VERIFY_DELAY_SECONDS = 0.1
FORCE_KILL_VERIFY_ATTEMPTS = 2
FORCE_KILL_VERIFY_DELAY_SECONDS = 0.15

# ── Cloud sandbox ──
SANDBOX_VERSION = "v2"
DEFAULT_TEMPLATE = "terminal-agent-sandbox"
DEFAULT_SANDBOX_TIMEOUT_SECONDS = 15 * 60
PAUSE_RETRIES = 3
PAUSE_RETRY_DELAY_SECONDS = 5.0
SANDBOX_HOME = "/home/user"

# ── Retry policy ──
DEFAULT_MAX_RETRIES = 3
BASE_RETRY_DELAY_SECONDS = 1.0
RATE_LIMIT_RETRY_DELAY_SECONDS = 5.0
RETRY_JITTER_SECONDS = 0.1

# ── Search commands ──
MAX_FILES_GLOB = 1000
MAX_GREP_LINES = 5000
