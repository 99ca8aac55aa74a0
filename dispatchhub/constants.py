"""Constants used across dispatchhub.

This module defines shared constants to ensure consistency.
"""

# Storage layout (relative to the configured data directory)
DB_FILENAME = "dispatch.db"
HISTORY_DIRNAME = "history"
LOG_DIRNAME = "logs"
HISTORY_SUFFIX = ".jsonl"

# History read windows
HISTORY_TAIL_WINDOW_BYTES = 512 * 1024  # Short views (reconnect catch-up)
HISTORY_FULL_WINDOW_BYTES = 5 * 1024 * 1024  # Full-session reads
HISTORY_DEFAULT_LINES = 40
HISTORY_READ_CHUNK_BYTES = 64 * 1024

# Session ids double as history file names
SESSION_ID_PATTERN = r"^[A-Za-z0-9_-]{1,128}$"

# Terminal defaults
DEFAULT_SHELL = "/bin/bash"
DEFAULT_TERMINAL_COLS = 80
DEFAULT_TERMINAL_ROWS = 24
TERMINAL_READ_CHUNK = 4096
TERMINAL_READ_TIMEOUT_S = 0.1

# Teardown: a backend that ignores termination signals is force-released after this
DEFAULT_CLOSE_TIMEOUT_S = 3.0

# AI agent CLI defaults
DEFAULT_AGENT_BINARY = "claude"
AGENT_INPUT_MODE_STREAM = "stream-json"
AGENT_INPUT_MODE_PROMPT = "prompt"
AGENT_INPUT_MODES = (AGENT_INPUT_MODE_STREAM, AGENT_INPUT_MODE_PROMPT)
AGENT_STREAM_FLAGS = ("--output-format", "stream-json", "--verbose")
AGENT_STREAM_INPUT_FLAGS = ("--input-format", "stream-json")
AGENT_STDERR_TAIL_LINES = 20
AGENT_STDOUT_LIMIT_BYTES = 8 * 1024 * 1024  # Single JSON line can carry a large tool result

# Command discovery
COMMAND_CACHE_TTL_S = 5 * 60.0
COMMAND_DISCOVERY_TIMEOUT_S = 15.0
CACHE_KEY_SEPARATOR = ":"

# File editor
EDITOR_MAX_FILE_BYTES = 5 * 1024 * 1024

# API server
API_DEFAULT_HOST = "127.0.0.1"
API_DEFAULT_PORT = 7173
API_WS_PING_INTERVAL_S = 20.0
API_WS_PING_TIMEOUT_S = 20.0
API_TIMEOUT_KEEP_ALIVE_S = 5
API_STOP_TIMEOUT_S = 5.0
WS_SEND_TIMEOUT_S = 5.0

# Registry shutdown
SHUTDOWN_TIMEOUT_S = 5.0

# Ended sessions remembered in memory; older ones are answered from the Db
RETIRED_SESSIONS_KEPT = 1024
