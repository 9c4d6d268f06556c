"""Shared constants for the proxy module."""

from meta_miner import __version__

# Agent string sent to the pool on login
AGENT = f"Meta Miner v{__version__}"

# Socket buffer size for reading data (bytes)
SOCKET_READ_BUFFER_SIZE = 8192

# Request id of the relay's own pool login
POOL_LOGIN_ID = 1

# Timeout for closing a socket (seconds)
SOCKET_CLOSE_TIMEOUT = 2.0

# Seconds to wait for a miner process to exit after its tree was killed
PROCESS_EXIT_TIMEOUT = 10.0

# Maximum length for background task exception messages (more verbose for debugging)
MAX_BACKGROUND_ERROR_LENGTH = 500

# Maximum characters of a message echoed in debug logs
MAX_LOGGED_MESSAGE_LENGTH = 1000

# Interval for the periodic stats log line (seconds)
STATS_LOG_INTERVAL = 900
