"""Application-wide configuration constants."""

import platform
from pathlib import Path

# --- Identity ---
APP_NAME = "PeerDrop"
DEVICE_NAME = platform.node() or APP_NAME  # default to hostname, user can override
CONFIG_DIR = Path.home() / ".peerdrop"
SETTINGS_FILE = CONFIG_DIR / "settings.json"

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = 3000
DISCOVERY_PORT = 12345  # UDP
MULTICAST_GROUP = "224.0.0.114"
LIMITED_BROADCAST = "255.255.255.255"
ANNOUNCE_INTERVAL = 5  # seconds
SWEEP_INTERVAL = 5  # seconds
PEER_TIMEOUT = 15  # seconds before a peer is evicted (three missed announcements)

TRANSFER_PORT = 3001  # TCP
CONNECT_TIMEOUT = 5  # seconds
PROBE_TIMEOUT = 3  # seconds
IDLE_TIMEOUT = 120  # seconds without inbound data before a receive is aborted
REBIND_DELAY = 5  # seconds between listener rebind attempts

# --- Transfer ---
CHUNK_SIZE = 65536  # 64 KB
MAX_FILE_SIZE = 2 * 1024 ** 3  # 2 GB
SPEED_SAMPLE_INTERVAL = 1.0  # seconds
COMPLETENESS_TOLERANCE = 0.01  # fraction of expected size

# --- Storage ---
DEFAULT_SHARED_DIR = str(Path.home() / "SharedFiles")
DEFAULT_RECEIVE_DIR = str(Path.home() / "Downloads" / APP_NAME)
