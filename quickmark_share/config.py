"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

from pydantic import BaseModel

# --- Identity ---
APP_NAME = "QuickMark"
DEVICE_NAME = os.environ.get("QUICKMARK_DEVICE_NAME") or platform.node() or APP_NAME

# --- Protocol ---
DISCOVERY_MAGIC = "quickmark_discovery_v1"
TRANSFER_MAGIC = "quickmark_transfer_v1"

# --- Networking ---
API_HOST = os.environ.get("QUICKMARK_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("QUICKMARK_API_PORT", "8766"))
AUTO_RECEIVE = os.environ.get("QUICKMARK_AUTO_RECEIVE") == "1"  # listen on startup
BIND_HOST = "0.0.0.0"
DISCOVERY_PORT = int(os.environ.get("QUICKMARK_DISCOVERY_PORT", "51515"))  # UDP
TRANSFER_PORT = int(os.environ.get("QUICKMARK_TRANSFER_PORT", "51516"))  # TCP
MAX_PORT = 65535
MAX_DATAGRAM_SIZE = 2048
MAX_HEADER_SIZE = 64 * 1024

# --- Timeouts (seconds) ---
SEND_DISCOVERY_TIMEOUT = 10  # first pong, legacy "send all"
SWEEP_WINDOW = 3  # list receivers
CONNECT_TIMEOUT = 10
ACK_TIMEOUT = 120
READ_TIMEOUT = 180
LEGACY_RECEIVE_TIMEOUT = 120

# --- Transfer ---
CHUNK_SIZE = 8192  # 8 KB
SEND_TASK_HISTORY = 64  # finished send handles kept for polling

# --- Storage ---
INDEX_FILE = "index.json"
NOTE_EXTENSION = ".md"
DEFAULT_NOTES_DIR = os.environ.get(
    "QUICKMARK_NOTES_DIR", str(Path.home() / ".quickmark" / "notes")
)


class ShareSettings(BaseModel):
    """Tunables injected into every sharing component."""
    device_name: str = DEVICE_NAME
    notes_dir: str = DEFAULT_NOTES_DIR
    bind_host: str = BIND_HOST
    discovery_port: int = DISCOVERY_PORT
    transfer_port: int = TRANSFER_PORT
    chunk_size: int = CHUNK_SIZE
    send_discovery_timeout: float = SEND_DISCOVERY_TIMEOUT
    sweep_window: float = SWEEP_WINDOW
    connect_timeout: float = CONNECT_TIMEOUT
    ack_timeout: float = ACK_TIMEOUT
    read_timeout: float = READ_TIMEOUT
    legacy_receive_timeout: float = LEGACY_RECEIVE_TIMEOUT
    send_task_history: int = SEND_TASK_HISTORY
