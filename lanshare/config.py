"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path


def _env(name: str, default):
    """Read a LANSHARE_* environment override, cast to the default's type."""
    raw = os.environ.get(f"LANSHARE_{name}")
    if raw is None or raw == "":
        return default
    if isinstance(default, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


# --- Protocol ---
PROTOCOL_VERSION = "2.1"
API_PREFIX = "/api/localsend/v2"

# --- Identity ---
DEFAULT_ALIAS = _env("ALIAS", "")  # empty -> random alias per process
DEVICE_MODEL = _env("DEVICE_MODEL", platform.system() or "Python")

# --- Networking ---
API_HOST = _env("HOST", "0.0.0.0")
DEFAULT_PORT = _env("PORT", 53317)
MULTICAST_GROUP = _env("MULTICAST_GROUP", "224.0.0.167")
MULTICAST_PORT = _env("MULTICAST_PORT", 53317)
ANNOUNCE_INTERVAL = _env("ANNOUNCE_INTERVAL", 2.0)  # seconds
PEER_TIMEOUT = _env("PEER_TIMEOUT", 10.0)  # seconds before a peer is considered offline

UDP_SOCKET_BUFFER_SIZE = 1024 * 1024

USE_HTTPS = _env("USE_HTTPS", False)
CERT_FILE = _env("CERT_FILE", "")
KEY_FILE = _env("KEY_FILE", "")

# --- Transfer ---
CHUNK_SIZE = 131072  # 128 KB
CONNECT_TIMEOUT = _env("CONNECT_TIMEOUT", 60.0)  # seconds
UPLOAD_TIMEOUT = _env("UPLOAD_TIMEOUT", 3600.0)  # seconds, 0 disables
SESSION_TTL = _env("SESSION_TTL", 0.0)  # seconds, 0 keeps sessions until cancelled

# --- Storage ---
DEFAULT_DOWNLOAD_DIR = str(Path(_env("DOWNLOAD_DIR", "downloads")).resolve())

# --- Logging ---
LOG_LEVEL = _env("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
