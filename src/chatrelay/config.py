"""Central configuration for paths, endpoints and constants."""

import os
from pathlib import Path

# Data directory, override with CHATRELAY_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("CHATRELAY_DATA_DIR", str(Path.home() / ".chatrelay"))
)

# Local record store
SQLITE_PATH = DATA_DIR / "store.db"
SCHEMA_VERSION = 1  # Bump on structural change and add a migration

# Inference backend
OLLAMA_URL = os.environ.get("CHATRELAY_OLLAMA_URL", "http://localhost:11434")
REQUEST_TIMEOUT = float(os.environ.get("CHATRELAY_TIMEOUT", "300"))
HEALTH_TIMEOUT = 5.0

# HTTP server
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

# Roles accepted in relayed chat messages
VALID_ROLES = {"user", "assistant", "system"}

# Sentinel payload closing a third-party completion stream
DONE_SENTINEL = "[DONE]"
