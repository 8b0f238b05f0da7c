"""ConvTree Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(part.strip() for part in value.split(",") if part.strip())
    return items or default


# Claude home (~/.claude) holds the per-project conversation logs
CLAUDE_HOME = Path(os.getenv("CONVTREE_CLAUDE_HOME", str(Path.home() / ".claude"))).expanduser()
PROJECTS_DIR = Path(os.getenv("CONVTREE_PROJECTS_DIR", str(CLAUDE_HOME / "projects"))).expanduser()

# Persistence
CACHE_PATH = Path(
    os.getenv("CONVTREE_CACHE_PATH", str(CLAUDE_HOME / "conversation-tree-cache.json"))
).expanduser()
NAMES_PATH = Path(
    os.getenv("CONVTREE_NAMES_PATH", str(CLAUDE_HOME / "conversation-names.json"))
).expanduser()

# Encoded project-directory names containing these substrings may have had
# underscores flattened into dashes, so their decode needs verification.
AMBIGUOUS_PATTERNS = _env_list(
    "CONVTREE_AMBIGUOUS_PATTERNS",
    ("-Plus-", "-old-", "-copy-", "-backup-", "-test-", "-temp-", "-tmp-", "--"),
)

# Scanning
WATCH_ENABLED = _env_bool("CONVTREE_WATCH_ENABLED", True)
STARTUP_SCAN_MODE = os.getenv("CONVTREE_STARTUP_SCAN_MODE", "incremental").strip().lower()
STARTUP_SCAN_DELAY_SECONDS = _env_int("CONVTREE_STARTUP_SCAN_DELAY_SECONDS", 2)
MAX_OPERATION_HISTORY = _env_int("CONVTREE_MAX_OPERATION_HISTORY", 40)

# Server settings
HOST = os.getenv("CONVTREE_HOST", "127.0.0.1")
PORT = _env_int("CONVTREE_PORT", 8765)

# CORS
FRONTEND_ORIGIN = os.getenv("CONVTREE_FRONTEND_ORIGIN", "http://localhost:3000")
