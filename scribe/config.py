import logging
import os

from dotenv import load_dotenv

load_dotenv()

# Backend endpoints (AI assist + analysis + concern storage)
API_BASE_URL = os.getenv("SCRIBE_API_BASE_URL", "http://localhost:8787/api")
API_KEY = os.getenv("SCRIBE_API_KEY", "")
HEALTH_ENDPOINT = os.getenv("SCRIBE_HEALTH_ENDPOINT", "health")

# Per-attempt timeout ceilings in seconds
REQUEST_TIMEOUT = float(os.getenv("SCRIBE_REQUEST_TIMEOUT", "30"))
ANALYSIS_TIMEOUT = float(os.getenv("SCRIBE_ANALYSIS_TIMEOUT", "30"))

# Master switch for automatic fallback to local, reduced-capability paths
GRACEFUL_DEGRADATION = os.getenv("SCRIBE_GRACEFUL_DEGRADATION", "true").lower() in (
    "true",
    "1",
    "yes",
)

# Optional YAML file overriding retry policy fields at start-up
POLICY_FILE = os.getenv("SCRIBE_POLICY_FILE", "")

# Project root: directory containing scribe/ package (works from any cwd)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.getenv("SCRIBE_DATA_DIR", os.path.join(PROJECT_ROOT, "data"))
QUEUE_DB_PATH = os.getenv("SCRIBE_QUEUE_DB", os.path.join(DATA_DIR, "offline_queue.db"))
LOG_FILE = os.path.join(PROJECT_ROOT, "logs", "scribe.log")
ACTIVITY_LOG_FILE = os.path.join(PROJECT_ROOT, "logs", "activity.log")

# Selection bounds for modify/analyze (trimmed text length)
MIN_SELECTION_LENGTH = 3
MAX_SELECTION_LENGTH = 5000

# Ring buffer of classified errors kept for diagnostics
ERROR_HISTORY_LIMIT = 50

# Queued operations are dropped once their replay count exceeds this
MAX_REPLAY_RETRIES = 3

# Analysis results are reused as a fallback for this long
ANALYSIS_CACHE_TTL = 24 * 60 * 60


# Read version from VERSION file
def _get_version() -> str:
    version_file = os.path.join(PROJECT_ROOT, "VERSION")
    try:
        with open(version_file, "r") as f:
            return f.read().strip()
    except FileNotFoundError:
        return "0.1.0"


VERSION = _get_version()


def setup_logging(level: int = logging.INFO) -> None:
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=level,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
        ],
    )
