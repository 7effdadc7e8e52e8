import os
from dotenv import load_dotenv
load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
SEED_SAMPLE_DATA = _flag("SEED_SAMPLE_DATA", "true")
MERIT_PERCENTAGE = float(os.getenv("MERIT_PERCENTAGE", "80"))
PASS_PERCENTAGE = float(os.getenv("PASS_PERCENTAGE", "40"))
SYNC_MAX_WORKERS = int(os.getenv("SYNC_MAX_WORKERS", "8"))
WATCH_POLL_SECONDS = float(os.getenv("WATCH_POLL_SECONDS", "1.0"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))
