import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


DATA_PATH = os.path.abspath(os.getenv("DATA_PATH", os.path.join(os.getcwd(), "data")))
FILES_PATH = os.path.join(DATA_PATH, "files")
DB_PATH = os.getenv("DB_PATH", os.path.join(DATA_PATH, "data.db"))

PORT = _int_env("PORT", 8001)
BASE_URL = os.getenv("BASE_URL", f"http://127.0.0.1:{PORT}").rstrip("/")

# durations in milliseconds
EXPIRE_CODE_MS = _int_env("EXPIRE_CODE_MS", 600_000)
EXPIRE_LINK_MS = _int_env("EXPIRE_LINK_MS", 86_400_000)
REAPER_INTERVAL_MS = _int_env("REAPER_INTERVAL_MS", 3_600_000)
# blobs with no record younger than this are uploads still in flight
STRAY_BLOB_GRACE_MS = _int_env("STRAY_BLOB_GRACE_MS", 3_600_000)

MAX_FILE_SIZE = _int_env("MAX_FILE_SIZE", 1 * 1024 * 1024 * 1024)

CODE_LENGTH = _int_env("CODE_LENGTH", 6)
CODE_MAX_ATTEMPTS = _int_env("CODE_MAX_ATTEMPTS", 16)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
