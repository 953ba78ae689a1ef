import secrets
import time
import urllib.parse
import uuid

DIGITS = "0123456789"


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def is_expired(created_at_ms: int, ttl_ms: int, now: int) -> bool:
    """
    A token is expired once its age is strictly greater than its TTL.
    The reaper's batch delete uses the same expression in SQL.
    """
    return now - created_at_ms > ttl_ms


def make_code(length: int = 6) -> str:
    return "".join(secrets.choice(DIGITS) for _ in range(length))


def make_link() -> str:
    return str(uuid.uuid4())


def make_file_id() -> str:
    return str(uuid.uuid4())


def content_disposition(filename: str) -> str:
    quoted = urllib.parse.quote(filename)
    return f'attachment; filename="download"; filename*=UTF-8\'\'{quoted}'
