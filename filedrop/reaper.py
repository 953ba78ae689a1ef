"""
Reaper

Periodic sweep that:
1. Deletes every expired code and link
2. Deletes files no live token references, blob first, then record
3. Removes stray blobs left behind by interrupted uploads

One orphan failing never stops the others. Sweeps never overlap: a sweep
requested while another is running is skipped.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import delete, exists, select
from sqlalchemy.orm import sessionmaker

from filedrop.config import REAPER_INTERVAL_MS, STRAY_BLOB_GRACE_MS
from filedrop.models import File, AccessToken
from filedrop.registry import purge_expired_tokens
from filedrop.storage import LocalBlobStore
from filedrop.utils import now_ms

logger = logging.getLogger(__name__)


def _unreferenced():
    return ~exists().where(AccessToken.file_id == File.id)


@dataclass
class SweepStats:
    tokens_expired: int = 0
    orphans_removed: int = 0
    blob_failures: int = 0
    stray_blobs_removed: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)


class Reaper:
    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: LocalBlobStore,
        interval_ms: int = REAPER_INTERVAL_MS,
        stray_grace_ms: int = STRAY_BLOB_GRACE_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.interval_ms = interval_ms
        self.stray_grace_ms = stray_grace_ms
        self.clock = clock

        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================
    # Sweep
    # =========================
    def sweep(self) -> SweepStats:
        if not self._sweep_lock.acquire(blocking=False):
            logger.warning("Sweep already in progress, skipping")
            return SweepStats(skipped=True)
        try:
            return self._sweep()
        finally:
            self._sweep_lock.release()

    def _sweep(self) -> SweepStats:
        stats = SweepStats()
        now = self.clock()

        with self.session_factory() as s:
            stats.tokens_expired = purge_expired_tokens(s, now)
            s.commit()

        with self.session_factory() as s:
            orphan_ids = s.scalars(select(File.id).where(_unreferenced())).all()
            s.commit()

        for file_id in orphan_ids:
            try:
                if self._remove_orphan(file_id, stats):
                    stats.orphans_removed += 1
            except Exception as e:
                msg = f"Failed to remove orphan {file_id}: {e}"
                stats.errors.append(msg)
                logger.error(msg, exc_info=True)

        try:
            stats.stray_blobs_removed = self._remove_stray_blobs()
        except Exception as e:
            msg = f"Failed to scan for stray blobs: {e}"
            stats.errors.append(msg)
            logger.error(msg, exc_info=True)

        logger.info(
            f"Sweep completed - Tokens expired: {stats.tokens_expired}, "
            f"Orphans: {stats.orphans_removed}, "
            f"Stray blobs: {stats.stray_blobs_removed}, "
            f"Blob failures: {stats.blob_failures}, "
            f"Errors: {len(stats.errors)}"
        )
        return stats

    def _remove_orphan(self, file_id: str, stats: SweepStats) -> bool:
        with self.session_factory() as s:
            # a link may have been minted since the orphan query
            still_orphan = s.scalar(
                select(File.id).where(File.id == file_id, _unreferenced())
            )
            if still_orphan is None:
                s.commit()
                return False

            try:
                self.blob_store.delete(file_id)
            except Exception as e:
                stats.blob_failures += 1
                logger.warning(f"Failed to delete blob {file_id}: {e}")

            s.execute(delete(File).where(File.id == file_id))
            s.commit()
        logger.info(f"Removed orphaned file {file_id}")
        return True

    def _remove_stray_blobs(self) -> int:
        """Delete blobs and partial writes with no file record past the grace period."""
        cutoff = now_ms() - self.stray_grace_ms
        candidates = [
            name for name, mtime in self.blob_store.entries() if mtime < cutoff
        ]
        if not candidates:
            return 0

        with self.session_factory() as s:
            known = set(s.scalars(select(File.id).where(File.id.in_(candidates))).all())
            removed = 0
            for name in candidates:
                if name in known:
                    continue
                self.blob_store.remove_entry(name)
                removed += 1
                logger.info(f"Removed stray blob {name}")
            s.commit()
        return removed

    # =========================
    # Scheduling
    # =========================
    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="reaper",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Reaper started, interval {self.interval_ms} ms")

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reaper stopped")

    def _run(self):
        while not self._stop.wait(self.interval_ms / 1000):
            try:
                self.sweep()
            except Exception:
                logger.exception("Sweep failed")
