"""
Local blob store.

Blobs are write-once files named by their opaque id under a single
directory. Writes go to a ``.part`` file and are renamed into place, so a
blob is either fully present or absent.
"""

import logging
import os
import re
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class BlobNotFoundError(Exception):
    pass


class BlobExistsError(Exception):
    pass


class LocalBlobStore:
    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path(self, blob_id: str) -> Path:
        if not blob_id or not _ID_RE.match(blob_id):
            raise ValueError(f"invalid blob id: {blob_id!r}")
        return self.base_path / blob_id

    def put(self, blob_id: str, chunks: Iterable[bytes]) -> int:
        """
        Write a new blob from an iterable of byte chunks and return its size.

        Raises BlobExistsError if the id is taken. Any exception raised while
        consuming ``chunks`` removes the partial write and propagates.
        """
        target = self.path(blob_id)
        if target.exists():
            raise BlobExistsError(blob_id)

        tmp = target.with_name(target.name + ".part")
        size = 0
        try:
            with open(tmp, "xb") as f:
                for chunk in chunks:
                    f.write(chunk)
                    size += len(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return size

    def open(self, blob_id: str) -> BinaryIO:
        try:
            return open(self.path(blob_id), "rb")
        except FileNotFoundError:
            raise BlobNotFoundError(blob_id)

    def get(self, blob_id: str) -> Iterator[bytes]:
        f = self.open(blob_id)

        def gen():
            with f:
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        return gen()

    def exists(self, blob_id: str) -> bool:
        return self.path(blob_id).is_file()

    def delete(self, blob_id: str):
        """Idempotent: deleting an absent blob is not an error."""
        self.path(blob_id).unlink(missing_ok=True)

    def entries(self) -> Iterator[tuple]:
        """Yield ``(name, mtime_ms)`` for every stored file, partial writes included."""
        for item in self.base_path.iterdir():
            try:
                if item.is_file():
                    yield item.name, int(item.stat().st_mtime * 1000)
            except FileNotFoundError:
                continue

    def remove_entry(self, name: str):
        (self.base_path / Path(name).name).unlink(missing_ok=True)
