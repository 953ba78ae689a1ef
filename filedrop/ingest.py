import logging
import mimetypes
import ntpath
import posixpath
from typing import BinaryIO, Iterable, Iterator, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from filedrop.config import MAX_FILE_SIZE
from filedrop.errors import UploadTooLargeError
from filedrop.models import File, AccessCode
from filedrop.registry import AccessRegistry
from filedrop.storage import LocalBlobStore, CHUNK_SIZE
from filedrop.utils import make_file_id

logger = logging.getLogger(__name__)

DEFAULT_MIME = "application/octet-stream"


def clean_name(name: Optional[str]) -> str:
    name = ntpath.basename(posixpath.basename((name or "").strip()))
    return name or "unnamed"


def guess_mime(name: str, declared: Optional[str] = None) -> str:
    guessed, _ = mimetypes.guess_type(name)
    if guessed:
        return guessed
    if declared and declared != DEFAULT_MIME:
        return declared
    return DEFAULT_MIME


def read_chunks(fileobj: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    while True:
        chunk = fileobj.read(chunk_size)
        if not chunk:
            break
        yield chunk


def limit_size(chunks: Iterable[bytes], limit: int) -> Iterator[bytes]:
    total = 0
    for chunk in chunks:
        total += len(chunk)
        if total > limit:
            raise UploadTooLargeError(limit)
        yield chunk


class IngestionGateway:
    """
    Accepts an upload: blob first, then the file row and its one access
    code in a single commit. A rejected or failed upload leaves nothing.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: LocalBlobStore,
        registry: AccessRegistry,
        max_size: int = MAX_FILE_SIZE,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.registry = registry
        self.max_size = max_size

    def ingest(
        self,
        filename: Optional[str],
        chunks: Iterable[bytes],
        content_type: Optional[str] = None,
    ) -> Tuple[File, AccessCode]:
        file_id = make_file_id()
        size = self.blob_store.put(file_id, limit_size(chunks, self.max_size))

        name = clean_name(filename)
        try:
            with self.session_factory() as s:
                rec = File(
                    id=file_id,
                    file_name=name,
                    mime_type=guess_mime(name, content_type),
                    size=size,
                )
                s.add(rec)
                s.flush()
                code = self.registry.issue_code(s, file_id)
                s.commit()
        except Exception:
            self.blob_store.delete(file_id)
            raise

        logger.info(f"Accepted upload {file_id} ({size} bytes)")
        return rec, code
