"""
Access registry: the single authority on token validity and consumption.

Every method runs in its own short transaction. Transactions start with
BEGIN IMMEDIATE (see ``filedrop.db``), so a lookup and the delete that
follows it cannot interleave with another writer.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from filedrop.config import (
    EXPIRE_CODE_MS, EXPIRE_LINK_MS,
    CODE_LENGTH, CODE_MAX_ATTEMPTS,
)
from filedrop.errors import (
    NotFoundError, ExpiredError, FileMissingError, CodeExhaustedError
)
from filedrop.models import File, AccessToken, AccessCode, AccessLink, KIND_CODE
from filedrop.storage import LocalBlobStore
from filedrop.utils import now_ms, is_expired, make_code, make_link

logger = logging.getLogger(__name__)


def expired_clause(now: int):
    # same expression as utils.is_expired
    return (now - AccessToken.created_at) > AccessToken.ttl_ms


def purge_expired_tokens(session: Session, now: int) -> int:
    """Delete every expired code and link. Caller commits."""
    result = session.execute(
        delete(AccessToken)
        .where(expired_clause(now))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


@dataclass(frozen=True)
class Grant:
    """A validated token: the file it opens and which variant matched."""
    file: File
    kind: str
    code: str
    expires_at_ms: int
    consume_on_read: bool


class AccessRegistry:
    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: LocalBlobStore,
        code_ttl_ms: int = EXPIRE_CODE_MS,
        link_ttl_ms: int = EXPIRE_LINK_MS,
        code_length: int = CODE_LENGTH,
        code_max_attempts: int = CODE_MAX_ATTEMPTS,
        clock: Callable[[], int] = now_ms,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.code_ttl_ms = code_ttl_ms
        self.link_ttl_ms = link_ttl_ms
        self.code_length = code_length
        self.code_max_attempts = code_max_attempts
        self.clock = clock

    # =========================
    # Validation
    # =========================
    def validate(self, token: str) -> Grant:
        """
        Resolve a code or link to its file without consuming it.

        Raises NotFoundError, ExpiredError (the token is purged first)
        or FileMissingError.
        """
        with self.session_factory() as s:
            grant = self._resolve(s, token, self.clock())
            s.commit()
            return grant

    def consume(self, token: str, kind: str):
        """
        Spend a single-use code. Links are left untouched.

        The delete is conditional on the code still existing and being
        unexpired, so of two racing callers exactly one succeeds; the other
        gets NotFoundError. An expired code raises ExpiredError.
        """
        if kind != KIND_CODE:
            return
        with self.session_factory() as s:
            now = self.clock()
            result = s.execute(
                delete(AccessToken)
                .where(
                    AccessToken.code == token,
                    AccessToken.kind == KIND_CODE,
                    ~expired_clause(now),
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                access = s.get(AccessToken, token)
                if access is not None and access.kind == KIND_CODE:
                    purged = purge_expired_tokens(s, now)
                    s.commit()
                    logger.debug(f"Code {token} expired, purged {purged}")
                    raise ExpiredError(token)
                s.rollback()
                raise NotFoundError(token)
            s.commit()

    def redeem(self, token: str) -> Grant:
        """
        Validate and, for single-use codes, consume in one transaction.
        This is what a download calls before handing the blob to the transport.
        """
        with self.session_factory() as s:
            now = self.clock()
            grant = self._resolve(s, token, now)
            if grant.consume_on_read:
                result = s.execute(
                    delete(AccessToken)
                    .where(
                        AccessToken.code == token,
                        AccessToken.kind == KIND_CODE,
                        ~expired_clause(now),
                    )
                    .execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    s.rollback()
                    raise NotFoundError(token)
            s.commit()
            return grant

    def _resolve(self, s: Session, token: str, now: int) -> Grant:
        access = s.get(AccessToken, token) if token else None
        if access is None:
            logger.debug(f"Unknown token {token}")
            raise NotFoundError(token)

        if is_expired(access.created_at, access.ttl_ms, now):
            s.execute(
                delete(AccessToken)
                .where(AccessToken.code == token)
                .execution_options(synchronize_session=False)
            )
            purged = purge_expired_tokens(s, now)
            s.commit()
            logger.debug(f"Token {token} expired, purged {purged} more")
            raise ExpiredError(token)

        file = s.get(File, access.file_id)
        if file is None:
            err = FileMissingError(access.file_id, "record missing")
            logger.error(f"Token {token} references missing file: {err}")
            raise err
        if not self.blob_store.exists(file.id):
            err = FileMissingError(file.id, "blob missing")
            logger.error(f"Token {token} references missing blob: {err}")
            raise err

        return Grant(
            file=file,
            kind=access.kind,
            code=access.code,
            expires_at_ms=access.expires_at_ms(),
            consume_on_read=access.consume_on_read,
        )

    # =========================
    # Issuing
    # =========================
    def mint_link(self, file_id: str) -> AccessLink:
        """Create a reusable link for an existing file."""
        with self.session_factory() as s:
            if s.get(File, file_id) is None:
                raise NotFoundError(file_id)
            link = AccessLink(
                code=make_link(),
                file_id=file_id,
                created_at=self.clock(),
                ttl_ms=self.link_ttl_ms,
            )
            s.add(link)
            s.commit()
        logger.info(f"Minted link for file {file_id}")
        return link

    def issue_code(self, s: Session, file_id: str) -> AccessCode:
        """
        Add a fresh numeric code for ``file_id`` inside the caller's
        transaction, drawing again on primary-key collision.
        """
        for attempt in range(1, self.code_max_attempts + 1):
            code = AccessCode(
                code=make_code(self.code_length),
                file_id=file_id,
                created_at=self.clock(),
                ttl_ms=self.code_ttl_ms,
            )
            try:
                with s.begin_nested():
                    s.add(code)
            except IntegrityError:
                logger.debug(f"Code collision on attempt {attempt}")
                continue
            return code
        raise CodeExhaustedError(
            f"no free code after {self.code_max_attempts} attempts"
        )

    def tokens_for(self, file_id: str) -> list:
        with self.session_factory() as s:
            rows = s.scalars(
                select(AccessToken)
                .where(AccessToken.file_id == file_id)
                .order_by(AccessToken.created_at)
            ).all()
            s.commit()
            return list(rows)
