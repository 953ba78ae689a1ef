from sqlalchemy import (
    Column, String, BigInteger, DateTime,
    ForeignKey, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime
from filedrop.db import Base

KIND_CODE = "code"
KIND_LINK = "link"


class File(Base):
    __tablename__ = "files"

    # doubles as the blob key
    id = Column(String, primary_key=True)
    file_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    tokens = relationship(
        "AccessToken",
        back_populates="file",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "added_at": self.created_at.isoformat(),
        }


class AccessToken(Base):
    """
    Capability granting access to one file. ``kind`` tags the variant;
    the variants share every column and differ only in ``consume_on_read``.
    """
    __tablename__ = "access_tokens"

    code = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    file_id = Column(
        String,
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False
    )
    # epoch milliseconds
    created_at = Column(BigInteger, nullable=False)
    ttl_ms = Column(BigInteger, nullable=False)

    file = relationship("File", back_populates="tokens")

    consume_on_read = False

    __mapper_args__ = {"polymorphic_on": kind}
    __table_args__ = (
        Index("idx_access_tokens_file", "file_id"),
    )

    def expires_at_ms(self) -> int:
        return self.created_at + self.ttl_ms


class AccessCode(AccessToken):
    """Short numeric code, deleted after the first successful download."""
    consume_on_read = True

    __mapper_args__ = {"polymorphic_identity": KIND_CODE}


class AccessLink(AccessToken):
    """Opaque reusable link, valid until its TTL elapses."""
    __mapper_args__ = {"polymorphic_identity": KIND_LINK}
