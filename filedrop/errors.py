"""
Error taxonomy for token access and ingestion.

User-facing errors (not found, expired, upload rejected) are expected
traffic. FileMissingError marks a broken file/blob invariant and is meant
for operators, never for response bodies.
"""


class FileDropError(Exception):
    """Base class for all file-drop errors."""


class NotFoundError(FileDropError):
    """Token or file does not exist."""


class ExpiredError(FileDropError):
    """Token existed but its TTL elapsed. The token has been purged."""


class FileMissingError(FileDropError):
    """A valid token points at a file record or blob that is gone."""

    def __init__(self, file_id: str, reason: str):
        self.file_id = file_id
        self.reason = reason
        super().__init__(f"file {file_id}: {reason}")


class UploadTooLargeError(FileDropError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"upload exceeds {limit} bytes")


class BadRequestError(FileDropError):
    pass


class CodeExhaustedError(FileDropError):
    """No free access code found within the retry budget."""
