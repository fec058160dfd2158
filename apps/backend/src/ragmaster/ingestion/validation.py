"""
Upload validation.

Request-level limits
--------------------
1. Queue capacity   — existing items + new files must not exceed ``max_files``.
2. Total size       — bytes already queued + new bytes must not exceed ``max_total_size``.

Either violation rejects the whole request with UploadRejected.

Per-file checks
---------------
1. Size             — each file must be <= ``max_file_size``.
2. Extension        — must be in ``allowed_extensions``; images are always refused.

Per-file failures reject only that file; the message is returned to the caller
alongside the accepted files.
"""

import logging
from pathlib import PurePath

from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg"})


class UploadRejected(Exception):
    """The upload request as a whole breaks a queue limit."""

    def __init__(self, reason: str, details: str = "") -> None:
        self.reason = reason
        self.details = details
        super().__init__(reason)


class UploadLimits(BaseModel):
    max_files: int = Field(default=50, ge=1)
    max_total_size: int = Field(default=10 * 1024 * 1024, ge=1)
    max_file_size: int = Field(default=1 * 1024 * 1024, ge=1)
    allowed_extensions: list[str] = Field(
        default=[".md", ".markdown", ".txt", ".json", ".csv", ".log", ".xml", ".html", ".rtf"]
    )


def _mib(n: int) -> str:
    return f"{n / 1024 / 1024:.2f}MB"


def check_request_limits(
    queued_count: int,
    queued_bytes: int,
    incoming_sizes: list[int],
    limits: UploadLimits,
) -> None:
    """
    Raises
    ------
    UploadRejected
        If the request would push the queue past its file-count or byte limit.
    """
    if not incoming_sizes:
        raise UploadRejected(
            "No files uploaded", 'Request contained no files. Check the form field name "files".'
        )

    if queued_count + len(incoming_sizes) > limits.max_files:
        raise UploadRejected(
            f"Queue limit exceeded. Maximum {limits.max_files} files allowed. Current: {queued_count}",
            f"You tried to upload {len(incoming_sizes)} files but queue already has {queued_count}.",
        )

    incoming_bytes = sum(incoming_sizes)
    if queued_bytes + incoming_bytes > limits.max_total_size:
        raise UploadRejected(
            f"Total size limit exceeded. Maximum {limits.max_total_size / 1024 / 1024:.1f}MB allowed.",
            f"Current queue: {_mib(queued_bytes)}, New upload: {_mib(incoming_bytes)}",
        )


def validate_file(filename: str, size: int, limits: UploadLimits) -> str | None:
    """Return a rejection message for this file, or None if it is acceptable."""
    if size > limits.max_file_size:
        return (
            f"{filename}: exceeds {limits.max_file_size // 1024}KB limit ({size / 1024:.0f}KB)"
        )

    ext = PurePath(filename).suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return f"{filename}: images not allowed"
    if ext not in {e.lower() for e in limits.allowed_extensions}:
        return f'{filename}: unsupported file type "{ext}"'
    return None


def decode_content(raw: bytes) -> str:
    """Decode uploaded bytes as UTF-8, replacing undecodable sequences."""
    return raw.decode("utf-8", errors="replace")
