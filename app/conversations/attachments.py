"""Attachment validation and the blob storage contract.

The validator only decides whether a file may be attached and describes it;
the bytes are handed to a :class:`BlobStorage` by
:meth:`AttachmentValidator.upload_batch`. Errors are collected per file so
one bad file never sinks the rest of a multi-file submission.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from .errors import (
    FileTooLarge,
    MessagingError,
    UnsupportedType,
    UploadFailed,
    ValidationError,
)
from .models import FileDescriptor, ValidationReport
from .schemas import Attachment

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_MIME_TYPES = (
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
)

ATTACHMENT_MAX_SIZE = int(os.getenv("ATTACHMENT_MAX_SIZE", str(10 * 1024 * 1024)))
ATTACHMENT_ALLOWED_MIME_TYPES = tuple(
    t.strip()
    for t in os.getenv(
        "ATTACHMENT_ALLOWED_MIME_TYPES", ",".join(DEFAULT_ALLOWED_MIME_TYPES)
    ).split(",")
    if t.strip()
)
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "tmp/uploads")

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStorage(Protocol):
    def upload(self, data: bytes, metadata: Mapping[str, Any]) -> str:
        """Store ``data`` and return the URL it can be fetched from."""


def content_address(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_filename(name: str) -> str:
    base = os.path.basename(name or "") or "file"
    return _UNSAFE_NAME.sub("_", base)


class LocalBlobStorage:
    """Content-addressed storage on the local filesystem.

    Files are served by the application under ``url_prefix``.
    """

    def __init__(self, root: str | Path = UPLOAD_DIR, url_prefix: str = "/uploads") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def upload(self, data: bytes, metadata: Mapping[str, Any]) -> str:
        name = f"{content_address(data)}-{safe_filename(str(metadata.get('name', '')))}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / name).write_bytes(data)
        except OSError as exc:
            raise UploadFailed(str(metadata.get("name", name)), str(exc)) from exc
        return f"{self.url_prefix}/{name}"


class AttachmentValidator:
    """Validates files against the size limit and the MIME allow-list."""

    def __init__(
        self,
        *,
        max_size: int = ATTACHMENT_MAX_SIZE,
        allowed_types: Iterable[str] = ATTACHMENT_ALLOWED_MIME_TYPES,
    ) -> None:
        self.max_size = max_size
        self.allowed_types = frozenset(allowed_types)

    def validate(self, descriptor: FileDescriptor) -> Attachment:
        """Describe an acceptable file or raise a :class:`ValidationError`.

        Size is checked before type. The returned URL is a content address
        when the bytes are known, otherwise a reference keyed by the id; the
        storage-issued URL replaces it on upload.
        """

        if descriptor.size > self.max_size:
            raise FileTooLarge(descriptor.filename, descriptor.size, self.max_size)
        if descriptor.content_type not in self.allowed_types:
            raise UnsupportedType(descriptor.filename, descriptor.content_type)
        attachment_id = uuid4().hex
        if descriptor.data:
            url = f"sha256:{content_address(descriptor.data)}"
        else:
            url = f"attachment:{attachment_id}"
        return Attachment(
            id=attachment_id,
            name=descriptor.filename,
            size=descriptor.size,
            type=descriptor.content_type,
            url=url,
        )

    def validate_batch(self, descriptors: Iterable[FileDescriptor]) -> ValidationReport:
        report = ValidationReport()
        for descriptor in descriptors:
            try:
                report.accepted.append(self.validate(descriptor))
            except ValidationError as exc:
                report.errors.append(exc)
        return report

    def upload_batch(
        self, descriptors: Iterable[FileDescriptor], storage: BlobStorage
    ) -> ValidationReport:
        """Validate every file and upload the accepted ones."""

        report = ValidationReport()
        for descriptor in descriptors:
            try:
                attachment = self.validate(descriptor)
            except ValidationError as exc:
                report.errors.append(exc)
                continue
            try:
                url = storage.upload(
                    descriptor.data,
                    {"name": attachment.name, "type": attachment.type, "size": attachment.size},
                )
            except MessagingError as exc:
                logger.warning("Upload of %s failed: %s", descriptor.filename, exc)
                report.errors.append(
                    exc
                    if isinstance(exc, UploadFailed)
                    else UploadFailed(descriptor.filename, str(exc))
                )
                continue
            report.accepted.append(attachment.model_copy(update={"url": url}))
        return report


def error_code(error: MessagingError) -> str:
    if isinstance(error, FileTooLarge):
        return "file_too_large"
    if isinstance(error, UnsupportedType):
        return "unsupported_type"
    if isinstance(error, UploadFailed):
        return "upload_failed"
    return "invalid"


__all__ = [
    "ATTACHMENT_ALLOWED_MIME_TYPES",
    "ATTACHMENT_MAX_SIZE",
    "AttachmentValidator",
    "BlobStorage",
    "DEFAULT_ALLOWED_MIME_TYPES",
    "LocalBlobStorage",
    "content_address",
    "error_code",
    "safe_filename",
]
