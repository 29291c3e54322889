"""Checks applied to uploaded key tables before they reach the codec."""
from __future__ import annotations

import logging

from fastapi import HTTPException, UploadFile

from keygate.core.config import settings
from keygate.core.errors import ValidationAppError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".lua", ".bak")


def validate_key_table_filename(filename: str | None) -> None:
    """Reject uploads that are not named like a key table.

    Raises:
        ValidationAppError: If the file name is missing or has the wrong extension.
    """
    if not filename or not filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise ValidationAppError(
            code="invalid_file_type",
            message="Please attach a valid .lua key table",
            details={"hint": f"Accepted extensions: {', '.join(ALLOWED_EXTENSIONS)}"},
        )


async def read_upload_file_limited(file: UploadFile) -> bytes:
    """Return the upload's bytes, refusing anything over ``KEYS_MAX_IMPORT_SIZE_KB``.

    The declared multipart size is trusted for an early rejection; otherwise
    at most one byte past the limit is read, which is enough to tell.

    Raises:
        HTTPException: 413 if the upload is too large.
    """
    limit_kb = settings.keys.max_import_size_kb
    max_bytes = limit_kb * 1024

    declared = getattr(file, "size", None)
    data = b"" if declared is not None and declared > max_bytes else await file.read(max_bytes + 1)

    if len(data) > max_bytes or (declared is not None and declared > max_bytes):
        logger.warning(
            "import.upload_too_large",
            extra={"declared_size": declared, "max_bytes": max_bytes},
        )
        raise HTTPException(
            status_code=413,
            detail=f"Key table too large. Maximum size: {limit_kb}KB",
        )
    return data
