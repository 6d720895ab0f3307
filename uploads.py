"""
Image storage on local disk.

Listing images live at the root of UPLOAD_DIR, transaction proofs under
PROOF_DIR. Only a bare file name is stored on documents.
"""
import os
import logging
import secrets
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
PROOF_DIR = "transaction-proofs"

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def resolve(filename: str, subdir: str = "") -> Path:
    # Names come from URLs; refuse anything that is not a bare file name
    if not filename or Path(filename).name != filename or filename.startswith("."):
        raise NotFound("Image not found")
    return UPLOAD_DIR / subdir / filename


def save_image(upload: UploadFile, prefix: str, subdir: str = "") -> str:
    ext = ALLOWED_IMAGE_TYPES.get(upload.content_type or "")
    if ext is None:
        raise ValidationFailed("Invalid file type. Only JPEG, PNG, and WebP images are allowed.")
    data = upload.file.read(MAX_IMAGE_BYTES + 1)
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationFailed("Image must be 5MB or smaller")

    filename = f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}{ext}"
    target = UPLOAD_DIR / subdir
    target.mkdir(parents=True, exist_ok=True)
    (target / filename).write_bytes(data)
    logger.debug("Stored upload %s (%d bytes)", filename, len(data))
    return filename


def delete_image(filename: Optional[str], subdir: str = "") -> None:
    if not filename:
        return
    try:
        resolve(filename, subdir).unlink(missing_ok=True)
    except NotFound:
        logger.warning("Refusing to delete suspicious upload name %r", filename)
