"""
Payment screenshot uploads, stored on local disk and served under /uploads.
"""
import logging
import os
import secrets
import time
from typing import Dict

from fastapi import UploadFile

import config
from errors import ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"jpeg", "jpg", "png", "gif", "webp"}
CHUNK_SIZE = 64 * 1024


def _reject(message: str) -> ValidationFailed:
    return ValidationFailed.for_field("screenshot", message)


def check_image(filename: str, content_type: str) -> str:
    """Return the lowercased extension (with dot) of an acceptable image."""
    ext = os.path.splitext(filename or "")[1].lower()
    subtype = (content_type or "").lower().partition("/")[2]
    if ext.lstrip(".") not in ALLOWED_EXTENSIONS or subtype not in ALLOWED_EXTENSIONS:
        raise _reject("Only images are allowed (jpeg, png, gif, webp)")
    return ext


def save_payment_proof(
    upload: UploadFile,
    upload_dir: str = config.UPLOAD_DIR,
    max_bytes: int = config.MAX_UPLOAD_BYTES,
) -> Dict[str, str]:
    if upload is None or not upload.filename:
        raise _reject("File was not uploaded")
    ext = check_image(upload.filename, upload.content_type)

    os.makedirs(upload_dir, exist_ok=True)
    filename = f"screenshot-{int(time.time() * 1000)}-{secrets.randbelow(10 ** 9)}{ext}"
    path = os.path.join(upload_dir, filename)

    written = 0
    try:
        with open(path, "wb") as out:
            while True:
                chunk = upload.file.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise _reject(f"File is larger than {max_bytes // (1024 * 1024)}MB")
                out.write(chunk)
    except Exception:
        if os.path.exists(path):
            os.remove(path)
        raise

    logger.info("Stored payment screenshot %s (%d bytes)", filename, written)
    return {"url": f"/uploads/{filename}", "filename": filename}
