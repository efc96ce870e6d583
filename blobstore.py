"""
Local-disk blob store for report evidence and petition images.

The workflow never sees file bytes: save() returns an opaque
"/uploads/<subdir>/<name>" reference that is stored verbatim on the entity.
"""

import logging
import os
import secrets
import time
from pathlib import Path
from typing import Iterable, Optional

from fastapi import UploadFile

from errors import ValidationError

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_EVIDENCE_BYTES = int(os.getenv("MAX_EVIDENCE_BYTES", str(10 * 1024 * 1024)))
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif")
EVIDENCE_TYPES = IMAGE_TYPES + (
    "video/mp4",
    "video/quicktime",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)

URL_PREFIX = "/uploads/"


class BlobStore:
    def __init__(self, root: str = UPLOAD_DIR):
        self.root = Path(root)

    def save(
        self,
        upload: UploadFile,
        subdir: str,
        prefix: str,
        allowed_types: Iterable[str],
        max_bytes: int,
    ) -> str:
        if upload.content_type not in allowed_types:
            raise ValidationError(f"Invalid file type: {upload.content_type}")
        data = upload.file.read(max_bytes + 1)
        if len(data) > max_bytes:
            raise ValidationError(f"File size is too large. Max size is {max_bytes // (1024 * 1024)}MB.")
        if not data:
            raise ValidationError("No file uploaded")

        ext = Path(upload.filename or "").suffix.lower()
        name = f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}{ext}"
        target_dir = self.root / subdir
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / name).write_bytes(data)
        logger.info("stored upload %s/%s (%d bytes)", subdir, name, len(data))
        return f"{URL_PREFIX}{subdir}/{name}"

    def path_for(self, ref: str) -> Optional[Path]:
        if not ref or not ref.startswith(URL_PREFIX):
            return None
        candidate = (self.root / ref[len(URL_PREFIX):]).resolve()
        if self.root.resolve() not in candidate.parents:
            return None
        return candidate

    def delete(self, ref: Optional[str]) -> None:
        """Best effort; the entity is already gone when this runs."""
        path = self.path_for(ref) if ref else None
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("failed to delete blob %s: %s", ref, e)
