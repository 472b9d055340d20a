from __future__ import annotations

import hashlib
import hmac
import re
import time
import uuid
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlencode

from tradegate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_URL_EXPIRY_SECONDS = 600

_CONTENT_TYPE_SUFFIXES = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "image/jpeg": ".jpg",
    "image/png": ".png",
}


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def _signature(key: str, expires_at: int, secret_key: str) -> str:
    message = f"{key}|{expires_at}"
    return hmac.new(
        secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def validate_signed_key(
    key: str, expires: str, signature: str, secret_key: str
) -> Tuple[bool, Optional[str]]:
    """Check a presigned download link; returns ``(is_valid, error_message)``."""
    try:
        expires_at = int(expires)
    except (ValueError, TypeError):
        return False, "invalid expiry format"
    if time.time() > expires_at:
        return False, "URL has expired"
    if not hmac.compare_digest(signature or "", _signature(key, expires_at, secret_key)):
        return False, "invalid signature"
    return True, None


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.") or "file"


class LocalBlobStore:
    """Blob store on the shared filesystem with HMAC-signed download links."""

    def __init__(
        self, fs_root: str, secret_key: str, *, base_url: str = "/api/files"
    ) -> None:
        self.root = Path(fs_root) / "blobs"
        self.root.mkdir(parents=True, exist_ok=True)
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    def put(self, data: bytes, content_type: str, path_hint: str) -> Dict[str, str]:
        hint = Path(path_hint)
        suffix = hint.suffix.lower() or _CONTENT_TYPE_SUFFIXES.get(content_type, "")
        parts = [_slug(p) for p in hint.parent.parts if p not in ("", ".", "..", "/")]
        name = f"{_slug(hint.stem)}-{uuid.uuid4().hex[:12]}{suffix}"
        key = "/".join([*parts, name])
        target = safe_join(self.root, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("blob_stored", key=key, size=len(data), content_type=content_type)
        return {"url": f"{self.base_url}/{quote(key)}", "key": key}

    def presign(self, key: str, ttl_seconds: int = DEFAULT_URL_EXPIRY_SECONDS) -> str:
        expires_at = int(time.time()) + ttl_seconds
        params = urlencode(
            {"expires": expires_at, "sig": _signature(key, expires_at, self.secret_key)}
        )
        return f"{self.base_url}/{quote(key)}?{params}"

    def validate(self, key: str, expires: str, signature: str) -> Tuple[bool, Optional[str]]:
        return validate_signed_key(key, expires, signature, self.secret_key)

    def open_path(self, key: str) -> Path:
        path = safe_join(self.root, key)
        if not path.is_file():
            raise FileNotFoundError(key)
        return path
