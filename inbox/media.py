from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import aiofiles
from fastapi import HTTPException, UploadFile

from . import config

logger = logging.getLogger(__name__)

_FALLBACK_EXTENSIONS = {"image": "jpg", "video": "mp4", "audio": "ogg"}
_URL_KINDS = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".webp"},
    "video": {".mp4", ".mov", ".webm", ".3gp", ".mkv"},
    "audio": {".mp3", ".ogg", ".opus", ".wav", ".m4a", ".aac"},
    "document": {".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".csv", ".zip"},
}


def extension_for(mimetype: Optional[str], media_type: Optional[str]) -> str:
    """File extension for a received mimetype (`audio/ogg; codecs=opus` -> `ogg`)."""
    mt = (mimetype or "").lower()
    if "codecs=" in mt:
        return "ogg"
    if "/" in mt:
        sub = mt.split("/", 1)[1].split(";", 1)[0].strip()
        if sub == "jpeg":
            return "jpg"
        if sub and sub.isalnum():
            return sub
    return _FALLBACK_EXTENSIONS.get(media_type or "", "bin")


def media_type_for_mimetype(mimetype: Optional[str]) -> str:
    mt = (mimetype or "").lower()
    for prefix in ("image", "video", "audio"):
        if mt.startswith(prefix + "/"):
            return prefix
    return "document"


def media_kind_from_url(url: Optional[str]) -> Optional[str]:
    path = urlparse(url or "").path.lower()
    ext = os.path.splitext(path)[1]
    for kind, exts in _URL_KINDS.items():
        if ext in exts:
            return kind
    return None


def public_url_for(path_or_url: Optional[str], public_url: Optional[str] = None) -> Optional[str]:
    """Make a stored relative path (`/uploads/x.jpg`) absolute."""
    if not path_or_url:
        return None
    if path_or_url.startswith(("http://", "https://", "data:")):
        return path_or_url
    base = (public_url if public_url is not None else config.PUBLIC_URL).rstrip("/")
    return f"{base}/{path_or_url.lstrip('/')}"


def is_internal_media_url(url: Optional[str]) -> bool:
    # WhatsApp CDN links are encrypted blobs that browsers cannot render.
    return bool(url) and "whatsapp.net" in str(url)


def _unique_name(prefix: str, ext: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}.{ext}"


async def save_base64_as_file(
    data: str,
    media_type: Optional[str],
    mimetype: Optional[str],
    *,
    upload_dir: Optional[Path] = None,
    public_url: Optional[str] = None,
) -> Optional[str]:
    """Decode base64 media into the upload dir and return its public URL.

    Accepts raw base64 or a data URI. Returns None when the payload can't be decoded.
    """
    if not data:
        return None
    raw = data.split("base64,", 1)[1] if "base64," in data else data
    try:
        content = base64.b64decode(raw, validate=False)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Discarding undecodable base64 media (%s): %s", media_type, exc)
        return None
    if not content:
        return None
    target_dir = Path(upload_dir or config.UPLOAD_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = _unique_name(media_type or "file", extension_for(mimetype, media_type))
    async with aiofiles.open(target_dir / filename, "wb") as f:
        await f.write(content)
    base = (public_url if public_url is not None else config.PUBLIC_URL).rstrip("/")
    logger.info("Saved %s media (%s bytes) as %s", media_type, len(content), filename)
    return f"{base}/uploads/{filename}"


async def save_upload(
    file: UploadFile,
    *,
    subdir: str = "",
    max_bytes: Optional[int] = None,
    allowed_types: Optional[set] = None,
    upload_dir: Optional[Path] = None,
) -> tuple[str, str, int]:
    """Persist a multipart upload under the upload dir.

    Returns (relative_url, stored_filename, size). Raises HTTPException(400/413) on
    a rejected type or an oversized body.
    """
    content_type = (file.content_type or "").split(";", 1)[0].strip().lower()
    if allowed_types is not None and content_type not in allowed_types:
        raise HTTPException(status_code=400, detail=f"File type not allowed: {content_type or 'unknown'}")
    limit = int(max_bytes or config.MAX_UPLOAD_BYTES)
    content = await file.read()
    if len(content) > limit:
        raise HTTPException(status_code=413, detail=f"File too large (max {limit // (1024 * 1024)}MB)")
    ext = os.path.splitext(file.filename or "")[1].lstrip(".").lower() or extension_for(
        content_type, media_type_for_mimetype(content_type)
    )
    target_dir = Path(upload_dir or config.UPLOAD_DIR) / subdir if subdir else Path(upload_dir or config.UPLOAD_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = _unique_name(media_type_for_mimetype(content_type), ext)
    async with aiofiles.open(target_dir / filename, "wb") as f:
        await f.write(content)
    rel = f"/uploads/{subdir + '/' if subdir else ''}{filename}"
    return rel, filename, len(content)


async def remove_upload(relative_url: Optional[str], *, upload_dir: Optional[Path] = None) -> bool:
    """Delete a file previously returned by `save_upload` (best-effort)."""
    if not relative_url or not relative_url.startswith("/uploads/"):
        return False
    base = Path(upload_dir or config.UPLOAD_DIR).resolve()
    target = (base / relative_url[len("/uploads/"):]).resolve()
    if base not in target.parents:
        return False
    try:
        target.unlink()
        return True
    except FileNotFoundError:
        return False
