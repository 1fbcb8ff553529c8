import re
from pathlib import Path

from fastapi import HTTPException, status

from storefront.core.config import get_settings

settings = get_settings()

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
}

CACHE_CONTROL = "public, max-age=31536000, immutable"


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def resolve_upload(filename: str, root: str | Path | None = None) -> Path:
    """
    Map a request path onto a file under the uploads directory.

    Raises:
        HTTPException(400): any `..` segment or an absolute path.
        HTTPException(404): no such file.
    """
    parts = filename.replace("\\", "/").split("/")
    if any(p == ".." for p in parts) or filename.startswith("/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid path",
        )

    base = Path(root or settings.UPLOADS_DIR).resolve()
    path = (base / filename).resolve()
    if base not in path.parents or not path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )
    return path


def save_label(name: str, data: bytes, root: str | Path | None = None) -> str:
    """Store a shipping label under `labels/` and return the URL serving it."""
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", name)
    folder = Path(root or settings.UPLOADS_DIR) / "labels"
    folder.mkdir(parents=True, exist_ok=True)
    (folder / safe).write_bytes(data)
    return f"{settings.API_V1_STR}/files/labels/{safe}"
