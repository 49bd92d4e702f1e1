"""
File, directory and upload utilities.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


def ensure_directory_exists(path: str | Path) -> Path:
    """
    Create the directory (and any missing parents) if it does not exist.

    Args:
        path: Directory path as string or Path.

    Returns:
        Resolved Path of the directory.
    """
    p = Path(path).resolve()
    p.mkdir(parents=True, exist_ok=True)
    return p


def detect_image_mime(data: bytes) -> str:
    """Guess an image MIME type from its magic bytes; JPEG when unknown."""
    if data[:8].startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def read_upload_bytes(uploaded_file: Any) -> bytes:
    """
    Read raw bytes from an uploaded file-like object.

    Raises:
        ValueError: If the file cannot be read or is empty.
    """
    try:
        if hasattr(uploaded_file, "seek"):
            uploaded_file.seek(0)
        data = uploaded_file.read()
    except Exception as e:
        raise ValueError(f"Unable to read file: {e!s}") from e
    if not data:
        raise ValueError("File is empty and cannot be processed.")
    return data
