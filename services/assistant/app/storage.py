# On-disk upload area: uploaded files are saved under UPLOAD_DIR with a unique
# prefix and later referenced by that stored name.

import os
import pathlib
import logging
import uuid
from typing import Tuple

from .errors import InputError

logger = logging.getLogger("storage")


def _safe_name(filename: str) -> str:
    return os.path.basename(filename.replace("\\", "/")) or "upload"


def save_bytes(upload_dir: str, filename: str, content: bytes) -> Tuple[str, str, int]:
    """
    Write one upload and return (stored_name, path, size_bytes).
    """
    pathlib.Path(upload_dir).mkdir(parents=True, exist_ok=True)
    stored_name = f"{uuid.uuid4().hex}-{_safe_name(filename)}"
    path = os.path.join(upload_dir, stored_name)
    with open(path, "wb") as f:
        f.write(content)
    logger.info("Saved upload %s -> %s", filename, path)
    return stored_name, path, os.path.getsize(path)


def resolve(upload_dir: str, stored_name: str) -> str:
    """Map a stored name back to its path, refusing anything outside upload_dir."""
    if not stored_name or stored_name != _safe_name(stored_name) or stored_name in (".", ".."):
        raise InputError(f"Invalid stored filename: {stored_name!r}", title="Invalid filename")
    return os.path.join(upload_dir, stored_name)


def delete(upload_dir: str, stored_name: str) -> bool:
    path = resolve(upload_dir, stored_name)
    if not os.path.exists(path):
        return False
    os.remove(path)
    logger.info("Deleted upload %s", path)
    return True
