"""Shared utility functions for the core and ledger modules.

Provides corruption-safe JSON read/write helpers with automatic backup
rotation and atomic write semantics, plus secret masking for log lines.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def safe_json_read(
    filepath: str, max_backups: int = 3,
) -> Optional[Dict[str, Any]]:
    """Read a JSON object with fallback to backups if corrupted.

    Tries the primary file first, then numbered backup files
    (e.g. ``file.json.backup.1``, ``file.json.backup.2``) in order
    until one parses to a JSON object.

    Args:
        filepath: Path to the primary JSON file.
        max_backups: Maximum number of backup files to check
            (default ``3``).

    Returns:
        Parsed dictionary on success, or ``None`` if all files are
        missing, corrupted, or hold something other than an object.
    """
    paths = [filepath] + [
        f"{filepath}.backup.{i}"
        for i in range(1, max_backups + 1)
    ]
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable JSON file %s: %s", path, e)
            continue
        if isinstance(data, dict):
            return data
        logger.warning("Ignoring %s: expected a JSON object", path)
    return None


def safe_json_write(
    filepath: str,
    data: Dict[str, Any],
    max_backups: int = 3,
) -> bool:
    """Atomic JSON write with corruption protection and backups.

    The write sequence is:
        1. Rotate existing backups (``backup.2`` -> ``backup.3``, etc.).
        2. Copy the current file's content to ``backup.1``.
        3. Write new data to a temporary file.
        4. Validate the temporary file by re-reading it.
        5. Atomically replace the target with the temporary file.

    Args:
        filepath: Destination path for the JSON file.
        data: Dictionary to serialise and write.
        max_backups: Number of backup generations to keep
            (default ``3``).

    Returns:
        ``True`` if the file was replaced, ``False`` if the write failed
        (the failure is logged, the previous file is left in place).
    """
    try:
        dirpath = os.path.dirname(filepath)
        if dirpath:
            os.makedirs(dirpath, exist_ok=True)

        if os.path.exists(filepath) and max_backups > 0:
            backup_base = filepath + ".backup"
            for i in range(max_backups - 1, 0, -1):
                old = f"{backup_base}.{i}"
                new = f"{backup_base}.{i + 1}"
                if os.path.exists(old):
                    os.replace(old, new)
            with open(filepath, "rb") as src, open(f"{backup_base}.1", "wb") as dst:
                dst.write(src.read())

        temp_file = filepath + ".tmp"
        with open(temp_file, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)

        # Validate by re-reading before committing
        with open(temp_file, "r", encoding="utf-8") as fh:
            json.load(fh)

        os.replace(temp_file, filepath)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.warning(
            "Could not safely write JSON to %s: %s",
            filepath, e,
        )
        return False


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask all but the last *visible* characters of a secret.

    >>> mask_secret("abcdef123456")
    '********3456'
    """
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
