"""
Artifact filename generation and parsing.

Format: backup_{task_id}_{unix_timestamp}.{ext}

Names must stay stable: rotation orders a task's backups by the timestamp
embedded in the name.
"""

import posixpath
import re
import time
from typing import Optional

BACKUP_PREFIX = 'backup_'

_NAME_PATTERN = re.compile(r'^(?P<prefix>.*?)(?P<task_id>\d+)_(?P<timestamp>\d+)(?P<suffix>\..+)$')


def generate_backup_filename(task_id: int, extension: str, timestamp: Optional[float] = None) -> str:
    """
    Generate the artifact filename for a run.

    Args:
        task_id: ID of the backup task
        extension: File extension without the leading dot (zip, sql, ...)
        timestamp: Unix timestamp to embed (defaults to now)

    Returns:
        Filename (without path)
    """
    if timestamp is None:
        timestamp = time.time()

    extension = extension.lstrip('.')
    return f"{BACKUP_PREFIX}{task_id}_{int(timestamp)}.{extension}"


def parse_backup_timestamp(name: str, task_id: int, suffix: str, prefix: str = BACKUP_PREFIX) -> Optional[int]:
    """
    Extract the embedded timestamp from a backup name belonging to a task.

    Accepts bare filenames as well as keys/paths; only the basename is matched.

    Returns:
        Unix timestamp, or None if the name is not a backup of this task
    """
    match = _NAME_PATTERN.match(posixpath.basename(name))
    if not match:
        return None

    if match.group('prefix') != prefix:
        return None
    if int(match.group('task_id')) != int(task_id):
        return None
    if match.group('suffix') != suffix:
        return None

    return int(match.group('timestamp'))
