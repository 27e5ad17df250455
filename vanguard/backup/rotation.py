"""
Count-based retention of uploaded backups.

Keeps the newest `max_to_keep` backups of a task at a destination and
deletes the rest, ordering by the timestamp embedded in each filename.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .exceptions import RotationError
from .naming import BACKUP_PREFIX, parse_backup_timestamp

logger = logging.getLogger(__name__)


@dataclass
class RotationResult:
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class RotationEngine:
    """
    Enforces a maximum backup count for one task at one destination.

    Works against any driver exposing `list_artifacts(store_path)` and
    `delete(reference)`.
    """

    def __init__(self, log: Optional[Callable[[str, str], None]] = None):
        """
        Args:
            log: Optional callback receiving (message, level) for each deletion
        """
        self.log = log

    def _log(self, message: str, level: str = 'info'):
        if level == 'error':
            logger.warning(message)
        else:
            logger.info(message)
        if self.log:
            self.log(message, level)

    def select_expired(self, names: List[str], task_id: int, max_to_keep: int, suffix: str,
                       prefix: str = BACKUP_PREFIX) -> RotationResult:
        """
        Split a task's backups into those to keep and those to delete.

        Names that do not match prefix + task_id + _timestamp + suffix are ignored.
        """
        if max_to_keep < 1:
            raise ValueError(f"max_to_keep must be at least 1, got {max_to_keep}")

        matching = []
        for name in names:
            timestamp = parse_backup_timestamp(name, task_id, suffix, prefix)
            if timestamp is not None:
                matching.append((timestamp, name))

        # Newest first; name breaks ties so ordering is deterministic.
        matching.sort(reverse=True)

        return RotationResult(
            kept=[name for _, name in matching[:max_to_keep]],
            deleted=[name for _, name in matching[max_to_keep:]]
        )

    def rotate(self, driver, task_id: int, max_to_keep: int, suffix: str,
               prefix: str = BACKUP_PREFIX, store_path: Optional[str] = None) -> RotationResult:
        """
        Delete a task's oldest backups beyond the retention limit.

        A failed deletion is logged and the remaining deletions still run.

        Returns:
            RotationResult; `deleted` lists successful deletions only

        Raises:
            RotationError: If the existing backups cannot be listed
        """
        try:
            names = driver.list_artifacts(store_path)
        except RotationError:
            raise
        except Exception as e:
            raise RotationError(f"Failed to list existing backups: {e}")

        plan = self.select_expired(names, task_id, max_to_keep, suffix, prefix)
        result = RotationResult(kept=plan.kept)

        for name in plan.deleted:
            try:
                driver.delete(name)
                result.deleted.append(name)
                self._log(f"Deleted old backup: {name}")
            except Exception as e:
                result.failed.append(name)
                self._log(f"Failed to delete old backup {name}: {e}", 'error')

        return result
