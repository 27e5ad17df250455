"""
Admission control: at most one running backup per remote server.

The registry is advisory. The orchestrator asks it before connecting and
declines the run when another task already holds the server.
"""

import threading
from typing import Dict, Optional


class InMemoryServerRegistry:
    """Thread-safe registry for runs inside a single process."""

    def __init__(self):
        self._active: Dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, server_key: str, task_id: int) -> bool:
        """
        Claim a server for a task.

        Returns:
            True if the task may run, False if any run (including an earlier
            run of the same task) holds the server
        """
        with self._lock:
            if server_key in self._active:
                return False
            self._active[server_key] = task_id
            return True

    def release(self, server_key: str, task_id: int):
        with self._lock:
            if self._active.get(server_key) == task_id:
                del self._active[server_key]

    def active_task(self, server_key: str) -> Optional[int]:
        with self._lock:
            return self._active.get(server_key)
