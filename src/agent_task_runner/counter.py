"""Project-wide task id allocation."""

from __future__ import annotations

from pathlib import Path

from filelock import FileLock
from loguru import logger

from .constants import COUNTER_FILE, COUNTER_LOCK_FILE, TASK_FILE, TASKS_DIR
from .io_utils import _atomic_write_json, _load_data_with_error


class TaskCounter:
    """Hand out monotonically increasing task ids.

    The read-increment-write cycle runs under an exclusive file lock, so
    concurrent ``create`` invocations in the same project never share an id.
    The counter also never goes below the highest existing task directory,
    which keeps ids unique when ``counter.json`` is lost or edited by hand.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / COUNTER_FILE
        self.lock_path = self.state_dir / COUNTER_LOCK_FILE

    def _highest_task_dir(self) -> int:
        tasks_dir = self.state_dir / TASKS_DIR
        if not tasks_dir.exists():
            return 0
        ids = [
            int(entry.name)
            for entry in tasks_dir.iterdir()
            if entry.is_dir() and entry.name.isdigit() and (entry / TASK_FILE).exists()
        ]
        return max(ids, default=0)

    def _stored_last_id(self) -> int:
        data, err = _load_data_with_error(self.path, {})
        if err:
            logger.warning("Ignoring unreadable task counter: {}", err)
            return 0
        try:
            return int(data.get("last_id", 0))
        except (TypeError, ValueError):
            return 0

    def peek(self) -> int:
        """Return the id the next call to :meth:`next_id` would allocate."""
        return max(self._stored_last_id(), self._highest_task_dir()) + 1

    def next_id(self) -> int:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.lock_path)):
            task_id = self.peek()
            _atomic_write_json(self.path, {"last_id": task_id})
        logger.debug("Allocated task id {}", task_id)
        return task_id
