"""In-memory store for tracking scan progress and cancellation requests."""

import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, field_serializer


class TaskProgress(BaseModel):
    """Progress of one background task (a full scan or a cleanup)."""

    task_id: str
    task_type: str  # 'scan', 'cleanup'
    status: str  # 'running', 'completed', 'failed', 'cancelled'
    current: int = 0
    total: int = 0
    message: str = "Starting..."
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    cancel_requested: bool = False

    @property
    def progress(self) -> float:
        if self.status == "completed":
            return 1.0
        return self.current / self.total if self.total > 0 else 0.0

    @field_serializer("started_at", "completed_at")
    def serialize_datetime(self, dt: Optional[datetime], _info) -> Optional[str]:
        return dt.isoformat() if dt else None


class TaskStore:
    """Thread-safe task registry.

    The scanner reports progress here and polls ``is_cancelled`` between
    worker waves. An API layer or CLI signal handler calls ``cancel_task``
    from another thread.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, TaskProgress] = {}
        self._lock = threading.Lock()

    def create_task(self, task_id: str, task_type: str, total: int = 0) -> TaskProgress:
        with self._lock:
            task = TaskProgress(
                task_id=task_id,
                task_type=task_type,
                status="running",
                total=total,
                started_at=datetime.now(timezone.utc),
            )
            self._tasks[task_id] = task
            return task

    def update_progress(
        self,
        task_id: str,
        current: int,
        message: Optional[str] = None,
        total: Optional[int] = None,
    ) -> None:
        with self._lock:
            if task := self._tasks.get(task_id):
                task.current = current
                if total is not None:
                    task.total = total
                if message:
                    task.message = message

    def get_task(self, task_id: str) -> Optional[TaskProgress]:
        with self._lock:
            return self._tasks.get(task_id)

    def complete_task(
        self, task_id: str, success: bool = True, error: Optional[str] = None
    ) -> None:
        """Mark a task as completed or failed."""
        with self._lock:
            if task := self._tasks.get(task_id):
                task.status = "completed" if success else "failed"
                task.completed_at = datetime.now(timezone.utc)
                task.error = error
                task.message = "Completed successfully" if success else f"Failed: {error}"

    def cancel_task(self, task_id: str) -> bool:
        """Request cancellation of a running task.

        Returns:
            True if the request was recorded, False for unknown or
            finished tasks.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task and task.status == "running":
                task.cancel_requested = True
                task.message = "Cancellation requested..."
                return True
        return False

    def is_cancelled(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            return bool(task and task.cancel_requested)

    def mark_cancelled(self, task_id: str) -> None:
        """Called by the task itself once it has stopped."""
        with self._lock:
            if task := self._tasks.get(task_id):
                task.status = "cancelled"
                task.completed_at = datetime.now(timezone.utc)
                task.message = "Cancelled by user"
