"""Upload task model and the task graph arena.

A logical upload is a two-level graph: one metadata.json upload (the parent)
gating N data-folder uploads (its dependents). Tasks never hold references to
each other; parent and dependent links are ids into a ``TaskGraph``, and the
association with a UI-facing ``UploadUnit`` is a lookup table keyed by task id.
"""

import itertools
import os
import threading
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from media_uploader.services.commands import redact_arguments
from media_uploader.services.errors import FailureReason

if TYPE_CHECKING:
    from media_uploader.services.process_runner import RunningProcess


class TaskKind(Enum):
    """What a task does with the copy tool."""

    METADATA_UPLOAD = "metadata_upload"
    DATA_UPLOAD = "data_upload"
    DATA_REMOVE = "data_remove"
    EXISTENCE_CHECK = "existence_check"
    PENDING_RETRY = "pending_retry"


class TaskStatus(Enum):
    """Execution state of a single task attempt."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED})

_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
}


def _is_list_of(value: Any, item_type: type) -> bool:
    return isinstance(value, list) and all(isinstance(item, item_type) for item in value)


@dataclass(frozen=True)
class UploadRequest:
    """Everything needed to (re)build one logical upload from scratch."""

    show_name: str
    season: str
    episode: str
    shoot_day: str
    batch: str
    unit: str
    source_dirs: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    is_block: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadRequest":
        """Build a request from a JSON payload, raising ValueError on bad input."""
        missing = [
            key
            for key in ("show_name", "season", "episode", "shoot_day", "batch", "unit")
            if not data.get(key)
        ]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        source_dirs = data.get("source_dirs") or {}
        if not isinstance(source_dirs, dict):
            raise ValueError("source_dirs must map folder types to directories")
        for folder_type, paths in source_dirs.items():
            if not _is_list_of(paths, str) or not all(paths):
                raise ValueError(f"source_dirs[{folder_type!r}] must be a list of directories")
        if not any(source_dirs.values()):
            raise ValueError("source_dirs must map folder types to directories")

        files = data.get("files") or {}
        if not isinstance(files, dict):
            raise ValueError("files must map folder types to file records")
        for folder_type, records in files.items():
            if not _is_list_of(records, dict):
                raise ValueError(f"files[{folder_type!r}] must be a list of file records")

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        is_block = data.get("is_block", False)
        if not isinstance(is_block, bool):
            raise ValueError("is_block must be true or false")

        return cls(
            show_name=str(data["show_name"]),
            season=str(data["season"]),
            episode=str(data["episode"]),
            shoot_day=str(data["shoot_day"]),
            batch=str(data["batch"]),
            unit=str(data["unit"]),
            source_dirs={str(k): list(v) for k, v in source_dirs.items()},
            files={str(k): [dict(r) for r in v] for k, v in files.items()},
            metadata=dict(metadata),
            is_block=is_block,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "show_name": self.show_name,
            "season": self.season,
            "episode": self.episode,
            "shoot_day": self.shoot_day,
            "batch": self.batch,
            "unit": self.unit,
            "source_dirs": self.source_dirs,
            "files": self.files,
            "metadata": self.metadata,
            "is_block": self.is_block,
        }


@dataclass
class UploadUnit:
    """One folder being transferred, i.e. one progress row for the UI.

    ``progress`` and ``status_text`` are written only by the unit state
    dispatcher thread.
    """

    unit_id: str
    folder_type: str
    source_path: str
    destination_path: str
    exists_remotely: bool = False
    progress: float = 0.0
    status_text: str = "Pending"
    error_message: str = ""

    @property
    def remote_path(self) -> str:
        """Destination path of the folder itself once uploaded."""
        tail = os.path.basename(self.source_path.rstrip("/"))
        return f"{self.destination_path}{tail}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "unit_id": self.unit_id,
            "folder_type": self.folder_type,
            "source_path": self.source_path,
            "destination_path": self.destination_path,
            "exists_remotely": self.exists_remotely,
            "progress": self.progress,
            "status_text": self.status_text,
            "error_message": self.error_message,
        }


@dataclass(eq=False)
class UploadTask:
    """A single invocation of the copy tool."""

    task_id: int
    kind: TaskKind
    arguments: tuple[str, ...]
    credential: str = field(default="", repr=False)
    parent_id: int | None = None
    dependent_ids: tuple[int, ...] = ()
    retry: bool = False
    context: UploadRequest | None = field(default=None, repr=False)
    original_kind: TaskKind | None = None
    status: TaskStatus = TaskStatus.PENDING
    completion_status: int = 0
    failure: FailureReason | None = None
    error_message: str = ""
    progress: int = 0
    remote_entries: int = 0
    cancel_requested: bool = False
    reported: bool = False
    started_at: float | None = None
    finished_at: float | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _finished: threading.Event = field(default_factory=threading.Event, repr=False)
    _process: "RunningProcess | None" = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCEEDED

    def _transition(self, new_status: TaskStatus) -> bool:
        # Caller holds self.lock
        if new_status not in _TRANSITIONS.get(self.status, frozenset()):
            return False
        self.status = new_status
        if new_status is TaskStatus.RUNNING:
            self.started_at = time.monotonic()
        elif new_status in TERMINAL_STATUSES:
            self.finished_at = time.monotonic()
        return True

    def mark_running(self) -> bool:
        """Move to RUNNING unless cancelled or already started."""
        with self.lock:
            if self.cancel_requested:
                return False
            return self._transition(TaskStatus.RUNNING)

    def mark_succeeded(self) -> bool:
        with self.lock:
            if self.cancel_requested:
                return False
            return self._transition(TaskStatus.SUCCEEDED)

    def mark_failed(self, code: int, reason: FailureReason, message: str) -> bool:
        """Record the failure of this attempt. Returns False if already terminal."""
        with self.lock:
            if not self._transition(TaskStatus.FAILED):
                return False
            self.completion_status = code
            self.failure = reason
            self.error_message = message
            return True

    def mark_cancelled(self) -> bool:
        with self.lock:
            if not self._transition(TaskStatus.CANCELLED):
                return False
            self.failure = FailureReason.CANCELLED
            return True

    def request_cancel(self) -> "RunningProcess | None":
        """Flag the task as cancelled; returns the live process to terminate, if any."""
        with self.lock:
            self.cancel_requested = True
            if self.status is TaskStatus.PENDING:
                self._transition(TaskStatus.CANCELLED)
                self.failure = FailureReason.CANCELLED
            return self._process

    def attach_process(self, process: "RunningProcess | None") -> None:
        with self.lock:
            self._process = process

    def reset_progress(self) -> None:
        with self.lock:
            self.progress = 0

    def mark_reported(self) -> None:
        """Record that every event for the terminal state has been emitted."""
        with self.lock:
            if self.is_terminal:
                self.reported = True

    def settle(self) -> None:
        """Mark the task reported and release threads blocked in ``wait()``.

        Called once all follow-up work of the terminal state is done.
        """
        self.mark_reported()
        if self.reported:
            self._finished.set()

    def advance_progress(self, value: int) -> int | None:
        """Apply a progress reading, clamped to [0, 100] and never decreasing.

        Returns the new value, or None when nothing changed.
        """
        clamped = max(0, min(100, value))
        with self.lock:
            if clamped <= self.progress:
                return None
            self.progress = clamped
            return clamped

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the task is terminal and its events have been emitted."""
        return self._finished.wait(timeout)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (credential-free)."""
        return {
            "task_id": self.task_id,
            "kind": self.kind.value,
            "arguments": redact_arguments(self.arguments),
            "parent_id": self.parent_id,
            "dependent_ids": list(self.dependent_ids),
            "retry": self.retry,
            "status": self.status.value,
            "completion_status": self.completion_status,
            "failure": self.failure.value if self.failure else None,
            "error_message": self.error_message,
            "progress": self.progress,
        }


class TaskGraph:
    """Arena of upload tasks indexed by id.

    Links between tasks are written once, when a task or group is added, and
    never change afterwards, so readers need no locking. The lock only guards
    insertion into and removal from the arena.
    """

    def __init__(self) -> None:
        self._tasks: dict[int, UploadTask] = {}
        self._unit_by_task: dict[int, str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def _insert(self, task: UploadTask, unit_id: str | None) -> None:
        self._tasks[task.task_id] = task
        if unit_id is not None:
            self._unit_by_task[task.task_id] = unit_id

    def add_task(
        self,
        kind: TaskKind,
        arguments: Sequence[str],
        credential: str = "",
        unit_id: str | None = None,
        context: UploadRequest | None = None,
        retry: bool = False,
        parent_id: int | None = None,
    ) -> UploadTask:
        """Add a leaf task."""
        if kind is TaskKind.METADATA_UPLOAD:
            raise ValueError("Metadata uploads must be added with add_group()")
        with self._lock:
            task = UploadTask(
                task_id=next(self._ids),
                kind=kind,
                arguments=tuple(arguments),
                credential=credential,
                parent_id=parent_id,
                retry=retry,
                context=context,
            )
            self._insert(task, unit_id)
        return task

    def add_group(
        self,
        metadata_arguments: Sequence[str],
        data_tasks: Iterable[tuple[Sequence[str], str]],
        credential: str = "",
        context: UploadRequest | None = None,
        retry: bool = False,
    ) -> UploadTask:
        """Add a metadata upload together with its data uploads.

        ``data_tasks`` yields ``(arguments, unit_id)`` pairs. Returns the parent.
        """
        data = list(data_tasks)
        with self._lock:
            parent_id = next(self._ids)
            children = [
                UploadTask(
                    task_id=next(self._ids),
                    kind=TaskKind.DATA_UPLOAD,
                    arguments=tuple(arguments),
                    credential=credential,
                    parent_id=parent_id,
                    retry=retry,
                    context=context,
                )
                for arguments, _ in data
            ]
            parent = UploadTask(
                task_id=parent_id,
                kind=TaskKind.METADATA_UPLOAD,
                arguments=tuple(metadata_arguments),
                credential=credential,
                dependent_ids=tuple(child.task_id for child in children),
                retry=retry,
                context=context,
            )
            self._insert(parent, None)
            for child, (_, unit_id) in zip(children, data, strict=True):
                self._insert(child, unit_id)
        return parent

    def get(self, task_id: int) -> UploadTask:
        return self._tasks[task_id]

    def parent_of(self, task: UploadTask) -> UploadTask | None:
        if task.parent_id is None:
            return None
        return self._tasks.get(task.parent_id)

    def dependents_of(self, task: UploadTask) -> list[UploadTask]:
        return [self._tasks[i] for i in task.dependent_ids if i in self._tasks]

    def unit_id_for(self, task_id: int) -> str | None:
        return self._unit_by_task.get(task_id)

    def park(self, task: UploadTask) -> UploadTask:
        """Create a PENDING_RETRY placeholder standing in for a failed leaf task."""
        if task.kind is TaskKind.METADATA_UPLOAD:
            raise ValueError("Metadata uploads are retried as a whole group")
        with self._lock:
            placeholder = UploadTask(
                task_id=next(self._ids),
                kind=TaskKind.PENDING_RETRY,
                arguments=task.arguments,
                credential=task.credential,
                parent_id=task.parent_id,
                retry=True,
                context=task.context,
                original_kind=task.original_kind or task.kind,
            )
            self._insert(placeholder, self._unit_by_task.get(task.task_id))
        return placeholder

    def retry(self, task: UploadTask) -> UploadTask:
        """Build a fresh attempt of ``task`` with the same arguments and retry=True.

        A metadata upload is rebuilt together with fresh copies of all its
        dependents; a PENDING_RETRY placeholder turns back into its original kind.
        """
        if task.kind is TaskKind.METADATA_UPLOAD:
            return self.add_group(
                task.arguments,
                [
                    (child.arguments, self._unit_by_task[child.task_id])
                    for child in self.dependents_of(task)
                ],
                credential=task.credential,
                context=task.context,
                retry=True,
            )
        kind = task.original_kind or task.kind
        return self.add_task(
            kind,
            task.arguments,
            credential=task.credential,
            unit_id=self._unit_by_task.get(task.task_id),
            context=task.context,
            retry=True,
            parent_id=task.parent_id,
        )

    def discard(self, task_ids: Iterable[int]) -> int:
        """Forget terminal tasks. Returns how many were removed."""
        removed = 0
        with self._lock:
            for task_id in task_ids:
                task = self._tasks.get(task_id)
                if task is None:
                    continue
                if not task.is_terminal and task.kind is not TaskKind.PENDING_RETRY:
                    continue
                del self._tasks[task_id]
                self._unit_by_task.pop(task_id, None)
                removed += 1
        return removed
