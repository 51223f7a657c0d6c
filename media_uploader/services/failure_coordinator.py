"""Propagation of task failures to units and dependents."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from media_uploader.services.errors import DEPENDENCY_BLOCKED_CODE, FailureReason
from media_uploader.services.events import EventSink
from media_uploader.services.log_service import get_log_service
from media_uploader.services.upload_task import (
    TaskGraph,
    TaskKind,
    UploadRequest,
    UploadTask,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailureEvent:
    """One failure notification delivered to the event sink."""

    unit_id: str
    task_id: int
    reason: FailureReason
    completion_status: int
    error_message: str
    recovery_context: UploadRequest | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "unit_id": self.unit_id,
            "task_id": self.task_id,
            "reason": self.reason.value,
            "completion_status": self.completion_status,
            "error_message": self.error_message,
        }


class FailureCoordinator:
    """Turns a failed task into unit failure events.

    A failed metadata upload blocks every one of its data uploads: they are
    failed without ever being launched and each produces its own event. A
    failed leaf task produces a single event. A failed existence check
    produces none; the unit simply counts as not present remotely.
    """

    def __init__(self, graph: TaskGraph, sink: EventSink) -> None:
        self.graph = graph
        self.sink = sink

    def _emit(self, task: UploadTask) -> FailureEvent | None:
        unit_id = self.graph.unit_id_for(task.task_id)
        if unit_id is None or task.failure is None:
            return None
        event = FailureEvent(
            unit_id=unit_id,
            task_id=task.task_id,
            reason=task.failure,
            completion_status=task.completion_status,
            error_message=task.error_message,
            recovery_context=task.context,
        )
        self.sink.on_failed(unit_id, task.error_message, task.context)
        return event

    def task_failed(
        self,
        task: UploadTask,
        reason: FailureReason,
        code: int,
        message: str,
    ) -> list[FailureEvent]:
        """Fail ``task`` (if not already terminal) and propagate.

        Returns the failure events emitted, in order.
        """
        if not task.mark_failed(code, reason, message):
            return []

        get_log_service().error(
            "task",
            "task_failed",
            f"{task.kind.value} task {task.task_id} failed: {message}",
            {
                "task_id": task.task_id,
                "kind": task.kind.value,
                "reason": reason.value,
                "completion_status": code,
            },
        )

        if task.kind is TaskKind.EXISTENCE_CHECK:
            return []
        if task.kind is TaskKind.METADATA_UPLOAD:
            return self._fan_out(task, message)

        event = self._emit(task)
        return [event] if event else []

    def block(
        self,
        task: UploadTask,
        message: str,
        exclude_units: Iterable[str] = (),
    ) -> list[FailureEvent]:
        """Fail a parent that will never run, blocking its dependents.

        Dependents whose unit is in ``exclude_units`` are failed silently, since
        those units already reported their own failure.
        """
        if not task.mark_failed(DEPENDENCY_BLOCKED_CODE, FailureReason.DEPENDENCY_BLOCKED, message):
            return []
        logger.warning("Task %s blocked: %s", task.task_id, message)
        events = self._fan_out(task, message, frozenset(exclude_units))
        task.settle()
        return events

    def _fan_out(
        self,
        parent: UploadTask,
        message: str,
        exclude_units: frozenset[str] = frozenset(),
    ) -> list[FailureEvent]:
        events: list[FailureEvent] = []
        for dependent in self.graph.dependents_of(parent):
            if not dependent.mark_failed(
                DEPENDENCY_BLOCKED_CODE, FailureReason.DEPENDENCY_BLOCKED, message
            ):
                continue
            dependent.reset_progress()
            unit_id = self.graph.unit_id_for(dependent.task_id)
            if unit_id is not None and unit_id not in exclude_units:
                self.sink.on_progress(unit_id, 0)
                event = self._emit(dependent)
                if event:
                    events.append(event)
            dependent.settle()
        if events:
            get_log_service().warning(
                "task",
                "dependents_blocked",
                f"{len(events)} data uploads blocked by task {parent.task_id}",
                {"task_id": parent.task_id, "blocked": [e.unit_id for e in events]},
            )
        return events

    def mark_failing(self, task: UploadTask) -> None:
        """Surface a failure spotted in the output before the process has exited."""
        unit_id = self.graph.unit_id_for(task.task_id)
        logger.warning("Task %s reported a failed job before exiting", task.task_id)
        if unit_id is not None:
            self.sink.on_status(unit_id, "Failed")
