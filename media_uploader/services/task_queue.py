"""Scheduling and execution of upload tasks.

Uploads run on a bounded thread pool, one copy-tool process per task attempt.
Existence checks and removals share a single-worker pool so they run strictly
one after another. Data uploads gated by a metadata upload are only released
once the metadata upload succeeded and a settling delay has elapsed, giving
the storage side time to register the new metadata.json.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from media_uploader.services.commands import redact_arguments
from media_uploader.services.errors import (
    TOOL_UNAVAILABLE_CODE,
    FailureReason,
    ToolUnavailableError,
)
from media_uploader.services.events import EventSink
from media_uploader.services.failure_coordinator import FailureCoordinator
from media_uploader.services.log_service import get_log_service
from media_uploader.services.output_parser import (
    LineAccumulator,
    count_listing_entries,
    failure_message,
    parse_progress,
    parse_result,
)
from media_uploader.services.process_runner import ProcessRunner
from media_uploader.services.upload_task import TaskGraph, TaskKind, TaskStatus, UploadTask

logger = logging.getLogger(__name__)

SEQUENTIAL_KINDS = frozenset({TaskKind.EXISTENCE_CHECK, TaskKind.DATA_REMOVE})

TaskCallback = Callable[[UploadTask], None]


@dataclass
class _OutputState:
    """What has been learned from a task's output so far."""

    status_code: int = 0
    error_message: str = ""
    entries: int = 0


class TaskQueue:
    """Runs upload tasks with dependency ordering and bounded concurrency."""

    def __init__(
        self,
        graph: TaskGraph,
        sink: EventSink,
        tool_path: str,
        runner: ProcessRunner | None = None,
        failure_coordinator: FailureCoordinator | None = None,
        max_workers: int = 4,
        settling_delay: float = 10.0,
        on_task_finished: TaskCallback | None = None,
    ) -> None:
        self.graph = graph
        self.sink = sink
        self.tool_path = tool_path
        self.runner = runner or ProcessRunner()
        self.failure_coordinator = failure_coordinator or FailureCoordinator(graph, sink)
        self.settling_delay = settling_delay
        self.on_task_finished = on_task_finished
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="upload")
        self._sequential = ThreadPoolExecutor(max_workers=1, thread_name_prefix="upload-seq")
        self._condition = threading.Condition()
        self._queued: set[int] = set()
        self._timers: dict[int, threading.Timer] = {}
        self._outstanding = 0
        self._closed = False

    @property
    def outstanding(self) -> int:
        """Tasks queued or running plus settling timers not yet fired."""
        with self._condition:
            return self._outstanding

    def submit(
        self,
        tasks: UploadTask | Iterable[UploadTask],
        wait_for_completion: bool = False,
    ) -> list[UploadTask]:
        """Queue tasks for execution.

        Tasks that are already terminal, queued or running are skipped.

        Args:
            tasks: A task or tasks to run
            wait_for_completion: Block until every queued task is terminal

        Returns:
            The tasks that were actually queued

        Raises:
            ValueError: For a PENDING_RETRY placeholder, or a data upload whose
                metadata upload has not succeeded
            RuntimeError: If the queue has been shut down
        """
        batch = [tasks] if isinstance(tasks, UploadTask) else list(tasks)
        for task in batch:
            if task.kind is TaskKind.PENDING_RETRY:
                raise ValueError(
                    f"Task {task.task_id} is a retry placeholder; build a fresh attempt first"
                )
            if task.parent_id is not None and not task.is_terminal:
                parent = self.graph.parent_of(task)
                if parent is None or not parent.succeeded:
                    raise ValueError(
                        f"Task {task.task_id} depends on task {task.parent_id}, "
                        "which has not succeeded"
                    )

        queued: list[UploadTask] = []
        with self._condition:
            if self._closed:
                raise RuntimeError("Task queue has been shut down")
            for task in batch:
                if task.is_terminal or task.task_id in self._queued:
                    continue
                self._queued.add(task.task_id)
                self._outstanding += 1
                queued.append(task)

        for task in queued:
            executor = self._sequential if task.kind in SEQUENTIAL_KINDS else self._pool
            executor.submit(self._run_task, task)

        if wait_for_completion:
            for task in queued:
                task.wait()
        return queued

    def drain(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued, running or waiting on a settling delay.

        Returns:
            False if the timeout expired first
        """
        with self._condition:
            return self._condition.wait_for(lambda: self._outstanding == 0, timeout)

    def cancel(self, task: UploadTask) -> bool:
        """Cancel a task.

        A pending task will never run. A running task has its process
        terminated and becomes CANCELLED once the process has exited.
        Cancelling a metadata upload also cancels its data uploads and any
        pending settling delay. No failure events are emitted.

        Returns:
            True if the task was not yet terminal
        """
        was_terminal = task.is_terminal
        self._cancel_one(task)

        if task.kind is TaskKind.METADATA_UPLOAD:
            with self._condition:
                timer = self._timers.pop(task.task_id, None)
                if timer is not None:
                    timer.cancel()
                    self._outstanding -= 1
                    self._condition.notify_all()
            for dependent in self.graph.dependents_of(task):
                self._cancel_one(dependent)

        if not was_terminal:
            get_log_service().warning(
                "task",
                "task_cancelled",
                f"{task.kind.value} task {task.task_id} cancelled",
                {"task_id": task.task_id, "kind": task.kind.value},
            )
        return not was_terminal

    def _cancel_one(self, task: UploadTask) -> None:
        if task.is_terminal:
            return
        with self._condition:
            queued = task.task_id in self._queued
            process = task.request_cancel()
        if process is not None:
            process.terminate()
        # Queued tasks report their own completion from the worker
        if not queued and task.status is TaskStatus.CANCELLED:
            task.mark_reported()
            self._notify_finished(task)
            task.settle()

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and drop pending settling delays."""
        with self._condition:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
            self._outstanding -= len(timers)
            self._condition.notify_all()
        for timer in timers:
            timer.cancel()
        self._pool.shutdown(wait=wait)
        self._sequential.shutdown(wait=wait)

    def _run_task(self, task: UploadTask) -> None:
        try:
            self._execute(task)
        except Exception as e:
            logger.exception("Unexpected error running task %s", task.task_id)
            self.failure_coordinator.task_failed(
                task, FailureReason.PROCESS_EXIT_FAILURE, 1, f"Unexpected error: {e}"
            )
        finally:
            if task.kind is TaskKind.METADATA_UPLOAD and task.succeeded:
                self._schedule_dependents(task)
            # Terminal events were emitted by _execute; the hook may rely on them
            task.mark_reported()
            self._notify_finished(task)
            task.settle()
            with self._condition:
                self._queued.discard(task.task_id)
                self._outstanding -= 1
                self._condition.notify_all()

    def _notify_finished(self, task: UploadTask) -> None:
        if self.on_task_finished is None or not task.is_terminal:
            return
        try:
            self.on_task_finished(task)
        except Exception:
            logger.exception("Task finished hook failed for task %s", task.task_id)

    def _execute(self, task: UploadTask) -> None:
        if not task.mark_running():
            return

        unit_id = self.graph.unit_id_for(task.task_id)
        log = get_log_service()
        log.info(
            "task",
            "task_started",
            f"Starting {task.kind.value} task {task.task_id}",
            {
                "task_id": task.task_id,
                "kind": task.kind.value,
                "retry": task.retry,
                "arguments": redact_arguments(task.arguments),
            },
        )
        if unit_id is not None:
            if task.kind is TaskKind.DATA_UPLOAD:
                self.sink.on_started(unit_id, task.retry)
            elif task.kind is TaskKind.DATA_REMOVE:
                self.sink.on_status(unit_id, "Removing")

        try:
            process = self.runner.start(self.tool_path, task.arguments)
        except ToolUnavailableError as e:
            self.failure_coordinator.task_failed(
                task, FailureReason.TOOL_UNAVAILABLE, TOOL_UNAVAILABLE_CODE, str(e)
            )
            return

        task.attach_process(process)
        if task.cancel_requested:
            process.terminate()

        accumulator = LineAccumulator()
        state = _OutputState()

        def on_output(chunk: str) -> None:
            lines = accumulator.feed(chunk)
            if lines:
                self._consume(task, unit_id, lines, state)

        try:
            exit_code = process.wait(on_output)
        finally:
            task.attach_process(None)
        tail = accumulator.flush()
        if tail:
            self._consume(task, unit_id, tail, state)

        if task.cancel_requested:
            task.mark_cancelled()
            return

        if exit_code != 0:
            self.failure_coordinator.task_failed(
                task,
                FailureReason.PROCESS_EXIT_FAILURE,
                exit_code,
                state.error_message or failure_message(task.kind),
            )
            return
        if state.status_code != 0:
            self.failure_coordinator.task_failed(
                task, FailureReason.JOB_STATUS_FAILURE, state.status_code, state.error_message
            )
            return

        if task.kind is TaskKind.EXISTENCE_CHECK:
            task.remote_entries = state.entries
        if not task.mark_succeeded():
            # Cancel arrived after the exit code was read
            task.mark_cancelled()
            return

        log.info(
            "task",
            "task_succeeded",
            f"{task.kind.value} task {task.task_id} succeeded",
            {"task_id": task.task_id, "kind": task.kind.value},
        )
        if unit_id is not None:
            if task.kind is TaskKind.DATA_UPLOAD:
                task.advance_progress(100)
                self.sink.on_completed(unit_id)
            elif task.kind is TaskKind.DATA_REMOVE:
                self.sink.on_status(unit_id, "Removed")

    def _consume(
        self,
        task: UploadTask,
        unit_id: str | None,
        text: str,
        state: _OutputState,
    ) -> None:
        if task.kind is TaskKind.DATA_UPLOAD:
            progress = parse_progress(text)
            if progress is not None:
                applied = task.advance_progress(progress)
                if applied is not None and unit_id is not None:
                    self.sink.on_progress(unit_id, applied)
        elif task.kind is TaskKind.EXISTENCE_CHECK:
            state.entries += count_listing_entries(text)

        if state.status_code == 0:
            status_code, message = parse_result(text, task.kind)
            if status_code != 0:
                state.status_code = status_code
                state.error_message = message
                self.failure_coordinator.mark_failing(task)

    def _schedule_dependents(self, parent: UploadTask) -> None:
        if not any(d.status is TaskStatus.PENDING for d in self.graph.dependents_of(parent)):
            return
        if self.settling_delay <= 0:
            self._release_dependents(parent)
            return

        timer = threading.Timer(self.settling_delay, self._on_settled, args=(parent,))
        timer.daemon = True
        with self._condition:
            if self._closed:
                return
            self._timers[parent.task_id] = timer
            self._outstanding += 1
        logger.info(
            "Releasing %d data uploads of task %s in %.1fs",
            len(parent.dependent_ids),
            parent.task_id,
            self.settling_delay,
        )
        timer.start()

    def _on_settled(self, parent: UploadTask) -> None:
        with self._condition:
            # Absent when cancelled or shut down; the count was already adjusted
            if self._timers.pop(parent.task_id, None) is None:
                return
        try:
            self._release_dependents(parent)
        except Exception:
            logger.exception("Failed to release data uploads of task %s", parent.task_id)
        finally:
            with self._condition:
                self._outstanding -= 1
                self._condition.notify_all()

    def _release_dependents(self, parent: UploadTask) -> None:
        pending = [
            d
            for d in self.graph.dependents_of(parent)
            if d.status is TaskStatus.PENDING and not d.cancel_requested
        ]
        if pending:
            self.submit(pending)
