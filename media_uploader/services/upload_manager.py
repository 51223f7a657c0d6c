"""Upload manager for orchestrating media uploads with AzCopy."""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from media_uploader.config import CONFLICT_POLICIES, get_settings
from media_uploader.services.commands import (
    build_destination_url,
    data_upload_arguments,
    existence_check_arguments,
    metadata_upload_arguments,
    remove_arguments,
)
from media_uploader.services.errors import CredentialUnavailableError, JobNotFoundError
from media_uploader.services.events import (
    BaseEventSink,
    LoggingEventSink,
    UnitStateDispatcher,
)
from media_uploader.services.failure_coordinator import FailureCoordinator
from media_uploader.services.log_service import get_log_service
from media_uploader.services.metadata import (
    data_destination,
    folder_layout,
    metadata_destination,
    remove_metadata_file,
    uploadable_types,
    write_metadata_file,
)
from media_uploader.services.process_runner import ProcessRunner
from media_uploader.services.session import SessionContext
from media_uploader.services.task_queue import TaskQueue
from media_uploader.services.upload_task import (
    TaskGraph,
    TaskKind,
    TaskStatus,
    UploadRequest,
    UploadTask,
    UploadUnit,
)

logger = logging.getLogger(__name__)

REMOVAL_FAILURE_MESSAGE = "Failed to remove existing remote folders"


class UploadStatus(Enum):
    """Status of an upload job."""

    PENDING = "pending"
    CHECKING = "checking"
    REMOVING = "removing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}
)


@dataclass
class UploadJob:
    """One upload request and the tasks of its current attempt."""

    job_id: str
    request: UploadRequest
    conflict_policy: str
    units: list[UploadUnit] = field(default_factory=list)
    status: UploadStatus = UploadStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled: bool = False
    attempt: int = 1
    message: str = ""
    metadata_task_id: int | None = None
    task_ids: list[int] = field(default_factory=list)
    metadata_file: str | None = None
    failures: list[dict[str, Any]] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def progress_percent(self) -> float:
        """Average progress across units."""
        if not self.units:
            return 0.0
        return round(sum(u.progress for u in self.units) / len(self.units), 1)

    @property
    def units_completed(self) -> int:
        return sum(1 for u in self.units if u.status_text == "Completed")

    @property
    def units_failed(self) -> int:
        return sum(1 for u in self.units if u.status_text == "Failed")

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def unit(self, unit_id: str) -> UploadUnit | None:
        return next((u for u in self.units if u.unit_id == unit_id), None)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the job reaches a terminal status."""
        return self._done.wait(timeout)

    def to_progress_dict(self) -> dict[str, Any]:
        """Lightweight dict for SSE progress events."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "units_completed": self.units_completed,
            "units_failed": self.units_failed,
            "total_units": len(self.units),
            "cancelled": self.cancelled,
            "units": [
                {
                    "unit_id": u.unit_id,
                    "progress": u.progress,
                    "status_text": u.status_text,
                    "error_message": u.error_message,
                }
                for u in self.units
            ],
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "show_name": self.request.show_name,
            "request": self.request.to_dict(),
            "conflict_policy": self.conflict_policy,
            "units": [u.to_dict() for u in self.units],
            "total_units": len(self.units),
            "units_completed": self.units_completed,
            "units_failed": self.units_failed,
            "progress_percent": self.progress_percent,
            "failures": list(self.failures),
            "attempt": self.attempt,
            "message": self.message,
            "cancelled": self.cancelled,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


JobCallback = Callable[[UploadJob], None]


class _JobEventSink(BaseEventSink):
    """Records unit failures on their job and relays job progress to callbacks.

    Runs on the unit state dispatcher thread, after the unit has been updated.
    """

    def __init__(self, manager: "UploadManager") -> None:
        self._manager = manager

    def _notify(self, unit_id: str) -> UploadJob | None:
        job = self._manager.job_for_unit(unit_id)
        if job is not None:
            self._manager.notify(job)
        return job

    def on_started(self, unit_id: str, retry: bool) -> None:
        self._notify(unit_id)

    def on_progress(self, unit_id: str, percent: int) -> None:
        self._notify(unit_id)

    def on_status(self, unit_id: str, text: str) -> None:
        self._notify(unit_id)

    def on_completed(self, unit_id: str) -> None:
        self._notify(unit_id)

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None:
        job = self._manager.job_for_unit(unit_id)
        if job is None:
            return
        with job.lock:
            job.failures.append(
                {
                    "unit_id": unit_id,
                    "error": error_message,
                    "timestamp": datetime.now(UTC).isoformat(),
                }
            )
        self._manager.notify(job)


class UploadManager:
    """Manages upload jobs and their execution."""

    def __init__(
        self,
        session: SessionContext,
        runner: ProcessRunner | None = None,
        max_workers: int | None = None,
        settling_delay: float | None = None,
        metadata_directory: str | Path | None = None,
        folder_overrides: dict[str, str] | None = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.metadata_directory = Path(metadata_directory or settings.metadata_directory)
        self.folder_overrides = (
            folder_overrides if folder_overrides is not None else settings.folder_overrides
        )
        self.jobs: dict[str, UploadJob] = {}
        self._job_by_unit: dict[str, str] = {}
        self._job_by_task: dict[int, str] = {}
        self._callbacks: dict[str, JobCallback] = {}
        self._lock = threading.Lock()

        self.graph = TaskGraph()
        self.dispatcher = UnitStateDispatcher([_JobEventSink(self), LoggingEventSink()])
        self.failure_coordinator = FailureCoordinator(self.graph, self.dispatcher)
        self.queue = TaskQueue(
            self.graph,
            self.dispatcher,
            tool_path=session.tool_path,
            runner=runner,
            failure_coordinator=self.failure_coordinator,
            max_workers=max_workers or settings.max_workers,
            settling_delay=(
                settling_delay if settling_delay is not None else settings.settling_delay_seconds
            ),
            on_task_finished=self._on_task_finished,
        )

    def get_job(self, job_id: str) -> UploadJob | None:
        """Get a job by ID."""
        return self.jobs.get(job_id)

    def require_job(self, job_id: str) -> UploadJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def job_for_unit(self, unit_id: str) -> UploadJob | None:
        job_id = self._job_by_unit.get(unit_id)
        return self.jobs.get(job_id) if job_id else None

    def notify(self, job: UploadJob) -> None:
        """Invoke the progress callback registered for a job, if any."""
        callback = self._callbacks.get(job.job_id)
        if callback is None:
            return
        try:
            callback(job)
        except Exception:
            logger.warning("Progress callback failed for job %s", job.job_id, exc_info=True)

    def create_job(self, request: UploadRequest, conflict_policy: str | None = None) -> UploadJob:
        """Create a job and its units for ``request`` without starting it.

        Raises:
            ValueError: On an unknown conflict policy or nothing to upload
            CredentialUnavailableError: If the session has no credential for the show
        """
        policy = (conflict_policy or get_settings().conflict_policy).lower()
        if policy not in CONFLICT_POLICIES:
            raise ValueError(f"Unknown conflict policy {policy!r}")
        self.session.credential_for(request.show_name)

        layout = folder_layout(request)
        units = [
            UploadUnit(
                unit_id=str(uuid.uuid4()),
                folder_type=folder_type,
                source_path=source_dir,
                destination_path=data_destination(layout, folder_type, self.folder_overrides),
            )
            for folder_type in uploadable_types(request)
            for source_dir in request.source_dirs[folder_type]
        ]
        if not units:
            raise ValueError("No source folders to upload")

        job = UploadJob(
            job_id=str(uuid.uuid4()), request=request, conflict_policy=policy, units=units
        )
        with self._lock:
            self.jobs[job.job_id] = job
            for unit in units:
                self._job_by_unit[unit.unit_id] = job.job_id
        for unit in units:
            self.dispatcher.register(unit)

        get_log_service().info(
            "upload",
            "upload_job_created",
            f"Created upload job for {request.show_name} with {len(units)} folders",
            {
                "job_id": job.job_id,
                "show_name": request.show_name,
                "destination": layout,
                "total_units": len(units),
                "conflict_policy": policy,
            },
        )
        return job

    def start_upload(
        self,
        request: UploadRequest,
        conflict_policy: str | None = None,
        progress_callback: JobCallback | None = None,
        background: bool = False,
    ) -> UploadJob:
        """Create a job and run its check, removal and upload phases.

        The call returns once the metadata upload has been queued; the uploads
        themselves continue on the task queue. With ``background=True`` the
        phases run on a separate thread and the call returns immediately.
        """
        job = self.create_job(request, conflict_policy)
        self._launch(job.job_id, progress_callback, retry=False, background=background)
        return job

    def _launch(
        self,
        job_id: str,
        progress_callback: JobCallback | None,
        retry: bool,
        background: bool,
    ) -> None:
        if not background:
            self.run_job(job_id, progress_callback, retry)
            return
        thread = threading.Thread(
            target=self.run_job, args=(job_id, progress_callback, retry), daemon=True
        )
        thread.start()

    def run_job(
        self,
        job_id: str,
        progress_callback: JobCallback | None = None,
        retry: bool = False,
    ) -> UploadJob:
        """Run the check and removal phases, then queue the metadata upload.

        Any unexpected error fails the job instead of leaving it half started.
        """
        job = self.require_job(job_id)
        if progress_callback is not None:
            self._callbacks[job_id] = progress_callback
        try:
            self._run_phases(job, retry)
        except Exception as e:
            logger.exception("Upload job %s failed to start", job_id)
            self._abort_job(job, f"Upload job failed: {e}")
        return job

    def _abort_job(self, job: UploadJob, message: str) -> None:
        """Fail a job whose phases could not run to the end."""
        job.message = message
        for task in self._job_tasks(job):
            self.queue.cancel(task)
        finished = self._uploaded_units(job)
        for unit in job.units:
            if unit.unit_id not in finished:
                self.dispatcher.on_failed(unit.unit_id, message, job.request)
        get_log_service().error(
            "upload",
            "upload_job_aborted",
            message,
            {"job_id": job.job_id, "attempt": job.attempt},
        )
        self._finish_job(job, UploadStatus.FAILED)

    def _uploaded_units(self, job: UploadJob) -> set[str | None]:
        return {
            self.graph.unit_id_for(t.task_id)
            for t in self._job_tasks(job)
            if t.kind is TaskKind.DATA_UPLOAD and t.succeeded
        }

    def _run_phases(self, job: UploadJob, retry: bool) -> None:
        job_id = job.job_id
        request = job.request

        if job.cancelled:
            self._finish_job(job)
            return

        try:
            credential = self.session.credential_for(request.show_name)
        except CredentialUnavailableError as e:
            job.message = str(e)
            self._finish_job(job, UploadStatus.FAILED)
            return

        job.started_at = datetime.now(UTC)
        job.status = UploadStatus.CHECKING
        self.notify(job)

        existing = self._check_existing(job, credential)
        if job.cancelled:
            self._finish_job(job)
            return

        failed_removals: list[UploadUnit] = []
        if existing:
            names = [u.remote_path for u in existing]
            get_log_service().warning(
                "upload",
                "remote_paths_exist",
                f"{len(existing)} destination folders already exist",
                {"job_id": job_id, "paths": names, "conflict_policy": job.conflict_policy},
            )
            if job.conflict_policy == "abort":
                job.cancelled = True
                job.message = "Destination folders already exist: " + ", ".join(names)
                for unit in job.units:
                    self.dispatcher.on_status(unit.unit_id, "Cancelled")
                self._finish_job(job)
                return
            if job.conflict_policy == "overwrite":
                failed_removals = self._remove_existing(job, existing, credential)
                if job.cancelled:
                    self._finish_job(job)
                    return

        try:
            metadata_path = write_metadata_file(request, self.metadata_directory)
        except OSError as e:
            job.message = f"Failed to write metadata file: {e}"
            logger.error(job.message)
            self._finish_job(job, UploadStatus.FAILED)
            return
        job.metadata_file = str(metadata_path)

        parent = self.graph.add_group(
            metadata_upload_arguments(
                str(metadata_path),
                build_destination_url(credential, metadata_destination(request)),
            ),
            [
                (
                    data_upload_arguments(
                        unit.source_path,
                        build_destination_url(credential, unit.destination_path),
                    ),
                    unit.unit_id,
                )
                for unit in job.units
            ],
            credential=credential,
            context=request,
            retry=retry,
        )
        self._track(job, parent)
        for dependent in self.graph.dependents_of(parent):
            self._track(job, dependent)
        with job.lock:
            job.metadata_task_id = parent.task_id

        if job.cancelled:
            self.queue.cancel(parent)
            self._refresh_job(job)
            return

        if failed_removals:
            job.message = REMOVAL_FAILURE_MESSAGE
            self.failure_coordinator.block(
                parent,
                REMOVAL_FAILURE_MESSAGE,
                exclude_units=[u.unit_id for u in failed_removals],
            )
            self._on_task_finished(parent)
            return

        job.status = UploadStatus.UPLOADING
        self.notify(job)
        get_log_service().info(
            "upload",
            "upload_job_started",
            f"Uploading metadata.json for job {job_id}",
            {"job_id": job_id, "attempt": job.attempt, "retry": retry},
        )
        try:
            self.queue.submit(parent)
        except RuntimeError as e:
            job.message = str(e)
            self.failure_coordinator.block(parent, str(e))
            self._on_task_finished(parent)
        return

    def _track(self, job: UploadJob, task: UploadTask) -> None:
        with job.lock:
            job.task_ids.append(task.task_id)
        with self._lock:
            self._job_by_task[task.task_id] = job.job_id

    def _check_existing(self, job: UploadJob, credential: str) -> list[UploadUnit]:
        """Run existence checks for every unit; returns the units found remotely."""
        checks: list[tuple[UploadUnit, UploadTask]] = []
        for unit in job.units:
            task = self.graph.add_task(
                TaskKind.EXISTENCE_CHECK,
                existence_check_arguments(build_destination_url(credential, unit.remote_path)),
                credential=credential,
                unit_id=unit.unit_id,
                context=job.request,
            )
            self._track(job, task)
            checks.append((unit, task))

        self.queue.submit([task for _, task in checks], wait_for_completion=True)

        existing: list[UploadUnit] = []
        for unit, task in checks:
            exists = task.succeeded and task.remote_entries > 0
            self.dispatcher.set_exists_remotely(unit.unit_id, exists)
            if exists:
                existing.append(unit)
        return existing

    def _remove_existing(
        self, job: UploadJob, units: list[UploadUnit], credential: str
    ) -> list[UploadUnit]:
        """Remove remote folders one after another; returns units whose removal failed."""
        job.status = UploadStatus.REMOVING
        self.notify(job)
        removals: list[tuple[UploadUnit, UploadTask]] = []
        for unit in units:
            task = self.graph.add_task(
                TaskKind.DATA_REMOVE,
                remove_arguments(build_destination_url(credential, unit.remote_path)),
                credential=credential,
                unit_id=unit.unit_id,
                context=job.request,
            )
            self._track(job, task)
            removals.append((unit, task))

        self.queue.submit([task for _, task in removals], wait_for_completion=True)
        return [unit for unit, task in removals if task.status is TaskStatus.FAILED]

    def _on_task_finished(self, task: UploadTask) -> None:
        job_id = self._job_by_task.get(task.task_id)
        job = self.jobs.get(job_id) if job_id else None
        if job is None:
            return
        if task.kind is TaskKind.METADATA_UPLOAD and task.succeeded and job.metadata_file:
            remove_metadata_file(job.metadata_file)
            job.metadata_file = None
        self._refresh_job(job)

    def _job_tasks(self, job: UploadJob) -> list[UploadTask]:
        return [self.graph.get(i) for i in job.task_ids if i in self.graph]

    def _refresh_job(self, job: UploadJob) -> None:
        """Finish the job once every upload task of its attempt has reported."""
        with job.lock:
            if job.metadata_task_id is None or job.is_terminal:
                return
            uploads = [
                t
                for t in self._job_tasks(job)
                if t.kind in (TaskKind.METADATA_UPLOAD, TaskKind.DATA_UPLOAD)
            ]
        # A task counts once its terminal events are out, so the summary sees them
        if not all(t.reported for t in uploads):
            return
        if job.cancelled:
            status = UploadStatus.CANCELLED
        elif all(t.succeeded for t in uploads):
            status = UploadStatus.COMPLETED
        else:
            status = UploadStatus.FAILED
        self._finish_job(job, status)

    def _finish_job(self, job: UploadJob, status: UploadStatus | None = None) -> None:
        """Record the final status, log the job summary and wake waiters."""
        with job.lock:
            if job.is_terminal:
                return
            if status is None:
                status = UploadStatus.CANCELLED if job.cancelled else UploadStatus.FAILED
            job.status = status
            job.completed_at = datetime.now(UTC)

        # Unit rows must reflect every event before the summary is taken
        self.dispatcher.flush()
        self.notify(job)

        log = get_log_service()
        unit_summary = [
            {
                "unit_id": u.unit_id,
                "folder_type": u.folder_type,
                "source_path": u.source_path,
                "destination": u.remote_path,
                "exists_remotely": u.exists_remotely,
                "status": u.status_text,
                "error": u.error_message,
            }
            for u in job.units
        ]
        summary = {
            "job_id": job.job_id,
            "show_name": job.request.show_name,
            "status": job.status.value,
            "attempt": job.attempt,
            "completed": job.units_completed,
            "failed": job.units_failed,
            "duration_seconds": job.duration_seconds,
            "message": job.message,
            "units": unit_summary,
        }
        level = "INFO" if status is UploadStatus.COMPLETED else "WARNING"
        log.log(
            level,
            "upload",
            "upload_job_completed",
            f"Upload job {job.status.value}: {job.units_completed} uploaded, "
            f"{job.units_failed} failed",
            summary,
        )

        try:
            log.save_job_summary(
                {**summary, "conflict_policy": job.conflict_policy, "failures": job.failures},
                job.completed_at or datetime.now(UTC),
            )
        except OSError:
            logger.warning("Failed to save summary of job %s", job.job_id, exc_info=True)

        job._done.set()

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until a job finishes. Returns False on timeout."""
        return self.require_job(job_id).wait(timeout)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for all queued work and apply all pending unit events."""
        drained = self.queue.drain(timeout)
        self.dispatcher.flush()
        return drained

    def cancel_job(self, job_id: str) -> bool:
        """Cancel an upload job.

        Args:
            job_id: The job ID to cancel

        Returns:
            True if the job was found and still active
        """
        job = self.get_job(job_id)
        if not job or job.is_terminal:
            return False

        job.cancelled = True
        tasks = self._job_tasks(job)
        # Data uploads first so a finishing metadata upload cannot release them
        for task in sorted(tasks, key=lambda t: t.kind is TaskKind.METADATA_UPLOAD):
            self.queue.cancel(task)

        finished = self._uploaded_units(job)
        for unit in job.units:
            if unit.unit_id not in finished:
                self.dispatcher.on_status(unit.unit_id, "Cancelled")

        get_log_service().warning(
            "upload",
            "upload_job_cancelled",
            f"Upload job {job_id} cancelled",
            {"job_id": job_id},
        )
        if job.metadata_task_id is None:
            # Nothing was queued yet that could finish the job later
            self._finish_job(job, UploadStatus.CANCELLED)
        else:
            self._refresh_job(job)
        return True

    def reset_job(self, job_id: str) -> UploadJob:
        """Prepare a finished job for a fresh attempt from its recovery context.

        Raises:
            JobNotFoundError: If the job is unknown
            ValueError: If the job is still running
        """
        job = self.require_job(job_id)
        with job.lock:
            if not job.is_terminal:
                raise ValueError(f"Job {job_id} is still {job.status.value}")
            old_tasks = list(job.task_ids)
            job.status = UploadStatus.PENDING
            job.cancelled = False
            job.started_at = None
            job.completed_at = None
            job.message = ""
            job.metadata_task_id = None
            job.task_ids = []
            job.failures = []
            job.attempt += 1
            job._done.clear()
        if job.metadata_file:
            remove_metadata_file(job.metadata_file)
            job.metadata_file = None
        self._forget_tasks(old_tasks)
        for unit in job.units:
            self.dispatcher.on_progress(unit.unit_id, 0)
            self.dispatcher.on_status(unit.unit_id, "Pending")

        get_log_service().info(
            "upload",
            "upload_job_retry",
            f"Retrying upload job {job_id} (attempt {job.attempt})",
            {"job_id": job_id, "attempt": job.attempt},
        )
        return job

    def retry_job(
        self,
        job_id: str,
        progress_callback: JobCallback | None = None,
        background: bool = False,
    ) -> UploadJob:
        """Restart a failed or cancelled job from scratch, reusing its units."""
        job = self.reset_job(job_id)
        self._launch(job_id, progress_callback, retry=True, background=background)
        return job

    def retry_unit(
        self,
        job_id: str,
        unit_id: str,
        progress_callback: JobCallback | None = None,
        background: bool = False,
    ) -> UploadTask | None:
        """Retry the data upload of a single unit.

        Only possible while the metadata upload of the job stands; otherwise
        the whole job is retried and None is returned.

        Raises:
            JobNotFoundError: If the job or unit is unknown
            ValueError: If the unit is still uploading or already uploaded
        """
        job = self.require_job(job_id)
        if job.unit(unit_id) is None:
            raise JobNotFoundError(unit_id)

        current = next(
            (
                t
                for t in self._job_tasks(job)
                if t.kind is TaskKind.DATA_UPLOAD and self.graph.unit_id_for(t.task_id) == unit_id
            ),
            None,
        )
        parent = self.graph.parent_of(current) if current else None
        if current is None or parent is None or not parent.succeeded:
            self.retry_job(job_id, progress_callback, background=background)
            return None
        if not current.is_terminal:
            raise ValueError(f"Unit {unit_id} is still uploading")
        if current.succeeded:
            raise ValueError(f"Unit {unit_id} is already uploaded")

        if progress_callback is not None:
            self._callbacks[job_id] = progress_callback
        task = self.graph.retry(current)
        with job.lock:
            job.task_ids = [i for i in job.task_ids if i != current.task_id]
            job.failures = [f for f in job.failures if f["unit_id"] != unit_id]
            job.status = UploadStatus.UPLOADING
            job.cancelled = False
            job.completed_at = None
            job._done.clear()
        self._track(job, task)
        self._forget_tasks([current.task_id])

        get_log_service().info(
            "upload",
            "unit_retry",
            f"Retrying unit {unit_id} of job {job_id}",
            {"job_id": job_id, "unit_id": unit_id, "task_id": task.task_id},
        )
        self.queue.submit(task)
        return task

    def _forget_tasks(self, task_ids: list[int]) -> None:
        with self._lock:
            for task_id in task_ids:
                self._job_by_task.pop(task_id, None)
        self.graph.discard(task_ids)

    def get_active_jobs(self) -> list[UploadJob]:
        """Get all currently active (non-terminal) jobs."""
        with self._lock:
            return [j for j in self.jobs.values() if not j.is_terminal]

    def cleanup_old_jobs(self, max_age_seconds: int = 3600) -> int:
        """Remove finished jobs older than max_age_seconds, with their tasks.

        Returns:
            Number of jobs removed
        """
        now = datetime.now(UTC)
        with self._lock:
            to_remove = [
                job
                for job in self.jobs.values()
                if job.is_terminal
                and job.completed_at
                and (now - job.completed_at).total_seconds() > max_age_seconds
            ]
            for job in to_remove:
                del self.jobs[job.job_id]
                self._callbacks.pop(job.job_id, None)
                for unit in job.units:
                    self._job_by_unit.pop(unit.unit_id, None)

        for job in to_remove:
            if job.metadata_file:
                remove_metadata_file(job.metadata_file)
            for unit in job.units:
                self.dispatcher.unregister(unit.unit_id)
            self._forget_tasks(job.task_ids)
        return len(to_remove)

    def shutdown(self) -> None:
        """Stop the task queue and the unit state dispatcher."""
        self.queue.shutdown()
        self.dispatcher.close()


# Global upload manager instance
_upload_manager: UploadManager | None = None


def get_upload_manager() -> UploadManager:
    """Get the global upload manager instance."""
    global _upload_manager
    if _upload_manager is None:
        _upload_manager = UploadManager(SessionContext(get_settings().azcopy_path))
    return _upload_manager
