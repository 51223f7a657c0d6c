"""Event sinks for upload progress, completion and failure.

The task engine reports through an ``EventSink`` and never touches UI-facing
state directly. ``UnitStateDispatcher`` is the one place where
``UploadUnit.progress`` and ``UploadUnit.status_text`` are written: worker
threads enqueue events and a single dispatcher thread applies them, then
forwards them to any downstream sinks (API streams, loggers, tests).
"""

import logging
import queue
import threading
from collections.abc import Callable, Iterable
from typing import Protocol, runtime_checkable

from media_uploader.services.log_service import get_log_service
from media_uploader.services.upload_task import UploadRequest, UploadUnit

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    """Receiver of per-unit upload events."""

    def on_started(self, unit_id: str, retry: bool) -> None: ...

    def on_progress(self, unit_id: str, percent: int) -> None: ...

    def on_status(self, unit_id: str, text: str) -> None: ...

    def on_completed(self, unit_id: str) -> None: ...

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None: ...


class BaseEventSink:
    """EventSink with no-op handlers, for subclasses interested in a few events."""

    def on_started(self, unit_id: str, retry: bool) -> None:
        pass

    def on_progress(self, unit_id: str, percent: int) -> None:
        pass

    def on_status(self, unit_id: str, text: str) -> None:
        pass

    def on_completed(self, unit_id: str) -> None:
        pass

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None:
        pass


class CallbackEventSink(BaseEventSink):
    """Adapter turning plain callables into an EventSink."""

    def __init__(
        self,
        on_progress: Callable[[str, int], None] | None = None,
        on_completed: Callable[[str], None] | None = None,
        on_failed: Callable[[str, str, UploadRequest | None], None] | None = None,
    ) -> None:
        self._on_progress = on_progress
        self._on_completed = on_completed
        self._on_failed = on_failed

    def on_progress(self, unit_id: str, percent: int) -> None:
        if self._on_progress:
            self._on_progress(unit_id, percent)

    def on_completed(self, unit_id: str) -> None:
        if self._on_completed:
            self._on_completed(unit_id)

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None:
        if self._on_failed:
            self._on_failed(unit_id, error_message, recovery_context)


class LoggingEventSink(BaseEventSink):
    """Headless consumer writing unit events to the application logs."""

    def on_started(self, unit_id: str, retry: bool) -> None:
        logger.info("Unit %s started%s", unit_id, " (retry)" if retry else "")

    def on_progress(self, unit_id: str, percent: int) -> None:
        logger.debug("Unit %s at %s%%", unit_id, percent)

    def on_completed(self, unit_id: str) -> None:
        get_log_service().info(
            "upload", "unit_completed", f"Unit {unit_id} uploaded", {"unit_id": unit_id}
        )

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None:
        get_log_service().error(
            "upload",
            "unit_failed",
            f"Unit {unit_id} failed: {error_message}",
            {
                "unit_id": unit_id,
                "error": error_message,
                "show_name": recovery_context.show_name if recovery_context else None,
            },
        )


class UnitStateDispatcher(BaseEventSink):
    """Serialises all unit state writes and event delivery onto one thread."""

    def __init__(self, downstream: Iterable[EventSink] = ()) -> None:
        self._units: dict[str, UploadUnit] = {}
        self._downstream: list[EventSink] = list(downstream)
        self._queue: queue.Queue[Callable[[], None] | None] = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="unit-state", daemon=True)
        self._thread.start()

    def register(self, unit: UploadUnit) -> None:
        self._units[unit.unit_id] = unit

    def unregister(self, unit_id: str) -> None:
        self._units.pop(unit_id, None)

    def get_unit(self, unit_id: str) -> UploadUnit | None:
        return self._units.get(unit_id)

    def add_sink(self, sink: EventSink) -> None:
        self._queue.put(lambda: self._downstream.append(sink))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                item()
            except Exception:
                logger.exception("Event delivery failed")
            finally:
                self._queue.task_done()

    def _forward(self, name: str, *args: object) -> None:
        for sink in self._downstream:
            getattr(sink, name)(*args)

    def on_started(self, unit_id: str, retry: bool) -> None:
        def apply() -> None:
            unit = self._units.get(unit_id)
            if unit is not None:
                unit.progress = 0.0
                unit.status_text = "Retrying" if retry else "Uploading"
                unit.error_message = ""
            self._forward("on_started", unit_id, retry)

        self._queue.put(apply)

    def on_progress(self, unit_id: str, percent: int) -> None:
        def apply() -> None:
            unit = self._units.get(unit_id)
            if unit is not None:
                unit.progress = float(percent)
            self._forward("on_progress", unit_id, percent)

        self._queue.put(apply)

    def on_status(self, unit_id: str, text: str) -> None:
        def apply() -> None:
            unit = self._units.get(unit_id)
            if unit is not None:
                unit.status_text = text
            self._forward("on_status", unit_id, text)

        self._queue.put(apply)

    def on_completed(self, unit_id: str) -> None:
        def apply() -> None:
            unit = self._units.get(unit_id)
            if unit is not None:
                unit.progress = 100.0
                unit.status_text = "Completed"
            self._forward("on_completed", unit_id)

        self._queue.put(apply)

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None:
        def apply() -> None:
            unit = self._units.get(unit_id)
            if unit is not None:
                unit.status_text = "Failed"
                unit.error_message = error_message
            self._forward("on_failed", unit_id, error_message, recovery_context)

        self._queue.put(apply)

    def set_exists_remotely(self, unit_id: str, exists: bool) -> None:
        def apply() -> None:
            unit = self._units.get(unit_id)
            if unit is not None:
                unit.exists_remotely = exists

        self._queue.put(apply)

    def flush(self) -> None:
        """Block until every queued event has been applied.

        Must not be called from a downstream sink (it runs on the dispatcher thread).
        """
        self._queue.join()

    def close(self) -> None:
        """Apply pending events and stop the dispatcher thread."""
        if self._thread.is_alive():
            self._queue.put(None)
            self._thread.join()
