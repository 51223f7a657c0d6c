"""JSONL event log for upload jobs and copy-tool tasks.

Events go to ``<log_directory>/json/year=YYYY/month=MM/day=DD/events.jsonl``,
one JSON object per line. Finished jobs additionally get a summary file under
the same day's ``jobs/`` directory: one ``job`` record per attempt followed by
one ``unit`` record per folder, so either file reads straight into a table::

    SELECT * FROM read_json_auto('logs/json/**/events.jsonl', hive_partitioning=true)
"""

import json
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from glob import escape
from pathlib import Path
from typing import Any

from media_uploader.config import get_settings

EVENTS_FILE = "events.jsonl"
JOBS_DIR = "jobs"

# Metadata keys that identify what an event is about
_RECORD_KEYS = ("job_id", "task_id", "unit_id")


@dataclass(frozen=True)
class LogQuery:
    """Filters and paging for reading events back."""

    level: str | None = None
    category: str | None = None
    search: str | None = None
    job_id: str | None = None
    task_id: int | None = None
    unit_id: str | None = None
    offset: int = 0
    limit: int = 100

    def matches(self, entry: dict[str, Any]) -> bool:
        if self.level and str(entry.get("level", "")).upper() != self.level.upper():
            return False
        if self.category and entry.get("category") != self.category:
            return False

        metadata = entry.get("metadata") or {}
        wanted = {"job_id": self.job_id, "task_id": self.task_id, "unit_id": self.unit_id}
        for key in _RECORD_KEYS:
            if wanted[key] is not None and metadata.get(key) != wanted[key]:
                return False

        if self.search:
            needle = self.search.lower()
            haystack = f"{entry.get('message', '')} {entry.get('event', '')}".lower()
            if needle not in haystack:
                return False
        return True


class LogService:
    """Appends events and job summaries, serialising writers on one lock."""

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    @property
    def json_dir(self) -> Path:
        return get_settings().log_directory / "json"

    def _partition(self, dt: datetime) -> Path:
        """Day directory for ``dt``, e.g. ``json/year=2026/month=02/day=08``."""
        path = self.json_dir / f"year={dt.year:04d}" / f"month={dt.month:02d}" / f"day={dt.day:02d}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _append(self, path: Path, records: list[dict[str, Any]]) -> None:
        text = "".join(json.dumps(record, default=str) + "\n" for record in records)
        with self._write_lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append one event to today's events file.

        Args:
            level: INFO, WARNING or ERROR
            category: upload, task, session, settings or app
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Ids of the job, task or unit involved and other details
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata
        self._append(self._partition(now) / EVENTS_FILE, [entry])

    def info(
        self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        self.log("INFO", category, event, message, metadata)

    def warning(
        self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        self.log("WARNING", category, event, message, metadata)

    def error(
        self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        self.log("ERROR", category, event, message, metadata)

    def save_job_summary(self, summary: dict[str, Any], completed_at: datetime) -> Path:
        """Append the outcome of one job attempt to the job's summary file.

        ``summary`` must carry ``job_id``; its ``units`` list is written as
        separate ``unit`` records after the ``job`` record.

        Returns:
            Path to the summary file
        """
        job_id = summary["job_id"]
        job_record = {k: v for k, v in summary.items() if k != "units"}
        records = [{"record": "job", "timestamp": completed_at.isoformat(), **job_record}]
        records += [
            {"record": "unit", "job_id": job_id, "attempt": summary.get("attempt"), **unit}
            for unit in summary.get("units", [])
        ]

        jobs_dir = self._partition(completed_at) / JOBS_DIR
        jobs_dir.mkdir(exist_ok=True)
        path = jobs_dir / f"{job_id}.jsonl"
        self._append(path, records)
        return path

    def read_job_summary(self, job_id: str) -> list[dict[str, Any]]:
        """Every recorded attempt of a job, oldest first, each with its units."""
        attempts: list[dict[str, Any]] = []
        for record in self._records(f"**/{JOBS_DIR}/{escape(job_id)}.jsonl"):
            if record.get("record") == "job":
                attempts.append({**record, "units": []})
            elif record.get("record") == "unit" and attempts:
                attempts[-1]["units"].append(record)
        attempts.sort(key=lambda a: a.get("timestamp", ""))
        return attempts

    def read_log_entries(self, query: LogQuery | None = None) -> dict[str, Any]:
        """Events matching ``query``, newest first, with the total before paging."""
        query = query or LogQuery()
        matched = [e for e in self._records(f"**/{EVENTS_FILE}") if query.matches(e)]
        matched.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return {
            "entries": matched[query.offset : query.offset + query.limit],
            "total": len(matched),
            "offset": query.offset,
            "limit": query.limit,
        }

    def _records(self, pattern: str) -> Iterator[dict[str, Any]]:
        """Parsed lines of every file matching ``pattern``; bad lines are skipped."""
        if not self.json_dir.exists():
            return
        for path in sorted(self.json_dir.glob(pattern)):
            try:
                with open(path, encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError:
                continue
            for line in lines:
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(record, dict):
                    yield record


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
