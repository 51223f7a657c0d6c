"""Parsing of AzCopy console output.

AzCopy prints periodic progress lines such as::

    40.2 %, 12 Done, 0 Failed, 30 Pending, 0 Skipped, 42 Total, 2-sec Throughput (Mb/s): 81.3

and, once the job is over, a summary block containing::

    Final Job Status: Completed

The exit code of the tool is not reliable on its own: a job can end with
``CompletedWithErrors`` or ``Failed`` while the process still exits with 0,
so the job status line is authoritative whenever it is present.
"""

import math
import re
from dataclasses import dataclass

from media_uploader.services.errors import JOB_STATUS_FAILURE_CODE
from media_uploader.services.upload_task import TaskKind

SUCCESS_STATUS = "Completed"

METADATA_FAILURE_MESSAGE = "Failed AzCopy metadata.json Upload!"
DATA_FAILURE_MESSAGE = "Failed AzCopy data Upload!"
REMOVE_FAILURE_MESSAGE = "Failed AzCopy data Removal!"
LISTING_FAILURE_MESSAGE = "Failed AzCopy remote Listing!"

PROGRESS_PATTERN = re.compile(r"^[ \t\r]*(\d+\.\d+) %", re.MULTILINE)
# The trailing newline guards against a status word split across two chunks
JOB_STATUS_PATTERN = re.compile(r"^[ \t\r]*Final Job Status:[ \t]+(\w+)[ \t]*\r?\n", re.MULTILINE)
LISTING_PATTERN = re.compile(r"^INFO: .+;\s*Content Length:", re.MULTILINE)


@dataclass(frozen=True)
class ParsedOutput:
    """Everything extracted from one piece of tool output."""

    progress: int | None = None
    job_status: str | None = None
    status_code: int = 0
    error_message: str = ""

    @property
    def failed(self) -> bool:
        return self.status_code != 0


def parse_progress(text: str) -> int | None:
    """Return the progress of the first percentage line, or None.

    The raw value is biased upwards as ``ceil(value + 0.5)``, so ``40.2``
    reports as ``41``. No clamping happens here.
    """
    match = PROGRESS_PATTERN.search(text)
    if match is None:
        return None
    return math.ceil(float(match.group(1)) + 0.5)


def parse_job_status(text: str) -> str | None:
    """Return the word following ``Final Job Status:`` on a complete line."""
    match = JOB_STATUS_PATTERN.search(text)
    if match is None:
        return None
    return match.group(1).strip()


def failure_message(kind: TaskKind) -> str:
    """Fixed diagnostic text for a failed job of the given kind."""
    if kind is TaskKind.METADATA_UPLOAD:
        return METADATA_FAILURE_MESSAGE
    if kind is TaskKind.DATA_REMOVE:
        return REMOVE_FAILURE_MESSAGE
    if kind is TaskKind.EXISTENCE_CHECK:
        return LISTING_FAILURE_MESSAGE
    return DATA_FAILURE_MESSAGE


def parse_result(text: str, kind: TaskKind) -> tuple[int, str]:
    """Classify output as ``(status_code, error_message)``.

    ``status_code`` is 0 when no terminal failure was found, which covers both
    success and "still running".
    """
    status = parse_job_status(text)
    if status is None or status == SUCCESS_STATUS:
        return 0, ""
    return JOB_STATUS_FAILURE_CODE, failure_message(kind)


def parse_output(text: str, kind: TaskKind) -> ParsedOutput:
    """Apply both extraction rules to ``text``."""
    status_code, error_message = parse_result(text, kind)
    return ParsedOutput(
        progress=parse_progress(text),
        job_status=parse_job_status(text),
        status_code=status_code,
        error_message=error_message,
    )


def count_listing_entries(text: str) -> int:
    """Count blob entries printed by ``azcopy list``."""
    return len(LISTING_PATTERN.findall(text))


class LineAccumulator:
    """Re-assemble arbitrarily split output chunks into whole lines."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> str:
        """Add a chunk and return every line completed by it (with newlines)."""
        self._buffer += chunk
        cut = self._buffer.rfind("\n")
        if cut < 0:
            return ""
        complete, self._buffer = self._buffer[: cut + 1], self._buffer[cut + 1 :]
        return complete

    def flush(self) -> str:
        """Return the unterminated tail, newline-terminated, and reset."""
        tail, self._buffer = self._buffer, ""
        if tail and not tail.endswith("\n"):
            tail += "\n"
        return tail
