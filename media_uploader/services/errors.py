"""Failure taxonomy shared by the task engine and the API layer."""

from enum import Enum

# Completion status codes that are not process exit codes
JOB_STATUS_FAILURE_CODE = -1
DEPENDENCY_BLOCKED_CODE = -2
TOOL_UNAVAILABLE_CODE = 127


class FailureReason(Enum):
    """Why a task ended up in the failed (or cancelled) state."""

    TOOL_UNAVAILABLE = "tool_unavailable"
    PROCESS_EXIT_FAILURE = "process_exit_failure"
    JOB_STATUS_FAILURE = "job_status_failure"
    DEPENDENCY_BLOCKED = "dependency_blocked"
    CANCELLED = "cancelled"


class ToolUnavailableError(Exception):
    """The copy tool executable is missing or cannot be launched."""

    def __init__(self, executable: str, detail: str = "") -> None:
        message = f"Copy tool not available at {executable}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.executable = executable


class CredentialUnavailableError(Exception):
    """No access credential has been provided for a show."""

    def __init__(self, show_name: str) -> None:
        super().__init__(f"No credential available for show {show_name!r}")
        self.show_name = show_name


class JobNotFoundError(KeyError):
    """An upload job or unit id is unknown."""
