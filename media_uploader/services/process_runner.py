"""Launching the copy tool and streaming its standard output."""

import codecs
import logging
import os
import subprocess
import threading
from collections.abc import Callable, Sequence

from media_uploader.services.errors import ToolUnavailableError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

DEFAULT_CHUNK_SIZE = 4096


class RunningProcess:
    """A launched tool process whose stdout is read on a background thread.

    Standard error is discarded; AzCopy reports everything of interest,
    including the final job status, on standard output.
    """

    def __init__(self, process: subprocess.Popen[bytes], chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._process = process
        self._chunk_size = chunk_size
        self._reader: threading.Thread | None = None
        self._error: Exception | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    def _read_output(self, on_output: OutputCallback | None) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = stream.read1(self._chunk_size)
                if not data:
                    break
                text = decoder.decode(data)
                if text and on_output is not None:
                    on_output(text)
            tail = decoder.decode(b"", final=True)
            if tail and on_output is not None:
                on_output(tail)
        except Exception as e:
            self._error = e
            # Keep draining so the child never blocks on a full pipe
            while stream.read1(self._chunk_size):
                pass
        finally:
            stream.close()

    def wait(self, on_output: OutputCallback | None = None) -> int:
        """Stream output to ``on_output`` until the process exits.

        The reader thread is joined before returning, so no callback fires
        after this method returns.

        Returns:
            The process exit code (negative signal number if killed)

        Raises:
            Exception: Whatever ``on_output`` raised, once the process has exited
        """
        self._reader = threading.Thread(
            target=self._read_output,
            args=(on_output,),
            name=f"azcopy-reader-{self._process.pid}",
            daemon=True,
        )
        self._reader.start()
        exit_code = self._process.wait()
        self._reader.join()
        if self._error is not None:
            raise self._error
        return exit_code

    def terminate(self) -> None:
        """Ask the process to stop. Callers must still wait() for it to exit."""
        if self._process.poll() is None:
            logger.info("Terminating pid %s", self._process.pid)
            self._process.terminate()


def check_executable(executable: str) -> None:
    """Raise ToolUnavailableError unless ``executable`` is a runnable file."""
    if not os.path.isfile(executable):
        raise ToolUnavailableError(executable, "file not found")
    if not os.access(executable, os.X_OK):
        raise ToolUnavailableError(executable, "not executable")


class ProcessRunner:
    """Runs the external copy tool without a shell."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def start(self, executable: str, arguments: Sequence[str]) -> RunningProcess:
        """Launch ``executable`` with ``arguments``.

        Raises:
            ToolUnavailableError: If the executable is missing or not runnable
        """
        check_executable(executable)
        try:
            process = subprocess.Popen(
                [executable, *arguments],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolUnavailableError(executable, str(e)) from e
        return RunningProcess(process, self.chunk_size)

    def run(
        self,
        executable: str,
        arguments: Sequence[str],
        on_output: OutputCallback | None = None,
    ) -> int:
        """Launch the tool, stream its output and return the exit code."""
        return self.start(executable, arguments).wait(on_output)
