#!/usr/bin/env python3
"""Media Uploader launcher.

Starts the API under gunicorn and waits until it answers.
"""

import os
import shutil
import signal
import subprocess
import sys
import time
import urllib.request

# ── Configuration ────────────────────────────────────────────
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
VENV_DIR = os.path.join(PROJECT_DIR, "venv")
PORT = int(os.environ.get("MEDIA_UPLOADER_PORT", "5000"))
HEALTH_URL = f"http://127.0.0.1:{PORT}/api/settings/version"
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[media-uploader] {msg}", flush=True)


def port_in_use(port: int) -> bool:
    """Check if a port is already in use."""
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(("127.0.0.1", port)) == 0


def find_gunicorn() -> str | None:
    """Prefer the project venv, then whatever is on PATH."""
    venv_bin = os.path.join(VENV_DIR, "bin", "gunicorn")
    if os.path.isfile(venv_bin):
        return venv_bin
    return shutil.which("gunicorn")


def wait_for_server(timeout: int = 15) -> bool:
    """Poll the health URL until the server responds or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            urllib.request.urlopen(HEALTH_URL, timeout=1)
            return True
        except OSError:
            pass
        # Check if gunicorn died
        if gunicorn_proc and gunicorn_proc.poll() is not None:
            return False
        time.sleep(0.5)
    return False


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Gracefully stop gunicorn."""
    print()
    log("Shutting down...")
    if gunicorn_proc and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    log("Stopped.")
    sys.exit(0)


def main() -> None:
    global gunicorn_proc

    # ── Preflight checks ─────────────────────────────────────
    gunicorn_bin = find_gunicorn()
    if gunicorn_bin is None:
        log("gunicorn not found. Install the project with:")
        log("  pip install -e .")
        sys.exit(1)

    if port_in_use(PORT):
        log(f"Port {PORT} is already in use.")
        sys.exit(1)

    # ── Register signal handlers ─────────────────────────────
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # ── Start gunicorn ───────────────────────────────────────
    log(f"Starting Media Uploader (gunicorn on port {PORT})...")

    # Jobs live in process memory, so a single worker serves every request
    gunicorn_proc = subprocess.Popen(
        [
            gunicorn_bin,
            "--bind",
            f"127.0.0.1:{PORT}",
            "--workers",
            "1",
            "--threads",
            "8",
            "--timeout",
            "300",
            "--pid",
            PID_FILE,
            "--access-logfile",
            "-",
            "--error-logfile",
            "-",
            "media_uploader:create_app()",
        ],
        cwd=PROJECT_DIR,
    )

    # ── Wait for server ──────────────────────────────────────
    log("Waiting for server...")
    if not wait_for_server():
        log("Server did not start. Check output above.")
        sys.exit(1)

    log(f"Media Uploader API is running at http://127.0.0.1:{PORT}/api")
    log("Press Ctrl+C to stop the server.")

    # ── Block until gunicorn exits ───────────────────────────
    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
