"""Utility functions for benchfleet."""

import json
import subprocess
import time
from pathlib import Path
from typing import Any

from .debug import debug_log_command, debug_log_result


class Timer:
    """Context manager for timing operations."""

    def __init__(self, description: str = "Operation"):
        self.description = description
        self.start_time: float = 0.0
        self.end_time: float = 0.0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed(self) -> float:
        """Return elapsed time in seconds."""
        if self.end_time == 0.0 and self.start_time > 0.0:
            return time.perf_counter() - self.start_time
        return self.end_time - self.start_time


def _command_result(
    cmd: str | list[str],
    success: bool,
    stdout: str,
    stderr: str,
    returncode: int,
    elapsed: float,
) -> dict[str, Any]:
    return {
        "success": success,
        "stdout": stdout,
        "stderr": stderr,
        "returncode": returncode,
        "elapsed_s": elapsed,
        "command": cmd if isinstance(cmd, str) else " ".join(cmd),
    }


def safe_command(cmd: str | list[str], timeout: float | None = None) -> dict[str, Any]:
    """
    Execute a local command and return a structured result.

    Never raises for command failures, timeouts or a missing executable; the
    caller inspects ``success``.

    Returns:
        Dict with keys: success, stdout, stderr, returncode, elapsed_s, command
    """
    start_time = time.perf_counter()
    debug_log_command(cmd if isinstance(cmd, str) else " ".join(cmd), timeout)

    try:
        result = subprocess.run(
            cmd,
            shell=isinstance(cmd, str),  # nosec B602
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return _command_result(
            cmd,
            False,
            "",
            f"Command timed out after {timeout}s",
            -1,
            time.perf_counter() - start_time,
        )
    except OSError as e:
        return _command_result(
            cmd, False, "", str(e), -1, time.perf_counter() - start_time
        )

    debug_log_result(result.returncode == 0, result.stdout, result.stderr)
    return _command_result(
        cmd,
        result.returncode == 0,
        result.stdout,
        result.stderr,
        result.returncode,
        time.perf_counter() - start_time,
    )


def ensure_directory(path: str | Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def save_json(data: Any, path: str | Path, indent: int = 2) -> None:
    """Save data as JSON file."""
    filepath = Path(path)
    ensure_directory(filepath.parent)

    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, default=str)
